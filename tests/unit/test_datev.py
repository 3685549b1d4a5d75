"""
Unit tests für den DATEV-Buchungsstapel (EXTF 700)
"""

import logging
from datetime import date

import pytest

from erechnung import datev_exporter
from erechnung.config import Config
from erechnung.datev_exporter import (
    DATEV_HEADER_FIELDS,
    EXTENDED_HEADER_FIELDS,
    UTF8_BOM,
    DatevExportConfig,
    escape_field,
    export_invoices_to_bytes,
    format_amount,
    format_date,
    format_invoice_for_datev,
    format_invoices_for_datev,
    generate_filename,
    generate_structured_filename,
    get_export_summary,
    preview_export,
    validate_datev_entry,
)
from erechnung.exceptions import ExportError
from erechnung.kontierung import DatevEntry, DatevInvoice, DatevInvoiceMapping, Richtung, map_invoices

TODAY = date(2024, 12, 31)


@pytest.fixture
def export_config():
    return DatevExportConfig(
        berater_nummer="1001",
        mandanten_nummer="1",
        wirtschaftsjahr_beginn="0101",
        datum_von="2024-03-01",
        datum_bis="2024-03-31",
    )


def _lines(csv: str):
    assert csv.endswith("\r\n")
    return csv.lstrip(UTF8_BOM).split("\r\n")[:-1]


def _entry(**overrides):
    values = dict(
        datum=date(2024, 3, 15),
        konto="4400",
        gegenkonto="1200",
        betrag=119.0,
        buchungstext="ER: Test - 1",
        belegnummer="1",
    )
    values.update(overrides)
    return DatevEntry(**values)


class TestFormatting:

    def test_format_amount_and_date(self):
        assert format_amount(1234.5) == "1234,50"
        assert format_amount(0.005) == "0,01"
        assert format_date(date(2024, 3, 5)) == "05032024"
        assert format_date(None) == ""

    @pytest.mark.parametrize("raw, expected", [
        ("Miete März", "Miete März"),
        ("Müller; Sohn", '"Müller; Sohn"'),
        ('Ware "A"', '"Ware ""A"""'),
        ("Zeile 1\r\nZeile 2", "Zeile 1 Zeile 2"),
        (None, ""),
    ])
    def test_escape_field(self, raw, expected):
        assert escape_field(raw) == expected

    def test_filenames(self):
        assert generate_filename(date(2024, 3, 1), date(2024, 3, 31)) == "DATEV_Export_20240301_20240331.csv"
        assert generate_structured_filename("1001", "1", date(2024, 3, 1), date(2024, 3, 31)) \
            == "EXTF_1001_1_20240301_20240331.csv"
        assert generate_structured_filename(None, None, None, None) == "EXTF_0_0_00000000_00000000.csv"


class TestDatevExportConfig:

    def test_valid_config(self, export_config):
        assert export_config.validate() == []

    def test_invalid_fields(self):
        config = DatevExportConfig(
            berater_nummer="ABC",
            mandanten_nummer="123456",
            wirtschaftsjahr_beginn="1399",
            sachkontenrahmen="SKR99",
            encoding="UTF-16",
            datum_von="32.01.2024",
        )
        assert [e.field for e in config.validate()] == [
            "beraterNummer", "mandantenNummer", "wirtschaftsjahrBeginn", "sachkontenrahmen", "encoding", "datumVon",
        ]

    def test_reversed_period(self):
        config = DatevExportConfig(datum_von="2024-04-01", datum_bis="2024-03-01")
        errors = config.validate()
        assert [(e.field, e.message) for e in errors] == [
            ("datumVon", "Datum von darf nicht nach Datum bis liegen"),
        ]

    def test_validate_or_raise(self):
        with pytest.raises(ExportError) as exc_info:
            DatevExportConfig(sachkontenrahmen="SKR99").validate_or_raise()
        assert exc_info.value.code == "EXPORT_ERROR"
        assert exc_info.value.message.startswith("Export-Fehler (DATEV):")

    def test_from_config_with_environment(self, monkeypatch):
        monkeypatch.setenv("DATEV_MANDANTEN_NUMMER", "42")
        config = DatevExportConfig.from_config(Config(data={
            "datev": {"berater_nummer": 1001, "mandanten_nummer": 7, "sachkontenrahmen": "SKR04", "unbekannt": 1},
        }))
        assert config.berater_nummer == "1001"
        assert config.mandanten_nummer == "42"
        assert config.sachkontenrahmen == "SKR04"


class TestValidateDatevEntry:

    def test_valid_entry(self):
        assert validate_datev_entry(_entry()) == []

    def test_invalid_entry(self):
        entry = _entry(
            datum=None,
            konto="44A0",
            gegenkonto="",
            betrag=0.0,
            soll_haben="X",
            buchungstext="x" * 61,
            belegnummer="",
            kostenstelle="123456789",
        )
        assert [e.field for e in validate_datev_entry(entry)] == [
            "datum", "konto", "gegenkonto", "umsatz", "sollHaben", "buchungstext", "belegnummer", "kostenstelle",
        ]

    def test_date_outside_export_period(self, export_config):
        errors = validate_datev_entry(_entry(datum=date(2024, 4, 1)), export_config)
        assert [(e.field, e.message) for e in errors] == [("datum", "Datum liegt außerhalb des Exportzeitraums")]


class TestFormatInvoicesForDatev:

    def test_standard_export(self, sample_invoice, export_config):
        result = format_invoices_for_datev([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert result.success is True
        assert result.entry_count == 2
        assert result.total_amount == 1243.5
        assert result.filename == "DATEV_Export_20240301_20240331.csv"
        assert result.csv.startswith(UTF8_BOM + "EXTF;700;21;Buchungsstapel;13;")

        header, columns, first, second = _lines(result.csv)
        assert header == (
            "EXTF;700;21;Buchungsstapel;13;20240331000000000;;RE;;;1001;1;20240101;4;"
            "20240301;20240331;Rechnungsexport;;1;0;0;EUR"
        )
        assert columns.split(";") == DATEV_HEADER_FIELDS

        fields = first.split(";")
        assert len(fields) == len(DATEV_HEADER_FIELDS)
        assert fields[:11] == ["53,50", "S", "EUR", "", "", "", "4400", "1200", "8", "15032024", "RE-2024-0042"]
        assert fields[13] == "ER: Muster GmbH - RE-2024-0042"
        assert second.split(";")[0] == "1190,00"

    def test_extended_export(self, sample_invoice, export_config):
        result = format_invoices_for_datev(
            [DatevInvoice(sample_invoice, Richtung.AUSGANG)], format="extended", config=export_config, today=TODAY,
        )
        _, columns, first, _ = _lines(result.csv)
        assert columns.split(";") == DATEV_HEADER_FIELDS + EXTENDED_HEADER_FIELDS
        assert first.split(";")[-4:] == ["7", "50,00", "3,50", "AR"]
        assert first.split(";")[1] == "H"

    def test_detailed_export(self, sample_invoice, export_config):
        result = format_invoices_for_datev(
            [DatevInvoice(sample_invoice)], detailed=True, config=export_config, today=TODAY,
        )
        _, _, first, second = _lines(result.csv)
        assert first.split(";")[13] == "Beratung - Muster GmbH"
        assert second.split(";")[13] == "Fachbuch Umsatzsteuerrecht - Muster GmbH"

    def test_export_is_deterministic(self, sample_invoice, simple_invoice, export_config):
        invoices = [DatevInvoice(sample_invoice), DatevInvoice(simple_invoice, Richtung.AUSGANG)]
        config = DatevExportConfig(berater_nummer="1001", mandanten_nummer="1")
        first = format_invoices_for_datev(invoices, config=config, today=TODAY)
        second = format_invoices_for_datev(invoices, config=config, today=TODAY)
        assert first.csv == second.csv
        assert first.filename == second.filename == "DATEV_Export_20240315_20240601.csv"

    def test_explicit_filename_is_kept_and_logged(self, caplog, sample_invoice, export_config):
        with caplog.at_level(logging.INFO, logger="erechnung.datev_exporter"):
            result = format_invoices_for_datev(
                [DatevInvoice(sample_invoice)], config=export_config, filename="stapel.csv", today=TODAY,
            )
        assert result.filename == "stapel.csv"
        assert "filename=stapel.csv" in caplog.text

    def test_structured_filename(self, sample_invoice, export_config):
        result = format_invoice_for_datev(
            DatevInvoice(sample_invoice), config=export_config, use_structured_filename=True, today=TODAY,
        )
        assert result.filename == "EXTF_1001_1_20240301_20240331.csv"

    def test_partner_name_with_semicolon_is_quoted(self, sample_invoice, export_config):
        sample_invoice.seller.name = "Müller; Söhne"
        result = format_invoices_for_datev([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert '"ER: Müller; Söhne - RE-2024-0042"' in result.csv


class TestExportGates:
    """Jeder Fehler verhindert den gesamten Stapel"""

    def test_no_invoices(self, export_config):
        result = format_invoices_for_datev([], config=export_config)
        assert result.success is False
        assert [e.field for e in result.errors] == ["invoices"]
        assert result.csv == ""

    def test_unknown_format(self, sample_invoice, export_config):
        result = format_invoices_for_datev([DatevInvoice(sample_invoice)], format="xlsx", config=export_config)
        assert [e.field for e in result.errors] == ["format"]

    def test_invalid_config(self, sample_invoice):
        result = format_invoices_for_datev(
            [DatevInvoice(sample_invoice)], config=DatevExportConfig(berater_nummer="abc"), today=TODAY,
        )
        assert [e.field for e in result.errors] == ["beraterNummer"]

    def test_gobd_violation_blocks_whole_batch(self, sample_invoice, simple_invoice, export_config):
        simple_invoice.buyer.name = ""
        result = format_invoices_for_datev(
            [DatevInvoice(sample_invoice), DatevInvoice(simple_invoice)], config=export_config, today=TODAY,
        )
        assert result.success is False
        assert result.csv == ""
        assert [(e.field, e.message) for e in result.errors] == [
            ("invoice[1].customerName", "GoBD: Kundenname fehlt (GOB-008)"),
        ]

    def test_future_invoice_blocks_export(self, sample_invoice, export_config):
        result = format_invoices_for_datev([DatevInvoice(sample_invoice)], config=export_config, today=date(2024, 3, 1))
        assert [e.field for e in result.errors] == ["invoice[0].issueDate"]

    def test_entries_outside_period(self, sample_invoice):
        config = DatevExportConfig(datum_von="2024-01-01", datum_bis="2024-03-10")
        result = format_invoices_for_datev([DatevInvoice(sample_invoice)], config=config, today=TODAY)
        assert [e.field for e in result.errors] == ["entry[0].datum", "entry[1].datum"]

    def test_invalid_mapping_account(self, sample_invoice, export_config):
        mapping = DatevInvoiceMapping(konto_eingangsrechnung="44-00")
        result = format_invoices_for_datev(
            [DatevInvoice(sample_invoice)], config=export_config, mapping=mapping, today=TODAY,
        )
        assert [e.field for e in result.errors] == ["entry[0].konto", "entry[1].konto"]


class TestExportToBytes:

    def test_utf8_with_bom(self, sample_invoice, export_config):
        result = export_invoices_to_bytes([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert result.success is True
        assert result.content.startswith(b"\xef\xbb\xbfEXTF;")

    def test_latin1_without_bom(self, sample_invoice, export_config):
        export_config.encoding = "ISO-8859-1"
        sample_invoice.seller.name = "Gärtnerei"
        result = export_invoices_to_bytes([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert result.content.startswith(b"EXTF;")
        assert "Gärtnerei".encode("latin-1") in result.content

    def test_unencodable_character_fails_instead_of_replacing(self, sample_invoice, export_config, caplog):
        export_config.encoding = "ISO-8859-1"
        sample_invoice.seller.name = "Euro€ GmbH"
        result = export_invoices_to_bytes([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert result.success is False
        assert result.content == b""
        assert result.errors == ["encoding: Zeichen '€' ist in ISO-8859-1 nicht darstellbar"]
        assert "nicht in ISO-8859-1 darstellbar" in caplog.text

    def test_windows_1252_keeps_euro_sign(self, sample_invoice, export_config):
        export_config.encoding = "WINDOWS-1252"
        sample_invoice.seller.name = "Euro€ GmbH"
        result = export_invoices_to_bytes([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert result.success is True
        assert "Euro€ GmbH".encode("cp1252") in result.content

    def test_errors_are_flattened(self, export_config):
        result = export_invoices_to_bytes([], config=export_config)
        assert result.success is False
        assert result.errors == ["invoices: Mindestens eine Rechnung ist erforderlich"]


class TestPreviewAndSummary:

    def test_preview_uses_configured_mapping_like_export(self, monkeypatch, sample_invoice, export_config):
        configured = DatevInvoiceMapping(konto_eingangsrechnung="3400")
        used = []

        def fake_map_invoices(invoices, mapping, detailed):
            used.append(mapping)
            return map_invoices(invoices, mapping, detailed)

        monkeypatch.setattr(DatevInvoiceMapping, "from_config", classmethod(lambda cls, config=None: configured))
        monkeypatch.setattr(datev_exporter, "map_invoices", fake_map_invoices)

        preview_export([DatevInvoice(sample_invoice)])
        format_invoices_for_datev([DatevInvoice(sample_invoice)], config=export_config, today=TODAY)
        assert used == [configured, configured]

    def test_preview(self, sample_invoice, simple_invoice):
        preview = preview_export([DatevInvoice(sample_invoice), DatevInvoice(simple_invoice, Richtung.AUSGANG)])
        assert preview == {
            "entryCount": 3,
            "totalAmount": 1481.5,
            "dateRange": {"from": "2024-03-15", "to": "2024-06-01"},
            "invoiceCount": 2,
        }

    def test_preview_without_dates(self, simple_invoice):
        simple_invoice.issue_date = None
        assert preview_export([DatevInvoice(simple_invoice)])["dateRange"] is None

    def test_summary(self, sample_invoice, simple_invoice):
        summary = get_export_summary([DatevInvoice(sample_invoice), DatevInvoice(simple_invoice, Richtung.AUSGANG)])
        assert summary["totalNetAmount"] == 1250.0
        assert summary["totalTaxAmount"] == 231.5
        assert summary["totalGrossAmount"] == 1481.5
        assert (summary["incomingCount"], summary["outgoingCount"]) == (1, 1)
        assert summary["outgoing"] == {"count": 1, "netAmount": 200.0, "taxAmount": 38.0, "grossAmount": 238.0}
