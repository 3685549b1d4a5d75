"""
Unit tests für die Kontierung (Rechnung -> DATEV-Buchungszeilen)
"""

import logging

import pytest

from erechnung.config import Config
from erechnung.kontierung import (
    DatevInvoice,
    DatevInvoiceMapping,
    Richtung,
    map_invoice_to_datev_entries,
    map_invoice_with_line_items_to_datev_entries,
    map_invoices,
    map_tax_rate_to_steuerschluessel,
    suggest_konto,
)
from erechnung.models import LineItem, TaxBreakdownEntry, Totals


class TestSteuerschluessel:

    @pytest.mark.parametrize("rate, key", [(19, "9"), (19.0, "9"), (7, "8"), (0, "0"), (None, "0")])
    def test_known_rates(self, rate, key):
        assert map_tax_rate_to_steuerschluessel(rate) == key

    @pytest.mark.parametrize("rate, key", [(16, "8"), (25, "9"), (5, "0")])
    def test_unknown_rates_fall_back_with_warning(self, caplog, rate, key):
        with caplog.at_level(logging.WARNING, logger="erechnung.kontierung"):
            assert map_tax_rate_to_steuerschluessel(rate) == key
        assert "Kein DATEV-Steuerschlüssel" in caplog.text

    def test_custom_mapping(self):
        mapping = DatevInvoiceMapping(steuerschluessel_standard="3", steuerschluessel_ermaessigt="2")
        assert map_tax_rate_to_steuerschluessel(19, mapping) == "3"
        assert map_tax_rate_to_steuerschluessel(7, mapping) == "2"


class TestDatevInvoiceMapping:

    def test_from_dict_ignores_unknown_keys(self):
        mapping = DatevInvoiceMapping.from_dict({"konto_eingangsrechnung": 3400, "unbekannt": "x"})
        assert mapping.konto_eingangsrechnung == "3400"
        assert mapping.gegenkonto_bank == "1200"

    def test_from_empty(self):
        assert DatevInvoiceMapping.from_dict(None) == DatevInvoiceMapping()

    def test_from_config(self):
        config = Config(data={"datev": {"mapping": {"konto_eingangsrechnung": "3400", "steuerschluessel_standard": 3}}})
        mapping = DatevInvoiceMapping.from_config(config)
        assert mapping.konto_eingangsrechnung == "3400"
        assert mapping.steuerschluessel_standard == "3"
        assert mapping.konto_ausgangsrechnung == "1200"


class TestSummenbuchung:
    """Eine Bruttobuchung je Steuersatz"""

    def test_incoming_invoice(self, sample_invoice):
        entries = map_invoice_to_datev_entries(DatevInvoice(sample_invoice))
        assert [(e.betrag, e.steuerschluessel, e.steuersatz) for e in entries] == [
            (53.5, "8", 7.0),
            (1190.0, "9", 19.0),
        ]
        first = entries[0]
        assert (first.konto, first.gegenkonto, first.soll_haben) == ("4400", "1200", "S")
        assert first.buchungstext == "ER: Muster GmbH - RE-2024-0042"
        assert first.belegnummer == "RE-2024-0042"
        assert (first.netto, first.steuer) == (50.0, 3.5)

    def test_outgoing_invoice(self, sample_invoice):
        entries = map_invoice_to_datev_entries(DatevInvoice(sample_invoice, Richtung.AUSGANG))
        first = entries[0]
        assert (first.konto, first.gegenkonto, first.soll_haben) == ("1200", "8000", "H")
        assert first.buchungstext == "AR: Beispiel AG - RE-2024-0042"

    def test_per_invoice_overrides(self, sample_invoice):
        datev_invoice = DatevInvoice(sample_invoice, konto="4930", gegenkonto="1800", kostenstelle="KST1")
        entry = map_invoice_to_datev_entries(datev_invoice)[0]
        assert (entry.konto, entry.gegenkonto, entry.kostenstelle) == ("4930", "1800", "KST1")

    def test_breakdown_derived_from_lines(self, simple_invoice):
        entries = map_invoice_to_datev_entries(DatevInvoice(simple_invoice))
        assert [(e.betrag, e.steuerschluessel) for e in entries] == [(238.0, "9")]

    def test_totals_only(self, simple_invoice):
        simple_invoice.line_items = []
        entries = map_invoice_to_datev_entries(DatevInvoice(simple_invoice))
        assert [(e.betrag, e.steuerschluessel) for e in entries] == [(238.0, "9")]

    def test_credit_note_flips_side(self, simple_invoice):
        simple_invoice.tax_breakdown = [TaxBreakdownEntry(rate=19.0, taxable_amount=-200.0, tax_amount=-38.0)]
        entry = map_invoice_to_datev_entries(DatevInvoice(simple_invoice))[0]
        assert (entry.betrag, entry.soll_haben) == (238.0, "H")

    def test_long_document_number_keeps_tail(self, simple_invoice):
        simple_invoice.document_id = "LIEFERANT-2024-000123"
        entry = map_invoice_to_datev_entries(DatevInvoice(simple_invoice))[0]
        assert entry.belegnummer == "-2024-000123"
        assert len(entry.belegnummer) <= 12

    def test_unknown_partner(self, simple_invoice):
        simple_invoice.seller.name = "  "
        entry = map_invoice_to_datev_entries(DatevInvoice(simple_invoice))[0]
        assert entry.buchungstext == "ER: Unbekannt - 2024-100"


class TestEinzelbuchung:
    """Eine Buchung je Rechnungsposition"""

    def test_one_entry_per_line(self, sample_invoice):
        entries = map_invoice_with_line_items_to_datev_entries(DatevInvoice(sample_invoice))
        assert [(e.buchungstext, e.betrag, e.steuerschluessel) for e in entries] == [
            ("Beratung - Muster GmbH", 1190.0, "9"),
            ("Fachbuch Umsatzsteuerrecht - Muster GmbH", 53.5, "8"),
        ]

    def test_missing_line_amounts_are_computed(self, simple_invoice):
        simple_invoice.line_items = [LineItem(position_index=4, unit_price=10.0, quantity=5, tax_rate=7.0)]
        entry = map_invoice_with_line_items_to_datev_entries(DatevInvoice(simple_invoice))[0]
        assert entry.buchungstext == "Position 4 - Lieferant KG"
        assert (entry.netto, entry.steuer, entry.betrag) == (50.0, 3.5, 53.5)

    def test_without_lines_falls_back_to_summenbuchung(self, simple_invoice):
        simple_invoice.line_items = []
        simple_invoice.totals = Totals(net_amount=100.0, tax_amount=7.0, gross_amount=107.0)
        entries = map_invoice_with_line_items_to_datev_entries(DatevInvoice(simple_invoice))
        assert [(e.betrag, e.steuerschluessel) for e in entries] == [(107.0, "8")]

    def test_map_invoices_mixes_directions(self, sample_invoice, simple_invoice):
        entries = map_invoices([
            DatevInvoice(sample_invoice),
            DatevInvoice(simple_invoice, Richtung.AUSGANG),
        ], detailed=True)
        assert [e.richtung for e in entries] == [Richtung.EINGANG, Richtung.EINGANG, Richtung.AUSGANG]


def test_suggest_konto(simple_invoice):
    mapping = DatevInvoiceMapping(konto_eingangsrechnung="3400")
    assert suggest_konto(DatevInvoice(simple_invoice), mapping) == "3400"
    assert suggest_konto(DatevInvoice(simple_invoice, Richtung.AUSGANG)) == "1200"
