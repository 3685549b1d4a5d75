#!/usr/bin/env python3
"""
DATEV ASCII Export Module
Exportiert Rechnungen als DATEV-Buchungsstapel (EXTF, Version 700).

Ablauf je Export:
1. GoBD-Prüfung im Strict-Modus, jede Verletzung bricht den ganzen Stapel ab
2. Kontierung (Summen- oder Einzelbuchung)
3. Strukturprüfung aller Buchungszeilen
4. CSV: Semikolon, CRLF, Datum TTMMJJJJ, Dezimalkomma, UTF-8 mit BOM

Gleiche Rechnungen, Konfiguration und Kontierung ergeben byte-identische CSV.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

from .config import Config
from .exceptions import ExportError
from .gobd import GoBDInvoiceData, validate_gobd_compliance
from .kontierung import (
    DatevEntry,
    DatevInvoice,
    DatevInvoiceMapping,
    Richtung,
    MAX_BELEGNUMMER_LENGTH,
    MAX_BUCHUNGSTEXT_LENGTH,
    MAX_KOSTENSTELLE_LENGTH,
    map_invoices,
)
from .logging_utils import LogContext, log_execution_time
from .models import round_money
from .parsing_utils import parse_invoice_date

logger = logging.getLogger(__name__)

DATEV_FORMAT = "EXTF"
DATEV_VERSION = 700
DATEV_CATEGORY = 21
DATEV_FORMAT_NAME = "Buchungsstapel"
DATEV_FORMAT_VERSION = 13

FIELD_DELIMITER = ";"
LINE_DELIMITER = "\r\n"
UTF8_BOM = "\ufeff"

MAX_KONTO_LENGTH = 9

VALID_ENCODINGS = ("UTF-8", "ISO-8859-1", "WINDOWS-1252")
VALID_KONTENRAHMEN = ("SKR03", "SKR04")
PYTHON_CODECS = {"UTF-8": "utf-8", "ISO-8859-1": "latin-1", "WINDOWS-1252": "cp1252"}

FORMAT_STANDARD = "standard"
FORMAT_EXTENDED = "extended"

DATEV_HEADER_FIELDS = [
    "Umsatz (ohne Soll/Haben-Kz)",
    "Soll/Haben-Kennzeichen",
    "WKZ Umsatz",
    "Kurs",
    "Basis-Umsatz",
    "WKZ Basis-Umsatz",
    "Konto",
    "Gegenkonto (ohne BU-Schlüssel)",
    "BU-Schlüssel",
    "Belegdatum",
    "Belegfeld 1",
    "Belegfeld 2",
    "Skonto",
    "Buchungstext",
    "Postensperre",
    "Diverse Adressnummer",
    "Geschäftspartnerbank",
    "Sperre",
    "Zahlungsbedingung",
    "Fälligkeit",
    "Generalumkehr (GU)",
    "Mahn-/Zahlshinweis",
    "Skontobetragsperre",
    "Zahlungsbetrag",
    "Bezeichnung Zahlungsbetrag",
    "Kostenstelle",
    "Kostenträger",
    "Kostenart",
]

EXTENDED_HEADER_FIELDS = [
    "Steuersatz",
    "Nettobetrag",
    "Steuerbetrag",
    "Rechnungsart",
]

DATUM_PATTERN = re.compile(r'^[0-3]\d[0-1]\d\d{4}$')
KONTO_PATTERN = re.compile(r'^\d{1,%d}$' % MAX_KONTO_LENGTH)


@dataclass
class DatevValidationError:
    field: str
    message: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"field": self.field, "message": self.message}
        if self.value is not None:
            data["value"] = self.value
        return data


@dataclass
class DatevExportConfig:
    """Kopfdaten des Buchungsstapels"""
    berater_nummer: Optional[str] = None
    mandanten_nummer: Optional[str] = None
    wirtschaftsjahr_beginn: Optional[str] = None   # MMDD oder YYYYMMDD
    sachkontenrahmen: str = "SKR03"
    sachkontenlaenge: int = 4
    bezeichnung: str = "Rechnungsexport"
    datum_von: Optional[Union[date, str]] = None
    datum_bis: Optional[Union[date, str]] = None
    encoding: str = "UTF-8"

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> 'DatevExportConfig':
        """Aus dem ``datev``-Abschnitt (YAML) plus DATEV_BERATER_NUMMER / DATEV_MANDANTEN_NUMMER"""
        section = (config or Config()).datev_section()
        valid_fields = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in section.items() if k in valid_fields and v is not None}
        for name in ('berater_nummer', 'mandanten_nummer', 'wirtschaftsjahr_beginn'):
            if name in kwargs:
                kwargs[name] = str(kwargs[name])
        return cls(**kwargs)

    @property
    def von(self) -> Optional[date]:
        return parse_invoice_date(self.datum_von)

    @property
    def bis(self) -> Optional[date]:
        return parse_invoice_date(self.datum_bis)

    def validate(self) -> List[DatevValidationError]:
        errors = []

        if self.berater_nummer and not re.match(r'^\d{1,8}$', self.berater_nummer):
            errors.append(DatevValidationError(
                "beraterNummer", "Beraternummer muss eine Zahl mit maximal 8 Stellen sein", self.berater_nummer,
            ))

        if self.mandanten_nummer and not re.match(r'^\d{1,5}$', self.mandanten_nummer):
            errors.append(DatevValidationError(
                "mandantenNummer", "Mandantennummer muss eine Zahl mit maximal 5 Stellen sein", self.mandanten_nummer,
            ))

        if self.wirtschaftsjahr_beginn and _wj_beginn_to_date(self.wirtschaftsjahr_beginn, 2000) is None:
            errors.append(DatevValidationError(
                "wirtschaftsjahrBeginn", "Wirtschaftsjahr-Beginn muss als MMTT oder JJJJMMTT angegeben werden",
                self.wirtschaftsjahr_beginn,
            ))

        if self.sachkontenrahmen not in VALID_KONTENRAHMEN:
            errors.append(DatevValidationError("sachkontenrahmen", "Sachkontenrahmen muss SKR03 oder SKR04 sein", self.sachkontenrahmen))

        if (self.encoding or '').upper() not in VALID_ENCODINGS:
            errors.append(DatevValidationError("encoding", "Ungültige Kodierung", self.encoding))

        for name, raw, parsed in (('datumVon', self.datum_von, self.von), ('datumBis', self.datum_bis, self.bis)):
            if raw not in (None, '') and parsed is None:
                errors.append(DatevValidationError(name, "Ungültiges Datum", raw))

        if self.von and self.bis and self.von > self.bis:
            errors.append(DatevValidationError("datumVon", "Datum von darf nicht nach Datum bis liegen"))

        return errors

    def validate_or_raise(self):
        """
        Raises:
            ExportError: Konfiguration ungültig
        """
        errors = self.validate()
        if errors:
            raise ExportError(
                "DATEV",
                "; ".join(e.message for e in errors),
                {"errors": [e.to_dict() for e in errors]},
            )


@dataclass
class DatevExportResult:
    success: bool
    csv: str = ""
    filename: str = ""
    entry_count: int = 0
    total_amount: float = 0.0
    errors: List[DatevValidationError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "csv": self.csv,
            "filename": self.filename,
            "entryCount": self.entry_count,
            "totalAmount": self.total_amount,
        }
        if self.errors:
            data["errors"] = [e.to_dict() for e in self.errors]
        return data


# =============================================================================
# FORMATIERUNG
# =============================================================================

def format_amount(amount: float) -> str:
    """1234.5 -> '1234,50'"""
    return f"{round_money(amount):.2f}".replace('.', ',')


def format_date(value: Optional[date]) -> str:
    """Datum als TTMMJJJJ"""
    return value.strftime('%d%m%Y') if value else ""


def escape_field(value: Any) -> str:
    """Zeilenumbrüche -> Leerzeichen; Felder mit ; oder " in Anführungszeichen"""
    if value is None:
        return ""
    cleaned = re.sub(r'[\r\n]+', ' ', str(value)).strip()
    if FIELD_DELIMITER in cleaned or '"' in cleaned:
        cleaned = '"' + cleaned.replace('"', '""') + '"'
    return cleaned


def _format_rate(rate: Optional[float]) -> str:
    if rate is None:
        return ""
    return f"{rate:.2f}".rstrip('0').rstrip('.').replace('.', ',')


def _wj_beginn_to_date(value: str, fallback_year: int) -> Optional[date]:
    text = (value or '').strip()
    if re.match(r'^\d{8}$', text):
        year, month, day = int(text[:4]), int(text[4:6]), int(text[6:])
    elif re.match(r'^\d{4}$', text):
        year, month, day = fallback_year, int(text[:2]), int(text[2:])
    else:
        return None
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _date_range(entries: List[DatevEntry], config: DatevExportConfig) -> tuple:
    dates = [e.datum for e in entries if e.datum]
    von = config.von or (min(dates) if dates else None)
    bis = config.bis or (max(dates) if dates else None)
    return von, bis


def generate_header(config: DatevExportConfig, entries: List[DatevEntry]) -> str:
    """
    Kopfzeile des Buchungsstapels.

    "Erzeugt am" ist das Ende des Buchungszeitraums, nicht die Uhrzeit des
    Exports, damit identische Exporte identische Dateien ergeben.
    """
    von, bis = _date_range(entries, config)
    erzeugt_am = f"{bis:%Y%m%d}000000000" if bis else ""

    wj_beginn = ""
    if config.wirtschaftsjahr_beginn:
        wj = _wj_beginn_to_date(config.wirtschaftsjahr_beginn, (von or bis or date(2000, 1, 1)).year)
        wj_beginn = f"{wj:%Y%m%d}" if wj else ""
    elif von:
        wj_beginn = f"{von.year}0101"

    currencies = sorted({e.waehrung for e in entries}) or ["EUR"]

    fields = [
        DATEV_FORMAT,
        str(DATEV_VERSION),
        str(DATEV_CATEGORY),
        DATEV_FORMAT_NAME,
        str(DATEV_FORMAT_VERSION),
        erzeugt_am,
        "",
        "RE",
        "",
        "",
        config.berater_nummer or "",
        config.mandanten_nummer or "",
        wj_beginn,
        str(config.sachkontenlaenge),
        f"{von:%Y%m%d}" if von else "",
        f"{bis:%Y%m%d}" if bis else "",
        escape_field(config.bezeichnung),
        "",
        "1",
        "0",
        "0",
        currencies[0],
    ]
    return FIELD_DELIMITER.join(fields)


def generate_row(entry: DatevEntry, extended: bool = False) -> str:
    fields = [
        format_amount(entry.betrag),
        entry.soll_haben,
        entry.waehrung or "EUR",
        "",
        "",
        "",
        entry.konto,
        entry.gegenkonto,
        entry.steuerschluessel or "",
        format_date(entry.datum),
        escape_field(entry.belegnummer),
        "",
        "",
        escape_field(entry.buchungstext),
        "",
        "",
        "",
        "",
        "",
        "",
        "",
        "",
        "",
        "",
        "",
        escape_field(entry.kostenstelle),
        escape_field(entry.kostentraeger),
        "",
    ]
    if extended:
        fields.extend([
            _format_rate(entry.steuersatz),
            format_amount(entry.netto),
            format_amount(entry.steuer),
            "ER" if entry.richtung == Richtung.EINGANG else "AR",
        ])
    return FIELD_DELIMITER.join(fields)


def generate_csv(entries: List[DatevEntry], config: DatevExportConfig, extended: bool = False) -> str:
    """CSV-Text, bei UTF-8 mit BOM"""
    if not entries:
        raise ValueError("Mindestens eine Buchung ist erforderlich")

    columns = DATEV_HEADER_FIELDS + (EXTENDED_HEADER_FIELDS if extended else [])
    lines = [generate_header(config, entries), FIELD_DELIMITER.join(columns)]
    lines.extend(generate_row(entry, extended) for entry in entries)

    csv = LINE_DELIMITER.join(lines) + LINE_DELIMITER
    if (config.encoding or "UTF-8").upper() == "UTF-8":
        return UTF8_BOM + csv
    return csv


def generate_filename(von: Optional[date], bis: Optional[date], prefix: str = "DATEV_Export") -> str:
    parts = [prefix] + [f"{d:%Y%m%d}" for d in (von, bis) if d]
    return "_".join(parts) + ".csv"


def generate_structured_filename(
    berater_nummer: Optional[str],
    mandanten_nummer: Optional[str],
    datum_von: Optional[date],
    datum_bis: Optional[date],
) -> str:
    """EXTF_{Berater}_{Mandant}_{von}_{bis}.csv"""
    von = f"{datum_von:%Y%m%d}" if datum_von else "00000000"
    bis = f"{datum_bis:%Y%m%d}" if datum_bis else "00000000"
    return f"EXTF_{berater_nummer or '0'}_{mandanten_nummer or '0'}_{von}_{bis}.csv"


# =============================================================================
# VALIDIERUNG
# =============================================================================

def validate_datev_entry(entry: DatevEntry, config: Optional[DatevExportConfig] = None) -> List[DatevValidationError]:
    errors = []

    if not isinstance(entry.datum, date) or not DATUM_PATTERN.match(format_date(entry.datum)):
        errors.append(DatevValidationError("datum", "Datum muss im Format TTMMJJJJ vorliegen", entry.datum))
    elif config is not None:
        if (config.von and entry.datum < config.von) or (config.bis and entry.datum > config.bis):
            errors.append(DatevValidationError(
                "datum", "Datum liegt außerhalb des Exportzeitraums", entry.datum.isoformat(),
            ))

    for name, value, label in (('konto', entry.konto, 'Konto'), ('gegenkonto', entry.gegenkonto, 'Gegenkonto')):
        if not value:
            errors.append(DatevValidationError(name, f"{label} ist erforderlich"))
        elif not KONTO_PATTERN.match(value):
            errors.append(DatevValidationError(name, f"{label} muss numerisch sein (max. {MAX_KONTO_LENGTH} Stellen)", value))

    if not entry.betrag or entry.betrag <= 0:
        errors.append(DatevValidationError("umsatz", "Umsatz muss größer als 0 sein", entry.betrag))

    if entry.soll_haben not in ("S", "H"):
        errors.append(DatevValidationError("sollHaben", "Soll/Haben-Kennzeichen muss S oder H sein", entry.soll_haben))

    if not entry.buchungstext:
        errors.append(DatevValidationError("buchungstext", "Buchungstext ist erforderlich"))
    elif len(entry.buchungstext) > MAX_BUCHUNGSTEXT_LENGTH:
        errors.append(DatevValidationError("buchungstext", "Buchungstext zu lang", entry.buchungstext))

    if not entry.belegnummer:
        errors.append(DatevValidationError("belegnummer", "Belegnummer ist erforderlich"))
    elif len(entry.belegnummer) > MAX_BELEGNUMMER_LENGTH:
        errors.append(DatevValidationError("belegnummer", "Belegnummer zu lang", entry.belegnummer))

    for name, value in (('kostenstelle', entry.kostenstelle), ('kostentraeger', entry.kostentraeger)):
        if value and len(value) > MAX_KOSTENSTELLE_LENGTH:
            errors.append(DatevValidationError(name, f"{name.capitalize()} zu lang (max. {MAX_KOSTENSTELLE_LENGTH} Zeichen)", value))

    return errors


def validate_all_entries(entries: List[DatevEntry], config: Optional[DatevExportConfig] = None) -> List[DatevValidationError]:
    errors = []
    for index, entry in enumerate(entries):
        for error in validate_datev_entry(entry, config):
            errors.append(DatevValidationError(f"entry[{index}].{error.field}", error.message, error.value))
    return errors


def _gobd_errors(invoices: List[DatevInvoice], tolerance: Optional[float], today: Optional[date]) -> List[DatevValidationError]:
    errors = []
    for index, datev_invoice in enumerate(invoices):
        data = GoBDInvoiceData.from_invoice(datev_invoice.invoice, datev_invoice.id or f"invoice-{index}")
        result = validate_gobd_compliance(data, strict_mode=True, tolerance=tolerance, today=today)
        for violation in result.violations:
            errors.append(DatevValidationError(
                f"invoice[{index}].{violation.field}",
                f"GoBD: {violation.message} ({violation.code})",
            ))
    return errors


# =============================================================================
# EXPORT
# =============================================================================

@log_execution_time(logger)
def format_invoices_for_datev(
    invoices: List[DatevInvoice],
    format: str = FORMAT_STANDARD,
    detailed: bool = False,
    config: Optional[DatevExportConfig] = None,
    mapping: Optional[DatevInvoiceMapping] = None,
    filename: Optional[str] = None,
    use_structured_filename: bool = False,
    tolerance: Optional[float] = None,
    today: Optional[date] = None,
) -> DatevExportResult:
    """
    Erstellt einen DATEV-Buchungsstapel.

    Wirft nicht; Konfigurations-, GoBD- und Buchungsfehler ergeben
    ``success=False`` mit Feldpfad je Fehler und ohne CSV.

    Args:
        invoices: Rechnungen mit Buchungsrichtung
        format: "standard" oder "extended" (zusätzliche Spalten)
        detailed: eine Buchung je Position statt je Steuersatz
        config: Kopfdaten; Standard aus ``Config``
        mapping: Kontierung; Standard aus ``datev.mapping``, sonst SKR03
        tolerance: GoBD-Summentoleranz; Standard aus ``Config``
    """
    config = config or DatevExportConfig.from_config()
    mapping = mapping or DatevInvoiceMapping.from_config()
    log = LogContext(logger, filename=filename, export_format=format, invoice_count=len(invoices))

    if not invoices:
        return DatevExportResult(False, errors=[DatevValidationError("invoices", "Mindestens eine Rechnung ist erforderlich")])

    if format not in (FORMAT_STANDARD, FORMAT_EXTENDED):
        return DatevExportResult(False, errors=[DatevValidationError("format", "Unbekanntes Exportformat", format)])

    config_errors = config.validate()
    if config_errors:
        log.warning("DATEV-Export abgebrochen: Konfiguration ungültig")
        return DatevExportResult(False, errors=config_errors)

    gobd_errors = _gobd_errors(invoices, tolerance, today)
    if gobd_errors:
        log.warning(f"DATEV-Export abgebrochen: {len(gobd_errors)} GoBD-Verletzungen")
        return DatevExportResult(False, errors=gobd_errors)

    entries = map_invoices(invoices, mapping, detailed)

    entry_errors = validate_all_entries(entries, config)
    if entry_errors:
        log.warning(f"DATEV-Export abgebrochen: {len(entry_errors)} ungültige Buchungen")
        return DatevExportResult(False, errors=entry_errors)

    csv = generate_csv(entries, config, extended=format == FORMAT_EXTENDED)

    von, bis = _date_range(entries, config)
    if not filename:
        if use_structured_filename:
            filename = generate_structured_filename(config.berater_nummer, config.mandanten_nummer, von, bis)
        else:
            filename = generate_filename(von, bis)

    total_amount = round_money(sum(entry.betrag for entry in entries))
    log.info(f"DATEV-Export erstellt: {len(entries)} Buchungen, {total_amount:.2f}")
    return DatevExportResult(
        success=True,
        csv=csv,
        filename=filename,
        entry_count=len(entries),
        total_amount=total_amount,
    )


def format_invoice_for_datev(invoice: DatevInvoice, **options) -> DatevExportResult:
    return format_invoices_for_datev([invoice], **options)


@dataclass
class DatevExportBytes:
    success: bool
    content: bytes = b""
    filename: str = ""
    errors: List[str] = field(default_factory=list)


def export_invoices_to_bytes(invoices: List[DatevInvoice], **options) -> DatevExportBytes:
    """Kodierte Datei für den Download (UTF-8 inkl. BOM, sonst ohne)"""
    result = format_invoices_for_datev(invoices, **options)
    if not result.success:
        return DatevExportBytes(False, errors=[f"{e.field}: {e.message}" for e in result.errors])

    config = options.get('config') or DatevExportConfig.from_config()
    encoding = (config.encoding or "UTF-8").upper()
    try:
        content = result.csv.encode(PYTHON_CODECS[encoding])
    except UnicodeEncodeError as e:
        # keine stillen Ersatzzeichen im Buchungsstapel
        character = e.object[e.start:e.end]
        logger.warning(f"DATEV-Export abgebrochen: {character!r} nicht in {encoding} darstellbar")
        return DatevExportBytes(False, errors=[
            f"encoding: Zeichen {character!r} ist in {encoding} nicht darstellbar",
        ])
    return DatevExportBytes(True, content, result.filename)


# =============================================================================
# VORSCHAU
# =============================================================================

def preview_export(
    invoices: List[DatevInvoice],
    detailed: bool = False,
    mapping: Optional[DatevInvoiceMapping] = None,
) -> Dict[str, Any]:
    """Trockenlauf ohne GoBD-Prüfung und ohne CSV"""
    entries = map_invoices(invoices, mapping or DatevInvoiceMapping.from_config(), detailed)
    dates = [i.invoice.issue_date for i in invoices if i.invoice.issue_date]

    return {
        "entryCount": len(entries),
        "totalAmount": round_money(sum(entry.betrag for entry in entries)),
        "dateRange": {"from": min(dates).isoformat(), "to": max(dates).isoformat()} if dates else None,
        "invoiceCount": len(invoices),
    }


def get_export_summary(
    invoices: List[DatevInvoice],
    detailed: bool = False,
    mapping: Optional[DatevInvoiceMapping] = None,
) -> Dict[str, Any]:
    """Netto/Steuer/Brutto gesamt und getrennt nach Eingangs- und Ausgangsrechnungen"""
    buckets = {
        Richtung.EINGANG: {"count": 0, "netAmount": 0.0, "taxAmount": 0.0, "grossAmount": 0.0},
        Richtung.AUSGANG: {"count": 0, "netAmount": 0.0, "taxAmount": 0.0, "grossAmount": 0.0},
    }
    for datev_invoice in invoices:
        totals = datev_invoice.invoice.totals
        bucket = buckets[datev_invoice.richtung]
        bucket["count"] += 1
        bucket["netAmount"] += totals.net_amount or 0.0
        bucket["taxAmount"] += totals.tax_amount or 0.0
        bucket["grossAmount"] += totals.gross_amount or 0.0

    for bucket in buckets.values():
        for key in ("netAmount", "taxAmount", "grossAmount"):
            bucket[key] = round_money(bucket[key])

    incoming, outgoing = buckets[Richtung.EINGANG], buckets[Richtung.AUSGANG]
    preview = preview_export(invoices, detailed, mapping)
    return {
        "invoiceCount": len(invoices),
        "entryCount": preview["entryCount"],
        "dateRange": preview["dateRange"],
        "totalNetAmount": round_money(incoming["netAmount"] + outgoing["netAmount"]),
        "totalTaxAmount": round_money(incoming["taxAmount"] + outgoing["taxAmount"]),
        "totalGrossAmount": round_money(incoming["grossAmount"] + outgoing["grossAmount"]),
        "incomingCount": incoming["count"],
        "outgoingCount": outgoing["count"],
        "incoming": incoming,
        "outgoing": outgoing,
    }
