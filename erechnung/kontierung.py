#!/usr/bin/env python3
"""
SBS Deutschland – Kontierung für den DATEV-Export
Ordnet Rechnungen Sachkonten, Gegenkonten und DATEV-Steuerschlüssel zu.

Eingangsrechnungen werden im Soll auf das Aufwandskonto gebucht,
Ausgangsrechnungen im Haben auf das Erlöskonto. Gebucht wird immer brutto,
der Steuerschlüssel sorgt in DATEV für die automatische Steuerbuchung.
"""

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from .config import Config
from .models import CanonicalInvoice, LineItem, round_money

logger = logging.getLogger(__name__)

# =============================================================================
# KONFIGURATION
# =============================================================================

DEFAULT_KONTO_EINGANG = "4400"
DEFAULT_KONTO_AUSGANG = "1200"
DEFAULT_GEGENKONTO_BANK = "1200"
DEFAULT_GEGENKONTO_ERLOESE = "8000"

STEUERSCHLUESSEL_STANDARD = "9"     # Vorsteuer 19%
STEUERSCHLUESSEL_ERMAESSIGT = "8"   # Vorsteuer 7%
STEUERSCHLUESSEL_STEUERFREI = "0"

MAX_BUCHUNGSTEXT_LENGTH = 60
MAX_BELEGNUMMER_LENGTH = 12
MAX_KOSTENSTELLE_LENGTH = 8

UNBEKANNT = "Unbekannt"


class Richtung(str, Enum):
    EINGANG = "incoming"
    AUSGANG = "outgoing"


@dataclass
class DatevInvoiceMapping:
    """Kontenzuordnung und Steuerschlüssel (SKR03-Voreinstellung)"""
    konto_eingangsrechnung: str = DEFAULT_KONTO_EINGANG
    konto_ausgangsrechnung: str = DEFAULT_KONTO_AUSGANG
    gegenkonto_bank: str = DEFAULT_GEGENKONTO_BANK
    gegenkonto_erloese: str = DEFAULT_GEGENKONTO_ERLOESE
    steuerschluessel_standard: str = STEUERSCHLUESSEL_STANDARD
    steuerschluessel_ermaessigt: str = STEUERSCHLUESSEL_ERMAESSIGT
    steuerschluessel_steuerfrei: str = STEUERSCHLUESSEL_STEUERFREI
    default_kostenstelle: Optional[str] = None
    default_kostentraeger: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DatevInvoiceMapping':
        """Aus dem ``datev.mapping``-Abschnitt der Konfiguration; unbekannte Schlüssel werden ignoriert"""
        if not data:
            return cls()
        valid_fields = set(cls.__dataclass_fields__)
        return cls(**{k: str(v) for k, v in data.items() if k in valid_fields and v is not None})

    @classmethod
    def from_config(cls, config: Optional[Config] = None) -> 'DatevInvoiceMapping':
        return cls.from_dict((config or Config()).get("datev.mapping"))


@dataclass
class DatevInvoice:
    """Rechnung mit Buchungsrichtung und optionaler Kontierung je Rechnung"""
    invoice: CanonicalInvoice
    richtung: Richtung = Richtung.EINGANG
    id: Optional[str] = None
    konto: Optional[str] = None
    gegenkonto: Optional[str] = None
    kostenstelle: Optional[str] = None
    kostentraeger: Optional[str] = None

    @property
    def is_incoming(self) -> bool:
        return self.richtung == Richtung.EINGANG

    @property
    def partner_name(self) -> str:
        party = self.invoice.seller if self.is_incoming else self.invoice.buyer
        return (party.name or '').strip() or UNBEKANNT


@dataclass
class DatevEntry:
    """Einzelne Buchungszeile"""
    datum: Optional[date]
    konto: str
    gegenkonto: str
    betrag: float
    soll_haben: str = "S"
    steuerschluessel: str = ""
    steuersatz: Optional[float] = None
    buchungstext: str = ""
    belegnummer: str = ""
    kostenstelle: str = ""
    kostentraeger: str = ""
    waehrung: str = "EUR"
    richtung: Richtung = Richtung.EINGANG
    netto: float = 0.0
    steuer: float = 0.0


def map_tax_rate_to_steuerschluessel(rate: Optional[float], mapping: Optional[DatevInvoiceMapping] = None) -> str:
    """
    19% -> Standard, 7% -> ermäßigt, 0% -> steuerfrei.

    Andere Sätze werden dem nächstniedrigeren bekannten Satz zugeordnet.
    """
    mapping = mapping or DatevInvoiceMapping()
    value = round(float(rate or 0), 2)

    if value == 19:
        return mapping.steuerschluessel_standard
    if value == 7:
        return mapping.steuerschluessel_ermaessigt
    if value == 0:
        return mapping.steuerschluessel_steuerfrei

    logger.warning(f"Kein DATEV-Steuerschlüssel für {value}%, verwende Näherung")
    if value > 19:
        return mapping.steuerschluessel_standard
    if value > 7:
        return mapping.steuerschluessel_ermaessigt
    return mapping.steuerschluessel_steuerfrei


def _truncate(text: str, length: int) -> str:
    return text if len(text) <= length else text[:length]


def _belegnummer(datev_invoice: DatevInvoice) -> str:
    number = (datev_invoice.invoice.document_id or datev_invoice.id or '').strip()
    # laufende Nummer steht meist am Ende
    return number[-MAX_BELEGNUMMER_LENGTH:]


def _header_rate(invoice: CanonicalInvoice) -> float:
    totals = invoice.totals
    if totals.net_amount and totals.tax_amount is not None:
        return round(totals.tax_amount / totals.net_amount * 100)
    return 0.0


def _line_amounts(item: LineItem) -> tuple:
    """(netto, steuer, brutto) einer Position"""
    rate = item.tax_rate or 0.0
    net = item.net_amount
    if net is None:
        net = item.unit_price * item.quantity if item.unit_price else 0.0
    tax = item.tax_amount if item.tax_amount is not None else net * rate / 100
    gross = item.gross_amount if item.gross_amount is not None else net + tax
    return round_money(net), round_money(tax), round_money(gross)


class _EntryBuilder:
    def __init__(self, datev_invoice: DatevInvoice, mapping: DatevInvoiceMapping):
        self.source = datev_invoice
        self.mapping = mapping
        invoice = datev_invoice.invoice

        if datev_invoice.is_incoming:
            self.konto = datev_invoice.konto or mapping.konto_eingangsrechnung
            self.gegenkonto = datev_invoice.gegenkonto or mapping.gegenkonto_bank
            self.soll_haben = "S"
            self.prefix = "ER"
        else:
            self.konto = datev_invoice.konto or mapping.konto_ausgangsrechnung
            self.gegenkonto = datev_invoice.gegenkonto or mapping.gegenkonto_erloese
            self.soll_haben = "H"
            self.prefix = "AR"

        self.belegnummer = _belegnummer(datev_invoice)
        self.kostenstelle = datev_invoice.kostenstelle or mapping.default_kostenstelle or ""
        self.kostentraeger = datev_invoice.kostentraeger or mapping.default_kostentraeger or ""
        self.datum = invoice.issue_date
        self.waehrung = (invoice.currency or "EUR").upper()

    def entry(self, text: str, rate: float, net: float, tax: float, gross: float) -> DatevEntry:
        soll_haben = self.soll_haben
        if gross < 0:
            # Gutschrift: Betrag positiv, Buchungsseite tauschen
            soll_haben = "H" if soll_haben == "S" else "S"

        return DatevEntry(
            datum=self.datum,
            konto=self.konto,
            gegenkonto=self.gegenkonto,
            betrag=abs(round_money(gross)),
            soll_haben=soll_haben,
            steuerschluessel=map_tax_rate_to_steuerschluessel(rate, self.mapping),
            steuersatz=rate,
            buchungstext=_truncate(text, MAX_BUCHUNGSTEXT_LENGTH),
            belegnummer=self.belegnummer,
            kostenstelle=self.kostenstelle,
            kostentraeger=self.kostentraeger,
            waehrung=self.waehrung,
            richtung=self.source.richtung,
            netto=round_money(net),
            steuer=round_money(tax),
        )


def map_invoice_to_datev_entries(
    datev_invoice: DatevInvoice,
    mapping: Optional[DatevInvoiceMapping] = None,
) -> List[DatevEntry]:
    """
    Summenbuchung: eine Bruttobuchung je Steuersatz der Rechnung.

    Ohne Steueraufschlüsselung und ohne Positionen wird der Rechnungsbetrag
    mit dem aus den Summen abgeleiteten Steuersatz gebucht.
    """
    mapping = mapping or DatevInvoiceMapping()
    builder = _EntryBuilder(datev_invoice, mapping)
    invoice = datev_invoice.invoice
    text = f"{builder.prefix}: {datev_invoice.partner_name} - {builder.belegnummer}"

    breakdown = invoice.tax_breakdown or invoice.derive_tax_breakdown()
    if breakdown:
        return [
            builder.entry(text, entry.rate, entry.taxable_amount, entry.tax_amount,
                          entry.taxable_amount + entry.tax_amount)
            for entry in breakdown
        ]

    totals = invoice.totals
    net = totals.net_amount or 0.0
    tax = totals.tax_amount or 0.0
    gross = totals.gross_amount if totals.gross_amount is not None else net + tax
    return [builder.entry(text, _header_rate(invoice), net, tax, gross)]


def map_invoice_with_line_items_to_datev_entries(
    datev_invoice: DatevInvoice,
    mapping: Optional[DatevInvoiceMapping] = None,
) -> List[DatevEntry]:
    """Einzelbuchung: eine Buchung je Rechnungsposition"""
    mapping = mapping or DatevInvoiceMapping()
    invoice = datev_invoice.invoice
    if not invoice.line_items:
        return map_invoice_to_datev_entries(datev_invoice, mapping)

    builder = _EntryBuilder(datev_invoice, mapping)
    entries = []
    for item in sorted(invoice.line_items, key=lambda i: i.position_index):
        description = (item.description or '').strip()
        description = _truncate(description, 40) if description else f"Position {item.position_index}"
        net, tax, gross = _line_amounts(item)
        entries.append(builder.entry(
            f"{description} - {datev_invoice.partner_name}",
            item.tax_rate or 0.0, net, tax, gross,
        ))
    return entries


def map_invoices(
    invoices: List[DatevInvoice],
    mapping: Optional[DatevInvoiceMapping] = None,
    detailed: bool = False,
) -> List[DatevEntry]:
    mapper = map_invoice_with_line_items_to_datev_entries if detailed else map_invoice_to_datev_entries
    entries: List[DatevEntry] = []
    for datev_invoice in invoices:
        entries.extend(mapper(datev_invoice, mapping))
    return entries


def suggest_konto(datev_invoice: DatevInvoice, mapping: Optional[DatevInvoiceMapping] = None) -> str:
    """Standardkonto je Buchungsrichtung"""
    mapping = mapping or DatevInvoiceMapping()
    return mapping.konto_eingangsrechnung if datev_invoice.is_incoming else mapping.konto_ausgangsrechnung
