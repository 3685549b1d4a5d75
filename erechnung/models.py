"""
SBS Deutschland – Domain Models
Kanonisches Rechnungsmodell, in das alle Eingangsformate (CII, UBL, OCR)
überführt werden und aus dem XRechnung und DATEV erzeugt werden.
"""

import re
from dataclasses import MISSING, dataclass, field, fields, asdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, Dict, Any

from .parsing_utils import parse_amount, parse_invoice_date

# Zulässige deutsche Umsatzsteuersätze
VALID_TAX_RATES = (0.0, 7.0, 19.0)

AMOUNT_FIELDS = frozenset({
    "position_index", "quantity", "unit_price", "net_amount", "tax_rate", "tax_amount",
    "gross_amount", "rate", "taxable_amount",
})


class InvoiceSource(str, Enum):
    """Herkunft einer Rechnung"""
    XRECHNUNG = "XRECHNUNG"
    ZUGFERD = "ZUGFERD"
    OCR = "OCR"
    MANUAL = "MANUAL"


@dataclass
class Party:
    """Verkäufer oder Käufer (BG-4 / BG-7)"""
    name: str = ""
    street: str = ""
    post_code: str = ""
    city: str = ""
    country_code: str = ""
    vat_id: Optional[str] = None
    tax_number: Optional[str] = None


@dataclass
class PaymentInfo:
    """Zahlungsinformationen (BG-16)"""
    means: str = ""
    iban: Optional[str] = None
    bic: Optional[str] = None
    terms: Optional[str] = None


@dataclass
class LineItem:
    """Rechnungsposition (BG-25)"""
    position_index: int = 1
    description: str = ""
    quantity: float = 1.0
    unit: str = "C62"
    unit_price: float = 0.0
    net_amount: Optional[float] = None
    tax_rate: Optional[float] = None
    tax_amount: Optional[float] = None
    gross_amount: Optional[float] = None


@dataclass
class Totals:
    """Rechnungssummen (BG-22)"""
    net_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    gross_amount: Optional[float] = None


@dataclass
class TaxBreakdownEntry:
    """Umsatzsteueraufschlüsselung je Steuersatz (BG-23)"""
    rate: float
    taxable_amount: float
    tax_amount: float


@dataclass
class CanonicalInvoice:
    """Formatunabhängige Rechnung"""
    document_id: str = ""
    document_type_code: str = "380"
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    currency: str = "EUR"
    seller: Party = field(default_factory=Party)
    buyer: Party = field(default_factory=Party)
    payment: PaymentInfo = field(default_factory=PaymentInfo)
    line_items: List[LineItem] = field(default_factory=list)
    totals: Totals = field(default_factory=Totals)
    tax_breakdown: List[TaxBreakdownEntry] = field(default_factory=list)
    buyer_reference: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    source: Optional[InvoiceSource] = None

    def to_dict(self) -> Dict[str, Any]:
        """Konvertiert zu Dictionary für JSON"""
        data = asdict(self)
        data['issue_date'] = self.issue_date.isoformat() if self.issue_date else None
        data['due_date'] = self.due_date.isoformat() if self.due_date else None
        data['source'] = self.source.value if isinstance(self.source, Enum) else self.source
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CanonicalInvoice':
        """Erstellt Rechnung aus Dictionary (snake_case oder camelCase)"""
        data = _snake_keys(data)

        kwargs: Dict[str, Any] = {}
        for name in ('document_id', 'document_type_code', 'currency', 'buyer_reference'):
            if data.get(name) is not None:
                kwargs[name] = str(data[name])
        for name in ('issue_date', 'due_date'):
            value = data.get(name)
            kwargs[name] = parse_invoice_date(value)
        if data.get('notes'):
            kwargs['notes'] = list(data['notes'])
        if data.get('source'):
            kwargs['source'] = InvoiceSource(data['source'])

        kwargs['seller'] = _build(Party, data.get('seller'))
        kwargs['buyer'] = _build(Party, data.get('buyer'))
        kwargs['payment'] = _build(PaymentInfo, data.get('payment'))
        kwargs['totals'] = _build(Totals, data.get('totals'))
        kwargs['line_items'] = [_build(LineItem, item) for item in data.get('line_items') or []]
        kwargs['tax_breakdown'] = [
            _build(TaxBreakdownEntry, item) for item in data.get('tax_breakdown') or [] if item is not None
        ]

        return cls(**kwargs)

    def derive_tax_breakdown(self) -> List[TaxBreakdownEntry]:
        """Gruppiert Positionen nach Steuersatz (aufsteigend sortiert)"""
        groups: Dict[float, List[float]] = {}
        for item in self.line_items:
            if item.tax_rate is None or item.net_amount is None:
                continue
            bucket = groups.setdefault(float(item.tax_rate), [0.0, 0.0])
            bucket[0] += item.net_amount
            if item.tax_amount is not None:
                bucket[1] += item.tax_amount
            else:
                bucket[1] += item.net_amount * item.tax_rate / 100

        return [
            TaxBreakdownEntry(rate=rate, taxable_amount=round_money(net), tax_amount=round_money(tax))
            for rate, (net, tax) in sorted(groups.items())
        ]


def round_money(value: float) -> float:
    """Kaufmännisch auf 2 Nachkommastellen runden"""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {re.sub(r'(?<!^)(?=[A-Z])', '_', k).lower(): v for k, v in data.items()}


def _build(cls, data: Optional[Dict[str, Any]]):
    if data is None:
        return cls() if cls is not TaxBreakdownEntry else None
    if isinstance(data, cls):
        return data
    data = _snake_keys(data)

    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        value = data.get(f.name)
        if f.name in AMOUNT_FIELDS:
            # Beträge als Zahl; fehlend oder unlesbar -> Default bzw. None
            value = parse_amount(value)
            if f.name == "position_index" and value is not None:
                value = int(value)
        if value is None and (f.default is not MISSING or f.default_factory is not MISSING):
            continue
        kwargs[f.name] = value
    return cls(**kwargs)
