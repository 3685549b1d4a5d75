"""
OCR-Normalisierung: lose typisierte OCR-JSON-Ausgabe -> geprüfte Rechnungsfelder.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import CanonicalInvoice, InvoiceSource, LineItem, Party, Totals, round_money
from .schemas import OcrInvoiceData

logger = logging.getLogger(__name__)


@dataclass
class OcrInvoiceFields:
    number: Optional[str] = None
    supplier_name: Optional[str] = None
    customer_name: Optional[str] = None
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    net_amount: Optional[float] = None
    tax_amount: Optional[float] = None
    gross_amount: Optional[float] = None


@dataclass
class OcrLineItemResult:
    position_index: int
    description: str
    quantity: float
    unit_price: float
    gross_amount: float


@dataclass
class OcrParseSuccess:
    invoice_fields: OcrInvoiceFields
    line_items: List[OcrLineItemResult]
    currency: str = "EUR"
    format: str = "UNKNOWN"
    success: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ('issue_date', 'due_date'):
            value = data['invoice_fields'][name]
            data['invoice_fields'][name] = value.isoformat() if value else None
        return data

    def to_canonical_invoice(self) -> CanonicalInvoice:
        """
        Überführt die OCR-Felder in das kanonische Modell (Quelle OCR).

        Das OCR liefert je Position nur den Bruttobetrag, Steuersätze sind
        unbekannt und bleiben leer.
        """
        f = self.invoice_fields
        return CanonicalInvoice(
            document_id=f.number or "",
            issue_date=f.issue_date,
            due_date=f.due_date,
            currency=self.currency,
            seller=Party(name=f.supplier_name or ""),
            buyer=Party(name=f.customer_name or ""),
            line_items=[
                LineItem(
                    position_index=item.position_index,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    gross_amount=round_money(item.gross_amount),
                )
                for item in self.line_items
            ],
            totals=Totals(net_amount=f.net_amount, tax_amount=f.tax_amount, gross_amount=f.gross_amount),
            source=InvoiceSource.OCR,
        )


@dataclass
class OcrParseFailure:
    errors: List[Dict[str, str]] = field(default_factory=list)
    success: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "errors": [dict(e) for e in self.errors]}


def parse_ocr_invoice_data(data: Any) -> Union[OcrParseSuccess, OcrParseFailure]:
    """
    Prüft und normalisiert OCR-Rechnungsdaten.

    Wirft nie; ungültige Eingaben ergeben ``OcrParseFailure`` mit
    ``{"path", "message"}`` je Fehler (Pfad z.B. ``lineItems.0.quantity``).
    """
    try:
        parsed = OcrInvoiceData.model_validate(data)
    except ValidationError as e:
        errors = [
            {"path": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        logger.info(f"OCR-Daten ungültig: {len(errors)} Fehler")
        return OcrParseFailure(errors=errors)

    totals = parsed.totals
    fields = OcrInvoiceFields(
        number=parsed.number,
        supplier_name=parsed.supplier.name if parsed.supplier else None,
        customer_name=parsed.customer.name if parsed.customer else None,
        issue_date=parsed.issue_date,
        due_date=parsed.due_date,
        net_amount=totals.net_amount if totals else None,
        tax_amount=totals.tax_amount if totals else None,
        gross_amount=totals.gross_amount if totals else None,
    )

    line_items = [
        OcrLineItemResult(
            position_index=index,
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price,
            gross_amount=item.total,
        )
        for index, item in enumerate(parsed.line_items, 1)
    ]

    return OcrParseSuccess(
        invoice_fields=fields,
        line_items=line_items,
        currency=totals.currency if totals else "EUR",
        format=parsed.format.value,
    )
