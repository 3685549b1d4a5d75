"""
SBS Deutschland – OCR Input Schemas
Pydantic Models für die JSON-Ausgabe des OCR-/Vision-Dienstes.

Beträge und Datumswerte werden vor der Typprüfung mit denselben Parsern
normalisiert wie beim XML-Import (deutsche und ISO-Schreibweise).
"""

from datetime import date
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from .parsing_utils import parse_amount, parse_invoice_date

MSG_INVALID_AMOUNT = "Ungültiger Betrag"
MSG_INVALID_DATE = "Ungültiges Datum (erwartet: YYYY-MM-DD oder DD.MM.YYYY)"
MSG_INVALID_CURRENCY = "Währungscode muss 3 Zeichen lang sein (z.B. EUR)"


class InvoiceFormat(str, Enum):
    ZUGFERD = "ZUGFERD"
    XRECHNUNG = "XRECHNUNG"
    UNKNOWN = "UNKNOWN"


def _optional_amount(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    parsed = parse_amount(value)
    if parsed is None:
        raise PydanticCustomError("invalid_amount", MSG_INVALID_AMOUNT)
    return parsed


def _optional_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    parsed = parse_invoice_date(value)
    if parsed is None:
        raise PydanticCustomError("invalid_date", MSG_INVALID_DATE)
    return parsed


def _required_number(value: Any, message: str) -> float:
    parsed = parse_amount(value)
    if parsed is None:
        raise PydanticCustomError("invalid_number", message)
    return parsed


class OcrParty(BaseModel):
    """Lieferant oder Kunde"""
    name: Optional[str] = None


class OcrTotals(BaseModel):
    """Summenblock inkl. Währung"""
    model_config = ConfigDict(populate_by_name=True)

    currency: str = "EUR"
    net_amount: Optional[float] = Field(None, alias="netAmount")
    tax_amount: Optional[float] = Field(None, alias="taxAmount")
    gross_amount: Optional[float] = Field(None, alias="grossAmount")

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value: Any) -> str:
        if value is None:
            return "EUR"
        if not isinstance(value, str) or len(value.strip()) != 3 or not value.strip().isalpha():
            raise PydanticCustomError("invalid_currency", MSG_INVALID_CURRENCY)
        return value.strip().upper()

    @field_validator("net_amount", "tax_amount", "gross_amount", mode="before")
    @classmethod
    def _amounts(cls, value: Any) -> Optional[float]:
        return _optional_amount(value)


class OcrLineItem(BaseModel):
    """Position wie vom OCR geliefert; alle Felder Pflicht"""
    model_config = ConfigDict(populate_by_name=True)

    description: Optional[str] = Field(None, validate_default=True)
    quantity: Optional[float] = Field(None, validate_default=True)
    unit_price: Optional[float] = Field(None, alias="unitPrice", validate_default=True)
    # "total" oder "grossAmount", beides wird zum Bruttobetrag der Position
    total: Optional[float] = Field(
        None, validation_alias=AliasChoices("total", "grossAmount"), validate_default=True,
    )

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise PydanticCustomError("missing_description", "Beschreibung ist erforderlich")
        return value

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> float:
        return _required_number(value, "Menge muss eine Zahl sein")

    @field_validator("unit_price", mode="before")
    @classmethod
    def _unit_price(cls, value: Any) -> float:
        return _required_number(value, "Einzelpreis muss eine Zahl sein")

    @field_validator("total", mode="before")
    @classmethod
    def _total(cls, value: Any) -> float:
        return _required_number(value, "Gesamtbetrag muss eine Zahl sein")


class OcrInvoiceData(BaseModel):
    """Gesamte OCR-Ausgabe einer Rechnung"""
    model_config = ConfigDict(populate_by_name=True)

    format: InvoiceFormat = InvoiceFormat.UNKNOWN
    number: Optional[str] = None
    supplier: Optional[OcrParty] = None
    customer: Optional[OcrParty] = None
    issue_date: Optional[date] = Field(None, alias="issueDate")
    due_date: Optional[date] = Field(None, alias="dueDate")
    totals: Optional[OcrTotals] = None
    line_items: List[OcrLineItem] = Field(default_factory=list, alias="lineItems")

    @field_validator("format", mode="before")
    @classmethod
    def _format(cls, value: Any) -> Any:
        return InvoiceFormat.UNKNOWN if value is None else value

    @field_validator("issue_date", "due_date", mode="before")
    @classmethod
    def _dates(cls, value: Any) -> Optional[date]:
        return _optional_date(value)

    @field_validator("line_items", mode="before")
    @classmethod
    def _line_items(cls, value: Any) -> Any:
        return [] if value is None else value
