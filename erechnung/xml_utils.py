"""
XML-Hilfsfunktionen für E-Rechnungen: Einlesen, Feldzugriff, Strukturprüfung.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Union

from .exceptions import XmlValidationError
from .format_detection import CII_NAMESPACES, UBL_NAMESPACES
from .models import CanonicalInvoice
from .parsing_utils import parse_amount, parse_invoice_date

logger = logging.getLogger(__name__)


@dataclass
class ParseResult:
    """Ergebnis eines Dialekt-Parsers"""
    success: bool
    invoice: Optional[CanonicalInvoice] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "invoice": self.invoice.to_dict() if self.invoice else None,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


def parse_xml_root(xml_content: Union[str, bytes]) -> ET.Element:
    """
    Parsed XML-Inhalt zu einem Element.

    Raises:
        XmlValidationError: XML ist nicht wohlgeformt
    """
    payload = xml_content
    if isinstance(payload, str):
        payload = payload.lstrip('\ufeff')

    if not payload or not payload.strip():
        raise XmlValidationError("Kein XML übergeben", ["Leerer Inhalt"])

    try:
        return ET.fromstring(payload)
    except ET.ParseError as e:
        line, column = getattr(e, 'position', (None, None))
        logger.error(f"XML Parse Error: {e}")
        raise XmlValidationError(
            "XML ist nicht wohlgeformt",
            [str(e)],
            {"line": line, "column": column},
        ) from e


class FieldReader:
    """Liest Text-, Betrags- und Datumsfelder und sammelt Warnungen"""

    def __init__(self, namespaces: Dict[str, str]):
        self.ns = namespaces
        self.warnings: List[str] = []

    def find(self, element: Optional[ET.Element], path: str) -> Optional[ET.Element]:
        if element is None:
            return None
        return element.find(path, self.ns)

    def findall(self, element: Optional[ET.Element], path: str) -> List[ET.Element]:
        if element is None:
            return []
        return element.findall(path, self.ns)

    def text(self, element: Optional[ET.Element], path: str, default: str = '') -> str:
        el = self.find(element, path)
        if el is None or el.text is None:
            return default
        return el.text.strip()

    def amount(self, element: Optional[ET.Element], path: str) -> Optional[float]:
        return self.element_amount(self.find(element, path), path)

    def element_amount(self, el: Optional[ET.Element], label: str) -> Optional[float]:
        raw = (el.text or '').strip() if el is not None else ''
        if not raw:
            return None
        value = parse_amount(raw)
        if value is None:
            self.warnings.append(f"Betrag nicht lesbar ({label}): {raw!r}")
        return value

    def date(self, element: Optional[ET.Element], path: str) -> Optional[date]:
        raw = self.text(element, path)
        if not raw:
            return None
        value = parse_invoice_date(raw)
        if value is None:
            self.warnings.append(f"Datum nicht lesbar ({path}): {raw!r}")
        return value


def validate_cii_structure(root: ET.Element) -> List[str]:
    """Prüft Pflichtabschnitte eines CII-Dokuments"""
    r = FieldReader(CII_NAMESPACES)
    warnings: List[str] = []

    if r.find(root, 'rsm:ExchangedDocumentContext') is None:
        warnings.append("Abschnitt 'ExchangedDocumentContext' fehlt")

    doc = r.find(root, 'rsm:ExchangedDocument')
    if doc is None:
        warnings.append("Abschnitt 'ExchangedDocument' fehlt")
    else:
        if not r.text(doc, 'ram:ID'):
            warnings.append("Rechnungsnummer (BT-1) fehlt")
        if not r.text(doc, 'ram:TypeCode'):
            warnings.append("Rechnungsart (BT-3) fehlt")
        if not r.text(doc, 'ram:IssueDateTime/udt:DateTimeString'):
            warnings.append("Rechnungsdatum (BT-2) fehlt")

    transaction = r.find(root, 'rsm:SupplyChainTradeTransaction')
    if transaction is None:
        warnings.append("Abschnitt 'SupplyChainTradeTransaction' fehlt")
        return warnings

    agreement = r.find(transaction, 'ram:ApplicableHeaderTradeAgreement')
    if agreement is None:
        warnings.append("Abschnitt 'ApplicableHeaderTradeAgreement' fehlt")
    else:
        if r.find(agreement, 'ram:SellerTradeParty') is None:
            warnings.append("Verkäufer (BG-4) fehlt")
        if r.find(agreement, 'ram:BuyerTradeParty') is None:
            warnings.append("Käufer (BG-7) fehlt")

    if r.find(transaction, 'ram:ApplicableHeaderTradeSettlement') is None:
        warnings.append("Abschnitt 'ApplicableHeaderTradeSettlement' fehlt")

    return warnings


def validate_ubl_structure(root: ET.Element) -> List[str]:
    """Prüft Pflichtfelder eines UBL-Dokuments"""
    r = FieldReader(UBL_NAMESPACES)
    warnings: List[str] = []

    if not r.text(root, 'cbc:ID'):
        warnings.append("Rechnungsnummer (BT-1) fehlt")
    if not r.text(root, 'cbc:IssueDate'):
        warnings.append("Rechnungsdatum (BT-2) fehlt")
    if not (r.text(root, 'cbc:InvoiceTypeCode') or r.text(root, 'cbc:CreditNoteTypeCode')):
        warnings.append("Rechnungsart (BT-3) fehlt")
    if not r.text(root, 'cbc:DocumentCurrencyCode'):
        warnings.append("Währung (BT-5) fehlt")
    if r.find(root, 'cac:AccountingSupplierParty') is None:
        warnings.append("Verkäufer (BG-4) fehlt")
    if r.find(root, 'cac:AccountingCustomerParty') is None:
        warnings.append("Käufer (BG-7) fehlt")
    if r.find(root, 'cac:LegalMonetaryTotal') is None:
        warnings.append("Rechnungssummen (BG-22) fehlen")

    return warnings
