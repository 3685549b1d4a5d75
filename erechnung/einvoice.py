#!/usr/bin/env python3
"""
SBS Deutschland – XRechnung Export
XRechnung 3.0 / EN16931 im CII-Format aus dem kanonischen Rechnungsmodell.

Features:
- Positionen, Steueraufschlüsselung und Summen aus dem kanonischen Modell
- Fehlende Positionsbeträge werden aus Menge/Preis bzw. Steuersatz ergänzt
- Profilprüfung (xrechnung_3.0) und XSD-Validierung vor der Rückgabe
"""

import re
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Union
from xml.dom import minidom

from lxml import etree

from .config import Config
from .exceptions import XRechnungGeneratorError
from .format_detection import CII_NAMESPACES
from .models import CanonicalInvoice, LineItem, Party, round_money
from .parsing_utils import first_not_none, format_date_102

logger = logging.getLogger(__name__)

XRECHNUNG_GUIDELINE_ID = 'urn:cen.eu:en16931:2017#compliant#urn:xoev-de:kosit:standard:xrechnung_3.0'
PEPPOL_BUSINESS_PROCESS = 'urn:fdc:peppol.eu:2017:poacc:billing:01:1.0'
XRECHNUNG_PROFILE_MARKER = 'xrechnung_3.0'

DEFAULT_XSD_PATH = Path(__file__).parent / 'xsd' / 'CrossIndustryInvoice_100p.xsd'
DEFAULT_COUNTRY_CODE = 'DE'
DEFAULT_UNIT_CODE = 'C62'

RSM = '{%s}' % CII_NAMESPACES['rsm']
RAM = '{%s}' % CII_NAMESPACES['ram']
UDT = '{%s}' % CII_NAMESPACES['udt']


@dataclass
class XmlSchemaResult:
    """Ergebnis der Profil- und XSD-Prüfung"""
    valid: bool
    errors: List[str] = field(default_factory=list)
    profile: str = ""
    schema_path: str = ""


@dataclass
class XRechnungGenerationResult:
    xml: str
    validation: XmlSchemaResult


@dataclass
class _PreparedLine:
    position_index: int
    description: str
    quantity: float
    unit: str
    unit_price: float
    net_amount: float
    tax_rate: float
    tax_amount: float

    @property
    def category_code(self) -> str:
        return 'S' if self.tax_rate > 0 else 'Z'


@dataclass
class _TaxSubtotal:
    rate: float
    category_code: str
    taxable_amount: float
    tax_amount: float


def _el(parent: ET.Element, tag: str, text: Optional[str] = None, **attrib) -> ET.Element:
    element = ET.SubElement(parent, tag, attrib)
    if text is not None:
        element.text = text
    return element


def _money(value: float) -> str:
    return f"{round_money(value):.2f}"


def _rate(value: float) -> str:
    return f"{round_money(value):.2f}".rstrip('0').rstrip('.')


def _quantity(value: float) -> str:
    text = f"{value:.4f}".rstrip('0').rstrip('.')
    return text or '0'


class XRechnungGenerator:
    """Generiert XRechnung-konformes XML (EN16931 / CII Format)"""

    def __init__(self, pretty_print: bool = False):
        """
        Args:
            pretty_print: XML mit Einrückung formatieren
        """
        self.pretty_print = pretty_print
        for prefix, uri in CII_NAMESPACES.items():
            ET.register_namespace(prefix, uri)

    def generate(self, invoice: CanonicalInvoice) -> str:
        """
        Generiert XRechnung XML.

        Raises:
            XRechnungGeneratorError: Pflichtfeld fehlt oder keine verwertbaren Beträge
        """
        self._check_required(invoice)

        currency = self._currency(invoice.currency)
        lines = self._prepare_lines(invoice)
        subtotals = self._tax_subtotals(lines)

        root = ET.Element(RSM + 'CrossIndustryInvoice')
        self._add_context(root)
        self._add_document(root, invoice)

        transaction = _el(root, RSM + 'SupplyChainTradeTransaction')
        for line in lines:
            self._add_line_item(transaction, line)
        self._add_agreement(transaction, invoice)
        self._add_delivery(transaction, invoice)
        self._add_settlement(transaction, invoice, currency, lines, subtotals)

        xml_bytes = ET.tostring(root, encoding='UTF-8', xml_declaration=True)
        if self.pretty_print:
            pretty = minidom.parseString(xml_bytes).toprettyxml(indent="  ", encoding="UTF-8").decode('utf-8')
            return '\n'.join(line for line in pretty.split('\n') if line.strip())
        return xml_bytes.decode('utf-8')

    # -- Vorbereitung -------------------------------------------------------

    def _check_required(self, invoice: CanonicalInvoice):
        if not (invoice.document_id or '').strip():
            raise XRechnungGeneratorError('Pflichtfeld "documentId" (BT-1) fehlt', ['documentId'])
        if not isinstance(invoice.issue_date, date):
            raise XRechnungGeneratorError('Pflichtfeld "issueDate" (BT-2) fehlt', ['issueDate'])

    @staticmethod
    def _currency(value: Optional[str]) -> str:
        normalized = (value or '').strip().upper()
        return normalized if re.match(r'^[A-Z]{3}$', normalized) else 'EUR'

    @staticmethod
    def _default_tax_rate(invoice: CanonicalInvoice) -> float:
        net, tax = invoice.totals.net_amount, invoice.totals.tax_amount
        if not net or not tax:
            return 0.0
        return round_money(tax / net * 100)

    def _prepare_lines(self, invoice: CanonicalInvoice) -> List[_PreparedLine]:
        default_rate = self._default_tax_rate(invoice)
        items = sorted(invoice.line_items, key=lambda item: item.position_index)
        prepared = [p for p in (self._prepare_line(item, default_rate) for item in items) if p is not None]
        if prepared:
            return prepared

        # Keine Positionen: eine Sammelposition aus den Summen
        totals = invoice.totals
        if totals.net_amount is None and totals.gross_amount is None:
            raise XRechnungGeneratorError(
                'Rechnung hat weder verwertbare Positionen noch Summen',
                ['lineItems', 'totals'],
            )
        net = round_money(first_not_none(totals.net_amount, totals.gross_amount))
        gross = totals.gross_amount
        tax = totals.tax_amount
        if tax is None:
            tax = max((gross if gross is not None else net) - net, 0.0)
        return [_PreparedLine(
            position_index=1,
            description=invoice.document_id or 'Rechnungsposition',
            quantity=1.0,
            unit=DEFAULT_UNIT_CODE,
            unit_price=net,
            net_amount=net,
            tax_rate=default_rate,
            tax_amount=round_money(tax),
        )]

    @staticmethod
    def _prepare_line(item: LineItem, default_rate: float) -> Optional[_PreparedLine]:
        quantity = item.quantity if item.quantity and item.quantity > 0 else 1.0
        rate = item.tax_rate if item.tax_rate is not None else default_rate
        if item.net_amount is not None:
            net = round_money(item.net_amount)
        elif item.unit_price:
            net = round_money(item.unit_price * quantity)
        elif item.gross_amount is not None:
            net = round_money(item.gross_amount / (1 + rate / 100))
        else:
            return None

        if item.tax_amount is not None:
            tax = item.tax_amount
        elif item.gross_amount is not None:
            tax = item.gross_amount - net
        else:
            tax = net * rate / 100

        unit_price = item.unit_price if item.unit_price else net / quantity
        return _PreparedLine(
            position_index=item.position_index,
            description=(item.description or '').strip() or f"Position {item.position_index}",
            quantity=quantity,
            unit=item.unit or DEFAULT_UNIT_CODE,
            unit_price=round_money(unit_price),
            net_amount=net,
            tax_rate=round_money(rate),
            tax_amount=round_money(tax),
        )

    @staticmethod
    def _tax_subtotals(lines: List[_PreparedLine]) -> List[_TaxSubtotal]:
        grouped: Dict[tuple, _TaxSubtotal] = {}
        for line in lines:
            key = (line.category_code, line.tax_rate)
            subtotal = grouped.get(key)
            if subtotal is None:
                grouped[key] = _TaxSubtotal(line.tax_rate, line.category_code, line.net_amount, line.tax_amount)
            else:
                subtotal.taxable_amount = round_money(subtotal.taxable_amount + line.net_amount)
                subtotal.tax_amount = round_money(subtotal.tax_amount + line.tax_amount)
        return sorted(grouped.values(), key=lambda s: s.rate)

    # -- XML ----------------------------------------------------------------

    def _add_context(self, root: ET.Element):
        """Fügt Document Context hinzu"""
        context = _el(root, RSM + 'ExchangedDocumentContext')
        process = _el(context, RAM + 'BusinessProcessSpecifiedDocumentContextParameter')
        _el(process, RAM + 'ID', PEPPOL_BUSINESS_PROCESS)
        guideline = _el(context, RAM + 'GuidelineSpecifiedDocumentContextParameter')
        _el(guideline, RAM + 'ID', XRECHNUNG_GUIDELINE_ID)

    def _add_document(self, root: ET.Element, invoice: CanonicalInvoice):
        """Fügt Exchanged Document hinzu (BT-1, BT-2, BT-3, BT-22)"""
        doc = _el(root, RSM + 'ExchangedDocument')
        _el(doc, RAM + 'ID', invoice.document_id.strip())
        _el(doc, RAM + 'TypeCode', invoice.document_type_code or '380')
        issue = _el(doc, RAM + 'IssueDateTime')
        _el(issue, UDT + 'DateTimeString', format_date_102(invoice.issue_date), format='102')
        for text in invoice.notes:
            note = _el(doc, RAM + 'IncludedNote')
            _el(note, RAM + 'Content', text)

    def _add_line_item(self, parent: ET.Element, line: _PreparedLine):
        """Fügt Rechnungsposition hinzu (BG-25)"""
        item = _el(parent, RAM + 'IncludedSupplyChainTradeLineItem')

        doc = _el(item, RAM + 'AssociatedDocumentLineDocument')
        _el(doc, RAM + 'LineID', str(line.position_index))

        product = _el(item, RAM + 'SpecifiedTradeProduct')
        _el(product, RAM + 'Name', line.description)

        agreement = _el(item, RAM + 'SpecifiedLineTradeAgreement')
        price = _el(agreement, RAM + 'NetPriceProductTradePrice')
        _el(price, RAM + 'ChargeAmount', _money(line.unit_price))

        delivery = _el(item, RAM + 'SpecifiedLineTradeDelivery')
        _el(delivery, RAM + 'BilledQuantity', _quantity(line.quantity), unitCode=line.unit)

        settlement = _el(item, RAM + 'SpecifiedLineTradeSettlement')
        tax = _el(settlement, RAM + 'ApplicableTradeTax')
        _el(tax, RAM + 'TypeCode', 'VAT')
        _el(tax, RAM + 'CategoryCode', line.category_code)
        _el(tax, RAM + 'RateApplicablePercent', _rate(line.tax_rate))

        # Positionssumme ist immer netto (BT-131)
        summation = _el(settlement, RAM + 'SpecifiedTradeSettlementLineMonetarySummation')
        _el(summation, RAM + 'LineTotalAmount', _money(line.net_amount))

    def _add_agreement(self, parent: ET.Element, invoice: CanonicalInvoice):
        agreement = _el(parent, RAM + 'ApplicableHeaderTradeAgreement')
        # Leitweg-ID (BT-10)
        if invoice.buyer_reference:
            _el(agreement, RAM + 'BuyerReference', invoice.buyer_reference)
        self._add_party(agreement, 'SellerTradeParty', invoice.seller, 'Unbekannter Lieferant')
        self._add_party(agreement, 'BuyerTradeParty', invoice.buyer, 'Unbekannter Kunde')

    def _add_party(self, parent: ET.Element, tag: str, party: Party, fallback_name: str):
        """Verkäufer (BG-4) oder Käufer (BG-7)"""
        element = _el(parent, RAM + tag)
        _el(element, RAM + 'Name', (party.name or '').strip() or fallback_name)

        address = _el(element, RAM + 'PostalTradeAddress')
        if party.post_code:
            _el(address, RAM + 'PostcodeCode', party.post_code)
        if party.street:
            _el(address, RAM + 'LineOne', party.street)
        if party.city:
            _el(address, RAM + 'CityName', party.city)
        country = (party.country_code or '').strip().upper()
        _el(address, RAM + 'CountryID', country if re.match(r'^[A-Z]{2}$', country) else DEFAULT_COUNTRY_CODE)

        # Steuernummer (BT-32) vor USt-IdNr (BT-31)
        if party.tax_number:
            registration = _el(element, RAM + 'SpecifiedTaxRegistration')
            _el(registration, RAM + 'ID', party.tax_number, schemeID='FC')
        if party.vat_id:
            registration = _el(element, RAM + 'SpecifiedTaxRegistration')
            _el(registration, RAM + 'ID', party.vat_id, schemeID='VA')

    def _add_delivery(self, parent: ET.Element, invoice: CanonicalInvoice):
        """Lieferdatum (BT-72): Fälligkeit, sonst Rechnungsdatum"""
        delivery = _el(parent, RAM + 'ApplicableHeaderTradeDelivery')
        event = _el(delivery, RAM + 'ActualDeliverySupplyChainEvent')
        occurrence = _el(event, RAM + 'OccurrenceDateTime')
        delivery_date = invoice.due_date or invoice.issue_date
        _el(occurrence, UDT + 'DateTimeString', format_date_102(delivery_date), format='102')

    def _add_settlement(self, parent: ET.Element, invoice: CanonicalInvoice, currency: str,
                        lines: List[_PreparedLine], subtotals: List[_TaxSubtotal]):
        settlement = _el(parent, RAM + 'ApplicableHeaderTradeSettlement')
        _el(settlement, RAM + 'PaymentReference', invoice.document_id.strip())
        _el(settlement, RAM + 'InvoiceCurrencyCode', currency)

        # Zahlungsart (BG-16): 58 = SEPA-Überweisung, 1 = nicht definiert
        payment = invoice.payment
        means = _el(settlement, RAM + 'SpecifiedTradeSettlementPaymentMeans')
        if payment.iban:
            _el(means, RAM + 'TypeCode', '58')
            account = _el(means, RAM + 'PayeePartyCreditorFinancialAccount')
            _el(account, RAM + 'IBANID', payment.iban.replace(' ', '').upper())
            if payment.bic:
                institution = _el(means, RAM + 'PayeeSpecifiedCreditorFinancialInstitution')
                _el(institution, RAM + 'BICID', payment.bic)
        else:
            _el(means, RAM + 'TypeCode', payment.means or '1')

        for subtotal in subtotals:
            tax = _el(settlement, RAM + 'ApplicableTradeTax')
            _el(tax, RAM + 'CalculatedAmount', _money(subtotal.tax_amount))
            _el(tax, RAM + 'TypeCode', 'VAT')
            _el(tax, RAM + 'BasisAmount', _money(subtotal.taxable_amount))
            _el(tax, RAM + 'CategoryCode', subtotal.category_code)
            _el(tax, RAM + 'RateApplicablePercent', _rate(subtotal.rate))

        if payment.terms or invoice.due_date:
            terms = _el(settlement, RAM + 'SpecifiedTradePaymentTerms')
            if payment.terms:
                _el(terms, RAM + 'Description', payment.terms)
            if invoice.due_date:
                due = _el(terms, RAM + 'DueDateDateTime')
                _el(due, UDT + 'DateTimeString', format_date_102(invoice.due_date), format='102')

        totals = invoice.totals
        line_total = round_money(sum(line.net_amount for line in lines))
        tax_basis = round_money(first_not_none(totals.net_amount, line_total))
        tax_total = round_money(first_not_none(totals.tax_amount, sum(line.tax_amount for line in lines)))
        grand_total = round_money(first_not_none(totals.gross_amount, tax_basis + tax_total))

        summation = _el(settlement, RAM + 'SpecifiedTradeSettlementHeaderMonetarySummation')
        _el(summation, RAM + 'LineTotalAmount', _money(line_total))
        _el(summation, RAM + 'TaxBasisTotalAmount', _money(tax_basis))
        _el(summation, RAM + 'TaxTotalAmount', _money(tax_total), currencyID=currency)
        _el(summation, RAM + 'GrandTotalAmount', _money(grand_total))
        _el(summation, RAM + 'DuePayableAmount', _money(grand_total))


def _resolve_schema_path(xsd_path: Optional[str]) -> Path:
    configured = xsd_path or Config().xsd_path()
    return Path(configured).resolve() if configured else DEFAULT_XSD_PATH


def _profile_errors(xml_bytes: bytes) -> List[str]:
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as e:
        return [f"Profilerkennung fehlgeschlagen: {e}"]

    guideline = root.find(
        'rsm:ExchangedDocumentContext/ram:GuidelineSpecifiedDocumentContextParameter/ram:ID',
        CII_NAMESPACES,
    )
    profile_id = (guideline.text or '').strip() if guideline is not None else ''
    if XRECHNUNG_PROFILE_MARKER not in profile_id.lower():
        return [f'XML ist nicht als XRechnung 3.0 gekennzeichnet (Guideline-ID ohne "{XRECHNUNG_PROFILE_MARKER}")']
    return []


def validate_xrechnung_xml(xml: Union[str, bytes], xsd_path: Optional[str] = None) -> XmlSchemaResult:
    """
    Prüft XRechnung-Profil und XSD.

    Args:
        xml: XML-Dokument
        xsd_path: Wurzel-XSD; Standard ist ``XRECHNUNG_XSD_PATH`` bzw. das mitgelieferte Schema

    Raises:
        XRechnungGeneratorError: XSD nicht lesbar
    """
    schema_path = _resolve_schema_path(xsd_path)
    if not schema_path.is_file():
        raise XRechnungGeneratorError(f"XSD nicht gefunden: {schema_path}", [str(schema_path)])

    try:
        schema = etree.XMLSchema(etree.parse(str(schema_path)))
    except (etree.XMLSchemaParseError, etree.XMLSyntaxError) as e:
        raise XRechnungGeneratorError(f"XSD konnte nicht geladen werden: {e}", [str(schema_path)]) from e

    xml_bytes = xml.encode('utf-8') if isinstance(xml, str) else xml
    errors = _profile_errors(xml_bytes)
    profile = "XRechnung 3.0" if not errors else ""

    try:
        document = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as e:
        return XmlSchemaResult(False, errors + [f"XML Parse-Fehler: {e}"], profile, str(schema_path))

    if not schema.validate(document):
        seen = set()
        for entry in schema.error_log:
            message = f"Zeile {entry.line}: {entry.message}"
            if message not in seen:
                seen.add(message)
                errors.append(message)

    return XmlSchemaResult(valid=not errors, errors=errors, profile=profile, schema_path=str(schema_path))


def generate_xrechnung(
    invoice: CanonicalInvoice,
    validate: bool = True,
    pretty_print: bool = False,
    xsd_path: Optional[str] = None,
) -> XRechnungGenerationResult:
    """
    Generiert XRechnung XML und prüft es vor der Rückgabe.

    Raises:
        XRechnungGeneratorError: Pflichtfeld fehlt oder Validierung fehlgeschlagen
    """
    xml = XRechnungGenerator(pretty_print=pretty_print).generate(invoice)

    if not validate:
        return XRechnungGenerationResult(xml, XmlSchemaResult(True, [], "XRechnung 3.0", ""))

    validation = validate_xrechnung_xml(xml, xsd_path)
    if not validation.valid:
        logger.warning(f"XRechnung {invoice.document_id}: Validierung fehlgeschlagen ({len(validation.errors)})")
        raise XRechnungGeneratorError("Erzeugtes XRechnung-XML ist nicht gültig", validation.errors)

    logger.info(f"XRechnung erstellt: {invoice.document_id} ({len(invoice.line_items)} Positionen)")
    return XRechnungGenerationResult(xml, validation)


def generate_xrechnung_xml(invoice: CanonicalInvoice, **options) -> str:
    """Nur der XML-String"""
    return generate_xrechnung(invoice, **options).xml


def export_xrechnung_file(
    invoice: CanonicalInvoice,
    output_dir: str = "output",
    pretty_print: bool = True,
    xsd_path: Optional[str] = None,
) -> str:
    """
    Exportiert XRechnung als XML-Datei.

    Returns:
        Pfad zur erstellten Datei
    """
    Path(output_dir).mkdir(parents=True, exist_ok=True)

    result = generate_xrechnung(invoice, pretty_print=pretty_print, xsd_path=xsd_path)

    invoice_nr = re.sub(r'[\\/:*?"<>|\s]+', '-', invoice.document_id.strip())
    filepath = Path(output_dir) / f"xrechnung_{invoice_nr}.xml"
    filepath.write_text(result.xml, encoding='utf-8')

    logger.info(f"XRechnung exportiert: {filepath} ({result.validation.profile})")
    return str(filepath)
