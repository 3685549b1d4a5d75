"""
Parser für OASIS UBL 2.1 Invoice/CreditNote (XRechnung UBL).
"""

import logging
import xml.etree.ElementTree as ET
from typing import Optional, Union

from .exceptions import XmlValidationError
from .format_detection import UBL_NAMESPACES, split_tag
from .models import CanonicalInvoice, LineItem, Party, PaymentInfo, TaxBreakdownEntry, Totals, round_money
from .parsing_utils import first_not_none
from .xml_utils import FieldReader, ParseResult, parse_xml_root

logger = logging.getLogger(__name__)


def parse_ubl(xml: Union[str, bytes, ET.Element]) -> ParseResult:
    """Parse UBL Format in das kanonische Modell"""
    if isinstance(xml, ET.Element):
        root = xml
    else:
        try:
            root = parse_xml_root(xml)
        except XmlValidationError as e:
            return ParseResult(success=False, errors=[e.message, *e.validation_errors])

    uri, local = split_tag(root.tag)
    if local not in ('Invoice', 'CreditNote') or uri not in (UBL_NAMESPACES['ubl'], UBL_NAMESPACES['cn']):
        return ParseResult(success=False, errors=[f"Kein UBL-Dokument (Root-Element: {local})"])

    is_credit_note = local == 'CreditNote'
    r = FieldReader(UBL_NAMESPACES)
    invoice = CanonicalInvoice()

    # Basic fields
    invoice.document_id = r.text(root, 'cbc:ID')
    invoice.issue_date = r.date(root, 'cbc:IssueDate')
    invoice.due_date = r.date(root, 'cbc:DueDate') or r.date(root, 'cac:PaymentMeans/cbc:PaymentDueDate')
    invoice.document_type_code = (
        r.text(root, 'cbc:CreditNoteTypeCode', '381') if is_credit_note
        else r.text(root, 'cbc:InvoiceTypeCode', '380')
    )
    invoice.currency = r.text(root, 'cbc:DocumentCurrencyCode', 'EUR').upper()
    invoice.buyer_reference = r.text(root, 'cbc:BuyerReference') or None
    invoice.notes = [n.text.strip() for n in r.findall(root, 'cbc:Note') if n.text]

    # Parties
    invoice.seller = _parse_party(r, r.find(root, 'cac:AccountingSupplierParty/cac:Party'))
    invoice.buyer = _parse_party(r, r.find(root, 'cac:AccountingCustomerParty/cac:Party'))

    # Bank
    invoice.payment = _parse_payment(r, root)

    # Amounts
    totals = r.find(root, 'cac:LegalMonetaryTotal')
    invoice.totals = Totals(
        net_amount=first_not_none(
            r.amount(totals, 'cbc:TaxExclusiveAmount'),
            r.amount(totals, 'cbc:LineExtensionAmount'),
        ),
        tax_amount=_tax_total(r, root, invoice.currency),
        gross_amount=first_not_none(
            r.amount(totals, 'cbc:TaxInclusiveAmount'),
            r.amount(totals, 'cbc:PayableAmount'),
        ),
    )

    # Line Items
    line_tag = 'cac:CreditNoteLine' if is_credit_note else 'cac:InvoiceLine'
    quantity_tag = 'cbc:CreditedQuantity' if is_credit_note else 'cbc:InvoicedQuantity'
    for index, item in enumerate(r.findall(root, line_tag), 1):
        invoice.line_items.append(_parse_line_item(r, item, index, quantity_tag))

    # Tax
    for subtotal in r.findall(root, 'cac:TaxTotal/cac:TaxSubtotal'):
        rate = r.amount(subtotal, 'cac:TaxCategory/cbc:Percent')
        taxable = r.amount(subtotal, 'cbc:TaxableAmount')
        tax = r.amount(subtotal, 'cbc:TaxAmount')
        if rate is None or taxable is None:
            continue
        if tax is None:
            tax = round_money(taxable * rate / 100)
        invoice.tax_breakdown.append(TaxBreakdownEntry(rate=rate, taxable_amount=taxable, tax_amount=tax))
    if not invoice.tax_breakdown:
        invoice.tax_breakdown = invoice.derive_tax_breakdown()

    if invoice.totals.tax_amount is None and invoice.tax_breakdown:
        invoice.totals.tax_amount = round_money(sum(t.tax_amount for t in invoice.tax_breakdown))

    logger.debug(f"UBL gelesen: {invoice.document_id} ({len(invoice.line_items)} Positionen)")
    return ParseResult(success=True, invoice=invoice, warnings=r.warnings)


def _parse_party(r: FieldReader, party: Optional[ET.Element]) -> Party:
    result = Party()
    if party is None:
        return result

    result.name = (
        r.text(party, 'cac:PartyLegalEntity/cbc:RegistrationName')
        or r.text(party, 'cac:PartyName/cbc:Name')
    )

    addr = r.find(party, 'cac:PostalAddress')
    result.street = r.text(addr, 'cbc:StreetName')
    result.post_code = r.text(addr, 'cbc:PostalZone')
    result.city = r.text(addr, 'cbc:CityName')
    result.country_code = r.text(addr, 'cac:Country/cbc:IdentificationCode').upper()

    for scheme in r.findall(party, 'cac:PartyTaxScheme'):
        company_id = r.text(scheme, 'cbc:CompanyID')
        if not company_id:
            continue
        if r.text(scheme, 'cac:TaxScheme/cbc:ID').upper() == 'VAT':
            result.vat_id = company_id
        else:
            result.tax_number = company_id

    return result


def _parse_payment(r: FieldReader, root: ET.Element) -> PaymentInfo:
    payment = PaymentInfo()
    means = r.find(root, 'cac:PaymentMeans')
    if means is not None:
        payment.means = r.text(means, 'cbc:PaymentMeansCode')
        account = r.find(means, 'cac:PayeeFinancialAccount')
        payment.iban = r.text(account, 'cbc:ID').replace(' ', '').upper() or None
        payment.bic = r.text(account, 'cac:FinancialInstitutionBranch/cbc:ID') or None

    terms = [r.text(root, 'cac:PaymentTerms/cbc:Note')]
    if means is not None:
        terms.append(r.text(means, 'cbc:InstructionNote'))
    terms = [t for t in terms if t]
    payment.terms = "\n".join(terms) or None
    return payment


def _tax_total(r: FieldReader, root: ET.Element, currency: str) -> Optional[float]:
    amounts = r.findall(root, 'cac:TaxTotal/cbc:TaxAmount')
    if not amounts:
        return None
    for el in amounts:
        if (el.get('currencyID') or currency).upper() == currency:
            return r.element_amount(el, 'cbc:TaxAmount')
    return r.element_amount(amounts[0], 'cbc:TaxAmount')


def _parse_line_item(r: FieldReader, item: ET.Element, index: int, quantity_tag: str) -> LineItem:
    line = LineItem(position_index=index)
    line.description = r.text(item, 'cac:Item/cbc:Name') or r.text(item, 'cac:Item/cbc:Description')
    line.unit_price = r.amount(item, 'cac:Price/cbc:PriceAmount') or 0.0

    quantity = r.find(item, quantity_tag)
    if quantity is not None:
        line.quantity = r.element_amount(quantity, quantity_tag) or 0.0
        line.unit = quantity.get('unitCode') or line.unit

    line.tax_rate = r.amount(item, 'cac:Item/cac:ClassifiedTaxCategory/cbc:Percent')
    line.net_amount = r.amount(item, 'cbc:LineExtensionAmount')
    if line.net_amount is None:
        line.net_amount = round_money(line.quantity * line.unit_price)

    if line.tax_rate is not None:
        line.tax_amount = round_money(line.net_amount * line.tax_rate / 100)
        line.gross_amount = round_money(line.net_amount + line.tax_amount)

    return line
