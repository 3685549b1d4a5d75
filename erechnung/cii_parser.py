"""
Parser für UN/CEFACT Cross Industry Invoice (ZUGFeRD, Factur-X, XRechnung CII).
"""

import logging
import xml.etree.ElementTree as ET
from typing import Optional, Union

from .exceptions import XmlValidationError
from .format_detection import CII_NAMESPACES, split_tag
from .models import (
    CanonicalInvoice, LineItem, Party, PaymentInfo, TaxBreakdownEntry, Totals, round_money,
)
from .parsing_utils import first_not_none
from .xml_utils import FieldReader, ParseResult, parse_xml_root

logger = logging.getLogger(__name__)


def parse_cii(xml: Union[str, bytes, ET.Element]) -> ParseResult:
    """
    Parse CII Format in das kanonische Modell.

    Fehlende optionale Angaben führen nicht zum Abbruch; nicht lesbare Werte
    landen in ``warnings``. ``success`` ist nur False, wenn das Dokument kein
    CII ist oder nicht gelesen werden kann.
    """
    if isinstance(xml, ET.Element):
        root = xml
    else:
        try:
            root = parse_xml_root(xml)
        except XmlValidationError as e:
            return ParseResult(success=False, errors=[e.message, *e.validation_errors])

    uri, local = split_tag(root.tag)
    if local != 'CrossIndustryInvoice' or uri != CII_NAMESPACES['rsm']:
        return ParseResult(success=False, errors=[f"Kein CII-Dokument (Root-Element: {local})"])

    r = FieldReader(CII_NAMESPACES)
    invoice = CanonicalInvoice()

    # Exchanged Document (BT-1, BT-2, BT-3, BT-22)
    doc = r.find(root, 'rsm:ExchangedDocument')
    invoice.document_id = r.text(doc, 'ram:ID')
    invoice.document_type_code = r.text(doc, 'ram:TypeCode', '380')
    invoice.issue_date = r.date(doc, 'ram:IssueDateTime/udt:DateTimeString')
    invoice.notes = [n.text.strip() for n in r.findall(doc, 'ram:IncludedNote/ram:Content') if n.text]

    transaction = r.find(root, 'rsm:SupplyChainTradeTransaction')

    # Trade Agreement (Seller/Buyer)
    agreement = r.find(transaction, 'ram:ApplicableHeaderTradeAgreement')
    invoice.buyer_reference = r.text(agreement, 'ram:BuyerReference') or None
    invoice.seller = _parse_party(r, r.find(agreement, 'ram:SellerTradeParty'))
    invoice.buyer = _parse_party(r, r.find(agreement, 'ram:BuyerTradeParty'))

    # Trade Settlement
    settlement = r.find(transaction, 'ram:ApplicableHeaderTradeSettlement')
    invoice.currency = r.text(settlement, 'ram:InvoiceCurrencyCode', 'EUR').upper()
    invoice.payment = _parse_payment(r, settlement)

    for term in r.findall(settlement, 'ram:SpecifiedTradePaymentTerms'):
        due = r.date(term, 'ram:DueDateDateTime/udt:DateTimeString')
        if due and not invoice.due_date:
            invoice.due_date = due

    summation = r.find(settlement, 'ram:SpecifiedTradeSettlementHeaderMonetarySummation')
    invoice.totals = Totals(
        net_amount=first_not_none(
            r.amount(summation, 'ram:TaxBasisTotalAmount'),
            r.amount(summation, 'ram:LineTotalAmount'),
        ),
        tax_amount=_tax_total(r, summation, invoice.currency),
        gross_amount=r.amount(summation, 'ram:GrandTotalAmount'),
    )

    # Line Items (BG-25)
    for index, item in enumerate(r.findall(transaction, 'ram:IncludedSupplyChainTradeLineItem'), 1):
        invoice.line_items.append(_parse_line_item(r, item, index))

    # Tax (BG-23)
    for tax in r.findall(settlement, 'ram:ApplicableTradeTax'):
        rate = r.amount(tax, 'ram:RateApplicablePercent')
        basis = r.amount(tax, 'ram:BasisAmount')
        calculated = r.amount(tax, 'ram:CalculatedAmount')
        if rate is None or basis is None:
            continue
        if calculated is None:
            calculated = round_money(basis * rate / 100)
        invoice.tax_breakdown.append(TaxBreakdownEntry(rate=rate, taxable_amount=basis, tax_amount=calculated))
    if not invoice.tax_breakdown:
        invoice.tax_breakdown = invoice.derive_tax_breakdown()

    if invoice.totals.tax_amount is None and invoice.tax_breakdown:
        invoice.totals.tax_amount = round_money(sum(t.tax_amount for t in invoice.tax_breakdown))

    logger.debug(f"CII gelesen: {invoice.document_id} ({len(invoice.line_items)} Positionen)")
    return ParseResult(success=True, invoice=invoice, warnings=r.warnings)


def _parse_party(r: FieldReader, party: Optional[ET.Element]) -> Party:
    result = Party()
    if party is None:
        return result

    result.name = r.text(party, 'ram:Name')

    addr = r.find(party, 'ram:PostalTradeAddress')
    result.street = r.text(addr, 'ram:LineOne')
    result.post_code = r.text(addr, 'ram:PostcodeCode')
    result.city = r.text(addr, 'ram:CityName')
    result.country_code = r.text(addr, 'ram:CountryID').upper()

    # Steuernummer/USt-ID
    for tax_id in r.findall(party, 'ram:SpecifiedTaxRegistration/ram:ID'):
        if not tax_id.text:
            continue
        if tax_id.get('schemeID') == 'VA':
            result.vat_id = tax_id.text.strip()
        else:
            result.tax_number = tax_id.text.strip()

    return result


def _parse_payment(r: FieldReader, settlement: Optional[ET.Element]) -> PaymentInfo:
    payment = PaymentInfo()
    means = r.find(settlement, 'ram:SpecifiedTradeSettlementPaymentMeans')
    if means is not None:
        payment.means = r.text(means, 'ram:TypeCode')
        iban = r.text(means, 'ram:PayeePartyCreditorFinancialAccount/ram:IBANID')
        payment.iban = iban.replace(' ', '').upper() or None
        payment.bic = r.text(means, 'ram:PayeeSpecifiedCreditorFinancialInstitution/ram:BICID') or None

    terms = [
        r.text(t, 'ram:Description') for t in r.findall(settlement, 'ram:SpecifiedTradePaymentTerms')
    ]
    if means is not None:
        terms.append(r.text(means, 'ram:Information'))
    terms = [t for t in terms if t]
    payment.terms = "\n".join(terms) or None
    return payment


def _tax_total(r: FieldReader, summation: Optional[ET.Element], currency: str) -> Optional[float]:
    # TaxTotalAmount kann je Währung (BT-110 / BT-111) vorkommen
    totals = r.findall(summation, 'ram:TaxTotalAmount')
    if not totals:
        return None
    for el in totals:
        if (el.get('currencyID') or currency).upper() == currency:
            return r.element_amount(el, 'ram:TaxTotalAmount')
    return r.element_amount(totals[0], 'ram:TaxTotalAmount')


def _parse_line_item(r: FieldReader, item: ET.Element, index: int) -> LineItem:
    line = LineItem(position_index=index)
    line.description = r.text(item, 'ram:SpecifiedTradeProduct/ram:Name')

    line.unit_price = r.amount(
        item, 'ram:SpecifiedLineTradeAgreement/ram:NetPriceProductTradePrice/ram:ChargeAmount'
    ) or 0.0

    quantity = r.find(item, 'ram:SpecifiedLineTradeDelivery/ram:BilledQuantity')
    if quantity is not None:
        line.quantity = r.amount(item, 'ram:SpecifiedLineTradeDelivery/ram:BilledQuantity') or 0.0
        line.unit = quantity.get('unitCode') or line.unit

    settlement = r.find(item, 'ram:SpecifiedLineTradeSettlement')
    line.tax_rate = r.amount(settlement, 'ram:ApplicableTradeTax/ram:RateApplicablePercent')
    line.net_amount = r.amount(
        settlement, 'ram:SpecifiedTradeSettlementLineMonetarySummation/ram:LineTotalAmount'
    )
    if line.net_amount is None:
        line.net_amount = round_money(line.quantity * line.unit_price)

    if line.tax_rate is not None:
        line.tax_amount = round_money(line.net_amount * line.tax_rate / 100)
        line.gross_amount = round_money(line.net_amount + line.tax_amount)

    return line
