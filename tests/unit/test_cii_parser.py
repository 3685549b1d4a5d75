"""
Unit tests für den CII-Parser
"""

from datetime import date

import pytest

from erechnung.cii_parser import parse_cii

CII_HEAD = (
    '<rsm:CrossIndustryInvoice '
    'xmlns:rsm="urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100" '
    'xmlns:ram="urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100" '
    'xmlns:udt="urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100">'
)


def _minimal_cii(line_items: str = "", settlement: str = "") -> str:
    return (
        CII_HEAD
        + '<rsm:ExchangedDocument><ram:ID>M-1</ram:ID><ram:TypeCode>380</ram:TypeCode>'
        + '<ram:IssueDateTime><udt:DateTimeString format="102">20240101</udt:DateTimeString></ram:IssueDateTime>'
        + '</rsm:ExchangedDocument>'
        + '<rsm:SupplyChainTradeTransaction>' + line_items
        + '<ram:ApplicableHeaderTradeSettlement>' + settlement + '</ram:ApplicableHeaderTradeSettlement>'
        + '</rsm:SupplyChainTradeTransaction></rsm:CrossIndustryInvoice>'
    )


class TestParseCii:
    """Vollständiges XRechnung-CII-Dokument"""

    def test_header_fields(self, cii_xml):
        result = parse_cii(cii_xml)
        assert result.success is True
        invoice = result.invoice
        assert invoice.document_id == "RE-2024-0042"
        assert invoice.document_type_code == "380"
        assert invoice.issue_date == date(2024, 3, 15)
        assert invoice.due_date == date(2024, 4, 14)
        assert invoice.currency == "EUR"
        assert invoice.buyer_reference == "04011000-12345-67"
        assert invoice.notes == ["Vielen Dank für Ihren Auftrag."]

    def test_parties(self, cii_xml):
        invoice = parse_cii(cii_xml).invoice
        assert invoice.seller.name == "Muster GmbH"
        assert invoice.seller.street == "Musterstraße 1"
        assert invoice.seller.post_code == "10115"
        assert invoice.seller.city == "Berlin"
        assert invoice.seller.country_code == "DE"
        assert invoice.seller.vat_id == "DE123456789"
        assert invoice.seller.tax_number == "12/345/67890"
        assert invoice.buyer.name == "Beispiel AG"
        assert invoice.buyer.vat_id is None

    def test_payment(self, cii_xml):
        payment = parse_cii(cii_xml).invoice.payment
        assert payment.means == "58"
        assert payment.iban == "DE89370400440532013000"
        assert payment.bic == "COBADEFFXXX"
        assert payment.terms == "Zahlbar innerhalb von 30 Tagen ohne Abzug"

    def test_totals_and_breakdown(self, cii_xml):
        invoice = parse_cii(cii_xml).invoice
        assert invoice.totals.net_amount == 1050.0
        assert invoice.totals.tax_amount == 193.5
        assert invoice.totals.gross_amount == 1243.5
        assert [(t.rate, t.taxable_amount, t.tax_amount) for t in invoice.tax_breakdown] == [
            (7.0, 50.0, 3.5),
            (19.0, 1000.0, 190.0),
        ]

    def test_line_items(self, cii_xml):
        lines = parse_cii(cii_xml).invoice.line_items
        assert len(lines) == 2
        first = lines[0]
        assert first.position_index == 1
        assert first.description == "Beratung"
        assert first.quantity == 10.0
        assert first.unit == "HUR"
        assert first.unit_price == 100.0
        assert first.net_amount == 1000.0
        assert first.tax_rate == 19.0
        assert first.tax_amount == 190.0
        assert first.gross_amount == 1190.0
        assert lines[1].tax_amount == 3.5

    def test_no_warnings_for_complete_document(self, cii_xml):
        assert parse_cii(cii_xml).warnings == []


class TestParseCiiEdgeCases:

    def test_missing_line_total_uses_quantity_times_price(self):
        line = (
            '<ram:IncludedSupplyChainTradeLineItem>'
            '<ram:SpecifiedTradeProduct><ram:Name>Schrauben</ram:Name></ram:SpecifiedTradeProduct>'
            '<ram:SpecifiedLineTradeAgreement><ram:NetPriceProductTradePrice>'
            '<ram:ChargeAmount>0.25</ram:ChargeAmount></ram:NetPriceProductTradePrice></ram:SpecifiedLineTradeAgreement>'
            '<ram:SpecifiedLineTradeDelivery><ram:BilledQuantity unitCode="H87">100</ram:BilledQuantity>'
            '</ram:SpecifiedLineTradeDelivery>'
            '<ram:SpecifiedLineTradeSettlement><ram:ApplicableTradeTax>'
            '<ram:RateApplicablePercent>19</ram:RateApplicablePercent></ram:ApplicableTradeTax>'
            '</ram:SpecifiedLineTradeSettlement>'
            '</ram:IncludedSupplyChainTradeLineItem>'
        )
        invoice = parse_cii(_minimal_cii(line_items=line)).invoice
        item = invoice.line_items[0]
        assert item.net_amount == 25.0
        assert item.tax_amount == 4.75
        # ohne ApplicableTradeTax im Kopf wird aus den Positionen abgeleitet
        assert [(t.rate, t.taxable_amount, t.tax_amount) for t in invoice.tax_breakdown] == [(19.0, 25.0, 4.75)]
        assert invoice.totals.tax_amount == 4.75

    def test_tax_total_in_invoice_currency(self):
        settlement = (
            '<ram:InvoiceCurrencyCode>EUR</ram:InvoiceCurrencyCode>'
            '<ram:SpecifiedTradeSettlementHeaderMonetarySummation>'
            '<ram:TaxTotalAmount currencyID="USD">21.00</ram:TaxTotalAmount>'
            '<ram:TaxTotalAmount currencyID="EUR">19.00</ram:TaxTotalAmount>'
            '</ram:SpecifiedTradeSettlementHeaderMonetarySummation>'
        )
        invoice = parse_cii(_minimal_cii(settlement=settlement)).invoice
        assert invoice.totals.tax_amount == 19.0

    def test_unreadable_amount_becomes_warning(self):
        settlement = (
            '<ram:SpecifiedTradeSettlementHeaderMonetarySummation>'
            '<ram:GrandTotalAmount>zwölf</ram:GrandTotalAmount>'
            '</ram:SpecifiedTradeSettlementHeaderMonetarySummation>'
        )
        result = parse_cii(_minimal_cii(settlement=settlement))
        assert result.success is True
        assert result.invoice.totals.gross_amount is None
        assert any("Betrag nicht lesbar" in w for w in result.warnings)

    def test_rejects_ubl_document(self, ubl_xml):
        result = parse_cii(ubl_xml)
        assert result.success is False
        assert result.errors == ["Kein CII-Dokument (Root-Element: Invoice)"]

    def test_rejects_malformed_xml(self):
        result = parse_cii("<rsm:CrossIndustryInvoice>")
        assert result.success is False
        assert result.errors[0] == "XML ist nicht wohlgeformt"

    @pytest.mark.parametrize("payload", ["", "   "])
    def test_rejects_empty_input(self, payload):
        result = parse_cii(payload)
        assert result.success is False
        assert result.errors[0] == "Kein XML übergeben"
