"""
Gemeinsame Fixtures für die Unit-Tests der E-Rechnung-Engine.
"""

from datetime import date
from pathlib import Path

import pytest

from erechnung.models import (
    CanonicalInvoice,
    LineItem,
    Party,
    PaymentInfo,
    TaxBreakdownEntry,
    Totals,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keine Einstellungen aus der Umgebung des Entwicklers übernehmen"""
    for name in (
        "VIES_VALIDATION_ENABLED",
        "VIES_TIMEOUT_MS",
        "GOBD_SUM_TOLERANCE",
        "XRECHNUNG_XSD_PATH",
        "DATEV_BERATER_NUMMER",
        "DATEV_MANDANTEN_NUMMER",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cii_xml() -> bytes:
    return (FIXTURES_DIR / "cii_invoice.xml").read_bytes()


@pytest.fixture
def ubl_xml() -> bytes:
    return (FIXTURES_DIR / "ubl_invoice.xml").read_bytes()


@pytest.fixture
def sample_invoice() -> CanonicalInvoice:
    """Vollständige Rechnung mit 19% und 7% Positionen"""
    return CanonicalInvoice(
        document_id="RE-2024-0042",
        issue_date=date(2024, 3, 15),
        due_date=date(2024, 4, 14),
        currency="EUR",
        seller=Party(
            name="Muster GmbH",
            street="Musterstraße 1",
            post_code="10115",
            city="Berlin",
            country_code="DE",
            vat_id="DE123456789",
            tax_number="12/345/67890",
        ),
        buyer=Party(
            name="Beispiel AG",
            street="Hauptstraße 5",
            post_code="80331",
            city="München",
            country_code="DE",
        ),
        payment=PaymentInfo(
            means="58",
            iban="DE89370400440532013000",
            bic="COBADEFFXXX",
            terms="Zahlbar innerhalb von 30 Tagen ohne Abzug",
        ),
        line_items=[
            LineItem(
                position_index=1,
                description="Beratung",
                quantity=10,
                unit="HUR",
                unit_price=100.0,
                net_amount=1000.0,
                tax_rate=19.0,
                tax_amount=190.0,
                gross_amount=1190.0,
            ),
            LineItem(
                position_index=2,
                description="Fachbuch Umsatzsteuerrecht",
                quantity=2,
                unit_price=25.0,
                net_amount=50.0,
                tax_rate=7.0,
                tax_amount=3.5,
                gross_amount=53.5,
            ),
        ],
        totals=Totals(net_amount=1050.0, tax_amount=193.5, gross_amount=1243.5),
        tax_breakdown=[
            TaxBreakdownEntry(rate=7.0, taxable_amount=50.0, tax_amount=3.5),
            TaxBreakdownEntry(rate=19.0, taxable_amount=1000.0, tax_amount=190.0),
        ],
        buyer_reference="04011000-12345-67",
    )


@pytest.fixture
def simple_invoice() -> CanonicalInvoice:
    """Eine Position zu 19%"""
    return CanonicalInvoice(
        document_id="2024-100",
        issue_date=date(2024, 6, 1),
        due_date=date(2024, 7, 1),
        seller=Party(name="Lieferant KG", country_code="DE"),
        buyer=Party(name="Kunde GmbH", country_code="DE"),
        line_items=[
            LineItem(
                position_index=1,
                description="Wartungsvertrag",
                quantity=1,
                unit_price=200.0,
                net_amount=200.0,
                tax_rate=19.0,
                tax_amount=38.0,
                gross_amount=238.0,
            ),
        ],
        totals=Totals(net_amount=200.0, tax_amount=38.0, gross_amount=238.0),
    )
