"""
SBS Deutschland – GoBD Compliance
Prüfregeln nach den Grundsätzen zur ordnungsmäßigen Führung und Aufbewahrung
von Büchern (GoBD).

Jede Regel ist eine eigenständige Funktion ``rule(context) -> RuleResult``;
das Gesamtergebnis ist die Verkettung aller Regelergebnisse.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from .config import Config
from .exceptions import GoBDComplianceError
from .models import VALID_TAX_RATES, CanonicalInvoice
from .parsing_utils import parse_amount, parse_invoice_date

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "EUR"
SUM_TOLERANCE = 0.02

# Fehlercodes
MISSING_INVOICE_NUMBER = "GOB-001"
MISSING_ISSUE_DATE = "GOB-002"
MISSING_NET_AMOUNT = "GOB-003"
MISSING_TAX_AMOUNT = "GOB-004"
MISSING_GROSS_AMOUNT = "GOB-005"
MISSING_CURRENCY = "GOB-006"
MISSING_SUPPLIER = "GOB-007"
MISSING_CUSTOMER = "GOB-008"
SUM_MISMATCH = "GOB-101"
LINE_ITEM_SUM_MISMATCH = "GOB-102"
TAX_CALCULATION_ERROR = "GOB-103"
FUTURE_DATE = "GOB-201"
INVALID_DATE_FORMAT = "GOB-202"
INVALID_TAX_RATE = "GOB-301"
TAX_RATE_MISMATCH = "GOB-302"
INVALID_CURRENCY = "GOB-401"
MISSING_LINE_ITEM_DESCRIPTION = "GOB-501"
MISSING_LINE_ITEM_NET_AMOUNT = "GOB-502"
MISSING_LINE_ITEM_TAX_RATE = "GOB-503"

# Hinweiscodes
UNCOMMON_CURRENCY = "GOB-W001"
MISSING_DUE_DATE = "GOB-W002"
NO_LINE_ITEMS = "GOB-W003"

GOB_ERROR_MESSAGES = {
    MISSING_INVOICE_NUMBER: "Rechnungsnummer fehlt",
    MISSING_ISSUE_DATE: "Rechnungsdatum fehlt",
    MISSING_NET_AMOUNT: "Nettobetrag fehlt",
    MISSING_TAX_AMOUNT: "Steuerbetrag fehlt",
    MISSING_GROSS_AMOUNT: "Bruttobetrag fehlt",
    MISSING_CURRENCY: "Währung fehlt",
    MISSING_SUPPLIER: "Lieferantenname fehlt",
    MISSING_CUSTOMER: "Kundenname fehlt",
    SUM_MISMATCH: "Summenprüfung fehlgeschlagen (Netto + Steuer ≠ Brutto)",
    LINE_ITEM_SUM_MISMATCH: "Positionssumme stimmt nicht mit Rechnungssumme überein",
    TAX_CALCULATION_ERROR: "Steuerberechnung fehlerhaft",
    FUTURE_DATE: "Rechnungsdatum darf nicht in der Zukunft liegen",
    INVALID_DATE_FORMAT: "Ungültiges Datumsformat",
    INVALID_TAX_RATE: "Ungültiger Steuersatz (erlaubt: 0%, 7%, 19%)",
    TAX_RATE_MISMATCH: "Steuersatz stimmt nicht mit Berechnung überein",
    INVALID_CURRENCY: "Ungültige Währung",
    MISSING_LINE_ITEM_DESCRIPTION: "Positionsbeschreibung fehlt",
    MISSING_LINE_ITEM_NET_AMOUNT: "Positions-Nettobetrag fehlt",
    MISSING_LINE_ITEM_TAX_RATE: "Positions-Steuersatz fehlt",
}

GOB_WARNING_MESSAGES = {
    UNCOMMON_CURRENCY: "Unübliche Währung für deutsche Rechnung",
    MISSING_DUE_DATE: "Zahlungsziel (Fälligkeitsdatum) fehlt",
    NO_LINE_ITEMS: "Keine Rechnungspositionen vorhanden",
}

COMPLIANT = "compliant"
NON_COMPLIANT = "non-compliant"
WARNING = "warning"


# === Eingabedaten ===

@dataclass
class GoBDLineItem:
    position_index: int = 1
    description: Optional[str] = None
    quantity: Optional[Union[float, str]] = None
    unit_price: Optional[Union[float, str]] = None
    tax_rate: Optional[Union[float, str]] = None
    net_amount: Optional[Union[float, str]] = None
    tax_amount: Optional[Union[float, str]] = None
    gross_amount: Optional[Union[float, str]] = None


@dataclass
class GoBDInvoiceData:
    """Flache Sicht auf eine Rechnung, Werte dürfen fehlen oder als Text vorliegen"""
    id: Optional[str] = None
    number: Optional[str] = None
    issue_date: Optional[Union[date, str]] = None
    due_date: Optional[Union[date, str]] = None
    currency: Optional[str] = None
    net_amount: Optional[Union[float, str]] = None
    tax_amount: Optional[Union[float, str]] = None
    gross_amount: Optional[Union[float, str]] = None
    supplier_name: Optional[str] = None
    customer_name: Optional[str] = None
    line_items: List[GoBDLineItem] = field(default_factory=list)

    @classmethod
    def from_invoice(cls, invoice: CanonicalInvoice, invoice_id: Optional[str] = None) -> 'GoBDInvoiceData':
        return cls(
            id=invoice_id,
            number=invoice.document_id,
            issue_date=invoice.issue_date,
            due_date=invoice.due_date,
            currency=invoice.currency,
            net_amount=invoice.totals.net_amount,
            tax_amount=invoice.totals.tax_amount,
            gross_amount=invoice.totals.gross_amount,
            supplier_name=invoice.seller.name,
            customer_name=invoice.buyer.name,
            line_items=[
                GoBDLineItem(
                    position_index=item.position_index,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    tax_rate=item.tax_rate,
                    net_amount=item.net_amount,
                    tax_amount=item.tax_amount,
                    gross_amount=item.gross_amount,
                )
                for item in invoice.line_items
            ],
        )


# === Ergebnisse ===

@dataclass
class GoBDViolation:
    code: str
    message: str
    field: str
    severity: str = "error"
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "severity": self.severity,
            "details": self.details,
        }


@dataclass
class GoBDWarning:
    code: str
    message: str
    field: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "field": self.field, "details": self.details}


@dataclass
class RuleResult:
    passed: bool
    violations: List[GoBDViolation] = field(default_factory=list)
    warnings: List[GoBDWarning] = field(default_factory=list)


@dataclass
class ValidationContext:
    invoice: GoBDInvoiceData
    strict_mode: bool = False
    tolerance: float = SUM_TOLERANCE
    today: Optional[date] = None


@dataclass
class GoBDValidationResult:
    is_compliant: bool
    badge: str
    violations: List[GoBDViolation] = field(default_factory=list)
    warnings: List[GoBDWarning] = field(default_factory=list)
    validated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    invoice_id: Optional[str] = None


def _violation(code: str, field_name: str, severity: str = "error", details: Optional[Dict] = None) -> GoBDViolation:
    return GoBDViolation(
        code=code,
        message=GOB_ERROR_MESSAGES.get(code, "Unbekannter Fehler"),
        field=field_name,
        severity=severity,
        details=details,
    )


def _warning(code: str, field_name: Optional[str] = None, details: Optional[Dict] = None) -> GoBDWarning:
    return GoBDWarning(code=code, message=GOB_WARNING_MESSAGES.get(code, "Warnung"), field=field_name, details=details)


def _result(violations: List[GoBDViolation], warnings: List[GoBDWarning]) -> RuleResult:
    return RuleResult(passed=not violations, violations=violations, warnings=warnings)


def _blank(value: Optional[str]) -> bool:
    return value is None or str(value).strip() == ""


def _number(value: Any) -> Optional[float]:
    return parse_amount(value)


# === Regeln ===

def validate_required_fields(context: ValidationContext) -> RuleResult:
    invoice = context.invoice
    violations, warnings = [], []

    if _blank(invoice.number):
        violations.append(_violation(MISSING_INVOICE_NUMBER, "number"))
    if _blank(invoice.issue_date):
        violations.append(_violation(MISSING_ISSUE_DATE, "issueDate"))
    if invoice.net_amount is None:
        violations.append(_violation(MISSING_NET_AMOUNT, "netAmount"))
    if invoice.tax_amount is None:
        violations.append(_violation(MISSING_TAX_AMOUNT, "taxAmount"))
    if invoice.gross_amount is None:
        violations.append(_violation(MISSING_GROSS_AMOUNT, "grossAmount"))
    if _blank(invoice.currency):
        violations.append(_violation(MISSING_CURRENCY, "currency"))
    if _blank(invoice.supplier_name):
        violations.append(_violation(MISSING_SUPPLIER, "supplierName"))
    if _blank(invoice.customer_name):
        violations.append(_violation(MISSING_CUSTOMER, "customerName"))

    if _blank(invoice.due_date):
        warnings.append(_warning(MISSING_DUE_DATE, "dueDate"))

    return _result(violations, warnings)


def validate_date_constraints(context: ValidationContext) -> RuleResult:
    invoice = context.invoice
    violations = []

    if not _blank(invoice.issue_date):
        issue_date = parse_invoice_date(invoice.issue_date)
        today = context.today or date.today()
        if issue_date is None:
            violations.append(_violation(INVALID_DATE_FORMAT, "issueDate"))
        elif issue_date > today:
            violations.append(_violation(FUTURE_DATE, "issueDate", details={
                "issueDate": issue_date.isoformat(),
                "today": today.isoformat(),
            }))

    return _result(violations, [])


def validate_sum_calculation(context: ValidationContext) -> RuleResult:
    invoice = context.invoice
    net = _number(invoice.net_amount)
    tax = _number(invoice.tax_amount)
    gross = _number(invoice.gross_amount)

    # Fehlende Beträge meldet validate_required_fields
    if net is None or tax is None or gross is None:
        return _result([], [])

    calculated_gross = net + tax
    difference = abs(calculated_gross - gross)
    violations = []
    if difference > context.tolerance + 1e-9:
        violations.append(_violation(SUM_MISMATCH, "grossAmount", details={
            "expected": f"{calculated_gross:.2f}",
            "actual": f"{gross:.2f}",
            "difference": f"{difference:.2f}",
        }))
    return _result(violations, [])


def validate_tax_rates(context: ValidationContext) -> RuleResult:
    violations = []

    for item in context.invoice.line_items:
        prefix = f"lineItems[{item.position_index}]"
        tax_rate = _number(item.tax_rate)

        if tax_rate is None:
            violations.append(_violation(MISSING_LINE_ITEM_TAX_RATE, f"{prefix}.taxRate"))
        elif tax_rate not in VALID_TAX_RATES:
            violations.append(_violation(INVALID_TAX_RATE, f"{prefix}.taxRate", details={
                "actual": tax_rate,
                "allowed": list(VALID_TAX_RATES),
            }))

        net = _number(item.net_amount)
        tax = _number(item.tax_amount)
        if net is not None and tax_rate is not None and tax is not None:
            calculated_tax = net * tax_rate / 100
            if abs(calculated_tax - tax) > context.tolerance + 1e-9:
                violations.append(_violation(TAX_CALCULATION_ERROR, f"{prefix}.taxAmount", details={
                    "expected": f"{calculated_tax:.2f}",
                    "actual": f"{tax:.2f}",
                }))

    return _result(violations, [])


def validate_currency(context: ValidationContext) -> RuleResult:
    violations, warnings = [], []
    if not _blank(context.invoice.currency):
        currency = context.invoice.currency.strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            violations.append(_violation(INVALID_CURRENCY, "currency", details={"actual": currency}))
        elif currency != DEFAULT_CURRENCY:
            warnings.append(_warning(UNCOMMON_CURRENCY, "currency", {
                "currency": currency,
                "expected": DEFAULT_CURRENCY,
            }))
    return _result(violations, warnings)


def validate_line_items(context: ValidationContext) -> RuleResult:
    invoice = context.invoice
    if not invoice.line_items:
        return _result([], [_warning(NO_LINE_ITEMS, "lineItems")])

    violations = []
    total_net = 0.0
    for item in invoice.line_items:
        prefix = f"lineItems[{item.position_index}]"
        if _blank(item.description):
            violations.append(_violation(MISSING_LINE_ITEM_DESCRIPTION, f"{prefix}.description"))

        net = _number(item.net_amount)
        if net is None:
            violations.append(_violation(MISSING_LINE_ITEM_NET_AMOUNT, f"{prefix}.netAmount"))
            continue
        total_net += net

        tax = _number(item.tax_amount)
        gross = _number(item.gross_amount)
        if tax is not None and gross is not None and abs(net + tax - gross) > context.tolerance + 1e-9:
            violations.append(_violation(SUM_MISMATCH, f"{prefix}.grossAmount", details={
                "expected": f"{net + tax:.2f}",
                "actual": f"{gross:.2f}",
            }))

    invoice_net = _number(invoice.net_amount)
    if invoice_net is not None and abs(total_net - invoice_net) > context.tolerance + 1e-9:
        violations.append(_violation(LINE_ITEM_SUM_MISMATCH, "lineItems", details={
            "lineItemTotal": f"{total_net:.2f}",
            "invoiceTotal": f"{invoice_net:.2f}",
        }))

    return _result(violations, [])


def get_all_validation_rules() -> List[Callable[[ValidationContext], RuleResult]]:
    return [
        validate_required_fields,
        validate_date_constraints,
        validate_sum_calculation,
        validate_tax_rates,
        validate_currency,
        validate_line_items,
    ]


# === Validator ===

def validate_gobd_compliance(
    invoice: Union[GoBDInvoiceData, CanonicalInvoice],
    strict_mode: bool = False,
    tolerance: Optional[float] = None,
    validate_line_items: bool = True,
    today: Optional[date] = None,
) -> GoBDValidationResult:
    """
    Prüft eine Rechnung gegen alle GoBD-Regeln.

    ``strict_mode`` ändert die Prüfung selbst nicht; der DATEV-Export
    behandelt jede Verletzung im Strict-Modus als Abbruchgrund.
    Ohne ``tolerance`` gilt GOBD_SUM_TOLERANCE bzw. ``gobd.tolerance``.
    """
    if isinstance(invoice, CanonicalInvoice):
        invoice = GoBDInvoiceData.from_invoice(invoice)
    if tolerance is None:
        tolerance = Config().gobd_tolerance()

    context = ValidationContext(invoice=invoice, strict_mode=strict_mode, tolerance=tolerance, today=today)
    violations: List[GoBDViolation] = []
    warnings: List[GoBDWarning] = []

    for rule in get_all_validation_rules():
        if not validate_line_items and rule.__name__ == 'validate_line_items':
            continue
        result = rule(context)
        violations.extend(result.violations)
        warnings.extend(result.warnings)

    has_errors = any(v.severity == "error" for v in violations)
    has_warnings = bool(warnings) or any(v.severity == "warning" for v in violations)

    if has_errors:
        badge = NON_COMPLIANT
    elif has_warnings:
        badge = WARNING
    else:
        badge = COMPLIANT

    logger.debug(f"GoBD-Prüfung {invoice.number or '-'}: {badge} ({len(violations)} Fehler, {len(warnings)} Hinweise)")
    return GoBDValidationResult(
        is_compliant=not has_errors,
        badge=badge,
        violations=violations,
        warnings=warnings,
        invoice_id=invoice.id,
    )


def is_gobd_compliant(invoice: Union[GoBDInvoiceData, CanonicalInvoice], **options) -> bool:
    return validate_gobd_compliance(invoice, **options).is_compliant


def get_compliance_status_text(badge: str) -> str:
    return {
        COMPLIANT: "GoBD-konform",
        NON_COMPLIANT: "Nicht GoBD-konform",
        WARNING: "GoBD-konform mit Hinweisen",
    }.get(badge, "Unbekannt")


def get_compliance_status_description(badge: str) -> str:
    return {
        COMPLIANT: "Die Rechnung erfüllt alle GoBD-Anforderungen für die ordnungsgemäße Buchführung.",
        NON_COMPLIANT: "Die Rechnung weist Fehler auf, die vor der weiteren Verarbeitung korrigiert werden müssen.",
        WARNING: "Die Rechnung ist grundsätzlich GoBD-konform, enthält aber Hinweise zur Prüfung.",
    }.get(badge, "")


def get_badge_color(badge: str) -> str:
    return {COMPLIANT: "green", NON_COMPLIANT: "red", WARNING: "yellow"}.get(badge, "gray")


def format_validation_result(result: GoBDValidationResult) -> Dict[str, Any]:
    """Für JSON-Response"""
    return {
        "isCompliant": result.is_compliant,
        "badge": result.badge,
        "statusText": get_compliance_status_text(result.badge),
        "statusDescription": get_compliance_status_description(result.badge),
        "violationsCount": len(result.violations),
        "warningsCount": len(result.warnings),
        "violations": [v.to_dict() for v in result.violations],
        "warnings": [w.to_dict() for w in result.warnings],
        "validatedAt": result.validated_at.isoformat(),
        "invoiceId": result.invoice_id,
    }


def validate_before_export(invoice: Union[GoBDInvoiceData, CanonicalInvoice], **options) -> GoBDValidationResult:
    """
    Prüfung im Strict-Modus vor einem Export.

    Raises:
        GoBDComplianceError: mindestens eine Verletzung
    """
    options["strict_mode"] = True
    result = validate_gobd_compliance(invoice, **options)
    if not result.is_compliant:
        messages = "; ".join(v.message for v in result.violations)
        logger.warning(f"Export blockiert: GoBD-Verletzungen ({len(result.violations)})")
        raise GoBDComplianceError(
            f"GoBD-Validierung fehlgeschlagen: {messages}",
            [v.to_dict() for v in result.violations],
        )
    return result
