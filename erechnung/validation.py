#!/usr/bin/env python3
"""
SBS Deutschland – Business Validation
Rechnerische Konsistenz (Summen, Steueraufschlüsselung), IBAN und Datumsfolge
einer kanonischen Rechnung.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from .models import CanonicalInvoice
from .parsing_utils import parse_amount

logger = logging.getLogger(__name__)

MONEY_TOLERANCE = 0.02

IBAN_MIN_LENGTH = 15
IBAN_MAX_LENGTH = 34
IBAN_PATTERN = re.compile(r'^[A-Z]{2}\d{2}[A-Z0-9]+$')
ISO_DATE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')


@dataclass
class BusinessIssue:
    """Einzelner Befund mit Feldpfad, z.B. ['taxBreakdown', 0, 'taxAmount']"""
    path: List[Union[str, int]] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"path": list(self.path), "message": self.message}


def normalize_iban(value: str) -> str:
    return re.sub(r'\s+', '', value or '').upper()


def normalize_vat_id(value: str) -> str:
    return re.sub(r'[^A-Za-z0-9]', '', value or '').upper()


def approximately_equal(left: float, right: float, tolerance: float = MONEY_TOLERANCE) -> bool:
    # kleiner Puffer gegen Float-Artefakte (0.1 + 0.2)
    return abs(left - right) <= tolerance + 1e-9


def parse_iso_date_to_utc(value: str) -> Optional[datetime]:
    """YYYY-MM-DD -> datetime 00:00 UTC, None bei ungültigem Kalenderdatum"""
    match = ISO_DATE.match(value or '')
    if not match:
        return None
    year, month, day = (int(part) for part in match.groups())
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def is_valid_iban_basic(value: str) -> bool:
    """
    Formale IBAN-Prüfung (ISO 7064 Mod 97-10).

    Prüft Länge, Aufbau und Prüfziffer, nicht die Existenz des Kontos.
    """
    iban = normalize_iban(value)
    if len(iban) < IBAN_MIN_LENGTH or len(iban) > IBAN_MAX_LENGTH:
        return False
    if not IBAN_PATTERN.match(iban):
        return False

    rearranged = iban[4:] + iban[:4]
    numeric = ''.join(str(ord(c) - 55) if c.isalpha() else c for c in rearranged)

    remainder = 0
    for digit in numeric:
        remainder = (remainder * 10 + int(digit)) % 97
    return remainder == 1


class BusinessRuleValidator:
    """Validates canonical invoice arithmetic"""

    def __init__(self, tolerance: float = MONEY_TOLERANCE):
        self.tolerance = tolerance

    def validate(self, invoice: Union[CanonicalInvoice, Dict[str, Any]]) -> Tuple[bool, List[BusinessIssue]]:
        """
        Validate invoice
        Returns: (is_valid, list_of_issues)
        """
        issues: List[BusinessIssue] = []
        if isinstance(invoice, dict):
            issues.extend(_amount_issues(invoice))
            try:
                invoice = CanonicalInvoice.from_dict(invoice)
            except (TypeError, ValueError, AttributeError) as e:
                logger.debug(f"Rechnungsdaten nicht lesbar: {type(e).__name__}")
                issues.append(BusinessIssue([], 'Rechnungsdaten haben eine ungültige Struktur.'))
                return False, issues
        elif not isinstance(invoice, CanonicalInvoice):
            return False, [BusinessIssue([], 'Rechnungsdaten haben eine ungültige Struktur.')]

        issues.extend(self._check_totals(invoice))
        issues.extend(self._check_tax_breakdown(invoice))
        issues.extend(self._check_iban(invoice))
        issues.extend(self._check_dates(invoice))

        if issues:
            logger.debug(f"Geschäftsregeln verletzt für {invoice.document_id or 'unbekannt'}: {len(issues)}")
        return not issues, issues

    def _eq(self, left: float, right: float) -> bool:
        return approximately_equal(left, right, self.tolerance)

    def _check_totals(self, invoice: CanonicalInvoice) -> List[BusinessIssue]:
        issues = []
        totals = invoice.totals

        if totals.net_amount is not None and invoice.line_items:
            sum_lines_net = sum(item.net_amount or 0.0 for item in invoice.line_items)
            if not self._eq(sum_lines_net, totals.net_amount):
                issues.append(BusinessIssue(
                    ['totals', 'netAmount'],
                    'Summe der Positions-Nettobeträge passt nicht zum Gesamt-Nettobetrag.',
                ))

        if None not in (totals.net_amount, totals.tax_amount, totals.gross_amount):
            if not self._eq(totals.net_amount + totals.tax_amount, totals.gross_amount):
                issues.append(BusinessIssue(
                    ['totals', 'grossAmount'],
                    'Nettobetrag + Steuerbetrag muss dem Bruttobetrag entsprechen.',
                ))
        return issues

    def _check_tax_breakdown(self, invoice: CanonicalInvoice) -> List[BusinessIssue]:
        issues = []
        totals = invoice.totals
        breakdown = invoice.tax_breakdown

        if totals.net_amount is not None:
            sum_taxable = sum(entry.taxable_amount or 0.0 for entry in breakdown)
            if not self._eq(sum_taxable, totals.net_amount):
                issues.append(BusinessIssue(
                    ['taxBreakdown'],
                    'Summe der steuerpflichtigen Beträge passt nicht zum Nettobetrag.',
                ))

        if totals.tax_amount is not None:
            sum_tax = sum(entry.tax_amount or 0.0 for entry in breakdown)
            if not self._eq(sum_tax, totals.tax_amount):
                issues.append(BusinessIssue(
                    ['totals', 'taxAmount'],
                    'Summe der Steuerbeträge passt nicht zur Gesamtsteuer.',
                ))

        for index, entry in enumerate(breakdown):
            if None in (entry.rate, entry.taxable_amount, entry.tax_amount):
                continue
            expected_tax = entry.taxable_amount * entry.rate / 100
            if not self._eq(entry.tax_amount, expected_tax):
                issues.append(BusinessIssue(
                    ['taxBreakdown', index, 'taxAmount'],
                    f'Steuerbetrag für {_format_rate(entry.rate)}% ist inkonsistent.',
                ))
        return issues

    def _check_iban(self, invoice: CanonicalInvoice) -> List[BusinessIssue]:
        if invoice.payment.iban and not is_valid_iban_basic(str(invoice.payment.iban)):
            return [BusinessIssue(['payment', 'iban'], 'IBAN ist ungültig.')]
        return []

    def _check_dates(self, invoice: CanonicalInvoice) -> List[BusinessIssue]:
        issue_date = _as_date(invoice.issue_date)
        due_date = _as_date(invoice.due_date)
        if issue_date and due_date and due_date < issue_date:
            return [BusinessIssue(
                ['header', 'dueDate'],
                'Fälligkeitsdatum darf nicht vor dem Rechnungsdatum liegen.',
            )]
        return []


def validate_invoice_business_rules(
    invoice: Union[CanonicalInvoice, Dict[str, Any]],
    tolerance: float = MONEY_TOLERANCE,
) -> List[BusinessIssue]:
    """Alle Geschäftsregeln; wirft nie, leere Liste = konsistent"""
    _, issues = BusinessRuleValidator(tolerance).validate(invoice)
    return issues


def _amount_issues(data: Dict[str, Any]) -> List[BusinessIssue]:
    """Fehlende oder nicht lesbare Beträge in Rohdaten (camelCase oder snake_case)"""
    issues = []

    def check(path, section, names, required):
        if not isinstance(section, dict):
            issues.append(BusinessIssue(path, 'Abschnitt ist kein Objekt.'))
            return
        for name in names:
            value = _lookup(section, name)
            if value is None or value == '':
                if required:
                    issues.append(BusinessIssue(path + [name], 'Betrag fehlt.'))
            elif parse_amount(value) is None:
                issues.append(BusinessIssue(path + [name], 'Betrag ist keine Zahl.'))

    totals = _lookup(data, 'totals')
    if totals is not None:
        check(['totals'], totals, ('netAmount', 'taxAmount', 'grossAmount'), False)
    for key, names, required in (
        ('lineItems', ('quantity', 'unitPrice', 'netAmount', 'taxRate', 'taxAmount', 'grossAmount'), False),
        ('taxBreakdown', ('rate', 'taxableAmount', 'taxAmount'), True),
    ):
        entries = _lookup(data, key)
        if entries is None:
            continue
        if not isinstance(entries, list):
            issues.append(BusinessIssue([key], 'Abschnitt ist keine Liste.'))
            continue
        for index, entry in enumerate(entries):
            check([key, index], entry, names, required)
    return issues


def _lookup(section: Dict[str, Any], camel_name: str) -> Any:
    snake_name = re.sub(r'(?<!^)(?=[A-Z])', '_', camel_name).lower()
    return section[camel_name] if camel_name in section else section.get(snake_name)


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        parsed = parse_iso_date_to_utc(value[:10])
        return parsed.date() if parsed else None
    return None


def _format_rate(rate: float) -> str:
    return str(int(rate)) if float(rate).is_integer() else str(rate)
