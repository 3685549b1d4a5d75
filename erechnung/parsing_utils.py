"""
Gemeinsame Parser für Beträge und Datumswerte.

Beträge kommen je nach Quelle in deutscher ("1.234,56") oder technischer
Schreibweise ("1234.56"). Regeln, in dieser Reihenfolge:

- ``1.234,56`` / ``1.234.567`` / ``1.234``  -> deutsche Tausenderpunkte (1234.56 / 1234567 / 1234)
- ``1234,56`` / ``0,5``                    -> Komma als Dezimaltrenner
- ``1,234.56``                             -> englische Tausenderkommas
- ``1234.56`` / ``0.500`` / ``-112.92``    -> Punkt als Dezimaltrenner

Eine führende ``0`` vor einem Punkt ist nie eine Tausendergruppe, ``0.500`` ist also 0.5.
"""

import math
import re
from datetime import date, datetime
from typing import Any, Optional

GERMAN_THOUSANDS = re.compile(r'^-?[1-9]\d{0,2}(\.\d{3})+(,\d+)?$')
GERMAN_DECIMAL = re.compile(r'^-?\d+,\d+$')
ENGLISH_THOUSANDS = re.compile(r'^-?\d{1,3}(,\d{3})+(\.\d+)?$')
PLAIN_DECIMAL = re.compile(r'^[+-]?(\d+(\.\d*)?|\.\d+)$')

GERMAN_DATE = re.compile(r'^(\d{1,2})\.(\d{1,2})\.(\d{4})$')
ISO_DATE = re.compile(r'^(\d{4})-(\d{2})-(\d{2})(?:T.*)?$')
COMPACT_DATE = re.compile(r'^(\d{4})(\d{2})(\d{2})$')


def parse_amount(value: Any) -> Optional[float]:
    """Konvertiert Betrag (str/int/float) zu float, None wenn nicht lesbar"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None

    cleaned = value.strip().replace(' ', '').replace('\xa0', '')
    if not cleaned:
        return None

    if GERMAN_THOUSANDS.match(cleaned):
        cleaned = cleaned.replace('.', '').replace(',', '.')
    elif GERMAN_DECIMAL.match(cleaned):
        cleaned = cleaned.replace(',', '.')
    elif ENGLISH_THOUSANDS.match(cleaned) and '.' in cleaned:
        cleaned = cleaned.replace(',', '')

    if not PLAIN_DECIMAL.match(cleaned):
        return None
    return float(cleaned)


def parse_invoice_date(value: Any) -> Optional[date]:
    """
    Liest DD.MM.YYYY, YYYY-MM-DD (optional mit Uhrzeit) und YYYYMMDD (CII Format 102).

    Unmögliche Kalenderdaten wie 31.02.2024 ergeben None.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    match = GERMAN_DATE.match(text)
    if match:
        day, month, year = match.groups()
    else:
        match = ISO_DATE.match(text) or COMPACT_DATE.match(text)
        if not match:
            return None
        year, month, day = match.groups()

    try:
        return date(int(year), int(month), int(day))
    except ValueError:
        return None


def format_date_102(value: date) -> str:
    """Datum als YYYYMMDD (UN/CEFACT Format 102)"""
    return value.strftime('%Y%m%d')


def format_amount(value: float, decimals: int = 2) -> str:
    """Betrag mit Punkt als Dezimaltrenner für XML"""
    return f"{value:.{decimals}f}"


def first_not_none(*values):
    for value in values:
        if value is not None:
            return value
    return None
