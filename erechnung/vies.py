"""
SBS Deutschland – USt-IdNr. Prüfung
Lokale Formatprüfung plus optionale Abfrage des EU-VIES-Dienstes (SOAP checkVat).

Die Prüfung wirft nie: ist VIES nicht erreichbar, liefert sie ein Ergebnis
mit Status ``unavailable`` und die lokale Prüfung bleibt maßgeblich.
"""

import re
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from .config import Config
from .validation import normalize_vat_id

logger = logging.getLogger(__name__)

VIES_ENDPOINT = "https://ec.europa.eu/taxation_customs/vies/services/checkVatService"

EU_COUNTRY_CODES = frozenset({
    'AT', 'BE', 'BG', 'CY', 'CZ', 'DE', 'DK', 'EE', 'EL', 'ES', 'FI', 'FR', 'HR', 'HU',
    'IE', 'IT', 'LT', 'LU', 'LV', 'MT', 'NL', 'PL', 'PT', 'RO', 'SE', 'SI', 'SK', 'XI',
})

VAT_NUMBER_PATTERN_BY_COUNTRY = {
    'AT': re.compile(r'^U\d{8}$'),
    'BE': re.compile(r'^0?\d{9}$'),
    'BG': re.compile(r'^\d{9,10}$'),
    'CY': re.compile(r'^\d{8}[A-Z]$'),
    'CZ': re.compile(r'^\d{8,10}$'),
    'DE': re.compile(r'^\d{9}$'),
    'DK': re.compile(r'^\d{8}$'),
    'EE': re.compile(r'^\d{9}$'),
    'EL': re.compile(r'^\d{9}$'),
    'ES': re.compile(r'^[A-Z0-9]\d{7}[A-Z0-9]$'),
    'FI': re.compile(r'^\d{8}$'),
    'FR': re.compile(r'^[A-HJ-NP-Z0-9]{2}\d{9}$'),
    'HR': re.compile(r'^\d{11}$'),
    'HU': re.compile(r'^\d{8}$'),
    'IE': re.compile(r'^\d[A-Z0-9+*]\d{5}[A-Z]$'),
    'IT': re.compile(r'^\d{11}$'),
    'LT': re.compile(r'^(\d{9}|\d{12})$'),
    'LU': re.compile(r'^\d{8}$'),
    'LV': re.compile(r'^\d{11}$'),
    'MT': re.compile(r'^\d{8}$'),
    'NL': re.compile(r'^\d{9}B\d{2}$'),
    'PL': re.compile(r'^\d{10}$'),
    'PT': re.compile(r'^\d{9}$'),
    'RO': re.compile(r'^\d{2,10}$'),
    'SE': re.compile(r'^\d{12}$'),
    'SI': re.compile(r'^\d{8}$'),
    'SK': re.compile(r'^\d{10}$'),
    'XI': re.compile(r'^\d{9}$'),
}
GENERIC_VAT_NUMBER = re.compile(r'^[A-Z0-9]{2,12}$')
VAT_ID_PATTERN = re.compile(r'^([A-Z]{2})([A-Z0-9]{2,12})$')

MSG_MISSING = "Keine USt-IdNr. angegeben."
MSG_FORMAT = "USt-IdNr. muss im gültigen Länderformat angegeben werden (z. B. DE123456789)."
MSG_UNSUPPORTED = "VIES-Prüfung ist nur für EU-USt-IdNr. verfügbar."
MSG_DISABLED = "VIES-Prüfung ist deaktiviert. Es wurde nur lokal geprüft."
MSG_VALID = "USt-IdNr. wurde über VIES bestätigt."
MSG_INVALID = "USt-IdNr. konnte im VIES-System nicht bestätigt werden."
MSG_INVALID_INPUT = "USt-IdNr. hat laut VIES ein ungültiges Format."
MSG_UNAVAILABLE = "VIES-Prüfung ist aktuell nicht verfügbar. Die lokale Prüfung wurde verwendet."

SOAP_ENVELOPE = """<?xml version="1.0" encoding="UTF-8"?>
<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" \
xmlns:typ="urn:ec.europa.eu:taxud:vies:services:checkVat:types">
  <soapenv:Header/>
  <soapenv:Body>
    <typ:checkVat>
      <typ:countryCode>{country_code}</typ:countryCode>
      <typ:vatNumber>{vat_number}</typ:vatNumber>
    </typ:checkVat>
  </soapenv:Body>
</soapenv:Envelope>"""


@dataclass
class ParsedVatId:
    country_code: str
    vat_number: str


@dataclass
class RawViesResponse:
    """Rohantwort des VIES-Dienstes"""
    status_code: int
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass
class VatValidationResult:
    status: str
    reason: str
    message: str
    normalized_vat_id: str = ""
    country_code: Optional[str] = None
    vat_number: Optional[str] = None
    vies_checked: bool = False
    checked_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "checkedAt": self.checked_at,
            "normalizedVatId": self.normalized_vat_id,
            "countryCode": self.country_code,
            "vatNumber": self.vat_number,
            "viesChecked": self.vies_checked,
        }


class RequestsViesTransport:
    """
    SOAP-Aufruf über requests; ein Request, keine Wiederholung.

    ``timeout_ms`` gilt für den gesamten Aufruf: ``requests`` begrenzt nur
    Verbindungsaufbau und einzelne Lesevorgänge, daher wird die Antwort
    gestreamt und beim Überschreiten der Frist per ``close()`` abgebrochen.
    Eine selbst erzeugte Session wird nach dem Aufruf geschlossen.
    """

    chunk_size = 4096

    def __init__(self, timeout_ms: int, endpoint: str = VIES_ENDPOINT,
                 session: Optional[requests.Session] = None, clock=time.monotonic):
        self.timeout_ms = timeout_ms
        self.endpoint = endpoint
        self.session = session
        self.clock = clock

    def check_vat(self, country_code: str, vat_number: str) -> RawViesResponse:
        body = SOAP_ENVELOPE.format(country_code=country_code, vat_number=vat_number)
        if self.session is not None:
            return self._post(self.session, body)
        with requests.Session() as session:
            return self._post(session, body)

    def _post(self, session, body: str) -> RawViesResponse:
        timeout = self.timeout_ms / 1000
        deadline = self.clock() + timeout
        response = session.post(
            self.endpoint,
            data=body.encode('utf-8'),
            headers={
                'Content-Type': 'text/xml; charset=utf-8',
                'SOAPAction': '""',
            },
            timeout=timeout,
            stream=True,
        )
        try:
            chunks = []
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if self.clock() > deadline:
                    raise requests.Timeout(f"VIES-Antwort nach {self.timeout_ms} ms abgebrochen")
                chunks.append(chunk)
            text = b''.join(chunks).decode(response.encoding or 'utf-8', errors='replace')
            return RawViesResponse(status_code=response.status_code, body=text)
        finally:
            response.close()


def parse_vat_id(normalized_vat_id: str) -> Optional[ParsedVatId]:
    """'DE123456789' -> ParsedVatId('DE', '123456789'); GR wird zu EL (VIES-Konvention)"""
    match = VAT_ID_PATTERN.match(normalized_vat_id or '')
    if not match:
        return None
    country_code = 'EL' if match.group(1) == 'GR' else match.group(1)
    return ParsedVatId(country_code=country_code, vat_number=match.group(2))


def is_local_format_valid(country_code: str, vat_number: str) -> bool:
    pattern = VAT_NUMBER_PATTERN_BY_COUNTRY.get(country_code, GENERIC_VAT_NUMBER)
    return bool(pattern.match(vat_number))


def extract_tag_value(xml: str, tag_name: str) -> Optional[str]:
    """Erster Textinhalt von <tag> bzw. <prefix:tag>, CDATA wird entpackt"""
    name = re.escape(tag_name)
    match = re.search(
        rf'<(?:[A-Za-z_][\w.-]*:)?{name}\b[^>]*>([\s\S]*?)</(?:[A-Za-z_][\w.-]*:)?{name}>',
        xml or '',
        re.IGNORECASE,
    )
    if not match:
        return None
    value = re.sub(r'<!\[CDATA\[([\s\S]*?)\]\]>', r'\1', match.group(1)).strip()
    return value or None


def _build(normalized: str, parsed: Optional[ParsedVatId], status: str, reason: str,
           message: str, vies_checked: bool) -> VatValidationResult:
    return VatValidationResult(
        status=status,
        reason=reason,
        message=message,
        normalized_vat_id=normalized,
        country_code=parsed.country_code if parsed else None,
        vat_number=parsed.vat_number if parsed else None,
        vies_checked=vies_checked,
    )


def classify_vies_response(normalized: str, parsed: ParsedVatId, response: RawViesResponse) -> VatValidationResult:
    """Bewertet die VIES-Antwort (Fault, valid=true/false, sonst nicht verfügbar)"""
    if not response.ok:
        return _build(normalized, parsed, 'unavailable', 'vies_unavailable', MSG_UNAVAILABLE, True)

    fault = extract_tag_value(response.body, 'faultstring')
    if fault:
        if 'INVALID_INPUT' in fault.upper():
            return _build(normalized, parsed, 'invalid', 'vies_invalid_input', MSG_INVALID_INPUT, True)
        logger.warning(f"VIES Fault für {parsed.country_code}: {fault}")
        return _build(normalized, parsed, 'unavailable', 'vies_unavailable', MSG_UNAVAILABLE, True)

    valid = (extract_tag_value(response.body, 'valid') or '').lower()
    if valid == 'true':
        return _build(normalized, parsed, 'valid', 'ok', MSG_VALID, True)
    if valid == 'false':
        return _build(normalized, parsed, 'invalid', 'vies_invalid', MSG_INVALID, True)

    return _build(normalized, parsed, 'unavailable', 'vies_unavailable', MSG_UNAVAILABLE, True)


def validate_seller_vat_id(
    vat_id: Optional[str],
    transport=None,
    config: Optional[Config] = None,
) -> VatValidationResult:
    """
    Prüft eine USt-IdNr. lokal und, falls aktiviert, gegen VIES.

    Args:
        vat_id: USt-IdNr. in beliebiger Schreibweise ("DE 123 456 789")
        transport: Objekt mit ``check_vat(country_code, vat_number) -> RawViesResponse``;
            Standard ist ``RequestsViesTransport`` mit konfiguriertem Timeout
        config: Konfiguration (VIES_VALIDATION_ENABLED, VIES_TIMEOUT_MS)
    """
    normalized = normalize_vat_id(vat_id or '')
    parsed = parse_vat_id(normalized)

    if not normalized:
        return _build(normalized, parsed, 'unverified', 'missing', MSG_MISSING, False)

    if parsed is None or not is_local_format_valid(parsed.country_code, parsed.vat_number):
        return _build(normalized, parsed, 'invalid', 'format', MSG_FORMAT, False)

    if parsed.country_code not in EU_COUNTRY_CODES:
        return _build(normalized, parsed, 'unverified', 'unsupported_country', MSG_UNSUPPORTED, False)

    config = config or Config()
    if not config.vies_enabled():
        return _build(normalized, parsed, 'unverified', 'disabled', MSG_DISABLED, False)

    transport = transport or RequestsViesTransport(config.vies_timeout_ms())
    try:
        response = transport.check_vat(parsed.country_code, parsed.vat_number)
        result = classify_vies_response(normalized, parsed, response)
    except requests.RequestException as e:
        logger.warning(f"VIES nicht erreichbar ({type(e).__name__}): {parsed.country_code}")
        return _build(normalized, parsed, 'unavailable', 'vies_unavailable', MSG_UNAVAILABLE, True)
    except Exception:
        # Ergebnis bleibt beratend, auch bei Fehlern in Transport oder Antwort
        logger.warning(f"VIES-Prüfung fehlgeschlagen: {parsed.country_code}", exc_info=True)
        return _build(normalized, parsed, 'unavailable', 'vies_unavailable', MSG_UNAVAILABLE, True)

    if result.status == 'unavailable':
        logger.warning(f"VIES-Prüfung nicht verfügbar (HTTP {response.status_code})")
    else:
        logger.info(f"VIES-Prüfung {parsed.country_code}: {result.status}")
    return result
