#!/usr/bin/env python3
"""
SBS Deutschland – E-Invoice Import
Liest ZUGFeRD PDFs und XRechnung XMLs und liefert das kanonische Rechnungsmodell.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .cii_parser import parse_cii
from .exceptions import InvoiceParseError, PdfExtractionError, UnsupportedFormatError
from .format_detection import Flavor, detect_flavor
from .models import CanonicalInvoice, InvoiceSource
from .ubl_parser import parse_ubl
from .xml_utils import parse_xml_root, validate_cii_structure, validate_ubl_structure
from .zugferd import extract_embedded_xml

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ["XRechnung CII", "XRechnung UBL", "ZUGFeRD/Factur-X"]


class DetectedFormat(str, Enum):
    XRECHNUNG_CII = "XRECHNUNG_CII"
    XRECHNUNG_UBL = "XRECHNUNG_UBL"
    ZUGFERD = "ZUGFERD"


@dataclass
class ImportResult:
    """Ergebnis eines E-Rechnungs-Imports"""
    invoice: CanonicalInvoice
    detected_format: DetectedFormat
    warnings: List[str] = field(default_factory=list)
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoice": self.invoice.to_dict(),
            "detected_format": self.detected_format.value,
            "warnings": list(self.warnings),
            "version": self.version,
        }


def parse_xrechnung(
    buffer: Union[str, bytes],
    strict: bool = False,
    validate: bool = True,
) -> ImportResult:
    """
    Parsed XRechnung (CII oder UBL).

    Args:
        buffer: XML als str oder bytes
        strict: Strukturwarnungen führen zum Abbruch
        validate: Strukturprüfung durchführen (False = überspringen)

    Raises:
        XmlValidationError: XML ist nicht wohlgeformt
        UnsupportedFormatError: weder CII noch UBL
        InvoiceParseError: strict=True und Strukturwarnungen vorhanden
    """
    root = parse_xml_root(buffer)
    detected = detect_flavor(root)

    if detected.flavor == Flavor.CII:
        return _parse_dialect(root, Flavor.CII, detected.version, strict, validate)
    if detected.flavor == Flavor.UBL:
        return _parse_dialect(root, Flavor.UBL, detected.version, strict, validate)

    raise UnsupportedFormatError(
        "Could not determine XRechnung format (neither CII nor UBL)",
        {"supportedFormats": SUPPORTED_FORMATS},
    )


def parse_xrechnung_cii(buffer: Union[str, bytes], strict: bool = False, validate: bool = True) -> ImportResult:
    """Parsed ausschließlich CII"""
    root = parse_xml_root(buffer)
    detected = detect_flavor(root)
    if detected.flavor != Flavor.CII:
        raise UnsupportedFormatError(
            f"Erwartet CII, erkannt: {detected.flavor.value}",
            {"supportedFormats": ["XRechnung CII"]},
        )
    return _parse_dialect(root, Flavor.CII, detected.version, strict, validate)


def parse_xrechnung_ubl(buffer: Union[str, bytes], strict: bool = False, validate: bool = True) -> ImportResult:
    """Parsed ausschließlich UBL"""
    root = parse_xml_root(buffer)
    detected = detect_flavor(root)
    if detected.flavor != Flavor.UBL:
        raise UnsupportedFormatError(
            f"Erwartet UBL, erkannt: {detected.flavor.value}",
            {"supportedFormats": ["XRechnung UBL"]},
        )
    return _parse_dialect(root, Flavor.UBL, detected.version, strict, validate)


def parse_zugferd(pdf_bytes: bytes, strict: bool = False, validate: bool = True) -> ImportResult:
    """
    Extrahiert das eingebettete XML und parsed es.

    Raises:
        PdfExtractionError: kein PDF oder kein eingebettetes Rechnungs-XML
        UnsupportedFormatError: eingebettetes XML ist kein CII
    """
    xml_bytes = extract_embedded_xml(pdf_bytes)
    root = parse_xml_root(xml_bytes)
    detected = detect_flavor(root)
    if detected.flavor != Flavor.CII:
        raise UnsupportedFormatError(
            "Eingebettetes XML ist kein CII (ZUGFeRD/Factur-X erwartet)",
            {"supportedFormats": ["ZUGFeRD/Factur-X"], "detected": detected.flavor.value},
        )

    result = _parse_dialect(root, Flavor.CII, detected.version, strict, validate)
    result.detected_format = DetectedFormat.ZUGFERD
    result.invoice.source = InvoiceSource.ZUGFERD
    logger.info(f"ZUGFeRD/Factur-X erkannt: {result.invoice.document_id}")
    return result


def _parse_dialect(root, flavor: Flavor, version: Optional[str], strict: bool, validate: bool) -> ImportResult:
    if flavor == Flavor.CII:
        parsed = parse_cii(root)
        detected_format = DetectedFormat.XRECHNUNG_CII
    else:
        parsed = parse_ubl(root)
        detected_format = DetectedFormat.XRECHNUNG_UBL

    if not parsed.success:
        raise InvoiceParseError(
            f"{flavor.value}-Dokument konnte nicht gelesen werden",
            details={"errors": parsed.errors},
        )

    warnings = list(parsed.warnings)
    if validate:
        structure = validate_cii_structure(root) if flavor == Flavor.CII else validate_ubl_structure(root)
        warnings = structure + warnings
        if strict and warnings:
            logger.warning(f"Import abgelehnt (strict): {len(warnings)} Warnungen")
            raise InvoiceParseError(
                "XRechnung validation failed in strict mode",
                "VALIDATION_ERROR",
                {"warnings": warnings},
            )

    invoice = parsed.invoice
    invoice.source = InvoiceSource.XRECHNUNG
    logger.info(f"E-Rechnung erkannt: {detected_format.value} {invoice.document_id}")
    return ImportResult(invoice=invoice, detected_format=detected_format, warnings=warnings, version=version)


def parse_einvoice(file_path: Union[str, Path], strict: bool = False) -> Tuple[bool, Optional[ImportResult]]:
    """
    Hauptfunktion: Parsed E-Rechnung (PDF oder XML) von der Platte.

    Returns:
        Tuple (is_einvoice, ImportResult oder None)
    """
    path = Path(file_path)
    suffix = path.suffix.lower()

    try:
        if suffix == '.xml':
            return True, parse_xrechnung(path.read_bytes(), strict=strict)
        if suffix == '.pdf':
            return True, parse_zugferd(path.read_bytes(), strict=strict)
    except PdfExtractionError as e:
        logger.info(f"Keine ZUGFeRD-Rechnung: {path.name} ({e.message})")
    except InvoiceParseError as e:
        logger.warning(f"E-Rechnung nicht lesbar: {path.name} ({e.code}: {e.message})")

    return False, None


def is_einvoice(file_path: Union[str, Path]) -> bool:
    """Quick-Check ob Datei eine E-Rechnung ist"""
    is_invoice, _ = parse_einvoice(file_path)
    return is_invoice
