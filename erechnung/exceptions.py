"""
SBS Deutschland – Custom Exceptions
Strukturierte Fehlerbehandlung für Import, Prüfung und Export von E-Rechnungen.
"""

from typing import Optional, Dict, Any, List


class InvoiceAppError(Exception):
    """Basis-Exception für alle Fehler der E-Rechnung-Engine"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Für JSON-Response"""
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# === Import / Parsing ===

class InvoiceParseError(InvoiceAppError):
    """Rechnung konnte nicht gelesen werden"""
    def __init__(self, message: str, code: str = "PARSE_ERROR", details: Optional[Dict] = None):
        super().__init__(message, code, 422, details)


class XmlValidationError(InvoiceParseError):
    """XML ist nicht wohlgeformt oder nicht konform"""
    def __init__(self, message: str, validation_errors: List[str] = None, details: Optional[Dict] = None):
        self.validation_errors = list(validation_errors or [])
        details = dict(details or {})
        details["validation_errors"] = self.validation_errors
        super().__init__(message, "XML_VALIDATION_ERROR", details)


class PdfExtractionError(InvoiceParseError):
    """Kein PDF oder kein eingebettetes Rechnungs-XML"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, "PDF_EXTRACTION_ERROR", details)


class UnsupportedFormatError(InvoiceParseError):
    """Weder CII noch UBL erkannt"""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, "UNSUPPORTED_FORMAT_ERROR", details)


# === Export ===

class XRechnungGeneratorError(InvoiceAppError):
    """XRechnung konnte nicht erzeugt werden (Pflichtfeld fehlt oder XSD-Fehler)"""
    def __init__(self, message: str, errors: List[str] = None):
        self.errors = list(errors or [])
        super().__init__(message, "XRECHNUNG_GENERATOR_ERROR", 422, {"errors": self.errors})


class GoBDComplianceError(InvoiceAppError):
    """Rechnung ist nicht GoBD-konform"""
    def __init__(self, message: str, violations: List[Dict[str, Any]] = None):
        self.violations = list(violations or [])
        super().__init__(message, "GOBD_VIOLATION", 422, {"violations": self.violations})


class ExportError(InvoiceAppError):
    """Fehler beim Export"""
    def __init__(self, format: str, reason: str = None, details: Optional[Dict] = None):
        details = dict(details or {})
        details.update({"format": format, "reason": reason})
        super().__init__(
            f"Export-Fehler ({format}): {reason or 'Unbekannt'}",
            "EXPORT_ERROR",
            422,
            details
        )
