"""
SBS Deutschland – Logging Utilities
Strukturiertes Logging mit Rechnungs-Kontext (Rechnungsnummer, Dokument, Datei).
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Any, Dict

# Attribute, die LogRecord selbst belegt; extra darf sie nicht überschreiben
RESERVED_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


def get_logger(name: str) -> logging.Logger:
    """Holt oder erstellt einen Logger"""
    return logging.getLogger(name)


class LogContext:
    """
    Hängt den Kontext als ``[k=v | ...]`` an jede Meldung und gibt ihn
    zusätzlich als ``extra`` weiter. Kollidiert ein Schlüssel mit einem
    LogRecord-Attribut (z. B. ``filename``), heißt das Feld ``ctx_<name>``.
    """

    def __init__(self, logger: logging.Logger, invoice_number: str = None,
                 document_id: str = None, filename: str = None, **extra):
        self.logger = logger
        context = {"invoice_number": invoice_number, "document_id": document_id, "filename": filename}
        context.update(extra)
        self.context = {k: v for k, v in context.items() if v is not None}

    def _format_message(self, message: str) -> str:
        if not self.context:
            return message
        return "%s [%s]" % (message, " | ".join(f"{k}={v}" for k, v in self.context.items()))

    def _extra(self, extra: Dict[str, Any]) -> Dict[str, Any]:
        merged = {**self.context, **extra}
        return {(f"ctx_{k}" if k in RESERVED_RECORD_ATTRS else k): v for k, v in merged.items()}

    def log(self, level: int, message: str, **extra):
        if self.logger.isEnabledFor(level):
            self.logger.log(level, self._format_message(message), extra=self._extra(extra))

    def debug(self, message: str, **extra):
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra):
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra):
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra):
        self.log(logging.ERROR, message, **extra)


def log_execution_time(logger: logging.Logger, level: int = logging.DEBUG):
    """Decorator: Laufzeit einer (auch async) Funktion loggen"""
    def decorator(func):
        def report(start: float):
            logger.log(level, f"{func.__name__} abgeschlossen in {time.perf_counter() - start:.3f}s")

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    report(start)
            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                report(start)
        return wrapper
    return decorator


def log_error_with_context(logger: logging.Logger, error: Exception, invoice_number: str = None,
                           filename: str = None, **extra):
    """Fehler mit Typ und ggf. Fehlercode der Anwendung loggen"""
    LogContext(
        logger,
        invoice_number=invoice_number,
        filename=filename,
        error_type=type(error).__name__,
        error_code=getattr(error, "code", None),
        **extra
    ).error(str(error))
