"""
Unit tests für strukturiertes Logging
"""

import asyncio
import logging

from erechnung.exceptions import InvoiceParseError
from erechnung.logging_utils import LogContext, get_logger, log_error_with_context, log_execution_time

logger = get_logger("erechnung.tests")


class TestLogContext:

    def test_message_contains_context(self, caplog):
        with caplog.at_level(logging.INFO, logger="erechnung.tests"):
            LogContext(logger, invoice_number="RE-1", filename="a.xml").info("Importiert")
        record = caplog.records[-1]
        assert record.getMessage() == "Importiert [invoice_number=RE-1 | filename=a.xml]"
        assert record.invoice_number == "RE-1"
        # filename ist ein LogRecord-Attribut und wird umbenannt
        assert record.ctx_filename == "a.xml"
        assert record.filename != "a.xml"

    def test_none_values_are_dropped(self, caplog):
        with caplog.at_level(logging.WARNING, logger="erechnung.tests"):
            LogContext(logger, document_id=None).warning("Ohne Kontext")
        assert caplog.records[-1].getMessage() == "Ohne Kontext"

    def test_log_error_with_context(self, caplog):
        with caplog.at_level(logging.ERROR, logger="erechnung.tests"):
            log_error_with_context(logger, InvoiceParseError("kaputt"), invoice_number="RE-2")
        record = caplog.records[-1]
        assert "error_type=InvoiceParseError" in record.getMessage()
        assert record.error_code == "PARSE_ERROR"


class TestLogExecutionTime:

    def test_sync_function(self, caplog):
        @log_execution_time(logger)
        def double(value):
            return value * 2

        with caplog.at_level(logging.DEBUG, logger="erechnung.tests"):
            assert double(4) == 8
        assert "double abgeschlossen in" in caplog.text

    def test_async_function(self, caplog):
        @log_execution_time(logger)
        async def triple(value):
            return value * 3

        with caplog.at_level(logging.DEBUG, logger="erechnung.tests"):
            assert asyncio.run(triple(2)) == 6
        assert "triple abgeschlossen in" in caplog.text
