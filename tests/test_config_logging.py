"""Tests for settings, structured logging, errors and external-call results."""

import asyncio
import logging

import pytest

from pdfrag.core.config import Settings, get_settings
from pdfrag.core.errors import (
    ExternalServiceError,
    InputValidationError,
    OwnershipError,
    PdfRagError,
    SearchUnavailableError,
)
from pdfrag.core.logging import StructuredFormatter, get_logger, log_with_context
from pdfrag.core.result import Err, Ok, call_external, unwrap_or


class TestSettings:
    """Tests for core/config.py."""

    def test_defaults(self):
        """Unset values fall back to their defaults."""
        settings = Settings()

        assert settings.SUPABASE_URL == "https://test.supabase.co"
        assert settings.EMBEDDING_MODEL == "text-embedding-3-small"
        assert settings.CHUNK_SIZE_TOKENS == 600
        assert settings.CHUNK_OVERLAP_TOKENS == 100
        assert settings.SEARCH_SIMILARITY_THRESHOLD == 0.65
        assert settings.VECTOR_BACKEND == "supabase"

    def test_env_override(self, monkeypatch):
        """Environment variables override defaults."""
        monkeypatch.setenv("CHUNK_SIZE_TOKENS", "800")
        monkeypatch.setenv("SEARCH_DEGRADED_FALLBACK", "false")

        settings = Settings()

        assert settings.CHUNK_SIZE_TOKENS == 800
        assert settings.SEARCH_DEGRADED_FALLBACK is False

    def test_get_settings_is_cached(self):
        """get_settings returns one shared instance."""
        assert get_settings() is get_settings()


class TestStructuredFormatter:
    """Tests for core/logging.py."""

    def test_formats_key_value_pairs(self):
        """Message, level and extra fields render as key=value."""
        record = logging.makeLogRecord(
            {
                "name": "pdfrag.test",
                "levelno": logging.INFO,
                "levelname": "INFO",
                "msg": "Stored %d chunks",
                "args": (3,),
                "document_id": "doc-1",
            }
        )

        line = StructuredFormatter().format(record)

        assert "level=INFO" in line
        assert "message=Stored 3 chunks" in line
        assert "document_id=doc-1" in line

    def test_run_id_and_extra_data(self):
        """run_id and extra_data are flattened into the line."""
        record = logging.makeLogRecord(
            {"msg": "done", "run_id": "run-7", "extra_data": {"stage": "embedding"}}
        )

        line = StructuredFormatter().format(record)

        assert "run_id=run-7" in line
        assert "stage=embedding" in line
        assert "extra_data=" not in line

    def test_log_with_context(self, caplog):
        """Context kwargs travel as extra_data with run_id split out."""
        logger = get_logger("pdfrag.tests.context")

        with caplog.at_level(logging.INFO, logger="pdfrag.tests.context"):
            log_with_context(logger, logging.INFO, "Chunked", run_id="run-1", chunks=4)

        record = caplog.records[-1]
        assert record.run_id == "run-1"
        assert record.extra_data == {"chunks": 4}

    def test_get_logger_adds_one_handler(self):
        """Repeated calls do not stack handlers."""
        logger = get_logger("pdfrag.tests.handlers")
        get_logger("pdfrag.tests.handlers")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredFormatter)


class TestErrors:
    """Tests for core/errors.py."""

    def test_hierarchy(self):
        """Validation errors are also ValueErrors; search outages are not recoverable."""
        assert issubclass(InputValidationError, ValueError)
        assert issubclass(SearchUnavailableError, ExternalServiceError)

        error = SearchUnavailableError("both paths failed")
        assert error.operation == "vector_search"
        assert error.recoverable is False

    def test_ownership_message(self):
        """Ownership errors name the document and user."""
        error = OwnershipError("doc-1", "user-2")

        assert isinstance(error, PdfRagError)
        assert str(error) == "Document doc-1 not found for user user-2"


class TestCallExternal:
    """Tests for core/result.py."""

    @pytest.mark.asyncio
    async def test_success(self):
        """A completed call is wrapped in Ok."""

        async def work():
            return 42

        result = await call_external("work", work, timeout=1)

        assert isinstance(result, Ok)
        assert result.ok
        assert result.value == 42

    @pytest.mark.asyncio
    async def test_error(self):
        """Exceptions become Err with kind 'error'."""

        async def work():
            raise RuntimeError("boom")

        result = await call_external("work", work, timeout=1)

        assert isinstance(result, Err)
        assert not result.ok
        assert result.failure.operation == "work"
        assert result.failure.kind == "error"
        assert result.failure.message == "boom"

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Slow calls become Err with kind 'timeout'."""

        async def slow():
            await asyncio.sleep(1)

        result = await call_external("slow", slow, timeout=0.01)

        assert isinstance(result, Err)
        assert result.failure.kind == "timeout"

    def test_unwrap_or(self):
        """unwrap_or returns the value or the default."""
        assert unwrap_or(Ok(1), 0) == 1
        assert unwrap_or(Err(None), 0) == 0
