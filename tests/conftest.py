"""Pytest configuration and fixtures."""

import os

import pytest

from pdfrag.core.config import get_settings
from pdfrag.db.memory import InMemoryChunkRepository, InMemoryDocumentRegistry


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["PDFRAG_ENV"] = "test"
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def registry():
    """Registry with two documents for user-1 and one for user-2."""
    registry = InMemoryDocumentRegistry()
    registry.add_document("doc-1", "user-1", "manual.pdf")
    registry.add_document("doc-2", "user-1", "guide.pdf")
    registry.add_document("doc-3", "user-2", "private.pdf")
    return registry


@pytest.fixture
def repository(registry):
    """Empty chunk repository bound to the registry."""
    return InMemoryChunkRepository(registry)
