from collections.abc import Iterator
import logging
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docrag.config import get_settings
from docrag.main import app, get_store


@pytest.fixture(autouse=True)
def reset_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_store.cache_clear()
    yield
    get_settings.cache_clear()
    get_store.cache_clear()

    # handlers bind the stream that was current when they were created
    logger = logging.getLogger("docrag")
    for handler in list(logger.handlers):
        if getattr(handler, "_docrag", False):
            logger.removeHandler(handler)


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[TestClient]:
    source_dir = tmp_path / "sources"
    source_dir.mkdir()
    monkeypatch.setenv("RAG_SOURCE_DIR", str(source_dir))
    monkeypatch.setenv("RAG_INDEX_DIR", str(tmp_path / "rag_index"))
    monkeypatch.setenv("RAG_DB_PATH", str(tmp_path / "rag_index" / "rag.db"))
    monkeypatch.setenv("RAG_CHUNK_SIZE", "200")
    monkeypatch.setenv("RAG_RETRY_ATTEMPTS", "1")

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    get_store().close()
