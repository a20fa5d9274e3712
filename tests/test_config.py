from docrag.config import get_settings


def test_rag_db_path_uses_explicit_env(monkeypatch) -> None:
    monkeypatch.setenv("RAG_INDEX_DIR", "data/custom-index")
    monkeypatch.setenv("RAG_DB_PATH", "data/override/r4.db")

    settings = get_settings()

    assert settings.rag_index_dir == "data/custom-index"
    assert settings.rag_db_path == "data/override/r4.db"


def test_rag_db_path_defaults_to_index_dir(monkeypatch) -> None:
    monkeypatch.setenv("RAG_INDEX_DIR", "data/custom-index")
    monkeypatch.delenv("RAG_DB_PATH", raising=False)

    settings = get_settings()

    assert settings.rag_db_path.endswith("data/custom-index/rag.db")


def test_numeric_settings_are_clamped(monkeypatch) -> None:
    monkeypatch.setenv("RAG_CHUNK_SIZE", "10")
    monkeypatch.setenv("RAG_CHUNK_OVERLAP_FRACTION", "0.9")
    monkeypatch.setenv("RAG_MAX_WORKERS", "0")

    settings = get_settings()

    assert settings.rag_chunk_size == 50
    assert settings.rag_chunk_overlap_fraction == 0.5
    assert settings.rag_max_workers == 1


def test_min_score_is_optional(monkeypatch) -> None:
    monkeypatch.delenv("RAG_MIN_SCORE", raising=False)
    assert get_settings().rag_min_score is None

    get_settings.cache_clear()
    monkeypatch.setenv("RAG_MIN_SCORE", "0.25")
    assert get_settings().rag_min_score == 0.25


def test_embed_base_url_defaults_to_chat_base_url(monkeypatch) -> None:
    monkeypatch.setenv("OLLAMA_BASE_URL", "http://ollama:11434/v1")
    monkeypatch.delenv("OLLAMA_EMBED_BASE_URL", raising=False)

    assert get_settings().ollama_embed_base_url == "http://ollama:11434/v1"
