from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float, maximum: float | None = None) -> float:
    if value is None:
        return default
    parsed = max(minimum, float(value))
    if maximum is not None:
        parsed = min(maximum, parsed)
    return parsed


def _to_optional_float(value: str | None) -> float | None:
    if value is None or not value.strip():
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    rag_source_dir: str
    rag_index_dir: str
    rag_db_path: str
    rag_chunk_size: int
    rag_chunk_overlap_fraction: float
    rag_embed_batch_size: int
    rag_max_workers: int
    rag_min_score: float | None
    rag_context_budget_chars: int
    rag_fingerprint_mtime: bool
    rag_retry_attempts: int
    rag_retry_base_seconds: float
    rag_retry_max_seconds: float
    rag_ingest_interval_seconds: int
    ollama_base_url: str
    ollama_model: str
    ollama_fallback_model: str
    ollama_embed_base_url: str
    ollama_embed_model: str
    ollama_timeout_seconds: float
    log_level: str


@lru_cache
def get_settings() -> Settings:
    rag_index_dir = os.getenv("RAG_INDEX_DIR", "data/rag_index")
    ollama_base_url = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1")
    return Settings(
        rag_source_dir=os.getenv("RAG_SOURCE_DIR", "data/sources"),
        rag_index_dir=rag_index_dir,
        rag_db_path=os.getenv("RAG_DB_PATH", str(Path(rag_index_dir) / "rag.db")),
        rag_chunk_size=_to_int(os.getenv("RAG_CHUNK_SIZE"), default=800, minimum=50),
        rag_chunk_overlap_fraction=_to_float(
            os.getenv("RAG_CHUNK_OVERLAP_FRACTION"), default=0.15, minimum=0.0, maximum=0.5
        ),
        rag_embed_batch_size=_to_int(os.getenv("RAG_EMBED_BATCH_SIZE"), default=32, minimum=1),
        rag_max_workers=_to_int(os.getenv("RAG_MAX_WORKERS"), default=4, minimum=1),
        rag_min_score=_to_optional_float(os.getenv("RAG_MIN_SCORE")),
        rag_context_budget_chars=_to_int(
            os.getenv("RAG_CONTEXT_BUDGET_CHARS"), default=6000, minimum=200
        ),
        rag_fingerprint_mtime=_to_bool(os.getenv("RAG_FINGERPRINT_MTIME"), default=False),
        rag_retry_attempts=_to_int(os.getenv("RAG_RETRY_ATTEMPTS"), default=3, minimum=1),
        rag_retry_base_seconds=_to_float(
            os.getenv("RAG_RETRY_BASE_SECONDS"), default=0.5, minimum=0.0
        ),
        rag_retry_max_seconds=_to_float(os.getenv("RAG_RETRY_MAX_SECONDS"), default=8.0, minimum=0.0),
        rag_ingest_interval_seconds=_to_int(
            os.getenv("RAG_INGEST_INTERVAL_SECONDS"), default=300, minimum=1
        ),
        ollama_base_url=ollama_base_url,
        ollama_model=os.getenv("OLLAMA_MODEL", "qwen2.5:7b-instruct-q4_K_M"),
        ollama_fallback_model=os.getenv("OLLAMA_FALLBACK_MODEL", "qwen2.5:3b-instruct-q4_K_M"),
        ollama_embed_base_url=os.getenv("OLLAMA_EMBED_BASE_URL", ollama_base_url),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        ollama_timeout_seconds=float(os.getenv("OLLAMA_TIMEOUT_SECONDS", "30")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
