from __future__ import annotations

from pathlib import Path

from docrag.config import Settings
from docrag.llm import LLMClient, OllamaChatClient
from docrag.services.rag.answer import AnswerAssembler
from docrag.services.rag.chat import ChatPipeline
from docrag.services.rag.chunker import ChunkingEngine
from docrag.services.rag.coordinator import IngestionCoordinator
from docrag.services.rag.embedding_client import EmbeddingClient, OllamaEmbeddingClient
from docrag.services.rag.hasher import ContentHasher
from docrag.services.rag.retry import RetryPolicy
from docrag.services.rag.search import SemanticSearchEngine
from docrag.services.rag.sources import SourceRegistry, default_registry
from docrag.services.rag.vector_store import SqliteVectorStore


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        attempts=settings.rag_retry_attempts,
        base_seconds=settings.rag_retry_base_seconds,
        max_seconds=settings.rag_retry_max_seconds,
    )


def build_embedding_client(settings: Settings) -> OllamaEmbeddingClient:
    return OllamaEmbeddingClient(
        base_url=settings.ollama_embed_base_url,
        model=settings.ollama_embed_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def build_llm_client(settings: Settings) -> OllamaChatClient:
    return OllamaChatClient(
        base_url=settings.ollama_base_url,
        default_model=settings.ollama_model,
        fallback_model=settings.ollama_fallback_model,
        timeout_seconds=settings.ollama_timeout_seconds,
    )


def open_store(db_path: Path, *, verify: bool = True) -> SqliteVectorStore:
    store = SqliteVectorStore.open(db_path)
    if verify:
        store.verify()
    return store


def build_chunker(settings: Settings) -> ChunkingEngine:
    return ChunkingEngine(
        chunk_size=settings.rag_chunk_size,
        overlap_fraction=settings.rag_chunk_overlap_fraction,
    )


def build_coordinator(
    settings: Settings,
    *,
    store: SqliteVectorStore,
    embedding_client: EmbeddingClient,
    registry: SourceRegistry | None = None,
    source_dir: Path | None = None,
) -> IngestionCoordinator:
    chunker = build_chunker(settings)
    return IngestionCoordinator(
        registry=registry or default_registry(source_dir or Path(settings.rag_source_dir)),
        store=store,
        chunker=chunker,
        embedding_client=embedding_client,
        hasher=ContentHasher(
            chunking_signature=chunker.signature,
            embedding_model=settings.ollama_embed_model,
            include_mtime=settings.rag_fingerprint_mtime,
        ),
        embed_batch_size=settings.rag_embed_batch_size,
        max_workers=settings.rag_max_workers,
        retry_policy=retry_policy(settings),
        embedding_model=settings.ollama_embed_model,
    )


def build_search_engine(
    settings: Settings,
    *,
    store: SqliteVectorStore,
    embedding_client: EmbeddingClient,
) -> SemanticSearchEngine:
    return SemanticSearchEngine(
        store=store,
        embedding_client=embedding_client,
        min_score=settings.rag_min_score,
        retry_policy=retry_policy(settings),
    )


def build_chat_pipeline(
    settings: Settings,
    *,
    store: SqliteVectorStore,
    embedding_client: EmbeddingClient,
    llm_client: LLMClient,
) -> ChatPipeline:
    return ChatPipeline(
        search_engine=build_search_engine(settings, store=store, embedding_client=embedding_client),
        assembler=AnswerAssembler(budget_chars=settings.rag_context_budget_chars),
        llm_client=llm_client,
        retry_policy=retry_policy(settings),
    )
