from __future__ import annotations

import asyncio
from collections.abc import Sequence
import logging
from time import perf_counter

from docrag.errors import DocRagError, EmbeddingClientError
from docrag.services.rag.chunker import ChunkingEngine
from docrag.services.rag.embedding_client import EmbeddingClient
from docrag.services.rag.hasher import ContentHasher
from docrag.services.rag.retry import RetryPolicy, retry_async
from docrag.services.rag.sources import SourceRegistry
from docrag.services.rag.types import (
    Chunk,
    IndexRecord,
    IngestionReport,
    Source,
    SourceOutcome,
)
from docrag.services.rag.vector_store import SqliteVectorStore

logger = logging.getLogger(__name__)


class IngestionCoordinator:
    """Converges the vector store to the sources the registry currently exposes.

    Sources run concurrently up to ``max_workers``; work on one source_id is
    serialised by a per-source lock. A source's records and fingerprint are
    committed together, so a failed or cancelled source keeps its previous
    committed state and is picked up again on the next run.
    """

    def __init__(
        self,
        *,
        registry: SourceRegistry,
        store: SqliteVectorStore,
        chunker: ChunkingEngine,
        embedding_client: EmbeddingClient,
        hasher: ContentHasher | None = None,
        embed_batch_size: int = 32,
        max_workers: int = 4,
        retry_policy: RetryPolicy | None = None,
        embedding_model: str | None = None,
    ) -> None:
        if embed_batch_size <= 0:
            raise ValueError("embed_batch_size must be > 0")
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")

        self._registry = registry
        self._store = store
        self._chunker = chunker
        self._embedding_client = embedding_client
        self._hasher = hasher or ContentHasher(
            chunking_signature=chunker.signature,
            embedding_model=embedding_model or "",
        )
        self._embedding_model = embedding_model
        self._embed_batch_size = embed_batch_size
        self._max_workers = max_workers
        self._retry_policy = retry_policy or RetryPolicy()
        self._source_locks: dict[str, asyncio.Lock] = {}
        self._locks_loop: asyncio.AbstractEventLoop | None = None

    def _lock_for(self, source_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            # asyncio locks are bound to the loop that first waits on them
            self._source_locks = {}
            self._locks_loop = loop
        lock = self._source_locks.get(source_id)
        if lock is None:
            lock = asyncio.Lock()
            self._source_locks[source_id] = lock
        return lock

    async def run(self) -> IngestionReport:
        start = perf_counter()
        report = IngestionReport()
        await self._bind_model()

        sources, failed_kinds = await asyncio.to_thread(self._registry.list_sources)
        state = await asyncio.to_thread(self._store.get_ingestion_state)
        semaphore = asyncio.Semaphore(self._max_workers)

        async def bounded(source: Source) -> None:
            async with semaphore:
                await self._ingest_one(source, report)

        await asyncio.gather(*(bounded(source) for source in sources))

        if failed_kinds:
            logger.warning(
                "deletion pass skipped because discovery failed kinds=%s", ",".join(failed_kinds)
            )
        else:
            discovered = {source.source_id for source in sources}
            for source_id in sorted(set(state) - discovered):
                await self._forget(source_id, report)

        report.duration_ms = int((perf_counter() - start) * 1000)
        logger.info(
            "ingestion completed new=%d changed=%d unchanged=%d deleted=%d empty=%d "
            "failed=%d chunks=%d embedding_calls=%d duration_ms=%d",
            len(report.new),
            len(report.changed),
            len(report.unchanged),
            len(report.deleted),
            len(report.empty),
            len(report.failed),
            report.chunk_count,
            report.embedding_calls,
            report.duration_ms,
        )
        return report

    async def ingest_source(self, source_id: str) -> IngestionReport:
        """Converge a single source, deleting it when it is no longer discovered."""
        report = IngestionReport()
        await self._bind_model()
        sources, failed_kinds = await asyncio.to_thread(self._registry.list_sources)
        for source in sources:
            if source.source_id == source_id:
                await self._ingest_one(source, report)
                return report

        if not failed_kinds:
            await self._forget(source_id, report)
        return report

    async def _bind_model(self) -> None:
        if self._embedding_model:
            await asyncio.to_thread(self._store.bind_embedding_model, self._embedding_model)

    async def _ingest_one(self, source: Source, report: IngestionReport) -> None:
        async with self._lock_for(source.source_id):
            try:
                outcome = await self._converge(source, report)
            except DocRagError as exc:
                logger.warning(
                    "source ingestion failed source_id=%s origin=%s error=%s: %s",
                    source.source_id,
                    source.origin,
                    type(exc).__name__,
                    exc,
                )
                report.record(source.source_id, "failed", error=f"{type(exc).__name__}: {exc}")
                return
            except Exception as exc:
                logger.exception(
                    "source ingestion crashed source_id=%s origin=%s",
                    source.source_id,
                    source.origin,
                )
                report.record(source.source_id, "failed", error=f"{type(exc).__name__}: {exc}")
                return

        report.record(source.source_id, outcome)

    async def _converge(self, source: Source, report: IngestionReport) -> SourceOutcome:
        content = await asyncio.to_thread(self._registry.read_bytes, source)
        fingerprint = self._hasher.fingerprint(source, content)
        previous = await asyncio.to_thread(self._store.get_fingerprint, source.source_id)
        if previous == fingerprint:
            logger.debug("source unchanged source_id=%s", source.source_id)
            return "unchanged"

        text = await asyncio.to_thread(self._registry.extract_text, source)
        chunks = self._chunker.chunk(source, text)
        if not chunks:
            logger.warning(
                "source produced no chunks source_id=%s origin=%s", source.source_id, source.origin
            )
            await asyncio.to_thread(
                self._store.replace_source,
                source.source_id,
                fingerprint=fingerprint,
                origin=source.origin,
                records=[],
            )
            return "empty"

        embeddings = await self._embed_chunks(source, chunks, report)
        records = [
            IndexRecord(
                chunk_id=chunk.chunk_id,
                source_id=source.source_id,
                ordinal=chunk.ordinal,
                origin=source.origin,
                text=chunk.text,
                location=chunk.location,
                source_fingerprint=fingerprint,
                embedding=embedding,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        await asyncio.to_thread(
            self._store.replace_source,
            source.source_id,
            fingerprint=fingerprint,
            origin=source.origin,
            records=records,
        )
        report.chunk_count += len(records)

        outcome: SourceOutcome = "new" if previous is None else "changed"
        logger.info(
            "source indexed source_id=%s origin=%s outcome=%s chunks=%d",
            source.source_id,
            source.origin,
            outcome,
            len(records),
        )
        return outcome

    async def _embed_chunks(
        self,
        source: Source,
        chunks: Sequence[Chunk],
        report: IngestionReport,
    ) -> list[list[float]]:
        vectors: list[list[float]] = []
        for start in range(0, len(chunks), self._embed_batch_size):
            batch = [chunk.text for chunk in chunks[start : start + self._embed_batch_size]]

            async def call(texts: list[str] = batch) -> list[list[float]]:
                return await self._embedding_client.embed(texts)

            embedded = await retry_async(
                call,
                policy=self._retry_policy,
                operation=f"embed source_id={source.source_id}",
            )
            report.embedding_calls += 1
            if len(embedded) != len(batch):
                raise EmbeddingClientError(
                    f"expected {len(batch)} vectors, got {len(embedded)}"
                )
            vectors.extend(embedded)

        dims = {len(vector) for vector in vectors}
        if len(dims) > 1:
            raise EmbeddingClientError(f"provider returned mixed dimensions {sorted(dims)}")
        return vectors

    async def _forget(self, source_id: str, report: IngestionReport) -> None:
        async with self._lock_for(source_id):
            try:
                removed = await asyncio.to_thread(self._store.forget_source, source_id)
            except DocRagError as exc:
                logger.warning("source deletion failed source_id=%s error=%s", source_id, exc)
                report.record(source_id, "failed", error=f"{type(exc).__name__}: {exc}")
                return
        self._source_locks.pop(source_id, None)
        logger.info("source deleted source_id=%s records=%d", source_id, removed)
        report.record(source_id, "deleted")
