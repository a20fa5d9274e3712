from __future__ import annotations

import asyncio
import logging

from docrag.errors import EmbeddingClientError
from docrag.services.rag.embedding_client import EmbeddingClient
from docrag.services.rag.retry import RetryPolicy, retry_async
from docrag.services.rag.types import (
    Citation,
    IndexRecord,
    RecordFilter,
    SearchHit,
    SearchResult,
)
from docrag.services.rag.vector_store import SqliteVectorStore

logger = logging.getLogger(__name__)

_UNSET = object()


def citation_for(record: IndexRecord) -> Citation:
    return Citation(
        chunk_id=record.chunk_id,
        source_id=record.source_id,
        origin=record.origin,
        location=record.location,
    )


class SemanticSearchEngine:
    def __init__(
        self,
        *,
        store: SqliteVectorStore,
        embedding_client: EmbeddingClient,
        min_score: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._embedding_client = embedding_client
        self._min_score = min_score
        self._retry_policy = retry_policy or RetryPolicy()

    async def search(
        self,
        query_text: str,
        k: int,
        filters: RecordFilter | None = None,
        min_score: float | None | object = _UNSET,
    ) -> SearchResult:
        normalized_query = query_text.strip()
        if not normalized_query or k <= 0:
            return SearchResult(query=normalized_query)

        if await asyncio.to_thread(self._store.count) == 0:
            logger.info("search on empty index query_len=%d", len(normalized_query))
            return SearchResult(query=normalized_query)

        async def call() -> list[list[float]]:
            return await self._embedding_client.embed([normalized_query])

        vectors = await retry_async(call, policy=self._retry_policy, operation="embed query")
        if len(vectors) != 1:
            raise EmbeddingClientError(f"expected 1 query vector, got {len(vectors)}")

        matches = await asyncio.to_thread(self._store.query, vectors[0], k, filters)

        threshold = self._min_score if min_score is _UNSET else min_score
        hits = [
            SearchHit(
                chunk_id=record.chunk_id,
                source_id=record.source_id,
                ordinal=record.ordinal,
                text=record.text,
                score=score,
                citation=citation_for(record),
            )
            for record, score in matches
            if threshold is None or score >= threshold
        ]
        logger.info(
            "search completed k=%d matched=%d kept=%d min_score=%s",
            k,
            len(matches),
            len(hits),
            threshold,
        )
        return SearchResult(query=normalized_query, hits=hits)
