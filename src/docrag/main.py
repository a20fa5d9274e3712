from __future__ import annotations

from collections.abc import AsyncIterator
from functools import lru_cache
import json
import logging
from pathlib import Path
import threading
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from docrag.config import get_settings
from docrag.errors import (
    DocRagError,
    EmbeddingDimensionMismatch,
    InvalidInput,
    ProviderError,
    StoreCorruptionError,
)
from docrag.llm import LLMClient
from docrag.log import configure_logging
from docrag.runtime import (
    build_chat_pipeline,
    build_coordinator,
    build_embedding_client,
    build_llm_client,
    build_search_engine,
    open_store,
)
from docrag.services.rag.embedding_client import EmbeddingClient
from docrag.services.rag.types import Answer, Citation, SearchHit
from docrag.services.rag.vector_store import SqliteVectorStore

logger = logging.getLogger(__name__)

app = FastAPI(title="docrag", version="0.1.0")

_ingest_guard = threading.Lock()


class AskRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    question: str = Field(min_length=1)
    k: int = Field(default=5, ge=1, le=20)


@lru_cache
def get_store() -> SqliteVectorStore:
    return open_store(Path(get_settings().rag_db_path))


@app.on_event("startup")
def startup() -> None:
    configure_logging(get_settings().log_level)
    get_store()


@app.exception_handler(StoreCorruptionError)
async def store_corruption_handler(request: Request, exc: StoreCorruptionError) -> JSONResponse:
    logger.error("vector store unavailable path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": f"vector store unavailable: {exc}"})


@app.exception_handler(EmbeddingDimensionMismatch)
async def dimension_mismatch_handler(
    request: Request, exc: EmbeddingDimensionMismatch
) -> JSONResponse:
    logger.error("index embedding mismatch path=%s error=%s", request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={
            "detail": f"index was built with a different embedding model; re-run ingestion: {exc}"
        },
    )


def get_llm_client() -> LLMClient:
    return build_llm_client(get_settings())


def get_embedding_client() -> EmbeddingClient:
    return build_embedding_client(get_settings())


def _citation_payload(citation: Citation) -> dict[str, object]:
    return {
        "chunk_id": citation.chunk_id,
        "source_id": citation.source_id,
        "origin": citation.origin,
        "page": citation.location.page,
        "offset": citation.location.offset,
        "label": citation.label,
    }


def _hit_payload(hit: SearchHit) -> dict[str, object]:
    return {
        "chunk_id": hit.chunk_id,
        "source_path": hit.citation.origin,
        "score": round(hit.score, 6),
        "text": hit.text,
        "citation": _citation_payload(hit.citation),
    }


def _answer_payload(answer: Answer) -> dict[str, Any]:
    return {
        "answer": answer.text,
        "grounded": answer.grounded,
        "citations": [_citation_payload(citation) for citation in answer.citations],
        "meta": {
            "model": answer.model,
            "used_fallback": answer.used_fallback,
        },
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/rag/ingest")
async def trigger_ingestion(
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> JSONResponse:
    if not _ingest_guard.acquire(blocking=False):
        return JSONResponse(status_code=409, content={"detail": "ingestion already running"})

    try:
        coordinator = build_coordinator(
            get_settings(),
            store=get_store(),
            embedding_client=embedding_client,
        )
        report = await coordinator.run()
    finally:
        _ingest_guard.release()

    return JSONResponse(status_code=200, content=report.as_dict())


@app.get("/rag/search")
async def rag_search(
    q: str,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    k: int = Query(default=5, ge=1, le=20),
) -> list[dict[str, object]]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    engine = build_search_engine(get_settings(), store=get_store(), embedding_client=embedding_client)
    try:
        result = await engine.search(q, k)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc

    return [_hit_payload(hit) for hit in result.hits]


@app.post("/ask")
async def ask(
    request: AskRequest,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> dict[str, Any]:
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="question must not be empty")

    pipeline = build_chat_pipeline(
        get_settings(),
        store=get_store(),
        embedding_client=embedding_client,
        llm_client=llm_client,
    )
    try:
        answer = await pipeline.ask(question, request.k)
    except InvalidInput as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ProviderError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc

    payload = _answer_payload(answer)
    payload["meta"]["retrieval_k"] = request.k
    return payload


@app.post("/ask/stream")
async def ask_stream(
    request: AskRequest,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> StreamingResponse:
    question = request.question.strip()
    if not question:
        raise HTTPException(status_code=400, detail="question must not be empty")

    pipeline = build_chat_pipeline(
        get_settings(),
        store=get_store(),
        embedding_client=embedding_client,
        llm_client=llm_client,
    )

    async def events() -> AsyncIterator[str]:
        try:
            async for event in pipeline.stream(question, request.k):
                if event.kind == "delta":
                    line: dict[str, Any] = {"type": "delta", "text": event.text}
                else:
                    assert event.answer is not None
                    line = {"type": "final", **_answer_payload(event.answer)}
                yield json.dumps(line) + "\n"
        except DocRagError as exc:
            logger.warning("streamed answer failed error=%s", exc)
            yield json.dumps({"type": "error", "detail": str(exc)}) + "\n"

    return StreamingResponse(events(), media_type="application/x-ndjson")


def run() -> None:
    import uvicorn

    uvicorn.run("docrag.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
