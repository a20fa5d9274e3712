from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

import httpx

from docrag.errors import EmbeddingClientError, InvalidInput, RateLimited

_INVALID_INPUT_STATUSES = {400, 413, 422}


class EmbeddingClient(Protocol):
    async def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def raise_for_provider_status(response: httpx.Response, *, error_cls: type[Exception]) -> None:
    if response.status_code == 429:
        raise RateLimited(
            f"provider rate limited request to {response.request.url}",
            retry_after=_retry_after_seconds(response),
        )
    if response.status_code in _INVALID_INPUT_STATUSES:
        raise InvalidInput(
            f"provider rejected request ({response.status_code}): {response.text[:200]}"
        )
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise error_cls(str(exc)) from exc


class OllamaEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        if any(not text.strip() for text in texts):
            raise InvalidInput("cannot embed empty text")

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(
                    f"{self._base_url}/embeddings",
                    json={"model": self._model, "input": list(texts)},
                )
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        raise_for_provider_status(response, error_cls=EmbeddingClientError)

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingClientError("Invalid embeddings payload: not JSON") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors
