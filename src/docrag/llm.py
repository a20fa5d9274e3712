from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
import json
import logging
from typing import Protocol

import httpx

from docrag.errors import InvalidInput, LLMClientError, ProviderError
from docrag.services.rag.answer import render_passages
from docrag.services.rag.embedding_client import raise_for_provider_status
from docrag.services.rag.types import GroundingPassage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    async def generate(
        self,
        *,
        system_context: str,
        question: str,
        passages: Sequence[GroundingPassage],
    ) -> ChatResult: ...

    def stream(
        self,
        *,
        system_context: str,
        question: str,
        passages: Sequence[GroundingPassage],
    ) -> AsyncIterator[str]: ...


def build_messages(
    *,
    system_context: str,
    question: str,
    passages: Sequence[GroundingPassage],
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_context},
        {
            "role": "user",
            "content": f"Passages:\n{render_passages(passages)}\n\nQuestion: {question}",
        },
    ]


class OllamaChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport)

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._fallback_model and self._fallback_model != self._default_model:
            candidates.append((self._fallback_model, True))
        return candidates

    async def generate(
        self,
        *,
        system_context: str,
        question: str,
        passages: Sequence[GroundingPassage],
    ) -> ChatResult:
        messages = build_messages(
            system_context=system_context, question=question, passages=passages
        )
        candidates = self._model_candidates()
        for model, used_fallback in candidates:
            try:
                content = await self._chat_completion(model=model, messages=messages)
            except InvalidInput:
                raise
            except ProviderError as exc:
                if used_fallback or len(candidates) == 1:
                    raise
                logger.warning("chat model failed model=%s error=%s; trying fallback", model, exc)
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise LLMClientError("No model candidates configured")

    async def _chat_completion(self, *, model: str, messages: list[dict[str, str]]) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    json={"model": model, "messages": messages, "temperature": 0},
                )
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc

        raise_for_provider_status(response, error_cls=LLMClientError)

        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMClientError("Invalid chat completion payload: not JSON") from exc

        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise LLMClientError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise LLMClientError("Invalid chat completion payload: missing assistant content")

        return content.strip()

    async def stream(
        self,
        *,
        system_context: str,
        question: str,
        passages: Sequence[GroundingPassage],
    ) -> AsyncIterator[str]:
        """Yield answer fragments from an OpenAI-compatible SSE stream.

        Streams use the default model only; a half-delivered answer cannot be
        replayed against the fallback.
        """
        messages = build_messages(
            system_context=system_context, question=question, passages=passages
        )
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/chat/completions",
                    json={
                        "model": self._default_model,
                        "messages": messages,
                        "temperature": 0,
                        "stream": True,
                    },
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                    raise_for_provider_status(response, error_cls=LLMClientError)
                    async for line in response.aiter_lines():
                        fragment = _parse_stream_line(line)
                        if fragment is None:
                            continue
                        if fragment is _DONE:
                            break
                        yield fragment
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc


_DONE = "\x00done"


def _parse_stream_line(line: str) -> str | None:
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == "[DONE]":
        return _DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise LLMClientError(f"Invalid stream chunk: {data[:100]}") from exc

    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    content = delta.get("content") if isinstance(delta, dict) else None
    if not isinstance(content, str) or not content:
        return None
    return content
