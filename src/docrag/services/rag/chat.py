from __future__ import annotations

from collections.abc import AsyncIterator
import logging
from typing import TYPE_CHECKING

from docrag.services.rag.answer import AnswerAssembler
from docrag.services.rag.retry import RetryPolicy, retry_async
from docrag.services.rag.search import SemanticSearchEngine
from docrag.services.rag.types import Answer, AnswerEvent, GroundingContext, RecordFilter

if TYPE_CHECKING:
    from docrag.llm import ChatResult, LLMClient

logger = logging.getLogger(__name__)


class ChatPipeline:
    def __init__(
        self,
        *,
        search_engine: SemanticSearchEngine,
        assembler: AnswerAssembler,
        llm_client: LLMClient,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._search_engine = search_engine
        self._assembler = assembler
        self._llm_client = llm_client
        self._retry_policy = retry_policy or RetryPolicy()

    async def prepare(
        self,
        question: str,
        k: int,
        filters: RecordFilter | None = None,
    ) -> GroundingContext:
        result = await self._search_engine.search(question, k, filters)
        context = self._assembler.build_context(result)
        if not context.grounded:
            logger.info("no grounding found; answering ungrounded k=%d", k)
        return context

    async def ask(self, question: str, k: int, filters: RecordFilter | None = None) -> Answer:
        question = question.strip()
        if not question:
            raise ValueError("question must not be empty")

        context = await self.prepare(question, k, filters)

        async def call() -> ChatResult:
            return await self._llm_client.generate(
                system_context=self._assembler.system_context(context),
                question=question,
                passages=context.passages,
            )

        chat_result = await retry_async(call, policy=self._retry_policy, operation="chat generate")
        return self._assembler.finalize(
            chat_result.answer,
            context,
            model=chat_result.model,
            used_fallback=chat_result.used_fallback,
        )

    async def stream(
        self,
        question: str,
        k: int,
        filters: RecordFilter | None = None,
    ) -> AsyncIterator[AnswerEvent]:
        """Yield answer fragments as they arrive, then one final event.

        Fragments are raw model output; the final event carries the text with
        citation markers aligned to its citation list.
        """
        question = question.strip()
        if not question:
            raise ValueError("question must not be empty")

        context = await self.prepare(question, k, filters)
        fragments: list[str] = []
        async for fragment in self._llm_client.stream(
            system_context=self._assembler.system_context(context),
            question=question,
            passages=context.passages,
        ):
            fragments.append(fragment)
            yield AnswerEvent(kind="delta", text=fragment)

        yield AnswerEvent(kind="final", answer=self._assembler.finalize("".join(fragments), context))
