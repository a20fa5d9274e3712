import asyncio
from collections.abc import Sequence
from pathlib import Path

from docrag.llm import ChatResult
from docrag.services.rag.answer import AnswerAssembler
from docrag.services.rag.chat import ChatPipeline
from docrag.services.rag.chunker import ChunkingEngine
from docrag.services.rag.coordinator import IngestionCoordinator
from docrag.services.rag.search import SemanticSearchEngine
from docrag.services.rag.sources import default_registry
from docrag.services.rag.types import GroundingPassage
from docrag.services.rag.vector_store import SqliteVectorStore

_TOPICS = ("turbine", "battery", "harvest")


def _sentence(topic: str, index: int) -> str:
    return f"The {topic} crew did job {index} on the day; it was ok."


def _page(topic: str, count: int) -> str:
    return " ".join(_sentence(topic, index) for index in range(count))


class TopicEmbeddingClient:
    def __init__(self) -> None:
        self.calls = 0

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls += 1
        return [[1.0 if topic in text.lower() else 0.0 for topic in _TOPICS] for text in texts]


class CitingLLMClient:
    async def generate(
        self,
        *,
        system_context: str,
        question: str,
        passages: Sequence[GroundingPassage],
    ) -> ChatResult:
        return ChatResult(answer="Turbine jobs are logged daily [1].", model="fake", used_fallback=False)

    async def stream(self, **kwargs):
        yield "unused"


def test_three_page_manual_is_indexed_searched_and_cited(tmp_path: Path) -> None:
    source_dir = tmp_path / "sources"
    source_dir.mkdir()
    (source_dir / "manual.txt").write_text(
        "\f".join([_page("harvest", 3), _page("turbine", 6), _page("battery", 6)]),
        encoding="utf-8",
    )
    store = SqliteVectorStore.open(tmp_path / "index" / "rag.db")
    client = TopicEmbeddingClient()
    coordinator = IngestionCoordinator(
        registry=default_registry(source_dir),
        store=store,
        chunker=ChunkingEngine(chunk_size=220, overlap_fraction=0.1),
        embedding_client=client,
    )
    search_engine = SemanticSearchEngine(store=store, embedding_client=client)

    try:
        first = asyncio.run(coordinator.run())
        assert len(first.new) == 1
        assert first.chunk_count == 5
        assert store.count() == 5

        result = asyncio.run(search_engine.search("Which turbine jobs were done?", k=2))
        top = result.hits[0]
        assert top.chunk_id.endswith("-0001")
        assert top.citation.label == "manual.txt (page 2)"
        assert [hit.citation.location.page for hit in result.hits] == [2, 2]

        pipeline = ChatPipeline(
            search_engine=search_engine,
            assembler=AnswerAssembler(),
            llm_client=CitingLLMClient(),
        )
        answer = asyncio.run(pipeline.ask("Which turbine jobs were done?", k=2))
        assert answer.grounded
        assert [citation.location.page for citation in answer.citations] == [2]

        calls_before = client.calls
        writes_before = store.write_count
        second = asyncio.run(coordinator.run())
        assert second.unchanged == first.new
        assert second.embedding_calls == 0
        assert client.calls == calls_before
        assert store.write_count == writes_before
        assert store.count() == 5
    finally:
        store.close()
