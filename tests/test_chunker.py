import pytest

from docrag.services.rag.chunker import ChunkingEngine
from docrag.services.rag.types import Source

SOURCE = Source(source_id="0123456789abcdef", origin="manual.txt", kind="text")


def _sentence(topic: str, index: int) -> str:
    return f"The {topic} crew did job {index} on the day; it was ok."


def _page(topic: str, count: int) -> str:
    return " ".join(_sentence(topic, index) for index in range(count))


def three_page_text() -> str:
    return "\f".join([_page("harvest", 3), _page("turbine", 6), _page("battery", 6)])


def test_three_page_document_produces_five_overlapping_chunks() -> None:
    text = three_page_text()
    assert len(_sentence("turbine", 0)) == 49
    assert len(text) == 749

    chunks = ChunkingEngine(chunk_size=220, overlap_fraction=0.1).chunk(SOURCE, text)

    assert len(chunks) == 5
    assert [chunk.location.page for chunk in chunks] == [1, 2, 2, 3, 3]
    assert [chunk.location.offset for chunk in chunks] == [0, 150, 330, 450, 630]
    assert [chunk.ordinal for chunk in chunks] == [0, 1, 2, 3, 4]
    assert chunks[0].text == _page("harvest", 3)
    assert chunks[1].text == " ".join(_sentence("turbine", index) for index in range(4))
    assert chunks[2].text.startswith("the day; it was ok. The turbine crew did job 4")
    assert chunks[2].text.endswith(_sentence("turbine", 5))
    assert chunks[1].text.endswith("the day; it was ok.")


def test_chunk_ids_derive_from_source_and_ordinal() -> None:
    chunks = ChunkingEngine(chunk_size=220, overlap_fraction=0.1).chunk(SOURCE, three_page_text())

    assert [chunk.chunk_id for chunk in chunks] == [
        f"0123456789abcdef-{index:04d}" for index in range(5)
    ]
    assert {chunk.source_id for chunk in chunks} == {SOURCE.source_id}


def test_chunking_is_deterministic() -> None:
    engine = ChunkingEngine(chunk_size=120, overlap_fraction=0.2)
    text = three_page_text()

    assert engine.chunk(SOURCE, text) == engine.chunk(SOURCE, text)


def test_short_document_produces_single_chunk() -> None:
    chunks = ChunkingEngine(chunk_size=500).chunk(SOURCE, "  short note about pumps  ")

    assert len(chunks) == 1
    assert chunks[0].text == "short note about pumps"
    assert chunks[0].location.offset == 2
    assert chunks[0].location.page is None


@pytest.mark.parametrize("text", ["", "   \n\n\t  "])
def test_empty_text_produces_no_chunks(text: str) -> None:
    assert ChunkingEngine(chunk_size=100).chunk(SOURCE, text) == []


def test_prefers_paragraph_boundaries() -> None:
    paragraph = "word " * 12
    text = paragraph + "\n\n" + paragraph

    chunks = ChunkingEngine(chunk_size=100).chunk(SOURCE, text)

    assert chunks[0].text == paragraph.strip()
    assert chunks[1].text == paragraph.strip()


def test_prefers_sentence_boundaries() -> None:
    text = " ".join(["Alpha beta gamma delta."] * 10)

    chunks = ChunkingEngine(chunk_size=60).chunk(SOURCE, text)

    assert len(chunks) > 1
    assert all(chunk.text.endswith(".") for chunk in chunks)


def test_falls_back_to_hard_cuts() -> None:
    chunks = ChunkingEngine(chunk_size=100).chunk(SOURCE, "a" * 250)

    assert [len(chunk.text) for chunk in chunks] == [100, 100, 50]


def test_consecutive_chunks_overlap() -> None:
    text = " ".join(["Alpha beta gamma delta."] * 20)

    chunks = ChunkingEngine(chunk_size=100, overlap_fraction=0.2).chunk(SOURCE, text)

    for previous, current in zip(chunks, chunks[1:]):
        assert current.location.offset < previous.location.offset + len(previous.text)
        assert current.location.offset > previous.location.offset


def test_signature_tracks_configuration() -> None:
    assert ChunkingEngine(chunk_size=100).signature != ChunkingEngine(chunk_size=200).signature
    assert (
        ChunkingEngine(chunk_size=100, overlap_fraction=0.1).signature
        != ChunkingEngine(chunk_size=100, overlap_fraction=0.2).signature
    )


@pytest.mark.parametrize(
    ("chunk_size", "overlap_fraction"),
    [(0, 0.1), (100, -0.1), (100, 0.6)],
)
def test_rejects_invalid_configuration(chunk_size: int, overlap_fraction: float) -> None:
    with pytest.raises(ValueError):
        ChunkingEngine(chunk_size=chunk_size, overlap_fraction=overlap_fraction)


def test_page_break_early_in_window_starts_a_new_chunk() -> None:
    text = "Cover page.\f" + _page("turbine", 4)

    chunks = ChunkingEngine(chunk_size=800, overlap_fraction=0.1).chunk(SOURCE, text)

    assert [chunk.text for chunk in chunks] == ["Cover page.", _page("turbine", 4)]
    assert [chunk.location.page for chunk in chunks] == [1, 2]
    assert chunks[1].location.offset == len("Cover page.\f")


def test_blank_pages_are_skipped_but_counted() -> None:
    text = "Title\f\f  \fAppendix notes."

    chunks = ChunkingEngine(chunk_size=500).chunk(SOURCE, text)

    assert [(chunk.text, chunk.location.page) for chunk in chunks] == [
        ("Title", 1),
        ("Appendix notes.", 4),
    ]
