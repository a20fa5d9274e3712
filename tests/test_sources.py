from pathlib import Path

import pytest
from pypdf import PdfWriter

from docrag.errors import SourceReadError
from docrag.services.rag.sources import (
    FileSystemSourceProvider,
    PdfSourceProvider,
    SourceRegistry,
    _DirectoryListing,
    default_registry,
    make_source_id,
)
from docrag.services.rag.types import Source


def _write_blank_pdf(path: Path, pages: int) -> None:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    with path.open("wb") as handle:
        writer.write(handle)


def test_lists_text_sources_with_stable_ids(tmp_path: Path) -> None:
    (tmp_path / "nested").mkdir()
    (tmp_path / "b.md").write_text("# b", encoding="utf-8")
    (tmp_path / "nested" / "a.txt").write_text("a", encoding="utf-8")
    (tmp_path / "ignored.csv").write_text("x,y", encoding="utf-8")

    provider = FileSystemSourceProvider(tmp_path)
    sources = provider.list_sources()

    assert [source.origin for source in sources] == ["b.md", "nested/a.txt"]
    assert all(source.kind == "text" for source in sources)
    assert sources[1].source_id == make_source_id("text", "nested/a.txt")
    assert [source.source_id for source in provider.list_sources()] == [
        source.source_id for source in sources
    ]


def test_text_extraction_normalises_line_endings(tmp_path: Path) -> None:
    (tmp_path / "doc.txt").write_bytes(b"line one\r\nline two\r\n")
    provider = FileSystemSourceProvider(tmp_path)
    [source] = provider.list_sources()

    assert provider.extract_text(source) == "line one\nline two\n"
    assert provider.read_bytes(source) == b"line one\r\nline two\r\n"


def test_invalid_utf8_is_a_source_read_error(tmp_path: Path) -> None:
    (tmp_path / "doc.txt").write_bytes(b"\xff\xfe\xfa")
    provider = FileSystemSourceProvider(tmp_path)
    [source] = provider.list_sources()

    with pytest.raises(SourceReadError, match="UTF-8"):
        provider.extract_text(source)


def test_missing_file_is_a_source_read_error(tmp_path: Path) -> None:
    provider = FileSystemSourceProvider(tmp_path)
    ghost = Source(source_id="ghost", origin="ghost.txt", kind="text")

    with pytest.raises(SourceReadError, match="ghost.txt"):
        provider.read_bytes(ghost)


def test_missing_root_fails_discovery(tmp_path: Path) -> None:
    with pytest.raises(SourceReadError, match="not found"):
        FileSystemSourceProvider(tmp_path / "absent").list_sources()


def test_pdf_pages_are_joined_with_page_breaks(tmp_path: Path) -> None:
    _write_blank_pdf(tmp_path / "manual.pdf", pages=3)
    provider = PdfSourceProvider(tmp_path)
    [source] = provider.list_sources()

    assert source.kind == "pdf"
    assert provider.extract_text(source) == "\f\f"


def test_corrupt_pdf_is_a_source_read_error(tmp_path: Path) -> None:
    (tmp_path / "broken.pdf").write_bytes(b"this is not a pdf")
    provider = PdfSourceProvider(tmp_path)
    [source] = provider.list_sources()

    with pytest.raises(SourceReadError, match="broken.pdf"):
        provider.extract_text(source)


def test_registry_dispatches_by_kind(tmp_path: Path) -> None:
    (tmp_path / "notes.md").write_text("notes", encoding="utf-8")
    _write_blank_pdf(tmp_path / "manual.pdf", pages=1)

    registry = default_registry(tmp_path)
    sources, failed_kinds = registry.list_sources()

    assert failed_kinds == []
    assert sorted((source.kind, source.origin) for source in sources) == [
        ("pdf", "manual.pdf"),
        ("text", "notes.md"),
    ]
    text_source = next(source for source in sources if source.kind == "text")
    assert registry.extract_text(text_source) == "notes"


def test_registry_reports_failed_kinds(tmp_path: Path) -> None:
    registry = default_registry(tmp_path / "absent")

    sources, failed_kinds = registry.list_sources()

    assert sources == []
    assert failed_kinds == ["pdf", "text"]


def test_registry_rejects_duplicate_kinds(tmp_path: Path) -> None:
    registry = SourceRegistry([FileSystemSourceProvider(tmp_path)])

    with pytest.raises(ValueError, match="already registered"):
        registry.register(FileSystemSourceProvider(tmp_path))


def test_registry_rejects_unknown_kinds(tmp_path: Path) -> None:
    registry = SourceRegistry([FileSystemSourceProvider(tmp_path)])

    with pytest.raises(SourceReadError, match="kind=web"):
        registry.read_bytes(Source(source_id="x", origin="http://example", kind="web"))


@pytest.mark.parametrize("provider_class", [FileSystemSourceProvider, PdfSourceProvider])
def test_each_provider_extracts_its_own_text(provider_class: type) -> None:
    assert not hasattr(_DirectoryListing, "extract_text")
    assert "extract_text" in vars(provider_class)
