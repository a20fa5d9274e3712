from __future__ import annotations

import re

from docrag.services.rag.types import Chunk, Location, Source

PAGE_BREAK = "\f"

# Strongest first. A cut lands right after the matched boundary. Page breaks
# are not listed: a window always ends at its first page break.
_BOUNDARIES = (
    re.compile(r"\n[ \t]*\n"),
    re.compile(r"\n"),
    re.compile(r"[.!?][\"')\]]*\s"),
    re.compile(r"\s"),
)


def make_chunk_id(source_id: str, ordinal: int) -> str:
    return f"{source_id}-{ordinal:04d}"


def _find_cut(text: str, start: int, end: int) -> int:
    floor = start + (end - start) // 2
    for pattern in _BOUNDARIES:
        last_end = None
        for match in pattern.finditer(text, floor, end):
            last_end = match.end()
        if last_end is not None:
            return last_end
    return end


def _next_cursor(text: str, *, cursor: int, cut: int, overlap: int) -> int:
    overlap = min(overlap, (cut - cursor) // 2)
    position = max(cut - overlap, cursor + 1)

    # overlap never reaches back across a page break
    page_break = text.rfind(PAGE_BREAK, position, cut)
    if page_break != -1:
        return page_break + 1

    if 0 < position < cut and not text[position - 1].isspace() and not text[position].isspace():
        while position < cut and not text[position].isspace():
            position += 1
    return position


class ChunkingEngine:
    def __init__(self, *, chunk_size: int, overlap_fraction: float = 0.0) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        if not 0.0 <= overlap_fraction <= 0.5:
            raise ValueError("overlap_fraction must be within [0, 0.5]")

        self.chunk_size = chunk_size
        self.overlap_fraction = overlap_fraction
        self.overlap = int(chunk_size * overlap_fraction)

    @property
    def signature(self) -> str:
        return f"chars:{self.chunk_size}:overlap:{self.overlap_fraction:.4f}"

    def chunk(self, source: Source, text: str) -> list[Chunk]:
        paginated = PAGE_BREAK in text
        chunks: list[Chunk] = []
        cursor = 0
        text_length = len(text)

        while cursor < text_length:
            end = min(text_length, cursor + self.chunk_size)
            page_break = text.find(PAGE_BREAK, cursor + 1, end)
            if page_break != -1:
                cut = page_break + 1
            elif end >= text_length:
                cut = end
            else:
                cut = _find_cut(text, cursor, end)

            piece = text[cursor:cut]
            stripped = piece.strip()
            if stripped:
                offset = cursor + (len(piece) - len(piece.lstrip()))
                page = text.count(PAGE_BREAK, 0, offset) + 1 if paginated else None
                ordinal = len(chunks)
                chunks.append(
                    Chunk(
                        chunk_id=make_chunk_id(source.source_id, ordinal),
                        source_id=source.source_id,
                        ordinal=ordinal,
                        text=stripped,
                        location=Location(offset=offset, page=page),
                    )
                )

            if cut >= text_length:
                break
            cursor = _next_cursor(text, cursor=cursor, cut=cut, overlap=self.overlap)

        return chunks
