from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


@dataclass(frozen=True)
class Source:
    source_id: str
    origin: str
    kind: str
    modified_at: float | None = None


@dataclass(frozen=True)
class Location:
    offset: int
    page: int | None = None

    def describe(self) -> str:
        if self.page is not None:
            return f"page {self.page}"
        return f"offset {self.offset}"


@dataclass(frozen=True)
class Chunk:
    chunk_id: str
    source_id: str
    ordinal: int
    text: str
    location: Location


@dataclass(frozen=True)
class IndexRecord:
    chunk_id: str
    source_id: str
    ordinal: int
    origin: str
    text: str
    location: Location
    source_fingerprint: str
    embedding: list[float]


@dataclass(frozen=True)
class RecordFilter:
    source_ids: frozenset[str] | None = None
    origin_prefix: str | None = None


@dataclass(frozen=True)
class Citation:
    chunk_id: str
    source_id: str
    origin: str
    location: Location

    @property
    def label(self) -> str:
        return f"{self.origin} ({self.location.describe()})"


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    source_id: str
    ordinal: int
    text: str
    score: float
    citation: Citation


@dataclass(frozen=True)
class SearchResult:
    query: str
    hits: list[SearchHit] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.hits


@dataclass(frozen=True)
class GroundingPassage:
    marker: int
    source_id: str
    origin: str
    text: str
    citation: Citation
    hit_chunk_ids: tuple[str, ...]


@dataclass(frozen=True)
class GroundingContext:
    query: str
    passages: list[GroundingPassage]

    @property
    def grounded(self) -> bool:
        return bool(self.passages)

    @property
    def citations(self) -> list[Citation]:
        return [passage.citation for passage in self.passages]


@dataclass(frozen=True)
class Answer:
    text: str
    citations: list[Citation]
    grounded: bool
    model: str | None = None
    used_fallback: bool = False


@dataclass(frozen=True)
class AnswerEvent:
    kind: Literal["delta", "final"]
    text: str = ""
    answer: Answer | None = None


SourceOutcome = Literal["new", "changed", "unchanged", "deleted", "empty", "failed"]


@dataclass
class IngestionReport:
    new: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    empty: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    chunk_count: int = 0
    embedding_calls: int = 0
    duration_ms: int = 0

    def record(self, source_id: str, outcome: SourceOutcome, *, error: str | None = None) -> None:
        if outcome == "failed":
            self.failed[source_id] = error or "unknown error"
            return
        getattr(self, outcome).append(source_id)

    @property
    def written(self) -> int:
        return len(self.new) + len(self.changed) + len(self.empty) + len(self.deleted)

    def as_dict(self) -> dict[str, object]:
        return {
            "new": len(self.new),
            "changed": len(self.changed),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
            "empty": len(self.empty),
            "failed": dict(sorted(self.failed.items())),
            "chunks": self.chunk_count,
            "embedding_calls": self.embedding_calls,
            "duration_ms": self.duration_ms,
        }
