from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
import logging
import re

from docrag.services.rag.types import (
    Answer,
    Citation,
    GroundingContext,
    GroundingPassage,
    SearchHit,
    SearchResult,
)

logger = logging.getLogger(__name__)

_MARKER = re.compile(r"(\s?)\[(\s*\d+\s*(?:,\s*\d+\s*)*)\]")

GROUNDED_INSTRUCTIONS = (
    "Answer the question using only the numbered passages provided. "
    "Cite every statement with the marker of the passage it comes from, e.g. [1] or [1, 2]. "
    "If the passages do not contain the answer, say so briefly."
)
UNGROUNDED_INSTRUCTIONS = (
    "No passages from the document collection matched this question. "
    "Answer briefly and state clearly that the answer is not grounded in the collection. "
    "Do not use citation markers."
)


def render_passages(passages: Sequence[GroundingPassage]) -> str:
    if not passages:
        return "No relevant passages found in the document collection."
    return "\n\n".join(
        f"[{passage.marker}] {passage.citation.label}\n{passage.text}" for passage in passages
    )


def join_overlapping(left: str, right: str) -> str:
    """Concatenate two consecutive chunk texts, dropping the shared overlap."""
    for size in range(min(len(left), len(right)), 0, -1):
        if left.endswith(right[:size]):
            return left + right[size:]
    return f"{left}\n{right}"


@dataclass
class _Draft:
    source_id: str
    origin: str
    first_ordinal: int
    last_ordinal: int
    text: str
    citation: Citation
    hit_chunk_ids: list[str] = field(default_factory=list)

    def adjacent_to(self, source_id: str, first: int, last: int) -> bool:
        return self.source_id == source_id and (
            first == self.last_ordinal + 1 or last == self.first_ordinal - 1
        )


def _merge(target: _Draft, other: _Draft) -> str:
    if other.first_ordinal > target.last_ordinal:
        return join_overlapping(target.text, other.text)
    return join_overlapping(other.text, target.text)


def _absorb(target: _Draft, other: _Draft, merged_text: str) -> None:
    if other.first_ordinal < target.first_ordinal:
        target.citation = other.citation
    target.first_ordinal = min(target.first_ordinal, other.first_ordinal)
    target.last_ordinal = max(target.last_ordinal, other.last_ordinal)
    target.text = merged_text
    target.hit_chunk_ids.extend(other.hit_chunk_ids)


def _draft_for(hit: SearchHit) -> _Draft:
    return _Draft(
        source_id=hit.source_id,
        origin=hit.citation.origin,
        first_ordinal=hit.ordinal,
        last_ordinal=hit.ordinal,
        text=hit.text,
        citation=hit.citation,
        hit_chunk_ids=[hit.chunk_id],
    )


class AnswerAssembler:
    """Prepares grounding for the chat collaborator and aligns its citations.

    Passages keep the rank order of their best hit. Hits that are adjacent
    chunks of an already included passage are folded into it with the
    overlapping text removed, so the model does not see the same words twice.
    """

    def __init__(self, *, budget_chars: int = 6000) -> None:
        if budget_chars <= 0:
            raise ValueError("budget_chars must be > 0")
        self._budget_chars = budget_chars

    def build_context(self, result: SearchResult, budget_chars: int | None = None) -> GroundingContext:
        budget = budget_chars if budget_chars is not None else self._budget_chars
        drafts: list[_Draft] = []
        used = 0

        for hit in result.hits:
            if any(hit.chunk_id in draft.hit_chunk_ids for draft in drafts):
                continue

            incoming = _draft_for(hit)
            target = next(
                (
                    draft
                    for draft in drafts
                    if draft.adjacent_to(hit.source_id, hit.ordinal, hit.ordinal)
                ),
                None,
            )
            if target is not None:
                merged_text = _merge(target, incoming)
                growth = len(merged_text) - len(target.text)
                if used + growth > budget:
                    break
                _absorb(target, incoming, merged_text)
                used += growth
                used += self._bridge(drafts, target)
                continue

            if used + len(hit.text) > budget:
                if not drafts:
                    incoming.text = hit.text[:budget]
                    drafts.append(incoming)
                    used = budget
                break
            drafts.append(incoming)
            used += len(hit.text)

        passages = [
            GroundingPassage(
                marker=index,
                source_id=draft.source_id,
                origin=draft.origin,
                text=draft.text,
                citation=draft.citation,
                hit_chunk_ids=tuple(draft.hit_chunk_ids),
            )
            for index, draft in enumerate(drafts, start=1)
        ]
        logger.debug(
            "grounding context built hits=%d passages=%d chars=%d budget=%d",
            len(result.hits),
            len(passages),
            used,
            budget,
        )
        return GroundingContext(query=result.query, passages=passages)

    @staticmethod
    def _bridge(drafts: list[_Draft], target: _Draft) -> int:
        """Fold drafts that became adjacent to ``target``; returns the size change."""
        delta = 0
        merged = True
        while merged:
            merged = False
            for other in drafts:
                if other is target:
                    continue
                if other.adjacent_to(target.source_id, target.first_ordinal, target.last_ordinal):
                    merged_text = _merge(target, other)
                    delta += len(merged_text) - len(target.text) - len(other.text)
                    _absorb(target, other, merged_text)
                    drafts.remove(other)
                    merged = True
                    break
        return delta

    def system_context(self, context: GroundingContext) -> str:
        return GROUNDED_INSTRUCTIONS if context.grounded else UNGROUNDED_INSTRUCTIONS

    def render_passages(self, context: GroundingContext) -> str:
        return render_passages(context.passages)

    def finalize(
        self,
        answer_text: str,
        context: GroundingContext,
        *,
        model: str | None = None,
        used_fallback: bool = False,
    ) -> Answer:
        """Renumber inline markers in order of first use and drop unknown ones."""
        passage_count = len(context.passages)
        renumbered: dict[int, int] = {}

        def replace(match: re.Match[str]) -> str:
            kept: list[int] = []
            for part in match.group(2).split(","):
                marker = int(part)
                if not 1 <= marker <= passage_count:
                    continue
                if marker not in renumbered:
                    renumbered[marker] = len(renumbered) + 1
                if renumbered[marker] not in kept:
                    kept.append(renumbered[marker])
            if not kept:
                return ""
            return f"{match.group(1)}[{', '.join(str(marker) for marker in kept)}]"

        text = _MARKER.sub(replace, answer_text).strip()
        citations = [
            context.passages[marker - 1].citation
            for marker in sorted(renumbered, key=renumbered.__getitem__)
        ]
        return Answer(
            text=text,
            citations=citations,
            grounded=context.grounded,
            model=model,
            used_fallback=used_fallback,
        )
