from __future__ import annotations

from array import array
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
import heapq
import logging
import math
from pathlib import Path
import threading
from typing import TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from docrag.db import Base, create_store_engine
from docrag.errors import EmbeddingDimensionMismatch, IndexWriteError, StoreCorruptionError
from docrag.models import IndexRecordRow, IngestionStateRow, StoreMetaRow
from docrag.services.rag.types import IndexRecord, Location, RecordFilter

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EMBEDDING_DIM_KEY = "embedding_dim"
_EMBEDDING_MODEL_KEY = "embedding_model"


def _encode_embedding(values: Sequence[float]) -> bytes:
    vector = array("f", values)
    return vector.tobytes()


def _decode_embedding(blob: bytes) -> list[float]:
    vector = array("f")
    vector.frombytes(blob)
    return vector.tolist()


def _norm(values: Sequence[float]) -> float:
    return math.sqrt(sum(value * value for value in values))


def _cosine(query: Sequence[float], query_norm: float, candidate: Sequence[float]) -> float:
    candidate_norm = _norm(candidate)
    if query_norm == 0 or candidate_norm == 0:
        return 0.0
    dot = sum(x * y for x, y in zip(query, candidate))
    return dot / (query_norm * candidate_norm)


def _to_row(record: IndexRecord) -> IndexRecordRow:
    return IndexRecordRow(
        chunk_id=record.chunk_id,
        source_id=record.source_id,
        ordinal=record.ordinal,
        origin=record.origin,
        text=record.text,
        page=record.location.page,
        char_offset=record.location.offset,
        source_fingerprint=record.source_fingerprint,
        embedding=_encode_embedding(record.embedding),
        embedding_dim=len(record.embedding),
    )


def _to_record(row: IndexRecordRow) -> IndexRecord:
    return IndexRecord(
        chunk_id=row.chunk_id,
        source_id=row.source_id,
        ordinal=row.ordinal,
        origin=row.origin,
        text=row.text,
        location=Location(offset=row.char_offset, page=row.page),
        source_fingerprint=row.source_fingerprint,
        embedding=_decode_embedding(row.embedding),
    )


class SqliteVectorStore:
    """Persistent chunk index plus ingestion state in one SQLite database.

    Every write runs in a single transaction, so a failed write leaves the
    previously committed records and state untouched. Writes are serialised
    by a process-local lock; reads are not.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._write_lock = threading.Lock()
        self.write_count = 0
        Base.metadata.create_all(bind=engine)

    @classmethod
    def open(cls, db_path: Path) -> SqliteVectorStore:
        return cls(create_store_engine(db_path))

    def close(self) -> None:
        self._engine.dispose()

    def _write(self, operation: str, work: Callable[[Session], T]) -> T:
        with self._write_lock:
            try:
                with Session(self._engine) as session, session.begin():
                    result = work(session)
            except IndexWriteError:
                logger.warning("store write rolled back operation=%s", operation)
                raise
            except SQLAlchemyError as exc:
                logger.warning("store write rolled back operation=%s error=%r", operation, exc)
                raise IndexWriteError(f"{operation} failed: {exc}") from exc
            self.write_count += 1
            return result

    def _ensure_dim(self, session: Session, dim: int) -> None:
        if dim <= 0:
            raise IndexWriteError("embedding must not be empty")

        meta = session.get(StoreMetaRow, _EMBEDDING_DIM_KEY)
        if meta is None:
            session.add(StoreMetaRow(key=_EMBEDDING_DIM_KEY, value=str(dim)))
            session.flush()
            return
        if int(meta.value) == dim:
            return

        remaining = session.scalar(select(func.count()).select_from(IndexRecordRow)) or 0
        if remaining:
            raise IndexWriteError(
                f"embedding dimension {dim} does not match index dimension {meta.value}"
            )
        meta.value = str(dim)
        session.flush()

    def _insert(self, session: Session, records: Sequence[IndexRecord]) -> None:
        checked_dim: int | None = None
        for record in records:
            dim = len(record.embedding)
            if dim != checked_dim:
                self._ensure_dim(session, dim)
                checked_dim = dim
            session.merge(_to_row(record))
        session.flush()

    def _put_state(
        self,
        session: Session,
        *,
        source_id: str,
        fingerprint: str,
        origin: str,
        chunk_count: int,
    ) -> None:
        session.merge(
            IngestionStateRow(
                source_id=source_id,
                fingerprint=fingerprint,
                origin=origin,
                chunk_count=chunk_count,
                updated_at=datetime.now(timezone.utc),
            )
        )

    def upsert(self, records: Sequence[IndexRecord]) -> int:
        if not records:
            return 0

        def work(session: Session) -> int:
            self._insert(session, records)
            return len(records)

        return self._write("upsert", work)

    def delete_by_source(self, source_id: str) -> int:
        def work(session: Session) -> int:
            result = session.execute(
                delete(IndexRecordRow).where(IndexRecordRow.source_id == source_id)
            )
            return int(result.rowcount or 0)

        return self._write("delete_by_source", work)

    def replace_source(
        self,
        source_id: str,
        *,
        fingerprint: str,
        origin: str,
        records: Sequence[IndexRecord],
    ) -> int:
        """Swap a source's chunk set and record its fingerprint in one transaction."""
        for record in records:
            if record.source_id != source_id or record.source_fingerprint != fingerprint:
                raise ValueError(
                    f"record {record.chunk_id} does not belong to source {source_id}@{fingerprint}"
                )

        def work(session: Session) -> int:
            session.execute(delete(IndexRecordRow).where(IndexRecordRow.source_id == source_id))
            self._insert(session, records)
            self._put_state(
                session,
                source_id=source_id,
                fingerprint=fingerprint,
                origin=origin,
                chunk_count=len(records),
            )
            return len(records)

        return self._write("replace_source", work)

    def forget_source(self, source_id: str) -> int:
        def work(session: Session) -> int:
            result = session.execute(
                delete(IndexRecordRow).where(IndexRecordRow.source_id == source_id)
            )
            session.execute(
                delete(IngestionStateRow).where(IngestionStateRow.source_id == source_id)
            )
            return int(result.rowcount or 0)

        return self._write("forget_source", work)

    def get_ingestion_state(self) -> dict[str, str]:
        with Session(self._engine) as session:
            rows = session.execute(
                select(IngestionStateRow.source_id, IngestionStateRow.fingerprint)
            ).all()
        return {source_id: fingerprint for source_id, fingerprint in rows}

    def get_fingerprint(self, source_id: str) -> str | None:
        with Session(self._engine) as session:
            row = session.get(IngestionStateRow, source_id)
            return row.fingerprint if row is not None else None

    def set_ingestion_state(
        self,
        source_id: str,
        fingerprint: str,
        *,
        origin: str = "",
        chunk_count: int = 0,
    ) -> None:
        def work(session: Session) -> None:
            self._put_state(
                session,
                source_id=source_id,
                fingerprint=fingerprint,
                origin=origin,
                chunk_count=chunk_count,
            )

        self._write("set_ingestion_state", work)

    def delete_ingestion_state(self, source_id: str) -> None:
        def work(session: Session) -> None:
            session.execute(
                delete(IngestionStateRow).where(IngestionStateRow.source_id == source_id)
            )

        self._write("delete_ingestion_state", work)

    @property
    def embedding_model(self) -> str | None:
        with Session(self._engine) as session:
            meta = session.get(StoreMetaRow, _EMBEDDING_MODEL_KEY)
        return meta.value if meta is not None else None

    def bind_embedding_model(self, model: str) -> bool:
        """Record the model that produces the index vectors.

        Vectors from different models are not comparable, so when the recorded
        model differs every record and ingestion state entry is dropped in the
        same transaction. Returns True when the index was reset.
        """

        def work(session: Session) -> bool:
            meta = session.get(StoreMetaRow, _EMBEDDING_MODEL_KEY)
            if meta is not None and meta.value == model:
                return False

            reset = meta is not None
            if reset:
                session.execute(delete(IndexRecordRow))
                session.execute(delete(IngestionStateRow))
                session.execute(delete(StoreMetaRow).where(StoreMetaRow.key == _EMBEDDING_DIM_KEY))
                meta.value = model
            else:
                session.add(StoreMetaRow(key=_EMBEDDING_MODEL_KEY, value=model))
            return reset

        current = self.embedding_model
        if current == model:
            return False
        reset = self._write("bind_embedding_model", work)
        if reset:
            logger.warning(
                "embedding model changed previous=%s current=%s; index cleared for rebuild",
                current,
                model,
            )
        return reset

    @property
    def embedding_dim(self) -> int | None:
        with Session(self._engine) as session:
            meta = session.get(StoreMetaRow, _EMBEDDING_DIM_KEY)
        return int(meta.value) if meta is not None else None

    def count(self) -> int:
        with Session(self._engine) as session:
            return int(session.scalar(select(func.count()).select_from(IndexRecordRow)) or 0)

    def chunk_ids(self, source_id: str | None = None) -> list[str]:
        stmt = select(IndexRecordRow.chunk_id).order_by(IndexRecordRow.chunk_id)
        if source_id is not None:
            stmt = stmt.where(IndexRecordRow.source_id == source_id)
        with Session(self._engine) as session:
            return list(session.scalars(stmt).all())

    def get_records(self, source_id: str) -> list[IndexRecord]:
        with Session(self._engine) as session:
            rows = session.scalars(
                select(IndexRecordRow)
                .where(IndexRecordRow.source_id == source_id)
                .order_by(IndexRecordRow.ordinal)
            ).all()
            return [_to_record(row) for row in rows]

    def query(
        self,
        vector: Sequence[float],
        k: int,
        record_filter: RecordFilter | None = None,
    ) -> list[tuple[IndexRecord, float]]:
        """Top-k records by cosine similarity, ties broken by chunk_id ascending."""
        if k <= 0 or not vector:
            return []

        stmt = select(IndexRecordRow)
        if record_filter is not None:
            if record_filter.source_ids is not None:
                stmt = stmt.where(IndexRecordRow.source_id.in_(sorted(record_filter.source_ids)))
            if record_filter.origin_prefix:
                stmt = stmt.where(
                    IndexRecordRow.origin.startswith(record_filter.origin_prefix, autoescape=True)
                )

        with Session(self._engine) as session:
            rows = session.scalars(stmt).all()
            if not rows:
                return []

            query_vector = [float(value) for value in vector]
            query_norm = _norm(query_vector)
            scored: list[tuple[float, str, IndexRecordRow]] = []
            for row in rows:
                if row.embedding_dim != len(query_vector):
                    raise EmbeddingDimensionMismatch(
                        f"query vector has dimension {len(query_vector)}, "
                        f"index has {row.embedding_dim}"
                    )
                score = _cosine(query_vector, query_norm, _decode_embedding(row.embedding))
                scored.append((score, row.chunk_id, row))

            top = heapq.nsmallest(k, scored, key=lambda item: (-item[0], item[1]))
            return [(_to_record(row), score) for score, _, row in top]

    def verify(self) -> None:
        """Raise StoreCorruptionError when persisted state breaks an invariant."""
        with Session(self._engine) as session:
            meta = session.get(StoreMetaRow, _EMBEDDING_DIM_KEY)
            expected_dim = int(meta.value) if meta is not None else None
            state = dict(
                session.execute(
                    select(IngestionStateRow.source_id, IngestionStateRow.fingerprint)
                ).all()
            )
            rows = session.execute(
                select(
                    IndexRecordRow.chunk_id,
                    IndexRecordRow.source_id,
                    IndexRecordRow.source_fingerprint,
                    IndexRecordRow.embedding,
                    IndexRecordRow.embedding_dim,
                )
            ).all()

        problems: list[str] = []
        for chunk_id, source_id, source_fingerprint, blob, embedding_dim in rows:
            if len(blob) != embedding_dim * array("f").itemsize:
                problems.append(f"{chunk_id}: embedding blob does not match dim {embedding_dim}")
            if expected_dim is not None and embedding_dim != expected_dim:
                problems.append(f"{chunk_id}: dim {embedding_dim} != index dim {expected_dim}")
            if source_id not in state:
                problems.append(f"{chunk_id}: source {source_id} has no ingestion state")
            elif state[source_id] != source_fingerprint:
                problems.append(f"{chunk_id}: fingerprint differs from ingestion state")

        if rows and expected_dim is None:
            problems.append("records present but index dimension is not recorded")

        if problems:
            for problem in problems[:20]:
                logger.error("store invariant violated %s", problem)
            raise StoreCorruptionError(
                f"vector store failed verification ({len(problems)} problems): {problems[0]}"
            )
