from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys

from docrag.config import get_settings
from docrag.errors import StoreCorruptionError
from docrag.log import configure_logging
from docrag.runtime import build_coordinator, build_embedding_client, open_store
from docrag.services.rag.types import IngestionReport


def _build_parser() -> argparse.ArgumentParser:
    settings = get_settings()

    parser = argparse.ArgumentParser(
        prog="docrag-ingest",
        description="Incrementally index source documents into the local vector store",
    )
    parser.add_argument(
        "--source-dir",
        default=settings.rag_source_dir,
        help="Source directory containing .txt/.md/.pdf documents",
    )
    parser.add_argument(
        "--db-path",
        default=settings.rag_db_path,
        help="SQLite path of the vector store",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the ingestion report as JSON",
    )
    return parser


async def run_ingestion(source_dir: Path, db_path: Path) -> IngestionReport:
    settings = get_settings()
    store = open_store(db_path)
    try:
        coordinator = build_coordinator(
            settings,
            store=store,
            embedding_client=build_embedding_client(settings),
            source_dir=source_dir,
        )
        return await coordinator.run()
    finally:
        store.close()


def main() -> None:
    parser = _build_parser()
    args = parser.parse_args()
    configure_logging(get_settings().log_level)

    try:
        report = asyncio.run(run_ingestion(Path(args.source_dir), Path(args.db_path)))
    except StoreCorruptionError as exc:
        print(f"[docrag-ingest] store is corrupt: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(2) from exc
    except Exception as exc:
        print(f"[docrag-ingest] failed: {exc}", file=sys.stderr, flush=True)
        raise SystemExit(1) from exc

    if args.json:
        print(json.dumps(report.as_dict()), flush=True)
        return

    print(
        "[docrag-ingest] completed "
        f"new={len(report.new)} "
        f"changed={len(report.changed)} "
        f"unchanged={len(report.unchanged)} "
        f"deleted={len(report.deleted)} "
        f"failed={len(report.failed)} "
        f"chunks={report.chunk_count}",
        flush=True,
    )
    for source_id, error in sorted(report.failed.items()):
        print(f"[docrag-ingest] source failed source_id={source_id} error={error}", file=sys.stderr)


if __name__ == "__main__":
    main()
