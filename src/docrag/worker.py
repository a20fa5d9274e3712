from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import signal

from docrag.config import get_settings
from docrag.errors import StoreCorruptionError
from docrag.log import configure_logging
from docrag.runtime import build_coordinator, build_embedding_client, open_store
from docrag.services.rag.coordinator import IngestionCoordinator

logger = logging.getLogger(__name__)


async def run_forever(
    coordinator: IngestionCoordinator,
    *,
    interval_seconds: float,
    stop_event: asyncio.Event,
    max_runs: int | None = None,
) -> int:
    """Run ingestion every ``interval_seconds`` until stopped; returns completed runs."""
    runs = 0
    while not stop_event.is_set():
        try:
            report = await coordinator.run()
        except StoreCorruptionError:
            raise
        except Exception as exc:
            logger.error("ingestion run failed error=%r; retrying in %.1fs", exc, interval_seconds)
        else:
            runs += 1
            logger.info("ingestion run finished run=%d result=%s", runs, report.as_dict())

        if max_runs is not None and runs >= max_runs:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    return runs


async def _main() -> None:
    settings = get_settings()
    store = open_store(Path(settings.rag_db_path))
    coordinator = build_coordinator(
        settings,
        store=store,
        embedding_client=build_embedding_client(settings),
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:
            pass

    logger.info(
        "worker started source_dir=%s db_path=%s interval=%ds",
        settings.rag_source_dir,
        settings.rag_db_path,
        settings.rag_ingest_interval_seconds,
    )
    try:
        await run_forever(
            coordinator,
            interval_seconds=settings.rag_ingest_interval_seconds,
            stop_event=stop_event,
        )
    finally:
        store.close()
        logger.info("worker stopped")


def main() -> None:
    configure_logging(get_settings().log_level)
    asyncio.run(_main())


if __name__ == "__main__":
    main()
