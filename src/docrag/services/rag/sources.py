from __future__ import annotations

from collections.abc import Iterable
import hashlib
import io
import logging
from pathlib import Path
from typing import Protocol

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from docrag.errors import SourceReadError
from docrag.services.rag.chunker import PAGE_BREAK
from docrag.services.rag.types import Source

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md"}
PDF_EXTENSIONS = {".pdf"}


class SourceProvider(Protocol):
    kind: str

    def list_sources(self) -> list[Source]: ...

    def read_bytes(self, source: Source) -> bytes: ...

    def extract_text(self, source: Source) -> str: ...


def make_source_id(kind: str, relative_path: str) -> str:
    return hashlib.sha256(f"{kind}:{relative_path}".encode("utf-8")).hexdigest()[:16]


class _DirectoryListing:
    """Discovery and raw reads for files under a root; subclasses extract text."""

    kind: str
    extensions: frozenset[str]

    def __init__(self, root: Path, extensions: Iterable[str] | None = None) -> None:
        self._root = root
        if extensions is not None:
            self.extensions = frozenset(extension.lower() for extension in extensions)

    def list_sources(self) -> list[Source]:
        if not self._root.exists():
            raise SourceReadError(f"Source directory not found: {self._root}")
        if not self._root.is_dir():
            raise SourceReadError(f"Source path is not a directory: {self._root}")

        files = sorted(
            path
            for path in self._root.rglob("*")
            if path.is_file() and path.suffix.lower() in self.extensions
        )

        sources: list[Source] = []
        for path in files:
            relative_path = path.relative_to(self._root).as_posix()
            try:
                modified_at = path.stat().st_mtime
            except OSError:
                modified_at = None
            sources.append(
                Source(
                    source_id=make_source_id(self.kind, relative_path),
                    origin=relative_path,
                    kind=self.kind,
                    modified_at=modified_at,
                )
            )
        return sources

    def read_bytes(self, source: Source) -> bytes:
        try:
            return (self._root / source.origin).read_bytes()
        except OSError as exc:
            raise SourceReadError(f"Cannot read {source.origin}: {exc}") from exc


class FileSystemSourceProvider(_DirectoryListing):
    """Plain text and markdown files under a directory."""

    kind = "text"
    extensions = frozenset(TEXT_EXTENSIONS)

    def extract_text(self, source: Source) -> str:
        raw = self.read_bytes(source)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SourceReadError(f"{source.origin} is not valid UTF-8: {exc}") from exc
        return text.replace("\r\n", "\n")


class PdfSourceProvider(_DirectoryListing):
    """PDF files; extracted pages are joined with a form feed."""

    kind = "pdf"
    extensions = frozenset(PDF_EXTENSIONS)

    def extract_text(self, source: Source) -> str:
        raw = self.read_bytes(source)
        try:
            reader = PdfReader(io.BytesIO(raw))
            pages = [(page.extract_text() or "").replace(PAGE_BREAK, " ") for page in reader.pages]
        except (PyPdfError, OSError, ValueError, KeyError) as exc:
            raise SourceReadError(f"Cannot parse PDF {source.origin}: {exc}") from exc
        return PAGE_BREAK.join(pages)


class SourceRegistry:
    def __init__(self, providers: Iterable[SourceProvider] = ()) -> None:
        self._providers: dict[str, SourceProvider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: SourceProvider) -> None:
        if provider.kind in self._providers:
            raise ValueError(f"source provider already registered for kind={provider.kind}")
        self._providers[provider.kind] = provider

    @property
    def kinds(self) -> list[str]:
        return sorted(self._providers)

    def list_sources(self) -> tuple[list[Source], list[str]]:
        """Return discovered sources and the kinds whose discovery failed."""
        sources: list[Source] = []
        seen: set[str] = set()
        failed_kinds: list[str] = []

        for kind in self.kinds:
            try:
                discovered = self._providers[kind].list_sources()
            except SourceReadError as exc:
                logger.error("source discovery failed kind=%s error=%s", kind, exc)
                failed_kinds.append(kind)
                continue

            for source in discovered:
                if source.source_id in seen:
                    logger.warning(
                        "duplicate source skipped source_id=%s origin=%s",
                        source.source_id,
                        source.origin,
                    )
                    continue
                seen.add(source.source_id)
                sources.append(source)

        return sources, failed_kinds

    def _provider_for(self, source: Source) -> SourceProvider:
        provider = self._providers.get(source.kind)
        if provider is None:
            raise SourceReadError(f"no source provider registered for kind={source.kind}")
        return provider

    def read_bytes(self, source: Source) -> bytes:
        return self._provider_for(source).read_bytes(source)

    def extract_text(self, source: Source) -> str:
        return self._provider_for(source).extract_text(source)


def default_registry(source_dir: Path) -> SourceRegistry:
    return SourceRegistry(
        [
            FileSystemSourceProvider(source_dir),
            PdfSourceProvider(source_dir),
        ]
    )
