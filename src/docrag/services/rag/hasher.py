from __future__ import annotations

import hashlib

from docrag.services.rag.types import Source

_FORMAT_VERSION = b"docrag-fp-1"


def _frame(digest: "hashlib._Hash", value: bytes) -> None:
    digest.update(len(value).to_bytes(8, "big"))
    digest.update(value)


class ContentHasher:
    """Fingerprints a source for change detection.

    The fingerprint covers the raw bytes, the provider kind, the chunking
    signature and the embedding model, so changing either configuration
    re-indexes every source.
    Modification time is only included when ``include_mtime`` is set; bytes
    alone already change whenever content changes.
    """

    def __init__(
        self,
        *,
        chunking_signature: str = "",
        embedding_model: str = "",
        include_mtime: bool = False,
    ) -> None:
        self._chunking_signature = chunking_signature
        self._embedding_model = embedding_model
        self._include_mtime = include_mtime

    def fingerprint(self, source: Source, content: bytes) -> str:
        digest = hashlib.sha256()
        _frame(digest, _FORMAT_VERSION)
        _frame(digest, source.kind.encode("utf-8"))
        _frame(digest, content)
        _frame(digest, self._chunking_signature.encode("utf-8"))
        _frame(digest, self._embedding_model.encode("utf-8"))
        if self._include_mtime:
            mtime = "" if source.modified_at is None else repr(float(source.modified_at))
            _frame(digest, mtime.encode("utf-8"))
        return digest.hexdigest()
