from docrag.services.rag.answer import AnswerAssembler
from docrag.services.rag.chat import ChatPipeline
from docrag.services.rag.chunker import ChunkingEngine
from docrag.services.rag.coordinator import IngestionCoordinator
from docrag.services.rag.hasher import ContentHasher
from docrag.services.rag.search import SemanticSearchEngine
from docrag.services.rag.sources import (
    FileSystemSourceProvider,
    PdfSourceProvider,
    SourceRegistry,
)
from docrag.services.rag.types import Answer, IngestionReport, SearchResult
from docrag.services.rag.vector_store import SqliteVectorStore

__all__ = [
    "Answer",
    "AnswerAssembler",
    "ChatPipeline",
    "ChunkingEngine",
    "ContentHasher",
    "FileSystemSourceProvider",
    "IngestionCoordinator",
    "IngestionReport",
    "PdfSourceProvider",
    "SearchResult",
    "SemanticSearchEngine",
    "SourceRegistry",
    "SqliteVectorStore",
]
