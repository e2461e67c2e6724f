# ============================================================================
# backend/kb_ingest/core/search/chunking_service.py
# ============================================================================
"""
Chunking Service for KB Ingest - Document Splitting for Embedding

This module splits extracted text into overlapping chunks that are embedded
and stored as vector records. Chunking is deterministic: the same text with
the same parameters always yields the same chunks, which keeps re-indexing
idempotent.

Chunking Strategy:
    1. Text that fits in one window becomes a single (trimmed) chunk
    2. Otherwise slide a window of chunk_size characters over the text
    3. Inside each window, prefer to cut after the last '.' or newline when it
       lies past the middle of the window; otherwise hard-cut at the window end
    4. The next window starts `overlap` characters before the cut, and always
       at least one character after the previous start

Usage:
    from kb_ingest.core.search.chunking_service import chunking_service

    chunks = chunking_service.chunk_text(text, chunk_size=1000, overlap=200)
    for chunk in chunks:
        print(f"Chunk {chunk.chunk_index}: {chunk.char_start}-{chunk.char_end}")

Author: KB Ingest Development Team
Version: 1.0.0
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from kb_ingest.config import settings

logger = logging.getLogger("kb_ingest.chunking_service")


@dataclass
class DocumentChunk:
    """
    Represents a chunk of a document for embedding.

    Attributes:
        content: Trimmed text content of this chunk
        chunk_index: Zero-based, contiguous index within the document
        char_start: Offset where the (untrimmed) window starts
        char_end: Offset where the (untrimmed) window ends, exclusive
        document_id: Parent document, when known
    """

    content: str
    chunk_index: int
    char_start: int = 0
    char_end: int = 0
    document_id: Optional[str] = None


class ChunkingService:
    """
    Service for splitting text into overlapping, boundary-aware chunks.

    Configuration:
        chunk_size: Maximum characters per chunk (default from settings, 1000)
        overlap: Characters shared by consecutive chunks (default 200)
    """

    # Fraction of the window a sentence/line break must lie beyond to be used
    BOUNDARY_THRESHOLD = 0.5

    def __init__(self, chunk_size: int = None, overlap: int = None):
        self.chunk_size = chunk_size or settings.default_chunk_size
        self.overlap = settings.default_chunk_overlap if overlap is None else overlap

    @staticmethod
    def validate_params(chunk_size: int, overlap: int) -> None:
        """Raise ValueError unless chunk_size > 0 and 0 <= overlap < chunk_size."""
        if chunk_size is None or chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if overlap is None or overlap < 0 or overlap >= chunk_size:
            raise ValueError(
                f"overlap must be in [0, chunk_size), got overlap={overlap} chunk_size={chunk_size}"
            )

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
        document_id: Optional[str] = None,
    ) -> List[DocumentChunk]:
        """
        Split text into chunks.

        Args:
            text: Extracted document text
            chunk_size: Override for the maximum chunk length
            overlap: Override for the overlap between chunks
            document_id: Parent document id copied onto each chunk

        Returns:
            List of DocumentChunk objects; empty for blank text

        Raises:
            ValueError: If chunk_size/overlap are out of range
        """
        size = self.chunk_size if chunk_size is None else chunk_size
        over = self.overlap if overlap is None else overlap
        self.validate_params(size, over)

        if not text or not text.strip():
            return []

        length = len(text)
        if length <= size:
            return [DocumentChunk(text.strip(), 0, 0, length, document_id)]

        chunks: List[DocumentChunk] = []
        start = 0
        while start < length:
            end = min(start + size, length)
            cut = end

            if end < length:
                window = text[start:end]
                break_point = max(window.rfind("."), window.rfind("\n"))
                if break_point > size * self.BOUNDARY_THRESHOLD:
                    cut = start + break_point + 1

            content = text[start:cut].strip()
            if content:
                chunks.append(DocumentChunk(content, len(chunks), start, cut, document_id))

            if cut >= length:
                break

            # forward progress, and never past the cut
            start = max(cut - over, start + 1)

        logger.debug(f"Created {len(chunks)} chunks from {length} chars (size={size}, overlap={over})")
        return chunks


# Global service instance with default settings
chunking_service = ChunkingService()
