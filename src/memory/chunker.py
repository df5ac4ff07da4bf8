"""
Text Chunker
============

Splits extracted document text into overlapping chunks for embedding.

Rules:
- Chunk length never exceeds max_chunk_size
- Consecutive chunks overlap by `overlap` characters
- Prefer paragraph, then sentence, then whitespace boundaries
  within a look-back window; hard cut otherwise
- Stable chunking (same input = same chunks)
"""

import bisect
import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .keywords import AMOUNT_PATTERN, extract_keywords
from .models import ChunkMetadata, TextChunk

logger = logging.getLogger(__name__)

SECTION_PATTERN = re.compile(
    r"PERCEPCIONES|DEDUCCIONES|DEVENGOS|RETRIBUCIONES|DATOS DEL TRABAJADOR|DATOS DE LA EMPRESA"
)
SENTENCE_END_PATTERN = re.compile(r"[.!?](?=\s)|\n")
WHITESPACE_PATTERN = re.compile(r"\s")
TABLE_PATTERN = re.compile(r"\||\t")


@dataclass
class ChunkConfig:
    """Chunking configuration (characters)."""
    max_chunk_size: int = 400
    overlap: int = 50
    # Look-back window for natural boundaries; defaults to a third of the chunk
    boundary_lookback: Optional[int] = None
    keyword_limit: int = 10

    def __post_init__(self):
        if self.max_chunk_size <= 0:
            raise ValueError("max_chunk_size must be positive")
        if self.overlap < 0:
            raise ValueError("overlap cannot be negative")
        if self.overlap >= self.max_chunk_size:
            raise ValueError("overlap must be smaller than max_chunk_size")

    @property
    def lookback(self) -> int:
        return self.boundary_lookback or max(1, self.max_chunk_size // 3)


class TextChunker:
    """
    Splits text into overlapping, boundary-aware chunks.

    Iteration is lazy: `iter_chunks` returns a fresh generator on every call,
    so the same input can be traversed again from the start.
    """

    def __init__(self, config: Optional[ChunkConfig] = None):
        self.config = config or ChunkConfig()

    def iter_chunks(self, text: str) -> Iterator[TextChunk]:
        """Yield chunks in traversal order. total_chunks is left unset."""
        if not text or not text.strip():
            return

        size = self.config.max_chunk_size
        overlap = self.config.overlap
        length = len(text)

        sections = [(m.start(), m.group(0)) for m in SECTION_PATTERN.finditer(text)]
        section_starts = [pos for pos, _ in sections]
        paged = "\f" in text

        start = 0
        index = 0
        while start < length:
            end = min(start + size, length)
            if end < length:
                end = self._find_boundary(text, start, end)

            piece = text[start:end]
            if piece.strip():
                yield TextChunk(
                    text=piece,
                    index=index,
                    metadata=self._build_metadata(
                        text, piece, index, start, end,
                        sections, section_starts, paged,
                    ),
                )
                index += 1

            if end >= length:
                break
            start = end - overlap

    def chunk(self, text: str) -> List[TextChunk]:
        """Chunk eagerly and record the final chunk count on every chunk."""
        chunks = list(self.iter_chunks(text))
        total = len(chunks)
        chunks = [c.with_total(total) for c in chunks]
        logger.debug(f"Chunked {len(text)} chars into {total} chunks")
        return chunks

    def _find_boundary(self, text: str, start: int, end: int) -> int:
        """
        Find the cut position for a chunk ending at or before `end`.

        The cut never falls before start + overlap + 1 so the next chunk
        always advances.
        """
        window_start = max(start + self.config.overlap + 1, end - self.config.lookback)
        if window_start >= end:
            return end

        paragraph = text.rfind("\n\n", window_start, end)
        if paragraph != -1:
            return paragraph + 2

        for pattern in (SENTENCE_END_PATTERN, WHITESPACE_PATTERN):
            last = None
            for match in pattern.finditer(text, window_start, end):
                last = match
            if last is not None:
                return last.end()

        return end

    def _build_metadata(
        self,
        text: str,
        piece: str,
        index: int,
        start: int,
        end: int,
        sections,
        section_starts: List[int],
        paged: bool,
    ) -> ChunkMetadata:
        section = None
        pos = bisect.bisect_left(section_starts, end) - 1
        if pos >= 0:
            section = sections[pos][1]

        return ChunkMetadata(
            chunk_position=index,
            char_start=start,
            char_end=end,
            page_number=text.count("\f", 0, start) + 1 if paged else None,
            section=section,
            has_table=bool(TABLE_PATTERN.search(piece)),
            has_amounts=bool(AMOUNT_PATTERN.search(piece)),
            keywords=tuple(extract_keywords(piece, limit=self.config.keyword_limit)),
        )


def iter_chunks(text: str, max_chunk_size: int = 400, overlap: int = 50) -> Iterator[TextChunk]:
    """Lazily split text into chunks."""
    return TextChunker(ChunkConfig(max_chunk_size=max_chunk_size, overlap=overlap)).iter_chunks(text)


def chunk_text(text: str, max_chunk_size: int = 400, overlap: int = 50) -> List[TextChunk]:
    """
    Split text into overlapping chunks.

    Args:
        text: Extracted document text
        max_chunk_size: Maximum characters per chunk
        overlap: Characters shared by consecutive chunks

    Returns:
        List of TextChunk with 0-based, order-preserving indexes

    Example:
        chunks = chunk_text("A" * 1000, 400, 50)
        # 3 chunks: [0, 400), [350, 750), [700, 1000)
    """
    return TextChunker(ChunkConfig(max_chunk_size=max_chunk_size, overlap=overlap)).chunk(text)


def reconstruct_text(chunks: List[TextChunk]) -> str:
    """Stitch chunks back together using their character offsets."""
    parts = []
    covered = 0
    for chunk in chunks:
        skip = max(0, covered - chunk.metadata.char_start)
        parts.append(chunk.text[skip:])
        covered = max(covered, chunk.metadata.char_end)
    return "".join(parts)
