"""
Text chunking for knowledge entries, memories and documents.

Chunks are character windows sized in estimated tokens. A window ends on a paragraph or
sentence boundary when the method prefers one, otherwise on whitespace, and only splits
inside a word when the window holds no whitespace at all. Consecutive chunks overlap and
never leave a gap, so every input character is covered.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from ..models.core import ContentType
from ..utils.config import ChunkingConfig, ChunkProfile
from ..utils.config import config as app_config
from ..utils.exceptions import InputError
from ..utils.logging_config import get_logger

logger = get_logger(__name__)

CHUNK_METHODS = ('paragraph', 'sentence', 'sliding')

SENTENCE_END = re.compile(r'[.!?]["\')\]]*\s+')
PARAGRAPH_BREAK = re.compile(r'\n\s*\n')


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass
class ChunkConfig:
    chunk_size: int
    overlap: int
    min_chunk_length: int = 0
    method: str = 'sliding'
    chars_per_token: int = 4

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise InputError(f'chunk_size must be positive, got {self.chunk_size}')
        if self.overlap < 0 or self.overlap >= self.chunk_size:
            raise InputError(f'overlap must be in [0, chunk_size), got {self.overlap}')
        if self.chars_per_token <= 0:
            raise InputError(f'chars_per_token must be positive, got {self.chars_per_token}')
        if self.method not in CHUNK_METHODS:
            raise InputError(f'Unknown chunking method: {self.method}')

    @classmethod
    def from_profile(cls, profile: ChunkProfile) -> 'ChunkConfig':
        return cls(chunk_size=profile.chunk_size,
                   overlap=profile.overlap,
                   min_chunk_length=profile.min_chunk_length,
                   method=profile.method)


def get_chunk_config(content_type: ContentType, chunking: Optional[ChunkingConfig] = None) -> ChunkConfig:
    """Chunk profile for a content type."""
    chunking = chunking or app_config.chunking
    profile = getattr(chunking, ContentType(content_type).value)
    return ChunkConfig.from_profile(profile)


@dataclass
class TextChunk:
    text: str
    index: int
    start: int
    end: int


def _last_match_end(pattern: re.Pattern, text: str, lo: int, hi: int) -> Optional[int]:
    found = None
    for match in pattern.finditer(text, lo, hi):
        found = match.end()
    return found


def _window_end(text: str, start: int, end: int, method: str) -> int:
    """Move a window end back to the best boundary inside (start, end]."""
    half = start + (end - start) // 2

    if method == 'paragraph':
        boundary = _last_match_end(PARAGRAPH_BREAK, text, half, end)
        if boundary and boundary > half:
            return boundary
    if method in ('paragraph', 'sentence'):
        boundary = _last_match_end(SENTENCE_END, text, half, end)
        if boundary and boundary > half:
            return boundary

    if text[end - 1].isspace() or text[end].isspace():
        return end

    for ws in range(end - 1, start, -1):
        if text[ws].isspace():
            return ws + 1

    # No whitespace in the window
    return end


def _iter_chunks(text: str, config: ChunkConfig) -> Iterator[TextChunk]:
    n = len(text)
    if not text.strip():
        return

    window = config.chunk_size * config.chars_per_token
    overlap = config.overlap * config.chars_per_token

    if n <= window or len(text.strip()) < config.min_chunk_length:
        yield TextChunk(text=text, index=0, start=0, end=n)
        return

    start = 0
    index = 0
    while start < n:
        end = min(start + window, n)
        if end < n:
            end = _window_end(text, start, end, config.method)
            if n - end < config.min_chunk_length:
                end = n

        yield TextChunk(text=text[start:end], index=index, start=start, end=end)
        index += 1
        if end >= n:
            return

        next_start = max(end - overlap, start + 1)
        while next_start < end and not text[next_start - 1].isspace() and not text[next_start].isspace():
            next_start += 1
        while next_start < end and text[next_start].isspace():
            next_start += 1
        start = next_start


class ChunkSequence:
    """Lazy, restartable sequence of chunks; each iteration re-runs the chunker."""

    def __init__(self, text: str, config: ChunkConfig):
        config.validate()
        self.text = text
        self.config = config

    def __iter__(self) -> Iterator[TextChunk]:
        return _iter_chunks(self.text, self.config)


def chunk_text(text: str, config: ChunkConfig) -> ChunkSequence:
    """
    Split text into overlapping chunks.

    Args:
        text: Source text
        config: Chunk sizing parameters

    Returns:
        Restartable iterable of TextChunk; empty for blank input

    Raises:
        InputError: If the config is invalid
    """
    return ChunkSequence(text, config)


def chunk_source(text: str, content_type: ContentType, chunking: Optional[ChunkingConfig] = None) -> List[TextChunk]:
    """Chunk source text with its content type profile; blank text is an error."""
    chunks = list(chunk_text(text, get_chunk_config(content_type, chunking)))
    if not chunks:
        raise InputError('No chunks created')
    logger.debug(f'Created {len(chunks)} {ContentType(content_type).value} chunks from {len(text)} characters')
    return chunks


def validate_chunks(chunks: List[TextChunk]) -> Dict[str, Any]:
    """Report empty and duplicate chunks."""
    issues = []
    seen = set()
    for chunk in chunks:
        if not chunk.text.strip():
            issues.append(f'Chunk {chunk.index} is empty')
        if chunk.text in seen:
            issues.append(f'Chunk {chunk.index} duplicates an earlier chunk')
        seen.add(chunk.text)
    return {'valid': not issues, 'issues': issues, 'chunk_count': len(chunks)}
