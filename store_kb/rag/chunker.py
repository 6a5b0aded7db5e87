"""Boundary-aware text chunking with word-bounded overlap.

Text is cut at the last paragraph break that fits, then the last sentence
end, then the last whitespace. Unbroken runs longer than the chunk size are
cut hard. Every chunk after the first starts with the tail of the previous
one so context is not lost at a cut.
"""

import math
import re

from ..errors import ConfigurationError
from .models import ChunkDraft

_HORIZONTAL_SPACE = re.compile(r"[ \t\f\v]+")
_EXTRA_NEWLINES = re.compile(r"\n{3,}")
_SENTENCE_END = ".!?"

# Paragraph and sentence cuts are not accepted in the first quarter of the window
_MIN_BOUNDARY_FRACTION = 0.25


def normalize_text(text: str) -> str:
    """Collapse whitespace while keeping paragraph breaks."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_HORIZONTAL_SPACE.sub(" ", line).strip() for line in text.split("\n")]
    return _EXTRA_NEWLINES.sub("\n\n", "\n".join(lines)).strip()


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return math.ceil(len(text) / 4)


class ChunkingStrategy:
    """Split document bodies into ordered, bounded-size chunks."""

    def chunk(self, body: str, content_type: str, max_chunk_chars: int, overlap_chars: int = 0) -> list[ChunkDraft]:
        """Split a body into chunk drafts.

        Args:
            body: Plain-text document body
            content_type: Content type of the document (kept for per-type strategies)
            max_chunk_chars: Upper bound for the length of every chunk, overlap included
            overlap_chars: Characters of the previous chunk repeated at the start of the next

        Returns:
            Drafts in document order with ``total_chunks`` stamped on each.
            An empty or whitespace-only body yields an empty list.
        """
        if max_chunk_chars < 1:
            raise ConfigurationError(f"max_chunk_chars must be positive, got {max_chunk_chars}")
        if overlap_chars < 0 or overlap_chars * 2 > max_chunk_chars:
            raise ConfigurationError(
                f"overlap_chars must be between 0 and 50% of max_chunk_chars ({max_chunk_chars}), got {overlap_chars}"
            )

        text = normalize_text(body)
        if not text:
            return []

        pieces = self._split(text, max_chunk_chars, max_chunk_chars - overlap_chars)

        texts = [pieces[0]]
        for previous, piece in zip(pieces, pieces[1:]):
            overlap = self._extract_overlap(previous, overlap_chars - 1) if overlap_chars > 1 else ""
            texts.append(f"{overlap} {piece}" if overlap else piece)

        total = len(texts)
        return [
            ChunkDraft(text=chunk_text, chunk_index=index, total_chunks=total, word_count=len(chunk_text.split()))
            for index, chunk_text in enumerate(texts)
        ]

    def _split(self, text: str, first_limit: int, limit: int) -> list[str]:
        """Cut text into pieces; the first may use the full size, later ones leave room for overlap."""
        pieces = []
        pos = 0
        length = len(text)
        while pos < length:
            while pos < length and text[pos].isspace():
                pos += 1
            if pos >= length:
                break

            window = first_limit if not pieces else limit
            end = pos + window
            cut = length if end >= length else self._find_boundary(text, pos, end)

            piece = text[pos:cut].strip()
            if piece:
                pieces.append(piece)
            pos = cut
        return pieces

    @staticmethod
    def _find_boundary(text: str, start: int, end: int) -> int:
        """Return the best cut position in ``(start, end]``."""
        floor = start + max(1, int((end - start) * _MIN_BOUNDARY_FRACTION))

        # Paragraph break
        for i in range(end - 1, floor - 1, -1):
            if text[i] == "\n" and text[i - 1] == "\n":
                return i - 1

        # Sentence end followed by whitespace
        for i in range(end - 1, floor - 1, -1):
            if text[i] in _SENTENCE_END and text[i + 1].isspace():
                return i + 1

        # Any whitespace
        for i in range(end, start, -1):
            if text[i].isspace():
                return i

        # Unbroken run
        return end

    @staticmethod
    def _extract_overlap(previous: str, size: int) -> str:
        """Tail of ``previous`` of at most ``size`` characters, starting on a word."""
        if size <= 0:
            return ""
        if len(previous) <= size:
            return previous
        tail = previous[-size:]
        if not previous[-size - 1].isspace():
            space = next((i for i, char in enumerate(tail) if char.isspace()), -1)
            if space == -1:
                return ""
            tail = tail[space + 1 :]
        return tail.strip()
