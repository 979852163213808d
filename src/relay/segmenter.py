"""
Incremental sentence segmentation for streamed LLM output.

Completion fragments arrive with arbitrary boundaries (mid-word, mid-sentence).
The segmenter buffers them and hands back speakable sentence units as soon as
a boundary is seen, so TTS can start on the first sentence while the model is
still generating the rest.

Boundary rule: the first `.`, `!` or `?` that is immediately followed by
whitespace or by the end of the buffer. Units keep their surrounding
whitespace exactly as it arrived; only the end-of-stream flush looks at
stripped text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional

SENTENCE_ENDINGS = frozenset(".!?")


@dataclass(frozen=True)
class SentenceUnit:
    """A complete, speakable slice of the reply."""

    text: str
    last: bool = True

    def __str__(self) -> str:
        return self.text


class SentenceSegmenter:
    """
    Accumulate streamed text and split it into sentence units.

    One instance per completion stream. The only state is the unconsumed
    suffix of the stream plus the offset up to which it has already been
    scanned without finding a boundary.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._scanned = 0

    @property
    def pending(self) -> str:
        """Text received but not yet emitted."""
        return self._buffer

    def feed(self, chunk: str) -> List[SentenceUnit]:
        """
        Append a fragment and return every sentence it completed.

        Args:
            chunk: Next fragment from the completion stream

        Returns:
            Completed units in stream order (possibly empty)
        """
        if not chunk:
            return []

        self._buffer += chunk
        units: List[SentenceUnit] = []

        while True:
            end = self._find_boundary()
            if end is None:
                break
            units.append(SentenceUnit(self._buffer[:end]))
            self._buffer = self._buffer[end:]
            self._scanned = 0

        return units

    def finish(self) -> Optional[SentenceUnit]:
        """
        Flush the remaining buffer once the source stream has ended.

        Returns:
            The whole remainder as a final unit, or None if it is blank
        """
        remainder = self._buffer
        self._buffer = ""
        self._scanned = 0
        if not remainder.strip():
            return None
        return SentenceUnit(remainder)

    def _find_boundary(self) -> Optional[int]:
        """Return the end offset of the first sentence in the buffer, if any."""
        buffer = self._buffer
        size = len(buffer)
        for i in range(self._scanned, size):
            if buffer[i] not in SENTENCE_ENDINGS:
                continue
            # Punctuation at the very end counts as a boundary, so anything
            # before `size` that is left behind is permanently non-terminal.
            if i + 1 == size or buffer[i + 1].isspace():
                return i + 1
        self._scanned = size
        return None


async def segment_stream(fragments: AsyncIterable[str]) -> AsyncIterator[SentenceUnit]:
    """
    Lazily turn an async fragment stream into sentence units.

    Each unit is yielded as soon as its boundary arrives; the flush unit, if
    any, is yielded after the source is exhausted. Errors raised by the source
    propagate unchanged and the incomplete tail is dropped.
    """
    segmenter = SentenceSegmenter()
    async for fragment in fragments:
        for unit in segmenter.feed(fragment):
            yield unit
    tail = segmenter.finish()
    if tail is not None:
        yield tail
