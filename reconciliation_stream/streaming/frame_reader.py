"""SSE framing for chunked HTTP bodies.

Turns an arbitrarily fragmented byte stream into complete SSE blocks:
- Incremental UTF-8 decoding (multi-byte characters may straddle chunks)
- CRLF normalisation
- Blank-line delimiting with a retained partial tail
- Final flush for a last block that has no trailing delimiter
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from typing import Optional

LOGGER = logging.getLogger(__name__)

BLOCK_DELIMITER = "\n\n"


@dataclass(frozen=True, slots=True)
class Block:
    """One delimited unit of the event stream."""

    text: str

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n")


class FrameReader:
    """Accumulates decoded chunks and yields complete blocks.

    A block never spans two ``feed`` calls: everything after the last
    delimiter stays in the buffer until more data, or ``flush_final``, arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        """Undelimited text currently held back."""
        return self._buffer

    def feed(self, chunk: bytes) -> list[Block]:
        """Append ``chunk`` and return every block it completed, in order."""
        if not chunk:
            return []
        self._buffer += self._decoder.decode(chunk)
        if "\r" in self._buffer:
            self._buffer = self._buffer.replace("\r\n", "\n")

        segments = self._buffer.split(BLOCK_DELIMITER)
        self._buffer = segments.pop()
        return [Block(segment) for segment in segments if segment.strip()]

    def flush_final(self) -> Optional[Block]:
        """Return the residual buffer as a last block, if it holds anything.

        The upstream format does not guarantee a delimiter after the final
        event, so the tail is treated as complete once the stream has ended.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        residual = self._buffer.replace("\r\n", "\n")
        self._buffer = ""
        if not residual.strip():
            return None
        LOGGER.debug("Flushing %d trailing characters as a final block", len(residual))
        return Block(residual)

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""
