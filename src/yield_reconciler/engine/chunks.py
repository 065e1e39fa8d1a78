"""Bounded block ranges between a cursor and the chain head."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range ``[start, end]``."""

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def iter_block_ranges(cursor: int, head: int, chunk_size: int) -> Iterator[BlockRange]:
    """Yield consecutive ranges covering ``(cursor, head]``, each at most ``chunk_size`` blocks.

    Lazy: a caller that only wants one chunk per pass takes the first item.
    Yields nothing when ``cursor >= head``.
    """
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    last = cursor
    while last < head:
        end = min(last + chunk_size, head)
        yield BlockRange(last + 1, end)
        last = end
