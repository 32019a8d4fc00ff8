"""
Reading-progress comparison.

Chapter dominates block: chapter 3 block 0 is further than chapter 1
block 100. These helpers are pure and total; they accept None for
"no progress recorded" and never raise.
"""

from __future__ import annotations

from typing import Optional

from .models import ArchiveProgress, ReadingPosition


def _ordinal(position: ReadingPosition) -> tuple[int, int]:
    return (position.chapter_index or 0, position.block_index)


def is_position_further(
    a: Optional[ReadingPosition], b: Optional[ReadingPosition]
) -> bool:
    """True if ``a`` is strictly further into the document than ``b``."""
    if a is None:
        return False
    if b is None:
        return True
    return _ordinal(a) > _ordinal(b)


def _tiebreak(position: ReadingPosition) -> tuple[int, int, int, int]:
    return (
        position.timestamp,
        position.char_offset,
        position.sentence_index or 0,
        position.word_index or 0,
    )


def further_position(
    a: Optional[ReadingPosition], b: Optional[ReadingPosition]
) -> Optional[ReadingPosition]:
    """Return the further of two positions.

    On an exact chapter/block tie the newer timestamp wins, then the
    larger character offset, sentence and word index. Argument order
    never changes the winner.
    """
    if a is None:
        return b
    if b is None:
        return a
    if is_position_further(a, b):
        return a
    if is_position_further(b, a):
        return b
    return b if _tiebreak(b) > _tiebreak(a) else a


def further_progress(
    a: Optional[ArchiveProgress], b: Optional[ArchiveProgress]
) -> Optional[ArchiveProgress]:
    """Higher percentage wins; a tie keeps ``a``."""
    if a is None:
        return b
    if b is None:
        return a
    return a if (a.percent or 0) >= (b.percent or 0) else b
