"""
External conflict blocking.

All overlap checks in the engine use the half-open test
``start1 < end2 and start2 < end1``: touching endpoints do not overlap.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Sequence

from timeboxer.models.entities import BusyInterval, TimeSlot

logger = logging.getLogger(__name__)


def overlaps(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Check if two half-open windows intersect. O(1)."""
    return start1 < end2 and start2 < end1


def has_conflict(start: datetime, end: datetime, busy: Iterable[BusyInterval]) -> bool:
    """True if ``[start, end)`` overlaps any complete busy interval."""
    for interval in busy:
        if not interval.is_complete:
            continue
        if overlaps(start, end, interval.start, interval.end):
            logger.debug(
                f"Conflict between {start.isoformat()}-{end.isoformat()} and busy "
                f"{interval.start.isoformat()}-{interval.end.isoformat()}"
            )
            return True
    return False


def block_conflicting(slots: List[TimeSlot], busy: Sequence[BusyInterval]) -> None:
    """
    Mark every available slot that overlaps a busy interval as unavailable.

    Mutates ``slots`` in place. Busy intervals missing an endpoint are
    ignored. Blocking is monotonic, so repeated calls with the same busy
    list leave the same state as a single call.

    Complexity: O(s * b)
    """
    if not busy:
        return
    for slot in slots:
        if not slot.is_available:
            continue
        for interval in busy:
            if not interval.is_complete:
                continue
            if overlaps(slot.start, slot.end, interval.start, interval.end):
                logger.debug(f"Blocking slot {slot.start.isoformat()}-{slot.end.isoformat()}")
                slot.block()
                break


def block_range(slots: List[TimeSlot], start: datetime, end: datetime) -> None:
    """Mark available slots overlapping ``[start, end)`` as unavailable."""
    for slot in slots:
        if slot.is_available and overlaps(start, end, slot.start, slot.end):
            slot.block()
