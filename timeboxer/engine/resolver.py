"""
Conflict Resolver.

Assignment lifecycle:

    scheduled --(user)--------------------> completed   (terminal)
    scheduled --(new busy interval)-------> conflicted
    conflicted --(reschedule succeeds)----> scheduled
    conflicted --(no replacement found)---> conflicted  (until a full recalculation)

``resolve_conflicts`` only relabels; ``reschedule`` moves conflicted
assignments into the earliest free slot that fits them whole.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from timeboxer.engine.availability import DEFAULT_ROUNDING_MINUTES, ZoneLike, generate_slots
from timeboxer.engine.conflicts import block_conflicting, block_range, overlaps
from timeboxer.engine.scheduler import EPSILON_HOURS
from timeboxer.models.entities import (
    Assignment,
    AssignmentStatus,
    AvailabilityRule,
    BusyInterval,
    RescheduleResult,
    TimeSlot,
    WorkItem,
)

logger = logging.getLogger(__name__)

DEFAULT_RESCHEDULE_HORIZON_DAYS = 30


def resolve_conflicts(
    assignments: Sequence[Assignment],
    conflicts: Sequence[BusyInterval],
) -> List[Assignment]:
    """
    Relabel non-completed assignments that overlap any conflict interval.

    Returns a new list in the input order; assignments are not mutated.
    """
    resolved: List[Assignment] = []
    for a in assignments:
        if a.status != AssignmentStatus.COMPLETED and any(
            c.is_complete and overlaps(a.start, a.end, c.start, c.end) for c in conflicts
        ):
            if a.status != AssignmentStatus.CONFLICTED:
                logger.info(f"Assignment {a.id} ({a.work_item_name}) is now conflicted")
            resolved.append(replace(a, status=AssignmentStatus.CONFLICTED))
        else:
            resolved.append(a)
    return resolved


def _first_fit(slots: List[TimeSlot], hours: float) -> Optional[TimeSlot]:
    for slot in slots:
        if slot.is_available and slot.duration + EPSILON_HOURS >= hours:
            return slot
    return None


def reschedule(
    assignments: Sequence[Assignment],
    items: Sequence[WorkItem],
    rules: Sequence[AvailabilityRule],
    now: datetime,
    tz: ZoneLike = "UTC",
    busy: Sequence[BusyInterval] = (),
    horizon_days: int = DEFAULT_RESCHEDULE_HORIZON_DAYS,
    rounding_minutes: int = DEFAULT_ROUNDING_MINUTES,
) -> RescheduleResult:
    """
    Move conflicted assignments into fresh slots.

    Algorithm:
    1. Split into conflicted vs. everything else
    2. Regenerate ``horizon_days`` of slots from the rules
    3. Block slots occupied by the other assignments and, when given, slots
       overlapping ``busy`` so a replacement cannot land on the interval
       that caused the conflict
    4. For each conflicted assignment in input order, take the earliest free
       slot at least as long as its duration; the replacement keeps id,
       work item link and priority, and goes back to scheduled
    5. Assignments with no fitting slot are left out of ``assignments`` and
       reported in ``unplaced``

    Args:
        assignments: Current assignments, any status
        items: Work items, used to refresh the denormalized item name
        rules: Availability rules
        now: Current instant
        tz: Timezone for the rules' clock times
        busy: Busy intervals to avoid
        horizon_days: Days of slots to search

    Returns:
        RescheduleResult; ``assignments`` sorted by start
    """
    conflicted = [a for a in assignments if a.status == AssignmentStatus.CONFLICTED]
    others = [a for a in assignments if a.status != AssignmentStatus.CONFLICTED]
    result = RescheduleResult()

    if not conflicted:
        result.assignments = sorted(others, key=lambda a: a.start)
        return result

    names: Dict[str, str] = {item.id: item.name for item in items}

    slots = generate_slots(rules, horizon_days, now, tz, rounding_minutes)
    for a in others:
        block_range(slots, a.start, a.end)
    block_conflicting(slots, busy)

    placed: List[Assignment] = list(others)
    for a in conflicted:
        slot = _first_fit(slots, a.duration)
        if slot is None:
            logger.warning(
                f"No replacement window for conflicted assignment {a.id} "
                f"({a.work_item_name}, {a.duration:.2f}h) within {horizon_days} days"
            )
            result.unplaced.append(a)
            continue

        moved = replace(
            a,
            work_item_name=names.get(a.work_item_id, a.work_item_name),
            start=slot.start,
            end=slot.start + timedelta(hours=a.duration),
            status=AssignmentStatus.SCHEDULED,
        )
        block_range(slots, moved.start, moved.end)
        logger.info(f"Rescheduled {a.id} from {a.start.isoformat()} to {moved.start.isoformat()}")
        placed.append(moved)
        result.moved.append(moved)

    result.assignments = sorted(placed, key=lambda a: a.start)
    return result
