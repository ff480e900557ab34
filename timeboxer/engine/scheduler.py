"""
Priority Scheduler.

Greedy, priority-ordered allocation of work-item hour budgets onto
availability slots ("bin packing" across time). Not optimal: each item takes
the earliest free slots before the next item is considered.

Algorithm:
1. Drop completed items; stable-sort the rest by priority (1 first)
2. For each item, walk the slots in start order, skipping unavailable ones
3. Take min(slot duration, remaining hours) from the front of the slot
4. Re-check that window against the busy intervals at commit time; on a hit,
   block the slot and move on without consuming hours
5. Commit an assignment and block the whole slot, plus any other slot
   overlapping the committed window. A slot is never shared between two
   items in one pass
6. Whatever an item could not place is reported in ``unscheduled``

Complexity: O(n log n + n * s * b) where
    n = work items
    s = slots
    b = busy intervals (commit-time re-check)

Deterministic: the same items, slots and busy intervals always produce the
same assignment list, ids included.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Sequence

from timeboxer.engine.availability import (
    DEFAULT_HORIZON_MARGIN_WEEKS,
    DEFAULT_MIN_HORIZON_WEEKS,
    DEFAULT_ROUNDING_MINUTES,
    SAFETY_HORIZON_DAYS,
    ZoneLike,
    compute_horizon_days,
    generate_slots,
)
from timeboxer.engine.conflicts import block_conflicting, block_range, has_conflict
from timeboxer.models.entities import (
    Assignment,
    AssignmentStatus,
    AvailabilityRule,
    BusyInterval,
    ScheduleResult,
    TimeSlot,
    WorkItem,
    WorkItemStatus,
)
from timeboxer.utils.progress import completed_hours

logger = logging.getLogger(__name__)

# Float tolerance for hour arithmetic (about 4 ms)
EPSILON_HOURS = 1e-6

PALETTE = (
    "#3B82F6", "#10B981", "#8B5CF6", "#F59E0B",
    "#EF4444", "#06B6D4", "#84CC16", "#F97316",
)


def item_color(item_id: str) -> str:
    """Stable display color keyed on the last character of the id."""
    last = str(item_id)[-1:]
    index = int(last) if last.isdigit() else 0
    return PALETTE[index % len(PALETTE)]


def prioritize(items: Sequence[WorkItem]) -> List[WorkItem]:
    """Non-completed items, ascending priority, input order kept for ties."""
    active = [i for i in items if i.status != WorkItemStatus.COMPLETED]
    return sorted(active, key=lambda i: i.priority)


def outstanding_items(items: Sequence[WorkItem], completed: Sequence[Assignment]) -> List[WorkItem]:
    """Items with the hours of their completed assignments taken off the estimate."""
    if not completed:
        return list(items)
    return [
        replace(item, estimated_hours=max(0.0, item.estimated_hours - completed_hours(item.id, completed)))
        for item in items
    ]


def schedule(
    items: Sequence[WorkItem],
    slots: List[TimeSlot],
    busy: Sequence[BusyInterval] = (),
) -> ScheduleResult:
    """
    Allocate item hours onto ``slots`` in priority order.

    Args:
        items: Work items; completed ones are ignored
        slots: Slots sorted by start. Mutated: used and conflicting slots are
            marked unavailable
        busy: Busy intervals for the commit-time re-check

    Returns:
        ScheduleResult with assignments in creation order and the unmet
        remainder per item
    """
    result = ScheduleResult(slots_generated=len(slots))

    for item in prioritize(items):
        remaining = max(0.0, item.estimated_hours)
        if item.estimated_hours < 0:
            logger.warning(f"Work item {item.id} has negative hours; treating as 0")

        for slot in slots:
            if remaining <= EPSILON_HOURS:
                break
            if not slot.is_available:
                continue

            take = min(slot.duration, remaining)
            start = slot.start
            end = start + timedelta(hours=take)

            if has_conflict(start, end, busy):
                logger.debug(f"Skipping slot {start.isoformat()} for {item.name}: busy at commit time")
                slot.block()
                result.slots_blocked += 1
                continue

            result.assignments.append(Assignment(
                id=f"{item.id}-{len(result.assignments)}",
                work_item_id=item.id,
                work_item_name=item.name,
                start=start,
                end=end,
                duration=take,
                status=AssignmentStatus.SCHEDULED,
                priority=item.priority,
                color=item_color(item.id),
            ))
            remaining -= take
            slot.block()
            # Overlapping rules yield overlapping slots; one person, one window at a time
            block_range(slots, start, end)

        if remaining > EPSILON_HOURS:
            result.unscheduled[item.id] = remaining
            logger.warning(f"Work item {item.name} ({item.id}): {remaining:.2f}h could not be scheduled")

    return result


def generate_schedule(
    items: Sequence[WorkItem],
    rules: Sequence[AvailabilityRule],
    busy: Sequence[BusyInterval],
    now: datetime,
    tz: ZoneLike = "UTC",
    rounding_minutes: int = DEFAULT_ROUNDING_MINUTES,
    min_horizon_weeks: int = DEFAULT_MIN_HORIZON_WEEKS,
    horizon_margin_weeks: int = DEFAULT_HORIZON_MARGIN_WEEKS,
    safety_horizon_days: int = SAFETY_HORIZON_DAYS,
    completed: Sequence[Assignment] = (),
) -> ScheduleResult:
    """
    Full pass from scratch: horizon -> slots -> blocking -> allocation.

    ``completed`` assignments are kept as they are: their hours count against
    their item's estimate and their windows are not handed out again.
    """
    items = outstanding_items(items, completed)
    horizon = compute_horizon_days(
        items, rules,
        min_weeks=min_horizon_weeks,
        margin_weeks=horizon_margin_weeks,
        safety_days=safety_horizon_days,
    )
    slots = generate_slots(rules, horizon, now, tz, rounding_minutes)

    block_conflicting(slots, busy)
    blocked_up_front = sum(1 for s in slots if not s.is_available)
    for done in completed:
        block_range(slots, done.start, done.end)
    logger.info(
        f"{len(slots) - blocked_up_front}/{len(slots)} slots available over {horizon} days "
        f"after blocking {len(busy)} busy intervals"
    )

    result = schedule(items, slots, busy)
    result.horizon_days = horizon
    result.slots_blocked += blocked_up_front
    logger.info(
        f"Scheduled {len(result.assignments)} assignments; "
        f"{len(result.unscheduled)} items with unmet hours"
    )
    return result
