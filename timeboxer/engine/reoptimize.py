from datetime import datetime
from typing import Sequence

from timeboxer.engine.availability import ZoneLike
from timeboxer.engine.resolver import DEFAULT_RESCHEDULE_HORIZON_DAYS, reschedule, resolve_conflicts
from timeboxer.models.entities import (
    Assignment,
    AvailabilityRule,
    BusyInterval,
    RescheduleResult,
    WorkItem,
)


def reoptimize(
    existing: Sequence[Assignment],
    items: Sequence[WorkItem],
    rules: Sequence[AvailabilityRule],
    new_busy: Sequence[BusyInterval],
    now: datetime,
    tz: ZoneLike = "UTC",
    horizon_days: int = DEFAULT_RESCHEDULE_HORIZON_DAYS,
) -> RescheduleResult:
    """
    Incremental repair: relabel what ``new_busy`` invalidates, then move only
    those assignments. Everything else keeps its window.

    A full rebuild goes through ``generate_schedule`` instead; this path is
    for targeted correction when busy intervals are pushed in.
    """
    resolved = resolve_conflicts(existing, new_busy)
    return reschedule(resolved, items, rules, now, tz, busy=new_busy, horizon_days=horizon_days)
