"""
Availability Model.

Materializes recurring weekly availability rules into a finite, time-ordered
list of candidate windows ("slots") over a horizon of days.

Rule clock times are interpreted in a single caller-supplied timezone and
converted to UTC instants straight away; everything downstream (ordering,
overlap tests, durations) works on those instants.

Complexity: O(d * r + s log s) where
    d = horizon days
    r = number of rules
    s = slots emitted
"""

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from timeboxer.models.entities import (
    AvailabilityRule,
    TimeSlot,
    WorkItem,
    WorkItemStatus,
    parse_clock,
)
from timeboxer.models.errors import InputValidationError

logger = logging.getLogger(__name__)

DEFAULT_ROUNDING_MINUTES = 15
DEFAULT_MIN_HORIZON_WEEKS = 8
DEFAULT_HORIZON_MARGIN_WEEKS = 2
SAFETY_HORIZON_DAYS = 365

ZoneLike = Union[str, ZoneInfo, timezone]


def resolve_zone(tz: ZoneLike) -> Union[ZoneInfo, timezone]:
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def ensure_aware(moment: datetime, tz: ZoneLike = "UTC") -> datetime:
    """Attach ``tz`` to a naive datetime; aware datetimes pass through."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=resolve_zone(tz))
    return moment


def weekday_index(day: date) -> int:
    """Weekday with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def round_up(moment: datetime, minutes: int = DEFAULT_ROUNDING_MINUTES) -> datetime:
    """Ceil ``moment`` to the next multiple of ``minutes`` past the hour.

    Seconds and microseconds count: 08:00:30 becomes 08:15, 08:00:00 stays.
    """
    step = timedelta(minutes=minutes)
    hour = moment.replace(minute=0, second=0, microsecond=0)
    elapsed = moment - hour
    steps = -(-elapsed // step)
    return hour + steps * step


def _parse_rule(rule: AvailabilityRule) -> Optional[Tuple[time, time]]:
    try:
        return parse_clock(rule.start_time), parse_clock(rule.end_time)
    except InputValidationError as exc:
        logger.warning(f"Skipping availability rule {rule.id}: {exc}")
        return None


def _occurrence_hours(start: time, end: time) -> float:
    start_min = start.hour * 60 + start.minute + start.second / 60
    end_min = end.hour * 60 + end.minute + end.second / 60
    return max(0.0, (end_min - start_min) / 60)


def generate_slots(
    rules: Sequence[AvailabilityRule],
    horizon_days: int,
    now: datetime,
    tz: ZoneLike = "UTC",
    rounding_minutes: int = DEFAULT_ROUNDING_MINUTES,
) -> List[TimeSlot]:
    """
    Expand weekly rules into dated slots for ``horizon_days`` days from today.

    Algorithm:
    1. For each day 0..horizon_days-1 (local calendar days in ``tz``),
       select the active rules whose weekday set contains that day
    2. Combine the rule's clock times with the day to get absolute instants
    3. Drop occurrences that already ended; clamp ones in progress to
       ``now`` rounded up to the next quarter hour
    4. Drop occurrences left empty (or shorter than the rule's minimum)
    5. Sort by start; ties keep day-then-rule input order

    Args:
        rules: Availability rules (inactive ones are ignored)
        horizon_days: Number of calendar days to expand
        now: Current instant; naive values are read as ``tz`` local time
        tz: Timezone the rules' clock times are expressed in
        rounding_minutes: Granularity used when clamping to ``now``

    Returns:
        Slots with UTC start/end, all available, sorted by start
    """
    zone = resolve_zone(tz)
    now = ensure_aware(now, zone).astimezone(timezone.utc)
    today = now.astimezone(zone).date()

    parsed = []
    for rule in rules:
        if not rule.active:
            continue
        times = _parse_rule(rule)
        if times is not None:
            parsed.append((rule, set(rule.weekdays), times[0], times[1]))

    slots: List[TimeSlot] = []
    for offset in range(max(0, horizon_days)):
        day = today + timedelta(days=offset)
        dow = weekday_index(day)
        for rule, weekdays, start_t, end_t in parsed:
            if dow not in weekdays:
                continue
            start = datetime.combine(day, start_t, tzinfo=zone).astimezone(timezone.utc)
            end = datetime.combine(day, end_t, tzinfo=zone).astimezone(timezone.utc)

            if end <= now:
                continue
            if start < now:
                start = round_up(now, rounding_minutes)
            if start >= end:
                continue
            if rule.min_duration_minutes and end - start < timedelta(minutes=rule.min_duration_minutes):
                continue

            slots.append(TimeSlot(
                start=start,
                end=end,
                duration=(end - start).total_seconds() / 3600,
            ))

    slots.sort(key=lambda s: s.start)
    logger.debug(f"Generated {len(slots)} slots over {horizon_days} days from {len(parsed)} rules")
    return slots


def average_weekly_hours(rules: Iterable[AvailabilityRule]) -> float:
    """Hours a week implied by the active rules (occurrence length x weekday count)."""
    total = 0.0
    for rule in rules:
        if not rule.active:
            continue
        times = _parse_rule(rule)
        if times is None:
            continue
        total += _occurrence_hours(*times) * len(set(rule.weekdays))
    return total


def compute_horizon_days(
    items: Iterable[WorkItem],
    rules: Sequence[AvailabilityRule],
    min_weeks: int = DEFAULT_MIN_HORIZON_WEEKS,
    margin_weeks: int = DEFAULT_HORIZON_MARGIN_WEEKS,
    safety_days: int = SAFETY_HORIZON_DAYS,
) -> int:
    """
    Size the slot horizon from outstanding demand.

    weeks = max(min_weeks, ceil(outstanding / weekly) + margin_weeks), with a
    weekly capacity of zero replaced by 1. The result is capped at
    ``safety_days``, which bounds the run when demand can never be met.
    """
    outstanding = sum(
        max(0.0, item.estimated_hours)
        for item in items
        if item.status != WorkItemStatus.COMPLETED
    )
    weekly = average_weekly_hours(rules)
    if weekly <= 0:
        weekly = 1.0
    weeks = max(min_weeks, math.ceil(outstanding / weekly) + margin_weeks)
    return min(weeks * 7, safety_days)
