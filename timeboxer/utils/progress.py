from datetime import datetime
from typing import Dict, Optional, Sequence, Tuple

from timeboxer.models.entities import Assignment, AssignmentStatus, WorkItem


def item_date_range(item_id: str, assignments: Sequence[Assignment]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """First start and last end of an item's non-conflicted assignments."""
    own = [a for a in assignments if a.work_item_id == item_id and a.status != AssignmentStatus.CONFLICTED]
    if not own:
        return None, None
    return min(a.start for a in own), max(a.end for a in own)


def scheduled_hours(item_id: str, assignments: Sequence[Assignment]) -> float:
    return sum(
        a.duration for a in assignments
        if a.work_item_id == item_id and a.status != AssignmentStatus.CONFLICTED
    )


def completed_hours(item_id: str, assignments: Sequence[Assignment]) -> float:
    return sum(
        a.duration for a in assignments
        if a.work_item_id == item_id and a.status == AssignmentStatus.COMPLETED
    )


def remaining_hours(items: Sequence[WorkItem], assignments: Sequence[Assignment]) -> Dict[str, float]:
    """Hours of each item not covered by a scheduled or completed assignment."""
    return {
        item.id: max(0.0, item.estimated_hours - scheduled_hours(item.id, assignments))
        for item in items
    }


def progress_percent(item: WorkItem, assignments: Sequence[Assignment]) -> float:
    """Completed hours as a percentage of the estimate, capped at 100. Items estimated at 0h report 0."""
    if item.estimated_hours <= 0:
        return 0.0
    return min(100.0, completed_hours(item.id, assignments) / item.estimated_hours * 100)
