from dataclasses import dataclass, field
from datetime import datetime, time
from enum import Enum
from typing import Dict, List, Optional, Tuple

from timeboxer.models.errors import InputValidationError


class WorkItemStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"


class AssignmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CONFLICTED = "conflicted"


@dataclass(frozen=True)
class WorkItem:
    id: str
    name: str
    estimated_hours: float
    priority: int  # 1 = highest
    status: WorkItemStatus = WorkItemStatus.PENDING
    description: Optional[str] = None


@dataclass(frozen=True)
class AvailabilityRule:
    id: str
    name: str
    weekdays: Tuple[int, ...]  # 0 = Sunday ... 6 = Saturday
    start_time: str  # "HH:MM" local clock time
    end_time: str
    active: bool = True
    min_duration_minutes: Optional[int] = None


@dataclass
class TimeSlot:
    """One dated occurrence of a rule. Ephemeral: rebuilt on every pass."""
    start: datetime
    end: datetime
    duration: float  # hours
    is_available: bool = True

    def block(self) -> None:
        # Never reinstated within a pass.
        self.is_available = False


@dataclass(frozen=True)
class BusyInterval:
    start: Optional[datetime]
    end: Optional[datetime]

    @property
    def is_complete(self) -> bool:
        return self.start is not None and self.end is not None


@dataclass(frozen=True)
class Assignment:
    id: str
    work_item_id: str
    work_item_name: str
    start: datetime
    end: datetime
    duration: float  # hours
    status: AssignmentStatus
    priority: int
    color: Optional[str] = None
    external_event_id: Optional[str] = None


@dataclass
class ScheduleResult:
    assignments: List[Assignment] = field(default_factory=list)
    unscheduled: Dict[str, float] = field(default_factory=dict)  # work item id -> unmet hours
    horizon_days: int = 0
    slots_generated: int = 0
    slots_blocked: int = 0

    @property
    def fully_scheduled(self) -> bool:
        return not self.unscheduled


@dataclass
class RescheduleResult:
    assignments: List[Assignment] = field(default_factory=list)
    moved: List[Assignment] = field(default_factory=list)
    unplaced: List[Assignment] = field(default_factory=list)


def parse_clock(value: str) -> time:
    """Parse "HH:MM" (or "HH:MM:SS", as databases return it) into a time."""
    if not isinstance(value, str):
        raise InputValidationError(f"time must be a string, got {value!r}")
    parts = value.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise InputValidationError(f"malformed time {value!r}, expected HH:MM")
    hours, minutes = int(parts[0]), int(parts[1])
    seconds = int(parts[2]) if len(parts) == 3 else 0
    if not (0 <= hours <= 23 and 0 <= minutes <= 59 and 0 <= seconds <= 59):
        raise InputValidationError(f"time out of range: {value!r}")
    return time(hours, minutes, seconds)
