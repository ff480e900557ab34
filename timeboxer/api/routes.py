import logging
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from timeboxer.config.settings import Settings, get_settings
from timeboxer.engine.scheduler import generate_schedule
from timeboxer.models.entities import (
    Assignment,
    AssignmentStatus,
    AvailabilityRule,
    BusyInterval,
    WorkItem,
    WorkItemStatus,
    parse_clock,
)
from timeboxer.models.errors import InputValidationError, PersistenceFailure, RecalculationInProgress
from timeboxer.storage.database import SessionLocal, get_db
from timeboxer.storage.guard import RecalculationGuard
from timeboxer.storage.repositories import (
    AssignmentRepository,
    AvailabilityRuleRepository,
    WorkItemRepository,
)
from timeboxer.sync.calendar import CalendarProvider, build_provider
from timeboxer.sync.recalculation import (
    RecalculationReport,
    RepairReport,
    ScheduleService,
    run_triggered_recalculation,
)
from timeboxer.utils.progress import completed_hours, item_date_range, progress_percent, remaining_hours

router = APIRouter()
logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------

def get_session_factory():
    return SessionLocal


@lru_cache(maxsize=1)
def get_provider() -> CalendarProvider:
    return build_provider(get_settings())


@lru_cache(maxsize=1)
def get_guard() -> RecalculationGuard:
    return RecalculationGuard()


# ----------------------------------------------------------------------
# DTOs
# ----------------------------------------------------------------------

def _check_clock(value: str) -> str:
    try:
        parse_clock(value)
    except InputValidationError as exc:
        raise ValueError(str(exc)) from exc
    return value


def _check_zone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown timezone {value!r}") from exc
    return value


class WorkItemCreate(BaseModel):
    name: str = Field(..., min_length=1)
    estimated_hours: float = Field(..., ge=0)
    priority: Optional[int] = Field(None, ge=1)
    status: WorkItemStatus = WorkItemStatus.PENDING
    description: Optional[str] = None


class WorkItemUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    estimated_hours: Optional[float] = Field(None, ge=0)
    priority: Optional[int] = Field(None, ge=1)
    status: Optional[WorkItemStatus] = None
    description: Optional[str] = None


class WorkItemIn(WorkItemCreate):
    """Work item supplied inline (preview), id included."""
    id: str
    priority: int = Field(..., ge=1)

    def to_domain(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            name=self.name,
            estimated_hours=self.estimated_hours,
            priority=self.priority,
            status=self.status,
            description=self.description,
        )


class WorkItemDTO(BaseModel):
    id: str
    name: str
    estimated_hours: float
    priority: int
    status: WorkItemStatus
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    remaining_hours: float = 0.0
    completed_hours: float = 0.0
    progress: float = 0.0


class ReorderRequest(BaseModel):
    ordered_ids: List[str] = Field(..., min_length=1)


class RuleBase(BaseModel):
    name: str = Field(..., min_length=1)
    weekdays: List[int] = Field(..., min_length=1)
    start_time: str
    end_time: str
    active: bool = True
    min_duration_minutes: Optional[int] = Field(None, ge=1)

    @field_validator("weekdays")
    @classmethod
    def validate_weekdays(cls, v: List[int]):
        """Weekdays are 0 (Sunday) to 6 (Saturday)."""
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("weekdays must be in [0, 6] (0 = Sunday)")
        return sorted(set(v))

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_clock(cls, v: str):
        return _check_clock(v)

    @model_validator(mode="after")
    def validate_window(self):
        if parse_clock(self.start_time) >= parse_clock(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self


class RuleCreate(RuleBase):
    pass


class RuleIn(RuleBase):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    def to_domain(self) -> AvailabilityRule:
        return AvailabilityRule(
            id=self.id,
            name=self.name,
            weekdays=tuple(self.weekdays),
            start_time=self.start_time,
            end_time=self.end_time,
            active=self.active,
            min_duration_minutes=self.min_duration_minutes,
        )


class RuleDTO(RuleIn):
    @classmethod
    def from_domain(cls, r: AvailabilityRule) -> "RuleDTO":
        return cls(
            id=r.id,
            name=r.name,
            weekdays=list(r.weekdays),
            start_time=r.start_time,
            end_time=r.end_time,
            active=r.active,
            min_duration_minutes=r.min_duration_minutes,
        )


class BusyIntervalDTO(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def to_domain(self) -> BusyInterval:
        return BusyInterval(start=_utc(self.start), end=_utc(self.end))


class AssignmentDTO(BaseModel):
    id: str
    work_item_id: str
    work_item_name: str
    start: datetime
    end: datetime
    duration_hours: float
    status: AssignmentStatus
    priority: int
    color: Optional[str] = None

    @classmethod
    def from_domain(cls, a: Assignment) -> "AssignmentDTO":
        return cls(
            id=a.id,
            work_item_id=a.work_item_id,
            work_item_name=a.work_item_name,
            start=a.start,
            end=a.end,
            duration_hours=a.duration,
            status=a.status,
            priority=a.priority,
            color=a.color,
        )


class PreviewRequest(BaseModel):
    items: List[WorkItemIn]
    rules: List[RuleIn]
    busy: List[BusyIntervalDTO] = []
    now: Optional[datetime] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: Optional[str]):
        return _check_zone(v)


class PreviewResponse(BaseModel):
    assignments: List[AssignmentDTO]
    unscheduled: Dict[str, float]
    fully_scheduled: bool
    horizon_days: int
    slots_blocked: int


class SyncCountsDTO(BaseModel):
    succeeded: int
    failed: int


class RecalculationResponse(BaseModel):
    assignments_created: int
    conflicts_avoided: int
    slots_blocked: int
    horizon_days: int
    unscheduled: Dict[str, float]
    fully_scheduled: bool
    events_deleted: SyncCountsDTO
    events_created: SyncCountsDTO

    @classmethod
    def from_report(cls, report: RecalculationReport) -> "RecalculationResponse":
        return cls(
            assignments_created=report.assignments_created,
            conflicts_avoided=report.conflicts_avoided,
            slots_blocked=report.slots_blocked,
            horizon_days=report.horizon_days,
            unscheduled=report.unscheduled,
            fully_scheduled=report.fully_scheduled,
            events_deleted=SyncCountsDTO(**vars(report.events_deleted)),
            events_created=SyncCountsDTO(**vars(report.events_created)),
        )


class ResolveConflictsRequest(BaseModel):
    busy: List[BusyIntervalDTO] = Field(..., min_length=1)
    now: Optional[datetime] = None


class RepairResponse(BaseModel):
    conflicted: int
    moved: List[str]
    unplaced: List[str]
    events_deleted: SyncCountsDTO
    events_created: SyncCountsDTO

    @classmethod
    def from_report(cls, report: RepairReport) -> "RepairResponse":
        return cls(
            conflicted=report.conflicted,
            moved=report.moved,
            unplaced=report.unplaced,
            events_deleted=SyncCountsDTO(**vars(report.events_deleted)),
            events_created=SyncCountsDTO(**vars(report.events_created)),
        )


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive datetimes from clients are taken as UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _trigger(background: BackgroundTasks, session_factory, provider, guard, settings: Settings) -> None:
    if settings.auto_recalculate:
        background.add_task(run_triggered_recalculation, session_factory, provider, guard, settings)


def _item_dto(item: WorkItem, assignments: List[Assignment]) -> WorkItemDTO:
    start, end = item_date_range(item.id, assignments)
    return WorkItemDTO(
        id=item.id,
        name=item.name,
        estimated_hours=item.estimated_hours,
        priority=item.priority,
        status=item.status,
        description=item.description,
        start_date=start,
        end_date=end,
        remaining_hours=remaining_hours([item], assignments)[item.id],
        completed_hours=completed_hours(item.id, assignments),
        progress=progress_percent(item, assignments),
    )


# ----------------------------------------------------------------------
# Work items
# ----------------------------------------------------------------------

@router.get("/work-items", response_model=List[WorkItemDTO], summary="List work items by priority")
def list_work_items(db: Session = Depends(get_db)):
    items = WorkItemRepository(db).list_all()
    assignments = AssignmentRepository(db).list_all()
    return [_item_dto(item, assignments) for item in items]


@router.post("/work-items", response_model=WorkItemDTO, status_code=201, summary="Create work item")
def create_work_item(
    req: WorkItemCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    """Create a work item. Without an explicit priority it goes to the end of the queue."""
    repo = WorkItemRepository(db)
    item = WorkItem(
        id=str(uuid.uuid4()),
        name=req.name,
        estimated_hours=req.estimated_hours,
        priority=req.priority or repo.next_priority(),
        status=req.status,
        description=req.description,
    )
    repo.save(item)
    logger.info(f"Created work item {item.id} ({item.name}, {item.estimated_hours}h, priority {item.priority})")
    _trigger(background, session_factory, provider, guard, settings)
    return _item_dto(item, [])


@router.put("/work-items/{item_id}", response_model=WorkItemDTO, summary="Update work item")
def update_work_item(
    item_id: str,
    req: WorkItemUpdate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    repo = WorkItemRepository(db)
    item = repo.get_by_id(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Work item {item_id} not found")
    # description may be cleared with null; the other fields are required on the item
    changes = {
        key: value for key, value in req.model_dump(exclude_unset=True).items()
        if value is not None or key == "description"
    }
    updated = WorkItem(**{**vars(item), **changes})
    repo.save(updated)
    _trigger(background, session_factory, provider, guard, settings)
    return _item_dto(updated, AssignmentRepository(db).list_all())


@router.post("/work-items/reorder", response_model=List[WorkItemDTO], summary="Reorder work items")
def reorder_work_items(
    req: ReorderRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    """Priorities become 1..n in the order given (drag-and-drop reordering)."""
    items = WorkItemRepository(db).reorder(req.ordered_ids)
    _trigger(background, session_factory, provider, guard, settings)
    assignments = AssignmentRepository(db).list_all()
    return [_item_dto(item, assignments) for item in items]


@router.delete("/work-items/{item_id}", status_code=204, summary="Delete work item")
def delete_work_item(
    item_id: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    """Delete a work item; calendar events of its pending assignments are removed too."""
    try:
        deleted = ScheduleService(db, provider, settings).delete_work_item(item_id)
    except PersistenceFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    if deleted is None:
        raise HTTPException(status_code=404, detail=f"Work item {item_id} not found")
    _trigger(background, session_factory, provider, guard, settings)


# ----------------------------------------------------------------------
# Availability rules
# ----------------------------------------------------------------------

@router.get("/availability-rules", response_model=List[RuleDTO], summary="List availability rules")
def list_rules(db: Session = Depends(get_db)):
    return [RuleDTO.from_domain(r) for r in AvailabilityRuleRepository(db).list_all()]


@router.post("/availability-rules", response_model=RuleDTO, status_code=201, summary="Create availability rule")
def create_rule(
    req: RuleCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    rule = RuleIn(**req.model_dump()).to_domain()
    AvailabilityRuleRepository(db).save(rule)
    logger.info(f"Created availability rule {rule.id} ({rule.name})")
    _trigger(background, session_factory, provider, guard, settings)
    return RuleDTO.from_domain(rule)


@router.put("/availability-rules/{rule_id}", response_model=RuleDTO, summary="Replace availability rule")
def update_rule(
    rule_id: str,
    req: RuleCreate,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    repo = AvailabilityRuleRepository(db)
    if repo.get_by_id(rule_id) is None:
        raise HTTPException(status_code=404, detail=f"Availability rule {rule_id} not found")
    rule = RuleIn(id=rule_id, **req.model_dump()).to_domain()
    repo.save(rule)
    _trigger(background, session_factory, provider, guard, settings)
    return RuleDTO.from_domain(rule)


@router.delete("/availability-rules/{rule_id}", status_code=204, summary="Delete availability rule")
def delete_rule(
    rule_id: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    if not AvailabilityRuleRepository(db).delete(rule_id):
        raise HTTPException(status_code=404, detail=f"Availability rule {rule_id} not found")
    _trigger(background, session_factory, provider, guard, settings)


# ----------------------------------------------------------------------
# Assignments
# ----------------------------------------------------------------------

@router.get("/assignments", response_model=List[AssignmentDTO], summary="List assignments by start time")
def list_assignments(status: Optional[AssignmentStatus] = None, db: Session = Depends(get_db)):
    assignments = AssignmentRepository(db).list_all()
    if status is not None:
        assignments = [a for a in assignments if a.status == status]
    return [AssignmentDTO.from_domain(a) for a in assignments]


@router.post("/assignments/{assignment_id}/complete", response_model=AssignmentDTO, summary="Mark assignment completed")
def complete_assignment(assignment_id: str, db: Session = Depends(get_db)):
    """Completed assignments are terminal and survive every recalculation."""
    repo = AssignmentRepository(db)
    current = repo.get_by_id(assignment_id)
    if current is None:
        raise HTTPException(status_code=404, detail=f"Assignment {assignment_id} not found")
    if current.status == AssignmentStatus.CONFLICTED:
        raise HTTPException(status_code=409, detail="Conflicted assignments must be rescheduled first")
    return AssignmentDTO.from_domain(repo.mark_completed(assignment_id))


# ----------------------------------------------------------------------
# Scheduling
# ----------------------------------------------------------------------

@router.post("/schedule/preview", response_model=PreviewResponse, summary="Run the engine without persisting")
def preview_schedule(req: PreviewRequest, settings: Settings = Depends(get_settings)):
    """
    Run the full pipeline (slots -> blocking -> priority allocation) on the
    supplied items, rules and busy intervals. Nothing is stored or synced.
    """
    logger.info(f"Preview request: {len(req.items)} items, {len(req.rules)} rules, {len(req.busy)} busy")
    now = _utc(req.now) or datetime.now(timezone.utc)
    result = generate_schedule(
        [i.to_domain() for i in req.items],
        [r.to_domain() for r in req.rules],
        [b.to_domain() for b in req.busy],
        now,
        tz=req.timezone or settings.timezone,
        rounding_minutes=settings.slot_rounding_minutes,
        min_horizon_weeks=settings.min_horizon_weeks,
        horizon_margin_weeks=settings.horizon_margin_weeks,
        safety_horizon_days=settings.safety_horizon_days,
    )
    return PreviewResponse(
        assignments=[AssignmentDTO.from_domain(a) for a in result.assignments],
        unscheduled=result.unscheduled,
        fully_scheduled=result.fully_scheduled,
        horizon_days=result.horizon_days,
        slots_blocked=result.slots_blocked,
    )


@router.post("/schedule/recalculate", response_model=RecalculationResponse, summary="Rebuild the schedule")
def recalculate_schedule(
    db: Session = Depends(get_db),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    """
    Full recalculation: fetch busy intervals, drop every non-completed
    assignment (and its calendar event), rerun the engine from scratch,
    store the result and create calendar events for it.

    **Error Handling:**
    - 409: A recalculation is already running or was just triggered
    - 500: Assignment records could not be written; nothing was synced
    """
    try:
        with guard.hold():
            report = ScheduleService(db, provider, settings).recalculate()
    except RecalculationInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PersistenceFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return RecalculationResponse.from_report(report)


@router.post("/schedule/resolve-conflicts", response_model=RepairResponse, summary="Repair conflicted assignments")
def resolve_conflicts_endpoint(
    req: ResolveConflictsRequest,
    db: Session = Depends(get_db),
    provider: CalendarProvider = Depends(get_provider),
    guard: RecalculationGuard = Depends(get_guard),
    settings: Settings = Depends(get_settings),
):
    """
    Incremental repair for newly discovered busy intervals: assignments they
    overlap become conflicted and are moved to the earliest free window that
    fits them; the rest of the schedule is untouched.
    """
    busy = [b.to_domain() for b in req.busy]
    try:
        with guard.hold(debounce=False):
            report = ScheduleService(db, provider, settings).repair_conflicts(busy, now=_utc(req.now))
    except RecalculationInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except PersistenceFailure as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    return RepairResponse.from_report(report)
