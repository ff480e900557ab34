"""
Reconciliation driver around the scheduling engine.

Two entry points, each used by a specific trigger:

- ``recalculate`` (full rebuild): the "recalculate" endpoint and every
  automatic trigger after a work item or availability rule changes. Discards
  all non-completed assignments and reruns the engine from zero against
  freshly fetched busy intervals.
- ``repair_conflicts`` (incremental): the "resolve conflicts" endpoint, used
  when a caller pushes newly discovered busy intervals. Only assignments those
  intervals invalidate are moved.

Neither path is atomic end to end. Once new records are stored they are
the source of truth, even if creating their calendar events partly fails.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from timeboxer.config.settings import Settings, get_settings
from timeboxer.engine.reoptimize import reoptimize
from timeboxer.engine.scheduler import generate_schedule
from timeboxer.models.entities import Assignment, AssignmentStatus, BusyInterval
from timeboxer.models.errors import ExternalSyncFailure, PersistenceFailure, RecalculationInProgress
from timeboxer.storage.repositories import (
    AssignmentRepository,
    AvailabilityRuleRepository,
    WorkItemRepository,
)
from timeboxer.sync.batch import BatchOutcome, run_batch
from timeboxer.sync.calendar import CalendarProvider, lookahead_window

logger = logging.getLogger(__name__)


@dataclass
class SyncCounts:
    succeeded: int = 0
    failed: int = 0

    @classmethod
    def from_outcome(cls, outcome: BatchOutcome) -> "SyncCounts":
        return cls(succeeded=outcome.succeeded, failed=outcome.failed)


@dataclass
class RecalculationReport:
    assignments_created: int = 0
    conflicts_avoided: int = 0
    slots_blocked: int = 0
    horizon_days: int = 0
    unscheduled: Dict[str, float] = field(default_factory=dict)
    events_deleted: SyncCounts = field(default_factory=SyncCounts)
    events_created: SyncCounts = field(default_factory=SyncCounts)

    @property
    def fully_scheduled(self) -> bool:
        return not self.unscheduled


@dataclass
class RepairReport:
    conflicted: int = 0
    moved: List[str] = field(default_factory=list)
    unplaced: List[str] = field(default_factory=list)
    events_deleted: SyncCounts = field(default_factory=SyncCounts)
    events_created: SyncCounts = field(default_factory=SyncCounts)


class ScheduleService:
    def __init__(self, db: Session, provider: CalendarProvider, settings: Optional[Settings] = None):
        self.db = db
        self.provider = provider
        self.settings = settings or get_settings()
        self.items = WorkItemRepository(db)
        self.rules = AvailabilityRuleRepository(db)
        self.assignments = AssignmentRepository(db)

    # ------------------------------------------------------------------
    # Full rebuild
    # ------------------------------------------------------------------

    def recalculate(self, now: Optional[datetime] = None) -> RecalculationReport:
        now = now or datetime.now(timezone.utc)
        report = RecalculationReport()
        logger.info("=== Starting schedule recalculation ===")

        busy = self._fetch_busy(now)
        report.conflicts_avoided = len(busy)

        previous = self._persist(self.assignments.list_active, "load current assignments")
        report.events_deleted = self._delete_remote(previous)
        removed = self._persist(self.assignments.clear_active, "clear current assignments")
        logger.info(f"Cleared {len(removed)} non-completed assignments")

        # Only completed records are left after clearing
        completed = self._persist(self.assignments.list_all, "load completed assignments")
        items = self._persist(self.items.list_all, "load work items")
        rules = self._persist(self.rules.list_active, "load availability rules")
        logger.info(f"Scheduling {len(items)} work items against {len(rules)} active rules")
        result = generate_schedule(
            items,
            rules,
            busy,
            now,
            tz=self.settings.timezone,
            rounding_minutes=self.settings.slot_rounding_minutes,
            min_horizon_weeks=self.settings.min_horizon_weeks,
            horizon_margin_weeks=self.settings.horizon_margin_weeks,
            safety_horizon_days=self.settings.safety_horizon_days,
            completed=completed,
        )
        report.horizon_days = result.horizon_days
        report.slots_blocked = result.slots_blocked
        report.unscheduled = dict(result.unscheduled)

        stored = self._persist(lambda: self.assignments.add_all(result.assignments), "store new assignments")
        report.assignments_created = len(stored)
        logger.info(f"Stored {len(stored)} assignments")

        report.events_created = self._create_remote(stored)
        logger.info("=== Schedule recalculation completed ===")
        return report

    # ------------------------------------------------------------------
    # Incremental repair
    # ------------------------------------------------------------------

    def repair_conflicts(self, busy: Sequence[BusyInterval], now: Optional[datetime] = None) -> RepairReport:
        now = now or datetime.now(timezone.utc)
        report = RepairReport()

        existing = self._persist(self.assignments.list_all, "load current assignments")
        items = self._persist(self.items.list_all, "load work items")
        rules = self._persist(self.rules.list_active, "load availability rules")
        result = reoptimize(
            existing,
            items,
            rules,
            busy,
            now,
            tz=self.settings.timezone,
            horizon_days=self.settings.reschedule_horizon_days,
        )
        report.moved = [a.id for a in result.moved]
        report.unplaced = [a.id for a in result.unplaced]
        report.conflicted = len(result.moved) + len(result.unplaced)
        if not report.conflicted:
            logger.info("No assignments affected by the supplied busy intervals")
            return report

        cleared = [replace(a, external_event_id=None) for a in result.moved]

        def store_changes():
            for a in cleared:
                self.assignments.update(a)
            for a in result.unplaced:
                self.assignments.update(a)

        self._persist(store_changes, "store rescheduled assignments")

        report.events_deleted = self._delete_remote(result.moved)
        report.events_created = self._create_remote(cleared)
        logger.info(
            f"Conflict repair: {len(report.moved)} moved, {len(report.unplaced)} left conflicted"
        )
        return report

    # ------------------------------------------------------------------
    # Work item removal
    # ------------------------------------------------------------------

    def delete_work_item(self, item_id: str) -> Optional[SyncCounts]:
        """
        Delete a work item with all its assignments.

        Calendar events of its non-completed assignments are removed before
        the rows. Returns the deletion counts, or None when the item does not
        exist.
        """
        item = self._persist(lambda: self.items.get_by_id(item_id), "load work item")
        if item is None:
            return None

        active = self._persist(self.assignments.list_active, "load current assignments")
        owned = [a for a in active if a.work_item_id == item_id]
        deleted = self._delete_remote(owned)

        self._persist(lambda: self.items.delete(item_id), "delete work item")
        logger.info(f"Deleted work item {item_id} ({item.name}) and {len(owned)} pending assignments")
        return deleted

    # ------------------------------------------------------------------
    # Collaborator plumbing
    # ------------------------------------------------------------------

    def _persist(self, operation, description: str):
        try:
            return operation()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Failed to {description}: {exc}")
            raise PersistenceFailure(f"failed to {description}") from exc

    def _fetch_busy(self, now: datetime) -> List[BusyInterval]:
        if not self.provider.enabled:
            logger.info("No calendar connected; scheduling without busy intervals")
            return []
        start, end = lookahead_window(now, self.settings.calendar_lookahead_days)
        try:
            busy = self.provider.fetch_busy(start, end)
        except ExternalSyncFailure as exc:
            logger.error(f"Error fetching busy intervals, proceeding without them: {exc}")
            return []
        return [b for b in busy if b.is_complete]

    def _delete_remote(self, assignments: Sequence[Assignment]) -> SyncCounts:
        if not self.provider.enabled:
            return SyncCounts()
        tasks = [(a.id, a.external_event_id) for a in assignments if a.external_event_id]
        if not tasks:
            return SyncCounts()
        logger.info(f"Deleting {len(tasks)} calendar events")
        outcome = run_batch(tasks, self.provider.delete_event, self.settings.sync_max_workers, "delete event")
        return SyncCounts.from_outcome(outcome)

    def _create_remote(self, assignments: Sequence[Assignment]) -> SyncCounts:
        if not self.provider.enabled or not assignments:
            return SyncCounts()
        logger.info(f"Creating {len(assignments)} calendar events")
        outcome = run_batch(
            [(a.id, a) for a in assignments if a.status == AssignmentStatus.SCHEDULED],
            self.provider.create_event,
            self.settings.sync_max_workers,
            "create event",
        )
        try:
            self.assignments.set_external_ids(outcome.results)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(f"Calendar events created but their ids could not be stored: {exc}")
        return SyncCounts.from_outcome(outcome)


def run_triggered_recalculation(
    session_factory,
    provider: CalendarProvider,
    guard,
    settings: Optional[Settings] = None,
    scope: str = "default",
) -> Optional[RecalculationReport]:
    """
    Background recalculation after a work item or rule changed.

    Waits out the debounce window and only proceeds if no newer trigger
    arrived meanwhile; then waits for any running recalculation to finish.
    """
    token = guard.mark_pending(scope)
    time.sleep(guard.debounce_seconds)
    if not guard.is_latest(scope, token):
        logger.debug("Superseded by a newer trigger; skipping")
        return None

    db = session_factory()
    try:
        with guard.hold(scope, debounce=False, blocking_timeout=guard.lock_timeout_seconds):
            return ScheduleService(db, provider, settings).recalculate()
    except RecalculationInProgress as exc:
        logger.warning(f"Automatic recalculation skipped: {exc}")
    except PersistenceFailure as exc:
        logger.error(f"Automatic recalculation aborted: {exc}")
    finally:
        db.close()
    return None
