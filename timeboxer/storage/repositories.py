import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from timeboxer.models.entities import (
    Assignment,
    AssignmentStatus,
    AvailabilityRule,
    WorkItem,
    WorkItemStatus,
)
from timeboxer.storage.database import AssignmentModel, AvailabilityRuleModel, WorkItemModel


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class WorkItemRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, item_id: str) -> Optional[WorkItem]:
        model = self.db.query(WorkItemModel).filter(WorkItemModel.id == item_id).first()
        if not model:
            return None
        return self._model_to_item(model)

    def list_all(self) -> List[WorkItem]:
        models = self.db.query(WorkItemModel).order_by(WorkItemModel.priority, WorkItemModel.created_at).all()
        return [self._model_to_item(m) for m in models]

    def next_priority(self) -> int:
        top = self.db.query(WorkItemModel.priority).order_by(WorkItemModel.priority.desc()).first()
        return (top[0] + 1) if top else 1

    def save(self, item: WorkItem) -> None:
        existing = self.db.query(WorkItemModel).filter(WorkItemModel.id == item.id).first()
        if existing:
            existing.name = item.name
            existing.description = item.description
            existing.estimated_hours = item.estimated_hours
            existing.priority = item.priority
            existing.status = item.status.value
        else:
            model = WorkItemModel(
                id=item.id,
                name=item.name,
                description=item.description,
                estimated_hours=item.estimated_hours,
                priority=item.priority,
                status=item.status.value,
            )
            self.db.add(model)
        self.db.commit()

    def reorder(self, ordered_ids: Sequence[str]) -> List[WorkItem]:
        """Assign priorities 1..n following ``ordered_ids``."""
        models = {m.id: m for m in self.db.query(WorkItemModel).filter(WorkItemModel.id.in_(ordered_ids)).all()}
        for position, item_id in enumerate(ordered_ids, start=1):
            if item_id in models:
                models[item_id].priority = position
        self.db.commit()
        return self.list_all()

    def delete(self, item_id: str) -> bool:
        self.db.query(AssignmentModel).filter(AssignmentModel.work_item_id == item_id).delete()
        deleted = self.db.query(WorkItemModel).filter(WorkItemModel.id == item_id).delete()
        self.db.commit()
        return bool(deleted)

    @staticmethod
    def _model_to_item(model: WorkItemModel) -> WorkItem:
        return WorkItem(
            id=model.id,
            name=model.name,
            estimated_hours=model.estimated_hours,
            priority=model.priority,
            status=WorkItemStatus(model.status),
            description=model.description,
        )


class AvailabilityRuleRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, rule_id: str) -> Optional[AvailabilityRule]:
        model = self.db.query(AvailabilityRuleModel).filter(AvailabilityRuleModel.id == rule_id).first()
        if not model:
            return None
        return self._model_to_rule(model)

    def list_all(self) -> List[AvailabilityRule]:
        models = self.db.query(AvailabilityRuleModel).order_by(AvailabilityRuleModel.created_at).all()
        return [self._model_to_rule(m) for m in models]

    def list_active(self) -> List[AvailabilityRule]:
        return [r for r in self.list_all() if r.active]

    def save(self, rule: AvailabilityRule) -> None:
        existing = self.db.query(AvailabilityRuleModel).filter(AvailabilityRuleModel.id == rule.id).first()
        if existing:
            existing.name = rule.name
            existing.weekdays = list(rule.weekdays)
            existing.start_time = rule.start_time
            existing.end_time = rule.end_time
            existing.active = rule.active
            existing.min_duration_minutes = rule.min_duration_minutes
        else:
            model = AvailabilityRuleModel(
                id=rule.id,
                name=rule.name,
                weekdays=list(rule.weekdays),
                start_time=rule.start_time,
                end_time=rule.end_time,
                active=rule.active,
                min_duration_minutes=rule.min_duration_minutes,
            )
            self.db.add(model)
        self.db.commit()

    def delete(self, rule_id: str) -> bool:
        deleted = self.db.query(AvailabilityRuleModel).filter(AvailabilityRuleModel.id == rule_id).delete()
        self.db.commit()
        return bool(deleted)

    @staticmethod
    def _model_to_rule(model: AvailabilityRuleModel) -> AvailabilityRule:
        return AvailabilityRule(
            id=model.id,
            name=model.name,
            weekdays=tuple(model.weekdays or ()),
            start_time=model.start_time,
            end_time=model.end_time,
            active=model.active,
            min_duration_minutes=model.min_duration_minutes,
        )


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, assignment_id: str) -> Optional[Assignment]:
        model = self.db.query(AssignmentModel).filter(AssignmentModel.id == assignment_id).first()
        if not model:
            return None
        return self._model_to_assignment(model)

    def list_all(self) -> List[Assignment]:
        models = self.db.query(AssignmentModel).order_by(AssignmentModel.start).all()
        return [self._model_to_assignment(m) for m in models]

    def list_active(self) -> List[Assignment]:
        """Every assignment that is not completed."""
        models = (
            self.db.query(AssignmentModel)
            .filter(AssignmentModel.status != AssignmentStatus.COMPLETED.value)
            .order_by(AssignmentModel.start)
            .all()
        )
        return [self._model_to_assignment(m) for m in models]

    def clear_active(self) -> List[Assignment]:
        """Delete all non-completed assignments and return what was removed."""
        removed = self.list_active()
        (
            self.db.query(AssignmentModel)
            .filter(AssignmentModel.status != AssignmentStatus.COMPLETED.value)
            .delete(synchronize_session=False)
        )
        self.db.commit()
        return removed

    def add_all(self, assignments: Sequence[Assignment]) -> List[Assignment]:
        """Insert new records. Storage ids are fresh UUIDs; the stored versions are returned."""
        models = []
        for a in assignments:
            models.append(AssignmentModel(
                id=str(uuid.uuid4()),
                work_item_id=a.work_item_id,
                work_item_name=a.work_item_name,
                start=a.start,
                end=a.end,
                duration=a.duration,
                status=a.status.value,
                priority=a.priority,
                color=a.color,
                external_event_id=a.external_event_id,
            ))
        self.db.add_all(models)
        self.db.commit()
        return [self._model_to_assignment(m) for m in models]

    def update(self, assignment: Assignment) -> None:
        model = self.db.query(AssignmentModel).filter(AssignmentModel.id == assignment.id).first()
        if not model:
            return
        model.work_item_name = assignment.work_item_name
        model.start = assignment.start
        model.end = assignment.end
        model.duration = assignment.duration
        model.status = assignment.status.value
        model.priority = assignment.priority
        model.color = assignment.color
        model.external_event_id = assignment.external_event_id
        self.db.commit()

    def set_external_ids(self, mapping: Dict[str, Optional[str]]) -> None:
        if not mapping:
            return
        models = self.db.query(AssignmentModel).filter(AssignmentModel.id.in_(list(mapping))).all()
        for model in models:
            model.external_event_id = mapping[model.id]
        self.db.commit()

    def mark_completed(self, assignment_id: str) -> Optional[Assignment]:
        model = self.db.query(AssignmentModel).filter(AssignmentModel.id == assignment_id).first()
        if not model:
            return None
        model.status = AssignmentStatus.COMPLETED.value
        self.db.commit()
        return self._model_to_assignment(model)

    @staticmethod
    def _model_to_assignment(model: AssignmentModel) -> Assignment:
        return Assignment(
            id=model.id,
            work_item_id=model.work_item_id,
            work_item_name=model.work_item_name,
            start=_as_utc(model.start),
            end=_as_utc(model.end),
            duration=model.duration,
            status=AssignmentStatus(model.status),
            priority=model.priority,
            color=model.color,
            external_event_id=model.external_event_id,
        )
