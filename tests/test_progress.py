from datetime import timedelta

from conftest import at
from timeboxer.models.entities import Assignment, AssignmentStatus, WorkItem
from timeboxer.utils.progress import (
    completed_hours,
    item_date_range,
    progress_percent,
    remaining_hours,
    scheduled_hours,
)


def assignment(item_id, start, hours, status=AssignmentStatus.SCHEDULED):
    return Assignment(
        id=f"{item_id}-{start.day}", work_item_id=item_id, work_item_name=item_id, start=start,
        end=start + timedelta(hours=hours), duration=hours, status=status, priority=1,
    )


class TestProgress:
    def test_date_range_ignores_conflicted(self):
        assignments = [
            assignment("a", at(3, 9), 1),
            assignment("a", at(2, 9), 1, AssignmentStatus.CONFLICTED),
            assignment("a", at(5, 9), 0.5, AssignmentStatus.COMPLETED),
            assignment("b", at(1, 9), 1),
        ]
        assert item_date_range("a", assignments) == (at(3, 9), at(5, 9, 30))

    def test_unscheduled_item_has_no_range(self):
        assert item_date_range("a", []) == (None, None)

    def test_remaining_hours(self):
        items = [
            WorkItem(id="a", name="A", estimated_hours=3, priority=1),
            WorkItem(id="b", name="B", estimated_hours=1, priority=2),
        ]
        assignments = [
            assignment("a", at(2, 9), 1),
            assignment("a", at(3, 9), 1, AssignmentStatus.COMPLETED),
            assignment("a", at(4, 9), 1, AssignmentStatus.CONFLICTED),
            assignment("b", at(2, 10), 1.5),
        ]
        assert scheduled_hours("a", assignments) == 2
        assert remaining_hours(items, assignments) == {"a": 1, "b": 0}

    def test_completed_hours_and_progress(self):
        item = WorkItem(id="a", name="A", estimated_hours=4, priority=1)
        assignments = [
            assignment("a", at(2, 9), 1, AssignmentStatus.COMPLETED),
            assignment("a", at(3, 9), 2, AssignmentStatus.SCHEDULED),
            assignment("a", at(4, 9), 1, AssignmentStatus.CONFLICTED),
        ]
        assert completed_hours("a", assignments) == 1
        assert progress_percent(item, assignments) == 25.0

    def test_progress_of_zero_hour_item(self):
        item = WorkItem(id="a", name="A", estimated_hours=0, priority=1)
        done = [assignment("a", at(2, 9), 1, AssignmentStatus.COMPLETED)]
        assert progress_percent(item, done) == 0.0

    def test_progress_is_capped(self):
        item = WorkItem(id="a", name="A", estimated_hours=1, priority=1)
        done = [
            assignment("a", at(2, 9), 1, AssignmentStatus.COMPLETED),
            assignment("a", at(3, 9), 1, AssignmentStatus.COMPLETED),
        ]
        assert progress_percent(item, done) == 100.0
