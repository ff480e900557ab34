from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import MONDAY_8AM, RecordingProvider, at
from timeboxer.api.routes import get_guard, get_provider, get_session_factory
from timeboxer.config.settings import get_settings
from timeboxer.main import app
from timeboxer.models.entities import Assignment, AssignmentStatus, AvailabilityRule, WorkItem
from timeboxer.storage.database import get_db
from timeboxer.storage.guard import RecalculationGuard
from timeboxer.storage.repositories import (
    AssignmentRepository,
    AvailabilityRuleRepository,
    WorkItemRepository,
)

PREFIX = "/api/v1"

MORNINGS = {
    "name": "Morning focus",
    "weekdays": [1, 2, 3, 4, 5],
    "start_time": "09:00",
    "end_time": "10:00",
}


@pytest.fixture
def api(session_factory, fake_redis, test_settings):
    provider = RecordingProvider()
    guard = RecalculationGuard(client=fake_redis, debounce_seconds=0.01, lock_timeout_seconds=5)

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_guard] = lambda: guard
    app.dependency_overrides[get_settings] = lambda: test_settings
    client = TestClient(app)
    client.provider = provider
    yield client
    app.dependency_overrides.clear()


def seed_assignment(db, start, hours=1.0, status=AssignmentStatus.SCHEDULED):
    return AssignmentRepository(db).add_all([Assignment(
        id="seed", work_item_id="item-1", work_item_name="Thesis", start=start,
        end=start + timedelta(hours=hours), duration=hours, status=status, priority=1,
    )])[0]


@pytest.fixture
def seeded(db):
    WorkItemRepository(db).save(WorkItem(id="item-1", name="Thesis", estimated_hours=3, priority=1))
    AvailabilityRuleRepository(db).save(AvailabilityRule(
        id="rule-1", name="Mornings", weekdays=(1, 2, 3, 4, 5), start_time="09:00", end_time="10:00",
    ))
    return db


class TestHealth:
    def test_health(self, api):
        response = api.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestPreviewEndpoint:
    """Stateless engine runs through /schedule/preview."""

    def test_three_hours_over_weekday_mornings(self, api):
        payload = {
            "items": [{"id": "item-1", "name": "Thesis", "estimated_hours": 3, "priority": 1}],
            "rules": [MORNINGS],
            "now": MONDAY_8AM.isoformat(),
        }

        response = api.post(f"{PREFIX}/schedule/preview", json=payload)

        assert response.status_code == 200
        data = response.json()
        assert data["fully_scheduled"] is True
        assert [a["duration_hours"] for a in data["assignments"]] == [1.0, 1.0, 1.0]
        assert [a["start"][:16] for a in data["assignments"]] == [
            "2025-06-02T09:00", "2025-06-03T09:00", "2025-06-04T09:00",
        ]
        assert data["horizon_days"] == 56

    def test_busy_interval_skipped(self, api):
        payload = {
            "items": [{"id": "item-1", "name": "Thesis", "estimated_hours": 1, "priority": 1}],
            "rules": [MORNINGS],
            "busy": [{"start": "2025-06-02T09:00:00Z", "end": "2025-06-02T09:30:00Z"}],
            "now": MONDAY_8AM.isoformat(),
        }

        data = api.post(f"{PREFIX}/schedule/preview", json=payload).json()

        assert data["assignments"][0]["start"].startswith("2025-06-03T09:00")
        assert data["slots_blocked"] == 1

    def test_rule_timezone_is_honoured(self, api):
        payload = {
            "items": [{"id": "item-1", "name": "Thesis", "estimated_hours": 1, "priority": 1}],
            "rules": [MORNINGS],
            "now": MONDAY_8AM.isoformat(),
            "timezone": "America/New_York",
        }

        data = api.post(f"{PREFIX}/schedule/preview", json=payload).json()

        # 09:00 EDT
        assert data["assignments"][0]["start"].startswith("2025-06-02T13:00")

    def test_nothing_is_persisted(self, api):
        payload = {
            "items": [{"id": "item-1", "name": "Thesis", "estimated_hours": 3, "priority": 1}],
            "rules": [MORNINGS],
            "now": MONDAY_8AM.isoformat(),
        }
        api.post(f"{PREFIX}/schedule/preview", json=payload)
        assert api.get(f"{PREFIX}/assignments").json() == []

    @pytest.mark.parametrize("rule_patch", [
        {"weekdays": [7]},
        {"weekdays": []},
        {"start_time": "10:00", "end_time": "09:00"},
        {"start_time": "25:00"},
    ])
    def test_invalid_rules_rejected(self, api, rule_patch):
        payload = {
            "items": [{"id": "item-1", "name": "Thesis", "estimated_hours": 1, "priority": 1}],
            "rules": [{**MORNINGS, **rule_patch}],
        }
        assert api.post(f"{PREFIX}/schedule/preview", json=payload).status_code == 422

    def test_unknown_timezone_rejected(self, api):
        payload = {"items": [], "rules": [MORNINGS], "timezone": "Mars/Olympus_Mons"}
        assert api.post(f"{PREFIX}/schedule/preview", json=payload).status_code == 422


class TestWorkItemEndpoints:
    def test_create_appends_to_queue(self, api):
        first = api.post(f"{PREFIX}/work-items", json={"name": "Thesis", "estimated_hours": 3})
        second = api.post(f"{PREFIX}/work-items", json={"name": "Taxes", "estimated_hours": 1})

        assert first.status_code == 201
        assert first.json()["priority"] == 1
        assert second.json()["priority"] == 2
        assert [i["name"] for i in api.get(f"{PREFIX}/work-items").json()] == ["Thesis", "Taxes"]

    def test_negative_estimate_rejected(self, api):
        response = api.post(f"{PREFIX}/work-items", json={"name": "Bad", "estimated_hours": -1})
        assert response.status_code == 422

    def test_update_and_delete(self, api):
        item_id = api.post(f"{PREFIX}/work-items", json={"name": "Thesis", "estimated_hours": 3}).json()["id"]

        updated = api.put(f"{PREFIX}/work-items/{item_id}", json={"estimated_hours": 5})
        assert updated.status_code == 200
        assert updated.json()["estimated_hours"] == 5
        assert updated.json()["name"] == "Thesis"

        assert api.delete(f"{PREFIX}/work-items/{item_id}").status_code == 204
        assert api.delete(f"{PREFIX}/work-items/{item_id}").status_code == 404
        assert api.put(f"{PREFIX}/work-items/{item_id}", json={"name": "x"}).status_code == 404

    def test_reorder(self, api):
        ids = [
            api.post(f"{PREFIX}/work-items", json={"name": name, "estimated_hours": 1}).json()["id"]
            for name in ("A", "B", "C")
        ]

        response = api.post(f"{PREFIX}/work-items/reorder", json={"ordered_ids": ids[::-1]})

        assert response.status_code == 200
        assert [(i["name"], i["priority"]) for i in response.json()] == [("C", 1), ("B", 2), ("A", 3)]


    def test_description_can_be_cleared(self, api):
        created = api.post(f"{PREFIX}/work-items", json={"name": "Thesis", "estimated_hours": 3, "description": "Ch. 2"})
        item_id = created.json()["id"]

        response = api.put(f"{PREFIX}/work-items/{item_id}", json={"description": None, "name": None})

        assert response.status_code == 200
        assert response.json()["description"] is None
        assert response.json()["name"] == "Thesis"

    def test_delete_removes_calendar_events(self, api, seeded):
        api.post(f"{PREFIX}/schedule/recalculate")
        events = {a.external_event_id for a in AssignmentRepository(seeded).list_all()}
        assert len(events) == 3

        assert api.delete(f"{PREFIX}/work-items/item-1").status_code == 204

        assert set(api.provider.deleted) == events
        assert api.get(f"{PREFIX}/assignments").json() == []

    def test_listing_reports_progress(self, api, seeded):
        seed_assignment(seeded, at(2, 9), hours=1.5, status=AssignmentStatus.COMPLETED)
        seed_assignment(seeded, at(3, 9))

        item = api.get(f"{PREFIX}/work-items").json()[0]

        assert item["completed_hours"] == 1.5
        assert item["progress"] == 50.0
        assert item["remaining_hours"] == 0.5

class TestAvailabilityRuleEndpoints:
    def test_crud(self, api):
        created = api.post(f"{PREFIX}/availability-rules", json={**MORNINGS, "weekdays": [5, 1, 1]})
        assert created.status_code == 201
        rule = created.json()
        assert rule["weekdays"] == [1, 5]

        replaced = api.put(f"{PREFIX}/availability-rules/{rule['id']}", json={**MORNINGS, "active": False})
        assert replaced.json()["active"] is False
        assert len(api.get(f"{PREFIX}/availability-rules").json()) == 1

        assert api.delete(f"{PREFIX}/availability-rules/{rule['id']}").status_code == 204
        assert api.get(f"{PREFIX}/availability-rules").json() == []

    def test_unknown_rule(self, api):
        assert api.put(f"{PREFIX}/availability-rules/nope", json=MORNINGS).status_code == 404


class TestRecalculateEndpoint:
    """Full rebuild through /schedule/recalculate."""

    def test_recalculate_creates_assignments_and_events(self, api, seeded):
        response = api.post(f"{PREFIX}/schedule/recalculate")

        assert response.status_code == 200
        data = response.json()
        assert data["assignments_created"] == 3
        assert data["fully_scheduled"] is True
        assert data["events_created"] == {"succeeded": 3, "failed": 0}
        assert len(api.provider.created) == 3

        items = api.get(f"{PREFIX}/work-items").json()
        assert items[0]["remaining_hours"] == 0
        assert items[0]["start_date"] is not None

    def test_rapid_second_request_is_rejected(self, api, seeded, fake_redis):
        slow_guard = RecalculationGuard(client=fake_redis, debounce_seconds=60, lock_timeout_seconds=5)
        app.dependency_overrides[get_guard] = lambda: slow_guard

        assert api.post(f"{PREFIX}/schedule/recalculate").status_code == 200
        assert api.post(f"{PREFIX}/schedule/recalculate").status_code == 409

    def test_edits_trigger_automatic_recalculation(self, api, test_settings):
        test_settings.auto_recalculate = True

        api.post(f"{PREFIX}/availability-rules", json=MORNINGS)
        api.post(f"{PREFIX}/work-items", json={"name": "Thesis", "estimated_hours": 2})

        assignments = api.get(f"{PREFIX}/assignments").json()
        assert [a["work_item_name"] for a in assignments] == ["Thesis", "Thesis"]


class TestResolveConflictsEndpoint:
    def test_only_hit_assignment_moves(self, api, seeded):
        monday = seed_assignment(seeded, at(2, 9))
        tuesday = seed_assignment(seeded, at(3, 9))

        response = api.post(f"{PREFIX}/schedule/resolve-conflicts", json={
            "busy": [{"start": "2025-06-03T09:00:00Z", "end": "2025-06-03T10:00:00Z"}],
            "now": MONDAY_8AM.isoformat(),
        })

        assert response.status_code == 200
        data = response.json()
        assert data["conflicted"] == 1
        assert data["moved"] == [tuesday.id]
        starts = {a["id"]: a["start"][:16] for a in api.get(f"{PREFIX}/assignments").json()}
        assert starts == {monday.id: "2025-06-02T09:00", tuesday.id: "2025-06-04T09:00"}

    def test_busy_list_required(self, api):
        assert api.post(f"{PREFIX}/schedule/resolve-conflicts", json={"busy": []}).status_code == 422


class TestAssignmentEndpoints:
    def test_complete(self, api, seeded):
        a = seed_assignment(seeded, at(2, 9))
        response = api.post(f"{PREFIX}/assignments/{a.id}/complete")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        completed = api.get(f"{PREFIX}/assignments", params={"status": "completed"}).json()
        assert [c["id"] for c in completed] == [a.id]

    def test_conflicted_cannot_be_completed(self, api, seeded):
        a = seed_assignment(seeded, at(2, 9), status=AssignmentStatus.CONFLICTED)
        assert api.post(f"{PREFIX}/assignments/{a.id}/complete").status_code == 409

    def test_unknown_assignment(self, api):
        assert api.post(f"{PREFIX}/assignments/missing/complete").status_code == 404
