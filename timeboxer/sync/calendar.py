"""
Calendar-sync collaborator.

The scheduler only needs three things from a calendar provider: the busy
intervals in a range, creating one event per assignment and deleting one
event by id. Token exchange and refresh live outside this service; the
Google provider is handed a ready bearer token.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from urllib.parse import quote

import httpx

from timeboxer.config.settings import Settings
from timeboxer.engine.availability import ZoneLike, resolve_zone
from timeboxer.models.entities import Assignment, BusyInterval
from timeboxer.models.errors import ExternalSyncFailure

logger = logging.getLogger(__name__)


class CalendarProvider(ABC):
    """Abstract calendar provider."""

    enabled: bool = True

    @abstractmethod
    def fetch_busy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        """Busy intervals intersecting ``[start, end)``."""

    @abstractmethod
    def create_event(self, assignment: Assignment) -> str:
        """Create the remote representation of ``assignment``; return its id."""

    @abstractmethod
    def delete_event(self, external_id: str) -> None:
        """Remove a previously created remote event."""


class NullCalendarProvider(CalendarProvider):
    """Used when no calendar is connected: nothing is busy, nothing is synced."""

    enabled = False

    def fetch_busy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        return []

    def create_event(self, assignment: Assignment) -> str:
        raise ExternalSyncFailure("no calendar connected")

    def delete_event(self, external_id: str) -> None:
        raise ExternalSyncFailure("no calendar connected")


def event_summary(assignment: Assignment) -> str:
    return f"Work Session: {assignment.work_item_name}"


def event_description(assignment: Assignment) -> str:
    hours = f"{assignment.duration:g}"
    return f"Scheduled work session for {assignment.work_item_name} ({hours} hours)"


class GoogleCalendarProvider(CalendarProvider):
    def __init__(
        self,
        access_token: str,
        calendar_id: str = "primary",
        base_url: str = "https://www.googleapis.com/calendar/v3",
        tz: ZoneLike = "UTC",
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.calendar_id = calendar_id
        self.zone = resolve_zone(tz)
        self.client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self.calendar_id, safe='')}/events"

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise ExternalSyncFailure(
                f"{method} {url} failed with {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalSyncFailure(f"{method} {url} failed: {exc}") from exc

    def _parse_edge(self, edge: dict) -> Optional[datetime]:
        if not edge:
            return None
        if edge.get("dateTime"):
            value = datetime.fromisoformat(edge["dateTime"].replace("Z", "+00:00"))
            if value.tzinfo is None:
                value = value.replace(tzinfo=self.zone)
            return value.astimezone(timezone.utc)
        if edge.get("date"):
            # All-day events: local midnight
            day = datetime.fromisoformat(edge["date"])
            return day.replace(tzinfo=self.zone).astimezone(timezone.utc)
        return None

    def fetch_busy(self, start: datetime, end: datetime) -> List[BusyInterval]:
        busy: List[BusyInterval] = []
        page_token = None
        while True:
            params = {
                "timeMin": start.astimezone(timezone.utc).isoformat(),
                "timeMax": end.astimezone(timezone.utc).isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
            }
            if page_token:
                params["pageToken"] = page_token
            payload = self._request("GET", self._events_path, params=params).json()

            for event in payload.get("items", []):
                if event.get("status") == "cancelled":
                    continue
                ev_start = self._parse_edge(event.get("start"))
                ev_end = self._parse_edge(event.get("end"))
                if ev_start is None or ev_end is None:
                    continue
                busy.append(BusyInterval(start=ev_start, end=ev_end))

            page_token = payload.get("nextPageToken")
            if not page_token:
                break

        logger.info(f"Fetched {len(busy)} busy intervals from calendar {self.calendar_id}")
        return busy

    def create_event(self, assignment: Assignment) -> str:
        zone_name = getattr(self.zone, "key", "UTC")
        body = {
            "summary": event_summary(assignment),
            "description": event_description(assignment),
            "start": {"dateTime": assignment.start.isoformat(), "timeZone": zone_name},
            "end": {"dateTime": assignment.end.isoformat(), "timeZone": zone_name},
        }
        payload = self._request("POST", self._events_path, json=body).json()
        return payload["id"]

    def delete_event(self, external_id: str) -> None:
        try:
            self._request("DELETE", f"{self._events_path}/{external_id}")
        except ExternalSyncFailure as exc:
            # Already gone on the remote side counts as deleted
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code in (404, 410):
                logger.debug(f"Calendar event {external_id} was already removed")
                return
            raise


def build_provider(settings: Settings) -> CalendarProvider:
    if not settings.calendar_access_token:
        return NullCalendarProvider()
    return GoogleCalendarProvider(
        access_token=settings.calendar_access_token,
        calendar_id=settings.calendar_id,
        base_url=settings.calendar_api_base_url,
        tz=settings.timezone,
        timeout=settings.calendar_timeout_seconds,
    )


def lookahead_window(now: datetime, days: int):
    return now, now + timedelta(days=days)
