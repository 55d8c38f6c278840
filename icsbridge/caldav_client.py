from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from icsbridge.errors import AuthExpiredError, BridgeError, ConfigurationError, TransientApiError
from icsbridge.models import CalDAVConfig, date_to_datetime, parse_iso_datetime, serialize_datetime

logger = logging.getLogger(__name__)

T = TypeVar("T")

SOURCE_UID_PROPERTY = "X-ICSBRIDGE-SOURCE-UID"


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


class CalDAVService:
    """Blocking CalDAV access returning plain event dicts keyed by resource href."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_complete():
            raise ConfigurationError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[dict[str, str]]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[dict[str, str]] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            self._calendar_cache[_normalize_calendar_id(calendar_id)] = calendar
            calendars.append({"calendar_id": calendar_id, "name": name})
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        normalized = _normalize_calendar_id(calendar_id)
        if normalized in self._calendar_cache:
            return self._calendar_cache[normalized]
        self.list_calendars()
        if normalized not in self._calendar_cache:
            raise ConfigurationError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[normalized]

    def fetch_events(self, calendar_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        calendar = self._get_calendar(calendar_id)
        resources = calendar.search(start=start, end=end, event=True, expand=False)
        events: list[dict[str, Any]] = []
        for item in resources:
            try:
                events.append(self._parse_resource(calendar_id, item))
            except (ValueError, BridgeError) as exc:
                logger.debug("Skipping unreadable resource %s: %s", getattr(item, "url", ""), exc)
        return events

    def _parse_resource(self, calendar_id: str, resource: Any) -> dict[str, Any]:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise ValueError("VEVENT missing in calendar resource.")

        start = _coerce_datetime(_decoded(vevent, "DTSTART"), is_end=False)
        end = _coerce_datetime(_decoded(vevent, "DTEND"), is_end=True)
        if start and end is None:
            end = start + timedelta(hours=1)
        created = _coerce_datetime(_decoded(vevent, "CREATED")) or _coerce_datetime(_decoded(vevent, "DTSTAMP"))
        return {
            "id": str(getattr(resource, "url", "") or ""),
            "calendar_id": calendar_id,
            "uid": str(vevent.get("UID", "")).strip(),
            "title": str(vevent.get("SUMMARY", "")).strip(),
            "description": str(vevent.get("DESCRIPTION", "")),
            "location": str(vevent.get("LOCATION", "")).strip(),
            "status": str(vevent.get("STATUS", "CONFIRMED")).strip().lower(),
            "transparency": str(vevent.get("TRANSP", "OPAQUE")).strip().lower(),
            "start": serialize_datetime(start),
            "end": serialize_datetime(end),
            "created_at": serialize_datetime(created),
            "source_uid": str(vevent.get(SOURCE_UID_PROPERTY, "")).strip(),
        }

    def _build_ical(self, payload: dict[str, Any], uid: str, created: datetime | None = None) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//icsbridge//Calendar Bridge//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("CREATED", created or datetime.now(timezone.utc))
        vevent.add("SUMMARY", payload.get("title") or "")
        vevent.add("DESCRIPTION", payload.get("description") or "")
        if payload.get("location"):
            vevent.add("LOCATION", payload["location"])
        start = parse_iso_datetime(payload.get("start"))
        end = parse_iso_datetime(payload.get("end"))
        if start is not None:
            vevent.add("DTSTART", start)
        if end is not None:
            vevent.add("DTEND", end)
        if str(payload.get("status", "")).lower() == "cancelled":
            vevent.add("STATUS", "CANCELLED")
        if str(payload.get("transparency", "")).lower() == "transparent":
            vevent.add("TRANSP", "TRANSPARENT")
        if payload.get("source_uid"):
            vevent.add(SOURCE_UID_PROPERTY, str(payload["source_uid"]))
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def create_event(self, calendar_id: str, payload: dict[str, Any]) -> str:
        calendar = self._get_calendar(calendar_id)
        uid = f"{uuid.uuid4()}@icsbridge"
        resource = calendar.save_event(self._build_ical(payload, uid))
        return str(resource.url)

    def update_event(self, calendar_id: str, event_id: str, payload: dict[str, Any]) -> None:
        calendar = self._get_calendar(calendar_id)
        resource = calendar.event_by_url(event_id)
        current = self._parse_resource(calendar_id, resource)
        resource.data = self._build_ical(
            payload,
            current["uid"] or f"{uuid.uuid4()}@icsbridge",
            created=parse_iso_datetime(current["created_at"]),
        )
        resource.save()

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        calendar = self._get_calendar(calendar_id)
        calendar.event_by_url(event_id).delete()

    def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        calendar = self._get_calendar(calendar_id)
        resource = calendar.event_by_url(event_id)
        event = self._parse_resource(calendar_id, resource)
        event["raw_ical"] = _decode_raw_ical(resource.data)
        return event


class CalDAVDestination:
    """Async destination calendar backed by ``CalDAVService``.

    Calls run in worker threads. Authorization failures surface as
    ``AuthExpiredError``; configuration problems pass through; anything else
    becomes ``TransientApiError``.
    """

    def __init__(self, config: CalDAVConfig, service: CalDAVService | None = None) -> None:
        self.service = service or CalDAVService(config)

    async def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except caldav_error.AuthorizationError as exc:
            raise AuthExpiredError(f"CalDAV authorization failed during {operation}: {exc}") from exc
        except BridgeError:
            raise
        except Exception as exc:
            raise TransientApiError(f"CalDAV {operation} failed: {exc}") from exc

    async def list(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        return await self._call("list", self.service.fetch_events, calendar_id, time_min, time_max)

    async def insert(self, calendar_id: str, payload: dict[str, Any]) -> str:
        return await self._call("insert", self.service.create_event, calendar_id, payload)

    async def update(self, calendar_id: str, event_id: str, payload: dict[str, Any]) -> None:
        await self._call("update", self.service.update_event, calendar_id, event_id, payload)

    async def delete(self, calendar_id: str, event_id: str) -> None:
        await self._call("delete", self.service.delete_event, calendar_id, event_id)

    async def get(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        return await self._call("get", self.service.get_event, calendar_id, event_id)
