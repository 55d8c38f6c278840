from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Any

import recurring_ical_events
import requests
from icalendar import Calendar as ICalendar

from icsbridge.errors import DataError, TransientApiError
from icsbridge.keys import canonical_instant
from icsbridge.models import SourceOccurrence, date_to_datetime

logger = logging.getLogger(__name__)


def normalize_feed_url(feed_url: str) -> str:
    url = str(feed_url or "").strip()
    if url.lower().startswith("webcal://"):
        return "https://" + url[len("webcal://") :]
    return url


def feed_timezone(calendar_obj: ICalendar) -> str:
    """Name of the zone floating times in this feed belong to, or ``""``."""
    declared = str(calendar_obj.get("X-WR-TIMEZONE", "") or "").strip()
    if declared:
        return declared
    for component in calendar_obj.walk("VTIMEZONE"):
        tzid = str(component.get("TZID", "") or "").strip()
        if tzid:
            return tzid
    return ""


def recurring_uids(calendar_obj: ICalendar) -> set[str]:
    uids: set[str] = set()
    for component in calendar_obj.walk("VEVENT"):
        if component.get("RRULE") is not None or component.get("RDATE") is not None:
            uids.add(str(component.get("UID", "")).strip())
        elif component.get("RECURRENCE-ID") is not None:
            uids.add(str(component.get("UID", "")).strip())
    uids.discard("")
    return uids


def open_ended_uids(calendar_obj: ICalendar) -> set[str]:
    """UIDs of source events written with neither DTEND nor DURATION."""
    uids: set[str] = set()
    for component in calendar_obj.walk("VEVENT"):
        if component.get("DTEND") is None and component.get("DURATION") is None:
            uids.add(str(component.get("UID", "")).strip())
    uids.discard("")
    return uids


def _as_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _component_time(component: Any, name: str) -> Any:
    prop = component.get(name)
    if prop is None:
        return None
    return getattr(prop, "dt", None)


def instance_uid(uid: str, start: datetime, source_timezone: str) -> str:
    millis = int(canonical_instant(start, source_timezone).timestamp() * 1000)
    return f"{uid}-{millis}"


def parse_feed(raw: bytes | str, window_start: datetime, window_end: datetime) -> list[SourceOccurrence]:
    """Expand a feed into ``SourceOccurrence`` records inside the window.

    Instances of recurring events get their uid suffixed with the start
    instant in epoch milliseconds so each one is addressable on its own.
    """
    try:
        calendar_obj = ICalendar.from_ical(raw)
    except ValueError as exc:
        raise DataError(f"Feed is not valid iCalendar data: {exc}") from exc

    zone_name = feed_timezone(calendar_obj)
    recurring = recurring_uids(calendar_obj)
    open_ended = open_ended_uids(calendar_obj)
    occurrences: list[SourceOccurrence] = []
    for component in recurring_ical_events.of(calendar_obj).between(window_start, window_end):
        if component.name != "VEVENT":
            continue
        uid = str(component.get("UID", "") or "").strip()
        raw_start = _component_time(component, "DTSTART")
        raw_end = _component_time(component, "DTEND")
        start = _as_datetime(raw_start)
        end = _as_datetime(raw_end, is_end=True)
        # Expansion may fill in DTEND = DTSTART for events written without an end.
        if start is not None and (end is None or (uid in open_ended and end <= start)):
            duration = component.get("DURATION")
            end = start + duration.dt if duration is not None else start + timedelta(hours=1)
        if uid and start is not None and uid in recurring:
            uid = instance_uid(uid, start, zone_name)
        occurrences.append(
            SourceOccurrence(
                uid=uid,
                title=str(component.get("SUMMARY", "") or "").strip(),
                start=start,
                end=end,
                description=str(component.get("DESCRIPTION", "") or ""),
                location=str(component.get("LOCATION", "") or "").strip(),
                status=str(component.get("STATUS", "CONFIRMED") or "CONFIRMED").strip().upper(),
                source_timezone=zone_name,
                transparency=str(component.get("TRANSP", "OPAQUE") or "OPAQUE").strip().upper(),
            )
        )
    occurrences.sort(key=lambda item: (canonical_instant(item.start or window_start, zone_name), item.uid))
    return occurrences


class IcsFeedClient:
    def __init__(self, timeout_seconds: int = 30) -> None:
        self.timeout_seconds = timeout_seconds

    def fetch(self, feed_url: str) -> bytes:
        url = normalize_feed_url(feed_url)
        try:
            response = requests.get(
                url,
                headers={"Accept": "text/calendar, */*;q=0.5"},
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise TransientApiError(f"Failed to fetch feed {url}: {exc}") from exc
        return response.content

    async def expand(self, feed_url: str, window_start: datetime, window_end: datetime) -> list[SourceOccurrence]:
        raw = await asyncio.to_thread(self.fetch, feed_url)
        occurrences = parse_feed(raw, window_start, window_end)
        logger.info("Expanded %d occurrences from %s", len(occurrences), normalize_feed_url(feed_url))
        return occurrences
