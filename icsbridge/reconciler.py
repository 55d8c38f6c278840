from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Iterable, Protocol, Sequence, TypeVar, Union

from icsbridge.errors import AuthExpiredError, DataError
from icsbridge.keys import build_key, canonical_instant, embed_backlink
from icsbridge.matcher import ConfidenceMatcher
from icsbridge.models import (
    DestinationEvent,
    Invalid,
    RetryPolicy,
    SourceOccurrence,
    SyncReport,
    SyncWindow,
    serialize_datetime,
    validate_destination_event,
)
from icsbridge.retry import call_with_retry

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_PAUSE_SECONDS = 0.1

T = TypeVar("T")


@dataclass(frozen=True)
class Create:
    pass


@dataclass(frozen=True)
class Update:
    destination_id: str
    via: str = "key"


@dataclass(frozen=True)
class Skip:
    reason: str


SyncDecision = Union[Create, Update, Skip]


@dataclass
class ReconcileOutcome:
    key: str
    status: str
    title: str = ""
    destination_id: str = ""
    message: str = ""


class DestinationCalendar(Protocol):
    async def list(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]: ...

    async def insert(self, calendar_id: str, payload: dict[str, Any]) -> str: ...

    async def update(self, calendar_id: str, event_id: str, payload: dict[str, Any]) -> None: ...

    async def delete(self, calendar_id: str, event_id: str) -> None: ...

    async def get(self, calendar_id: str, event_id: str) -> dict[str, Any]: ...


class MappingStore(Protocol):
    def get_mapping(self, calendar_id: str, source_uid: str) -> str | None: ...

    def save_mapping(self, *, calendar_id: str, source_uid: str, destination_id: str, event_key: str) -> None: ...


def partition_batches(items: Sequence[T], size: int = DEFAULT_BATCH_SIZE) -> list[list[T]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def destination_key(event: DestinationEvent) -> str | None:
    source_uid = event.source_uid
    if not source_uid:
        return None
    return build_key(source_uid, canonical_instant(event.start))


def build_destination_index(events: Iterable[DestinationEvent]) -> dict[str, str]:
    index: dict[str, str] = {}
    for event in events:
        key = destination_key(event)
        if key is None:
            continue
        # First listed event wins; later twins are cleanup candidates.
        index.setdefault(key, event.id)
    return index


def prepare_occurrence(occurrence: SourceOccurrence) -> SourceOccurrence:
    """Resolve the final instants and backlink exactly once, before key or payload use."""
    if occurrence.start is None:
        raise DataError(f"Occurrence {occurrence.uid} has no start")
    start = canonical_instant(occurrence.start, occurrence.source_timezone)
    end = canonical_instant(occurrence.end, occurrence.source_timezone) if occurrence.end else start
    return replace(
        occurrence,
        start=start,
        end=end,
        description=embed_backlink(occurrence.description, occurrence.uid),
    )


def occurrence_key(prepared: SourceOccurrence) -> str:
    if prepared.start is None:
        raise DataError(f"Occurrence {prepared.uid} has no start")
    return build_key(prepared.uid, prepared.start)


def build_payload(prepared: SourceOccurrence) -> dict[str, Any]:
    return {
        "title": prepared.title,
        "description": prepared.description,
        "location": prepared.location,
        "start": serialize_datetime(prepared.start),
        "end": serialize_datetime(prepared.end),
        "status": "cancelled" if prepared.status.strip().lower() == "cancelled" else "confirmed",
        "transparency": "transparent" if prepared.is_free else "opaque",
        "source_uid": prepared.uid,
    }


def describe_decision(decision: SyncDecision) -> str:
    if isinstance(decision, Update):
        return f"update:{decision.destination_id}:{decision.via}"
    if isinstance(decision, Skip):
        return f"skip:{decision.reason}"
    return "create"


class Reconciler:
    def __init__(
        self,
        destination: DestinationCalendar,
        *,
        matcher: ConfidenceMatcher | None = None,
        mapping_store: MappingStore | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_pause_seconds: float = DEFAULT_BATCH_PAUSE_SECONDS,
        listing_retry: RetryPolicy | None = None,
    ) -> None:
        self.destination = destination
        self.matcher = matcher or ConfidenceMatcher()
        self.mapping_store = mapping_store
        self.batch_size = max(1, int(batch_size))
        self.batch_pause_seconds = max(0.0, float(batch_pause_seconds))
        self.listing_retry = listing_retry or RetryPolicy()

    async def fetch_destination_events(self, window: SyncWindow) -> list[DestinationEvent]:
        raw_events = await call_with_retry(
            self.listing_retry,
            self.destination.list,
            window.calendar_id,
            window.start,
            window.end,
        )
        events: list[DestinationEvent] = []
        for raw in raw_events:
            checked = validate_destination_event(raw, window.calendar_id)
            if isinstance(checked, Invalid):
                logger.debug("Ignoring destination record: %s", checked.reason)
                continue
            events.append(checked.event)
        return events

    def decide(
        self,
        prepared: SourceOccurrence,
        *,
        calendar_id: str,
        index: dict[str, str],
        events_by_id: dict[str, DestinationEvent],
        claimed: set[str],
    ) -> SyncDecision:
        key = occurrence_key(prepared)
        if key in index:
            return Update(index[key], via="key")

        if self.mapping_store is not None:
            mapped_id = self.mapping_store.get_mapping(calendar_id, prepared.uid)
            if mapped_id and mapped_id in events_by_id and mapped_id not in claimed:
                return Update(mapped_id, via="mapping")

        candidates = [event for event_id, event in events_by_id.items() if event_id not in claimed]
        if candidates:
            match = self.matcher.find_best_match(prepared, candidates)
            if match.is_duplicate and match.existing_event_id:
                logger.info(
                    "Matched %s to %s with confidence %.2f (%s)",
                    prepared.uid,
                    match.existing_event_id,
                    match.confidence,
                    match.reason,
                )
                return Update(match.existing_event_id, via="match")
        return Create()

    def plan(
        self,
        occurrences: Sequence[SourceOccurrence],
        calendar_id: str,
        destination_events: Sequence[DestinationEvent],
    ) -> list[tuple[str, SourceOccurrence, SyncDecision]]:
        index = build_destination_index(destination_events)
        events_by_id = {event.id: event for event in destination_events}
        prepared_items: list[tuple[str, SourceOccurrence | None, str]] = []
        claimed: set[str] = set()
        for position, occurrence in enumerate(occurrences):
            problem = occurrence.problem()
            if problem:
                prepared_items.append((occurrence.uid or f"#{position}", None, problem))
                continue
            prepared = prepare_occurrence(occurrence)
            key = occurrence_key(prepared)
            if key in index:
                claimed.add(index[key])
            prepared_items.append((key, prepared, ""))

        planned: list[tuple[str, SourceOccurrence, SyncDecision]] = []
        for position, (key, prepared, problem) in enumerate(prepared_items):
            if prepared is None:
                planned.append((key, occurrences[position], Skip(problem)))
                continue
            decision = self.decide(
                prepared,
                calendar_id=calendar_id,
                index=index,
                events_by_id=events_by_id,
                claimed=claimed,
            )
            if isinstance(decision, Update):
                claimed.add(decision.destination_id)
            planned.append((key, prepared, decision))
        return planned

    async def _apply(
        self,
        calendar_id: str,
        key: str,
        prepared: SourceOccurrence,
        decision: SyncDecision,
    ) -> ReconcileOutcome:
        if isinstance(decision, Skip):
            return ReconcileOutcome(key=key, status="skipped", title=prepared.title, message=decision.reason)
        payload = build_payload(prepared)
        try:
            if isinstance(decision, Update):
                await self.destination.update(calendar_id, decision.destination_id, payload)
                destination_id = decision.destination_id
                status = "updated"
            else:
                destination_id = await self.destination.insert(calendar_id, payload)
                status = "created"
        except AuthExpiredError:
            raise
        except Exception as exc:
            logger.warning("Failed to sync %s: %s", key, exc)
            return ReconcileOutcome(
                key=key,
                status="error",
                title=prepared.title,
                message=f'Failed to sync event "{prepared.title}": {exc}',
            )
        self._remember(calendar_id, prepared.uid, destination_id, key)
        return ReconcileOutcome(key=key, status=status, title=prepared.title, destination_id=destination_id)

    def _remember(self, calendar_id: str, source_uid: str, destination_id: str, key: str) -> None:
        if self.mapping_store is None or not destination_id:
            return
        try:
            self.mapping_store.save_mapping(
                calendar_id=calendar_id,
                source_uid=source_uid,
                destination_id=destination_id,
                event_key=key,
            )
        except Exception as exc:
            logger.warning("Could not persist mapping for %s: %s", key, exc)

    async def reconcile(self, occurrences: Sequence[SourceOccurrence], window: SyncWindow) -> SyncReport:
        started = time.monotonic()
        report = SyncReport(events_processed=len(occurrences))
        if not occurrences:
            report.success = True
            return report

        try:
            destination_events = await self.fetch_destination_events(window)
        except AuthExpiredError as exc:
            report.duration_ms = int((time.monotonic() - started) * 1000)
            exc.report = report
            raise
        except Exception as exc:
            report.errors.append(f"Failed to list destination events: {type(exc).__name__}: {exc}")
            report.duration_ms = int((time.monotonic() - started) * 1000)
            return report

        planned = self.plan(occurrences, window.calendar_id, destination_events)
        for key, _, decision in planned:
            report.decisions[key] = describe_decision(decision)

        batches = partition_batches(planned, self.batch_size)
        for batch_number, batch in enumerate(batches, start=1):
            results = await asyncio.gather(
                *(self._apply(window.calendar_id, key, prepared, decision) for key, prepared, decision in batch),
                return_exceptions=True,
            )
            auth_error: AuthExpiredError | None = None
            for (key, prepared, _), result in zip(batch, results):
                if isinstance(result, AuthExpiredError):
                    auth_error = auth_error or result
                    continue
                if isinstance(result, BaseException):
                    report.errors.append(f'Failed to sync event "{prepared.title}": {result}')
                    continue
                if result.status == "created":
                    report.events_created += 1
                elif result.status == "updated":
                    report.events_updated += 1
                elif result.status == "skipped":
                    report.events_skipped += 1
                else:
                    report.errors.append(result.message)
            if auth_error is not None:
                report.success = False
                report.duration_ms = int((time.monotonic() - started) * 1000)
                auth_error.report = report
                logger.error("Authentication expired during batch %d/%d", batch_number, len(batches))
                raise auth_error
            logger.debug("Batch %d/%d complete (%d events)", batch_number, len(batches), len(batch))
            if batch_number < len(batches) and self.batch_pause_seconds > 0:
                await asyncio.sleep(self.batch_pause_seconds)

        report.success = not report.errors
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report
