from __future__ import annotations

import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Sequence

from icsbridge.errors import AuthExpiredError, ConfigurationError
from icsbridge.keys import canonical_instant, extract_backlink, format_instant
from icsbridge.matcher import ConfidenceMatcher
from icsbridge.models import (
    CleanupConfig,
    DestinationEvent,
    Invalid,
    parse_iso_datetime,
    validate_destination_event,
)
from icsbridge.reconciler import DestinationCalendar

logger = logging.getLogger(__name__)

CLEANUP_MODES = ("dry-run", "batch", "interactive")
DEFAULT_LOOKBACK = timedelta(days=90)
DEFAULT_LOOKAHEAD = timedelta(days=365)
FUZZY_GUARD = timedelta(hours=2)

EXACT_CONFIDENCE = 100
PATTERN_CONFIDENCE = 95
FUZZY_CONFIDENCE = 85

STOPWORD_PATTERN = re.compile(r"\b(the|and|or|a|an|in|on|at|to|for|of|with|by)\b")

ConfirmDeletion = Callable[["DuplicateGroup", DestinationEvent], Awaitable[bool]]


def _norm(value: str | None) -> str:
    return str(value or "").strip().lower()


def event_hash(event: DestinationEvent) -> str:
    content = "|".join(
        (
            _norm(event.title),
            format_instant(event.start),
            _norm(event.description),
            _norm(event.location),
        )
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def fuzzy_title(title: str | None) -> str:
    text = STOPWORD_PATTERN.sub("", _norm(title))
    text = re.sub(r"[^\w\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


def fuzzy_hash(event: DestinationEvent) -> str:
    hour = canonical_instant(event.start).replace(minute=0, second=0, microsecond=0)
    content = f"{fuzzy_title(event.title)}|{format_instant(hour)}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def validate_fuzzy_group(events: Sequence[DestinationEvent], guard: timedelta = FUZZY_GUARD) -> list[DestinationEvent]:
    """Keep only members whose start lies within ``guard`` of another member.

    Returns an empty list when fewer than two members survive, so the
    caller drops the group instead of falling back to the raw bucket.
    """
    survivors = [
        event
        for event in events
        if any(other is not event and abs(event.start - other.start) <= guard for other in events)
    ]
    return survivors if len(survivors) > 1 else []


def _creation_order(preserve_newest: bool) -> Callable[[DestinationEvent], tuple[Any, ...]]:
    def key(event: DestinationEvent) -> tuple[Any, ...]:
        if event.created_at is None:
            return (1, 0.0, event.id)
        stamp = event.created_at.timestamp()
        return (0, -stamp if preserve_newest else stamp, event.id)

    return key


def _new_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(3)}"


@dataclass
class DuplicateGroup:
    group_id: str
    primary: DestinationEvent
    duplicates: list[DestinationEvent]
    match_type: str
    confidence: int
    member_scores: dict[str, float] = field(default_factory=dict)

    @property
    def members(self) -> list[DestinationEvent]:
        return [self.primary, *self.duplicates]

    def to_dict(self) -> dict[str, Any]:
        return {
            "group_id": self.group_id,
            "match_type": self.match_type,
            "confidence": self.confidence,
            "primary": self.primary.to_dict(),
            "duplicates": [item.to_dict() for item in self.duplicates],
            "member_scores": dict(self.member_scores),
        }


def _compile(pattern: Any) -> re.Pattern[str] | None:
    if pattern is None or pattern == "":
        return None
    if isinstance(pattern, re.Pattern):
        return pattern
    try:
        return re.compile(str(pattern), re.IGNORECASE)
    except re.error as exc:
        raise ConfigurationError(f"Invalid filter pattern {pattern!r}: {exc}") from exc


@dataclass
class CleanupFilters:
    date_range: tuple[datetime, datetime] | None = None
    calendar_ids: list[str] = field(default_factory=list)
    title_patterns: list[str] = field(default_factory=list)
    description_patterns: list[str] = field(default_factory=list)
    include_pattern: re.Pattern[str] | None = None
    exclude_pattern: re.Pattern[str] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CleanupFilters":
        data = data or {}
        date_range = None
        raw_range = data.get("date_range")
        if isinstance(raw_range, dict):
            start = parse_iso_datetime(raw_range.get("start"))
            end = parse_iso_datetime(raw_range.get("end"))
            if start is not None and end is not None:
                date_range = (start, end)
        return cls(
            date_range=date_range,
            calendar_ids=[str(x).strip() for x in data.get("calendar_ids") or [] if str(x).strip()],
            title_patterns=[str(x) for x in data.get("title_patterns") or [] if str(x).strip()],
            description_patterns=[str(x) for x in data.get("description_patterns") or [] if str(x).strip()],
            include_pattern=_compile(data.get("include_pattern")),
            exclude_pattern=_compile(data.get("exclude_pattern")),
            created_after=parse_iso_datetime(data.get("created_after")),
            created_before=parse_iso_datetime(data.get("created_before")),
        )

    def matches(self, event: DestinationEvent) -> bool:
        """True when ``event`` satisfies every active filter."""
        if self.date_range is not None:
            start, end = self.date_range
            if not (start <= event.start <= end):
                return False
        if self.calendar_ids and event.calendar_id not in self.calendar_ids:
            return False
        if self.title_patterns:
            title = _norm(event.title)
            if not any(_norm(pattern) in title for pattern in self.title_patterns):
                return False
        if self.description_patterns:
            description = _norm(event.description)
            if not description or not any(_norm(pattern) in description for pattern in self.description_patterns):
                return False
        if self.include_pattern is not None:
            if not (self.include_pattern.search(event.title) or self.include_pattern.search(event.description or "")):
                return False
        if self.exclude_pattern is not None:
            if self.exclude_pattern.search(event.title) or self.exclude_pattern.search(event.description or ""):
                return False
        if self.created_after is not None:
            if event.created_at is None or event.created_at < self.created_after:
                return False
        if self.created_before is not None:
            if event.created_at is None or event.created_at > self.created_before:
                return False
        return True


@dataclass
class CleanupOptions:
    mode: str = "dry-run"
    filters: CleanupFilters | None = None
    preserve_newest: bool = False
    max_deletions: int | None = 25
    create_backup: bool = True
    skip_patterns: list[str] = field(default_factory=list)
    backup_retention_days: int = 30

    def __post_init__(self) -> None:
        if self.mode not in CLEANUP_MODES:
            raise ConfigurationError(f"Unknown cleanup mode: {self.mode}")

    @classmethod
    def from_config(
        cls,
        config: CleanupConfig,
        *,
        mode: str = "dry-run",
        filters: CleanupFilters | None = None,
        **overrides: Any,
    ) -> "CleanupOptions":
        values: dict[str, Any] = {
            "preserve_newest": config.preserve_newest,
            "max_deletions": config.max_deletions,
            "create_backup": config.create_backup,
            "skip_patterns": list(config.skip_patterns),
            "backup_retention_days": config.backup_retention_days,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(mode=mode, filters=filters, **values)


@dataclass
class CleanupReport:
    operation_id: str
    mode: str = "dry-run"
    groups_analyzed: int = 0
    duplicates_found: int = 0
    duplicates_deleted: int = 0
    deleted_event_ids: list[str] = field(default_factory=list)
    preserved_event_ids: list[str] = field(default_factory=list)
    candidate_event_ids: list[str] = field(default_factory=list)
    skipped_groups: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    backup_id: str | None = None
    groups: list[DuplicateGroup] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "mode": self.mode,
            "groups_analyzed": self.groups_analyzed,
            "duplicates_found": self.duplicates_found,
            "duplicates_deleted": self.duplicates_deleted,
            "deleted_event_ids": list(self.deleted_event_ids),
            "preserved_event_ids": list(self.preserved_event_ids),
            "candidate_event_ids": list(self.candidate_event_ids),
            "skipped_groups": list(self.skipped_groups),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "backup_id": self.backup_id,
            "groups": [group.to_dict() for group in self.groups],
        }


@dataclass
class CleanupAnalysis:
    total_events: int
    groups: list[DuplicateGroup]
    errors: list[str] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "exact_matches": sum(1 for group in self.groups if group.match_type == "exact"),
            "fuzzy_matches": sum(1 for group in self.groups if group.match_type == "fuzzy"),
            "pattern_matches": sum(1 for group in self.groups if group.match_type == "pattern"),
            "total_duplicates": sum(len(group.duplicates) for group in self.groups),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_events": self.total_events,
            "summary": self.summary,
            "groups": [group.to_dict() for group in self.groups],
            "errors": list(self.errors),
        }


@dataclass
class RestoreReport:
    backup_id: str
    restored_event_ids: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "backup_id": self.backup_id,
            "restored_event_ids": list(self.restored_event_ids),
            "errors": list(self.errors),
        }


def restore_payload(stored: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": stored.get("title") or stored.get("summary") or "",
        "description": stored.get("description") or "",
        "location": stored.get("location") or "",
        "start": stored.get("start"),
        "end": stored.get("end") or stored.get("start"),
        "status": stored.get("status") or "confirmed",
        "transparency": stored.get("transparency") or "opaque",
        "source_uid": stored.get("source_uid") or extract_backlink(stored.get("description")) or "",
    }


class DuplicateCleanupAnalyzer:
    """Finds redundant destination events and removes them within safety limits."""

    def __init__(
        self,
        destination: DestinationCalendar,
        state_store: Any = None,
        matcher: ConfidenceMatcher | None = None,
    ) -> None:
        self.destination = destination
        self.state_store = state_store
        self.matcher = matcher or ConfidenceMatcher()

    async def fetch_events(
        self,
        calendar_ids: Iterable[str],
        date_range: tuple[datetime, datetime] | None = None,
        errors: list[str] | None = None,
    ) -> list[DestinationEvent]:
        now = datetime.now(timezone.utc)
        time_min, time_max = date_range or (now - DEFAULT_LOOKBACK, now + DEFAULT_LOOKAHEAD)
        events: list[DestinationEvent] = []
        for calendar_id in calendar_ids:
            try:
                raw_events = await self.destination.list(calendar_id, time_min, time_max)
            except (AuthExpiredError, ConfigurationError):
                raise
            except Exception as exc:
                message = f"Failed to fetch events from calendar {calendar_id}: {exc}"
                logger.warning("%s", message)
                if errors is None:
                    raise
                errors.append(message)
                continue
            kept = 0
            for raw in raw_events:
                checked = validate_destination_event(raw, calendar_id)
                if isinstance(checked, Invalid):
                    logger.debug("Ignoring destination record in %s: %s", calendar_id, checked.reason)
                    continue
                events.append(checked.event)
                kept += 1
            logger.info("Fetched %d events from %s", kept, calendar_id)
        return events

    def _build_group(
        self,
        group_id: str,
        members: Sequence[DestinationEvent],
        match_type: str,
        confidence: int,
        preserve_newest: bool,
    ) -> DuplicateGroup:
        ordered = sorted(members, key=_creation_order(preserve_newest))
        return DuplicateGroup(
            group_id=group_id,
            primary=ordered[0],
            duplicates=list(ordered[1:]),
            match_type=match_type,
            confidence=confidence,
        )

    def group_duplicates(
        self,
        events: Sequence[DestinationEvent],
        preserve_newest: bool = False,
    ) -> list[DuplicateGroup]:
        groups: list[DuplicateGroup] = []
        claimed: set[str] = set()

        exact_buckets: dict[str, list[DestinationEvent]] = {}
        for event in events:
            exact_buckets.setdefault(event_hash(event), []).append(event)
        for digest, members in exact_buckets.items():
            if len(members) < 2:
                continue
            groups.append(self._build_group(f"exact_{digest[:8]}", members, "exact", EXACT_CONFIDENCE, preserve_newest))
            claimed.update(event.id for event in members)

        fuzzy_buckets: dict[str, list[DestinationEvent]] = {}
        for event in events:
            if event.id not in claimed:
                fuzzy_buckets.setdefault(fuzzy_hash(event), []).append(event)
        for digest, members in fuzzy_buckets.items():
            if len(members) < 2:
                continue
            accepted = validate_fuzzy_group(members)
            if not accepted:
                logger.debug("Discarded fuzzy bucket %s: starts more than %s apart", digest, FUZZY_GUARD)
                continue
            group = self._build_group(f"fuzzy_{digest}", accepted, "fuzzy", FUZZY_CONFIDENCE, False)
            group.member_scores = {dup.id: self.matcher.score(group.primary, dup) for dup in group.duplicates}
            groups.append(group)
            claimed.update(event.id for event in accepted)

        uid_buckets: dict[str, list[DestinationEvent]] = {}
        for event in events:
            if event.id in claimed:
                continue
            source_uid = event.source_uid
            if source_uid:
                uid_buckets.setdefault(source_uid, []).append(event)
        for source_uid, members in uid_buckets.items():
            if len(members) < 2:
                continue
            digest = hashlib.sha256(source_uid.encode("utf-8")).hexdigest()
            groups.append(
                self._build_group(f"uid_{digest[:8]}", members, "pattern", PATTERN_CONFIDENCE, False)
            )

        logger.info("Found %d duplicate groups among %d events", len(groups), len(events))
        return groups

    def apply_filters(self, groups: Sequence[DuplicateGroup], filters: CleanupFilters | None) -> list[DuplicateGroup]:
        if filters is None:
            return list(groups)
        return [group for group in groups if any(filters.matches(event) for event in group.members)]

    async def analyze(self, calendar_ids: Sequence[str], filters: CleanupFilters | None = None) -> CleanupAnalysis:
        errors: list[str] = []
        events = await self.fetch_events(calendar_ids, filters.date_range if filters else None, errors)
        groups = self.apply_filters(self.group_duplicates(events), filters)
        return CleanupAnalysis(total_events=len(events), groups=groups, errors=errors)

    def _apply_skip_patterns(
        self,
        groups: Sequence[DuplicateGroup],
        skip_patterns: Sequence[str],
        report: CleanupReport,
    ) -> list[DuplicateGroup]:
        patterns = [_norm(pattern) for pattern in skip_patterns if _norm(pattern)]
        if not patterns:
            return list(groups)
        kept: list[DuplicateGroup] = []
        for group in groups:
            if any(pattern in _norm(dup.title) for dup in group.duplicates for pattern in patterns):
                report.skipped_groups.append(group.group_id)
                report.warnings.append(f"Skipped group {group.group_id} due to skip pattern match")
                continue
            kept.append(group)
        return kept

    def _apply_limit(
        self,
        groups: Sequence[DuplicateGroup],
        max_deletions: int | None,
        report: CleanupReport,
    ) -> list[DuplicateGroup]:
        total = sum(len(group.duplicates) for group in groups)
        if max_deletions is None or total <= max_deletions:
            return list(groups)
        report.warnings.append(f"Found {total} duplicates, but limited to {max_deletions} deletions")
        remaining = max_deletions
        admitted: list[DuplicateGroup] = []
        for group in sorted(groups, key=lambda item: item.confidence, reverse=True):
            if len(group.duplicates) <= remaining:
                admitted.append(group)
                remaining -= len(group.duplicates)
        return admitted

    async def _create_backup(
        self,
        groups: Sequence[DuplicateGroup],
        operation_id: str,
        retention_days: int,
    ) -> tuple[str, list[dict[str, Any]]]:
        backup_id = _new_id("backup")
        stored: list[dict[str, Any]] = []
        for group in groups:
            for duplicate in group.duplicates:
                try:
                    payload = await self.destination.get(duplicate.calendar_id, duplicate.id)
                except AuthExpiredError:
                    raise
                except Exception as exc:
                    logger.warning("Could not back up event %s: %s", duplicate.id, exc)
                    continue
                stored.append(
                    {
                        "event_id": duplicate.id,
                        "calendar_id": duplicate.calendar_id,
                        "payload": payload,
                        "reason": (
                            f"Duplicate of {group.primary.id} "
                            f"({group.match_type} match, {group.confidence}% confidence)"
                        ),
                    }
                )
        expires_at = datetime.now(timezone.utc) + timedelta(days=max(1, retention_days))
        self.state_store.save_backup(
            backup_id=backup_id,
            operation_id=operation_id,
            expires_at=expires_at,
            events=stored,
        )
        logger.info("Created backup %s with %d events", backup_id, len(stored))
        return backup_id, stored

    def _record(self, operation_id: str, group: DuplicateGroup, duplicate: DestinationEvent, status: str, message: str = "") -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.record_resolution(
                operation_id=operation_id,
                group_id=group.group_id,
                calendar_id=duplicate.calendar_id,
                primary_event_id=group.primary.id,
                event_id=duplicate.id,
                match_type=group.match_type,
                confidence=group.confidence,
                status=status,
                message=message,
            )
            if status == "deleted":
                self.state_store.forget_destination(duplicate.calendar_id, duplicate.id)
        except Exception as exc:
            logger.warning("Could not record resolution for %s: %s", duplicate.id, exc)

    async def cleanup(
        self,
        calendar_ids: Sequence[str],
        options: CleanupOptions | None = None,
        confirm: ConfirmDeletion | None = None,
    ) -> CleanupReport:
        options = options or CleanupOptions()
        if options.mode == "interactive" and confirm is None:
            raise ConfigurationError("Interactive cleanup requires a confirmation callback.")
        if options.mode != "dry-run" and options.create_backup and self.state_store is None:
            raise ConfigurationError("Backups were requested but no state store is configured.")

        report = CleanupReport(operation_id=_new_id("cleanup"), mode=options.mode)
        logger.info("Starting duplicate cleanup %s (%s) on %s", report.operation_id, options.mode, list(calendar_ids))

        filters = options.filters
        events = await self.fetch_events(calendar_ids, filters.date_range if filters else None, report.errors)
        groups = self.apply_filters(self.group_duplicates(events, options.preserve_newest), filters)
        report.groups = groups
        report.groups_analyzed = len(groups)
        report.duplicates_found = sum(len(group.duplicates) for group in groups)

        admitted = self._apply_skip_patterns(groups, options.skip_patterns, report)
        admitted = self._apply_limit(admitted, options.max_deletions, report)

        for group in admitted:
            report.preserved_event_ids.append(group.primary.id)
            report.candidate_event_ids.extend(dup.id for dup in group.duplicates)

        if options.mode == "dry-run":
            logger.info(
                "Dry run %s would delete %d duplicates from %d groups",
                report.operation_id,
                len(report.candidate_event_ids),
                len(admitted),
            )
            return report

        try:
            if options.create_backup and report.candidate_event_ids:
                report.backup_id, _ = await self._create_backup(
                    admitted, report.operation_id, options.backup_retention_days
                )

            for group in admitted:
                logger.info(
                    "Processing group %s (%s match, %d%% confidence), preserving %s",
                    group.group_id,
                    group.match_type,
                    group.confidence,
                    group.primary.id,
                )
                for duplicate in group.duplicates:
                    await self._delete_one(group, duplicate, options, confirm, report)
        except AuthExpiredError as exc:
            exc.report = report
            raise

        logger.info(
            "Cleanup %s finished: %d/%d duplicates deleted",
            report.operation_id,
            report.duplicates_deleted,
            report.duplicates_found,
        )
        return report

    async def _delete_one(
        self,
        group: DuplicateGroup,
        duplicate: DestinationEvent,
        options: CleanupOptions,
        confirm: ConfirmDeletion | None,
        report: CleanupReport,
    ) -> None:
        if options.mode == "interactive" and confirm is not None:
            if not await confirm(group, duplicate):
                report.warnings.append(f"Deletion of {duplicate.id} declined")
                self._record(report.operation_id, group, duplicate, "declined")
                return
        try:
            await self.destination.delete(duplicate.calendar_id, duplicate.id)
        except AuthExpiredError:
            raise
        except Exception as exc:
            message = f"Failed to delete event {duplicate.id}: {exc}"
            logger.error(message)
            report.errors.append(message)
            self._record(report.operation_id, group, duplicate, "failed", str(exc))
            return
        report.duplicates_deleted += 1
        report.deleted_event_ids.append(duplicate.id)
        self._record(report.operation_id, group, duplicate, "deleted")

    async def restore_backup(self, backup_id: str) -> RestoreReport:
        if self.state_store is None:
            raise ConfigurationError("No state store is configured.")
        backup = self.state_store.get_backup(backup_id)
        if backup is None:
            raise ConfigurationError(f"Unknown backup: {backup_id}")
        report = RestoreReport(backup_id=backup_id)
        for item in backup["events"]:
            try:
                new_id = await self.destination.insert(item["calendar_id"], restore_payload(item["payload"]))
            except AuthExpiredError:
                raise
            except Exception as exc:
                report.errors.append(f"Failed to restore event {item['event_id']}: {exc}")
                continue
            report.restored_event_ids.append(new_id)
        logger.info("Restored %d/%d events from %s", len(report.restored_event_ids), len(backup["events"]), backup_id)
        return report

    def expire_backups(self, now: datetime | None = None) -> list[str]:
        if self.state_store is None:
            return []
        expired = self.state_store.delete_expired_backups(now)
        if expired:
            logger.info("Expired %d backups", len(expired))
        return expired

    def list_backups(self) -> list[dict[str, Any]]:
        if self.state_store is None:
            return []
        return self.state_store.list_backups()

