from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icsbridge.keys import extract_backlink


PRIVACY_LEVELS = ("busy_only", "show_free_busy", "full_details")
WINDOW_MODES = ("month", "days")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def resolve_zone(name: str | None) -> ZoneInfo | timezone:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
        )

    def is_complete(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    wait_seconds: float = 2.0
    backoff_multiplier: float = 1.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryPolicy":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            wait_seconds=max(0.0, float(data.get("wait_seconds", 2.0))),
            backoff_multiplier=max(1.0, float(data.get("backoff_multiplier", 1.0))),
        )


@dataclass
class SyncConfig:
    window_mode: str = "month"
    window_days: int = 31
    interval_seconds: int = 3600
    timezone: str = "UTC"
    batch_size: int = 5
    batch_pause_seconds: float = 0.1
    feed_timeout_seconds: int = 30
    listing_retry: RetryPolicy = field(default_factory=RetryPolicy)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        mode = str(data.get("window_mode", "month")).strip().lower()
        if mode not in WINDOW_MODES:
            mode = "month"
        return cls(
            window_mode=mode,
            window_days=max(1, int(data.get("window_days", 31))),
            interval_seconds=max(30, int(data.get("interval_seconds", 3600))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            batch_size=max(1, int(data.get("batch_size", 5))),
            batch_pause_seconds=max(0.0, float(data.get("batch_pause_seconds", 0.1))),
            feed_timeout_seconds=max(1, int(data.get("feed_timeout_seconds", 30))),
            listing_retry=RetryPolicy.from_dict(data.get("listing_retry")),
        )


@dataclass
class MatchingConfig:
    time_tolerance_minutes: int = 5
    fuzzy_matching: bool = True
    confidence_threshold: float = 0.8
    max_comparisons: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MatchingConfig":
        data = data or {}
        threshold = float(data.get("confidence_threshold", 0.8))
        return cls(
            time_tolerance_minutes=max(0, int(data.get("time_tolerance_minutes", 5))),
            fuzzy_matching=bool(data.get("fuzzy_matching", True)),
            confidence_threshold=min(1.0, max(0.0, threshold)),
            max_comparisons=max(1, int(data.get("max_comparisons", 1000))),
        )


@dataclass
class CleanupConfig:
    max_deletions: int = 25
    preserve_newest: bool = False
    create_backup: bool = True
    skip_patterns: list[str] = field(default_factory=list)
    backup_retention_days: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CleanupConfig":
        data = data or {}
        return cls(
            max_deletions=max(0, int(data.get("max_deletions", 25))),
            preserve_newest=bool(data.get("preserve_newest", False)),
            create_backup=bool(data.get("create_backup", True)),
            skip_patterns=[str(x).strip() for x in data.get("skip_patterns", []) if str(x).strip()],
            backup_retention_days=max(1, int(data.get("backup_retention_days", 30))),
        )


@dataclass
class SyncTargetConfig:
    target_id: str
    name: str = ""
    ics_url: str = ""
    calendar_id: str = ""
    privacy_level: str = "full_details"
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncTargetConfig":
        privacy = str(data.get("privacy_level", "full_details")).strip().lower()
        if privacy not in PRIVACY_LEVELS:
            privacy = "full_details"
        target_id = str(data.get("target_id", "")).strip()
        return cls(
            target_id=target_id,
            name=str(data.get("name", "")).strip() or target_id,
            ics_url=str(data.get("ics_url", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            privacy_level=privacy,
            active=bool(data.get("active", True)),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    cleanup: CleanupConfig = field(default_factory=CleanupConfig)
    targets: list[SyncTargetConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        targets: list[SyncTargetConfig] = []
        seen: set[str] = set()
        raw_targets = data.get("targets", [])
        if isinstance(raw_targets, list):
            for item in raw_targets:
                if not isinstance(item, dict):
                    continue
                target = SyncTargetConfig.from_dict(item)
                if not target.target_id or target.target_id in seen:
                    continue
                seen.add(target.target_id)
                targets.append(target)
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            matching=MatchingConfig.from_dict(data.get("matching")),
            cleanup=CleanupConfig.from_dict(data.get("cleanup")),
            targets=targets,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def find_target(self, target_id: str) -> SyncTargetConfig | None:
        for target in self.targets:
            if target.target_id == target_id:
                return target
        return None


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class SourceOccurrence:
    uid: str
    title: str
    start: datetime | None
    end: datetime | None
    description: str = ""
    location: str = ""
    status: str = "CONFIRMED"
    source_timezone: str = ""
    transparency: str = "OPAQUE"

    @property
    def source_uid(self) -> str:
        return self.uid

    @property
    def is_free(self) -> bool:
        return self.transparency.strip().upper() == "TRANSPARENT"

    def problem(self) -> str:
        if not self.uid:
            return "missing uid"
        if not self.title:
            return "missing title"
        if self.start is None:
            return "missing start"
        return ""


@dataclass
class DestinationEvent:
    id: str
    title: str
    start: datetime
    end: datetime
    created_at: datetime | None = None
    description: str = ""
    location: str = ""
    calendar_id: str = ""

    @property
    def source_uid(self) -> str | None:
        return extract_backlink(self.description)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["created_at"] = serialize_datetime(self.created_at)
        payload["source_uid"] = self.source_uid
        return payload


@dataclass
class Valid:
    event: DestinationEvent


@dataclass
class Invalid:
    reason: str
    raw: Any = None


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


def validate_destination_event(raw: Any, calendar_id: str = "") -> Valid | Invalid:
    """Turn a raw destination payload into a ``DestinationEvent``.

    Records without an id, a title or a parseable start are reported as
    ``Invalid`` so callers can drop them before matching or grouping.
    """
    if isinstance(raw, DestinationEvent):
        return Valid(raw)
    if not isinstance(raw, dict):
        return Invalid("payload is not a mapping", raw)
    event_id = _text(raw.get("id")).strip()
    if not event_id:
        return Invalid("missing id", raw)
    title = _text(raw.get("title", raw.get("summary"))).strip()
    if not title:
        return Invalid("missing title", raw)
    try:
        start = parse_iso_datetime(raw.get("start"))
        end = parse_iso_datetime(raw.get("end"))
        created_at = parse_iso_datetime(raw.get("created_at", raw.get("created")))
    except (TypeError, ValueError):
        return Invalid("unparseable datetime", raw)
    if start is None:
        return Invalid("missing start", raw)
    return Valid(
        DestinationEvent(
            id=event_id,
            title=title,
            start=start,
            end=end or start,
            created_at=created_at,
            description=_text(raw.get("description")),
            location=_text(raw.get("location")),
            calendar_id=_text(raw.get("calendar_id")).strip() or calendar_id,
        )
    )


@dataclass
class SyncWindow:
    calendar_id: str
    start: datetime
    end: datetime


@dataclass
class SyncReport:
    success: bool = False
    events_processed: int = 0
    events_created: int = 0
    events_updated: int = 0
    events_skipped: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    decisions: dict[str, str] = field(default_factory=dict)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "events_processed": self.events_processed,
            "events_created": self.events_created,
            "events_updated": self.events_updated,
            "events_skipped": self.events_skipped,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }


def planning_window(now: datetime, window_days: int) -> tuple[datetime, datetime]:
    now_aware = _ensure_tz(now)
    start = datetime.combine(now_aware.date(), time.min, tzinfo=now_aware.tzinfo)
    end_date = start.date() + timedelta(days=max(1, window_days) - 1)
    end = datetime.combine(end_date, time.max, tzinfo=now_aware.tzinfo)
    return start, end


def month_window(now: datetime) -> tuple[datetime, datetime]:
    now_aware = _ensure_tz(now)
    first = now_aware.date().replace(day=1)
    next_first = (first + timedelta(days=32)).replace(day=1)
    start = datetime.combine(first, time.min, tzinfo=now_aware.tzinfo)
    end = datetime.combine(next_first - timedelta(days=1), time(23, 59, 59), tzinfo=now_aware.tzinfo)
    return start, end


def sync_window(now: datetime, config: SyncConfig) -> tuple[datetime, datetime]:
    local_now = _ensure_tz(now).astimezone(resolve_zone(config.timezone))
    if config.window_mode == "days":
        return planning_window(local_now, config.window_days)
    return month_window(local_now)
