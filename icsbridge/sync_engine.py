from __future__ import annotations

import asyncio
import logging
import traceback
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from icsbridge.caldav_client import CalDAVDestination
from icsbridge.config_manager import ConfigManager
from icsbridge.errors import AuthExpiredError
from icsbridge.feed_client import IcsFeedClient
from icsbridge.matcher import ConfidenceMatcher
from icsbridge.models import (
    AppConfig,
    CalDAVConfig,
    SourceOccurrence,
    SyncReport,
    SyncTargetConfig,
    SyncWindow,
    serialize_datetime,
    sync_window,
)
from icsbridge.reconciler import DestinationCalendar, Reconciler
from icsbridge.scheduler import RefreshScheduler
from icsbridge.state_store import StateStore

logger = logging.getLogger(__name__)

DestinationFactory = Callable[[CalDAVConfig], DestinationCalendar]


class FeedSource(Protocol):
    async def expand(self, feed_url: str, window_start: datetime, window_end: datetime) -> list[SourceOccurrence]: ...


def apply_privacy(occurrence: SourceOccurrence, privacy_level: str) -> SourceOccurrence:
    if privacy_level == "busy_only":
        return replace(
            occurrence,
            title="Free" if occurrence.is_free else "Busy",
            description="",
            location="",
        )
    if privacy_level == "show_free_busy":
        return replace(
            occurrence,
            title=occurrence.title or ("Free" if occurrence.is_free else "Busy"),
            description="",
            location="",
        )
    return occurrence


def _run_status(report: SyncReport) -> str:
    if report.success:
        return "success"
    if report.events_created or report.events_updated or report.events_skipped:
        return "partial"
    return "error"


@dataclass
class SyncResult:
    target_id: str
    trigger: str
    status: str
    message: str
    report: SyncReport = field(default_factory=SyncReport)
    window_start: datetime | None = None
    window_end: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "trigger": self.trigger,
            "status": self.status,
            "message": self.message,
            "window_start": serialize_datetime(self.window_start),
            "window_end": serialize_datetime(self.window_end),
            "report": self.report.to_dict(),
        }


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        destination_factory: DestinationFactory | None = None,
        feed: FeedSource | None = None,
        scheduler: RefreshScheduler | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.destination_factory = destination_factory or CalDAVDestination
        self.feed = feed
        self.scheduler = scheduler
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._target_locks: dict[str, asyncio.Lock] = {}

    def _feed_for(self, config: AppConfig) -> FeedSource:
        if self.feed is not None:
            return self.feed
        return IcsFeedClient(timeout_seconds=config.sync.feed_timeout_seconds)

    def build_reconciler(self, config: AppConfig, destination: DestinationCalendar) -> Reconciler:
        return Reconciler(
            destination,
            matcher=ConfidenceMatcher(config.matching),
            mapping_store=self.state_store,
            batch_size=config.sync.batch_size,
            batch_pause_seconds=config.sync.batch_pause_seconds,
            listing_retry=config.sync.listing_retry,
        )

    async def run_target(self, target_id: str, trigger: str = "manual") -> SyncResult:
        """Mirror one sync target's feed into its destination calendar.

        Raises ``ConfigurationError`` before any outbound call when the target
        cannot run, and re-raises ``AuthExpiredError`` after the run has been
        recorded. Every other failure is reported in the result.
        """
        config, target = self.config_manager.require_target(target_id)
        lock = self._target_locks.setdefault(target_id, asyncio.Lock())
        async with lock:
            try:
                return await self._run_locked(config, target, trigger)
            finally:
                self._reschedule(config, target_id)

    async def _run_locked(self, config: AppConfig, target: SyncTargetConfig, trigger: str) -> SyncResult:
        started_at = self.clock()
        window_start, window_end = sync_window(started_at, config.sync)
        window = SyncWindow(calendar_id=target.calendar_id, start=window_start, end=window_end)
        logger.info(
            "Syncing %s into %s for %s..%s (%s)",
            target.target_id,
            target.calendar_id,
            window_start.isoformat(),
            window_end.isoformat(),
            trigger,
        )
        try:
            occurrences = await self._feed_for(config).expand(target.ics_url, window_start, window_end)
            occurrences = [apply_privacy(item, target.privacy_level) for item in occurrences]
            destination = self.destination_factory(config.caldav)
            report = await self.build_reconciler(config, destination).reconcile(occurrences, window)
        except AuthExpiredError as exc:
            report = exc.report if isinstance(exc.report, SyncReport) else SyncReport()
            report.success = False
            report.errors.append(str(exc))
            self._record(target, trigger, "auth_expired", str(exc), report)
            self.state_store.record_audit_event(
                calendar_id=target.calendar_id,
                uid=target.target_id,
                action="auth_expired",
                details={"trigger": trigger, "error": str(exc)},
            )
            logger.error("Authentication expired while syncing %s", target.target_id)
            raise
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            report = SyncReport(errors=[error_message])
            report.duration_ms = int((self.clock() - started_at).total_seconds() * 1000)
            self._record(target, trigger, "error", error_message, report)
            self.state_store.record_audit_event(
                calendar_id=target.calendar_id,
                uid=target.target_id,
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            logger.warning("Sync of %s failed: %s", target.target_id, error_message)
            return SyncResult(
                target_id=target.target_id,
                trigger=trigger,
                status="error",
                message=error_message,
                report=report,
                window_start=window_start,
                window_end=window_end,
            )

        status = _run_status(report)
        message = (
            f"Processed {report.events_processed} events: {report.events_created} created, "
            f"{report.events_updated} updated, {report.events_skipped} skipped, {len(report.errors)} errors."
        )
        run_id = self._record(target, trigger, status, message, report)
        self.state_store.record_audit_event(
            calendar_id=target.calendar_id,
            uid=target.target_id,
            action="sync_run",
            details={"trigger": trigger, "status": status, "decisions": dict(report.decisions)},
            run_id=run_id,
        )
        logger.info("Sync of %s finished: %s", target.target_id, message)
        return SyncResult(
            target_id=target.target_id,
            trigger=trigger,
            status=status,
            message=message,
            report=report,
            window_start=window_start,
            window_end=window_end,
        )

    def _record(self, target: SyncTargetConfig, trigger: str, status: str, message: str, report: SyncReport) -> int:
        return self.state_store.record_sync_run(
            target_id=target.target_id,
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=report.duration_ms,
            events_processed=report.events_processed,
            events_created=report.events_created,
            events_updated=report.events_updated,
            events_skipped=report.events_skipped,
            errors=report.errors,
        )

    def _reschedule(self, config: AppConfig, target_id: str) -> None:
        if self.scheduler is None:
            return
        target = config.find_target(target_id)
        if target is None or not target.active:
            self.scheduler.cancel(target_id)
            return
        self.scheduler.schedule(
            target_id,
            config.sync.interval_seconds,
            lambda: self.run_target(target_id, trigger="scheduled"),
        )

    async def run_all_active(self, trigger: str = "manual") -> dict[str, SyncResult]:
        """Run every active target in turn; one target's failure never stops the others."""
        config = self.config_manager.load()
        results: dict[str, SyncResult] = {}
        for target in config.targets:
            if not target.active:
                continue
            try:
                results[target.target_id] = await self.run_target(target.target_id, trigger=trigger)
            except Exception as exc:
                logger.error("Sync of %s aborted: %s", target.target_id, exc)
                results[target.target_id] = SyncResult(
                    target_id=target.target_id,
                    trigger=trigger,
                    status="auth_expired" if isinstance(exc, AuthExpiredError) else "error",
                    message=f"{type(exc).__name__}: {exc}",
                    report=SyncReport(errors=[str(exc)]),
                )
        return results

    def start_schedules(self, initial_delay_seconds: float = 0.0) -> list[str]:
        """Schedule the first run of every active target; requires a running event loop."""
        if self.scheduler is None:
            return []
        config = self.config_manager.load()
        scheduled: list[str] = []
        for target in config.targets:
            if not target.active:
                continue
            target_id = target.target_id
            self.scheduler.schedule(
                target_id,
                initial_delay_seconds,
                lambda target_id=target_id: self.run_target(target_id, trigger="startup"),
            )
            scheduled.append(target_id)
        return scheduled
