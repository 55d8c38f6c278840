from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from rapidfuzz.distance import Levenshtein

from icsbridge.errors import AuthExpiredError
from icsbridge.keys import base_uid
from icsbridge.models import MatchingConfig, Valid, validate_destination_event

logger = logging.getLogger(__name__)

UID_WEIGHT = 0.4
TIME_WEIGHT = 0.3
TITLE_WEIGHT = 0.2
LOCATION_WEIGHT = 0.1
FUZZY_TITLE_SIMILARITY = 0.85
EARLY_EXIT_CONFIDENCE = 0.95


def normalize_text(value: str | None) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip().lower())


def title_similarity(first: str, second: str) -> float:
    if not first:
        return 1.0 if not second else 0.0
    if not second:
        return 0.0
    return float(Levenshtein.normalized_similarity(first, second))


@dataclass
class MatchResult:
    is_duplicate: bool
    action: str
    confidence: float
    reason: str
    existing_event_id: str | None = None
    signals: list[str] = field(default_factory=list)


class ConfidenceMatcher:
    """Scores how likely two event records describe the same meeting.

    Records are duck-typed: anything exposing ``source_uid``, ``title``,
    ``start``, ``end`` and ``location`` can be compared, so a
    ``SourceOccurrence`` can be scored against a ``DestinationEvent`` and two
    destination events against each other.
    """

    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()

    def _uid_signal(self, a: Any, b: Any) -> str:
        first = str(getattr(a, "source_uid", "") or "")
        second = str(getattr(b, "source_uid", "") or "")
        if not first or not second:
            return ""
        if first == second:
            return f"exact uid {first}"
        if base_uid(first) == base_uid(second):
            return f"base uid {base_uid(first)}"
        return ""

    def _time_signal(self, a: Any, b: Any) -> str:
        a_start, b_start = getattr(a, "start", None), getattr(b, "start", None)
        if not isinstance(a_start, datetime) or not isinstance(b_start, datetime):
            return ""
        a_end = getattr(a, "end", None) or a_start
        b_end = getattr(b, "end", None) or b_start
        tolerance = timedelta(minutes=self.config.time_tolerance_minutes)
        start_diff = abs(a_start - b_start)
        end_diff = abs(a_end - b_end)
        if start_diff <= tolerance and end_diff <= tolerance:
            return f"time within {self.config.time_tolerance_minutes}min"
        return ""

    def _title_signal(self, a: Any, b: Any) -> str:
        first = normalize_text(getattr(a, "title", ""))
        second = normalize_text(getattr(b, "title", ""))
        if not first or not second:
            return ""
        if first == second:
            return "exact title"
        if self.config.fuzzy_matching:
            similarity = title_similarity(first, second)
            if similarity >= FUZZY_TITLE_SIMILARITY:
                return f"fuzzy title {round(similarity * 100)}%"
        return ""

    def _location_signal(self, a: Any, b: Any) -> str:
        first = normalize_text(getattr(a, "location", ""))
        second = normalize_text(getattr(b, "location", ""))
        if not first and not second:
            return "both without location"
        if first and first == second:
            return "same location"
        return ""

    def compare(self, a: Any, b: Any) -> MatchResult:
        score = 0.0
        signals: list[str] = []
        for weight, check in (
            (UID_WEIGHT, self._uid_signal),
            (TIME_WEIGHT, self._time_signal),
            (TITLE_WEIGHT, self._title_signal),
            (LOCATION_WEIGHT, self._location_signal),
        ):
            reason = check(a, b)
            if reason:
                score += weight
                signals.append(reason)
        confidence = min(1.0, max(0.0, round(score, 4)))
        is_duplicate = confidence >= self.config.confidence_threshold
        return MatchResult(
            is_duplicate=is_duplicate,
            action="update" if is_duplicate else "create",
            confidence=confidence,
            reason="; ".join(signals) if signals else "no matching signals",
            existing_event_id=getattr(b, "id", None),
            signals=signals,
        )

    def score(self, a: Any, b: Any) -> float:
        return self.compare(a, b).confidence

    def find_best_match(self, incoming: Any, candidates: Iterable[Any]) -> MatchResult:
        best = MatchResult(
            is_duplicate=False,
            action="create",
            confidence=0.0,
            reason="no existing events to compare",
        )
        for index, candidate in enumerate(candidates):
            if index >= self.config.max_comparisons:
                break
            result = self.compare(incoming, candidate)
            if result.confidence > best.confidence:
                best = result
                if result.confidence >= EARLY_EXIT_CONFIDENCE:
                    break
        return best

    async def find_duplicate(
        self,
        incoming: Any,
        destination: Any,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime,
    ) -> MatchResult:
        try:
            raw_events = await destination.list(calendar_id, time_min, time_max)
        except AuthExpiredError:
            raise
        except Exception as exc:
            logger.warning("Duplicate lookup failed for %s: %s", calendar_id, exc)
            return MatchResult(
                is_duplicate=False,
                action="create",
                confidence=0.0,
                reason=f"duplicate lookup failed: {type(exc).__name__}: {exc}",
            )
        candidates = []
        for raw in raw_events:
            checked = validate_destination_event(raw, calendar_id)
            if isinstance(checked, Valid):
                candidates.append(checked.event)
        return self.find_best_match(incoming, candidates)
