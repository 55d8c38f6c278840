from __future__ import annotations

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

BACKLINK_PREFIX = "Original UID:"
BACKLINK_PATTERN = re.compile(r"^[ \t]*Original UID:[ \t]*(\S.*?)[ \t]*$", re.MULTILINE)
INSTANCE_SUFFIX_PATTERN = re.compile(r"^(.+)-\d{10,}$")


def canonical_instant(value: datetime, source_timezone: str | None = None) -> datetime:
    """Resolve ``value`` to the instant that is both written and looked up.

    Naive values are wall-clock times in ``source_timezone`` (UTC when absent
    or unknown). The result is UTC, truncated to millisecond precision.
    """
    if value.tzinfo is None:
        zone: ZoneInfo | timezone = timezone.utc
        if source_timezone:
            try:
                zone = ZoneInfo(source_timezone)
            except (ZoneInfoNotFoundError, ValueError):
                zone = timezone.utc
        value = value.replace(tzinfo=zone)
    utc_value = value.astimezone(timezone.utc)
    return utc_value.replace(microsecond=(utc_value.microsecond // 1000) * 1000)


def format_instant(value: datetime) -> str:
    instant = canonical_instant(value)
    return instant.strftime("%Y-%m-%dT%H:%M:%S.") + f"{instant.microsecond // 1000:03d}Z"


def build_key(uid: str, instant: datetime) -> str:
    return f"{uid}:{format_instant(instant)}"


def extract_backlink(description: str | None) -> str | None:
    if not description:
        return None
    match = BACKLINK_PATTERN.search(description)
    if not match:
        return None
    return match.group(1).strip() or None


def embed_backlink(description: str | None, uid: str) -> str:
    marker = f"{BACKLINK_PREFIX} {uid}"
    text = description or ""
    existing = extract_backlink(text)
    if existing == uid:
        return text
    if existing is not None:
        # A stale marker is rewritten in place so the description never carries two.
        return BACKLINK_PATTERN.sub(lambda _match: marker, text, count=1)
    if not text.strip():
        return marker
    return f"{text.rstrip()}\n\n{marker}"


def base_uid(uid: str) -> str:
    match = INSTANCE_SUFFIX_PATTERN.match(uid or "")
    if match:
        return match.group(1)
    return uid or ""
