from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from calsync.events import TRANSPARENT, MalformedEventError, events_equal, normalize_event
from calsync.identity import build_marker, find_marked, is_managed, marker_token, matching_key
from calsync.models import (
    DEFAULT_FINGERPRINT,
    CanonicalEventData,
    EventTime,
    SourceOccurrence,
    SyncInstructions,
    TargetEvent,
    UpdateInstruction,
    _ensure_tz,
)
from calsync.rules import CopyRules

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=1)


class SummaryRules(Protocol):
    def should_copy(self, summary: str, is_transparent: bool) -> bool: ...

    def new_summary(self, original: str, replacement: str | None) -> str: ...


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise MalformedEventError(f"Unknown time zone {name!r}.") from exc


def effective_end(end: EventTime, default_timezone: str = "UTC") -> datetime:
    """Instant at which an event side ends.

    All-day ends are read as midnight in the event's own zone, or ``default_timezone``.
    """
    if end.date:
        zone = _zone(end.time_zone or default_timezone)
        return datetime.combine(datetime.fromisoformat(end.date).date(), time.min, tzinfo=zone)
    if end.date_time:
        parsed = datetime.fromisoformat(end.date_time.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=_zone(end.time_zone or default_timezone))
        return parsed
    raise MalformedEventError("Event end has no date or dateTime.")


def _rewrite_summary(
    data: CanonicalEventData,
    occurrence: SourceOccurrence,
    rules: SummaryRules,
    *,
    replace_summary: bool,
    add_prefix: bool,
) -> None:
    if add_prefix:
        prefix = occurrence.policy.prefix_summary or ""
        data.summary = rules.new_summary(data.summary, f"{prefix}{data.summary}")
    if replace_summary:
        data.summary = rules.new_summary(data.summary, occurrence.policy.redacted_summary)


def reconcile(
    occurrences: Iterable[SourceOccurrence],
    target_events: Sequence[TargetEvent],
    *,
    rules: SummaryRules | None = None,
    replace_summary: bool = False,
    add_prefix: bool = False,
    fingerprint: str = DEFAULT_FINGERPRINT,
    now: datetime | None = None,
    default_timezone: str = "UTC",
) -> SyncInstructions:
    """Compute the instructions that make ``target_events`` mirror ``occurrences``.

    Every occurrence gets a marker written into its description. A target event whose
    description holds that marker (first one in list order) is claimed and updated when
    its canonical data differs; unmatched occurrences are inserted unless they ended more
    than a day before ``now``. Fingerprinted target events left unclaimed are deleted.

    The function has no side effects: the same inputs always give the same instructions.
    """
    rules = rules or CopyRules()
    now = _ensure_tz(now) if now is not None else datetime.now(timezone.utc)
    stale_before = now - STALE_AFTER
    instructions = SyncInstructions()
    claimed_ids: set[str] = set()
    seen_tokens: set[str] = set()
    candidates = list(target_events)

    for occurrence in occurrences:
        data = normalize_event(occurrence.event)
        key = matching_key(occurrence.event)
        token = marker_token(key, data)
        data.description = build_marker(key, data, fingerprint)

        if not rules.should_copy(data.summary, data.transparency == TRANSPARENT):
            continue
        _rewrite_summary(
            data,
            occurrence,
            rules,
            replace_summary=replace_summary,
            add_prefix=add_prefix,
        )

        if token in seen_tokens:
            logger.warning("Skipping duplicate occurrence %s from %s", key, occurrence.source_label)
            continue
        seen_tokens.add(token)

        match = find_marked(candidates, token)
        if match is None:
            if effective_end(data.end, default_timezone) >= stale_before:
                instructions.insert.append(data)
            continue

        claimed_ids.add(match.id)
        if not events_equal(normalize_event(match), data):
            instructions.update.append(UpdateInstruction(target_id=match.id, data=data))

    for target in candidates:
        if target.id in claimed_ids or target.id in instructions.delete:
            continue
        if is_managed(target, fingerprint):
            instructions.delete.append(target.id)
    return instructions
