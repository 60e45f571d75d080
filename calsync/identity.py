from __future__ import annotations

from typing import Iterable

from calsync.models import (
    DEFAULT_FINGERPRINT,
    CalDAVEvent,
    CanonicalEventData,
    NativeEvent,
    ProviderEvent,
    TargetEvent,
    epoch_millis,
)

MARKER_PREFIX = "Original ID: "
MARKER_SUFFIX = "END"


def matching_key(event: NativeEvent) -> str:
    """Deterministic key of one occurrence, stable across runs."""
    if isinstance(event, ProviderEvent):
        if event.start.date:
            return f"{event.id}-{event.start.date}"
        if event.start.date_time:
            return f"{event.id}-{event.start.date_time}"
        return event.id
    if isinstance(event, CalDAVEvent):
        millis = str(epoch_millis(event.start))
        if millis in event.uid:
            return event.uid
        return f"{event.uid}-{millis}"
    raise TypeError(f"Unsupported event type: {type(event).__name__}")


def marker_token(key: str, data: CanonicalEventData) -> str:
    return f"{MARKER_PREFIX}{key}-{data.start.date_time or ''}-{data.start.date or ''}{MARKER_SUFFIX}"


def build_marker(key: str, data: CanonicalEventData, fingerprint: str = DEFAULT_FINGERPRINT) -> str:
    return f"{marker_token(key, data)}\n{fingerprint}"


def find_marked(targets: Iterable[TargetEvent], token: str) -> TargetEvent | None:
    for target in targets:
        if target.description and token in target.description:
            return target
    return None


def is_managed(target: TargetEvent, fingerprint: str = DEFAULT_FINGERPRINT) -> bool:
    return bool(target.description) and fingerprint in target.description
