"""Mapping of native source/target events onto :class:`CanonicalEventData`."""

from __future__ import annotations

from dataclasses import replace
from typing import Callable

from calsync.models import (
    CalDAVEvent,
    CanonicalEventData,
    EventTime,
    NativeEvent,
    ProviderEvent,
    parse_iso_datetime,
    utc_timestamp,
)

TRANSPARENT = "transparent"
TRANSPARENT_MARKER = "TRANSP:TRANSPARENT"


class MalformedEventError(ValueError):
    """Raised when an event side carries neither a date nor a dateTime."""


def strip_escapes(summary: str) -> str:
    return str(summary or "").replace("\\", "")


def _normalize_transparency(value: str | None) -> str | None:
    if not value:
        return None
    lowered = str(value).strip().lower()
    # "opaque" is the provider default and is stored as absent.
    if lowered == "opaque":
        return None
    return lowered


def _check_time(event_id: str, side: str, value: EventTime) -> EventTime:
    if value.date is None and value.date_time is None:
        raise MalformedEventError(f"Event {event_id!r} has no date or dateTime on {side}.")
    return value


def normalize_caldav_event(event: CalDAVEvent) -> CanonicalEventData:
    if event.start is None or event.end is None:
        raise MalformedEventError(f"Event {event.uid!r} is missing start or end.")
    if event.all_day:
        start = EventTime(date=event.start.date().isoformat())
        end = EventTime(date=event.end.date().isoformat())
    else:
        start = EventTime(date_time=utc_timestamp(event.start))
        end = EventTime(date_time=utc_timestamp(event.end))
    return CanonicalEventData(
        summary=strip_escapes(event.summary),
        start=start,
        end=end,
        transparency=TRANSPARENT if TRANSPARENT_MARKER in (event.raw_data or "") else None,
    )


def normalize_provider_event(event: ProviderEvent) -> CanonicalEventData:
    return CanonicalEventData(
        summary=event.summary,
        start=_check_time(event.id, "start", replace(event.start)),
        end=_check_time(event.id, "end", replace(event.end)),
        description=event.description,
        transparency=_normalize_transparency(event.transparency),
    )


_NORMALIZERS: dict[str, Callable[..., CanonicalEventData]] = {
    "caldav": normalize_caldav_event,
    "provider": normalize_provider_event,
}


def normalize_event(event: NativeEvent) -> CanonicalEventData:
    normalizer = _NORMALIZERS.get(getattr(event, "kind", ""))
    if normalizer is None:
        raise TypeError(f"Unsupported event type: {type(event).__name__}")
    return normalizer(event)


def _same_start(a: EventTime, b: EventTime) -> bool:
    if a.date is not None or b.date is not None:
        if a.date != b.date:
            return False
    if a.date_time is not None or b.date_time is not None:
        if a.date_time is None or b.date_time is None:
            return False
        # Providers echo timestamps in the calendar's own offset.
        if parse_iso_datetime(a.date_time) != parse_iso_datetime(b.date_time):
            return False
    return True


def events_equal(a: CanonicalEventData, b: CanonicalEventData) -> bool:
    """Equality used to decide between update and no-op.

    ``end`` and ``description`` do not take part in the comparison.
    """
    if a.summary != b.summary:
        return False
    if not _same_start(a.start, b.start):
        return False
    return _normalize_transparency(a.transparency) == _normalize_transparency(b.transparency)
