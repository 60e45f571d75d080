from __future__ import annotations

import logging
from datetime import datetime, time, timezone, tzinfo
from typing import Iterable, Iterator

from dateutil.rrule import rrule, rruleset, rrulestr
from icalendar import vRecur

from calsync.events import MalformedEventError
from calsync.models import (
    CalDAVEvent,
    NativeEvent,
    SourceConfig,
    SourceOccurrence,
    SourcePolicy,
    _ensure_tz,
    epoch_millis,
)

logger = logging.getLogger(__name__)


def occurrence_uid(master_uid: str, start: datetime) -> str:
    return f"{master_uid}-{epoch_millis(start)}"


def _evaluates_naive(master: CalDAVEvent) -> bool:
    return master.all_day or master.floating


def _rule_until(master: CalDAVEvent) -> datetime | None:
    """UNTIL of ``master``'s RRULE in the same naive/aware form as the rule's DTSTART.

    All-day rules stop at midnight of the UNTIL date; floating rules keep the UNTIL wall
    time; zoned rules read a floating UNTIL in the master's zone.
    """
    values = vRecur.from_ical(master.rrule).get("UNTIL")
    if not values:
        return None
    until = values[0]
    if master.all_day:
        until_date = until.date() if isinstance(until, datetime) else until
        return datetime.combine(until_date, time.min)
    if not isinstance(until, datetime):
        until = datetime.combine(until, time.max)
    if master.floating:
        return until.replace(tzinfo=None)
    if until.tzinfo is None:
        return until.replace(tzinfo=master.start.tzinfo)
    return until


def _build_rule(master: CalDAVEvent) -> rrule:
    dtstart = master.start.replace(tzinfo=None) if _evaluates_naive(master) else master.start
    try:
        parsed = rrulestr(master.rrule, dtstart=dtstart.replace(tzinfo=None), ignoretz=True)
        if not isinstance(parsed, rrule):
            raise ValueError("expected a single RRULE")
        return parsed.replace(dtstart=dtstart, until=_rule_until(master))
    except (ValueError, TypeError, KeyError) as exc:
        raise MalformedEventError(f"Event {master.uid} has an unusable RRULE {master.rrule!r}: {exc}") from exc


def recurrence_instants(master: CalDAVEvent) -> Iterator[datetime]:
    """Ascending start instants of ``master``'s RRULE, EXDATEs removed.

    All-day and floating rules are evaluated on naive wall-clock datetimes; the master's
    zone is attached to the instants they yield.
    """
    naive = _evaluates_naive(master)
    rule_set = rruleset()
    rule_set.rrule(_build_rule(master))
    for exdate in master.exdates:
        rule_set.exdate(exdate.replace(tzinfo=None) if naive else _ensure_tz(exdate))
    return _attach_zone(rule_set, master.start.tzinfo or timezone.utc)


def _attach_zone(instants: Iterable[datetime], zone: tzinfo) -> Iterator[datetime]:
    for instant in instants:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=zone)
        yield instant

def expand_recurring(
    master: CalDAVEvent,
    window_start: datetime,
    window_end: datetime,
    instants: Iterable[datetime] | None = None,
) -> dict[datetime, CalDAVEvent]:
    """Concrete occurrences of ``master`` inside ``[window_start, window_end)``.

    The result is keyed by occurrence start instant. The master itself is kept under its
    own uid when it starts inside the window and no EXDATE cancels that start; every rule instant ``T`` gets the uid
    ``<master uid>-<T in epoch millis>`` and the master's duration.
    """
    window_start = _ensure_tz(window_start)
    window_end = _ensure_tz(window_end)
    duration = master.end - master.start
    occurrences: dict[datetime, CalDAVEvent] = {}

    excluded = {_ensure_tz(item) for item in master.exdates}
    if window_start <= _ensure_tz(master.start) < window_end and _ensure_tz(master.start) not in excluded:
        occurrences[_ensure_tz(master.start)] = master

    if instants is None:
        instants = recurrence_instants(master)
    for instant in instants:
        instant = _ensure_tz(instant)
        if instant < window_start:
            continue
        if instant >= window_end:
            break
        if instant in occurrences:
            continue
        occurrences[instant] = master.with_updates(
            uid=occurrence_uid(master.uid, instant),
            start=instant,
            end=instant + duration,
            rrule="",
            exdates=[],
        )
    return occurrences


def apply_overrides(
    occurrences: dict[datetime, CalDAVEvent],
    overrides: Iterable[CalDAVEvent],
    window_start: datetime,
    window_end: datetime,
) -> list[CalDAVEvent]:
    """Replace generated occurrences by their RECURRENCE-ID exceptions.

    Returns the overrides that had no generated placeholder and start inside the window;
    callers emit those as standalone occurrences. Overrides outside the window are dropped.
    """
    orphans: list[CalDAVEvent] = []
    for override in overrides:
        if override.recurrence_id is None:
            continue
        key = _ensure_tz(override.recurrence_id)
        placeholder = occurrences.get(key)
        if placeholder is not None:
            occurrences[key] = override.with_updates(uid=placeholder.uid)
            continue
        if _ensure_tz(window_start) <= _ensure_tz(override.start) < _ensure_tz(window_end):
            orphans.append(override.with_updates(uid=occurrence_uid(override.uid, key)))
        else:
            logger.debug("Dropping override %s at %s outside the window", override.uid, key)
    return orphans


def build_occurrences(
    events: Iterable[NativeEvent],
    source: SourceConfig,
    window_start: datetime,
    window_end: datetime,
) -> list[SourceOccurrence]:
    """Turn one source's fetched events into the tagged occurrence list.

    Output keeps fetch order: a recurring master contributes its expanded occurrences
    (ordered by start) at its own position, override events are folded into their master
    and everything else passes through as a single occurrence.
    """
    policy = SourcePolicy(
        redacted_summary=source.redacted_summary or None,
        prefix_summary=source.prefix_summary or None,
    )
    events = list(events)
    overrides_by_uid: dict[str, list[CalDAVEvent]] = {}
    master_uids: set[str] = set()
    for event in events:
        if not isinstance(event, CalDAVEvent):
            continue
        if event.recurrence_id is not None:
            overrides_by_uid.setdefault(event.uid, []).append(event)
        elif event.is_recurring:
            master_uids.add(event.uid)

    expanded: list[NativeEvent] = []
    for event in events:
        if isinstance(event, CalDAVEvent) and event.recurrence_id is not None:
            if event.uid in master_uids:
                continue
            # Exception instance whose master was not returned by the server.
            if _ensure_tz(window_start) <= _ensure_tz(event.start) < _ensure_tz(window_end):
                expanded.append(event.with_updates(uid=occurrence_uid(event.uid, event.recurrence_id)))
            continue
        if isinstance(event, CalDAVEvent) and event.is_recurring:
            occurrences = expand_recurring(event, window_start, window_end)
            orphans = apply_overrides(
                occurrences, overrides_by_uid.get(event.uid, []), window_start, window_end
            )
            for _, occurrence in sorted(occurrences.items(), key=lambda item: item[0]):
                expanded.append(occurrence)
            expanded.extend(orphans)
            continue
        expanded.append(event)

    return [SourceOccurrence(event=item, source_label=source.label, policy=policy) for item in expanded]
