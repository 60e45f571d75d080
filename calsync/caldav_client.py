from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from calsync.events import strip_escapes
from calsync.models import CalDAVEvent, SourceConfig, date_to_datetime


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _vevents(calendar_obj: ICalendar) -> list[ICEvent]:
    return [component for component in calendar_obj.walk() if component.name == "VEVENT"]


def _decoded(vevent: ICEvent, name: str) -> Any:
    if vevent.get(name) is None:
        return None
    return vevent.decoded(name)


def _exdates(vevent: ICEvent) -> list[datetime]:
    raw = vevent.get("EXDATE")
    if raw is None:
        return []
    entries = raw if isinstance(raw, list) else [raw]
    values: list[datetime] = []
    for entry in entries:
        for item in getattr(entry, "dts", []):
            converted = date_to_datetime(item.dt)
            if converted is not None:
                values.append(converted)
    return values


def parse_vevent(vevent: ICEvent) -> CalDAVEvent | None:
    uid = str(vevent.get("UID", "")).strip()
    dtstart_raw = _decoded(vevent, "DTSTART")
    if not uid or dtstart_raw is None:
        return None
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    floating = isinstance(dtstart_raw, datetime) and dtstart_raw.tzinfo is None
    start = date_to_datetime(dtstart_raw)
    end = date_to_datetime(_decoded(vevent, "DTEND"))
    if end is None:
        duration = _decoded(vevent, "DURATION")
        if isinstance(duration, timedelta):
            end = start + duration
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start + timedelta(hours=1)
    rrule = vevent.get("RRULE")
    return CalDAVEvent(
        uid=uid,
        summary=strip_escapes(str(vevent.get("SUMMARY", "")).strip()),
        start=start,
        end=end,
        all_day=all_day,
        rrule=rrule.to_ical().decode("utf-8") if rrule is not None else "",
        exdates=_exdates(vevent),
        recurrence_id=date_to_datetime(_decoded(vevent, "RECURRENCE-ID")),
        raw_data=vevent.to_ical().decode("utf-8"),
        floating=floating,
    )


def parse_calendar_data(raw_data: Any) -> list[CalDAVEvent]:
    """All VEVENTs of one calendar object resource: a master and its overrides."""
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    events: list[CalDAVEvent] = []
    for vevent in _vevents(calendar_obj):
        parsed = parse_vevent(vevent)
        if parsed is not None:
            events.append(parsed)
    return events


class CalDAVService:
    def __init__(self, config: SourceConfig) -> None:
        self.config = config
        self._client: Any = None
        self._calendar: Any = None

    def _connect(self) -> None:
        if self._calendar is not None:
            return
        if not self.config.url or not self.config.username:
            raise RuntimeError("CalDAV source config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.url,
            username=self.config.username,
            password=self.config.password,
        )
        self._calendar = self._client.calendar(url=self.config.url)

    def fetch_events(self, start: datetime, end: datetime) -> list[CalDAVEvent]:
        """Events of the source calendar overlapping ``[start, end)``.

        The server is asked not to expand recurrences: masters come back with their RRULE
        and overrides, expansion happens locally.
        """
        self._connect()
        resources = self._calendar.date_search(start=start, end=end, expand=False)
        events: list[CalDAVEvent] = []
        for resource in resources:
            events.extend(parse_calendar_data(resource.data))
        return events
