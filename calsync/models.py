from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Literal, Union


DEFAULT_FINGERPRINT = "calsync:managed-event"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


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
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def utc_timestamp(value: datetime) -> str:
    """Millisecond UTC timestamp, e.g. ``2024-06-01T12:00:00.000Z``."""
    utc_value = _ensure_tz(value).astimezone(timezone.utc)
    return utc_value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_millis(value: datetime) -> int:
    return (_ensure_tz(value) - EPOCH) // timedelta(milliseconds=1)


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _clean_str(value: Any) -> str:
    return str(value or "").strip()


@dataclass
class SourceConfig:
    kind: str = "caldav"
    label: str = ""
    url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""
    token_file: str = ""
    redacted_summary: str = ""
    prefix_summary: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        kind = _clean_str(data.get("kind", "caldav")).lower()
        if kind not in {"caldav", "gcal"}:
            kind = "caldav"
        return cls(
            kind=kind,
            label=_clean_str(data.get("label")),
            url=_clean_str(data.get("url")),
            username=_clean_str(data.get("username")),
            password=_clean_str(data.get("password")),
            calendar_id=_clean_str(data.get("calendar_id")),
            token_file=_clean_str(data.get("token_file")),
            # Prefixes usually end in a separator space, keep it.
            redacted_summary=str(data.get("redacted_summary") or ""),
            prefix_summary=str(data.get("prefix_summary") or ""),
        )

    @property
    def is_complete(self) -> bool:
        if self.kind == "caldav":
            return bool(self.url and self.username)
        return bool(self.calendar_id and self.token_file)


@dataclass
class TargetConfig:
    calendar_id: str = "primary"
    token_file: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TargetConfig":
        data = data or {}
        return cls(
            calendar_id=_clean_str(data.get("calendar_id", "primary")) or "primary",
            token_file=_clean_str(data.get("token_file")),
        )


@dataclass
class UserConfig:
    name: str = ""
    replace_summary: bool = False
    add_prefix: bool = False
    target: TargetConfig = field(default_factory=TargetConfig)
    sources: list[SourceConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "UserConfig":
        data = data or {}
        raw_sources = data.get("sources", [])
        if not isinstance(raw_sources, list):
            raw_sources = []
        return cls(
            name=_clean_str(data.get("name")),
            replace_summary=bool(data.get("replace_summary", False)),
            add_prefix=bool(data.get("add_prefix", False)),
            target=TargetConfig.from_dict(data.get("target")),
            sources=[SourceConfig.from_dict(item) for item in raw_sources if isinstance(item, dict)],
        )


@dataclass
class SyncConfig:
    days_back: int = 1
    days_ahead: int = 365
    interval_seconds: int = 3600
    timezone: str = "UTC"
    dry_run: bool = False
    dump_dir: str = ""
    fingerprint: str = DEFAULT_FINGERPRINT

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            days_back=max(0, int(data.get("days_back", 1))),
            days_ahead=max(1, int(data.get("days_ahead", 365))),
            interval_seconds=max(60, int(data.get("interval_seconds", 3600))),
            timezone=_clean_str(data.get("timezone", "UTC")) or "UTC",
            dry_run=bool(data.get("dry_run", False)),
            dump_dir=_clean_str(data.get("dump_dir")),
            fingerprint=_clean_str(data.get("fingerprint", DEFAULT_FINGERPRINT)) or DEFAULT_FINGERPRINT,
        )


@dataclass
class RulesConfig:
    skip_transparent: bool = False
    exclude_keywords: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RulesConfig":
        data = data or {}
        return cls(
            skip_transparent=bool(data.get("skip_transparent", False)),
            exclude_keywords=[
                str(x).strip() for x in data.get("exclude_keywords", []) or [] if str(x).strip()
            ],
        )


@dataclass
class AppConfig:
    sync: SyncConfig = field(default_factory=SyncConfig)
    rules: RulesConfig = field(default_factory=RulesConfig)
    users: list[UserConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        raw_users = data.get("users", [])
        if not isinstance(raw_users, list):
            raw_users = []
        return cls(
            sync=SyncConfig.from_dict(data.get("sync")),
            rules=RulesConfig.from_dict(data.get("rules")),
            users=[UserConfig.from_dict(item) for item in raw_users if isinstance(item, dict)],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EventTime:
    date: str | None = None
    date_time: str | None = None
    time_zone: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any] | None) -> "EventTime":
        data = data or {}
        return cls(
            date=data.get("date"),
            date_time=data.get("dateTime"),
            time_zone=data.get("timeZone"),
        )

    def to_api(self) -> dict[str, str]:
        payload: dict[str, str] = {}
        if self.date is not None:
            payload["date"] = self.date
        if self.date_time is not None:
            payload["dateTime"] = self.date_time
        if self.time_zone is not None:
            payload["timeZone"] = self.time_zone
        return payload


@dataclass
class CanonicalEventData:
    summary: str
    start: EventTime
    end: EventTime
    description: str | None = None
    transparency: str | None = None

    def to_api_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": self.summary,
            "start": self.start.to_api(),
            "end": self.end.to_api(),
        }
        if self.description is not None:
            body["description"] = self.description
        if self.transparency is not None:
            body["transparency"] = self.transparency
        return body

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalDAVEvent:
    """One VEVENT fetched over CalDAV.

    Recurring masters carry ``rrule`` (and ``exdates``); exception instances carry
    ``recurrence_id``, the start of the occurrence they replace.
    ``floating`` marks a timed DTSTART without zone; its wall time is stored as UTC.
    """

    uid: str
    summary: str
    start: datetime
    end: datetime
    all_day: bool = False
    rrule: str = ""
    exdates: list[datetime] = field(default_factory=list)
    recurrence_id: datetime | None = None
    raw_data: str = ""
    floating: bool = False
    kind: Literal["caldav"] = "caldav"

    @property
    def is_recurring(self) -> bool:
        return bool(self.rrule)

    def with_updates(self, **kwargs: Any) -> "CalDAVEvent":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        payload["exdates"] = [serialize_datetime(item) for item in self.exdates]
        payload["recurrence_id"] = serialize_datetime(self.recurrence_id)
        return payload


@dataclass
class ProviderEvent:
    id: str
    summary: str = ""
    start: EventTime = field(default_factory=EventTime)
    end: EventTime = field(default_factory=EventTime)
    description: str | None = None
    transparency: str | None = None
    kind: Literal["provider"] = "provider"

    @classmethod
    def from_api(cls, item: dict[str, Any]) -> "ProviderEvent":
        return cls(
            id=str(item.get("id", "")),
            summary=str(item.get("summary", "") or ""),
            start=EventTime.from_api(item.get("start")),
            end=EventTime.from_api(item.get("end")),
            description=item.get("description"),
            transparency=item.get("transparency"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


NativeEvent = Union[CalDAVEvent, ProviderEvent]
TargetEvent = ProviderEvent


@dataclass
class SourcePolicy:
    redacted_summary: str | None = None
    prefix_summary: str | None = None


@dataclass
class SourceOccurrence:
    event: NativeEvent
    source_label: str = ""
    policy: SourcePolicy = field(default_factory=SourcePolicy)


@dataclass
class UpdateInstruction:
    target_id: str
    data: CanonicalEventData


@dataclass
class SyncInstructions:
    insert: list[CanonicalEventData] = field(default_factory=list)
    update: list[UpdateInstruction] = field(default_factory=list)
    delete: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.insert or self.update or self.delete)

    def counts(self) -> dict[str, int]:
        return {"insert": len(self.insert), "update": len(self.update), "delete": len(self.delete)}


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    changes_applied: int
    errors: int
    trigger: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "changes_applied": self.changes_applied,
            "errors": self.errors,
            "trigger": self.trigger,
            "run_at": serialize_datetime(self.run_at),
        }


def default_app_config() -> AppConfig:
    return AppConfig()


def sync_window(now: datetime, days_back: int, days_ahead: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc - timedelta(days=max(0, days_back)), now_utc + timedelta(days=max(1, days_ahead))
