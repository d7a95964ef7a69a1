"""
Range requests and normalized events.

Raw events arrive in whatever shape a source produces (LMS JSON, document
store records, iCalendar components). They are converted here, at the
pipeline boundary, into a single NormalizedEvent representation; nothing
downstream looks at source-specific shapes.
"""

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from typing import Any, Iterable, Optional
import pytz
from icalendar import Event as ICalEvent, vDDDTypes

from .timezone_utils import local_midnight, to_utc_datetime


class InvalidRange(ValueError):
    """Raised when a range ends before it starts."""


@dataclass(frozen=True)
class RangeRequest:
    """
    A query range [start, end).

    Naive datetimes are interpreted in local time; both ends are stored as
    UTC-aware datetimes.
    """
    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, 'start', to_utc_datetime(self.start))
        object.__setattr__(self, 'end', to_utc_datetime(self.end))

    def validate(self) -> None:
        if self.end < self.start:
            raise InvalidRange(
                f"Range end {self.end.isoformat()} precedes start {self.start.isoformat()}"
            )


def format_instant(dt: datetime) -> str:
    """Canonical ISO-8601 UTC form used for storage and dedupe keys."""
    return dt.astimezone(pytz.UTC).isoformat()


@dataclass
class NormalizedEvent:
    """
    Canonical cached event.

    ``start`` and ``end`` are UTC-aware; everything else the source supplied
    is carried in ``payload`` untouched.
    """
    id: Optional[str]
    start: datetime
    end: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        for key in ('title', 'summary', 'name'):
            value = self.payload.get(key)
            if value:
                return str(value)
        return 'Untitled'

    @property
    def dedupe_key(self) -> tuple:
        return (self.id, format_instant(self.start), format_instant(self.end))

    def copy(self) -> 'NormalizedEvent':
        return NormalizedEvent(
            id=self.id,
            start=self.start,
            end=self.end,
            payload=copy.deepcopy(self.payload),
        )

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open overlap with [start, end)."""
        return self.start < end and self.end >= start

    def to_dict(self) -> dict:
        data = dict(self.payload)
        data["id"] = self.id
        data["start"] = format_instant(self.start)
        data["end"] = format_instant(self.end)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'NormalizedEvent':
        payload = {k: v for k, v in data.items() if k not in ("id", "start", "end")}
        return cls(
            id=data.get("id"),
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            payload=payload,
        )


# ==================== Instant parsing ====================

def parse_instant(value, tz=None) -> Optional[datetime]:
    """
    Resolve a raw time value to a UTC-aware datetime.

    Accepts datetimes, dates (local midnight), epoch seconds, ISO-8601
    strings, iCalendar basic-format strings and icalendar property values.
    Returns None when the value cannot be resolved.
    """
    if value is None or isinstance(value, bool):
        return None
    if hasattr(value, 'dt'):
        value = value.dt
    if isinstance(value, datetime):
        return to_utc_datetime(value, tz)
    if isinstance(value, date):
        return local_midnight(value, tz).astimezone(pytz.UTC)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, pytz.UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            try:
                parsed = vDDDTypes.from_ical(text)
            except (ValueError, TypeError):
                return None
        return parse_instant(parsed, tz)
    return None


# ==================== Raw event shapes ====================

_START_FIELDS = ('start', 'dtstart', 'timestart')
_END_FIELDS = ('end', 'dtend', 'timeend')
_ID_FIELDS = ('id', 'uid')
_ICAL_PAYLOAD_FIELDS = {
    'SUMMARY': 'summary',
    'LOCATION': 'location',
    'DESCRIPTION': 'description',
    'URL': 'url',
}


def _first_present(raw: Mapping, names: tuple):
    for name in names:
        if raw.get(name) is not None:
            return raw[name]
    return None


def _ical_to_mapping(component: ICalEvent) -> dict:
    """Flatten a VEVENT into the plain mapping shape."""
    data = {}
    uid = component.get('UID')
    if uid:
        data['id'] = str(uid)
    if component.get('DTSTART') is not None:
        data['start'] = component.get('DTSTART').dt
    if component.get('DTEND') is not None:
        data['end'] = component.get('DTEND').dt
    elif component.get('DURATION') is not None and 'start' in data:
        data['end'] = data['start'] + component.get('DURATION').dt
    for prop, key in _ICAL_PAYLOAD_FIELDS.items():
        value = component.get(prop)
        if value is not None:
            data[key] = str(value)
    return data


def normalize_event(raw, tz=None) -> Optional[NormalizedEvent]:
    """
    Convert one raw event. Returns None if its start cannot be resolved or
    it ends before it starts.

    An end that is missing or unparseable defaults to the start. A
    ``timeduration`` in seconds (LMS shape) takes precedence over an
    explicit end when positive.
    """
    if isinstance(raw, ICalEvent):
        raw = _ical_to_mapping(raw)
    if not isinstance(raw, Mapping):
        return None

    start = parse_instant(_first_present(raw, _START_FIELDS), tz)
    if start is None:
        return None

    end = None
    duration = raw.get('timeduration')
    if isinstance(duration, (int, float)) and not isinstance(duration, bool) and duration > 0:
        end = start + timedelta(seconds=duration)
    if end is None:
        end = parse_instant(_first_present(raw, _END_FIELDS), tz)
    if end is None:
        end = start
    if end < start:
        return None

    raw_id = _first_present(raw, _ID_FIELDS)
    consumed = set(_START_FIELDS) | set(_END_FIELDS) | set(_ID_FIELDS) | {'timeduration'}
    payload = {k: copy.deepcopy(v) for k, v in raw.items() if k not in consumed}

    return NormalizedEvent(
        id=str(raw_id) if raw_id is not None else None,
        start=start,
        end=end,
        payload=payload,
    )


def normalize_events(raw_events: Iterable, tz=None) -> list[NormalizedEvent]:
    """Normalize a batch, silently dropping events without a usable span."""
    events = []
    for raw in raw_events or []:
        event = normalize_event(raw, tz)
        if event is not None:
            events.append(event)
    return events


def dedupe_events(events: Iterable[NormalizedEvent]) -> list[NormalizedEvent]:
    """Collapse exact (id, start, end) duplicates, keeping the first in input order."""
    seen = set()
    unique = []
    for event in events:
        key = event.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(event)
    return unique


def filter_overlapping(events: Iterable[NormalizedEvent], request: RangeRequest) -> list[NormalizedEvent]:
    """Keep events whose own span overlaps the requested range."""
    return [e for e in events if e.overlaps(request.start, request.end)]
