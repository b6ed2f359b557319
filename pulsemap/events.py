"""Unified event record shared by every source adapter and the store."""

from __future__ import annotations

import enum
import math
import time
from dataclasses import dataclass, field, replace
from typing import Optional

from .errors import ValidationError


class EventType(str, enum.Enum):
    EARTHQUAKE = 'earthquake'
    TSUNAMI = 'tsunami'
    VOLCANO = 'volcano'
    WILDFIRE = 'wildfire'
    FLOOD = 'flood'

    @classmethod
    def parse(cls, value) -> 'EventType':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ', '.join(t.value for t in cls)
            raise ValidationError(f"Unknown event type {value!r}; expected one of {allowed}")


class SeverityKind(str, enum.Enum):
    RICHTER = 'richter'
    THREAT_LEVEL = 'threat_level'
    ALERT_LEVEL = 'alert_level'
    INTENSITY = 'intensity'
    FLOOD_SEVERITY = 'flood_severity'


SEVERITY_KIND_BY_TYPE = {
    EventType.EARTHQUAKE: SeverityKind.RICHTER,
    EventType.TSUNAMI: SeverityKind.THREAT_LEVEL,
    EventType.VOLCANO: SeverityKind.ALERT_LEVEL,
    EventType.WILDFIRE: SeverityKind.INTENSITY,
    EventType.FLOOD: SeverityKind.FLOOD_SEVERITY,
}

ADVISORY, WATCH, WARNING = 1, 2, 3


@dataclass(frozen=True)
class Severity:
    """Type-tagged severity value.

    The numeric value is what the `magnitude` column stores; `kind` says how to
    read it (Richter magnitude, 1-3 threat/alert level, 0-1 fire intensity or
    the continuous flood severity).
    """

    kind: SeverityKind
    value: float

    @classmethod
    def richter(cls, value):
        return cls(SeverityKind.RICHTER, float(value))

    @classmethod
    def threat_level(cls, level):
        return cls(SeverityKind.THREAT_LEVEL, int(level))

    @classmethod
    def alert_level(cls, level):
        return cls(SeverityKind.ALERT_LEVEL, int(level))

    @classmethod
    def intensity(cls, value):
        return cls(SeverityKind.INTENSITY, float(value))

    @classmethod
    def flood_severity(cls, value):
        return cls(SeverityKind.FLOOD_SEVERITY, float(value))

    @classmethod
    def for_type(cls, event_type, value):
        if value is None:
            return None
        return cls(SEVERITY_KIND_BY_TYPE[EventType.parse(event_type)], float(value))


def keyword_level(text) -> int:
    """Map NWS alert wording to a 1-3 level, Advisory when nothing matches."""
    text = text or ''
    if 'Warning' in text:
        return WARNING
    if 'Watch' in text:
        return WATCH
    if 'Advisory' in text:
        return ADVISORY
    return ADVISORY


def now_ms() -> int:
    return int(time.time() * 1000)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def coordinates_valid(latitude, longitude) -> bool:
    return (
        _is_number(latitude) and _is_number(longitude)
        and -90.0 <= latitude <= 90.0
        and -180.0 <= longitude <= 180.0
    )


@dataclass
class Event:
    type: EventType
    title: str
    latitude: float
    longitude: float
    time: int
    external_id: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    severity: Optional[Severity] = None
    depth: Optional[float] = None
    url: Optional[str] = None
    affected_radius_km: Optional[float] = None
    id: Optional[int] = field(default=None, compare=False)

    @property
    def magnitude(self) -> Optional[float]:
        return self.severity.value if self.severity is not None else None

    def validate(self) -> 'Event':
        if not self.title or not str(self.title).strip():
            raise ValidationError("title is required")
        if not coordinates_valid(self.latitude, self.longitude):
            raise ValidationError(
                f"coordinates out of range: latitude={self.latitude!r} longitude={self.longitude!r}"
            )
        if not isinstance(self.time, int) or isinstance(self.time, bool):
            raise ValidationError("time must be epoch milliseconds")
        if self.severity is not None and not _is_number(self.severity.value):
            raise ValidationError("magnitude must be a finite number")
        if self.depth is not None and not _is_number(self.depth):
            raise ValidationError("depth must be a finite number")
        return self

    def with_id(self, event_id) -> 'Event':
        return replace(self, id=event_id)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'externalId': self.external_id,
            'type': self.type.value,
            'title': self.title,
            'description': self.description,
            'location': self.location,
            'magnitude': self.magnitude,
            'severityKind': self.severity.kind.value if self.severity is not None else None,
            'depth': self.depth,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'time': self.time,
            'url': self.url,
            'affectedRadiusKm': self.affected_radius_km,
        }


# Fields an administrator may change after creation.
MUTABLE_FIELDS = ('title', 'magnitude', 'depth', 'latitude', 'longitude', 'location')


def apply_update(event: Event, changes: dict) -> Event:
    """Return a copy of `event` with admin-editable fields replaced and re-validated."""
    unknown = set(changes) - set(MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"fields cannot be modified: {', '.join(sorted(unknown))}")
    updated = replace(event)
    for name, value in changes.items():
        if name == 'magnitude':
            updated.severity = Severity.for_type(event.type, value)
            continue
        if value is None and name in ('title', 'latitude', 'longitude'):
            raise ValidationError(f"{name} is required")
        if value is not None and name in ('depth', 'latitude', 'longitude'):
            value = float(value)
        setattr(updated, name, value)
    return updated.validate()
