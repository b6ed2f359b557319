"""Common machinery for upstream feed adapters.

An adapter downloads one feed, turns each upstream record into an `Event`,
ranks the survivors and truncates them to its row cap. `fetch()` is the only
entry point the ingestor uses and it never raises: network and batch-level
format problems come back as a `FetchResult` carrying an error string, and a
record that cannot be normalized is skipped on its own.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List, Optional

import requests

from ..errors import FetchError, ParseError
from ..events import Event, EventType, coordinates_valid
from ..store import dedupe

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
DEFAULT_USER_AGENT = 'pulsemap/1.0'


class RefreshPolicy(str, enum.Enum):
    # wipe rows of the type that are absent from the new batch
    REPLACE = 'replace'
    # update in place, let retention age out what upstream dropped
    UPSERT = 'upsert'


@dataclass
class FetchResult:
    source: str
    event_type: EventType
    events: List[Event] = field(default_factory=list)
    received: int = 0
    skipped: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def to_float(value, default=None):
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    return f if math.isfinite(f) else default


def to_int(value, default=None):
    f = to_float(value)
    return int(f) if f is not None else default


def iso_to_ms(value) -> int:
    """Parse an ISO-8601 timestamp into epoch milliseconds (naive means UTC)."""
    if not value:
        raise ParseError("missing timestamp")
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        raise ParseError(f"bad timestamp {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def utc_ms(year, month=1, day=1, hour=0, minute=0) -> int:
    try:
        dt = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
    except ValueError as e:
        raise ParseError(f"bad date {year}-{month}-{day}: {e}")
    return int(dt.timestamp() * 1000)


class SourceAdapter:
    name: str = ''
    event_type: EventType
    url: str = ''
    params: Optional[dict] = None
    refresh_policy = RefreshPolicy.REPLACE
    default_cap = 100

    def __init__(self, cap=None, url=None, timeout=DEFAULT_TIMEOUT, user_agent=DEFAULT_USER_AGENT,
                 session=None):
        self.cap = cap if cap is not None else self.default_cap
        if url is not None:
            self.url = url
        self.timeout = timeout
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def __repr__(self):
        return f"<{type(self).__name__} {self.name} cap={self.cap}>"

    # network

    def headers(self) -> dict:
        return {'User-Agent': self.user_agent}

    def download(self) -> Any:
        try:
            resp = self.session.get(self.url, params=self.params, headers=self.headers(),
                                    timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise FetchError(self.name, str(e)) from e
        try:
            return self.decode(resp)
        except ValueError as e:
            raise FetchError(self.name, f"unreadable response body: {e}") from e

    def decode(self, resp):
        return resp.json()

    # parsing

    def records(self, payload) -> list:
        """Split a decoded payload into upstream records (GeoJSON features by default)."""
        if not isinstance(payload, dict):
            raise ParseError("expected a GeoJSON FeatureCollection")
        features = payload.get('features')
        if not isinstance(features, list):
            raise ParseError("payload has no 'features' list")
        return features

    def normalize(self, record) -> Optional[Event]:
        """Build an Event from one record; None drops it quietly."""
        raise NotImplementedError

    def rank_key(self, event: Event, record):
        """Sort key, highest first."""
        return event.time

    def parse(self, payload) -> FetchResult:
        records = self.records(payload)
        if not records and self.refresh_policy is RefreshPolicy.REPLACE:
            # an empty batch would wipe the whole type on replace
            raise ParseError("feed returned no records")
        ranked = []
        skipped = 0
        for record in records:
            try:
                event = self.normalize(record)
            except ParseError as e:
                event = None
                logger.debug("%s: skipping record: %s", self.name, e)
            except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
                event = None
                logger.debug("%s: skipping malformed record: %r", self.name, e)
            if event is None or not coordinates_valid(event.latitude, event.longitude):
                skipped += 1
                continue
            ranked.append((self.rank_key(event, record), event))
        ranked.sort(key=lambda pair: pair[0], reverse=True)
        events = dedupe(e for _, e in ranked)[:self.cap]
        return FetchResult(self.name, self.event_type, events=events, received=len(records),
                           skipped=skipped)

    def fetch(self) -> FetchResult:
        try:
            result = self.parse(self.download())
        except (FetchError, ParseError) as e:
            logger.warning("%s: fetch failed: %s", self.name, e)
            return FetchResult(self.name, self.event_type, error=str(e))
        logger.info("%s: kept %d of %d records (%d skipped)",
                    self.name, len(result.events), result.received, result.skipped)
        return result
