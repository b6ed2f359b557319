import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from .events import EventType, now_ms

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000


@dataclass
class RetentionPolicy:
    """Maximum age in milliseconds per event type; types not listed are kept forever."""

    max_age_ms: Dict[EventType, int] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.retention_ms())

    @classmethod
    def uniform(cls, hours):
        return cls({t: int(hours * HOUR_MS) for t in EventType})


@dataclass
class SweepReport:
    removed: Dict[str, int] = field(default_factory=dict)

    @property
    def total(self):
        return sum(self.removed.values())

    def to_dict(self):
        return {'removed': dict(self.removed), 'deletedCount': self.total}


def sweep(store, policy: RetentionPolicy, now: Optional[int] = None) -> SweepReport:
    """Delete events older than the policy allows.

    Deletes are bounded by `time < cutoff`, so rows a concurrent refresh is
    writing with current timestamps are never touched, and a repeat sweep
    with the same `now` removes nothing.
    """
    now = now if now is not None else now_ms()
    report = SweepReport()
    for event_type, age_ms in policy.max_age_ms.items():
        report.removed[event_type.value] = store.delete_older_than(event_type, age_ms, now=now)
    logger.info("retention sweep removed %d events %s", report.total, report.removed)
    return report
