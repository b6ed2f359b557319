import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .errors import PulseMapError
from .sources.base import RefreshPolicy
from .sources.earthquake import EarthquakeAdapter
from .sources.flood import FloodAdapter
from .sources.tsunami import TsunamiAdapter
from .sources.volcano import VolcanoAdapter
from .sources.wildfire import WildfireAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES = (EarthquakeAdapter, TsunamiAdapter, VolcanoAdapter, WildfireAdapter, FloodAdapter)


def default_adapters(settings):
    return [
        cls(cap=settings.caps[cls.event_type], timeout=settings.request_timeout,
            user_agent=settings.user_agent)
        for cls in ADAPTER_CLASSES
    ]


@dataclass
class SourceReport:
    source: str
    ok: bool
    fetched: int = 0
    stored: int = 0
    trimmed: int = 0
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class RefreshReport:
    started_at: str
    sources: List[SourceReport] = field(default_factory=list)

    @property
    def ok(self):
        return all(s.ok for s in self.sources)

    @property
    def failed(self):
        return [s.source for s in self.sources if not s.ok]

    def to_dict(self):
        return {
            'startedAt': self.started_at,
            'ok': self.ok,
            'sources': [asdict(s) for s in self.sources],
        }


class Ingestor:
    """Runs every adapter and writes each successful batch to the store.

    Adapters run in parallel threads; an adapter or store failure only marks
    that source as failed in the report.
    """

    def __init__(self, store, adapters):
        self.store = store
        self.adapters = list(adapters)
        self._in_flight = threading.Lock()

    @property
    def running(self):
        return self._in_flight.locked()

    def refresh_source(self, adapter) -> SourceReport:
        started = time.monotonic()
        result = adapter.fetch()
        report = SourceReport(source=adapter.name, ok=result.ok, fetched=len(result.events),
                              error=result.error)
        if result.ok:
            try:
                if adapter.refresh_policy is RefreshPolicy.REPLACE:
                    report.stored = self.store.replace_type(adapter.event_type, result.events)
                else:
                    report.stored = self.store.upsert_many(adapter.event_type, result.events)
                report.trimmed = self.store.trim_type(adapter.event_type, adapter.cap)
            except PulseMapError as e:
                logger.error("%s: storing %d events failed: %s", adapter.name, len(result.events), e)
                report.ok = False
                report.error = f"store: {e}"
        report.duration_ms = int((time.monotonic() - started) * 1000)
        return report

    def _safe_refresh(self, adapter):
        try:
            return self.refresh_source(adapter)
        except Exception as e:
            logger.exception("%s: refresh crashed", adapter.name)
            return SourceReport(source=adapter.name, ok=False, error=str(e))

    def refresh_all(self) -> RefreshReport:
        report = RefreshReport(started_at=datetime.now(timezone.utc).isoformat())
        if not self.adapters:
            return report
        logger.info("Refreshing all disaster data...")
        with ThreadPoolExecutor(max_workers=len(self.adapters), thread_name_prefix='refresh') as pool:
            report.sources = list(pool.map(self._safe_refresh, self.adapters))
        stored = sum(s.stored for s in report.sources)
        if report.ok:
            logger.info("refresh complete: %d events stored from %d sources", stored, len(report.sources))
        else:
            logger.warning("refresh finished with failures (%s): %d events stored",
                           ', '.join(report.failed), stored)
        return report

    def trigger(self) -> Optional[RefreshReport]:
        """Refresh unless one is already running; returns None when skipped."""
        if not self._in_flight.acquire(blocking=False):
            logger.info("refresh already in progress, ignoring trigger")
            return None
        try:
            return self.refresh_all()
        finally:
            self._in_flight.release()
