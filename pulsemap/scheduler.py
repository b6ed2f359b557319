"""Refresh and retention worker.

Run once: `python -m pulsemap.scheduler --once`
Sweep once: `python -m pulsemap.scheduler --sweep`
Run in loop: `python -m pulsemap.scheduler --loop`

Work is requested by posting messages on a queue; a single worker thread
consumes them, so wall-clock tickers and HTTP triggers never call the
ingestion code directly.
"""

from __future__ import annotations

import argparse
import json
import logging
import queue
import threading

from .config import Settings, configure_logging
from .db import init_db, make_engine
from .ingest import Ingestor, default_adapters
from .retention import RetentionPolicy, sweep
from .store import SqlEventStore

logger = logging.getLogger(__name__)

REFRESH = 'refresh'
SWEEP = 'sweep'
STOP = 'stop'

DEFAULT_LOOP_INTERVAL_SECONDS = 300


class Scheduler:
    def __init__(self, ingestor: Ingestor, store, policy: RetentionPolicy,
                 poll_interval: int = 0, sweep_interval: int = 0):
        self.ingestor = ingestor
        self.store = store
        self.policy = policy
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.requests: queue.Queue = queue.Queue()
        self.last_refresh = None
        self.last_sweep = None
        self._pending = set()
        self._pending_lock = threading.Lock()
        self._stopping = threading.Event()
        self._threads = []

    def post(self, message: str) -> bool:
        """Queue a request; a request already waiting in the queue is not queued twice."""
        if message == STOP:
            self.requests.put(STOP)
            return True
        with self._pending_lock:
            if message in self._pending:
                return False
            self._pending.add(message)
        self.requests.put(message)
        return True

    def request_refresh(self) -> bool:
        return self.post(REFRESH)

    def request_sweep(self) -> bool:
        return self.post(SWEEP)

    def handle(self, message):
        with self._pending_lock:
            self._pending.discard(message)
        if message == REFRESH:
            report = self.ingestor.trigger()
            if report is not None:
                self.last_refresh = report
            return report
        if message == SWEEP:
            self.last_sweep = sweep(self.store, self.policy)
            return self.last_sweep
        raise ValueError(f"unknown scheduler message {message!r}")

    def run(self):
        """Consume messages until STOP."""
        while True:
            message = self.requests.get()
            try:
                if message == STOP:
                    return
                self.handle(message)
            except Exception:
                logger.exception("scheduler: %s failed", message)
            finally:
                self.requests.task_done()

    def _tick(self, message, interval):
        while not self._stopping.wait(interval):
            self.post(message)

    def start(self):
        self._stopping.clear()
        worker = threading.Thread(target=self.run, name='pulsemap-worker', daemon=True)
        self._threads = [worker]
        if self.poll_interval > 0:
            self._threads.append(threading.Thread(
                target=self._tick, args=(REFRESH, self.poll_interval), name='pulsemap-poll', daemon=True))
        if self.sweep_interval > 0:
            self._threads.append(threading.Thread(
                target=self._tick, args=(SWEEP, self.sweep_interval), name='pulsemap-sweep', daemon=True))
        for t in self._threads:
            t.start()

    def stop(self, timeout=5.0):
        self._stopping.set()
        self.post(STOP)
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def join(self):
        """Block until `stop()` is called."""
        self._stopping.wait()


def build(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    store = SqlEventStore(engine, caps=settings.caps)
    ingestor = Ingestor(store, default_adapters(settings))
    return store, ingestor


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fetch disaster feeds into the event store")
    parser.add_argument("--once", action="store_true", help="Refresh every source once and exit")
    parser.add_argument("--sweep", action="store_true", help="Run the retention sweep once and exit")
    parser.add_argument("--loop", action="store_true", help="Refresh and sweep on an interval")
    args = parser.parse_args(argv)

    configure_logging()
    settings = Settings.from_env()
    store, ingestor = build(settings)
    policy = RetentionPolicy.from_settings(settings)

    if args.sweep:
        print(json.dumps(sweep(store, policy).to_dict(), indent=2))
    if args.once:
        report = ingestor.refresh_all()
        print(json.dumps(report.to_dict(), indent=2))
        return 0 if report.ok else 1
    if not args.loop:
        return 0

    scheduler = Scheduler(
        ingestor, store, policy,
        poll_interval=settings.poll_interval or DEFAULT_LOOP_INTERVAL_SECONDS,
        sweep_interval=settings.sweep_interval or DEFAULT_LOOP_INTERVAL_SECONDS,
    )
    logger.info("running in loop mode (refresh every %ss, sweep every %ss)",
                scheduler.poll_interval, scheduler.sweep_interval)
    scheduler.request_refresh()
    scheduler.start()
    try:
        scheduler.join()
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
