"""Event persistence.

`EventStore` is the contract the ingestion and query layers talk to. Writes
for one event type are serialized through a per-type lock so two refreshes of
the same type never interleave, while different types proceed in parallel.
Retention deletes are scoped to `time < cutoff` and take no type lock.
"""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from .config import DEFAULT_CAPS
from .db import make_sessionmaker
from .errors import NotFoundError, StoreError, ValidationError
from .events import Event, EventType, Severity, SeverityKind, apply_update, now_ms
from .models import EventRow

logger = logging.getLogger(__name__)

# Columns an upsert overwrites on conflict; id, type and external_id are kept.
_UPSERT_COLUMNS = (
    'title', 'description', 'location', 'magnitude', 'severity_kind', 'depth',
    'latitude', 'longitude', 'time', 'url', 'affected_radius_km',
)


def dedupe(events: Iterable[Event]) -> List[Event]:
    """Drop repeated external ids, keeping the first occurrence."""
    seen = set()
    out = []
    for e in events:
        if e.external_id in seen:
            continue
        seen.add(e.external_id)
        out.append(e)
    return out


def sort_newest_first(events: Iterable[Event]) -> List[Event]:
    return sorted(events, key=lambda e: (e.time, e.id or 0), reverse=True)


class EventStore(abc.ABC):
    def __init__(self, caps=None):
        self.caps = {t: (caps or DEFAULT_CAPS).get(t, DEFAULT_CAPS[t]) for t in EventType}
        self._type_locks = {t: threading.Lock() for t in EventType}

    @contextmanager
    def type_lock(self, event_type):
        with self._type_locks[EventType.parse(event_type)]:
            yield

    def _prepare(self, event_type, events) -> List[Event]:
        event_type = EventType.parse(event_type)
        prepared = []
        for e in events:
            if e.type != event_type:
                raise ValidationError(f"{e.type.value} event passed to a {event_type.value} write")
            if not e.external_id:
                raise ValidationError("externalId is required for ingested events")
            prepared.append(e.validate())
        return dedupe(prepared)

    def _limit_for(self, event_type, limit):
        cap = self.caps[event_type]
        return cap if limit is None else max(0, min(int(limit), cap))

    # writes

    @abc.abstractmethod
    def replace_type(self, event_type, events: Iterable[Event]) -> int:
        """Make `events` the complete set for `event_type`.

        Rows whose external id is absent from `events` are removed and the rest
        are upserted, all in one unit of work. Returns the number written.
        """

    @abc.abstractmethod
    def upsert_many(self, event_type, events: Iterable[Event]) -> int:
        """Insert or update each event by external id, leaving other rows alone."""

    def upsert(self, event: Event) -> Event:
        self.upsert_many(event.type, [event])
        return self.get_by_external_id(event.type, event.external_id)

    @abc.abstractmethod
    def trim_type(self, event_type, cap: int) -> int:
        """Keep only the newest `cap` rows of `event_type`; returns rows removed."""

    @abc.abstractmethod
    def create(self, event: Event) -> Event:
        pass

    @abc.abstractmethod
    def update(self, event_id: int, changes: dict) -> Event:
        pass

    @abc.abstractmethod
    def delete_by_id(self, event_id: int) -> None:
        pass

    @abc.abstractmethod
    def delete_older_than(self, event_type, age_ms: int, now: Optional[int] = None) -> int:
        """Delete rows with `time < now - age_ms`; `event_type=None` means every type."""

    # reads

    @abc.abstractmethod
    def get_by_id(self, event_id: int) -> Event:
        pass

    @abc.abstractmethod
    def get_by_external_id(self, event_type, external_id: str) -> Event:
        pass

    @abc.abstractmethod
    def _query_type(self, event_type, limit, since, until) -> List[Event]:
        pass

    @abc.abstractmethod
    def counts_by_type(self) -> Dict[str, int]:
        pass

    def query(self, event_type=None, limit=None, since=None, until=None) -> List[Event]:
        """Events newest first.

        Every type is capped at its configured row cap; without a type filter
        the result is the union of the per-type capped lists, re-sorted by
        time, and `limit` then applies to the union.
        """
        if event_type is not None:
            event_type = EventType.parse(event_type)
            return self._query_type(event_type, self._limit_for(event_type, limit), since, until)
        merged = []
        for t in EventType:
            merged.extend(self._query_type(t, self.caps[t], since, until))
        merged = sort_newest_first(merged)
        if limit is not None:
            merged = merged[:max(0, int(limit))]
        return merged

    def recent(self, limit=20) -> List[Event]:
        return self.query(limit=limit)


class MemoryEventStore(EventStore):
    """Dictionary-backed store for tests and throwaway runs."""

    def __init__(self, caps=None):
        super().__init__(caps)
        self._rows: Dict[int, Event] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def _find(self, event_type, external_id):
        for e in self._rows.values():
            if e.type == event_type and e.external_id == external_id:
                return e
        return None

    def _put(self, event):
        existing = self._find(event.type, event.external_id)
        if existing is not None:
            self._rows[existing.id] = event.with_id(existing.id)
            return
        self._rows[self._next_id] = event.with_id(self._next_id)
        self._next_id += 1

    def replace_type(self, event_type, events):
        event_type = EventType.parse(event_type)
        events = self._prepare(event_type, events)
        keep = {e.external_id for e in events}
        with self.type_lock(event_type), self._lock:
            for row_id, e in list(self._rows.items()):
                if e.type == event_type and e.external_id not in keep:
                    del self._rows[row_id]
            for e in events:
                self._put(e)
        return len(events)

    def upsert_many(self, event_type, events):
        event_type = EventType.parse(event_type)
        events = self._prepare(event_type, events)
        with self.type_lock(event_type), self._lock:
            for e in events:
                self._put(e)
        return len(events)

    def trim_type(self, event_type, cap):
        event_type = EventType.parse(event_type)
        with self.type_lock(event_type), self._lock:
            rows = sort_newest_first(e for e in self._rows.values() if e.type == event_type)
            stale = rows[cap:]
            for e in stale:
                del self._rows[e.id]
        return len(stale)

    def create(self, event):
        if not event.external_id:
            event = replace(event, external_id=f"admin_{uuid.uuid4().hex}")
        event.validate()
        with self.type_lock(event.type), self._lock:
            if self._find(event.type, event.external_id) is not None:
                raise ValidationError(f"externalId {event.external_id!r} already exists")
            self._put(event)
            return self._find(event.type, event.external_id)

    def update(self, event_id, changes):
        with self._lock:
            updated = apply_update(self.get_by_id(event_id), changes)
            self._rows[event_id] = updated
            return updated

    def delete_by_id(self, event_id):
        with self._lock:
            if self._rows.pop(event_id, None) is None:
                raise NotFoundError(f"Event {event_id} not found")

    def delete_older_than(self, event_type, age_ms, now=None):
        cutoff = (now if now is not None else now_ms()) - int(age_ms)
        event_type = EventType.parse(event_type) if event_type is not None else None
        with self._lock:
            doomed = [
                row_id for row_id, e in self._rows.items()
                if e.time < cutoff and (event_type is None or e.type == event_type)
            ]
            for row_id in doomed:
                del self._rows[row_id]
        return len(doomed)

    def get_by_id(self, event_id):
        with self._lock:
            e = self._rows.get(event_id)
        if e is None:
            raise NotFoundError(f"Event {event_id} not found")
        return e

    def get_by_external_id(self, event_type, external_id):
        with self._lock:
            e = self._find(EventType.parse(event_type), external_id)
        if e is None:
            raise NotFoundError(f"Event {external_id} not found")
        return e

    def _query_type(self, event_type, limit, since, until):
        with self._lock:
            rows = [
                e for e in self._rows.values()
                if e.type == event_type
                and (since is None or e.time >= since)
                and (until is None or e.time < until)
            ]
        return sort_newest_first(rows)[:limit]

    def counts_by_type(self):
        counts = {t.value: 0 for t in EventType}
        with self._lock:
            for e in self._rows.values():
                counts[e.type.value] += 1
        counts['total'] = sum(counts.values())
        return counts


def _row_values(event: Event) -> dict:
    return dict(
        external_id=event.external_id,
        type=event.type.value,
        title=event.title,
        description=event.description,
        location=event.location,
        magnitude=event.magnitude,
        severity_kind=event.severity.kind.value if event.severity is not None else None,
        depth=event.depth,
        latitude=event.latitude,
        longitude=event.longitude,
        time=event.time,
        url=event.url,
        affected_radius_km=event.affected_radius_km,
    )


def _to_event(row: EventRow) -> Event:
    severity = None
    if row.magnitude is not None:
        kind = SeverityKind(row.severity_kind) if row.severity_kind else None
        severity = (Severity(kind, row.magnitude) if kind is not None
                    else Severity.for_type(row.type, row.magnitude))
    return Event(
        id=row.id,
        external_id=row.external_id,
        type=EventType(row.type),
        title=row.title,
        description=row.description,
        location=row.location,
        severity=severity,
        depth=row.depth,
        latitude=row.latitude,
        longitude=row.longitude,
        time=int(row.time),
        url=row.url,
        affected_radius_km=row.affected_radius_km,
    )


class SqlEventStore(EventStore):
    def __init__(self, engine, caps=None):
        super().__init__(caps)
        self.engine = engine
        self.SessionLocal = make_sessionmaker(engine)
        # every session shares one DBAPI connection under StaticPool (in-memory
        # SQLite), so units of work have to take turns
        self._connection_lock = threading.RLock() if isinstance(engine.pool, StaticPool) else None

    @contextmanager
    def session(self):
        with self._connection_lock or nullcontext():
            db = self.SessionLocal()
            try:
                yield db
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise ValidationError(f"constraint violated: {e.orig}") from e
            except SQLAlchemyError as e:
                db.rollback()
                logger.exception("event store operation failed")
                raise StoreError(str(e)) from e
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    def _insert(self):
        dialect = self.engine.dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        else:
            return None
        return insert

    def _upsert_rows(self, db, events):
        table = EventRow.__table__
        insert = self._insert()
        for e in events:
            values = _row_values(e)
            if insert is None:
                row = db.execute(
                    select(EventRow).where(EventRow.type == values['type'],
                                           EventRow.external_id == values['external_id'])
                ).scalar_one_or_none()
                if row is None:
                    db.add(EventRow(**values))
                else:
                    for c in _UPSERT_COLUMNS:
                        setattr(row, c, values[c])
                continue
            stmt = insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.type, table.c.external_id],
                set_={c: getattr(stmt.excluded, c) for c in _UPSERT_COLUMNS},
            )
            db.execute(stmt)

    def replace_type(self, event_type, events):
        event_type = EventType.parse(event_type)
        events = self._prepare(event_type, events)
        keep = [e.external_id for e in events]
        with self.type_lock(event_type), self.session() as db:
            stmt = delete(EventRow).where(EventRow.type == event_type.value)
            if keep:
                stmt = stmt.where(EventRow.external_id.notin_(keep))
            removed = db.execute(stmt).rowcount
            self._upsert_rows(db, events)
        logger.debug("replace %s: %d removed, %d written", event_type.value, removed, len(events))
        return len(events)

    def upsert_many(self, event_type, events):
        event_type = EventType.parse(event_type)
        events = self._prepare(event_type, events)
        with self.type_lock(event_type), self.session() as db:
            self._upsert_rows(db, events)
        return len(events)

    def trim_type(self, event_type, cap):
        event_type = EventType.parse(event_type)
        with self.type_lock(event_type), self.session() as db:
            keep = (
                select(EventRow.id)
                .where(EventRow.type == event_type.value)
                .order_by(EventRow.time.desc(), EventRow.id.desc())
                .limit(cap)
            )
            keep_ids = list(db.execute(keep).scalars())
            stmt = delete(EventRow).where(EventRow.type == event_type.value)
            if keep_ids:
                stmt = stmt.where(EventRow.id.notin_(keep_ids))
            return db.execute(stmt).rowcount

    def create(self, event):
        if not event.external_id:
            event = replace(event, external_id=f"admin_{uuid.uuid4().hex}")
        event.validate()
        with self.type_lock(event.type), self.session() as db:
            row = EventRow(**_row_values(event))
            db.add(row)
            db.flush()
            return _to_event(row)

    def update(self, event_id, changes):
        with self.session() as db:
            row = db.get(EventRow, event_id)
            if row is None:
                raise NotFoundError(f"Event {event_id} not found")
            updated = apply_update(_to_event(row), changes)
            values = _row_values(updated)
            for c in ('title', 'magnitude', 'severity_kind', 'depth', 'latitude', 'longitude', 'location'):
                setattr(row, c, values[c])
            return updated

    def delete_by_id(self, event_id):
        with self.session() as db:
            removed = db.execute(delete(EventRow).where(EventRow.id == event_id)).rowcount
        if not removed:
            raise NotFoundError(f"Event {event_id} not found")

    def delete_older_than(self, event_type, age_ms, now=None):
        cutoff = (now if now is not None else now_ms()) - int(age_ms)
        stmt = delete(EventRow).where(EventRow.time < cutoff)
        if event_type is not None:
            stmt = stmt.where(EventRow.type == EventType.parse(event_type).value)
        with self.session() as db:
            return db.execute(stmt).rowcount

    def get_by_id(self, event_id):
        with self.session() as db:
            row = db.get(EventRow, event_id)
            if row is None:
                raise NotFoundError(f"Event {event_id} not found")
            return _to_event(row)

    def get_by_external_id(self, event_type, external_id):
        with self.session() as db:
            row = db.execute(
                select(EventRow).where(EventRow.type == EventType.parse(event_type).value,
                                       EventRow.external_id == external_id)
            ).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"Event {external_id} not found")
            return _to_event(row)

    def _query_type(self, event_type, limit, since, until):
        stmt = select(EventRow).where(EventRow.type == event_type.value)
        if since is not None:
            stmt = stmt.where(EventRow.time >= since)
        if until is not None:
            stmt = stmt.where(EventRow.time < until)
        stmt = stmt.order_by(EventRow.time.desc(), EventRow.id.desc()).limit(limit)
        with self.session() as db:
            return [_to_event(r) for r in db.execute(stmt).scalars()]

    def counts_by_type(self):
        counts = {t.value: 0 for t in EventType}
        with self.session() as db:
            for type_, count in db.execute(select(EventRow.type, func.count()).group_by(EventRow.type)):
                counts[type_] = count
        counts['total'] = sum(counts.values())
        return counts
