import threading

from pulsemap.errors import StoreError
from pulsemap.events import EventType
from pulsemap.ingest import ADAPTER_CLASSES, Ingestor, default_adapters
from pulsemap.sources.base import RefreshPolicy
from pulsemap.sources.volcano import VolcanoAdapter
from pulsemap.sources.wildfire import WildfireAdapter
from pulsemap.store import MemoryEventStore, SqlEventStore

from conftest import NOW_MS, StaticAdapter, batch, make_event


class BrokenStore(MemoryEventStore):
    def replace_type(self, event_type, events):
        raise StoreError("database is locked")


def test_default_adapters_cover_every_type(settings):
    adapters = default_adapters(settings)
    assert [a.event_type for a in adapters] == [cls.event_type for cls in ADAPTER_CLASSES]
    assert {a.event_type for a in adapters} == set(EventType)
    wildfire = next(a for a in adapters if a.event_type is EventType.WILDFIRE)
    assert wildfire.cap == 300


def test_refresh_all_stores_every_source():
    store = MemoryEventStore()
    adapters = [
        StaticAdapter(EventType.EARTHQUAKE, batch(EventType.EARTHQUAKE, 3)),
        StaticAdapter(EventType.TSUNAMI, batch(EventType.TSUNAMI, 1), policy=RefreshPolicy.UPSERT),
    ]
    report = Ingestor(store, adapters).refresh_all()
    assert report.ok
    assert [(s.source, s.stored) for s in report.sources] == [('earthquake', 3), ('tsunami', 1)]
    assert store.counts_by_type()['total'] == 4


def test_failed_source_does_not_touch_its_rows_or_other_sources():
    store = MemoryEventStore()
    store.replace_type(EventType.VOLCANO, batch(EventType.VOLCANO, 2))
    adapters = [
        StaticAdapter(EventType.VOLCANO, error='503 Server Error'),
        StaticAdapter(EventType.FLOOD, batch(EventType.FLOOD, 2)),
    ]
    report = Ingestor(store, adapters).refresh_all()
    assert not report.ok
    assert report.failed == ['volcano']
    failed = report.sources[0]
    assert failed.error == '503 Server Error'
    assert store.counts_by_type()['volcano'] == 2
    assert store.counts_by_type()['flood'] == 2


def test_store_failure_is_reported_per_source():
    store = BrokenStore()
    report = Ingestor(store, [StaticAdapter(EventType.EARTHQUAKE, batch(EventType.EARTHQUAKE, 1))]).refresh_all()
    [source] = report.sources
    assert not source.ok
    assert source.error == 'store: database is locked'


def test_unexpected_adapter_crash_is_contained():
    class Exploding(StaticAdapter):
        def fetch(self):
            raise RuntimeError('boom')

    store = MemoryEventStore()
    adapters = [Exploding(EventType.WILDFIRE), StaticAdapter(EventType.FLOOD, batch(EventType.FLOOD, 1))]
    report = Ingestor(store, adapters).refresh_all()
    assert report.failed == ['wildfire']
    assert store.counts_by_type()['flood'] == 1


def test_replace_policy_drops_rows_missing_from_the_feed():
    store = MemoryEventStore()
    adapter = StaticAdapter(EventType.EARTHQUAKE, batch(EventType.EARTHQUAKE, 3))
    ingestor = Ingestor(store, [adapter])
    ingestor.refresh_all()
    adapter.payload = batch(EventType.EARTHQUAKE, 1)
    ingestor.refresh_all()
    assert [e.external_id for e in store.query(EventType.EARTHQUAKE)] == ['earthquake-0']


def test_upsert_policy_is_trimmed_to_cap():
    store = MemoryEventStore()
    old = [make_event(EventType.TSUNAMI, f"old-{i}", time=NOW_MS - 10_000 - i) for i in range(3)]
    store.upsert_many(EventType.TSUNAMI, old)
    adapter = StaticAdapter(EventType.TSUNAMI, batch(EventType.TSUNAMI, 5), policy=RefreshPolicy.UPSERT, cap=2)
    report = Ingestor(store, [adapter]).refresh_all()
    [source] = report.sources
    assert source.fetched == 2
    assert source.trimmed == 3
    assert [e.external_id for e in store.query(EventType.TSUNAMI)] == ['tsunami-0', 'tsunami-1']


def test_trigger_skips_while_a_refresh_is_running():
    store = MemoryEventStore()
    adapter = StaticAdapter(EventType.FLOOD, batch(EventType.FLOOD, 1))
    adapter.gate = threading.Event()
    ingestor = Ingestor(store, [adapter])
    results = []
    worker = threading.Thread(target=lambda: results.append(ingestor.trigger()))
    worker.start()
    try:
        for _ in range(100):
            if ingestor.running:
                break
            threading.Event().wait(0.01)
        assert ingestor.running
        assert ingestor.trigger() is None
    finally:
        adapter.gate.set()
        worker.join(5)
    assert results[0].ok
    assert not ingestor.running
    assert ingestor.trigger() is not None


def test_refresh_with_no_adapters_is_empty():
    report = Ingestor(MemoryEventStore(), []).refresh_all()
    assert report.ok
    assert report.to_dict()['sources'] == []


def test_empty_or_malformed_feed_keeps_replaced_rows():
    store = MemoryEventStore()
    store.replace_type(EventType.VOLCANO, batch(EventType.VOLCANO, 5))
    store.replace_type(EventType.WILDFIRE, batch(EventType.WILDFIRE, 5))
    volcano = VolcanoAdapter(session=object())
    volcano.download = lambda: {'type': 'ExceptionReport'}
    wildfire = WildfireAdapter(session=object())
    wildfire.download = lambda: 'latitude,longitude,bright_ti4\n'
    report = Ingestor(store, [volcano, wildfire]).refresh_all()
    assert report.failed == ['volcano', 'wildfire']
    counts = store.counts_by_type()
    assert counts['volcano'] == 5
    assert counts['wildfire'] == 5


def test_parallel_refresh_into_shared_sqlite_connection(engine):
    store = SqlEventStore(engine)
    adapters = [StaticAdapter(t, batch(t, 4)) for t in EventType]
    ingestor = Ingestor(store, adapters)
    for _ in range(3):
        report = ingestor.refresh_all()
        assert report.ok, report.failed
    assert store.counts_by_type() == dict({t.value: 4 for t in EventType}, total=20)
