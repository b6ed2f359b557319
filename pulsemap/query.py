from .events import EventType


class EventQueryService:
    """Read-only projections over the event store for the display layer."""

    def __init__(self, store):
        self.store = store

    def list_events(self, event_type=None, limit=None):
        if event_type is not None:
            event_type = EventType.parse(event_type)
        return [e.to_dict() for e in self.store.query(event_type, limit=limit)]

    def recent(self, limit=20):
        return [e.to_dict() for e in self.store.recent(limit)]

    def get_event(self, event_id):
        return self.store.get_by_id(event_id).to_dict()

    def stats(self):
        return self.store.counts_by_type()
