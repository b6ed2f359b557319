from ..events import Event, EventType, Severity, keyword_level
from .base import RefreshPolicy
from .nws import NwsAlertAdapter


class TsunamiAdapter(NwsAlertAdapter):
    """Active NWS tsunami alerts; threat level 3/2/1 from Warning/Watch/Advisory.

    Alerts are updated in place upstream, so rows are upserted by
    alert id + onset and old ones are left to the retention sweep.
    """

    name = 'tsunami'
    event_type = EventType.TSUNAMI
    alert_events = ('Tsunami Warning', 'Tsunami Watch', 'Tsunami Advisory')
    refresh_policy = RefreshPolicy.UPSERT
    default_cap = 100

    def normalize(self, feature):
        alert = self.alert_fields(feature)
        if alert is None:
            return None
        return Event(
            type=EventType.TSUNAMI,
            external_id=f"tsunami_{alert['alert_id']}_{alert['started']}",
            title=alert['title'],
            description=alert['description'],
            location=alert['location'],
            severity=Severity.threat_level(keyword_level(alert['event'])),
            latitude=alert['latitude'],
            longitude=alert['longitude'],
            time=alert['time'],
            url=alert['url'],
            affected_radius_km=alert['radius'],
        )
