import re

from ..events import WARNING, Event, EventType, Severity, keyword_level
from .base import RefreshPolicy
from .nws import NwsAlertAdapter

FLOOD_ALERT_EVENTS = (
    'Flood Warning',
    'Flood Watch',
    'Flood Advisory',
    'Flash Flood Warning',
    'Flash Flood Watch',
    'Flash Flood Statement',
    'River Flood Warning',
    'River Flood Statement',
    'Coastal Flood Warning',
    'Coastal Flood Watch',
    'Coastal Flood Advisory',
    'Urban and Small Stream Flood Advisory',
)

URGENCY_BOOST = 0.5
CERTAINTY_BOOST = 0.3
# a boosted level stays below the next tier (Advisory tops out at 1.8, Watch at 2.8)
MAX_BOOST = 0.8

WATER_LEVEL_RE = re.compile(r'(\d+\.?\d*)\s*(feet|ft|foot|meters?|m)\s*(above|below)', re.IGNORECASE)


def flood_severity(event_name, urgency=None, certainty=None):
    """Advisory/Watch/Warning base level plus urgency and certainty boosts.

    Warnings are never boosted, so the scale tops out at 3.0.
    """
    level = keyword_level(event_name)
    if level >= WARNING:
        return float(WARNING)
    boost = 0.0
    if urgency == 'Immediate':
        boost += URGENCY_BOOST
    if certainty == 'Likely':
        boost += CERTAINTY_BOOST
    return round(level + min(boost, MAX_BOOST), 1)


def water_level_note(text):
    m = WATER_LEVEL_RE.search(text or '')
    if not m:
        return ''
    return f" - Water Level: {m.group(1)} {m.group(2)} {m.group(3)} normal"


class FloodAdapter(NwsAlertAdapter):
    name = 'flood'
    event_type = EventType.FLOOD
    alert_events = FLOOD_ALERT_EVENTS
    refresh_policy = RefreshPolicy.REPLACE
    default_cap = 100

    def normalize(self, feature):
        alert = self.alert_fields(feature)
        if alert is None:
            return None
        props = feature.get('properties') or {}
        description = (alert['description'] or 'Flood alert issued') + water_level_note(props.get('description'))
        return Event(
            type=EventType.FLOOD,
            external_id=f"flood_{alert['alert_id']}_{alert['started']}",
            title=alert['title'],
            description=description,
            location=alert['location'],
            severity=Severity.flood_severity(
                flood_severity(alert['event'], alert['urgency'], alert['certainty'])
            ),
            latitude=alert['latitude'],
            longitude=alert['longitude'],
            time=alert['time'],
            url=alert['url'],
            affected_radius_km=alert['radius'],
        )

    def rank_key(self, event, feature):
        return event.magnitude, event.time
