from ..errors import ParseError
from ..events import Event, EventType, Severity
from .base import RefreshPolicy, SourceAdapter, to_float

USGS_ALL_DAY_URL = "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary/all_day.geojson"
MIN_MAGNITUDE = 2.0


class EarthquakeAdapter(SourceAdapter):
    """USGS rolling 24h feed, magnitude above 2.0, newest first."""

    name = 'earthquake'
    event_type = EventType.EARTHQUAKE
    url = USGS_ALL_DAY_URL
    refresh_policy = RefreshPolicy.REPLACE
    default_cap = 100

    def normalize(self, feature):
        props = feature.get('properties') or {}
        mag = to_float(props.get('mag'))
        if mag is None or mag <= MIN_MAGNITUDE:
            return None
        coords = (feature.get('geometry') or {}).get('coordinates')
        if not coords or len(coords) < 2:
            return None
        if props.get('time') is None:
            raise ParseError(f"earthquake {feature.get('id')} has no time")
        place = props.get('place')
        return Event(
            type=EventType.EARTHQUAKE,
            external_id=str(feature['id']),
            title=props.get('title') or f"M {mag} - {place}",
            location=place,
            severity=Severity.richter(mag),
            depth=to_float(coords[2]) if len(coords) > 2 else None,
            latitude=float(coords[1]),
            longitude=float(coords[0]),
            time=int(props['time']),
            url=props.get('url'),
        )
