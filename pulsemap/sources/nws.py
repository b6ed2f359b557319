"""Helpers shared by adapters reading api.weather.gov active alerts."""

from ..errors import ParseError
from .base import SourceAdapter, iso_to_ms

NWS_ACTIVE_ALERTS_URL = "https://api.weather.gov/alerts/active"
NWS_ALERT_PREFIX = "https://api.weather.gov/alerts/"

POINT_RADIUS_KM = 15
POLYGON_RADIUS_KM = 25
MULTIPOLYGON_RADIUS_KM = 50
MAX_POLYGON_RADIUS_KM = 100
# rough km per degree, averaged over latitude and longitude
KM_PER_DEGREE = 55


def normalize_alert_id(aid):
    """Strip the api.weather.gov URL off an alert id, leaving the bare URN."""
    if aid and aid.startswith(NWS_ALERT_PREFIX):
        return aid[len(NWS_ALERT_PREFIX):]
    return aid


def alert_url(aid):
    return NWS_ALERT_PREFIX + aid


def polygon_radius_km(ring):
    """Estimate an affected radius from a polygon ring's bounding box."""
    if len(ring) <= 2:
        return float(POLYGON_RADIUS_KM)
    lats = [p[1] for p in ring]
    lons = [p[0] for p in ring]
    spread = (max(lats) - min(lats)) + (max(lons) - min(lons))
    return float(max(POLYGON_RADIUS_KM, min(MAX_POLYGON_RADIUS_KM, spread * KM_PER_DEGREE)))


def anchor(geometry):
    """Pick a marker coordinate and a default radius for an alert geometry.

    Returns (longitude, latitude, radius_km), or None when the alert has no
    geometry or an unsupported geometry type.
    """
    if not geometry or not geometry.get('coordinates'):
        return None
    kind = geometry.get('type')
    coords = geometry['coordinates']
    if kind == 'Point':
        point, radius = coords, float(POINT_RADIUS_KM)
    elif kind == 'Polygon':
        point, radius = coords[0][0], polygon_radius_km(coords[0])
    elif kind == 'MultiPolygon':
        point, radius = coords[0][0][0], float(MULTIPOLYGON_RADIUS_KM)
    else:
        return None
    return float(point[0]), float(point[1]), radius


class NwsAlertAdapter(SourceAdapter):
    url = NWS_ACTIVE_ALERTS_URL
    alert_events = ()

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.params = {'event': ','.join(self.alert_events)}

    def headers(self):
        h = super().headers()
        h['Accept'] = 'application/geo+json'
        return h

    def alert_fields(self, feature):
        """Fields common to every NWS alert, or None if it cannot be placed on a map."""
        props = feature.get('properties') or {}
        placed = anchor(feature.get('geometry'))
        if placed is None:
            return None
        lon, lat, radius = placed
        aid = normalize_alert_id(props.get('id') or feature.get('id'))
        if not aid:
            raise ParseError("alert without id")
        event_name = props.get('event') or ''
        started = props.get('onset') or props.get('sent')
        headline = props.get('headline')
        return {
            'alert_id': aid,
            'event': event_name,
            'started': started,
            'time': iso_to_ms(started),
            'title': f"{event_name}: {headline}" if headline else (event_name or 'NWS alert'),
            'description': props.get('description') or props.get('instruction'),
            'location': props.get('areaDesc'),
            'url': alert_url(aid),
            'latitude': lat,
            'longitude': lon,
            'radius': radius,
            'urgency': props.get('urgency'),
            'certainty': props.get('certainty'),
        }
