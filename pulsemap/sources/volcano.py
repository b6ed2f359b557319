from ..events import ADVISORY, WARNING, WATCH, Event, EventType, Severity
from .base import RefreshPolicy, SourceAdapter, to_float, to_int, utc_ms

GVP_WFS_URL = "https://webservices.volcano.si.edu/geoserver/GVP-VOTW/ows"
GVP_ERUPTIONS_LAYER = "GVP-VOTW:Smithsonian_VOTW_Holocene_Eruptions"
GVP_VOLCANO_PAGE = "https://volcano.si.edu/volcano.cfm?vn="
FIRST_YEAR = 2010


def alert_level(vei):
    """Volcanic Explosivity Index to a 1-3 alert level."""
    if vei is None:
        return ADVISORY
    if vei >= 4:
        return WARNING
    if vei >= 2:
        return WATCH
    return ADVISORY


class VolcanoAdapter(SourceAdapter):
    name = 'volcano'
    event_type = EventType.VOLCANO
    url = GVP_WFS_URL
    params = {
        'service': 'WFS',
        'version': '1.0.0',
        'request': 'GetFeature',
        'typeName': GVP_ERUPTIONS_LAYER,
        'maxFeatures': 1000,
        'outputFormat': 'application/json',
    }
    refresh_policy = RefreshPolicy.REPLACE
    default_cap = 100

    def normalize(self, feature):
        props = feature.get('properties') or {}
        coords = (feature.get('geometry') or {}).get('coordinates')
        year = to_int(props.get('StartDateYear'))
        if not year or not coords or year < FIRST_YEAR:
            return None
        # month/day of 0 or missing means "unknown"
        month = to_int(props.get('StartDateMonth')) or 1
        day = to_int(props.get('StartDateDay')) or 1
        name = props.get('Volcano_Name')
        number = props.get('Volcano_Number')
        area = props.get('ActivityArea')
        if area:
            description = f"Volcanic activity at {area}"
        else:
            description = f"{props.get('Activity_Type')} volcanic activity"
        return Event(
            type=EventType.VOLCANO,
            external_id=f"volcano_{number}_{props.get('Eruption_Number')}",
            title=f"{name} - Eruption Alert",
            description=description,
            location=name,
            severity=Severity.alert_level(alert_level(to_float(props.get('ExplosivityIndexMax')))),
            latitude=float(coords[1]),
            longitude=float(coords[0]),
            time=utc_ms(year, month, day),
            url=f"{GVP_VOLCANO_PAGE}{number}",
        )
