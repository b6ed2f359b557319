"""NASA FIRMS active fire detections (VIIRS S-NPP, global, last 24h).

The feed is CSV with a header row rather than JSON. Rows are ranked by
detection confidence, then brightness, then acquisition time.
"""

import csv
import io

from ..errors import ParseError
from ..events import Event, EventType, Severity
from .base import RefreshPolicy, SourceAdapter, to_float, utc_ms

FIRMS_VIIRS_24H_URL = (
    "https://firms.modaps.eosdis.nasa.gov/data/active_fire/"
    "suomi-npp-viirs-c2/csv/SUOMI_VIIRS_C2_Global_24h.csv"
)
FIRMS_HOME = "https://firms.modaps.eosdis.nasa.gov/"

BRIGHTNESS_FIELD = 'bright_ti4'
DEFAULT_BRIGHTNESS = 300.0
DEFAULT_CONFIDENCE = 0.0
BRIGHTNESS_RANGE = (300.0, 400.0)
CONFIDENCE_RANGE = (0.0, 100.0)


def _unit(value, low, high):
    return min(max((value - low) / (high - low), 0.0), 1.0)


def fire_intensity(brightness, confidence):
    """0.7 * brightness (300-400K) + 0.3 * confidence (0-100%), one decimal."""
    return round(0.7 * _unit(brightness, *BRIGHTNESS_RANGE) + 0.3 * _unit(confidence, *CONFIDENCE_RANGE), 1)


def acquisition_ms(acq_date, acq_time):
    hhmm = (acq_time or '0000').strip().zfill(4)
    try:
        year, month, day = (int(p) for p in acq_date.split('-'))
        hour, minute = int(hhmm[:2]), int(hhmm[2:4])
    except (AttributeError, ValueError):
        raise ParseError(f"bad acquisition time {acq_date!r} {acq_time!r}")
    return utc_ms(year, month, day, hour, minute)


class WildfireAdapter(SourceAdapter):
    name = 'wildfire'
    event_type = EventType.WILDFIRE
    url = FIRMS_VIIRS_24H_URL
    refresh_policy = RefreshPolicy.REPLACE
    default_cap = 300

    def decode(self, resp):
        return resp.text

    def records(self, payload):
        if not isinstance(payload, str):
            raise ParseError("expected CSV text")
        reader = csv.reader(io.StringIO(payload.strip()))
        header = next(reader, None)
        if not header:
            return []
        keys = [h.strip().lower() for h in header]
        rows = []
        for values in reader:
            if len(values) < len(keys):
                continue
            rows.append({k: v.strip() for k, v in zip(keys, values)})
        return rows

    def normalize(self, row):
        lat_raw, lon_raw = row.get('latitude'), row.get('longitude')
        if not lat_raw or not lon_raw or not row.get(BRIGHTNESS_FIELD):
            return None
        latitude, longitude = to_float(lat_raw), to_float(lon_raw)
        if latitude is None or longitude is None:
            return None
        brightness = to_float(row.get(BRIGHTNESS_FIELD), DEFAULT_BRIGHTNESS)
        confidence = to_float(row.get('confidence'), DEFAULT_CONFIDENCE)
        acq_date = row.get('acq_date') or ''
        return Event(
            type=EventType.WILDFIRE,
            external_id=f"wildfire_{lat_raw}_{lon_raw}_{acq_date}",
            title='Active Fire Detection',
            description=(f"Fire detected by satellite with {confidence:g}% confidence. "
                         f"Brightness: {brightness:g}K"),
            location=f"{latitude:.3f}, {longitude:.3f}",
            severity=Severity.intensity(fire_intensity(brightness, confidence)),
            latitude=latitude,
            longitude=longitude,
            time=acquisition_ms(acq_date, row.get('acq_time')),
            url=FIRMS_HOME,
        )

    def rank_key(self, event, row):
        confidence = to_float(row.get('confidence'), DEFAULT_CONFIDENCE)
        brightness = to_float(row.get(BRIGHTNESS_FIELD), DEFAULT_BRIGHTNESS)
        return confidence, brightness, event.time
