"""
route_validation.py — structural checks and summary extraction for route GeoJSON.

A synthesized route must be a GeoJSON FeatureCollection:

    {
      "type": "FeatureCollection",
      "properties": {
        "title": "Tatra loop via DK47",      # non-empty, <= 60 chars
        "total_distance_km": 182.5,          # finite, >= 0
        "total_duration_h": 4.0,             # finite, >= 0
        "highlights": ["Morskie Oko", ...]   # optional list of strings
      },
      "features": [
        {"type": "Feature",
         "geometry": {"type": "LineString", "coordinates": [[lon, lat], ...]},
         "properties": {...}},
        {"type": "Feature",
         "geometry": {"type": "Point", "coordinates": [lon, lat]},
         "properties": {...}},
      ]
    }

validate_route() raises LifecycleError(VALIDATION_FAILED) naming the first
violation found.  Pure functions, no I/O.
"""

import math
from typing import NamedTuple

from errors import ErrorKind, LifecycleError

MAX_TITLE_LEN = 60

GEOMETRY_LINESTRING = 'LineString'
GEOMETRY_POINT      = 'Point'
GEOMETRY_TYPES      = (GEOMETRY_POINT, GEOMETRY_LINESTRING)

PENDING_TITLE = 'Generating...'
FAILED_TITLE  = 'Generation Failed'


class RouteSummary(NamedTuple):
    title: str
    total_distance_km: float
    total_duration_h: float
    highlights: list


def _fail(message: str) -> LifecycleError:
    return LifecycleError(ErrorKind.VALIDATION_FAILED, message)


def _is_number(value) -> bool:
    # bool is an int subclass; JSON true/false must not pass as a distance.
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # json.loads keeps huge integers exact; past float range they count as non-finite.
        return False


def _check_position(position, where: str) -> None:
    if not isinstance(position, (list, tuple)) or len(position) != 2:
        raise _fail(f'{where} must be a [longitude, latitude] pair')
    lon, lat = position
    if not (_is_number(lon) and _is_number(lat)):
        raise _fail(f'{where} must contain finite numbers')
    if not -180 <= lon <= 180:
        raise _fail(f'{where} longitude must be between -180 and 180')
    if not -90 <= lat <= 90:
        raise _fail(f'{where} latitude must be between -90 and 90')


def _check_properties(props) -> None:
    if not isinstance(props, dict):
        raise _fail('Route must have a properties object')

    title = props.get('title')
    if not isinstance(title, str) or not title.strip():
        raise _fail('Route properties must include a non-empty title')
    if len(title) > MAX_TITLE_LEN:
        raise _fail(f'Route title must not exceed {MAX_TITLE_LEN} characters')

    for key in ('total_distance_km', 'total_duration_h'):
        value = props.get(key)
        if not _is_number(value) or value < 0:
            raise _fail(f'Route properties must include a non-negative {key} number')

    highlights = props.get('highlights')
    if highlights is not None:
        if not isinstance(highlights, list) or not all(isinstance(h, str) for h in highlights):
            raise _fail('Route highlights must be a list of strings')


def _check_feature(i: int, feature) -> str:
    """Validate one feature; return its geometry type."""
    if not isinstance(feature, dict):
        raise _fail(f'Feature {i} is not an object')
    if feature.get('type') != 'Feature':
        raise _fail(f'Feature {i} must have type "Feature"')

    geometry = feature.get('geometry')
    if not isinstance(geometry, dict):
        raise _fail(f'Feature {i} must have a geometry object')

    geom_type = geometry.get('type')
    if geom_type not in GEOMETRY_TYPES:
        raise _fail(f'Feature {i} has unsupported geometry type {geom_type!r}; expected Point or LineString')

    coords = geometry.get('coordinates')
    if not isinstance(coords, list):
        raise _fail(f'Feature {i} geometry must have a coordinates array')

    if geom_type == GEOMETRY_POINT:
        _check_position(coords, f'Point feature {i} coordinates')
    else:
        if len(coords) < 2:
            raise _fail(f'LineString feature {i} must have at least 2 coordinates')
        for j, position in enumerate(coords):
            _check_position(position, f'LineString feature {i}, coordinate {j}')

    props = feature.get('properties')
    if props is not None and not isinstance(props, dict):
        raise _fail(f'Feature {i} properties must be an object or null')
    return geom_type


def validate_route(payload) -> dict:
    """Return ``payload`` unchanged if it is a well-formed route, else raise."""
    if not isinstance(payload, dict):
        raise _fail('Route must be a JSON object')
    if payload.get('type') != 'FeatureCollection':
        raise _fail('Route type must be "FeatureCollection"')

    features = payload.get('features')
    if not isinstance(features, list):
        raise _fail('Route must have a features list')

    _check_properties(payload.get('properties'))

    geometry_types = [_check_feature(i, f) for i, f in enumerate(features)]
    if GEOMETRY_LINESTRING not in geometry_types:
        raise _fail('Route must contain at least one LineString segment')
    return payload


def extract_summary(route: dict) -> RouteSummary:
    """Project display fields straight from the (validated) route properties."""
    props = route['properties']
    return RouteSummary(
        title=props['title'],
        total_distance_km=float(props['total_distance_km']),
        total_duration_h=float(props['total_duration_h']),
        highlights=list(props.get('highlights') or []),
    )


def feature_counts(route: dict) -> tuple[int, int]:
    """(LineString count, Point count) — for logging."""
    types = [f['geometry']['type'] for f in route.get('features', [])]
    return types.count(GEOMETRY_LINESTRING), types.count(GEOMETRY_POINT)


def placeholder_route(title: str = PENDING_TITLE, error: str | None = None) -> dict:
    """Empty FeatureCollection stored while pending, or after a failure."""
    props = {'title': title, 'total_distance_km': 0, 'total_duration_h': 0}
    if error is not None:
        props['error'] = error
    return {'type': 'FeatureCollection', 'properties': props, 'features': []}


def failed_route(message: str) -> dict:
    return placeholder_route(FAILED_TITLE, error=message)
