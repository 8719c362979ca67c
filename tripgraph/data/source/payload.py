"""
Normalisation of raw upstream records into pipeline records.

The upstream feed is not consistent about key casing, so every field is
looked up under both its camelCase and snake_case spelling. Records that
cannot be placed in the graph (no id, no endpoints, coordinates out of
range) are dropped and counted.
"""

import logging
from typing import Dict, List, Optional

from tripgraph.data.models import STOP_KIND_REAL
from tripgraph.data.records import StopRecord, RouteRecord, FlightRecord, SourcePayload

logger = logging.getLogger(__name__)


def _pick(record: Dict, *keys, default=None):
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return default


def _as_float(value) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_int(value) -> Optional[int]:
    number = _as_float(value)
    return int(round(number)) if number is not None else None


def normalize_stop(raw: Dict) -> Optional[StopRecord]:
    stop_id = _pick(raw, 'id', 'stopId', 'stop_id')
    lat = _as_float(_pick(raw, 'latitude', 'lat'))
    lon = _as_float(_pick(raw, 'longitude', 'lon', 'lng'))

    if not stop_id or lat is None or lon is None:
        return None

    # Validate coordinates
    if not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return None

    return StopRecord(
        id=str(stop_id),
        name=_pick(raw, 'name', 'commonName', default='Unknown'),
        latitude=lat,
        longitude=lon,
        city_id=_pick(raw, 'cityId', 'city_id', 'city', 'cityName'),
        kind=STOP_KIND_REAL,
        stop_type=_pick(raw, 'type', 'stopType', 'stop_type'),
    )


def normalize_route(raw: Dict) -> Optional[RouteRecord]:
    route_id = _pick(raw, 'id', 'routeId', 'route_id')
    sequence = _pick(raw, 'stops', 'stopsSequence', 'stops_sequence', default=[])
    sequence = [s.get('stopId') if isinstance(s, dict) else s for s in sequence]

    from_stop = _pick(raw, 'fromStopId', 'from_stop_id')
    to_stop = _pick(raw, 'toStopId', 'to_stop_id')
    if (not from_stop or not to_stop) and len(sequence) >= 2:
        from_stop, to_stop = sequence[0], sequence[-1]

    if not route_id or not from_stop or not to_stop:
        return None

    metadata = {}
    for key in ('routeNumber', 'name', 'baseFare', 'ferrySchedule'):
        if raw.get(key) is not None:
            metadata[key] = raw[key]
    if raw.get('ferry_schedule') is not None:
        metadata['ferrySchedule'] = raw['ferry_schedule']

    return RouteRecord(
        id=str(route_id),
        from_stop_id=str(from_stop),
        to_stop_id=str(to_stop),
        transport_mode=str(_pick(raw, 'transportType', 'transportMode', 'transport_mode', default='BUS')).upper(),
        distance_km=_as_float(_pick(raw, 'distanceKm', 'distance_km')),
        duration_minutes=_as_int(_pick(raw, 'durationMinutes', 'duration_minutes')),
        kind=STOP_KIND_REAL,
        metadata=metadata,
    )


def normalize_flight(raw: Dict) -> Optional[FlightRecord]:
    flight_id = _pick(raw, 'id', 'flightId', 'flight_id')
    from_stop = _pick(raw, 'fromStopId', 'from_stop_id')
    to_stop = _pick(raw, 'toStopId', 'to_stop_id')

    if not flight_id or not from_stop or not to_stop:
        return None

    route_id = _pick(raw, 'routeId', 'route_id')
    return FlightRecord(
        id=str(flight_id),
        route_id=str(route_id) if route_id else None,
        from_stop_id=str(from_stop),
        to_stop_id=str(to_stop),
        departure_time=_pick(raw, 'departureTime', 'departure_time'),
        arrival_time=_pick(raw, 'arrivalTime', 'arrival_time'),
        days_of_week=list(_pick(raw, 'daysOfWeek', 'days_of_week', default=[1, 2, 3, 4, 5, 6, 7])),
        price=_as_float(_pick(raw, 'priceRub', 'price')),
        is_virtual=False,
    )


def build_payload(raw_stops: List[Dict], raw_routes: List[Dict], raw_flights: List[Dict]) -> SourcePayload:
    payload = SourcePayload()

    for normalizer, raw_items, target, label in (
        (normalize_stop, raw_stops, payload.stops, 'stops'),
        (normalize_route, raw_routes, payload.routes, 'routes'),
        (normalize_flight, raw_flights, payload.flights, 'flights'),
    ):
        seen = set()
        for raw in raw_items or []:
            record = normalizer(raw) if isinstance(raw, dict) else None
            if record is None or record.id in seen:
                payload.skipped[label] += 1
                continue
            seen.add(record.id)
            target.append(record)

    if any(payload.skipped.values()):
        logger.warning(f"Dropped invalid or duplicate source records: {payload.skipped}")

    return payload
