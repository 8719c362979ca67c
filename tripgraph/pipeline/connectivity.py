"""
Connectivity Synthesis Stage

Makes every reference city reachable. Cities without a real stop get a
virtual stop at their reference coordinates, virtual stops are linked to
the hub city (or to each other when there is no hub), a pairwise sweep
links every remaining pair of served cities, and each virtual route gets
a year of twice-daily virtual flights.

Everything is written in one transaction together with the dataset's
``synthesized_at`` marker, so the stage either completes for a dataset
version or leaves no trace of having run.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from tqdm import tqdm

from tripgraph.data.models import STOP_KIND_VIRTUAL, utcnow
from tripgraph.data.records import (
    StopRecord, RouteRecord, FlightRecord, DatasetStatistics,
    TRANSPORT_SHUTTLE, GENERATION_HUB, GENERATION_DIRECT, GENERATION_CONNECTIVITY,
)
from tripgraph.geo.cities import CityDirectory, ReferenceCity, normalize_city_name
from tripgraph.geo.geometry import stop_distance_km, estimate_duration_minutes
from tripgraph.geo.ids import virtual_stop_id, virtual_route_id, connectivity_route_id, virtual_flight_id

from .stage import OK, CANNOT_RUN, NO_DATASET, StageResult

logger = logging.getLogger(__name__)

STAGE_ID = 'connectivity-synthesis'

AIRPORT_MARKERS = ('аэропорт', 'airport')
STATION_MARKERS = ('вокзал', 'railway', 'station')
FALLBACK_FLIGHT_DURATION_MINUTES = 180


# ============================================================================
# HELPERS
# ============================================================================

def select_main_stop(stops: Sequence[StopRecord]) -> Optional[StopRecord]:
    """
    Pick the stop that represents a city.

    Airport first, then a railway/bus station, then the first stop. Stops
    are ordered by id beforehand so the choice does not depend on the
    order they were loaded in.
    """
    ordered = sorted(stops, key=lambda s: s.id)
    if not ordered:
        return None

    for markers in (AIRPORT_MARKERS, STATION_MARKERS):
        for stop in ordered:
            name = (stop.name or '').lower()
            if any(marker in name for marker in markers):
                return stop

    return ordered[0]


def city_key_for_stop(stop: StopRecord, directory: CityDirectory) -> Optional[str]:
    """Normalized city of a stop: its city id, else a reference city named in the stop name."""
    if stop.city_id:
        return directory.canonical_key(stop.city_id) or normalize_city_name(stop.city_id)
    city = directory.match_city_in_text(stop.name)
    return city.normalized_name if city else None


def build_virtual_stop(city: ReferenceCity) -> StopRecord:
    return StopRecord(
        id=virtual_stop_id(city.name),
        name=f"г. {city.name}",
        latitude=city.latitude,
        longitude=city.longitude,
        city_id=city.name,
        kind=STOP_KIND_VIRTUAL,
    )


def _stop_city_label(stop: StopRecord) -> str:
    return stop.city_id or stop.name


def format_hhmm(moment: datetime) -> str:
    return moment.strftime('%H:%M')


class RouteFactory:
    """Builds virtual routes with haversine distance and speed-based duration."""

    def __init__(self, average_speed_kmh: float = 60.0, min_duration_minutes: int = 60):
        self.average_speed_kmh = average_speed_kmh
        self.min_duration_minutes = min_duration_minutes

    def build(self, route_id: str, from_stop: StopRecord, to_stop: StopRecord, method: str,
              source_city: str = None, target_city: str = None) -> RouteRecord:
        distance = stop_distance_km(from_stop, to_stop)
        source_city = source_city or _stop_city_label(from_stop)
        target_city = target_city or _stop_city_label(to_stop)
        return RouteRecord(
            id=route_id,
            from_stop_id=from_stop.id,
            to_stop_id=to_stop.id,
            transport_mode=TRANSPORT_SHUTTLE,
            distance_km=round(distance, 3),
            duration_minutes=estimate_duration_minutes(
                distance, self.average_speed_kmh, self.min_duration_minutes
            ),
            kind=STOP_KIND_VIRTUAL,
            generation_method=method,
            source_city=source_city,
            target_city=target_city,
            metadata={'name': f"{source_city} → {target_city}"},
        )

    def round_trip(self, a: StopRecord, b: StopRecord, method: str) -> List[RouteRecord]:
        return [
            self.build(virtual_route_id(a.id, b.id, method), a, b, method),
            self.build(virtual_route_id(b.id, a.id, method), b, a, method),
        ]

    def hub_routes(self, hub: StopRecord, virtual_stops: Sequence[StopRecord]) -> List[RouteRecord]:
        routes = []
        for stop in virtual_stops:
            if stop.id == hub.id:
                continue
            routes.extend(self.round_trip(stop, hub, GENERATION_HUB))
        return routes

    def fallback_routes(self, virtual_stops: Sequence[StopRecord], full_mesh_max_stops: int) -> List[RouteRecord]:
        """Full mesh for small sets, a nearest-neighbour chain above the limit."""
        stops = sorted(virtual_stops, key=lambda s: s.id)
        routes = []

        if len(stops) <= full_mesh_max_stops:
            for i in range(len(stops)):
                for j in range(i + 1, len(stops)):
                    routes.extend(self.round_trip(stops[i], stops[j], GENERATION_DIRECT))
            return routes

        logger.warning(f"{len(stops)} virtual stops exceed the full mesh limit of "
                       f"{full_mesh_max_stops}, linking them as a nearest-neighbour chain")
        current, remaining = stops[0], stops[1:]
        while remaining:
            nearest = min(remaining, key=lambda s: (stop_distance_km(current, s), s.id))
            routes.extend(self.round_trip(current, nearest, GENERATION_DIRECT))
            remaining.remove(nearest)
            current = nearest
        return routes


def generate_virtual_flights(routes: Sequence[RouteRecord], days: int = 365,
                             slots: Sequence[str] = ('08:00', '16:00'),
                             default_price: float = 1000.0,
                             show_progress: bool = False) -> List[FlightRecord]:
    """
    Daily flights for each virtual route at fixed local departure slots.

    Times are HH:MM; an arrival past midnight simply wraps. Flight ids are
    derived from (route id, day offset, slot index).
    """
    slot_times = [datetime.strptime(slot.strip(), '%H:%M') for slot in slots]
    flights = []

    for route in tqdm(routes, desc="Generating virtual flights", unit="route", disable=not show_progress):
        duration = timedelta(minutes=route.duration_minutes or FALLBACK_FLIGHT_DURATION_MINUTES)
        price = (route.metadata or {}).get('baseFare') or default_price

        for day in range(days):
            for slot_index, departure in enumerate(slot_times):
                flights.append(FlightRecord(
                    id=virtual_flight_id(route.id, day, slot_index),
                    route_id=route.id,
                    from_stop_id=route.from_stop_id,
                    to_stop_id=route.to_stop_id,
                    departure_time=format_hhmm(departure),
                    arrival_time=format_hhmm(departure + duration),
                    days_of_week=[1, 2, 3, 4, 5, 6, 7],
                    price=float(price),
                    is_virtual=True,
                ))

    return flights


# ============================================================================
# STAGE
# ============================================================================

class ConnectivitySynthesisStage:

    stage_id = STAGE_ID
    next_stage = 'graph-assembly'

    def __init__(self, repositories, directory: CityDirectory, hub_city: str = 'Якутск',
                 flight_days: int = 365, flight_slots: Sequence[str] = ('08:00', '16:00'),
                 default_price: float = 1000.0, average_speed_kmh: float = 60.0,
                 min_duration_minutes: int = 60, full_mesh_max_stops: int = 50,
                 show_progress: bool = False):
        self.repositories = repositories
        self.directory = directory
        self.hub_city = hub_city
        self.flight_days = flight_days
        self.flight_slots = list(flight_slots)
        self.default_price = default_price
        self.full_mesh_max_stops = full_mesh_max_stops
        self.show_progress = show_progress
        self.routes = RouteFactory(average_speed_kmh, min_duration_minutes)

    def can_run(self) -> bool:
        with self.repositories.session_scope() as repos:
            latest = repos.datasets.get_latest_dataset()
        return latest is not None and latest.synthesized_at is None

    def skip_result(self) -> StageResult:
        with self.repositories.session_scope() as repos:
            latest = repos.datasets.get_latest_dataset()
        if latest is None:
            return StageResult(success=False, code=NO_DATASET, message='No dataset found')
        return StageResult(
            success=False, code=CANNOT_RUN,
            message=f"Virtual entities already generated for {latest.version} at {latest.synthesized_at}",
        )

    def run(self) -> StageResult:
        with self.repositories.session_scope() as repos:
            dataset = repos.datasets.get_latest_dataset()
            if dataset is None:
                return StageResult(success=False, code=NO_DATASET, message='No dataset found')
            version = dataset.version
            logger.info(f"Synthesizing connectivity for dataset {version}")

            # Steps 1-3: virtual stops for reference cities without real coverage
            real_stops = repos.stops.get_all_real_stops(version)
            covered = {city_key_for_stop(stop, self.directory) for stop in real_stops}
            missing = [city for city in self.directory if city.normalized_name not in covered]
            logger.info(f"{len(missing)} of {len(self.directory)} reference cities have no real stops")

            virtual_stops = [build_virtual_stop(city) for city in missing]
            if virtual_stops:
                repos.stops.save_virtual_stops_batch(version, virtual_stops)

            # Step 4: hub-first connectivity for the new virtual stops
            hub = self._find_hub_stop(repos, version)
            if hub is not None:
                logger.info(f"Using hub {hub.name} ({hub.id})")
                primary_routes = self.routes.hub_routes(hub, virtual_stops)
            else:
                logger.warning(f"Hub city '{self.hub_city}' has no stop, linking virtual stops directly")
                primary_routes = self.routes.fallback_routes(virtual_stops, self.full_mesh_max_stops)
            if primary_routes:
                repos.routes.save_virtual_routes_batch(version, primary_routes)

            # Step 5: pairwise sweep over every served reference city
            sweep_routes = self._connectivity_sweep(repos, version)
            if sweep_routes:
                repos.routes.save_virtual_routes_batch(version, sweep_routes)

            # Step 6: flights for every virtual route
            all_routes = primary_routes + sweep_routes
            flights = generate_virtual_flights(
                all_routes, self.flight_days, self.flight_slots, self.default_price, self.show_progress
            )
            if flights:
                repos.flights.save_flights_batch(version, flights)

            # Step 7: statistics and completion marker, same transaction
            stats = self._statistics(repos, version)
            repos.datasets.update_statistics(version, stats, synthesized_at=utcnow())

        logger.info(f"Virtual entities generated: {len(virtual_stops)} stops, "
                    f"{len(all_routes)} routes, {len(flights)} flights")

        return StageResult(
            success=True,
            code=OK,
            message=(f"Virtual entities generated: {len(virtual_stops)} stops, "
                     f"{len(all_routes)} routes, {len(flights)} flights"),
            next_stage=self.next_stage,
            data={
                'datasetVersion': version,
                'virtualStopsAdded': len(virtual_stops),
                'virtualRoutesAdded': len(all_routes),
                'virtualFlightsAdded': len(flights),
                'hubRoutes': len(primary_routes) if hub is not None else 0,
                'connectivityRoutes': len(sweep_routes),
            },
        )

    def _find_hub_stop(self, repos, version: str) -> Optional[StopRecord]:
        """Main stop of the hub city, real stops first; cities resolve as in the coverage check."""
        hub_key = self.directory.canonical_key(self.hub_city) or normalize_city_name(self.hub_city)
        for stops in (repos.stops.get_all_real_stops(version), repos.stops.get_all_virtual_stops(version)):
            hub = select_main_stop([s for s in stops if city_key_for_stop(s, self.directory) == hub_key])
            if hub is not None:
                return hub
        return None

    def _stops_by_city(self, repos, version: str) -> Dict[str, List[StopRecord]]:
        by_city: Dict[str, List[StopRecord]] = {}
        for stop in repos.stops.get_all_real_stops(version) + repos.stops.get_all_virtual_stops(version):
            key = city_key_for_stop(stop, self.directory)
            if key and self.directory.is_reference_city(key):
                by_city.setdefault(key, []).append(stop)
        return by_city

    def _route_exists(self, repos, version: str, a: str, b: str) -> bool:
        for from_id, to_id in ((a, b), (b, a)):
            if repos.routes.find_direct_routes(version, from_id, to_id):
                return True
            if repos.routes.find_virtual_connections(version, from_id, to_id):
                return True
        return False

    def _connectivity_sweep(self, repos, version: str) -> List[RouteRecord]:
        by_city = self._stops_by_city(repos, version)
        # Directory order keeps the pair iteration stable
        served = [city for city in self.directory if city.normalized_name in by_city]
        routes = []
        skipped = 0

        pairs = [(served[i], served[j]) for i in range(len(served)) for j in range(i + 1, len(served))]
        for city_a, city_b in tqdm(pairs, desc="Connectivity sweep", unit="pair", disable=not self.show_progress):
            stop_a = select_main_stop(by_city[city_a.normalized_name])
            stop_b = select_main_stop(by_city[city_b.normalized_name])
            if stop_a is None or stop_b is None or stop_a.id == stop_b.id:
                continue

            if self._route_exists(repos, version, stop_a.id, stop_b.id):
                skipped += 1
                continue

            routes.append(self.routes.build(
                connectivity_route_id(city_a.name, city_b.name), stop_a, stop_b,
                GENERATION_CONNECTIVITY, city_a.name, city_b.name,
            ))
            routes.append(self.routes.build(
                connectivity_route_id(city_b.name, city_a.name), stop_b, stop_a,
                GENERATION_CONNECTIVITY, city_b.name, city_a.name,
            ))

        logger.info(f"Connectivity sweep over {len(served)} cities: "
                    f"{len(routes)} routes created, {skipped} pairs already connected")
        return routes

    @staticmethod
    def _statistics(repos, version: str) -> DatasetStatistics:
        real_stops = repos.stops.count_real_stops(version)
        virtual_stops = repos.stops.count_virtual_stops(version)
        real_routes = repos.routes.count_routes(version)
        virtual_routes = repos.routes.count_virtual_routes(version)
        return DatasetStatistics(
            stops_count=real_stops + virtual_stops,
            routes_count=real_routes + virtual_routes,
            flights_count=repos.flights.count_flights(version),
            virtual_stops_count=virtual_stops,
            virtual_routes_count=virtual_routes,
            virtual_flights_count=repos.flights.count_flights(version, virtual=True),
        )
