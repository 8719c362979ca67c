"""
SQLAlchemy repositories for the durable tier.

Every repository is bound to one session, so a stage that needs an
all-or-nothing write opens a single ``SqlRepositories.session_scope()``
and does all of its work through the repositories it yields.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from geoalchemy2 import WKTElement
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from tripgraph.data.db_broker import ConnectionBroker
from tripgraph.data.models import (
    Stop, Route, Flight, Dataset, StageRun, STOP_KIND_REAL, STOP_KIND_VIRTUAL, utcnow
)
from tripgraph.data.records import (
    StopRecord, RouteRecord, FlightRecord, DatasetInfo, DatasetStatistics
)
from tripgraph.errors import PersistenceError
from tripgraph.geo.cities import normalize_city_name

logger = logging.getLogger(__name__)

LOOKUP_CHUNK = 500


def _upsert_batch(session: Session, model, dataset_version: str, records: Iterable,
                  to_columns: Callable[[object], Dict]) -> int:
    """
    Insert or update rows keyed by (dataset_version, external_id).

    Returns:
        Number of records written
    """
    records = list(records)
    written = 0

    for start in range(0, len(records), LOOKUP_CHUNK):
        chunk = records[start:start + LOOKUP_CHUNK]
        existing = {
            row.external_id: row
            for row in session.query(model).filter(
                model.dataset_version == dataset_version,
                model.external_id.in_([r.id for r in chunk]),
            )
        }

        for record in chunk:
            columns = to_columns(record)
            row = existing.get(record.id)
            if row is None:
                session.add(model(dataset_version=dataset_version, external_id=record.id, **columns))
            else:
                for key, value in columns.items():
                    setattr(row, key, value)
            written += 1

        session.flush()

    return written


# ============================================================================
# STOPS
# ============================================================================

def _stop_columns(record: StopRecord) -> Dict:
    return {
        'name': record.name,
        'latitude': record.latitude,
        'longitude': record.longitude,
        'location': WKTElement(f'POINT({record.longitude} {record.latitude})', srid=4326),
        'city_id': record.city_id,
        'kind': record.kind,
        'stop_type': record.stop_type,
    }


def _stop_record(row: Stop) -> StopRecord:
    return StopRecord(
        id=row.external_id,
        name=row.name,
        latitude=row.latitude,
        longitude=row.longitude,
        city_id=row.city_id,
        kind=row.kind,
        stop_type=row.stop_type,
    )


class StopRepository:

    def __init__(self, session: Session):
        self.session = session

    def save_real_stops_batch(self, dataset_version: str, stops: List[StopRecord]) -> int:
        return _upsert_batch(self.session, Stop, dataset_version, stops, _stop_columns)

    def save_virtual_stops_batch(self, dataset_version: str, stops: List[StopRecord]) -> int:
        for stop in stops:
            stop.kind = STOP_KIND_VIRTUAL
        return _upsert_batch(self.session, Stop, dataset_version, stops, _stop_columns)

    def _query(self, dataset_version: str, kind: str):
        return self.session.query(Stop).filter(
            Stop.dataset_version == dataset_version, Stop.kind == kind
        ).order_by(Stop.stop_id)

    def get_all_real_stops(self, dataset_version: str) -> List[StopRecord]:
        return [_stop_record(row) for row in self._query(dataset_version, STOP_KIND_REAL)]

    def get_all_virtual_stops(self, dataset_version: str) -> List[StopRecord]:
        return [_stop_record(row) for row in self._query(dataset_version, STOP_KIND_VIRTUAL)]

    def _by_city(self, dataset_version: str, kind: str, city: str) -> List[StopRecord]:
        key = normalize_city_name(city)
        rows = self._query(dataset_version, kind).filter(Stop.city_id.isnot(None))
        return [_stop_record(row) for row in rows if normalize_city_name(row.city_id) == key]

    def get_real_stops_by_city(self, dataset_version: str, city: str) -> List[StopRecord]:
        return self._by_city(dataset_version, STOP_KIND_REAL, city)

    def get_virtual_stops_by_city(self, dataset_version: str, city: str) -> List[StopRecord]:
        return self._by_city(dataset_version, STOP_KIND_VIRTUAL, city)

    def count_real_stops(self, dataset_version: str) -> int:
        return self._query(dataset_version, STOP_KIND_REAL).count()

    def count_virtual_stops(self, dataset_version: str) -> int:
        return self._query(dataset_version, STOP_KIND_VIRTUAL).count()


# ============================================================================
# ROUTES
# ============================================================================

def _route_columns(record: RouteRecord) -> Dict:
    return {
        'from_stop_id': record.from_stop_id,
        'to_stop_id': record.to_stop_id,
        'transport_mode': record.transport_mode,
        'distance_km': record.distance_km,
        'duration_minutes': record.duration_minutes,
        'kind': record.kind,
        'generation_method': record.generation_method,
        'source_city': record.source_city,
        'target_city': record.target_city,
        'route_metadata': record.metadata or None,
    }


def _route_record(row: Route) -> RouteRecord:
    return RouteRecord(
        id=row.external_id,
        from_stop_id=row.from_stop_id,
        to_stop_id=row.to_stop_id,
        transport_mode=row.transport_mode,
        distance_km=row.distance_km,
        duration_minutes=row.duration_minutes,
        kind=row.kind,
        generation_method=row.generation_method,
        source_city=row.source_city,
        target_city=row.target_city,
        metadata=dict(row.route_metadata or {}),
    )


class RouteRepository:

    def __init__(self, session: Session):
        self.session = session

    def save_routes_batch(self, dataset_version: str, routes: List[RouteRecord]) -> int:
        return _upsert_batch(self.session, Route, dataset_version, routes, _route_columns)

    def save_virtual_routes_batch(self, dataset_version: str, routes: List[RouteRecord]) -> int:
        for route in routes:
            route.kind = STOP_KIND_VIRTUAL
        return _upsert_batch(self.session, Route, dataset_version, routes, _route_columns)

    def _query(self, dataset_version: str, kind: str):
        return self.session.query(Route).filter(
            Route.dataset_version == dataset_version, Route.kind == kind
        ).order_by(Route.route_id)

    def get_all_routes(self, dataset_version: str) -> List[RouteRecord]:
        return [_route_record(row) for row in self._query(dataset_version, STOP_KIND_REAL)]

    def get_all_virtual_routes(self, dataset_version: str) -> List[RouteRecord]:
        return [_route_record(row) for row in self._query(dataset_version, STOP_KIND_VIRTUAL)]

    def find_direct_routes(self, dataset_version: str, from_stop_id: str, to_stop_id: str) -> List[RouteRecord]:
        rows = self._query(dataset_version, STOP_KIND_REAL).filter(
            Route.from_stop_id == from_stop_id, Route.to_stop_id == to_stop_id
        )
        return [_route_record(row) for row in rows]

    def find_virtual_connections(self, dataset_version: str, from_stop_id: str, to_stop_id: str) -> List[RouteRecord]:
        rows = self._query(dataset_version, STOP_KIND_VIRTUAL).filter(
            Route.from_stop_id == from_stop_id, Route.to_stop_id == to_stop_id
        )
        return [_route_record(row) for row in rows]

    def count_routes(self, dataset_version: str) -> int:
        return self._query(dataset_version, STOP_KIND_REAL).count()

    def count_virtual_routes(self, dataset_version: str) -> int:
        return self._query(dataset_version, STOP_KIND_VIRTUAL).count()


# ============================================================================
# FLIGHTS
# ============================================================================

def _flight_columns(record: FlightRecord) -> Dict:
    return {
        'route_id': record.route_id,
        'from_stop_id': record.from_stop_id,
        'to_stop_id': record.to_stop_id,
        'departure_time': record.departure_time,
        'arrival_time': record.arrival_time,
        'days_of_week': list(record.days_of_week or []),
        'price': record.price,
        'is_virtual': record.is_virtual,
    }


def _flight_record(row: Flight) -> FlightRecord:
    return FlightRecord(
        id=row.external_id,
        route_id=row.route_id,
        from_stop_id=row.from_stop_id,
        to_stop_id=row.to_stop_id,
        departure_time=row.departure_time,
        arrival_time=row.arrival_time,
        days_of_week=list(row.days_of_week or []),
        price=row.price,
        is_virtual=row.is_virtual,
    )


class FlightRepository:

    def __init__(self, session: Session):
        self.session = session

    def save_flights_batch(self, dataset_version: str, flights: List[FlightRecord]) -> int:
        return _upsert_batch(self.session, Flight, dataset_version, flights, _flight_columns)

    def get_all_flights(self, dataset_version: str) -> List[FlightRecord]:
        rows = self.session.query(Flight).filter(
            Flight.dataset_version == dataset_version
        ).order_by(Flight.flight_id)
        return [_flight_record(row) for row in rows]

    def count_flights(self, dataset_version: str, virtual: Optional[bool] = None) -> int:
        query = self.session.query(func.count(Flight.flight_id)).filter(
            Flight.dataset_version == dataset_version
        )
        if virtual is not None:
            query = query.filter(Flight.is_virtual == virtual)
        return query.scalar() or 0


# ============================================================================
# DATASETS
# ============================================================================

def _dataset_info(row: Dataset) -> DatasetInfo:
    return DatasetInfo(
        id=row.dataset_id,
        version=row.version,
        source_hash=row.source_hash,
        stops_count=row.stops_count,
        routes_count=row.routes_count,
        flights_count=row.flights_count,
        virtual_stops_count=row.virtual_stops_count,
        virtual_routes_count=row.virtual_routes_count,
        virtual_flights_count=row.virtual_flights_count,
        build_timestamp=row.build_timestamp,
        synthesized_at=row.synthesized_at,
        is_active=row.is_active,
    )


class DatasetRepository:

    def __init__(self, session: Session):
        self.session = session

    def get_latest_dataset(self) -> Optional[DatasetInfo]:
        row = self.session.query(Dataset).order_by(Dataset.dataset_id.desc()).first()
        return _dataset_info(row) if row else None

    def get_active_dataset(self) -> Optional[DatasetInfo]:
        row = self.session.query(Dataset).filter(Dataset.is_active.is_(True)).first()
        return _dataset_info(row) if row else None

    def find_by_version(self, version: str) -> Optional[DatasetInfo]:
        row = self.session.query(Dataset).filter_by(version=version).first()
        return _dataset_info(row) if row else None

    def count_datasets(self) -> int:
        return self.session.query(func.count(Dataset.dataset_id)).scalar() or 0

    def exists_by_source_hash(self, source_hash: str) -> bool:
        return self.session.query(Dataset.dataset_id).filter_by(source_hash=source_hash).first() is not None

    def save_dataset(self, info: DatasetInfo) -> DatasetInfo:
        row = Dataset(
            version=info.version,
            source_hash=info.source_hash,
            stops_count=info.stops_count,
            routes_count=info.routes_count,
            flights_count=info.flights_count,
            virtual_stops_count=info.virtual_stops_count,
            virtual_routes_count=info.virtual_routes_count,
            virtual_flights_count=info.virtual_flights_count,
            build_timestamp=info.build_timestamp or utcnow(),
            is_active=info.is_active,
        )
        self.session.add(row)
        self.session.flush()
        return _dataset_info(row)

    def set_active_dataset(self, version: str) -> None:
        target = self.session.query(Dataset).filter_by(version=version).first()
        if target is None:
            raise PersistenceError(f"Cannot activate unknown dataset {version}")
        self.session.query(Dataset).filter(
            Dataset.is_active.is_(True), Dataset.version != version
        ).update({Dataset.is_active: False}, synchronize_session=False)
        target.is_active = True
        self.session.flush()

    def update_statistics(self, version: str, stats: DatasetStatistics,
                          synthesized_at: Optional[datetime] = None) -> None:
        row = self.session.query(Dataset).filter_by(version=version).first()
        if row is None:
            raise PersistenceError(f"Cannot update statistics of unknown dataset {version}")
        row.stops_count = stats.stops_count
        row.routes_count = stats.routes_count
        row.flights_count = stats.flights_count
        row.virtual_stops_count = stats.virtual_stops_count
        row.virtual_routes_count = stats.virtual_routes_count
        row.virtual_flights_count = stats.virtual_flights_count
        if synthesized_at is not None:
            row.synthesized_at = synthesized_at
        self.session.flush()


# ============================================================================
# STAGE RUNS
# ============================================================================

class StageRunRepository:

    def __init__(self, session: Session):
        self.session = session

    def record_run(self, stage_id: str, started_at: datetime, finished_at: datetime,
                   success: bool, code: str, message: str = None) -> None:
        self.session.add(StageRun(
            stage_id=stage_id,
            started_at=started_at,
            finished_at=finished_at,
            success=success,
            code=code,
            message=message,
        ))
        self.session.flush()

    def last_successful_run(self, stage_id: str) -> Optional[datetime]:
        return self.session.query(func.max(StageRun.started_at)).filter(
            StageRun.stage_id == stage_id, StageRun.success.is_(True)
        ).scalar()

    def recent_runs(self, stage_id: str = None, limit: int = 20) -> List[StageRun]:
        query = self.session.query(StageRun)
        if stage_id:
            query = query.filter(StageRun.stage_id == stage_id)
        return query.order_by(StageRun.started_at.desc()).limit(limit).all()


# ============================================================================
# UNIT OF WORK
# ============================================================================

@dataclass
class RepositorySet:
    stops: StopRepository
    routes: RouteRepository
    flights: FlightRepository
    datasets: DatasetRepository
    stage_runs: StageRunRepository


class SqlRepositories:
    """Hands out repository sets that share one transaction."""

    def __init__(self, broker: ConnectionBroker):
        self.broker = broker

    @contextmanager
    def session_scope(self):
        try:
            with self.broker.get_session() as session:
                yield RepositorySet(
                    stops=StopRepository(session),
                    routes=RouteRepository(session),
                    flights=FlightRepository(session),
                    datasets=DatasetRepository(session),
                    stage_runs=StageRunRepository(session),
                )
        except SQLAlchemyError as e:
            logger.error(f"Durable tier transaction rolled back: {e}")
            raise PersistenceError(str(e)) from e
