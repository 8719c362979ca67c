"""
SQLAlchemy models for the tripgraph durable tier.

Source data (stops, routes, flights) is scoped by dataset version, so a
new upstream snapshot never overwrites the rows a published graph was
built from. Dataset and Graph rows are the pipeline's coordination
records: every stage decides what to do by reading them.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Boolean, Index, UniqueConstraint, JSON, text
)
from sqlalchemy.types import TypeDecorator
from geoalchemy2 import Geometry, WKTElement

from .db_broker import Base

logger = logging.getLogger(__name__)

STOP_KIND_REAL = 'real'
STOP_KIND_VIRTUAL = 'virtual'


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StopLocation(TypeDecorator):
    """
    PostGIS POINT(4326) on PostgreSQL, plain WKT text on SQLite.

    SQLite has no PostGIS, so the in-memory test database keeps the
    location as its WKT string.
    """

    impl = Geometry
    cache_ok = True

    def __init__(self):
        super().__init__(geometry_type='POINT', srid=4326)

    def load_dialect_impl(self, dialect):
        if dialect is not None and dialect.name == 'sqlite':
            return dialect.type_descriptor(Text())
        return self.impl_instance

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name != 'sqlite':
            return value
        if isinstance(value, WKTElement):
            return value.desc
        return str(value)


# ============================================================================
# SOURCE DATA (scoped by dataset version)
# ============================================================================

class Stop(Base):
    """Physical (real) or synthesized (virtual) location."""

    __tablename__ = 'stops'

    stop_id = Column(Integer, primary_key=True, autoincrement=True)
    dataset_version = Column(String(64), nullable=False, index=True)
    external_id = Column(String(120), nullable=False)
    name = Column(String(200), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    location = Column(StopLocation(), nullable=False)
    city_id = Column(String(120), nullable=True, index=True)
    kind = Column(String(10), nullable=False, default=STOP_KIND_REAL, index=True)
    stop_type = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('dataset_version', 'external_id', name='uq_stop_version_external'),
        Index('idx_stop_version_kind', 'dataset_version', 'kind'),
    )

    def __repr__(self):
        return f"<Stop(id='{self.external_id}', name='{self.name}', kind='{self.kind}', dataset='{self.dataset_version}')>"


class Route(Base):
    """Reusable path template between two stops."""

    __tablename__ = 'routes'

    route_id = Column(Integer, primary_key=True, autoincrement=True)
    dataset_version = Column(String(64), nullable=False, index=True)
    external_id = Column(String(160), nullable=False)
    from_stop_id = Column(String(120), nullable=False)
    to_stop_id = Column(String(120), nullable=False)
    transport_mode = Column(String(30), nullable=False)
    distance_km = Column(Float, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    kind = Column(String(10), nullable=False, default=STOP_KIND_REAL, index=True)
    generation_method = Column(String(40), nullable=True)  # virtual routes only
    source_city = Column(String(120), nullable=True)
    target_city = Column(String(120), nullable=True)
    route_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('dataset_version', 'external_id', name='uq_route_version_external'),
        Index('idx_route_endpoints', 'dataset_version', 'from_stop_id', 'to_stop_id'),
    )

    def __repr__(self):
        return f"<Route(id='{self.external_id}', {self.from_stop_id}->{self.to_stop_id}, kind='{self.kind}')>"


class Flight(Base):
    """Schedulable instance of a route."""

    __tablename__ = 'flights'

    flight_id = Column(Integer, primary_key=True, autoincrement=True)
    dataset_version = Column(String(64), nullable=False, index=True)
    external_id = Column(String(200), nullable=False)
    route_id = Column(String(160), nullable=True, index=True)
    from_stop_id = Column(String(120), nullable=False)
    to_stop_id = Column(String(120), nullable=False)
    departure_time = Column(String(32), nullable=True)  # ISO datetime or HH:MM
    arrival_time = Column(String(32), nullable=True)
    days_of_week = Column(JSON, nullable=True)
    price = Column(Float, nullable=True)
    is_virtual = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('dataset_version', 'external_id', name='uq_flight_version_external'),
    )

    def __repr__(self):
        return f"<Flight(id='{self.external_id}', route='{self.route_id}', virtual={self.is_virtual})>"


# ============================================================================
# COORDINATION RECORDS
# ============================================================================

class Dataset(Base):
    """Immutable snapshot identity of one upstream payload."""

    __tablename__ = 'datasets'

    dataset_id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String(64), unique=True, nullable=False, index=True)
    source_hash = Column(String(64), nullable=False, index=True)
    stops_count = Column(Integer, default=0, nullable=False)
    routes_count = Column(Integer, default=0, nullable=False)
    flights_count = Column(Integer, default=0, nullable=False)
    virtual_stops_count = Column(Integer, default=0, nullable=False)
    virtual_routes_count = Column(Integer, default=0, nullable=False)
    virtual_flights_count = Column(Integer, default=0, nullable=False)
    build_timestamp = Column(DateTime, default=utcnow, nullable=False)
    # Set in the same transaction as the virtual entities it declares complete
    synthesized_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=False, nullable=False, index=True)

    def __repr__(self):
        return f"<Dataset(version='{self.version}', hash='{self.source_hash[:12]}', active={self.is_active})>"


class GraphMetadata(Base):
    """Durable record of a published graph; the source of truth for its existence."""

    __tablename__ = 'graphs'

    graph_id = Column(Integer, primary_key=True, autoincrement=True)
    version = Column(String(80), unique=True, nullable=False, index=True)
    dataset_version = Column(String(64), nullable=False, index=True)
    nodes_count = Column(Integer, nullable=False)
    edges_count = Column(Integer, nullable=False)
    build_duration_ms = Column(Integer, nullable=False, default=0)
    storage_key = Column(String(200), nullable=False)
    backup_path = Column(String(300), nullable=True)
    build_timestamp = Column(DateTime, default=utcnow, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False, index=True)

    def __repr__(self):
        return f"<GraphMetadata(version='{self.version}', dataset='{self.dataset_version}', nodes={self.nodes_count}, edges={self.edges_count}, active={self.is_active})>"


class StageRun(Base):
    """One execution of a pipeline stage."""

    __tablename__ = 'stage_runs'

    run_id = Column(Integer, primary_key=True, autoincrement=True)
    stage_id = Column(String(50), nullable=False)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    code = Column(String(30), nullable=False)
    message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_stage_run_started', 'stage_id', 'started_at'),
    )

    def __repr__(self):
        return f"<StageRun(stage='{self.stage_id}', code='{self.code}', started={self.started_at})>"


# ============================================================================
# DATABASE INITIALIZATION
# ============================================================================

def initialize_database(engine, drop_existing=False):
    """
    Initialize database schema atomically.

    Args:
        engine: SQLAlchemy engine instance
        drop_existing: If True, drops all existing tables before creation

    Note:
        Use drop_existing=True for fresh development setups. Deployed
        databases are migrated with alembic instead.
    """
    if engine.dialect.name == 'postgresql':
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis;"))

    if drop_existing:
        logger.warning("Dropping all existing tables")
        Base.metadata.drop_all(bind=engine)

    Base.metadata.create_all(bind=engine)
    logger.info("Database schema initialized")

    if engine.dialect.name == 'postgresql':
        with engine.connect() as conn:
            version = conn.execute(text("SELECT PostGIS_version();")).scalar()
            logger.info(f"PostGIS extension verified: {version}")
