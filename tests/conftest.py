import os

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from tripgraph.data.db_broker import Base, ConnectionBroker
from tripgraph.data.models import initialize_database
from tripgraph.data.records import StopRecord, RouteRecord, FlightRecord, SourcePayload
from tripgraph.geo.cities import CityDirectory, ReferenceCity

from fakes import FakeDatabase, FakeGraphStore

POSTGIS_URL = os.getenv("TRIPGRAPH_TEST_DATABASE_URL")


@pytest.fixture
def sqlite_broker():
    """Broker on a private in-memory SQLite database; stop locations are stored as WKT text."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    broker = ConnectionBroker(engine=engine)
    broker.create_tables()
    yield broker
    engine.dispose()


@pytest.fixture
def postgis_broker():
    """Broker on a throwaway PostGIS schema; skipped without TRIPGRAPH_TEST_DATABASE_URL."""
    if not POSTGIS_URL:
        pytest.skip("TRIPGRAPH_TEST_DATABASE_URL not set")
    broker = ConnectionBroker(url=POSTGIS_URL)
    initialize_database(broker.get_engine(), drop_existing=True)
    yield broker
    Base.metadata.drop_all(bind=broker.get_engine())
    broker.get_engine().dispose()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_graph_store(fake_db, redis_client):
    return FakeGraphStore(fake_db, redis_client)


@pytest.fixture
def three_city_directory():
    return CityDirectory([
        ReferenceCity("Якутск", 62.0355, 129.6755, ("Yakutsk",)),
        ReferenceCity("Мирный", 62.5354, 113.9564, ("Mirny",)),
        ReferenceCity("Ленск", 60.7242, 114.9166, ("Lensk",)),
    ], version="test-3")


@pytest.fixture
def two_stop_payload():
    """Yakutsk airport and a Mirny stop joined by one real route."""
    return SourcePayload(
        stops=[
            StopRecord(id="stop-1", name="Аэропорт Якутск", latitude=62.0933, longitude=129.7706, city_id="Якутск"),
            StopRecord(id="stop-2", name="Автостанция Мирный", latitude=62.5354, longitude=113.9564, city_id="Мирный"),
        ],
        routes=[
            RouteRecord(id="route-1", from_stop_id="stop-1", to_stop_id="stop-2", transport_mode="AIR",
                        distance_km=820.0, duration_minutes=120),
        ],
        flights=[
            FlightRecord(id="flight-1", route_id="route-1", from_stop_id="stop-1", to_stop_id="stop-2",
                         departure_time="09:00", arrival_time="11:00", price=15000.0),
        ],
    )
