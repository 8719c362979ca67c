"""
Tests for the Graph Assembly Stage: edge weights, validation and publication.
"""

from datetime import datetime

import pytest
from redis.exceptions import RedisError

from tripgraph.data.graph_store import ACTIVE_VERSION_KEY
from tripgraph.data.models import utcnow
from tripgraph.data.records import DatasetStatistics, FlightRecord, RouteRecord, SourcePayload, StopRecord
from tripgraph.data.storage import LocalObjectStorage
from tripgraph.errors import GraphValidationError
from tripgraph.pipeline.graph_assembly import (
    GraphAssemblyStage, build_graph, edge_weight, flight_duration_minutes, validate_graph
)
from tripgraph.pipeline.stage import CANNOT_RUN, FAILED, NO_DATASET, OK, VALIDATION_FAILED, execute_stage

from fakes import make_synthesis_stage, seed_dataset

VERSION = 'v1-test'


def synthesize(db, directory, payload, version=VERSION):
    seed_dataset(db, payload, version)
    assert execute_stage(make_synthesis_stage(db, directory)).success


def stops(*ids):
    return [StopRecord(id=i, name=i, latitude=62.0, longitude=129.0) for i in ids]


class TestEdgeWeights:

    def test_route_duration_wins(self):
        route = RouteRecord(id="r", from_stop_id="a", to_stop_id="b", duration_minutes=95)
        flight = FlightRecord(id="f", route_id="r", from_stop_id="a", to_stop_id="b",
                              departure_time="08:00", arrival_time="12:00")
        assert edge_weight(route, [flight], month=7) == 95

    def test_flight_schedule_when_route_has_no_duration(self):
        route = RouteRecord(id="r", from_stop_id="a", to_stop_id="b")
        overnight = FlightRecord(id="f", route_id="r", from_stop_id="a", to_stop_id="b",
                                 departure_time="22:30", arrival_time="01:00")
        assert flight_duration_minutes(overnight) == 150
        assert edge_weight(route, [overnight], month=1) == 150

    def test_unparseable_schedule_falls_back_to_default(self):
        route = RouteRecord(id="r", from_stop_id="a", to_stop_id="b")
        broken = FlightRecord(id="f", route_id="r", from_stop_id="a", to_stop_id="b",
                              departure_time="2025-01-01T08:00:00Z", arrival_time=None)
        assert edge_weight(route, [broken], month=1) == 60
        assert edge_weight(route, [], month=1) == 60

    @pytest.mark.parametrize("month, expected", [(4, 47.5), (9, 47.5), (3, 67.5), (12, 67.5)])
    def test_ferry_seasonal_wait(self, month, expected):
        ferry = RouteRecord(id="r", from_stop_id="a", to_stop_id="b", transport_mode="FERRY",
                            duration_minutes=30, metadata={'ferrySchedule': {'summer': {'frequency': 'hourly'}}})
        assert edge_weight(ferry, [], month=month) == expected

    def test_ferry_without_schedule_uses_plain_duration(self):
        ferry = RouteRecord(id="r", from_stop_id="a", to_stop_id="b", transport_mode="FERRY", duration_minutes=30)
        assert edge_weight(ferry, [], month=7) == 30


class TestBuildAndValidate:

    def test_edges_only_between_known_nodes(self):
        routes = [
            RouteRecord(id="r1", from_stop_id="a", to_stop_id="b", duration_minutes=30),
            RouteRecord(id="r2", from_stop_id="a", to_stop_id="zzz", duration_minutes=10),
        ]
        graph = build_graph(stops("a", "b", "c"), routes, [], month=6)

        assert graph.node_ids == ["a", "b", "c"]
        assert graph.edges_count == 1
        assert graph.dangling_routes == ["r2"]
        assert [e.neighbor_id for e in graph.adjacency["a"]] == ["b"]

        warnings = validate_graph(graph)
        assert any("outside the node set" in w for w in warnings)
        assert any("isolated" in w for w in warnings)

    def test_neighbors_ordered_by_weight(self):
        routes = [
            RouteRecord(id="slow", from_stop_id="a", to_stop_id="b", duration_minutes=300),
            RouteRecord(id="fast", from_stop_id="a", to_stop_id="c", duration_minutes=45),
        ]
        graph = build_graph(stops("a", "b", "c"), routes, [], month=6)
        assert [e.route_id for e in graph.adjacency["a"]] == ["fast", "slow"]

    def test_empty_graph_is_rejected(self):
        with pytest.raises(GraphValidationError, match="Graph validation failed"):
            validate_graph(build_graph([], [], [], month=6))
        with pytest.raises(GraphValidationError, match="no edges"):
            validate_graph(build_graph(stops("a"), [], [], month=6))


class TestGraphAssemblyStage:

    def test_example_scenario(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)

        result = execute_stage(stage)

        assert result.success
        assert result.code == OK
        assert "Graph built successfully" in result.message
        assert result.data['nodes'] == 3
        assert result.data['edges'] >= 3
        assert result.data['datasetVersion'] == VERSION

        active = fake_graph_store.get_active_graph_metadata()
        assert active.dataset_version == VERSION
        assert active.version == result.data['graphVersion']
        assert fake_graph_store.get_active_version() == active.version
        assert fake_db.state.datasets[0].is_active

        assert fake_graph_store.has_node("stop-1")
        assert fake_graph_store.get_edge_weight("stop-1", "stop-2") == 120
        neighbors = {e.neighbor_id for e in fake_graph_store.get_neighbors("stop-1")}
        assert "stop-2" in neighbors

    def test_second_invocation_is_skipped(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)

        assert execute_stage(stage).success
        assert not stage.can_run()
        second = execute_stage(stage)

        assert second.code == CANNOT_RUN
        assert len(fake_graph_store.get_graph_metadata_by_dataset_version(VERSION)) == 1

    def test_pointer_failure_is_retried(self, fake_db, fake_graph_store, redis_client, three_city_directory,
                                        two_stop_payload, monkeypatch):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)
        real_set = redis_client.set

        def set_failing_on_pointer(key, value, *args, **kwargs):
            if key == ACTIVE_VERSION_KEY:
                raise RedisError("connection reset")
            return real_set(key, value, *args, **kwargs)

        monkeypatch.setattr(redis_client, "set", set_failing_on_pointer)
        first = execute_stage(stage)
        monkeypatch.undo()

        assert first.code == FAILED
        assert fake_graph_store.get_active_version() is None
        assert stage.can_run()

        second = execute_stage(stage)

        assert second.success
        assert fake_graph_store.get_active_version() == second.data['graphVersion']
        assert len(fake_graph_store.get_graph_metadata_by_dataset_version(VERSION)) == 1
        assert fake_graph_store.get_active_graph_metadata().version == second.data['graphVersion']
        assert not stage.can_run()

    def test_activation_failure_is_retried(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)
        fake_db.fail_on.add('set_active_dataset')

        first = execute_stage(stage)

        assert first.code == FAILED
        assert [g.is_active for g in fake_graph_store.graphs] == [False]
        assert not fake_db.state.datasets[0].is_active

        fake_db.fail_on.clear()
        second = execute_stage(stage)

        assert second.success
        assert [g.is_active for g in fake_graph_store.graphs] == [True]
        assert fake_db.state.datasets[0].is_active
        assert fake_graph_store.get_active_version() == second.data['graphVersion']

    def test_waits_for_synthesis(self, fake_db, fake_graph_store, two_stop_payload):
        seed_dataset(fake_db, two_stop_payload, VERSION)

        result = execute_stage(GraphAssemblyStage(fake_db, fake_graph_store))

        assert result.code == CANNOT_RUN
        assert "not been synthesized" in result.message

    def test_no_dataset(self, fake_db, fake_graph_store):
        assert execute_stage(GraphAssemblyStage(fake_db, fake_graph_store)).code == NO_DATASET

    def test_validation_failure_keeps_previous_graph(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)
        first = execute_stage(stage)

        seed_dataset(fake_db, SourcePayload(), version='v2-empty')
        with fake_db.session_scope() as repos:
            repos.datasets.update_statistics('v2-empty', DatasetStatistics(0, 0, 0, 0, 0, 0), synthesized_at=utcnow())

        result = execute_stage(stage)

        assert not result.success
        assert result.code == VALIDATION_FAILED
        assert "Graph validation failed" in result.error
        assert fake_graph_store.get_active_version() == first.data['graphVersion']
        assert fake_graph_store.get_graph_metadata_by_dataset_version('v2-empty') == []
        assert fake_db.state.datasets[0].is_active

    def test_new_dataset_supersedes_old_graph(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store)
        first = execute_stage(stage)

        synthesize(fake_db, three_city_directory, two_stop_payload, version='v2-test')
        second = execute_stage(stage)

        assert second.success
        assert fake_graph_store.get_active_version() == second.data['graphVersion']
        assert [d.is_active for d in fake_db.state.datasets] == [False, True]
        assert [g.is_active for g in fake_graph_store.graphs] == [False, True]
        old_keys = list(fake_graph_store.redis.scan_iter(match=f"graph:{first.data['graphVersion']}:*"))
        assert old_keys == []

    def test_backup_export(self, fake_db, fake_graph_store, three_city_directory, two_stop_payload, tmp_path):
        synthesize(fake_db, three_city_directory, two_stop_payload)
        storage = LocalObjectStorage(str(tmp_path))

        result = execute_stage(GraphAssemblyStage(fake_db, fake_graph_store, storage))

        graph_version = result.data['graphVersion']
        export = storage.get_json(f"graph/export-{graph_version}.json")
        assert export['datasetVersion'] == VERSION
        assert sorted(export['nodes']) == sorted(fake_db.state.stops[VERSION])
        assert fake_graph_store.get_active_graph_metadata().backup_path == result.data['backupPath']

    def test_ferry_weight_uses_build_month(self, fake_db, fake_graph_store, three_city_directory):
        payload = SourcePayload(
            stops=[
                StopRecord(id="pier-1", name="Речной порт Якутск", latitude=62.03, longitude=129.74, city_id="Якутск"),
                StopRecord(id="pier-2", name="Причал Покровск", latitude=61.48, longitude=129.15, city_id="Покровск"),
            ],
            routes=[RouteRecord(id="ferry-1", from_stop_id="pier-1", to_stop_id="pier-2", transport_mode="FERRY",
                                duration_minutes=100, metadata={'ferrySchedule': {'summer': {}}})],
        )
        synthesize(fake_db, three_city_directory, payload)
        stage = GraphAssemblyStage(fake_db, fake_graph_store, clock=lambda: datetime(2025, 7, 1, 12, 0))

        assert execute_stage(stage).success
        assert fake_graph_store.get_edge_weight("pier-1", "pier-2") == 117.5
