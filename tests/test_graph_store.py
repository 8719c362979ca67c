"""
Tests for the hybrid graph store: SQLite for metadata, fakeredis for adjacency.
"""

import json

import pytest

from tripgraph.data.graph_store import ACTIVE_VERSION_KEY, HybridGraphStore, neighbors_key
from tripgraph.data.records import AdjacencyEntry, DatasetInfo, GraphInfo
from tripgraph.data.repositories import DatasetRepository
from tripgraph.errors import PersistenceError


@pytest.fixture
def store(sqlite_broker, redis_client):
    return HybridGraphStore(sqlite_broker, redis_client)


def publish(store, version, adjacency, nodes=None):
    nodes = nodes or sorted(set(adjacency) | {e.neighbor_id for entries in adjacency.values() for e in entries})
    store.save_graph(version, nodes, adjacency, meta={'version': version})
    store.set_active_version(version)


class TestCacheTier:

    def test_cold_cache_reads_are_empty(self, store):
        assert store.get_active_version() is None
        assert store.has_node("stop-1") is False
        assert store.get_neighbors("stop-1") == []
        assert store.get_edge_weight("stop-1", "stop-2") is None

    def test_reads_follow_active_version(self, store):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30, 25.0, "BUS", "r1")]})

        assert store.get_active_version() == "graph-v1"
        assert store.has_node("a") and store.has_node("b")
        assert store.get_neighbors("b") == []
        assert store.get_neighbors("a") == [AdjacencyEntry("b", 30, 25.0, "BUS", "r1")]
        assert store.get_edge_weight("a", "b") == 30
        assert store.get_edge_weight("b", "a") is None

    def test_unpublished_namespace_is_invisible(self, store):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30)]})
        store.save_graph("graph-v2", ["a", "c"], {"a": [AdjacencyEntry("c", 10)]})

        assert store.get_edge_weight("a", "c") is None
        assert not store.has_node("c")

        store.set_active_version("graph-v2")
        assert store.get_edge_weight("a", "c") == 10

    def test_adjacency_wire_format(self, store, redis_client):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30, 25.0, "BUS", "r1")]})

        stored = json.loads(redis_client.get(neighbors_key("graph-v1", "a")))
        assert stored == [{'neighborId': 'b', 'weight': 30, 'distance': 25.0, 'transportMode': 'BUS', 'routeId': 'r1'}]
        assert redis_client.get(ACTIVE_VERSION_KEY) == "graph-v1"
        assert store.get_graph_meta("graph-v1") == {'version': 'graph-v1'}

    def test_every_graph_key_is_under_a_version(self, store, redis_client):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30)]})

        version = redis_client.get(ACTIVE_VERSION_KEY)
        assert redis_client.exists(f"graph:{version}:node:a", f"graph:{version}:node:a:neighbors") == 2
        assert list(redis_client.scan_iter(match="graph:node:*")) == []
        assert sorted(redis_client.keys("graph:*")) == sorted([
            ACTIVE_VERSION_KEY, "graph:graph-v1:meta",
            "graph:graph-v1:node:a", "graph:graph-v1:node:a:neighbors",
            "graph:graph-v1:node:b", "graph:graph-v1:node:b:neighbors",
        ])

    def test_delete_superseded_version(self, store, redis_client):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30)]})
        publish(store, "graph-v2", {"a": [AdjacencyEntry("b", 20)]})

        deleted = store.delete_graph_version("graph-v1")

        assert deleted == 5  # 2 node markers, 2 neighbor lists, meta
        assert list(redis_client.scan_iter(match="graph:graph-v1:*")) == []
        assert store.get_edge_weight("a", "b") == 20

    def test_refuses_to_delete_active_version(self, store):
        publish(store, "graph-v1", {"a": [AdjacencyEntry("b", 30)]})
        with pytest.raises(ValueError):
            store.delete_graph_version("graph-v1")


class TestDurableTier:

    def _graph(self, dataset_version):
        return GraphInfo(version=f"graph-{dataset_version}", dataset_version=dataset_version,
                         nodes_count=3, edges_count=5, storage_key=f"graph:graph-{dataset_version}:meta")

    def test_metadata_is_saved_inactive(self, store):
        saved = store.save_graph_metadata(self._graph("v1"))

        assert saved.id is not None
        assert saved.is_active is False
        assert store.find_metadata_by_id(saved.id).version == "graph-v1"
        assert store.find_metadata_by_id(9999) is None
        assert store.get_active_graph_metadata() is None

    def test_lookup_by_dataset_version(self, store):
        assert store.get_graph_metadata_by_dataset_version("v1") == []
        store.save_graph_metadata(self._graph("v1"))
        assert [g.version for g in store.get_graph_metadata_by_dataset_version("v1")] == ["graph-v1"]

    def test_single_active_graph_and_dataset(self, store, sqlite_broker):
        with sqlite_broker.get_session() as session:
            datasets = DatasetRepository(session)
            datasets.save_dataset(DatasetInfo(version="v1", source_hash="a" * 64))
            datasets.save_dataset(DatasetInfo(version="v2", source_hash="b" * 64))

        first = store.save_graph_metadata(self._graph("v1"))
        second = store.save_graph_metadata(self._graph("v2"))
        store.set_active_graph_metadata(first.id, activate_dataset=True)
        store.set_active_graph_metadata(second.id, activate_dataset=True)

        assert store.get_active_graph_metadata().version == "graph-v2"
        assert store.find_metadata_by_id(first.id).is_active is False
        with sqlite_broker.get_session() as session:
            assert DatasetRepository(session).get_active_dataset().version == "v2"

    def test_activation_rolls_back_when_dataset_missing(self, store):
        graph = store.save_graph_metadata(self._graph("v-missing"))

        with pytest.raises(PersistenceError):
            store.set_active_graph_metadata(graph.id, activate_dataset=True)

        assert store.get_active_graph_metadata() is None
