"""
Hybrid graph store.

Durable tier (SQL): GraphMetadata rows are the source of truth for which
graphs exist and which one is active.

Cache tier (Redis): a rebuildable adjacency index, one JSON neighbor list
per node, namespaced by graph version:

    graph:version                        active graph version
    graph:<version>:node:<id>            node presence marker
    graph:<version>:node:<id>:neighbors  JSON list of adjacency entries
    graph:<version>:meta                 JSON summary of the build

Readers always resolve ``graph:version`` first, so they only ever see a
namespace that was completely written before the pointer moved to it.

External readers (route search, other services) must do the same: read
``graph:version``, then ``graph:<version>:node:<id>:neighbors``. There
are no unversioned ``graph:node:<id>`` keys.
"""

import json
import logging
from typing import Dict, Iterable, List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from tripgraph.data.db_broker import ConnectionBroker
from tripgraph.data.models import GraphMetadata
from tripgraph.data.records import AdjacencyEntry, GraphInfo
from tripgraph.data.repositories import DatasetRepository
from tripgraph.errors import PersistenceError

logger = logging.getLogger(__name__)

ACTIVE_VERSION_KEY = 'graph:version'
PIPELINE_CHUNK = 1000


def node_key(version: str, node_id: str) -> str:
    return f'graph:{version}:node:{node_id}'


def neighbors_key(version: str, node_id: str) -> str:
    return f'graph:{version}:node:{node_id}:neighbors'


def meta_key(version: str) -> str:
    return f'graph:{version}:meta'


def _graph_info(row: GraphMetadata) -> GraphInfo:
    return GraphInfo(
        id=row.graph_id,
        version=row.version,
        dataset_version=row.dataset_version,
        nodes_count=row.nodes_count,
        edges_count=row.edges_count,
        build_duration_ms=row.build_duration_ms,
        storage_key=row.storage_key,
        backup_path=row.backup_path,
        build_timestamp=row.build_timestamp,
        is_active=row.is_active,
    )


class HybridGraphStore:

    def __init__(self, broker: ConnectionBroker, redis_client):
        self.broker = broker
        self.redis = redis_client

    # ------------------------------------------------------------------
    # Cache tier
    # ------------------------------------------------------------------

    def get_active_version(self) -> Optional[str]:
        return self.redis.get(ACTIVE_VERSION_KEY) or None

    def set_active_version(self, version: str) -> None:
        # Single SET: readers see either the old or the new version
        try:
            self.redis.set(ACTIVE_VERSION_KEY, version)
        except RedisError as e:
            raise PersistenceError(f"Could not set active graph version: {e}") from e
        logger.info(f"Active graph version is now {version}")

    def has_node(self, node_id: str) -> bool:
        version = self.get_active_version()
        if not version:
            return False
        return bool(self.redis.exists(node_key(version, node_id)))

    def get_neighbors(self, node_id: str) -> List[AdjacencyEntry]:
        version = self.get_active_version()
        if not version:
            return []
        raw = self.redis.get(neighbors_key(version, node_id))
        if not raw:
            return []
        return [AdjacencyEntry.from_dict(item) for item in json.loads(raw)]

    def get_edge_weight(self, from_id: str, to_id: str) -> Optional[float]:
        for entry in self.get_neighbors(from_id):
            if entry.neighbor_id == to_id:
                return entry.weight
        return None

    def save_graph(self, version: str, node_ids: Iterable[str],
                   adjacency: Dict[str, List[AdjacencyEntry]], meta: Dict = None) -> str:
        """
        Write a complete adjacency namespace for a graph version.

        Nodes without outgoing edges get an empty neighbor list.

        Returns:
            The namespace's meta key, recorded as the graph's storage key
        """
        node_ids = list(node_ids)
        try:
            for start in range(0, len(node_ids), PIPELINE_CHUNK):
                pipe = self.redis.pipeline(transaction=True)
                for node_id in node_ids[start:start + PIPELINE_CHUNK]:
                    entries = adjacency.get(node_id, [])
                    pipe.set(node_key(version, node_id), '1')
                    pipe.set(neighbors_key(version, node_id), json.dumps([e.to_dict() for e in entries]))
                pipe.execute()

            self.redis.set(meta_key(version), json.dumps(meta or {}, default=str))
        except RedisError as e:
            raise PersistenceError(f"Could not write graph {version} to cache: {e}") from e

        logger.info(f"Cached adjacency for {len(node_ids)} nodes under graph:{version}")
        return meta_key(version)

    def get_graph_meta(self, version: str) -> Optional[Dict]:
        raw = self.redis.get(meta_key(version))
        return json.loads(raw) if raw else None

    def delete_graph_version(self, version: str) -> int:
        """Remove every cache key of a graph version. Returns the number deleted."""
        if version == self.get_active_version():
            raise ValueError(f"Refusing to delete the active graph version {version}")

        deleted = 0
        batch = []
        try:
            for key in self.redis.scan_iter(match=f'graph:{version}:*', count=PIPELINE_CHUNK):
                batch.append(key)
                if len(batch) >= PIPELINE_CHUNK:
                    deleted += self.redis.delete(*batch)
                    batch = []
            if batch:
                deleted += self.redis.delete(*batch)
        except RedisError as e:
            raise PersistenceError(f"Could not delete cache keys of graph {version}: {e}") from e

        logger.info(f"Deleted {deleted} cache keys of superseded graph {version}")
        return deleted

    # ------------------------------------------------------------------
    # Durable tier
    # ------------------------------------------------------------------

    def save_graph_metadata(self, graph: GraphInfo) -> GraphInfo:
        try:
            with self.broker.get_session() as session:
                row = GraphMetadata(
                    version=graph.version,
                    dataset_version=graph.dataset_version,
                    nodes_count=graph.nodes_count,
                    edges_count=graph.edges_count,
                    build_duration_ms=graph.build_duration_ms,
                    storage_key=graph.storage_key,
                    backup_path=graph.backup_path,
                    is_active=False,
                )
                if graph.build_timestamp is not None:
                    row.build_timestamp = graph.build_timestamp
                session.add(row)
                session.flush()
                return _graph_info(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not save metadata for graph {graph.version}: {e}") from e

    def find_metadata_by_id(self, graph_id: int) -> Optional[GraphInfo]:
        with self.broker.get_session() as session:
            row = session.get(GraphMetadata, graph_id)
            return _graph_info(row) if row else None

    def set_active_graph_metadata(self, graph_id: int, activate_dataset: bool = False) -> GraphInfo:
        """
        Flag one graph active and every other graph inactive.

        With activate_dataset, the graph's dataset is activated in the same
        transaction.
        """
        try:
            with self.broker.get_session() as session:
                row = session.get(GraphMetadata, graph_id)
                if row is None:
                    raise PersistenceError(f"Cannot activate unknown graph {graph_id}")

                session.query(GraphMetadata).filter(
                    GraphMetadata.is_active.is_(True), GraphMetadata.graph_id != graph_id
                ).update({GraphMetadata.is_active: False}, synchronize_session=False)
                row.is_active = True

                if activate_dataset:
                    DatasetRepository(session).set_active_dataset(row.dataset_version)

                session.flush()
                return _graph_info(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not activate graph {graph_id}: {e}") from e

    def get_graph_metadata_by_dataset_version(self, dataset_version: str) -> List[GraphInfo]:
        with self.broker.get_session() as session:
            rows = session.query(GraphMetadata).filter_by(
                dataset_version=dataset_version
            ).order_by(GraphMetadata.graph_id).all()
            return [_graph_info(row) for row in rows]

    def get_active_graph_metadata(self) -> Optional[GraphInfo]:
        with self.broker.get_session() as session:
            row = session.query(GraphMetadata).filter(GraphMetadata.is_active.is_(True)).first()
            return _graph_info(row) if row else None
