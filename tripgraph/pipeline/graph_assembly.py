"""
Graph Assembly Stage

Turns the latest synthesized dataset into a directed weighted graph
(stops are nodes, route legs are edges weighted in minutes), validates
it and publishes it through the hybrid graph store.

Publication order:
    1. adjacency to the cache tier under the new version's namespace
    2. inactive Graph metadata row
    3. graph + dataset activation in one durable transaction
    4. ``graph:version`` pointer flip, then cleanup of the old namespace

A graph counts as built only once it is active and ``graph:version``
points at it. A run that fails after step 2 leaves the metadata row
behind; the next run rebuilds the namespace and reuses that row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from tripgraph.data.models import utcnow
from tripgraph.data.records import (
    AdjacencyEntry, FlightRecord, GraphInfo, RouteRecord, StopRecord, TRANSPORT_FERRY
)
from tripgraph.errors import GraphValidationError, PersistenceError

from .stage import OK, CANNOT_RUN, NO_DATASET, StageResult

logger = logging.getLogger(__name__)

STAGE_ID = 'graph-assembly'

DEFAULT_EDGE_WEIGHT_MINUTES = 60
DEFAULT_FERRY_DURATION_MINUTES = 20
FERRY_SUMMER_WAIT_MINUTES = 17.5  # frequent sailings, 15-20 min wait
FERRY_WINTER_WAIT_MINUTES = 37.5  # rare sailings, 30-45 min wait
SUMMER_MONTHS = range(4, 10)  # April-September


def graph_version_for(dataset_version: str) -> str:
    return f"graph-{dataset_version}"


# ============================================================================
# WEIGHTS
# ============================================================================

def parse_hhmm(value: Optional[str]) -> Optional[int]:
    """Minutes since midnight for 'HH:MM', None for anything else."""
    if not value:
        return None
    parts = value.split(':')
    if len(parts) != 2:
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours * 60 + minutes


def flight_duration_minutes(flight: FlightRecord) -> Optional[int]:
    departure = parse_hhmm(flight.departure_time)
    arrival = parse_hhmm(flight.arrival_time)
    if departure is None or arrival is None:
        return None
    duration = arrival - departure
    if duration < 0:
        duration += 24 * 60  # overnight
    return duration or None


def ferry_wait_minutes(month: int) -> float:
    return FERRY_SUMMER_WAIT_MINUTES if month in SUMMER_MONTHS else FERRY_WINTER_WAIT_MINUTES


def edge_weight(route: RouteRecord, flights: Sequence[FlightRecord], month: int) -> float:
    """
    Travel time in minutes for one route leg.

    Route duration first, else the first flight's schedule, else the
    default. Ferry routes with a schedule add the seasonal wait.
    """
    if route.transport_mode == TRANSPORT_FERRY and (route.metadata or {}).get('ferrySchedule'):
        base = route.duration_minutes or DEFAULT_FERRY_DURATION_MINUTES
        return base + ferry_wait_minutes(month)

    if route.duration_minutes:
        return route.duration_minutes

    for flight in flights:
        duration = flight_duration_minutes(flight)
        if duration:
            return duration

    return DEFAULT_EDGE_WEIGHT_MINUTES


# ============================================================================
# GRAPH
# ============================================================================

@dataclass
class AssembledGraph:
    node_ids: List[str]
    adjacency: Dict[str, List[AdjacencyEntry]]
    edges_count: int
    dangling_routes: List[str] = field(default_factory=list)

    def isolated_nodes(self) -> List[str]:
        targets = {entry.neighbor_id for entries in self.adjacency.values() for entry in entries}
        return [node_id for node_id in self.node_ids
                if not self.adjacency.get(node_id) and node_id not in targets]

    def duplicate_edges(self) -> int:
        duplicates = 0
        for entries in self.adjacency.values():
            neighbors = [entry.neighbor_id for entry in entries]
            duplicates += len(neighbors) - len(set(neighbors))
        return duplicates


def build_graph(stops: Sequence[StopRecord], routes: Sequence[RouteRecord],
                flights: Sequence[FlightRecord], month: int) -> AssembledGraph:
    """
    Nodes are all stops; one directed edge per route whose endpoints are
    both nodes. Neighbor lists are ordered by (weight, neighbor, route).
    """
    node_ids = sorted({stop.id for stop in stops})
    nodes = set(node_ids)

    flights_by_route: Dict[str, List[FlightRecord]] = {}
    for flight in flights:
        if flight.route_id:
            flights_by_route.setdefault(flight.route_id, []).append(flight)

    adjacency: Dict[str, List[AdjacencyEntry]] = {}
    dangling = []
    edges_count = 0

    for route in routes:
        if route.from_stop_id not in nodes or route.to_stop_id not in nodes:
            dangling.append(route.id)
            continue

        adjacency.setdefault(route.from_stop_id, []).append(AdjacencyEntry(
            neighbor_id=route.to_stop_id,
            weight=edge_weight(route, flights_by_route.get(route.id, []), month),
            distance=route.distance_km,
            transport_mode=route.transport_mode,
            route_id=route.id,
        ))
        edges_count += 1

    for entries in adjacency.values():
        entries.sort(key=lambda e: (e.weight, e.neighbor_id, e.route_id or ''))

    return AssembledGraph(node_ids, adjacency, edges_count, dangling)


def validate_graph(graph: AssembledGraph) -> List[str]:
    """
    Raise GraphValidationError on an empty node or edge set.

    Returns:
        Non-blocking warnings
    """
    errors = []
    if not graph.node_ids:
        errors.append('graph has no nodes')
    if graph.edges_count == 0:
        errors.append('graph has no edges')
    if errors:
        raise GraphValidationError(errors)

    warnings = []
    if graph.dangling_routes:
        warnings.append(f"{len(graph.dangling_routes)} routes reference stops outside the node set")
    isolated = graph.isolated_nodes()
    if isolated:
        warnings.append(f"{len(isolated)} isolated nodes")
    duplicates = graph.duplicate_edges()
    if duplicates:
        warnings.append(f"{duplicates} parallel edges between the same stops")
    return warnings


# ============================================================================
# STAGE
# ============================================================================

class GraphAssemblyStage:

    stage_id = STAGE_ID
    next_stage = None

    def __init__(self, repositories, graph_store, storage=None,
                 clock: Callable[[], datetime] = utcnow):
        self.repositories = repositories
        self.graph_store = graph_store
        self.storage = storage
        self.clock = clock

    def _latest_dataset(self):
        with self.repositories.session_scope() as repos:
            return repos.datasets.get_latest_dataset()

    def _existing_graph(self, dataset_version: str) -> Optional[GraphInfo]:
        graph_version = graph_version_for(dataset_version)
        for graph in self.graph_store.get_graph_metadata_by_dataset_version(dataset_version):
            if graph.version == graph_version:
                return graph
        return None

    def _is_published(self, graph: GraphInfo) -> bool:
        return graph.is_active and self.graph_store.get_active_version() == graph.version

    def can_run(self) -> bool:
        dataset = self._latest_dataset()
        if dataset is None or dataset.synthesized_at is None:
            return False
        existing = self._existing_graph(dataset.version)
        return existing is None or not self._is_published(existing)

    def skip_result(self) -> StageResult:
        dataset = self._latest_dataset()
        if dataset is None:
            return StageResult(success=False, code=NO_DATASET, message='No dataset found')
        if dataset.synthesized_at is None:
            return StageResult(success=False, code=CANNOT_RUN,
                               message=f"Dataset {dataset.version} has not been synthesized yet")
        return StageResult(success=False, code=CANNOT_RUN,
                           message=f"Graph already built for dataset {dataset.version}")

    def run(self) -> StageResult:
        started = self.clock()

        with self.repositories.session_scope() as repos:
            dataset = repos.datasets.get_latest_dataset()
            if dataset is None:
                return StageResult(success=False, code=NO_DATASET, message='No dataset found')
            version = dataset.version
            stops = repos.stops.get_all_real_stops(version) + repos.stops.get_all_virtual_stops(version)
            routes = repos.routes.get_all_routes(version) + repos.routes.get_all_virtual_routes(version)
            flights = repos.flights.get_all_flights(version)

        logger.info(f"Assembling graph for {version}: {len(stops)} stops, {len(routes)} routes, {len(flights)} flights")

        graph = build_graph(stops, routes, flights, month=started.month)
        for warning in validate_graph(graph):
            logger.warning(f"Graph {version}: {warning}")

        graph_version = graph_version_for(version)
        previous_version = self.graph_store.get_active_version()

        storage_key = self.graph_store.save_graph(
            graph_version, graph.node_ids, graph.adjacency,
            meta={
                'version': graph_version,
                'datasetVersion': version,
                'nodes': len(graph.node_ids),
                'edges': graph.edges_count,
                'buildTimestamp': started.isoformat(),
            },
        )
        backup_path = self._export_backup(graph_version, version, graph)

        info = self._existing_graph(version)
        if info is not None:
            logger.warning(f"Resuming publication of {graph_version}, left unpublished by an earlier run")
        else:
            duration_ms = int((self.clock() - started).total_seconds() * 1000)
            info = self.graph_store.save_graph_metadata(GraphInfo(
                version=graph_version,
                dataset_version=version,
                nodes_count=len(graph.node_ids),
                edges_count=graph.edges_count,
                build_duration_ms=duration_ms,
                storage_key=storage_key,
                backup_path=backup_path,
                build_timestamp=started,
            ))
        self.graph_store.set_active_graph_metadata(info.id, activate_dataset=True)
        self.graph_store.set_active_version(graph_version)

        if previous_version and previous_version != graph_version:
            try:
                self.graph_store.delete_graph_version(previous_version)
            except PersistenceError as e:
                logger.warning(f"Could not clean up superseded graph {previous_version}: {e}")

        return StageResult(
            success=True,
            code=OK,
            message=f"Graph built successfully: {len(graph.node_ids)} nodes, {graph.edges_count} edges",
            next_stage=self.next_stage,
            data={
                'graphVersion': graph_version,
                'datasetVersion': version,
                'nodes': len(graph.node_ids),
                'edges': graph.edges_count,
                'backupPath': backup_path,
            },
        )

    def _export_backup(self, graph_version: str, dataset_version: str, graph: AssembledGraph) -> Optional[str]:
        if self.storage is None:
            return None
        try:
            return self.storage.put_json(f"graph/export-{graph_version}.json", {
                'version': graph_version,
                'datasetVersion': dataset_version,
                'nodes': graph.node_ids,
                'adjacency': {
                    node_id: [entry.to_dict() for entry in entries]
                    for node_id, entries in graph.adjacency.items()
                },
            })
        except OSError as e:
            logger.warning(f"Graph backup export failed for {graph_version}: {e}")
            return None
