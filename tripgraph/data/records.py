"""
Plain records exchanged between the source client, the stages and the
repositories. Repositories map them to and from ORM rows; stages never
touch a session directly.
"""

from dataclasses import dataclass, field, asdict
from typing import Dict, List, Optional

from .models import STOP_KIND_REAL, STOP_KIND_VIRTUAL

TRANSPORT_SHUTTLE = 'SHUTTLE'
TRANSPORT_FERRY = 'FERRY'

GENERATION_HUB = 'hub-based'
GENERATION_DIRECT = 'direct'
GENERATION_CONNECTIVITY = 'yakutia-connectivity'


@dataclass
class StopRecord:
    id: str
    name: str
    latitude: float
    longitude: float
    city_id: Optional[str] = None
    kind: str = STOP_KIND_REAL
    stop_type: Optional[str] = None

    @property
    def is_virtual(self) -> bool:
        return self.kind == STOP_KIND_VIRTUAL


@dataclass
class RouteRecord:
    id: str
    from_stop_id: str
    to_stop_id: str
    transport_mode: str = 'BUS'
    distance_km: Optional[float] = None
    duration_minutes: Optional[int] = None
    kind: str = STOP_KIND_REAL
    generation_method: Optional[str] = None
    source_city: Optional[str] = None
    target_city: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    @property
    def is_virtual(self) -> bool:
        return self.kind == STOP_KIND_VIRTUAL


@dataclass
class FlightRecord:
    id: str
    route_id: Optional[str]
    from_stop_id: str
    to_stop_id: str
    departure_time: Optional[str] = None
    arrival_time: Optional[str] = None
    days_of_week: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5, 6, 7])
    price: Optional[float] = None
    is_virtual: bool = False


@dataclass
class SourcePayload:
    """Normalized upstream snapshot."""
    stops: List[StopRecord] = field(default_factory=list)
    routes: List[RouteRecord] = field(default_factory=list)
    flights: List[FlightRecord] = field(default_factory=list)
    skipped: Dict[str, int] = field(default_factory=lambda: {'stops': 0, 'routes': 0, 'flights': 0})

    def canonical(self) -> Dict:
        """Order-independent representation used for content hashing."""
        return {
            'stops': sorted((asdict(s) for s in self.stops), key=lambda s: s['id']),
            'routes': sorted((asdict(r) for r in self.routes), key=lambda r: r['id']),
            'flights': sorted((asdict(f) for f in self.flights), key=lambda f: f['id']),
        }


@dataclass
class DatasetInfo:
    version: str
    source_hash: str
    stops_count: int = 0
    routes_count: int = 0
    flights_count: int = 0
    virtual_stops_count: int = 0
    virtual_routes_count: int = 0
    virtual_flights_count: int = 0
    build_timestamp: Optional[object] = None
    synthesized_at: Optional[object] = None
    is_active: bool = False
    id: Optional[int] = None


@dataclass
class DatasetStatistics:
    stops_count: int
    routes_count: int
    flights_count: int
    virtual_stops_count: int
    virtual_routes_count: int
    virtual_flights_count: int


@dataclass
class AdjacencyEntry:
    """One outgoing edge in a node's cached neighbor list."""
    neighbor_id: str
    weight: float
    distance: Optional[float] = None
    transport_mode: Optional[str] = None
    route_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'neighborId': self.neighbor_id,
            'weight': self.weight,
            'distance': self.distance,
            'transportMode': self.transport_mode,
            'routeId': self.route_id,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'AdjacencyEntry':
        return cls(
            neighbor_id=data['neighborId'],
            weight=data['weight'],
            distance=data.get('distance'),
            transport_mode=data.get('transportMode'),
            route_id=data.get('routeId'),
        )


@dataclass
class GraphInfo:
    version: str
    dataset_version: str
    nodes_count: int
    edges_count: int
    build_duration_ms: int = 0
    storage_key: str = ''
    backup_path: Optional[str] = None
    build_timestamp: Optional[object] = None
    is_active: bool = False
    id: Optional[int] = None
