"""Deterministic identifier helpers for synthesized entities.

Ids are part of the data model: re-running synthesis for the same inputs
must produce the same ids, so that upserts land on the same rows. Any
change to the token recipe must bump ``ID_SCHEME`` and be treated as a
data migration.
"""

from __future__ import annotations

import hashlib
import json

from .cities import normalize_city_name

ID_SCHEME = "v1"


def _hex16_from_parts(*parts: str) -> str:
    text = "|".join(("tripgraph", ID_SCHEME) + tuple(str(p) for p in parts))
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def virtual_stop_id(city_name: str) -> str:
    return f"virtual-stop-{_hex16_from_parts('stop', normalize_city_name(city_name))}"


def virtual_route_id(from_stop_id: str, to_stop_id: str, generation_method: str) -> str:
    return f"virtual-route-{_hex16_from_parts('route', generation_method, from_stop_id, to_stop_id)}"


def connectivity_route_id(from_city: str, to_city: str) -> str:
    token = _hex16_from_parts(
        'route', 'connectivity', normalize_city_name(from_city), normalize_city_name(to_city)
    )
    return f"virtual-route-connectivity-{token}"


def virtual_flight_id(route_id: str, day_offset: int, slot_index: int) -> str:
    return f"virtual-flight-{_hex16_from_parts('flight', route_id, day_offset, slot_index)}"


def canonical_json(payload) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_payload(payload) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()
