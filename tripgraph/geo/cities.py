"""
Reference city directory for the served region (Yakutia).

The directory is a plain value: the pipeline wiring builds one and hands
it to the synthesis stage, and tests build their own with whatever
cities they need.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

DIRECTORY_VERSION = "yakutia-2025.1"

_WORD_RE = re.compile(r"[^\W\d_]+", re.UNICODE)
_CITY_PREFIX_RE = re.compile(r"^\s*г\.\s*", re.IGNORECASE)


def normalize_city_name(name: str) -> str:
    """
    Case, diacritic and whitespace insensitive key for a city name.

    "Олёкминск", " олекминск " and "ОЛЕКМИНСК" all map to "олекминск".
    """
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return "".join(ch for ch in stripped.casefold() if ch.isalnum())


@dataclass(frozen=True)
class ReferenceCity:
    name: str
    latitude: float
    longitude: float
    synonyms: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def normalized_name(self) -> str:
        return normalize_city_name(self.name)


YAKUTIA_CITIES = (
    ReferenceCity("Якутск", 62.0355, 129.6755, ("Yakutsk",)),
    ReferenceCity("Мирный", 62.5354, 113.9564, ("Mirny", "Mirnyy")),
    ReferenceCity("Нерюнгри", 56.6669, 124.7164, ("Neryungri",)),
    ReferenceCity("Ленск", 60.7242, 114.9166, ("Lensk",)),
    ReferenceCity("Алдан", 58.6031, 125.3883, ("Aldan",)),
    ReferenceCity("Удачный", 66.4167, 112.4000, ("Udachny", "Udachnyy")),
    ReferenceCity("Вилюйск", 63.7547, 121.6274, ("Vilyuysk",)),
    ReferenceCity("Нюрба", 63.2842, 118.3362, ("Nyurba",)),
    ReferenceCity("Покровск", 61.4833, 129.1500, ("Pokrovsk",)),
    ReferenceCity("Олёкминск", 60.3744, 120.4272, ("Olyokminsk", "Olekminsk")),
)


class CityDirectory:
    """Static, versioned list of reference cities with normalized lookup."""

    def __init__(self, cities: Iterable[ReferenceCity], version: str = DIRECTORY_VERSION):
        self.version = version
        self._cities: List[ReferenceCity] = list(cities)
        self._by_key: Dict[str, ReferenceCity] = {}
        for city in self._cities:
            self._by_key[city.normalized_name] = city
            for synonym in city.synonyms:
                self._by_key.setdefault(normalize_city_name(synonym), city)

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Dict[str, float]], version: str = DIRECTORY_VERSION):
        """Build from ``{name: {"latitude": .., "longitude": ..}}``."""
        return cls(
            (ReferenceCity(name, coords["latitude"], coords["longitude"]) for name, coords in mapping.items()),
            version=version,
        )

    def __len__(self):
        return len(self._cities)

    def __iter__(self):
        return iter(self._cities)

    def cities(self) -> List[ReferenceCity]:
        return list(self._cities)

    def get(self, name: str) -> Optional[ReferenceCity]:
        return self._by_key.get(normalize_city_name(name))

    def is_reference_city(self, name: str) -> bool:
        return normalize_city_name(name) in self._by_key

    def canonical_key(self, name: str) -> Optional[str]:
        """Normalized canonical name of the reference city ``name`` refers to, if any."""
        city = self.get(name)
        return city.normalized_name if city else None

    def match_city_in_text(self, text: str) -> Optional[ReferenceCity]:
        """Find the first reference city named in free text such as a stop name."""
        if not text:
            return None
        text = _CITY_PREFIX_RE.sub("", text)
        for word in _WORD_RE.findall(text):
            city = self.get(word)
            if city:
                return city
        return None


def default_directory() -> CityDirectory:
    return CityDirectory(YAKUTIA_CITIES)
