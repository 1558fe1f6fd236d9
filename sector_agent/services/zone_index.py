import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from shapely.errors import GEOSException
from shapely.geometry import Point, Polygon

from sector_agent.config.settings import settings
from sector_agent.models.schemas import Coordinates, PENDING_ZONE, UNASSIGNED_ZONE, ZoneDefinition
from sector_agent.services.errors import ZoneDataError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Zone:
    index: int
    name: str
    polygon: Optional[Polygon]  # None when the boundary could not be built


def _build_polygon(name: str, boundary: Sequence[Tuple[float, float]]) -> Optional[Polygon]:
    """Boundary vertices are (latitude, longitude); shapely wants (x=longitude, y=latitude)."""
    try:
        ring = [(float(lng), float(lat)) for lat, lng in boundary]
        if len(ring) < 3:
            raise ZoneDataError(f"needs at least 3 vertices, got {len(ring)}")
        polygon = Polygon(ring)
    except (TypeError, ValueError, GEOSException, ZoneDataError) as e:
        logger.error(f"Zone '{name}' has a malformed boundary and will never match: {e}")
        return None
    if not polygon.is_valid:
        logger.warning(f"Zone '{name}' boundary is not a valid polygon; containment results may be unreliable.")
    return polygon


class SectorZoneIndex:
    """
    Ordered, immutable set of named sector polygons. The first zone whose
    boundary covers a point wins, so overlapping zones resolve by file order.
    """

    def __init__(self, definitions: Iterable[ZoneDefinition]):
        zones = []
        for definition in definitions:
            zones.append(Zone(
                index=len(zones),
                name=definition.name,
                polygon=_build_polygon(definition.name, definition.boundary),
            ))
        self._zones: Tuple[Zone, ...] = tuple(zones)
        logger.info(f"Sector zone index loaded with {len(self._zones)} zones.")

    @classmethod
    def from_file(cls, file_path: str) -> "SectorZoneIndex":
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load zones file from {file_path}: {e}")
            return cls([])
        return cls(_parse_definitions(data))

    @property
    def zones(self) -> Tuple[Zone, ...]:
        return self._zones

    @property
    def zone_names(self) -> List[str]:
        return [zone.name for zone in self._zones]

    def classify(self, coordinates: Optional[Coordinates]) -> str:
        """Returns the enclosing zone name, 'unassigned' outside every zone, or 'pending' without coordinates."""
        if coordinates is None:
            return PENDING_ZONE
        point = Point(coordinates.longitude, coordinates.latitude)
        for zone in self._zones:
            if zone.polygon is None:
                continue
            try:
                if zone.polygon.covers(point):
                    return zone.name
            except (GEOSException, ValueError, TypeError) as e:
                logger.warning(f"Containment test failed for zone '{zone.name}', skipping it: {e}")
        return UNASSIGNED_ZONE


def _parse_definitions(data: Any) -> List[ZoneDefinition]:
    if isinstance(data, dict):
        data = data.get("zones", [])
    if not isinstance(data, list):
        logger.error("Zones data must be a list of {name, boundary} objects.")
        return []
    definitions = []
    for position, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("name"):
            logger.error(f"Skipping zone #{position}: missing name.")
            continue
        boundary = item.get("boundary")
        if not isinstance(boundary, list):
            boundary = []
        try:
            definitions.append(ZoneDefinition(name=item["name"], boundary=boundary))
        except ValueError as e:
            logger.error(f"Zone '{item['name']}' has malformed vertices and will never match: {e}")
            definitions.append(ZoneDefinition(name=item["name"], boundary=[]))
    return definitions


# Singleton instance
zone_index = SectorZoneIndex.from_file(settings.zones_file)
