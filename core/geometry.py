"""
Site Geometry - Parsing, validation and geodesic metrics for application sites.

Coordinates are WGS84 (lon, lat). Areas and lengths are geodesic, computed
on the WGS84 ellipsoid with pyproj.
"""

import hashlib
import json
import math
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pyproj import Geod
from shapely import wkt as shapely_wkt
from shapely.geometry import Polygon, box, shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import nearest_points

from core.errors import InputError

log = logging.getLogger(__name__)

GEOD = Geod(ellps="WGS84")

# Half-side of the square used when only a point is known (~50 m across)
POINT_SITE_HALF_SIZE_DEG = 0.00045

METRES_PER_DEGREE_LAT = 111320.0

DEVELOPABLE_RATIO = 0.8


# ═══════════════════════════════════════════════════════════════════════════
# SITE GEOMETRY
# ═══════════════════════════════════════════════════════════════════════════
class SiteGeometry:
    """
    A validated site polygon.

    Accepts GeoJSON-like dicts (Polygon, MultiPolygon, Point, Feature) or a
    bare ring of [lon, lat] pairs. Raises InputError for anything that is not
    at least one ring with three distinct points enclosing a non-zero area.
    """

    def __init__(self, polygon: Polygon, source_type: str = "Polygon"):
        self.polygon = polygon
        self.source_type = source_type

    @classmethod
    def from_input(cls, geometry: Any) -> "SiteGeometry":
        if isinstance(geometry, SiteGeometry):
            return geometry
        if geometry is None:
            raise InputError("No site geometry supplied")

        if isinstance(geometry, dict):
            if geometry.get("type") == "Feature":
                return cls.from_input(geometry.get("geometry"))
            geom_type = geometry.get("type")
            coords = geometry.get("coordinates")
            if geom_type == "Point":
                try:
                    lon, lat = float(coords[0]), float(coords[1])
                except (TypeError, ValueError, IndexError):
                    raise InputError("Point geometry has no usable coordinates")
                return cls.from_point(lat, lon)
            if geom_type == "MultiPolygon":
                if not coords:
                    raise InputError("MultiPolygon has no polygons")
                return cls._from_rings(coords[0], "MultiPolygon")
            if geom_type == "Polygon":
                return cls._from_rings(coords, "Polygon")
            raise InputError(f"Unsupported geometry type: {geom_type!r}")

        if isinstance(geometry, (list, tuple)):
            return cls._from_rings([geometry], "Ring")

        raise InputError(f"Unsupported geometry value: {type(geometry).__name__}")

    @classmethod
    def from_point(cls, lat: float, lon: float, half_size: float = POINT_SITE_HALF_SIZE_DEG) -> "SiteGeometry":
        _check_lon_lat(lon, lat)
        square = box(lon - half_size, lat - half_size, lon + half_size, lat + half_size)
        return cls(square, source_type="Point")

    @classmethod
    def _from_rings(cls, rings: Any, source_type: str) -> "SiteGeometry":
        if not rings or not isinstance(rings, (list, tuple)):
            raise InputError("Geometry has no coordinate rings")

        exterior = _parse_ring(rings[0])
        holes = []
        for ring in rings[1:]:
            try:
                holes.append(_parse_ring(ring))
            except InputError as e:
                log.warning(f"Dropping invalid interior ring: {e}")

        polygon = Polygon(exterior, holes)
        if polygon.area == 0:
            raise InputError("Geometry is degenerate (zero area)")
        if not polygon.is_valid:
            repaired = polygon.buffer(0)
            if repaired.is_empty or repaired.geom_type != "Polygon":
                raise InputError("Geometry is self-intersecting and cannot be repaired")
            polygon = repaired
        return cls(polygon, source_type=source_type)

    @property
    def exterior(self) -> List[Tuple[float, float]]:
        return [(round(x, 7), round(y, 7)) for x, y in self.polygon.exterior.coords]

    @property
    def wkt(self) -> str:
        return self.polygon.wkt

    @property
    def geometry_hash(self) -> str:
        payload = json.dumps(self.exterior, separators=(",", ":"))
        return hashlib.sha256(payload.encode()).hexdigest()

    def to_geojson(self) -> Dict[str, Any]:
        return {
            "type": "Polygon",
            "coordinates": [[list(c) for c in self.exterior]],
        }

    def buffered_envelope(self, metres: float) -> Polygon:
        """Bounding box grown by roughly `metres` on every side."""
        min_lon, min_lat, max_lon, max_lat = self.polygon.bounds
        mid_lat = (min_lat + max_lat) / 2
        d_lat = metres / METRES_PER_DEGREE_LAT
        d_lon = metres / (METRES_PER_DEGREE_LAT * max(math.cos(math.radians(mid_lat)), 0.01))
        return box(min_lon - d_lon, min_lat - d_lat, max_lon + d_lon, max_lat + d_lat)


def _check_lon_lat(lon: float, lat: float):
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise InputError("Coordinates must be finite numbers")
    if not (-180 <= lon <= 180 and -90 <= lat <= 90):
        raise InputError(f"Coordinate out of range: ({lon}, {lat})")


def _parse_ring(ring: Any) -> List[Tuple[float, float]]:
    if not ring or not isinstance(ring, (list, tuple)):
        raise InputError("Coordinate ring is empty")

    points = []
    for position in ring:
        try:
            lon, lat = float(position[0]), float(position[1])
        except (TypeError, ValueError, IndexError):
            raise InputError(f"Invalid coordinate: {position!r}")
        _check_lon_lat(lon, lat)
        points.append((lon, lat))

    distinct = set(points)
    if len(distinct) < 3:
        raise InputError(f"Ring needs at least 3 distinct points, got {len(distinct)}")
    return points


# ═══════════════════════════════════════════════════════════════════════════
# METRICS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class SiteMetrics:
    """Derived measurements of a site. Lengths in metres, areas in m²."""
    area: float = 0.0
    perimeter: float = 0.0
    perimeter_approximated: bool = False
    bbox: Optional[Tuple[float, float, float, float]] = None  # min_lon, min_lat, max_lon, max_lat
    centroid: Optional[Tuple[float, float]] = None            # lon, lat
    width: float = 0.0
    height: float = 0.0
    area_hectares: float = 0.0
    developable_area: float = 0.0
    frontage_length: float = 0.0
    compactness: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["bbox"] = list(self.bbox) if self.bbox else None
        data["centroid"] = list(self.centroid) if self.centroid else None
        return data


def geodesic_distance(lon1: float, lat1: float, lon2: float, lat2: float) -> float:
    """Great-circle (ellipsoidal) distance in metres."""
    _, _, dist = GEOD.inv(lon1, lat1, lon2, lat2)
    return abs(dist)


def compute_metrics(site: SiteGeometry) -> SiteMetrics:
    """Geodesic metrics for a validated site."""
    polygon = site.polygon
    metrics = SiteMetrics()

    area, perimeter = GEOD.geometry_area_perimeter(polygon)
    metrics.area = round(abs(area), 2)

    if math.isfinite(perimeter) and perimeter > 0:
        metrics.perimeter = round(perimeter, 2)
    else:
        # Square-equivalent approximation
        metrics.perimeter = round(math.sqrt(metrics.area) * 4, 2)
        metrics.perimeter_approximated = True

    min_lon, min_lat, max_lon, max_lat = polygon.bounds
    metrics.bbox = (min_lon, min_lat, max_lon, max_lat)
    c = polygon.centroid
    metrics.centroid = (round(c.x, 7), round(c.y, 7))

    metrics.width = round(geodesic_distance(min_lon, min_lat, max_lon, min_lat), 2)
    metrics.height = round(geodesic_distance(min_lon, min_lat, min_lon, max_lat), 2)

    metrics.area_hectares = round(metrics.area / 10000, 4)
    metrics.developable_area = round(metrics.area * DEVELOPABLE_RATIO, 2)
    metrics.frontage_length = round(_longest_edge(list(polygon.exterior.coords)), 2)
    if metrics.perimeter > 0:
        metrics.compactness = round(4 * math.pi * metrics.area / metrics.perimeter ** 2, 4)

    return metrics


def _longest_edge(coords: Sequence[Tuple[float, float]]) -> float:
    longest = 0.0
    for (x1, y1), (x2, y2) in zip(coords, coords[1:]):
        longest = max(longest, geodesic_distance(x1, y1, x2, y2))
    return longest


# ═══════════════════════════════════════════════════════════════════════════
# FEATURE RELATIONSHIPS
# ═══════════════════════════════════════════════════════════════════════════
def parse_feature_geometry(feature: Dict[str, Any]) -> Optional[BaseGeometry]:
    """Best-effort geometry for a dataset entity (WKT, GeoJSON or point); empty geometries are skipped."""
    for key in ("geometry", "point"):
        value = feature.get(key)
        if not value:
            continue
        geom = None
        try:
            if isinstance(value, str):
                geom = shapely_wkt.loads(value)
            elif isinstance(value, dict):
                geom = shape(value)
        except Exception as e:
            log.debug(f"Unparseable {key} on entity {feature.get('entity')}: {e}")
        if geom is not None and not geom.is_empty:
            return geom
    return None


def distance_to_site(site: SiteGeometry, geom: BaseGeometry) -> float:
    """Metres from the site boundary to a feature; 0 when they touch."""
    if geom.intersects(site.polygon):
        return 0.0
    p_site, p_feature = nearest_points(site.polygon, geom)
    return geodesic_distance(p_site.x, p_site.y, p_feature.x, p_feature.y)


def coverage_percent(site: SiteGeometry, geom: BaseGeometry) -> float:
    """Share of the site area covered by a feature, 0-100."""
    if geom.geom_type in ("Point", "MultiPoint", "LineString", "MultiLineString"):
        return 0.0
    try:
        overlap = site.polygon.intersection(geom)
    except Exception as e:
        log.debug(f"Intersection failed: {e}")
        return 0.0
    if overlap.is_empty or site.polygon.area == 0:
        return 0.0
    return round(min(100.0, overlap.area / site.polygon.area * 100), 2)
