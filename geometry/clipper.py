"""
Bridges between the polygon tree and the polygon backends.

pyclipper works on integer coordinates, so every conversion scales by
``scale`` (CLIPPER_SCALE by default) and rounds. shapely is used for
buffering and for the boolean operations on placement regions.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import pyclipper
from shapely.errors import GEOSException
from shapely.geometry import LineString, MultiPolygon
from shapely.geometry import Point as ShapelyPoint
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from .polygon import Point, Polygon, area

logger = logging.getLogger(__name__)

CLIPPER_SCALE = 1e7


def to_clipper_path(points: Sequence[Point], scale: float = CLIPPER_SCALE) -> List[Tuple[int, int]]:
    return [(int(round(p.x * scale)), int(round(p.y * scale))) for p in points]


def from_clipper_path(path: Iterable[Sequence[int]], scale: float = CLIPPER_SCALE) -> Tuple[Point, ...]:
    return tuple(Point(x / scale, y / scale) for x, y in path)


def to_shapely(polygon: Polygon) -> ShapelyPolygon:
    """Outline with children as interior rings."""
    return ShapelyPolygon(polygon.coords(), [child.coords() for child in polygon.children])


def outline_to_shapely(polygon: Polygon) -> ShapelyPolygon:
    return ShapelyPolygon(polygon.coords())


def polygon_from_shapely(geom: ShapelyPolygon, source: Optional[str] = None,
                         rotation: float = 0.0) -> Polygon:
    """Counter-clockwise outline, clockwise holes."""
    geom = orient(geom, sign=1.0)
    children = [
        Polygon(tuple(Point(x, y) for x, y in list(ring.coords)[:-1]), (), source, rotation)
        for ring in geom.interiors
    ]
    return Polygon(
        tuple(Point(x, y) for x, y in list(geom.exterior.coords)[:-1]),
        tuple(children),
        source,
        rotation,
    )


def polygons_from_geometry(geom: BaseGeometry) -> List[ShapelyPolygon]:
    """Every areal component of a shapely geometry."""
    if geom.is_empty:
        return []
    if isinstance(geom, ShapelyPolygon):
        return [geom]
    if isinstance(geom, MultiPolygon):
        return list(geom.geoms)
    if hasattr(geom, 'geoms'):
        found = []
        for part in geom.geoms:
            found.extend(polygons_from_geometry(part))
        return found
    return []


def region_geometry(region: Polygon, tolerance: float = 1e-9) -> BaseGeometry:
    """
    Shapely geometry for a placement region.

    Regions can collapse to a segment or a single point (an exact fit), so
    the returned geometry is a Polygon, LineString or Point.
    """
    if abs(area(region)) > tolerance:
        return to_shapely(region)
    unique = list(dict.fromkeys(region.points))
    start, end = max(
        ((a, b) for a in unique for b in unique),
        key=lambda pair: pair[0].distance_to(pair[1]),
    )
    if start.distance_to(end) > tolerance:
        return LineString([(start.x, start.y), (end.x, end.y)])
    return ShapelyPoint(start.x, start.y)


def offset(polygon: Polygon, distance: float, miter_limit: float = 4.0) -> List[Polygon]:
    """
    Grow (positive distance) or shrink (negative) a polygon.

    Holes move in the opposite direction to the outline. A shrink can split
    the shape into several pieces or remove it entirely, so a list is
    returned. If the backend fails, the input is returned unchanged as the
    only element.
    """
    if distance == 0:
        return [polygon]

    try:
        buffered = to_shapely(polygon).buffer(distance, join_style='mitre', mitre_limit=miter_limit)
    except (GEOSException, ValueError) as e:
        logger.warning(f"Offset of {polygon.source!r} by {distance} failed: {e}")
        return [polygon]

    if not buffered.is_valid:
        logger.warning(f"Offset of {polygon.source!r} by {distance} produced invalid geometry")
        return [polygon]

    return [
        polygon_from_shapely(piece, polygon.source, polygon.rotation)
        for piece in polygons_from_geometry(buffered)
    ]


def _largest_piece(path: List[Tuple[int, int]], fill_type: int, tolerance: float,
                   scale: float) -> Optional[List[Tuple[int, int]]]:
    simple = pyclipper.SimplifyPolygon(path, fill_type)
    if not simple:
        return None

    biggest = max(simple, key=lambda p: abs(pyclipper.Area(p)))
    cleaned = pyclipper.CleanPolygon(biggest, tolerance * scale)
    # Drop a closing duplicate left behind by the input
    if len(cleaned) > 3 and tuple(cleaned[0]) == tuple(cleaned[-1]):
        cleaned = cleaned[:-1]
    if len(cleaned) < 3 or abs(pyclipper.Area(cleaned)) / (scale * scale) < tolerance * tolerance:
        return None
    return cleaned


def _clean_ring(points: Sequence[Point], tolerance: float, scale: float) -> Optional[Tuple[Point, ...]]:
    path = to_clipper_path(points, scale)
    cleaned = _largest_piece(path, pyclipper.PFT_NONZERO, tolerance, scale)
    if cleaned is not None and len(cleaned) > len(points):
        # Overlapping lobes were merged and gained crossing vertices
        cleaned = _largest_piece(path, pyclipper.PFT_EVENODD, tolerance, scale)
        if cleaned is not None and len(cleaned) > len(points):
            logger.warning(f"Ring with {len(points)} vertices cannot be repaired without adding vertices")
            return None
    if cleaned is None:
        return None
    return from_clipper_path(cleaned, scale)


def clean(polygon: Polygon, tolerance: float = 1e-4, scale: float = CLIPPER_SCALE) -> Optional[Polygon]:
    """
    Resolve self intersections and drop near-duplicate or collinear vertices.

    When the outline resolves into several pieces the largest one is kept.
    A ring never gains vertices: if the non-zero repair of a star-like ring
    adds crossing points, the largest even-odd piece is used instead.
    Returns None when fewer than three vertices survive or the remaining area
    is negligible; degenerate holes are dropped.
    """
    outline = _clean_ring(polygon.points, tolerance, scale)
    if outline is None:
        return None

    children = []
    for child in polygon.children:
        ring = _clean_ring(child.points, tolerance, scale)
        if ring is not None:
            children.append(Polygon(ring, (), child.source, child.rotation))

    return Polygon(outline, tuple(children), polygon.source, polygon.rotation)
