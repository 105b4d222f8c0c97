#!/usr/bin/env python3
"""
No-Fit Polygon engine.

For a fixed shape A and a moving shape B (both at their own origin), the
outer NFP is the locus of translations of B at which B touches A without
overlapping it. The inner NFP (inner-fit region) is the locus of
translations at which B lies entirely inside A. A placement of B at
translation (x, y) is therefore valid against A placed at (ax, ay) exactly
when (x - ax, y - ay) is not strictly inside A's outer NFP region.

Both are computed from a Minkowski sum of -B swept along A's outline
(pyclipper works on integer coordinates, see ``clipper_scale``). Sweeping the
outline, rather than the filled shape, leaves holes in the sum: holes where B
sits outside A are pockets in a concave A, holes where B sits inside A are
inner-fit regions.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import pyclipper
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from geometry import (
    CLIPPER_SCALE,
    Point,
    Polygon,
    bounds,
    from_clipper_path,
    is_rectangle,
    outline_to_shapely,
    polygon_from_shapely,
    polygons_from_geometry,
    region_geometry,
    to_clipper_path,
    translate,
)
from nesting_errors import NFPError
from nfp_cache import CacheKey, NfpCache

logger = logging.getLogger(__name__)

# Relative area below which two shapes are considered touching, not overlapping
OVERLAP_TOLERANCE = 1e-6


@dataclass(frozen=True)
class NoFitPolygon:
    """Outer NFP boundary plus disjoint valid-placement regions inside it."""
    outer: Polygon
    inner: Tuple[Polygon, ...] = field(default_factory=tuple)

    def forbidden_region(self, dx: float = 0.0, dy: float = 0.0) -> BaseGeometry:
        """Translations (shifted by dx, dy) at which B overlaps A."""
        region = region_geometry(translate(self.outer, dx, dy))
        if self.inner:
            allowed = unary_union([region_geometry(translate(r, dx, dy)) for r in self.inner])
            region = region.difference(allowed)
        return region


def _area_tolerance(shape: BaseGeometry) -> float:
    return OVERLAP_TOLERANCE * max(1.0, shape.area)


def _rectangle_outer(a: Polygon, b: Polygon) -> NoFitPolygon:
    ab, bb = bounds(a), bounds(b)
    x0, x1 = ab.x - bb.max_x, ab.max_x - bb.x
    y0, y1 = ab.y - bb.max_y, ab.max_y - bb.y
    outline = (Point(x0, y0), Point(x1, y0), Point(x1, y1), Point(x0, y1))
    return NoFitPolygon(Polygon(outline, (), a.source, a.rotation))


def no_fit_polygon_rectangle(a: Polygon, b: Polygon, tolerance: float = 1e-9) -> Optional[Polygon]:
    """
    Inner-fit region of B in the axis aligned rectangle A, in closed form.

    Returns None when B's bounding box is larger than A in either direction.
    An exact fit yields a region collapsed to a segment or a single point.
    """
    ab, bb = bounds(a), bounds(b)
    if bb.width > ab.width + tolerance or bb.height > ab.height + tolerance:
        return None

    x0, y0 = ab.x - bb.x, ab.y - bb.y
    x1 = max(x0, ab.max_x - bb.max_x)
    y1 = max(y0, ab.max_y - bb.max_y)
    outline = (Point(x0, y0), Point(x1, y0), Point(x1, y1), Point(x0, y1))
    return Polygon(outline, (), a.source, a.rotation)


def _minkowski_regions(container: Polygon, b: Polygon, scale: float) -> Tuple[Optional[ShapelyPolygon], List[ShapelyPolygon]]:
    """
    Sweep -B along the container outline.

    Returns the outer boundary of the sum and the list of hole regions
    (with any islands inside them removed).
    """
    pattern = [(-x, -y) for x, y in to_clipper_path(b.points, scale)]
    ring = to_clipper_path(container.points, scale)
    paths = [p for p in pyclipper.MinkowskiSum(pattern, ring, True) if len(p) >= 3]
    if not paths:
        return None, []

    outer_path = max(paths, key=lambda p: abs(pyclipper.Area(p)))
    outer_orientation = pyclipper.Orientation(outer_path)
    outer = ShapelyPolygon([(p.x, p.y) for p in from_clipper_path(outer_path, scale)])

    holes, islands = [], []
    for path in paths:
        if path is outer_path:
            continue
        shape = ShapelyPolygon([(p.x, p.y) for p in from_clipper_path(path, scale)])
        pieces = [shape] if shape.is_valid else polygons_from_geometry(shape.buffer(0))
        target = islands if pyclipper.Orientation(path) == outer_orientation else holes
        target.extend(piece for piece in pieces if not piece.is_empty)

    if islands:
        blocked = unary_union(islands)
        holes = [piece for hole in holes for piece in polygons_from_geometry(hole.difference(blocked))]
    return outer, holes


def _placed_at(b_shape: ShapelyPolygon, position) -> ShapelyPolygon:
    return ShapelyPolygon([(x + position.x, y + position.y) for x, y in b_shape.exterior.coords])


def _fits_inside(container_shape: ShapelyPolygon, b_shape: ShapelyPolygon, region: ShapelyPolygon) -> bool:
    moved = _placed_at(b_shape, region.representative_point())
    return moved.difference(container_shape).area <= _area_tolerance(moved)


def _clear_of(solid_shape: ShapelyPolygon, b_shape: ShapelyPolygon, region: ShapelyPolygon) -> bool:
    moved = _placed_at(b_shape, region.representative_point())
    return moved.intersection(solid_shape).area <= _area_tolerance(moved)


def _region_polygons(geom: BaseGeometry, like: Polygon) -> List[Polygon]:
    return [polygon_from_shapely(piece, like.source, like.rotation) for piece in polygons_from_geometry(geom)]


def _ring_inner_regions(container: Polygon, b: Polygon, scale: float) -> List[Polygon]:
    """Inner-fit regions of B inside the container outline, ignoring its holes."""
    ring = Polygon(container.points, (), container.source, container.rotation)
    if is_rectangle(ring):
        # B fits a rectangle exactly when its bounding box does
        region = no_fit_polygon_rectangle(ring, b)
        return [region] if region is not None else []

    _, holes = _minkowski_regions(ring, b, scale)
    container_shape = outline_to_shapely(ring)
    b_shape = outline_to_shapely(b)
    return [
        polygon_from_shapely(hole, container.source, container.rotation)
        for hole in holes
        if _fits_inside(container_shape, b_shape, hole)
    ]


def outer_nfp(a: Polygon, b: Polygon, clipper_scale: float = CLIPPER_SCALE) -> NoFitPolygon:
    """
    Outer NFP of B orbiting A.

    ``inner`` holds pockets of a concave A where B fits without touching the
    rest of A, plus inner-fit regions of B inside each hole of A.
    Raises NFPError when the Minkowski sum is empty.
    """
    if not a.children and is_rectangle(a) and is_rectangle(b):
        return _rectangle_outer(a, b)

    outer, holes = _minkowski_regions(a, b, clipper_scale)
    if outer is None or outer.is_empty:
        raise NFPError(f"Empty Minkowski sum for {a.source!r} / {b.source!r}")

    solid = outline_to_shapely(a)
    b_shape = outline_to_shapely(b)
    inner: List[Polygon] = [
        polygon_from_shapely(hole, a.source, a.rotation)
        for hole in holes
        if _clear_of(solid, b_shape, hole)
    ]

    for child in a.children:
        hole = Polygon(child.points, (), a.source, a.rotation)
        inner.extend(_ring_inner_regions(hole, b, clipper_scale))

    boundary = polygon_from_shapely(outer, a.source, a.rotation)
    return NoFitPolygon(boundary, tuple(inner))


def inner_nfp(a: Polygon, b: Polygon, clipper_scale: float = CLIPPER_SCALE) -> List[Polygon]:
    """
    Inner-fit regions of B inside A (a sheet, or a hole treated as a container).

    Holes of A are excluded by subtracting the outer NFP of each hole treated
    as a solid obstacle. Raises NFPError when B fits nowhere.
    """
    regions = _ring_inner_regions(a, b, clipper_scale)
    if not regions:
        raise NFPError(f"{b.source!r} does not fit inside {a.source!r} at rotation {b.rotation}")

    if a.children:
        obstacles = []
        for child in a.children:
            obstacle = Polygon(child.points, (), a.source, a.rotation)
            try:
                obstacles.append(outer_nfp(obstacle, b, clipper_scale).forbidden_region())
            except NFPError as e:
                logger.debug(f"Skipping hole of {a.source!r}: {e}")
        if obstacles:
            blocked = unary_union(obstacles)
            trimmed = []
            for region in regions:
                shape = region_geometry(region)
                remaining = shape.difference(blocked)
                if remaining.is_empty:
                    continue
                if remaining.area > 0:
                    trimmed.extend(_region_polygons(remaining, a))
                elif remaining.equals(shape):
                    # Degenerate region untouched by any hole
                    trimmed.append(region)
            regions = trimmed
        if not regions:
            raise NFPError(f"{b.source!r} only fits {a.source!r} where its holes are")

    return regions


class NfpEngine:
    """NFP computation backed by a per-process cache"""

    def __init__(self, cache: Optional[NfpCache] = None, clipper_scale: float = CLIPPER_SCALE):
        self.cache = cache if cache is not None else NfpCache()
        self.clipper_scale = clipper_scale
        self.computed = 0

    def outer_key(self, a: Polygon, b: Polygon) -> CacheKey:
        return CacheKey.build(a.source, b.source, a.rotation, b.rotation)

    def inner_key(self, sheet: Polygon, b: Polygon) -> CacheKey:
        return CacheKey.build(sheet.source, b.source, 0.0, b.rotation)

    def outer(self, a: Polygon, b: Polygon) -> NoFitPolygon:
        key = self.outer_key(a, b)
        cached = self.cache.find(key, inner=False)
        if cached is not None:
            return cached
        nfp = outer_nfp(a, b, self.clipper_scale)
        self.computed += 1
        self.cache.insert(key, nfp, inner=False)
        return nfp

    def inner(self, sheet: Polygon, b: Polygon) -> List[Polygon]:
        """Inner-fit regions; raises NFPError (cached as an empty list) when B does not fit."""
        key = self.inner_key(sheet, b)
        cached = self.cache.find(key, inner=True)
        if cached is None:
            try:
                cached = inner_nfp(sheet, b, self.clipper_scale)
            except NFPError:
                cached = []
            self.computed += 1
            self.cache.insert(key, cached, inner=True)
        if not cached:
            raise NFPError(f"{b.source!r} does not fit {sheet.source!r} at rotation {b.rotation}")
        return list(cached)
