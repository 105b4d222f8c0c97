"""
Geometry kernel for the nesting engine.

This module provides immutable polygon trees (outline plus holes) and the pure
operations the nesting engine needs on them.

Key functions:
- area/centroid/perimeter/contains: measurements on a polygon tree
- hull(points): counter-clockwise convex hull
- simplify(polygon, tolerance): vertex reduction for curve-heavy outlines
- offset(polygon, distance): spacing margins, may split or remove a shape
- clean(polygon): repair self intersections and drop redundant vertices
"""

from .polygon import (
    Bounds,
    GeometryError,
    Point,
    Polygon,
    almost_equal,
    area,
    bounds,
    centroid,
    check_finite,
    contains,
    hull,
    is_rectangle,
    net_area,
    perimeter,
    points_bounds,
    reverse,
    rotate,
    simplify,
    translate,
)
from .clipper import (
    CLIPPER_SCALE,
    clean,
    from_clipper_path,
    offset,
    outline_to_shapely,
    polygon_from_shapely,
    polygons_from_geometry,
    region_geometry,
    to_clipper_path,
    to_shapely,
)

__all__ = [
    "Bounds", "GeometryError", "Point", "Polygon", "almost_equal", "area", "bounds",
    "centroid", "check_finite", "contains", "hull", "is_rectangle", "net_area", "perimeter",
    "points_bounds", "reverse", "rotate", "simplify", "translate",
    "CLIPPER_SCALE", "clean", "from_clipper_path", "offset", "outline_to_shapely",
    "polygon_from_shapely", "polygons_from_geometry", "region_geometry",
    "to_clipper_path", "to_shapely",
]
