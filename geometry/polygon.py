"""
Polygon primitives for the nesting kernel.

Parts and sheets are modelled as immutable polygon trees: an outline plus a
tuple of child polygons (holes). Every function in this module is pure and
returns new objects; nothing mutates its input.

Orientation convention: y axis points up, counter-clockwise outlines have a
positive signed area.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

TOL = 1e-9


class GeometryError(Exception):
    """Raised when geometry is degenerate or cannot be processed."""
    pass


@dataclass(frozen=True)
class Point:
    """2D point"""
    x: float
    y: float

    def __add__(self, other: 'Point') -> 'Point':
        return Point(self.x + other.x, self.y + other.y)

    def __sub__(self, other: 'Point') -> 'Point':
        return Point(self.x - other.x, self.y - other.y)

    def distance_to(self, other: 'Point') -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


@dataclass(frozen=True)
class Bounds:
    """Axis aligned bounding box"""
    x: float
    y: float
    width: float
    height: float

    @property
    def max_x(self) -> float:
        return self.x + self.width

    @property
    def max_y(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True)
class Polygon:
    """
    Immutable polygon tree.

    ``points`` is the outline, ``children`` are holes owned by this polygon.
    ``source`` identifies the original shape (used for NFP cache keys) and
    ``rotation`` records the rotation in degrees already applied to the
    geometry.
    """
    points: Tuple[Point, ...]
    children: Tuple['Polygon', ...] = field(default_factory=tuple)
    source: Optional[str] = None
    rotation: float = 0.0

    def __post_init__(self):
        if not isinstance(self.points, tuple):
            object.__setattr__(self, 'points', tuple(self.points))
        if not isinstance(self.children, tuple):
            object.__setattr__(self, 'children', tuple(self.children))

    @classmethod
    def from_coords(cls, coords: Iterable[Sequence[float]],
                    children: Iterable[Iterable[Sequence[float]]] = (),
                    source: Optional[str] = None, rotation: float = 0.0,
                    validate: bool = True, closing_tolerance: float = 0.0) -> 'Polygon':
        """
        Build a polygon from ``(x, y)`` pairs, optionally with hole rings.

        A last vertex within ``closing_tolerance`` of the first closes the
        ring and is dropped.
        """
        points = tuple(Point(float(x), float(y)) for x, y in coords)
        if len(points) > 3 and points[0].distance_to(points[-1]) <= closing_tolerance:
            points = points[:-1]
        holes = tuple(
            cls.from_coords(hole, source=source, rotation=rotation, validate=validate,
                            closing_tolerance=closing_tolerance)
            for hole in children
        )
        polygon = cls(points, holes, source, rotation)
        if validate:
            check_finite(polygon)
        if validate and len(set(points)) < 3:
            raise GeometryError(f"Polygon {source!r} needs at least 3 distinct vertices, got {len(set(points))}")
        return polygon

    def coords(self) -> List[Tuple[float, float]]:
        return [(p.x, p.y) for p in self.points]

    def with_points(self, points: Iterable[Point]) -> 'Polygon':
        return replace(self, points=tuple(points))

    def with_source(self, source: Optional[str]) -> 'Polygon':
        return replace(
            self,
            source=source,
            children=tuple(child.with_source(source) for child in self.children),
        )

    def __len__(self) -> int:
        return len(self.points)


def almost_equal(a: float, b: float, tolerance: float = TOL) -> bool:
    return abs(a - b) < tolerance


def check_finite(polygon: Polygon) -> None:
    """Raise GeometryError if any vertex of the tree is NaN or infinite."""
    for point in polygon.points:
        if not (math.isfinite(point.x) and math.isfinite(point.y)):
            raise GeometryError(f"Polygon {polygon.source!r} has a non-finite vertex ({point.x}, {point.y})")
    for child in polygon.children:
        check_finite(child)


def _as_array(points: Sequence[Point]) -> np.ndarray:
    return np.array([(p.x, p.y) for p in points], dtype=float).reshape(-1, 2)


def area(polygon: Polygon) -> float:
    """Signed shoelace area of the outline, positive for counter-clockwise."""
    if len(polygon.points) < 3:
        return 0.0
    xy = _as_array(polygon.points)
    x, y = xy[:, 0], xy[:, 1]
    return float(0.5 * np.sum(x * np.roll(y, -1) - np.roll(x, -1) * y))


def net_area(polygon: Polygon) -> float:
    """Absolute outline area minus the absolute area of every hole."""
    return abs(area(polygon)) - sum(abs(area(child)) for child in polygon.children)


def centroid(polygon: Polygon) -> Point:
    """Area weighted centroid of the outline."""
    signed = area(polygon)
    if almost_equal(signed, 0.0):
        raise GeometryError("Centroid is undefined for a zero-area polygon")

    xy = _as_array(polygon.points)
    x, y = xy[:, 0], xy[:, 1]
    x1, y1 = np.roll(x, -1), np.roll(y, -1)
    cross = x * y1 - x1 * y
    cx = np.sum((x + x1) * cross) / (6.0 * signed)
    cy = np.sum((y + y1) * cross) / (6.0 * signed)
    return Point(float(cx), float(cy))


def perimeter(polygon: Polygon) -> float:
    if len(polygon.points) < 2:
        return 0.0
    xy = _as_array(polygon.points)
    return float(np.sum(np.hypot(*(np.roll(xy, -1, axis=0) - xy).T)))


def bounds(polygon: Polygon) -> Bounds:
    if not polygon.points:
        raise GeometryError("Bounds are undefined for an empty polygon")
    xs = [p.x for p in polygon.points]
    ys = [p.y for p in polygon.points]
    return Bounds(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))


def points_bounds(points: Iterable[Point]) -> Bounds:
    points = list(points)
    if not points:
        raise GeometryError("Bounds are undefined for an empty point set")
    xs = [p.x for p in points]
    ys = [p.y for p in points]
    return Bounds(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))


def _on_segment(point: Point, a: Point, b: Point, tolerance: float) -> bool:
    dx, dy = b.x - a.x, b.y - a.y
    length = math.hypot(dx, dy)
    if length < tolerance:
        return point.distance_to(a) < tolerance
    cross = (point.x - a.x) * dy - (point.y - a.y) * dx
    if abs(cross) / length > tolerance:
        return False
    dot = (point.x - a.x) * dx + (point.y - a.y) * dy
    return -tolerance * length <= dot <= length * length + tolerance * length


def _ring_contains(points: Sequence[Point], point: Point, tolerance: float) -> Optional[bool]:
    inside = False
    n = len(points)
    for i in range(n):
        a = points[i]
        b = points[(i + 1) % n]
        if _on_segment(point, a, b, tolerance):
            return None
        if (a.y > point.y) != (b.y > point.y):
            x_cross = a.x + (point.y - a.y) * (b.x - a.x) / (b.y - a.y)
            if point.x < x_cross:
                inside = not inside
    return inside


def contains(polygon: Polygon, point: Point, tolerance: float = TOL) -> Optional[bool]:
    """
    Point in polygon test.

    Returns True when the point is strictly inside the filled region, False
    when it is outside (including inside a hole) and None when it lies on the
    outline or on a hole boundary. Callers decide how to treat the boundary.
    """
    state = _ring_contains(polygon.points, point, tolerance)
    if not state:
        return state
    for child in polygon.children:
        in_hole = _ring_contains(child.points, point, tolerance)
        if in_hole is None:
            return None
        if in_hole:
            return False
    return True


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)


def hull(points: Iterable[Point]) -> Polygon:
    """Convex hull (Andrew's monotone chain), counter-clockwise."""
    unique = sorted(set(points), key=lambda p: (p.x, p.y))
    if len(unique) < 3:
        raise GeometryError(f"Convex hull needs at least 3 distinct points, got {len(unique)}")

    lower: List[Point] = []
    for p in unique:
        while len(lower) >= 2 and _cross(lower[-2], lower[-1], p) <= 0:
            lower.pop()
        lower.append(p)

    upper: List[Point] = []
    for p in reversed(unique):
        while len(upper) >= 2 and _cross(upper[-2], upper[-1], p) <= 0:
            upper.pop()
        upper.append(p)

    ring = lower[:-1] + upper[:-1]
    if len(ring) < 3:
        raise GeometryError("Convex hull of collinear points is degenerate")
    return Polygon(tuple(ring))


def rotate(polygon: Polygon, degrees: float, origin: Point) -> Polygon:
    """Rotate counter-clockwise about ``origin``; children rotate with the parent."""
    radians = math.radians(degrees)
    cos_a, sin_a = math.cos(radians), math.sin(radians)

    def turn(p: Point) -> Point:
        dx, dy = p.x - origin.x, p.y - origin.y
        return Point(origin.x + dx * cos_a - dy * sin_a, origin.y + dx * sin_a + dy * cos_a)

    return Polygon(
        tuple(turn(p) for p in polygon.points),
        tuple(rotate(child, degrees, origin) for child in polygon.children),
        polygon.source,
        round((polygon.rotation + degrees) % 360.0, 6),
    )


def translate(polygon: Polygon, dx: float, dy: float) -> Polygon:
    return Polygon(
        tuple(Point(p.x + dx, p.y + dy) for p in polygon.points),
        tuple(translate(child, dx, dy) for child in polygon.children),
        polygon.source,
        polygon.rotation,
    )


def reverse(polygon: Polygon) -> Polygon:
    return replace(polygon, points=tuple(reversed(polygon.points)))


def is_rectangle(polygon: Polygon, tolerance: float = 1e-6) -> bool:
    """True when every outline vertex lies on the bounding box and the area matches it."""
    if polygon.children or len(polygon.points) < 4:
        return False
    box = bounds(polygon)
    for p in polygon.points:
        on_x = almost_equal(p.x, box.x, tolerance) or almost_equal(p.x, box.max_x, tolerance)
        on_y = almost_equal(p.y, box.y, tolerance) or almost_equal(p.y, box.max_y, tolerance)
        if not (on_x and on_y):
            return False
    return almost_equal(abs(area(polygon)), box.area, tolerance * max(1.0, box.area))


def _point_segment_distance(p: Point, a: Point, b: Point) -> float:
    dx, dy = b.x - a.x, b.y - a.y
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return p.distance_to(a)
    t = max(0.0, min(1.0, ((p.x - a.x) * dx + (p.y - a.y) * dy) / length_sq))
    return p.distance_to(Point(a.x + t * dx, a.y + t * dy))


def _turn_angle(prev: Point, cur: Point, nxt: Point) -> float:
    a1 = math.atan2(cur.y - prev.y, cur.x - prev.x)
    a2 = math.atan2(nxt.y - cur.y, nxt.x - cur.x)
    delta = abs(a2 - a1) % (2 * math.pi)
    return math.degrees(min(delta, 2 * math.pi - delta))


def _radial_distance(points: List[Point], tolerance: float) -> List[Point]:
    kept = [points[0]]
    for p in points[1:]:
        if p.distance_to(kept[-1]) > tolerance:
            kept.append(p)
    return kept


def _douglas_peucker(points: List[Point], tolerance: float, keep: List[bool]) -> List[bool]:
    stack = [(0, len(points) - 1)]
    while stack:
        first, last = stack.pop()
        max_dist, index = 0.0, None
        for i in range(first + 1, last):
            dist = _point_segment_distance(points[i], points[first], points[last])
            if dist > max_dist:
                max_dist, index = dist, i
        if index is not None and max_dist > tolerance:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))
    return keep


def simplify(polygon: Polygon, tolerance: float, preserve_corners: bool = False,
             corner_angle: float = 30.0) -> Polygon:
    """
    Reduce vertex count with a radial distance pass followed by
    Douglas-Peucker. Children are simplified with the same settings.

    With ``preserve_corners`` any vertex turning the outline by more than
    ``corner_angle`` degrees survives. If the outline would collapse below
    three vertices the input is returned unchanged.
    """
    if tolerance <= 0 or len(polygon.points) < 4:
        return polygon

    points = _radial_distance(list(polygon.points), tolerance)
    if len(points) >= 3:
        # Close the ring so the wrap-around edge is simplified too
        ring = points + [points[0]]
        keep = [False] * len(ring)
        keep[0] = keep[-1] = True
        # Anchor on the vertex farthest from the start so the ring never degenerates
        far = max(range(len(ring)), key=lambda i: ring[i].distance_to(ring[0]))
        keep[far] = True
        _douglas_peucker(ring[:far + 1], tolerance, keep)
        tail = _douglas_peucker(ring[far:], tolerance, [False] * (len(ring) - far))
        for i, flag in enumerate(tail):
            keep[far + i] = keep[far + i] or flag

        if preserve_corners:
            n = len(points)
            for i in range(n):
                if _turn_angle(points[i - 1], points[i], points[(i + 1) % n]) > corner_angle:
                    keep[i] = True

        points = [p for p, flag in zip(ring[:-1], keep[:-1]) if flag]

    if len(set(points)) < 3:
        return polygon

    return Polygon(
        tuple(points),
        tuple(simplify(child, tolerance, preserve_corners, corner_angle) for child in polygon.children),
        polygon.source,
        polygon.rotation,
    )
