"""
Tests for the geometry kernel.

Covers measurements on polygon trees, point containment with explicit
boundary handling, convex hulls, vertex reduction, spacing offsets and
polygon repair.
"""

import math
import os
import random
import sys

import pytest
from shapely.errors import GEOSException
from shapely.geometry import Polygon as ShapelyPolygon

# Add the parent directory to the path so we can import the geometry module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from geometry import clipper as clipper_module
from geometry import (
    GeometryError,
    Point,
    Polygon,
    area,
    bounds,
    centroid,
    clean,
    contains,
    hull,
    is_rectangle,
    net_area,
    offset,
    perimeter,
    reverse,
    rotate,
    simplify,
)


def rect(width, height, x=0.0, y=0.0, holes=()):
    return Polygon.from_coords(
        [(x, y), (x + width, y), (x + width, y + height), (x, y + height)], holes, source="rect"
    )


def circle(radius, segments=64, noise=0.0):
    points = []
    for i in range(segments):
        angle = 2 * math.pi * i / segments
        r = radius + (noise if i % 2 else 0.0)
        points.append((r * math.cos(angle), r * math.sin(angle)))
    return Polygon.from_coords(points, source="circle")


def test_area_sign_follows_orientation():
    square = rect(10, 10)
    assert area(square) == pytest.approx(100.0)
    clockwise = reverse(square)
    assert area(clockwise) == pytest.approx(-100.0)


def test_net_area_subtracts_holes():
    frame = rect(10, 10, holes=[[(2, 2), (2, 8), (8, 8), (8, 2)]])
    assert net_area(frame) == pytest.approx(64.0)


def test_centroid_and_perimeter():
    square = rect(4, 2, x=1, y=1)
    c = centroid(square)
    assert (c.x, c.y) == pytest.approx((3.0, 2.0))
    assert perimeter(square) == pytest.approx(12.0)


def test_centroid_of_degenerate_polygon_raises():
    flat = Polygon.from_coords([(0, 0), (1, 0), (2, 0)], validate=False)
    with pytest.raises(GeometryError):
        centroid(flat)


def test_from_coords_rejects_too_few_vertices():
    with pytest.raises(GeometryError):
        Polygon.from_coords([(0, 0), (1, 1), (0, 0)])


def test_contains_reports_boundary_separately():
    frame = rect(10, 10, holes=[[(4, 4), (4, 6), (6, 6), (6, 4)]])
    assert contains(frame, Point(1, 1)) is True
    assert contains(frame, Point(11, 1)) is False
    assert contains(frame, Point(5, 5)) is False
    assert contains(frame, Point(0, 5)) is None
    assert contains(frame, Point(4, 5)) is None


def test_hull_is_counter_clockwise_subset_containing_all_points():
    points = [Point(0, 0), Point(4, 0), Point(4, 4), Point(0, 4), Point(2, 2), Point(1, 3), Point(2, 0)]
    result = hull(points)

    assert area(result) > 0
    assert set(result.points) <= set(points)
    assert len(result.points) == 4
    for p in points:
        assert contains(result, p) is not False


def test_hull_of_collinear_points_raises():
    with pytest.raises(GeometryError):
        hull([Point(0, 0), Point(1, 1), Point(2, 2)])


def test_simplify_reduces_noisy_outline():
    noisy = circle(50, segments=200, noise=0.01)
    result = simplify(noisy, tolerance=0.5)
    assert 3 <= len(result.points) < len(noisy.points)
    assert abs(area(result)) == pytest.approx(abs(area(noisy)), rel=0.02)


def test_simplify_with_zero_tolerance_is_identity():
    noisy = circle(5, segments=20, noise=0.1)
    assert simplify(noisy, 0) == noisy


def test_simplify_preserves_sharp_corners():
    square = Polygon.from_coords([(0, 0), (5, 0.01), (10, 0), (10, 10), (0, 10)])
    result = simplify(square, tolerance=0.5, preserve_corners=True)
    assert {(0.0, 0.0), (10.0, 0.0), (10.0, 10.0), (0.0, 10.0)} <= set(result.coords())
    assert len(result.points) == 4


def test_offset_round_trip_restores_area():
    square = rect(10, 10)
    grown = offset(square, 1.0)
    assert len(grown) == 1
    assert abs(area(grown[0])) == pytest.approx(144.0, rel=1e-6)

    restored = offset(grown[0], -1.0)
    assert len(restored) == 1
    assert abs(area(restored[0])) == pytest.approx(100.0, rel=1e-6)


def test_offset_moves_holes_the_other_way():
    frame = rect(10, 10, holes=[[(3, 3), (3, 7), (7, 7), (7, 3)]])
    grown = offset(frame, 0.5)[0]
    assert len(grown.children) == 1
    assert abs(area(grown.children[0])) == pytest.approx(9.0, rel=1e-6)


def test_offset_can_remove_a_shape():
    assert offset(rect(2, 2), -1.5) == []


def test_clean_drops_duplicate_and_collinear_vertices():
    messy = Polygon.from_coords([(0, 0), (5, 0), (5, 0), (10, 0), (10, 10), (0, 10), (0, 5)])
    cleaned = clean(messy)
    assert cleaned is not None
    assert len(cleaned.points) == 4
    assert len(cleaned.points) <= len(messy.points)
    assert abs(area(cleaned)) == pytest.approx(100.0)


def test_clean_resolves_self_intersection():
    bowtie = Polygon.from_coords([(0, 0), (10, 10), (10, 0), (0, 10)])
    cleaned = clean(bowtie)
    assert cleaned is not None
    assert abs(area(cleaned)) == pytest.approx(25.0, rel=1e-6)


def test_clean_returns_none_for_degenerate_input():
    sliver = Polygon.from_coords([(0, 0), (10, 0), (20, 0)], validate=False)
    assert clean(sliver) is None


def test_rotate_about_explicit_origin():
    square = rect(2, 1)
    turned = rotate(square, 90, Point(0, 0))
    box = bounds(turned)
    assert (box.x, box.y, box.width, box.height) == pytest.approx((-1.0, 0.0, 1.0, 2.0))
    assert turned.rotation == pytest.approx(90.0)
    assert is_rectangle(turned)


def test_is_rectangle():
    assert is_rectangle(rect(3, 4))
    assert not is_rectangle(Polygon.from_coords([(0, 0), (4, 0), (4, 4), (2, 6), (0, 4)]))


def test_from_coords_closes_nearly_closed_rings():
    ring = Polygon.from_coords([(0, 0), (10, 0), (10, 10), (0, 10), (0.1, 0.1)], closing_tolerance=0.36)
    assert len(ring) == 4
    assert len(Polygon.from_coords([(0, 0), (10, 0), (10, 10), (0, 10), (0.1, 0.1)])) == 5


@pytest.mark.parametrize("bad", [float('inf'), float('-inf'), float('nan')])
def test_from_coords_rejects_non_finite_vertices(bad):
    with pytest.raises(GeometryError):
        Polygon.from_coords([(0, 0), (bad, 0), (10, 10)])
    with pytest.raises(GeometryError):
        rect(10, 10, holes=[[(2, 2), (2, bad), (4, 4)]])


STAR = [(0, 10), (6, -8), (-9.5, 3), (9.5, 3), (-6, -8)]


@pytest.mark.parametrize("coords", [
    STAR,
    [(0, 0), (10, 10), (10, 0), (0, 10)],
    [(0, 0), (10, 0), (10, 10), (5, -5), (0, 10)],
    [(0, 0), (8, 0), (8, 8), (2, 2), (6, 2), (0, 8)],
])
def test_clean_never_adds_vertices(coords):
    shape = Polygon.from_coords(coords)
    cleaned = clean(shape)
    assert cleaned is None or len(cleaned.points) <= len(shape.points)


def test_clean_never_adds_vertices_to_random_rings():
    rng = random.Random(5)
    for _ in range(50):
        coords = [(rng.uniform(-10, 10), rng.uniform(-10, 10)) for _ in range(rng.randint(4, 9))]
        shape = Polygon.from_coords(coords, validate=False)
        cleaned = clean(shape)
        assert cleaned is None or len(cleaned.points) <= len(shape.points)


def test_clean_star_keeps_a_real_piece():
    cleaned = clean(Polygon.from_coords(STAR))
    assert cleaned is not None
    assert len(cleaned.points) <= 5
    assert abs(area(cleaned)) > 0


class BrokenShape:
    def __init__(self, result=None):
        self.result = result

    def buffer(self, *args, **kwargs):
        if self.result is None:
            raise GEOSException("TopologyException: side location conflict")
        return self.result


@pytest.mark.parametrize("backend", [
    BrokenShape(),
    BrokenShape(ShapelyPolygon([(0, 0), (10, 10), (10, 0), (0, 10)])),
])
def test_offset_returns_input_when_backend_fails(monkeypatch, backend):
    square = rect(10, 10)
    monkeypatch.setattr(clipper_module, 'to_shapely', lambda polygon: backend)

    result = offset(square, 1.0)

    assert result == [square]
    assert abs(area(result[0])) == pytest.approx(100.0)
