#!/usr/bin/env python3
"""
Placement evaluator.

Turns one individual (part order plus rotations) into concrete positions on
sheets and scores the result. This is the unit of work a worker process
runs for every evaluation job:

1. NFP phase: every (earlier part, later part) pair in the individual's order
   gets its outer NFP computed into the process cache.
2. Placement phase: sheets are filled in order. Each part tries its assigned
   rotation first, then the other allowed rotations. The first part on a
   sheet goes to the lowest-left inner-fit position; later parts are placed on
   a vertex of the feasible region (inner-fit region minus the outer NFPs of
   everything already on the sheet) chosen by the placement heuristic.
3. Fitness (lower is better) from sheet usage, compactness, merged cut
   lines, hole usage and unplaced parts, weighted by ``FitnessModel``.
"""

import logging
import math
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from shapely import affinity
from shapely.geometry import Polygon as ShapelyPolygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from geometry import (
    GeometryError,
    Point,
    Polygon,
    almost_equal,
    area,
    bounds,
    hull,
    outline_to_shapely,
    points_bounds,
    region_geometry,
    rotate,
    to_shapely,
    translate,
)
from nesting_config import NestConfig, PlacementType
from nesting_errors import NFPError
from nesting_jobs import (
    PROGRESS_DONE,
    EvaluationJob,
    EvaluationResult,
    Individual,
    PartInstance,
    PartPlacement,
    SheetPlacement,
    SheetSpec,
)
from nfp_cache import NfpCache, quantize_rotation
from nfp_engine import OVERLAP_TOLERANCE, NfpEngine

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

ORIGIN = Point(0.0, 0.0)


def _rings(polygon: Polygon) -> Iterable[Sequence[Point]]:
    yield polygon.points
    for child in polygon.children:
        yield from _rings(child)


def _edges(polygon: Polygon, min_length: float) -> List[Tuple[Point, Point]]:
    edges = []
    for ring in _rings(polygon):
        n = len(ring)
        for i in range(n):
            a, b = ring[i], ring[(i + 1) % n]
            if a.distance_to(b) >= min_length:
                edges.append((a, b))
    return edges


def merged_length(placed: Sequence[Polygon], part: Polygon, min_length: float, tolerance: float) -> float:
    """
    Total length of the part's edges that run along edges of placed parts.

    Two edges merge when both lie on the same line (within ``tolerance``) and
    their extents overlap; shared cut lines only need to be cut once. Edges
    and overlaps shorter than ``min_length`` are ignored. Holes count on both
    sides.
    """
    others = [edge for polygon in placed for edge in _edges(polygon, min_length)]
    if not others:
        return 0.0

    total = 0.0
    for a1, a2 in _edges(part, min_length):
        angle = math.atan2(a2.y - a1.y, a2.x - a1.x)
        c, s = math.cos(-angle), math.sin(-angle)
        a_length = a1.distance_to(a2)

        for b1, b2 in others:
            # Frame where edge A runs along the positive x axis from the origin
            r1x = (b1.x - a1.x) * c - (b1.y - a1.y) * s
            r1y = (b1.x - a1.x) * s + (b1.y - a1.y) * c
            r2x = (b2.x - a1.x) * c - (b2.y - a1.y) * s
            r2y = (b2.x - a1.x) * s + (b2.y - a1.y) * c
            if not (almost_equal(r1y, 0.0, tolerance) and almost_equal(r2y, 0.0, tolerance)):
                continue

            overlap = min(a_length, max(r1x, r2x)) - max(0.0, min(r1x, r2x))
            if overlap > 0 and overlap * overlap > min_length * min_length:
                total += overlap
    return total


@dataclass
class PlacedPart:
    """A part fixed at a position on the current sheet"""
    instance: PartInstance
    polygon: Polygon
    x: float
    y: float
    placed_polygon: Polygon
    shape: BaseGeometry
    in_hole: bool = False

    @classmethod
    def create(cls, instance: PartInstance, polygon: Polygon, x: float, y: float,
               in_hole: bool = False) -> 'PlacedPart':
        moved = translate(polygon, x, y)
        return cls(instance, polygon, x, y, moved, to_shapely(moved), in_hole)

    def as_placement(self) -> PartPlacement:
        return PartPlacement(self.instance.id, self.instance.source, self.x, self.y,
                             self.polygon.rotation, self.in_hole)


@dataclass
class _Choice:
    x: float
    y: float
    score: Optional[float]
    width: Optional[float]
    merged: float = 0.0


def _geometry_vertices(geom: BaseGeometry) -> List[Tuple[float, float]]:
    if geom.is_empty:
        return []
    if hasattr(geom, 'geoms'):
        found = []
        for part in geom.geoms:
            found.extend(_geometry_vertices(part))
        return found
    if geom.geom_type == 'Polygon':
        coords = list(geom.exterior.coords)[:-1]
        for ring in geom.interiors:
            coords.extend(list(ring.coords)[:-1])
        return coords
    return list(geom.coords)


class PlacementEvaluator:
    """Places one individual's parts onto the sheets and scores the layout"""

    def __init__(self, parts: List[PartInstance], sheets: List[SheetSpec], config: NestConfig,
                 engine: Optional[NfpEngine] = None, progress: Optional[ProgressCallback] = None):
        self.parts = parts
        self.sheets = sheets
        self.config = config
        self.engine = engine or NfpEngine(NfpCache(config.cache_memory_limit_mb), config.clipper_scale)
        self.progress = progress
        self._rotated: Dict[Tuple[str, float], Polygon] = {}
        self._outlines: Dict[Tuple[str, float], ShapelyPolygon] = {}
        self._sheet_shapes: Dict[str, BaseGeometry] = {}

    def _report(self, value: float):
        if self.progress is not None:
            self.progress(value)

    def rotated(self, instance: PartInstance, rotation: float) -> Polygon:
        rotation = quantize_rotation(rotation)
        key = (instance.source, rotation)
        polygon = self._rotated.get(key)
        if polygon is None:
            polygon = replace(rotate(instance.polygon, rotation, ORIGIN), rotation=rotation)
            self._rotated[key] = polygon
            self._outlines[(polygon.source, rotation)] = outline_to_shapely(polygon)
        return polygon

    def rotation_sequence(self, rotation: float) -> List[float]:
        """Assigned rotation first, then the remaining allowed steps."""
        step = 360.0 / self.config.rotations
        return [quantize_rotation(rotation + k * step) for k in range(self.config.rotations)]

    def ordered(self, individual: Individual) -> List[Tuple[PartInstance, float]]:
        return [
            (self.parts[index], quantize_rotation(individual.rotation[position]))
            for position, index in enumerate(individual.placement)
        ]

    def precompute(self, individual: Individual) -> int:
        """Fill the cache with the outer NFPs this individual needs; returns how many were computed."""
        ordered = [self.rotated(instance, rotation) for instance, rotation in self.ordered(individual)]
        pending, seen = [], set()
        for i, b in enumerate(ordered):
            for a in ordered[:i]:
                key = self.engine.outer_key(a, b)
                if key in seen or self.engine.cache.has(key):
                    continue
                seen.add(key)
                pending.append((a, b))

        for done, (a, b) in enumerate(pending, 1):
            try:
                self.engine.outer(a, b)
            except (NFPError, GeometryError) as e:
                logger.debug(f"No outer NFP for {a.source}@{a.rotation} / {b.source}@{b.rotation}: {e}")
            self._report(0.5 * done / len(pending))
        return len(pending)

    def place(self, individual: Individual, job_id: str = "") -> EvaluationResult:
        started = time.time()
        weights = self.config.fitness
        remaining = self.ordered(individual)
        total = len(remaining)

        fitness = 0.0
        placed_area = 0.0
        used_sheet_area = 0.0
        in_hole_area = 0.0
        merged_total = 0.0
        placed_count = 0
        sheet_results: List[SheetPlacement] = []

        for sheet_index, sheet in enumerate(self.sheets):
            if not remaining:
                break

            placed: List[PlacedPart] = []
            leftovers = []
            last_width, last_score = None, None

            for instance, rotation in remaining:
                result = self._place_part(sheet, placed, instance, rotation)
                if result is None:
                    leftovers.append((instance, rotation))
                    continue
                placed_part, choice = result
                placed.append(placed_part)
                if choice.score is not None:
                    last_width, last_score = choice.width, choice.score
                merged_total += choice.merged
                placed_count += 1
                self._report(0.5 + 0.5 * placed_count / total)

            remaining = leftovers
            if not placed:
                logger.debug(f"Nothing fits sheet {sheet.id}, moving on")
                continue

            used_sheet_area += sheet.area
            fitness += weights.sheet_area_weight * sheet.area
            fitness += weights.placement_weight * ((last_width or 0.0) / sheet.area + (last_score or 0.0))
            sheet_placed_area = sum(p.instance.area for p in placed)
            placed_area += sheet_placed_area
            in_hole_area += sum(p.instance.area for p in placed if p.in_hole)
            sheet_results.append(SheetPlacement(
                sheet_index, sheet.id, sheet.source, [p.as_placement() for p in placed],
                utilisation=sheet_placed_area / sheet.area * 100.0,
            ))

        denominator = used_sheet_area or sum(sheet.area for sheet in self.sheets)
        for instance, _ in remaining:
            fitness += weights.unplaced_penalty * (instance.area * 100.0 / denominator)
        if in_hole_area:
            fitness -= weights.hole_bonus * in_hole_area / denominator

        if remaining:
            logger.debug(f"Job {job_id}: {len(remaining)} of {total} parts unplaced")

        self._report(PROGRESS_DONE)
        return EvaluationResult(
            job_id=job_id,
            fitness=fitness,
            area=placed_area,
            total_area=used_sheet_area,
            merged_length=merged_total,
            utilisation=(placed_area / used_sheet_area * 100.0) if used_sheet_area else 0.0,
            placements=sheet_results,
            unplaced=[instance.id for instance, _ in remaining],
            duration=time.time() - started,
        )

    def _sheet_shape(self, sheet: SheetSpec) -> BaseGeometry:
        shape = self._sheet_shapes.get(sheet.source)
        if shape is None:
            shape = to_shapely(sheet.polygon)
            self._sheet_shapes[sheet.source] = shape
        return shape

    def _place_part(self, sheet: SheetSpec, placed: List[PlacedPart], instance: PartInstance,
                    rotation: float) -> Optional[Tuple[PlacedPart, _Choice]]:
        for angle in self.rotation_sequence(rotation):
            part = self.rotated(instance, angle)
            try:
                regions = self.engine.inner(sheet.polygon, part)
            except NFPError:
                continue

            if not placed:
                corners = sorted({(p.x, p.y) for region in regions for p in region.points})
                for x, y in corners:
                    if self._is_valid(part, x, y, sheet, placed):
                        return PlacedPart.create(instance, part, x, y), _Choice(x, y, None, None)
                continue

            try:
                forbidden = unary_union([
                    self.engine.outer(other.polygon, part).forbidden_region(other.x, other.y)
                    for other in placed
                ])
            except (NFPError, GeometryError) as e:
                logger.debug(f"Skipping rotation {angle} of {instance.id}: {e}")
                continue

            allowed = unary_union([region_geometry(region) for region in regions])
            feasible = allowed.difference(forbidden)
            choice = self._best_position(part, _geometry_vertices(feasible), sheet, placed)
            if choice is None:
                # Boolean output lost a touching position; fall back to every NFP vertex
                fallback = _geometry_vertices(allowed) + _geometry_vertices(forbidden.boundary)
                choice = self._best_position(part, fallback, sheet, placed)
            if choice is not None:
                in_hole = self._in_hole(part, choice.x, choice.y, placed)
                return PlacedPart.create(instance, part, choice.x, choice.y, in_hole), choice
        return None

    def _moved_outline(self, part: Polygon, x: float, y: float) -> ShapelyPolygon:
        return affinity.translate(self._outlines[(part.source, part.rotation)], x, y)

    def _is_valid(self, part: Polygon, x: float, y: float, sheet: SheetSpec, placed: List[PlacedPart]) -> bool:
        moved = self._moved_outline(part, x, y)
        tolerance = OVERLAP_TOLERANCE * max(1.0, moved.area)
        if moved.difference(self._sheet_shape(sheet)).area > tolerance:
            return False
        return all(moved.intersection(other.shape).area <= tolerance for other in placed)

    def _in_hole(self, part: Polygon, x: float, y: float, placed: List[PlacedPart]) -> bool:
        moved = self._moved_outline(part, x, y)
        tolerance = OVERLAP_TOLERANCE * max(1.0, moved.area)
        for other in placed:
            for hole in other.placed_polygon.children:
                if moved.difference(ShapelyPolygon(hole.coords())).area <= tolerance:
                    return True
        return False

    def _best_position(self, part: Polygon, candidates: List[Tuple[float, float]], sheet: SheetSpec,
                       placed: List[PlacedPart]) -> Optional[_Choice]:
        if not candidates:
            return None

        placement_type = self.config.placement_type
        placed_points = [p for other in placed for p in other.placed_polygon.points]
        placed_polygons = [other.placed_polygon for other in placed]
        all_bounds = points_bounds(placed_points)
        part_bounds = bounds(part)

        hull_points = placed_points
        if placement_type == PlacementType.CONVEXHULL:
            try:
                hull_points = list(hull(placed_points).points)
            except GeometryError:
                pass

        best: Optional[_Choice] = None
        for x, y in dict.fromkeys(candidates):
            left = min(all_bounds.x, part_bounds.x + x)
            bottom = min(all_bounds.y, part_bounds.y + y)
            width = max(all_bounds.max_x, part_bounds.max_x + x) - left
            height = max(all_bounds.max_y, part_bounds.max_y + y) - bottom

            if placement_type == PlacementType.GRAVITY:
                score = width * 5 + height
            elif placement_type == PlacementType.BOX:
                score = width * height
            else:
                shifted = [Point(p.x + x, p.y + y) for p in part.points]
                try:
                    score = abs(area(hull(hull_points + shifted)))
                except GeometryError:
                    score = width * height

            merged = 0.0
            if self.config.merge_lines:
                merged = merged_length(placed_polygons, translate(part, x, y),
                                       self.config.merge_min_length, self.config.merge_tolerance)
                score -= merged * self.config.time_ratio

            if best is not None and not self._better(score, width, x, best):
                continue
            if self._is_valid(part, x, y, sheet, placed):
                best = _Choice(x, y, score, width, merged)
        return best

    def _better(self, score: float, width: float, x: float, best: _Choice) -> bool:
        if self.config.placement_type == PlacementType.GRAVITY:
            if width < best.width and not almost_equal(width, best.width):
                return True
            if almost_equal(width, best.width) and score < best.score:
                return True
        elif score < best.score and not almost_equal(score, best.score):
            return True
        return almost_equal(score, best.score) and x < best.x


def place_parts(individual: Individual, parts: List[PartInstance], sheets: List[SheetSpec],
                config: NestConfig, engine: Optional[NfpEngine] = None,
                progress: Optional[ProgressCallback] = None, job_id: str = "") -> EvaluationResult:
    """Place and score one individual in the current process."""
    evaluator = PlacementEvaluator(parts, sheets, config, engine, progress)
    return evaluator.place(individual, job_id)


class EvaluationContext:
    """
    Per-process state kept between evaluation jobs.

    The NFP cache is reused while consecutive jobs share the same geometry
    and geometry settings, and cleared as soon as either changes.
    """

    def __init__(self):
        self.cache = NfpCache()
        self.fingerprint = None
        self.jobs_run = 0

    def engine_for(self, job: EvaluationJob) -> NfpEngine:
        fingerprint = (
            job.config.geometry_fingerprint(),
            hash(tuple((part.source, part.polygon) for part in job.parts)),
            hash(tuple((sheet.source, sheet.polygon) for sheet in job.sheets)),
        )
        if fingerprint != self.fingerprint:
            if self.fingerprint is not None:
                logger.info(f"Geometry changed, clearing NFP cache ({len(self.cache)} entries)")
                self.cache.clear()
            self.fingerprint = fingerprint
        self.cache.max_memory_mb = job.config.cache_memory_limit_mb
        return NfpEngine(self.cache, job.config.clipper_scale)


def evaluate_job(job: EvaluationJob, context: Optional[EvaluationContext] = None,
                 progress: Optional[ProgressCallback] = None) -> EvaluationResult:
    """Run the NFP and placement phases for one job."""
    context = context or EvaluationContext()
    engine = context.engine_for(job)
    evaluator = PlacementEvaluator(job.parts, job.sheets, job.config, engine, progress)

    computed = evaluator.precompute(job.individual)
    result = evaluator.place(job.individual, job.job_id)
    context.jobs_run += 1
    logger.debug(
        f"Job {job.job_id}: fitness {result.fitness:.4f}, {result.placed_count} placed, "
        f"{computed} NFPs computed, {result.duration:.2f}s"
    )
    return result
