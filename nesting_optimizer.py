#!/usr/bin/env python3
"""
Placement search: genetic optimisation of part order and rotations.

The optimizer never places parts itself. It emits evaluation jobs, hands
them to a worker coordinator (or evaluates them in-process with
``run_serial``), folds the scored results back into its population and
breeds the next generation once every individual has a fitness.

Genome: a permutation of part instances plus one rotation per position.
Lower fitness is better. The best individual of each generation survives
unchanged with its fitness, so the best fitness never increases.
"""

import copy
import logging
import math
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np
from shapely.errors import ShapelyError

from geometry import (
    GeometryError,
    Point,
    Polygon,
    bounds,
    check_finite,
    clean,
    net_area,
    offset,
    rotate,
    simplify,
)
from nesting_config import NestConfig
from nesting_errors import ConfigurationError
from nesting_jobs import (
    EvaluationFailure,
    EvaluationJob,
    EvaluationResult,
    Individual,
    PartInstance,
    ProgressUpdate,
    SheetSpec,
)
from placement_engine import EvaluationContext, evaluate_job

logger = logging.getLogger(__name__)

LOG_EVERY_GENERATIONS = 10


@dataclass
class NestPart:
    """Input part: outline with optional holes, cut ``quantity`` times"""
    id: str
    polygon: Polygon
    quantity: int = 1


@dataclass
class NestSheet:
    """Input sheet: outline with optional holes (defects), ``quantity`` available"""
    id: str
    polygon: Polygon
    quantity: int = 1


@dataclass
class OptimizerState:
    population: List[Individual] = field(default_factory=list)
    generation: int = 0
    evaluations: int = 0
    failures: int = 0
    best: Optional[Individual] = None
    history: List[float] = field(default_factory=list)
    in_flight: Dict[str, Individual] = field(default_factory=dict)
    progress: Dict[str, float] = field(default_factory=dict)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class NestOptimizer:
    """Genetic search over part order and rotation"""

    def __init__(self, parts: List[NestPart], sheets: List[NestSheet],
                 config: Optional[NestConfig] = None, seed: Optional[int] = None):
        self.config = config or NestConfig()
        self.random = random.Random(seed)
        self.seed = seed
        self.logger = logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.cancelled = threading.Event()
        self.angles = self.config.rotation_angles()

        self.instances: List[PartInstance] = []
        self.sheets: List[SheetSpec] = []
        self._prepare(parts, sheets)
        self.state = OptimizerState()

    # ------------------------------------------------------------------ input

    def _prepare(self, parts: List[NestPart], sheets: List[NestSheet]):
        """Validate input, expand quantities and apply spacing once."""
        if not parts:
            raise ConfigurationError("At least one part is required")
        if not sheets:
            raise ConfigurationError("At least one sheet is required")

        half = self.config.spacing / 2.0
        tolerance = self.config.curve_tolerance / 100.0

        for sheet in sheets:
            if sheet.quantity < 1:
                raise ConfigurationError(f"Sheet {sheet.id} has quantity {sheet.quantity}")
            self._check_geometry(sheet.polygon, f"Sheet {sheet.id}")
            sheet_area = net_area(sheet.polygon)
            if sheet_area <= 0:
                raise ConfigurationError(f"Sheet {sheet.id} has zero area")
            source = f"sheet-{sheet.id}"
            polygon = self._shape(sheet.polygon, -half, tolerance, source)
            if polygon is None:
                raise ConfigurationError(f"Sheet {sheet.id} vanishes after applying spacing {self.config.spacing}")
            for copy_index in range(sheet.quantity):
                self.sheets.append(SheetSpec(f"{sheet.id}#{copy_index}", source, polygon, sheet_area))

        for part in parts:
            if part.quantity < 1:
                raise ConfigurationError(f"Part {part.id} has quantity {part.quantity}")
            self._check_geometry(part.polygon, f"Part {part.id}")
            part_area = net_area(part.polygon)
            if part_area <= 0:
                raise ConfigurationError(f"Part {part.id} has zero area")
            source = f"part-{part.id}"
            polygon = part.polygon
            if self.config.simplify:
                polygon = simplify(Polygon(polygon.points, (), polygon.source),
                                   self.config.simplify_tolerance, preserve_corners=True)
            polygon = self._shape(polygon, half, tolerance, source)
            if polygon is None:
                raise ConfigurationError(f"Part {part.id} is degenerate")
            for copy_index in range(part.quantity):
                self.instances.append(PartInstance(f"{part.id}#{copy_index}", source, polygon, part_area))

        self.logger.info(
            f"Prepared {len(self.instances)} part instances from {len(parts)} parts "
            f"and {len(self.sheets)} sheets"
        )

    @staticmethod
    def _check_geometry(polygon: Polygon, label: str):
        try:
            check_finite(polygon)
        except GeometryError as e:
            raise ConfigurationError(f"{label}: {e}") from e

    def _shape(self, polygon: Polygon, distance: float, tolerance: float, source: str) -> Optional[Polygon]:
        polygon = polygon.with_source(source)
        pieces = offset(polygon, distance) if distance else [polygon]
        if not pieces:
            return None
        largest = max(pieces, key=net_area)
        cleaned = clean(largest, tolerance, self.config.clipper_scale)
        return cleaned.with_source(source) if cleaned is not None else None

    # ------------------------------------------------------------- operators

    def random_angle(self, instance: PartInstance) -> float:
        """A random allowed rotation at which the part's bounds fit some sheet, else 0."""
        angles = list(self.angles)
        self.random.shuffle(angles)
        sheet_bounds = [bounds(sheet.polygon) for sheet in self.sheets]
        for angle in angles:
            box = bounds(rotate(instance.polygon, angle, Point(0.0, 0.0)))
            if any(box.width <= s.width and box.height <= s.height for s in sheet_bounds):
                return angle
        return 0.0

    def adam(self) -> Individual:
        """Largest parts first, each at a random rotation that fits."""
        order = sorted(range(len(self.instances)), key=lambda i: -self.instances[i].area)
        return Individual(order, [self.random_angle(self.instances[i]) for i in order])

    def mutate(self, individual: Individual) -> Individual:
        """Swap neighbours and re-roll rotations, each with probability mutation_rate%."""
        clone = individual.clone()
        rate = 0.01 * self.config.mutation_rate
        for i in range(len(clone.placement)):
            if self.random.random() < rate and i + 1 < len(clone.placement):
                clone.placement[i], clone.placement[i + 1] = clone.placement[i + 1], clone.placement[i]
                clone.rotation[i], clone.rotation[i + 1] = clone.rotation[i + 1], clone.rotation[i]
            if self.random.random() < rate:
                clone.rotation[i] = self.random_angle(self.instances[clone.placement[i]])
        return clone

    def mate(self, male: Individual, female: Individual) -> List[Individual]:
        """Single cut, order preserving crossover; returns two children."""
        n = len(male.placement)
        cut = int(round(min(max(self.random.random(), 0.1), 0.9) * (n - 1)))
        return [self._cross(male, female, cut), self._cross(female, male, cut)]

    @staticmethod
    def _cross(first: Individual, second: Individual, cut: int) -> Individual:
        placement = list(first.placement[:cut])
        rotation = list(first.rotation[:cut])
        taken = set(placement)
        for index, angle in zip(second.placement, second.rotation):
            if index not in taken:
                placement.append(index)
                rotation.append(angle)
                taken.add(index)
        return Individual(placement, rotation)

    def random_weighted_individual(self, population: List[Individual],
                                   exclude: Optional[Individual] = None) -> Individual:
        """Rank weighted pick from a population sorted best first."""
        pool = [ind for ind in population if ind is not exclude]
        if not pool:
            return population[0]
        roll = self.random.random()
        weight = 1.0 / len(pool)
        lower, upper = 0.0, weight
        for i, individual in enumerate(pool):
            if lower < roll < upper:
                return individual
            lower = upper
            upper += 2 * weight * ((len(pool) - i) / len(pool))
        return pool[0]

    def _sorted_population(self) -> List[Individual]:
        population = self.state.population
        scores = np.array([ind.fitness if ind.fitness is not None else math.inf for ind in population])
        return [population[i] for i in np.argsort(scores, kind='stable')]

    def _next_generation(self):
        ranked = self._sorted_population()
        elite = ranked[0]
        offspring = [elite]
        while len(offspring) < self.config.population_size:
            male = self.random_weighted_individual(ranked)
            female = self.random_weighted_individual(ranked, male)
            children = self.mate(male, female)
            offspring.append(self.mutate(children[0]))
            if len(offspring) < self.config.population_size:
                offspring.append(self.mutate(children[1]))

        self.state.history.append(self.state.best.fitness)
        self.state.generation += 1
        self.state.population = offspring

        if self.state.generation % LOG_EVERY_GENERATIONS == 0:
            self.logger.info(f"Generation {self.state.generation}: Best fitness = {self.state.best.fitness:.4f}")

    # ------------------------------------------------------------ job flow

    def start(self):
        with self.lock:
            if self.state.started_at is not None:
                return
            self.state.started_at = time.time()
            first = self.adam()
            self.state.population = [first] + [
                self.mutate(first) for _ in range(self.config.population_size - 1)
            ]
            self.logger.info(
                f"Starting nesting search: {len(self.instances)} parts, population "
                f"{self.config.population_size}, rotations {self.angles}"
            )

    def pending_jobs(self, limit: Optional[int] = None) -> List[EvaluationJob]:
        """Jobs for individuals that have no fitness and are not already out."""
        self.start()
        jobs = []
        with self.lock:
            busy = {id(ind) for ind in self.state.in_flight.values()}
            for individual in self.state.population:
                if limit is not None and len(jobs) >= limit:
                    break
                if individual.evaluated or id(individual) in busy:
                    continue
                job = EvaluationJob.create(individual, self.instances, self.sheets, self.config)
                self.state.in_flight[job.job_id] = individual
                jobs.append(job)
        return jobs

    def release(self, job: EvaluationJob):
        """Take back a job that could not be dispatched."""
        with self.lock:
            self.state.in_flight.pop(job.job_id, None)

    def accept(self, result: EvaluationResult) -> bool:
        """Record a result; returns False for results of jobs no longer outstanding."""
        with self.lock:
            individual = self.state.in_flight.pop(result.job_id, None)
            self.state.progress.pop(result.job_id, None)
            if individual is None:
                self.logger.debug(f"Ignoring result for unknown job {result.job_id}")
                return False
            individual.fitness = result.fitness
            individual.result = result
            self.state.evaluations += 1
            if self.state.best is None or result.fitness < self.state.best.fitness:
                self.state.best = individual
                self.logger.debug(
                    f"New best fitness {result.fitness:.4f} "
                    f"({result.placed_count}/{len(self.instances)} placed, {result.utilisation:.1f}%)"
                )
            self._maybe_advance()
            return True

    def reject(self, failure: EvaluationFailure) -> bool:
        """A failed evaluation scores infinitely bad and never becomes the best."""
        with self.lock:
            individual = self.state.in_flight.pop(failure.job_id, None)
            self.state.progress.pop(failure.job_id, None)
            if individual is None:
                return False
            self.logger.warning(f"Evaluation {failure.job_id} failed: {failure.error_type}: {failure.message}")
            individual.fitness = math.inf
            self.state.failures += 1
            self._maybe_advance()
            return True

    def on_progress(self, update: ProgressUpdate):
        with self.lock:
            if update.job_id in self.state.in_flight and not update.done:
                self.state.progress[update.job_id] = update.progress

    def _maybe_advance(self):
        if any(not ind.evaluated for ind in self.state.population):
            return
        if self.state.best is None:
            # Every evaluation failed; retry the same genomes
            self.state.population = [ind.clone() for ind in self.state.population]
            return
        self._next_generation()

    def cancel(self):
        """Make the running driver stop at its next budget check."""
        self.cancelled.set()

    def budget_exhausted(self) -> bool:
        if self.cancelled.is_set():
            return True
        with self.lock:
            if self.state.started_at is None:
                return False
            if self.config.max_generations is not None and self.state.generation >= self.config.max_generations:
                return True
            return time.time() - self.state.started_at >= self.config.time_budget_seconds

    def finish(self):
        with self.lock:
            self.state.in_flight.clear()
            self.state.progress.clear()
            if self.state.finished_at is None:
                self.state.finished_at = time.time()
            best = self.state.best
            self.logger.info(
                f"Nesting search finished after {self.state.generation} generations, "
                f"{self.state.evaluations} evaluations; best fitness "
                f"{best.fitness if best else float('nan'):.4f}"
            )

    # ------------------------------------------------------------- drivers

    def run_serial(self) -> Optional[EvaluationResult]:
        """Evaluate in this process until the budget runs out."""
        context = EvaluationContext()
        self.start()
        while not self.budget_exhausted():
            jobs = self.pending_jobs(1)
            if not jobs:
                break
            job = jobs[0]

            def report(value: float, job_id: str = job.job_id):
                self.on_progress(ProgressUpdate(job_id, value))

            try:
                self.accept(evaluate_job(job, context, report))
            except (GeometryError, ShapelyError, ValueError, ArithmeticError) as e:
                self.reject(EvaluationFailure(job.job_id, type(e).__name__, str(e)))
        self.finish()
        return self.best_result()

    def run(self, coordinator, poll_interval: float = 0.05) -> Optional[EvaluationResult]:
        """
        Evaluate through a worker coordinator until the budget runs out.

        Jobs are only handed out while a slot is idle; outstanding evaluations
        are cancelled with ``coordinator.stop()`` when the budget ends.
        """
        self.start()
        coordinator.on_progress = self.on_progress
        try:
            while not self.budget_exhausted():
                jobs = self.pending_jobs(coordinator.idle_count)
                for index, job in enumerate(jobs):
                    if coordinator.dispatch(job) is None:
                        for undispatched in jobs[index:]:
                            self.release(undispatched)
                        break
                for message in coordinator.poll(timeout=poll_interval):
                    if isinstance(message, EvaluationResult):
                        self.accept(message)
                    elif isinstance(message, EvaluationFailure):
                        self.reject(message)
        finally:
            if coordinator.busy_count:
                coordinator.stop()
            self.finish()
        return self.best_result()

    # ------------------------------------------------------------- results

    def best_result(self) -> Optional[EvaluationResult]:
        with self.lock:
            return self.state.best.result if self.state.best is not None else None

    @property
    def history(self) -> List[float]:
        with self.lock:
            return list(self.state.history)

    def snapshot(self) -> OptimizerState:
        """Deep copy of the current state, safe to inspect from another thread."""
        with self.lock:
            return copy.deepcopy(self.state)

    def status(self) -> Dict[str, Any]:
        with self.lock:
            best = self.state.best
            started = self.state.started_at
            end = self.state.finished_at or time.time()
            return {
                'generation': self.state.generation,
                'evaluations': self.state.evaluations,
                'failures': self.state.failures,
                'in_flight': len(self.state.in_flight),
                'progress': dict(self.state.progress),
                'best_fitness': best.fitness if best else None,
                'utilisation': best.result.utilisation if best and best.result else None,
                'elapsed_seconds': (end - started) if started else 0.0,
                'finished': self.state.finished_at is not None,
                'cancelled': self.cancelled.is_set(),
            }
