"""
Tests for placement evaluation and the genetic search built on it.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from geometry import Point, Polygon, area, to_shapely
from nesting_config import NestConfig, PlacementType
from nesting_errors import ConfigurationError
from nesting_jobs import EvaluationJob, Individual, PartInstance, SheetSpec
from nesting_optimizer import NestOptimizer, NestPart, NestSheet
from placement_engine import EvaluationContext, PlacementEvaluator, evaluate_job, merged_length, place_parts


def rect(width, height, x=0.0, y=0.0, source="rect"):
    return Polygon.from_coords([(x, y), (x + width, y), (x + width, y + height), (x, y + height)],
                               source=source)


def part(instance_id, width, height, source=None):
    source = source or f"part-{instance_id}"
    return PartInstance(instance_id, source, rect(width, height, source=source), width * height)


def sheet(sheet_id, width, height, source="sheet-s"):
    return SheetSpec(sheet_id, source, rect(width, height, source=source), width * height)


def fixed_order(count):
    return Individual(list(range(count)), [0.0] * count)


def test_merged_length_of_adjacent_squares():
    left = rect(100, 100)
    right = rect(100, 100, x=100)
    assert merged_length([left], right, min_length=36, tolerance=0.072) == pytest.approx(100.0)


def test_merged_length_ignores_separated_parts():
    left = rect(100, 100)
    apart = rect(100, 100, x=101)
    assert merged_length([left], apart, min_length=36, tolerance=0.072) == 0.0


def test_second_part_packs_beside_first():
    config = NestConfig(rotations=1)
    parts = [part("a#0", 10, 5, "part-a"), part("a#1", 10, 5, "part-a")]
    evaluator = PlacementEvaluator(parts, [sheet("s#0", 30, 10)], config)

    result = evaluator.place(fixed_order(2), "job")

    assert result.unplaced == []
    positions = [(p.x, p.y) for p in result.placements[0].parts]
    assert positions[0] == pytest.approx((0.0, 0.0))
    assert positions[1] == pytest.approx((10.0, 0.0))
    assert result.utilisation == pytest.approx(100.0 / 3)


@pytest.mark.parametrize("placement_type", list(PlacementType))
def test_every_placement_type_packs_without_overlap(placement_type):
    config = NestConfig(rotations=1, placement_type=placement_type)
    parts = [part("a#0", 10, 5, "part-a"), part("b#0", 8, 4, "part-b"), part("c#0", 6, 6, "part-c")]
    evaluator = PlacementEvaluator(parts, [sheet("s#0", 30, 10)], config)

    result = evaluator.place(fixed_order(3), "job")

    assert result.unplaced == []
    shapes = [to_shapely(rect(*size, x=p.x, y=p.y))
              for size, p in zip([(10, 5), (8, 4), (6, 6)], result.placements[0].parts)]
    sheet_shape = to_shapely(rect(30, 10))
    for i, shape in enumerate(shapes):
        assert shape.difference(sheet_shape).area < 1e-6
        for other in shapes[i + 1:]:
            assert shape.intersection(other).area < 1e-6


def test_part_too_large_for_every_sheet_is_unplaced():
    config = NestConfig(rotations=1)
    parts = [part("big", 50, 50), part("small", 5, 5)]
    evaluator = PlacementEvaluator(parts, [sheet("s#0", 30, 10)], config)

    result = evaluator.place(fixed_order(2), "job")

    assert result.unplaced == ["big"]
    assert result.placed_count == 1
    assert result.fitness > 1e8


def test_parts_spill_onto_next_sheet():
    config = NestConfig(rotations=1)
    parts = [part("p#0", 20, 10, "part-p"), part("p#1", 20, 10, "part-p")]
    sheets = [sheet("s#0", 30, 10), sheet("s#1", 30, 10)]
    evaluator = PlacementEvaluator(parts, sheets, config)

    result = evaluator.place(fixed_order(2), "job")

    assert result.unplaced == []
    assert result.sheets_used == 2
    assert [s.sheet_id for s in result.placements] == ["s#0", "s#1"]
    assert result.total_area == pytest.approx(600.0)
    assert [s.utilisation for s in result.placements] == pytest.approx([200.0 / 3, 200.0 / 3])
    assert result.utilisation == pytest.approx(200.0 / 3)
    assert result.to_dict()["placements"][1]["utilisation"] == pytest.approx(200.0 / 3)


def test_unused_sheets_are_not_charged():
    config = NestConfig(rotations=1)
    parts = [part("p#0", 10, 10)]
    one = place_parts(fixed_order(1), parts, [sheet("s#0", 30, 10)], config)
    two = place_parts(fixed_order(1), parts, [sheet("s#0", 30, 10), sheet("s#1", 30, 10)], config)
    assert one.fitness == pytest.approx(two.fitness)


def test_evaluate_job_reports_progress_and_reuses_cache():
    config = NestConfig(rotations=1)
    parts = [part("a#0", 10, 5, "part-a"), part("b#0", 4, 4, "part-b"), part("c#0", 6, 3, "part-c")]
    sheets = [sheet("s#0", 30, 10)]
    context = EvaluationContext()
    seen = []

    job = EvaluationJob.create(fixed_order(3), parts, sheets, config)
    result = evaluate_job(job, context, seen.append)

    assert result.job_id == job.job_id
    assert seen[-1] == -1.0
    assert all(0.0 <= value <= 1.0 for value in seen[:-1])
    assert seen[:-1] == sorted(seen[:-1])
    cached = len(context.cache)
    assert cached > 0

    evaluate_job(EvaluationJob.create(fixed_order(3), parts, sheets, config), context)
    assert len(context.cache) == cached
    assert context.jobs_run == 2


def test_cache_cleared_when_geometry_settings_change():
    parts = [part("a#0", 10, 5, "part-a"), part("b#0", 4, 4, "part-b")]
    sheets = [sheet("s#0", 30, 10)]
    context = EvaluationContext()

    evaluate_job(EvaluationJob.create(fixed_order(2), parts, sheets, NestConfig(rotations=1)), context)
    assert len(context.cache) > 0

    context.engine_for(EvaluationJob.create(fixed_order(2), parts, sheets, NestConfig(rotations=2)))
    assert len(context.cache) == 0


def test_exact_fit_part_is_placed_at_origin():
    config = NestConfig(rotations=1, max_generations=1, population_size=2)
    optimizer = NestOptimizer(
        [NestPart("p", rect(1000, 1000))], [NestSheet("s", rect(1000, 1000))], config, seed=1
    )

    result = optimizer.run_serial()

    assert result is not None
    assert result.unplaced == []
    placement = result.placements[0].parts[0]
    assert (placement.x, placement.y) == pytest.approx((0.0, 0.0))
    assert result.utilisation == pytest.approx(100.0)


def test_search_places_everything_and_never_gets_worse():
    config = NestConfig(rotations=4, max_generations=3, population_size=4)
    optimizer = NestOptimizer(
        [NestPart("p", rect(10, 5), quantity=2)], [NestSheet("s", rect(30, 10))], config, seed=7
    )

    result = optimizer.run_serial()

    assert result.unplaced == []
    assert result.placed_count == 2
    assert result.utilisation == pytest.approx(100.0 / 3)
    history = optimizer.history
    assert len(history) == 3
    assert all(later <= earlier for earlier, later in zip(history, history[1:]))
    assert optimizer.status()['finished']

    state = optimizer.snapshot()
    assert state.generation == 3
    assert state.best.fitness == history[-1]
    assert len(state.population) == 4


def test_operators_keep_genomes_valid():
    config = NestConfig(rotations=4, mutation_rate=100, population_size=4)
    optimizer = NestOptimizer([NestPart("p", rect(3, 2), quantity=5)], [NestSheet("s", rect(30, 10))],
                              config, seed=3)
    first = optimizer.adam()
    mutated = optimizer.mutate(first)
    children = optimizer.mate(first, mutated)

    for individual in [first, mutated] + children:
        assert sorted(individual.placement) == list(range(5))
        assert len(individual.rotation) == 5
        assert set(individual.rotation) <= {0.0, 90.0, 180.0, 270.0}


class OneSlotCoordinator:
    """Accepts a single job per round and records what the optimizer still holds."""

    def __init__(self, optimizer):
        self.optimizer = optimizer
        self.on_progress = None
        self.dispatched = []
        self.outstanding = []

    @property
    def idle_count(self):
        return 3

    @property
    def busy_count(self):
        return 0

    def dispatch(self, job):
        if len(self.dispatched) > len(self.outstanding):
            return None
        self.dispatched.append(job.job_id)
        return 0

    def poll(self, timeout=0.0):
        self.outstanding.append(sorted(self.optimizer.snapshot().in_flight))
        self.optimizer.cancel()
        return []


def test_run_releases_every_job_a_full_pool_refused():
    optimizer = NestOptimizer([NestPart("p", rect(3, 2), quantity=3)], [NestSheet("s", rect(30, 10))],
                              NestConfig(rotations=1, population_size=4), seed=2)
    coordinator = OneSlotCoordinator(optimizer)

    optimizer.run(coordinator)

    assert coordinator.outstanding == [coordinator.dispatched]


def test_cancel_stops_the_search():
    optimizer = NestOptimizer([NestPart("p", rect(10, 5))], [NestSheet("s", rect(30, 10))],
                              NestConfig(rotations=1), seed=1)
    optimizer.cancel()
    assert optimizer.run_serial() is None
    assert optimizer.status()['cancelled']


def test_spacing_shrinks_sheet_and_grows_parts():
    config = NestConfig(spacing=2.0, rotations=1)
    optimizer = NestOptimizer([NestPart("p", rect(10, 10))], [NestSheet("s", rect(30, 30))], config)

    assert len(optimizer.sheets) == 1
    assert abs(area(optimizer.sheets[0].polygon)) == pytest.approx(28 * 28, rel=1e-4)
    assert abs(area(optimizer.instances[0].polygon)) == pytest.approx(12 * 12, rel=1e-4)
    # Reported areas stay those of the input shapes
    assert optimizer.instances[0].area == pytest.approx(100.0)


@pytest.mark.parametrize("parts, sheets", [
    ([], [NestSheet("s", rect(10, 10))]),
    ([NestPart("p", rect(1, 1))], []),
    ([NestPart("p", rect(1, 1), quantity=0)], [NestSheet("s", rect(10, 10))]),
])
def test_invalid_input_raises_configuration_error(parts, sheets):
    with pytest.raises(ConfigurationError):
        NestOptimizer(parts, sheets, NestConfig())


@pytest.mark.parametrize("bad", [float("inf"), float("nan")])
def test_non_finite_geometry_raises_configuration_error(bad):
    broken = Polygon((Point(0, 0), Point(bad, 0), Point(10, 10), Point(0, 10)))
    holed = Polygon(rect(10, 10).points, (Polygon((Point(2, 2), Point(4, bad), Point(4, 4))),))

    with pytest.raises(ConfigurationError):
        NestOptimizer([NestPart("p", broken)], [NestSheet("s", rect(30, 30))], NestConfig())
    with pytest.raises(ConfigurationError):
        NestOptimizer([NestPart("p", rect(1, 1))], [NestSheet("s", holed)], NestConfig())


def test_config_validation_and_environment_overrides():
    with pytest.raises(ConfigurationError):
        NestConfig.load({'rotations': 0})
    with pytest.raises(ConfigurationError):
        NestConfig.load({'not_a_setting': 1})

    config = NestConfig.from_environment({'NEST_SPACING': '0.25', 'NEST_ROTATIONS': '8'}, {'rotations': 2})
    assert config.spacing == 0.25
    assert config.rotations == 2
    assert config.rotation_angles() == [0.0, 180.0]
