"""
Nesting configuration.

All tunables live on one immutable ``NestConfig``. Values can be overridden
from ``NEST_*`` environment variables (``NEST_SPACING=0.25`` etc.) so the
service can be tuned per deployment without code changes.
"""

import logging
import os
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from nesting_errors import ConfigurationError
from nfp_cache import quantize_rotation

logger = logging.getLogger(__name__)

ENV_PREFIX = 'NEST_'


class PlacementType(str, Enum):
    """Scoring heuristic for candidate positions"""
    GRAVITY = "gravity"
    BOX = "box"
    CONVEXHULL = "convexhull"


class Units(str, Enum):
    INCH = "inch"
    MM = "mm"


class FitnessModel(BaseModel):
    """
    Weights of the scalar fitness (lower is better).

    fitness = sheet_area_weight * sum(opened sheet areas)
            + placement_weight * sum(per-sheet placement score)
            + unplaced_penalty * sum(unplaced part area * 100 / total sheet area)
            - hole_bonus * sum(part area in a hole / total sheet area)

    The merged-line bonus is folded into the placement score through
    ``NestConfig.time_ratio``.
    """
    model_config = ConfigDict(frozen=True, extra='forbid')

    sheet_area_weight: float = Field(1.0, ge=0)
    placement_weight: float = Field(1.0, ge=0)
    unplaced_penalty: float = Field(1e8, ge=0)
    hole_bonus: float = Field(0.01, ge=0)


class NestConfig(BaseModel):
    """Immutable nesting settings shared by the optimizer and every worker"""
    model_config = ConfigDict(frozen=True, extra='forbid', use_enum_values=False)

    units: Units = Units.INCH
    scale: float = Field(72.0, gt=0)
    spacing: float = Field(0.0, ge=0)
    curve_tolerance: float = Field(0.72, gt=0)
    clipper_scale: float = Field(1e7, gt=0)
    rotations: int = Field(4, ge=1, le=360)
    threads: int = Field(4, ge=1)
    population_size: int = Field(10, ge=2)
    mutation_rate: float = Field(10.0, ge=0, le=100)
    placement_type: PlacementType = PlacementType.BOX
    merge_lines: bool = True
    time_ratio: float = Field(0.5, ge=0, le=1)
    simplify: bool = False
    simplify_tolerance: float = Field(0.0, ge=0)
    endpoint_tolerance: float = Field(0.36, gt=0)
    time_budget_seconds: float = Field(60.0, gt=0)
    max_generations: Optional[int] = Field(None, ge=1)
    cache_memory_limit_mb: Optional[float] = Field(None, gt=0)
    fitness: FitnessModel = Field(default_factory=FitnessModel)

    @classmethod
    def load(cls, overrides: Optional[Mapping[str, Any]] = None) -> 'NestConfig':
        """Build a config from a plain mapping, raising ConfigurationError on bad values."""
        try:
            return cls(**dict(overrides or {}))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(f"Invalid nesting configuration: {problems}") from e

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None,
                         overrides: Optional[Mapping[str, Any]] = None) -> 'NestConfig':
        """Defaults, then ``NEST_*`` environment variables, then explicit overrides."""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            if name == 'fitness':
                continue
            key = f"{ENV_PREFIX}{name.upper()}"
            if key in environ:
                values[name] = environ[key]
                logger.debug(f"Config override from environment: {key}={environ[key]}")
        values.update(overrides or {})
        return cls.load(values)

    def with_overrides(self, **changes) -> 'NestConfig':
        data = self.model_dump()
        data.update(changes)
        return type(self).load(data)

    def rotation_angles(self) -> List[float]:
        """Allowed part rotations in degrees: multiples of 360 / rotations."""
        return [quantize_rotation(k * 360.0 / self.rotations) for k in range(self.rotations)]

    @property
    def merge_min_length(self) -> float:
        return 0.5 * self.scale

    @property
    def merge_tolerance(self) -> float:
        return 0.1 * self.curve_tolerance

    def geometry_fingerprint(self) -> Tuple:
        """Settings that change cached NFP geometry when they change."""
        return (
            self.spacing,
            self.rotations,
            self.curve_tolerance,
            self.clipper_scale,
            self.simplify,
            self.simplify_tolerance,
        )

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


def validate_config(config: NestConfig) -> List[str]:
    """Soft checks that are legal but usually a mistake; returns warning strings."""
    warnings = []
    if config.threads > (os.cpu_count() or 1):
        warnings.append(f"threads={config.threads} exceeds available CPUs ({os.cpu_count()})")
    if config.merge_lines and config.time_ratio == 0:
        warnings.append("merge_lines is enabled but time_ratio is 0, the merge bonus has no effect")
    if config.simplify and config.simplify_tolerance == 0:
        warnings.append("simplify is enabled with zero simplify_tolerance, only holes are dropped")
    for warning in warnings:
        logger.warning(f"Configuration: {warning}")
    return warnings
