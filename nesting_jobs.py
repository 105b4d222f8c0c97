"""
Messages exchanged between the optimizer and the evaluation workers.

Everything here crosses a process boundary, so it is plain picklable data.
Every job carries a correlation id that its result, failure and progress
messages echo back.
"""

import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from geometry import Polygon
from nesting_config import NestConfig

PROGRESS_DONE = -1.0


@dataclass(frozen=True)
class PartInstance:
    """One physical copy of a part to cut"""
    id: str
    source: str
    polygon: Polygon
    area: float


@dataclass(frozen=True)
class SheetSpec:
    """One stock sheet available for placement"""
    id: str
    source: str
    polygon: Polygon
    area: float


@dataclass
class Individual:
    """Candidate solution: part order plus one rotation per position"""
    placement: List[int]
    rotation: List[float]
    fitness: Optional[float] = None
    result: Optional['EvaluationResult'] = None

    def clone(self) -> 'Individual':
        """Genome copy without the evaluation outcome."""
        return Individual(list(self.placement), list(self.rotation))

    @property
    def evaluated(self) -> bool:
        return self.fitness is not None


@dataclass
class EvaluationJob:
    """Request to place one individual and score it"""
    job_id: str
    individual: Individual
    parts: List[PartInstance]
    sheets: List[SheetSpec]
    config: NestConfig

    @classmethod
    def create(cls, individual: Individual, parts: List[PartInstance],
               sheets: List[SheetSpec], config: NestConfig) -> 'EvaluationJob':
        return cls(uuid.uuid4().hex, individual.clone(), parts, sheets, config)


@dataclass(frozen=True)
class PartPlacement:
    part_id: str
    source: str
    x: float
    y: float
    rotation: float
    in_hole: bool = False


@dataclass
class SheetPlacement:
    sheet_index: int
    sheet_id: str
    sheet_source: str
    parts: List[PartPlacement] = field(default_factory=list)
    # Percent (0..100) of this sheet's input area covered by its parts
    utilisation: float = 0.0


@dataclass
class EvaluationResult:
    """Placement and fitness of one individual (fitness: lower is better)"""
    job_id: str
    fitness: float
    area: float
    total_area: float
    merged_length: float
    # Percent (0..100) of the used sheets' area covered by placed parts
    utilisation: float
    placements: List[SheetPlacement] = field(default_factory=list)
    unplaced: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def placed_count(self) -> int:
        return sum(len(sheet.parts) for sheet in self.placements)

    @property
    def sheets_used(self) -> int:
        return len(self.placements)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['placed_count'] = self.placed_count
        data['sheets_used'] = self.sheets_used
        return data


@dataclass(frozen=True)
class EvaluationFailure:
    """An evaluation that raised inside a worker"""
    job_id: str
    error_type: str
    message: str


@dataclass(frozen=True)
class ProgressUpdate:
    """Evaluation progress in [0, 1]; PROGRESS_DONE marks completion"""
    job_id: str
    progress: float
    slot_id: Optional[int] = None

    @property
    def done(self) -> bool:
        return self.progress == PROGRESS_DONE
