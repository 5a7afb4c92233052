from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any

from civic_intel.domain.errors import ValidationError
from civic_intel.domain.models import ClassificationResult, utc_now
from civic_intel.domain.states import Category
from civic_intel.pipeline.keywords import is_hazard_indicator

SEVERITY_WEIGHT = 0.4
HAZARD_BONUS = 3.0
POPULATION_DIVISOR = 500.0
POPULATION_CAP = 2.0
DENSITY_DIVISOR = 10.0
DENSITY_CAP = 1.0
INDICATOR_STEP = 0.5
INFRASTRUCTURE_POPULATION = 150

# Baseline severity (0-10) per category before indicators are considered.
CATEGORY_BASE_SEVERITY: dict[Category, float] = {
    Category.EXPOSED_WIRING: 9.0,
    Category.BUILDING_HAZARD: 8.5,
    Category.FLOODING: 8.0,
    Category.SEWAGE_OVERFLOW: 7.0,
    Category.FALLEN_TREE: 7.0,
    Category.ROAD_DAMAGE: 6.5,
    Category.POTHOLE: 6.0,
    Category.WATER_LEAKAGE: 6.0,
    Category.WATER_SUPPLY: 6.0,
    Category.ELECTRICITY_OUTAGE: 6.0,
    Category.TRAFFIC_SIGNAL: 6.0,
    Category.DRAINAGE_BLOCKAGE: 5.5,
    Category.MOSQUITO_BREEDING: 5.5,
    Category.STREETLIGHT: 5.0,
    Category.GARBAGE_COLLECTION: 5.0,
    Category.ILLEGAL_DUMPING: 5.0,
    Category.STRAY_ANIMALS: 5.0,
    Category.AIR_POLLUTION: 5.0,
    Category.PUBLIC_TOILET: 4.5,
    Category.FOOTPATH_DAMAGE: 4.5,
    Category.NOISE_POLLUTION: 3.5,
    Category.ENCROACHMENT: 3.5,
    Category.ILLEGAL_PARKING: 3.0,
    Category.PARK_MAINTENANCE: 3.0,
    Category.OTHER: 4.0,
}

# Typical number of residents affected per category, used when the citizen gives no estimate.
CATEGORY_BASE_POPULATION: dict[Category, int] = {
    Category.WATER_SUPPLY: 800,
    Category.ELECTRICITY_OUTAGE: 800,
    Category.FLOODING: 700,
    Category.SEWAGE_OVERFLOW: 400,
    Category.TRAFFIC_SIGNAL: 400,
    Category.ROAD_DAMAGE: 300,
    Category.POTHOLE: 250,
    Category.DRAINAGE_BLOCKAGE: 250,
    Category.MOSQUITO_BREEDING: 250,
    Category.GARBAGE_COLLECTION: 200,
    Category.AIR_POLLUTION: 300,
}
DEFAULT_BASE_POPULATION = 100


@dataclass(frozen=True)
class PriorityInputs:
    severity: float
    hazard: bool
    affected_population: float
    density: float

    @property
    def hazard_bonus(self) -> float:
        return HAZARD_BONUS if self.hazard else 0.0

    @property
    def population_score(self) -> float:
        return min(max(self.affected_population, 0.0) / POPULATION_DIVISOR, POPULATION_CAP)

    @property
    def density_score(self) -> float:
        return min(max(self.density, 0.0) / DENSITY_DIVISOR, DENSITY_CAP)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def score_components(severity: float, hazard_bonus: float, population_score: float, density_score: float) -> int:
    raw = max(0.0, min(10.0, severity)) * SEVERITY_WEIGHT + hazard_bonus + population_score + density_score
    return max(1, min(10, _round_half_up(raw)))


def compute_priority(inputs: PriorityInputs) -> int:
    return score_components(inputs.severity, inputs.hazard_bonus, inputs.population_score, inputs.density_score)


def severity_from_classification(classification: ClassificationResult) -> float:
    """Confidence-weighted blend of the suggested priority and the category baseline."""
    conf = max(0.0, min(1.0, classification.confidence))
    base = CATEGORY_BASE_SEVERITY.get(classification.category, CATEGORY_BASE_SEVERITY[Category.OTHER])
    blended = conf * float(classification.suggested_priority) + (1.0 - conf) * base
    extra = sum(1 for s in classification.entities.severity_indicators if not is_hazard_indicator(s))
    return round(max(0.0, min(10.0, blended + INDICATOR_STEP * extra)), 3)


def has_hazard(classification: ClassificationResult) -> bool:
    return any(is_hazard_indicator(s) for s in classification.entities.severity_indicators)


def estimate_population(classification: ClassificationResult, explicit: int | None = None) -> float:
    if explicit is not None:
        return float(max(0, explicit))
    base = CATEGORY_BASE_POPULATION.get(classification.category, DEFAULT_BASE_POPULATION)
    return float(base + INFRASTRUCTURE_POPULATION * len(classification.entities.affected_infrastructure))


class PriorityScorer:
    def inputs_for(
        self,
        classification: ClassificationResult,
        *,
        density: float,
        affected_population: int | None = None,
    ) -> PriorityInputs:
        return PriorityInputs(
            severity=severity_from_classification(classification),
            hazard=has_hazard(classification),
            affected_population=estimate_population(classification, affected_population),
            density=float(density),
        )

    def score(
        self,
        classification: ClassificationResult,
        *,
        density: float,
        affected_population: int | None = None,
    ) -> tuple[int, dict[str, Any]]:
        inputs = self.inputs_for(classification, density=density, affected_population=affected_population)
        value = compute_priority(inputs)
        detail = {
            "computed": value,
            "override": None,
            "justification": None,
            "overridden_by": None,
            "overridden_at": None,
            "inputs": {
                **asdict(inputs),
                "hazard_bonus": inputs.hazard_bonus,
                "population_score": round(inputs.population_score, 3),
                "density_score": round(inputs.density_score, 3),
            },
        }
        return value, detail

    def apply_override(self, detail: dict[str, Any] | None, value: int, justification: str, actor: str) -> dict[str, Any]:
        if not 1 <= int(value) <= 10:
            raise ValidationError("Priority override must be between 1 and 10")
        if not str(justification or "").strip():
            raise ValidationError("Priority override requires a justification")
        out = dict(detail or {"computed": None, "inputs": {}})
        out["override"] = int(value)
        out["justification"] = justification.strip()
        out["overridden_by"] = actor
        out["overridden_at"] = utc_now()
        return out
