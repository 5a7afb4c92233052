from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError

from civic_intel.config import Settings
from civic_intel.contracts.payloads import DepartmentMappingFile
from civic_intel.domain.errors import ValidationError
from civic_intel.domain.states import Category

logger = logging.getLogger(__name__)

PUBLIC_WORKS = "PUBLIC_WORKS"
TRAFFIC_MANAGEMENT = "TRAFFIC_MANAGEMENT"
SANITATION = "SANITATION"
WATER_AUTHORITY = "WATER_AUTHORITY"
ELECTRICITY_BOARD = "ELECTRICITY_BOARD"
HORTICULTURE = "HORTICULTURE"
PUBLIC_HEALTH = "PUBLIC_HEALTH"
POLLUTION_CONTROL = "POLLUTION_CONTROL"
ANIMAL_CONTROL = "ANIMAL_CONTROL"
TOWN_PLANNING = "TOWN_PLANNING"
DISASTER_MANAGEMENT = "DISASTER_MANAGEMENT"
TRAFFIC_POLICE = "TRAFFIC_POLICE"


@dataclass(frozen=True)
class DepartmentMapping:
    category: Category
    primary_department: str
    secondary_departments: tuple[str, ...] = ()
    escalation_threshold: int = 8
    average_resolution_days: int = 7


def _m(category: Category, primary: str, secondary: tuple[str, ...], threshold: int, days: int) -> DepartmentMapping:
    return DepartmentMapping(category, primary, secondary, threshold, days)


DEFAULT_DEPARTMENT_MAPPINGS: tuple[DepartmentMapping, ...] = (
    _m(Category.POTHOLE, PUBLIC_WORKS, (TRAFFIC_MANAGEMENT,), 8, 7),
    _m(Category.ROAD_DAMAGE, PUBLIC_WORKS, (TRAFFIC_MANAGEMENT,), 8, 10),
    _m(Category.FOOTPATH_DAMAGE, PUBLIC_WORKS, (), 8, 10),
    _m(Category.STREETLIGHT, ELECTRICITY_BOARD, (PUBLIC_WORKS,), 8, 5),
    _m(Category.TRAFFIC_SIGNAL, TRAFFIC_MANAGEMENT, (TRAFFIC_POLICE,), 7, 2),
    _m(Category.ILLEGAL_PARKING, TRAFFIC_POLICE, (), 9, 3),
    _m(Category.GARBAGE_COLLECTION, SANITATION, (PUBLIC_HEALTH,), 8, 3),
    _m(Category.ILLEGAL_DUMPING, SANITATION, (POLLUTION_CONTROL,), 8, 5),
    _m(Category.WATER_SUPPLY, WATER_AUTHORITY, (), 7, 4),
    _m(Category.WATER_LEAKAGE, WATER_AUTHORITY, (PUBLIC_WORKS,), 8, 4),
    _m(Category.SEWAGE_OVERFLOW, SANITATION, (WATER_AUTHORITY, PUBLIC_HEALTH), 7, 3),
    _m(Category.DRAINAGE_BLOCKAGE, PUBLIC_WORKS, (SANITATION,), 8, 5),
    _m(Category.FLOODING, DISASTER_MANAGEMENT, (PUBLIC_WORKS, WATER_AUTHORITY), 6, 2),
    _m(Category.ELECTRICITY_OUTAGE, ELECTRICITY_BOARD, (), 7, 1),
    _m(Category.EXPOSED_WIRING, ELECTRICITY_BOARD, (DISASTER_MANAGEMENT,), 6, 1),
    _m(Category.FALLEN_TREE, HORTICULTURE, (TRAFFIC_MANAGEMENT, DISASTER_MANAGEMENT), 7, 2),
    _m(Category.PARK_MAINTENANCE, HORTICULTURE, (), 9, 14),
    _m(Category.NOISE_POLLUTION, POLLUTION_CONTROL, (TRAFFIC_POLICE,), 9, 7),
    _m(Category.AIR_POLLUTION, POLLUTION_CONTROL, (PUBLIC_HEALTH,), 8, 10),
    _m(Category.STRAY_ANIMALS, ANIMAL_CONTROL, (PUBLIC_HEALTH,), 8, 5),
    _m(Category.MOSQUITO_BREEDING, PUBLIC_HEALTH, (SANITATION,), 8, 4),
    _m(Category.PUBLIC_TOILET, SANITATION, (PUBLIC_HEALTH,), 9, 5),
    _m(Category.ENCROACHMENT, TOWN_PLANNING, (TRAFFIC_POLICE,), 9, 21),
    _m(Category.BUILDING_HAZARD, TOWN_PLANNING, (DISASTER_MANAGEMENT,), 6, 3),
)

DEFAULT_MODALITY_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {"classification": 0.6, "transcription": 0.25, "image": 0.15}
)


@dataclass(frozen=True)
class PipelineConfig:
    """Versioned, read-only configuration shared by the pipeline components."""

    version: int
    mappings: Mapping[Category, DepartmentMapping]
    confidence_threshold: float = 0.5
    modality_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_MODALITY_WEIGHTS)
    hotspot_radius_m: float = 1000.0
    hotspot_activation_threshold: int = 5
    hotspot_window_days: int = 30
    hotspot_trend_delta: int = 2
    manual_triage_department: str = "MANUAL_TRIAGE"
    manual_review_queue: str = "MANUAL_REVIEW"
    default_resolution_days: int = 14
    source: str = field(default="defaults", compare=False)

    def mapping_for(self, category: Category) -> DepartmentMapping | None:
        return self.mappings.get(category)

    def known_departments(self) -> set[str]:
        out = {self.manual_triage_department}
        for mapping in self.mappings.values():
            out.add(mapping.primary_department)
            out.update(mapping.secondary_departments)
        return out

    def resolution_days(self, category: Category | None) -> int:
        mapping = self.mapping_for(category) if category else None
        return mapping.average_resolution_days if mapping else self.default_resolution_days


def freeze_mappings(mappings: list[DepartmentMapping] | tuple[DepartmentMapping, ...]) -> Mapping[Category, DepartmentMapping]:
    return MappingProxyType({m.category: m for m in mappings})


def parse_mapping_document(raw: Any) -> list[DepartmentMapping]:
    try:
        doc = DepartmentMappingFile.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid department mapping document: {exc}") from exc

    out: list[DepartmentMapping] = []
    for item in doc.mappings:
        try:
            category = Category(item.category.strip().upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown category in department mapping: {item.category}") from exc
        out.append(
            DepartmentMapping(
                category=category,
                primary_department=item.primary_department,
                secondary_departments=tuple(item.secondary_departments),
                escalation_threshold=item.escalation_threshold,
                average_resolution_days=item.average_resolution_days,
            )
        )
    return out


def load_mapping_file(path: str | Path) -> list[DepartmentMapping]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_mapping_document(raw)


def build_pipeline_config(cfg: Settings, version: int = 1) -> PipelineConfig:
    mappings: list[DepartmentMapping] | tuple[DepartmentMapping, ...] = DEFAULT_DEPARTMENT_MAPPINGS
    source = "defaults"
    if cfg.department_mappings_path:
        mappings = load_mapping_file(cfg.department_mappings_path)
        source = cfg.department_mappings_path

    return PipelineConfig(
        version=version,
        mappings=freeze_mappings(mappings),
        confidence_threshold=cfg.confidence_threshold,
        hotspot_radius_m=cfg.hotspot_radius_m,
        hotspot_activation_threshold=cfg.hotspot_activation_threshold,
        hotspot_window_days=cfg.hotspot_window_days,
        hotspot_trend_delta=cfg.hotspot_trend_delta,
        manual_triage_department=cfg.manual_triage_department,
        manual_review_queue=cfg.manual_review_queue,
        default_resolution_days=cfg.default_resolution_days,
        source=source,
    )


class ConfigHandle:
    """Holds the current PipelineConfig; reloads swap the whole object at once."""

    def __init__(self, initial: PipelineConfig) -> None:
        self._lock = Lock()
        self._current = initial

    def current(self) -> PipelineConfig:
        return self._current

    def swap(self, new: PipelineConfig) -> PipelineConfig:
        with self._lock:
            if new.version <= self._current.version:
                new = replace(new, version=self._current.version + 1)
            self._current = new
        logger.info("Pipeline config swapped to version %s (%s)", new.version, new.source)
        return new

    def replace_mappings(self, mappings: list[DepartmentMapping], source: str = "api") -> PipelineConfig:
        with self._lock:
            base = self._current
            new = replace(base, version=base.version + 1, mappings=freeze_mappings(mappings), source=source)
            self._current = new
        logger.info("Department mappings reloaded: version %s, %s categories", new.version, len(mappings))
        return new

    def reload_from_file(self, path: str | Path) -> PipelineConfig:
        return self.replace_mappings(load_mapping_file(path), source=str(path))
