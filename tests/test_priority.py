from __future__ import annotations

import itertools

import pytest

from civic_intel.domain.errors import ValidationError
from civic_intel.domain.models import ClassificationResult, ExtractedEntities
from civic_intel.domain.states import Category
from civic_intel.pipeline.priority import (
    PriorityInputs,
    PriorityScorer,
    compute_priority,
    estimate_population,
    score_components,
    severity_from_classification,
)


def _classification(category=Category.POTHOLE, confidence=0.9, suggested=6, severity=(), infrastructure=()):
    return ClassificationResult(
        category=category,
        confidence=confidence,
        summary="",
        entities=ExtractedEntities(severity_indicators=tuple(severity), affected_infrastructure=tuple(infrastructure)),
        suggested_priority=suggested,
        needs_manual_review=False,
    )


def test_formula_maximum_and_minimum():
    assert compute_priority(PriorityInputs(severity=10, hazard=True, affected_population=5000, density=50)) == 10
    assert compute_priority(PriorityInputs(severity=0, hazard=False, affected_population=0, density=0)) == 1


def test_rounding_is_half_up():
    assert score_components(0.0, 0.0, 1.5, 1.0) == 3
    assert score_components(0.0, 0.0, 1.0, 0.49) == 1


def test_component_caps():
    inputs = PriorityInputs(severity=5, hazard=False, affected_population=100_000, density=1_000)
    assert inputs.population_score == 2.0
    assert inputs.density_score == 1.0


@pytest.mark.parametrize(
    "severity,population,density",
    list(itertools.product([0, 3, 6, 9, 10], [0, 250, 700, 1500], [0, 4, 12])),
)
def test_output_always_in_range_and_monotonic(severity, population, density):
    base = PriorityInputs(severity=severity, hazard=False, affected_population=population, density=density)
    value = compute_priority(base)
    assert 1 <= value <= 10

    with_hazard = compute_priority(PriorityInputs(severity, True, population, density))
    more_people = compute_priority(PriorityInputs(severity, False, population + 500, density))
    denser = compute_priority(PriorityInputs(severity, False, population, density + 5))
    assert with_hazard >= value
    assert more_people >= value
    assert denser >= value


def test_hazard_strictly_raises_unsaturated_priority():
    plain = compute_priority(PriorityInputs(severity=5, hazard=False, affected_population=100, density=0))
    hazard = compute_priority(PriorityInputs(severity=5, hazard=True, affected_population=100, density=0))
    assert hazard > plain


def test_severity_blends_suggestion_and_category_base():
    assert severity_from_classification(_classification(confidence=1.0, suggested=9)) == 9.0
    # POTHOLE base severity is 6.0
    assert severity_from_classification(_classification(confidence=0.0, suggested=9)) == 6.0
    assert severity_from_classification(_classification(confidence=1.0, suggested=6, severity=("urgent",))) == 6.5


def test_population_estimate_uses_explicit_value_first():
    c = _classification(infrastructure=("manhole", "road"))
    assert estimate_population(c, explicit=40) == 40.0
    assert estimate_population(c) == 250 + 2 * 150


def test_scorer_marks_hazard_from_indicators():
    scorer = PriorityScorer()
    safe, _ = scorer.score(_classification(suggested=5), density=0)
    unsafe, detail = scorer.score(_classification(suggested=5, severity=("unsafe_content",)), density=0)
    assert unsafe > safe
    assert detail["inputs"]["hazard"] is True
    assert detail["computed"] == unsafe
    assert detail["override"] is None


def test_override_keeps_computed_value():
    scorer = PriorityScorer()
    _, detail = scorer.score(_classification(), density=0)
    out = scorer.apply_override(detail, 9, "School zone, children at risk", "admin-7")
    assert out["computed"] == detail["computed"]
    assert out["override"] == 9
    assert out["overridden_by"] == "admin-7"
    assert out["overridden_at"]


@pytest.mark.parametrize("value,justification", [(0, "reason"), (11, "reason"), (5, "   ")])
def test_override_rejects_bad_input(value, justification):
    with pytest.raises(ValidationError):
        PriorityScorer().apply_override({"computed": 4}, value, justification, "admin")
