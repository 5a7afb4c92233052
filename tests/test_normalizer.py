from __future__ import annotations

import json

import pytest

from civic_intel.domain.errors import ClassificationUnavailable
from civic_intel.domain.states import Category
from civic_intel.pipeline.normalizer import ClassificationNormalizer, NormalizerInput, parse_raw_classification
from conftest import default_pipeline_config, llm_response


@pytest.fixture
def normalizer() -> ClassificationNormalizer:
    return ClassificationNormalizer(default_pipeline_config())


def test_parses_json_embedded_in_prose():
    raw = 'Sure, here is the result:\n{"category": "pothole", "confidence": 0.8}\nThanks!'
    assert parse_raw_classification(raw) == {"category": "pothole", "confidence": 0.8}


def test_unparseable_output_is_unusable():
    assert parse_raw_classification("no json here") is None
    assert parse_raw_classification(["POTHOLE"]) is None
    assert parse_raw_classification("") is None


def test_json_string_is_coerced(normalizer):
    raw = json.dumps(llm_response("traffic-signal", confidence=0.8))
    out = normalizer.normalize(NormalizerInput(description="signal is dark", raw_classification=raw))
    assert out.category == Category.TRAFFIC_SIGNAL
    assert out.confidence == pytest.approx(0.8)


def test_unknown_category_becomes_other(normalizer):
    out = normalizer.normalize(
        NormalizerInput(description="something odd", raw_classification=llm_response("ALIEN_INVASION"))
    )
    assert out.category == Category.OTHER


def test_confidence_and_priority_are_clamped(normalizer):
    raw = llm_response("POTHOLE", confidence=1.7, suggested_priority=42)
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert 0.0 <= out.confidence <= 1.0
    assert out.confidence == pytest.approx(1.0)
    assert out.suggested_priority == 10


def test_missing_fields_get_defaults(normalizer):
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification={"category": "POTHOLE"}))
    assert out.confidence == 0.0
    assert out.suggested_priority == 5
    assert out.needs_manual_review is True
    assert out.entities.locations == ()


def test_keyword_fallback_when_llm_output_missing(normalizer):
    out = normalizer.normalize(
        NormalizerInput(description="Huge pothole near the school, children at risk", raw_classification=None)
    )
    assert out.category == Category.POTHOLE
    assert "keyword_fallback" in out.modalities
    assert "near_school" in out.entities.severity_indicators


def test_all_modalities_empty_raises(normalizer):
    with pytest.raises(ClassificationUnavailable):
        normalizer.normalize(NormalizerInput(description="  ", transcription=None, images=[{}], raw_classification="garbage"))


def test_unsafe_image_surfaces_indicator_regardless_of_category(normalizer):
    image = {
        "detected_objects": ["wall"],
        "scene_labels": [],
        "extracted_text": "",
        "safety_flags": {"is_safe": False, "categories": ["violence"]},
    }
    out = normalizer.normalize(
        NormalizerInput(description="noise at night", images=[image], raw_classification=llm_response("NOISE_POLLUTION"))
    )
    assert out.category == Category.NOISE_POLLUTION
    assert "unsafe_content" in out.entities.severity_indicators
    assert "safety:violence" in out.entities.severity_indicators


def test_detected_infrastructure_added(normalizer):
    image = {"detected_objects": ["Manhole", "car"], "scene_labels": ["street"], "extracted_text": ""}
    out = normalizer.normalize(
        NormalizerInput(description="open manhole", images=[image], raw_classification=llm_response("SEWAGE_OVERFLOW"))
    )
    assert "manhole" in out.entities.affected_infrastructure
    assert "car" not in out.entities.affected_infrastructure


def test_weighted_confidence_over_present_modalities(normalizer):
    image = {"detected_objects": ["pothole"], "scene_labels": ["road"], "extracted_text": ""}
    out = normalizer.normalize(
        NormalizerInput(
            transcription={"text": "there is a pothole", "language": "en", "confidence": 0.6},
            images=[image],
            raw_classification=llm_response("POTHOLE", confidence=0.8),
        )
    )
    # 0.8*0.6 + 0.6*0.25 + 1.0*0.15
    assert out.confidence == pytest.approx(0.78)
    assert set(out.modalities) >= {"classification", "transcription", "image"}


def test_image_not_corroborating_counts_half(normalizer):
    image = {"detected_objects": ["tree"], "scene_labels": [], "extracted_text": ""}
    out = normalizer.normalize(
        NormalizerInput(description="pothole", images=[image], raw_classification=llm_response("POTHOLE", confidence=0.8))
    )
    assert out.modality_confidences["image"] == 0.5
    assert out.confidence == pytest.approx((0.8 * 0.6 + 0.5 * 0.15) / 0.75, abs=1e-3)


def test_low_confidence_flags_manual_review(normalizer):
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=llm_response("POTHOLE", 0.3)))
    assert out.needs_manual_review is True


def test_equal_confidence_picks_first_in_enum_order(normalizer):
    raw = llm_response(
        "STREETLIGHT",
        confidence=0.7,
        alternative_categories=[{"category": "POTHOLE", "confidence": 0.7}],
    )
    out = normalizer.normalize(NormalizerInput(description="dark road with pothole", raw_classification=raw))
    assert out.category == Category.POTHOLE
    assert out.alternative_categories == ((Category.STREETLIGHT, 0.7),)


def test_entities_are_deduplicated_and_sorted(normalizer):
    raw = llm_response(
        "POTHOLE",
        entities={"locations": ["MG Road", "MG Road", "5th Cross"], "severity_indicators": ["Urgent", "urgent"]},
    )
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.entities.locations == ("5th Cross", "MG Road")
    assert out.entities.severity_indicators == ("urgent",)


def test_malformed_transcription_is_ignored(normalizer):
    out = normalizer.normalize(
        NormalizerInput(
            description="pothole",
            transcription={"text": ["not", "text"], "confidence": 0.9},
            raw_classification=llm_response("POTHOLE"),
        )
    )
    assert "transcription" not in out.modalities


@pytest.mark.parametrize("confidence", ["not-a-number", "NaN", float("inf"), None])
def test_unusable_transcription_confidence_counts_as_zero(normalizer, confidence):
    out = normalizer.normalize(
        NormalizerInput(
            description="pothole",
            transcription={"text": "big pothole here", "confidence": confidence},
            raw_classification=llm_response("POTHOLE"),
        )
    )
    assert out.modality_confidences["transcription"] == 0.0


@pytest.mark.parametrize(
    "raw",
    [
        '{"category": "POTHOLE", "confidence": 0.9, "suggested_priority": 1e999}',
        '{"category": "POTHOLE", "confidence": 0.9, "suggested_priority": Infinity}',
        '{"category": "POTHOLE", "confidence": 0.9, "suggested_priority": NaN}',
        '{"category": "POTHOLE", "confidence": 0.9, "suggested_priority": -Infinity}',
        '{"category": "POTHOLE", "confidence": 0.9, "suggested_priority": [7]}',
    ],
)
def test_non_finite_priority_falls_back_to_default(normalizer, raw):
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.category == Category.POTHOLE
    assert out.suggested_priority == 5


@pytest.mark.parametrize("confidence", ["Infinity", "NaN", "1e999", "-Infinity", '"high"', "true"])
def test_non_finite_confidence_counts_as_zero(normalizer, confidence):
    raw = '{"category": "POTHOLE", "confidence": %s}' % confidence
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.category == Category.POTHOLE
    assert out.confidence == 0.0
    assert out.needs_manual_review is True


@pytest.mark.parametrize("alternatives", [3, "STREETLIGHT", {"category": "STREETLIGHT"}, None, 2.5])
def test_alternative_categories_must_be_a_list(normalizer, alternatives):
    raw = llm_response("POTHOLE", confidence=0.8, alternative_categories=alternatives)
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.category == Category.POTHOLE
    assert out.alternative_categories == ()


def test_alternative_entries_with_bad_confidence(normalizer):
    raw = llm_response(
        "POTHOLE",
        confidence=0.8,
        alternative_categories=[{"category": "STREETLIGHT", "confidence": "1e999"}, 42, None, "ROAD_DAMAGE"],
    )
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.category == Category.POTHOLE
    assert dict(out.alternative_categories) == {Category.STREETLIGHT: 0.0, Category.ROAD_DAMAGE: 0.0}


@pytest.mark.parametrize("entities", ["MG Road", 7, ["MG Road"], {"locations": 5, "severity_indicators": {"a": 1}}])
def test_wrongly_typed_entities_are_dropped(normalizer, entities):
    raw = llm_response("POTHOLE", entities=entities)
    out = normalizer.normalize(NormalizerInput(description="pothole", raw_classification=raw))
    assert out.entities.locations == ()
    assert out.category == Category.POTHOLE


def test_non_string_image_labels_keep_unsafe_flag(normalizer):
    image = {
        "detected_objects": ["wall", 17, None, {"label": "x"}],
        "scene_labels": "street",
        "extracted_text": 99,
        "safety_flags": {"is_safe": "flagged", "categories": ["violence", 3]},
    }
    out = normalizer.normalize(
        NormalizerInput(description="noise at night", images=[image], raw_classification=llm_response("NOISE_POLLUTION"))
    )
    assert "image" in out.modalities
    assert "unsafe_content" in out.entities.severity_indicators
    assert "safety:violence" in out.entities.severity_indicators
    assert "safety:3" in out.entities.severity_indicators
