from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from civic_intel.contracts.payloads import ImageAnalysisResult, TranscriptionResult
from civic_intel.domain.errors import ClassificationUnavailable
from civic_intel.domain.models import ClassificationResult, ExtractedEntities
from civic_intel.domain.policy import PipelineConfig
from civic_intel.domain.states import CATEGORY_ORDER, Category, coerce_category
from civic_intel.pipeline.keywords import (
    INFRASTRUCTURE_VOCAB,
    extract_severity_terms,
    keyword_classify,
    labels_corroborate,
    normalize_token,
)

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _safe_float(value: Any, fallback: float = 0.0) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        out = float(value)
    except (TypeError, ValueError, OverflowError):
        return fallback
    return out if math.isfinite(out) else fallback


def _safe_priority(value: Any) -> int:
    out = _safe_float(value, fallback=5.0)
    return int(_clamp(round(out), 1, 10))


def _candidate_list(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _string_set(value: Any) -> set[str]:
    if value is None:
        return set()
    if isinstance(value, str):
        items: list[Any] = [value]
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        return set()
    return {str(v).strip() for v in items if str(v or "").strip()}


def parse_raw_classification(raw: Any) -> dict[str, Any] | None:
    """Accept a dict, a JSON string, or JSON embedded in prose; anything else is unusable."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(raw)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


@dataclass
class NormalizerInput:
    description: str = ""
    transcription: dict[str, Any] | None = None
    images: list[dict[str, Any]] = field(default_factory=list)
    raw_classification: Any = None
    location: dict[str, Any] | None = None


class ClassificationNormalizer:
    """Merges transcription, image analysis and LLM output into one ClassificationResult."""

    def __init__(self, config: PipelineConfig) -> None:
        self.config = config

    def normalize(self, data: NormalizerInput) -> ClassificationResult:
        transcript = self._coerce_transcription(data.transcription)
        images = self._coerce_images(data.images)
        raw = parse_raw_classification(data.raw_classification)

        description = str(data.description or "").strip()
        ocr_text = " ".join(img.extracted_text.strip() for img in images if img.extracted_text.strip())
        labels = [label for img in images for label in (img.detected_objects + img.scene_labels)]
        text_blob = " ".join(p for p in [description, transcript.text if transcript else "", ocr_text] if p)

        if raw is not None and not raw.get("category") and raw.get("confidence") is None:
            raw = None

        if raw is None and not text_blob and not labels:
            raise ClassificationUnavailable("No usable input from any modality")

        modalities: list[str] = []
        if raw is None:
            raw = keyword_classify(" ".join([text_blob, " ".join(labels)]).strip())
            modalities.append("keyword_fallback")
            logger.info("Classification collaborator output unusable; keyword fallback used")
        else:
            modalities.append("classification")

        category, confidence, alternatives = self._coerce_categories(raw)

        modality_conf: dict[str, float] = {"classification": confidence}
        if transcript is not None:
            modality_conf["transcription"] = transcript.confidence
            modalities.append("transcription")
        if images:
            modality_conf["image"] = 1.0 if labels_corroborate(category, labels + [ocr_text]) else 0.5
            modalities.append("image")
        if description:
            modalities.append("text")

        combined = self._combine(modality_conf)
        entities = self._merge_entities(raw.get("entities"), images, text_blob)

        summary = str(raw.get("summary") or "").strip() or " ".join(text_blob.split())[:200]
        subcategory = raw.get("subcategory")
        result = ClassificationResult(
            category=category,
            subcategory=str(subcategory).strip() if subcategory else None,
            confidence=combined,
            summary=summary,
            entities=entities,
            suggested_priority=_safe_priority(raw.get("suggested_priority", raw.get("priority", 5))),
            needs_manual_review=combined < self.config.confidence_threshold,
            alternative_categories=tuple(alternatives),
            modalities=tuple(modalities),
            modality_confidences=modality_conf,
        )
        if result.needs_manual_review:
            logger.info(
                "Classification %s below confidence threshold (%.3f < %.3f)",
                category.value,
                combined,
                self.config.confidence_threshold,
            )
        return result

    def _coerce_transcription(self, raw: dict[str, Any] | None) -> TranscriptionResult | None:
        if not raw:
            return None
        try:
            out = TranscriptionResult.model_validate(raw)
        except PydanticValidationError:
            logger.warning("Discarding malformed transcription result")
            return None
        return out if out.text.strip() else None

    def _coerce_images(self, raws: list[dict[str, Any]] | None) -> list[ImageAnalysisResult]:
        out: list[ImageAnalysisResult] = []
        for raw in raws or []:
            if not raw:
                continue
            try:
                img = ImageAnalysisResult.model_validate(raw)
            except PydanticValidationError:
                logger.warning("Discarding malformed image analysis result")
                continue
            if not img.is_empty() or not img.safety_flags.is_safe:
                out.append(img)
        return out

    def _coerce_categories(self, raw: dict[str, Any]) -> tuple[Category, float, list[tuple[Category, float]]]:
        candidates: list[tuple[Category, float]] = [
            (coerce_category(raw.get("category")), _clamp(_safe_float(raw.get("confidence")), 0.0, 1.0))
        ]
        for alt in _candidate_list(raw.get("alternative_categories")) or _candidate_list(raw.get("categories")):
            if isinstance(alt, dict):
                candidates.append(
                    (coerce_category(alt.get("category")), _clamp(_safe_float(alt.get("confidence")), 0.0, 1.0))
                )
            elif isinstance(alt, str):
                candidates.append((coerce_category(alt), 0.0))

        best: dict[Category, float] = {}
        for cat, conf in candidates:
            best[cat] = max(conf, best.get(cat, 0.0))

        # Equal confidence resolves to the first category in enumeration order.
        ranked = sorted(best.items(), key=lambda kv: (-kv[1], CATEGORY_ORDER[kv[0]]))
        primary, confidence = ranked[0]
        alternatives = [(cat, conf) for cat, conf in ranked[1:] if cat != Category.OTHER]
        return primary, confidence, alternatives

    def _combine(self, modality_conf: dict[str, float]) -> float:
        weights = self.config.modality_weights
        total_w = sum(weights.get(k, 0.0) for k in modality_conf)
        if total_w <= 0:
            return round(modality_conf.get("classification", 0.0), 3)
        score = sum(conf * weights.get(k, 0.0) for k, conf in modality_conf.items()) / total_w
        return round(_clamp(score, 0.0, 1.0), 3)

    def _merge_entities(
        self,
        raw_entities: Any,
        images: list[ImageAnalysisResult],
        text_blob: str,
    ) -> ExtractedEntities:
        ent = raw_entities if isinstance(raw_entities, dict) else {}
        locations = _string_set(ent.get("locations"))
        severity = {normalize_token(s) for s in _string_set(ent.get("severity_indicators", ent.get("severity")))}
        infrastructure = {
            normalize_token(s) for s in _string_set(ent.get("affected_infrastructure", ent.get("infrastructure")))
        }

        severity.update(extract_severity_terms(text_blob))
        for img in images:
            if not img.safety_flags.is_safe:
                severity.add("unsafe_content")
                severity.update(f"safety:{normalize_token(c)}" for c in img.safety_flags.categories if str(c).strip())
            for obj in img.detected_objects:
                token = normalize_token(obj)
                if token in INFRASTRUCTURE_VOCAB:
                    infrastructure.add(token)

        return ExtractedEntities(
            locations=tuple(sorted(locations)),
            severity_indicators=tuple(sorted(s for s in severity if s)),
            affected_infrastructure=tuple(sorted(i for i in infrastructure if i)),
        )
