from __future__ import annotations

import logging
from typing import Any, Callable

from civic_intel.domain.errors import CollaboratorUnavailable, NoDepartmentMapping
from civic_intel.domain.models import ClassificationResult
from civic_intel.infra.collaborators import pick_variant
from civic_intel.pipeline.dag import DAG, Node
from civic_intel.pipeline.normalizer import ClassificationNormalizer, NormalizerInput
from civic_intel.pipeline.priority import PriorityScorer
from civic_intel.pipeline.resilience import ResilientCaller
from civic_intel.pipeline.routing import RoutingEngine

logger = logging.getLogger(__name__)

DensityReader = Callable[[str, dict[str, Any]], int]


def _text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _labels(image: dict[str, Any]) -> list[str]:
    out: list[str] = []
    for key in ("detected_objects", "scene_labels"):
        values = image.get(key)
        if isinstance(values, str):
            values = [values]
        if isinstance(values, (list, tuple)):
            out.extend(str(v).strip() for v in values if isinstance(v, (str, int, float)) and str(v).strip())
    return out


class PipelineNodes:
    """DAG node functions for one pipeline pass over a complaint.

    Seed context keys: ``complaint`` (row dict), ``config`` (PipelineConfig
    snapshot taken once per pass) and ``deadline`` (caller clock value).
    Collaborator failures degrade to an empty modality; only the normalizer,
    routing and the deadline can stop a pass.
    """

    def __init__(
        self,
        collaborators: dict[str, Any],
        caller: ResilientCaller,
        density: DensityReader,
        scorer: PriorityScorer | None = None,
        router: RoutingEngine | None = None,
    ) -> None:
        self.collaborators = collaborators
        self.caller = caller
        self.density = density
        self.scorer = scorer or PriorityScorer()
        self.router = router or RoutingEngine()

    def build_dag(self) -> DAG:
        return DAG(
            [
                Node("transcription", self.transcription, []),
                Node("image_analysis", self.image_analysis, []),
                Node("classification", self.classification, ["transcription", "image_analysis"]),
                Node("normalization", self.normalization, ["transcription", "image_analysis", "classification"]),
                Node("density", self.density_lookup, ["normalization"]),
                Node("priority", self.priority, ["normalization", "density"]),
                Node("routing", self.routing, ["normalization", "priority"]),
            ]
        )

    def transcription(self, ctx: dict[str, Any]) -> dict[str, Any]:
        complaint = ctx["complaint"]
        audio_ref = complaint.get("audio_ref")
        collab = self.collaborators.get("transcription")
        if not audio_ref or collab is None:
            return {"result": None, "error": None}
        try:
            result = self.caller.call(
                "transcription",
                collab.transcribe,
                audio_ref,
                complaint.get("language"),
                complaint_id=complaint["id"],
                deadline=ctx.get("deadline"),
            )
        except CollaboratorUnavailable as exc:
            logger.warning("Transcription skipped for %s: %s", complaint["id"], exc)
            return {"result": None, "error": str(exc)}
        if result and not isinstance(result, dict):
            logger.warning("Discarding non-object transcription result for %s", complaint["id"])
            result = None
        return {"result": result or None, "error": None}

    def image_analysis(self, ctx: dict[str, Any]) -> dict[str, Any]:
        complaint = ctx["complaint"]
        collab = self.collaborators.get("image_analysis")
        results: list[dict[str, Any]] = []
        errors: list[str] = []
        if collab is None:
            return {"results": results, "errors": errors}
        for image_ref in complaint.get("image_refs") or []:
            try:
                out = self.caller.call(
                    "image_analysis",
                    collab.analyze,
                    image_ref,
                    complaint_id=complaint["id"],
                    deadline=ctx.get("deadline"),
                )
            except CollaboratorUnavailable as exc:
                logger.warning("Image analysis skipped for %s (%s): %s", complaint["id"], image_ref, exc)
                errors.append(str(exc))
                continue
            if out and isinstance(out, dict):
                results.append(out)
        return {"results": results, "errors": errors}

    def classification(self, ctx: dict[str, Any]) -> dict[str, Any]:
        complaint = ctx["complaint"]
        transcript = ctx["transcription"]["result"] or {}
        ocr = " ".join(_text(img.get("extracted_text")) for img in ctx["image_analysis"]["results"])
        text = "\n".join(
            p.strip() for p in [_text(complaint.get("text")), _text(transcript.get("text")), ocr] if p.strip()
        )
        collab = self.collaborators.get("classification")
        if not text or collab is None:
            return {"raw": None, "variant": None, "error": None}

        variant = pick_variant(collab, str(complaint["id"]))
        hints = {
            "language": complaint.get("language") or transcript.get("language"),
            "image_labels": [label for img in ctx["image_analysis"]["results"] for label in _labels(img)],
        }
        try:
            raw = self.caller.call(
                "classification",
                variant.classify,
                text,
                hints,
                complaint_id=complaint["id"],
                deadline=ctx.get("deadline"),
            )
        except CollaboratorUnavailable as exc:
            logger.warning("Classification collaborator unavailable for %s: %s", complaint["id"], exc)
            return {"raw": None, "variant": getattr(variant, "name", None), "error": str(exc)}
        return {"raw": raw, "variant": getattr(variant, "name", None), "error": None}

    def normalization(self, ctx: dict[str, Any]) -> ClassificationResult:
        self.caller.check_deadline(ctx.get("deadline"), "normalization")
        complaint = ctx["complaint"]
        return ClassificationNormalizer(ctx["config"]).normalize(
            NormalizerInput(
                description=str(complaint.get("text") or ""),
                transcription=ctx["transcription"]["result"],
                images=list(ctx["image_analysis"]["results"]),
                raw_classification=ctx["classification"]["raw"],
                location=complaint.get("location"),
            )
        )

    def density_lookup(self, ctx: dict[str, Any]) -> int:
        classification: ClassificationResult = ctx["normalization"]
        return int(self.density(classification.category.value, ctx["complaint"]["location"]))

    def priority(self, ctx: dict[str, Any]) -> dict[str, Any]:
        value, detail = self.scorer.score(
            ctx["normalization"],
            density=ctx["density"],
            affected_population=ctx["complaint"].get("affected_population_estimate"),
        )
        return {"value": value, "detail": detail}

    def routing(self, ctx: dict[str, Any]) -> dict[str, Any]:
        self.caller.check_deadline(ctx.get("deadline"), "routing")
        classification: ClassificationResult = ctx["normalization"]
        try:
            decision = self.router.route(
                classification.category,
                ctx["priority"]["value"],
                ctx["config"],
                implicated=classification.implicated_categories(),
            )
        except NoDepartmentMapping as exc:
            logger.warning("Routing failed for %s: %s", ctx["complaint"]["id"], exc)
            return {"decision": None, "unmapped_category": exc.category}
        return {"decision": decision, "unmapped_category": None}
