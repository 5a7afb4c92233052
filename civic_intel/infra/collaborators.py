from __future__ import annotations

import hashlib
import logging
from typing import Any, Protocol, runtime_checkable

import requests

from civic_intel.config import Settings
from civic_intel.domain.errors import CollaboratorUnavailable
from civic_intel.pipeline.keywords import keyword_classify

logger = logging.getLogger(__name__)


@runtime_checkable
class TranscriptionCollaborator(Protocol):
    name: str

    def transcribe(self, audio_ref: str, language: str | None = None) -> dict[str, Any] | None:
        ...


@runtime_checkable
class ImageAnalysisCollaborator(Protocol):
    name: str

    def analyze(self, image_ref: str) -> dict[str, Any] | None:
        ...


@runtime_checkable
class ClassificationCollaborator(Protocol):
    name: str

    def classify(self, text: str, hints: dict[str, Any] | None = None) -> dict[str, Any] | str | None:
        ...


class _HttpCollaborator:
    """JSON-over-HTTP client for an externally hosted model service."""

    kind = "collaborator"

    def __init__(self, base_url: str, token: str = "", timeout: float = 8.0, name: str | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.name = name or f"http-{self.kind}"

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.token:
            h["Authorization"] = f"Bearer {self.token}"
        return h

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            res = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            raise CollaboratorUnavailable(self.kind, str(exc)) from exc
        if res.status_code >= 500 or res.status_code == 429:
            raise CollaboratorUnavailable(self.kind, f"HTTP {res.status_code}")
        if res.status_code >= 400:
            logger.warning("%s rejected request [%s] %s", self.kind, res.status_code, res.text[:200])
            return {}
        try:
            data = res.json()
        except ValueError as exc:
            raise CollaboratorUnavailable(self.kind, "non-JSON response") from exc
        return data if isinstance(data, dict) else {}


class HttpTranscriptionCollaborator(_HttpCollaborator):
    """POST {base_url}/transcribe {audio_ref, language} -> {text, language, confidence}"""

    kind = "transcription"

    def transcribe(self, audio_ref: str, language: str | None = None) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        return self._post("/transcribe", {"audio_ref": audio_ref, "language": language}) or None


class HttpImageAnalysisCollaborator(_HttpCollaborator):
    """POST {base_url}/analyze {image_ref} -> {detected_objects, scene_labels, extracted_text, safety_flags}"""

    kind = "image_analysis"

    def analyze(self, image_ref: str) -> dict[str, Any] | None:
        if not self.enabled:
            return None
        return self._post("/analyze", {"image_ref": image_ref}) or None


class KeywordClassificationCollaborator:
    name = "keyword-rules"

    def classify(self, text: str, hints: dict[str, Any] | None = None) -> dict[str, Any] | None:
        if not str(text or "").strip():
            return None
        return keyword_classify(text)


class VariantRouter:
    """Deterministic A/B split between interchangeable collaborator variants.

    The same routing key always lands on the same variant, so a reprocessed
    complaint is classified by the model configuration that saw it first.
    """

    def __init__(self, variants: list[tuple[Any, float]]) -> None:
        cleaned = [(v, float(w)) for v, w in variants if float(w) > 0]
        if not cleaned:
            raise ValueError("VariantRouter needs at least one variant with positive weight")
        total = sum(w for _, w in cleaned)
        self._variants = [(v, w / total) for v, w in cleaned]
        self.name = "router(" + ",".join(str(getattr(v, "name", type(v).__name__)) for v, _ in self._variants) + ")"

    def pick(self, key: str) -> Any:
        digest = hashlib.sha256(str(key).encode("utf-8")).hexdigest()
        point = int(digest[:8], 16) / 0xFFFFFFFF
        cumulative = 0.0
        for variant, weight in self._variants:
            cumulative += weight
            if point <= cumulative:
                return variant
        return self._variants[-1][0]


def pick_variant(collaborator: Any, key: str) -> Any:
    if isinstance(collaborator, VariantRouter):
        return collaborator.pick(key)
    return collaborator


def _parse_variants(raw: str) -> list[tuple[str, float]]:
    out: list[tuple[str, float]] = []
    for part in raw.split(","):
        if "=" not in part:
            continue
        model, weight = part.split("=", 1)
        try:
            out.append((model.strip(), float(weight)))
        except ValueError:
            logger.warning("Ignoring malformed classification variant %r", part)
    return out


def build_collaborators(cfg: Settings) -> dict[str, Any]:
    from civic_intel.infra.groq_adapter import GroqClassificationCollaborator

    classifier: Any
    if cfg.groq_api_key:
        variants = _parse_variants(cfg.classification_variants)
        if variants:
            classifier = VariantRouter(
                [(GroqClassificationCollaborator(api_key=cfg.groq_api_key, model=m), w) for m, w in variants]
            )
        else:
            classifier = GroqClassificationCollaborator(api_key=cfg.groq_api_key, model=cfg.groq_model)
    else:
        classifier = KeywordClassificationCollaborator()

    return {
        "transcription": HttpTranscriptionCollaborator(
            cfg.transcription_service_url, cfg.collaborator_token, cfg.collaborator_timeout_seconds
        ),
        "image_analysis": HttpImageAnalysisCollaborator(
            cfg.vision_service_url, cfg.collaborator_token, cfg.collaborator_timeout_seconds
        ),
        "classification": classifier,
    }
