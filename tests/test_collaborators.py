from __future__ import annotations

from dataclasses import replace

import pytest
import requests

from civic_intel.domain.errors import CollaboratorUnavailable
from civic_intel.infra import collaborators as collab_mod
from civic_intel.infra.collaborators import (
    ClassificationCollaborator,
    HttpImageAnalysisCollaborator,
    HttpTranscriptionCollaborator,
    ImageAnalysisCollaborator,
    KeywordClassificationCollaborator,
    TranscriptionCollaborator,
    VariantRouter,
    build_collaborators,
    pick_variant,
)
from conftest import StubClassifier, StubImageAnalyzer, StubTranscriber


class FakeResponse:
    def __init__(self, status_code, data=None, text=""):
        self.status_code = status_code
        self._data = data
        self.text = text

    def json(self):
        if self._data is None:
            raise ValueError("no json")
        return self._data


def test_defaults_without_keys(test_settings):
    built = build_collaborators(replace(test_settings, groq_api_key="", transcription_service_url="", vision_service_url=""))
    assert isinstance(built["classification"], KeywordClassificationCollaborator)
    assert isinstance(built["transcription"], TranscriptionCollaborator)
    assert isinstance(built["image_analysis"], ImageAnalysisCollaborator)
    assert built["transcription"].transcribe("audio-1") is None
    assert built["image_analysis"].analyze("img-1") is None


def test_stubs_satisfy_collaborator_ports():
    assert isinstance(StubClassifier(), ClassificationCollaborator)
    assert isinstance(StubTranscriber(), TranscriptionCollaborator)
    assert isinstance(StubImageAnalyzer(), ImageAnalysisCollaborator)


def test_keyword_collaborator():
    out = KeywordClassificationCollaborator().classify("Overflowing garbage near the market")
    assert out["category"] == "GARBAGE_COLLECTION"
    assert KeywordClassificationCollaborator().classify("   ") is None


def test_variant_router_is_deterministic_and_weighted():
    a, b = StubClassifier(name="model-a"), StubClassifier(name="model-b")
    router = VariantRouter([(a, 0.5), (b, 0.5), (StubClassifier(name="off"), 0.0)])
    picks = [router.pick(f"complaint-{i}") for i in range(400)]
    assert picks == [router.pick(f"complaint-{i}") for i in range(400)]
    assert 120 < sum(1 for p in picks if p is a) < 280
    assert "off" not in router.name

    assert pick_variant(router, "complaint-1") is router.pick("complaint-1")
    assert pick_variant(a, "anything") is a
    with pytest.raises(ValueError):
        VariantRouter([(a, 0.0)])


def test_http_transcription_success(monkeypatch):
    sent = {}

    def fake_post(url, json, headers, timeout):
        sent.update(url=url, json=json, headers=headers)
        return FakeResponse(200, {"text": "water leak", "language": "en", "confidence": 0.8})

    monkeypatch.setattr(collab_mod.requests, "post", fake_post)
    client = HttpTranscriptionCollaborator("https://stt.example/", token="t0k")
    assert client.transcribe("audio-1", "en")["text"] == "water leak"
    assert sent["url"] == "https://stt.example/transcribe"
    assert sent["headers"]["Authorization"] == "Bearer t0k"


@pytest.mark.parametrize(
    "response",
    [FakeResponse(503), FakeResponse(429), FakeResponse(200, None, "<html>")],
)
def test_http_failures_are_retryable(monkeypatch, response):
    monkeypatch.setattr(collab_mod.requests, "post", lambda *a, **k: response)
    with pytest.raises(CollaboratorUnavailable):
        HttpImageAnalysisCollaborator("https://vision.example").analyze("img-1")


def test_http_client_errors_yield_no_result(monkeypatch):
    monkeypatch.setattr(collab_mod.requests, "post", lambda *a, **k: FakeResponse(400, None, "bad ref"))
    assert HttpImageAnalysisCollaborator("https://vision.example").analyze("img-1") is None


def test_http_connection_error(monkeypatch):
    def refuse(*_a, **_k):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(collab_mod.requests, "post", refuse)
    with pytest.raises(CollaboratorUnavailable):
        HttpTranscriptionCollaborator("https://stt.example").transcribe("audio-1")
