from __future__ import annotations

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from civic_intel.config import settings
from civic_intel.domain.policy import DEFAULT_DEPARTMENT_MAPPINGS, ConfigHandle, PipelineConfig, freeze_mappings
from civic_intel.infra.repositories import InMemoryRepository
from civic_intel.pipeline.resilience import ResilientCaller, RetryPolicy
from civic_intel.services.lifecycle_service import ComplaintLifecycleService

BASE_LAT = 12.9716
BASE_LON = 77.5946


class FixedClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 14, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ManualMonotonic:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


class StubClassifier:
    def __init__(self, response: Any = None, name: str = "stub-classifier") -> None:
        self.response = response
        self.name = name
        self.calls: list[str] = []

    def classify(self, text: str, hints: dict[str, Any] | None = None) -> Any:
        self.calls.append(text)
        if callable(self.response):
            return self.response(text)
        return self.response


class StubTranscriber:
    name = "stub-transcriber"

    def __init__(self, result: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls = 0

    def transcribe(self, audio_ref: str, language: str | None = None) -> dict[str, Any] | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class StubImageAnalyzer:
    name = "stub-vision"

    def __init__(self, results: dict[str, dict[str, Any]] | None = None) -> None:
        self.results = results or {}

    def analyze(self, image_ref: str) -> dict[str, Any] | None:
        return self.results.get(image_ref)


def llm_response(category: str, confidence: float = 0.9, suggested_priority: int = 6, **extra: Any) -> dict[str, Any]:
    out = {
        "category": category,
        "confidence": confidence,
        "summary": f"{category.lower()} reported",
        "entities": {"locations": [], "severity_indicators": [], "affected_infrastructure": []},
        "suggested_priority": suggested_priority,
    }
    out.update(extra)
    return out


def complaint_payload(text: str = "Large pothole on the main road", lat: float = BASE_LAT, lon: float = BASE_LON, **extra: Any) -> dict[str, Any]:
    out: dict[str, Any] = {"citizen_id": "citizen-1", "location": {"lat": lat, "lon": lon}, "text": text}
    out.update(extra)
    return out


def default_pipeline_config(**overrides: Any) -> PipelineConfig:
    return PipelineConfig(version=1, mappings=freeze_mappings(DEFAULT_DEPARTMENT_MAPPINGS), **overrides)


def no_sleep_caller(**kwargs: Any) -> ResilientCaller:
    kwargs.setdefault("retry", RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0))
    kwargs.setdefault("timeout_seconds", 5.0)
    kwargs.setdefault("sleep", lambda _s: None)
    return ResilientCaller(**kwargs)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def test_settings():
    return replace(
        settings,
        app_env="test",
        persistence_backend="memory",
        department_mappings_path="",
        pipeline_deadline_seconds=45.0,
        persistence_retry_attempts=3,
        hotspot_interval_seconds=0.0,
    )


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def config_handle() -> ConfigHandle:
    return ConfigHandle(default_pipeline_config())


@pytest.fixture
def make_service(test_settings, clock) -> Callable[..., ComplaintLifecycleService]:
    created: list[ComplaintLifecycleService] = []

    def _make(
        classifier: Any = None,
        transcriber: Any = None,
        image_analyzer: Any = None,
        caller: ResilientCaller | None = None,
        repo: InMemoryRepository | None = None,
        **kwargs: Any,
    ) -> ComplaintLifecycleService:
        svc = ComplaintLifecycleService(
            repo or InMemoryRepository(),
            cfg=kwargs.pop("cfg", test_settings),
            collaborators={
                "transcription": transcriber or StubTranscriber(),
                "image_analysis": image_analyzer or StubImageAnalyzer(),
                "classification": classifier or StubClassifier(),
            },
            caller=caller or no_sleep_caller(),
            clock=clock,
            sleep=lambda _s: None,
            **kwargs,
        )
        created.append(svc)
        return svc

    yield _make
    for svc in created:
        svc.shutdown()
