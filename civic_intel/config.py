from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


def _get_config_value(*keys: str, default: str = "") -> str:
    for key in keys:
        value = os.getenv(key, "").strip()
        if value:
            return value
    return default


def _get_float(key: str, default: float) -> float:
    raw = _get_config_value(key)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _get_int(key: str, default: int) -> int:
    raw = _get_config_value(key)
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_dir: str
    persistence_backend: str
    supabase_url: str
    supabase_key: str
    groq_api_key: str
    groq_model: str
    classification_variants: str
    transcription_service_url: str
    vision_service_url: str
    collaborator_token: str
    collaborator_timeout_seconds: float
    pipeline_deadline_seconds: float
    collaborator_workers: int
    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    breaker_failure_threshold: int
    breaker_cooldown_seconds: float
    persistence_retry_attempts: int
    confidence_threshold: float
    hotspot_radius_m: float
    hotspot_activation_threshold: int
    hotspot_window_days: int
    hotspot_trend_delta: int
    hotspot_interval_seconds: float
    department_mappings_path: str
    manual_triage_department: str
    manual_review_queue: str
    default_resolution_days: int

    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


def load_settings() -> Settings:
    return Settings(
        app_env=_get_config_value("APP_ENV", default="dev"),
        log_level=_get_config_value("LOG_LEVEL", default="INFO").upper(),
        log_dir=_get_config_value("LOG_DIR", default="logs"),
        persistence_backend=_get_config_value("PERSISTENCE_BACKEND", default="memory").lower(),
        supabase_url=_get_config_value("SUPABASE_URL").rstrip("/"),
        supabase_key=_get_config_value("SUPABASE_SERVICE_KEY", "SUPABASE_KEY"),
        groq_api_key=_get_config_value("GROQ_API_KEY"),
        groq_model=_get_config_value("GROQ_MODEL", default="llama-3.1-70b-versatile"),
        # "model-a=0.5,model-b=0.5" splits classification traffic between Groq models.
        classification_variants=_get_config_value("CLASSIFICATION_VARIANTS"),
        transcription_service_url=_get_config_value("TRANSCRIPTION_SERVICE_URL").rstrip("/"),
        vision_service_url=_get_config_value("VISION_SERVICE_URL").rstrip("/"),
        collaborator_token=_get_config_value("COLLABORATOR_TOKEN"),
        collaborator_timeout_seconds=_get_float("COLLABORATOR_TIMEOUT_SECONDS", 8.0),
        pipeline_deadline_seconds=_get_float("PIPELINE_DEADLINE_SECONDS", 45.0),
        collaborator_workers=_get_int("COLLABORATOR_WORKERS", 8),
        retry_max_attempts=_get_int("RETRY_MAX_ATTEMPTS", 3),
        retry_base_delay_seconds=_get_float("RETRY_BASE_DELAY_SECONDS", 0.2),
        retry_max_delay_seconds=_get_float("RETRY_MAX_DELAY_SECONDS", 2.0),
        breaker_failure_threshold=_get_int("BREAKER_FAILURE_THRESHOLD", 5),
        breaker_cooldown_seconds=_get_float("BREAKER_COOLDOWN_SECONDS", 30.0),
        persistence_retry_attempts=_get_int("PERSISTENCE_RETRY_ATTEMPTS", 3),
        confidence_threshold=_get_float("CONFIDENCE_THRESHOLD", 0.5),
        hotspot_radius_m=_get_float("HOTSPOT_RADIUS_M", 1000.0),
        hotspot_activation_threshold=_get_int("HOTSPOT_ACTIVATION_THRESHOLD", 5),
        hotspot_window_days=_get_int("HOTSPOT_WINDOW_DAYS", 30),
        hotspot_trend_delta=_get_int("HOTSPOT_TREND_DELTA", 2),
        hotspot_interval_seconds=_get_float("HOTSPOT_INTERVAL_SECONDS", 900.0),
        department_mappings_path=_get_config_value("DEPARTMENT_MAPPINGS_PATH"),
        manual_triage_department=_get_config_value("MANUAL_TRIAGE_DEPARTMENT", default="MANUAL_TRIAGE"),
        manual_review_queue=_get_config_value("MANUAL_REVIEW_QUEUE", default="MANUAL_REVIEW"),
        default_resolution_days=_get_int("DEFAULT_RESOLUTION_DAYS", 14),
    )


settings = load_settings()
