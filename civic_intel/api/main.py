from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from civic_intel.config import settings
from civic_intel.contracts.payloads import (
    ComplaintInput,
    DepartmentFilters,
    HotspotFilters,
    PriorityOverrideRequest,
    ReassignRequest,
    ReviewResolutionRequest,
    TransitionRequest,
)
from civic_intel.domain.errors import (
    ComplaintBusy,
    ComplaintNotFound,
    InvalidTransition,
    PersistenceFailure,
    PipelineError,
    ValidationError,
)
from civic_intel.logger import init_logging
from civic_intel.pipeline.hotspots import HotspotScheduler
from civic_intel.services.lifecycle_service import ComplaintLifecycleService


def create_app(service: ComplaintLifecycleService | None = None, *, schedule_hotspots: bool = True) -> FastAPI:
    log = init_logging(settings, to_file=settings.app_env != "test")
    svc = service or ComplaintLifecycleService()
    scheduler = HotspotScheduler(svc.detector, settings.hotspot_interval_seconds)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if schedule_hotspots and settings.hotspot_interval_seconds > 0:
            scheduler.start()
        yield
        scheduler.stop()
        svc.shutdown()

    app = FastAPI(title="Civic Complaint Intelligence API", version="1.0.0", lifespan=lifespan)
    app.state.service = svc

    @app.exception_handler(ValidationError)
    async def validation_error_handler(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(ComplaintNotFound)
    async def not_found_handler(_request: Request, exc: ComplaintNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(InvalidTransition)
    async def invalid_transition_handler(_request: Request, exc: InvalidTransition) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ComplaintBusy)
    async def busy_handler(_request: Request, exc: ComplaintBusy) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(PersistenceFailure)
    async def persistence_handler(_request: Request, exc: PersistenceFailure) -> JSONResponse:
        log.error("Persistence failure: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(_request: Request, exc: PipelineError) -> JSONResponse:
        log.error("Unhandled pipeline error: %s", exc)
        return JSONResponse(status_code=500, content={"detail": "Internal pipeline error"})

    @app.get("/health")
    def health() -> dict[str, Any]:
        cfg = svc.config.current()
        return {
            "status": "ok",
            "persistence": "supabase" if svc.repo.using_supabase else "memory",
            "config_version": cfg.version,
            "circuit_breakers": svc.caller.breaker_states(),
            "hotspot_index_built_at": svc.detector.index.built_at,
        }

    @app.post("/complaints", status_code=201)
    def submit_complaint(
        payload: ComplaintInput,
        process_now: bool = Query(default=False),
    ) -> dict[str, Any]:
        receipt = svc.submit(payload)
        if process_now:
            try:
                row = svc.process(receipt["complaint_id"])
            except (ComplaintBusy, PersistenceFailure) as exc:
                # The citizen keeps the tracking number; the pass can be retried.
                log.warning("Immediate processing of %s deferred: %s", receipt["complaint_id"], exc)
            else:
                receipt["status"] = row["status"]
                classification = row.get("classification") or {}
                if classification.get("category"):
                    receipt["estimated_resolution_days"] = svc.get_status(row["id"])["estimated_resolution_days"]
        return receipt

    @app.get("/complaints/{ref}/status")
    def get_status(ref: str) -> dict[str, Any]:
        return svc.get_status(ref)

    @app.get("/complaints/{complaint_id}/events")
    def get_events(complaint_id: str) -> list[dict[str, Any]]:
        return svc.list_events(complaint_id)

    @app.post("/complaints/{complaint_id}/process")
    def process_complaint(complaint_id: str) -> dict[str, Any]:
        return svc.process(complaint_id, actor="api")

    @app.post("/complaints/{complaint_id}/transition")
    def transition(complaint_id: str, payload: TransitionRequest) -> dict[str, Any]:
        return svc.transition(
            complaint_id,
            payload.target,
            actor=payload.actor,
            notes=payload.notes,
            department=payload.department,
        )

    @app.post("/complaints/{complaint_id}/review")
    def resolve_review(complaint_id: str, payload: ReviewResolutionRequest) -> dict[str, Any]:
        return svc.resolve_review(
            complaint_id,
            category=payload.category,
            department=payload.department,
            actor=payload.actor,
            notes=payload.notes,
        )

    @app.post("/complaints/{complaint_id}/priority-override")
    def override_priority(complaint_id: str, payload: PriorityOverrideRequest) -> dict[str, Any]:
        return svc.override_priority(complaint_id, payload.value, payload.justification, payload.actor)

    @app.post("/complaints/{complaint_id}/reassign")
    def reassign(complaint_id: str, payload: ReassignRequest) -> dict[str, Any]:
        return svc.reassign_department(complaint_id, payload.department, payload.actor, payload.notes)

    @app.get("/departments/{department}/complaints")
    def list_department_complaints(
        department: str,
        status: str | None = None,
        category: str | None = None,
        min_priority: int | None = Query(default=None, ge=1, le=10),
        limit: int = Query(default=200, ge=1, le=5000),
    ) -> list[dict[str, Any]]:
        filters = DepartmentFilters(status=status, category=category, min_priority=min_priority, limit=limit)
        return svc.list_for_department(department, filters)

    @app.get("/hotspots")
    def get_hotspots(
        category: str | None = None,
        status: str | None = None,
        min_count: int | None = Query(default=None, ge=1),
        geohash_prefix: str | None = None,
    ) -> list[dict[str, Any]]:
        filters = HotspotFilters(category=category, status=status, min_count=min_count, geohash_prefix=geohash_prefix)
        return svc.get_hotspots(filters)

    @app.post("/hotspots/run")
    def run_hotspots() -> dict[str, Any]:
        return svc.run_hotspot_detection()

    @app.get("/dead-letters")
    def list_dead_letters(status: str | None = None) -> list[dict[str, Any]]:
        return svc.list_dead_letters(status)

    @app.post("/dead-letters/{dead_letter_id}/requeue")
    def requeue_dead_letter(dead_letter_id: str) -> dict[str, Any]:
        return svc.requeue_dead_letter(dead_letter_id, actor="api")

    @app.get("/admin/config")
    def get_config() -> dict[str, Any]:
        return svc.config_summary()

    @app.post("/admin/config/reload")
    def reload_config(document: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
        return svc.reload_config(document=document or None)

    return app


app = create_app()
