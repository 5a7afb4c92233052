from __future__ import annotations

import logging
import time
from dataclasses import asdict, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from civic_intel.config import Settings, settings as default_settings
from civic_intel.contracts.payloads import (
    ComplaintInput,
    ComplaintStatusView,
    DepartmentFilters,
    HotspotFilters,
    StatusHistoryView,
    SubmitReceipt,
)
from civic_intel.domain.errors import (
    ClassificationUnavailable,
    ComplaintBusy,
    ComplaintNotFound,
    InvalidTransition,
    NoDepartmentMapping,
    PersistenceFailure,
    PipelineCancelled,
    ValidationError,
)
from civic_intel.domain.geo import make_location
from civic_intel.domain.models import (
    ClassificationResult,
    Complaint,
    ComplaintEvent,
    DeadLetter,
    ExtractedEntities,
    RoutingDecision,
    StatusHistoryEntry,
)
from civic_intel.domain.policy import ConfigHandle, PipelineConfig, build_pipeline_config, parse_mapping_document
from civic_intel.domain.state_machine import StateMachine
from civic_intel.domain.states import (
    ENTRY_TIMESTAMPS,
    REASSIGNABLE_STATES,
    Category,
    ComplaintStatus,
    HotspotStatus,
)
from civic_intel.events.bus import EventBus, InMemoryEventBus
from civic_intel.events.contracts import build_event_envelope
from civic_intel.infra.collaborators import build_collaborators
from civic_intel.infra.repositories import (
    ComplaintRepository,
    RepositoryConflict,
    RepositoryError,
    build_repository,
)
from civic_intel.pipeline.hotspots import HotspotDetector
from civic_intel.pipeline.nodes import PipelineNodes
from civic_intel.pipeline.priority import PriorityScorer
from civic_intel.pipeline.resilience import ResilientCaller
from civic_intel.pipeline.routing import RoutingEngine
from civic_intel.services.notification_service import NotificationService
from civic_intel.services.tracking import TrackingNumberGenerator

logger = logging.getLogger(__name__)

REVIEW_LOW_CONFIDENCE = "low_confidence"
REVIEW_CLASSIFICATION_UNAVAILABLE = "classification_unavailable"
REVIEW_NO_MAPPING = "no_department_mapping"
REVIEW_DEADLINE = "pipeline_deadline"
REVIEW_PIPELINE_ERROR = "pipeline_error"

# Citizen-facing history notes; internal reasons stay in the event log.
_REVIEW_NOTES = {
    REVIEW_LOW_CONFIDENCE: "Queued for manual review",
    REVIEW_CLASSIFICATION_UNAVAILABLE: "Queued for manual review",
    REVIEW_NO_MAPPING: "Queued for manual triage",
    REVIEW_DEADLINE: "Queued for manual review",
    REVIEW_PIPELINE_ERROR: "Queued for manual review",
}


class ComplaintLifecycleService:
    """Owns the complaint lifecycle: submission, the pipeline pass and every later transition."""

    def __init__(
        self,
        repo: ComplaintRepository | None = None,
        *,
        cfg: Settings = default_settings,
        bus: EventBus | None = None,
        collaborators: dict[str, Any] | None = None,
        caller: ResilientCaller | None = None,
        config: ConfigHandle | None = None,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        tracking: TrackingNumberGenerator | None = None,
    ) -> None:
        self.cfg = cfg
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        if repo is None:
            repo, err = build_repository(cfg)
            if err:
                logger.warning("Persistence fallback: %s", err)
        self.repo = repo
        self.bus = bus or InMemoryEventBus()
        self.config = config or ConfigHandle(build_pipeline_config(cfg))
        self.caller = caller or ResilientCaller.from_settings(cfg, sleep=sleep)
        if self.caller.dead_letters is None:
            self.caller.dead_letters = self
        self.collaborators = collaborators if collaborators is not None else build_collaborators(cfg)
        self.tracking = tracking or TrackingNumberGenerator(clock=self.clock)

        self.sm = StateMachine()
        self.scorer = PriorityScorer()
        self.router = RoutingEngine()
        self.detector = HotspotDetector(
            self.repo, self.config, publish=self._publish_hotspot_event, clock=self.clock, persist=self._persist
        )
        self.nodes = PipelineNodes(
            self.collaborators,
            self.caller,
            density=self.detector.density_at,
            scorer=self.scorer,
            router=self.router,
        )
        self.dag = self.nodes.build_dag()

        self.notifications = NotificationService(self.repo, self.config)
        self.bus.subscribe("*", self.notifications.handle_event)

        self._inflight: set[str] = set()
        self._inflight_lock = Lock()

    # -- submission --------------------------------------------------------

    def submit(self, payload: ComplaintInput | dict[str, Any], actor: str = "citizen") -> dict[str, Any]:
        data = self._validate_input(payload)
        tracking_number = self.tracking.issue(
            lambda number: self._persist("reserve_tracking_number", lambda: self.repo.reserve_tracking_number(number))
        )

        now = self._now()
        complaint = Complaint(
            citizen_id=data.citizen_id,
            tracking_number=tracking_number,
            location=make_location(data.location.lat, data.location.lon),
            text=data.text,
            language=data.language,
            audio_ref=data.audio_ref,
            image_refs=list(data.image_refs),
            affected_population_estimate=data.affected_population_estimate,
            status_history=[asdict(StatusHistoryEntry(ComplaintStatus.SUBMITTED.value, actor, now, "Complaint received"))],
            submitted_at=now,
            updated_at=now,
        )
        row = self._persist("create_complaint", lambda: self.repo.create_complaint(complaint.to_row()))
        logger.info("Complaint %s submitted as %s", row["id"], tracking_number)
        self._emit(
            "complaint.submitted",
            {"tracking_number": tracking_number, "modalities": self._input_modalities(data)},
            complaint_id=row["id"],
            actor=actor,
        )

        return SubmitReceipt(
            complaint_id=row["id"],
            tracking_number=tracking_number,
            status=row["status"],
            estimated_resolution_days=self.config.current().default_resolution_days,
        ).model_dump()

    # -- pipeline pass ------------------------------------------------------

    def process(self, complaint_id: str, actor: str = "pipeline") -> dict[str, Any]:
        with self._inflight_lock:
            if complaint_id in self._inflight:
                raise ComplaintBusy(f"Complaint {complaint_id} is already being processed")
            self._inflight.add(complaint_id)
        try:
            return self._process(complaint_id, actor)
        finally:
            with self._inflight_lock:
                self._inflight.discard(complaint_id)

    def _process(self, complaint_id: str, actor: str) -> dict[str, Any]:
        row = self._require(complaint_id)
        row = self._transition(row, ComplaintStatus.PROCESSING, actor, notes="Analysis started")

        cfg = self.config.current()
        deadline = self.caller.deadline_in(self.cfg.pipeline_deadline_seconds)
        try:
            ctx = self.dag.run({"complaint": row, "config": cfg, "deadline": deadline})
            return self._record_pass(row, ctx, cfg, actor)
        except PipelineCancelled as exc:
            logger.warning("Pipeline cancelled for %s: %s", complaint_id, exc)
            return self._to_review(row, REVIEW_DEADLINE, actor, cfg.manual_review_queue, detail=str(exc))
        except ClassificationUnavailable as exc:
            logger.warning("Classification unavailable for %s: %s", complaint_id, exc)
            return self._to_review(row, REVIEW_CLASSIFICATION_UNAVAILABLE, actor, cfg.manual_review_queue, detail=str(exc))
        except Exception as exc:
            logger.exception("Pipeline pass for %s failed", complaint_id)
            try:
                return self._to_review(
                    row, REVIEW_PIPELINE_ERROR, actor, cfg.manual_review_queue, detail=type(exc).__name__
                )
            except InvalidTransition:
                # The pass had already moved the complaint out of PROCESSING.
                raise exc

    def _record_pass(
        self,
        row: dict[str, Any],
        ctx: dict[str, Any],
        cfg: PipelineConfig,
        actor: str,
    ) -> dict[str, Any]:
        complaint_id = row["id"]
        classification: ClassificationResult = ctx["normalization"]
        decision: RoutingDecision | None = ctx["routing"]["decision"]
        updates: dict[str, Any] = {
            "classification": classification.to_dict(),
            "priority": ctx["priority"]["value"],
            "priority_detail": ctx["priority"]["detail"],
            "routing": decision.to_dict() if decision else None,
            "processed_at": self._now(),
        }
        transcript = ctx["transcription"]["result"]
        detected = transcript.get("language") if isinstance(transcript, dict) else None
        if not row.get("language") and isinstance(detected, str) and detected.strip():
            updates["language"] = detected.strip()

        logger.info(
            "Pipeline for %s: category=%s confidence=%.3f priority=%s order=%s",
            complaint_id,
            classification.category.value,
            classification.confidence,
            updates["priority"],
            ctx["execution_order"],
        )

        if classification.needs_manual_review:
            updates["assigned_department"] = cfg.manual_review_queue
            return self._to_review(
                row,
                REVIEW_LOW_CONFIDENCE,
                actor,
                cfg.manual_review_queue,
                updates=updates,
                detail=f"confidence {classification.confidence:.3f} < {cfg.confidence_threshold}",
            )
        if decision is None:
            updates["assigned_department"] = cfg.manual_triage_department
            return self._to_review(
                row,
                REVIEW_NO_MAPPING,
                actor,
                cfg.manual_triage_department,
                updates=updates,
                detail=f"no mapping for {ctx['routing']['unmapped_category']}",
            )

        updates["assigned_department"] = decision.primary_department
        updated = self._transition(
            row,
            ComplaintStatus.ASSIGNED,
            actor,
            notes=f"Assigned to {decision.primary_department}",
            updates=updates,
        )
        self._publish_routing(updated, decision, actor)
        return updated

    def _to_review(
        self,
        row: dict[str, Any],
        reason: str,
        actor: str,
        queue: str,
        *,
        updates: dict[str, Any] | None = None,
        detail: str | None = None,
    ) -> dict[str, Any]:
        changes = dict(updates or {})
        changes.setdefault("assigned_department", queue)
        return self._transition(
            row,
            ComplaintStatus.NEEDS_REVIEW,
            actor,
            notes=_REVIEW_NOTES.get(reason, "Queued for manual review"),
            updates=changes,
            event_extra={"reason": reason, "detail": detail, "queue": queue},
        )

    def _publish_routing(self, row: dict[str, Any], decision: RoutingDecision, actor: str) -> None:
        self._emit("routing.decided", decision.to_dict(), complaint_id=row["id"], actor=actor)
        if decision.escalated:
            escalated_to = [d for d in decision.secondary_departments if d in decision.notified_departments]
            self._emit(
                "complaint.escalated",
                {
                    "category": decision.category.value,
                    "priority": decision.priority,
                    "escalation_threshold": decision.escalation_threshold,
                    "departments": escalated_to,
                },
                complaint_id=row["id"],
                actor=actor,
            )

    # -- reads --------------------------------------------------------------

    def get_status(self, ref: str) -> dict[str, Any]:
        row = self.repo.get_by_tracking_number(ref) if ref.upper().startswith("CMP-") else None
        if row is None:
            row = self.repo.get_complaint(ref)
        if row is None:
            raise ComplaintNotFound(f"Complaint not found: {ref}")

        classification = row.get("classification") or {}
        category = classification.get("category")
        days = self.config.current().resolution_days(Category(category) if category else None)
        return ComplaintStatusView(
            complaint_id=row["id"],
            tracking_number=row["tracking_number"],
            status=row["status"],
            category=category,
            priority=row.get("priority"),
            assigned_department=row.get("assigned_department"),
            estimated_resolution_days=days,
            submitted_at=row["submitted_at"],
            updated_at=row["updated_at"],
            status_history=[
                StatusHistoryView(
                    status=h["status"],
                    timestamp=h["timestamp"],
                    actor=h["actor"],
                    notes=h.get("notes"),
                )
                for h in row.get("status_history") or []
            ],
        ).model_dump()

    def list_for_department(
        self,
        department: str,
        filters: DepartmentFilters | dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        f = self._coerce_filters(DepartmentFilters, filters)
        status = self._parse_status(f.status).value if f.status else None
        category = self._parse_category(f.category).value if f.category else None

        rows = self.repo.list_by_department(department, status=status)
        if category:
            rows = [r for r in rows if (r.get("classification") or {}).get("category") == category]
        if f.min_priority is not None:
            rows = [r for r in rows if (r.get("priority") or 0) >= f.min_priority]
        rows.sort(key=lambda r: (-(r.get("priority") or 0), str(r.get("submitted_at"))))
        return rows[: f.limit]

    def get_hotspots(self, filters: HotspotFilters | dict[str, Any] | None = None) -> list[dict[str, Any]]:
        f = self._coerce_filters(HotspotFilters, filters)
        category = self._parse_category(f.category).value if f.category else None
        rows = self.repo.list_hotspots(category=category)
        if f.status:
            try:
                status = HotspotStatus(f.status.strip().upper()).value
            except ValueError as exc:
                raise ValidationError(f"Unknown hotspot status: {f.status}") from exc
            rows = [r for r in rows if r.get("status") == status]
        else:
            rows = [r for r in rows if r.get("status") != HotspotStatus.RESOLVED.value]
        if f.min_count is not None:
            rows = [r for r in rows if int(r.get("complaint_count") or 0) >= f.min_count]
        if f.geohash_prefix:
            rows = [r for r in rows if str((r.get("center") or {}).get("geohash", "")).startswith(f.geohash_prefix)]
        return rows

    def list_events(self, complaint_id: str) -> list[dict[str, Any]]:
        self._require(complaint_id)
        return self.repo.list_events(complaint_id)

    # -- admin operations ---------------------------------------------------

    def override_priority(self, complaint_id: str, value: int, justification: str, actor: str) -> dict[str, Any]:
        row = self._require(complaint_id)
        if ComplaintStatus(row["status"]) == ComplaintStatus.CLOSED:
            raise InvalidTransition("Priority cannot be overridden on a closed complaint")

        detail = self.scorer.apply_override(row.get("priority_detail"), value, justification, actor)
        updates: dict[str, Any] = {"priority": int(value), "priority_detail": detail}

        previous: RoutingDecision | None = None
        fresh: RoutingDecision | None = None
        if row.get("routing"):
            previous = RoutingDecision.from_dict(row["routing"])
            try:
                fresh = self.router.reescalate(previous, int(value), self.config.current())
            except NoDepartmentMapping:
                logger.warning("Mapping for %s removed; routing of %s left unchanged", previous.category.value, complaint_id)
            else:
                updates["routing"] = fresh.to_dict()

        updated = self._persist("update_complaint", lambda: self.repo.update_complaint(complaint_id, updates))
        logger.info("Priority of %s overridden to %s by %s", complaint_id, value, actor)
        self._emit(
            "priority.overridden",
            {"computed": detail.get("computed"), "override": int(value), "justification": detail["justification"]},
            complaint_id=complaint_id,
            actor=actor,
        )

        if previous is not None and fresh is not None:
            newly_notified = [d for d in fresh.notified_departments if d not in previous.notified_departments]
            if fresh.escalated and newly_notified:
                self._emit(
                    "complaint.escalated",
                    {
                        "category": fresh.category.value,
                        "priority": fresh.priority,
                        "escalation_threshold": fresh.escalation_threshold,
                        "departments": newly_notified,
                    },
                    complaint_id=complaint_id,
                    actor=actor,
                )
        return updated

    def reassign_department(
        self,
        complaint_id: str,
        department: str,
        actor: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        department = str(department or "").strip()
        if not department:
            raise ValidationError("Department is required")
        cfg = self.config.current()
        if department not in cfg.known_departments() | {cfg.manual_review_queue}:
            raise ValidationError(f"Unknown department: {department}")

        row = self._require(complaint_id)
        status = ComplaintStatus(row["status"])
        if status not in REASSIGNABLE_STATES:
            raise InvalidTransition(f"Complaint in {status.value} cannot be reassigned")

        previous = row.get("assigned_department")
        note = f"Reassigned from {previous or 'unassigned'} to {department}" + (f": {notes}" if notes else "")

        if status == ComplaintStatus.NEEDS_REVIEW:
            updated = self._transition(
                row,
                ComplaintStatus.ASSIGNED,
                actor,
                notes=note,
                updates={"assigned_department": department},
            )
        else:
            # Same status, new owner: history still records the handover.
            entry = StatusHistoryEntry(status.value, actor, self._now(), note)
            updated = self._persist(
                "update_complaint",
                lambda: self.repo.update_complaint(
                    complaint_id,
                    {"assigned_department": department},
                    history_entry=asdict(entry),
                    expected_status=status.value,
                ),
            )
        logger.info("Complaint %s reassigned %s -> %s by %s", complaint_id, previous, department, actor)
        self._emit(
            "department.reassigned",
            {"from": previous, "to": department, "notes": notes},
            complaint_id=complaint_id,
            actor=actor,
        )
        return updated

    def transition(
        self,
        complaint_id: str,
        target: str | ComplaintStatus,
        actor: str,
        notes: str | None = None,
        department: str | None = None,
    ) -> dict[str, Any]:
        target_status = self._parse_status(target)
        if target_status == ComplaintStatus.PROCESSING:
            return self.process(complaint_id, actor=actor)

        row = self._require(complaint_id)
        current = ComplaintStatus(row["status"])
        if target_status == ComplaintStatus.ASSIGNED and current == ComplaintStatus.NEEDS_REVIEW:
            return self.resolve_review(complaint_id, department=department, actor=actor, notes=notes)

        updates: dict[str, Any] = {}
        if department:
            if target_status != ComplaintStatus.ASSIGNED:
                raise ValidationError("A department can only be given when assigning")
            updates["assigned_department"] = department
        return self._transition(row, target_status, actor, notes=notes, updates=updates)

    def resolve_review(
        self,
        complaint_id: str,
        *,
        category: str | None = None,
        department: str | None = None,
        actor: str = "reviewer",
        notes: str | None = None,
    ) -> dict[str, Any]:
        """Close out manual review by confirming a category and/or department, then assign."""
        row = self._require(complaint_id)
        if ComplaintStatus(row["status"]) != ComplaintStatus.NEEDS_REVIEW:
            raise InvalidTransition(f"Complaint {complaint_id} is not awaiting review")

        cfg = self.config.current()
        updates: dict[str, Any] = {}
        classification = ClassificationResult.from_dict(row["classification"]) if row.get("classification") else None

        if category:
            chosen = self._parse_category(category)
            if classification is None:
                classification = ClassificationResult(
                    category=chosen,
                    confidence=1.0,
                    summary=str(row.get("text") or "")[:200],
                    entities=ExtractedEntities(),
                    suggested_priority=5,
                    needs_manual_review=False,
                    modalities=("manual",),
                )
            else:
                classification = replace(classification, category=chosen, needs_manual_review=False)
            value, detail = self.scorer.score(
                classification,
                density=self.detector.density_at(chosen.value, row["location"]),
                affected_population=row.get("affected_population_estimate"),
            )
            updates.update({"classification": classification.to_dict(), "priority": value, "priority_detail": detail})
        elif classification is not None:
            updates["classification"] = replace(classification, needs_manual_review=False).to_dict()

        decision: RoutingDecision | None = None
        if classification is not None:
            priority = int(updates.get("priority", row.get("priority") or 5))
            try:
                decision = self.router.route(
                    classification.category,
                    priority,
                    cfg,
                    implicated=classification.implicated_categories(),
                    primary_department=department or None,
                )
            except NoDepartmentMapping:
                if not department:
                    raise ValidationError(
                        f"No department mapping for {classification.category.value}; a department is required"
                    ) from None

        target_department = department or (decision.primary_department if decision else None)
        if not target_department:
            raise ValidationError("A category or department is required to resolve review")

        updates["assigned_department"] = target_department
        if decision is not None:
            updates["routing"] = decision.to_dict()
        updated = self._transition(
            row,
            ComplaintStatus.ASSIGNED,
            actor,
            notes=notes or f"Assigned to {target_department} after review",
            updates=updates,
        )
        if decision is not None:
            self._publish_routing(updated, decision, actor)
        return updated

    def run_hotspot_detection(self, now: datetime | None = None) -> dict[str, Any]:
        return self.detector.run(now).to_dict()

    def list_dead_letters(self, status: str | None = None) -> list[dict[str, Any]]:
        return self.repo.list_dead_letters(status=status.upper() if status else None)

    def requeue_dead_letter(self, dead_letter_id: str, actor: str = "admin") -> dict[str, Any]:
        row = self.repo.get_dead_letter(dead_letter_id)
        if not row:
            raise ComplaintNotFound(f"Dead letter not found: {dead_letter_id}")
        if row.get("status") != "PENDING":
            raise ValidationError(f"Dead letter {dead_letter_id} is already {row.get('status')}")

        dead_letter = self._persist(
            "update_dead_letter",
            lambda: self.repo.update_dead_letter(dead_letter_id, {"status": "REQUEUED", "requeued_by": actor}),
        )
        complaint = None
        complaint_id = row.get("complaint_id")
        if complaint_id:
            current = self._require(str(complaint_id))
            if current["status"] == ComplaintStatus.NEEDS_REVIEW.value:
                complaint = self.process(str(complaint_id), actor=actor)
            else:
                complaint = current
        return {"dead_letter": dead_letter, "complaint": complaint}

    def reload_config(
        self,
        document: dict[str, Any] | None = None,
        path: str | None = None,
        actor: str = "admin",
    ) -> dict[str, Any]:
        if document is not None:
            new = self.config.replace_mappings(parse_mapping_document(document), source="api")
        else:
            source = path or self.cfg.department_mappings_path
            if not source:
                raise ValidationError("No mapping document or DEPARTMENT_MAPPINGS_PATH to reload from")
            try:
                new = self.config.reload_from_file(source)
            except OSError as exc:
                raise ValidationError(f"Cannot read department mappings from {source}: {exc}") from exc
            except ValueError as exc:
                raise ValidationError(f"Invalid department mappings in {source}: {exc}") from exc
        self._emit(
            "config.reloaded",
            {"version": new.version, "source": new.source, "categories": len(new.mappings)},
            actor=actor,
        )
        return self.config_summary(new)

    def config_summary(self, config: PipelineConfig | None = None) -> dict[str, Any]:
        c = config or self.config.current()
        return {
            "version": c.version,
            "source": c.source,
            "categories": sorted(cat.value for cat in c.mappings),
            "confidence_threshold": c.confidence_threshold,
        }

    # -- dead-letter sink ---------------------------------------------------

    def dead_letter(
        self,
        *,
        operation: str,
        error: str,
        attempts: int,
        complaint_id: str | None,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        record = DeadLetter(
            operation=operation,
            error=error,
            attempts=attempts,
            complaint_id=complaint_id,
            payload=payload,
            created_at=self._now(),
        )
        row = self._persist("add_dead_letter", lambda: self.repo.add_dead_letter(asdict(record)))
        self._emit(
            "complaint.dead_lettered",
            {"operation": operation, "dead_letter_id": row["id"], "attempts": attempts},
            complaint_id=complaint_id,
        )
        return row

    # -- internals ------------------------------------------------------------

    def _transition(
        self,
        row: dict[str, Any],
        target: ComplaintStatus,
        actor: str,
        *,
        notes: str | None = None,
        updates: dict[str, Any] | None = None,
        event_extra: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        current = ComplaintStatus(row["status"])
        outcome = self.sm.transition(current, target)

        now = self._now()
        changes = dict(updates or {})
        changes["status"] = target.value
        stamp = ENTRY_TIMESTAMPS.get(target)
        if stamp:
            changes.setdefault(stamp, now)
        entry = StatusHistoryEntry(target.value, actor, now, notes)

        try:
            updated = self._persist(
                "update_complaint",
                lambda: self.repo.update_complaint(
                    row["id"],
                    changes,
                    history_entry=asdict(entry),
                    expected_status=current.value,
                ),
            )
        except RepositoryConflict as exc:
            raise InvalidTransition(str(exc)) from exc

        logger.info("Complaint %s: %s -> %s by %s", row["id"], current.value, target.value, actor)
        extra = event_extra or {}
        for event_type in outcome.events:
            self._emit(event_type, self._transition_payload(event_type, current, target, updated, notes, extra), complaint_id=row["id"], actor=actor)
        return updated

    @staticmethod
    def _transition_payload(
        event_type: str,
        current: ComplaintStatus,
        target: ComplaintStatus,
        row: dict[str, Any],
        notes: str | None,
        extra: dict[str, Any],
    ) -> dict[str, Any]:
        if event_type == "complaint.status.changed":
            return {"from": current.value, "to": target.value, "notes": notes}
        if event_type == "complaint.assigned":
            return {"department": row.get("assigned_department"), "priority": row.get("priority")}
        if event_type == "complaint.flagged.for_review":
            return {"reason": extra.get("reason", "manual"), "detail": extra.get("detail"), "queue": extra.get("queue")}
        if event_type == "feedback.requested":
            return {"tracking_number": row["tracking_number"]}
        return {}

    def _emit(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        complaint_id: str | None = None,
        hotspot_id: str | None = None,
        actor: str = "system",
    ) -> None:
        version = self.config.current().version
        envelope = build_event_envelope(
            event_type=event_type,
            actor=actor,
            payload=payload,
            complaint_id=complaint_id,
            hotspot_id=hotspot_id,
            config_version=version,
            correlation_id=complaint_id or hotspot_id,
        )
        event = ComplaintEvent(
            event_type=event_type,
            actor=actor,
            payload=payload,
            complaint_id=complaint_id,
            hotspot_id=hotspot_id,
            config_version=version,
            created_at=self._now(),
        )
        stored = self._persist("add_event", lambda: self.repo.add_event(asdict(event)))
        envelope["event_id"] = stored["id"]
        envelope["created_at"] = stored["created_at"]
        self.bus.publish(event_type, envelope)

    def _publish_hotspot_event(self, event_type: str, payload: dict[str, Any], hotspot_id: str | None) -> None:
        self._emit(event_type, payload, hotspot_id=hotspot_id, actor="hotspot-detector")

    def _persist(self, operation: str, fn: Callable[[], Any]) -> Any:
        attempts = max(1, self.cfg.persistence_retry_attempts)
        last: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except RepositoryConflict:
                raise
            except RepositoryError as exc:
                last = exc
                logger.warning("Repository %s failed (attempt %s/%s): %s", operation, attempt, attempts, exc)
                if attempt < attempts:
                    self._sleep(self.caller.retry.delay_for(attempt))
        raise PersistenceFailure(f"{operation} failed after {attempts} attempts: {last}")

    def _require(self, complaint_id: str) -> dict[str, Any]:
        row = self.repo.get_complaint(complaint_id)
        if not row:
            raise ComplaintNotFound(f"Complaint not found: {complaint_id}")
        return row

    def _now(self) -> str:
        return self.clock().isoformat()

    @staticmethod
    def _validate_input(payload: ComplaintInput | dict[str, Any]) -> ComplaintInput:
        if isinstance(payload, ComplaintInput):
            data = payload
        else:
            try:
                data = ComplaintInput.model_validate(payload)
            except PydanticValidationError as exc:
                raise ValidationError(f"Invalid complaint: {exc.errors()}") from exc
        if not data.has_content():
            raise ValidationError("A complaint needs a text description, an audio recording or an image")
        return data

    @staticmethod
    def _input_modalities(data: ComplaintInput) -> list[str]:
        out = []
        if data.text:
            out.append("text")
        if data.audio_ref:
            out.append("audio")
        if data.image_refs:
            out.append("image")
        return out

    @staticmethod
    def _coerce_filters(model: Any, filters: Any) -> Any:
        if filters is None:
            return model()
        if isinstance(filters, model):
            return filters
        try:
            return model.model_validate(filters)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid filters: {exc.errors()}") from exc

    @staticmethod
    def _parse_status(value: str | ComplaintStatus) -> ComplaintStatus:
        if isinstance(value, ComplaintStatus):
            return value
        try:
            return ComplaintStatus(str(value).strip().upper())
        except ValueError as exc:
            raise ValidationError(f"Unknown complaint status: {value}") from exc

    @staticmethod
    def _parse_category(value: str) -> Category:
        try:
            return Category(str(value).strip().upper().replace(" ", "_").replace("-", "_"))
        except ValueError as exc:
            raise ValidationError(f"Unknown category: {value}") from exc

    def shutdown(self) -> None:
        self.caller.shutdown()
