"""FastAPI entrypoint: background schedulers plus the draft-review and manual-trigger endpoints."""

from __future__ import annotations

import logging
import threading

from dotenv import load_dotenv
from fastapi import Body, FastAPI, Header, HTTPException

from inbox_engine.agents.dispatcher import DispatchResult
from inbox_engine.agents.draft_review import (
    DraftNotFoundError,
    DraftStateError,
    OutsideWorkingHoursError,
)
from inbox_engine.config import load_settings
from inbox_engine.engine import JOB_FOLLOW_UPS, JOB_NAMES, JOB_POLL, JOB_REMINDERS, build_engine
from inbox_engine.schemas import (
    DraftActionResponse,
    DraftEditRequest,
    DraftListResponse,
    DraftResponse,
    EngineRunResponse,
    HealthResponse,
    StageResetRequest,
    StageResetResponse,
)
from inbox_engine.services.engine_store import LeadRecord, MessageRecord, to_db_time
from inbox_engine.services.scheduler import PeriodicJobScheduler


load_dotenv()
settings = load_settings()
app = FastAPI(title="Inbox Automation Engine", version="0.1.0")
logger = logging.getLogger(__name__)

engine = build_engine(settings)

# Set on shutdown so a running job stops before its next tenant.
_shutdown_event = threading.Event()


def _run_job(job_name: str) -> None:
    """Scheduler callback that executes one cycle of a periodic job across all tenants."""

    engine.job(job_name).run_all(should_stop=_shutdown_event.is_set)


def _build_scheduler(job_name: str, interval_seconds: int) -> PeriodicJobScheduler:
    return PeriodicJobScheduler(
        name=job_name,
        enabled=settings.engine_enabled,
        interval_seconds=interval_seconds,
        run_job=lambda: _run_job(job_name),
        logger=logger,
    )


schedulers = {
    JOB_POLL: _build_scheduler(JOB_POLL, settings.poll_interval_seconds),
    JOB_FOLLOW_UPS: _build_scheduler(JOB_FOLLOW_UPS, settings.follow_up_interval_seconds),
    JOB_REMINDERS: _build_scheduler(JOB_REMINDERS, settings.reminder_interval_seconds),
}


@app.on_event("startup")
def startup() -> None:
    """Start the poll, follow-up and reminder schedulers when the engine is enabled."""

    _shutdown_event.clear()
    for scheduler in schedulers.values():
        scheduler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    """Stop schedulers after their in-flight tenant and release the model HTTP client."""

    _shutdown_event.set()
    for scheduler in schedulers.values():
        scheduler.stop()
    engine.close()


def _extract_bearer_token(authorization: str | None) -> str | None:
    """Parse Authorization header as Bearer token, returning None if absent/invalid."""

    if not authorization:
        return None
    parts = authorization.strip().split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def _assert_engine_trigger_authorized(
    *,
    x_engine_secret: str | None,
    authorization: str | None,
) -> None:
    """Require ENGINE_TRIGGER_SECRET when configured; open for local runs otherwise."""

    expected = settings.engine_trigger_secret
    if not expected:
        return
    provided = x_engine_secret or _extract_bearer_token(authorization)
    if provided != expected:
        raise HTTPException(status_code=401, detail="Unauthorized engine run trigger.")


def _draft_response(message: MessageRecord, lead: LeadRecord | None) -> DraftResponse:
    return DraftResponse(
        id=message.id,
        lead_id=message.lead_id,
        lead_name=lead.name if lead else None,
        to_email=message.to_email,
        subject=message.subject,
        content=message.content,
        is_ai_generated=message.is_ai_generated,
        ai_approval_needed=message.ai_approval_needed,
        ai_confidence=message.ai_confidence,
        classification=message.classification,
        in_reply_to_id=message.in_reply_to_id,
        created_at=to_db_time(message.created_at) or "",
    )


def _action_response(result: DispatchResult) -> DraftActionResponse:
    if result.sent:
        return DraftActionResponse(
            status="sent",
            message_id=result.message.id,
            provider_message_id=result.message.provider_message_id,
        )
    return DraftActionResponse(status="error", message_id=result.message.id, error=result.error)


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        engine_enabled=settings.engine_enabled,
        schedulers={name: scheduler.is_running for name, scheduler in schedulers.items()},
    )


@app.get("/api/tenants/{tenant_id}/drafts", response_model=DraftListResponse)
def list_drafts(tenant_id: str) -> DraftListResponse:
    """Outbound drafts awaiting approval for one tenant, newest first."""

    drafts = engine.draft_review.list_pending_drafts(tenant_id)
    return DraftListResponse(
        tenant_id=tenant_id,
        drafts=[_draft_response(message, lead) for message, lead in drafts],
    )


@app.patch("/api/drafts/{message_id}", response_model=DraftActionResponse)
def edit_draft(message_id: str, payload: DraftEditRequest = Body(...)) -> DraftActionResponse:
    try:
        message = engine.draft_review.edit_draft(
            message_id,
            subject=payload.subject,
            content=payload.content,
        )
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DraftStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return DraftActionResponse(status="edited", message_id=message.id)


@app.post("/api/drafts/{message_id}/approve", response_model=DraftActionResponse)
def approve_draft(message_id: str) -> DraftActionResponse:
    """Send an approved draft now; refused with 423 outside the tenant's working hours."""

    try:
        result = engine.draft_review.approve_and_send(message_id)
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DraftStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except OutsideWorkingHoursError as exc:
        raise HTTPException(status_code=423, detail=str(exc)) from exc
    return _action_response(result)


@app.post("/api/drafts/{message_id}/reject", response_model=DraftActionResponse)
def reject_draft(message_id: str) -> DraftActionResponse:
    try:
        engine.draft_review.reject_draft(message_id)
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except DraftStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return DraftActionResponse(status="rejected", message_id=message_id)


@app.post("/api/leads/{lead_id}/reset-stage", response_model=StageResetResponse)
def reset_lead_stage(lead_id: str, payload: StageResetRequest = Body(...)) -> StageResetResponse:
    """Manual stage override; the only way to move a lead backwards."""

    try:
        lead = engine.draft_review.reset_stage(lead_id, payload.stage)
    except DraftNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return StageResetResponse(lead_id=lead.id, stage=lead.stage)


@app.post("/api/engine/run/{job}", response_model=EngineRunResponse)
def run_engine_job(
    job: str,
    x_engine_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> EngineRunResponse:
    """Run one cycle of `poll`, `follow-ups` or `reminders` synchronously (external cron or local use)."""

    _assert_engine_trigger_authorized(x_engine_secret=x_engine_secret, authorization=authorization)
    if job not in JOB_NAMES:
        raise HTTPException(status_code=404, detail=f"Unknown job {job!r}; expected one of {', '.join(JOB_NAMES)}")
    summary = engine.job(job).run_all(should_stop=_shutdown_event.is_set)
    return EngineRunResponse(
        job=summary.job,
        tenants_processed=summary.tenants_processed,
        tenants_failed=summary.tenants_failed,
        summary=summary.totals(),
    )
