"""HTTP routes: the cron tick, the inbound reply webhook and operator actions.

Shared secrets are compared with ``hmac.compare_digest``.  Store and mailer
work is blocking, so every handler runs the service call in a worker
thread.  Domain errors are mapped to status codes by ``api.errors``.
"""

from __future__ import annotations

import asyncio
import hmac
from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from outreach.domain.types import TaskOutcome, TaskStatus
from outreach.email.parser import html_to_text, token_from_address
from outreach.observability.metrics import TICK_RUNS

logger = structlog.get_logger()

router = APIRouter()


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class CreateTaskRequest(BaseModel):
    account_id: str
    task_type: str
    goal: str = ""
    context: dict[str, Any] = Field(default_factory=dict)
    contact_id: str | None = None
    contact_email: str | None = None
    contact_name: str | None = None
    assigned_agent: str = "retention"
    requires_approval: bool = False


class ApproveRequest(BaseModel):
    message: str | None = None


class DismissRequest(BaseModel):
    reason: str | None = None


class StatusUpdateRequest(BaseModel):
    status: TaskStatus
    outcome: TaskOutcome | None = None
    reason: str | None = None
    message: str | None = None


class InboundReplyRequest(BaseModel):
    """Inbound reply as forwarded by the mail provider.

    The reply token is taken from ``reply_token`` or parsed from the
    ``to`` address (``reply+<token>@...``).  Providers that only forward an
    HTML part send it as ``html``.
    """

    body: str = ""
    html: str | None = None
    reply_token: str | None = None
    to: str | None = None
    from_email: str | None = None


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


def _secret_matches(provided: str | None, expected: str) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def verify_cron_secret(request: Request) -> None:
    """Accept ``X-Cron-Secret`` or ``Authorization: Bearer <secret>``.

    Raises:
        HTTPException: 500 if no secret is configured, 401 on mismatch.
    """
    secret = request.app.state.settings.cron_secret.get_secret_value()
    if not secret:
        logger.error("cron_secret_not_configured")
        raise HTTPException(status_code=500, detail="Cron secret not configured")

    provided = request.headers.get("X-Cron-Secret")
    if not provided:
        auth = request.headers.get("Authorization", "")
        if auth.lower().startswith("bearer "):
            provided = auth[7:].strip()

    if not _secret_matches(provided, secret):
        logger.warning("cron_secret_rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")


def verify_webhook_secret(request: Request) -> None:
    secret = request.app.state.settings.inbound_webhook_secret.get_secret_value()
    if not secret:
        logger.error("inbound_webhook_secret_not_configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")
    if not _secret_matches(request.headers.get("X-Webhook-Secret"), secret):
        logger.warning("inbound_webhook_secret_rejected")
        raise HTTPException(status_code=401, detail="Unauthorized")


def _services(request: Request) -> dict[str, Any]:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@router.api_route("/cron/tick", methods=["GET", "POST"])
async def cron_tick(request: Request) -> JSONResponse:
    """Run one scheduler tick.

    Returns 200 when every item succeeded, 207 with the error list when some
    failed, and 500 when the tick could not run at all.
    """
    verify_cron_secret(request)
    scheduler = _services(request)["scheduler"]

    try:
        summary = await asyncio.to_thread(scheduler.tick)
    except Exception as exc:
        logger.exception("tick_failed")
        TICK_RUNS.labels(result="failed").inc()
        return JSONResponse(status_code=500, content={"status": "failed", "error": str(exc)})

    if summary.has_errors:
        TICK_RUNS.labels(result="partial").inc()
        logger.warning("tick_partial_failure", errors=len(summary.errors))
        return JSONResponse(status_code=207, content={"status": "partial", **summary.model_dump()})

    TICK_RUNS.labels(result="ok").inc()
    return JSONResponse(status_code=200, content={"status": "ok", **summary.model_dump()})


# ---------------------------------------------------------------------------
# Inbound replies
# ---------------------------------------------------------------------------


@router.post("/webhooks/inbound-reply")
async def inbound_reply(request: Request, payload: InboundReplyRequest) -> dict[str, Any]:
    verify_webhook_secret(request)
    token = payload.reply_token or (token_from_address(payload.to) if payload.to else None)
    if not token:
        logger.warning("inbound_reply_missing_token", to=payload.to)
        return {"status": "skipped", "reason": "missing_reply_token"}

    body = payload.body or (html_to_text(payload.html) if payload.html else "")
    handler = _services(request)["reply_handler"]
    result = await asyncio.to_thread(handler.handle, token, body, payload.from_email)
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request, payload: CreateTaskRequest) -> dict[str, Any]:
    service = _services(request)["task_service"]
    task = await asyncio.to_thread(lambda: service.create_task(**payload.model_dump()))
    return task.model_dump(mode="json")


@router.get("/tasks/{task_id}/conversation")
async def get_conversation(request: Request, task_id: str) -> dict[str, Any]:
    service = _services(request)["task_service"]
    entries = await asyncio.to_thread(service.get_conversation_history, task_id)
    return {"task_id": task_id, "entries": [e.model_dump(mode="json") for e in entries]}


@router.post("/tasks/{task_id}/approve")
async def approve_task(
    request: Request, task_id: str, payload: ApproveRequest | None = None
) -> dict[str, Any]:
    service = _services(request)["task_service"]
    message = payload.message if payload is not None else None
    task = await asyncio.to_thread(lambda: service.approve_task(task_id, message=message))
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/dismiss")
async def dismiss_task(
    request: Request, task_id: str, payload: DismissRequest | None = None
) -> dict[str, Any]:
    service = _services(request)["task_service"]
    reason = payload.reason if payload is not None else None
    task = await asyncio.to_thread(service.dismiss_task, task_id, reason)
    return task.model_dump(mode="json")


@router.post("/tasks/{task_id}/status")
async def update_task_status(
    request: Request, task_id: str, payload: StatusUpdateRequest
) -> dict[str, Any]:
    service = _services(request)["task_service"]
    task = await asyncio.to_thread(
        lambda: service.update_status(
            task_id,
            payload.status,
            outcome=payload.outcome,
            reason=payload.reason,
            message=payload.message,
        )
    )
    return task.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.get("/commands/dead-letter")
async def list_dead_letters(request: Request, limit: int = 50) -> dict[str, Any]:
    bus = _services(request)["bus"]
    commands = await asyncio.to_thread(bus.list_dead_letters, limit)
    return {"commands": [c.model_dump(mode="json") for c in commands]}


@router.post("/commands/{command_id}/requeue")
async def requeue_command(request: Request, command_id: str) -> dict[str, Any]:
    bus = _services(request)["bus"]
    command = await asyncio.to_thread(bus.requeue, command_id)
    logger.info("command_requeued_by_operator", command_id=command_id)
    return command.model_dump(mode="json")
