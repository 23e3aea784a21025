"""
Agent Response Routes
=====================

- POST   /agents/respond                 → Answer a request (SSE stream or JSON)
- POST   /agents/jobs/{job_id}/requeue   → Move a waiting job to a new priority
- PUT    /agents/vip/{user_id}           → Add a requester to the VIP set
- DELETE /agents/vip/{user_id}           → Remove a requester from the VIP set
- DELETE /agents/{agent_id}/cache        → Drop an agent's cached answers
- DELETE /agents/projects/{project_id}/cache → Drop answers tied to a project
"""

from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from agent_pipeline.core.types import MAX_PRIORITY_VALUE, MIN_PRIORITY_VALUE, RequestType
from agent_pipeline.infra.runtime.pipeline import INTERACTIVE_TYPES, ResponsePipeline
from agent_pipeline.infra.runtime.queue import DispatchRequest
from agent_pipeline.infra.runtime.transport import SSETransport
from agent_pipeline.infra.telemetry.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/agents", tags=["agents"])

# ── Request / Response Schemas ───────────────────────────────────────────────

class RespondRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=10_000)
    agent_id: str = Field(..., min_length=1, max_length=64)
    type: RequestType = RequestType.DIRECT_CHAT
    workspace_id: str | None = None
    requester_id: str | None = None
    project_id: str | None = None
    conversation_id: str | None = None
    system_context: str | None = None
    stream: bool = True

class RequeueRequest(BaseModel):
    priority: int = Field(..., ge=MIN_PRIORITY_VALUE, le=MAX_PRIORITY_VALUE)

# ── Helpers ──────────────────────────────────────────────────────────────────

def _get_pipeline(request: Request) -> ResponsePipeline:
    return request.app.state.pipeline

def _to_dispatch(body: RespondRequest) -> DispatchRequest:
    payload: dict[str, Any] = {"prompt": body.prompt}
    for name in ("project_id", "conversation_id", "system_context"):
        value = getattr(body, name)
        if value is not None:
            payload[name] = value
    return DispatchRequest(
        type=body.type.value,
        agent_id=body.agent_id,
        workspace_id=body.workspace_id,
        requester_id=body.requester_id,
        payload=payload,
    )

def _log_stream_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # The client already received an ``error`` event
        logger.info("sse_request_ended_with_error", error=str(exc), error_type=type(exc).__name__)

# ── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/respond")
async def respond(body: RespondRequest, request: Request):
    """
    Answer an agent request.

    Interactive request types with ``stream=true`` are answered as an SSE
    stream (``start``/``chunk``/``end``/``error`` events); everything else
    returns JSON, either the cached answer or the id of the queued job.
    """
    pipeline = _get_pipeline(request)
    dispatch = _to_dispatch(body)

    if body.stream and dispatch.type in INTERACTIVE_TYPES:
        transport = SSETransport(request)
        task = asyncio.create_task(pipeline.handle(dispatch, transport))
        task.add_done_callback(lambda _: transport.close())
        task.add_done_callback(_log_stream_outcome)
        return StreamingResponse(
            transport.frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    result = await pipeline.handle(dispatch)
    return result.to_dict()

@router.post("/jobs/{job_id}/requeue")
async def requeue_job(job_id: str, body: RequeueRequest, request: Request):
    new_job_id = await _get_pipeline(request).queue.requeue(job_id, body.priority)
    if new_job_id is None:
        raise HTTPException(status_code=409, detail=f"Job {job_id} is no longer waiting")
    return {"jobId": new_job_id, "priority": body.priority}

@router.put("/vip/{user_id}")
async def add_vip(user_id: str, request: Request):
    _get_pipeline(request).queue.add_vip(user_id)
    return {"userId": user_id, "vip": True}

@router.delete("/vip/{user_id}")
async def remove_vip(user_id: str, request: Request):
    _get_pipeline(request).queue.remove_vip(user_id)
    return {"userId": user_id, "vip": False}

@router.delete("/{agent_id}/cache")
async def invalidate_agent_cache(agent_id: str, request: Request):
    removed = await _get_pipeline(request).cache.invalidate_owner(agent_id)
    return {"removed": removed}

@router.delete("/projects/{project_id}/cache")
async def invalidate_project_cache(project_id: str, request: Request):
    removed = await _get_pipeline(request).cache.invalidate_project(project_id)
    return {"removed": removed}
