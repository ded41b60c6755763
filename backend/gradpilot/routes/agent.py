"""
Agent chat endpoints.

POST /agent/chat
POST /agent/chat/stream  (server-sent events: progress updates, then the result)

The caller is identified by ``user_id`` in the body or the X-User-ID header;
``access_token`` in the body, or else a bearer token in the Authorization
header, is passed to specialists as the caller's access token.
"""
import asyncio
import json
from datetime import datetime
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from gradpilot.core.logging import get_logger, set_user_id
from gradpilot.services.orchestration.schema import (
    ConversationTurn,
    OrchestrationResult,
    ProgressUpdate,
    UserContext,
)
from gradpilot.services.orchestration.service import (
    OrchestrationService,
    get_orchestration_service,
)

logger = get_logger(__name__)

router = APIRouter()


class ChatRequest(BaseModel):
    message: str = Field(..., description="Message to send to the assistant")
    user_id: Optional[str] = Field(None, description="Caller id; defaults to X-User-ID")
    history: List[ConversationTurn] = Field(default_factory=list)
    access_token: Optional[str] = Field(None, description="Defaults to the bearer token")
    token_expires_at: Optional[datetime] = None


class StepSummary(BaseModel):
    id: str
    agent: str
    task_type: str
    status: str
    errors: Optional[List[str]] = None


class ChatResponse(BaseModel):
    response: str
    success: bool
    status: str
    strategy: Optional[str] = None
    primary_agent: Optional[str] = None
    used_fallback: bool
    tokens_used: int
    execution_time_ms: float
    steps: List[StepSummary]
    errors: List[str]


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def build_user_context(
    request: ChatRequest,
    x_user_id: Optional[str],
    authorization: Optional[str],
) -> UserContext:
    user_id = request.user_id or x_user_id
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    set_user_id(user_id)
    return UserContext(
        user_id=user_id,
        access_token=request.access_token or _bearer_token(authorization),
        token_expires_at=request.token_expires_at,
        history=request.history,
    )


def to_chat_response(result: OrchestrationResult) -> ChatResponse:
    plan = result.plan
    return ChatResponse(
        response=result.final_response,
        success=result.success,
        status=result.status.value,
        strategy=plan.strategy.value if plan else None,
        primary_agent=plan.primary_agent.value if plan else None,
        used_fallback=result.used_fallback,
        tokens_used=result.tokens_used,
        execution_time_ms=round(result.execution_time_ms, 2),
        steps=[
            StepSummary(
                id=step.id,
                agent=step.agent_name,
                task_type=step.task.type.value,
                status=step.status.value,
                errors=step.result.errors,
            )
            for step in result.steps
        ],
        errors=result.errors,
    )


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


@router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    x_user_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    service: OrchestrationService = Depends(get_orchestration_service),
):
    """Route a message to the specialists and return the combined reply."""
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="message must not be empty")
    context = build_user_context(request, x_user_id, authorization)

    result = await service.handle(request.message, context)
    logger.info(
        "chat_completed",
        success=result.success,
        status=result.status.value,
        used_fallback=result.used_fallback,
        steps=len(result.steps),
    )
    return to_chat_response(result)


@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    x_user_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    service: OrchestrationService = Depends(get_orchestration_service),
):
    """Same as /chat, streaming progress updates as server-sent events."""
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="message must not be empty")
    context = build_user_context(request, x_user_id, authorization)

    async def events() -> AsyncIterator[str]:
        updates: "asyncio.Queue[ProgressUpdate]" = asyncio.Queue()
        task = asyncio.create_task(service.handle(request.message, context, updates.put_nowait))
        yield _sse({"type": "start"})

        while not task.done() or not updates.empty():
            getter = asyncio.ensure_future(updates.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield _sse({"type": "progress", **getter.result().model_dump(exclude_none=True)})
            else:
                getter.cancel()

        result = task.result()
        yield _sse({"type": "result", **to_chat_response(result).model_dump()})
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
