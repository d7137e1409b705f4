import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from composer.core.errors import (
    CompositionError,
    ContextUnavailable,
    ConversationNotFound,
    InvalidRequest,
    ModelUnavailable,
)
from composer.core.session import CompositionResult, CompositionSession, ConversationStateView
from composer.core.streaming import EventStream, EventType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/composition", tags=["composition"])


class ResumeRequest(BaseModel):
    user_response: str


class CancelResponse(BaseModel):
    conversation_id: str
    cancelled: bool


def get_composition_session(request: Request) -> CompositionSession:
    session = getattr(request.app.state, "composition", None)
    if session is None:
        raise HTTPException(status_code=503, detail="Composition service is not initialized")
    return session


def to_http_error(error: CompositionError) -> HTTPException:
    if isinstance(error, InvalidRequest):
        status = 400
    elif isinstance(error, ConversationNotFound):
        status = 404
    elif isinstance(error, (ContextUnavailable, ModelUnavailable)):
        status = 502
    else:
        status = 500
    return HTTPException(status_code=status, detail={"code": error.code, "message": error.message})


def format_sse(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


def _sse_response(stream: EventStream, runner, label: str) -> StreamingResponse:
    async def event_generator():
        count = 0
        try:
            async for event in stream.events(runner):
                count += 1
                yield format_sse(event.model_dump(mode="json"))
        except CompositionError as e:
            # Rejected before the run produced any event
            yield format_sse({"type": EventType.ERROR.value, "data": {"message": e.message, "code": e.code}})
        logger.info(f"Stream finished for {label}, total events: {count}")

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/stream")
async def stream_composition(
    thread_id: str = Query(""),
    user_prompt: str = Query(""),
    conversation_id: Optional[str] = None,
    account_id: Optional[str] = None,
    user_id: str = Header("", alias="X-User-Id"),
    session: CompositionSession = Depends(get_composition_session),
):
    """
    Start a composition and stream its events as Server-Sent Events.
    Closing the connection cancels the run.
    """
    required = (("X-User-Id", user_id), ("thread_id", thread_id), ("user_prompt", user_prompt))
    missing = [name for name, value in required if not value]
    if missing:
        raise to_http_error(InvalidRequest(f"Missing required fields: {', '.join(missing)}"))

    async def runner(sink, token):
        return await session.start(
            user_id,
            thread_id,
            user_prompt,
            conversation_id=conversation_id,
            account_id=account_id,
            sink=sink,
            token=token,
        )

    return _sse_response(EventStream(), runner, f"thread {thread_id}")


@router.post("/{conversation_id}/resume", response_model=CompositionResult)
async def resume_composition(
    conversation_id: str,
    request: ResumeRequest,
    session: CompositionSession = Depends(get_composition_session),
):
    """Answer a pending clarification question, or request a revised draft."""
    try:
        return await session.resume(conversation_id, request.user_response)
    except CompositionError as e:
        raise to_http_error(e) from e


@router.post("/{conversation_id}/resume/stream")
async def stream_resume(
    conversation_id: str,
    request: ResumeRequest,
    session: CompositionSession = Depends(get_composition_session),
):
    """Streaming variant of resume; same events as /stream."""

    async def runner(sink, token):
        return await session.resume(conversation_id, request.user_response, sink=sink, token=token)

    return _sse_response(EventStream(), runner, f"conversation {conversation_id}")


@router.post("/{conversation_id}/cancel", response_model=CancelResponse)
async def cancel_composition(conversation_id: str, session: CompositionSession = Depends(get_composition_session)):
    return CancelResponse(conversation_id=conversation_id, cancelled=session.cancel(conversation_id))


@router.get("/{conversation_id}/state", response_model=ConversationStateView)
async def get_composition_state(conversation_id: str, session: CompositionSession = Depends(get_composition_session)):
    return await session.get_state(conversation_id)
