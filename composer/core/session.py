import logging
import uuid
from typing import Any, Dict, List, Literal, Optional

from langgraph.types import Command
from pydantic import BaseModel, Field

from composer.core.errors import (
    CompositionError,
    ConversationNotFound,
    InvalidRequest,
    PreconditionFailed,
    RunCancelled,
)
from composer.core.graph import RunContext, load_snapshot, pending_questions, run_graph
from composer.core.logging_config import bind_conversation
from composer.core.state import AgentState
from composer.core.streaming import CancellationToken, EventEmitter, EventSink, EventType

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Draft composition failed."


class ConversationMessage(BaseModel):
    role: str
    content: str
    kind: str = "draft"


class ConversationStateView(BaseModel):
    conversation_id: str
    exists: bool
    messages: List[ConversationMessage] = Field(default_factory=list)
    pending_question: Optional[str] = None


class CompositionResult(BaseModel):
    conversation_id: str
    status: Literal["completed", "needs_input"] = "completed"
    draft: str
    question: Optional[str] = None
    activity_log: List[str] = Field(default_factory=list)
    dialogue_history: List[ConversationMessage] = Field(default_factory=list)


def build_conversation_id(user_id: str, thread_id: str) -> str:
    """Fresh id per start, so repeated starts on one thread never share state."""
    return f"composition-{user_id}-{thread_id}-{uuid.uuid4().hex[:12]}"


def _history_view(state: AgentState) -> List[ConversationMessage]:
    return [ConversationMessage(**entry) for entry in state.get("dialogue_history") or []]


def _question_text(payloads: List[Any]) -> Optional[str]:
    if not payloads:
        return None
    payload = payloads[0]
    if isinstance(payload, dict):
        return str(payload.get("question") or "")
    return str(payload)


def _new_prompt_input(prompt: Optional[str], streaming: bool) -> Dict[str, Any]:
    return {
        "pending_user_prompt": (prompt or "").strip() or None,
        "latest_user_prompt": None,
        "clarification_question": None,
        "clarifications": [],
        "streaming_enabled": streaming,
        "reasoning_rounds": 0,
    }


class CompositionSession:
    """
    Entry point for external callers: start, resume, get_state, cancel.

    With a `sink`, every outcome is reported as events and `None` is returned
    on failure. Without one, failures are raised to the caller.

    A run ends either with a draft (`status="completed"`) or paused on a
    clarification question (`status="needs_input"`); `resume` answers the
    pending question, or starts a new revision when nothing is pending.
    """

    def __init__(self, graph):
        self.graph = graph
        self._active: Dict[str, CancellationToken] = {}

    async def start(
        self,
        user_id: str,
        thread_id: str,
        prompt: Optional[str] = None,
        conversation_id: Optional[str] = None,
        account_id: Optional[str] = None,
        sink: Optional[EventSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[CompositionResult]:
        missing = [name for name, value in (("user_id", user_id), ("thread_id", thread_id)) if not value]
        if missing:
            raise InvalidRequest(f"Missing required fields: {', '.join(missing)}", conversation_id=conversation_id)

        conversation_id = conversation_id or build_conversation_id(user_id, thread_id)
        graph_input = {
            "user_id": user_id,
            "thread_id": thread_id,
            "account_id": account_id,
            **_new_prompt_input(prompt, sink is not None),
        }
        logger.info(f"Starting composition {conversation_id} for thread {thread_id}")
        return await self._execute(conversation_id, thread_id, graph_input, sink, token, resume=False)

    async def resume(
        self,
        conversation_id: str,
        user_response: str,
        sink: Optional[EventSink] = None,
        token: Optional[CancellationToken] = None,
    ) -> Optional[CompositionResult]:
        if not conversation_id:
            raise InvalidRequest("Missing required fields: conversation_id")
        if not (user_response or "").strip():
            raise InvalidRequest("A follow-up instruction is required to resume", conversation_id=conversation_id)

        snapshot = await load_snapshot(self.graph, conversation_id)
        if snapshot is None:
            raise ConversationNotFound(conversation_id)

        if pending_questions(snapshot):
            logger.info(f"Answering clarification for {conversation_id}")
            graph_input: Any = Command(resume=user_response.strip())
        else:
            logger.info(f"Resuming composition {conversation_id} at step {snapshot.metadata.get('step')}")
            graph_input = _new_prompt_input(user_response, sink is not None)
        return await self._execute(
            conversation_id, snapshot.values.get("thread_id"), graph_input, sink, token, resume=True
        )

    async def get_state(self, conversation_id: str) -> ConversationStateView:
        snapshot = await load_snapshot(self.graph, conversation_id)
        if snapshot is None:
            return ConversationStateView(conversation_id=conversation_id, exists=False)
        return ConversationStateView(
            conversation_id=conversation_id,
            exists=True,
            messages=_history_view(snapshot.values),
            pending_question=_question_text(pending_questions(snapshot)),
        )

    def cancel(self, conversation_id: str, reason: str = "aborted by caller") -> bool:
        """Explicit abort of a run in progress. Returns False when nothing is running."""
        token = self._active.get(conversation_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def _execute(
        self,
        conversation_id: str,
        thread_id: Optional[str],
        graph_input: Any,
        sink: Optional[EventSink],
        token: Optional[CancellationToken],
        resume: bool,
    ) -> Optional[CompositionResult]:
        token = token or CancellationToken()
        emitter = EventEmitter(sink, token, conversation_id)
        context = RunContext(conversation_id=conversation_id, token=token, emitter=emitter)

        self._active[conversation_id] = token
        with bind_conversation(conversation_id):
            try:
                await emitter.emit(
                    EventType.START, conversation_id=conversation_id, thread_id=thread_id, resumed=resume
                )
                await run_graph(self.graph, graph_input, context)
                snapshot = await load_snapshot(self.graph, conversation_id)
            except RunCancelled as e:
                logger.info(f"Composition cancelled: {e.reason}")
                return None
            except PreconditionFailed as e:
                logger.error(f"Composition is miswired: {e.message}", exc_info=True)
                return await self._fail(emitter, e, GENERIC_FAILURE_MESSAGE)
            except CompositionError as e:
                logger.error(f"Composition failed [{e.code}]: {e.message}")
                return await self._fail(emitter, e, e.message)
            except Exception as e:
                logger.error(f"Composition failed unexpectedly: {e}", exc_info=True)
                return await self._fail(emitter, e, GENERIC_FAILURE_MESSAGE)
            finally:
                if self._active.get(conversation_id) is token:
                    del self._active[conversation_id]

            state = snapshot.values if snapshot is not None else {}
            question = _question_text(pending_questions(snapshot))
            result = CompositionResult(
                conversation_id=conversation_id,
                status="needs_input" if question is not None else "completed",
                draft=state.get("latest_draft") or "",
                question=question,
                activity_log=list(state.get("activity_log") or []),
                dialogue_history=_history_view(state),
            )
            if question is not None:
                logger.info(f"Composition paused for clarification: {question}")
                await emitter.emit(EventType.NEEDS_INPUT, **result.model_dump())
            else:
                await emitter.emit(EventType.FINAL, **result.model_dump())
            return result

    @staticmethod
    async def _fail(emitter: EventEmitter, error: Exception, message: str) -> None:
        if not emitter.enabled:
            raise error
        code = getattr(error, "code", "internal_error")
        await emitter.emit(EventType.ERROR, message=message, code=code)
        return None
