import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph
from langgraph.types import interrupt

from composer.core.config import settings
from composer.core.context import ThreadSummarizer, build_recipient_summary, summarize_thread
from composer.core.errors import (
    AgentLoopExceeded,
    CapabilityFailure,
    ContextUnavailable,
    ModelUnavailable,
    PreconditionFailed,
    RunCancelled,
    UnknownCapability,
)
from composer.core.graph import RunContext, guarded
from composer.core.interfaces import ChatModel, ThreadProvider
from composer.core.llm_utils import chunk_text
from composer.core.prompts import DEFAULT_USER_PROMPT, build_draft_prompt, build_reasoning_prompt
from composer.core.state import AgentState
from composer.core.streaming import EventType
from composer.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)

TOOL_RESULT_PREVIEW_CHARS = 300
INTERRUPTED_TOOL_CALL = "Tool call was interrupted before it returned a result."


def route_after_reasoning(state: AgentState) -> Literal["tools", "compose_draft"]:
    messages = state.get("messages") or []
    last_message = messages[-1] if messages else None
    if isinstance(last_message, AIMessage) and last_message.tool_calls:
        return "tools"
    return "compose_draft"


def route_after_tools(state: AgentState) -> Literal["human", "reason"]:
    if state.get("clarification_question"):
        return "human"
    return "reason"


def close_dangling_tool_calls(messages: Sequence[BaseMessage]) -> List[BaseMessage]:
    """
    Pair every tool call with a ToolMessage.

    A run cancelled between `reason` and `tools` leaves a checkpointed
    AIMessage whose calls never got results; chat APIs reject that history,
    so a placeholder result is inserted right after the orphaned request.
    """
    answered = {m.tool_call_id for m in messages if isinstance(m, ToolMessage)}
    closed: List[BaseMessage] = []
    for message in messages:
        closed.append(message)
        if isinstance(message, AIMessage):
            for call in message.tool_calls:
                if call.get("id") and call["id"] not in answered:
                    closed.append(
                        ToolMessage(content=INTERRUPTED_TOOL_CALL, tool_call_id=call["id"], name=call["name"])
                    )
    return closed


@dataclass
class _ToolOutcome:
    message: ToolMessage
    activity: str
    state_update: Dict[str, Any] = field(default_factory=dict)


def create_composition_graph(
    model: ChatModel,
    registry: CapabilityRegistry,
    thread_provider: ThreadProvider,
    checkpointer: BaseCheckpointSaver,
    summarize: ThreadSummarizer = summarize_thread,
    summarize_recipients: ThreadSummarizer = build_recipient_summary,
    max_reasoning_rounds: Optional[int] = None,
    recursion_limit: Optional[int] = None,
    tool_timeout: Optional[float] = None,
    context_timeout: Optional[float] = None,
    model_timeout: Optional[float] = None,
) -> CompiledStateGraph:
    """
    Wire the composition steps:

        load_context -> reason -> (tools -> [human ->] reason)* -> compose_draft -> END

    Collaborators are captured by the step closures, so the graph holds no
    global state and one compiled graph serves every conversation.
    """
    max_reasoning_rounds = max_reasoning_rounds or settings.MAX_REASONING_ROUNDS
    recursion_limit = recursion_limit or settings.RECURSION_LIMIT
    tool_timeout = tool_timeout or settings.TOOL_TIMEOUT_SECONDS
    context_timeout = context_timeout or settings.CONTEXT_TIMEOUT_SECONDS
    model_timeout = model_timeout or settings.MODEL_TIMEOUT_SECONDS

    async def invoke_model(ctx: RunContext, messages: List[BaseMessage], tools: Optional[list] = None) -> AIMessage:
        try:
            return await ctx.token.run(asyncio.wait_for(model.invoke(messages, tools=tools), model_timeout))
        except asyncio.TimeoutError as e:
            raise ModelUnavailable(
                f"Model call timed out after {model_timeout:g}s", conversation_id=ctx.conversation_id
            ) from e

    async def load_context(state: AgentState, ctx: RunContext):
        user_id, thread_id = state["user_id"], state["thread_id"]

        try:
            thread = await ctx.token.run(
                asyncio.wait_for(thread_provider.get_thread(user_id, thread_id), context_timeout)
            )
        except RunCancelled:
            raise
        except asyncio.TimeoutError as e:
            raise ContextUnavailable(
                f"Timed out loading email thread '{thread_id}'", conversation_id=ctx.conversation_id
            ) from e
        except Exception as e:
            logger.warning(f"Thread load failed for '{thread_id}': {e}")
            raise ContextUnavailable(
                f"Could not load email thread '{thread_id}': {e}", conversation_id=ctx.conversation_id
            ) from e

        entry = f"Loaded email thread ({len(thread.messages)} messages)."
        await ctx.emitter.emit(EventType.ACTIVITY, message=entry)
        return {
            "thread_summary": summarize(thread),
            "recipient_summary": summarize_recipients(thread),
            "activity_log": [entry],
        }

    async def reason(state: AgentState, ctx: RunContext):
        rounds = (state.get("reasoning_rounds") or 0) + 1
        if rounds > max_reasoning_rounds:
            raise AgentLoopExceeded(
                f"Reasoning did not settle after {max_reasoning_rounds} rounds",
                conversation_id=ctx.conversation_id,
            )

        delta: Dict[str, Any] = {"reasoning_rounds": rounds}
        new_messages: List[BaseMessage] = []

        # A fresh prompt enters the conversation exactly once
        pending = state.get("pending_user_prompt")
        if pending:
            new_messages.append(HumanMessage(content=pending))
            delta["pending_user_prompt"] = None
            delta["latest_user_prompt"] = pending

        history = close_dangling_tool_calls(list(state.get("messages") or []))
        prompt = [SystemMessage(content=build_reasoning_prompt(state)), *history, *new_messages]
        response = await invoke_model(ctx, prompt, tools=registry.tools or None)

        if response.tool_calls:
            names = ", ".join(call["name"] for call in response.tool_calls)
            logger.info(f"Round {rounds} requested tools: {names}")
            delta["activity_log"] = [f"Gathering context: {names}"]

        delta["messages"] = [*new_messages, response]
        return delta

    async def execute_tool_call(call: Dict[str, Any], state: AgentState, ctx: RunContext) -> _ToolOutcome:
        name = call["name"]
        args = call.get("args") or {}
        call_id = call.get("id") or ""
        label = registry.label(name)

        if name in registry:
            await ctx.emitter.emit(EventType.TOOL_START, name=name, call_id=call_id, args=args)

        try:
            result = await asyncio.wait_for(registry.call(name, args, state, call_id=call_id), tool_timeout)
        except (UnknownCapability, CapabilityFailure) as e:
            error = e.message
        except asyncio.TimeoutError:
            error = f"Tool '{name}' timed out after {tool_timeout:g}s."
        else:
            activity = f"{label}: done."
            await ctx.emitter.emit(
                EventType.TOOL_END,
                name=name,
                call_id=call_id,
                result=result.content[:TOOL_RESULT_PREVIEW_CHARS],
            )
            await ctx.emitter.emit(EventType.ACTIVITY, message=activity)
            return _ToolOutcome(
                message=ToolMessage(content=result.content, tool_call_id=call_id, name=name),
                activity=activity,
                state_update=result.state_update,
            )

        logger.warning(error)
        activity = f"⚠️ {label} failed: {error}"
        await ctx.emitter.emit(EventType.TOOL_ERROR, name=name, call_id=call_id, error=error)
        await ctx.emitter.emit(EventType.ACTIVITY, message=activity)
        return _ToolOutcome(
            message=ToolMessage(content=f"Error: {error}", tool_call_id=call_id, name=name, status="error"),
            activity=activity,
        )

    async def run_tools(state: AgentState, ctx: RunContext):
        messages = state.get("messages") or []
        last_message = messages[-1] if messages else None
        if not isinstance(last_message, AIMessage) or not last_message.tool_calls:
            return {}

        outcomes = await ctx.token.run(
            asyncio.gather(*(execute_tool_call(call, state, ctx) for call in last_message.tool_calls))
        )

        # Results keep request order; later state updates win
        delta: Dict[str, Any] = {}
        for outcome in outcomes:
            delta.update(outcome.state_update)
        delta["messages"] = [o.message for o in outcomes]
        delta["activity_log"] = [o.activity for o in outcomes]

        question = delta.get("clarification_question")
        if question:
            entry = f"Clarification needed: {question}"
            await ctx.emitter.emit(EventType.ACTIVITY, message=entry)
            delta["activity_log"].append(entry)
        return delta

    async def ask_human(state: AgentState, ctx: RunContext):
        question = state.get("clarification_question")
        if not question:
            return {}

        # Pauses the run; the session resumes it with the user's answer
        answer = str(interrupt({"question": question}) or "").strip()

        entry = "Received clarification from user."
        await ctx.emitter.emit(EventType.ACTIVITY, message=entry)
        return {
            "messages": [HumanMessage(content=answer)],
            "clarifications": [*(state.get("clarifications") or []), {"question": question, "answer": answer}],
            "clarification_question": None,
            "reasoning_rounds": 0,
            "streaming_enabled": ctx.emitter.enabled,
            "activity_log": [entry],
        }

    async def compose_draft(state: AgentState, ctx: RunContext):
        if not state.get("thread_summary"):
            raise PreconditionFailed(
                "compose_draft requires a loaded thread summary", conversation_id=ctx.conversation_id
            )

        user_prompt = state.get("latest_user_prompt")
        clarifications = state.get("clarifications") or []
        messages: List[BaseMessage] = [SystemMessage(content=build_draft_prompt(state))]
        for entry in state.get("dialogue_history") or []:
            message_cls = HumanMessage if entry.get("role") == "user" else AIMessage
            messages.append(message_cls(content=entry.get("content", "")))
        messages.append(HumanMessage(content=user_prompt or DEFAULT_USER_PROMPT))
        for exchange in clarifications:
            messages.extend([AIMessage(content=exchange["question"]), HumanMessage(content=exchange["answer"])])

        emitter = ctx.emitter
        if state.get("streaming_enabled") and emitter.enabled:
            await emitter.emit(EventType.DRAFT_STREAM_STARTED)
            fragments: List[str] = []
            try:
                async for fragment in ctx.token.iterate(model.stream(messages), timeout=model_timeout):
                    fragments.append(fragment)
                    await emitter.emit(EventType.DRAFT_CHUNK, text=fragment)
            except asyncio.TimeoutError as e:
                raise ModelUnavailable(
                    f"Draft stream stalled for more than {model_timeout:g}s", conversation_id=ctx.conversation_id
                ) from e
            draft = "".join(fragments)
            await emitter.emit(EventType.DRAFT_STREAM_FINISHED, text=draft)
        else:
            response = await invoke_model(ctx, messages)
            draft = chunk_text(response.content)

        history = []
        if user_prompt:
            history.append({"role": "user", "content": user_prompt, "kind": "prompt"})
        for exchange in clarifications:
            history.append({"role": "assistant", "content": exchange["question"], "kind": "question"})
            history.append({"role": "user", "content": exchange["answer"], "kind": "answer"})
        history.append({"role": "assistant", "content": draft, "kind": "draft"})

        return {
            "latest_draft": draft,
            "dialogue_history": history,
            "messages": [AIMessage(content=draft)],
            "activity_log": ["Draft ready."],
        }

    workflow = StateGraph(AgentState)
    workflow.add_node("load_context", guarded("load_context", load_context))
    workflow.add_node("reason", guarded("reason", reason))
    workflow.add_node("tools", guarded("tools", run_tools))
    workflow.add_node("human", guarded("human", ask_human))
    workflow.add_node("compose_draft", guarded("compose_draft", compose_draft))

    workflow.set_entry_point("load_context")
    workflow.add_edge("load_context", "reason")
    workflow.add_conditional_edges(
        "reason", route_after_reasoning, {"tools": "tools", "compose_draft": "compose_draft"}
    )
    workflow.add_conditional_edges("tools", route_after_tools, {"human": "human", "reason": "reason"})
    workflow.add_edge("human", "reason")
    workflow.add_edge("compose_draft", END)

    return workflow.compile(checkpointer=checkpointer).with_config(recursion_limit=recursion_limit)
