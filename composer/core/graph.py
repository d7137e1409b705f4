"""
Glue between the composition steps and LangGraph.

Per-run collaborators (cancellation token, event emitter) travel to the
steps in `config["configurable"]`, never through module globals. Every step
is wrapped by `guarded`, which checks the token before the step starts and
again before its writes are committed, so a cancelled step leaves no
checkpoint behind.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.errors import GraphRecursionError
from langgraph.graph import START
from langgraph.types import StateSnapshot

from composer.core.errors import AgentLoopExceeded
from composer.core.state import AgentState
from composer.core.streaming import CancellationToken, EventEmitter

logger = logging.getLogger(__name__)

RUN_CONTEXT_KEY = "composition_run"

Step = Callable[[AgentState, "RunContext"], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class RunContext:
    conversation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    emitter: EventEmitter = field(default_factory=EventEmitter)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)


def thread_config(conversation_id: str) -> RunnableConfig:
    return {"configurable": {"thread_id": conversation_id}}


def build_run_config(context: RunContext) -> RunnableConfig:
    config = thread_config(context.conversation_id)
    config["configurable"][RUN_CONTEXT_KEY] = context
    config["metadata"] = {"composition_run_id": context.run_id}
    return config


def get_run_context(config: RunnableConfig) -> RunContext:
    configurable = config.get("configurable") or {}
    context = configurable.get(RUN_CONTEXT_KEY)
    if context is None:
        # Invoked outside a session: no sink, a token nobody cancels
        context = RunContext(conversation_id=str(configurable.get("thread_id", "")))
    return context


def guarded(name: str, step: Step):
    """Wrap a step as a LangGraph node that honours cancellation and labels its checkpoint."""

    async def node(state: AgentState, config: RunnableConfig):
        context = get_run_context(config)
        context.token.raise_if_cancelled()
        logger.debug(f"[{context.conversation_id}] step {config.get('metadata', {}).get('langgraph_step')}: {name}")

        delta = await step(state, context)

        # Cancelled while the step ran: the writes are dropped with it
        context.token.raise_if_cancelled()
        return {**(delta or {}), "last_node": name}

    node.__name__ = name
    return node


async def run_graph(graph, graph_input: Any, context: RunContext) -> Dict[str, Any]:
    """Run until the graph ends or pauses for input. Maps the recursion bound onto AgentLoopExceeded."""
    if isinstance(graph_input, dict):
        graph_input = {**graph_input, "last_node": START}
    try:
        return await graph.ainvoke(graph_input, build_run_config(context))
    except GraphRecursionError as e:
        raise AgentLoopExceeded(
            f"Graph did not finish within its recursion limit: {e}", conversation_id=context.conversation_id
        ) from e


async def load_snapshot(graph, conversation_id: str) -> Optional[StateSnapshot]:
    """Latest state of a conversation, or None when nothing was checkpointed."""
    snapshot = await graph.aget_state(thread_config(conversation_id))
    if not snapshot.metadata:
        return None
    return snapshot


def pending_questions(snapshot: Optional[StateSnapshot]) -> List[Any]:
    """Payloads of interrupts still waiting for an answer."""
    if snapshot is None:
        return []
    return [item.value for item in snapshot.interrupts]
