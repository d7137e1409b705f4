from typing import Annotated, Any, Dict, List, Mapping, Optional, TypedDict

from langchain_core.messages import BaseMessage
from langgraph.graph.message import add_messages


def append_items(left: Optional[list], right: Any) -> list:
    """Append reducer: accepts a list or a single item on the right-hand side."""
    if right is None:
        items = []
    elif isinstance(right, (list, tuple)):
        items = list(right)
    else:
        items = [right]
    return [*(left or []), *items]


class AgentState(TypedDict, total=False):
    """
    The state threaded through every composition step.

    Annotated fields are merged with their reducer; every other field is
    last-write-wins, so a step clears a scalar by returning it as None.
    """

    messages: Annotated[List[BaseMessage], add_messages]
    activity_log: Annotated[List[str], append_items]  # Human-readable progress, returned to caller
    dialogue_history: Annotated[List[Dict[str, str]], append_items]  # {"role", "content", "kind"}

    # Summaries (each written by exactly one step or tool)
    thread_summary: Optional[str]
    recipient_summary: Optional[str]
    search_summary: Optional[str]
    calendar_summary: Optional[str]
    knowledge_summary: Optional[str]

    # Identity, set once by the load step
    user_id: str
    thread_id: str
    account_id: Optional[str]

    pending_user_prompt: Optional[str]  # Cleared by the reasoning step
    latest_user_prompt: Optional[str]
    latest_draft: Optional[str]
    clarification_question: Optional[str]  # Set by the clarification tool, cleared once answered
    clarifications: List[Dict[str, str]]  # {"question", "answer"} pairs for the current prompt

    streaming_enabled: bool
    reasoning_rounds: int  # Reset on every start/resume
    last_node: Optional[str]  # Step that wrote the latest checkpoint


STATE_KEYS = tuple(AgentState.__annotations__)


def state_values(channel_values: Mapping[str, Any]) -> AgentState:
    """Project raw channel values onto the AgentState fields."""
    return {key: channel_values[key] for key in STATE_KEYS if key in channel_values}
