from typing import get_type_hints

from langchain_core.messages import AIMessage, HumanMessage
from langgraph.graph.message import add_messages

from composer.core.state import STATE_KEYS, AgentState, append_items, state_values


def test_append_items_accepts_lists_and_single_items():
    assert append_items(["a"], ["b", "c"]) == ["a", "b", "c"]
    assert append_items(None, "a") == ["a"]
    assert append_items(["a"], None) == ["a"]
    assert append_items(["a"], ("b",)) == ["a", "b"]


def test_append_items_does_not_mutate_left():
    left = ["loaded"]
    merged = append_items(left, ["drafted"])

    assert merged == ["loaded", "drafted"]
    assert left == ["loaded"]


def test_accumulating_fields_carry_reducers():
    hints = get_type_hints(AgentState, include_extras=True)

    assert hints["messages"].__metadata__ == (add_messages,)
    assert hints["activity_log"].__metadata__ == (append_items,)
    assert hints["dialogue_history"].__metadata__ == (append_items,)
    assert not hasattr(hints["thread_summary"], "__metadata__")


def test_messages_reducer_replaces_by_id():
    messages = add_messages([HumanMessage(content="draft please", id="m1")], [AIMessage(content="Sure", id="m2")])
    messages = add_messages(messages, [HumanMessage(content="edited", id="m1")])

    assert [m.content for m in messages] == ["edited", "Sure"]


def test_state_values_drops_runtime_channels():
    channels = {"thread_summary": "s", "last_node": "reason", "branch:to:tools": None, "__start__": {}}

    assert state_values(channels) == {"thread_summary": "s", "last_node": "reason"}
    assert "clarification_question" in STATE_KEYS
    assert "clarifications" in STATE_KEYS
