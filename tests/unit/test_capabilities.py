import pytest

from composer.core.errors import CapabilityFailure
from composer.core.interfaces import KnowledgeSnippet
from composer.integrations.knowledge import StaticKnowledgeBase

STATE = {"user_id": "u1", "thread_id": "t1"}


@pytest.mark.asyncio
async def test_mail_search_summarizes_matches(registry, mail_backend):
    result = await registry.call("mail_search", {"query": "subject:offsite"}, STATE)

    assert mail_backend.queries == ["subject:offsite"]
    assert "Subject: Last offsite" in result.content
    assert "From: bob@example.com" in result.content
    assert result.state_update == {"search_summary": result.content}


@pytest.mark.asyncio
async def test_mail_search_without_matches(registry, mail_backend):
    mail_backend.messages = []

    result = await registry.call("mail_search", {"query": "nothing"}, STATE)
    assert result.content == "No matching Gmail messages found for the provided query."


@pytest.mark.asyncio
async def test_calendar_lookup_formats_events(registry):
    result = await registry.call("calendar_lookup", {"time_min": "2024-06-07T00:00:00Z"}, STATE)

    assert result.content.startswith("Event: Dentist")
    assert "When: 2024-06-07T09:00:00Z - 2024-06-07T10:00:00Z" in result.content
    assert result.state_update == {"calendar_summary": result.content}


@pytest.mark.asyncio
async def test_calendar_lookup_empty_window(registry, calendar_backend):
    calendar_backend.events = []

    result = await registry.call("calendar_lookup", {}, STATE)
    assert result.content == "No calendar events were found for the requested window."


@pytest.mark.asyncio
async def test_knowledge_lookup(registry):
    result = await registry.call("knowledge_lookup", {"query": "offsite budget"}, STATE)

    assert result.content == "[HANDBOOK] Offsite budget is 200 EUR per person."
    assert result.state_update == {"knowledge_summary": result.content}


@pytest.mark.asyncio
async def test_static_knowledge_base_ranks_and_scopes():
    kb = StaticKnowledgeBase(
        [
            KnowledgeSnippet(source="pricing", content="Enterprise plan pricing starts at 500 EUR per month."),
            KnowledgeSnippet(source="handbook", content="Travel budget requires manager approval."),
        ]
    )
    kb.add(KnowledgeSnippet(source="notes", content="Pricing call with ACME moved to Tuesday."), user_id="u2")

    results = await kb.search("u1", "enterprise pricing per month", limit=5)
    assert [s.source for s in results] == ["pricing"]
    assert results[0].score == 1.0

    scoped = await kb.search("u2", "pricing", limit=5)
    assert {s.source for s in scoped} == {"pricing", "notes"}

    assert await kb.search("u1", "the and of", limit=5) == []


@pytest.mark.asyncio
async def test_calendar_lookup_requires_user(registry):
    with pytest.raises(CapabilityFailure, match="user_id is required to read calendar events"):
        await registry.call("calendar_lookup", {}, {"thread_id": "t1"})


@pytest.mark.asyncio
async def test_clarification_records_question(registry):
    result = await registry.call("ask_user_for_clarification", {"question": "  Which Friday?  "}, STATE)

    assert result.content == "Asked the user: Which Friday?"
    assert result.state_update == {"clarification_question": "Which Friday?"}
    assert registry.label("ask_user_for_clarification") == "Requesting clarification"


@pytest.mark.asyncio
async def test_clarification_rejects_blank_question(registry):
    with pytest.raises(CapabilityFailure, match="question must not be empty"):
        await registry.call("ask_user_for_clarification", {"question": " "}, STATE)
