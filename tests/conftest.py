"""
Shared test fixtures and configuration for the Draft Composer test suite.
"""

# noqa: E402 (Standard for test configuration)
import shutil
from typing import Callable

import pytest

import tests.env_setup  # noqa: F401
from composer.core.agent import create_composition_graph
from composer.core.checkpoint import SQLModelCheckpointSaver, create_checkpoint_saver
from composer.core.interfaces import CalendarEvent, EmailMessage, EmailThread, KnowledgeSnippet
from composer.core.session import CompositionSession
from composer.integrations.knowledge import StaticKnowledgeBase
from composer.main import build_registry
from tests.env_setup import TEST_DB_DIR
from tests.fakes import FakeCalendarBackend, FakeChatModel, FakeMailBackend, FakeThreadProvider, RecordingSink

# ============================================================================
# Collaborator Fixtures
# ============================================================================


@pytest.fixture
def email_thread() -> EmailThread:
    return EmailThread(
        id="t1",
        messages=[
            EmailMessage(
                id="m1",
                thread_id="t1",
                sender="alice@example.com",
                to=["u1@example.com"],
                subject="Team offsite",
                date="Mon, 3 Jun 2024 10:00:00 +0000",
                body="We're planning the offsite for next Friday. Are you in?",
            )
        ],
    )


@pytest.fixture
def thread_provider(email_thread) -> FakeThreadProvider:
    return FakeThreadProvider({"t1": email_thread})


@pytest.fixture
def mail_backend() -> FakeMailBackend:
    return FakeMailBackend(
        [
            EmailMessage(
                id="h1",
                subject="Last offsite",
                sender="bob@example.com",
                date="2024-01-10",
                snippet="Thanks everyone for coming",
            )
        ]
    )


@pytest.fixture
def calendar_backend() -> FakeCalendarBackend:
    return FakeCalendarBackend(
        [CalendarEvent(summary="Dentist", start="2024-06-07T09:00:00Z", end="2024-06-07T10:00:00Z")]
    )


@pytest.fixture
def knowledge_base() -> StaticKnowledgeBase:
    return StaticKnowledgeBase([KnowledgeSnippet(source="handbook", content="Offsite budget is 200 EUR per person.")])


@pytest.fixture
def registry(mail_backend, calendar_backend, knowledge_base):
    return build_registry(mail_backend, calendar_backend, knowledge_base)


@pytest.fixture
async def checkpoint_store() -> SQLModelCheckpointSaver:
    saver = create_checkpoint_saver("memory")
    yield saver
    await saver.aclose()


@pytest.fixture
def chat_model() -> FakeChatModel:
    return FakeChatModel()


# ============================================================================
# Session Fixtures
# ============================================================================


@pytest.fixture
def make_session(registry, thread_provider, checkpoint_store) -> Callable[..., CompositionSession]:
    """Build a CompositionSession around `model`; keyword overrides replace the default fakes."""

    def _make(model, **overrides) -> CompositionSession:
        graph = create_composition_graph(
            model=model,
            registry=overrides.pop("registry", registry),
            thread_provider=overrides.pop("thread_provider", thread_provider),
            checkpointer=overrides.pop("checkpointer", checkpoint_store),
            **overrides,
        )
        return CompositionSession(graph)

    return _make


@pytest.fixture
def session(make_session, chat_model) -> CompositionSession:
    return make_session(chat_model)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def test_env():
    """Cleanup test directories after session."""
    yield
    shutil.rmtree(TEST_DB_DIR, ignore_errors=True)
