import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

import composer.core.logging_config  # noqa: F401  # Centralized logging (must be first)
from composer.api.composition import router as composition_router
from composer.core.agent import create_composition_graph
from composer.core.checkpoint import SQLModelCheckpointSaver, create_checkpoint_saver
from composer.core.config import settings
from composer.core.db import init_db
from composer.core.interfaces import CalendarBackend, ChatModel, KnowledgeBase, MailSearchBackend, ThreadProvider
from composer.core.llm_utils import LangChainChatModel
from composer.core.session import CompositionSession
from composer.integrations.google import GoogleWorkspaceClient
from composer.integrations.knowledge import StaticKnowledgeBase
from composer.tools.calendar import create_calendar_capability
from composer.tools.clarification import create_clarification_capability
from composer.tools.knowledge import create_knowledge_capability
from composer.tools.mail_search import create_mail_search_capability
from composer.tools.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


def build_registry(
    mail_backend: MailSearchBackend, calendar_backend: CalendarBackend, knowledge_base: KnowledgeBase
) -> CapabilityRegistry:
    return CapabilityRegistry(
        [
            create_mail_search_capability(mail_backend),
            create_calendar_capability(calendar_backend),
            create_knowledge_capability(knowledge_base),
            create_clarification_capability(),
        ]
    )


def build_session(
    model: Optional[ChatModel] = None,
    thread_provider: Optional[ThreadProvider] = None,
    mail_backend: Optional[MailSearchBackend] = None,
    calendar_backend: Optional[CalendarBackend] = None,
    knowledge_base: Optional[KnowledgeBase] = None,
    checkpointer: Optional[SQLModelCheckpointSaver] = None,
) -> CompositionSession:
    """Composition root: bind concrete collaborators once, at startup."""
    google = None
    if thread_provider is None or mail_backend is None or calendar_backend is None:
        google = GoogleWorkspaceClient()

    registry = build_registry(
        mail_backend or google,
        calendar_backend or google,
        knowledge_base or StaticKnowledgeBase(),
    )
    graph = create_composition_graph(
        model=model or LangChainChatModel(),
        registry=registry,
        thread_provider=thread_provider or google,
        checkpointer=checkpointer or create_checkpoint_saver(),
    )
    logger.info(f"Composition agent initialized with {len(registry)} tools: {', '.join(registry.names)}")
    return CompositionSession(graph)


@asynccontextmanager
async def lifespan(app: FastAPI):
    checkpointer = create_checkpoint_saver()
    if settings.CHECKPOINT_BACKEND == "sql":
        await init_db()

    app.state.composition = build_session(checkpointer=checkpointer)
    yield
    await checkpointer.aclose()


app = FastAPI(title="Draft Composer API", version="1.0.0", lifespan=lifespan)
app.include_router(composition_router)


@app.get("/")
async def root():
    return {"message": "Draft Composer is running"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
