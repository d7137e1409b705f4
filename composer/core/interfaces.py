"""
Collaborator contracts consumed by the composition agent.

Concrete implementations are bound once in the composition root
(`composer.main.build_session`); tests bind fakes.
"""

from typing import AsyncIterator, List, Optional, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage
from pydantic import BaseModel, Field

# ==========================================
# Domain Types
# ==========================================


class EmailMessage(BaseModel):
    id: str = ""
    thread_id: Optional[str] = None
    sender: str = "Unknown sender"
    to: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    subject: str = "No subject"
    date: Optional[str] = None
    snippet: str = ""
    body: str = ""


class EmailThread(BaseModel):
    id: str
    messages: List[EmailMessage] = Field(default_factory=list)


class CalendarEvent(BaseModel):
    summary: str = "Untitled"
    start: Optional[str] = None
    end: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)


class KnowledgeSnippet(BaseModel):
    source: str
    content: str
    score: float = 0.0


# ==========================================
# Providers
# ==========================================


class ThreadProvider(Protocol):
    async def get_thread(self, user_id: str, thread_id: str) -> EmailThread:
        """Raise ThreadNotFound / AuthExpired on provider failures."""
        ...


class MailSearchBackend(Protocol):
    async def list_messages(self, user_id: str, query: str, max_results: int) -> List[str]: ...

    async def get_messages_bulk(self, user_id: str, ids: Sequence[str]) -> List[EmailMessage]: ...


class CalendarBackend(Protocol):
    async def list_events(
        self,
        user_id: str,
        time_min: Optional[str],
        time_max: Optional[str],
        max_results: int,
    ) -> List[CalendarEvent]: ...


class KnowledgeBase(Protocol):
    async def search(self, user_id: str, query: str, limit: int) -> List[KnowledgeSnippet]: ...


class ChatModel(Protocol):
    async def invoke(self, messages: Sequence[BaseMessage], tools: Optional[list] = None) -> AIMessage:
        """Single blocking call; with `tools` the reply may carry tool calls."""
        ...

    def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        """Incremental mode: yields text fragments in generation order."""
        ...
