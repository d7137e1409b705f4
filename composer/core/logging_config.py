"""
Centralized logging configuration for the draft composer.

Import this module EARLY to ensure all loggers use the same format.
All other modules should use: `logger = logging.getLogger(__name__)` only.
Do NOT call logging.basicConfig() in any other file.

Every record carries `conversation_id`: the session binds it for the
duration of a run with `bind_conversation`, and records logged outside a
run show "-".
"""

import contextvars
import logging
import os
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

current_conversation: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_conversation", default=None
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(name)s] [%(conversation_id)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%H:%M:%S"


class ConversationFilter(logging.Filter):
    """Tags each record with the conversation being composed."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "conversation_id"):
            record.conversation_id = current_conversation.get() or "-"
        return True


@contextmanager
def bind_conversation(conversation_id: str) -> Iterator[None]:
    token = current_conversation.set(conversation_id)
    try:
        yield
    finally:
        current_conversation.reset(token)


def setup_logging():
    """Configure root logger once. Idempotent; repeated calls are no-ops."""
    root = logging.getLogger()

    # Only configure if no handlers exist (prevent duplicate setup)
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    # Handler-level, so records from library loggers are tagged too
    handler.addFilter(ConversationFilter())
    root.addHandler(handler)

    root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    # Silence noisy libraries
    for lib in ["httpx", "httpcore", "aiosqlite", "sqlalchemy.engine"]:
        logging.getLogger(lib).setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.INFO)


# Auto-setup on import
setup_logging()
