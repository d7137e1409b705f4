from typing import Any, Dict, Tuple

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from composer.core.config import settings
from composer.core.interfaces import MailSearchBackend
from composer.tools.registry import require_user_id


class MailSearchArgs(BaseModel):
    query: str = Field(description="Gmail search query, e.g. subject:invoice after:2024/01/01")
    max_results: int = Field(default=settings.SEARCH_MAX_RESULTS, ge=1, le=25)


def create_mail_search_capability(backend: MailSearchBackend) -> StructuredTool:
    async def search_mail(
        query: str, config: RunnableConfig, max_results: int = settings.SEARCH_MAX_RESULTS
    ) -> Tuple[str, Dict[str, Any]]:
        user_id = require_user_id(config, "search mail")

        ids = await backend.list_messages(user_id, query, max_results)
        if not ids:
            text = "No matching Gmail messages found for the provided query."
            return text, {"search_summary": text}

        messages = await backend.get_messages_bulk(user_id, ids)
        summaries = [
            f"Subject: {m.subject}\nFrom: {m.sender}\nDate: {m.date or 'Unknown'}\nSnippet: {m.snippet}"
            for m in messages
            if m is not None
        ]
        text = "\n\n---\n\n".join(summaries) or "No messages could be summarized."
        return text, {"search_summary": text}

    return StructuredTool.from_function(
        coroutine=search_mail,
        name="mail_search",
        description="Searches the user's mailbox for related threads or historical context using Gmail query syntax.",
        args_schema=MailSearchArgs,
        response_format="content_and_artifact",
        metadata={"activity": "Searching Gmail history"},
    )
