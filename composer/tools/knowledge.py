from typing import Any, Dict, Tuple

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from composer.core.interfaces import KnowledgeBase
from composer.tools.registry import capability_state


class KnowledgeLookupArgs(BaseModel):
    query: str = Field(description="What to look up in the internal knowledge base")
    limit: int = Field(default=5, ge=1, le=15)


def create_knowledge_capability(knowledge_base: KnowledgeBase) -> StructuredTool:
    async def lookup_knowledge(query: str, config: RunnableConfig, limit: int = 5) -> Tuple[str, Dict[str, Any]]:
        snippets = await knowledge_base.search(capability_state(config).get("user_id", ""), query, limit)
        if not snippets:
            text = f"No internal knowledge found for: {query}"
        else:
            text = "\n\n".join(f"[{s.source.upper()}] {s.content}" for s in snippets)
        return text, {"knowledge_summary": text}

    return StructuredTool.from_function(
        coroutine=lookup_knowledge,
        name="knowledge_lookup",
        description="Looks up internal notes and documents (policies, pricing, project details) relevant to the reply.",
        args_schema=KnowledgeLookupArgs,
        response_format="content_and_artifact",
        metadata={"activity": "Looking up internal knowledge"},
    )
