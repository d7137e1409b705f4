from typing import Any, Dict, Tuple

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

CLARIFICATION_TOOL = "ask_user_for_clarification"


class ClarificationArgs(BaseModel):
    question: str = Field(description="A concise clarification question for the user")


def create_clarification_capability() -> StructuredTool:
    """The run pauses after this tool until the user answers the question."""

    async def ask_user(question: str) -> Tuple[str, Dict[str, Any]]:
        question = question.strip()
        if not question:
            raise ValueError("question must not be empty")
        return f"Asked the user: {question}", {"clarification_question": question}

    return StructuredTool.from_function(
        coroutine=ask_user,
        name=CLARIFICATION_TOOL,
        description="Use when the user prompt is ambiguous or missing critical information.",
        args_schema=ClarificationArgs,
        response_format="content_and_artifact",
        metadata={"activity": "Requesting clarification"},
    )
