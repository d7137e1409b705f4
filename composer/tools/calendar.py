from typing import Any, Dict, Optional, Tuple

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from composer.core.interfaces import CalendarBackend
from composer.tools.registry import require_user_id


class CalendarLookupArgs(BaseModel):
    time_min: Optional[str] = Field(default=None, description="RFC3339 timestamp for the start of the window")
    time_max: Optional[str] = Field(default=None, description="RFC3339 timestamp for the end of the window")
    max_results: int = Field(default=10, ge=1, le=20)


def create_calendar_capability(backend: CalendarBackend) -> StructuredTool:
    async def lookup_calendar(
        config: RunnableConfig,
        time_min: Optional[str] = None,
        time_max: Optional[str] = None,
        max_results: int = 10,
    ) -> Tuple[str, Dict[str, Any]]:
        user_id = require_user_id(config, "read calendar events")

        events = await backend.list_events(user_id, time_min, time_max, max_results)
        if not events:
            text = "No calendar events were found for the requested window."
        else:
            text = "\n\n---\n\n".join(
                f"Event: {e.summary}\nWhen: {e.start} - {e.end}\n"
                f"Location: {e.location or 'N/A'}\nAttendees: {', '.join(e.attendees) or 'None'}"
                for e in events
            )
        return text, {"calendar_summary": text}

    return StructuredTool.from_function(
        coroutine=lookup_calendar,
        name="calendar_lookup",
        description="Retrieves the user's calendar events in a time window to check availability before proposing times.",
        args_schema=CalendarLookupArgs,
        response_format="content_and_artifact",
        metadata={"activity": "Checking calendar availability"},
    )
