"""
The fixed set of tools the reasoning step may request.

Every capability is a LangChain `StructuredTool` built with
`response_format="content_and_artifact"`: the content is what the model sees
as the tool result, the artifact is the state update merged into AgentState.
Tools read the conversation state from `config["configurable"]`.
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from pydantic import BaseModel, Field, ValidationError

from composer.core.errors import CapabilityFailure, UnknownCapability
from composer.core.llm_utils import chunk_text

logger = logging.getLogger(__name__)

STATE_CONFIG_KEY = "composition_state"


class CapabilityResult(BaseModel):
    content: str
    state_update: Dict[str, Any] = Field(default_factory=dict)  # Merged last-write-wins into AgentState


def capability_state(config: Optional[RunnableConfig]) -> Mapping[str, Any]:
    """Conversation state handed to a tool by `CapabilityRegistry.call`."""
    return ((config or {}).get("configurable") or {}).get(STATE_CONFIG_KEY) or {}


def require_user_id(config: Optional[RunnableConfig], purpose: str) -> str:
    user_id = capability_state(config).get("user_id")
    if not user_id:
        raise ValueError(f"user_id is required to {purpose}")
    return user_id


class CapabilityRegistry:
    def __init__(self, tools: Optional[Iterable[BaseTool]] = None):
        self._tools: Dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Capability '{tool.name}' is already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    @property
    def tools(self) -> List[BaseTool]:
        """Tool objects, as passed to `bind_tools`."""
        return list(self._tools.values())

    def label(self, name: str) -> str:
        """Progress label, e.g. "Searching Gmail history"."""
        tool = self._tools.get(name)
        activity = (tool.metadata or {}).get("activity") if tool is not None else None
        return activity or f"Running {name}"

    async def call(
        self,
        name: str,
        arguments: Optional[Mapping[str, Any]],
        state: Mapping[str, Any],
        call_id: Optional[str] = None,
    ) -> CapabilityResult:
        """
        Validate arguments and run the tool.
        Raises UnknownCapability / CapabilityFailure; never anything else.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownCapability(name)

        tool_call = {"type": "tool_call", "name": name, "args": dict(arguments or {}), "id": call_id or f"call_{name}"}
        try:
            message = await tool.ainvoke(tool_call, config={"configurable": {STATE_CONFIG_KEY: state}})
        except ValidationError as e:
            raise CapabilityFailure(name, f"invalid arguments ({e.error_count()} errors): {e}") from e
        except CapabilityFailure:
            raise
        except Exception as e:
            raise CapabilityFailure(name, str(e) or type(e).__name__) from e

        return CapabilityResult(content=chunk_text(message.content), state_update=dict(message.artifact or {}))
