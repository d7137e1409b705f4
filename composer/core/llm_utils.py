import logging
from typing import AsyncIterator, Optional, Sequence

import httpx
from langchain_core.messages import AIMessage, BaseMessage
from langchain_openai import ChatOpenAI

from composer.core.config import settings

logger = logging.getLogger(__name__)


def get_httpx_timeout() -> httpx.Timeout:
    """Returns a robust timeout for LLM and provider calls."""
    return httpx.Timeout(60.0, connect=10.0)


def is_local_url(url: Optional[str]) -> bool:
    """Checks if the URL is local (localhost, 127.0.0.1, host.docker.internal)."""
    if not url:
        return False
    return "localhost" in url or "127.0.0.1" in url or "host.docker.internal" in url


def get_httpx_async_client(base_url: Optional[str] = None, headers: Optional[dict] = None) -> httpx.AsyncClient:
    """
    Returns an async httpx.AsyncClient with the standard configuration.
    Local targets bypass any system proxy (trust_env=False).
    """
    trust_env = not is_local_url(base_url)
    if not trust_env:
        logger.debug(f"Local URL detected ({base_url}). Disabling proxy (trust_env=False).")

    kwargs = {"timeout": get_httpx_timeout(), "trust_env": trust_env, "headers": headers}
    if base_url:
        kwargs["base_url"] = base_url
    return httpx.AsyncClient(**kwargs)


def get_llm_client(temperature: Optional[float] = None) -> ChatOpenAI:
    """Configures and returns the LLM instance based on settings."""
    temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
    logger.info(
        f"Initializing LLM client: base_url={settings.LLM_BASE_URL}, model={settings.LLM_MODEL}, temp={temperature}"
    )

    if not settings.LLM_API_KEY:
        logger.warning("LLM_API_KEY is not set.")

    return ChatOpenAI(
        model=settings.LLM_MODEL,
        api_key=settings.LLM_API_KEY,
        base_url=settings.LLM_BASE_URL,
        temperature=temperature,
        http_async_client=get_httpx_async_client(settings.LLM_BASE_URL),
    )


def chunk_text(content) -> str:
    """Plain text of a message or chunk content (string or content-block list)."""
    if isinstance(content, str):
        return content
    # Content-block lists (some providers stream [{"type": "text", "text": ...}])
    parts = []
    for block in content or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
        elif isinstance(block, str):
            parts.append(block)
    return "".join(parts)


class LangChainChatModel:
    """ChatModel backed by a LangChain chat model (bind_tools/ainvoke/astream)."""

    def __init__(self, llm=None):
        self.llm = llm if llm is not None else get_llm_client()

    async def invoke(self, messages: Sequence[BaseMessage], tools: Optional[list] = None) -> AIMessage:
        runnable = self.llm.bind_tools(tools) if tools else self.llm
        return await runnable.ainvoke(list(messages))

    async def stream(self, messages: Sequence[BaseMessage]) -> AsyncIterator[str]:
        async for chunk in self.llm.astream(list(messages)):
            text = chunk_text(chunk.content)
            if text:
                yield text
