"""
Gmail and Google Calendar adapters over the public REST APIs.

One `GoogleWorkspaceClient` satisfies `ThreadProvider`, `MailSearchBackend`
and `CalendarBackend`. Access tokens come from an injected async provider,
so OAuth storage and refresh stay outside this module.
"""

import asyncio
import base64
import html
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from composer.core.config import settings
from composer.core.errors import AuthExpired, ProviderError, ThreadNotFound
from composer.core.interfaces import CalendarEvent, EmailMessage, EmailThread
from composer.core.llm_utils import get_httpx_async_client

logger = logging.getLogger(__name__)

TokenProvider = Callable[[str], Awaitable[str]]

GMAIL_PREFIX = "/gmail/v1/users/me"
CALENDAR_PREFIX = "/calendar/v3/calendars/primary"
METADATA_HEADERS = ["From", "To", "Cc", "Subject", "Date"]


async def static_token_provider(user_id: str) -> str:
    """Single-account setups: one token from settings for every user."""
    if not settings.GOOGLE_ACCESS_TOKEN:
        raise AuthExpired("GOOGLE_ACCESS_TOKEN is not configured")
    return settings.GOOGLE_ACCESS_TOKEN


# ==========================================
# Payload parsing
# ==========================================


def decode_body(data: Optional[str]) -> str:
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")


_BLOCK_TAGS = re.compile(r"<\s*(br|/p|/div|/li|/tr|/h[1-6])\s*/?>", re.IGNORECASE)
_DROP_BLOCKS = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAGS = re.compile(r"<[^>]+>")


def html_to_text(markup: str) -> str:
    text = _DROP_BLOCKS.sub("", markup)
    text = _BLOCK_TAGS.sub("\n", text)
    text = html.unescape(_TAGS.sub("", text))
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def extract_body(payload: Optional[Dict[str, Any]]) -> str:
    """Prefer the message body, then a text/plain part, then stripped HTML."""
    if not payload:
        return ""

    data = (payload.get("body") or {}).get("data")
    if data:
        body = decode_body(data)
        return html_to_text(body) if payload.get("mimeType") == "text/html" else body

    parts = payload.get("parts") or []
    for part in parts:
        if part.get("mimeType") == "text/plain":
            return decode_body((part.get("body") or {}).get("data"))
    for part in parts:
        if part.get("mimeType") == "text/html":
            return html_to_text(decode_body((part.get("body") or {}).get("data")))
    # multipart/alternative nested inside multipart/mixed
    for part in parts:
        if part.get("parts"):
            nested = extract_body(part)
            if nested:
                return nested
    return ""


def _split_addresses(value: Optional[str]) -> List[str]:
    return [a.strip() for a in (value or "").split(",") if a.strip()]


def parse_message(raw: Dict[str, Any], include_body: bool = True) -> EmailMessage:
    payload = raw.get("payload") or {}
    headers = {
        h["name"].lower(): h["value"] for h in payload.get("headers") or [] if h.get("name") and h.get("value")
    }

    date = headers.get("date")
    if not date and raw.get("internalDate"):
        date = datetime.fromtimestamp(int(raw["internalDate"]) / 1000, tz=timezone.utc).isoformat()

    return EmailMessage(
        id=raw.get("id", ""),
        thread_id=raw.get("threadId"),
        sender=headers.get("from") or "Unknown sender",
        to=_split_addresses(headers.get("to")),
        cc=_split_addresses(headers.get("cc")),
        subject=headers.get("subject") or "No subject",
        date=date,
        snippet=html.unescape(raw.get("snippet") or ""),
        body=extract_body(payload) if include_body else "",
    )


def parse_event(raw: Dict[str, Any]) -> CalendarEvent:
    start = raw.get("start") or {}
    end = raw.get("end") or {}
    return CalendarEvent(
        summary=raw.get("summary") or "Untitled",
        start=start.get("dateTime") or start.get("date"),
        end=end.get("dateTime") or end.get("date"),
        location=raw.get("location"),
        attendees=[a["email"] for a in raw.get("attendees") or [] if a.get("email")],
    )


# ==========================================
# Client
# ==========================================


class GoogleWorkspaceClient:
    def __init__(
        self,
        token_provider: TokenProvider = static_token_provider,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.token_provider = token_provider
        self.base_url = base_url or settings.GOOGLE_API_BASE_URL
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = get_httpx_async_client(self.base_url)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get(self, user_id: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        token = await self.token_provider(user_id)
        response = await self.client.get(path, params=params, headers={"Authorization": f"Bearer {token}"})

        if response.status_code == 401:
            raise AuthExpired(f"Google credentials for user '{user_id}' are expired or revoked")
        if response.status_code == 404:
            raise ThreadNotFound(f"Google resource not found: {path}")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"Google API error {response.status_code} on {path}") from e
        return response.json()

    # --- ThreadProvider ---

    async def get_thread(self, user_id: str, thread_id: str) -> EmailThread:
        data = await self._get(user_id, f"{GMAIL_PREFIX}/threads/{thread_id}", {"format": "full"})
        messages = [parse_message(m) for m in data.get("messages") or []]
        logger.debug(f"Loaded thread {thread_id} with {len(messages)} messages")
        return EmailThread(id=data.get("id", thread_id), messages=messages)

    # --- MailSearchBackend ---

    async def list_messages(self, user_id: str, query: str, max_results: int) -> List[str]:
        data = await self._get(user_id, f"{GMAIL_PREFIX}/messages", {"q": query, "maxResults": max_results})
        return [m["id"] for m in data.get("messages") or [] if m.get("id")]

    async def get_messages_bulk(self, user_id: str, ids: Sequence[str]) -> List[EmailMessage]:
        params = {"format": "metadata", "metadataHeaders": METADATA_HEADERS}
        results = await asyncio.gather(
            *(self._get(user_id, f"{GMAIL_PREFIX}/messages/{message_id}", params) for message_id in ids),
            return_exceptions=True,
        )

        messages = []
        for message_id, result in zip(ids, results):
            if isinstance(result, AuthExpired):
                raise result
            if isinstance(result, Exception):
                logger.warning(f"Skipping message {message_id}: {result}")
                continue
            messages.append(parse_message(result, include_body=False))
        return messages

    # --- CalendarBackend ---

    async def list_events(
        self,
        user_id: str,
        time_min: Optional[str],
        time_max: Optional[str],
        max_results: int,
    ) -> List[CalendarEvent]:
        params: Dict[str, Any] = {
            "timeMin": time_min or datetime.now(timezone.utc).isoformat(),
            "maxResults": max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if time_max:
            params["timeMax"] = time_max
        data = await self._get(user_id, f"{CALENDAR_PREFIX}/events", params)
        return [parse_event(item) for item in data.get("items") or []]
