from typing import Mapping

REASONING_SYSTEM_PROMPT = """You are an email composition assistant preparing to draft a reply.

### PROTOCOLS
1. The email thread and its participants are already loaded below. Do not ask for them.
2. Call `mail_search` only when the user refers to earlier conversations not in this thread.
3. Call `calendar_lookup` when the reply proposes, accepts or declines a time.
4. Call `knowledge_lookup` for internal facts (pricing, policies, project details).
5. Call `ask_user_for_clarification` only when the request is ambiguous and no tool can resolve it.
6. Request every tool you need in one turn. When the context is sufficient, answer without tool calls.
"""

DRAFT_SYSTEM_PROMPT = """You are an email composition assistant. Write a professional, context-aware reply.
Match the tone of the thread, keep it concise, and produce a draft that can be sent as-is.
Return only the body of the email.
"""

DEFAULT_USER_PROMPT = "Draft a reply to the latest message in this thread."

_CONTEXT_SECTIONS = (
    ("thread_summary", "EMAIL THREAD"),
    ("recipient_summary", "RECIPIENTS"),
    ("search_summary", "RELATED MAIL"),
    ("calendar_summary", "CALENDAR"),
    ("knowledge_summary", "INTERNAL KNOWLEDGE"),
)


def build_context_block(state: Mapping) -> str:
    """Render every populated summary as a titled section."""
    sections = []
    for key, title in _CONTEXT_SECTIONS:
        value = state.get(key)
        if value:
            sections.append(f"## {title}\n{value}")
    return "\n\n".join(sections)


def build_reasoning_prompt(state: Mapping) -> str:
    context = build_context_block(state)
    return f"{REASONING_SYSTEM_PROMPT}\n{context}" if context else REASONING_SYSTEM_PROMPT


def build_draft_prompt(state: Mapping) -> str:
    context = build_context_block(state)
    return f"{DRAFT_SYSTEM_PROMPT}\n{context}" if context else DRAFT_SYSTEM_PROMPT
