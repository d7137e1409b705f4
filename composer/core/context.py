"""Default thread summarizers (pure functions over an EmailThread)."""

from typing import Callable, List

from composer.core.interfaces import EmailThread

ThreadSummarizer = Callable[[EmailThread], str]

MAX_BODY_CHARS = 4000


def summarize_thread(thread: EmailThread) -> str:
    if not thread.messages:
        return "Thread is empty."

    parts = []
    for index, message in enumerate(thread.messages, start=1):
        body = message.body or message.snippet or "[No body available]"
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + "..."
        parts.append(
            "\n".join(
                [
                    f"Message #{index}",
                    f"Subject: {message.subject}",
                    f"From: {message.sender}",
                    f"To: {', '.join(message.to) or 'Unknown recipients'}",
                    f"Date: {message.date or 'Unknown'}",
                    f"Body:\n{body}",
                ]
            )
        )
    return "\n\n---\n\n".join(parts)


def build_recipient_summary(thread: EmailThread) -> str:
    """Who is on the thread, and who should receive the reply."""
    if not thread.messages:
        return "No participants."

    participants: List[str] = []
    for message in thread.messages:
        for address in [message.sender, *message.to, *message.cc]:
            if address and address not in participants:
                participants.append(address)

    last = thread.messages[-1]
    lines = [
        f"Reply to: {last.sender}",
        f"Participants: {', '.join(participants)}",
    ]
    if last.cc:
        lines.append(f"CC on latest message: {', '.join(last.cc)}")
    return "\n".join(lines)
