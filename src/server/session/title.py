from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional

from langchain_core.messages import HumanMessage

from .models import MessageRecord, MessageRole
from .store import SQLiteSessionStore

if TYPE_CHECKING:
    from src.agent.gateway import ModelGateway

logger = logging.getLogger(__name__)

_MAX_TITLE_LENGTH = 20
DEFAULT_TITLE = "New session"


async def ensure_session_title(
    store: SQLiteSessionStore,
    session_id: str,
    gateway: Optional["ModelGateway"] = None,
) -> Optional[str]:
    """Generate and persist a session title if one does not already exist.

    With a gateway the model is asked for a short title; otherwise, or when the
    model call fails, the title is derived from the first user message.
    """
    if await store.session_has_title(session_id):
        return None

    messages = await store.get_first_exchange(session_id)
    if not messages:
        logger.debug("Session %s has no messages yet; skipping title generation", session_id)
        return None

    fallback = _derive_fallback_title(messages)
    if gateway is None:
        await store.update_session_title(session_id, fallback)
        return fallback

    try:
        response = await gateway.complete([HumanMessage(content=_build_prompt(messages))], [])
    except Exception as exc:  # noqa: BLE001 - a model failure should not leave the session untitled
        logger.warning("Failed to generate session title via model: %s", exc)
        await store.update_session_title(session_id, fallback)
        return fallback

    title = _truncate_to_limit(response.text.strip().strip('"') or fallback)
    await store.update_session_title(session_id, title)
    return title


def _build_prompt(messages: Iterable[MessageRecord]) -> str:
    pairs: list[str] = []
    for message in messages:
        text = message.text().strip()
        if not text:
            continue
        if message.role is MessageRole.USER:
            pairs.append(f"User: {text}")
        elif message.role is MessageRole.ASSISTANT:
            pairs.append(f"Assistant: {text}")
    joined = "\n".join(pairs)
    return (
        "Read the conversation below and write a short title summarising its topic.\n"
        "Rules:\n"
        f"1. At most {_MAX_TITLE_LENGTH} characters;\n"
        "2. No quotes or trailing punctuation;\n"
        f'3. If no topic can be found, answer "{DEFAULT_TITLE}".\n\n'
        f"Conversation:\n{joined}\n\n"
        "Title:"
    )


def _derive_fallback_title(messages: Iterable[MessageRecord]) -> str:
    for message in messages:
        if message.role is MessageRole.USER and message.text().strip():
            return _truncate_to_limit(message.text())
    return DEFAULT_TITLE


def _truncate_to_limit(text: str) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= _MAX_TITLE_LENGTH:
        return cleaned or DEFAULT_TITLE
    trimmed = cleaned[: _MAX_TITLE_LENGTH - 1].rstrip()
    return f"{trimmed}…"
