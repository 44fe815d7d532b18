"""Upstream request assembly: prompt template + visitor question."""

from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InternalError, InvalidRequest
from .types import Message, PromptTemplate, UpstreamRequest

logger = logging.getLogger(__name__)

CURRENT_TIME_PLACEHOLDER = "[CURRENT_TIME]"
DEFAULT_MAX_QUESTION_LENGTH = 300
DEFAULT_MAX_TOKENS = 128


def resolve_timezone(name: str | None, fallback: str = "UTC") -> tzinfo:
    """Look up an IANA zone name, falling back when it is missing or unknown."""
    for candidate in (name, fallback):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %r", candidate)
    return timezone.utc


def local_datetime(tz: tzinfo, now: datetime | None = None) -> str:
    """Format *now* (default: current time) in *tz* as ``YYYY-MM-DD HH:MM:SS``."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).strftime("%Y-%m-%d %H:%M:%S")


def build_upstream_request(
    template: PromptTemplate,
    question: str,
    *,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
    max_question_length: int = DEFAULT_MAX_QUESTION_LENGTH,
    default_max_tokens: int = DEFAULT_MAX_TOKENS,
) -> UpstreamRequest:
    """Combine the prompt template with the visitor's question.

    The template is not mutated. Raises InvalidRequest for an over-long
    question and InternalError when the template does not open with a
    system message.
    """
    # The cap is in UTF-8 bytes, not characters.
    size = len(question.encode("utf-8", errors="surrogatepass"))
    if size > max_question_length:
        raise InvalidRequest(
            f"question is too long ({size} > {max_question_length} bytes)"
        )

    messages = [Message(role=m.role, content=m.content) for m in template.messages]
    messages.append(Message(role="user", content=question))

    if messages[0].role != "system":
        raise InternalError("first message must be a system message")

    messages[0].content = messages[0].content.replace(
        CURRENT_TIME_PLACEHOLDER, local_datetime(tz, now),
    )

    return UpstreamRequest(
        model=template.model,
        messages=messages,
        max_tokens=template.max_tokens or default_max_tokens,
        stream=True,
    )
