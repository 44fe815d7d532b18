"""Maps one upstream chat-completion chunk to a relay message."""

from __future__ import annotations

import json

from ..types import Delta, Finish, FinishReason, RelayMessage, RoleMarker

# Reasons upstream may report. ``unavailable`` is local only.
_UPSTREAM_FINISH_REASONS = {
    FinishReason.STOP.value: FinishReason.STOP,
    FinishReason.LENGTH.value: FinishReason.LENGTH,
    FinishReason.CONTENT_FILTER.value: FinishReason.CONTENT_FILTER,
}


class TranslationError(ValueError):
    """Record is not a chat-completion chunk the relay understands."""


def translate(payload: str) -> RelayMessage:
    """Translate a ``data:`` payload.

    Returns ``RoleMarker``, ``Delta`` or ``Finish``; raises
    TranslationError for anything else, which callers report as
    ``Finish(unavailable)``.
    """
    try:
        data = json.loads(payload)
    except (ValueError, RecursionError) as e:
        raise TranslationError(f"not JSON: {payload[:80]!r}") from e
    if not isinstance(data, dict):
        raise TranslationError("record is not a JSON object")

    choices = data.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise TranslationError("record has no choices")
    choice = choices[0]

    finish_reason = choice.get("finish_reason")
    if finish_reason is not None:
        if not isinstance(finish_reason, str):
            raise TranslationError(f"finish_reason is not a string: {finish_reason!r}")
        reason = _UPSTREAM_FINISH_REASONS.get(finish_reason)
        if reason is None:
            raise TranslationError(f"unknown finish_reason {finish_reason!r}")
        return Finish(reason)

    delta = choice.get("delta")
    if not isinstance(delta, dict):
        raise TranslationError("choice has no delta")
    if "role" in delta:
        return RoleMarker()
    content = delta.get("content")
    if isinstance(content, str):
        return Delta(content)
    raise TranslationError("delta carries neither role nor content")
