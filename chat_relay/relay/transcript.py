"""Builds the completion record handed to the transcript store."""

from __future__ import annotations

from ..identity import utc_timestamp
from ..types import CallerMetadata, TranscriptRecord


def build_transcript(
    session_id: str,
    question: str,
    answer: str,
    metadata: CallerMetadata,
    *,
    finish_reason: str | None = None,
    created_at: int | None = None,
) -> TranscriptRecord:
    return TranscriptRecord(
        id=session_id,
        question=question,
        answer=answer,
        metadata=metadata,
        created_at=utc_timestamp() if created_at is None else created_at,
        finish_reason=finish_reason,
    )
