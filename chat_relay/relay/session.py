"""RelaySession: one client connection, end to end.

    awaiting_request → verifying_captcha → dispatching → streaming → completed
           └──────────────┴──────────────────┴─────────────┴──→ aborted

Each session owns its parser, its answer accumulator and its channel; no
state is shared with other sessions.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Protocol

import httpx

from ..errors import Forbidden, InternalError, InvalidRequest, RelayError, UpstreamError
from ..identity import make_id
from ..metrics import RelayMetrics
from ..prompt import build_upstream_request, resolve_timezone
from ..storage.base import RelayStore
from ..types import (
    CallerMetadata,
    Delta,
    Finish,
    FinishReason,
    RelayMessage,
    RoleMarker,
    SessionEnd,
    Start,
    TranscriptRecord,
    UpstreamRequest,
    UserRequest,
)
from ..verifier import CaptchaVerifier
from .parser import iter_records
from .transcript import build_transcript
from .translator import TranslationError, translate

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    AWAITING_REQUEST = "awaiting_request"
    VERIFYING_CAPTCHA = "verifying_captcha"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


class ClientGone(Exception):
    """The client closed the connection while the session was sending."""


class ClientChannel(Protocol):
    async def receive(self) -> str | None:
        """Next text frame, or None once the client has closed."""

    async def send(self, message: RelayMessage) -> None:
        """Deliver one message. Raises ClientGone if the client is gone."""


@dataclass(frozen=True)
class RelaySettings:
    """Per-application settings shared read-only by every session."""
    upstream_url: str
    api_key: str
    max_question_length: int = 300
    default_max_tokens: int = 128
    default_timezone: str = "UTC"


def parse_user_request(raw: str) -> UserRequest:
    """Decode the first client frame. Raises InvalidRequest."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"malformed JSON: {e.msg}") from e
    if not isinstance(data, dict):
        raise InvalidRequest("request must be a JSON object")

    question = data.get("question")
    if not isinstance(question, str):
        raise InvalidRequest("missing field 'question'")

    token = data.get("captcha_token", data.get("captchaToken"))
    if token is not None and not isinstance(token, str):
        raise InvalidRequest("'captcha_token' must be a string")
    return UserRequest(question=question, captcha_token=token or None)


class RelaySession:
    """Runs the relay state machine for a single connection."""

    def __init__(
        self,
        channel: ClientChannel,
        *,
        verifier: CaptchaVerifier,
        store: RelayStore,
        client: httpx.AsyncClient,
        settings: RelaySettings,
        metadata: CallerMetadata,
        metrics: RelayMetrics | None = None,
    ) -> None:
        self.channel = channel
        self.verifier = verifier
        self.store = store
        self.client = client
        self.settings = settings
        self.metadata = metadata
        self.metrics = metrics
        self._state = SessionState.AWAITING_REQUEST
        self._question = ""
        self._answer: list[str] = []
        self._finish_reason: FinishReason | None = None
        self._transcript: TranscriptRecord | None = None
        self._upstream_ms: float | None = None
        self._error: RelayError | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def answer(self) -> str:
        return "".join(self._answer)

    @property
    def transcript(self) -> TranscriptRecord | None:
        return self._transcript

    def _transition_to(self, new_state: SessionState) -> None:
        old = self._state
        self._state = new_state
        logger.info(
            "Session %s: %s → %s", self.metadata.remote_ip or "-", old.value, new_state.value,
        )

    async def _send(self, message: RelayMessage) -> None:
        await self.channel.send(message)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> TranscriptRecord | None:
        """Drive the session to completion.

        Returns the transcript written for this session, if any. Never
        raises for client, upstream or store failures; those end the
        session as described by the state machine.
        """
        disconnected = False
        try:
            await self._run()
        except ClientGone:
            disconnected = True
            await self._handle_disconnect()
        except RelayError as e:
            await self._abort(e)
        except Exception as e:
            logger.exception("Unexpected failure in relay session")
            await self._abort(InternalError(f"{type(e).__name__}: {e}"))
        finally:
            self._record_metrics(disconnected)
        return self._transcript

    async def _run(self) -> None:
        raw = await self.channel.receive()
        if raw is None:
            self._transition_to(SessionState.COMPLETED)
            return
        request = parse_user_request(raw)
        self._question = request.question

        self._transition_to(SessionState.VERIFYING_CAPTCHA)
        await self._verify_captcha(request)

        self._transition_to(SessionState.DISPATCHING)
        upstream_request = await self._prepare_upstream_request(request)
        await self._send(Start(upstream_request.max_tokens))
        await self._relay(upstream_request)

        self._transition_to(SessionState.COMPLETED)
        record = await self._record_transcript()
        await self._send(SessionEnd(record.id))

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    async def _verify_captcha(self, request: UserRequest) -> None:
        if not request.captcha_token:
            raise InvalidRequest("captcha token is missing")
        result = await self.verifier.verify(request.captcha_token, self.metadata.remote_ip)
        if not result.success:
            raise Forbidden(
                f"captcha verification failed: {result.error_codes}",
                error_codes=result.error_codes,
            )

    async def _prepare_upstream_request(self, request: UserRequest) -> UpstreamRequest:
        try:
            config = await asyncio.to_thread(self.store.get_client_config)
        except Exception as e:
            raise InternalError(f"failed to read client config: {e}") from e
        if config is None:
            raise InternalError("client config is missing")

        tz = resolve_timezone(self.metadata.timezone, self.settings.default_timezone)
        return build_upstream_request(
            config.prompt,
            request.question,
            tz=tz,
            max_question_length=self.settings.max_question_length,
            default_max_tokens=self.settings.default_max_tokens,
        )

    async def _relay(self, upstream_request: UpstreamRequest) -> FinishReason:
        """Stream the upstream answer to the client. Returns the finish reason sent."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.api_key}",
        }
        t_upstream = time.monotonic()
        req = self.client.build_request(
            "POST", self.settings.upstream_url,
            headers=headers, json=upstream_request.to_payload(),
        )
        try:
            upstream = await self.client.send(req, stream=True)
        except httpx.HTTPError as e:
            raise InternalError(f"upstream request failed: {e}") from e

        try:
            if not upstream.is_success:
                body = (await upstream.aread()).decode("utf-8", errors="replace")
                raise UpstreamError(upstream.status_code, body)

            self._transition_to(SessionState.STREAMING)
            reason = await self._consume(upstream)
        finally:
            await upstream.aclose()
            self._upstream_ms = round((time.monotonic() - t_upstream) * 1000, 1)

        self._finish_reason = reason
        await self._send(Finish(reason))
        return reason

    async def _consume(self, upstream: httpx.Response) -> FinishReason:
        """Translate records until a finish event or the first unusable record."""
        try:
            async with aclosing(iter_records(upstream.aiter_bytes())) as records:
                async for record in records:
                    try:
                        message = translate(record)
                    except TranslationError as e:
                        logger.warning("Ending stream on untranslatable record: %s", e)
                        return FinishReason.UNAVAILABLE
                    if isinstance(message, RoleMarker):
                        continue
                    if isinstance(message, Finish):
                        return message.reason
                    if isinstance(message, Delta):
                        self._answer.append(message.content)
                        await self._send(message)
        except (httpx.HTTPError, httpx.StreamError) as e:
            logger.warning("Upstream stream interrupted: %s", e)
            return FinishReason.UNAVAILABLE

        logger.warning("Upstream stream ended without a finish event")
        return FinishReason.UNAVAILABLE

    # ------------------------------------------------------------------
    # Completion & failure paths
    # ------------------------------------------------------------------

    async def _record_transcript(self) -> TranscriptRecord:
        record = build_transcript(
            make_id(),
            self._question,
            self.answer,
            self.metadata,
            finish_reason=self._finish_reason.value if self._finish_reason else None,
        )
        self._transcript = record
        try:
            await asyncio.to_thread(self.store.store_transcript, record)
        except Exception:
            logger.error("Failed to store transcript %s", record.id, exc_info=True)
            if self.metrics:
                self.metrics.record({"type": "store_failure", "transcript_id": record.id})
        return record

    async def _handle_disconnect(self) -> None:
        logger.info("Client disconnected during %s", self._state.value)
        self._transition_to(SessionState.ABORTED)
        if self._transcript is None and self._answer:
            await self._record_transcript()

    async def _abort(self, error: RelayError) -> None:
        self._error = error
        if isinstance(error, InternalError):
            logger.error("Session aborted: %s", error)
        else:
            logger.warning("Session aborted: %s", error)
        self._transition_to(SessionState.ABORTED)
        try:
            await self._send(error.to_message())
        except ClientGone:
            logger.info("Client gone before error could be delivered")

    def _record_metrics(self, disconnected: bool) -> None:
        if not self.metrics:
            return
        if disconnected:
            outcome = "disconnected"
        elif self._error is not None:
            outcome = type(self._error).__name__
        else:
            outcome = self._state.value
        event = {
            "type": "session",
            "outcome": outcome,
            "answer_chars": len(self.answer),
            "finish_reason": self._finish_reason.value if self._finish_reason else None,
            "transcript_id": self._transcript.id if self._transcript else None,
        }
        if self._upstream_ms is not None:
            event["upstream_ms"] = self._upstream_ms
        self.metrics.record(event)
