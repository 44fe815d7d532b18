"""Shared fixtures for chat-relay tests."""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

import httpx
import pytest

from chat_relay.config import load_config
from chat_relay.relay.session import ClientGone, RelaySettings
from chat_relay.storage.base import RelayStore
from chat_relay.types import (
    CallerMetadata,
    CaptchaResult,
    ClientConfig,
    Message,
    PromptTemplate,
    RelayConfig,
    TranscriptRecord,
)

UPSTREAM_URL = "http://fake-upstream:9999/v1/chat/completions"

SAMPLE_CLIENT = {
    "prompt": {
        "model": "gpt-3.5-turbo",
        "messages": [
            {"role": "system", "content": "You answer questions about Tom. Now is [CURRENT_TIME]."},
            {"role": "user", "content": "Who are you?"},
            {"role": "assistant", "content": "I am Tom's assistant."},
        ],
        "max_tokens": 200,
    },
    "questions": ["Where does Tom work?", "What is Tom's hobby?", "Who is Tom?", "Does Tom cook?"],
    "welcome": "Ask me anything about Tom.",
    "announcement": None,
}


@pytest.fixture
def sample_client_config() -> ClientConfig:
    return ClientConfig(
        prompt=PromptTemplate(
            model="gpt-3.5-turbo",
            messages=[
                Message(role="system", content="You answer questions about Tom. Now is [CURRENT_TIME]."),
                Message(role="user", content="Who are you?"),
                Message(role="assistant", content="I am Tom's assistant."),
            ],
            max_tokens=200,
        ),
        questions=list(SAMPLE_CLIENT["questions"]),
        welcome="Ask me anything about Tom.",
    )


@pytest.fixture
def tmp_store_dir():
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def tmp_sqlite_db(tmp_store_dir):
    return tmp_store_dir / "test_store.db"


@pytest.fixture
def sample_config(tmp_store_dir) -> RelayConfig:
    return load_config(config_dict={
        "upstream": {"url": UPSTREAM_URL},
        "server": {
            "allowed_origins": ["https://tomshen.io", "http://localhost:3000"],
            "max_question_length": 300,
            "hint_count": 3,
        },
        "storage": {"backend": "sqlite", "root": str(tmp_store_dir)},
        "client": SAMPLE_CLIENT,
    })


@pytest.fixture
def relay_settings() -> RelaySettings:
    return RelaySettings(
        upstream_url=UPSTREAM_URL,
        api_key="sk-test",
        max_question_length=300,
        default_max_tokens=128,
    )


@pytest.fixture
def caller() -> CallerMetadata:
    return CallerMetadata(
        remote_ip="203.0.113.7",
        country="US",
        region="California",
        city="San Francisco",
        timezone="America/Los_Angeles",
        user_agent="pytest",
        timestamp=1_700_000_000,
    )


# ---------------------------------------------------------------------------
# Upstream helpers
# ---------------------------------------------------------------------------


def sse(*payloads: dict | str) -> bytes:
    """Frame payloads the way the chat-completion API does."""
    parts = []
    for p in payloads:
        text = p if isinstance(p, str) else json.dumps(p)
        parts.append(f"data: {text}\n\n")
    return "".join(parts).encode()


def role_chunk() -> dict:
    return {"choices": [{"index": 0, "delta": {"role": "assistant"}, "finish_reason": None}]}


def delta_chunk(text: str) -> dict:
    return {"choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}]}


def finish_chunk(reason: str = "stop") -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def chunks_of(data: bytes, size: int) -> list[bytes]:
    return [data[i:i + size] for i in range(0, len(data), size)]


def streaming_client(chunks: list[bytes], status_code: int = 200, calls: list | None = None):
    """AsyncClient whose every request returns *chunks* as a streamed body."""

    async def body():
        for c in chunks:
            yield c

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        if status_code != 200:
            return httpx.Response(status_code, content=b"".join(chunks))
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=body(),
        )

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeChannel:
    """In-memory ClientChannel.

    *frames* are returned by receive() in order; None (or running out)
    means the client closed. With *fail_after*, the send after that many
    delivered messages raises ClientGone.
    """

    def __init__(self, frames: list[str | None] | None = None, fail_after: int | None = None):
        self.frames = list(frames or [])
        self.fail_after = fail_after
        self.sent: list = []

    async def receive(self) -> str | None:
        if not self.frames:
            return None
        return self.frames.pop(0)

    async def send(self, message) -> None:
        if self.fail_after is not None and len(self.sent) >= self.fail_after:
            raise ClientGone("client closed")
        self.sent.append(message)

    @property
    def wire(self) -> list[dict]:
        return [m.to_wire() for m in self.sent]


class FakeVerifier:
    def __init__(self, success: bool = True, error_codes: list[str] | None = None, exc=None):
        self.success = success
        self.error_codes = error_codes or []
        self.exc = exc
        self.calls: list[tuple[str, str]] = []

    async def verify(self, token: str, remote_ip: str) -> CaptchaResult:
        self.calls.append((token, remote_ip))
        if self.exc is not None:
            raise self.exc
        return CaptchaResult(success=self.success, error_codes=list(self.error_codes))


class MemoryStore(RelayStore):
    """RelayStore kept in dicts."""

    def __init__(self, client: ClientConfig | None = None, fail_writes: bool = False):
        self.client = client
        self.fail_writes = fail_writes
        self.backups: dict[str, ClientConfig] = {}
        self.transcripts: dict[str, TranscriptRecord] = {}

    def get_client_config(self) -> ClientConfig | None:
        return self.client

    def put_client_config(self, config: ClientConfig) -> None:
        self.client = config

    def backup_client_config(self, config: ClientConfig, *, ttl_seconds: int = 0) -> str:
        key = f"config_backup_{len(self.backups)}"
        self.backups[key] = config
        return key

    def store_transcript(self, record: TranscriptRecord) -> str:
        if self.fail_writes:
            raise OSError("disk full")
        self.transcripts[record.id] = record
        return record.id

    def get_transcript(self, transcript_id: str) -> TranscriptRecord | None:
        return self.transcripts.get(transcript_id)

    def list_transcripts(self, limit: int = 20) -> list[TranscriptRecord]:
        return sorted(self.transcripts.values(), key=lambda r: r.created_at, reverse=True)[:limit]
