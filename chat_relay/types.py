"""All dataclasses, enums, and type aliases for chat-relay."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Literal, Union


# ---------------------------------------------------------------------------
# Prompt & client configuration
# ---------------------------------------------------------------------------

Role = Literal["system", "user", "assistant"]

ROLES: tuple[str, ...] = ("system", "user", "assistant")


@dataclass
class Message:
    role: str  # "system", "user", "assistant"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class PromptTemplate:
    """Model plus the ordered message list sent ahead of every question."""
    model: str
    messages: list[Message] = field(default_factory=list)
    max_tokens: int | None = None


@dataclass
class ClientConfig:
    """Configuration document held by the configuration store."""
    prompt: PromptTemplate
    questions: list[str] = field(default_factory=list)
    welcome: str = ""
    announcement: str | None = None

    def to_dict(self) -> dict:
        return {
            "prompt": {
                "model": self.prompt.model,
                "messages": [m.to_dict() for m in self.prompt.messages],
                "max_tokens": self.prompt.max_tokens,
            },
            "questions": list(self.questions),
            "welcome": self.welcome,
            "announcement": self.announcement,
        }


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

@dataclass
class UserRequest:
    """First frame sent by the client on a chat connection."""
    question: str
    captcha_token: str | None = None


@dataclass
class UpstreamRequest:
    model: str
    messages: list[Message]
    max_tokens: int
    stream: bool = True

    def to_payload(self) -> dict:
        return {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
            "max_tokens": self.max_tokens,
            "stream": self.stream,
        }


@dataclass
class CaptchaResult:
    success: bool
    error_codes: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Relay messages (tagged union sent to the client)
# ---------------------------------------------------------------------------

class FinishReason(Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    UNAVAILABLE = "unavailable"  # local: stream broke or could not be parsed


@dataclass(frozen=True)
class RoleMarker:
    """Upstream's opening ``{"role": "assistant"}`` delta. Never forwarded."""

    def to_wire(self) -> dict:
        return {"type": "role"}


@dataclass(frozen=True)
class Start:
    max_tokens: int

    def to_wire(self) -> dict:
        return {"type": "start", "max_tokens": self.max_tokens}


@dataclass(frozen=True)
class Delta:
    content: str

    def to_wire(self) -> dict:
        return {"type": "delta", "content": self.content}


@dataclass(frozen=True)
class Finish:
    reason: FinishReason

    def to_wire(self) -> dict:
        return {"type": "finish", "reason": self.reason.value}


@dataclass(frozen=True)
class SessionEnd:
    id: str

    def to_wire(self) -> dict:
        return {"type": "end", "id": self.id}


@dataclass(frozen=True)
class ErrorMessage:
    error: str
    status_code: int

    def to_wire(self) -> dict:
        return {"type": "error", "error": self.error, "status_code": self.status_code}


RelayMessage = Union[RoleMarker, Start, Delta, Finish, SessionEnd, ErrorMessage]


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CallerMetadata:
    """Network origin and coarse geolocation of the caller."""
    remote_ip: str = ""
    country: str | None = None
    region: str | None = None
    city: str | None = None
    timezone: str | None = None
    user_agent: str | None = None
    timestamp: int = 0  # epoch seconds when the connection was accepted

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict) -> CallerMetadata:
        return cls(
            remote_ip=raw.get("remote_ip", ""),
            country=raw.get("country"),
            region=raw.get("region"),
            city=raw.get("city"),
            timezone=raw.get("timezone"),
            user_agent=raw.get("user_agent"),
            timestamp=raw.get("timestamp", 0),
        )


@dataclass(frozen=True)
class TranscriptRecord:
    """Durable record of one (possibly partial) question/answer exchange."""
    id: str
    question: str
    answer: str
    metadata: CallerMetadata
    created_at: int  # epoch seconds
    finish_reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "question": self.question,
            "answer": self.answer,
            "metadata": self.metadata.to_dict(),
            "created_at": self.created_at,
            "finish_reason": self.finish_reason,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> TranscriptRecord:
        return cls(
            id=raw["id"],
            question=raw.get("question", ""),
            answer=raw.get("answer", ""),
            metadata=CallerMetadata.from_dict(raw.get("metadata") or {}),
            created_at=raw.get("created_at", 0),
            finish_reason=raw.get("finish_reason"),
        )


# ---------------------------------------------------------------------------
# Server settings
# ---------------------------------------------------------------------------

@dataclass
class UpstreamConfig:
    url: str = "https://api.openai.com/v1/chat/completions"
    api_key_env: str = "OPENAI_API_KEY"
    timeout: float = 60.0
    connect_timeout: float = 10.0


@dataclass
class CaptchaConfig:
    verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    secret_env: str = "TURNSTILE_SECRET_KEY"
    timeout: float = 10.0


@dataclass
class ServerConfig:
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])
    max_question_length: int = 300
    default_max_tokens: int = 128
    timezone: str = "UTC"  # used when the caller's timezone is unknown
    hint_count: int = 3
    admin_secret_env: str = "CHAT_RELAY_ADMIN_SECRET"


@dataclass
class StorageConfig:
    backend: str = "sqlite"  # "sqlite" or "filesystem"
    root: str = ".chat-relay"

    @property
    def sqlite_path(self) -> str:
        return f"{self.root}/store.db"


@dataclass
class RelayConfig:
    """Top-level configuration for the relay service."""
    version: str = "1.0"
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    captcha: CaptchaConfig = field(default_factory=CaptchaConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    client: ClientConfig | None = None  # seeds the store when it holds nothing
