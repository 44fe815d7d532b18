"""chat-relay: stream chat-completion answers to visitors over a WebSocket."""

from .config import load_config
from .errors import Forbidden, InternalError, InvalidRequest, RelayError, UpstreamError
from .relay import ChunkedEventParser, RelaySession, translate
from .types import (
    ClientConfig,
    Delta,
    Finish,
    FinishReason,
    RelayConfig,
    SessionEnd,
    Start,
    TranscriptRecord,
)

__version__ = "0.1.0"

__all__ = [
    "ChunkedEventParser",
    "RelaySession",
    "load_config",
    "translate",
    "ClientConfig",
    "Delta",
    "Finish",
    "FinishReason",
    "RelayConfig",
    "SessionEnd",
    "Start",
    "TranscriptRecord",
    "Forbidden",
    "InternalError",
    "InvalidRequest",
    "RelayError",
    "UpstreamError",
]
