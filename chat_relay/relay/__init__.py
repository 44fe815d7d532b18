from .parser import ChunkedEventParser, iter_records
from .session import ClientChannel, ClientGone, RelaySession, RelaySettings, SessionState
from .transcript import build_transcript
from .translator import TranslationError, translate

__all__ = [
    "ChunkedEventParser",
    "ClientChannel",
    "ClientGone",
    "RelaySession",
    "RelaySettings",
    "SessionState",
    "TranslationError",
    "build_transcript",
    "iter_records",
    "translate",
]
