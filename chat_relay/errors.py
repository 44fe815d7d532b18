"""Error taxonomy for the relay.

Every error is terminal to the session that raised it and is never retried.
There is no ``Unavailable`` error. A broken upstream stream is reported
to the client as ``Finish(unavailable)`` and the session still completes.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse

from .types import ErrorMessage


class RelayError(Exception):
    """Base class for errors reported to the client."""

    status_code = 500

    def public_message(self) -> str:
        return str(self)

    def to_message(self) -> ErrorMessage:
        return ErrorMessage(error=self.public_message(), status_code=self.status_code)

    def to_json(self) -> dict:
        return {"error": self.public_message(), "status_code": self.status_code}

    def to_http_response(self) -> JSONResponse:
        return JSONResponse(content=self.to_json(), status_code=self.status_code)


class InvalidRequest(RelayError):
    status_code = 400

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"invalid request: {detail}")


class Forbidden(RelayError):
    status_code = 403

    def __init__(self, detail: str = "", error_codes: list[str] | None = None) -> None:
        self.detail = detail
        self.error_codes = list(error_codes or [])
        super().__init__(f"forbidden: {detail}" if detail else "forbidden")


class UpstreamError(RelayError):
    """Non-success status from the chat-completion endpoint."""

    status_code = 502

    def __init__(self, upstream_status: int, body: str) -> None:
        self.upstream_status = upstream_status
        self.body = body
        super().__init__(f"upstream error: {upstream_status} {body}")

    def to_json(self) -> dict:
        data = super().to_json()
        data["upstream_status"] = self.upstream_status
        return data


class InternalError(RelayError):
    """Server-side failure. The detail is for operators, not for clients."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"internal error: {detail}")

    def public_message(self) -> str:
        return "internal error"
