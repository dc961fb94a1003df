"""Error taxonomy of the list-then-watch relay.

Upstream failures are classified once, where the HTTP response or the watch
``ERROR`` frame is first seen, so callers only ever branch on the type.
"""

from __future__ import annotations

from typing import Any

from kuberelay.exceptions import AppException

GONE_STATUS = 410
GONE_REASONS = frozenset({"Expired", "Gone"})
POLICY_VIOLATION_CLOSE_CODE = 1008


class UpstreamError(AppException):
    """Failure talking to the cluster API."""

    def __init__(
        self,
        message: str,
        *,
        status: int | None = None,
        reason: str | None = None,
        code: str = "UPSTREAM_ERROR",
    ) -> None:
        super().__init__(
            message,
            status_code=502,
            code=code,
            details={k: v for k, v in (("upstream_status", status), ("reason", reason)) if v is not None},
        )
        self.status = status
        self.reason = reason

    @property
    def is_gone(self) -> bool:
        return False

    @classmethod
    def classify(cls, status: int | None, body: Any = None, message: str | None = None) -> UpstreamError:
        """Build the right subclass from an HTTP status and/or a Status document.

        The expiry signal may show up as the HTTP status, as ``code`` inside a
        Status body, or only as its ``reason``; any of them means Gone.
        """
        reason = None
        body_code = None
        body_message = None
        if isinstance(body, dict):
            reason = body.get("reason") if isinstance(body.get("reason"), str) else None
            body_code = body.get("code") if isinstance(body.get("code"), int) else None
            body_message = body.get("message") if isinstance(body.get("message"), str) else None

        effective_status = status if status is not None else body_code
        text = message or body_message or f"upstream responded with status {effective_status}"

        if effective_status == GONE_STATUS or body_code == GONE_STATUS or reason in GONE_REASONS:
            return CursorExpiredError(text, status=effective_status, reason=reason)
        return UpstreamTransportError(text, status=effective_status, reason=reason)


class UpstreamTransportError(UpstreamError):
    """Network or HTTP failure; recovered by reconnecting with backoff."""

    def __init__(self, message: str, *, status: int | None = None, reason: str | None = None) -> None:
        super().__init__(message, status=status, reason=reason, code="UPSTREAM_TRANSPORT_ERROR")


class CursorExpiredError(UpstreamError):
    """The resource version is too old to resume from (HTTP 410 Gone)."""

    def __init__(self, message: str, *, status: int | None = GONE_STATUS, reason: str | None = None) -> None:
        super().__init__(message, status=status, reason=reason, code="CURSOR_EXPIRED")

    @property
    def is_gone(self) -> bool:
        return True


class WatchStreamEnded(UpstreamError):
    """The upstream closed the watch stream cleanly."""

    def __init__(self, message: str = "watch stream ended") -> None:
        super().__init__(message, code="WATCH_STREAM_ENDED")


class MalformedFrameError(AppException):
    """A watch line that is not a JSON object."""

    def __init__(self, message: str, *, line: str) -> None:
        super().__init__(message, status_code=502, code="MALFORMED_FRAME", details={"line": line[:200]})
        self.line = line


class ProtocolViolation(AppException):
    """The opening request is missing required parameters."""

    close_code = POLICY_VIOLATION_CLOSE_CODE

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400, code="PROTOCOL_VIOLATION")


class DownstreamSendError(AppException):
    """Sending a frame to the browser failed."""

    def __init__(self, message: str, *, frame_type: str | None = None) -> None:
        super().__init__(message, status_code=500, code="DOWNSTREAM_SEND_ERROR", details={"frame_type": frame_type})
        self.frame_type = frame_type
