"""
Session-scoped context variables.

Lets log records carry the WebSocket session id without threading it
through every call.
"""

from __future__ import annotations

from contextvars import ContextVar
from typing import Optional


session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
