import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class FrameType(str, Enum):
    """Frame types exchanged over the relay WebSocket"""
    INITIAL = "INITIAL"
    INITIAL_ERROR = "INITIAL_ERROR"
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    PAGE = "PAGE"
    PAGE_ERROR = "PAGE_ERROR"
    SERVER_LOG = "SERVER_LOG"
    PING = "PING"
    # client -> server
    SCROLL = "SCROLL"
    PONG = "PONG"


class Frame(BaseModel):
    model_config = ConfigDict(use_enum_values=True, populate_by_name=True)

    type: FrameType

    def to_payload(self) -> dict[str, Any]:
        # optional fields are omitted, never sent as null
        data = self.model_dump(mode="json", by_alias=True)
        return {k: v for k, v in data.items() if v is not None}


class SnapshotFrame(Frame):
    type: FrameType = FrameType.INITIAL
    items: list[dict[str, Any]] = Field(default_factory=list)
    continue_token: Optional[str] = Field(default=None, alias="continue")
    remaining_item_count: Optional[int] = Field(default=None, alias="remainingItemCount")
    resource_version: Optional[str] = Field(default=None, alias="resourceVersion")


class PageFrame(Frame):
    type: FrameType = FrameType.PAGE
    items: list[dict[str, Any]] = Field(default_factory=list)
    continue_token: Optional[str] = Field(default=None, alias="continue")
    remaining_item_count: Optional[int] = Field(default=None, alias="remainingItemCount")


class EventFrame(Frame):
    """ADDED / MODIFIED / DELETED"""
    item: dict[str, Any]


class ErrorFrame(Frame):
    """INITIAL_ERROR / PAGE_ERROR"""
    message: str


class ServerLogFrame(Frame):
    type: FrameType = FrameType.SERVER_LOG
    level: str = "info"
    message: str


class PingFrame(Frame):
    type: FrameType = FrameType.PING
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))


class ScrollRequest(BaseModel):
    """A client's request for the next page of history."""
    continue_token: str
    limit: Optional[int] = None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> Optional["ScrollRequest"]:
        token = message.get("continue")
        if not isinstance(token, str) or not token:
            return None
        limit = message.get("limit")
        # bool is an int subclass but never a page size
        if isinstance(limit, bool) or not isinstance(limit, (int, float)) or limit <= 0:
            limit = None
        else:
            limit = int(limit) or None
        return cls(continue_token=token, limit=limit)
