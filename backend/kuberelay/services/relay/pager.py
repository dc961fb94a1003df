from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from kuberelay.services.relay.cursor import ListQuery, SessionState
from kuberelay.services.relay.sorting import SortPolicy, creation_timestamp, sort_newest_first
from kuberelay.services.upstream import UpstreamClient

logger = structlog.get_logger(__name__)


@dataclass
class Page:
    """One list response, items already sorted newest first."""

    items: list[dict[str, Any]] = field(default_factory=list)
    continuation_token: Optional[str] = None
    remaining_item_count: Optional[int] = None
    resource_version: Optional[str] = None

    @classmethod
    def from_list_body(cls, body: Mapping[str, Any], policy: SortPolicy = creation_timestamp) -> "Page":
        metadata = body.get("metadata") if isinstance(body.get("metadata"), dict) else {}
        raw_items = body.get("items") if isinstance(body.get("items"), list) else []
        items = [item for item in raw_items if isinstance(item, dict)]

        token = metadata.get("continue") or metadata.get("_continue")
        remaining = metadata.get("remainingItemCount")
        rv = metadata.get("resourceVersion")
        return cls(
            items=sort_newest_first(items, policy),
            continuation_token=token if isinstance(token, str) and token else None,
            remaining_item_count=remaining if isinstance(remaining, int) else None,
            resource_version=str(rv) if rv else None,
        )


class Pager:
    """Issues list requests for one session's query.

    Errors are ``UpstreamError`` subclasses and are never retried here.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        query: ListQuery,
        state: SessionState,
        *,
        headers: Optional[Mapping[str, str]] = None,
        policy: SortPolicy = creation_timestamp,
    ) -> None:
        self._upstream = upstream
        self._query = query
        self._state = state
        self._headers = dict(headers or {})
        self._policy = policy

    def build_params(self, limit: Optional[int] = None, continuation_token: Optional[str] = None) -> dict[str, str]:
        params: dict[str, str] = {}
        if limit:
            params["limit"] = str(limit)
        params.update(self._query.selector_params())
        params.update(self._state.cursor.for_page(continuation_token).list_params())
        return params

    async def fetch_page(
        self,
        limit: Optional[int] = None,
        continuation_token: Optional[str] = None,
        capture_cursor: bool = False,
    ) -> Page:
        params = self.build_params(limit, continuation_token)
        body = await self._upstream.get_json(self._query.path, params=params, headers=self._headers)
        page = Page.from_list_body(body, self._policy)

        if capture_cursor:
            self._state.advance(page.resource_version)

        logger.debug(
            "relay.pager.page_received",
            path=self._query.path,
            items=len(page.items),
            has_more=page.continuation_token is not None,
            resource_version=page.resource_version,
            captured=capture_cursor,
        )
        return page
