"""List-then-watch WebSocket endpoints.

Both endpoints list a page, send it as ``INITIAL`` and then stream live
``ADDED``/``MODIFIED``/``DELETED`` frames. Clients page back through history
with ``{"type": "SCROLL", "continue": ...}``.
"""

import math
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

import structlog
from fastapi import APIRouter, Depends, WebSocket
from starlette.datastructures import QueryParams

from kuberelay.dependencies import get_relay_config, get_upstream_client
from kuberelay.services.relay.cursor import EVENTS_V1, ApiTriple, ListQuery
from kuberelay.services.relay.errors import ProtocolViolation
from kuberelay.services.relay.session import RelayConfig, RelaySession
from kuberelay.services.relay.sorting import SortPolicy, creation_timestamp, event_timestamp
from kuberelay.services.upstream import UpstreamClient
from kuberelay.websocket.transport import WebSocketTransport

logger = structlog.get_logger(__name__)
router = APIRouter(tags=["relay"])


def parse_limit(value: Optional[str]) -> Optional[int]:
    """Positive integer page size, anything else means no limit."""
    if not value:
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return int(number) or None


def joined_param(params: QueryParams, key: str) -> Optional[str]:
    values = [v.strip() for v in params.getlist(key)]
    values = [v for v in values if v]
    return ",".join(values) if values else None


def safe_decode(value: Optional[str]) -> Optional[str]:
    """Undo up to two extra rounds of percent-encoding; keep the raw value on failure."""
    if not value:
        return None
    try:
        once = unquote(value, errors="strict")
        return unquote(once, errors="strict") if "%" in once else once
    except UnicodeDecodeError:
        return value


@dataclass(frozen=True)
class RelayRequest:
    query: ListQuery
    limit: Optional[int] = None
    initial_continue: Optional[str] = None
    since_rv: Optional[str] = None


def parse_relay_request(params: QueryParams, target: Optional[ApiTriple] = None) -> RelayRequest:
    """Build the session query from the opening request.

    ``target`` fixes the resource; without it ``apiVersion`` and ``plural``
    are required.
    """
    if target is None:
        api_version = params.get("apiVersion") or ""
        plural = params.get("plural") or ""
        if not api_version or not plural:
            raise ProtocolViolation("apiVersion and plural are required")
        target = ApiTriple(api_group=params.get("apiGroup") or None, api_version=api_version, plural=plural)

    field_selector = joined_param(params, "fieldSelector") or joined_param(params, "field")
    label_selector = joined_param(params, "labelSelector") or joined_param(params, "labels")
    return RelayRequest(
        query=ListQuery(
            target=target,
            namespace=params.get("namespace") or None,
            field_selector=safe_decode(field_selector),
            label_selector=safe_decode(label_selector),
        ),
        limit=parse_limit(params.get("limit")),
        initial_continue=params.get("_continue") or None,
        since_rv=params.get("sinceRV") or None,
    )


async def _serve(
    websocket: WebSocket,
    upstream: UpstreamClient,
    config: RelayConfig,
    *,
    target: Optional[ApiTriple] = None,
    policy: SortPolicy = creation_timestamp,
) -> None:
    await websocket.accept()
    try:
        request = parse_relay_request(websocket.query_params, target)
    except ProtocolViolation as exc:
        logger.warning("relay.protocol_violation", error=exc.message)
        await websocket.close(code=exc.close_code, reason=exc.message)
        return

    logger.info(
        "relay.request_parsed",
        path=request.query.path,
        limit=request.limit,
        since_rv=request.since_rv,
        field_selector=request.query.field_selector,
        label_selector=request.query.label_selector,
    )
    session = RelaySession(
        WebSocketTransport(websocket),
        upstream,
        request.query,
        config,
        headers=websocket.headers,
        limit=request.limit,
        initial_continue=request.initial_continue,
        since_rv=request.since_rv,
        policy=policy,
    )
    await session.run()


@router.websocket("/list-then-watch")
async def list_then_watch(
    websocket: WebSocket,
    upstream: UpstreamClient = Depends(get_upstream_client),
    config: RelayConfig = Depends(get_relay_config),
):
    """Any resource collection, chosen with ``apiGroup``/``apiVersion``/``plural``."""
    await _serve(websocket, upstream, config)


@router.websocket("/events")
async def events(
    websocket: WebSocket,
    upstream: UpstreamClient = Depends(get_upstream_client),
    config: RelayConfig = Depends(get_relay_config),
):
    """events.k8s.io/v1 events, newest observation first."""
    await _serve(websocket, upstream, config, target=EVENTS_V1, policy=event_timestamp)
