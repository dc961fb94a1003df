import pytest

from kuberelay.services.relay.cursor import ResourceCursor, SessionState
from kuberelay.services.relay.errors import (
    CursorExpiredError,
    MalformedFrameError,
    UpstreamTransportError,
    WatchStreamEnded,
)
from kuberelay.services.relay.watch import WatchPhase, WatchSession, decode_frame
from tests.support import make_resource, watch_line


def _bookmark(rv: str) -> str:
    return watch_line("BOOKMARK", {"kind": "Pod", "metadata": {"resourceVersion": rv}})


async def _drain(session: WatchSession):
    received = []

    async def on_event(event):
        received.append(event)

    handle = await session.open()
    with pytest.raises(Exception) as exc_info:
        await session.consume(handle, on_event)
    await handle.abort()
    return received, exc_info.value


class TestOpen:
    async def test_watch_request_params(self, cluster, upstream, pods_query):
        state = SessionState(cursor=ResourceCursor(resource_version="300"))
        cluster.queue_watch()
        handle = await WatchSession(upstream, pods_query, state).open()
        await handle.abort()

        params = cluster.watch_requests[0].url.params
        assert params["watch"] == "1"
        assert params["allowWatchBookmarks"] == "true"
        assert params["resourceVersion"] == "300"
        assert cluster.watch_requests[0].url.path == "/api/v1/namespaces/default/pods"

    async def test_no_resource_version_without_cursor(self, cluster, upstream, pods_query, state):
        cluster.queue_watch()
        handle = await WatchSession(upstream, pods_query, state).open()
        await handle.abort()
        assert "resourceVersion" not in cluster.watch_requests[0].url.params

    async def test_gone_on_open(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(status=410, body={"kind": "Status", "code": 410, "reason": "Gone"})
        with pytest.raises(CursorExpiredError):
            await WatchSession(upstream, pods_query, state).open()

    async def test_forbidden_on_open(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(status=403, body={"kind": "Status", "code": 403, "reason": "Forbidden"})
        with pytest.raises(UpstreamTransportError) as exc_info:
            await WatchSession(upstream, pods_query, state).open()
        assert exc_info.value.status == 403


class TestConsume:
    async def test_bookmark_updates_cursor_and_is_not_forwarded(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(_bookmark("410"), _bookmark("411"))
        received, error = await _drain(WatchSession(upstream, pods_query, state))

        assert received == []
        assert state.resource_version == "411"
        assert isinstance(error, WatchStreamEnded)

    async def test_events_advance_cursor_in_order(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(
            watch_line("ADDED", make_resource("a", "101")),
            watch_line("MODIFIED", make_resource("a", "102")),
            watch_line("DELETED", make_resource("a", "103")),
        )
        received, _ = await _drain(WatchSession(upstream, pods_query, state))

        assert [e.phase for e in received] == [WatchPhase.ADDED, WatchPhase.MODIFIED, WatchPhase.DELETED]
        assert received[1].resource["metadata"]["resourceVersion"] == "102"
        assert state.resource_version == "103"

    async def test_malformed_line_is_skipped(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(
            "{not json",
            "",
            watch_line("ADDED", make_resource("after", "7")),
        )
        received, error = await _drain(WatchSession(upstream, pods_query, state))

        assert [e.name for e in received] == ["after"]
        assert isinstance(error, WatchStreamEnded)

    async def test_error_frame_with_gone_status(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(
            watch_line("ADDED", make_resource("a", "5")),
            watch_line("ERROR", {"kind": "Status", "code": 410, "reason": "Expired", "message": "too old"}),
            watch_line("ADDED", make_resource("never", "6")),
        )
        received, error = await _drain(WatchSession(upstream, pods_query, state))

        assert [e.name for e in received] == ["a"]
        assert isinstance(error, CursorExpiredError)
        assert error.reason == "Expired"

    async def test_error_frame_other_status(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(watch_line("ERROR", {"kind": "Status", "code": 500, "message": "etcd"}))
        _, error = await _drain(WatchSession(upstream, pods_query, state))
        assert isinstance(error, UpstreamTransportError)
        assert not error.is_gone

    async def test_unnamed_and_unknown_frames_are_dropped(self, cluster, upstream, pods_query, state):
        cluster.queue_watch(
            watch_line("ADDED", {"metadata": {"resourceVersion": "8"}}),
            watch_line("SOMETHING", make_resource("odd", "9")),
            watch_line("ADDED", make_resource("b", "10")),
        )
        received, _ = await _drain(WatchSession(upstream, pods_query, state))
        assert [e.name for e in received] == ["b"]


async def test_abort_is_idempotent(cluster, upstream, pods_query, state):
    cluster.queue_watch(hold=True)
    handle = await WatchSession(upstream, pods_query, state).open()
    await handle.abort()
    await handle.abort()
    assert handle.aborted


def test_decode_frame_requires_type():
    with pytest.raises(MalformedFrameError):
        decode_frame('{"object": {}}')
    with pytest.raises(MalformedFrameError):
        decode_frame("[1, 2]")
    assert decode_frame('{"type": "ADDED", "object": {}}')["type"] == "ADDED"
