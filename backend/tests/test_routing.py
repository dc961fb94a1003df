from kuberelay.services.relay.pager import Page
from kuberelay.services.relay.routing import EventRouter
from kuberelay.services.relay.watch import WatchEvent, WatchPhase
from tests.support import FakeTransport, make_resource


class TestSnapshot:
    async def test_snapshot_is_sent_once(self, transport):
        router = EventRouter(transport)
        page = Page(items=[make_resource("a", "1")], resource_version="1")

        assert await router.send_snapshot(page)
        assert not await router.send_snapshot(page)

        assert len(transport.frames("INITIAL")) == 1

    async def test_absent_optional_fields_are_omitted(self, transport):
        await EventRouter(transport).send_snapshot(Page(items=[], resource_version="9"))
        assert transport.sent == [{"type": "INITIAL", "items": [], "resourceVersion": "9"}]

    async def test_snapshot_carries_pagination(self, transport):
        await EventRouter(transport).send_snapshot(
            Page(items=[], continuation_token="c1", remaining_item_count=40, resource_version="3")
        )
        frame = transport.sent[0]
        assert frame["continue"] == "c1"
        assert frame["remainingItemCount"] == 40

    async def test_initial_error_marks_snapshot_done(self, transport):
        router = EventRouter(transport)
        await router.send_initial_error("forbidden")

        assert router.snapshot_done
        assert not await router.send_snapshot(Page())
        assert transport.sent == [{"type": "INITIAL_ERROR", "message": "forbidden"}]


class TestFrames:
    async def test_event_frame(self, transport):
        item = make_resource("a", "101")
        await EventRouter(transport).send_event(WatchEvent(WatchPhase.MODIFIED, resource=item, resource_version="101"))
        assert transport.sent == [{"type": "MODIFIED", "item": item}]

    async def test_null_fields_inside_items_survive(self, transport):
        item = make_resource("a", "1", status=None)
        await EventRouter(transport).send_page(Page(items=[item]))
        assert transport.sent[0]["items"][0]["status"] is None
        assert "continue" not in transport.sent[0]

    async def test_order_is_preserved(self, transport):
        router = EventRouter(transport)
        await router.server_log("info", "hello")
        await router.send_page_error("nope")
        await router.send_ping()
        assert [f["type"] for f in transport.sent] == ["SERVER_LOG", "PAGE_ERROR", "PING"]
        assert isinstance(transport.sent[2]["timestamp"], int)

    async def test_nothing_sent_when_closed(self, transport):
        transport.open = False
        assert not await EventRouter(transport).server_log("info", "lost")
        assert transport.sent == []


class TestSendFailures:
    async def test_terminates_after_consecutive_failures(self):
        transport = FakeTransport(fail_sends=5)
        calls = []
        router = EventRouter(transport, max_send_failures=3, on_terminate=lambda: calls.append(1))

        for _ in range(5):
            assert not await router.send_ping()

        assert calls == [1]

    async def test_success_resets_failure_count(self):
        transport = FakeTransport(fail_sends=2)
        calls = []
        router = EventRouter(transport, max_send_failures=3, on_terminate=lambda: calls.append(1))

        await router.send_ping()
        await router.send_ping()
        assert await router.send_ping()
        transport.fail_sends = 2
        await router.send_ping()
        await router.send_ping()

        assert calls == []
