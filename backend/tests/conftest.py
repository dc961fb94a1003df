"""Pytest fixtures for the relay tests."""
import pytest

from kuberelay.services.relay.cursor import ApiTriple, ListQuery, SessionState
from kuberelay.services.relay.session import RelayConfig
from kuberelay.services.upstream import UpstreamClient
from tests.support import FakeCluster, FakeTransport


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
async def upstream(cluster: FakeCluster):
    client = UpstreamClient(cluster.client(), timeout=1.0)
    yield client
    cluster.release()
    await client.aclose()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def pods_query() -> ListQuery:
    return ListQuery(target=ApiTriple(api_version="v1", plural="pods"), namespace="default")


@pytest.fixture
def state() -> SessionState:
    return SessionState()


@pytest.fixture
def fast_config() -> RelayConfig:
    """Timings short enough for tests; rotation and heartbeat effectively off."""
    return RelayConfig(
        allowed_headers=frozenset({"authorization"}),
        rotation_interval=60.0,
        error_retry_delay=0.01,
        open_retry_delay=0.01,
        heartbeat_interval=60.0,
        max_send_failures=3,
    )
