from functools import lru_cache

from fastapi.requests import HTTPConnection

from kuberelay.config import get_settings
from kuberelay.services.relay.session import RelayConfig
from kuberelay.services.upstream import UpstreamClient


@lru_cache(maxsize=1)
def get_relay_config() -> RelayConfig:
    return RelayConfig.from_settings(get_settings())


def get_upstream_client(connection: HTTPConnection) -> UpstreamClient:
    # created by the application lifespan, shared by every session
    return connection.app.state.upstream
