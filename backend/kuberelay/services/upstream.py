from __future__ import annotations

import os
import ssl
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException
from kubernetes.config.incluster_config import InClusterConfigLoader

from kuberelay.config import Settings
from kuberelay.services.relay.errors import UpstreamError, UpstreamTransportError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UpstreamEndpoint:
    """Where and how to reach the cluster API."""

    base_url: str
    verify_tls: bool = True
    ca_file: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    default_headers: dict[str, str] = field(default_factory=dict)
    source: str = "in-cluster"

    def ssl_context(self) -> ssl.SSLContext | bool:
        if not self.verify_tls:
            return False
        ctx = ssl.create_default_context(cafile=self.ca_file) if self.ca_file else ssl.create_default_context()
        if self.cert_file:
            ctx.load_cert_chain(self.cert_file, self.key_file)
        return ctx


def _endpoint_from_configuration(configuration: client.Configuration, source: str, with_credentials: bool) -> UpstreamEndpoint:
    headers: dict[str, str] = {}
    if with_credentials:
        token = (configuration.api_key or {}).get("authorization") or (configuration.api_key or {}).get("BearerToken")
        if token:
            headers["Authorization"] = token if token.lower().startswith("bearer ") else f"Bearer {token}"
    return UpstreamEndpoint(
        base_url=configuration.host,
        verify_tls=bool(configuration.verify_ssl),
        ca_file=configuration.ssl_ca_cert,
        cert_file=configuration.cert_file if with_credentials else None,
        key_file=configuration.key_file if with_credentials else None,
        default_headers=headers,
        source=source,
    )


def resolve_endpoint(settings: Settings) -> UpstreamEndpoint:
    """Work out the cluster API endpoint.

    Development mode talks plain to ``dev_kube_api_url`` (usually a
    ``kubectl proxy``). A configured kubeconfig is used with its own
    credentials. Otherwise the in-cluster service host and CA are used
    without the service-account token: the browser's forwarded headers
    authenticate each call.
    """
    if settings.development:
        return UpstreamEndpoint(base_url=settings.dev_kube_api_url, verify_tls=False, source="development")

    configuration = client.Configuration()
    if settings.kube_config_path:
        try:
            config.load_kube_config(
                config_file=settings.kube_config_path,
                context=settings.kube_context,
                client_configuration=configuration,
            )
            return _endpoint_from_configuration(configuration, settings.kube_context or "kubeconfig", with_credentials=True)
        except ConfigException as exc:
            logger.warning("upstream.kubeconfig_missing", error=str(exc), path=settings.kube_config_path)

    token_path = os.path.join(settings.service_account_dir, "token")
    ca_path = os.path.join(settings.service_account_dir, "ca.crt")
    try:
        InClusterConfigLoader(token_filename=token_path, cert_filename=ca_path).load_and_set(configuration)
        return _endpoint_from_configuration(configuration, "in-cluster", with_credentials=False)
    except ConfigException as exc:
        logger.warning("upstream.incluster_config_incomplete", error=str(exc))

    host = settings.kubernetes_service_host or "kubernetes.default.svc"
    if ":" in host:
        host = f"[{host}]"
    return UpstreamEndpoint(
        base_url=f"https://{host}:{settings.kubernetes_service_port}",
        ca_file=ca_path if os.path.exists(ca_path) else None,
        source="service-env",
    )


def _describe(exc: Exception) -> str:
    return str(exc) or exc.__class__.__name__


def connection_limits(settings: Settings) -> httpx.Limits:
    """Pool limits for the shared client: every live session pins one watch connection."""
    return httpx.Limits(max_connections=None, max_keepalive_connections=settings.upstream_max_keepalive)


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class UpstreamClient:
    """Async HTTP access to the cluster API shared by every relay session.

    Wraps one pooled ``httpx.AsyncClient``; all failures leave this class as
    an ``UpstreamError`` subclass.
    """

    def __init__(self, http: httpx.AsyncClient, *, timeout: float = 5.0) -> None:
        self._http = http
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> UpstreamClient:
        endpoint = resolve_endpoint(settings)
        http = httpx.AsyncClient(
            base_url=endpoint.base_url,
            verify=endpoint.ssl_context(),
            headers={"Accept": "application/json", **endpoint.default_headers},
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            limits=connection_limits(settings),
        )
        logger.info("upstream.client_created", base_url=endpoint.base_url, source=endpoint.source)
        return cls(http, timeout=settings.upstream_timeout_seconds)

    @property
    def base_url(self) -> str:
        return str(self._http.base_url)

    async def get_json(
        self,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._http.get(path, params=dict(params or {}), headers=dict(headers or {}))
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"GET {path} failed: {_describe(exc)}") from exc

        if response.is_error:
            raise UpstreamError.classify(response.status_code, _json_or_none(response))

        body = _json_or_none(response)
        if not isinstance(body, dict):
            raise UpstreamTransportError(f"GET {path} returned a non-object body", status=response.status_code)
        return body

    async def open_stream(
        self,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """Start a streaming GET and return once the response headers arrived."""
        request = self._http.build_request(
            "GET",
            path,
            params=dict(params or {}),
            headers=dict(headers or {}),
            timeout=httpx.Timeout(self._timeout, read=None),
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"watch {path} failed: {_describe(exc)}") from exc

        if response.is_error:
            body = None
            try:
                await response.aread()
                body = _json_or_none(response)
            except httpx.HTTPError:
                pass
            finally:
                await response.aclose()
            raise UpstreamError.classify(response.status_code, body)
        return response

    async def get_version(self) -> dict[str, Any]:
        return await self.get_json("/version")

    async def aclose(self) -> None:
        await self._http.aclose()
