"""Cursor, query and per-session state of the list-then-watch relay."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

RESOURCE_VERSION_MATCH_NOT_OLDER_THAN = "NotOlderThan"


@dataclass(frozen=True)
class ApiTriple:
    """Identity of a resource collection. No group means the core API."""

    api_version: str
    plural: str
    api_group: str | None = None

    @property
    def is_core(self) -> bool:
        return not self.api_group

    @property
    def base_path(self) -> str:
        if self.is_core:
            return f"/api/{self.api_version}"
        return f"/apis/{self.api_group}/{self.api_version}"

    def collection_path(self, namespace: str | None = None) -> str:
        if namespace:
            return f"{self.base_path}/namespaces/{namespace}/{self.plural}"
        return f"{self.base_path}/{self.plural}"


EVENTS_V1 = ApiTriple(api_group="events.k8s.io", api_version="v1", plural="events")


@dataclass(frozen=True)
class ListQuery:
    """What a session mirrors. Built once from the opening request."""

    target: ApiTriple
    namespace: str | None = None
    field_selector: str | None = None
    label_selector: str | None = None

    @property
    def path(self) -> str:
        return self.target.collection_path(self.namespace)

    def selector_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.field_selector:
            params["fieldSelector"] = self.field_selector
        if self.label_selector:
            params["labelSelector"] = self.label_selector
        return params


@dataclass(frozen=True)
class ResourceCursor:
    """The "as of" point of the mirrored view.

    ``resource_version`` is opaque: it is only ever passed through to the
    upstream or replaced, never parsed or compared. A cursor holding a
    ``continuation_token`` addresses a page of a list and can not be used to
    resume a watch.
    """

    resource_version: str | None = None
    continuation_token: str | None = None

    @property
    def is_page_fetch(self) -> bool:
        return self.continuation_token is not None

    def advance(self, resource_version: str | None) -> ResourceCursor:
        """Return a live cursor at ``resource_version``; ``None`` keeps the current version."""
        return ResourceCursor(resource_version=resource_version or self.resource_version)

    def for_page(self, continuation_token: str | None) -> ResourceCursor:
        return replace(self, continuation_token=continuation_token or None)

    def list_params(self) -> dict[str, str]:
        if self.continuation_token:
            return {"continue": self.continuation_token}
        if self.resource_version:
            return {
                "resourceVersion": self.resource_version,
                "resourceVersionMatch": RESOURCE_VERSION_MATCH_NOT_OLDER_THAN,
            }
        return {}

    def watch_params(self) -> dict[str, str]:
        if self.resource_version:
            return {"resourceVersion": self.resource_version}
        return {}


@dataclass
class SessionState:
    """Mutable state owned by exactly one relay session.

    Only coroutines spawned by that session touch it, all on the same event
    loop, so it carries no lock.
    """

    cursor: ResourceCursor = field(default_factory=ResourceCursor)
    closed: bool = False
    watch_active: bool = False
    reconnect_in_flight: bool = False

    @property
    def resource_version(self) -> str | None:
        return self.cursor.resource_version

    def advance(self, resource_version: str | None) -> None:
        self.cursor = self.cursor.advance(resource_version)
