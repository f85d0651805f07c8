"""HTTP client for the OpenStack services the operator drives.

One client instance is built at startup and handed to every component that
needs the provider. It owns the operator's Keystone session and re-authenticates
transparently when a token expires.

Every request carries the fixed deadline from ``Config.provider_timeout_seconds``;
callers never wrap provider calls in their own timeouts.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any

import httpx

from .config import Config
from .models import AuthSpec

logger = logging.getLogger(__name__)

# Page size requested from list endpoints (marker pagination)
DEFAULT_PAGE_SIZE = 500

# Upper bound on pages per listing to stop a misbehaving endpoint looping forever
MAX_LIST_PAGES = 1000

SERVICE_ORCHESTRATION = "orchestration"
SERVICE_COMPUTE = "compute"
SERVICE_NETWORK = "network"
SERVICE_LOAD_BALANCER = "load-balancer"


class ProviderKind(str, Enum):
    """Provider resource kinds that can be polled."""

    STACKS = "stacks"
    INSTANCES = "instances"
    LOAD_BALANCERS = "loadbalancers"
    FLOATING_IPS = "floatingips"
    PORTS = "ports"


class ProviderError(Exception):
    """Raised when the provider returns an unexpected response."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderConflict(ProviderError):
    """409: the resource already exists or is busy with another operation."""

    pass


class ProviderNotFound(ProviderError):
    """404: the resource does not exist."""

    pass


class ProviderTransient(ProviderError):
    """Timeouts, transport failures and 5xx responses."""

    pass


def _error_message(resp: httpx.Response) -> str:
    """Extract a readable message from the various OpenStack error bodies."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    if isinstance(body, dict):
        # Heat: {"error": {"message": ...}}, Neutron: {"NeutronError": {...}},
        # Nova: {"itemNotFound": {"message": ...}}, Octavia: {"faultstring": ...}
        if "faultstring" in body:
            return str(body["faultstring"])
        for value in body.values():
            if isinstance(value, dict) and "message" in value:
                return str(value["message"])
        if "message" in body:
            return str(body["message"])
    return resp.text[:500]


class OpenStackClient:
    """Manages communication with Keystone, Heat, Nova, Neutron and Octavia.

    Parameters
    ----------
    config:
        Operator configuration (credentials, region, request deadline).
    http_client:
        Optional pre-built ``httpx.Client``; tests pass one bound to a mock
        transport.
    """

    def __init__(self, config: Config, http_client: httpx.Client | None = None) -> None:
        self._config = config
        self._client = http_client or httpx.Client(timeout=config.provider_timeout_seconds)
        self._lock = threading.Lock()
        self._token: str | None = None
        self._project_id = ""
        self._catalog: dict[str, str] = {}

    # -- lifecycle --------------------------------------------------------------

    def close(self) -> None:
        if not self._client.is_closed:
            self._client.close()

    @property
    def project_id(self) -> str:
        self._ensure_token()
        return self._project_id

    # -- authentication ---------------------------------------------------------

    def reauthenticate(self) -> None:
        """Fetch a fresh token and service catalog for the operator session."""
        cfg = self._config
        payload = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": cfg.username,
                            "password": cfg.password,
                            "domain": {"name": cfg.user_domain},
                        }
                    },
                },
                "scope": {
                    "project": {
                        "name": cfg.project_name,
                        "domain": {"name": cfg.project_domain},
                    }
                },
            }
        }
        url = cfg.auth_url.rstrip("/") + "/auth/tokens"
        try:
            resp = self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise ProviderTransient(f"authenticate: timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransient(f"authenticate: {e}") from e
        self._check_response(resp, "authenticate")

        token_body = resp.json().get("token", {})
        with self._lock:
            self._token = resp.headers.get("X-Subject-Token")
            self._project_id = token_body.get("project", {}).get("id", "")
            self._catalog = self._parse_catalog(token_body.get("catalog", []))
        logger.info(
            "Authenticated with identity service",
            extra={"project_id": self._project_id, "services": sorted(self._catalog)},
        )

    def _parse_catalog(self, catalog: list[dict[str, Any]]) -> dict[str, str]:
        endpoints: dict[str, str] = {}
        for service in catalog:
            for endpoint in service.get("endpoints", []):
                if endpoint.get("interface") != self._config.interface:
                    continue
                region = self._config.region
                if region and endpoint.get("region_id", endpoint.get("region")) != region:
                    continue
                endpoints[service.get("type", "")] = endpoint.get("url", "").rstrip("/")
                break
        return endpoints

    def _ensure_token(self) -> str:
        if self._token is None:
            self.reauthenticate()
        assert self._token is not None
        return self._token

    def _endpoint(self, service: str) -> str:
        self._ensure_token()
        url = self._catalog.get(service)
        if not url:
            raise ProviderError(f"Service '{service}' not found in catalog")
        return url

    def _orchestration_url(self, project_id: str | None = None) -> str:
        """Heat endpoints embed the project; swap it for tenant-scoped calls."""
        url = self._endpoint(SERVICE_ORCHESTRATION)
        if project_id and self._project_id and url.endswith(self._project_id):
            return url[: -len(self._project_id)] + project_id
        return url

    # -- transport ----------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request, re-authenticating once on 401 for the operator session."""
        attempts = 1 if token else 2
        resp: httpx.Response | None = None
        for attempt in range(attempts):
            headers = {"X-Auth-Token": token or self._ensure_token(), "Accept": "application/json"}
            try:
                resp = self._client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise ProviderTransient(f"{operation}: timed out: {e}") from e
            except httpx.TransportError as e:
                raise ProviderTransient(f"{operation}: {e}") from e
            if resp.status_code == 401 and attempt + 1 < attempts:
                logger.info("Token rejected, re-authenticating", extra={"operation": operation})
                self.reauthenticate()
                continue
            break
        assert resp is not None
        self._check_response(resp, operation)
        return resp

    @staticmethod
    def _check_response(resp: httpx.Response, operation: str) -> None:
        if resp.is_success:
            return
        message = f"{operation}: HTTP {resp.status_code}: {_error_message(resp)}"
        if resp.status_code == 404:
            raise ProviderNotFound(message, status_code=404, body=resp.text)
        if resp.status_code == 409:
            raise ProviderConflict(message, status_code=409, body=resp.text)
        if resp.status_code >= 500:
            raise ProviderTransient(message, status_code=resp.status_code, body=resp.text)
        raise ProviderError(message, status_code=resp.status_code, body=resp.text)

    def _list_paginated(
        self,
        url: str,
        collection: str,
        operation: str,
        params: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Follow marker pagination until a short page is returned."""
        items: list[dict[str, Any]] = []
        query = dict(params or {})
        query["limit"] = DEFAULT_PAGE_SIZE
        for _ in range(MAX_LIST_PAGES):
            resp = self._request("GET", url, operation, params=query)
            page = resp.json().get(collection, [])
            items.extend(page)
            if len(page) < DEFAULT_PAGE_SIZE:
                return items
            query["marker"] = page[-1]["id"]
        logger.warning("Listing truncated", extra={"operation": operation, "items": len(items)})
        return items

    # -- stacks -----------------------------------------------------------------

    def create_stack(
        self,
        auth: AuthSpec | None,
        name: str,
        template: str,
        tags: list[str],
        timeout_minutes: int,
    ) -> str:
        """Create a stack and return its ID.

        When tenant credentials are supplied the stack is created in (and
        owned by) the tenant's project.
        """
        token = None
        project_id = None
        if auth is not None and auth.token and auth.project_id:
            token = auth.token
            project_id = auth.project_id
        body = {
            "stack_name": name,
            "template": template,
            "timeout_mins": timeout_minutes,
            "tags": ",".join(tags),
        }
        url = self._orchestration_url(project_id) + "/stacks"
        resp = self._request("POST", url, f"create stack {name}", token=token, json=body)
        return resp.json().get("stack", {}).get("id", "")

    def update_stack(
        self,
        stack_name: str,
        stack_id: str,
        template: str,
        tags: list[str],
        timeout_minutes: int,
        patch: bool = True,
    ) -> None:
        """Update a stack; ``patch`` keeps parameters not mentioned in the request."""
        body = {
            "template": template,
            "timeout_mins": timeout_minutes,
            "tags": ",".join(tags),
        }
        url = f"{self._orchestration_url()}/stacks/{stack_name}/{stack_id}"
        method = "PATCH" if patch else "PUT"
        self._request(method, url, f"update stack {stack_name}", json=body)

    def delete_stack(self, stack_name: str, stack_id: str) -> None:
        url = f"{self._orchestration_url()}/stacks/{stack_name}/{stack_id}"
        self._request("DELETE", url, f"delete stack {stack_name}")

    def find_stack_by_name(self, name: str) -> str:
        """Return the ID of the stack called ``name``, or "" when absent."""
        url = self._orchestration_url() + "/stacks"
        resp = self._request(
            "GET",
            url,
            f"find stack {name}",
            params={"name": name, "global_tenant": True},
        )
        for stack in resp.json().get("stacks", []):
            if stack.get("stack_name") == name:
                return stack.get("id", "")
        return ""

    # -- listings ---------------------------------------------------------------

    def list_stacks(self) -> list[dict[str, Any]]:
        url = self._orchestration_url() + "/stacks"
        return self._list_paginated(
            url,
            "stacks",
            "list stacks",
            params={"global_tenant": True, "tags": self._config.stack_tag},
        )

    def list_instances(self) -> list[dict[str, Any]]:
        url = self._endpoint(SERVICE_COMPUTE) + "/servers/detail"
        return self._list_paginated(url, "servers", "list servers", params={"all_tenants": True})

    def list_load_balancers(self) -> list[dict[str, Any]]:
        url = _versioned(self._endpoint(SERVICE_LOAD_BALANCER), "v2") + "/lbaas/loadbalancers"
        return self._list_paginated(url, "loadbalancers", "list load balancers")

    def list_floating_ips(self) -> list[dict[str, Any]]:
        url = _versioned(self._endpoint(SERVICE_NETWORK), "v2.0") + "/floatingips"
        return self._list_paginated(url, "floatingips", "list floating ips")

    def list_ports(self) -> list[dict[str, Any]]:
        url = _versioned(self._endpoint(SERVICE_NETWORK), "v2.0") + "/ports"
        return self._list_paginated(url, "ports", "list ports")

    def list_kind(self, kind: ProviderKind) -> list[dict[str, Any]]:
        """List every resource of ``kind`` across all pages."""
        listers = {
            ProviderKind.STACKS: self.list_stacks,
            ProviderKind.INSTANCES: self.list_instances,
            ProviderKind.LOAD_BALANCERS: self.list_load_balancers,
            ProviderKind.FLOATING_IPS: self.list_floating_ips,
            ProviderKind.PORTS: self.list_ports,
        }
        return listers[kind]()


def _versioned(base: str, version: str) -> str:
    """Append an API version segment unless the catalog URL already has it."""
    base = base.rstrip("/")
    if base.endswith("/" + version):
        return base
    return f"{base}/{version}"
