"""Kubernetes link resolution and external service sync.

A "link" points at a pod or workload in the cluster, e.g.
``/api/v1/namespaces/demo/pods/web-0`` or
``/apis/apps/v1/namespaces/demo/deployments/web``. Load balancers use it to
source member IPs; floating IPs use it to find the pod's port.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException

logger = logging.getLogger(__name__)

NETWORKS_STATUS_ANNOTATION = "k8s.v1.cni.cncf.io/networks-status"
POD_NETWORK_NAME = "kuryr"
POD_TEMPLATE_HASH_LABEL = "pod-template-hash"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "vm-operator"

# (api group, resource) pairs a link may point at
SUPPORTED_LINK_RESOURCES = {
    ("", "pods"),
    ("apps", "deployments"),
    ("apps", "statefulsets"),
}


class LinkError(Exception):
    """Raised for malformed or unsupported link references."""

    pass


def load_k8s_config() -> None:
    """Load Kubernetes configuration (in-cluster preferred, fallback to kubeconfig)."""
    try:
        config.load_incluster_config()
        logger.info("Kubernetes config loaded", extra={"source": "in-cluster"})
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Kubernetes config loaded", extra={"source": "kubeconfig"})


@dataclass(frozen=True)
class LinkReference:
    group: str
    version: str
    namespace: str
    resource: str
    name: str

    @classmethod
    def parse(cls, link: str) -> LinkReference:
        """Parse an API path into a reference.

        Raises:
            LinkError: If the path is malformed or the resource unsupported.
        """
        parts = link.strip().strip("/").split("/")
        if len(parts) == 6 and parts[0] == "api" and parts[2] == "namespaces":
            group, version, namespace, resource, name = "", parts[1], parts[3], parts[4], parts[5]
        elif len(parts) == 7 and parts[0] == "apis" and parts[3] == "namespaces":
            group, version, namespace, resource, name = (
                parts[1],
                parts[2],
                parts[4],
                parts[5],
                parts[6],
            )
        else:
            raise LinkError(f"Malformed link: {link!r}")
        if not namespace or not name:
            raise LinkError(f"Link must name a namespace and an object: {link!r}")
        if (group, resource) not in SUPPORTED_LINK_RESOURCES:
            raise LinkError(f"Unsupported link resource {group or 'core'}/{resource}: {link!r}")
        return cls(group, version, namespace, resource, name)

    @property
    def is_pod(self) -> bool:
        return self.group == "" and self.resource == "pods"

    @property
    def namespaced_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def service_name(self) -> str:
        return f"{self.namespace}-{self.name}"

    @property
    def path(self) -> str:
        if self.group:
            return (
                f"/apis/{self.group}/{self.version}/namespaces/"
                f"{self.namespace}/{self.resource}/{self.name}"
            )
        return f"/api/{self.version}/namespaces/{self.namespace}/{self.resource}/{self.name}"

    def digest(self) -> str:
        return hashlib.sha256(self.path.encode("utf-8")).hexdigest()


def pod_network_ip(pod: Any) -> str:
    """Return the pod's address on the provider network, or ""."""
    annotations = (pod.metadata.annotations if pod.metadata else None) or {}
    raw = annotations.get(NETWORKS_STATUS_ANNOTATION)
    if raw:
        try:
            networks = json.loads(raw)
        except ValueError:
            logger.warning(
                "Unparseable network status annotation",
                extra={"pod": getattr(pod.metadata, "name", "")},
            )
            networks = []
        for network in networks if isinstance(networks, list) else []:
            name = str(network.get("name", ""))
            if name == POD_NETWORK_NAME or name.endswith("/" + POD_NETWORK_NAME):
                ips = network.get("ips") or []
                if ips:
                    return str(ips[0])
    status = pod.status
    return (status.pod_ip if status else None) or ""


class KubeLinkResolver:
    """Answers questions about the cluster objects links point at."""

    def __init__(
        self,
        core_api: client.CoreV1Api | None = None,
        apps_api: client.AppsV1Api | None = None,
    ) -> None:
        self._core = core_api or client.CoreV1Api()
        self._apps = apps_api or client.AppsV1Api()

    def _read(self, link: LinkReference) -> Any:
        if link.is_pod:
            return self._core.read_namespaced_pod(link.name, link.namespace)
        if link.resource == "deployments":
            return self._apps.read_namespaced_deployment(link.name, link.namespace)
        return self._apps.read_namespaced_stateful_set(link.name, link.namespace)

    def exists(self, link: LinkReference) -> bool:
        try:
            self._read(link)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        return True

    def selector(self, link: LinkReference) -> dict[str, str]:
        """Labels selecting the pods behind ``link``."""
        obj = self._read(link)
        if link.is_pod:
            labels = dict((obj.metadata.labels if obj.metadata else None) or {})
        else:
            labels = dict(obj.spec.selector.match_labels or {})
        labels.pop(POD_TEMPLATE_HASH_LABEL, None)
        return labels

    def pod_ips(self, link: LinkReference) -> list[str]:
        """Addresses of the live pods behind ``link``; empty if none or gone."""
        try:
            if link.is_pod:
                pods = [self._core.read_namespaced_pod(link.name, link.namespace)]
            else:
                selector = ",".join(f"{k}={v}" for k, v in sorted(self.selector(link).items()))
                pods = self._core.list_namespaced_pod(
                    link.namespace, label_selector=selector
                ).items
        except ApiException as e:
            if e.status == 404:
                return []
            raise
        ips = []
        for pod in pods:
            if pod.metadata and pod.metadata.deletion_timestamp:
                continue
            ip = pod_network_ip(pod)
            if ip:
                ips.append(ip)
        return ips


@dataclass
class _ServiceState:
    link: LinkReference
    ports: tuple[tuple[int, str], ...]
    deleted: bool = False
    applied: str = ""


class ServiceSyncer:
    """Keeps one external Service per linked load balancer.

    The Service carries the load balancer's address in ``externalIPs`` and
    selects the linked pods, so in-cluster clients reach the same endpoint.
    """

    def __init__(self, resolver: KubeLinkResolver, core_api: client.CoreV1Api | None = None) -> None:
        self._resolver = resolver
        self._core = core_api or client.CoreV1Api()
        self._lock = threading.Lock()
        self._states: dict[str, _ServiceState] = {}
        self._stop_event = asyncio.Event()

    def add_link(self, link: LinkReference, ports: list[tuple[int, str]]) -> None:
        with self._lock:
            state = self._states.get(link.digest())
            normalized = tuple(sorted(ports))
            if state is None or state.deleted or state.ports != normalized:
                self._states[link.digest()] = _ServiceState(
                    link=link,
                    ports=normalized,
                    applied=state.applied if state and not state.deleted else "",
                )

    def remove_link(self, link: LinkReference) -> None:
        with self._lock:
            state = self._states.get(link.digest())
            if state is not None:
                state.deleted = True

    def tracked(self) -> list[LinkReference]:
        with self._lock:
            return [s.link for s in self._states.values() if not s.deleted]

    def sync_once(self, resolve_address: Callable[[LinkReference], str]) -> None:
        """Create, patch or delete Services whose inputs changed."""
        with self._lock:
            states = list(self._states.items())
        for key, state in states:
            if state.deleted:
                try:
                    self._core.delete_namespaced_service(
                        state.link.service_name, state.link.namespace
                    )
                    logger.info("Service deleted", extra={"service": state.link.service_name})
                except ApiException as e:
                    if e.status != 404:
                        logger.warning(
                            "Service delete failed",
                            extra={"service": state.link.service_name, "error": str(e)},
                        )
                        continue
                with self._lock:
                    if self._states.get(key) is state:
                        del self._states[key]
                continue

            address = resolve_address(state.link)
            if not address:
                continue
            digest = hashlib.sha256(
                json.dumps([address, state.ports]).encode("utf-8")
            ).hexdigest()
            if digest == state.applied:
                continue
            try:
                self._apply_service(state.link, address, state.ports)
            except ApiException as e:
                logger.warning(
                    "Service sync failed",
                    extra={"service": state.link.service_name, "error": str(e)},
                )
                continue
            state.applied = digest

    def _apply_service(
        self, link: LinkReference, address: str, ports: tuple[tuple[int, str], ...]
    ) -> None:
        body = {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": link.service_name,
                "namespace": link.namespace,
                "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            },
            "spec": {
                "externalIPs": [address],
                "ports": [
                    {
                        "name": f"{protocol.lower()}-{port}",
                        "port": port,
                        "targetPort": port,
                        "protocol": "UDP" if protocol == "UDP" else "TCP",
                    }
                    for port, protocol in ports
                ],
                "selector": self._resolver.selector(link),
            },
        }
        try:
            self._core.read_namespaced_service(link.service_name, link.namespace)
        except ApiException as e:
            if e.status != 404:
                raise
            self._core.create_namespaced_service(link.namespace, body)
            logger.info(
                "Service created",
                extra={"service": link.service_name, "external_ip": address},
            )
            return
        self._core.patch_namespaced_service(link.service_name, link.namespace, body)
        logger.info(
            "Service patched",
            extra={"service": link.service_name, "external_ip": address},
        )

    async def run(self, interval: float, resolve_address: Callable[[LinkReference], str]) -> None:
        loop = asyncio.get_running_loop()
        logger.info("Starting service syncer", extra={"interval_seconds": interval})
        while not self._stop_event.is_set():
            try:
                await loop.run_in_executor(None, self.sync_once, resolve_address)
            except Exception as e:
                logger.exception("Service sync cycle failed", extra={"error": str(e)})
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass
        logger.info("Service syncer stopped")

    def stop(self) -> None:
        self._stop_event.set()
