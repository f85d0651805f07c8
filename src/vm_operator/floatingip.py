"""Floating IP processor.

A floating IP binds either to a load balancer's virtual IP port (the object's
own load balancer, resolved through the load balancer processor) or to the
network port of a linked pod. The address is either allocated by the stack or
an existing floating IP given by address, which is first resolved to its ID.

An unresolved bind target (load balancer not ready, pod port not yet listed,
static address not yet observed) keeps the stage Pending; it never fails it.
"""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Any

from .cache import CacheEntry, ResourceCache
from .config import Config
from .heat import StackReconciler
from .kube import KubeLinkResolver, LinkError, LinkReference
from .loadbalancer import LoadBalancerProcessor
from .models import (
    AddressSpec,
    PublicSpec,
    ResourceStatus,
    ServerStat,
    SpecValidationError,
    VirtualMachine,
)
from .poller import ProviderPoller
from .provider import ProviderKind
from .results import StageResult, result_for_phase
from .templates import TemplateKind
from .vm_group import random_suffix

logger = logging.getLogger(__name__)

FIP_STACK_PREFIX = "fip"
KBPS_PER_MBPS = 1024


class LinkTargetMissing(Exception):
    """Raised when the pod a floating IP is linked to no longer exists."""

    pass


def validate_public_spec(spec: PublicSpec) -> AddressSpec:
    """Exactly one of allocate or a static address must be requested.

    Returns the validated address.
    """
    address = spec.address
    if address is None:
        raise SpecValidationError("public.address is required")
    if address.allocate and address.ip:
        raise SpecValidationError("public.address.allocate and public.address.ip are exclusive")
    if not address.allocate and not address.ip:
        raise SpecValidationError("one of public.address.allocate or public.address.ip is required")
    if address.ip:
        try:
            ipaddress.ip_address(address.ip)
        except ValueError as e:
            raise SpecValidationError(f"public.address.ip is not an IP address: {address.ip}") from e
    if address.allocate and not spec.external_network:
        raise SpecValidationError("public.externalNetwork is required to allocate an address")
    return address


def _fip_entry(item: dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        provider_id=item.get("id", ""),
        name=item.get("description") or "",
        status=item.get("status", ""),
        address=item.get("floating_ip_address", ""),
        port_id=item.get("port_id") or "",
    )


def _port_entry(item: dict[str, Any]) -> CacheEntry:
    fixed_ips = item.get("fixed_ips") or []
    return CacheEntry(
        provider_id=item.get("id", ""),
        name=item.get("name", ""),
        status=item.get("status", ""),
        address=fixed_ips[0].get("ip_address", "") if fixed_ips else "",
        port_id=item.get("id", ""),
    )


class FloatingIPProcessor:
    def __init__(
        self,
        config: Config,
        heat: StackReconciler,
        poller: ProviderPoller,
        load_balancer: LoadBalancerProcessor,
        resolver: KubeLinkResolver | None = None,
    ) -> None:
        self._config = config
        self._heat = heat
        self._lb = load_balancer
        self._resolver = resolver
        # Pod ports are named "<namespace>/<pod>"
        self._ports = ResourceCache(
            ProviderKind.PORTS,
            key_of=lambda item: item.get("name") or None,
            convert=_port_entry,
        )
        self._by_port = ResourceCache(
            ProviderKind.FLOATING_IPS,
            key_of=lambda item: item.get("port_id") or None,
            convert=_fip_entry,
        )
        self._by_address = ResourceCache(
            ProviderKind.FLOATING_IPS,
            key_of=lambda item: item.get("floating_ip_address") or None,
            convert=_fip_entry,
        )
        self._lock = threading.Lock()
        # object key -> port the floating IP is bound to
        self._bound_ports: dict[str, str] = {}
        poller.register(ProviderKind.PORTS, self._ports.apply_page)
        poller.register(ProviderKind.FLOATING_IPS, self._apply_floating_ips)

    @property
    def ports(self) -> ResourceCache:
        return self._ports

    @property
    def by_address(self) -> ResourceCache:
        return self._by_address

    def _apply_floating_ips(self, items: list[dict[str, Any]], started_at: float) -> None:
        self._by_port.apply_page(items, started_at)
        self._by_address.apply_page(items, started_at)

    def process(self, vm: VirtualMachine) -> StageResult:
        spec = vm.spec.public
        if spec is None or vm.deletion_requested:
            self.teardown(vm)
            return StageResult.done("floating ip deleted")

        address = validate_public_spec(spec)

        if spec.link:
            target = self._pod_port(vm, spec)
        else:
            target = self._lb_port(vm)
        if isinstance(target, StageResult):
            return target
        port_id, fixed_ip = target

        float_ip_id = ""
        if address.ip:
            entry = self._by_address.listen(address.ip)
            if not entry.provider_id:
                if entry.synced and not entry.present:
                    raise SpecValidationError(f"floating ip {address.ip} does not exist")
                return StageResult.pending(f"resolving floating ip {address.ip}")
            float_ip_id = entry.provider_id

        status = vm.status.pub_status
        if status is None:
            status = ResourceStatus()
            vm.status.pub_status = status
        if not status.stack_name:
            status.stack_name = f"{FIP_STACK_PREFIX}-{random_suffix()}"

        tree = spec.model_dump(by_alias=True)
        tree.update(
            name=status.stack_name,
            portId=port_id,
            fixIp=fixed_ip,
            floatIpId=float_ip_id,
            mbps=spec.mbps * KBPS_PER_MBPS,
        )

        phase = self._heat.reconcile(TemplateKind.FIP, vm.spec.auth, tree, status)
        self._by_port.listen(port_id)
        with self._lock:
            self._bound_ports[vm.key] = port_id
        self._merge(spec, status, port_id)
        return result_for_phase(phase, f"floating ip {status.stack_name}")

    def _lb_port(self, vm: VirtualMachine) -> tuple[str, str] | StageResult:
        address = self._lb.get_address(vm)
        if address is None or not address.port_id or not address.vip:
            return StageResult.pending("floating ip is waiting for the load balancer address")
        return address.port_id, address.vip

    def _pod_port(self, vm: VirtualMachine, spec: PublicSpec) -> tuple[str, str] | StageResult:
        link = LinkReference.parse(spec.link)
        if not link.is_pod:
            raise SpecValidationError("public.link must reference a pod")
        if self._resolver is None:
            raise SpecValidationError("public.link requires cluster access")
        if not self._resolver.exists(link):
            self.teardown(vm)
            raise LinkTargetMissing(f"linked pod {link.namespaced_name} not found")
        port = self._ports.listen(link.namespaced_name)
        if not port.provider_id or not port.address:
            return StageResult.pending(f"floating ip is waiting for the port of {link.namespaced_name}")
        return port.provider_id, port.address

    def _merge(self, spec: PublicSpec, status: ResourceStatus, port_id: str) -> None:
        if spec.address is not None and spec.address.ip:
            entry, ok = self._by_address.read(spec.address.ip)
        else:
            entry, ok = self._by_port.read(port_id)
        if not ok or not entry.provider_id:
            return
        status.server_stat = ServerStat(
            id=entry.provider_id,
            name=status.stack_name,
            status=entry.status,
            ip=entry.address,
        )

    def teardown(self, vm: VirtualMachine) -> None:
        spec = vm.spec.public
        status = vm.status.pub_status
        if status is not None:
            self._heat.delete(status)
        with self._lock:
            port_id = self._bound_ports.pop(vm.key, "")
        if port_id:
            self._by_port.remove(port_id)
        if spec is not None and spec.address is not None and spec.address.ip:
            self._by_address.remove(spec.address.ip)
        if spec is not None and spec.link:
            try:
                self._ports.remove(LinkReference.parse(spec.link).namespaced_name)
            except LinkError:
                logger.debug("Skipping port cleanup", extra={"object": vm.key})
        logger.info("Floating ip removed", extra={"object": vm.key})
