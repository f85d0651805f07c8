"""Load balancer processor.

Pool members are positional child resources of the stack
(``<stackName>-member<N>-<port>``). Moving an address to another index looks
to the provider like deleting one member and creating another, which it
rejects while the listener is live. Members are therefore stabilized against
the last rendered template: retained addresses keep their index, removed ones
leave a blank slot and new ones are appended.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import yaml

from .cache import CacheEntry, ResourceCache
from .config import Config
from .heat import StackReconciler
from .kube import KubeLinkResolver, LinkError, LinkReference, ServiceSyncer
from .models import (
    LoadBalanceSpec,
    ResourceStatus,
    ServerStat,
    SpecValidationError,
    VirtualMachine,
)
from .poller import ProviderPoller
from .provider import ProviderKind
from .results import StageResult, result_for_phase
from .templates import TemplateKind
from .vm_group import VmGroupProcessor, random_suffix

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
LB_ACTIVE_STATUS = "ACTIVE"


@dataclass(frozen=True)
class LoadBalancerAddress:
    """Where a floating IP attaches to reach a load balancer."""

    lb_id: str
    vip: str
    port_id: str


def validate_ports(spec: LoadBalanceSpec) -> None:
    if not spec.ports:
        raise SpecValidationError("loadBalance.ports must not be empty")
    seen: set[int] = set()
    for port_map in spec.ports:
        if not MIN_PORT <= port_map.port <= MAX_PORT:
            raise SpecValidationError(
                f"loadBalance port {port_map.port} out of range ({MIN_PORT}-{MAX_PORT})"
            )
        if port_map.port in seen:
            raise SpecValidationError(f"loadBalance port {port_map.port} declared twice")
        seen.add(port_map.port)
    if not spec.subnet.subnet_id:
        raise SpecValidationError("loadBalance.subnet.subnetId is required")


def address_key(vm: VirtualMachine, by_link: bool = True) -> str:
    """Lookup key of the object's load balancer address.

    Linked load balancers are keyed by the link, others by object identity.
    """
    spec = vm.spec.load_balance
    if by_link and spec is not None and spec.link:
        return LinkReference.parse(spec.link).digest()
    return hashlib.sha256(f"object:{vm.key}".encode("utf-8")).hexdigest()


def parse_member_order(template: str, stack_name: str) -> list[str]:
    """Rebuild the index-addressed member list from a rendered template.

    Gaps between indices come back as "" placeholders.
    """
    if not template or not stack_name:
        return []
    try:
        document = yaml.safe_load(template)
    except yaml.YAMLError as e:
        logger.warning(
            "Previous template unparseable, skipping member stabilization",
            extra={"stack_name": stack_name, "error": str(e)},
        )
        return []
    resources = document.get("resources") if isinstance(document, dict) else None
    if not isinstance(resources, dict):
        return []

    pattern = re.compile(rf"^{re.escape(stack_name)}-member(\d+)(?:-\d+)?$")
    by_index: dict[int, str] = {}
    for name, body in resources.items():
        match = pattern.match(str(name))
        if not match or not isinstance(body, dict):
            continue
        address = (body.get("properties") or {}).get("address") or ""
        by_index.setdefault(int(match.group(1)), str(address))
    if not by_index:
        return []
    return [by_index.get(i, "") for i in range(max(by_index) + 1)]


def _ip_sort_key(ip: str) -> tuple[int, int, str]:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return (99, 0, ip)
    return (addr.version, int(addr), ip)


def stabilize_member_order(old_order: list[str], desired: Iterable[str]) -> list[str]:
    """Place ``desired`` addresses without moving any retained address.

    New addresses are appended in ascending numeric IP order.
    """
    wanted = {ip for ip in desired if ip}
    if not old_order or not wanted:
        return sorted(wanted, key=_ip_sort_key)

    new_order: list[str] = []
    placed: set[str] = set()
    for ip in old_order:
        if ip in wanted and ip not in placed:
            new_order.append(ip)
            placed.add(ip)
        else:
            new_order.append("")
    new_order.extend(sorted(wanted - placed, key=_ip_sort_key))
    return new_order


def _lb_entry(item: dict[str, Any]) -> CacheEntry:
    return CacheEntry(
        provider_id=item.get("id", ""),
        name=item.get("name", ""),
        status=item.get("provisioning_status", ""),
        status_reason=item.get("operating_status", ""),
        address=item.get("vip_address", ""),
        port_id=item.get("vip_port_id", ""),
    )


class LoadBalancerProcessor:
    def __init__(
        self,
        config: Config,
        heat: StackReconciler,
        poller: ProviderPoller,
        vm_group: VmGroupProcessor,
        resolver: KubeLinkResolver | None = None,
        syncer: ServiceSyncer | None = None,
    ) -> None:
        self._config = config
        self._heat = heat
        self._vm_group = vm_group
        self._resolver = resolver
        self._syncer = syncer
        self._cache = ResourceCache(
            ProviderKind.LOAD_BALANCERS,
            key_of=lambda item: item.get("name") or None,
            convert=_lb_entry,
        )
        self._lock = threading.Lock()
        self._addresses: dict[str, LoadBalancerAddress] = {}
        poller.register(ProviderKind.LOAD_BALANCERS, self._cache.apply_page)
        heat.register_hook(TemplateKind.LB, self.reorder_members)

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def process(self, vm: VirtualMachine) -> StageResult:
        spec = vm.spec.load_balance
        if spec is None or vm.deletion_requested:
            self.teardown(vm)
            return StageResult.done("load balancer deleted")

        validate_ports(spec)
        link = LinkReference.parse(spec.link) if spec.link else None

        ips = self._member_ips(vm, spec, link)
        if not ips:
            return StageResult.pending("load balancer is waiting for member addresses")

        status = vm.status.net_status
        if status is None:
            status = ResourceStatus()
            vm.status.net_status = status
        if not status.stack_name:
            status.stack_name = f"{spec.name}-{random_suffix()}"
        status.name = spec.name

        tree = spec.model_dump(by_alias=True)
        tree["name"] = status.stack_name
        for port_map in tree["ports"]:
            port_map["ips"] = list(ips)

        self._cache.listen(status.stack_name)
        phase = self._heat.reconcile(TemplateKind.LB, vm.spec.auth, tree, status)
        self._publish(vm, status)
        return result_for_phase(phase, f"load balancer {status.stack_name}")

    def _member_ips(
        self,
        vm: VirtualMachine,
        spec: LoadBalanceSpec,
        link: LinkReference | None,
    ) -> list[str]:
        if link is not None:
            if self._resolver is None or self._syncer is None:
                raise SpecValidationError("loadBalance.link requires cluster access")
            self._syncer.add_link(link, [(p.port, p.protocol) for p in spec.ports])
            return self._resolver.pod_ips(link)
        if vm.spec.server is not None:
            return self._vm_group.all_ips(vm)
        # Static members declared directly on the ports
        return [ip for port_map in spec.ports for ip in port_map.ips if ip]

    def reorder_members(self, tree: dict[str, Any], status: ResourceStatus) -> None:
        """Rewrite every port's member list to the stabilized order."""
        desired = {ip for port_map in tree.get("ports", []) for ip in port_map.get("ips", [])}
        old_order = parse_member_order(status.template, status.stack_name)
        order = stabilize_member_order(old_order, desired)
        for port_map in tree.get("ports", []):
            port_map["ips"] = list(order)

    def _publish(self, vm: VirtualMachine, status: ResourceStatus) -> None:
        entry, ok = self._cache.read(status.stack_name)
        if not ok or not entry.present or not entry.provider_id:
            return
        status.server_stat = ServerStat(
            id=entry.provider_id,
            name=entry.name,
            status=entry.status,
            ip=entry.address,
        )
        if entry.status != LB_ACTIVE_STATUS or not entry.address:
            return
        address = LoadBalancerAddress(lb_id=entry.provider_id, vip=entry.address, port_id=entry.port_id)
        with self._lock:
            self._addresses[address_key(vm)] = address

    def get_address(self, vm: VirtualMachine) -> LoadBalancerAddress | None:
        with self._lock:
            return self._addresses.get(address_key(vm))

    def address_for_link(self, link: LinkReference) -> str:
        """Virtual IP of the load balancer bound to ``link``, or ""."""
        with self._lock:
            address = self._addresses.get(link.digest())
        return address.vip if address else ""

    def teardown(self, vm: VirtualMachine) -> None:
        spec = vm.spec.load_balance
        status = vm.status.net_status
        if status is not None:
            stack_name = status.stack_name
            self._heat.delete(status)
            if stack_name:
                self._cache.remove(stack_name)
        if spec is not None and spec.link:
            try:
                link = LinkReference.parse(spec.link)
            except LinkError:
                # A malformed link was never registered anywhere
                logger.debug("Skipping link cleanup", extra={"object": vm.key})
            else:
                if self._syncer is not None:
                    self._syncer.remove_link(link)
                with self._lock:
                    self._addresses.pop(link.digest(), None)
        with self._lock:
            self._addresses.pop(address_key(vm, by_link=False), None)
        logger.info("Load balancer removed", extra={"object": vm.key})
