"""Server group processor.

A server group is one stack of ``replicas`` identical servers named
``<stackName>-<index>``. The stack name itself is ``<prefix>-<name>-<random>``
so groups from different objects never collide and the poller can recognise
the operator's servers by prefix.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
from typing import Any

from .cache import CacheEntry, ResourceCache
from .config import Config
from .heat import StackReconciler
from .models import ResourceStatus, ServerSpec, ServerStat, SpecValidationError, VirtualMachine
from .poller import ProviderPoller
from .provider import ProviderKind
from .results import StageResult, result_for_phase
from .templates import TemplateKind

logger = logging.getLogger(__name__)

RANDOM_SUFFIX_LENGTH = 5
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_INSTANCE_NAME = re.compile(r"^(?P<group>.+)-\d+$")


def random_suffix(length: int = RANDOM_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(length))


def validate_server_spec(spec: ServerSpec) -> None:
    """Exactly one boot source must be given."""
    if bool(spec.boot_image) == bool(spec.boot_volume_id):
        raise SpecValidationError("exactly one of server.bootImage or server.bootVolumeId must be set")
    if not spec.flavor:
        raise SpecValidationError("server.flavor is required")
    if not spec.subnet.subnet_id and not spec.subnet.network_name:
        raise SpecValidationError("server.subnet needs a subnetId or a networkName")


def _instance_entry(item: dict[str, Any]) -> CacheEntry:
    addresses = []
    for network, addrs in (item.get("addresses") or {}).items():
        for addr in addrs:
            if addr.get("version") == 4 and addr.get("addr"):
                addresses.append((network, addr["addr"]))
    return CacheEntry(
        provider_id=item.get("id", ""),
        name=item.get("name", ""),
        status=item.get("status", ""),
        addresses=tuple(addresses),
    )


def _address_on(entry: CacheEntry, network: str) -> str:
    for name, addr in entry.addresses:
        if not network or name == network:
            return addr
    return ""


class VmGroupProcessor:
    def __init__(self, config: Config, heat: StackReconciler, poller: ProviderPoller) -> None:
        self._config = config
        self._heat = heat
        self._prefix = config.vm_name_prefix + "-"
        self._cache = ResourceCache(
            ProviderKind.INSTANCES,
            key_of=self._group_key,
            convert=_instance_entry,
            grouped=True,
        )
        poller.register(ProviderKind.INSTANCES, self._cache.apply_page)

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def _group_key(self, item: dict[str, Any]) -> str | None:
        name = item.get("name") or ""
        if not name.startswith(self._prefix):
            return None
        match = _INSTANCE_NAME.match(name)
        return match.group("group") if match else None

    def process(self, vm: VirtualMachine) -> StageResult:
        spec = vm.spec.server
        if spec is None or vm.deletion_requested:
            self.teardown(vm)
            return StageResult.done("server group deleted")

        validate_server_spec(spec)

        status = vm.status.vm_status
        if status is None:
            status = ResourceStatus()
            vm.status.vm_status = status
        if not status.stack_name:
            status.stack_name = f"{self._prefix}{spec.name}-{random_suffix()}"
        status.name = spec.name

        tree = spec.model_dump(by_alias=True)
        tree["name"] = status.stack_name

        self._cache.listen(status.stack_name)
        phase = self._heat.reconcile(TemplateKind.VM, vm.spec.auth, tree, status)
        self.merge_members(vm)
        return result_for_phase(phase, f"server group {status.stack_name}")

    def merge_members(self, vm: VirtualMachine) -> None:
        """Fold observed instances into ``status.members``.

        Existing slots keep their position; new instances are appended.
        """
        status = vm.status.vm_status
        spec = vm.spec.server
        if status is None or spec is None or not status.stack_name:
            return
        entry, ok = self._cache.read(status.stack_name)
        if not ok or not entry.members:
            return
        network = spec.subnet.network_name
        slots = {member.id: i for i, member in enumerate(vm.status.members)}
        for instance in entry.members:
            observed = ServerStat(
                id=instance.provider_id,
                name=instance.name,
                status=instance.status,
                ip=_address_on(instance, network),
            )
            index = slots.get(instance.provider_id)
            if index is None:
                slots[instance.provider_id] = len(vm.status.members)
                vm.status.members.append(observed)
            else:
                vm.status.members[index] = observed

    def all_ips(self, vm: VirtualMachine) -> list[str]:
        return [member.ip for member in vm.status.members if member.ip]

    def teardown(self, vm: VirtualMachine) -> None:
        status = vm.status.vm_status
        if status is None:
            return
        stack_name = status.stack_name
        self._heat.delete(status)
        if stack_name:
            self._cache.remove(stack_name)
        vm.status.members = []
        logger.info("Server group removed", extra={"object": vm.key, "stack_name": stack_name})
