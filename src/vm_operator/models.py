"""Pydantic models for the VirtualMachine custom resource.

These models provide:
1. Type-safe parsing of cluster objects and YAML manifests
2. Validation at the boundary (fail fast, fail loudly)
3. A mutable status tree that processors update in place
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator


class SpecValidationError(Exception):
    """Raised when a desired-state fragment is invalid.

    Never retried: the object must change before the stage can progress.
    """

    pass


class Phase(str, Enum):
    """Lifecycle phase of one orchestration stack."""

    CREATING = "Creating"
    UPDATING = "Updating"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DELETING = "Deleting"


# =============================================================================
# Spec
# =============================================================================


class AuthSpec(BaseModel):
    """Tenant credentials used to create stacks on the tenant's behalf."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    token: str = ""
    project_id: str = Field("", alias="projectID")


class SubnetSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    network_name: str = Field("", alias="networkName")
    subnet_id: str = Field("", alias="subnetId")


class ServerSpec(BaseModel):
    """A group of identical servers realized as one stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    replicas: Annotated[int, Field(ge=0, le=99)] = 1
    flavor: str = ""
    boot_image: str = Field("", alias="bootImage")
    boot_volume_id: str = Field("", alias="bootVolumeId")
    volume_type: str = Field("", alias="volumeType")
    volume_size: int | None = Field(None, alias="volumeSize")
    key_name: str = Field("", alias="keyName")
    admin_pass: str = Field("", alias="adminPass")
    security_group: str = Field("", alias="securityGroup")
    availability_zone: str = Field("", alias="availabilityZone")
    user_data: str = Field("", alias="userData")
    subnet: SubnetSpec = Field(default_factory=SubnetSpec)


class PortMap(BaseModel):
    """One listener: port, protocol and the pool members behind it."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    # Range is checked by the load balancer processor so that a bad port
    # only fails that stage, not the whole object
    port: int
    protocol: str = "TCP"
    ips: list[str] = Field(default_factory=list)

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        v = (v or "TCP").upper()
        valid = {"TCP", "UDP", "HTTP", "HTTPS"}
        if v not in valid:
            raise ValueError(f"protocol must be one of {sorted(valid)}")
        return v


class LoadBalanceSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    subnet: SubnetSpec = Field(default_factory=SubnetSpec)
    lb_ip: str = Field("", alias="lbIp")
    link: str = ""
    ports: list[PortMap] = Field(default_factory=list)


class AddressSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    allocate: bool = False
    ip: str = ""


class PublicSpec(BaseModel):
    """Floating IP request.

    ``port_id``, ``fix_ip``, ``float_ip_id`` and ``name`` are derived by the
    floating IP processor; values supplied by the user are ignored.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    address: AddressSpec | None = None
    link: str = ""
    external_network: str = Field("", alias="externalNetwork")
    mbps: Annotated[int, Field(ge=0)] = 0
    port_id: str = Field("", alias="portId")
    fix_ip: str = Field("", alias="fixIp")
    float_ip_id: str = Field("", alias="floatIpId")
    name: str = ""


class VirtualMachineSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    auth: AuthSpec | None = None
    server: ServerSpec | None = None
    load_balance: LoadBalanceSpec | None = Field(None, alias="loadBalance")
    public: PublicSpec | None = None


# =============================================================================
# Status
# =============================================================================


class ServerStat(BaseModel):
    """Summary of one provider-side resource (instance, LB or floating IP)."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    id: str = ""
    name: str = ""
    status: str = ""
    ip: str = ""


class ResourceStatus(BaseModel):
    """Observed state of one managed stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    stack_id: str = Field("", alias="stackID")
    stack_name: str = Field("", alias="stackName")
    # Digest of the last template the provider accepted; empty means uncreated
    hash: str = ""
    phase: Phase | None = None
    template: str = ""
    name: str = ""
    server_stat: ServerStat = Field(default_factory=ServerStat, alias="serverStat")

    @property
    def has_stack(self) -> bool:
        """True while a stack may exist on the provider for this status."""
        return bool(self.stack_id or self.stack_name)


class Condition(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: str = "False"
    reason: str = ""
    last_transition_time: str = Field("", alias="lastTransitionTime")


class VirtualMachineStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    vm_status: ResourceStatus | None = Field(None, alias="vmStatus")
    net_status: ResourceStatus | None = Field(None, alias="netStatus")
    pub_status: ResourceStatus | None = Field(None, alias="pubStatus")
    members: list[ServerStat] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)


class ObjectMeta(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    namespace: str = "default"
    uid: str = ""
    resource_version: str = Field("", alias="resourceVersion")
    deletion_timestamp: str | None = Field(None, alias="deletionTimestamp")
    finalizers: list[str] = Field(default_factory=list)


class VirtualMachine(BaseModel):
    """Desired and observed state of one VirtualMachine object."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: VirtualMachineSpec = Field(default_factory=VirtualMachineSpec)
    status: VirtualMachineStatus = Field(default_factory=VirtualMachineStatus)

    @property
    def deletion_requested(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    @property
    def key(self) -> str:
        """Identity used to serialize reconciles of the same object."""
        return f"{self.metadata.namespace}/{self.metadata.name}"

    def status_dict(self) -> dict[str, Any]:
        """Serialize status the way it is written back to the cluster."""
        return self.status.model_dump(by_alias=True, exclude_none=True, mode="json")
