"""Tests for VirtualMachine models."""

import pytest
from pydantic import ValidationError

from vm_operator.models import (
    Phase,
    PortMap,
    ResourceStatus,
    ServerSpec,
    VirtualMachine,
)

RAW_OBJECT = {
    "apiVersion": "mixapp.easystack.io/v1",
    "kind": "VirtualMachine",
    "metadata": {
        "name": "web",
        "namespace": "demo",
        "uid": "1234",
        "resourceVersion": "42",
        "finalizers": ["mixapp.easystack.io/finalizer"],
    },
    "spec": {
        "auth": {"token": "tok", "projectID": "proj-1"},
        "server": {
            "name": "web",
            "replicas": 2,
            "flavor": "m1.small",
            "bootImage": "ubuntu-22.04",
            "subnet": {"subnetId": "subnet-1"},
        },
        "loadBalance": {
            "name": "web-lb",
            "subnet": {"subnetId": "subnet-1"},
            "ports": [{"port": 80, "protocol": "tcp"}],
        },
        "public": {
            "address": {"allocate": True},
            "externalNetwork": "public",
            "mbps": 10,
        },
    },
    "status": {
        "vmStatus": {"stackID": "s-1", "stackName": "nova-web-abcde", "hash": "h", "phase": "Creating"},
        "conditions": [{"type": "vm", "status": "False", "reason": "pending"}],
    },
}


class TestVirtualMachine:
    """Tests for parsing cluster objects."""

    def test_parse_full_object(self) -> None:
        """Test that aliases map onto snake_case fields."""
        vm = VirtualMachine.model_validate(RAW_OBJECT)

        assert vm.key == "demo/web"
        assert vm.spec.auth is not None
        assert vm.spec.auth.project_id == "proj-1"
        assert vm.spec.server is not None
        assert vm.spec.server.boot_image == "ubuntu-22.04"
        assert vm.spec.load_balance is not None
        assert vm.spec.load_balance.ports[0].protocol == "TCP"
        assert vm.status.vm_status is not None
        assert vm.status.vm_status.phase == Phase.CREATING
        assert vm.deletion_requested is False

    def test_deletion_requested(self) -> None:
        """Test that a deletion timestamp marks the object for teardown."""
        raw = {**RAW_OBJECT, "metadata": {**RAW_OBJECT["metadata"], "deletionTimestamp": "2024-01-01T00:00:00Z"}}
        vm = VirtualMachine.model_validate(raw)

        assert vm.deletion_requested is True

    def test_status_dict_uses_aliases(self) -> None:
        """Test that status is serialized the way the cluster stores it."""
        vm = VirtualMachine.model_validate(RAW_OBJECT)

        status = vm.status_dict()

        assert status["vmStatus"]["stackID"] == "s-1"
        assert status["vmStatus"]["phase"] == "Creating"
        assert "netStatus" not in status
        assert status["conditions"][0]["type"] == "vm"

    def test_unknown_fields_ignored(self) -> None:
        """Test that fields this operator does not manage are tolerated."""
        raw = {**RAW_OBJECT, "spec": {**RAW_OBJECT["spec"], "future": {"x": 1}}}

        vm = VirtualMachine.model_validate(raw)

        assert vm.spec.server is not None

    def test_defaults(self) -> None:
        """Test that an empty object parses with empty status."""
        vm = VirtualMachine.model_validate({"metadata": {"name": "x"}})

        assert vm.metadata.namespace == "default"
        assert vm.spec.server is None
        assert vm.status.members == []
        assert vm.status.conditions == []


class TestServerSpec:
    """Tests for ServerSpec bounds."""

    def test_replicas_bounds(self) -> None:
        """Test that replicas is bounded."""
        with pytest.raises(ValidationError):
            ServerSpec(name="web", replicas=100)

    def test_name_required(self) -> None:
        """Test that an empty name is rejected."""
        with pytest.raises(ValidationError):
            ServerSpec(name="")

    def test_populate_by_name(self) -> None:
        """Test that snake_case names are accepted as well as aliases."""
        spec = ServerSpec(name="web", boot_volume_id="vol-1")

        assert spec.boot_volume_id == "vol-1"
        assert spec.model_dump(by_alias=True)["bootVolumeId"] == "vol-1"


class TestPortMap:
    """Tests for PortMap protocol validation."""

    def test_protocol_uppercased(self) -> None:
        """Test that protocols are normalized."""
        assert PortMap(port=443, protocol="https").protocol == "HTTPS"

    def test_invalid_protocol(self) -> None:
        """Test that unsupported protocols are rejected."""
        with pytest.raises(ValidationError):
            PortMap(port=53, protocol="SCTP")


class TestResourceStatus:
    """Tests for ResourceStatus defaults."""

    def test_uncreated(self) -> None:
        """Test that a fresh status has no stack and no phase."""
        status = ResourceStatus()

        assert status.stack_id == ""
        assert status.hash == ""
        assert status.phase is None
