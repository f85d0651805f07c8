"""Tests for manifest loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from vm_operator.config import MAX_SPEC_FILE_SIZE_BYTES
from vm_operator.spec_loader import SpecLoadError, load_manifest

FULL_MANIFEST = """
apiVersion: mixapp.easystack.io/v1
kind: VirtualMachine
metadata:
  name: web
  namespace: demo
spec:
  auth:
    token: tenant-token
    projectID: proj-1
  server:
    name: web
    replicas: 2
    flavor: m1.small
    bootImage: ubuntu-22.04
    subnet:
      subnetId: subnet-1
"""

BARE_SPEC = """
server:
  name: db
  bootVolumeId: vol-1
loadBalance:
  name: db-lb
  ports:
    - port: 5432
"""


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_full_object(self, tmp_path: Path) -> None:
        """Test that a complete object keeps its metadata."""
        path = tmp_path / "vm.yaml"
        path.write_text(FULL_MANIFEST)

        vm = load_manifest(path)

        assert vm.key == "demo/web"
        assert vm.spec.auth.project_id == "proj-1"
        assert vm.spec.server.replicas == 2

    def test_bare_spec_named_after_file(self, tmp_path: Path) -> None:
        """Test that a bare spec takes its name from the file."""
        path = tmp_path / "database.yaml"
        path.write_text(BARE_SPEC)

        vm = load_manifest(path)

        assert vm.metadata.name == "database"
        assert vm.spec.auth is None
        assert vm.spec.load_balance.ports[0].port == 5432
        assert vm.spec.load_balance.ports[0].protocol == "TCP"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing manifest is reported."""
        with pytest.raises(SpecLoadError, match="not found"):
            load_manifest(tmp_path / "absent.yaml")

    def test_oversized_file(self, tmp_path: Path) -> None:
        """Test that files over the size limit are refused unread."""
        path = tmp_path / "big.yaml"
        path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError, match="maximum size"):
            load_manifest(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that a YAML syntax error is reported."""
        path = tmp_path / "vm.yaml"
        path.write_text("server: [unclosed")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_manifest(path)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a top-level list is rejected."""
        path = tmp_path / "vm.yaml"
        path.write_text("- server\n")

        with pytest.raises(SpecLoadError, match="mapping"):
            load_manifest(path)

    def test_spec_must_be_mapping(self, tmp_path: Path) -> None:
        """Test that a full object with a scalar spec is rejected."""
        path = tmp_path / "vm.yaml"
        path.write_text("apiVersion: mixapp.easystack.io/v1\nspec: nope\n")

        with pytest.raises(SpecLoadError, match="Spec section"):
            load_manifest(path)

    def test_validation_errors_listed(self, tmp_path: Path) -> None:
        """Test that every field error is listed with its location."""
        path = tmp_path / "vm.yaml"
        path.write_text("server:\n  name: web\n  replicas: 500\nloadBalance:\n  ports: []\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        message = str(exc_info.value)
        assert "spec.server.replicas" in message
        assert "spec.loadBalance.name" in message
