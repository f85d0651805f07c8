"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Source tree and the openstack_mock package are imported without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))


@pytest.fixture(autouse=True)
def _packaged_templates(monkeypatch: pytest.MonkeyPatch) -> None:
    """Render with the packaged stack templates regardless of the shell."""
    monkeypatch.delenv("TEMPLATES_DIR", raising=False)
