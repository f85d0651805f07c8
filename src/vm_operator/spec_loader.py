"""VirtualMachine manifest loading with validation.

All file operations enforce a size limit. Input validation is performed at
the boundary so later stages only see well-formed objects.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import VirtualMachine

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest file must contain a YAML mapping: {path}")
    return raw_data


def load_manifest(path: Path) -> VirtualMachine:
    """Load and validate a VirtualMachine manifest.

    Accepts either a full object (apiVersion, kind, metadata, spec) or a
    bare spec mapping, which is named after the file.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    raw_data = _read_mapping(path)

    if "apiVersion" in raw_data and "spec" in raw_data:
        if not isinstance(raw_data.get("spec"), dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        object_data = raw_data
    else:
        object_data = {"metadata": {"name": path.stem}, "spec": raw_data}

    try:
        vm = VirtualMachine.model_validate(object_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded manifest '%s' from %s", vm.key, path)
    return vm
