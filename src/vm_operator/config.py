"""Configuration management with validation.

All settings come from the environment. Invalid values are collected and
reported together at startup so the operator never starts half-configured.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_POLL_INTERVAL_SECONDS = 120
MIN_POLL_INTERVAL_SECONDS = 5
MAX_POLL_INTERVAL_SECONDS = 3600

DEFAULT_LINK_SYNC_INTERVAL_SECONDS = 60
DEFAULT_RECONCILE_INTERVAL_SECONDS = 30

# Deadline baked into every provider request, not into the reconcile flow
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 30
MAX_PROVIDER_TIMEOUT_SECONDS = 300

# Passed to the orchestration service on create/update
DEFAULT_STACK_TIMEOUT_MINUTES = 60

DEFAULT_STACK_TAG = "ecns-mixapp"
DEFAULT_VM_NAME_PREFIX = "nova"
DEFAULT_MAX_CONCURRENT_RECONCILES = 4

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_CONDITION_REASON_LENGTH = 1024

# Custom resource coordinates
CRD_GROUP = "mixapp.easystack.io"
CRD_VERSION = "v1"
CRD_PLURAL = "virtualmachines"
FINALIZER_NAME = f"{CRD_GROUP}/finalizer"

VALID_NAME_PREFIX_PATTERN = r"^[a-z][a-z0-9]{0,15}$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    auth_url: str

    # Keystone credentials for the operator's own session
    username: str = ""
    password: str = ""
    project_name: str = ""
    user_domain: str = "Default"
    project_domain: str = "Default"
    region: str | None = None
    interface: str = "public"

    # Timing
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    link_sync_interval_seconds: int = DEFAULT_LINK_SYNC_INTERVAL_SECONDS
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    stack_timeout_minutes: int = DEFAULT_STACK_TIMEOUT_MINUTES

    # Behavior
    stack_tag: str = DEFAULT_STACK_TAG
    vm_name_prefix: str = DEFAULT_VM_NAME_PREFIX
    templates_dir: Path | None = None
    namespace: str | None = None
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not self.auth_url:
            errors.append("OS_AUTH_URL is required")
        elif not self.auth_url.startswith(("http://", "https://")):
            errors.append(f"OS_AUTH_URL must be an http(s) URL: {self.auth_url}")

        if not self.username:
            errors.append("OS_USERNAME is required")
        if not self.password:
            errors.append("OS_PASSWORD is required")
        if not self.project_name:
            errors.append("OS_PROJECT_NAME is required")

        if not (MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS):
            errors.append(
                f"POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if self.link_sync_interval_seconds < 1:
            errors.append("LINK_SYNC_INTERVAL must be at least 1 second")
        if self.reconcile_interval_seconds < 1:
            errors.append("RECONCILE_INTERVAL must be at least 1 second")

        if not (1 <= self.provider_timeout_seconds <= MAX_PROVIDER_TIMEOUT_SECONDS):
            errors.append(
                f"PROVIDER_TIMEOUT must be between 1 and {MAX_PROVIDER_TIMEOUT_SECONDS} seconds"
            )

        if self.stack_timeout_minutes < 1:
            errors.append("STACK_TIMEOUT_MINUTES must be at least 1")

        if not self.stack_tag:
            errors.append("STACK_TAG must not be empty")

        if not re.match(VALID_NAME_PREFIX_PATTERN, self.vm_name_prefix):
            errors.append(
                f"VM_NAME_PREFIX must match pattern {VALID_NAME_PREFIX_PATTERN}: "
                f"{self.vm_name_prefix}"
            )

        if self.templates_dir is not None and not self.templates_dir.is_dir():
            errors.append(f"Templates directory does not exist: {self.templates_dir}")

        if self.max_concurrent_reconciles < 1:
            errors.append("MAX_CONCURRENT_RECONCILES must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            OS_AUTH_URL: Keystone v3 endpoint (required)
            OS_USERNAME / OS_PASSWORD / OS_PROJECT_NAME: Operator credentials
            OS_USER_DOMAIN_NAME / OS_PROJECT_DOMAIN_NAME: Domains (default: Default)
            OS_REGION_NAME: Catalog region filter (optional)
            OS_INTERFACE: Catalog endpoint interface (default: public)
            POLL_INTERVAL: Seconds between provider poll cycles (default: 120)
            LINK_SYNC_INTERVAL: Seconds between Kubernetes service syncs (default: 60)
            RECONCILE_INTERVAL: Seconds between custom resource resyncs (default: 30)
            PROVIDER_TIMEOUT: Per-request provider deadline in seconds (default: 30)
            STACK_TIMEOUT_MINUTES: Orchestration stack timeout (default: 60)
            STACK_TAG: Tag applied to and used to filter stacks (default: ecns-mixapp)
            VM_NAME_PREFIX: Prefix of generated server group names (default: nova)
            TEMPLATES_DIR: Override directory for stack templates (optional)
            WATCH_NAMESPACE: Restrict reconciliation to one namespace (optional)
            MAX_CONCURRENT_RECONCILES: Parallel reconciles across objects (default: 4)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        templates_dir = os.environ.get("TEMPLATES_DIR")

        return cls(
            auth_url=os.environ.get("OS_AUTH_URL", ""),
            username=os.environ.get("OS_USERNAME", ""),
            password=os.environ.get("OS_PASSWORD", ""),
            project_name=os.environ.get("OS_PROJECT_NAME", ""),
            user_domain=os.environ.get("OS_USER_DOMAIN_NAME", "Default"),
            project_domain=os.environ.get("OS_PROJECT_DOMAIN_NAME", "Default"),
            region=os.environ.get("OS_REGION_NAME") or None,
            interface=os.environ.get("OS_INTERFACE", "public"),
            poll_interval_seconds=get_int("POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            link_sync_interval_seconds=get_int(
                "LINK_SYNC_INTERVAL", DEFAULT_LINK_SYNC_INTERVAL_SECONDS
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            provider_timeout_seconds=get_int("PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS),
            stack_timeout_minutes=get_int("STACK_TIMEOUT_MINUTES", DEFAULT_STACK_TIMEOUT_MINUTES),
            stack_tag=os.environ.get("STACK_TAG", DEFAULT_STACK_TAG),
            vm_name_prefix=os.environ.get("VM_NAME_PREFIX", DEFAULT_VM_NAME_PREFIX),
            templates_dir=Path(templates_dir) if templates_dir else None,
            namespace=os.environ.get("WATCH_NAMESPACE") or None,
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
        )
