"""OpenStack mock context for integration testing.

Builds a ``Server`` wired to the in-memory provider, and optionally patches
``OpenStackClient`` where the operator constructs it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest import mock

from vm_operator.config import Config
from vm_operator.kube import KubeLinkResolver, ServiceSyncer
from vm_operator.server import Server
from vm_operator.templates import TemplateEngine

from .resources import MockOpenStackClient, MockOpenStackState


def make_config(**overrides: Any) -> Config:
    """Config with valid defaults for tests."""
    values: dict[str, Any] = {
        "auth_url": "https://keystone.example.com/v3",
        "username": "operator",
        "password": "secret",
        "project_name": "admin",
    }
    values.update(overrides)
    return Config(**values)


class MockOpenStackContext:
    """Context manager for OpenStack mocking in integration tests.

    Usage:
        with MockOpenStackContext() as ctx:
            ctx.server.process(vm)
            ctx.state.complete_all()
            await ctx.poll()

            assert ctx.client.write_calls == [("create_stack", ...)]
    """

    def __init__(
        self,
        *,
        config: Config | None = None,
        templates_dir: Path | None = None,
        resolver: KubeLinkResolver | None = None,
        syncer: ServiceSyncer | None = None,
        patch_targets: tuple[str, ...] = (),
    ) -> None:
        self.config = config or make_config()
        self.state = MockOpenStackState()
        self.client = MockOpenStackClient(self.state)
        self._templates_dir = templates_dir
        self._resolver = resolver
        self._syncer = syncer
        self._patch_targets = patch_targets
        self._patches: list[Any] = []
        self._server: Server | None = None

    @property
    def server(self) -> Server:
        """Get the server under test.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._server is None:
            raise RuntimeError("MockOpenStackContext must be used as a context manager")
        return self._server

    async def poll(self) -> None:
        """Run one provider poll cycle."""
        await self.server.poller.poll_once()

    def __enter__(self) -> MockOpenStackContext:
        for target in self._patch_targets:
            self._patches.append(mock.patch(target, return_value=self.client))
        for patch in self._patches:
            patch.start()
        self._server = Server(
            self.config,
            self.client,  # type: ignore[arg-type]
            TemplateEngine(self._templates_dir),
            self._resolver,
            self._syncer,
        )
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()
