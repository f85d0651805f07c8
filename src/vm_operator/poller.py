"""Periodic provider listing fanned out to per-kind callbacks."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from .provider import OpenStackClient, ProviderError, ProviderKind

logger = logging.getLogger(__name__)

# Callback receives every listed item of its kind and the monotonic time the
# listing started
PollCallback = Callable[[list[dict[str, Any]], float], None]


class RegistrationError(Exception):
    """Raised on duplicate registration or registration after start."""

    pass


class ProviderPoller:
    """Lists registered provider kinds on a fixed period.

    Registration happens while components are constructed; the first call to
    ``run`` closes it. Each cycle lists every registered kind concurrently and
    waits for all of them before sleeping, so cycles never overlap.
    """

    def __init__(self, provider: OpenStackClient) -> None:
        self._provider = provider
        self._callbacks: dict[ProviderKind, PollCallback] = {}
        self._sealed = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._cycles = 0

    @property
    def cycles(self) -> int:
        """Number of completed poll cycles."""
        return self._cycles

    def register(self, kind: ProviderKind, callback: PollCallback) -> None:
        """Attach the single callback for ``kind``."""
        if self._sealed:
            raise RegistrationError(f"Cannot register {kind.value}: poller already started")
        if kind in self._callbacks:
            raise RegistrationError(f"A callback is already registered for {kind.value}")
        logger.info("Registered poll callback", extra={"kind": kind.value})
        self._callbacks[kind] = callback

    def registered_kinds(self) -> list[ProviderKind]:
        return list(self._callbacks)

    async def poll_once(self) -> None:
        """Run one full cycle: list all kinds, then feed each callback."""
        loop = asyncio.get_running_loop()
        kinds = list(self._callbacks)
        started = time.monotonic()
        results = await asyncio.gather(
            *(loop.run_in_executor(None, self._provider.list_kind, kind) for kind in kinds),
            return_exceptions=True,
        )
        for kind, result in zip(kinds, results):
            if isinstance(result, BaseException):
                level = logging.WARNING if isinstance(result, ProviderError) else logging.ERROR
                logger.log(
                    level,
                    "Listing failed, skipping kind this cycle",
                    extra={"kind": kind.value, "error": str(result)},
                )
                continue
            try:
                self._callbacks[kind](result, started)
            except Exception as e:
                logger.exception(
                    "Poll callback failed", extra={"kind": kind.value, "error": str(e)}
                )
        self._cycles += 1
        logger.debug(
            "Poll cycle complete",
            extra={"cycle": self._cycles, "duration_seconds": time.monotonic() - started},
        )

    async def run(self, period: float) -> None:
        """Poll every ``period`` seconds until ``stop`` is called."""
        self._sealed = True
        logger.info(
            "Starting provider poller",
            extra={"period_seconds": period, "kinds": [k.value for k in self._callbacks]},
        )
        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=period)
            except TimeoutError:
                pass
        logger.info("Provider poller stopped")

    def start(self, period: float) -> asyncio.Task[None]:
        """Schedule ``run`` on the running loop and return its task."""
        self._sealed = True
        self._task = asyncio.get_running_loop().create_task(self.run(period))
        return self._task

    def stop(self) -> None:
        """Signal shutdown without waiting for in-flight listings."""
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
