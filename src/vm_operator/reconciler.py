"""Control loop over VirtualMachine custom resources.

Each cycle:
1. Lists VirtualMachine objects (one namespace or cluster-wide)
2. Adds the finalizer to live objects so teardown runs before removal
3. Runs the server stages for every object, at most
   ``max_concurrent_reconciles`` at a time and never twice concurrently
   for the same object
4. Writes changed status back through the status subresource
5. Drops the finalizer once every stack of a deleted object is gone

Provider state is refreshed independently by the poller, so a cycle only
reads cached state and never blocks on a provider listing.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from kubernetes import client
from kubernetes.client import ApiException
from pydantic import ValidationError

from .config import CRD_GROUP, CRD_PLURAL, CRD_VERSION, FINALIZER_NAME, Config
from .models import VirtualMachine
from .server import Server

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes

# Status writes lose to concurrent edits; re-read and retry this many times
MAX_STATUS_RETRIES = 3


@dataclass
class ReconcileResult:
    """Result of a single reconciliation cycle."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    objects: int = 0
    status_updates: int = 0
    failed_objects: list[str] = field(default_factory=list)
    finalized: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """A cycle fails only when objects could not be listed."""
        return self.error is None


def _stacks_remaining(vm: VirtualMachine) -> bool:
    statuses = (vm.status.vm_status, vm.status.net_status, vm.status.pub_status)
    return any(status is not None and status.has_stack for status in statuses)


def _object_key(raw: dict[str, Any]) -> str:
    metadata = raw.get("metadata") or {}
    return f"{metadata.get('namespace') or 'default'}/{metadata.get('name', '')}"


class VirtualMachineController:
    """Drives a Server from the cluster's VirtualMachine objects."""

    def __init__(
        self,
        config: Config,
        server: Server,
        custom_api: client.CustomObjectsApi | None = None,
    ) -> None:
        self._config = config
        self._server = server
        self._api = custom_api or client.CustomObjectsApi()
        self._semaphore = asyncio.Semaphore(config.max_concurrent_reconciles)
        self._locks: dict[str, asyncio.Lock] = {}
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    async def run(self) -> None:
        """Run reconciliation cycles until shutdown.

        After MAX_CONSECUTIVE_FAILURES failed cycles the circuit opens and
        cycles pause for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting controller",
            extra={
                "namespace": self._config.namespace or "*",
                "interval_seconds": self._config.reconcile_interval_seconds,
                "max_concurrent_reconciles": self._config.max_concurrent_reconciles,
            },
        )

        while not self._shutdown_event.is_set():
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=min(remaining, self._config.reconcile_interval_seconds),
                        )
                    except TimeoutError:
                        pass
                    continue
                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_all()
            self._log_result(result)

            if result.error is not None:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Controller shutdown complete")

    def shutdown(self) -> None:
        """Signal the controller to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def reconcile_all(self) -> ReconcileResult:
        result = ReconcileResult()
        loop = asyncio.get_running_loop()
        try:
            items = await loop.run_in_executor(None, self._list_objects)
        except ApiException as e:
            result.error = e
            result.end_time = datetime.now(UTC)
            return result

        result.objects = len(items)

        async def bounded(raw: dict[str, Any]) -> None:
            async with self._semaphore:
                await self._reconcile_into(raw, result)

        await asyncio.gather(*(bounded(raw) for raw in items))
        self._prune_locks({_object_key(raw) for raw in items})
        result.end_time = datetime.now(UTC)
        return result

    def _prune_locks(self, listed: set[str]) -> None:
        """Forget locks of objects that are no longer listed."""
        for key in list(self._locks):
            if key not in listed and not self._locks[key].locked():
                del self._locks[key]

    async def _reconcile_into(self, raw: dict[str, Any], result: ReconcileResult) -> None:
        key = _object_key(raw)
        try:
            outcome = await self.reconcile_object(raw)
        except (ApiException, ValidationError) as e:
            logger.warning("Object reconcile failed", extra={"object": key, "error": str(e)})
            result.failed_objects.append(key)
            return
        except Exception:
            logger.exception("Unexpected error during reconciliation", extra={"object": key})
            result.failed_objects.append(key)
            return
        if outcome == "status":
            result.status_updates += 1
        elif outcome == "finalized":
            result.finalized.append(key)

    async def reconcile_object(self, raw: dict[str, Any]) -> str:
        """Reconcile one object from its raw cluster representation.

        Returns "finalized", "status" or "" depending on what was written.
        """
        vm = VirtualMachine.model_validate(raw)
        lock = self._locks.setdefault(vm.key, asyncio.Lock())
        loop = asyncio.get_running_loop()
        async with lock:
            if vm.deletion_requested and FINALIZER_NAME not in vm.metadata.finalizers:
                return ""
            if not vm.deletion_requested and FINALIZER_NAME not in vm.metadata.finalizers:
                await loop.run_in_executor(None, self._add_finalizer, vm)

            before = vm.status_dict()
            await loop.run_in_executor(None, self._server.process, vm)
            outcome = ""
            if vm.status_dict() != before:
                await loop.run_in_executor(None, self._write_status, vm)
                outcome = "status"

            if vm.deletion_requested and not _stacks_remaining(vm):
                await loop.run_in_executor(None, self._remove_finalizer, vm)
                self._locks.pop(vm.key, None)
                outcome = "finalized"
            return outcome

    # -- cluster API ------------------------------------------------------------

    def _list_objects(self) -> list[dict[str, Any]]:
        if self._config.namespace:
            response = self._api.list_namespaced_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                namespace=self._config.namespace,
                plural=CRD_PLURAL,
            )
        else:
            response = self._api.list_cluster_custom_object(
                group=CRD_GROUP,
                version=CRD_VERSION,
                plural=CRD_PLURAL,
            )
        return list(response.get("items", []))

    def _patch_finalizers(self, vm: VirtualMachine, finalizers: list[str]) -> None:
        self._api.patch_namespaced_custom_object(
            group=CRD_GROUP,
            version=CRD_VERSION,
            namespace=vm.metadata.namespace,
            plural=CRD_PLURAL,
            name=vm.metadata.name,
            body={"metadata": {"finalizers": finalizers}},
        )
        vm.metadata.finalizers = finalizers

    def _add_finalizer(self, vm: VirtualMachine) -> None:
        self._patch_finalizers(vm, [*vm.metadata.finalizers, FINALIZER_NAME])
        logger.debug("Finalizer added", extra={"object": vm.key})

    def _remove_finalizer(self, vm: VirtualMachine) -> None:
        remaining = [f for f in vm.metadata.finalizers if f != FINALIZER_NAME]
        try:
            self._patch_finalizers(vm, remaining)
        except ApiException as e:
            if e.status == 404:
                return
            raise
        logger.info("Finalizer removed", extra={"object": vm.key})

    def _write_status(self, vm: VirtualMachine) -> None:
        status = vm.status_dict()
        for attempt in range(1, MAX_STATUS_RETRIES + 1):
            try:
                current = self._api.get_namespaced_custom_object_status(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=vm.metadata.namespace,
                    plural=CRD_PLURAL,
                    name=vm.metadata.name,
                )
                current["status"] = status
                self._api.replace_namespaced_custom_object_status(
                    group=CRD_GROUP,
                    version=CRD_VERSION,
                    namespace=vm.metadata.namespace,
                    plural=CRD_PLURAL,
                    name=vm.metadata.name,
                    body=current,
                )
                return
            except ApiException as e:
                if e.status == 404:
                    logger.debug("Object gone before status write", extra={"object": vm.key})
                    return
                if e.status != 409 or attempt == MAX_STATUS_RETRIES:
                    raise
                logger.debug(
                    "Status write conflict, retrying",
                    extra={"object": vm.key, "attempt": attempt},
                )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "objects": result.objects,
            "status_updates": result.status_updates,
            "failed_objects": result.failed_objects,
            "finalized": result.finalized,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif result.failed_objects:
            logger.warning("Reconciliation finished with failures", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
