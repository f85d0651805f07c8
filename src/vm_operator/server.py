"""Per-object orchestration of the server, load balancer and floating IP stages.

Stages always run in the order VM -> LB -> FIP because each may consume an
address resolved by the previous one. A failing stage does not stop the
others; every outcome is recorded as one condition per stage.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import ApiException

from .config import MAX_CONDITION_REASON_LENGTH, Config
from .floatingip import FloatingIPProcessor, LinkTargetMissing
from .heat import InvariantViolation, StackFailedError, StackReconciler
from .kube import KubeLinkResolver, LinkError, ServiceSyncer
from .loadbalancer import LoadBalancerProcessor
from .models import (
    Condition,
    ResourceStatus,
    SpecValidationError,
    VirtualMachine,
    VirtualMachineStatus,
)
from .poller import ProviderPoller
from .provider import OpenStackClient, ProviderError, ProviderTransient
from .results import Outcome, StageResult
from .templates import TemplateEngine, TemplateRenderError
from .vm_group import VmGroupProcessor

logger = logging.getLogger(__name__)

STAGE_CHECK = "check"
STAGE_VM = "vm"
STAGE_LB = "lb"
STAGE_FIP = "fip"


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _reason_digest(reason: str) -> str:
    return hashlib.sha256(reason.encode("utf-8")).hexdigest()


def record_condition(status: VirtualMachineStatus, stage: str, result: StageResult) -> bool:
    """Set the condition of ``stage`` from ``result``.

    Recording the same reason again is a no-op. Returns True if the
    conditions changed.
    """
    reason = result.reason[:MAX_CONDITION_REASON_LENGTH]
    condition_status = "True" if result.outcome == Outcome.DONE else "False"
    for condition in status.conditions:
        if condition.type != stage:
            continue
        if (
            condition.status == condition_status
            and _reason_digest(condition.reason) == _reason_digest(reason)
        ):
            return False
        condition.status = condition_status
        condition.reason = reason
        condition.last_transition_time = now_iso()
        return True
    status.conditions.append(
        Condition(
            type=stage,
            status=condition_status,
            reason=reason,
            last_transition_time=now_iso(),
        )
    )
    return True


class Server:
    """Owns the poller, the stack reconciler and the three processors."""

    def __init__(
        self,
        config: Config,
        provider: OpenStackClient,
        engine: TemplateEngine,
        resolver: KubeLinkResolver | None = None,
        syncer: ServiceSyncer | None = None,
    ) -> None:
        self._config = config
        self._syncer = syncer
        self._poller = ProviderPoller(provider)
        self._heat = StackReconciler(config, provider, engine, self._poller)
        self._vm_group = VmGroupProcessor(config, self._heat, self._poller)
        self._load_balancer = LoadBalancerProcessor(
            config, self._heat, self._poller, self._vm_group, resolver, syncer
        )
        self._floating_ip = FloatingIPProcessor(
            config, self._heat, self._poller, self._load_balancer, resolver
        )
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def poller(self) -> ProviderPoller:
        return self._poller

    @property
    def heat(self) -> StackReconciler:
        return self._heat

    @property
    def vm_group(self) -> VmGroupProcessor:
        return self._vm_group

    @property
    def load_balancer(self) -> LoadBalancerProcessor:
        return self._load_balancer

    @property
    def floating_ip(self) -> FloatingIPProcessor:
        return self._floating_ip

    def process(self, vm: VirtualMachine) -> dict[str, StageResult]:
        """Run one reconcile pass over ``vm``, updating its status in place."""
        results: dict[str, StageResult] = {}
        if vm.spec.auth is None and not vm.deletion_requested:
            result = StageResult.failed("authentication info not found")
            record_condition(vm.status, STAGE_CHECK, result)
            results[STAGE_CHECK] = result
            return results
        if any(c.type == STAGE_CHECK for c in vm.status.conditions):
            record_condition(vm.status, STAGE_CHECK, StageResult.done("authentication info found"))

        stages: list[
            tuple[str, object, ResourceStatus | None, Callable[[VirtualMachine], StageResult]]
        ] = [
            (STAGE_VM, vm.spec.server, vm.status.vm_status, self._vm_group.process),
            (STAGE_LB, vm.spec.load_balance, vm.status.net_status, self._load_balancer.process),
            (STAGE_FIP, vm.spec.public, vm.status.pub_status, self._floating_ip.process),
        ]
        for stage, requested, status, process in stages:
            # Stages dropped from the spec run until their stack is deleted
            if requested is None and (status is None or not status.has_stack):
                continue
            result = self._run_stage(stage, process, vm)
            record_condition(vm.status, stage, result)
            results[stage] = result
        return results

    def _run_stage(
        self,
        stage: str,
        process: Callable[[VirtualMachine], StageResult],
        vm: VirtualMachine,
    ) -> StageResult:
        extra = {"object": vm.key, "stage": stage}
        try:
            result = process(vm)
        except (SpecValidationError, LinkError) as e:
            logger.warning("Invalid specification", extra={**extra, "error": str(e)})
            return StageResult.failed(str(e))
        except StackFailedError as e:
            logger.warning("Stack failed", extra={**extra, "error": e.reason})
            return StageResult.failed(e.reason)
        except ProviderTransient as e:
            logger.warning("Provider unavailable", extra={**extra, "error": str(e)})
            return StageResult.failed(str(e))
        except ProviderError as e:
            logger.error(
                "Provider rejected request",
                extra={**extra, "error": str(e), "status_code": e.status_code},
            )
            return StageResult.failed(str(e))
        except LinkTargetMissing as e:
            logger.warning("Link target missing", extra={**extra, "error": str(e)})
            return StageResult.failed(str(e))
        except ApiException as e:
            logger.warning("Cluster API request failed", extra={**extra, "error": str(e)})
            return StageResult.failed(f"cluster API error: {e.status} {e.reason}")
        except (InvariantViolation, TemplateRenderError) as e:
            logger.error("Internal error", extra={**extra, "error": str(e)})
            return StageResult.failed(str(e))
        except Exception as e:
            logger.exception("Unexpected error during reconciliation", extra=extra)
            return StageResult.failed(f"unexpected error: {e}")
        logger.debug(
            "Stage finished",
            extra={**extra, "outcome": result.outcome.value, "reason": result.reason},
        )
        return result

    # -- lifecycle --------------------------------------------------------------

    def start(self) -> None:
        """Start the poller and, when links are supported, the service syncer."""
        self._tasks.append(self._poller.start(self._config.poll_interval_seconds))
        if self._syncer is not None:
            loop = asyncio.get_running_loop()
            self._tasks.append(
                loop.create_task(
                    self._syncer.run(
                        self._config.link_sync_interval_seconds,
                        self._load_balancer.address_for_link,
                    )
                )
            )

    def stop(self) -> None:
        self._poller.stop()
        if self._syncer is not None:
            self._syncer.stop()
