"""Create/update/delete decisions for one orchestration stack.

The reconciler compares the digest of a freshly rendered template with the
digest of the last template the provider accepted:

- no accepted digest: create the stack
- digest differs: update the stack
- digest matches: report the phase observed by the poller

While the previous operation on a stack has not been observed finished (the
cache entry is unsynced or the stack is IN_PROGRESS) no write is issued, so
two operations never overlap on the same stack.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .cache import CacheEntry, ResourceCache
from .config import Config
from .models import AuthSpec, Phase, ResourceStatus
from .poller import ProviderPoller
from .provider import OpenStackClient, ProviderConflict, ProviderKind, ProviderNotFound
from .templates import TemplateEngine, TemplateKind, content_hash

logger = logging.getLogger(__name__)

# Provider reason that marks a create abandoned by the orchestration timeout;
# a full update resumes building the remaining resources
CREATE_TIMEOUT_MARKER = "Create timed out"

# Stacks whose create rolled back never reached the desired state
ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"

ReorderHook = Callable[[dict[str, Any], ResourceStatus], None]


class StackFailedError(Exception):
    """Raised when the provider reports a stack failed with a reason."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InvariantViolation(Exception):
    """Raised when the provider contradicts itself (e.g. created without ID)."""

    pass


def phase_for_status(status: str) -> Phase | None:
    """Translate an orchestration status code into a phase.

    Returns None for codes that carry no phase information (e.g. empty).
    """
    if status == ROLLBACK_COMPLETE:
        return Phase.FAILED
    action, _, state = status.partition("_")
    if state == "IN_PROGRESS":
        if action == "CREATE":
            return Phase.CREATING
        if action == "DELETE":
            return Phase.DELETING
        return Phase.UPDATING
    if state == "FAILED":
        return Phase.FAILED
    if state == "COMPLETE":
        return Phase.SUCCEEDED
    return None


def is_in_progress(status: str) -> bool:
    return status.endswith("_IN_PROGRESS")


def _stack_entry(item: dict[str, Any]) -> CacheEntry:
    # Only the first line of the reason is kept; the rest is a resource trace
    reason = (item.get("stack_status_reason") or "").split("\n", 1)[0]
    return CacheEntry(
        provider_id=item.get("id", ""),
        name=item.get("stack_name", ""),
        status=item.get("stack_status", ""),
        status_reason=reason,
    )


class StackReconciler:
    """Drives one stack per ResourceStatus towards its rendered template."""

    def __init__(
        self,
        config: Config,
        provider: OpenStackClient,
        engine: TemplateEngine,
        poller: ProviderPoller,
    ) -> None:
        self._config = config
        self._provider = provider
        self._engine = engine
        self._cache = ResourceCache(
            ProviderKind.STACKS,
            key_of=lambda item: item.get("id"),
            convert=_stack_entry,
        )
        self._hooks: dict[TemplateKind, ReorderHook] = {}
        poller.register(ProviderKind.STACKS, self._cache.apply_page)

    @property
    def cache(self) -> ResourceCache:
        return self._cache

    def register_hook(self, kind: TemplateKind, hook: ReorderHook) -> None:
        """Install the hook that rewrites the render tree for ``kind``."""
        if kind in self._hooks:
            raise ValueError(f"A reorder hook is already registered for {kind.value}")
        self._hooks[kind] = hook

    # -- reconcile --------------------------------------------------------------

    def reconcile(
        self,
        kind: TemplateKind,
        auth: AuthSpec | None,
        tree: dict[str, Any],
        status: ResourceStatus,
    ) -> Phase | None:
        """Converge the stack described by ``status`` on the rendered ``tree``.

        Args:
            kind: Template to render; also selects the reorder hook.
            auth: Tenant credentials used when the stack is created.
            tree: Generic render input (the stage's spec with derived fields).
            status: Status of the stack; updated in place.

        Returns:
            The phase after this pass (None while nothing is known yet).

        Raises:
            StackFailedError: The provider reports the stack failed with a reason.
            InvariantViolation: The provider accepted a create without an ID.
            ProviderError: Any provider failure other than the absorbed ones.
        """
        if status.stack_id and not self._settled(status.stack_id):
            logger.debug(
                "Stack operation still in progress, skipping write",
                extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
            )
            return self._observe(status)

        hook = self._hooks.get(kind)
        if hook is not None:
            hook(tree, status)
        rendered = self._engine.render(kind, tree)
        new_hash = content_hash(rendered)
        template = rendered.decode("utf-8")

        if not status.hash:
            self._create(auth, template, status)
            status.hash = new_hash
            status.template = template
            status.phase = Phase.CREATING
            self._cache.rearm(status.stack_id)
            return status.phase

        if status.hash != new_hash:
            self._update(status, template, patch=True)
            status.hash = new_hash
            status.template = template
            status.phase = Phase.UPDATING
            self._cache.rearm(status.stack_id)
            return status.phase

        try:
            return self._observe(status)
        except StackFailedError as e:
            if CREATE_TIMEOUT_MARKER not in e.reason:
                raise
            logger.warning(
                "Stack create timed out, resubmitting full template",
                extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
            )
            self._update(status, template, patch=False)
            status.phase = Phase.CREATING
            self._cache.rearm(status.stack_id)
            return status.phase

    def _settled(self, stack_id: str) -> bool:
        entry, ok = self._cache.read(stack_id)
        if not ok:
            self._cache.listen(stack_id)
            return False
        if not entry.synced:
            return False
        return not is_in_progress(entry.status)

    def _observe(self, status: ResourceStatus) -> Phase | None:
        """Fold the cached provider state into ``status``.

        Unsynced entries never produce a terminal phase.
        """
        entry, ok = self._cache.read(status.stack_id)
        if not ok or not entry.synced:
            return status.phase

        if not entry.present:
            if entry.provider_id:
                logger.warning(
                    "Stack disappeared from provider, will recreate",
                    extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
                )
                self._cache.remove(status.stack_id)
                status.stack_id = ""
                status.hash = ""
                status.phase = None
            return status.phase

        phase = phase_for_status(entry.status)
        if phase is None:
            return status.phase
        status.phase = phase
        if phase == Phase.FAILED:
            if not entry.status_reason:
                logger.info(
                    "Stack failed without a reason",
                    extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
                )
                return phase
            raise StackFailedError(entry.status_reason)
        return phase

    def _create(self, auth: AuthSpec | None, template: str, status: ResourceStatus) -> None:
        if not status.stack_name:
            raise InvariantViolation("Stack name must be chosen before create")
        try:
            stack_id = self._provider.create_stack(
                auth,
                status.stack_name,
                template,
                tags=[self._config.stack_tag],
                timeout_minutes=self._config.stack_timeout_minutes,
            )
        except ProviderConflict:
            # A previous create may have succeeded after its request timed out
            stack_id = self._provider.find_stack_by_name(status.stack_name)
            if not stack_id:
                raise
            logger.info(
                "Recovered existing stack by name",
                extra={"stack_name": status.stack_name, "stack_id": stack_id},
            )
        if not stack_id:
            raise InvariantViolation(f"Create of stack {status.stack_name} returned no ID")
        status.stack_id = stack_id
        logger.info(
            "Stack created",
            extra={"stack_name": status.stack_name, "stack_id": stack_id},
        )

    def _update(self, status: ResourceStatus, template: str, patch: bool) -> None:
        try:
            self._provider.update_stack(
                status.stack_name,
                status.stack_id,
                template,
                tags=[self._config.stack_tag],
                timeout_minutes=self._config.stack_timeout_minutes,
                patch=patch,
            )
        except ProviderConflict as e:
            logger.info(
                "Stack busy, update absorbed",
                extra={"stack_name": status.stack_name, "error": str(e)},
            )
            return
        logger.info(
            "Stack update submitted",
            extra={"stack_name": status.stack_name, "stack_id": status.stack_id, "patch": patch},
        )

    # -- delete -----------------------------------------------------------------

    def delete(self, status: ResourceStatus) -> None:
        """Delete the stack; a stack that is already gone counts as deleted."""
        status.phase = Phase.DELETING
        if status.stack_id and status.stack_name:
            try:
                self._provider.delete_stack(status.stack_name, status.stack_id)
            except ProviderNotFound:
                logger.info(
                    "Stack already deleted",
                    extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
                )
            else:
                logger.info(
                    "Stack delete submitted",
                    extra={"stack_name": status.stack_name, "stack_id": status.stack_id},
                )
        if status.stack_id:
            self._cache.remove(status.stack_id)
        status.stack_id = ""
        status.stack_name = ""
        status.hash = ""
