"""OpenStack API mock for integration testing.

Provides an in-memory stand-in for the OpenStack client so the full
reconcile flow runs without a cloud.

Key Features:
- In-memory stacks with a controllable lifecycle (in progress -> complete/failed)
- Raw listings for servers, load balancers, floating IPs and ports
- Call recording for "no further provider calls" assertions
- Error injection for conflict, not-found and transient failures

Usage:
    from openstack_mock import MockOpenStackContext

    with MockOpenStackContext() as ctx:
        ctx.server.process(vm)
        ctx.state.complete_all()
        await ctx.poll()

        assert ctx.state.stack_count == 1
"""

from .context import MockOpenStackContext, make_config
from .objects import LOAD_BALANCE, PUBLIC, SERVER, make_vm, mark_deleting
from .resources import (
    CREATE_COMPLETE,
    CREATE_FAILED,
    CREATE_IN_PROGRESS,
    UPDATE_COMPLETE,
    UPDATE_IN_PROGRESS,
    MockOpenStackClient,
    MockOpenStackState,
    MockStack,
    transient_error,
)

__all__ = [
    "CREATE_COMPLETE",
    "CREATE_FAILED",
    "CREATE_IN_PROGRESS",
    "LOAD_BALANCE",
    "MockOpenStackClient",
    "MockOpenStackContext",
    "MockOpenStackState",
    "MockStack",
    "PUBLIC",
    "SERVER",
    "UPDATE_COMPLETE",
    "UPDATE_IN_PROGRESS",
    "make_config",
    "make_vm",
    "mark_deleting",
    "transient_error",
]
