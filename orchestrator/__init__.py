"""
Orchestrator - run control and provider coordination layer.

Combines provider routing, run attempts over the compiled workflow and the
persisted harness event protocol into a single, streamlined package.
"""

from .harness_protocol import HarnessEventEnvelope, HarnessEventType, LifecycleState
from .harness_session import HarnessSession
from .provider_router import (
    NoEligibleProviderError,
    NoProvidersConfiguredError,
    Provider,
    ProviderRouter,
    RouterPolicy,
)
from .run_state_store import RunStateSnapshot, RunStateStore
from .runtime import AgentRuntime, NoInterruptedRunError, RunAlreadyActiveError, RunOutcome

__all__ = [
    "AgentRuntime",
    "HarnessEventEnvelope",
    "HarnessEventType",
    "HarnessSession",
    "LifecycleState",
    "NoEligibleProviderError",
    "NoInterruptedRunError",
    "NoProvidersConfiguredError",
    "Provider",
    "ProviderRouter",
    "RouterPolicy",
    "RunAlreadyActiveError",
    "RunOutcome",
    "RunStateSnapshot",
    "RunStateStore",
]
