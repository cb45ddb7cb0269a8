"""
Provider Router for resilient model-provider selection with fallback chains.

The router sits between the agent's model node and a set of model clients:
- Providers are tried in priority order (lower first, ties broken by id)
- A provider is skipped while its rate window, the global rate window, or
  the cost ceiling would be breached
- Each eligible provider is retried with deterministic exponential backoff
- When every provider fails or none is eligible, the degradation policy
  either raises or returns a synthetic assistant message

Selection is evaluated fresh for every request; there is no sticky affinity.
All counters live in one ``UsageLedger`` shared by every concurrent request.
"""

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from langchain_core.messages import AIMessage, SystemMessage

from core.tokenizer import ApproximateTokenizer, BaseTokenizer
from shared.providers import (
    BaseModelClient,
    ChatRequest,
    ChatResponse,
    FinalChunk,
    StreamChunk,
)
from shared.utils.rate_limiter import CostCeilingExceeded, RateLimitExceeded, UsageLedger

logger = logging.getLogger(__name__)


class ProviderRouterError(Exception):
    """Base exception for routing failures."""
    pass


class NoProvidersConfiguredError(ProviderRouterError):
    def __init__(self):
        super().__init__("No providers configured for routing.")


class NoEligibleProviderError(ProviderRouterError):
    """
    Raised when no provider produced a response.

    Attributes:
        reasons: ``"{provider_id}:{reason}"`` per skipped or failed provider
    """

    def __init__(self, reasons: List[str]):
        self.reasons = list(reasons)
        super().__init__("No eligible provider available: " + "; ".join(self.reasons))

    def to_dict(self) -> Dict[str, Any]:
        return {"error": "no_eligible_provider", "reasons": self.reasons}


@dataclass
class Provider:
    """
    One routable model backend.

    Attributes:
        id: Stable provider identifier
        client: Model client used for completions
        priority: Lower values are tried first
        max_requests_per_minute: Per-provider rate ceiling (None = unlimited)
        usd_per_1k_tokens: Price used for cost estimation (None = free)
    """

    id: str
    client: BaseModelClient
    priority: int = 0
    max_requests_per_minute: Optional[int] = None
    usd_per_1k_tokens: Optional[float] = None


@dataclass
class RouterPolicy:
    """
    Retry, ceiling and degradation settings.

    Values are clamped on construction: at least one attempt, a positive
    initial backoff, a max backoff no smaller than the initial one and a
    non-negative output/input ratio.

    Attributes:
        max_attempts_per_provider: Attempts before moving to the next provider
        initial_backoff_seconds: Delay after the first failed attempt
        max_backoff_seconds: Cap for the doubling backoff
        global_max_requests_per_minute: Ceiling across all providers
        cost_ceiling_usd: Cumulative spend ceiling
        estimated_output_to_input_ratio: Output tokens estimated per input token
        degraded_response: Synthetic reply returned instead of failing (None = fail)
    """

    max_attempts_per_provider: int = 2
    initial_backoff_seconds: float = 0.1
    max_backoff_seconds: float = 1.0
    global_max_requests_per_minute: Optional[int] = None
    cost_ceiling_usd: Optional[float] = None
    estimated_output_to_input_ratio: float = 0.5
    degraded_response: Optional[str] = None

    def __post_init__(self):
        self.max_attempts_per_provider = max(1, int(self.max_attempts_per_provider))
        self.initial_backoff_seconds = max(1e-9, float(self.initial_backoff_seconds))
        self.max_backoff_seconds = max(self.initial_backoff_seconds, float(self.max_backoff_seconds))
        self.estimated_output_to_input_ratio = max(0.0, float(self.estimated_output_to_input_ratio))


def compute_backoff(attempt: int, base: float, cap: float) -> float:
    """
    Delay after failed attempt number ``attempt`` (1-based).

    Deterministic doubling capped at ``cap``: base, 2*base, 4*base, ...
    """
    return min(cap, base * (2 ** max(0, attempt - 1)))


class RoutingClient(BaseModelClient):
    """Model client facade that completes every request through the router."""

    def __init__(self, router: "ProviderRouter", hints: Optional[Dict[str, Any]] = None):
        self.router = router
        self.hints = hints

    async def stream(self, request: ChatRequest) -> AsyncIterator[StreamChunk]:
        response = await self.router.complete(request, self.hints)
        yield FinalChunk(response)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        return await self.router.complete(request, self.hints)


class ProviderRouter:
    """
    Priority-ordered provider selection with retry, ceilings and degradation.

    Args:
        providers: Candidate providers
        policy: Routing policy (defaults to ``RouterPolicy()``)
        now: Clock returning seconds (monotonic by default)
        sleep: Async sleep used between attempts
        tokenizer: Tokenizer for cost estimation
        ledger: Shared usage ledger (one is created if omitted)

    Example:
        >>> router = ProviderRouter([
        ...     Provider(id="local", client=local_client, priority=0),
        ...     Provider(id="cloud", client=cloud_client, priority=1, usd_per_1k_tokens=0.5),
        ... ], RouterPolicy(cost_ceiling_usd=5.0))
        >>> client = router.route(request)
        >>> response = await client.complete(request)
    """

    def __init__(
        self,
        providers: List[Provider],
        policy: Optional[RouterPolicy] = None,
        now: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        tokenizer: Optional[BaseTokenizer] = None,
        ledger: Optional[UsageLedger] = None,
    ):
        self.providers = sorted(providers, key=lambda provider: (provider.priority, provider.id))
        self.policy = policy or RouterPolicy()
        self._now = now
        self._sleep = sleep
        self.tokenizer = tokenizer or ApproximateTokenizer()
        self.ledger = ledger or UsageLedger()

        logger.info(
            f"ProviderRouter initialized with providers: {[provider.id for provider in self.providers]}"
        )

    def route(self, request: ChatRequest, hints: Optional[Dict[str, Any]] = None) -> RoutingClient:
        return RoutingClient(self, hints)

    async def complete(self, request: ChatRequest, hints: Optional[Dict[str, Any]] = None) -> ChatResponse:
        """
        Complete ``request`` on the first provider that succeeds.

        Raises:
            NoProvidersConfiguredError: If the router has no providers
            NoEligibleProviderError: If every provider was skipped or failed
                and no degraded response is configured
        """
        if not self.providers:
            raise NoProvidersConfiguredError()

        failures: List[str] = []
        for provider in self.providers:
            estimate = self._estimate_cost_usd(request, provider)
            try:
                reservation = await self.ledger.reserve(
                    provider.id,
                    provider.max_requests_per_minute,
                    estimate,
                    self.policy.global_max_requests_per_minute,
                    self.policy.cost_ceiling_usd,
                    self._now(),
                )
            except (RateLimitExceeded, CostCeilingExceeded) as exc:
                logger.debug(f"Skipping provider {provider.id}: {exc.reason}")
                failures.append(f"{provider.id}:{exc.reason}")
                continue

            try:
                response = await self._attempt_provider(provider, request)
            except asyncio.CancelledError:
                await self.ledger.release(reservation)
                raise
            except Exception as exc:
                await self.ledger.release(reservation)
                logger.warning(f"Provider {provider.id} failed after retries: {exc}")
                failures.append(f"{provider.id}:{exc}")
                continue

            logger.info(f"Request served by provider {provider.id} (estimated ${estimate:.4f})")
            return response

        if self.policy.degraded_response is not None:
            logger.warning(f"All providers unavailable, returning degraded response: {failures}")
            return ChatResponse(
                message=AIMessage(
                    id=f"degraded-{uuid.uuid4()}",
                    content=self.policy.degraded_response,
                )
            )
        raise NoEligibleProviderError(failures)

    async def _attempt_provider(self, provider: Provider, request: ChatRequest) -> ChatResponse:
        attempts = self.policy.max_attempts_per_provider
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                return await provider.client.complete(request)
            except Exception as exc:
                last_error = exc
                logger.debug(f"Provider {provider.id} attempt {attempt}/{attempts} failed: {exc}")
                if attempt >= attempts:
                    break
                await self._sleep(
                    compute_backoff(
                        attempt,
                        self.policy.initial_backoff_seconds,
                        self.policy.max_backoff_seconds,
                    )
                )
        raise last_error

    def _estimate_cost_usd(self, request: ChatRequest, provider: Provider) -> float:
        if provider.usd_per_1k_tokens is None:
            return 0.0

        message_tokens = self.tokenizer.count_tokens(request.messages)
        tool_payload = "\n".join(
            f"{tool.name}\n{tool.description}\n{tool.parameters_json_schema}"
            for tool in request.tools
        )
        tool_tokens = self.tokenizer.count_tokens(
            [SystemMessage(id="budget-tools", content=tool_payload)]
        )
        input_tokens = message_tokens + tool_tokens
        output_tokens = math.ceil(input_tokens * self.policy.estimated_output_to_input_ratio)
        return (input_tokens + max(0, output_tokens)) / 1000.0 * provider.usd_per_1k_tokens

    def get_routing_summary(self) -> Dict[str, Any]:
        """Snapshot of provider order and ledger counters."""
        return {
            "providers": [
                {
                    "id": provider.id,
                    "priority": provider.priority,
                    "requests_in_window": self.ledger.request_count(provider.id),
                    "max_requests_per_minute": provider.max_requests_per_minute,
                }
                for provider in self.providers
            ],
            "global_requests_in_window": self.ledger.request_count(),
            "spent_cost_usd": self.ledger.spent_cost,
            "cost_ceiling_usd": self.policy.cost_ceiling_usd,
        }
