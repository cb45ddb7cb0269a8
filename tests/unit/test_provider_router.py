"""
Unit tests for the provider router.

Uses an injected clock and sleep so backoff and rate windows are
deterministic.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from langchain_core.messages import AIMessage, HumanMessage

from orchestrator.provider_router import (
    NoEligibleProviderError,
    NoProvidersConfiguredError,
    Provider,
    ProviderRouter,
    RouterPolicy,
    RoutingClient,
    compute_backoff,
)
from shared.providers import ChatRequest, ChatResponse, FinalChunk, ProviderConnectionError, consume_stream


def _request():
    return ChatRequest(messages=[HumanMessage(id="u1", content="hello")])


def _client(content="ok", failures=0):
    """Mock client whose complete() fails ``failures`` times before answering."""
    client = Mock()
    side_effect = [ProviderConnectionError("boom")] * failures + [
        ChatResponse(message=AIMessage(content=content))
    ]
    client.complete = AsyncMock(side_effect=side_effect)
    return client


def _failing_client():
    client = Mock()
    client.complete = AsyncMock(side_effect=ProviderConnectionError("down"))
    return client


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestBackoff:

    def test_doubles_and_caps(self):
        assert [compute_backoff(n, 0.1, 1.0) for n in range(1, 6)] == pytest.approx(
            [0.1, 0.2, 0.4, 0.8, 1.0]
        )

    def test_policy_clamps_values(self):
        policy = RouterPolicy(
            max_attempts_per_provider=0,
            initial_backoff_seconds=0.5,
            max_backoff_seconds=0.1,
            estimated_output_to_input_ratio=-1,
        )
        assert policy.max_attempts_per_provider == 1
        assert policy.max_backoff_seconds == 0.5
        assert policy.estimated_output_to_input_ratio == 0.0


class TestProviderRouter:
    """Tests for orchestrator/provider_router.ProviderRouter"""

    # ── Selection ─────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_no_providers(self):
        router = ProviderRouter([])
        with pytest.raises(NoProvidersConfiguredError, match="No providers configured for routing."):
            await router.complete(_request())

    @pytest.mark.asyncio
    async def test_priority_order_with_id_tiebreak(self):
        b = _client("from b")
        a = _client("from a")
        late = _client("from late")
        router = ProviderRouter([
            Provider(id="late", client=late, priority=5),
            Provider(id="b", client=b, priority=1),
            Provider(id="a", client=a, priority=1),
        ])

        response = await router.complete(_request())

        assert response.message.content == "from a"
        assert [p.id for p in router.providers] == ["a", "b", "late"]
        b.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_after_retries(self):
        sleep = AsyncMock()
        primary = _failing_client()
        secondary = _client("fallback")
        router = ProviderRouter(
            [Provider(id="primary", client=primary), Provider(id="secondary", client=secondary, priority=1)],
            RouterPolicy(max_attempts_per_provider=3, initial_backoff_seconds=0.1, max_backoff_seconds=1.0),
            sleep=sleep,
        )

        response = await router.complete(_request())

        assert response.message.content == "fallback"
        assert primary.complete.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_retry_succeeds_on_same_provider(self):
        client = _client("second try", failures=1)
        router = ProviderRouter([Provider(id="p", client=client)], sleep=AsyncMock())
        response = await router.complete(_request())
        assert response.message.content == "second try"
        assert client.complete.await_count == 2

    # ── Ceilings ──────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_provider_rate_window_skips_and_frees(self):
        clock = FakeClock()
        limited = _client("limited")
        limited.complete = AsyncMock(return_value=ChatResponse(message=AIMessage(content="limited")))
        backup = Mock()
        backup.complete = AsyncMock(return_value=ChatResponse(message=AIMessage(content="backup")))
        router = ProviderRouter(
            [
                Provider(id="limited", client=limited, max_requests_per_minute=1),
                Provider(id="backup", client=backup, priority=1),
            ],
            now=clock,
        )

        assert (await router.complete(_request())).message.content == "limited"
        clock.now = 30.0
        assert (await router.complete(_request())).message.content == "backup"
        clock.now = 61.0
        assert (await router.complete(_request())).message.content == "limited"

    @pytest.mark.asyncio
    async def test_global_ceiling_fails_with_reasons(self):
        client = Mock()
        client.complete = AsyncMock(return_value=ChatResponse(message=AIMessage(content="ok")))
        router = ProviderRouter(
            [Provider(id="a", client=client), Provider(id="b", client=client, priority=1)],
            RouterPolicy(global_max_requests_per_minute=1),
            now=FakeClock(),
        )
        await router.complete(_request())

        with pytest.raises(NoEligibleProviderError) as exc_info:
            await router.complete(_request())
        assert exc_info.value.reasons == [
            "a:global rate ceiling exceeded",
            "b:global rate ceiling exceeded",
        ]

    @pytest.mark.asyncio
    async def test_cost_ceiling_skips_expensive_provider(self):
        expensive = _client("expensive")
        cheap = _client("cheap")
        router = ProviderRouter(
            [
                Provider(id="expensive", client=expensive, usd_per_1k_tokens=1000.0),
                Provider(id="cheap", client=cheap, priority=1),
            ],
            RouterPolicy(cost_ceiling_usd=0.5),
        )

        response = await router.complete(_request())

        assert response.message.content == "cheap"
        expensive.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_failed_provider_reservation_is_refunded(self):
        router = ProviderRouter(
            [Provider(id="down", client=_failing_client(), usd_per_1k_tokens=1.0)],
            RouterPolicy(max_attempts_per_provider=1),
        )
        with pytest.raises(NoEligibleProviderError) as exc_info:
            await router.complete(_request())
        assert exc_info.value.reasons == ["down:down"]
        assert router.ledger.request_count() == 0
        assert router.ledger.spent_cost == 0.0

    # ── Degradation ───────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_degraded_response_when_all_fail(self):
        router = ProviderRouter(
            [Provider(id="down", client=_failing_client())],
            RouterPolicy(max_attempts_per_provider=1, degraded_response="Service busy, try later."),
        )
        response = await router.complete(_request())
        assert response.message.content == "Service busy, try later."
        assert response.message.id.startswith("degraded-")
        assert response.message.tool_calls == []

    # ── Routing client ────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_route_returns_streaming_facade(self):
        router = ProviderRouter([Provider(id="p", client=_client("routed"))])
        client = router.route(_request(), {"model_name": "m"})
        assert isinstance(client, RoutingClient)

        chunks = [chunk async for chunk in client.stream(_request())]
        assert len(chunks) == 1 and isinstance(chunks[0], FinalChunk)

    @pytest.mark.asyncio
    async def test_routing_client_satisfies_stream_protocol(self):
        router = ProviderRouter([Provider(id="p", client=_client("routed"))])
        response = await consume_stream(router.route(_request()).stream(_request()))
        assert response.message.content == "routed"

    def test_routing_summary(self):
        router = ProviderRouter(
            [Provider(id="p", client=_client(), max_requests_per_minute=10)],
            RouterPolicy(cost_ceiling_usd=2.0),
        )
        summary = router.get_routing_summary()
        assert summary["providers"][0]["id"] == "p"
        assert summary["global_requests_in_window"] == 0
        assert summary["cost_ceiling_usd"] == 2.0
