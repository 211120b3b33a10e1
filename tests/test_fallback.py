"""
Unit tests for provider fallback execution.

Tests ordering, exhaustion, health statistics and cancellation.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from zenith_credits.config.loader import ProviderConfig
from zenith_credits.core.errors import (
    AllProvidersFailedError,
    ErrorCategory,
    FallbackError,
    NoProvidersConfiguredError,
    categorize_error,
)
from zenith_credits.core.fallback import FallbackContext, ProviderFallbackExecutor


class StatusError(Exception):
    """Stand-in for an HTTP error carrying a status code."""

    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


def _operation(outcomes, calls=None):
    """Build an operation that raises or returns per provider."""
    async def operation(provider):
        if calls is not None:
            calls.append(provider)
        outcome = outcomes[provider]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
    return operation


class TestFallbackOrdering:
    """Test sequential provider selection."""

    @pytest.mark.asyncio
    async def test_first_provider_succeeds(self):
        """A healthy primary is the only attempt."""
        executor = ProviderFallbackExecutor(["a", "b"])
        calls = []
        result = await executor.execute_with_fallback(_operation({"a": 1, "b": 2}, calls))

        assert result.result == 1
        assert result.provider_used == "a"
        assert len(result.attempts) == 1
        assert result.attempts[0].succeeded is True
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_falls_through_to_third(self):
        """A and B fail, C serves; three attempts in order."""
        executor = ProviderFallbackExecutor(["A", "B", "C"])
        outcomes = {"A": RuntimeError("a down"), "B": RuntimeError("b down"), "C": "done"}
        result = await executor.execute_with_fallback(_operation(outcomes))

        assert result.result == "done"
        assert result.provider_used == "C"
        assert [(a.provider, a.succeeded) for a in result.attempts] == [
            ("A", False), ("B", False), ("C", True)
        ]
        assert str(result.attempts[0].error) == "a down"
        assert result.attempts[2].error is None

    @pytest.mark.asyncio
    async def test_context_provider_list(self):
        """google throws, openrouter answers ok."""
        executor = ProviderFallbackExecutor([])
        outcomes = {"google": RuntimeError("quota"), "openrouter": "ok"}
        result = await executor.execute_with_fallback(
            _operation(outcomes),
            FallbackContext(providers=["google", "openrouter"])
        )

        assert result.result == "ok"
        assert result.provider_used == "openrouter"
        assert len(result.attempts) == 2

    @pytest.mark.asyncio
    async def test_priority_orders_configs(self):
        """Configs are tried by ascending priority."""
        executor = ProviderFallbackExecutor([
            ProviderConfig(name="slow", priority=3),
            ProviderConfig(name="fast", priority=1),
        ])
        assert executor.provider_order == ["fast", "slow"]

    @pytest.mark.asyncio
    async def test_disabled_provider_skipped(self):
        """Disabled configs are never tried."""
        executor = ProviderFallbackExecutor([
            ProviderConfig(name="off", priority=1, enabled=False),
            ProviderConfig(name="on", priority=2),
        ])
        calls = []
        result = await executor.execute_with_fallback(_operation({"off": 0, "on": 1}, calls))
        assert result.provider_used == "on"
        assert calls == ["on"]

    @pytest.mark.asyncio
    async def test_preferred_provider_first(self):
        """The preferred provider jumps the queue."""
        executor = ProviderFallbackExecutor(["a", "b", "c"])
        calls = []
        await executor.execute_with_fallback(
            _operation({"a": 1, "b": 2, "c": 3}, calls),
            FallbackContext(preferred_provider="c")
        )
        assert calls == ["c"]

    @pytest.mark.asyncio
    async def test_unknown_preferred_provider_ignored(self):
        """A preferred provider outside the chain changes nothing."""
        executor = ProviderFallbackExecutor(["a"])
        result = await executor.execute_with_fallback(
            _operation({"a": 1}),
            FallbackContext(preferred_provider="zzz")
        )
        assert result.provider_used == "a"

    @pytest.mark.asyncio
    async def test_attempts_never_overlap(self):
        """Each attempt finishes before the next starts."""
        executor = ProviderFallbackExecutor(["a", "b", "c"])
        active = []
        peak = []

        async def operation(provider):
            active.append(provider)
            peak.append(len(active))
            await asyncio.sleep(0)
            active.remove(provider)
            if provider != "c":
                raise RuntimeError(provider)
            return provider

        await executor.execute_with_fallback(operation)
        assert max(peak) == 1

    def test_duplicate_provider_rejected(self):
        """Each provider appears once in the chain."""
        with pytest.raises(ValueError, match="Duplicate"):
            ProviderFallbackExecutor(["a", "a"])


class TestFallbackExhaustion:
    """Test terminal failures."""

    @pytest.mark.asyncio
    async def test_all_fail(self):
        """The aggregate error lists every provider failure."""
        executor = ProviderFallbackExecutor(["A", "B", "C"])
        outcomes = {p: RuntimeError(f"{p} broke") for p in "ABC"}

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await executor.execute_with_fallback(_operation(outcomes))

        err = exc_info.value
        assert [a.provider for a in err.attempts] == ["A", "B", "C"]
        assert not any(a.succeeded for a in err.attempts)
        assert [str(e) for e in err.errors] == ["A broke", "B broke", "C broke"]
        for p in "ABC":
            assert f"{p} broke" in str(err)

    @pytest.mark.asyncio
    async def test_no_providers(self):
        """An empty chain is distinguishable from an outage."""
        executor = ProviderFallbackExecutor([])
        with pytest.raises(NoProvidersConfiguredError):
            await executor.execute_with_fallback(_operation({}))

    @pytest.mark.asyncio
    async def test_all_disabled_is_no_providers(self):
        """A chain of disabled providers counts as unconfigured."""
        executor = ProviderFallbackExecutor([ProviderConfig(name="a", priority=1, enabled=False)])
        with pytest.raises(NoProvidersConfiguredError):
            await executor.execute_with_fallback(_operation({"a": 1}))

    def test_errors_share_base(self):
        """Both terminal errors are FallbackErrors."""
        assert issubclass(AllProvidersFailedError, FallbackError)
        assert issubclass(NoProvidersConfiguredError, FallbackError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """Cancelling the caller is not treated as a provider failure."""
        executor = ProviderFallbackExecutor(["a", "b"])
        calls = []

        async def operation(provider):
            calls.append(provider)
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await executor.execute_with_fallback(operation)
        assert calls == ["a"]


class TestProviderHealth:
    """Test health statistics."""

    @pytest.mark.asyncio
    async def test_auth_failure_disables_provider(self):
        """A 401 disables the provider for later calls."""
        executor = ProviderFallbackExecutor(["a", "b"])
        outcomes = {"a": StatusError("bad key", 401), "b": "ok"}
        await executor.execute_with_fallback(_operation(outcomes))

        assert executor.provider_order == ["b"]
        status = {s.name: s for s in executor.get_provider_status()}
        assert status["a"].enabled is False
        assert status["a"].health_score == 0

    @pytest.mark.asyncio
    async def test_enable_provider(self):
        """A disabled provider can be re-enabled at half health."""
        executor = ProviderFallbackExecutor(["a"])
        executor.disable_provider("a", "maintenance")
        executor.enable_provider("a")

        status = executor.get_provider_status()[0]
        assert status.enabled is True
        assert status.health_score == 50

    @pytest.mark.asyncio
    async def test_penalty_and_error_rate(self):
        """Rate limits cost 20 health and count as errors."""
        executor = ProviderFallbackExecutor(["a", "b"])
        outcomes = {"a": StatusError("slow down", 429), "b": "ok"}
        await executor.execute_with_fallback(_operation(outcomes))

        status = {s.name: s for s in executor.get_provider_status()}
        assert status["a"].health_score == 80
        assert status["a"].error_rate == 1.0
        assert status["a"].last_error is not None
        assert status["b"].error_rate == 0.0

    @pytest.mark.asyncio
    async def test_reset_stats(self):
        """Reset restores full health to enabled providers."""
        executor = ProviderFallbackExecutor(["a", "b"])
        await executor.execute_with_fallback(_operation({"a": TimeoutError(), "b": 1}))
        executor.reset_stats()

        for status in executor.get_provider_status():
            assert status.health_score == 100
            assert status.error_rate == 0.0
            assert status.last_error is None

    @pytest.mark.asyncio
    async def test_exhausted_provider_skipped(self):
        """A provider worn down to zero health is no longer attempted."""
        executor = ProviderFallbackExecutor(["a", "b"])
        outcomes = {"a": ConnectionError("reset"), "b": "ok"}
        for _ in range(4):
            await executor.execute_with_fallback(_operation(outcomes))

        status = {s.name: s for s in executor.get_provider_status()}
        assert status["a"].health_score == 0
        assert status["a"].enabled is True
        assert executor.provider_order == ["b"]

        calls = []
        result = await executor.execute_with_fallback(_operation(outcomes, calls))
        assert calls == ["b"]
        assert [a.provider for a in result.attempts] == ["b"]

        calls = []
        context = FallbackContext(providers=["a", "b"])
        await executor.execute_with_fallback(_operation(outcomes, calls), context)
        assert calls == ["b"]

    @pytest.mark.asyncio
    async def test_exhausted_provider_recovers_after_quiet_period(self):
        """Five quiet minutes bring a zero-health provider back at low health."""
        executor = ProviderFallbackExecutor(["a", "b"])
        outcomes = {"a": ConnectionError("reset"), "b": "ok"}
        for _ in range(4):
            await executor.execute_with_fallback(_operation(outcomes))
        last_error = executor.get_provider_status()[0].last_error

        assert executor.recover_providers(now=last_error + timedelta(minutes=1)) == []
        assert executor.recover_providers(now=last_error + timedelta(minutes=6)) == ["a"]

        assert executor.provider_order == ["a", "b"]
        assert executor.get_provider_status()[0].health_score == 10

    def test_auth_disabled_provider_does_not_recover(self):
        executor = ProviderFallbackExecutor(["a"])
        executor.disable_provider("a", "bad key")
        assert executor.recover_providers(now=datetime.now() + timedelta(hours=1)) == []
        assert executor.provider_order == []


class TestCategorizeError:
    """Test provider error classification."""

    @pytest.mark.parametrize("error, expected", [
        (StatusError("x", 429), ErrorCategory.RATE_LIMIT),
        (StatusError("x", 401), ErrorCategory.AUTH),
        (StatusError("x", 403), ErrorCategory.AUTH),
        (StatusError("x", 503), ErrorCategory.NETWORK),
        (TimeoutError(), ErrorCategory.TIMEOUT),
        (ConnectionError(), ErrorCategory.NETWORK),
        (RuntimeError("Rate limit exceeded"), ErrorCategory.RATE_LIMIT),
        (RuntimeError("request timed out"), ErrorCategory.TIMEOUT),
        (RuntimeError("Invalid API key"), ErrorCategory.AUTH),
        (RuntimeError("something odd"), ErrorCategory.UNKNOWN),
    ])
    def test_categories(self, error, expected):
        assert categorize_error(error) is expected
