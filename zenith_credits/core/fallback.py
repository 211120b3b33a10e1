"""
Provider fallback execution.

Runs an operation against a prioritized chain of upstream AI providers and
stops at the first one that succeeds.

Execution Order:
1. Preferred provider from the call context, if any and enabled
2. Remaining enabled providers by ascending priority (ties keep config order)

Providers whose health score has dropped to zero are skipped until they
have been quiet for five minutes, after which they get a small score back.

Each provider is tried at most once per call and attempts never overlap. The
provider name is passed into the operation; nothing global is switched
between attempts.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import (
    Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar, Union
)

from zenith_credits.config.loader import ProviderConfig

from .errors import (
    AllProvidersFailedError,
    ErrorCategory,
    NoProvidersConfiguredError,
    categorize_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_HEALTH = 100
SUCCESS_BONUS = 5
RE_ENABLED_HEALTH = 50
RECOVERY_HEALTH = 10
RECOVERY_QUIET_PERIOD = timedelta(minutes=5)

# Health penalty per failure, by category
PENALTIES: Dict[ErrorCategory, int] = {
    ErrorCategory.RATE_LIMIT: 20,
    ErrorCategory.TIMEOUT: 15,
    ErrorCategory.AUTH: 100,
    ErrorCategory.NETWORK: 25,
    ErrorCategory.UNKNOWN: 10,
}


@dataclass(frozen=True)
class AttemptRecord:
    """One provider attempt within a single fallback call."""
    provider: str
    succeeded: bool
    duration: float
    error: Optional[BaseException] = None
    category: Optional[ErrorCategory] = None


@dataclass(frozen=True)
class FallbackResult(Generic[T]):
    """Successful outcome: the result and the provider that produced it."""
    result: T
    provider_used: str
    attempts: List[AttemptRecord]


@dataclass(frozen=True)
class FallbackContext:
    """Per-call options.

    Attributes:
        operation: Label used in log lines
        user_id: Caller identity, for log lines only
        preferred_provider: Provider to try first if it is enabled
        providers: Explicit provider order for this call, replacing the
            configured chain
    """
    operation: Optional[str] = None
    user_id: Optional[str] = None
    preferred_provider: Optional[str] = None
    providers: Optional[Sequence[str]] = None


@dataclass
class ProviderHealth:
    """Running statistics for one provider."""
    config: ProviderConfig
    enabled: bool
    health_score: int = MAX_HEALTH
    success_count: int = 0
    error_count: int = 0
    last_error: Optional[datetime] = None


@dataclass(frozen=True)
class ProviderStatus:
    """Read-only view of a provider's health."""
    name: str
    enabled: bool
    health_score: int
    error_rate: float
    last_error: Optional[datetime] = None


class ProviderFallbackExecutor:
    """Breadth-first fallback across a static provider chain."""

    def __init__(self, providers: Sequence[Union[str, ProviderConfig]]):
        """Initialize with the provider chain.

        Args:
            providers: Provider names or configs. Plain names get priorities
                in list order.
        """
        self._providers: Dict[str, ProviderHealth] = {}
        for index, provider in enumerate(providers):
            config = provider
            if isinstance(provider, str):
                config = ProviderConfig(name=provider, priority=index + 1)
            if config.name in self._providers:
                raise ValueError(f"Duplicate provider: {config.name}")
            self._providers[config.name] = ProviderHealth(config=config, enabled=config.enabled)
            if not config.enabled:
                logger.info("Skipping disabled provider %s", config.name)

    @property
    def provider_order(self) -> List[str]:
        """Enabled, healthy providers in the order they will be tried."""
        self.recover_providers()
        ranked = sorted(
            (h for h in self._providers.values() if _eligible(h)),
            key=lambda h: h.config.priority
        )
        return [h.config.name for h in ranked]

    async def execute_with_fallback(
        self,
        operation: Callable[[str], Awaitable[T]],
        context: Optional[FallbackContext] = None
    ) -> FallbackResult[T]:
        """Run ``operation`` against each provider until one succeeds.

        Args:
            operation: Coroutine function taking the provider name
            context: Optional per-call options

        Returns:
            FallbackResult with the first successful result

        Raises:
            NoProvidersConfiguredError: If there is no provider to try
            AllProvidersFailedError: If every provider raised
        """
        context = context or FallbackContext()
        order = self._resolve_order(context)
        if not order:
            raise NoProvidersConfiguredError()

        attempts: List[AttemptRecord] = []
        for provider in order:
            logger.info(
                "Trying provider %s for %s", provider, context.operation or "operation"
            )
            started = time.monotonic()
            try:
                result = await operation(provider)
            except Exception as exc:
                category = categorize_error(exc)
                attempts.append(AttemptRecord(
                    provider=provider,
                    succeeded=False,
                    duration=time.monotonic() - started,
                    error=exc,
                    category=category
                ))
                logger.warning(
                    "Provider %s failed (%s): %s", provider, category.value, exc
                )
                self._record_failure(provider, category)
                continue

            duration = time.monotonic() - started
            attempts.append(AttemptRecord(provider=provider, succeeded=True, duration=duration))
            self._record_success(provider)
            logger.info(
                "Provider %s succeeded in %.3fs after %d attempt(s)",
                provider, duration, len(attempts)
            )
            return FallbackResult(result=result, provider_used=provider, attempts=attempts)

        raise AllProvidersFailedError(attempts)

    def disable_provider(self, name: str, reason: str) -> None:
        """Stop routing calls to ``name`` until it is re-enabled.

        Unknown names are ignored.
        """
        health = self._providers.get(name)
        if health is None:
            return
        health.enabled = False
        health.health_score = 0
        logger.warning("Provider %s disabled: %s", name, reason)

    def enable_provider(self, name: str) -> None:
        """Re-enable ``name`` at partial health with its error count cleared."""
        health = self._providers.get(name)
        if health is None:
            return
        health.enabled = True
        health.health_score = RE_ENABLED_HEALTH
        health.error_count = 0
        logger.info("Provider %s re-enabled", name)

    def get_provider_status(self) -> List[ProviderStatus]:
        """Snapshot of every configured provider, in configuration order."""
        statuses = []
        for name, health in self._providers.items():
            calls = health.success_count + health.error_count
            statuses.append(ProviderStatus(
                name=name,
                enabled=health.enabled,
                health_score=health.health_score,
                error_rate=health.error_count / calls if calls else 0.0,
                last_error=health.last_error
            ))
        return statuses

    def reset_stats(self) -> None:
        """Zero all counters. Enabled providers return to full health."""
        for health in self._providers.values():
            health.success_count = 0
            health.error_count = 0
            health.last_error = None
            health.health_score = MAX_HEALTH if health.enabled else 0
        logger.info("Provider statistics reset")

    def recover_providers(self, now: Optional[datetime] = None) -> List[str]:
        """Give exhausted providers a second chance after a quiet period.

        An enabled provider at zero health whose last error is older than
        RECOVERY_QUIET_PERIOD is raised to RECOVERY_HEALTH.

        Returns:
            Names of the providers that recovered
        """
        now = now or datetime.now()
        recovered = []
        for name, health in self._providers.items():
            if not health.enabled or health.health_score > 0:
                continue
            if health.last_error is not None and now - health.last_error < RECOVERY_QUIET_PERIOD:
                continue
            health.health_score = RECOVERY_HEALTH
            recovered.append(name)
            logger.info("Provider %s recovering at health %d", name, RECOVERY_HEALTH)
        return recovered

    def _resolve_order(self, context: FallbackContext) -> List[str]:
        if context.providers is not None:
            self.recover_providers()
            order = []
            for name in context.providers:
                health = self._providers.get(name)
                if name in order or (health is not None and not _eligible(health)):
                    continue
                order.append(name)
        else:
            order = self.provider_order

        preferred = context.preferred_provider
        if preferred and preferred in order:
            order = [preferred] + [name for name in order if name != preferred]
        return order

    def _record_success(self, name: str) -> None:
        health = self._providers.get(name)
        if health is None:  # named only in a call context
            return
        health.success_count += 1
        health.health_score = min(MAX_HEALTH, health.health_score + SUCCESS_BONUS)
        if health.error_count > 0:
            health.error_count -= 1

    def _record_failure(self, name: str, category: ErrorCategory) -> None:
        health = self._providers.get(name)
        if health is None:
            return
        health.error_count += 1
        health.last_error = datetime.now()
        health.health_score = max(0, health.health_score - PENALTIES[category])
        if category is ErrorCategory.AUTH:
            self.disable_provider(name, "authentication error")


def _eligible(health: ProviderHealth) -> bool:
    return health.enabled and health.health_score > 0
