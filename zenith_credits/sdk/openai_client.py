"""
Metered OpenAI client wrapper.

Runs chat completions through the provider fallback chain and charges the
caller's credits for the tokens used.
"""

import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from ..config.loader import ProviderConfig
from ..core.fallback import AttemptRecord, FallbackContext, ProviderFallbackExecutor
from ..core.ledger import ConsumeResult, CreditLedger

ClientFactory = Callable[[ProviderConfig], AsyncOpenAI]


class InsufficientCreditsError(Exception):
    """Raised before any provider is called when the user has no credits."""

    def __init__(self, user_id: str, balance: int):
        super().__init__(f"Insufficient credits for {user_id}: balance {balance}")
        self.user_id = user_id
        self.balance = balance


@dataclass(frozen=True)
class MeteredResponse:
    """Completion plus what it cost and who served it."""
    response: Any
    provider_used: str
    attempts: List[AttemptRecord]
    cost: int
    charge: Optional[ConsumeResult]


def default_client_factory(config: ProviderConfig) -> AsyncOpenAI:
    """Build an OpenAI-compatible client for a provider."""
    api_key = os.environ.get(config.api_key_env) if config.api_key_env else None
    return AsyncOpenAI(api_key=api_key, base_url=config.base_url)


class MeteredOpenAI:
    """OpenAI-compatible chat client with fallback and credit charging.

    Every provider in the chain must speak the OpenAI chat completions API.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        executor: ProviderFallbackExecutor,
        providers: Sequence[ProviderConfig],
        client_factory: Optional[ClientFactory] = None
    ):
        """Initialize metered client.

        Args:
            ledger: Ledger charged after each completion
            executor: Fallback chain the completions run through
            providers: Configs used to build one client per provider
            client_factory: Overrides how clients are built
        """
        self.ledger = ledger
        self.executor = executor
        self._configs: Dict[str, ProviderConfig] = {p.name: p for p in providers}
        self._client_factory = client_factory or default_client_factory
        self._clients: Dict[str, AsyncOpenAI] = {}

    def client_for(self, provider: str) -> AsyncOpenAI:
        """Return the cached client for ``provider``, building it on first use."""
        client = self._clients.get(provider)
        if client is None:
            config = self._configs.get(provider) or ProviderConfig(name=provider, priority=0)
            client = self._clients[provider] = self._client_factory(config)
        return client

    async def chat(
        self,
        user_id: str,
        model: str,
        messages: List[Dict[str, str]],
        **kwargs: Any
    ) -> MeteredResponse:
        """Create a chat completion and charge the user for it.

        The charge happens after the completion, so a debit larger than the
        remaining balance comes back as an unsuccessful ``charge`` rather
        than an exception.

        Args:
            user_id: Account to charge
            model: Model identifier, also used for pricing
            messages: Chat messages (required)
            **kwargs: Additional chat completion parameters

        Returns:
            MeteredResponse with the raw completion

        Raises:
            ValueError: If messages is empty or the response has no usage
            InsufficientCreditsError: If the balance is already zero
            AllProvidersFailedError: If no provider produced a completion
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        balance = self.ledger.get_balance(user_id)
        if balance <= 0:
            raise InsufficientCreditsError(user_id, balance)

        async def complete(provider: str):
            return await self.client_for(provider).chat.completions.create(
                model=model,
                messages=messages,
                **kwargs
            )

        outcome = await self.executor.execute_with_fallback(
            complete,
            FallbackContext(operation="chat", user_id=user_id)
        )

        response = outcome.result
        usage = response.usage
        if not usage:
            raise ValueError("Completion response missing usage information")

        cost = self.ledger.calculate_usage_cost(
            model, usage.prompt_tokens, usage.completion_tokens
        )
        charge = None
        if cost > 0:
            charge = await self.ledger.consume_credits(
                user_id,
                cost,
                f"Chat completion ({model})",
                {
                    "model": model,
                    "provider": outcome.provider_used,
                    "input_tokens": usage.prompt_tokens,
                    "output_tokens": usage.completion_tokens,
                    "request_id": getattr(response, "id", None),
                }
            )

        return MeteredResponse(
            response=response,
            provider_used=outcome.provider_used,
            attempts=outcome.attempts,
            cost=cost,
            charge=charge
        )
