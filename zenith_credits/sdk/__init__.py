"""
SDK for Zenith Credits.

Provides metered access to OpenAI-compatible providers.
"""

from .openai_client import InsufficientCreditsError, MeteredOpenAI, MeteredResponse

__all__ = ["InsufficientCreditsError", "MeteredOpenAI", "MeteredResponse"]
