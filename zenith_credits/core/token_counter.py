"""
Token counts reported by an AI provider for one completed generation.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Input and output token counts for cost calculation."""
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
