"""Token ledger and cost estimation for agent sessions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

# USD per million tokens (input, output).
MODEL_PRICING: dict[str, tuple[float, float]] = {
    "opus": (15.0, 75.0),
    "sonnet": (3.0, 15.0),
    "haiku": (0.25, 1.25),
}
CACHE_READ_DISCOUNT = 0.1


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    return 0


@dataclass(slots=True)
class TokenUsage:
    """Running token counters for one session.

    ``input_tokens`` mirrors the agent's current context size and is
    replaced on every update; the other counters accumulate.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def apply(self, usage: dict[str, Any], *, drop_ratio: float = 0.5) -> bool:
        """Fold one usage report into the ledger.

        Returns True when the new input count fell below *drop_ratio* of
        the previous one, i.e. the agent compacted its context.
        """
        compacted = False
        if "input_tokens" in usage:
            new_input = _as_int(usage.get("input_tokens"))
            previous = self.input_tokens
            if previous > 0 and new_input < previous * drop_ratio:
                compacted = True
            self.input_tokens = new_input
        self.output_tokens += _as_int(usage.get("output_tokens"))
        self.cache_read_tokens += _as_int(usage.get("cache_read_input_tokens"))
        self.cache_creation_tokens += _as_int(usage.get("cache_creation_input_tokens"))
        return compacted

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
        }


def _pricing_key(model: str) -> str:
    lowered = (model or "").lower()
    if "opus" in lowered:
        return "opus"
    if "haiku" in lowered:
        return "haiku"
    return "sonnet"


def estimate_cost(usage: TokenUsage, model: str = "") -> float:
    """Approximate USD cost of *usage*; unknown models are priced as sonnet."""
    input_rate, output_rate = MODEL_PRICING[_pricing_key(model)]
    return (
        usage.input_tokens / 1_000_000 * input_rate
        + usage.output_tokens / 1_000_000 * output_rate
        + usage.cache_read_tokens / 1_000_000 * input_rate * CACHE_READ_DISCOUNT
    )
