"""Token usage accounting shared by every OpenAI-backed collaborator."""
from __future__ import annotations

from typing import Protocol, runtime_checkable

# --- Model pricing table  (input_$/M, output_$/M) -----------------------------

MODEL_PRICING: dict[str, tuple[float, float]] = {
    "text-embedding-3-small":    (0.020,  0.000),
    "text-embedding-3-large":    (0.130,  0.000),
    "gpt-4o-mini":               (0.150,  0.600),
    "gpt-4o":                    (2.500, 10.000),
    "gpt-4":                     (30.00, 60.000),
    "claude-haiku-4-5-20251001": (0.800,  4.000),
    "claude-sonnet-4-6":         (3.000, 15.000),
}
_DEFAULT_RATES = MODEL_PRICING["gpt-4o-mini"]


def cost_usd(model: str, prompt_tokens: int, completion_tokens: int = 0) -> float:
    """Compute estimated cost in USD for a given model and token counts."""
    rates = MODEL_PRICING.get(model, _DEFAULT_RATES)
    return (prompt_tokens * rates[0] + completion_tokens * rates[1]) / 1_000_000


@runtime_checkable
class CostSink(Protocol):
    """Write-only usage counter; the pipeline never reads it back."""

    def add(self, amount: int) -> None: ...


class CostTracker:
    """Counts tokens for one CLI session or API request."""

    def __init__(self) -> None:
        self._token_count = 0

    def add(self, amount: int) -> None:
        self._token_count += int(amount)

    @property
    def token_count(self) -> int:
        return self._token_count

    def estimated_cost_usd(self, model: str) -> float:
        # Usage is not split by direction here, so every token is priced as input
        return cost_usd(model, self._token_count)

    def reset(self) -> None:
        self._token_count = 0


def record_usage(cost_sink: CostSink | None, usage) -> int:
    """Add an OpenAI `usage` object's total_tokens to the sink; returns the amount."""
    if usage is None:
        return 0
    tokens = getattr(usage, "total_tokens", 0) or 0
    if cost_sink is not None and tokens:
        cost_sink.add(tokens)
    return tokens
