from typing import Dict, Optional

# Cents per million tokens, matched by model family substring
MODEL_PRICING: Dict[str, Dict[str, int]] = {
    "claude-opus-4": {"input": 1500, "output": 7500},
    "claude-sonnet-4": {"input": 300, "output": 1500},
    "claude-haiku-4-5": {"input": 80, "output": 400},
    "claude-3-5-haiku": {"input": 80, "output": 400},
    "claude-3-haiku": {"input": 25, "output": 125},
}


def estimate_cost_cents(model: Optional[str], input_tokens: int, output_tokens: int) -> Optional[float]:
    if not model:
        return None
    tier = next((key for key in MODEL_PRICING if key in model), None)
    if tier is None:
        return None
    pricing = MODEL_PRICING[tier]
    return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000


def estimate_cost_usd(model: Optional[str], input_tokens: int, output_tokens: int) -> Optional[float]:
    """Estimated spend in dollars, or None for unknown models"""
    cents = estimate_cost_cents(model, input_tokens, output_tokens)
    return None if cents is None else cents / 100
