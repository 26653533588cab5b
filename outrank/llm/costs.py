from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple, TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from .provider import Completion

if TYPE_CHECKING:
    from ..repository import ScanRepository

logger = logging.getLogger(__name__)

# Dollars per 1K tokens (input, output).
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o": (0.0025, 0.01),
    "gpt-4o-mini": (0.00015, 0.0006),
    "claude-sonnet-4-20250514": (0.003, 0.015),
    "claude-3-haiku-20240307": (0.00025, 0.00125),
    "gemini-2.0-flash": (0.0001, 0.0004),
    "gemini-2.5-flash": (0.00015, 0.0006),
    "sonar-pro": (0.003, 0.015),
    "sonar": (0.001, 0.001),
}


def estimate_cost_cents(model: str, input_tokens: int, output_tokens: int) -> float:
    """Gateway ids ("openai/gpt-4o") and bare ids ("gpt-4o") both resolve."""
    key = model.split("/", 1)[-1]
    pricing = MODEL_PRICING.get(key)
    if pricing is None:
        logger.warning("No pricing for model %r; recording zero cost", model)
        return 0.0
    per_1k_in, per_1k_out = pricing
    return (input_tokens / 1000) * per_1k_in * 100 + (output_tokens / 1000) * per_1k_out * 100


class CostTracker:
    """Records token usage per run. Never fails the caller."""

    def __init__(self, repo: Optional["ScanRepository"] = None) -> None:
        self.repo = repo

    def track(self, run_id: str, step: str, completion: Completion) -> float:
        cents = estimate_cost_cents(completion.model, completion.input_tokens, completion.output_tokens)
        if self.repo is None:
            return cents
        try:
            self.repo.record_api_cost(
                run_id=run_id,
                step=step,
                model=completion.model,
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                cost_cents=cents,
            )
        except SQLAlchemyError:
            logger.exception("Failed to record api cost for run %s step %s", run_id, step)
        return cents
