"""
LLM access for the scan pipeline.

- provider.py: LLMProvider contract + the OpenAI-compatible gateway client
- policy.py: how many platform calls run at once, and the delay between them
- costs.py: token usage -> estimated cost, recorded per run
"""

from .costs import CostTracker, estimate_cost_cents
from .policy import PlatformCallPolicy
from .provider import Completion, GatewayProvider, LLMProvider, PLATFORM_MODELS, extract_json_object

__all__ = [
    "Completion",
    "CostTracker",
    "GatewayProvider",
    "LLMProvider",
    "PLATFORM_MODELS",
    "PlatformCallPolicy",
    "estimate_cost_cents",
    "extract_json_object",
]
