from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import OpenAI, OpenAIError

from ..errors import ProviderError

logger = logging.getLogger(__name__)

# Gateway model ids per platform.
PLATFORM_MODELS: Dict[str, str] = {
    "chatgpt": "openai/gpt-4o",
    "claude": "anthropic/claude-sonnet-4-20250514",
    "gemini": "google/gemini-2.0-flash",
    "perplexity": "perplexity/sonar-pro",
}

DEFAULT_GATEWAY_BASE_URL = "https://ai-gateway.vercel.sh/v1"


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0


class LLMProvider(ABC):
    """
    Multi-platform LLM contract.

    Higher-level modules (query research, brand awareness, visibility queries)
    depend on this interface instead of any vendor SDK. Implementations must
    surface every upstream failure (timeout, 4xx, 5xx, empty answer) as
    ProviderError so callers can absorb it per platform.
    """

    @abstractmethod
    def complete(
        self, platform: str, prompt: str, *, max_tokens: int = 800, system: Optional[str] = None
    ) -> Completion:
        raise NotImplementedError


def _build_client() -> OpenAI:
    """
    Lazily construct the OpenAI client pointed at the AI gateway.

    Avoids crashing at import-time when the key is missing.
    """
    api_key = os.getenv("AI_GATEWAY_API_KEY") or os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise ProviderError("gateway", "AI_GATEWAY_API_KEY is not set")
    base_url = os.getenv("AI_GATEWAY_BASE_URL", DEFAULT_GATEWAY_BASE_URL)
    timeout_s = float(os.getenv("AI_GATEWAY_TIMEOUT_S", "60"))
    return OpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=1)


class GatewayProvider(LLMProvider):
    """
    Talks to every platform through one OpenAI-compatible gateway; the
    platform only selects the model id.
    """

    def __init__(self, client: Optional[OpenAI] = None, models: Optional[Dict[str, str]] = None) -> None:
        self._client = client
        self.models = dict(models or PLATFORM_MODELS)

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _build_client()
        return self._client

    def model_for(self, platform: str) -> str:
        model = self.models.get(platform)
        if not model:
            raise ProviderError(platform, "unknown platform")
        return model

    def complete(
        self, platform: str, prompt: str, *, max_tokens: int = 800, system: Optional[str] = None
    ) -> Completion:
        model = self.model_for(platform)
        messages = [{"role": "system", "content": system}] if system else []
        messages.append({"role": "user", "content": prompt})
        start = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            raise ProviderError(platform, f"{type(e).__name__}: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        if not text.strip():
            raise ProviderError(platform, "empty response")

        usage = response.usage
        return Completion(
            text=text,
            model=model,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            latency_ms=latency_ms,
        )


def extract_json_object(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of model text.

    Models often wrap the object in prose or code fences, so fall back to the
    outermost {...} span. Returns {} when nothing parses.
    """
    text = (text or "").strip()
    if not text:
        return {}
    try:
        obj = json.loads(text)
        return obj if isinstance(obj, dict) else {}
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        try:
            obj = json.loads(text[start : end + 1])
            return obj if isinstance(obj, dict) else {}
        except json.JSONDecodeError:
            pass
    return {}
