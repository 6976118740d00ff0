"""Summary: AI provider abstraction and implementations.

Importance: Centralizes LLM access for portability and auditability.
Alternatives: Call provider SDKs directly in each service.
"""

from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from flowhub.config import AppConfig
from flowhub.errors import AiProviderError, is_retryable_message


RETRYABLE_STATUSES = {429, 503}


class AiProvider(ABC):
    """Summary: Abstract interface for AI text generation.

    Importance: Allows switching between local and cloud LLMs without refactors.
    Alternatives: Use a single vendor SDK and accept lock-in risk.
    """

    name = "ai"
    model = "unknown"

    @abstractmethod
    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Generate a response for a prompt.

        Importance: Standardizes AI outputs for downstream services.
        Alternatives: Return provider-specific response objects directly.
        """


class MockAiProvider(AiProvider):
    """Summary: Deterministic AI provider for local runs.

    Importance: Enables offline workflows; its echo output is never valid JSON,
    so classification always takes the deterministic fallback path.
    Alternatives: Use a small local LLM for all development tasks.
    """

    name = "mock"
    model = "mock"

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        started = time.time()
        response = f"[mock:{purpose}] {prompt[:240]}"
        latency_ms = int((time.time() - started) * 1000)
        return response, latency_ms


class OllamaProvider(AiProvider):
    """Summary: AI provider that targets a local Ollama server.

    Importance: Supports privacy-sensitive workflows on local hardware.
    Alternatives: Use llama.cpp directly with a Python binding.
    """

    name = "ollama"

    def __init__(self, base_url: str, model: str) -> None:
        self._base_url = base_url.rstrip("/")
        self.model = model

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        """Summary: Generate JSON text using the Ollama HTTP API.

        Importance: Enables local inference for item classification.
        Alternatives: Use Ollama's CLI and parse its output.
        """

        payload = {"model": self.model, "prompt": prompt, "stream": False, "format": "json"}
        started = time.time()
        raw = _post_json(f"{self._base_url}/api/generate", payload, {}, timeout=60)
        latency_ms = int((time.time() - started) * 1000)
        return raw.get("response", ""), latency_ms


class OpenAiProvider(AiProvider):
    """Summary: AI provider using OpenAI's chat completion API.

    Importance: Enables higher-quality classification when configured.
    Alternatives: Use other cloud providers or a local model.
    """

    name = "openai"

    def __init__(self, api_key: str, model: str) -> None:
        self._api_key = api_key
        self.model = model

    def generate_text(self, prompt: str, purpose: str) -> tuple[str, int]:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": f"You are FlowHub. Task: {purpose}."},
                {"role": "user", "content": prompt},
            ],
            "temperature": 0.2,
            "response_format": {"type": "json_object"},
        }
        started = time.time()
        raw = _post_json(
            "https://api.openai.com/v1/chat/completions",
            payload,
            {"Authorization": f"Bearer {self._api_key}"},
            timeout=60,
        )
        latency_ms = int((time.time() - started) * 1000)
        try:
            content = raw["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AiProviderError("OpenAI response missing message content") from exc
        return content or "", latency_ms


def _post_json(
    url: str, payload: dict[str, Any], headers: dict[str, str], timeout: int
) -> dict[str, Any]:
    """Summary: POST a JSON body and map HTTP failures to AiProviderError.

    Importance: Marks overload and rate-limit failures as retryable.
    Alternatives: Use a third-party HTTP client with retry adapters.
    """

    request = urllib.request.Request(
        url=url,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="ignore")
        message = f"AI request failed ({exc.code}): {body or exc.reason}"
        retryable = exc.code in RETRYABLE_STATUSES or is_retryable_message(message)
        raise AiProviderError(message, status=exc.code, retryable=retryable) from exc
    except urllib.error.URLError as exc:
        message = f"AI backend unreachable: {exc.reason}"
        raise AiProviderError(message, retryable=is_retryable_message(message)) from exc


@dataclass(frozen=True)
class AiProviderFactory:
    """Summary: Factory for selecting AI providers from configuration.

    Importance: Keeps provider selection logic centralized.
    Alternatives: Wire providers manually at the application entrypoint.
    """

    config: AppConfig

    def build(self) -> AiProvider:
        if self.config.ai_provider == "ollama":
            return OllamaProvider(self.config.ollama_url, self.config.ollama_model)
        if self.config.ai_provider == "openai":
            if not self.config.openai_api_key:
                raise ValueError("OPENAI_API_KEY is required for openai provider")
            return OpenAiProvider(self.config.openai_api_key, self.config.openai_model)
        return MockAiProvider()


def estimate_tokens(text: str) -> int:
    """Summary: Estimate tokens from text length.

    Importance: Provides a rough metric for AI usage auditing.
    Alternatives: Use provider token counters or tiktoken.
    """

    return max(1, len(text) // 4)
