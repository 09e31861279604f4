"""Multi-provider chat transport for duplicate-resolution suggestions.

Supports: OpenRouter, OpenAI, Anthropic, Google Gemini, Generic OpenAI-compatible.
Auto-detects provider from API key prefix when llm_provider is set to "auto".
Every call returns the raw response text; parsing is left to the recommender.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from backlog_cleaner.cleaner.retry import RetryPolicy, parse_retry_after
from backlog_cleaner.config import Settings, settings
from backlog_cleaner.errors import ConfigError, ProviderError

logger = logging.getLogger(__name__)


def detect_provider_from_key(api_key: str) -> str | None:
    """Auto-detect LLM provider from API key prefix.

    Returns provider name or None if unrecognized.
    """
    if not api_key:
        return None
    if api_key.startswith("sk-ant-"):
        return "anthropic"
    if api_key.startswith("sk-or-"):
        return "openrouter"
    if api_key.startswith("sk-"):
        return "openai"
    if api_key.startswith("AIza"):
        return "gemini"
    return None


def resolve_provider_and_key(config: Any) -> tuple[str, str]:
    """Resolve effective (provider, api_key) from Settings.

    Logic:
    - Explicit provider (non-"auto") → use that + matching key
    - Auto mode → detect from llm_api_key, then check provider-specific keys
    - Nothing configured → ConfigError
    """
    provider = config.llm_provider

    if provider != "auto":
        return (provider, _get_key_for_provider(provider, config))

    if config.llm_api_key:
        detected = detect_provider_from_key(config.llm_api_key)
        if detected:
            return (detected, config.llm_api_key)

    # Provider-specific keys in priority order
    if config.openrouter_api_key:
        return ("openrouter", config.openrouter_api_key)
    if config.anthropic_api_key:
        return ("anthropic", config.anthropic_api_key)
    if config.openai_api_key:
        return ("openai", config.openai_api_key)
    if config.gemini_api_key:
        return ("gemini", config.gemini_api_key)
    if config.generic_api_key and config.generic_base_url:
        return ("generic", config.generic_api_key)

    raise ConfigError(
        "No classification provider configured. Set BACKLOG_LLM_API_KEY "
        "or a provider-specific key."
    )


def _get_key_for_provider(provider: str, config: Any) -> str:
    key_map = {
        "openrouter": lambda s: s.llm_api_key or s.openrouter_api_key,
        "openai": lambda s: s.llm_api_key or s.openai_api_key,
        "anthropic": lambda s: s.llm_api_key or s.anthropic_api_key,
        "gemini": lambda s: s.llm_api_key or s.gemini_api_key,
        "generic": lambda s: s.llm_api_key or s.generic_api_key,
    }
    getter = key_map.get(provider)
    if getter is None:
        raise ConfigError(f"Unknown classification provider: {provider}")
    return getter(config)


def _raise_for_status(resp: httpx.Response, label: str) -> None:
    if resp.status_code != 200:
        raise ProviderError(
            f"{label} returned {resp.status_code}: {resp.text[:500]}",
            status_code=resp.status_code,
            retry_after=parse_retry_after(resp.headers.get("retry-after")),
        )


async def call_openai_compatible(
    prompt: str,
    system_prompt: str,
    api_key: str = "",
    model: str = "",
    base_url: str = "",
    timeout_seconds: int = 60,
    extra_headers: dict[str, str] | None = None,
) -> str:
    """Call an OpenAI-compatible chat completions endpoint.

    Used for OpenRouter, OpenAI direct, and generic providers.
    Returns the message content text.

    Raises ProviderError on failure.
    """
    if not api_key:
        raise ProviderError("No API key provided for OpenAI-compatible provider.")
    if not base_url:
        raise ProviderError("No base URL provided for OpenAI-compatible provider.")

    payload: dict[str, Any] = {
        "model": model,
        "temperature": 0,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ],
    }

    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if extra_headers:
        headers.update(extra_headers)

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{base_url.rstrip('/')}/chat/completions",
                headers=headers,
                json=payload,
            )

        _raise_for_status(resp, "API")
        body = resp.json()
        return body["choices"][0]["message"]["content"] or ""

    except httpx.TimeoutException:
        raise ProviderError(f"Request timed out after {timeout_seconds}s")
    except httpx.TransportError as e:
        raise ProviderError(f"Request failed: {e}")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ProviderError(f"Unexpected response structure: {e}")


async def call_anthropic(
    prompt: str,
    system_prompt: str,
    api_key: str = "",
    model: str = "claude-sonnet-4-20250514",
    base_url: str = "https://api.anthropic.com",
    timeout_seconds: int = 60,
) -> str:
    """Call the Anthropic Messages API and return the first text block.

    Raises ProviderError on failure.
    """
    if not api_key:
        raise ProviderError("No API key provided for Anthropic provider.")

    payload = {
        "model": model,
        "max_tokens": 1024,
        "temperature": 0,
        "system": system_prompt,
        "messages": [
            {"role": "user", "content": prompt},
        ],
    }

    headers = {
        "x-api-key": api_key,
        "anthropic-version": "2023-06-01",
        "Content-Type": "application/json",
    }

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{base_url.rstrip('/')}/v1/messages",
                headers=headers,
                json=payload,
            )

        _raise_for_status(resp, "Anthropic API")
        body = resp.json()
        # Anthropic returns content as a list of blocks
        return body["content"][0]["text"]

    except httpx.TimeoutException:
        raise ProviderError(f"Anthropic request timed out after {timeout_seconds}s")
    except httpx.TransportError as e:
        raise ProviderError(f"Anthropic request failed: {e}")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ProviderError(f"Unexpected Anthropic response structure: {e}")


async def call_gemini(
    prompt: str,
    system_prompt: str,
    api_key: str = "",
    model: str = "gemini-2.0-flash",
    base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    timeout_seconds: int = 60,
) -> str:
    """Call the Google Gemini generateContent API.

    JSON output is requested via responseMimeType.

    Raises ProviderError on failure.
    """
    if not api_key:
        raise ProviderError("No API key provided for Gemini provider.")

    payload = {
        "system_instruction": {
            "parts": [{"text": system_prompt}],
        },
        "contents": [
            {"parts": [{"text": prompt}]},
        ],
        "generationConfig": {
            "temperature": 0,
            "responseMimeType": "application/json",
        },
    }

    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{base_url.rstrip('/')}/models/{model}:generateContent",
                params={"key": api_key},
                headers={"Content-Type": "application/json"},
                json=payload,
            )

        _raise_for_status(resp, "Gemini API")
        body = resp.json()
        return body["candidates"][0]["content"]["parts"][0]["text"]

    except httpx.TimeoutException:
        raise ProviderError(f"Gemini request timed out after {timeout_seconds}s")
    except httpx.TransportError as e:
        raise ProviderError(f"Gemini request failed: {e}")
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise ProviderError(f"Unexpected Gemini response structure: {e}")


class ClassificationClient:
    """Sends one prompt to the configured chat provider, with retries."""

    def __init__(
        self,
        config: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.config = config or settings
        self.provider, self.api_key = resolve_provider_and_key(self.config)
        self.retry_policy = retry_policy or RetryPolicy()

    async def complete(self, prompt: str, system_prompt: str = "") -> str:
        logger.info("Requesting classification", extra={"provider": self.provider})
        return await self.retry_policy.call(self._dispatch, prompt, system_prompt)

    async def _dispatch(self, prompt: str, system_prompt: str) -> str:
        c = self.config
        timeout = c.llm_timeout_seconds

        if self.provider == "anthropic":
            return await call_anthropic(
                prompt, system_prompt,
                api_key=self.api_key, model=c.anthropic_model,
                base_url=c.anthropic_base_url, timeout_seconds=timeout,
            )
        if self.provider == "gemini":
            return await call_gemini(
                prompt, system_prompt,
                api_key=self.api_key, model=c.gemini_model,
                base_url=c.gemini_base_url, timeout_seconds=timeout,
            )
        if self.provider == "openrouter":
            return await call_openai_compatible(
                prompt, system_prompt,
                api_key=self.api_key, model=c.openrouter_model,
                base_url=c.openrouter_base_url, timeout_seconds=timeout,
            )
        if self.provider == "openai":
            return await call_openai_compatible(
                prompt, system_prompt,
                api_key=self.api_key, model=c.openai_model,
                base_url=c.openai_base_url, timeout_seconds=timeout,
            )
        if self.provider == "generic":
            return await call_openai_compatible(
                prompt, system_prompt,
                api_key=self.api_key, model=c.generic_model,
                base_url=c.generic_base_url, timeout_seconds=timeout,
            )
        raise ConfigError(f"Unknown classification provider: {self.provider}")
