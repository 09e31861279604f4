"""Embedding gateway: text to vector through an OpenAI-compatible endpoint."""

from __future__ import annotations

import logging

import httpx

from backlog_cleaner.cleaner.retry import RetryPolicy, parse_retry_after
from backlog_cleaner.config import settings
from backlog_cleaner.errors import ProviderError
from backlog_cleaner.models import Issue

logger = logging.getLogger(__name__)


def issue_embedding_text(issue: Issue) -> str:
    """Text embedded for an issue: summary line, then the description."""
    return f"{issue.summary}\n{issue.description or ''}"


class EmbeddingGateway:
    """Produces one embedding per call. No caching; every call hits the provider."""

    def __init__(
        self,
        api_key: str = "",
        base_url: str = "",
        model: str = "",
        timeout_seconds: int = 0,
        retry_policy: RetryPolicy | None = None,
    ):
        self.api_key = api_key or settings.embedding_api_key
        self.base_url = (base_url or settings.embedding_base_url).rstrip("/")
        self.model = model or settings.embedding_model
        self.timeout_seconds = timeout_seconds or settings.embedding_timeout_seconds
        self.retry_policy = retry_policy or RetryPolicy()

    async def embed(self, text: str) -> list[float]:
        """Return the embedding for ``text``.

        Raises ValueError for blank input before any network call,
        ProviderError for non-retryable failures and RetryExhaustedError
        when transient failures outlast the retry policy.
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")
        return await self.retry_policy.call(self._request, text)

    async def embed_issue(self, issue: Issue) -> list[float]:
        return await self.embed(issue_embedding_text(issue))

    async def _request(self, text: str) -> list[float]:
        if not self.api_key:
            raise ProviderError("No API key provided for embedding provider.")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                resp = await client.post(
                    f"{self.base_url}/embeddings",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"model": self.model, "input": text},
                )
        except httpx.TimeoutException:
            raise ProviderError(f"Embedding request timed out after {self.timeout_seconds}s")
        except httpx.TransportError as e:
            raise ProviderError(f"Embedding request failed: {e}")

        if resp.status_code != 200:
            raise ProviderError(
                f"Embedding API returned {resp.status_code}: {resp.text[:500]}",
                status_code=resp.status_code,
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
            )

        try:
            vector = resp.json()["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"Unexpected embedding response structure: {e}")

        if not vector:
            raise ProviderError("Embedding API returned an empty vector")
        return [float(v) for v in vector]
