"""Pinecone-backed vector index keyed by issue key."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from backlog_cleaner.config import Settings, settings
from backlog_cleaner.errors import ConfigError, VectorIndexError
from backlog_cleaner.models import EmbeddingVector, IndexMatch, VectorMetadata

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read an attribute from an SDK object or a key from a plain dict."""
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _parse_metadata(raw: Any) -> VectorMetadata | None:
    if not raw:
        return None
    data = dict(raw)
    if "issueKey" not in data:
        return None
    return VectorMetadata.model_validate(data)


def open_pinecone_index(config: Settings | None = None) -> Any:
    """Connect to the configured Pinecone index (by host when set, else by name)."""
    config = config or settings
    if not config.pinecone_api_key:
        raise ConfigError("Pinecone is not configured. Set BACKLOG_PINECONE_API_KEY.")

    from pinecone import Pinecone

    pc = Pinecone(api_key=config.pinecone_api_key)
    if config.pinecone_index_host:
        return pc.Index(host=config.pinecone_index_host)
    return pc.Index(config.pinecone_index_name)


class VectorIndex:
    """Async adapter over a Pinecone index.

    The SDK is blocking, so every call runs in a worker thread. The index
    is derived data: misses and deletes of absent ids are not errors.
    """

    def __init__(self, index: Any, namespace: str = ""):
        self._index = index
        self.namespace = namespace or settings.pinecone_namespace

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> VectorIndex:
        config = config or settings
        return cls(open_pinecone_index(config), namespace=config.pinecone_namespace)

    def _ns(self) -> dict[str, str]:
        return {"namespace": self.namespace} if self.namespace else {}

    async def upsert(self, vector: EmbeddingVector) -> None:
        await self.upsert_many([vector], batch_size=1)

    async def upsert_many(self, vectors: list[EmbeddingVector], batch_size: int = 0) -> int:
        """Write vectors in batches. Returns the number written.

        A failing batch raises VectorIndexError carrying its batch index;
        earlier batches stay written.
        """
        batch_size = batch_size or settings.upsert_batch_size
        written = 0
        for batch_index, start in enumerate(range(0, len(vectors), batch_size)):
            batch = vectors[start:start + batch_size]
            payload = [
                {
                    "id": v.id,
                    "values": v.values,
                    "metadata": v.metadata.to_index_payload() if v.metadata else {},
                }
                for v in batch
            ]
            try:
                await asyncio.to_thread(self._index.upsert, vectors=payload, **self._ns())
            except Exception as e:
                raise VectorIndexError(
                    f"Upsert of batch {batch_index} ({len(batch)} vectors) failed: {e}",
                    batch_index=batch_index,
                ) from e
            written += len(batch)
            logger.info(
                "Upserted vector batch",
                extra={"batch_index": batch_index, "count": len(batch)},
            )
        return written

    async def fetch(self, vector_id: str) -> EmbeddingVector | None:
        try:
            resp = await asyncio.to_thread(self._index.fetch, ids=[vector_id], **self._ns())
        except Exception as e:
            raise VectorIndexError(f"Fetch of {vector_id} failed: {e}") from e

        stored = (_field(resp, "vectors") or {}).get(vector_id)
        if stored is None:
            logger.warning("No vector stored for issue", extra={"issue_key": vector_id})
            return None
        return EmbeddingVector(
            id=vector_id,
            values=list(_field(stored, "values") or []),
            metadata=_parse_metadata(_field(stored, "metadata")),
        )

    async def query(
        self,
        vector: list[float],
        top_k: int = 0,
        include_metadata: bool = True,
    ) -> list[IndexMatch]:
        """Nearest neighbours, in the provider's (descending score) order."""
        top_k = top_k or settings.detection_top_k
        try:
            resp = await asyncio.to_thread(
                self._index.query,
                vector=vector,
                top_k=top_k,
                include_metadata=include_metadata,
                include_values=False,
                **self._ns(),
            )
        except Exception as e:
            raise VectorIndexError(f"Similarity query failed: {e}") from e

        return [
            IndexMatch(
                id=_field(match, "id"),
                score=float(_field(match, "score", 0.0) or 0.0),
                metadata=_parse_metadata(_field(match, "metadata")) if include_metadata else None,
            )
            for match in _field(resp, "matches") or []
        ]

    async def delete_one(self, vector_id: str) -> None:
        """Remove one vector. Deleting an absent id is a no-op."""
        try:
            await asyncio.to_thread(self._index.delete, ids=[vector_id], **self._ns())
        except Exception as e:
            raise VectorIndexError(f"Delete of {vector_id} failed: {e}") from e
        logger.info("Deleted vector", extra={"issue_key": vector_id})

    async def list_ids(self) -> list[str]:
        """Every vector id in the namespace (used by the reconciliation sweep)."""

        def _collect() -> list[str]:
            ids: list[str] = []
            for page in self._index.list(**self._ns()):
                ids.extend(page)
            return ids

        try:
            return await asyncio.to_thread(_collect)
        except Exception as e:
            raise VectorIndexError(f"Listing vector ids failed: {e}") from e
