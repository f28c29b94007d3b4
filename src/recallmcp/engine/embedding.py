"""Embedding adapters.

The memory engine consumes a single ``embed(text) -> vector`` call.  All
vectors produced by one adapter share its ``dimension``; an adapter that
returns anything else raises ``EmbeddingError`` rather than letting a
malformed vector reach the store.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

import numpy as np

from recallmcp.config import EmbeddingConfig
from recallmcp.errors import EmbeddingError

# ---------------------------------------------------------------------------
# Embedding abstraction
# ---------------------------------------------------------------------------


@runtime_checkable
class Embedder(Protocol):
    """Protocol for text-embedding providers."""

    @property
    def dimension(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashingEmbedder:
    """Deterministic feature-hashing bag-of-words embedder.

    Each lowercase token is hashed (BLAKE2b) to a bucket and a sign; the
    resulting count vector is L2-normalised.  Texts sharing no tokens are
    orthogonal.  Needs no network and is stable across processes.
    """

    def __init__(self, dimension: int = 512) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be positive")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0.0:
            vector /= norm
        return vector.tolist()


class OpenAICompatibleEmbedder:
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        dimension: int,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._dimension = dimension
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._embed_sync, text)

    def _embed_sync(self, text: str) -> list[float]:
        payload = {
            "model": self._model,
            "input": text,
            "dimensions": self._dimension,
        }
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmbeddingError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise EmbeddingError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise EmbeddingError(f"provider IO error: {exc}") from exc

        try:
            data = json.loads(raw)
            vector = [float(x) for x in data["data"][0]["embedding"]]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingError(
                "provider response missing data[0].embedding"
            ) from exc

        if len(vector) != self._dimension:
            raise EmbeddingError(
                f"provider returned dimension {len(vector)}, "
                f"expected {self._dimension}"
            )
        return vector


def build_embedder(config: EmbeddingConfig) -> Embedder:
    """Create a concrete embedder from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError(
                "embedding_config.api_key is required when provider='openai'"
            )
        return OpenAICompatibleEmbedder(
            model=config.model,
            api_key=config.api_key,
            dimension=config.dimension,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "hashing":
        return HashingEmbedder(config.dimension)
    raise ValueError(
        f"Unsupported embedding_config.provider '{config.provider}'. "
        "Supported providers: openai, hashing."
    )
