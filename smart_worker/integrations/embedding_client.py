"""Embedding service client.

The service answers ``POST {url}/embedding`` with a list holding one
``{"embedding": [...]}`` object per input.
"""

import logging
from typing import Any, List, Optional

import requests

from smart_worker.config import EmbeddingConfig
from smart_worker.errors import ResponseFormatError, TransportError

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Client for the embedding model server."""

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize embedding client.

        Args:
            config: Embedding configuration. If None, loads from environment.
            session: Optional requests session (used by tests).
        """
        self.config = config or EmbeddingConfig()
        self._session = session or requests.Session()

    @property
    def endpoint(self) -> str:
        return f"{self.config.url.rstrip('/')}/embedding"

    def embed(self, content: str) -> List[float]:
        """Embed one piece of text.

        Args:
            content: Text to embed.

        Returns:
            The embedding vector.

        Raises:
            TransportError: If the service could not be reached or errored.
            ResponseFormatError: If the payload shape or dimension is wrong.
        """
        try:
            response = self._session.post(
                self.endpoint,
                json={
                    "content": content,
                    "encoding_format": "float",
                    "model": self.config.model,
                },
                timeout=self.config.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as e:
            raise TransportError(f"embedding request failed: {e}") from e
        except ValueError as e:
            raise ResponseFormatError(f"embedding response is not JSON: {e}") from e

        return self._extract_vector(payload)

    def _extract_vector(self, payload: Any) -> List[float]:
        if not isinstance(payload, list) or not payload:
            raise ResponseFormatError("expected a non-empty list of embeddings")
        first = payload[0]
        if not isinstance(first, dict) or "embedding" not in first:
            raise ResponseFormatError("embedding item has no 'embedding' field")

        vector = first["embedding"]
        # Some servers nest per-token vectors; take the pooled one
        if isinstance(vector, list) and vector and isinstance(vector[0], list):
            vector = vector[0]
        if not isinstance(vector, list) or not all(
            isinstance(v, (int, float)) for v in vector
        ):
            raise ResponseFormatError("embedding is not a list of numbers")
        if len(vector) != self.config.dimension:
            raise ResponseFormatError(
                f"embedding dimension {len(vector)} != {self.config.dimension}"
            )
        return [float(v) for v in vector]
