"""Categorized vector memory of past failure episodes."""

import json
import logging
from typing import List, Optional, Tuple

from smart_worker.config import MemoryConfig
from smart_worker.errors import ResponseFormatError, StorageError, TransportError
from smart_worker.integrations.embedding_client import EmbeddingClient
from smart_worker.logging import log_event
from smart_worker.memory.store import FailureMemoryStore
from smart_worker.models.failure import (
    CategorizedEmbedding,
    CodeChange,
    EmbeddingCategory,
    MemorySearchHit,
    MemorySearchResponse,
    StructuredFailureContext,
)
from smart_worker.models.job import FailedJob

logger = logging.getLogger(__name__)

MAX_LOCATION_EMBEDDINGS = 3


class MemoryIndex:
    """Embeds failure contexts, searches past episodes and stores new ones."""

    def __init__(
        self,
        store: FailureMemoryStore,
        embedder: EmbeddingClient,
        config: Optional[MemoryConfig] = None,
    ):
        """Initialize the index.

        Args:
            store: Backing metadata and vector store.
            embedder: Embedding service client.
            config: Search settings. Defaults to the store's configuration.
        """
        self.memory_store = store
        self.embedder = embedder
        self.config = config or store.config

    def _chunk_texts(
        self, context: StructuredFailureContext
    ) -> List[Tuple[EmbeddingCategory, str, str]]:
        signature = context.error_signature
        items = [
            (
                EmbeddingCategory.ERROR_SIGNATURE,
                "error_signature-0",
                signature.normalized_signature,
            )
        ]

        snippets = {(s.file_path, s.failure_line): s for s in context.focused_snippets}
        for i, location in enumerate(context.failure_locations[:MAX_LOCATION_EMBEDDINGS]):
            text = location.describe()
            snippet = snippets.get((location.file_path, location.line_number))
            if snippet:
                text = f"{text}\n{snippet.content}"
            items.append((EmbeddingCategory.FAILURE_LOCATION, f"failure_location-{i}", text))

        metadata = (
            f"Job: {context.job_name}\n"
            f"Queue: {context.queue_name}\n"
            f"Data: {json.dumps(context.job_data, sort_keys=True, default=str)}"
        )
        items.append((EmbeddingCategory.METADATA, "metadata-0", metadata))
        return items

    def embed(self, context: StructuredFailureContext) -> List[CategorizedEmbedding]:
        """Embed a failure context into weighted per-category vectors.

        Emits one error-signature embedding, up to three failure-location
        embeddings and one metadata embedding. An item whose embedding
        call fails is dropped; the rest are still returned.

        Args:
            context: Structured failure context.

        Returns:
            Categorized embeddings in emission order.
        """
        embeddings = []
        for category, chunk_id, content in self._chunk_texts(context):
            try:
                vector = self.embedder.embed(content)
            except (TransportError, ResponseFormatError) as e:
                logger.warning(f"Dropping {chunk_id} embedding: {e}")
                continue
            embeddings.append(
                CategorizedEmbedding.create(category, chunk_id, content, vector)
            )

        log_event(
            logger, "memory", "embedded", chunk_count=len(embeddings), job_id=context.job_id
        )
        return embeddings

    def search(
        self, embeddings: List[CategorizedEmbedding], k: Optional[int] = None
    ) -> MemorySearchResponse:
        """Find the stored chunks closest to the given embeddings.

        Each embedding is compared only against chunks of its own category.
        Hits are ranked by ``distance / weight`` so heavier categories win
        ties against lighter ones.

        Args:
            embeddings: Query embeddings.
            k: Number of hits to keep. Defaults to the configured top-k.

        Returns:
            Top-k hits by weighted distance and the signature-match flag.
        """
        k = k if k is not None else self.config.top_k
        threshold = self.config.signature_match_threshold
        all_hits: List[MemorySearchHit] = []
        signature_match = False

        for emb in embeddings:
            try:
                rows = self.memory_store.query_category(
                    emb.vector, emb.category, self.config.neighbors_per_query
                )
            except StorageError as e:
                logger.error(f"Memory query for {emb.chunk_id} failed: {e}")
                continue

            for row in rows:
                # Weight comes from the query embedding's category
                row.weight = emb.weight
                row.query_chunk_id = emb.chunk_id
                if (
                    emb.category is EmbeddingCategory.ERROR_SIGNATURE
                    and row.distance < threshold
                ):
                    signature_match = True
                all_hits.append(row)

        all_hits.sort(key=lambda hit: hit.weighted_distance)
        top = all_hits[:k]

        log_event(
            logger,
            "memory",
            "searched",
            query_count=len(embeddings),
            hit_count=len(top),
            signature_match=signature_match,
        )
        return MemorySearchResponse(hits=top, signature_match=signature_match)

    def store(
        self,
        job: FailedJob,
        embeddings: List[CategorizedEmbedding],
        resolved: bool = True,
        resolution_summary: str = "",
        changes: Optional[List[CodeChange]] = None,
    ) -> int:
        """Persist one episode: a metadata row, then one chunk per embedding.

        A chunk that fails to insert is logged and skipped; it never undoes
        the metadata row or the other chunks.

        Returns:
            The new record id.

        Raises:
            StorageError: If the metadata row could not be written.
        """
        record_id = self.memory_store.insert_record(
            job,
            resolved=resolved,
            resolution_summary=resolution_summary,
            changes=changes,
        )

        stored = 0
        for index, emb in enumerate(embeddings):
            try:
                self.memory_store.insert_chunk(record_id, index, emb)
                stored += 1
            except StorageError as e:
                logger.error(f"Error inserting chunk {index}: {e}")

        log_event(
            logger,
            "memory",
            "stored",
            record_id=record_id,
            job_id=job.id,
            chunk_count=stored,
            resolved=resolved,
        )
        return record_id

    def resolution_summary(self, record_id: int) -> Optional[str]:
        """Stored resolution summary of a precedent record."""
        return self.memory_store.get_resolution_summary(record_id)
