"""Tests for the categorized memory index."""

from __future__ import annotations

from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from smart_worker.config import MemoryConfig
from smart_worker.errors import StorageError
from smart_worker.memory.memory_index import MemoryIndex
from smart_worker.models.failure import (
    CategorizedEmbedding,
    CodeChange,
    EmbeddingCategory,
    ErrorSignature,
    FailureLocation,
    FocusedSnippet,
    MemorySearchHit,
    StructuredFailureContext,
)
from smart_worker.models.job import FailedJob
from tests.fakes import FakeEmbedder


def _context(locations: int = 2) -> StructuredFailureContext:
    locs = [
        FailureLocation(f"/app/w{i}.py", 10 + i, 0, f"fn{i}") for i in range(locations)
    ]
    return StructuredFailureContext(
        job_id="42",
        job_name="send-report",
        queue_name="reports",
        job_data={"to": "", "count": 3},
        error_signature=ErrorSignature("ValueError", "missing 3", "missing <N>"),
        failure_locations=locs,
        focused_snippets=[FocusedSnippet("/app/w0.py", 1, 20, 10, ">>>   10: boom()")],
    )


def _embedding(category: EmbeddingCategory, chunk_id: str = "c") -> CategorizedEmbedding:
    return CategorizedEmbedding.create(category, chunk_id, "text", [1.0, 0.0])


def _hit(record_id: int, category: EmbeddingCategory, distance: float) -> MemorySearchHit:
    return MemorySearchHit(
        chunk_id=f"{record_id}-0",
        record_id=record_id,
        category=category,
        content="stored",
        distance=distance,
        weight=99.0,  # overwritten by the query's weight
    )


class FakeStore:
    """Store double answering category queries from a fixed table."""

    def __init__(self, results: Dict[EmbeddingCategory, List[MemorySearchHit]]):
        self.config = MemoryConfig(top_k=5, neighbors_per_query=3)
        self.results = results
        self.queries: List[tuple] = []

    def query_category(self, vector, category, n_results):
        self.queries.append((category, n_results))
        return [
            MemorySearchHit(**vars(hit)) for hit in self.results.get(category, [])
        ]


@pytest.fixture
def index_config() -> MemoryConfig:
    return MemoryConfig(top_k=5, neighbors_per_query=3, signature_match_threshold=0.15)


# --- Embedding ---


class TestEmbed:
    """Context -> categorized embeddings."""

    def test_emits_expected_chunks(self, fake_embedder: FakeEmbedder) -> None:
        index = MemoryIndex(MagicMock(), fake_embedder, MemoryConfig())
        embeddings = index.embed(_context(locations=2))

        assert [e.chunk_id for e in embeddings] == [
            "error_signature-0",
            "failure_location-0",
            "failure_location-1",
            "metadata-0",
        ]
        assert [e.weight for e in embeddings] == [3.0, 2.0, 2.0, 0.5]
        assert embeddings[0].content == "ValueError: missing <N>"

    def test_location_chunk_includes_matching_snippet(
        self, fake_embedder: FakeEmbedder
    ) -> None:
        embeddings = MemoryIndex(MagicMock(), fake_embedder, MemoryConfig()).embed(
            _context(locations=2)
        )
        assert "fn0 at /app/w0.py:10:0" in embeddings[1].content
        assert ">>>   10: boom()" in embeddings[1].content
        assert ">>>" not in embeddings[2].content

    def test_at_most_three_locations(self, fake_embedder: FakeEmbedder) -> None:
        embeddings = MemoryIndex(MagicMock(), fake_embedder, MemoryConfig()).embed(
            _context(locations=6)
        )
        categories = [e.category for e in embeddings]
        assert categories.count(EmbeddingCategory.FAILURE_LOCATION) == 3
        assert len(embeddings) == 5

    def test_metadata_chunk(self, fake_embedder: FakeEmbedder) -> None:
        embeddings = MemoryIndex(MagicMock(), fake_embedder, MemoryConfig()).embed(
            _context(locations=0)
        )
        assert embeddings[-1].content == (
            'Job: send-report\nQueue: reports\nData: {"count": 3, "to": ""}'
        )

    def test_failed_item_is_dropped(self) -> None:
        embedder = FakeEmbedder(fail_on="Queue:")
        embeddings = MemoryIndex(MagicMock(), embedder, MemoryConfig()).embed(
            _context(locations=1)
        )
        assert [e.chunk_id for e in embeddings] == [
            "error_signature-0",
            "failure_location-0",
        ]


# --- Search ---


class TestSearch:
    """Weighted, category-restricted nearest-neighbour search."""

    def test_queries_each_category_separately(self, index_config: MemoryConfig) -> None:
        store = FakeStore({})
        index = MemoryIndex(store, FakeEmbedder(), index_config)

        index.search(
            [
                _embedding(EmbeddingCategory.ERROR_SIGNATURE),
                _embedding(EmbeddingCategory.METADATA),
            ]
        )

        assert store.queries == [
            (EmbeddingCategory.ERROR_SIGNATURE, 3),
            (EmbeddingCategory.METADATA, 3),
        ]

    def test_weight_comes_from_query(self, index_config: MemoryConfig) -> None:
        store = FakeStore(
            {EmbeddingCategory.ERROR_SIGNATURE: [_hit(1, EmbeddingCategory.ERROR_SIGNATURE, 0.3)]}
        )
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [_embedding(EmbeddingCategory.ERROR_SIGNATURE, "error_signature-0")]
        )

        hit = response.hits[0]
        assert hit.weight == 3.0
        assert hit.weighted_distance == pytest.approx(0.1)
        assert hit.query_chunk_id == "error_signature-0"

    def test_heavier_category_ranks_first(self, index_config: MemoryConfig) -> None:
        store = FakeStore(
            {
                EmbeddingCategory.ERROR_SIGNATURE: [
                    _hit(1, EmbeddingCategory.ERROR_SIGNATURE, 0.3)
                ],
                EmbeddingCategory.METADATA: [_hit(2, EmbeddingCategory.METADATA, 0.1)],
            }
        )
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [
                _embedding(EmbeddingCategory.METADATA),
                _embedding(EmbeddingCategory.ERROR_SIGNATURE),
            ]
        )
        # 0.3 / 3.0 = 0.1 beats 0.1 / 0.5 = 0.2
        assert response.record_ids == [1, 2]

    def test_keeps_top_k(self, index_config: MemoryConfig) -> None:
        hits = [_hit(i, EmbeddingCategory.FAILURE_LOCATION, 0.1 * i) for i in range(1, 4)]
        store = FakeStore({EmbeddingCategory.FAILURE_LOCATION: hits})
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [
                _embedding(EmbeddingCategory.FAILURE_LOCATION, "failure_location-0"),
                _embedding(EmbeddingCategory.FAILURE_LOCATION, "failure_location-1"),
            ],
            k=4,
        )
        assert len(response.hits) == 4
        assert response.record_ids == [1, 1, 2, 2]

    def test_signature_match_below_threshold(self, index_config: MemoryConfig) -> None:
        store = FakeStore(
            {EmbeddingCategory.ERROR_SIGNATURE: [_hit(1, EmbeddingCategory.ERROR_SIGNATURE, 0.1)]}
        )
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [_embedding(EmbeddingCategory.ERROR_SIGNATURE)]
        )
        assert response.signature_match

    def test_no_signature_match_above_threshold(self, index_config: MemoryConfig) -> None:
        store = FakeStore(
            {EmbeddingCategory.ERROR_SIGNATURE: [_hit(1, EmbeddingCategory.ERROR_SIGNATURE, 0.2)]}
        )
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [_embedding(EmbeddingCategory.ERROR_SIGNATURE)]
        )
        assert not response.signature_match

    def test_close_metadata_hit_is_not_a_signature_match(
        self, index_config: MemoryConfig
    ) -> None:
        store = FakeStore({EmbeddingCategory.METADATA: [_hit(1, EmbeddingCategory.METADATA, 0.0)]})
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [_embedding(EmbeddingCategory.METADATA)]
        )
        assert not response.signature_match

    def test_failed_query_is_skipped(self, index_config: MemoryConfig) -> None:
        store = MagicMock()
        store.query_category.side_effect = [
            StorageError("index offline"),
            [_hit(5, EmbeddingCategory.METADATA, 0.4)],
        ]
        response = MemoryIndex(store, FakeEmbedder(), index_config).search(
            [
                _embedding(EmbeddingCategory.ERROR_SIGNATURE),
                _embedding(EmbeddingCategory.METADATA),
            ]
        )
        assert response.record_ids == [5]

    def test_empty_memory(self, index_config: MemoryConfig) -> None:
        response = MemoryIndex(FakeStore({}), FakeEmbedder(), index_config).search(
            [_embedding(EmbeddingCategory.ERROR_SIGNATURE)]
        )
        assert response.hits == []
        assert not response.signature_match


# --- Store ---


class TestStore:
    """Episode persistence through the backing store."""

    def test_inserts_record_then_chunks(self, index_config: MemoryConfig) -> None:
        store = MagicMock()
        store.insert_record.return_value = 17
        job = FailedJob(id="42", name="send-report")
        embeddings = [
            _embedding(EmbeddingCategory.ERROR_SIGNATURE, "error_signature-0"),
            _embedding(EmbeddingCategory.METADATA, "metadata-0"),
        ]
        changes = [CodeChange(path="/app/w.py", code="fixed", original_code="broken")]

        record_id = MemoryIndex(store, FakeEmbedder(), index_config).store(
            job, embeddings, True, "Guarded the recipient.", changes
        )

        assert record_id == 17
        store.insert_record.assert_called_once_with(
            job, resolved=True, resolution_summary="Guarded the recipient.", changes=changes
        )
        assert [c.args[:2] for c in store.insert_chunk.call_args_list] == [(17, 0), (17, 1)]

    def test_chunk_failure_keeps_record(self, index_config: MemoryConfig) -> None:
        store = MagicMock()
        store.insert_record.return_value = 3
        store.insert_chunk.side_effect = [StorageError("full"), None]

        record_id = MemoryIndex(store, FakeEmbedder(), index_config).store(
            FailedJob(id="1", name="x"),
            [
                _embedding(EmbeddingCategory.ERROR_SIGNATURE),
                _embedding(EmbeddingCategory.METADATA),
            ],
        )

        assert record_id == 3
        assert store.insert_chunk.call_count == 2
        store.delete_record.assert_not_called()

    def test_record_failure_propagates(self, index_config: MemoryConfig) -> None:
        store = MagicMock()
        store.insert_record.side_effect = StorageError("locked")

        with pytest.raises(StorageError):
            MemoryIndex(store, FakeEmbedder(), index_config).store(
                FailedJob(id="1", name="x"), [_embedding(EmbeddingCategory.METADATA)]
            )
        store.insert_chunk.assert_not_called()

    def test_resolution_summary_delegates(self, index_config: MemoryConfig) -> None:
        store = MagicMock()
        store.get_resolution_summary.return_value = "Fixed it."
        index = MemoryIndex(store, FakeEmbedder(), index_config)

        assert index.resolution_summary(4) == "Fixed it."
        store.get_resolution_summary.assert_called_once_with(4)
