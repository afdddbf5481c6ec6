"""Unit tests for the per-collection vector index."""

import threading

import numpy as np
import pytest

from sidecar.errors import DimensionMismatch, IsolationError
from sidecar.rag.vectorstore import IndexEntry, VectorStore, cosine_scores, storage_name


def _entry(entry_id, vector, source="src", text=None):
    return IndexEntry(entry_id=entry_id, source_id=source, vector=tuple(vector), text=text or entry_id)


@pytest.fixture
def store(tmp_path):
    return VectorStore(tmp_path / "index")


class TestCosineScores:

    def test_scores(self):
        matrix = np.array([[1.0, 0.0], [0.0, 1.0], [1.0, 1.0]])
        scores = cosine_scores(np.array([1.0, 0.0]), matrix)
        assert scores[0] == pytest.approx(1.0)
        assert scores[1] == pytest.approx(0.0)
        assert scores[2] == pytest.approx(0.7071, abs=1e-4)

    def test_zero_vector_scores_zero(self):
        scores = cosine_scores(np.array([0.0, 0.0]), np.array([[1.0, 0.0]]))
        assert scores[0] == 0.0


class TestStorageName:

    def test_valid_and_distinct(self):
        a, b = storage_name("My Notes!"), storage_name("my-notes")
        assert a != b
        assert a.startswith("sidecar-my-notes-")


class TestCollectionIndex:

    def test_query_orders_by_similarity(self, store):
        index = store.collection("docs")
        index.insert([_entry("x", [1, 0, 0]), _entry("y", [0, 1, 0]), _entry("xy", [1, 1, 0])])
        results = index.query([1, 0, 0], k=3)
        assert [r.entry.entry_id for r in results] == ["x", "xy", "y"]
        assert results[0].score == pytest.approx(1.0)
        assert all(r.entry.collection == "docs" for r in results)

    def test_k_limits_results(self, store):
        index = store.collection("docs")
        index.insert([_entry(f"e{i}", [1, i, 0]) for i in range(10)])
        assert len(index.query([1, 0, 0], k=3)) == 3
        assert index.query([1, 0, 0], k=0) == []

    def test_ties_broken_by_insertion_order(self, store):
        index = store.collection("docs")
        index.insert([_entry("b-later-id", [0, 1, 0])])
        index.insert([_entry("a-earlier-id", [0, 1, 0])])
        results = index.query([0, 1, 0], k=2)
        assert [r.entry.entry_id for r in results] == ["b-later-id", "a-earlier-id"]
        assert results[0].entry.inserted_ns < results[1].entry.inserted_ns

    def test_ties_beyond_candidate_pool(self, store):
        index = store.collection("docs")
        ids = [f"same-{i:03d}" for i in reversed(range(60))]
        for entry_id in ids:
            index.insert([_entry(entry_id, [1, 1, 0])])
        index.insert([_entry("near", [1, 0.9, 0])])

        assert [r.entry.entry_id for r in index.query([1, 1, 0], k=1)] == ["same-059"]
        assert [r.entry.entry_id for r in index.query([1, 1, 0], k=3)] == ids[:3]

    def test_dimension_mismatch(self, store):
        index = store.collection("docs")
        index.insert([_entry("a", [1, 0, 0])])
        assert index.dimension == 3
        with pytest.raises(DimensionMismatch):
            index.insert([_entry("b", [1, 0])])
        with pytest.raises(DimensionMismatch):
            index.query([1, 0], k=1)
        assert index.count() == 1

    def test_mixed_dimensions_in_one_batch(self, store):
        with pytest.raises(DimensionMismatch):
            store.collection("docs").insert([_entry("a", [1, 0]), _entry("b", [1, 0, 0])])

    def test_collections_are_isolated(self, store):
        store.collection("a").insert([_entry("only-a", [1, 0])])
        store.collection("b").insert([_entry("only-b", [1, 0])])
        results = store.collection("a").query([1, 0], k=10)
        assert [r.entry.entry_id for r in results] == ["only-a"]

    def test_foreign_entry_raises_isolation_error(self, store):
        index = store.collection("a")
        index.insert([_entry("mine", [1, 0])])
        index._collection.upsert(
            ids=["stray"],
            embeddings=[[1.0, 0.0]],
            documents=["stray"],
            metadatas=[{"source_id": "x", "collection": "b", "inserted_ns": 1}],
        )
        with pytest.raises(IsolationError):
            index.query([1, 0], k=5)

    def test_replace_and_remove_source(self, store):
        index = store.collection("docs")
        index.insert([_entry("f#0", [1, 0], source="f"), _entry("f#1", [0, 1], source="f"), _entry("g#0", [1, 1], source="g")])
        index.replace_source("f", [_entry("f#0", [1, 0], source="f", text="new")])
        assert index.count() == 2
        assert set(index.sources()) == {"f", "g"}
        assert index.remove_by_source("g") == 1
        [hit] = index.query([1, 0], k=5)
        assert hit.entry.text == "new"

    def test_metadata_round_trip(self, store):
        index = store.collection("docs")
        entry = IndexEntry("e", "s", (1.0, 0.0), "text", metadata={"path": "/a.py", "start_line": 3})
        index.insert([entry])
        [hit] = index.query([1, 0], k=1)
        assert hit.entry.metadata == {"path": "/a.py", "start_line": 3}
        assert hit.entry.source_id == "s"

    def test_persisted_across_store_instances(self, tmp_path):
        VectorStore(tmp_path / "index").collection("docs").insert([_entry("keep", [0, 1, 0])])
        index = VectorStore(tmp_path / "index").collection("docs")
        assert index.count() == 1
        assert index.dimension == 3

    def test_drop(self, store):
        store.collection("docs").insert([_entry("a", [1, 0])])
        store.drop("docs")
        assert store.collection("docs").count() == 0

    def test_concurrent_inserts_and_queries(self, store):
        index = store.collection("docs")
        index.insert([_entry("seed", [1, 0, 0])])
        errors = []

        def writer(n):
            try:
                for i in range(20):
                    index.insert([_entry(f"w{n}-{i}", [1, i, n])])
            except Exception as e:
                errors.append(e)

        def reader():
            try:
                for _ in range(20):
                    results = index.query([1, 0, 0], k=5)
                    assert results and results[0].entry.entry_id == "seed"
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
        threads += [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
        assert index.count() == 61
