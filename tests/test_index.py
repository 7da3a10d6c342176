from datetime import datetime, timezone

import pytest

from memvid.index import IndexManager
from memvid.index_types import Reference
from memvid.search import MachineLearningError


def test_index_manager_creation():
    manager = IndexManager(384)
    assert manager.dimension == 384
    assert manager.chunk_count() == 0
    assert manager.frame_count() == 0


def test_add_chunks():
    manager = IndexManager(3)
    ids = manager.add_chunks(
        ["Hello world", "Test chunk"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], [0, 1]
    )
    assert ids == [0, 1]
    assert manager.chunk_count() == 2
    assert manager.frame_count() == 2


def test_add_chunks_length_mismatch():
    manager = IndexManager(3)
    with pytest.raises(MachineLearningError):
        manager.add_chunks(["a", "b"], [[1.0, 0.0, 0.0]], [0, 1])


def test_add_chunk_wrong_dimension():
    manager = IndexManager(3)
    with pytest.raises(MachineLearningError):
        manager.add_chunk("bad", [1.0, 0.0], 0)
    assert manager.chunk_count() == 0


def test_frame_chunk_mapping():
    manager = IndexManager(2)
    c1 = manager.add_chunk("Chunk 1", [1.0, 0.0], 0)
    c2 = manager.add_chunk("Chunk 2", [0.0, 1.0], 0)
    c3 = manager.add_chunk("Chunk 3", [1.0, 1.0], 1)

    assert len(manager.get_chunks_by_frame(0)) == 2
    assert len(manager.get_chunks_by_frame(1)) == 1
    assert manager.get_chunks_by_frame(7) == []

    assert manager.get_frame_for_chunk(c1) == 0
    assert manager.get_frame_for_chunk(c2) == 0
    assert manager.get_frame_for_chunk(c3) == 1
    assert manager.get_frame_for_chunk(99) is None


def test_get_chunks_by_frames():
    manager = IndexManager(2)
    manager.add_chunk("a", [1.0, 0.0], 0)
    manager.add_chunk("b", [0.0, 1.0], 2)
    result = manager.get_chunks_by_frames([0, 1, 2])
    assert [c.text for c in result[0]] == ["a"]
    assert result[1] == []
    assert [c.text for c in result[2]] == ["b"]


def test_context_window():
    manager = IndexManager(2)
    for i in range(5):
        manager.add_chunk(f"Chunk {i}", [float(i), 0.0], i)
    context = manager.get_context_window(2, 1)
    assert [c.frame_number for c in context] == [1, 2, 3]


def test_context_window_at_start_and_unknown():
    manager = IndexManager(2)
    for i in range(3):
        manager.add_chunk(f"Chunk {i}", [1.0, float(i)], i)
    assert [c.id for c in manager.get_context_window(0, 1)] == [0, 1]
    assert manager.get_context_window(42, 1) == []


def test_save_and_load(tmp_path):
    index_path = tmp_path / "test_index"
    manager = IndexManager(2)
    manager.add_chunk("Test chunk", [1.0, 0.0], 0, {"source": "doc"})
    manager.build()
    manager.save(index_path)

    loaded = IndexManager.load(index_path)
    assert loaded.chunk_count() == 1
    assert loaded.dimension == 2
    chunk = loaded.get_chunk_by_id(0)
    assert chunk.text == "Test chunk"
    assert chunk.legacy_metadata == {"source": "doc"}
    assert loaded.get_frame_for_chunk(0) == 0
    assert loaded.add_chunk("Next", [0.0, 1.0], 1) == 1


def test_loaded_index_exact_search(tmp_path):
    manager = IndexManager(3)
    manager.add_chunks(
        ["x", "y"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], [0, 1]
    )
    manager.save(tmp_path / "idx")
    loaded = IndexManager.load(tmp_path / "idx")
    results = loaded.search_exact([0.0, 1.0, 0.0], 1)
    assert [r.id for r in results] == [1]
    assert results[0].metadata["text"] == "y"


def test_load_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        IndexManager.load(tmp_path / "nope")


def test_load_corrupt_mappings(tmp_path):
    (tmp_path / "mappings.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(MachineLearningError):
        IndexManager.load(tmp_path)


def test_search():
    manager = IndexManager(3)
    manager.add_chunk("Hello world", [1.0, 0.0, 0.0], 0)
    manager.add_chunk("Test chunk", [0.0, 1.0, 0.0], 1)
    manager.add_chunk("Another test", [0.0, 0.0, 1.0], 2)
    manager.build()

    results = manager.search([0.9, 0.1, 0.0], 2)
    assert len(results) == 2
    assert results[0].id == 0


def test_search_metadata_includes_custom_fields():
    manager = IndexManager(2)
    manager.add_chunk("hello", [1.0, 0.0], 4, {"lang": "en"})
    result = manager.search_exact([1.0, 0.0], 1)[0]
    assert result.metadata == {"frame": 4, "text": "hello", "length": 5, "lang": "en"}


def test_length_is_utf8_bytes():
    manager = IndexManager(2)
    cid = manager.add_chunk("héllo", [1.0, 0.0], 0)
    assert manager.get_chunk_by_id(cid).length == 6


def test_get_stats():
    manager = IndexManager(4)
    manager.add_chunks(
        ["a", "b", "c"],
        [[1.0, 0.0, 0.0, 0.0], [0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 1.0, 0.0]],
        [0, 0, 1],
    )
    stats = manager.get_stats()
    assert stats.total_chunks == 3
    assert stats.total_frames == 2
    assert stats.avg_chunks_per_frame == pytest.approx(1.5)
    assert stats.dimension == 4
    assert stats.index_type == "HNSW"
    assert stats.memory_usage_bytes > 3 * 4 * 4


def test_empty_stats():
    stats = IndexManager(3).get_stats()
    assert stats.total_chunks == 0
    assert stats.avg_chunks_per_frame == 0.0


def test_clear_resets_ids():
    manager = IndexManager(2)
    manager.add_chunk("a", [1.0, 0.0], 0)
    manager.add_chunk("b", [0.0, 1.0], 1)
    manager.clear()
    assert manager.chunk_count() == 0
    assert manager.frame_count() == 0
    assert manager.add_chunk("c", [1.0, 1.0], 0) == 0


def test_get_frame_numbers_sorted():
    manager = IndexManager(2)
    for frame in (5, 1, 3, 1):
        manager.add_chunk("t", [1.0, 0.0], frame)
    assert manager.get_frame_numbers() == [1, 3, 5]


def test_update_chunk_metadata():
    manager = IndexManager(2)
    cid = manager.add_chunk("a", [1.0, 0.0], 0)
    before = manager.get_chunk_by_id(cid).updated_at
    manager.update_chunk_metadata(cid, {"k": 1})
    chunk = manager.get_chunk_by_id(cid)
    assert chunk.legacy_metadata == {"k": 1}
    assert chunk.updated_at >= before


def test_update_chunk_metadata_missing():
    manager = IndexManager(2)
    with pytest.raises(MachineLearningError):
        manager.update_chunk_metadata(5, {})
    with pytest.raises(MachineLearningError):
        manager.update_rich_metadata(5, {})


def test_rich_metadata_management(tmp_path):
    manager = IndexManager(3)
    (cid,) = manager.add_chunks(["Metadata test chunk"], [[1.0, 0.0, 0.0]], [0])
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    manager.update_rich_metadata(
        cid,
        {
            "priority": "high",
            "score": 0.95,
            "processed": True,
            "created": stamp,
            "related": Reference(chunk_id=123, frame_id=456),
        },
    )
    chunk = manager.get_chunk_by_id(cid)
    assert len(chunk.metadata) == 5
    assert chunk.metadata["priority"] == "high"
    assert chunk.metadata["score"] == 0.95
    assert chunk.metadata["processed"] is True

    manager.save(tmp_path / "idx")
    loaded = IndexManager.load(tmp_path / "idx").get_chunk_by_id(cid)
    assert loaded.metadata["created"] == stamp
    assert loaded.metadata["related"] == Reference(chunk_id=123, frame_id=456)


def test_vector_index_exposed():
    manager = IndexManager(2)
    manager.add_chunk("a", [1.0, 0.0], 0)
    assert manager.vector_index.get_vector(0) == [1.0, 0.0]
    assert manager.vector_index.get_metadata(0)["text"] == "a"