"""Chunk index: embeddings, chunk records and frame-to-chunk mappings."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from memvid.index_types import ChunkMetadata, IndexStats, MetadataValue
from memvid.search import (
    MachineLearningError,
    SearchConfig,
    SearchResult,
    VectorSearchIndex,
)

logger = logging.getLogger(__name__)

_CHUNKS_FILE = "chunks.json"
_MAPPINGS_FILE = "mappings.json"

# Rough in-memory sizes used for the memory estimate in the statistics.
_FLOAT_SIZE = 4
_WORD_SIZE = 8
_CHUNK_RECORD_SIZE = 200


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def _read_json(path: Path, what: str) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MachineLearningError(f"Failed to deserialize {what}: {exc}") from exc


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MachineLearningError(f"Missing {name} in mappings")
    return value


class IndexManager:
    """Stores chunks with their embeddings and keeps frame/chunk mappings."""

    def __init__(self, dimension: int, config: SearchConfig | None = None) -> None:
        self.dimension = dimension
        self._vector_index = VectorSearchIndex(dimension, config or SearchConfig())
        self._chunks: dict[int, ChunkMetadata] = {}
        self._frame_to_chunks: dict[int, list[int]] = {}
        self._chunk_to_frame: dict[int, int] = {}
        self._next_chunk_id = 0

    @property
    def vector_index(self) -> VectorSearchIndex:
        """The underlying vector index."""
        return self._vector_index

    def _allocate_id(self) -> int:
        chunk_id = self._next_chunk_id
        self._next_chunk_id += 1
        return chunk_id

    def _store(
        self,
        chunk: ChunkMetadata,
        embedding: Sequence[float],
        vector_metadata: dict[str, Any],
    ) -> None:
        self._vector_index.add_vector(chunk.id, embedding, vector_metadata)
        self._chunks[chunk.id] = chunk
        self._frame_to_chunks.setdefault(chunk.frame_number, []).append(chunk.id)
        self._chunk_to_frame[chunk.id] = chunk.frame_number

    @staticmethod
    def _vector_metadata(chunk: ChunkMetadata) -> dict[str, Any]:
        return {"frame": chunk.frame_number, "text": chunk.text, "length": chunk.length}

    def add_chunks(
        self,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        frame_numbers: Sequence[int],
    ) -> list[int]:
        """Add chunks with their embeddings and frames; returns the new chunk ids."""
        if not len(chunks) == len(embeddings) == len(frame_numbers):
            raise MachineLearningError(
                "Chunks, embeddings, and frame numbers must have the same length"
            )

        chunk_ids = []
        for text, embedding, frame_number in zip(chunks, embeddings, frame_numbers):
            now = _utc_now()
            chunk = ChunkMetadata(
                id=self._allocate_id(),
                text=text,
                frame_number=frame_number,
                length=_byte_length(text),
                created_at=now,
                updated_at=now,
            )
            self._store(chunk, embedding, self._vector_metadata(chunk))
            chunk_ids.append(chunk.id)

        logger.info("Added %d chunks to index", len(chunks))
        return chunk_ids

    def add_chunk(
        self,
        text: str,
        embedding: Sequence[float],
        frame_number: int,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Add one chunk, optionally with JSON metadata; returns its id."""
        now = _utc_now()
        chunk = ChunkMetadata(
            id=self._allocate_id(),
            text=text,
            frame_number=frame_number,
            length=_byte_length(text),
            created_at=now,
            updated_at=now,
            legacy_metadata=dict(metadata or {}),
        )
        vector_metadata = self._vector_metadata(chunk)
        vector_metadata.update(chunk.legacy_metadata)
        self._store(chunk, embedding, vector_metadata)
        return chunk.id

    def search(self, query_embedding: Sequence[float], top_k: int) -> list[SearchResult]:
        """Approximate semantic search."""
        return self._vector_index.search_approximate(query_embedding, top_k)

    def search_exact(
        self, query_embedding: Sequence[float], top_k: int
    ) -> list[SearchResult]:
        """Exact semantic search."""
        return self._vector_index.search_exact(query_embedding, top_k)

    def get_chunks_by_frame(self, frame_number: int) -> list[ChunkMetadata]:
        return [
            self._chunks[chunk_id]
            for chunk_id in self._frame_to_chunks.get(frame_number, [])
            if chunk_id in self._chunks
        ]

    def get_chunk_by_id(self, chunk_id: int) -> ChunkMetadata | None:
        return self._chunks.get(chunk_id)

    def get_frame_for_chunk(self, chunk_id: int) -> int | None:
        return self._chunk_to_frame.get(chunk_id)

    def get_chunks_by_frames(
        self, frame_numbers: Iterable[int]
    ) -> dict[int, list[ChunkMetadata]]:
        return {frame: self.get_chunks_by_frame(frame) for frame in frame_numbers}

    def get_context_window(self, chunk_id: int, window_size: int) -> list[ChunkMetadata]:
        """Chunks from frames within window_size of the chunk's frame, by id."""
        frame_number = self._chunk_to_frame.get(chunk_id)
        if frame_number is None:
            return []
        start = max(0, frame_number - window_size)
        end = frame_number + window_size
        context = [
            chunk
            for frame in range(start, end + 1)
            for chunk in self.get_chunks_by_frame(frame)
        ]
        context.sort(key=lambda chunk: chunk.id)
        return context

    def build(self) -> None:
        """Build the vector index for fast search."""
        self._vector_index.build()
        logger.info("Index built with %d chunks", len(self._chunks))

    def save(self, path: str | Path) -> None:
        """Write the whole index into a directory, creating it if needed."""
        directory = Path(path)
        directory.mkdir(parents=True, exist_ok=True)
        self._vector_index.save(directory)

        chunks = {str(cid): chunk.to_dict() for cid, chunk in self._chunks.items()}
        (directory / _CHUNKS_FILE).write_text(json.dumps(chunks), encoding="utf-8")

        mappings = {
            "frame_to_chunks": {str(f): ids for f, ids in self._frame_to_chunks.items()},
            "chunk_to_frame": {str(c): f for c, f in self._chunk_to_frame.items()},
            "next_chunk_id": self._next_chunk_id,
            "dimension": self.dimension,
        }
        (directory / _MAPPINGS_FILE).write_text(json.dumps(mappings), encoding="utf-8")
        logger.info("Saved index to %s", directory)

    @classmethod
    def load(cls, path: str | Path) -> IndexManager:
        """Read an index written by save."""
        directory = Path(path)
        mappings = _read_json(directory / _MAPPINGS_FILE, "mappings")
        if not isinstance(mappings, dict):
            raise MachineLearningError("Failed to deserialize mappings: not an object")
        dimension = _non_negative_int(mappings.get("dimension"), "dimension")

        vector_index = VectorSearchIndex.load(directory, dimension)

        raw_chunks = _read_json(directory / _CHUNKS_FILE, "chunks")
        if not isinstance(raw_chunks, dict):
            raise MachineLearningError("Failed to deserialize chunks: not an object")
        try:
            chunks = {
                int(key): ChunkMetadata.from_dict(value)
                for key, value in raw_chunks.items()
            }
        except (ValueError, TypeError, AttributeError) as exc:
            raise MachineLearningError(f"Failed to deserialize chunks: {exc}") from exc

        try:
            frame_to_chunks = {
                int(frame): [int(cid) for cid in ids]
                for frame, ids in mappings["frame_to_chunks"].items()
            }
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise MachineLearningError(
                f"Failed to deserialize frame_to_chunks: {exc}"
            ) from exc
        try:
            chunk_to_frame = {
                int(cid): int(frame) for cid, frame in mappings["chunk_to_frame"].items()
            }
        except (KeyError, ValueError, TypeError, AttributeError) as exc:
            raise MachineLearningError(
                f"Failed to deserialize chunk_to_frame: {exc}"
            ) from exc
        next_chunk_id = _non_negative_int(mappings.get("next_chunk_id"), "next_chunk_id")

        manager = cls(dimension, vector_index.config)
        manager._vector_index = vector_index
        manager._chunks = chunks
        manager._frame_to_chunks = frame_to_chunks
        manager._chunk_to_frame = chunk_to_frame
        manager._next_chunk_id = next_chunk_id
        logger.info("Loaded index from %s with %d chunks", directory, len(chunks))
        return manager

    def _memory_estimate(self) -> int:
        vector_memory = len(self._chunks) * self.dimension * _FLOAT_SIZE
        metadata_memory = sum(
            _byte_length(chunk.text) + _CHUNK_RECORD_SIZE for chunk in self._chunks.values()
        )
        mapping_memory = (
            (len(self._frame_to_chunks) + len(self._chunk_to_frame)) * _WORD_SIZE * 2
        )
        return vector_memory + metadata_memory + mapping_memory

    def get_stats(self) -> IndexStats:
        """Basic statistics of the index."""
        total_chunks = len(self._chunks)
        total_frames = len(self._frame_to_chunks)
        return IndexStats(
            total_chunks=total_chunks,
            total_frames=total_frames,
            avg_chunks_per_frame=total_chunks / total_frames if total_frames else 0.0,
            dimension=self.dimension,
            index_type="HNSW",
            memory_usage_bytes=self._memory_estimate(),
            hnsw_built=True,
            avg_importance_score=0.5,
            common_tags=[],
            temporal_range=None,
        )

    def clear(self) -> None:
        """Remove every chunk and reset chunk ids."""
        self._vector_index.clear()
        self._chunks.clear()
        self._frame_to_chunks.clear()
        self._chunk_to_frame.clear()
        self._next_chunk_id = 0

    def get_frame_numbers(self) -> list[int]:
        return sorted(self._frame_to_chunks)

    def chunk_count(self) -> int:
        return len(self._chunks)

    def frame_count(self) -> int:
        return len(self._frame_to_chunks)

    def _existing_chunk(self, chunk_id: int) -> ChunkMetadata:
        chunk = self._chunks.get(chunk_id)
        if chunk is None:
            raise MachineLearningError(f"Chunk {chunk_id} not found")
        return chunk

    def update_chunk_metadata(self, chunk_id: int, metadata: dict[str, Any]) -> None:
        """Replace a chunk's JSON metadata."""
        chunk = self._existing_chunk(chunk_id)
        chunk.legacy_metadata = dict(metadata)
        chunk.updated_at = _utc_now()

    def update_rich_metadata(
        self, chunk_id: int, metadata: dict[str, MetadataValue]
    ) -> None:
        """Replace a chunk's typed metadata."""
        chunk = self._existing_chunk(chunk_id)
        chunk.metadata = dict(metadata)
        chunk.updated_at = _utc_now()