"""Index manager with context windows, tags, importance scores and bulk loading."""

from __future__ import annotations

import copy
import logging
import math
import time
from collections import Counter
from typing import Iterable, Mapping, Sequence

from memvid.index import IndexManager, _utc_now
from memvid.index_types import (
    ChunkMetadata,
    ContextWindowConfig,
    EnhancedSearchResult,
    IndexStats,
    ProcessingStats,
    RelevanceInfo,
)
from memvid.search import MachineLearningError

logger = logging.getLogger(__name__)

_BATCH_SIZE = 100
_MAX_ATTEMPTS = 3
_RETRY_DELAY = 0.1
_DEFAULT_IMPORTANCE = 0.5
_TOP_TAGS = 10


def _valid_importance(score: float) -> bool:
    return not math.isnan(score) and 0.0 <= score <= 1.0


class EnhancedIndexManager(IndexManager):
    """An index manager that also tracks importance scores and tags per chunk."""

    def get_enhanced_context_window(
        self, chunk_id: int, config: ContextWindowConfig | None = None
    ) -> list[ChunkMetadata]:
        """Neighbouring chunks of a chunk, from its own frame and optionally adjacent ones."""
        config = config or ContextWindowConfig()
        chunk = self._chunks.get(chunk_id)
        if chunk is None:
            return []

        def wanted(candidate: ChunkMetadata) -> bool:
            return (
                config.min_importance is None
                or candidate.importance_score >= config.min_importance
            )

        current = self.get_chunks_by_frame(chunk.frame_number)
        position = next(
            (pos for pos, candidate in enumerate(current) if candidate.id == chunk_id), 0
        )
        start = max(0, position - config.before)
        end = min(position + config.after + 1, len(current))
        context = [copy.deepcopy(c) for c in current[start:end] if wanted(c)]

        if config.include_adjacent_frames:
            if chunk.frame_number > 0:
                previous = self.get_chunks_by_frame(chunk.frame_number - 1)
                for candidate in list(reversed(previous))[: config.before]:
                    if wanted(candidate):
                        context.insert(0, copy.deepcopy(candidate))
            following = self.get_chunks_by_frame(chunk.frame_number + 1)
            for candidate in following[: config.after]:
                if wanted(candidate):
                    context.append(copy.deepcopy(candidate))

        if config.max_total is not None:
            del context[config.max_total :]

        context.sort(key=lambda c: (c.frame_number, c.id))
        return context

    def _store_with_retry(self, chunk: ChunkMetadata, embedding: Sequence[float]) -> bool:
        vector_metadata = self._vector_metadata(chunk)
        vector_metadata["importance"] = chunk.importance_score
        last_error: Exception | None = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                self._store(chunk, embedding, dict(vector_metadata))
            except MachineLearningError as exc:
                last_error = exc
                if attempt < _MAX_ATTEMPTS:
                    time.sleep(_RETRY_DELAY * attempt)
            else:
                return True
        logger.error(
            "Failed to add chunk %d after %d attempts: %s",
            chunk.id,
            _MAX_ATTEMPTS,
            last_error,
        )
        return False

    def add_chunks_parallel(
        self,
        chunks: Sequence[str],
        embeddings: Sequence[Sequence[float]],
        frame_numbers: Sequence[int],
        importance_scores: Sequence[float] | None = None,
        tags: Sequence[Sequence[str]] | None = None,
    ) -> tuple[list[int], ProcessingStats]:
        """Add chunks in batches, counting failures instead of stopping on them."""
        started = time.perf_counter()

        if not len(chunks) == len(embeddings) == len(frame_numbers):
            raise MachineLearningError(
                "Chunks, embeddings, and frame numbers must have the same length"
            )
        if importance_scores is not None and len(importance_scores) != len(chunks):
            raise MachineLearningError(
                "Importance scores length must match chunks length"
            )
        if tags is not None and len(tags) != len(chunks):
            raise MachineLearningError("Tags length must match chunks length")

        successful = 0
        failed = 0
        chunk_ids: list[int] = []
        base_id = self._next_chunk_id
        now = _utc_now()

        for batch_start in range(0, len(chunks), _BATCH_SIZE):
            batch_end = min(batch_start + _BATCH_SIZE, len(chunks))
            for index in range(batch_start, batch_end):
                chunk_id = base_id + index
                importance = (
                    float(importance_scores[index])
                    if importance_scores is not None
                    else _DEFAULT_IMPORTANCE
                )
                if not _valid_importance(importance):
                    logger.error(
                        "Failed to create metadata for chunk %d: importance score %s "
                        "out of range [0.0, 1.0]",
                        index,
                        importance,
                    )
                    failed += 1
                    continue

                text = chunks[index]
                chunk = ChunkMetadata(
                    id=chunk_id,
                    text=text,
                    frame_number=frame_numbers[index],
                    length=len(text.encode("utf-8")),
                    created_at=now,
                    updated_at=now,
                    importance_score=importance,
                    tags=list(tags[index]) if tags is not None else [],
                )
                if self._store_with_retry(chunk, embeddings[index]):
                    chunk_ids.append(chunk_id)
                    successful += 1
                else:
                    failed += 1
            self._next_chunk_id = base_id + batch_end

        total_time = time.perf_counter() - started
        stats = ProcessingStats(
            total_time=total_time,
            chunks_processed=len(chunks),
            successful_operations=successful,
            failed_operations=failed,
            avg_time_per_chunk=total_time / len(chunks) if chunks else 0.0,
            peak_memory_mb=0,
        )
        logger.info(
            "Bulk add completed: %d successful, %d failed, %.3fs",
            successful,
            failed,
            total_time,
        )
        return chunk_ids, stats

    def search_enhanced(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        context_config: ContextWindowConfig | None = None,
        filter_tags: Iterable[str] | None = None,
        min_importance: float | None = None,
    ) -> list[EnhancedSearchResult]:
        """Search, filter by tags and importance, and attach context to each hit."""
        candidates = self._vector_index.search_approximate(query_embedding, top_k * 2)
        config = context_config or ContextWindowConfig()
        wanted_tags = set(filter_tags) if filter_tags is not None else None

        results: list[EnhancedSearchResult] = []
        for hit in candidates[:top_k]:
            chunk = self._chunks.get(hit.id)
            if chunk is None:
                continue
            if wanted_tags is not None and not wanted_tags.intersection(chunk.tags):
                continue
            if min_importance is not None and chunk.importance_score < min_importance:
                continue

            results.append(
                EnhancedSearchResult(
                    result=copy.deepcopy(hit),
                    context=self.get_enhanced_context_window(chunk.id, config),
                    relevance_info=RelevanceInfo(
                        score=1.0 - hit.distance,
                        matched_terms=[],
                        importance_factor=chunk.importance_score,
                        temporal_factor=1.0,
                    ),
                )
            )
            if len(results) >= top_k:
                break
        return results

    def get_chunks_by_tags(
        self, tags: Iterable[str], require_all: bool = False
    ) -> list[ChunkMetadata]:
        """Chunks carrying all (or any) of the given tags."""
        wanted = list(tags)
        match = all if require_all else any
        return [
            copy.deepcopy(chunk)
            for chunk in self._chunks.values()
            if match(tag in chunk.tags for tag in wanted)
        ]

    def update_importance_scores(self, updates: Mapping[int, float]) -> int:
        """Set importance scores; returns how many existing chunks were updated."""
        updated = 0
        now = _utc_now()
        for chunk_id, score in updates.items():
            score = float(score)
            if not _valid_importance(score):
                raise MachineLearningError(
                    f"Importance score {score} out of range [0.0, 1.0]"
                )
            chunk = self._chunks.get(chunk_id)
            if chunk is not None:
                chunk.importance_score = score
                chunk.updated_at = now
                updated += 1
        return updated

    def get_enhanced_stats(self) -> IndexStats:
        """Statistics including importance, tag frequencies and time range."""
        chunks = list(self._chunks.values())
        total_chunks = len(chunks)
        total_frames = len(self._frame_to_chunks)

        tag_counts = Counter(tag for chunk in chunks for tag in chunk.tags)
        temporal_range = None
        if chunks:
            created = [chunk.created_at for chunk in chunks]
            temporal_range = (min(created), max(created))

        return IndexStats(
            total_chunks=total_chunks,
            total_frames=total_frames,
            avg_chunks_per_frame=total_chunks / total_frames if total_frames else 0.0,
            dimension=self.dimension,
            index_type="Enhanced HNSW",
            memory_usage_bytes=self._memory_estimate(),
            hnsw_built=True,
            avg_importance_score=(
                sum(c.importance_score for c in chunks) / total_chunks
                if total_chunks
                else 0.0
            ),
            common_tags=tag_counts.most_common(_TOP_TAGS),
            temporal_range=temporal_range,
        )