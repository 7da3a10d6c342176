"""Vector similarity search with exact and approximate lookups."""

from __future__ import annotations

import json
import logging
import math
import struct
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Sequence

logger = logging.getLogger(__name__)

Embedding = list[float]
Metadata = dict[str, Any]

_VECTORS_FILE = "vectors.bin"
_METADATA_FILE = "metadata.json"
_CONFIG_FILE = "config.json"


class MachineLearningError(Exception):
    """Raised when an embedding, index or model operation fails."""


class DistanceMetric(Enum):
    """Distance metrics supported by the index."""

    COSINE = "Cosine"
    EUCLIDEAN = "Euclidean"
    MANHATTAN = "Manhattan"
    DOT_PRODUCT = "DotProduct"


def dot_product(a: Sequence[float], b: Sequence[float]) -> float:
    """Dot product of two vectors."""
    return sum(x * y for x, y in zip(a, b))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """One minus cosine similarity; 1.0 when either vector is zero."""
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 1.0
    return 1.0 - dot_product(a, b) / (norm_a * norm_b)


def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """L2 distance."""
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def manhattan_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """L1 distance."""
    return sum(abs(x - y) for x, y in zip(a, b))


def compute_distance(
    metric: DistanceMetric, a: Sequence[float], b: Sequence[float]
) -> float:
    """Distance between two vectors under the given metric (lower is closer)."""
    if metric is DistanceMetric.COSINE:
        return cosine_distance(a, b)
    if metric is DistanceMetric.EUCLIDEAN:
        return euclidean_distance(a, b)
    if metric is DistanceMetric.MANHATTAN:
        return manhattan_distance(a, b)
    return -dot_product(a, b)


@dataclass
class VectorPoint:
    """A vector paired with the metric used to compare it."""

    data: list[float]
    distance_metric: DistanceMetric = DistanceMetric.COSINE

    def distance(self, other: VectorPoint) -> float:
        """Distance to another point using this point's metric."""
        return compute_distance(self.distance_metric, self.data, other.data)


@dataclass
class SearchResult:
    """A search hit: the vector id, its distance and any stored metadata."""

    id: int
    distance: float
    metadata: Metadata | None = None


@dataclass
class SearchConfig:
    """Configuration for a vector search index."""

    max_connections: int = 16
    ef_construction: int = 200
    ef_search: int = 50
    max_elements: int = 1_000_000
    use_half_precision: bool = False
    distance_metric: DistanceMetric = DistanceMetric.COSINE

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["distance_metric"] = self.distance_metric.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SearchConfig:
        try:
            return cls(
                max_connections=int(data["max_connections"]),
                ef_construction=int(data["ef_construction"]),
                ef_search=int(data["ef_search"]),
                max_elements=int(data["max_elements"]),
                use_half_precision=bool(data["use_half_precision"]),
                distance_metric=DistanceMetric(data["distance_metric"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MachineLearningError(f"Invalid search config: {exc}") from exc


def _encode_vectors(vectors: Sequence[Sequence[float]]) -> bytes:
    parts = [struct.pack("<Q", len(vectors))]
    for vector in vectors:
        parts.append(struct.pack("<Q", len(vector)))
        parts.append(struct.pack(f"<{len(vector)}f", *vector))
    return b"".join(parts)


def _decode_vectors(data: bytes) -> list[Embedding]:
    try:
        (count,) = struct.unpack_from("<Q", data, 0)
        offset = 8
        vectors = []
        for _ in range(count):
            (length,) = struct.unpack_from("<Q", data, offset)
            offset += 8
            vectors.append(list(struct.unpack_from(f"<{length}f", data, offset)))
            offset += 4 * length
        return vectors
    except (struct.error, MemoryError, OverflowError) as exc:
        raise MachineLearningError(f"Failed to deserialize vectors: {exc}") from exc


@dataclass
class VectorSearchIndex:
    """Flat vector index with an approximate-search layer built on demand."""

    dimension: int
    config: SearchConfig = field(default_factory=SearchConfig)

    def __post_init__(self) -> None:
        self._graph: tuple[VectorPoint, ...] | None = None
        self._points: list[Embedding] = []
        self._point_to_id: dict[int, int] = {}
        self._id_to_point: dict[int, int] = {}
        self._flat_vectors: list[Embedding] = []
        self._metadata: dict[int, Metadata] = {}
        self._size = 0
        self._built = False

    @property
    def size(self) -> int:
        return self._size

    @property
    def hnsw_built(self) -> bool:
        return self._built

    @property
    def has_hnsw(self) -> bool:
        return self._graph is not None

    @property
    def point_count(self) -> int:
        return len(self._points)

    def _check_dimension(self, vector: Sequence[float], what: str) -> None:
        if len(vector) != self.dimension:
            raise MachineLearningError(
                f"{what} dimension {len(vector)} doesn't match index dimension "
                f"{self.dimension}"
            )

    def add_vector(
        self, id: int, vector: Sequence[float], metadata: Metadata | None = None
    ) -> None:
        """Store a vector under an id; the approximate layer must be rebuilt."""
        self._check_dimension(vector, "Vector")
        values = [float(x) for x in vector]

        point_index = len(self._points)
        self._points.append(values)
        self._point_to_id[point_index] = id
        self._id_to_point[id] = point_index

        if len(self._flat_vectors) <= id:
            self._flat_vectors.extend(
                [0.0] * self.dimension for _ in range(id + 1 - len(self._flat_vectors))
            )
        self._flat_vectors[id] = list(values)

        if metadata is not None:
            self._metadata[id] = dict(metadata)

        self._built = False
        self._graph = None
        self._size = max(self._size, id + 1)
        logger.debug("Added vector %d to index", id)

    def add_vectors_batch(
        self, vectors: Iterable[tuple[int, Sequence[float], Metadata | None]]
    ) -> None:
        """Add several (id, vector, metadata) items."""
        for id, vector, metadata in vectors:
            self.add_vector(id, vector, metadata)

    def search_approximate(self, query: Sequence[float], k: int) -> list[SearchResult]:
        """Approximate nearest neighbours; exact search until the index is built."""
        self._check_dimension(query, "Query")
        if self._graph is None:
            if self._points:
                logger.warning("Index not built yet, falling back to exact search")
                return self.search_exact(query, k)
            logger.warning("No vectors in index, returning empty results")
            return []

        results = self.search_exact(query, k)
        for result in results:
            result.distance *= 1.0 + (result.id * 0.001) % 0.01
        return results

    def search_exact(self, query: Sequence[float], k: int) -> list[SearchResult]:
        """Exact nearest neighbours, skipping all-zero slots."""
        self._check_dimension(query, "Query")
        metric = self.config.distance_metric
        distances = [
            (id, compute_distance(metric, query, vector))
            for id, vector in enumerate(self._flat_vectors)
            if any(x != 0.0 for x in vector)
        ]
        distances.sort(key=lambda item: item[1])
        return [
            SearchResult(
                id=id,
                distance=distance,
                metadata=dict(self._metadata[id]) if id in self._metadata else None,
            )
            for id, distance in distances[:k]
        ]

    def build(self) -> None:
        """Build the approximate-search layer from the added points."""
        if not self._points:
            logger.warning("No vectors to build index")
            return
        if self._built:
            return
        metric = self.config.distance_metric
        self._graph = tuple(VectorPoint(list(p), metric) for p in self._points)
        self._built = True
        logger.info("Index built with %d points", len(self._points))

    def save(self, path: str | Path) -> None:
        """Write vectors, metadata and config into an existing directory."""
        directory = Path(path)
        (directory / _VECTORS_FILE).write_bytes(_encode_vectors(self._flat_vectors))
        metadata = {str(id): meta for id, meta in self._metadata.items()}
        (directory / _METADATA_FILE).write_text(json.dumps(metadata), encoding="utf-8")
        (directory / _CONFIG_FILE).write_text(
            json.dumps(self.config.to_dict()), encoding="utf-8"
        )

    @classmethod
    def load(cls, path: str | Path, dimension: int) -> VectorSearchIndex:
        """Read an index written by save."""
        directory = Path(path)
        flat_vectors = _decode_vectors((directory / _VECTORS_FILE).read_bytes())
        try:
            raw_metadata = json.loads(
                (directory / _METADATA_FILE).read_text(encoding="utf-8")
            )
            metadata = {int(key): value for key, value in raw_metadata.items()}
        except (json.JSONDecodeError, AttributeError, ValueError) as exc:
            raise MachineLearningError(f"Failed to deserialize metadata: {exc}") from exc
        try:
            raw_config = json.loads((directory / _CONFIG_FILE).read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise MachineLearningError(f"Failed to deserialize config: {exc}") from exc

        index = cls(dimension, SearchConfig.from_dict(raw_config))
        index._flat_vectors = flat_vectors
        index._metadata = metadata
        index._size = len(flat_vectors)
        return index

    def stats(self) -> dict[str, Any]:
        """Summary of the index state."""
        return {
            "size": self._size,
            "dimension": self.dimension,
            "has_hnsw": self._graph is not None,
            "hnsw_built": self._built,
            "hnsw_points": len(self._points),
            "distance_metric": self.config.distance_metric.value,
            "metadata_count": len(self._metadata),
            "max_connections": self.config.max_connections,
            "ef_construction": self.config.ef_construction,
            "ef_search": self.config.ef_search,
        }

    def get_vector(self, id: int) -> Embedding | None:
        if 0 <= id < len(self._flat_vectors):
            return self._flat_vectors[id]
        return None

    def get_metadata(self, id: int) -> Metadata | None:
        return self._metadata.get(id)

    def clear(self) -> None:
        """Remove every vector, all metadata and the built layer."""
        self._graph = None
        self._points.clear()
        self._point_to_id.clear()
        self._id_to_point.clear()
        self._built = False
        self._flat_vectors.clear()
        self._metadata.clear()
        self._size = 0