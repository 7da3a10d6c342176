"""Chunk metadata, context configuration and statistics records for the index."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Union

from memvid.search import MachineLearningError, SearchResult


@dataclass(frozen=True)
class Reference:
    """A pointer to another chunk and/or frame."""

    chunk_id: int | None = None
    frame_id: int | None = None


MetadataValue = Union[
    str, float, bool, list["MetadataValue"], dict[str, "MetadataValue"], datetime, Reference
]

_FRACTION = re.compile(r"\.(\d+)")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat()
    return text.replace("+00:00", "Z")


def _parse_timestamp(text: Any) -> datetime:
    if not isinstance(text, str):
        raise MachineLearningError(f"Timestamp must be a string, got {text!r}")
    normalised = text.strip()
    if normalised.endswith(("Z", "z")):
        normalised = normalised[:-1] + "+00:00"
    # Sub-microsecond precision is dropped; fromisoformat accepts at most six digits.
    normalised = _FRACTION.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalised, count=1
    )
    try:
        parsed = datetime.fromisoformat(normalised)
    except ValueError as exc:
        raise MachineLearningError(f"Invalid timestamp {text!r}: {exc}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def metadata_to_json(value: MetadataValue) -> dict[str, Any]:
    """Encode a rich metadata value as a tagged JSON-compatible object."""
    if isinstance(value, bool):
        return {"Boolean": value}
    if isinstance(value, str):
        return {"Text": value}
    if isinstance(value, (int, float)):
        return {"Number": float(value)}
    if isinstance(value, datetime):
        return {"Timestamp": _format_timestamp(value)}
    if isinstance(value, Reference):
        return {"Reference": {"chunk_id": value.chunk_id, "frame_id": value.frame_id}}
    if isinstance(value, (list, tuple)):
        return {"Array": [metadata_to_json(item) for item in value]}
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"Metadata object keys must be strings, got {key!r}")
            encoded[key] = metadata_to_json(item)
        return {"Object": encoded}
    raise TypeError(f"Unsupported metadata value: {value!r}")


def _optional_int(value: Any, name: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MachineLearningError(f"Reference {name} must be a non-negative integer")
    return value


def metadata_from_json(data: Any) -> MetadataValue:
    """Decode a tagged JSON object produced by metadata_to_json."""
    if not isinstance(data, dict) or len(data) != 1:
        raise MachineLearningError(f"Invalid metadata value: {data!r}")
    ((tag, payload),) = data.items()
    if tag == "Text" and isinstance(payload, str):
        return payload
    if tag == "Number" and isinstance(payload, (int, float)) and not isinstance(payload, bool):
        return float(payload)
    if tag == "Boolean" and isinstance(payload, bool):
        return payload
    if tag == "Array" and isinstance(payload, list):
        return [metadata_from_json(item) for item in payload]
    if tag == "Object" and isinstance(payload, dict):
        return {str(key): metadata_from_json(item) for key, item in payload.items()}
    if tag == "Timestamp":
        return _parse_timestamp(payload)
    if tag == "Reference" and isinstance(payload, dict):
        return Reference(
            chunk_id=_optional_int(payload.get("chunk_id"), "chunk_id"),
            frame_id=_optional_int(payload.get("frame_id"), "frame_id"),
        )
    raise MachineLearningError(f"Invalid metadata value: {data!r}")


@dataclass
class ChunkMetadata:
    """A stored text chunk with its frame, timestamps, metadata and tags."""

    id: int
    text: str
    frame_number: int
    length: int
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    legacy_metadata: dict[str, Any] = field(default_factory=dict)
    importance_score: float = 0.5
    tags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible form of the chunk."""
        return {
            "id": self.id,
            "text": self.text,
            "frame_number": self.frame_number,
            "length": self.length,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
            "metadata": {key: metadata_to_json(v) for key, v in self.metadata.items()},
            "legacy_metadata": dict(self.legacy_metadata),
            "importance_score": self.importance_score,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChunkMetadata:
        """Rebuild a chunk from the form produced by to_dict."""
        try:
            metadata = data["metadata"]
            legacy = data["legacy_metadata"]
            tags = data["tags"]
            if not isinstance(metadata, dict) or not isinstance(legacy, dict):
                raise TypeError("metadata fields must be objects")
            if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
                raise TypeError("tags must be a list of strings")
            return cls(
                id=int(data["id"]),
                text=str(data["text"]),
                frame_number=int(data["frame_number"]),
                length=int(data["length"]),
                created_at=_parse_timestamp(data["created_at"]),
                updated_at=_parse_timestamp(data["updated_at"]),
                metadata={str(k): metadata_from_json(v) for k, v in metadata.items()},
                legacy_metadata=dict(legacy),
                importance_score=float(data["importance_score"]),
                tags=list(tags),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise MachineLearningError(f"Invalid chunk metadata: {exc}") from exc


@dataclass
class ContextWindowConfig:
    """How much surrounding context to gather around a search hit."""

    before: int = 2
    after: int = 2
    include_adjacent_frames: bool = True
    max_total: int | None = 10
    min_importance: float | None = None


@dataclass
class RelevanceInfo:
    """Why a search hit was considered relevant."""

    score: float
    matched_terms: list[str] = field(default_factory=list)
    importance_factor: float = 0.5
    temporal_factor: float = 1.0


@dataclass
class EnhancedSearchResult:
    """A search hit together with its context chunks and relevance details."""

    result: SearchResult
    context: list[ChunkMetadata]
    relevance_info: RelevanceInfo


@dataclass
class ProcessingStats:
    """Timing and outcome counts of a bulk operation (times in seconds)."""

    total_time: float
    chunks_processed: int
    successful_operations: int
    failed_operations: int
    avg_time_per_chunk: float
    peak_memory_mb: int = 0


@dataclass
class IndexStats:
    """Summary statistics of an index."""

    total_chunks: int
    total_frames: int
    avg_chunks_per_frame: float
    dimension: int
    index_type: str
    memory_usage_bytes: int
    hnsw_built: bool
    avg_importance_score: float
    common_tags: list[tuple[str, int]] = field(default_factory=list)
    temporal_range: tuple[datetime, datetime] | None = None