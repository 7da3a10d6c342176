"""Downloading, caching and bookkeeping of embedding models."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import ClassVar

import requests

from memvid.search import MachineLearningError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://huggingface.co"
DEFAULT_TIMEOUT = 60.0
MODEL_FILES = (
    "config.json",
    "tokenizer.json",
    "tokenizer_config.json",
    "model.safetensors",
    "vocab.txt",
)
ESSENTIAL_FILES = ("config.json",)
_CHUNK_SIZE = 1 << 16


@dataclass(frozen=True)
class ModelType:
    """Kind of model: a sentence transformer, a BERT model or a named custom kind."""

    kind: str
    custom_name: str | None = None

    SENTENCE_TRANSFORMER: ClassVar[ModelType]
    BERT: ClassVar[ModelType]

    @classmethod
    def custom(cls, name: str) -> ModelType:
        return cls("Custom", name)

    def __str__(self) -> str:
        if self.custom_name is not None:
            return f"{self.kind}({self.custom_name})"
        return self.kind


ModelType.SENTENCE_TRANSFORMER = ModelType("SentenceTransformer")
ModelType.BERT = ModelType("Bert")


@dataclass
class ModelConfig:
    """Shape and cache state of a model."""

    dimension: int
    max_length: int
    cached: bool = False
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class ModelInfo:
    """A registered model and where its files live."""

    name: str
    model_type: ModelType
    config: ModelConfig
    local_path: Path | None = None
    hub_id: str | None = None


def _default_cache_dir() -> Path:
    home = os.environ.get("HOME", ".")
    return Path(home) / ".cache" / "memvid" / "models"


def _default_models() -> list[tuple[str, ModelInfo]]:
    mini_lm = ModelInfo(
        name="all-MiniLM-L6-v2",
        model_type=ModelType.SENTENCE_TRANSFORMER,
        hub_id="sentence-transformers/all-MiniLM-L6-v2",
        config=ModelConfig(dimension=384, max_length=384),
    )
    bert_base = ModelInfo(
        name="bert-base-uncased",
        model_type=ModelType.BERT,
        hub_id="bert-base-uncased",
        config=ModelConfig(dimension=768, max_length=512),
    )
    return [
        ("all-MiniLM-L6-v2", mini_lm),
        ("sentence-transformers/all-MiniLM-L6-v2", mini_lm),
        ("bert-base-uncased", bert_base),
    ]


def _copy_info(info: ModelInfo) -> ModelInfo:
    return replace(info, config=replace(info.config, params=dict(info.config.params)))


def _has_essential_files(model_dir: Path) -> bool:
    for name in ESSENTIAL_FILES:
        path = model_dir / name
        if not path.is_file() or path.stat().st_size == 0:
            return False
    return True


class ModelManager:
    """Registry of models with a local download cache."""

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        endpoint: str | None = None,
    ) -> None:
        self.cache_dir = Path(cache_dir) if cache_dir is not None else _default_cache_dir()
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.endpoint = (endpoint or DEFAULT_ENDPOINT).rstrip("/")
        self.timeout = DEFAULT_TIMEOUT
        self._session = requests.Session()
        self._models: dict[str, ModelInfo] = {
            key: _copy_info(info) for key, info in _default_models()
        }

    def get_model(self, name: str) -> ModelInfo | None:
        return self._models.get(name)

    def list_models(self) -> list[ModelInfo]:
        return list(self._models.values())

    def is_cached(self, name: str) -> bool:
        model = self._models.get(name)
        return model is not None and model.config.cached and model.local_path is not None

    def download_model(self, name: str) -> Path:
        """Fetch a model's files into the cache and return their directory."""
        model = self._models.get(name)
        if model is None:
            raise MachineLearningError(f"Model '{name}' not found")

        if model.local_path is not None and model.local_path.exists():
            if _has_essential_files(model.local_path):
                logger.info("Model '%s' already cached at %s", name, model.local_path)
                return model.local_path

        model_dir = self.cache_dir / name
        model_dir.mkdir(parents=True, exist_ok=True)

        if model.hub_id is None:
            logger.warning("No hub id for model '%s', creating placeholder", name)
            model.local_path = model_dir
            model.config.cached = True
            return model_dir

        logger.info("Downloading model '%s' from hub: %s", name, model.hub_id)
        downloaded_any = False
        for file_name in MODEL_FILES:
            try:
                self._download_file(model.hub_id, file_name, model_dir)
            except MachineLearningError as exc:
                logger.warning("Failed to download %s/%s: %s", model.hub_id, file_name, exc)
            else:
                downloaded_any = True

        if not downloaded_any:
            raise MachineLearningError(f"Failed to download model '{name}'")

        model.local_path = model_dir
        model.config.cached = True
        return model_dir

    def _download_file(self, repo_id: str, file_name: str, target_dir: Path) -> None:
        target = target_dir / file_name
        if target.is_file() and target.stat().st_size > 0:
            return

        url = f"{self.endpoint}/{repo_id}/resolve/main/{file_name}"
        partial = target.with_name(target.name + ".part")
        try:
            with self._session.get(url, stream=True, timeout=self.timeout) as response:
                response.raise_for_status()
                with partial.open("wb") as out:
                    for chunk in response.iter_content(_CHUNK_SIZE):
                        out.write(chunk)
            partial.replace(target)
        except (requests.RequestException, OSError) as exc:
            partial.unlink(missing_ok=True)
            raise MachineLearningError(f"Failed to download {file_name}: {exc}") from exc

    def add_model(self, model_info: ModelInfo) -> None:
        self._models[model_info.name] = model_info

    def remove_model(self, name: str) -> None:
        """Delete a model's cached files; unknown names are ignored."""
        model = self._models.get(name)
        if model is None:
            return
        if model.local_path is not None and model.local_path.exists():
            shutil.rmtree(model.local_path)
        model.local_path = None
        model.config.cached = False