import pytest
import responses

from memvid.models import (
    MODEL_FILES,
    ModelConfig,
    ModelInfo,
    ModelManager,
    ModelType,
)
from memvid.search import MachineLearningError

ENDPOINT = "https://hub.example.com"
MINI_REPO = "sentence-transformers/all-MiniLM-L6-v2"


def _url(repo, file_name):
    return f"{ENDPOINT}/{repo}/resolve/main/{file_name}"


@pytest.fixture
def manager(tmp_path):
    return ModelManager(tmp_path / "cache", ENDPOINT)


def test_model_manager_creation(manager, tmp_path):
    assert manager.cache_dir.exists()
    assert manager.cache_dir == tmp_path / "cache"
    assert manager.get_model("all-MiniLM-L6-v2") is not None
    assert manager.get_model("bert-base-uncased") is not None
    assert manager.get_model("missing") is None


def test_default_models_values(manager):
    mini = manager.get_model("sentence-transformers/all-MiniLM-L6-v2")
    assert mini.name == "all-MiniLM-L6-v2"
    assert mini.model_type == ModelType.SENTENCE_TRANSFORMER
    assert mini.config.dimension == 384
    bert = manager.get_model("bert-base-uncased")
    assert bert.model_type == ModelType.BERT
    assert bert.config.dimension == 768
    assert bert.config.max_length == 512


def test_model_listing(manager):
    models = manager.list_models()
    assert len(models) >= 2
    names = [m.name for m in models]
    assert "all-MiniLM-L6-v2" in names
    assert "bert-base-uncased" in names


def test_default_cache_dir_uses_home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    manager = ModelManager()
    assert manager.cache_dir == tmp_path / ".cache" / "memvid" / "models"
    assert manager.cache_dir.is_dir()


def test_model_caching(manager):
    assert not manager.is_cached("all-MiniLM-L6-v2")
    with responses.RequestsMock() as rsps:
        for file_name in MODEL_FILES:
            rsps.add(responses.GET, _url(MINI_REPO, file_name), body=f"data:{file_name}")
        path = manager.download_model("all-MiniLM-L6-v2")
    assert path.exists()
    assert manager.is_cached("all-MiniLM-L6-v2")
    assert (path / "config.json").read_text() == "data:config.json"
    assert sorted(p.name for p in path.iterdir()) == sorted(MODEL_FILES)


def test_partial_download_succeeds(manager):
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        rsps.add(responses.GET, _url(MINI_REPO, "config.json"), body="{}")
        for file_name in MODEL_FILES[1:]:
            rsps.add(responses.GET, _url(MINI_REPO, file_name), status=404)
        path = manager.download_model("all-MiniLM-L6-v2")
    assert (path / "config.json").read_text() == "{}"
    assert not (path / "vocab.txt").exists()
    assert manager.is_cached("all-MiniLM-L6-v2")


def test_download_with_no_files_raises(manager):
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        for file_name in MODEL_FILES:
            rsps.add(responses.GET, _url("bert-base-uncased", file_name), status=500)
        with pytest.raises(MachineLearningError, match="bert-base-uncased"):
            manager.download_model("bert-base-uncased")
    assert not manager.is_cached("bert-base-uncased")


def test_download_unknown_model_raises(manager):
    with pytest.raises(MachineLearningError, match="not found"):
        manager.download_model("no-such-model")


def test_cached_model_is_not_downloaded_again(manager):
    with responses.RequestsMock() as rsps:
        for file_name in MODEL_FILES:
            rsps.add(responses.GET, _url(MINI_REPO, file_name), body="x")
        first = manager.download_model("all-MiniLM-L6-v2")
        calls = len(rsps.calls)
        second = manager.download_model("all-MiniLM-L6-v2")
        assert len(rsps.calls) == calls
    assert first == second


def test_existing_files_are_skipped(manager):
    model_dir = manager.cache_dir / "bert-base-uncased"
    model_dir.mkdir(parents=True)
    (model_dir / "config.json").write_text("local")
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        for file_name in MODEL_FILES:
            rsps.add(responses.GET, _url("bert-base-uncased", file_name), body="remote")
        manager.download_model("bert-base-uncased")
        requested = {call.request.url for call in rsps.calls}
    assert (model_dir / "config.json").read_text() == "local"
    assert _url("bert-base-uncased", "config.json") not in requested
    assert (model_dir / "vocab.txt").read_text() == "remote"


def test_custom_model_without_hub_id(manager):
    info = ModelInfo(
        name="local-model",
        model_type=ModelType.custom("mine"),
        config=ModelConfig(dimension=8, max_length=16),
    )
    manager.add_model(info)
    path = manager.download_model("local-model")
    assert path == manager.cache_dir / "local-model"
    assert path.is_dir()
    assert manager.is_cached("local-model")
    assert manager.get_model("local-model").model_type == ModelType("Custom", "mine")


def test_remove_model(manager):
    info = ModelInfo(
        name="temp-model",
        model_type=ModelType.BERT,
        config=ModelConfig(dimension=4, max_length=4),
    )
    manager.add_model(info)
    path = manager.download_model("temp-model")
    (path / "weights").write_text("w")
    manager.remove_model("temp-model")
    assert not path.exists()
    assert not manager.is_cached("temp-model")
    assert manager.get_model("temp-model").local_path is None


def test_remove_unknown_model_is_ignored(manager):
    manager.remove_model("ghost")
    assert manager.get_model("ghost") is None
    assert len(manager.list_models()) == 3


def test_model_type_str():
    assert str(ModelType.BERT) == "Bert"
    assert str(ModelType.custom("abc")) == "Custom(abc)"