import pytest

from kg_rag.config import (
    EmbeddingConfig,
    IngestConfig,
    KGRagConfig,
    LoggingConfig,
    QdrantConfig,
    RetrievalConfig,
    _env,
)


def test_env_treats_empty_string_as_unset(monkeypatch):
    monkeypatch.setenv("KG_RAG_TEST_VALUE", "")
    assert _env("KG_RAG_TEST_VALUE", "fallback") == "fallback"


def test_env_casts_values(monkeypatch):
    monkeypatch.setenv("KG_RAG_TEST_INT", "42")
    monkeypatch.setenv("KG_RAG_TEST_BOOL", "false")
    assert _env("KG_RAG_TEST_INT", 0, int) == 42
    assert _env("KG_RAG_TEST_BOOL", True, bool) is False


def test_fallback_flag_read_from_environment(monkeypatch):
    monkeypatch.setenv("USE_OLLAMA_FALLBACK", "false")
    assert EmbeddingConfig().fallback_enabled is False


def test_default_namespaces(monkeypatch):
    monkeypatch.delenv("QDRANT_OPENAI_DIM", raising=False)
    monkeypatch.delenv("QDRANT_OLLAMA_DIM", raising=False)
    assert QdrantConfig().namespace_dims == {"openai": 1536, "ollama": 768}


def test_valid_config_passes(config):
    config.validate()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"ingest": IngestConfig(similarity_threshold=1.5)},
        {"retrieval": RetrievalConfig(score_threshold=-0.1)},
        {"qdrant": QdrantConfig(openai_dim=0)},
        {"logging": LoggingConfig(format="xml")},
        {"ingest": IngestConfig(max_segments=0)},
    ],
)
def test_invalid_settings_rejected(kwargs):
    with pytest.raises(ValueError):
        KGRagConfig(**kwargs).validate()


def test_ensure_directories_creates_paths(tmp_path):
    config = KGRagConfig()
    config.graph.storage_path = str(tmp_path / "graph")
    config.qdrant.location = str(tmp_path / "qdrant")

    config.ensure_directories()

    assert (tmp_path / "graph").is_dir()
    assert (tmp_path / "qdrant").is_dir()
