"""Tests for configuration loading, saving and camelCase key conversion."""

import json

from storymem.config.loader import convert_keys, convert_to_camel, load_config, save_config
from storymem.config.schema import Config, EmbeddingConfig


def test_convert_keys_to_snake_case():
    data = {"retrieval": {"topK": 5, "tokenBudget": 2000}, "index": {"efConstruction": 100}}

    assert convert_keys(data) == {
        "retrieval": {"top_k": 5, "token_budget": 2000},
        "index": {"ef_construction": 100},
    }


def test_convert_round_trip():
    snake_data = {"embedding": {"api_base": "http://localhost:5001/v1", "cache_ttl_seconds": 60}}
    assert convert_keys(convert_to_camel(snake_data)) == snake_data


def test_load_missing_file_returns_defaults(tmp_path):
    config = load_config(tmp_path / "absent.json")
    assert config.retrieval.top_k == 8
    assert config.chunking.chunk_size == 400
    assert config.embedding.model == "text-embedding-3-small"


def test_load_camel_case_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "logLevel": "DEBUG",
        "retrieval": {"topK": 3, "dedupWindow": 4},
        "embedding": {"model": "gemini/text-embedding-004", "queryPrefix": "search_query: "},
        "storage": {"backend": "memory"},
    }))

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.retrieval.top_k == 3
    assert config.retrieval.dedup_window == 4
    assert config.embedding.model == "gemini/text-embedding-004"
    assert config.embedding.query_prefix == "search_query: "
    assert config.storage.backend == "memory"


def test_client_rag_settings_are_migrated(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"rag": {"topK": 4, "chunkSize": 1200, "embeddingModelName": "local-e5"}}))

    config = load_config(path)

    assert config.retrieval.top_k == 4
    assert config.chunking.chunk_size == 1200
    assert config.embedding.model == "local-e5"


def test_invalid_json_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_config(path).retrieval.top_k == 8


def test_invalid_values_fall_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"retrieval": {"topK": 0}}))
    assert load_config(path).retrieval.top_k == 8


def test_save_then_load(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.retrieval.token_budget = 1234

    save_config(config, path)

    raw = json.loads(path.read_text())
    assert raw["retrieval"]["tokenBudget"] == 1234
    assert load_config(path).retrieval.token_budget == 1234


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("STORYMEM_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("STORYMEM_RETRIEVAL__TOP_K", "12")

    config = Config()

    assert config.log_level == "WARNING"
    assert config.retrieval.top_k == 12


def test_embedding_config_is_hashable():
    assert hash(EmbeddingConfig(model="a")) == hash(EmbeddingConfig(model="a"))
    assert EmbeddingConfig(model="a") != EmbeddingConfig(model="b")
