"""Tests for the bookrag config loader."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from bookrag.config import (
    BookragConfig,
    ConfigError,
    ModelCfg,
    load_config,
    resolve_api_config,
)
from bookrag.embed.remote import ProviderKind


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("BOOKRAG_EMBEDDING_MODEL", "BOOKRAG_RAG_MIRRORS", "BOOKRAG_DB"):
        monkeypatch.delenv(var, raising=False)


def _load(tmp_path: Path, global_path: Path | None = None) -> BookragConfig:
    return load_config(
        project_dir=tmp_path,
        global_config_path=global_path or tmp_path / "nonexistent" / "config.yaml",
    )


# ---------------------------------------------------------------------------
# Defaults: no config files present
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path) -> None:
    """No config files → all hardcoded defaults."""
    cfg = _load(tmp_path)

    assert cfg.storage.db_path == ".bookrag.db"
    assert cfg.chunking.chunk_size == 512
    assert cfg.chunking.overlap == 64
    assert cfg.chunking.min_chunk_length == 20
    assert cfg.model.name == "intfloat/multilingual-e5-small"
    assert cfg.model.mirrors == ["https://hf-mirror.com/"]
    assert cfg.indexing.local_batch_size == 8
    assert cfg.indexing.remote_batch_size == 2048
    assert cfg.retrieval.top_k == 5
    assert cfg.retrieval.per_book_top_k == 2
    assert cfg.retrieval.keyword_boost_weight == 0.08
    assert cfg.retrieval.max_query_terms == 12
    assert cfg.presets == []


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_project_overrides_global(tmp_path: Path) -> None:
    global_path = tmp_path / "global.yaml"
    _write_yaml(global_path, {"retrieval": {"top_k": 8, "per_book_top_k": 3}})
    _write_yaml(tmp_path / "bookrag.yaml", {"retrieval": {"top_k": 4}})

    cfg = _load(tmp_path, global_path)

    assert cfg.retrieval.top_k == 4
    assert cfg.retrieval.per_book_top_k == 3


def test_project_model_section(tmp_path: Path) -> None:
    _write_yaml(
        tmp_path / "bookrag.yaml",
        {"model": {"name": "org/other-model", "mirrors": [], "pipeline_load_timeout": 5}},
    )
    cfg = _load(tmp_path)
    assert cfg.model.name == "org/other-model"
    assert cfg.model.mirrors == []
    assert cfg.model.pipeline_load_timeout == 5.0
    assert cfg.model.revision == "main"


def test_env_overrides(tmp_path: Path, monkeypatch) -> None:
    _write_yaml(tmp_path / "bookrag.yaml", {"storage": {"db_path": "project.db"}})
    monkeypatch.setenv("BOOKRAG_EMBEDDING_MODEL", "env/model")
    monkeypatch.setenv("BOOKRAG_DB", "env.db")
    monkeypatch.setenv("BOOKRAG_RAG_MIRRORS", "https://m1.example/, https://hf-mirror.com/,")

    cfg = _load(tmp_path)

    assert cfg.model.name == "env/model"
    assert cfg.storage.db_path == "env.db"
    assert cfg.model.mirrors == ["https://m1.example/", "https://hf-mirror.com/"]


def test_empty_yaml_file_is_defaults(tmp_path: Path) -> None:
    (tmp_path / "bookrag.yaml").write_text("", encoding="utf-8")
    assert _load(tmp_path) == BookragConfig()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("key", ["api_key", "openai_api_key", "token", "password"])
def test_global_config_rejects_api_keys(tmp_path: Path, key: str) -> None:
    global_path = tmp_path / "global.yaml"
    _write_yaml(global_path, {"presets": [{"id": "p", key: "secret"}]})

    with pytest.raises(ConfigError, match="forbidden key"):
        _load(tmp_path, global_path)


def test_global_config_allows_key_env(tmp_path: Path) -> None:
    global_path = tmp_path / "global.yaml"
    _write_yaml(global_path, {"presets": [{"id": "p", "key_env": "MY_KEY"}]})
    assert _load(tmp_path, global_path).presets[0].key_env == "MY_KEY"


def test_unknown_top_level_key_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "bookrag.yaml", {"retreival": {"top_k": 1}})
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        cfg = _load(tmp_path)
    assert any("retreival" in str(w.message) for w in caught)
    assert cfg.retrieval.top_k == 5


@pytest.mark.parametrize(
    "preset,match",
    [
        ({"provider": "OPENAI"}, "non-empty 'id'"),
        ({"id": "local"}, "reserved"),
        ({"id": "p", "provider": "MISTRAL"}, "unknown provider"),
    ],
)
def test_bad_presets_rejected(tmp_path: Path, preset: dict, match: str) -> None:
    _write_yaml(tmp_path / "bookrag.yaml", {"presets": [preset]})
    with pytest.raises(ConfigError, match=match):
        _load(tmp_path)


def test_preset_provider_case_insensitive(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "bookrag.yaml", {"presets": [{"id": "g", "provider": "gemini"}]})
    assert _load(tmp_path).presets[0].provider == "GEMINI"


# ---------------------------------------------------------------------------
# resolve_api_config
# ---------------------------------------------------------------------------


def _cfg_with_preset(tmp_path: Path, **preset) -> BookragConfig:
    _write_yaml(
        tmp_path / "bookrag.yaml",
        {
            "presets": [
                {
                    "id": "openai-small",
                    "provider": "OPENAI",
                    "endpoint": "https://api.openai.com/v1",
                    "model": "text-embedding-3-small",
                    "key_env": "BOOKRAG_TEST_KEY",
                    **preset,
                }
            ]
        },
    )
    return _load(tmp_path)


@pytest.mark.parametrize("preset_id", [None, "", "local"])
def test_resolve_local_is_none(preset_id) -> None:
    assert resolve_api_config(BookragConfig(), preset_id) is None


def test_resolve_unknown_preset(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Unknown embedding preset 'nope'"):
        resolve_api_config(_cfg_with_preset(tmp_path), "nope")


def test_resolve_missing_key(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("BOOKRAG_TEST_KEY", raising=False)
    with pytest.raises(ConfigError, match="export BOOKRAG_TEST_KEY"):
        resolve_api_config(_cfg_with_preset(tmp_path), "openai-small")


def test_resolve_success(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BOOKRAG_TEST_KEY", "sk-live")
    api = resolve_api_config(_cfg_with_preset(tmp_path), "openai-small")
    assert api.provider is ProviderKind.OPENAI
    assert api.endpoint == "https://api.openai.com/v1"
    assert api.api_key == "sk-live"
    assert api.model == "text-embedding-3-small"


def test_resolve_preset_without_key_env(tmp_path: Path) -> None:
    api = resolve_api_config(_cfg_with_preset(tmp_path, key_env=""), "openai-small")
    assert api.api_key == ""


def test_model_cfg_is_independent_per_instance() -> None:
    a, b = ModelCfg(), ModelCfg()
    a.mirrors.append("https://x/")
    assert b.mirrors == ["https://hf-mirror.com/"]
