"""bookrag configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (BOOKRAG_EMBEDDING_MODEL, BOOKRAG_RAG_MIRRORS, BOOKRAG_DB)
  3. Per-project bookrag.yaml
  4. Global ~/.bookrag/config.yaml  (no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; remote presets name the
environment variable that holds their key (``key_env``).
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from bookrag.embed.remote import ApiConfig, ProviderKind

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".bookrag"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "bookrag.yaml"

LOCAL_PRESET_ID = "local"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate keys like key_env, top_k, max_query_terms.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "chunking", "model", "indexing", "retrieval", "presets"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Vector store location (bookrag.yaml: storage:)."""

    db_path: str = ".bookrag.db"


@dataclass
class ChunkingCfg:
    """Window geometry in sanitized characters (bookrag.yaml: chunking:)."""

    chunk_size: int = 512
    overlap: int = 64
    min_chunk_length: int = 20


@dataclass
class ModelCfg:
    """On-device embedding model and its download hosts (bookrag.yaml: model:).

    Attributes:
        name: Hugging Face repo id of the sentence-embedding model.
        revision: Branch / tag / commit to resolve files from.
        mirrors: Extra hosts tried after the canonical host and env mirrors.
        healthcheck_files: Small JSON files fetched before each full load.
        host_check_timeout: Seconds allowed per health-check request.
        pipeline_load_timeout: Seconds allowed for the snapshot download; the
            download process is killed when it runs over.
        cache_dir: Model cache directory (None → huggingface_hub default).
    """

    name: str = "intfloat/multilingual-e5-small"
    revision: str = "main"
    canonical_host: str = "https://huggingface.co/"
    mirrors: list[str] = field(default_factory=lambda: ["https://hf-mirror.com/"])
    healthcheck_files: list[str] = field(
        default_factory=lambda: ["config.json", "tokenizer_config.json"]
    )
    host_check_timeout: float = 15.0
    pipeline_load_timeout: float = 60.0
    cache_dir: str | None = None
    event_limit: int = 100


@dataclass
class IndexingCfg:
    """Batch sizes for the incremental indexer (bookrag.yaml: indexing:)."""

    local_batch_size: int = 8
    remote_batch_size: int = 2048


@dataclass
class RetrievalCfg:
    """Retrieval tuning (bookrag.yaml: retrieval:)."""

    top_k: int = 5
    per_book_top_k: int = 2
    keyword_boost_weight: float = 0.08
    max_query_terms: int = 12


@dataclass
class PresetCfg:
    """A named remote embedding API configuration (bookrag.yaml: presets[]).

    Attributes:
        id: Preset identifier recorded in each book's index meta.
        provider: One of OPENAI, DEEPSEEK, GEMINI, CLAUDE, CUSTOM.
        endpoint: API base URL (e.g. https://api.openai.com/v1).
        model: Embedding model name at that endpoint.
        key_env: Name of the environment variable holding the API key.
    """

    id: str
    provider: str = "OPENAI"
    endpoint: str = ""
    model: str = ""
    key_env: str = ""


@dataclass
class BookragConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    model: ModelCfg = field(default_factory=ModelCfg)
    indexing: IndexingCfg = field(default_factory=IndexingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    presets: list[PresetCfg] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and reference the variable\n"
                        f"  from the preset instead:  key_env: MY_EMBEDDING_KEY"
                    )
                _scan(v, full)
        elif isinstance(obj, list):
            for i, item in enumerate(obj):
                _scan(item, f"{path}[{i}]")

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _parse_preset(raw: dict[str, Any]) -> PresetCfg:
    preset_id = str(raw.get("id", "")).strip()
    if not preset_id:
        raise ConfigError("Every entry in presets: needs a non-empty 'id'.")
    if preset_id == LOCAL_PRESET_ID:
        raise ConfigError(f"Preset id '{LOCAL_PRESET_ID}' is reserved for the on-device model.")
    provider = str(raw.get("provider", "OPENAI")).upper()
    if provider not in ProviderKind.__members__:
        raise ConfigError(
            f"Preset '{preset_id}' has unknown provider '{provider}'.\n"
            f"  Use one of: {', '.join(ProviderKind.__members__)}"
        )
    return PresetCfg(
        id=preset_id,
        provider=provider,
        endpoint=str(raw.get("endpoint", "")),
        model=str(raw.get("model", "")),
        key_env=str(raw.get("key_env", "")),
    )


def _cfg_from_dict(data: dict[str, Any]) -> BookragConfig:
    """Build a *BookragConfig* from a merged raw YAML dict."""
    cfg = BookragConfig()

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(db_path=str(s.get("db_path", cfg.storage.db_path)))

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=int(c.get("overlap", cfg.chunking.overlap)),
            min_chunk_length=int(c.get("min_chunk_length", cfg.chunking.min_chunk_length)),
        )

    if "model" in data:
        m = data["model"]
        d = cfg.model
        cfg.model = ModelCfg(
            name=str(m.get("name", d.name)),
            revision=str(m.get("revision", d.revision)),
            canonical_host=str(m.get("canonical_host", d.canonical_host)),
            mirrors=[str(h) for h in m.get("mirrors", d.mirrors)],
            healthcheck_files=[str(f) for f in m.get("healthcheck_files", d.healthcheck_files)],
            host_check_timeout=float(m.get("host_check_timeout", d.host_check_timeout)),
            pipeline_load_timeout=float(m.get("pipeline_load_timeout", d.pipeline_load_timeout)),
            cache_dir=m.get("cache_dir") or d.cache_dir,
            event_limit=int(m.get("event_limit", d.event_limit)),
        )

    if "indexing" in data:
        i = data["indexing"]
        cfg.indexing = IndexingCfg(
            local_batch_size=int(i.get("local_batch_size", cfg.indexing.local_batch_size)),
            remote_batch_size=int(i.get("remote_batch_size", cfg.indexing.remote_batch_size)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            per_book_top_k=int(r.get("per_book_top_k", cfg.retrieval.per_book_top_k)),
            keyword_boost_weight=float(
                r.get("keyword_boost_weight", cfg.retrieval.keyword_boost_weight)
            ),
            max_query_terms=int(r.get("max_query_terms", cfg.retrieval.max_query_terms)),
        )

    if "presets" in data:
        cfg.presets = [_parse_preset(p) for p in data["presets"] or []]

    return cfg


def _apply_env_overrides(cfg: BookragConfig) -> BookragConfig:
    """Apply BOOKRAG_* environment variable overrides (layer 2)."""
    if model := os.environ.get("BOOKRAG_EMBEDDING_MODEL"):
        cfg.model.name = model
    if db_path := os.environ.get("BOOKRAG_DB"):
        cfg.storage.db_path = db_path
    if mirrors := os.environ.get("BOOKRAG_RAG_MIRRORS"):
        env_mirrors = [m.strip() for m in mirrors.split(",") if m.strip()]
        # Env mirrors are tried before configured ones.
        cfg.model.mirrors = env_mirrors + [m for m in cfg.model.mirrors if m not in env_mirrors]
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> BookragConfig:
    """Load and return a merged *BookragConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *bookrag.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields or a
            preset is malformed.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    return _apply_env_overrides(cfg)


def resolve_api_config(cfg: BookragConfig, preset_id: str | None) -> ApiConfig | None:
    """Map a preset id to its remote API configuration.

    Returns None for the on-device model (no id, or ``local``).

    Raises:
        ConfigError: If the preset is unknown or its key variable is unset.
    """
    if not preset_id or preset_id == LOCAL_PRESET_ID:
        return None

    preset = next((p for p in cfg.presets if p.id == preset_id), None)
    if preset is None:
        raise ConfigError(
            f"Unknown embedding preset '{preset_id}'.\n"
            f"  Define it under presets: in {_PROJECT_CONFIG_NAME}."
        )

    api_key = os.environ.get(preset.key_env, "") if preset.key_env else ""
    if preset.key_env and not api_key:
        raise ConfigError(
            f"No API key for preset '{preset_id}'.\n"
            f"  Set:  export {preset.key_env}=..."
        )

    return ApiConfig(
        provider=ProviderKind[preset.provider],
        endpoint=preset.endpoint,
        api_key=api_key,
        model=preset.model,
    )
