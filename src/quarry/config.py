"""Quarry configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (QUARRY_GENERATION_MODEL, QUARRY_TABULAR_URL, ...)
  3. Per-project quarry.yaml  (working directory)
  4. Global ~/.quarry/config.yaml  (defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
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

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".quarry"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "quarry.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or run_timeout.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # access_token, auth_token (suffix)
    r"|^token$"                  # exactly "token" (standalone)
    r"|_secret$"                 # storage_secret, client_secret (suffix)
    r"|^secret$"                 # exactly "secret" (standalone)
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "generation", "retrieval", "chunking", "tabular", "assistant", "storage"]
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
class EmbeddingCfg:
    """Embedding model configuration (quarry.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    batch_size: int = 64


@dataclass
class GenerationCfg:
    """Chat completion configuration (quarry.yaml: generation:).

    Attributes:
        model: LiteLLM model string used for code generation, interpretation
            and answer synthesis.
        temperature: Sampling temperature. 0 keeps code generation repeatable.
        seed: Fixed seed forwarded to providers that honour it (best-effort).
    """

    model: str = "openai/gpt-4o"
    temperature: float = 0.0
    seed: int = 42


@dataclass
class RetrievalCfg:
    """Retrieval routing configuration (quarry.yaml: retrieval:)."""

    top_k: int = 5
    threshold: float = 0.1
    full_text_ceiling: int = 200_000


@dataclass
class ChunkingCfg:
    """Sliding-window chunker configuration, in characters (quarry.yaml: chunking:)."""

    chunk_size: int = 1_000
    overlap: int = 200


@dataclass
class TabularCfg:
    """External tabular execution service (quarry.yaml: tabular:)."""

    url: str = "http://localhost:5001"
    timeout: float = 60.0


@dataclass
class AssistantCfg:
    """Provider-hosted assistant and run polling (quarry.yaml: assistant:).

    Attributes:
        id: Assistant id used for thread runs. Project-scoped questions go
            through the thread path only when this is set.
        model: Model used when provisioning a new assistant.
        poll_interval: First delay between run status checks, in seconds.
        poll_max_interval: Upper bound for the backed-off delay.
        run_timeout: Maximum seconds to wait for a run to reach a terminal state.
    """

    id: str | None = None
    model: str = "gpt-4o"
    poll_interval: float = 1.0
    poll_max_interval: float = 5.0
    run_timeout: float = 120.0


@dataclass
class StorageCfg:
    """Local persistence (quarry.yaml: storage:)."""

    db: str = ".quarry.db"
    root: str = ".quarry-objects"
    url_ttl: int = 3_600


@dataclass
class QuarryConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    tabular: TabularCfg = field(default_factory=TabularCfg)
    assistant: AssistantCfg = field(default_factory=AssistantCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names.

    Global config must never store credentials; they belong in env vars.
    """

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _validate(cfg: QuarryConfig) -> None:
    """Raise ConfigError for values the pipeline cannot work with."""
    if cfg.chunking.chunk_size < 1:
        raise ConfigError("chunking.chunk_size must be >= 1")
    if not 0 <= cfg.chunking.overlap < cfg.chunking.chunk_size:
        raise ConfigError("chunking.overlap must be in [0, chunk_size)")
    if cfg.retrieval.top_k < 1:
        raise ConfigError("retrieval.top_k must be >= 1")
    if not cfg.tabular.url.startswith(("http://", "https://")):
        raise ConfigError(
            f"tabular.url must be an http(s) URL, got '{cfg.tabular.url}'\n"
            "  Example:  tabular.url: http://localhost:5001"
        )
    if cfg.assistant.run_timeout <= 0 or cfg.assistant.poll_interval <= 0:
        raise ConfigError("assistant.run_timeout and assistant.poll_interval must be > 0")


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


def _cfg_from_dict(data: dict[str, Any]) -> QuarryConfig:
    """Build a *QuarryConfig* from a merged raw YAML dict."""
    cfg = QuarryConfig()

    if "embedding" in data:
        e = data["embedding"]
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", cfg.embedding.model)),
            batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
        )

    if "generation" in data:
        g = data["generation"]
        cfg.generation = GenerationCfg(
            model=str(g.get("model", cfg.generation.model)),
            temperature=float(g.get("temperature", cfg.generation.temperature)),
            seed=int(g.get("seed", cfg.generation.seed)),
        )

    if "retrieval" in data:
        r = data["retrieval"]
        cfg.retrieval = RetrievalCfg(
            top_k=int(r.get("top_k", cfg.retrieval.top_k)),
            threshold=float(r.get("threshold", cfg.retrieval.threshold)),
            full_text_ceiling=int(
                r.get("full_text_ceiling", cfg.retrieval.full_text_ceiling)
            ),
        )

    if "chunking" in data:
        c = data["chunking"]
        cfg.chunking = ChunkingCfg(
            chunk_size=int(c.get("chunk_size", cfg.chunking.chunk_size)),
            overlap=int(c.get("overlap", cfg.chunking.overlap)),
        )

    if "tabular" in data:
        t = data["tabular"]
        cfg.tabular = TabularCfg(
            url=str(t.get("url", cfg.tabular.url)),
            timeout=float(t.get("timeout", cfg.tabular.timeout)),
        )

    if "assistant" in data:
        a = data["assistant"]
        cfg.assistant = AssistantCfg(
            id=a.get("id") or cfg.assistant.id,
            model=str(a.get("model", cfg.assistant.model)),
            poll_interval=float(a.get("poll_interval", cfg.assistant.poll_interval)),
            poll_max_interval=float(
                a.get("poll_max_interval", cfg.assistant.poll_max_interval)
            ),
            run_timeout=float(a.get("run_timeout", cfg.assistant.run_timeout)),
        )

    if "storage" in data:
        s = data["storage"]
        cfg.storage = StorageCfg(
            db=str(s.get("db", cfg.storage.db)),
            root=str(s.get("root", cfg.storage.root)),
            url_ttl=int(s.get("url_ttl", cfg.storage.url_ttl)),
        )

    return cfg


def _apply_env_overrides(cfg: QuarryConfig) -> QuarryConfig:
    """Apply QUARRY_* environment variable overrides (layer 2)."""
    if model := os.environ.get("QUARRY_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("QUARRY_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if url := os.environ.get("QUARRY_TABULAR_URL"):
        cfg.tabular.url = url
    if assistant_id := os.environ.get("QUARRY_ASSISTANT_ID"):
        cfg.assistant.id = assistant_id
    if db := os.environ.get("QUARRY_DB"):
        cfg.storage.db = db
    if root := os.environ.get("QUARRY_STORAGE_ROOT"):
        cfg.storage.root = root
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> QuarryConfig:
    """Load and return a merged *QuarryConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *quarry.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged *QuarryConfig* with env var overrides applied.

    Raises:
        ConfigError: If global config contains API-key-like fields, or a
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def write_project_config(project_dir: Path, *, overwrite: bool = False) -> Path:
    """Write a commented default ``quarry.yaml`` into *project_dir*.

    Returns:
        Path to the config file (existing file is left alone unless *overwrite*).
    """
    target = project_dir / _PROJECT_CONFIG_NAME
    if target.exists() and not overwrite:
        return target

    content = (
        "# Quarry project configuration.\n"
        "# NEVER store API keys here — use environment variables:\n"
        "#   export OPENAI_API_KEY=sk-...\n"
        "\n"
        "embedding:\n"
        "  model: openai/text-embedding-3-small\n"
        "\n"
        "generation:\n"
        "  model: openai/gpt-4o\n"
        "  temperature: 0.0\n"
        "  seed: 42\n"
        "\n"
        "tabular:\n"
        "  url: http://localhost:5001\n"
        "\n"
        "assistant:\n"
        "  # id: asst_...   (create one with: quarry assistant create)\n"
        "  run_timeout: 120\n"
    )
    target.write_text(content, encoding="utf-8")
    return target
