"""Tests for quarry config loader."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from quarry.config import ConfigError, QuarryConfig, load_config, write_project_config

_ENV_VARS = (
    "QUARRY_GENERATION_MODEL",
    "QUARRY_EMBEDDING_MODEL",
    "QUARRY_TABULAR_URL",
    "QUARRY_ASSISTANT_ID",
    "QUARRY_DB",
    "QUARRY_STORAGE_ROOT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def _write_yaml(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(data), encoding="utf-8")


def _load(tmp_path: Path, global_path: Path | None = None) -> QuarryConfig:
    return load_config(
        project_dir=tmp_path,
        global_config_path=global_path or tmp_path / "missing" / "config.yaml",
    )


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_defaults_when_no_files(tmp_path: Path) -> None:
    cfg = _load(tmp_path)

    assert cfg.generation.model == "openai/gpt-4o"
    assert cfg.generation.temperature == 0.0
    assert cfg.generation.seed == 42
    assert cfg.retrieval.top_k == 5
    assert cfg.retrieval.threshold == pytest.approx(0.1)
    assert cfg.retrieval.full_text_ceiling == 200_000
    assert cfg.chunking.chunk_size == 1_000
    assert cfg.chunking.overlap == 200
    assert cfg.tabular.url == "http://localhost:5001"
    assert cfg.assistant.id is None
    assert cfg.storage.db == ".quarry.db"


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_project_overrides_global(tmp_path: Path) -> None:
    global_path = tmp_path / "global" / "config.yaml"
    _write_yaml(global_path, {"generation": {"model": "openai/gpt-4o-mini", "seed": 7}})
    _write_yaml(tmp_path / "quarry.yaml", {"generation": {"model": "anthropic/claude-3-5-sonnet"}})

    cfg = _load(tmp_path, global_path)

    assert cfg.generation.model == "anthropic/claude-3-5-sonnet"
    assert cfg.generation.seed == 7  # deep merge keeps the global value


def test_env_overrides_files(tmp_path: Path, monkeypatch) -> None:
    _write_yaml(tmp_path / "quarry.yaml", {"tabular": {"url": "http://files:1"}})
    monkeypatch.setenv("QUARRY_TABULAR_URL", "http://env:2")
    monkeypatch.setenv("QUARRY_ASSISTANT_ID", "asst_env")

    cfg = _load(tmp_path)

    assert cfg.tabular.url == "http://env:2"
    assert cfg.assistant.id == "asst_env"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def test_global_config_rejects_api_key(tmp_path: Path) -> None:
    global_path = tmp_path / "global" / "config.yaml"
    _write_yaml(global_path, {"generation": {"api_key": "sk-123"}})

    with pytest.raises(ConfigError, match="api_key"):
        _load(tmp_path, global_path)


def test_global_config_rejects_storage_secret(tmp_path: Path) -> None:
    global_path = tmp_path / "global" / "config.yaml"
    _write_yaml(global_path, {"storage": {"signing_secret": "x"}})

    with pytest.raises(ConfigError):
        _load(tmp_path, global_path)


def test_overlap_must_be_below_chunk_size(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "quarry.yaml", {"chunking": {"chunk_size": 100, "overlap": 100}})

    with pytest.raises(ConfigError, match="overlap"):
        _load(tmp_path)


def test_tabular_url_must_be_http(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "quarry.yaml", {"tabular": {"url": "file:///etc/passwd"}})

    with pytest.raises(ConfigError, match="tabular.url"):
        _load(tmp_path)


def test_unknown_section_warns(tmp_path: Path) -> None:
    _write_yaml(tmp_path / "quarry.yaml", {"delivery": {"output": "x.md"}})

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        _load(tmp_path)

    assert any("delivery" in str(w.message) for w in caught)


# ---------------------------------------------------------------------------
# write_project_config
# ---------------------------------------------------------------------------


def test_write_project_config_round_trips(tmp_path: Path) -> None:
    path = write_project_config(tmp_path)

    assert path.name == "quarry.yaml"
    cfg = _load(tmp_path)
    assert cfg.generation.seed == 42
    assert cfg.tabular.url == "http://localhost:5001"


def test_write_project_config_keeps_existing(tmp_path: Path) -> None:
    (tmp_path / "quarry.yaml").write_text("generation:\n  seed: 1\n", encoding="utf-8")

    write_project_config(tmp_path)

    assert "seed: 1" in (tmp_path / "quarry.yaml").read_text(encoding="utf-8")
