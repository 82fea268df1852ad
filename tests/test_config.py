"""Tests for config loading and validation."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from execution_memory.config import (
	MemoryConfig,
	load_config,
	load_config_or_default,
	validate_config,
)
from execution_memory.scoring import DEFAULT_WEIGHTS


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "execution-memory.toml"
	toml.write_text(f"""\
[store]
path = "{tmp_path / 'store' / 'knowledge.db'}"
retention_days = 90
busy_timeout_ms = 2000

[scoring]
default_limit = 5
candidate_multiplier = 3
similar_prompt_limit = 20
prompt_prefix_chars = 40

[scoring.weights]
fts_score = 0.3
semantic_score = 0.1

[analytics]
trend_days = 14
top_n = 5
min_success_rate = 0.9
slow_duration_ms = 2500

[logging]
level = "debug"
json = true

[tracing]
enabled = true
service_name = "xm-test"
exporter = "none"

[api]
host = "0.0.0.0"
port = 9000
""")
	return toml


def test_load_full_config(full_config: Path, tmp_path: Path) -> None:
	cfg = load_config(full_config)
	assert cfg.store.resolved_path == tmp_path / "store" / "knowledge.db"
	assert cfg.store.retention_days == 90
	assert cfg.store.busy_timeout_ms == 2000
	assert cfg.scoring.default_limit == 5
	assert cfg.scoring.candidate_multiplier == 3
	assert cfg.scoring.similar_prompt_limit == 20
	assert cfg.scoring.prompt_prefix_chars == 40
	assert cfg.scoring.weights == {"fts_score": 0.3, "semantic_score": 0.1}
	assert cfg.analytics.trend_days == 14
	assert cfg.analytics.top_n == 5
	assert cfg.analytics.min_success_rate == 0.9
	assert cfg.analytics.slow_duration_ms == 2500.0
	assert cfg.logging.level == "DEBUG"
	assert cfg.logging.json is True
	assert cfg.tracing.enabled is True
	assert cfg.tracing.service_name == "xm-test"
	assert cfg.tracing.exporter == "none"
	assert cfg.api.host == "0.0.0.0"
	assert cfg.api.port == 9000


def test_defaults_when_sections_missing(tmp_path: Path) -> None:
	toml = tmp_path / "execution-memory.toml"
	toml.write_text("[store]\nretention_days = 30\n")
	cfg = load_config(toml)
	assert cfg.store.retention_days == 30
	assert cfg.store.path == ".sentient/knowledge.db"
	assert cfg.scoring.default_limit == 10
	assert cfg.scoring.candidate_multiplier == 2
	assert cfg.tracing.enabled is False
	assert cfg.api.port == 8080


def test_missing_file(tmp_path: Path) -> None:
	with pytest.raises(FileNotFoundError):
		load_config(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path) -> None:
	toml = tmp_path / "execution-memory.toml"
	toml.write_text("[store\npath = ")
	with pytest.raises(tomllib.TOMLDecodeError):
		load_config(toml)


def test_load_config_or_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.chdir(tmp_path)
	assert load_config_or_default(None).store.retention_days == 180
	(tmp_path / "execution-memory.toml").write_text("[store]\nretention_days = 7\n")
	assert load_config_or_default(None).store.retention_days == 7


def test_effective_weights_merge_defaults() -> None:
	cfg = MemoryConfig()
	cfg.scoring.weights = {"fts_score": 0.5}
	weights = cfg.scoring.effective_weights
	assert weights["fts_score"] == 0.5
	assert weights["recency_score"] == DEFAULT_WEIGHTS["recency_score"]


class TestValidateConfig:
	def test_defaults_are_clean(self, tmp_path: Path) -> None:
		cfg = MemoryConfig()
		cfg.store.path = str(tmp_path / "knowledge.db")
		assert validate_config(cfg) == []

	def test_unknown_and_negative_weights(self) -> None:
		cfg = MemoryConfig()
		cfg.scoring.weights = {"vibes_score": 0.1, "fts_score": -0.2}
		errors = [msg for level, msg in validate_config(cfg) if level == "error"]
		assert any("unknown factor: vibes_score" in m for m in errors)
		assert any("fts_score must be >= 0" in m for m in errors)

	def test_infinite_weight_is_error(self) -> None:
		cfg = MemoryConfig()
		cfg.scoring.weights = {"fts_score": float("inf")}
		errors = [msg for level, msg in validate_config(cfg) if level == "error"]
		assert any("fts_score must be >= 0, got inf" in m for m in errors)

	def test_weight_drift_is_warning(self) -> None:
		cfg = MemoryConfig()
		cfg.scoring.weights = {"fts_score": 0.5}
		issues = validate_config(cfg)
		assert ("warning", "scoring weights sum to 1.300, not 1.0") in issues

	def test_zero_weights_error(self) -> None:
		cfg = MemoryConfig()
		cfg.scoring.weights = {name: 0.0 for name in DEFAULT_WEIGHTS}
		assert any(level == "error" and "sum to zero" in msg for level, msg in validate_config(cfg))

	def test_store_and_limits(self) -> None:
		cfg = MemoryConfig()
		cfg.store.retention_days = 0
		cfg.store.busy_timeout_ms = -1
		cfg.scoring.default_limit = 0
		cfg.scoring.candidate_multiplier = 0
		messages = [msg for _, msg in validate_config(cfg)]
		assert any("retention_days" in m for m in messages)
		assert any("busy_timeout_ms" in m for m in messages)
		assert any("default_limit" in m for m in messages)
		assert any("candidate_multiplier" in m for m in messages)

	def test_tracing_exporter_and_port(self) -> None:
		cfg = MemoryConfig()
		cfg.tracing.exporter = "zipkin"
		cfg.api.port = 70000
		cfg.analytics.trend_days = 1000
		issues = validate_config(cfg)
		assert any(level == "error" and "tracing.exporter" in msg for level, msg in issues)
		assert any(level == "error" and "api.port" in msg for level, msg in issues)
		assert any(level == "warning" and "trend_days" in msg for level, msg in issues)
