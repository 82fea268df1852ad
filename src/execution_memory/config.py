"""TOML configuration loader for execution-memory."""

from __future__ import annotations

import math
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from execution_memory.scoring import DEFAULT_WEIGHTS, FACTOR_NAMES

DEFAULT_CONFIG_NAME = "execution-memory.toml"


@dataclass
class StoreConfig:
	"""Execution store settings."""

	path: str = ".sentient/knowledge.db"
	retention_days: int = 180
	busy_timeout_ms: int = 5000

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path))


@dataclass
class ScoringConfig:
	"""Relevance scoring settings."""

	default_limit: int = 10
	candidate_multiplier: int = 2  # FTS candidates fetched per requested result
	similar_prompt_limit: int = 10
	prompt_prefix_chars: int = 50
	weights: dict[str, float] = field(default_factory=dict)  # partial overrides

	@property
	def effective_weights(self) -> dict[str, float]:
		return {**DEFAULT_WEIGHTS, **self.weights}


@dataclass
class AnalyticsConfig:
	"""Thresholds for the analytics insight rules."""

	trend_days: int = 30
	top_n: int = 10
	min_success_rate: float = 0.8
	slow_duration_ms: float = 5000.0
	high_growth_rate: float = 50.0
	min_metrics_per_execution: float = 0.5
	high_complexity: int = 7
	high_complexity_share: float = 0.3
	large_store_bytes: int = 100 * 1024 * 1024


@dataclass
class LoggingConfig:
	"""Log output settings."""

	level: str = "INFO"
	json: bool = False


@dataclass
class TracingConfig:
	"""OpenTelemetry tracing settings."""

	enabled: bool = False
	service_name: str = "execution-memory"
	exporter: str = "console"  # console | otlp | none
	otlp_endpoint: str = "http://localhost:4317"


@dataclass
class ApiConfig:
	"""HTTP API settings."""

	host: str = "127.0.0.1"
	port: int = 8080


@dataclass
class MemoryConfig:
	"""Top-level execution-memory configuration."""

	store: StoreConfig = field(default_factory=StoreConfig)
	scoring: ScoringConfig = field(default_factory=ScoringConfig)
	analytics: AnalyticsConfig = field(default_factory=AnalyticsConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)
	tracing: TracingConfig = field(default_factory=TracingConfig)
	api: ApiConfig = field(default_factory=ApiConfig)


def _build_store(data: dict[str, Any]) -> StoreConfig:
	sc = StoreConfig()
	if "path" in data:
		sc.path = str(data["path"])
	if "retention_days" in data:
		sc.retention_days = int(data["retention_days"])
	if "busy_timeout_ms" in data:
		sc.busy_timeout_ms = int(data["busy_timeout_ms"])
	return sc


def _build_scoring(data: dict[str, Any]) -> ScoringConfig:
	sc = ScoringConfig()
	for key in ("default_limit", "candidate_multiplier", "similar_prompt_limit", "prompt_prefix_chars"):
		if key in data:
			setattr(sc, key, int(data[key]))
	if "weights" in data:
		sc.weights = {str(k): float(v) for k, v in data["weights"].items()}
	return sc


def _build_analytics(data: dict[str, Any]) -> AnalyticsConfig:
	ac = AnalyticsConfig()
	for key in ("trend_days", "top_n", "high_complexity", "large_store_bytes"):
		if key in data:
			setattr(ac, key, int(data[key]))
	for key in (
		"min_success_rate", "slow_duration_ms", "high_growth_rate",
		"min_metrics_per_execution", "high_complexity_share",
	):
		if key in data:
			setattr(ac, key, float(data[key]))
	return ac


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	lc = LoggingConfig()
	if "level" in data:
		lc.level = str(data["level"]).upper()
	if "json" in data:
		lc.json = bool(data["json"])
	return lc


def _build_tracing(data: dict[str, Any]) -> TracingConfig:
	tc = TracingConfig()
	if "enabled" in data:
		tc.enabled = bool(data["enabled"])
	if "service_name" in data:
		tc.service_name = str(data["service_name"])
	if "exporter" in data:
		tc.exporter = str(data["exporter"])
	if "otlp_endpoint" in data:
		tc.otlp_endpoint = str(data["otlp_endpoint"])
	return tc


def _build_api(data: dict[str, Any]) -> ApiConfig:
	ac = ApiConfig()
	if "host" in data:
		ac.host = str(data["host"])
	if "port" in data:
		ac.port = int(data["port"])
	return ac


def load_config(path: str | Path) -> MemoryConfig:
	"""Load an execution-memory.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed MemoryConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	mc = MemoryConfig()
	if "store" in data:
		mc.store = _build_store(data["store"])
	if "scoring" in data:
		mc.scoring = _build_scoring(data["scoring"])
	if "analytics" in data:
		mc.analytics = _build_analytics(data["analytics"])
	if "logging" in data:
		mc.logging = _build_logging(data["logging"])
	if "tracing" in data:
		mc.tracing = _build_tracing(data["tracing"])
	if "api" in data:
		mc.api = _build_api(data["api"])
	return mc


def load_config_or_default(path: str | Path | None) -> MemoryConfig:
	"""Load path if given; otherwise the default config file if present, else defaults."""
	if path is not None:
		return load_config(path)
	default = Path(DEFAULT_CONFIG_NAME)
	if default.exists():
		return load_config(default)
	return MemoryConfig()


def validate_config(config: MemoryConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded MemoryConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. weight overrides name known factors and are non-negative
	for name, value in config.scoring.weights.items():
		if name not in FACTOR_NAMES:
			issues.append(("error", f"scoring.weights has unknown factor: {name}"))
		elif value < 0 or not math.isfinite(value):
			issues.append(("error", f"scoring.weights.{name} must be >= 0, got {value}"))

	# 2. weights are not renormalised, so flag drift from 1.0
	total = sum(v for k, v in config.scoring.effective_weights.items() if k in FACTOR_NAMES)
	if total <= 0:
		issues.append(("error", "scoring weights sum to zero; every relevance score would be 0.0"))
	elif not math.isclose(total, 1.0, abs_tol=1e-6):
		issues.append(("warning", f"scoring weights sum to {total:.3f}, not 1.0"))

	# 3. store settings
	if config.store.retention_days <= 0:
		issues.append(("error", f"store.retention_days must be positive: {config.store.retention_days}"))
	if config.store.busy_timeout_ms < 0:
		issues.append(("error", f"store.busy_timeout_ms is negative: {config.store.busy_timeout_ms}"))
	store_parent = config.store.resolved_path.parent
	if store_parent.exists() and not os.access(store_parent, os.W_OK):
		issues.append(("error", f"store directory is not writable: {store_parent}"))

	# 4. scoring limits
	if config.scoring.default_limit <= 0:
		issues.append(("error", f"scoring.default_limit must be positive: {config.scoring.default_limit}"))
	if config.scoring.candidate_multiplier < 1:
		issues.append(("warning", f"scoring.candidate_multiplier below 1: {config.scoring.candidate_multiplier}"))
	if config.scoring.prompt_prefix_chars <= 0:
		issues.append(("warning", "scoring.prompt_prefix_chars is not positive; success scores fall back to defaults"))

	# 5. tracing exporter
	if config.tracing.exporter not in ("console", "otlp", "none"):
		issues.append(("error", f"tracing.exporter must be console, otlp or none: {config.tracing.exporter}"))

	# 6. suspicious values
	if config.analytics.trend_days > 365:
		issues.append(("warning", f"analytics.trend_days is very high: {config.analytics.trend_days}"))
	if not 0 < config.api.port < 65536:
		issues.append(("error", f"api.port out of range: {config.api.port}"))

	return issues
