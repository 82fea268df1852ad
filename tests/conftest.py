"""Shared pytest fixtures and factory functions for execution-memory tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from execution_memory.config import MemoryConfig, StoreConfig
from execution_memory.db import Database
from execution_memory.memory import MemoryManager
from execution_memory.models import Candidate, ExecutionMetadata, ExecutionRecord

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db() -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:")


@pytest.fixture()
def config(tmp_path: Any) -> MemoryConfig:
	"""Default MemoryConfig with the store under tmp_path."""
	cfg = MemoryConfig()
	cfg.store = StoreConfig(path=str(tmp_path / "knowledge.db"))
	return cfg


@pytest.fixture()
def manager(db: Database) -> MemoryManager:
	"""MemoryManager over the in-memory db fixture."""
	return MemoryManager(db, MemoryConfig())


def make_execution(**overrides: Any) -> ExecutionRecord:
	"""Create an ExecutionRecord with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"prompt": "Refactor the config loader",
		"timestamp": NOW.isoformat(),
		"reasoning": "The loader mixes parsing and validation.",
		"outcome": "Split into parse and validate steps",
		"success": True,
		"duration_ms": 1200,
		"model_used": "sonnet",
		"tokens_used": 800,
	}
	defaults.update(overrides)
	return ExecutionRecord(**defaults)


def make_metadata(**overrides: Any) -> ExecutionMetadata:
	"""Create ExecutionMetadata with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"tags": ["config"],
		"category": "refactoring",
		"priority": "medium",
		"complexity": 5,
		"confidence": 0.7,
	}
	defaults.update(overrides)
	return ExecutionMetadata(**defaults)


def make_candidate(**overrides: Any) -> Candidate:
	"""Create a Candidate with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": 1,
		"rank": -2.0,
		"prompt": "Fix the parser",
		"timestamp": NOW.isoformat(),
		"success": True,
	}
	defaults.update(overrides)
	return Candidate(**defaults)
