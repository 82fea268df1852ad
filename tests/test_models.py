"""Tests for data models, metric codecs and request schemas."""

from __future__ import annotations

from datetime import timezone

import pytest
from pydantic import ValidationError

from execution_memory.errors import MalformedMetric
from execution_memory.models import (
	ActionRecord,
	ExecutionRecord,
	MetricEntry,
	MetricValue,
	RelevanceFactors,
	SearchLogEntry,
	StoreExecutionRequest,
	decode_actions,
	decode_metric,
	encode_actions,
	parse_timestamp,
)


class TestParseTimestamp:
	def test_naive_is_utc(self) -> None:
		assert parse_timestamp("2025-06-01 12:00:00").tzinfo == timezone.utc

	def test_offset_preserved(self) -> None:
		parsed = parse_timestamp("2025-06-01T12:00:00+02:00")
		assert parsed.utcoffset() is not None
		assert parsed.astimezone(timezone.utc).hour == 10

	def test_garbage_raises(self) -> None:
		with pytest.raises(ValueError):
			parse_timestamp("yesterday")


class TestActions:
	def test_encode_decode(self) -> None:
		actions = [ActionRecord(type="shell", command="pytest", status="error", error="1 failed")]
		decoded = decode_actions(encode_actions(actions))
		assert decoded[0].command == "pytest"
		assert decoded[0].status == "error"
		assert decoded[0].error == "1 failed"

	def test_empty_payload(self) -> None:
		assert decode_actions(None) == []
		assert decode_actions("") == []

	def test_invalid_status_rejected(self) -> None:
		with pytest.raises(ValueError, match="invalid actions payload"):
			decode_actions('[{"type": "shell", "status": "exploded"}]')

	def test_unknown_fields_ignored(self) -> None:
		[action] = decode_actions('[{"command": "ls", "extra": 1}]')
		assert action.command == "ls"


class TestExecutionRecord:
	def test_validate_ok(self) -> None:
		ExecutionRecord(prompt="do it").validate()

	def test_validate_empty_prompt(self) -> None:
		with pytest.raises(ValueError):
			ExecutionRecord(prompt="").validate()


class TestMetricCodec:
	def test_known_key_kind_wins_over_unit(self) -> None:
		assert decode_metric("complexity", "7", "text") == MetricValue("integer", 7)

	def test_unit_kind_for_unknown_key(self) -> None:
		assert decode_metric("latency", "12.5", "ms") == MetricValue("real", 12.5)
		assert decode_metric("note", "hello", None) == MetricValue("text", "hello")

	def test_malformed_json(self) -> None:
		with pytest.raises(MalformedMetric) as exc_info:
			decode_metric("tags", "[oops", "json")
		assert exc_info.value.key == "tags"
		assert exc_info.value.raw == "[oops"

	def test_malformed_number(self) -> None:
		with pytest.raises(MalformedMetric, match="not a number"):
			decode_metric("confidence", "very", "percentage")

	@pytest.mark.parametrize("raw", ["NaN", "inf", "-Infinity", "1e309"])
	def test_non_finite_number(self, raw: str) -> None:
		with pytest.raises(MalformedMetric, match="not finite"):
			decode_metric("complexity", raw, "score")
		with pytest.raises(MalformedMetric, match="not finite"):
			decode_metric("confidence", raw, "percentage")

	def test_malformed_metric_is_value_error(self) -> None:
		with pytest.raises(ValueError):
			decode_metric("io_operations", "many")

	def test_encode(self) -> None:
		assert MetricValue.blob(["a"]).encode() == '["a"]'
		assert MetricValue.integer(3).encode() == "3"
		assert MetricValue.text("x").as_float() is None
		assert MetricValue.integer(3).as_float() == 3.0

	def test_resolved_unit_defaults_by_kind(self) -> None:
		assert MetricEntry(key="k", value=MetricValue.blob([])).resolved_unit == "json"
		assert MetricEntry(key="k", value=MetricValue.integer(1), unit="score").resolved_unit == "score"


class TestRelevanceFactors:
	def test_top(self) -> None:
		factors = RelevanceFactors(fts_score=0.9, semantic_score=0.7, recency_score=0.8)
		assert [name for name, _ in factors.top(2)] == ["fts_score", "recency_score"]


def test_search_log_query_length() -> None:
	assert SearchLogEntry(query="parser  null bug").query_length == 3


class TestStoreExecutionRequest:
	def test_minimal(self) -> None:
		request = StoreExecutionRequest(prompt="Fix it")
		record = request.to_record()
		assert record.prompt == "Fix it"
		assert request.to_metadata() is None
		assert request.to_environment() is None
		assert request.to_performance() is None

	def test_full_payload(self) -> None:
		request = StoreExecutionRequest.model_validate({
			"prompt": "Fix it",
			"timestamp": "2025-06-01T12:00:00+00:00",
			"success": True,
			"actions": [{"type": "file_operation", "command": "edit", "parameters": {"path": "a.py"}}],
			"metadata": {"tags": ["a"], "category": "bugfix", "priority": "high", "complexity": 6.6},
			"environment": {"working_directory": "/repo", "git_branch": "main"},
			"performance": {"memory_usage": 1024, "io_operations": 3},
		})
		record = request.to_record()
		assert record.timestamp == "2025-06-01T12:00:00+00:00"
		assert record.actions[0].parameters == {"path": "a.py"}
		meta = request.to_metadata()
		assert meta is not None
		assert meta.complexity == 7
		assert meta.priority == "high"
		env = request.to_environment()
		assert env is not None
		assert env.git_branch == "main"
		perf = request.to_performance()
		assert perf is not None
		assert perf.io_operations == 3

	def test_empty_prompt_rejected(self) -> None:
		with pytest.raises(ValidationError):
			StoreExecutionRequest(prompt="")

	def test_negative_duration_rejected(self) -> None:
		with pytest.raises(ValidationError):
			StoreExecutionRequest(prompt="x", duration_ms=-5)

	def test_bad_priority_rejected(self) -> None:
		with pytest.raises(ValidationError):
			StoreExecutionRequest.model_validate({"prompt": "x", "metadata": {"priority": "urgent"}})
