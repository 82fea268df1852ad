"""Data models for the execution memory store."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from execution_memory.errors import MalformedMetric

ActionStatus = Literal["pending", "success", "error", "cancelled"]
Priority = Literal["low", "medium", "high", "critical"]
MetricKind = Literal["text", "integer", "real", "json"]

PRIORITIES: tuple[str, ...] = ("low", "medium", "high", "critical")


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
	"""Parse a stored ISO timestamp, treating naive values as UTC."""
	text = value.strip().replace(" ", "T", 1)
	parsed = datetime.fromisoformat(text)
	if parsed.tzinfo is None:
		parsed = parsed.replace(tzinfo=timezone.utc)
	return parsed


# -- JSON payload schemas --


class ActionPayload(BaseModel, extra="ignore"):
	"""Pydantic schema for one entry of the JSON-encoded actions column."""

	type: str = ""
	command: str = ""
	parameters: dict[str, Any] = Field(default_factory=dict)
	timestamp: str = ""
	duration_ms: int = Field(default=0, ge=0)
	status: ActionStatus = "pending"
	output: str | None = None
	error: str | None = None


ACTION_LIST = TypeAdapter(list[ActionPayload])
TAG_LIST = TypeAdapter(list[str])


@dataclass
class ActionRecord:
	"""One tool invocation within an execution."""

	type: str = ""
	command: str = ""
	parameters: dict[str, Any] = field(default_factory=dict)
	timestamp: str = field(default_factory=_now_iso)
	duration_ms: int = 0
	status: ActionStatus = "pending"
	output: str | None = None
	error: str | None = None

	def to_payload(self) -> ActionPayload:
		return ActionPayload(
			type=self.type,
			command=self.command,
			parameters=self.parameters,
			timestamp=self.timestamp,
			duration_ms=self.duration_ms,
			status=self.status,
			output=self.output,
			error=self.error,
		)

	@classmethod
	def from_payload(cls, payload: ActionPayload) -> ActionRecord:
		return cls(
			type=payload.type,
			command=payload.command,
			parameters=dict(payload.parameters),
			timestamp=payload.timestamp,
			duration_ms=payload.duration_ms,
			status=payload.status,
			output=payload.output,
			error=payload.error,
		)


def encode_actions(actions: list[ActionRecord]) -> str:
	return ACTION_LIST.dump_json([a.to_payload() for a in actions]).decode()


def decode_actions(raw: str | None) -> list[ActionRecord]:
	"""Decode the actions column. Raises ValueError on malformed payloads."""
	if not raw:
		return []
	try:
		payloads = ACTION_LIST.validate_json(raw)
	except ValidationError as exc:
		raise ValueError(f"invalid actions payload: {exc.error_count()} error(s)") from exc
	return [ActionRecord.from_payload(p) for p in payloads]


@dataclass
class ExecutionRecord:
	"""A single completed agent task execution."""

	prompt: str = ""
	id: int | None = None
	timestamp: str = field(default_factory=_now_iso)
	plan: str | None = None
	reasoning: str | None = None
	actions: list[ActionRecord] = field(default_factory=list)
	code_changes: str | None = None
	outcome: str | None = None
	success: bool = False
	duration_ms: int = 0
	model_used: str | None = None
	tokens_used: int | None = None

	def validate(self) -> None:
		if not self.prompt or not self.prompt.strip():
			raise ValueError("ExecutionRecord.prompt must be non-empty")
		if self.duration_ms < 0:
			raise ValueError(f"ExecutionRecord.duration_ms must be >= 0, got {self.duration_ms}")


# -- Metrics --


@dataclass(frozen=True)
class MetricValue:
	"""Tagged metric value: text | integer | real | json."""

	kind: MetricKind
	value: Any

	@classmethod
	def text(cls, value: str) -> MetricValue:
		return cls("text", str(value))

	@classmethod
	def integer(cls, value: int) -> MetricValue:
		return cls("integer", int(value))

	@classmethod
	def real(cls, value: float) -> MetricValue:
		return cls("real", float(value))

	@classmethod
	def blob(cls, value: Any) -> MetricValue:
		return cls("json", value)

	def encode(self) -> str:
		if self.kind == "json":
			return json.dumps(self.value)
		return str(self.value)

	def as_float(self) -> float | None:
		if self.kind in ("integer", "real"):
			return float(self.value)
		return None


# Fixed kinds for well-known keys; everything else falls back to the unit tag.
KEY_KINDS: dict[str, MetricKind] = {
	"tags": "json",
	"category": "text",
	"priority": "text",
	"complexity": "integer",
	"confidence": "real",
	"session_id": "text",
	"parent_execution_id": "integer",
	"working_directory": "text",
	"git_branch": "text",
	"git_commit": "text",
	"python_version": "text",
	"platform": "text",
	"memory_usage": "real",
	"cpu_time": "real",
	"io_operations": "integer",
	"network_calls": "integer",
}

UNIT_KINDS: dict[str, MetricKind] = {
	"text": "text",
	"json": "json",
	"integer": "integer",
	"real": "real",
	"score": "integer",
	"id": "integer",
	"count": "integer",
	"bytes": "real",
	"ms": "real",
	"microseconds": "real",
	"percentage": "real",
}

# Unit tag written for each kind when the caller gives none.
DEFAULT_UNITS: dict[MetricKind, str] = {
	"text": "text",
	"integer": "count",
	"real": "real",
	"json": "json",
}


def decode_metric(key: str, raw: str, unit: str | None = None) -> MetricValue:
	"""Decode a stored metric string into a MetricValue.

	Raises MalformedMetric if the string does not parse as the expected kind.
	"""
	kind = KEY_KINDS.get(key) or UNIT_KINDS.get(unit or "", "text")
	if kind == "text":
		return MetricValue.text(raw)
	if kind == "json":
		try:
			return MetricValue.blob(json.loads(raw))
		except (json.JSONDecodeError, TypeError) as exc:
			raise MalformedMetric(key, raw, f"invalid JSON ({exc})") from exc
	try:
		number = float(raw)
	except (TypeError, ValueError) as exc:
		raise MalformedMetric(key, raw, f"not a number ({exc})") from exc
	if not math.isfinite(number):
		raise MalformedMetric(key, raw, "not finite")
	if kind == "integer":
		return MetricValue.integer(int(number))
	return MetricValue.real(number)


@dataclass
class MetricEntry:
	"""A typed key/value attribute attached to an execution."""

	key: str = ""
	value: MetricValue = field(default_factory=lambda: MetricValue.text(""))
	unit: str = ""
	execution_id: int | None = None
	timestamp: str = field(default_factory=_now_iso)
	id: int | None = None

	@property
	def resolved_unit(self) -> str:
		return self.unit or DEFAULT_UNITS[self.value.kind]


@dataclass
class MemoryLink:
	"""A searchable context link (file, tag, category, outcome) for an execution."""

	context_type: str = ""
	context_path: str = ""
	context_data: dict[str, Any] = field(default_factory=dict)
	relevance_score: float = 0.0
	execution_id: int | None = None
	created_at: str = field(default_factory=_now_iso)
	id: int | None = None


@dataclass
class ExecutionMetadata:
	"""Structured metadata stored as metric entries."""

	tags: list[str] = field(default_factory=list)
	category: str = "general"
	priority: Priority = "medium"
	complexity: int = 5  # 1-10
	confidence: float = 0.5  # 0-1


@dataclass
class EnvironmentInfo:
	"""Environment facts captured alongside an execution."""

	working_directory: str = ""
	git_branch: str | None = None
	git_commit: str | None = None
	python_version: str = ""
	platform: str = ""


@dataclass
class PerformanceSample:
	"""Resource usage captured for an execution."""

	memory_usage: float = 0.0  # bytes
	cpu_time: float = 0.0  # microseconds
	io_operations: int = 0
	network_calls: int = 0


@dataclass
class ExecutionContext:
	"""An execution reassembled with its metadata, environment and performance metrics."""

	record: ExecutionRecord
	metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)
	environment: EnvironmentInfo = field(default_factory=EnvironmentInfo)
	performance: PerformanceSample = field(default_factory=PerformanceSample)
	session_id: str | None = None
	parent_execution_id: int | None = None


# -- Retrieval --


@dataclass
class Candidate:
	"""An execution returned by the text match provider."""

	id: int
	rank: float
	prompt: str
	timestamp: str
	success: bool = False
	plan: str | None = None
	reasoning: str | None = None
	outcome: str | None = None


@dataclass
class RelevanceFactors:
	"""The eight factor scores of one candidate, each in [0, 1]."""

	fts_score: float = 0.0
	recency_score: float = 0.0
	success_score: float = 0.0
	complexity_score: float = 0.0
	confidence_score: float = 0.0
	context_score: float = 0.0
	frequency_score: float = 0.0
	semantic_score: float = 0.0

	def as_dict(self) -> dict[str, float]:
		return {
			"fts_score": self.fts_score,
			"recency_score": self.recency_score,
			"success_score": self.success_score,
			"complexity_score": self.complexity_score,
			"confidence_score": self.confidence_score,
			"context_score": self.context_score,
			"frequency_score": self.frequency_score,
			"semantic_score": self.semantic_score,
		}

	def top(self, n: int = 3) -> list[tuple[str, float]]:
		return sorted(self.as_dict().items(), key=lambda kv: kv[1], reverse=True)[:n]


@dataclass
class SearchResult:
	"""A plain full-text search hit."""

	execution_id: int
	relevance_score: float
	matched_content: str
	context_type: str
	timestamp: str
	summary: str
	prompt: str
	outcome: str | None = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"execution_id": self.execution_id,
			"relevance_score": self.relevance_score,
			"matched_content": self.matched_content,
			"context_type": self.context_type,
			"timestamp": self.timestamp,
			"summary": self.summary,
			"prompt": self.prompt,
			"outcome": self.outcome,
		}


@dataclass
class ScoredResult:
	"""A candidate ranked by the multi-factor relevance scorer."""

	execution_id: int
	relevance_score: float
	factors: RelevanceFactors
	matched_content: str
	context_type: str
	timestamp: str
	summary: str
	prompt: str
	outcome: str | None = None
	reasoning: str | None = None
	tags: list[str] = field(default_factory=list)
	category: str = "general"
	priority: str = "medium"
	complexity: int = 5
	confidence: float = 0.5

	def to_dict(self) -> dict[str, Any]:
		return {
			"execution_id": self.execution_id,
			"relevance_score": round(self.relevance_score, 4),
			"factors": {k: round(v, 4) for k, v in self.factors.as_dict().items()},
			"matched_content": self.matched_content,
			"context_type": self.context_type,
			"timestamp": self.timestamp,
			"summary": self.summary,
			"prompt": self.prompt,
			"outcome": self.outcome,
			"reasoning": self.reasoning,
			"tags": list(self.tags),
			"category": self.category,
			"priority": self.priority,
			"complexity": self.complexity,
			"confidence": self.confidence,
		}


@dataclass
class MemoryStats:
	"""Headline counts for the store."""

	total_executions: int = 0
	successful_executions: int = 0
	failed_executions: int = 0
	average_execution_time: int = 0
	most_recent_execution: str | None = None
	oldest_execution: str | None = None
	total_memory_entries: int = 0
	memory_hit_rate: float = 0.0

	def to_dict(self) -> dict[str, Any]:
		return {
			"total_executions": self.total_executions,
			"successful_executions": self.successful_executions,
			"failed_executions": self.failed_executions,
			"average_execution_time": self.average_execution_time,
			"most_recent_execution": self.most_recent_execution,
			"oldest_execution": self.oldest_execution,
			"total_memory_entries": self.total_memory_entries,
			"memory_hit_rate": self.memory_hit_rate,
		}


@dataclass
class SearchLogEntry:
	"""One recorded advanced search, used for search analytics."""

	query: str = ""
	result_count: int = 0
	duration_ms: float = 0.0
	avg_relevance: float = 0.0
	top_results: list[dict[str, Any]] = field(default_factory=list)
	timestamp: str = field(default_factory=_now_iso)
	id: int | None = None

	@property
	def query_length(self) -> int:
		return len(self.query.split())


@dataclass
class QueryAnalytics:
	"""Aggregated history for one query string."""

	query: str
	frequency: int = 0
	avg_relevance_score: float = 0.0
	avg_response_time: float = 0.0
	success_rate: float = 0.0
	last_used: str | None = None
	top_results: list[dict[str, Any]] = field(default_factory=list)

	def to_dict(self) -> dict[str, Any]:
		return {
			"query": self.query,
			"frequency": self.frequency,
			"avg_relevance_score": self.avg_relevance_score,
			"avg_response_time": self.avg_response_time,
			"success_rate": self.success_rate,
			"last_used": self.last_used,
			"top_results": self.top_results,
		}


# -- Request schemas --


class MetadataPayload(BaseModel, extra="ignore"):
	tags: list[str] = Field(default_factory=list)
	category: str = "general"
	priority: Priority = "medium"
	complexity: float = 5
	confidence: float = 0.5


class EnvironmentPayload(BaseModel, extra="ignore"):
	working_directory: str = ""
	git_branch: str | None = None
	git_commit: str | None = None
	python_version: str = ""
	platform: str = ""


class PerformancePayload(BaseModel, extra="ignore"):
	memory_usage: float = 0.0
	cpu_time: float = 0.0
	io_operations: int = 0
	network_calls: int = 0


class StoreExecutionRequest(BaseModel, extra="ignore"):
	"""JSON body accepted by the HTTP and MCP store operations."""

	prompt: str = Field(min_length=1)
	timestamp: str | None = None
	plan: str | None = None
	reasoning: str | None = None
	actions: list[ActionPayload] = Field(default_factory=list)
	code_changes: str | None = None
	outcome: str | None = None
	success: bool = False
	duration_ms: int = Field(default=0, ge=0)
	model_used: str | None = None
	tokens_used: int | None = None
	metadata: MetadataPayload | None = None
	environment: EnvironmentPayload | None = None
	performance: PerformancePayload | None = None
	session_id: str | None = None
	parent_execution_id: int | None = None

	def to_record(self) -> ExecutionRecord:
		record = ExecutionRecord(
			prompt=self.prompt,
			plan=self.plan,
			reasoning=self.reasoning,
			actions=[ActionRecord.from_payload(a) for a in self.actions],
			code_changes=self.code_changes,
			outcome=self.outcome,
			success=self.success,
			duration_ms=self.duration_ms,
			model_used=self.model_used,
			tokens_used=self.tokens_used,
		)
		if self.timestamp:
			record.timestamp = self.timestamp
		return record

	def to_metadata(self) -> ExecutionMetadata | None:
		if self.metadata is None:
			return None
		return ExecutionMetadata(
			tags=list(self.metadata.tags),
			category=self.metadata.category,
			priority=self.metadata.priority,
			complexity=int(round(self.metadata.complexity)),
			confidence=self.metadata.confidence,
		)

	def to_environment(self) -> EnvironmentInfo | None:
		if self.environment is None:
			return None
		return EnvironmentInfo(**self.environment.model_dump())

	def to_performance(self) -> PerformanceSample | None:
		if self.performance is None:
			return None
		return PerformanceSample(**self.performance.model_dump())
