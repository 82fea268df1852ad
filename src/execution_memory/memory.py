"""Query API facade over the execution store, scorer and analytics."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from execution_memory.analytics import AnalyticsAggregator, AnalyticsReport, export_report
from execution_memory.config import MemoryConfig
from execution_memory.db import Database
from execution_memory.metrics import Timer
from execution_memory.models import (
	PRIORITIES,
	TAG_LIST,
	ActionRecord,
	EnvironmentInfo,
	ExecutionContext,
	ExecutionMetadata,
	ExecutionRecord,
	MemoryLink,
	MemoryStats,
	MetricEntry,
	MetricValue,
	PerformanceSample,
	QueryAnalytics,
	ScoredResult,
	SearchLogEntry,
	SearchResult,
	StoreExecutionRequest,
)
from execution_memory.scoring import (
	DEFAULT_WEIGHTS,
	RelevanceScorer,
	RelevanceWeights,
	clamp,
	extract_matched_content,
	fts_score,
	generate_summary,
)
from execution_memory.text_match import FtsTextMatchProvider, TextMatchProvider
from execution_memory.tracing import MemoryTracer

logger = logging.getLogger(__name__)

WEIGHTS_SETTING = "relevance_weights"
SEARCH_LOG_TOP_RESULTS = 5


def new_session_id() -> str:
	return f"session_{uuid4().hex[:12]}"


def action_relevance(action: ActionRecord) -> float:
	"""Relevance of a detailed-action link: successful, file-touching, long actions rank higher."""
	relevance = 0.5
	if action.status == "success":
		relevance += 0.3
	if action.parameters.get("path"):
		relevance += 0.2
	if action.status == "error" and int(action.parameters.get("retry_count", 0) or 0) > 0:
		relevance -= 0.2
	if action.duration_ms > 1000:
		relevance += 0.1
	return clamp(relevance)


def normalize_metadata(metadata: ExecutionMetadata) -> ExecutionMetadata:
	"""Clamp complexity/confidence into range and validate tags and priority."""
	if metadata.priority not in PRIORITIES:
		raise ValueError(f"priority must be one of {PRIORITIES}, got {metadata.priority!r}")
	return ExecutionMetadata(
		tags=TAG_LIST.validate_python(list(metadata.tags)),
		category=metadata.category or "general",
		priority=metadata.priority,
		complexity=int(clamp(metadata.complexity, 1, 10)),
		confidence=clamp(float(metadata.confidence)),
	)


def build_metrics(
	record: ExecutionRecord,
	metadata: ExecutionMetadata | None,
	environment: EnvironmentInfo | None,
	performance: PerformanceSample | None,
	session_id: str,
	parent_execution_id: int | None,
) -> list[MetricEntry]:
	ts = record.timestamp
	metrics = [MetricEntry(key="session_id", value=MetricValue.text(session_id), unit="text", timestamp=ts)]
	if parent_execution_id is not None:
		metrics.append(MetricEntry(
			key="parent_execution_id", value=MetricValue.integer(parent_execution_id), unit="id", timestamp=ts,
		))
	if metadata is not None:
		metrics.extend([
			MetricEntry(key="tags", value=MetricValue.blob(metadata.tags), unit="json", timestamp=ts),
			MetricEntry(key="priority", value=MetricValue.text(metadata.priority), unit="text", timestamp=ts),
			MetricEntry(key="category", value=MetricValue.text(metadata.category), unit="text", timestamp=ts),
			MetricEntry(key="complexity", value=MetricValue.integer(metadata.complexity), unit="score", timestamp=ts),
			MetricEntry(key="confidence", value=MetricValue.real(metadata.confidence), unit="percentage", timestamp=ts),
		])
	if environment is not None:
		for key in ("working_directory", "git_branch", "git_commit", "python_version", "platform"):
			value = getattr(environment, key)
			metrics.append(MetricEntry(
				key=key, value=MetricValue.text(value if value else "unknown"), unit="text", timestamp=ts,
			))
	if performance is not None:
		metrics.extend([
			MetricEntry(key="memory_usage", value=MetricValue.real(performance.memory_usage), unit="bytes", timestamp=ts),
			MetricEntry(key="cpu_time", value=MetricValue.real(performance.cpu_time), unit="microseconds", timestamp=ts),
			MetricEntry(key="io_operations", value=MetricValue.integer(performance.io_operations), unit="count", timestamp=ts),
			MetricEntry(key="network_calls", value=MetricValue.integer(performance.network_calls), unit="count", timestamp=ts),
		])
	return metrics


def build_links(record: ExecutionRecord, metadata: ExecutionMetadata | None) -> list[MemoryLink]:
	links: list[MemoryLink] = []
	for sequence, action in enumerate(record.actions):
		links.append(MemoryLink(
			context_type="detailed_action",
			context_path=action.command,
			context_data={"sequence": sequence, **action.to_payload().model_dump()},
			relevance_score=action_relevance(action),
		))
		path = action.parameters.get("path")
		if path:
			links.append(MemoryLink(
				context_type="file_modification",
				context_path=str(path),
				context_data={"action": action.command, "timestamp": action.timestamp},
				relevance_score=1.0,
			))
	if metadata is not None:
		for tag in metadata.tags:
			links.append(MemoryLink(
				context_type="tag",
				context_path=tag,
				context_data={"category": metadata.category, "priority": metadata.priority},
				relevance_score=0.8,
			))
		links.append(MemoryLink(
			context_type="category",
			context_path=metadata.category,
			context_data={"complexity": metadata.complexity, "confidence": metadata.confidence},
			relevance_score=0.9,
		))
	if record.outcome:
		links.append(MemoryLink(
			context_type="solution" if record.success else "error",
			context_path=record.prompt[:100],
			context_data={"outcome": record.outcome},
			relevance_score=0.9 if record.success else 0.8,
		))
	return links


class MemoryManager:
	"""Stores executions and answers retrieval and analytics queries."""

	def __init__(
		self,
		db: Database,
		config: MemoryConfig | None = None,
		provider: TextMatchProvider | None = None,
		tracer: MemoryTracer | None = None,
	) -> None:
		self.db = db
		self.config = config or MemoryConfig()
		self.provider = provider or FtsTextMatchProvider(db)
		self.tracer = tracer or MemoryTracer(self.config.tracing)
		self.analytics = AnalyticsAggregator(db, self.config.analytics)
		self.scorer = RelevanceScorer(
			db,
			self._initial_weights(),
			similar_prompt_limit=self.config.scoring.similar_prompt_limit,
			prompt_prefix_chars=self.config.scoring.prompt_prefix_chars,
		)
		self.session_id = new_session_id()

	@classmethod
	def open(cls, config: MemoryConfig | None = None) -> MemoryManager:
		"""Open the configured store file and wrap it."""
		cfg = config or MemoryConfig()
		db = Database(cfg.store.resolved_path, busy_timeout_ms=cfg.store.busy_timeout_ms)
		return cls(db, cfg)

	def close(self) -> None:
		self.tracer.shutdown()
		self.db.close()

	def __enter__(self) -> MemoryManager:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	def new_session(self) -> str:
		self.session_id = new_session_id()
		return self.session_id

	# -- Weights --

	def _initial_weights(self) -> RelevanceWeights:
		"""Defaults, then config overrides, then weights persisted by update_weights."""
		weights = RelevanceWeights(DEFAULT_WEIGHTS).merged(self.config.scoring.weights)
		raw = self.db.get_setting(WEIGHTS_SETTING)
		if raw is None:
			return weights
		try:
			persisted = json.loads(raw)
			return weights.merged({str(k): float(v) for k, v in persisted.items()})
		except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as exc:
			logger.warning("Ignoring malformed persisted relevance weights: %s", exc)
			return weights

	def update_weights(self, partial: Mapping[str, float]) -> dict[str, float]:
		"""Merge partial into the scorer weights and persist the result."""
		updated = self.scorer.update_weights(partial)
		self.db.set_setting(
			WEIGHTS_SETTING,
			json.dumps(updated.to_dict()),
			"json",
			"Relevance scoring factor weights",
		)
		return updated.to_dict()

	def get_weights(self) -> dict[str, float]:
		return self.scorer.get_weights()

	# -- Writes --

	def store_execution(
		self,
		record: ExecutionRecord,
		metadata: ExecutionMetadata | None = None,
		environment: EnvironmentInfo | None = None,
		performance: PerformanceSample | None = None,
		session_id: str | None = None,
		parent_execution_id: int | None = None,
	) -> int:
		"""Store one execution with its metrics and context links in a single transaction."""
		record.validate()
		meta = normalize_metadata(metadata) if metadata is not None else None
		metrics = build_metrics(
			record, meta, environment, performance, session_id or self.session_id, parent_execution_id,
		)
		links = build_links(record, meta)
		with self.tracer.start_store_span() as span:
			execution_id = self.db.insert_execution(record, metrics, links)
			span.set_attribute("execution.id", execution_id)
		logger.info("Execution stored with ID: %d", execution_id, extra={"execution_id": execution_id})
		return execution_id

	def store_request(self, request: StoreExecutionRequest) -> int:
		return self.store_execution(
			request.to_record(),
			metadata=request.to_metadata(),
			environment=request.to_environment(),
			performance=request.to_performance(),
			session_id=request.session_id,
			parent_execution_id=request.parent_execution_id,
		)

	def cleanup(self, retention_days: int | None = None, now: datetime | None = None) -> int:
		"""Delete executions older than the retention window."""
		days = retention_days if retention_days is not None else self.config.store.retention_days
		if days <= 0:
			raise ValueError(f"retention_days must be positive, got {days}")
		cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
		deleted = self.db.delete_older_than(cutoff.isoformat())
		logger.info("Cleaned up %d old execution record(s)", deleted)
		return deleted

	# -- Retrieval --

	def _limit(self, limit: int | None) -> int:
		return self.config.scoring.default_limit if limit is None else limit

	def search(self, query: str, limit: int | None = None) -> list[SearchResult]:
		"""Plain full-text search ranked by FTS strength alone."""
		n = self._limit(limit)
		with self.tracer.start_search_span(query, n, advanced=False) as span:
			candidates = self.provider.find_candidates(query, n)
			span.set_attribute("search.results", len(candidates))
		return [
			SearchResult(
				execution_id=c.id,
				relevance_score=fts_score(c.rank),
				matched_content=extract_matched_content(c.prompt, c.reasoning, query),
				context_type="solution" if c.success else "error",
				timestamp=c.timestamp,
				summary=generate_summary(c.prompt),
				prompt=c.prompt,
				outcome=c.outcome,
			)
			for c in candidates
		]

	def search_advanced(
		self,
		query: str,
		limit: int | None = None,
		now: datetime | None = None,
	) -> list[ScoredResult]:
		"""Multi-factor ranked search. Each call is recorded in the search log."""
		n = self._limit(limit)
		if n <= 0:
			return []
		with Timer() as timer:
			with self.tracer.start_search_span(query, n, advanced=True) as span:
				candidates = self.provider.find_candidates(query, n * max(1, self.config.scoring.candidate_multiplier))
				with self.tracer.start_scoring_span(len(candidates)):
					results = self.scorer.score(query, candidates, now)[:n]
				span.set_attribute("search.results", len(results))
		self._log_search(query, results, timer.elapsed_ms)
		logger.debug(
			"Advanced search %r returned %d result(s) in %.1fms", query, len(results), timer.elapsed_ms,
			extra={"query": query, "result_count": len(results), "duration_ms": round(timer.elapsed_ms, 3)},
		)
		return results

	def _log_search(self, query: str, results: list[ScoredResult], duration_ms: float) -> None:
		avg = sum(r.relevance_score for r in results) / len(results) if results else 0.0
		self.db.insert_search_log(SearchLogEntry(
			query=query,
			result_count=len(results),
			duration_ms=duration_ms,
			avg_relevance=avg,
			top_results=[
				{"execution_id": r.execution_id, "relevance_score": round(r.relevance_score, 4)}
				for r in results[:SEARCH_LOG_TOP_RESULTS]
			],
		))

	def get_execution_context(self, execution_id: int) -> ExecutionContext | None:
		"""Reassemble an execution with its metadata, environment and performance metrics."""
		record = self.db.get_execution(execution_id)
		if record is None:
			return None
		values: dict[str, Any] = {}
		for entry in self.db.query_metrics(execution_id):
			values.setdefault(entry.key, entry.value.value)

		defaults = ExecutionMetadata()
		tags = values.get("tags", [])
		metadata = ExecutionMetadata(
			tags=[t for t in tags if isinstance(t, str)] if isinstance(tags, list) else [],
			category=str(values.get("category", defaults.category)),
			priority=values.get("priority") if values.get("priority") in PRIORITIES else defaults.priority,
			complexity=int(clamp(float(values.get("complexity", defaults.complexity)), 1, 10)),
			confidence=clamp(float(values.get("confidence", defaults.confidence))),
		)
		environment = EnvironmentInfo(
			working_directory=str(values.get("working_directory", "")),
			git_branch=values.get("git_branch"),
			git_commit=values.get("git_commit"),
			python_version=str(values.get("python_version", "")),
			platform=str(values.get("platform", "")),
		)
		performance = PerformanceSample(
			memory_usage=float(values.get("memory_usage", 0.0)),
			cpu_time=float(values.get("cpu_time", 0.0)),
			io_operations=int(values.get("io_operations", 0)),
			network_calls=int(values.get("network_calls", 0)),
		)
		parent = values.get("parent_execution_id")
		return ExecutionContext(
			record=record,
			metadata=metadata,
			environment=environment,
			performance=performance,
			session_id=values.get("session_id"),
			parent_execution_id=int(parent) if parent is not None else None,
		)

	# -- Stats & analytics --

	def get_stats(self) -> MemoryStats:
		totals = self.db.get_execution_totals()
		total = totals["total"]
		successful = totals["successful"]
		return MemoryStats(
			total_executions=total,
			successful_executions=successful,
			failed_executions=total - successful,
			average_execution_time=round(totals["avg_duration"]),
			most_recent_execution=totals["newest"],
			oldest_execution=totals["oldest"],
			total_memory_entries=self.db.count_metrics(),
			memory_hit_rate=successful / total if total > 0 else 0.0,
		)

	def get_analytics(self, now: datetime | None = None) -> AnalyticsReport:
		with self.tracer.start_analytics_span():
			return self.analytics.compute(now)

	def export_analytics(self, fmt: str = "json", now: datetime | None = None) -> str:
		return export_report(self.get_analytics(now), fmt)

	def get_query_analytics(self, query: str) -> QueryAnalytics | None:
		"""History for one exact query string from the search log, or None if never searched."""
		entries = self.db.get_search_log(query)
		if not entries:
			return None
		n = len(entries)
		return QueryAnalytics(
			query=query,
			frequency=n,
			avg_relevance_score=sum(e.avg_relevance for e in entries) / n,
			avg_response_time=sum(e.duration_ms for e in entries) / n,
			success_rate=sum(1 for e in entries if e.result_count > 0) / n,
			last_used=entries[0].timestamp,
			top_results=entries[0].top_results,
		)
