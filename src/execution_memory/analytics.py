"""Aggregate analytics over the execution store."""

from __future__ import annotations

import csv
import io
import json
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError

from execution_memory.config import AnalyticsConfig
from execution_memory.db import Database
from execution_memory.models import TAG_LIST, parse_timestamp

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("json", "csv")


@dataclass
class Overview:
	total_executions: int = 0
	successful_executions: int = 0
	failed_executions: int = 0
	success_rate: float = 0.0
	average_execution_time: float = 0.0
	oldest_execution: str | None = None
	newest_execution: str | None = None
	total_metric_entries: int = 0
	total_memory_links: int = 0
	database_size: int = 0


@dataclass
class DailyCount:
	date: str
	count: int
	success_rate: float


@dataclass
class HourlyCount:
	hour: int
	count: int


@dataclass
class Trends:
	daily_executions: list[DailyCount] = field(default_factory=list)
	executions_by_hour: list[HourlyCount] = field(default_factory=list)
	weekly_growth: float = 0.0
	monthly_growth: float = 0.0


@dataclass
class Patterns:
	top_categories: list[dict[str, Any]] = field(default_factory=list)
	top_tags: list[dict[str, Any]] = field(default_factory=list)
	complexity_distribution: list[dict[str, Any]] = field(default_factory=list)
	model_usage: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Performance:
	average_response_time: float = 0.0
	memory_usage_stats: dict[str, float] = field(default_factory=lambda: {"min": 0.0, "max": 0.0, "avg": 0.0})
	search_performance: list[dict[str, Any]] = field(default_factory=list)
	top_performing_queries: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class Insights:
	recommendations: list[str] = field(default_factory=list)
	anomalies: list[str] = field(default_factory=list)
	optimization_opportunities: list[str] = field(default_factory=list)


@dataclass
class AnalyticsReport:
	"""Full analytics snapshot of the store."""

	overview: Overview = field(default_factory=Overview)
	trends: Trends = field(default_factory=Trends)
	patterns: Patterns = field(default_factory=Patterns)
	performance: Performance = field(default_factory=Performance)
	insights: Insights = field(default_factory=Insights)
	generated_at: str = ""

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)

	def to_json(self) -> str:
		return json.dumps(self.to_dict(), indent=2)


def growth_rate(recent: int, prior: int) -> float:
	"""Percent change from prior to recent. A zero prior gives 100 if anything happened, else 0."""
	if prior == 0:
		return 100.0 if recent > 0 else 0.0
	return (recent - prior) / prior * 100


class AnalyticsAggregator:
	"""Computes an AnalyticsReport from the execution store.

	Per-record problems (unparseable timestamps, malformed tag lists, metrics
	pointing at vanished executions) are logged at debug level and skipped;
	the report is always produced. Store-level errors propagate.
	"""

	def __init__(self, db: Database, config: AnalyticsConfig | None = None) -> None:
		self._db = db
		self.config = config or AnalyticsConfig()

	def compute(self, now: datetime | None = None) -> AnalyticsReport:
		reference = now or datetime.now(timezone.utc)
		overview = self._overview()
		trends = self._trends(reference)
		patterns = self._patterns()
		performance = self._performance(overview)
		insights = self._insights(overview, trends, patterns, performance)
		return AnalyticsReport(
			overview=overview,
			trends=trends,
			patterns=patterns,
			performance=performance,
			insights=insights,
			generated_at=reference.isoformat(),
		)

	# -- Sections --

	def _overview(self) -> Overview:
		totals = self._db.get_execution_totals()
		total = totals["total"]
		successful = totals["successful"]
		return Overview(
			total_executions=total,
			successful_executions=successful,
			failed_executions=total - successful,
			success_rate=successful / total if total > 0 else 0.0,
			average_execution_time=totals["avg_duration"],
			oldest_execution=totals["oldest"],
			newest_execution=totals["newest"],
			total_metric_entries=self._db.count_metrics(),
			total_memory_links=self._db.count_links(),
			database_size=self._db.size_bytes(),
		)

	def _trends(self, now: datetime) -> Trends:
		moments: list[tuple[datetime, bool]] = []
		for raw, success in self._db.get_execution_timeline():
			try:
				moments.append((parse_timestamp(raw).astimezone(timezone.utc), success))
			except ValueError:
				logger.debug("Skipping execution with unparseable timestamp %r", raw)

		daily_start = now - timedelta(days=self.config.trend_days)
		daily: dict[str, list[int]] = defaultdict(lambda: [0, 0])
		hourly: dict[int, int] = defaultdict(int)
		for moment, success in moments:
			hourly[moment.hour] += 1
			if daily_start <= moment <= now:
				bucket = daily[moment.date().isoformat()]
				bucket[0] += 1
				bucket[1] += 1 if success else 0

		return Trends(
			daily_executions=[
				DailyCount(date=day, count=c, success_rate=s / c)
				for day, (c, s) in sorted(daily.items())
			],
			executions_by_hour=[HourlyCount(hour=h, count=hourly[h]) for h in sorted(hourly)],
			weekly_growth=self._window_growth(moments, now, 7),
			monthly_growth=self._window_growth(moments, now, 30),
		)

	@staticmethod
	def _window_growth(moments: list[tuple[datetime, bool]], now: datetime, days: int) -> float:
		window = timedelta(days=days)
		recent = sum(1 for m, _ in moments if now - window < m <= now)
		prior = sum(1 for m, _ in moments if now - 2 * window < m <= now - window)
		return growth_rate(recent, prior)

	def _patterns(self) -> Patterns:
		outcomes = self._db.get_execution_outcomes()
		return Patterns(
			top_categories=self._db.get_category_stats(self.config.top_n),
			top_tags=self._tag_stats(outcomes),
			complexity_distribution=self._complexity_distribution(outcomes),
			model_usage=self._db.get_model_usage(),
		)

	def _tag_stats(self, outcomes: dict[int, tuple[bool, int]]) -> list[dict[str, Any]]:
		counts: dict[str, list[int]] = defaultdict(lambda: [0, 0])
		for execution_id, entry in self._db.iter_metric_values("tags"):
			if execution_id not in outcomes:
				logger.debug("Tags metric %s references missing execution %d", entry.id, execution_id)
				continue
			try:
				tags = TAG_LIST.validate_python(entry.value.value)
			except ValidationError:
				logger.debug("Skipping malformed tags metric on execution %d", execution_id)
				continue
			success = outcomes[execution_id][0]
			for tag in tags:
				counts[tag][0] += 1
				counts[tag][1] += 1 if success else 0
		ranked = sorted(counts.items(), key=lambda kv: (-kv[1][0], kv[0]))[: self.config.top_n]
		return [
			{"tag": tag, "count": c, "success_rate": s / c}
			for tag, (c, s) in ranked
		]

	def _complexity_distribution(self, outcomes: dict[int, tuple[bool, int]]) -> list[dict[str, Any]]:
		buckets: dict[int, list[int]] = defaultdict(list)
		for execution_id, entry in self._db.iter_metric_values("complexity"):
			number = entry.value.as_float()
			if number is None or execution_id not in outcomes:
				logger.debug("Skipping complexity metric on execution %d", execution_id)
				continue
			# Legacy rows may sit outside 1-10.
			level = min(10, max(1, int(number)))
			buckets[level].append(outcomes[execution_id][1])
		return [
			{"complexity": level, "count": len(durations), "avg_duration": sum(durations) / len(durations)}
			for level, durations in sorted(buckets.items())
		]

	def _performance(self, overview: Overview) -> Performance:
		memory_values: list[float] = []
		for execution_id, entry in self._db.iter_metric_values("memory_usage"):
			number = entry.value.as_float()
			if number is None:
				logger.debug("Skipping non-numeric memory_usage on execution %d", execution_id)
				continue
			memory_values.append(number)
		memory_stats = {"min": 0.0, "max": 0.0, "avg": 0.0}
		if memory_values:
			memory_stats = {
				"min": min(memory_values),
				"max": max(memory_values),
				"avg": sum(memory_values) / len(memory_values),
			}
		search_performance, top_queries = self._search_stats()
		return Performance(
			average_response_time=overview.average_execution_time,
			memory_usage_stats=memory_stats,
			search_performance=search_performance,
			top_performing_queries=top_queries,
		)

	def _search_stats(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
		by_length: dict[int, list[tuple[float, int]]] = defaultdict(list)
		by_query: dict[str, list[float]] = defaultdict(list)
		for entry in self._db.get_search_log():
			by_length[entry.query_length].append((entry.duration_ms, entry.result_count))
			by_query[entry.query].append(entry.avg_relevance)

		search_performance = [
			{
				"query_length": length,
				"avg_response_time": sum(d for d, _ in rows) / len(rows),
				"result_count": sum(r for _, r in rows) / len(rows),
			}
			for length, rows in sorted(by_length.items())
		]
		ranked = sorted(
			by_query.items(),
			key=lambda kv: (-(sum(kv[1]) / len(kv[1])), -len(kv[1]), kv[0]),
		)[: self.config.top_n]
		top_queries = [
			{"query": query, "avg_relevance": sum(scores) / len(scores), "frequency": len(scores)}
			for query, scores in ranked
		]
		return search_performance, top_queries

	def _insights(
		self,
		overview: Overview,
		trends: Trends,
		patterns: Patterns,
		performance: Performance,
	) -> Insights:
		cfg = self.config
		insights = Insights()

		if overview.success_rate < cfg.min_success_rate:
			insights.recommendations.append(
				f"Success rate is below {cfg.min_success_rate:.0%}. "
				"Consider reviewing failed executions for common patterns."
			)
		if performance.average_response_time > cfg.slow_duration_ms:
			insights.recommendations.append(
				"Average response time is high. Consider optimizing database queries or adding indexes."
			)
		if trends.weekly_growth > cfg.high_growth_rate:
			insights.recommendations.append(
				"High growth rate detected. Consider implementing data retention policies."
			)

		total = overview.total_executions
		if total > 0 and overview.total_metric_entries / total < cfg.min_metrics_per_execution:
			insights.anomalies.append(
				"Low metric entry ratio detected. Execution metadata may not be recorded."
			)

		high = sum(
			row["count"] for row in patterns.complexity_distribution
			if row["complexity"] > cfg.high_complexity
		)
		if total > 0 and high > total * cfg.high_complexity_share:
			insights.optimization_opportunities.append(
				f"{cfg.high_complexity_share:.0%}+ of executions are high complexity. "
				"Consider breaking down complex tasks."
			)
		if overview.database_size > cfg.large_store_bytes:
			insights.optimization_opportunities.append(
				"Database size is large. Consider implementing cleanup policies."
			)
		return insights


def export_report(report: AnalyticsReport, fmt: str = "json") -> str:
	"""Render a report as JSON or as Section,Metric,Value CSV rows."""
	if fmt == "json":
		return report.to_json()
	if fmt != "csv":
		raise ValueError(f"Unsupported export format: {fmt!r} (expected one of {EXPORT_FORMATS})")

	buf = io.StringIO()
	writer = csv.writer(buf, lineterminator="\n")
	writer.writerow(["Section", "Metric", "Value"])
	ov = report.overview
	writer.writerow(["Overview", "Total Executions", ov.total_executions])
	writer.writerow(["Overview", "Successful Executions", ov.successful_executions])
	writer.writerow(["Overview", "Failed Executions", ov.failed_executions])
	writer.writerow(["Overview", "Success Rate", f"{ov.success_rate * 100:.2f}%"])
	writer.writerow(["Overview", "Average Execution Time", f"{ov.average_execution_time:.0f}ms"])
	writer.writerow(["Overview", "Metric Entries", ov.total_metric_entries])
	writer.writerow(["Overview", "Memory Links", ov.total_memory_links])
	writer.writerow(["Overview", "Database Size", f"{ov.database_size / 1024 / 1024:.2f}MB"])
	writer.writerow(["Trends", "Weekly Growth", f"{report.trends.weekly_growth:.2f}%"])
	writer.writerow(["Trends", "Monthly Growth", f"{report.trends.monthly_growth:.2f}%"])
	for day in report.trends.daily_executions:
		writer.writerow(["Daily", day.date, day.count])
	for row in report.patterns.top_categories:
		writer.writerow(["Category", row["category"], row["count"]])
	for row in report.patterns.top_tags:
		writer.writerow(["Tag", row["tag"], row["count"]])
	for row in report.patterns.model_usage:
		writer.writerow(["Model", row["model"], row["count"]])
	for section, messages in (
		("Recommendation", report.insights.recommendations),
		("Anomaly", report.insights.anomalies),
		("Optimization", report.insights.optimization_opportunities),
	):
		for message in messages:
			writer.writerow(["Insight", section, message])
	return buf.getvalue()
