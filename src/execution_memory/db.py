"""SQLite storage for execution records, metrics and context links."""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import timezone
from pathlib import Path
from typing import Any, Generator, Iterator, Sequence

from execution_memory.errors import MalformedMetric, StorageUnavailable
from execution_memory.models import (
	Candidate,
	ExecutionRecord,
	MemoryLink,
	MetricEntry,
	SearchLogEntry,
	decode_actions,
	decode_metric,
	encode_actions,
	parse_timestamp,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS executions (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	timestamp TEXT NOT NULL,
	prompt TEXT NOT NULL,
	plan TEXT,
	reasoning TEXT,
	actions TEXT NOT NULL DEFAULT '[]',
	code_changes TEXT,
	outcome TEXT,
	success INTEGER NOT NULL DEFAULT 0,
	duration_ms INTEGER NOT NULL DEFAULT 0,
	model_used TEXT,
	tokens_used INTEGER,
	created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE VIRTUAL TABLE IF NOT EXISTS executions_fts USING fts5(
	prompt,
	plan,
	reasoning,
	actions,
	outcome,
	content='executions',
	content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS executions_fts_insert AFTER INSERT ON executions
BEGIN
	INSERT INTO executions_fts(rowid, prompt, plan, reasoning, actions, outcome)
	VALUES (NEW.id, NEW.prompt, NEW.plan, NEW.reasoning, NEW.actions, NEW.outcome);
END;

CREATE TRIGGER IF NOT EXISTS executions_fts_delete AFTER DELETE ON executions
BEGIN
	INSERT INTO executions_fts(executions_fts, rowid, prompt, plan, reasoning, actions, outcome)
	VALUES ('delete', OLD.id, OLD.prompt, OLD.plan, OLD.reasoning, OLD.actions, OLD.outcome);
END;

CREATE TRIGGER IF NOT EXISTS executions_fts_update AFTER UPDATE ON executions
BEGIN
	INSERT INTO executions_fts(executions_fts, rowid, prompt, plan, reasoning, actions, outcome)
	VALUES ('delete', OLD.id, OLD.prompt, OLD.plan, OLD.reasoning, OLD.actions, OLD.outcome);
	INSERT INTO executions_fts(rowid, prompt, plan, reasoning, actions, outcome)
	VALUES (NEW.id, NEW.prompt, NEW.plan, NEW.reasoning, NEW.actions, NEW.outcome);
END;

CREATE TABLE IF NOT EXISTS performance_metrics (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	execution_id INTEGER NOT NULL,
	metric_type TEXT NOT NULL,
	metric_value TEXT NOT NULL,
	unit TEXT NOT NULL DEFAULT 'text',
	timestamp TEXT NOT NULL,
	FOREIGN KEY (execution_id) REFERENCES executions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS memory_links (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	execution_id INTEGER NOT NULL,
	context_type TEXT NOT NULL,
	context_path TEXT NOT NULL,
	context_data TEXT,
	relevance_score REAL NOT NULL DEFAULT 0.0,
	created_at TEXT NOT NULL,
	FOREIGN KEY (execution_id) REFERENCES executions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS search_log (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	query TEXT NOT NULL,
	query_length INTEGER NOT NULL DEFAULT 0,
	result_count INTEGER NOT NULL DEFAULT 0,
	duration_ms REAL NOT NULL DEFAULT 0.0,
	avg_relevance REAL NOT NULL DEFAULT 0.0,
	top_results TEXT NOT NULL DEFAULT '[]',
	timestamp TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
	key TEXT PRIMARY KEY,
	value TEXT NOT NULL,
	type TEXT NOT NULL DEFAULT 'string',
	description TEXT NOT NULL DEFAULT '',
	updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_executions_timestamp ON executions(timestamp);
CREATE INDEX IF NOT EXISTS idx_executions_success ON executions(success);
CREATE INDEX IF NOT EXISTS idx_executions_model ON executions(model_used);
CREATE INDEX IF NOT EXISTS idx_executions_created_at ON executions(created_at);
CREATE INDEX IF NOT EXISTS idx_performance_metrics_execution_id ON performance_metrics(execution_id);
CREATE INDEX IF NOT EXISTS idx_performance_metrics_type ON performance_metrics(metric_type);
CREATE INDEX IF NOT EXISTS idx_memory_links_execution_id ON memory_links(execution_id);
CREATE INDEX IF NOT EXISTS idx_memory_links_context_type ON memory_links(context_type);
CREATE INDEX IF NOT EXISTS idx_memory_links_created_at ON memory_links(created_at);
CREATE INDEX IF NOT EXISTS idx_search_log_query ON search_log(query);
"""

REQUIRED_TABLES = (
	"executions",
	"executions_fts",
	"performance_metrics",
	"memory_links",
	"search_log",
	"settings",
)

_SELECT_CANDIDATE = """SELECT e.id, e.timestamp, e.prompt, e.plan, e.reasoning, e.outcome, e.success"""


def normalize_timestamp(value: str) -> str:
	"""Normalize an ISO timestamp to UTC so stored values compare lexically."""
	return parse_timestamp(value).astimezone(timezone.utc).isoformat()


class Database:
	"""SQLite execution store with an FTS5 text index."""

	def __init__(self, path: str | Path = ":memory:", busy_timeout_ms: int = 5000) -> None:
		db_path = str(path)
		self.path = db_path
		try:
			if db_path != ":memory:":
				Path(db_path).parent.mkdir(parents=True, exist_ok=True)
			self.conn = sqlite3.connect(db_path, check_same_thread=False)
			self.conn.row_factory = sqlite3.Row
			logger.debug("Opened database connection: %s", db_path)
			if db_path != ":memory:":
				self.conn.execute("PRAGMA journal_mode=WAL")
				self.conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
				logger.debug("WAL mode activated for %s", db_path)
			self.conn.execute("PRAGMA foreign_keys=ON")
			self._create_tables()
		except (OSError, sqlite3.Error) as exc:
			raise StorageUnavailable(f"Cannot open execution store at {db_path}: {exc}") from exc

	def _create_tables(self) -> None:
		self.conn.executescript(SCHEMA_SQL)
		self.conn.commit()

	def close(self) -> None:
		logger.debug("Closing database connection")
		self.conn.close()

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Context manager for explicit transactions.

		Commits on success, rolls back on exception.
		"""
		try:
			yield self.conn
		except Exception:
			self.conn.rollback()
			raise
		else:
			self.conn.commit()

	def _rollback_quietly(self) -> None:
		# A closed connection has nothing to roll back.
		try:
			self.conn.rollback()
		except sqlite3.ProgrammingError:
			logger.debug("Rollback skipped: connection closed")

	def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
		"""Run a statement, mapping connection-level failures to StorageUnavailable."""
		try:
			return self.conn.execute(sql, params)
		except (sqlite3.OperationalError, sqlite3.ProgrammingError) as exc:
			raise StorageUnavailable(f"Execution store unavailable: {exc}") from exc

	# -- Executions --

	def insert_execution(
		self,
		record: ExecutionRecord,
		metrics: Sequence[MetricEntry] = (),
		links: Sequence[MemoryLink] = (),
	) -> int:
		"""Persist an execution with its metrics and links atomically.

		Uses a single transaction so the execution row and every associated
		row either commit together or roll back together.
		"""
		record.validate()
		timestamp = normalize_timestamp(record.timestamp)
		try:
			cur = self.conn.execute(
				"""INSERT INTO executions
				(timestamp, prompt, plan, reasoning, actions, code_changes,
				 outcome, success, duration_ms, model_used, tokens_used)
				VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
				(
					timestamp, record.prompt, record.plan, record.reasoning,
					encode_actions(record.actions), record.code_changes,
					record.outcome, 1 if record.success else 0, record.duration_ms,
					record.model_used, record.tokens_used,
				),
			)
			execution_id = int(cur.lastrowid or 0)
			for m in metrics:
				self.conn.execute(
					"""INSERT INTO performance_metrics
					(execution_id, metric_type, metric_value, unit, timestamp)
					VALUES (?, ?, ?, ?, ?)""",
					(execution_id, m.key, m.value.encode(), m.resolved_unit, m.timestamp),
				)
			for link in links:
				self.conn.execute(
					"""INSERT INTO memory_links
					(execution_id, context_type, context_path, context_data, relevance_score, created_at)
					VALUES (?, ?, ?, ?, ?, ?)""",
					(
						execution_id, link.context_type, link.context_path,
						json.dumps(link.context_data), link.relevance_score, link.created_at,
					),
				)
			self.conn.commit()
		except (sqlite3.OperationalError, sqlite3.ProgrammingError) as exc:
			logger.error("insert_execution failed, rolling back", exc_info=True)
			self._rollback_quietly()
			raise StorageUnavailable(f"Execution store unavailable: {exc}") from exc
		except Exception:
			logger.error("insert_execution failed, rolling back", exc_info=True)
			self.conn.rollback()
			raise
		record.id = execution_id
		record.timestamp = timestamp
		logger.debug(
			"Stored execution %d with %d metric(s) and %d link(s)", execution_id, len(metrics), len(links),
		)
		return execution_id

	def get_execution(self, execution_id: int) -> ExecutionRecord | None:
		row = self._execute("SELECT * FROM executions WHERE id=?", (execution_id,)).fetchone()
		return self._row_to_execution(row) if row else None

	def delete_older_than(self, cutoff: str) -> int:
		"""Delete executions stamped before cutoff. Metrics and links cascade."""
		cutoff_iso = normalize_timestamp(cutoff)
		with self.transaction():
			cur = self._execute("DELETE FROM executions WHERE timestamp < ?", (cutoff_iso,))
		deleted = cur.rowcount
		logger.info("Deleted %d execution(s) older than %s", deleted, cutoff_iso)
		return deleted

	@staticmethod
	def _row_to_execution(row: sqlite3.Row) -> ExecutionRecord:
		try:
			actions = decode_actions(row["actions"])
		except ValueError as exc:
			logger.warning("Execution %s has malformed actions: %s", row["id"], exc)
			actions = []
		return ExecutionRecord(
			id=row["id"],
			timestamp=row["timestamp"],
			prompt=row["prompt"],
			plan=row["plan"],
			reasoning=row["reasoning"],
			actions=actions,
			code_changes=row["code_changes"],
			outcome=row["outcome"],
			success=bool(row["success"]),
			duration_ms=row["duration_ms"] or 0,
			model_used=row["model_used"],
			tokens_used=row["tokens_used"],
		)

	# -- Metrics --

	def query_metrics(self, execution_id: int, key: str | None = None) -> list[MetricEntry]:
		"""Return decoded metrics for an execution. Malformed rows are logged and skipped."""
		if key is None:
			rows = self._execute(
				"SELECT * FROM performance_metrics WHERE execution_id=? ORDER BY id", (execution_id,)
			).fetchall()
		else:
			rows = self._execute(
				"SELECT * FROM performance_metrics WHERE execution_id=? AND metric_type=? ORDER BY id",
				(execution_id, key),
			).fetchall()
		entries: list[MetricEntry] = []
		for row in rows:
			entry = self._row_to_metric(row)
			if entry is not None:
				entries.append(entry)
		return entries

	def get_metric(self, execution_id: int, key: str) -> MetricEntry | None:
		"""First decodable entry for a singleton key, or None."""
		entries = self.query_metrics(execution_id, key)
		return entries[0] if entries else None

	def iter_metric_values(self, key: str) -> Iterator[tuple[int, MetricEntry]]:
		"""Yield (execution_id, entry) for every decodable metric with the given key."""
		rows = self._execute(
			"SELECT * FROM performance_metrics WHERE metric_type=? ORDER BY id", (key,)
		).fetchall()
		for row in rows:
			entry = self._row_to_metric(row)
			if entry is not None:
				yield row["execution_id"], entry

	def count_metrics(self) -> int:
		row = self._execute("SELECT COUNT(*) AS cnt FROM performance_metrics").fetchone()
		return int(row["cnt"])

	@staticmethod
	def _row_to_metric(row: sqlite3.Row) -> MetricEntry | None:
		try:
			value = decode_metric(row["metric_type"], str(row["metric_value"]), row["unit"])
		except MalformedMetric as exc:
			logger.warning("Skipping metric %s on execution %s: %s", row["id"], row["execution_id"], exc.reason)
			return None
		return MetricEntry(
			id=row["id"],
			execution_id=row["execution_id"],
			key=row["metric_type"],
			value=value,
			unit=row["unit"],
			timestamp=row["timestamp"],
		)

	# -- Memory links --

	def get_links(self, execution_id: int, context_type: str | None = None) -> list[MemoryLink]:
		if context_type is None:
			rows = self._execute(
				"SELECT * FROM memory_links WHERE execution_id=? ORDER BY id", (execution_id,)
			).fetchall()
		else:
			rows = self._execute(
				"SELECT * FROM memory_links WHERE execution_id=? AND context_type=? ORDER BY id",
				(execution_id, context_type),
			).fetchall()
		return [self._row_to_link(r) for r in rows]

	def count_links(self) -> int:
		row = self._execute("SELECT COUNT(*) AS cnt FROM memory_links").fetchone()
		return int(row["cnt"])

	@staticmethod
	def _row_to_link(row: sqlite3.Row) -> MemoryLink:
		try:
			data = json.loads(row["context_data"]) if row["context_data"] else {}
		except json.JSONDecodeError:
			logger.warning("Memory link %s has malformed context_data", row["id"])
			data = {}
		return MemoryLink(
			id=row["id"],
			execution_id=row["execution_id"],
			context_type=row["context_type"],
			context_path=row["context_path"],
			context_data=data if isinstance(data, dict) else {"value": data},
			relevance_score=row["relevance_score"],
			created_at=row["created_at"],
		)

	# -- Text matching --

	def fts_match(self, expression: str, limit: int) -> list[Candidate]:
		"""Run an FTS5 MATCH expression and return candidates ordered by rank."""
		rows = self._execute(
			f"""{_SELECT_CANDIDATE}, executions_fts.rank AS rank
			FROM executions_fts
			JOIN executions e ON executions_fts.rowid = e.id
			WHERE executions_fts MATCH ?
			ORDER BY rank
			LIMIT ?""",  # noqa: S608
			(expression, limit),
		).fetchall()
		return [
			Candidate(
				id=r["id"],
				rank=float(r["rank"]),
				prompt=r["prompt"],
				timestamp=r["timestamp"],
				success=bool(r["success"]),
				plan=r["plan"],
				reasoning=r["reasoning"],
				outcome=r["outcome"],
			)
			for r in rows
		]

	def recent_success_flags(self, prompt_fragment: str, limit: int = 10) -> list[bool]:
		"""Success flags of the most recent executions whose prompt contains the fragment."""
		rows = self._execute(
			"""SELECT success FROM executions
			WHERE instr(lower(prompt), lower(?)) > 0
			ORDER BY timestamp DESC, id DESC
			LIMIT ?""",
			(prompt_fragment, limit),
		).fetchall()
		return [bool(r["success"]) for r in rows]

	def count_prompt_matches(self, words: Sequence[str]) -> tuple[int, int]:
		"""(total, successful) executions whose prompt contains any of the words."""
		if not words:
			return (0, 0)
		conditions = " OR ".join("instr(lower(prompt), ?) > 0" for _ in words)
		row = self._execute(
			f"""SELECT COUNT(*) AS total,
				COALESCE(SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END), 0) AS successful
			FROM executions
			WHERE {conditions}""",  # noqa: S608
			[w.lower() for w in words],
		).fetchone()
		return (int(row["total"]), int(row["successful"]))

	# -- Aggregates --

	def get_execution_totals(self) -> dict[str, Any]:
		row = self._execute(
			"""SELECT
				COUNT(*) AS total,
				COALESCE(SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END), 0) AS successful,
				AVG(duration_ms) AS avg_duration,
				MIN(timestamp) AS oldest,
				MAX(timestamp) AS newest
			FROM executions"""
		).fetchone()
		return {
			"total": int(row["total"]),
			"successful": int(row["successful"]),
			"avg_duration": float(row["avg_duration"] or 0.0),
			"oldest": row["oldest"],
			"newest": row["newest"],
		}

	def get_execution_timeline(self, since: str | None = None) -> list[tuple[str, bool]]:
		"""(timestamp, success) pairs, optionally limited to timestamps >= since."""
		if since is None:
			rows = self._execute("SELECT timestamp, success FROM executions ORDER BY timestamp").fetchall()
		else:
			rows = self._execute(
				"SELECT timestamp, success FROM executions WHERE timestamp >= ? ORDER BY timestamp",
				(normalize_timestamp(since),),
			).fetchall()
		return [(r["timestamp"], bool(r["success"])) for r in rows]

	def get_execution_outcomes(self) -> dict[int, tuple[bool, int]]:
		"""Map execution id -> (success, duration_ms)."""
		rows = self._execute("SELECT id, success, duration_ms FROM executions").fetchall()
		return {r["id"]: (bool(r["success"]), int(r["duration_ms"] or 0)) for r in rows}

	def get_category_stats(self, limit: int = 10) -> list[dict[str, Any]]:
		rows = self._execute(
			"""SELECT
				pm.metric_value AS category,
				COUNT(*) AS cnt,
				AVG(CASE WHEN e.success = 1 THEN 1.0 ELSE 0.0 END) AS success_rate
			FROM performance_metrics pm
			JOIN executions e ON pm.execution_id = e.id
			WHERE pm.metric_type = 'category'
			GROUP BY pm.metric_value
			ORDER BY cnt DESC, category ASC
			LIMIT ?""",
			(limit,),
		).fetchall()
		return [
			{"category": r["category"], "count": int(r["cnt"]), "success_rate": float(r["success_rate"])}
			for r in rows
		]

	def get_model_usage(self) -> list[dict[str, Any]]:
		rows = self._execute(
			"""SELECT
				model_used AS model,
				COUNT(*) AS cnt,
				AVG(tokens_used) AS avg_tokens,
				AVG(CASE WHEN success = 1 THEN 1.0 ELSE 0.0 END) AS success_rate
			FROM executions
			WHERE model_used IS NOT NULL
			GROUP BY model_used
			ORDER BY cnt DESC, model ASC"""
		).fetchall()
		return [
			{
				"model": r["model"],
				"count": int(r["cnt"]),
				"avg_tokens": float(r["avg_tokens"] or 0.0),
				"success_rate": float(r["success_rate"]),
			}
			for r in rows
		]

	def size_bytes(self) -> int:
		page_count = self._execute("PRAGMA page_count").fetchone()[0]
		page_size = self._execute("PRAGMA page_size").fetchone()[0]
		return int(page_count) * int(page_size)

	def vacuum(self) -> None:
		self._execute("VACUUM")
		logger.info("Database vacuumed")

	# -- Search log --

	def insert_search_log(self, entry: SearchLogEntry) -> int:
		cur = self._execute(
			"""INSERT INTO search_log
			(query, query_length, result_count, duration_ms, avg_relevance, top_results, timestamp)
			VALUES (?, ?, ?, ?, ?, ?, ?)""",
			(
				entry.query, entry.query_length, entry.result_count, entry.duration_ms,
				entry.avg_relevance, json.dumps(entry.top_results), entry.timestamp,
			),
		)
		self.conn.commit()
		entry.id = int(cur.lastrowid or 0)
		return entry.id

	def get_search_log(self, query: str | None = None, limit: int = 1000) -> list[SearchLogEntry]:
		if query is None:
			rows = self._execute(
				"SELECT * FROM search_log ORDER BY timestamp DESC, id DESC LIMIT ?", (limit,)
			).fetchall()
		else:
			rows = self._execute(
				"SELECT * FROM search_log WHERE query=? ORDER BY timestamp DESC, id DESC LIMIT ?",
				(query, limit),
			).fetchall()
		return [self._row_to_search_log(r) for r in rows]

	@staticmethod
	def _row_to_search_log(row: sqlite3.Row) -> SearchLogEntry:
		try:
			top = json.loads(row["top_results"]) if row["top_results"] else []
		except json.JSONDecodeError:
			top = []
		return SearchLogEntry(
			id=row["id"],
			query=row["query"],
			result_count=row["result_count"],
			duration_ms=row["duration_ms"],
			avg_relevance=row["avg_relevance"] or 0.0,
			top_results=top if isinstance(top, list) else [],
			timestamp=row["timestamp"],
		)

	# -- Settings --

	def get_setting(self, key: str) -> str | None:
		row = self._execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
		return row["value"] if row else None

	def set_setting(self, key: str, value: str, type_: str = "string", description: str = "") -> None:
		self._execute(
			"""INSERT INTO settings (key, value, type, description, updated_at)
			VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
			ON CONFLICT(key) DO UPDATE SET
				value=excluded.value, type=excluded.type, updated_at=CURRENT_TIMESTAMP""",
			(key, value, type_, description),
		)
		self.conn.commit()
