"""Integrity checks and repair for the execution store."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from execution_memory.db import REQUIRED_TABLES, Database

logger = logging.getLogger(__name__)

# Child tables whose execution_id must reference an existing execution.
_CHILD_TABLES = ("performance_metrics", "memory_links")


@dataclass
class IntegrityReport:
	"""Outcome of a check or repair pass."""

	errors: list[str] = field(default_factory=list)
	warnings: list[str] = field(default_factory=list)
	actions: list[str] = field(default_factory=list)
	total_tables: int = 0
	total_records: int = 0
	orphaned_records: int = 0
	corrupted_records: int = 0

	@property
	def passed(self) -> bool:
		return not self.errors

	def to_dict(self) -> dict[str, Any]:
		return {
			"passed": self.passed,
			"errors": list(self.errors),
			"warnings": list(self.warnings),
			"actions": list(self.actions),
			"statistics": {
				"total_tables": self.total_tables,
				"total_records": self.total_records,
				"orphaned_records": self.orphaned_records,
				"corrupted_records": self.corrupted_records,
			},
		}


class IntegrityChecker:
	"""Runs SQLite, schema, referential and FTS checks against a Database."""

	def __init__(self, db: Database) -> None:
		self._db = db

	@property
	def _conn(self) -> sqlite3.Connection:
		return self._db.conn

	def check(self) -> IntegrityReport:
		report = IntegrityReport()
		self._check_sqlite(report)
		self._check_schema(report)
		self._check_foreign_keys(report)
		self._check_orphans(report)
		self._check_actions_json(report)
		self._check_fts(report)
		self._count_records(report)
		if report.passed:
			logger.info("Database integrity check passed")
		else:
			logger.warning("Database integrity check failed with %d error(s)", len(report.errors))
		return report

	def _check_sqlite(self, report: IntegrityReport) -> None:
		try:
			rows = self._conn.execute("PRAGMA integrity_check").fetchall()
		except sqlite3.DatabaseError as exc:
			report.errors.append(f"SQLite integrity check error: {exc}")
			return
		messages = [r[0] for r in rows]
		if messages != ["ok"]:
			report.errors.extend(f"SQLite integrity: {m}" for m in messages)

	def _existing_tables(self) -> set[str]:
		rows = self._conn.execute(
			"SELECT name FROM sqlite_master WHERE type IN ('table', 'view')"
		).fetchall()
		return {r[0] for r in rows}

	def _check_schema(self, report: IntegrityReport) -> None:
		existing = self._existing_tables()
		for table in REQUIRED_TABLES:
			if table not in existing:
				report.errors.append(f"Required table missing: {table}")
		report.total_tables = sum(1 for t in REQUIRED_TABLES if t in existing)

	def _check_foreign_keys(self, report: IntegrityReport) -> None:
		try:
			violations = self._conn.execute("PRAGMA foreign_key_check").fetchall()
		except sqlite3.DatabaseError as exc:
			report.warnings.append(f"Foreign key check error: {exc}")
			return
		if violations:
			report.errors.append(f"Found {len(violations)} foreign key violation(s)")

	def _check_orphans(self, report: IntegrityReport) -> None:
		for table, count in self.count_orphans().items():
			if count > 0:
				report.warnings.append(f"Found {count} orphaned row(s) in {table}")
				report.orphaned_records += count

	def count_orphans(self) -> dict[str, int]:
		counts: dict[str, int] = {}
		for table in _CHILD_TABLES:
			row = self._conn.execute(
				f"""SELECT COUNT(*) FROM {table} c
				LEFT JOIN executions e ON c.execution_id = e.id
				WHERE e.id IS NULL"""  # noqa: S608
			).fetchone()
			counts[table] = int(row[0])
		return counts

	def _check_actions_json(self, report: IntegrityReport) -> None:
		rows = self._conn.execute(
			"SELECT id FROM executions WHERE actions IS NOT NULL AND json_valid(actions) = 0"
		).fetchall()
		if rows:
			report.errors.append(f"Found {len(rows)} record(s) with invalid JSON in actions")
			report.corrupted_records += len(rows)

	def _check_fts(self, report: IntegrityReport) -> None:
		try:
			self._conn.execute("INSERT INTO executions_fts(executions_fts) VALUES('integrity-check')")
		except sqlite3.DatabaseError as exc:
			report.errors.append(f"FTS5 index integrity check failed: {exc}")
			report.warnings.append("Full-text search may return incomplete results until the index is rebuilt")

	def _count_records(self, report: IntegrityReport) -> None:
		existing = self._existing_tables()
		for table in REQUIRED_TABLES:
			if table not in existing or table == "executions_fts":
				continue
			row = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()  # noqa: S608
			report.total_records += int(row[0])

	def repair(self) -> IntegrityReport:
		"""Delete orphaned rows, rebuild the FTS5 index and vacuum, then re-check."""
		actions: list[str] = []
		with self._db.transaction() as conn:
			removed = 0
			for table in _CHILD_TABLES:
				cur = conn.execute(
					f"DELETE FROM {table} WHERE execution_id NOT IN (SELECT id FROM executions)"  # noqa: S608
				)
				removed += cur.rowcount
			conn.execute("INSERT INTO executions_fts(executions_fts) VALUES('rebuild')")
		if removed:
			actions.append(f"Cleaned up {removed} orphaned record(s)")
		actions.append("Rebuilt FTS5 search index")
		self._db.vacuum()
		actions.append("Database vacuumed to reclaim space")
		logger.info("Database repair completed: %s", "; ".join(actions))

		report = self.check()
		report.actions = actions
		return report
