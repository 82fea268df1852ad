"""Text match providers that turn a query into scored candidates."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

from execution_memory.db import Database
from execution_memory.models import Candidate

logger = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+", re.UNICODE)


def build_match_expression(query: str) -> str:
	"""Build an FTS5 expression that ORs the quoted terms of a query.

	Quoting every term neutralises FTS5 operators (AND, NEAR, -, *, ...)
	typed by the user. Returns "" when the query has no terms.
	"""
	terms: list[str] = []
	for term in _TERM_RE.findall(query.lower()):
		quoted = '"' + term.replace('"', '""') + '"'
		if quoted not in terms:
			terms.append(quoted)
	return " OR ".join(terms)


class TextMatchProvider(ABC):
	"""Abstract source of full-text candidates for a query."""

	@abstractmethod
	def find_candidates(self, query: str, limit: int) -> list[Candidate]:
		"""Return up to limit candidates, strongest match first.

		Rank follows the FTS5 convention: negative, and closer to zero
		means a weaker match.
		"""


class FtsTextMatchProvider(TextMatchProvider):
	"""Candidates from the executions_fts FTS5 index."""

	def __init__(self, db: Database) -> None:
		self._db = db

	def find_candidates(self, query: str, limit: int) -> list[Candidate]:
		expression = build_match_expression(query)
		if not expression or limit <= 0:
			return []
		candidates = self._db.fts_match(expression, limit)
		logger.debug("FTS query %r matched %d candidate(s)", expression, len(candidates))
		return candidates
