"""Multi-factor relevance scoring for execution memory retrieval.

Every candidate gets eight independent factor scores in [0, 1]:

	fts_score         text-match strength from the FTS5 rank
	recency_score     exponential decay on age (30 day time constant)
	success_score     success rate of recent executions with a similar prompt
	complexity_score  distance between stored and estimated query complexity
	confidence_score  stored confidence
	context_score     tag and category overlap with the query words
	frequency_score   success rate of executions mentioning the query words
	semantic_score    token Jaccard similarity against prompt and reasoning

The factors are combined with a weight snapshot by ``combine``. Weight
snapshots are immutable; a scorer swaps its snapshot by reference so an
in-flight scoring pass always sees one consistent set of weights.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from execution_memory.db import Database
from execution_memory.models import (
	PRIORITIES,
	TAG_LIST,
	Candidate,
	RelevanceFactors,
	ScoredResult,
	parse_timestamp,
)

logger = logging.getLogger(__name__)

FACTOR_NAMES: tuple[str, ...] = (
	"fts_score",
	"recency_score",
	"success_score",
	"complexity_score",
	"confidence_score",
	"context_score",
	"frequency_score",
	"semantic_score",
)

DEFAULT_WEIGHTS: Mapping[str, float] = MappingProxyType({
	"fts_score": 0.20,
	"recency_score": 0.12,
	"success_score": 0.15,
	"complexity_score": 0.08,
	"confidence_score": 0.08,
	"context_score": 0.12,
	"frequency_score": 0.05,
	"semantic_score": 0.20,
})

# Factor value used when the store holds nothing to compute it from.
NO_DATA_DEFAULTS: Mapping[str, float] = MappingProxyType({
	"recency_score": 0.0,
	"success_score": 0.5,
	"complexity_score": 0.5,
	"confidence_score": 0.5,
	"context_score": 0.0,
	"frequency_score": 0.5,
})

# Metadata reported on a ScoredResult when the execution has no such metric.
METADATA_DEFAULTS: Mapping[str, Any] = MappingProxyType({
	"tags": (),
	"category": "general",
	"priority": "medium",
	"complexity": 5,
	"confidence": 0.5,
})

RECENCY_DECAY_DAYS = 30.0
SUCCESS_FLOOR = 0.8
FAILURE_PENALTY = 0.5
CONTEXT_TAG_WEIGHT = 0.6
CONTEXT_CATEGORY_BONUS = 0.4
SEMANTIC_PROMPT_WEIGHT = 0.7
SEMANTIC_REASONING_WEIGHT = 0.3
SNIPPET_CHARS = 100

_ACTION_VERBS_RE = re.compile(r"\b(implement|create|build|design|optimize|analyze)\b", re.IGNORECASE)
_TECHNICAL_TERMS_RE = re.compile(r"\b(algorithm|database|system|architecture|performance)\b", re.IGNORECASE)
_NON_WORD_RE = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")


# -- Weights --


class RelevanceWeights(Mapping[str, float]):
	"""Immutable snapshot of factor weights.

	Partial maps are allowed; factors without a weight simply do not take
	part in the combination. Updates produce a new snapshot and are not
	renormalised.
	"""

	__slots__ = ("_weights",)

	def __init__(self, weights: Mapping[str, float] | None = None) -> None:
		source = DEFAULT_WEIGHTS if weights is None else weights
		validated: dict[str, float] = {}
		for name, value in source.items():
			if name not in FACTOR_NAMES:
				raise ValueError(f"Unknown relevance factor: {name!r}")
			weight = float(value)
			if weight < 0 or not math.isfinite(weight):
				raise ValueError(f"Weight for {name} must be a finite number >= 0, got {value!r}")
			validated[name] = weight
		self._weights = MappingProxyType(validated)

	def __getitem__(self, name: str) -> float:
		return self._weights[name]

	def __iter__(self) -> Iterator[str]:
		return iter(self._weights)

	def __len__(self) -> int:
		return len(self._weights)

	def __repr__(self) -> str:
		return f"RelevanceWeights({dict(self._weights)!r})"

	@property
	def total(self) -> float:
		return sum(self._weights.values())

	def merged(self, partial: Mapping[str, float]) -> RelevanceWeights:
		"""New snapshot with partial applied over this one."""
		return RelevanceWeights({**self._weights, **partial})

	def to_dict(self) -> dict[str, float]:
		return dict(self._weights)


def combine(factors: RelevanceFactors | Mapping[str, float], weights: Mapping[str, float]) -> float:
	"""Weighted average of the factors that have a weight.

	Returns 0.0 when the weights present sum to zero or less.
	"""
	values = factors.as_dict() if isinstance(factors, RelevanceFactors) else factors
	weighted_sum = 0.0
	total_weight = 0.0
	for name, score in values.items():
		weight = weights.get(name)
		if weight is None:
			continue
		weighted_sum += score * weight
		total_weight += weight
	if total_weight <= 0:
		return 0.0
	return weighted_sum / total_weight


# -- Factor functions --


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
	return max(low, min(high, value))


def fts_score(rank: float) -> float:
	"""Rescale an FTS5 rank (negative, closer to zero is weaker) into [0, 1]."""
	return clamp(1 + rank / 10)


def recency_score(timestamp: str | datetime, now: datetime | None = None) -> float:
	"""exp(-age_days / 30). Future timestamps count as age zero."""
	moment = parse_timestamp(timestamp) if isinstance(timestamp, str) else timestamp
	if moment.tzinfo is None:
		moment = moment.replace(tzinfo=timezone.utc)
	reference = now or datetime.now(timezone.utc)
	age_days = max(0.0, (reference - moment).total_seconds() / 86400)
	return math.exp(-age_days / RECENCY_DECAY_DAYS)


def success_score(similar_flags: Sequence[bool], succeeded: bool) -> float:
	if not similar_flags:
		return NO_DATA_DEFAULTS["success_score"]
	rate = sum(1 for f in similar_flags if f) / len(similar_flags)
	if succeeded:
		return max(rate, SUCCESS_FLOOR)
	return rate * FAILURE_PENALTY


def estimate_query_complexity(query: str) -> float:
	"""Heuristic 1-10 complexity of a query."""
	words = len(query.split()) or 1
	complexity = min(10.0, max(1.0, words / 2))
	if _ACTION_VERBS_RE.search(query):
		complexity += 2
	if _TECHNICAL_TERMS_RE.search(query):
		complexity += 1
	return min(10.0, complexity)


def complexity_score(stored: float | None, query_complexity: float) -> float:
	if stored is None:
		return NO_DATA_DEFAULTS["complexity_score"]
	difference = abs(clamp(stored, 1, 10) - query_complexity)
	return max(0.0, 1 - difference / 10)


def confidence_score(stored: float | None) -> float:
	if stored is None:
		return NO_DATA_DEFAULTS["confidence_score"]
	return clamp(stored)


def query_words(query: str) -> list[str]:
	return query.lower().split()


def context_score(query: str, tags: Sequence[str], category: str | None) -> float:
	words = query_words(query)
	if not words:
		return NO_DATA_DEFAULTS["context_score"]
	score = 0.0
	if tags:
		matching = [
			tag for tag in tags
			if any(word in tag.lower() or tag.lower() in word for word in words)
		]
		score += (len(matching) / len(tags)) * CONTEXT_TAG_WEIGHT
	if category:
		lowered = category.lower()
		if any(word in lowered for word in words):
			score += CONTEXT_CATEGORY_BONUS
	return min(1.0, score)


def frequency_words(query: str) -> list[str]:
	"""Query words long enough to be worth a prompt lookup."""
	return [w for w in query_words(query) if len(w) > 3]


def frequency_score(total: int, successful: int) -> float:
	if total <= 0:
		return NO_DATA_DEFAULTS["frequency_score"]
	return successful / total


def tokenize(text: str) -> list[str]:
	cleaned = _NON_WORD_RE.sub(" ", text)
	return [word.lower() for word in cleaned.split() if len(word) > 2]


def jaccard_similarity(first: Sequence[str] | set[str], second: Sequence[str] | set[str]) -> float:
	a = set(first)
	b = set(second)
	if not a and not b:
		return 1.0
	if not a or not b:
		return 0.0
	return len(a & b) / len(a | b)


def semantic_score(query: str, prompt: str, reasoning: str | None) -> float:
	query_tokens = tokenize(query)
	prompt_similarity = jaccard_similarity(query_tokens, tokenize(prompt))
	reasoning_similarity = jaccard_similarity(query_tokens, tokenize(reasoning or ""))
	return prompt_similarity * SEMANTIC_PROMPT_WEIGHT + reasoning_similarity * SEMANTIC_REASONING_WEIGHT


def extract_matched_content(prompt: str, reasoning: str | None, query: str) -> str:
	"""Sentence of prompt + reasoning with the best query-word overlap."""
	fallback = prompt[:SNIPPET_CHARS]
	words = query_words(query)
	if not words:
		return fallback
	text = f"{prompt} {reasoning or ''}"
	best_match = fallback
	best_score = 0.0
	for sentence in _SENTENCE_SPLIT_RE.split(text):
		sentence_words = sentence.lower().split()
		matches = sum(1 for qw in words if any(qw in w for w in sentence_words))
		score = matches / len(words)
		if score > best_score:
			best_score = score
			best_match = sentence.strip()[:SNIPPET_CHARS]
	return best_match or fallback


def generate_summary(prompt: str) -> str:
	if len(prompt) > 50:
		return prompt[:47] + "..."
	return prompt


# -- Scorer --


@dataclass
class CandidateMetadata:
	"""Metric-derived attributes of one candidate. None means no stored value."""

	tags: list[str] = field(default_factory=list)
	category: str | None = None
	priority: str | None = None
	complexity: float | None = None
	confidence: float | None = None


def metadata_from_metrics(db: Database, execution_id: int) -> CandidateMetadata:
	"""Collect scoring metadata for one execution. Bad values fall back to None."""
	meta = CandidateMetadata()
	for entry in db.query_metrics(execution_id):
		key = entry.key
		if key == "tags" and not meta.tags:
			try:
				meta.tags = TAG_LIST.validate_python(entry.value.value)
			except ValidationError:
				logger.warning("Execution %d has a tags metric that is not a list of strings", execution_id)
		elif key == "category" and meta.category is None:
			meta.category = str(entry.value.value)
		elif key == "priority" and meta.priority is None:
			value = str(entry.value.value)
			meta.priority = value if value in PRIORITIES else None
		elif key == "complexity" and meta.complexity is None:
			number = entry.value.as_float()
			meta.complexity = clamp(number, 1, 10) if number is not None else None
		elif key == "confidence" and meta.confidence is None:
			number = entry.value.as_float()
			meta.confidence = clamp(number) if number is not None else None
	return meta


class RelevanceScorer:
	"""Ranks text-match candidates with the eight-factor relevance model."""

	def __init__(
		self,
		db: Database,
		weights: RelevanceWeights | Mapping[str, float] | None = None,
		similar_prompt_limit: int = 10,
		prompt_prefix_chars: int = 50,
	) -> None:
		self._db = db
		self._weights = weights if isinstance(weights, RelevanceWeights) else RelevanceWeights(weights)
		self.similar_prompt_limit = similar_prompt_limit
		self.prompt_prefix_chars = prompt_prefix_chars

	@property
	def weights(self) -> RelevanceWeights:
		return self._weights

	def get_weights(self) -> dict[str, float]:
		return self._weights.to_dict()

	def with_weights(self, partial: Mapping[str, float]) -> RelevanceScorer:
		"""A new scorer sharing this store, with partial merged into the weights."""
		return RelevanceScorer(
			self._db,
			self._weights.merged(partial),
			similar_prompt_limit=self.similar_prompt_limit,
			prompt_prefix_chars=self.prompt_prefix_chars,
		)

	def update_weights(self, partial: Mapping[str, float]) -> RelevanceWeights:
		"""Merge partial into the weights without renormalising."""
		updated = self._weights.merged(partial)
		self._weights = updated
		logger.info("Relevance scoring weights updated: %s", dict(partial))
		if not math.isclose(updated.total, 1.0, abs_tol=1e-6):
			logger.warning("Relevance weights now sum to %.3f, scores are averaged over this total", updated.total)
		return updated

	def score(
		self,
		query: str,
		candidates: Sequence[Candidate],
		now: datetime | None = None,
	) -> list[ScoredResult]:
		"""Score and rank candidates, best first. Ties keep ascending execution id."""
		if not candidates:
			return []
		weights = self._weights
		reference = now or datetime.now(timezone.utc)
		query_complexity = estimate_query_complexity(query)
		results = [
			self.score_candidate(query, c, weights, reference, query_complexity)
			for c in candidates
		]
		results.sort(key=lambda r: (-r.relevance_score, r.execution_id))
		return results

	def score_candidate(
		self,
		query: str,
		candidate: Candidate,
		weights: Mapping[str, float],
		now: datetime,
		query_complexity: float,
	) -> ScoredResult:
		meta = metadata_from_metrics(self._db, candidate.id)
		factors = self.compute_factors(query, candidate, meta, now, query_complexity)
		relevance = combine(factors, weights)
		logger.debug("Execution %d scored %.4f", candidate.id, relevance)
		return ScoredResult(
			execution_id=candidate.id,
			relevance_score=relevance,
			factors=factors,
			matched_content=extract_matched_content(candidate.prompt, candidate.reasoning, query),
			context_type="solution" if candidate.success else "error",
			timestamp=candidate.timestamp,
			summary=generate_summary(candidate.prompt),
			prompt=candidate.prompt,
			outcome=candidate.outcome,
			reasoning=candidate.reasoning,
			tags=list(meta.tags),
			category=meta.category or METADATA_DEFAULTS["category"],
			priority=meta.priority or METADATA_DEFAULTS["priority"],
			complexity=int(meta.complexity) if meta.complexity is not None else METADATA_DEFAULTS["complexity"],
			confidence=meta.confidence if meta.confidence is not None else METADATA_DEFAULTS["confidence"],
		)

	def compute_factors(
		self,
		query: str,
		candidate: Candidate,
		meta: CandidateMetadata,
		now: datetime,
		query_complexity: float,
	) -> RelevanceFactors:
		try:
			recency = recency_score(candidate.timestamp, now)
		except ValueError:
			logger.warning("Execution %d has an unparseable timestamp %r", candidate.id, candidate.timestamp)
			recency = NO_DATA_DEFAULTS["recency_score"]

		prefix = candidate.prompt[: self.prompt_prefix_chars]
		flags = self._db.recent_success_flags(prefix, self.similar_prompt_limit) if prefix else []

		words = frequency_words(query)
		if words:
			total, successful = self._db.count_prompt_matches(words)
		else:
			total, successful = 0, 0

		return RelevanceFactors(
			fts_score=fts_score(candidate.rank),
			recency_score=recency,
			success_score=success_score(flags, candidate.success),
			complexity_score=complexity_score(meta.complexity, query_complexity),
			confidence_score=confidence_score(meta.confidence),
			context_score=context_score(query, meta.tags, meta.category),
			frequency_score=frequency_score(total, successful),
			semantic_score=semantic_score(query, candidate.prompt, candidate.reasoning),
		)
