"""Error types raised by the execution store and the scoring engine."""

from __future__ import annotations


class StorageUnavailable(RuntimeError):
	"""Raised when the execution store cannot be opened or reached."""


class MalformedMetric(ValueError):
	"""Raised when a stored metric value cannot be decoded.

	Never escapes the store boundary: readers log it and treat the
	metric as absent.
	"""

	def __init__(self, key: str, raw: str, reason: str) -> None:
		super().__init__(f"Malformed metric {key!r}: {reason}")
		self.key = key
		self.raw = raw
		self.reason = reason
