"""Log configuration and operation timing for execution-memory."""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any

from execution_memory.config import LoggingConfig

log = logging.getLogger(__name__)

PACKAGE_LOGGER = "execution_memory"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Structured fields callers attach with ``extra=``; copied into JSON lines.
CONTEXT_FIELDS = ("execution_id", "query", "result_count", "duration_ms")


class Timer:
	"""Context manager measuring wall time of a store or search operation in ms."""

	def __init__(self) -> None:
		self._start = 0.0
		self.elapsed_ms = 0.0

	def __enter__(self) -> Timer:
		self._start = time.perf_counter()
		return self

	def __exit__(self, *args: object) -> None:
		self.elapsed_ms = (time.perf_counter() - self._start) * 1000


class _StderrHandler(logging.StreamHandler):
	"""Writes to whatever sys.stderr is when the record is emitted."""

	def __init__(self) -> None:
		logging.Handler.__init__(self)

	@property
	def stream(self) -> Any:
		return sys.stderr


def setup_logging(config: LoggingConfig | None = None) -> logging.Logger:
	"""Install the package log handler, replacing one installed earlier.

	Records still propagate to the root logger, so application handlers
	and test capture see them too.
	"""
	cfg = config or LoggingConfig()
	logger = logging.getLogger(PACKAGE_LOGGER)
	logger.setLevel(getattr(logging, cfg.level.upper(), logging.INFO))

	for existing in [h for h in logger.handlers if isinstance(h, _StderrHandler)]:
		logger.removeHandler(existing)

	handler = _StderrHandler()
	if cfg.json:
		handler.setFormatter(_JsonFormatter())
	else:
		handler.setFormatter(logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT))
	logger.addHandler(handler)
	log.debug("Logging configured at %s (json=%s)", cfg.level, cfg.json)
	return logger


class _JsonFormatter(logging.Formatter):
	"""One JSON object per record, with any execution/search context attached."""

	def format(self, record: logging.LogRecord) -> str:
		data: dict[str, Any] = {
			"ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		for name in CONTEXT_FIELDS:
			value = getattr(record, name, None)
			if value is not None:
				data[name] = value
		if record.exc_info and record.exc_info[1]:
			data["exception"] = str(record.exc_info[1])
		return json.dumps(data)
