"""OpenTelemetry tracing for search, scoring and analytics."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
	ConsoleSpanExporter,
	SimpleSpanProcessor,
	SpanExporter,
)

from execution_memory.config import TracingConfig

logger = logging.getLogger(__name__)


class NoOpSpan:
	"""Span stand-in yielded when tracing is off. Accepts and drops everything."""

	def set_attribute(self, key: str, value: Any) -> None:
		return None


class MemoryTracer:
	"""Wraps memory operations in OpenTelemetry spans.

	When tracing is disabled every span helper yields a NoOpSpan. The
	tracer owns its TracerProvider rather than installing a global one,
	so several tracers (and tests) can coexist in one process.
	"""

	def __init__(self, config: TracingConfig | None = None, exporter: SpanExporter | None = None) -> None:
		self._config = config or TracingConfig()
		self._tracer: Any = None
		self._provider: TracerProvider | None = None

		if not self._config.enabled or (self._config.exporter == "none" and exporter is None):
			return

		resource = Resource.create({"service.name": self._config.service_name})
		provider = TracerProvider(resource=resource)
		if exporter is not None:
			provider.add_span_processor(SimpleSpanProcessor(exporter))
		elif self._config.exporter == "otlp":
			provider.add_span_processor(SimpleSpanProcessor(self._otlp_exporter()))
		else:
			provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

		self._provider = provider
		self._tracer = provider.get_tracer("execution-memory")

	def _otlp_exporter(self) -> SpanExporter:
		# The OTLP exporter is a separate distribution (the "otlp" extra).
		from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

		return OTLPSpanExporter(endpoint=self._config.otlp_endpoint)

	@property
	def active(self) -> bool:
		return self._tracer is not None

	def shutdown(self) -> None:
		if self._provider is not None:
			self._provider.shutdown()

	@contextmanager
	def start_search_span(self, query: str, limit: int, advanced: bool) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span("memory.search") as span:
			span.set_attribute("search.query_length", len(query.split()))
			span.set_attribute("search.limit", limit)
			span.set_attribute("search.advanced", advanced)
			yield span

	@contextmanager
	def start_scoring_span(self, candidate_count: int) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span("memory.score") as span:
			span.set_attribute("score.candidates", candidate_count)
			yield span

	@contextmanager
	def start_analytics_span(self) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span("memory.analytics") as span:
			yield span

	@contextmanager
	def start_store_span(self) -> Generator[Any, None, None]:
		if not self.active:
			yield NoOpSpan()
			return
		with self._tracer.start_as_current_span("memory.store") as span:
			yield span
