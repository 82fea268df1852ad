"""Tests for OpenTelemetry tracing integration."""

from __future__ import annotations

from conftest import make_execution
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from execution_memory.config import MemoryConfig, TracingConfig
from execution_memory.db import Database
from execution_memory.memory import MemoryManager
from execution_memory.tracing import MemoryTracer, NoOpSpan


class TestNoOpSpan:
	def test_set_attribute_is_dropped(self) -> None:
		assert NoOpSpan().set_attribute("key", "value") is None


class TestTracingDisabled:
	def test_returns_noop_when_disabled(self) -> None:
		tracer = MemoryTracer(TracingConfig(enabled=False))
		assert not tracer.active
		with tracer.start_search_span("parser", 10, advanced=True) as span:
			assert isinstance(span, NoOpSpan)

	def test_exporter_none_is_inactive(self) -> None:
		tracer = MemoryTracer(TracingConfig(enabled=True, exporter="none"))
		assert not tracer.active
		with tracer.start_analytics_span() as span:
			assert isinstance(span, NoOpSpan)

	def test_manager_runs_without_tracing(self, db: Database) -> None:
		manager = MemoryManager(db, MemoryConfig(), tracer=MemoryTracer(TracingConfig(enabled=False)))
		manager.store_execution(make_execution(prompt="parser work"))
		assert len(manager.search_advanced("parser")) == 1


class TestTracingEnabled:
	def _tracer(self) -> tuple[MemoryTracer, InMemorySpanExporter]:
		exporter = InMemorySpanExporter()
		tracer = MemoryTracer(TracingConfig(enabled=True, service_name="xm-test"), exporter=exporter)
		return tracer, exporter

	def test_search_span_attributes(self) -> None:
		tracer, exporter = self._tracer()
		with tracer.start_search_span("parser null bug", 5, advanced=False) as span:
			span.set_attribute("search.results", 2)
		[finished] = exporter.get_finished_spans()
		assert finished.name == "memory.search"
		assert finished.attributes["search.query_length"] == 3
		assert finished.attributes["search.limit"] == 5
		assert finished.attributes["search.advanced"] is False
		assert finished.attributes["search.results"] == 2
		assert finished.resource.attributes["service.name"] == "xm-test"
		tracer.shutdown()

	def test_manager_emits_nested_spans(self, db: Database) -> None:
		tracer, exporter = self._tracer()
		manager = MemoryManager(db, MemoryConfig(), tracer=tracer)
		manager.store_execution(make_execution(prompt="parser work"))
		manager.search_advanced("parser")
		manager.get_analytics()

		spans = {s.name: s for s in exporter.get_finished_spans()}
		assert set(spans) == {"memory.store", "memory.search", "memory.score", "memory.analytics"}
		assert spans["memory.store"].attributes["execution.id"] == 1
		assert spans["memory.score"].attributes["score.candidates"] == 1
		assert spans["memory.score"].parent is not None
		assert spans["memory.score"].parent.span_id == spans["memory.search"].context.span_id
		tracer.shutdown()
