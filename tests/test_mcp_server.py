"""Tests for MCP server tool handlers."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import patch

import pytest

pytest.importorskip("mcp", reason="mcp package not installed")

from conftest import make_execution, make_metadata  # noqa: E402

from execution_memory.config import MemoryConfig, StoreConfig  # noqa: E402
from execution_memory.memory import MemoryManager  # noqa: E402


class TestMCPToolHandlers:
	"""Test the _dispatch function directly (no MCP transport)."""

	def test_search_memory(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		execution_id = manager.store_execution(make_execution(prompt="Fix null pointer in parser"))
		result = _dispatch("search_memory", {"query": "parser"}, manager)
		assert result["count"] == 1
		assert result["results"][0]["execution_id"] == execution_id

	def test_search_memory_advanced(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		manager.store_execution(
			make_execution(prompt="Fix null pointer in parser"),
			metadata=make_metadata(tags=["parser", "bug"], category="bugfix"),
		)
		result = _dispatch("search_memory_advanced", {"query": "parser bug", "limit": 2}, manager)
		assert result["query"] == "parser bug"
		assert result["results"][0]["tags"] == ["parser", "bug"]
		assert manager.get_query_analytics("parser bug") is not None

	def test_store_execution(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		result = _dispatch("store_execution", {
			"prompt": "Add caching",
			"success": True,
			"metadata": {"tags": ["cache"], "complexity": 4},
		}, manager)
		assert result["stored"] is True
		context = manager.get_execution_context(result["id"])
		assert context is not None
		assert context.metadata.tags == ["cache"]

	def test_store_execution_invalid(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		with pytest.raises(ValueError):
			_dispatch("store_execution", {"prompt": ""}, manager)

	def test_stats_and_analytics(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		manager.store_execution(make_execution())
		assert _dispatch("get_memory_stats", {}, manager)["total_executions"] == 1
		analytics = _dispatch("get_memory_analytics", {}, manager)
		assert analytics["overview"]["total_executions"] == 1

	def test_unknown_tool(self, manager: MemoryManager) -> None:
		from execution_memory.mcp_server import _dispatch

		assert _dispatch("nope", {}, manager) == {"error": "Unknown tool: nope"}


class TestToolDefinitions:
	def test_tool_names(self) -> None:
		from execution_memory.mcp_server import TOOLS

		assert [t.name for t in TOOLS] == [
			"search_memory",
			"search_memory_advanced",
			"store_execution",
			"get_memory_stats",
			"get_memory_analytics",
		]

	def test_store_schema_requires_prompt(self) -> None:
		from execution_memory.mcp_server import TOOLS

		store = next(t for t in TOOLS if t.name == "store_execution")
		assert "prompt" in store.inputSchema["required"]


class TestCallTool:
	def test_call_tool_opens_configured_store(self, tmp_path: Path) -> None:
		from execution_memory import mcp_server

		config = MemoryConfig()
		config.store = StoreConfig(path=str(tmp_path / "mcp.db"))
		with patch.object(mcp_server, "_config", config):
			stored = asyncio.run(mcp_server.call_tool("store_execution", {"prompt": "hello"}))
			stats = asyncio.run(mcp_server.call_tool("get_memory_stats", {}))
		assert json.loads(stored[0].text)["stored"] is True
		assert json.loads(stats[0].text)["total_executions"] == 1

	def test_call_tool_reports_errors(self, tmp_path: Path) -> None:
		from execution_memory import mcp_server

		config = MemoryConfig()
		config.store = StoreConfig(path=str(tmp_path / "mcp.db"))
		with patch.object(mcp_server, "_config", config):
			result = asyncio.run(mcp_server.call_tool("store_execution", {"prompt": ""}))
		assert "error" in json.loads(result[0].text)
