"""MCP server exposing execution memory to agents over stdio."""

from __future__ import annotations

import json
import logging

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from execution_memory.config import MemoryConfig
from execution_memory.memory import MemoryManager
from execution_memory.models import StoreExecutionRequest

logger = logging.getLogger(__name__)

server = Server("execution-memory")

_config: MemoryConfig = MemoryConfig()


def configure(config: MemoryConfig) -> None:
	"""Set the config used to open the store for each tool call."""
	global _config
	_config = config


def _get_manager() -> MemoryManager:
	return MemoryManager.open(_config)


# -- Tool definitions --

_QUERY_SCHEMA = {
	"type": "object",
	"properties": {
		"query": {"type": "string", "description": "Free-text description of the task to recall"},
		"limit": {"type": "integer", "description": "Maximum number of results (default 10)"},
	},
	"required": ["query"],
}

TOOLS = [
	Tool(
		name="search_memory",
		description="Full-text search over past executions, ranked by text match strength.",
		inputSchema=_QUERY_SCHEMA,
	),
	Tool(
		name="search_memory_advanced",
		description=(
			"Search past executions ranked by the multi-factor relevance model "
			"(text match, recency, success history, complexity, confidence, "
			"tags/category, query frequency, lexical similarity)."
		),
		inputSchema=_QUERY_SCHEMA,
	),
	Tool(
		name="store_execution",
		description="Record a completed task execution with optional metadata, environment and performance data.",
		inputSchema=StoreExecutionRequest.model_json_schema(),
	),
	Tool(
		name="get_memory_stats",
		description="Headline counts for the execution store.",
		inputSchema={"type": "object", "properties": {}},
	),
	Tool(
		name="get_memory_analytics",
		description="Overview, trends, patterns, performance and insights over all stored executions.",
		inputSchema={"type": "object", "properties": {}},
	),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
	return TOOLS


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
	manager = _get_manager()
	try:
		result = _dispatch(name, arguments or {}, manager)
		return [TextContent(type="text", text=json.dumps(result, indent=2))]
	except Exception as e:
		logger.warning("Tool %s failed: %s", name, e)
		return [TextContent(type="text", text=json.dumps({"error": str(e)}))]
	finally:
		manager.close()


def _dispatch(name: str, args: dict, manager: MemoryManager) -> dict:
	if name == "search_memory":
		return _tool_search(manager, args, advanced=False)
	elif name == "search_memory_advanced":
		return _tool_search(manager, args, advanced=True)
	elif name == "store_execution":
		return _tool_store_execution(manager, args)
	elif name == "get_memory_stats":
		return manager.get_stats().to_dict()
	elif name == "get_memory_analytics":
		return manager.get_analytics().to_dict()
	else:
		return {"error": f"Unknown tool: {name}"}


def _tool_search(manager: MemoryManager, args: dict, advanced: bool) -> dict:
	query = str(args.get("query", ""))
	limit = args.get("limit")
	limit = int(limit) if limit is not None else None
	if advanced:
		results = [r.to_dict() for r in manager.search_advanced(query, limit)]
	else:
		results = [r.to_dict() for r in manager.search(query, limit)]
	return {"query": query, "results": results, "count": len(results)}


def _tool_store_execution(manager: MemoryManager, args: dict) -> dict:
	request = StoreExecutionRequest.model_validate(args)
	execution_id = manager.store_request(request)
	return {"id": execution_id, "stored": True}


def run_mcp_server(config: MemoryConfig | None = None) -> None:
	"""Entry point for `xm mcp` CLI command."""
	import asyncio

	if config is not None:
		configure(config)

	async def _run():
		async with stdio_server() as (read_stream, write_stream):
			await server.run(read_stream, write_stream, server.create_initialization_options())

	asyncio.run(_run())
