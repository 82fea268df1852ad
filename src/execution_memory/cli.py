"""CLI interface for execution-memory."""

from __future__ import annotations

import argparse
import json
import sys
import tomllib
from dataclasses import asdict
from pathlib import Path

from execution_memory.analytics import EXPORT_FORMATS
from execution_memory.config import (
	DEFAULT_CONFIG_NAME,
	MemoryConfig,
	load_config,
	load_config_or_default,
	validate_config,
)
from execution_memory.errors import StorageUnavailable
from execution_memory.integrity import IntegrityChecker, IntegrityReport
from execution_memory.memory import MemoryManager
from execution_memory.metrics import setup_logging
from execution_memory.models import (
	PRIORITIES,
	ExecutionMetadata,
	ExecutionRecord,
	StoreExecutionRequest,
)

INIT_TEMPLATE = """\
[store]
path = "{db_path}"
retention_days = 180

[scoring]
default_limit = 10
candidate_multiplier = 2

# Partial overrides of the relevance factor weights (not renormalised).
[scoring.weights]

[logging]
level = "INFO"
json = false

[tracing]
enabled = false
exporter = "console"

[api]
host = "127.0.0.1"
port = 8080
"""


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="xm",
		description="Execution memory - recall relevant past agent executions",
	)
	common = argparse.ArgumentParser(add_help=False)
	common.add_argument("--config", default=None, help=f"Config file path (default: ./{DEFAULT_CONFIG_NAME} if present)")
	common.add_argument("--db", default=None, help="Override store.path from the config")

	sub = parser.add_subparsers(dest="command")

	# xm init
	init_cmd = sub.add_parser("init", parents=[common], help="Create a config file and an empty store")
	init_cmd.add_argument("path", nargs="?", default=".")

	# xm store
	store = sub.add_parser("store", parents=[common], help="Record a completed execution")
	store.add_argument("--prompt", default=None, help="Task prompt (required unless --from-json)")
	store.add_argument("--from-json", default=None, help="Read a full execution JSON document ('-' for stdin)")
	store.add_argument("--plan", default=None)
	store.add_argument("--reasoning", default=None)
	store.add_argument("--outcome", default=None)
	store.add_argument("--success", action="store_true", help="Mark the execution as successful")
	store.add_argument("--duration-ms", type=int, default=0)
	store.add_argument("--model", default=None)
	store.add_argument("--tokens", type=int, default=None)
	store.add_argument("--tags", default="", help="Comma-separated tags")
	store.add_argument("--category", default="general")
	store.add_argument("--priority", default="medium", choices=PRIORITIES)
	store.add_argument("--complexity", type=int, default=5)
	store.add_argument("--confidence", type=float, default=0.5)

	# xm search / search-advanced
	for name, help_text in (
		("search", "Full-text search over executions"),
		("search-advanced", "Multi-factor relevance search"),
	):
		s = sub.add_parser(name, parents=[common], help=help_text)
		s.add_argument("query")
		s.add_argument("--limit", type=int, default=None)
		s.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")
		if name == "search-advanced":
			s.add_argument("--explain", action="store_true", help="Show the strongest factors per result")

	# xm show
	show = sub.add_parser("show", parents=[common], help="Show one execution with its context")
	show.add_argument("execution_id", type=int)

	# xm stats
	stats = sub.add_parser("stats", parents=[common], help="Show store statistics")
	stats.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")

	# xm analytics
	analytics = sub.add_parser("analytics", parents=[common], help="Export the analytics report")
	analytics.add_argument("--format", choices=EXPORT_FORMATS, default="json")
	analytics.add_argument("--output", default=None, help="Write to a file instead of stdout")

	# xm query-stats
	qs = sub.add_parser("query-stats", parents=[common], help="Show search history for one query")
	qs.add_argument("query")

	# xm weights
	weights = sub.add_parser("weights", parents=[common], help="Show or update relevance weights")
	weights.add_argument(
		"--set", action="append", default=[], metavar="FACTOR=WEIGHT",
		help="Partial weight update (repeatable, not renormalised)",
	)

	# xm cleanup
	cleanup = sub.add_parser("cleanup", parents=[common], help="Delete executions past the retention window")
	cleanup.add_argument("--days", type=int, default=None, help="Override store.retention_days")

	# xm check / repair
	for name, help_text in (("check", "Check store integrity"), ("repair", "Repair the store")):
		c = sub.add_parser(name, parents=[common], help=help_text)
		c.add_argument("--json", action="store_true", dest="json_output", help="Output as JSON")

	# xm serve
	serve = sub.add_parser("serve", parents=[common], help="Start the HTTP API")
	serve.add_argument("--host", default=None)
	serve.add_argument("--port", type=int, default=None)

	# xm mcp
	sub.add_parser("mcp", parents=[common], help="Start the MCP server (stdio)")

	# xm validate-config
	vc = sub.add_parser("validate-config", help="Validate config file semantically")
	vc.add_argument("--config", default=DEFAULT_CONFIG_NAME)

	return parser


def _config(args: argparse.Namespace) -> MemoryConfig:
	config: MemoryConfig = args.loaded_config
	if getattr(args, "db", None):
		config.store.path = args.db
	return config


def _open(args: argparse.Namespace) -> MemoryManager:
	return MemoryManager.open(_config(args))


def cmd_init(args: argparse.Namespace) -> int:
	"""Create a config file and initialise the store."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG_NAME

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	db_path = args.db or ".sentient/knowledge.db"
	target.mkdir(parents=True, exist_ok=True)
	config_path.write_text(INIT_TEMPLATE.format(db_path=db_path))
	print(f"Created {config_path}")

	config = load_config(config_path)
	store_path = Path(config.store.path)
	if not store_path.is_absolute():
		config.store.path = str(target / store_path)
	with MemoryManager.open(config):
		pass
	print(f"Initialized store at {config.store.path}")
	return 0


def cmd_store(args: argparse.Namespace) -> int:
	"""Record a completed execution."""
	with _open(args) as manager:
		if args.from_json:
			raw = sys.stdin.read() if args.from_json == "-" else Path(args.from_json).read_text()
			try:
				request = StoreExecutionRequest.model_validate_json(raw)
			except ValueError as e:
				print(f"Error: invalid execution JSON: {e}")
				return 1
			execution_id = manager.store_request(request)
		else:
			if not args.prompt:
				print("Error: --prompt is required unless --from-json is given")
				return 1
			record = ExecutionRecord(
				prompt=args.prompt,
				plan=args.plan,
				reasoning=args.reasoning,
				outcome=args.outcome,
				success=args.success,
				duration_ms=args.duration_ms,
				model_used=args.model,
				tokens_used=args.tokens,
			)
			metadata = ExecutionMetadata(
				tags=[t.strip() for t in args.tags.split(",") if t.strip()],
				category=args.category,
				priority=args.priority,
				complexity=args.complexity,
				confidence=args.confidence,
			)
			try:
				execution_id = manager.store_execution(record, metadata)
			except ValueError as e:
				print(f"Error: {e}")
				return 1
	print(f"Stored execution {execution_id}")
	return 0


def cmd_search(args: argparse.Namespace) -> int:
	"""Full-text search."""
	with _open(args) as manager:
		results = manager.search(args.query, args.limit)
	if args.json_output:
		print(json.dumps([r.to_dict() for r in results], indent=2))
		return 0
	if not results:
		print("No matching executions.")
		return 0
	print(f"\n{'ID':>6} {'Score':>6} {'Type':<9} {'Summary':<50}")
	print("-" * 74)
	for r in results:
		print(f"{r.execution_id:>6} {r.relevance_score:>6.3f} {r.context_type:<9} {r.summary:<50}")
	return 0


def cmd_search_advanced(args: argparse.Namespace) -> int:
	"""Multi-factor relevance search."""
	with _open(args) as manager:
		results = manager.search_advanced(args.query, args.limit)
	if args.json_output:
		print(json.dumps([r.to_dict() for r in results], indent=2))
		return 0
	if not results:
		print("No matching executions.")
		return 0
	print(f"\n{'ID':>6} {'Score':>6} {'Type':<9} {'Category':<12} {'Summary':<50}")
	print("-" * 87)
	for r in results:
		print(f"{r.execution_id:>6} {r.relevance_score:>6.3f} {r.context_type:<9} {r.category[:12]:<12} {r.summary:<50}")
		if args.explain:
			top = ", ".join(f"{name}={score:.2f}" for name, score in r.factors.top(3))
			print(f"{'':>6} {top}")
			print(f"{'':>6} > {r.matched_content}")
	return 0


def cmd_show(args: argparse.Namespace) -> int:
	"""Show one execution with its context."""
	with _open(args) as manager:
		context = manager.get_execution_context(args.execution_id)
	if context is None:
		print(f"Execution {args.execution_id} not found.")
		return 1
	print(json.dumps(asdict(context), indent=2))
	return 0


def cmd_stats(args: argparse.Namespace) -> int:
	"""Show store statistics."""
	with _open(args) as manager:
		stats = manager.get_stats()
	if args.json_output:
		print(json.dumps(stats.to_dict(), indent=2))
		return 0
	print(f"Total executions:   {stats.total_executions}")
	print(f"  successful:       {stats.successful_executions}")
	print(f"  failed:           {stats.failed_executions}")
	print(f"Success rate:       {stats.memory_hit_rate:.1%}")
	print(f"Avg duration:       {stats.average_execution_time}ms")
	print(f"Metric entries:     {stats.total_memory_entries}")
	print(f"Oldest / newest:    {stats.oldest_execution or '-'} / {stats.most_recent_execution or '-'}")
	return 0


def cmd_analytics(args: argparse.Namespace) -> int:
	"""Export the analytics report."""
	with _open(args) as manager:
		text = manager.export_analytics(args.format)
	if args.output:
		Path(args.output).write_text(text)
		print(f"Wrote {args.format} analytics to {args.output}")
	else:
		print(text)
	return 0


def cmd_query_stats(args: argparse.Namespace) -> int:
	"""Show search history for one query."""
	with _open(args) as manager:
		result = manager.get_query_analytics(args.query)
	if result is None:
		print(f"No search history for {args.query!r}.")
		return 1
	print(json.dumps(result.to_dict(), indent=2))
	return 0


def _parse_weight_updates(pairs: list[str]) -> dict[str, float]:
	updates: dict[str, float] = {}
	for pair in pairs:
		name, sep, value = pair.partition("=")
		if not sep:
			raise ValueError(f"Expected FACTOR=WEIGHT, got {pair!r}")
		updates[name.strip()] = float(value)
	return updates


def cmd_weights(args: argparse.Namespace) -> int:
	"""Show or update relevance weights."""
	with _open(args) as manager:
		if args.set:
			try:
				weights = manager.update_weights(_parse_weight_updates(args.set))
			except ValueError as e:
				print(f"Error: {e}")
				return 1
		else:
			weights = manager.get_weights()
	for name, weight in weights.items():
		print(f"{name:<18} {weight:.3f}")
	print(f"{'total':<18} {sum(weights.values()):.3f}")
	return 0


def cmd_cleanup(args: argparse.Namespace) -> int:
	"""Delete executions past the retention window."""
	with _open(args) as manager:
		try:
			deleted = manager.cleanup(args.days)
		except ValueError as e:
			print(f"Error: {e}")
			return 1
	print(f"Deleted {deleted} execution(s)")
	return 0


def _print_report(report: IntegrityReport, json_output: bool) -> None:
	if json_output:
		print(json.dumps(report.to_dict(), indent=2))
		return
	print("PASSED" if report.passed else "FAILED")
	for action in report.actions:
		print(f"[ACTION] {action}")
	for msg in report.errors:
		print(f"[ERROR] {msg}")
	for msg in report.warnings:
		print(f"[WARNING] {msg}")
	print(
		f"\n{report.total_tables} table(s), {report.total_records} record(s), "
		f"{report.orphaned_records} orphaned, {report.corrupted_records} corrupted"
	)


def cmd_check(args: argparse.Namespace) -> int:
	"""Check store integrity."""
	with _open(args) as manager:
		report = IntegrityChecker(manager.db).check()
	_print_report(report, args.json_output)
	return 0 if report.passed else 1


def cmd_repair(args: argparse.Namespace) -> int:
	"""Repair the store."""
	with _open(args) as manager:
		report = IntegrityChecker(manager.db).repair()
	_print_report(report, args.json_output)
	return 0 if report.passed else 1


def cmd_serve(args: argparse.Namespace) -> int:
	"""Start the HTTP API."""
	import uvicorn

	from execution_memory.api import create_app

	config = _config(args)
	host = args.host or config.api.host
	port = args.port or config.api.port
	print(f"Execution memory API on http://{host}:{port}")
	uvicorn.run(create_app(config), host=host, port=port, log_level="info")
	return 0


def cmd_mcp(args: argparse.Namespace) -> int:
	"""Start the MCP server."""
	from execution_memory.mcp_server import run_mcp_server

	run_mcp_server(_config(args))
	return 0


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config file semantically."""
	try:
		config = load_config(args.config)
	except (FileNotFoundError, tomllib.TOMLDecodeError) as e:
		print(f"Error: {e}")
		return 1
	issues = validate_config(config)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"init": cmd_init,
	"store": cmd_store,
	"search": cmd_search,
	"search-advanced": cmd_search_advanced,
	"show": cmd_show,
	"stats": cmd_stats,
	"analytics": cmd_analytics,
	"query-stats": cmd_query_stats,
	"weights": cmd_weights,
	"cleanup": cmd_cleanup,
	"check": cmd_check,
	"repair": cmd_repair,
	"serve": cmd_serve,
	"mcp": cmd_mcp,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		if args.command == "validate-config":
			config = MemoryConfig()
		else:
			config = load_config_or_default(args.config)
	except (FileNotFoundError, tomllib.TOMLDecodeError) as e:
		print(f"Error: {e}")
		return 1
	args.loaded_config = config
	setup_logging(config.logging)

	try:
		return handler(args)
	except StorageUnavailable as e:
		print(f"Error: {e}")
		return 2


if __name__ == "__main__":
	sys.exit(main())
