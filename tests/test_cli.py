"""Tests for CLI argument parsing and commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from execution_memory.cli import _parse_weight_updates, build_parser, main


@pytest.fixture()
def store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
	monkeypatch.chdir(tmp_path)
	return str(tmp_path / "knowledge.db")


def _store(db: str, prompt: str, *extra: str) -> None:
	assert main(["store", "--db", db, "--prompt", prompt, *extra]) == 0


class TestArgParsing:
	def test_init_default_path(self) -> None:
		args = build_parser().parse_args(["init"])
		assert args.command == "init"
		assert args.path == "."

	def test_no_command_returns_0(self) -> None:
		assert main([]) == 0

	def test_priority_choices(self) -> None:
		with pytest.raises(SystemExit):
			build_parser().parse_args(["store", "--prompt", "x", "--priority", "urgent"])

	def test_parse_weight_updates(self) -> None:
		assert _parse_weight_updates(["fts_score=0.3", " semantic_score = 0.1"]) == {
			"fts_score": 0.3, "semantic_score": 0.1,
		}
		with pytest.raises(ValueError):
			_parse_weight_updates(["fts_score"])


class TestInit:
	def test_creates_config_and_store(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
		monkeypatch.chdir(tmp_path)
		assert main(["init", str(tmp_path / "proj")]) == 0
		assert (tmp_path / "proj" / "execution-memory.toml").exists()
		assert (tmp_path / "proj" / ".sentient" / "knowledge.db").exists()
		assert "Initialized store" in capsys.readouterr().out

	def test_refuses_existing_config(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.chdir(tmp_path)
		(tmp_path / "execution-memory.toml").write_text("")
		assert main(["init", str(tmp_path)]) == 1


class TestStoreAndSearch:
	def test_store_then_search(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "Fix null pointer in parser", "--success", "--tags", "parser,bug", "--category", "bugfix")
		capsys.readouterr()

		assert main(["search", "--db", store, "parser", "--json"]) == 0
		results = json.loads(capsys.readouterr().out)
		assert len(results) == 1
		assert results[0]["prompt"] == "Fix null pointer in parser"
		assert results[0]["context_type"] == "solution"

	def test_search_advanced_explain(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "Fix null pointer in parser", "--tags", "parser,bug", "--category", "bugfix", "--complexity", "6")
		capsys.readouterr()

		assert main(["search-advanced", "--db", store, "parser bug", "--explain"]) == 0
		out = capsys.readouterr().out
		assert "bugfix" in out
		assert "context_score=1.00" in out

	def test_search_advanced_json(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "Fix null pointer in parser", "--tags", "parser")
		capsys.readouterr()
		assert main(["search-advanced", "--db", store, "parser", "--json", "--limit", "1"]) == 0
		[result] = json.loads(capsys.readouterr().out)
		assert result["tags"] == ["parser"]
		assert set(result["factors"]) >= {"fts_score", "semantic_score"}

	def test_search_no_results(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		assert main(["search", "--db", store, "anything"]) == 0
		assert "No matching executions." in capsys.readouterr().out

	def test_store_requires_prompt(self, store: str) -> None:
		assert main(["store", "--db", store]) == 1

	def test_store_from_json(self, store: str, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		payload = tmp_path / "exec.json"
		payload.write_text(json.dumps({
			"prompt": "Add retries",
			"success": True,
			"metadata": {"tags": ["http"], "category": "feature"},
		}))
		assert main(["store", "--db", store, "--from-json", str(payload)]) == 0
		assert "Stored execution 1" in capsys.readouterr().out

		assert main(["show", "--db", store, "1"]) == 0
		shown = json.loads(capsys.readouterr().out)
		assert shown["record"]["prompt"] == "Add retries"
		assert shown["metadata"]["tags"] == ["http"]

	def test_store_from_invalid_json(self, store: str, tmp_path: Path) -> None:
		payload = tmp_path / "exec.json"
		payload.write_text('{"prompt": ""}')
		assert main(["store", "--db", store, "--from-json", str(payload)]) == 1

	def test_show_missing(self, store: str) -> None:
		assert main(["show", "--db", store, "42"]) == 1


class TestStatsAndAnalytics:
	def test_stats_json(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "one", "--success")
		_store(store, "two")
		capsys.readouterr()
		assert main(["stats", "--db", store, "--json"]) == 0
		stats = json.loads(capsys.readouterr().out)
		assert stats["total_executions"] == 2
		assert stats["successful_executions"] == 1

	def test_analytics_csv_to_file(self, store: str, tmp_path: Path) -> None:
		_store(store, "one", "--success")
		out = tmp_path / "report.csv"
		assert main(["analytics", "--db", store, "--format", "csv", "--output", str(out)]) == 0
		assert out.read_text().startswith("Section,Metric,Value")

	def test_query_stats(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "parser work")
		assert main(["query-stats", "--db", store, "parser"]) == 1
		main(["search-advanced", "--db", store, "parser"])
		capsys.readouterr()
		assert main(["query-stats", "--db", store, "parser"]) == 0
		assert json.loads(capsys.readouterr().out)["frequency"] == 1


class TestWeights:
	def test_set_and_persist(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		assert main(["weights", "--db", store, "--set", "fts_score=0.5"]) == 0
		capsys.readouterr()
		assert main(["weights", "--db", store]) == 0
		out = capsys.readouterr().out
		assert "fts_score          0.500" in out
		assert "total              1.300" in out

	def test_invalid_weight(self, store: str) -> None:
		assert main(["weights", "--db", store, "--set", "bogus=1"]) == 1
		assert main(["weights", "--db", store, "--set", "fts_score=-1"]) == 1


class TestMaintenance:
	def test_cleanup(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "fresh")
		capsys.readouterr()
		assert main(["cleanup", "--db", store, "--days", "30"]) == 0
		assert "Deleted 0 execution(s)" in capsys.readouterr().out
		assert main(["cleanup", "--db", store, "--days", "0"]) == 1

	def test_check_and_repair(self, store: str, capsys: pytest.CaptureFixture[str]) -> None:
		_store(store, "fresh")
		capsys.readouterr()
		assert main(["check", "--db", store, "--json"]) == 0
		assert json.loads(capsys.readouterr().out)["passed"] is True
		assert main(["repair", "--db", store]) == 0
		assert "[ACTION] Rebuilt FTS5 search index" in capsys.readouterr().out

	def test_unopenable_store_returns_2(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.chdir(tmp_path)
		assert main(["stats", "--db", str(tmp_path)]) == 2


class TestServe:
	def test_serve_uses_config_defaults(self, store: str) -> None:
		with patch("uvicorn.run") as mock_run:
			assert main(["serve", "--db", store, "--port", "9123"]) == 0
		_, kwargs = mock_run.call_args
		assert kwargs["host"] == "127.0.0.1"
		assert kwargs["port"] == 9123


class TestValidateConfig:
	def test_valid(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		cfg = tmp_path / "execution-memory.toml"
		cfg.write_text(f'[store]\npath = "{tmp_path / "k.db"}"\n')
		assert main(["validate-config", "--config", str(cfg)]) == 0
		assert "Config OK" in capsys.readouterr().out

	def test_errors(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
		cfg = tmp_path / "execution-memory.toml"
		cfg.write_text("[store]\nretention_days = 0\n[scoring.weights]\nvibes_score = 1.0\n")
		assert main(["validate-config", "--config", str(cfg)]) == 1
		assert "[ERROR]" in capsys.readouterr().out

	def test_missing_file(self, tmp_path: Path) -> None:
		assert main(["validate-config", "--config", str(tmp_path / "missing.toml")]) == 1

	def test_bad_config_for_other_commands(self, tmp_path: Path) -> None:
		assert main(["stats", "--config", str(tmp_path / "missing.toml")]) == 1
