"""Tests for the pipeline-core command line."""

import json
from unittest.mock import MagicMock

import pytest

from pipeline_core import cli
from pipeline_core.config.settings import get_settings
from pipeline_core.pipeline import orchestrator as orchestrator_module


# -- Fixtures --------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    """Fresh settings per test; logging setup is not re-installed."""
    get_settings.cache_clear()
    monkeypatch.setattr(cli, "configure_logging", MagicMock())
    yield
    get_settings.cache_clear()


@pytest.fixture
def graph_file(tmp_path):
    def _write(data):
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(data), encoding="utf-8")
        return str(path)
    return _write


def _node(node_id, priority="P2", effort=1):
    return {"id": node_id, "title": f"Item {node_id}", "priority": priority, "effort": effort, "status": "pending"}


def _run_json(capsys, argv):
    code = cli.main(argv)
    return code, json.loads(capsys.readouterr().out)


# ========================================================================
# ANALYZE
# ========================================================================


class TestAnalyze:

    def test_prints_order_and_critical_path(self, graph_file, capsys):
        path = graph_file({
            "nodes": [_node("A"), _node("B", effort=3)],
            "edges": [{"from": "B", "to": "A"}],
        })
        assert cli.main(["analyze", path]) == 0
        out = capsys.readouterr().out
        assert "Execution order: A -> B" in out
        assert "Critical path: A -> B" in out

    def test_json_output(self, graph_file, capsys):
        path = graph_file({"nodes": [_node("A"), _node("B", priority="P0")], "edges": []})
        code, data = _run_json(capsys, ["--json", "analyze", path])
        assert code == 0
        assert data["execution_order"] == ["B", "A"]

    def test_cycle_is_a_warning_not_an_error(self, graph_file, capsys):
        path = graph_file({
            "nodes": [_node("A"), _node("B")],
            "edges": [{"from": "A", "to": "B"}, {"from": "B", "to": "A"}],
        })
        assert cli.main(["analyze", path]) == 0
        assert "WARNING: cycle" in capsys.readouterr().err

    def test_invalid_graph_lists_every_problem(self, graph_file, capsys):
        path = graph_file({
            "nodes": [{"id": "A", "title": "", "priority": "P9", "effort": -1, "status": "pending"}],
            "edges": [],
        })
        assert cli.main(["analyze", path]) == 2
        err = capsys.readouterr().err
        assert '"title"' in err
        assert '"priority"' in err
        assert '"effort"' in err

    def test_missing_graph_file(self, tmp_path, capsys):
        assert cli.main(["analyze", str(tmp_path / "absent.json")]) == 2
        assert "not found" in capsys.readouterr().err


# ========================================================================
# PIPELINE COMMANDS
# ========================================================================


class TestPipelineCommands:

    def test_start_completes(self, tmp_path, capsys):
        code = cli.main(["-C", str(tmp_path), "start", "--mode", "import"])
        assert code == 0
        out = capsys.readouterr().out
        assert "completed" in out
        assert "issue_reading" in out

    def test_start_json(self, tmp_path, capsys):
        code, data = _run_json(capsys, ["-C", str(tmp_path), "--json", "start", "--mode", "import"])
        assert code == 0
        assert data["overall_status"] == "completed"
        assert data["project_id"] == tmp_path.name

    def test_failed_run_exits_1(self, tmp_path, capsys, monkeypatch):
        async def fail(self, stage, session):
            raise RuntimeError("agent unavailable")

        monkeypatch.setattr(orchestrator_module.DefaultAgentInvoker, "invoke", fail)
        code = cli.main(["-C", str(tmp_path), "start", "--mode", "import", "--max-retries", "0"])
        assert code == 1
        assert "ERROR" in capsys.readouterr().err

    def test_partial_run_exits_0_with_warning(self, tmp_path, capsys, monkeypatch):
        original = orchestrator_module.DefaultAgentInvoker.invoke

        async def fail_review(self, stage, session):
            if stage.name == "review":
                raise RuntimeError("reviewer down")
            return await original(self, stage, session)

        monkeypatch.setattr(orchestrator_module.DefaultAgentInvoker, "invoke", fail_review)
        code = cli.main(["-C", str(tmp_path), "start", "--mode", "import", "--max-retries", "0"])
        assert code == 0
        assert "WARNING: pipeline completed partially" in capsys.readouterr().err

    def test_invalid_project_dir_exits_2(self, tmp_path, capsys):
        assert cli.main(["-C", str(tmp_path / "missing"), "start"]) == 2
        assert "Invalid project directory" in capsys.readouterr().err

    def test_unknown_start_stage_exits_2(self, tmp_path, capsys):
        assert cli.main(["-C", str(tmp_path), "start-from", "nope", "--mode", "import"]) == 2
        assert "Unknown stage" in capsys.readouterr().err

    def test_start_from(self, tmp_path, capsys):
        (tmp_path / ".ad-sdlc" / "scratchpad").mkdir(parents=True)
        code, data = _run_json(
            capsys, ["-C", str(tmp_path), "--json", "start-from", "implementation", "--mode", "import"]
        )
        assert code == 0
        assert [s["name"] for s in data["stages"]] == ["implementation", "review"]

    def test_resume_latest(self, tmp_path, capsys):
        _, first = _run_json(capsys, ["-C", str(tmp_path), "--json", "start", "--mode", "import"])
        code = cli.main(["-C", str(tmp_path), "--json", "resume", "--latest"])
        out = capsys.readouterr().out
        assert code == 0
        assert f"Resuming session {first['pipeline_id']}" in out

    def test_resume_latest_without_sessions(self, tmp_path, capsys):
        assert cli.main(["-C", str(tmp_path), "resume", "--latest"]) == 2
        assert "No readable session" in capsys.readouterr().err

    def test_resume_requires_target(self, tmp_path, capsys):
        assert cli.main(["-C", str(tmp_path), "resume"]) == 2

    def test_resume_unknown_session_exits_2(self, tmp_path, capsys):
        assert cli.main(["-C", str(tmp_path), "resume", "missing"]) == 2
        assert "Session not found" in capsys.readouterr().err

    def test_monitor(self, tmp_path, capsys):
        _, first = _run_json(capsys, ["-C", str(tmp_path), "--json", "start", "--mode", "import"])
        code, snapshot = _run_json(capsys, ["-C", str(tmp_path), "--json", "monitor", first["pipeline_id"]])
        assert code == 0
        assert snapshot["status"] == "completed"
        assert snapshot["completed_stages"] == snapshot["total_stages"] == 4

    def test_settings_drive_retries(self, tmp_path, capsys, monkeypatch):
        calls = []

        async def fail(self, stage, session):
            calls.append(stage.name)
            raise RuntimeError("down")

        monkeypatch.setattr(orchestrator_module.DefaultAgentInvoker, "invoke", fail)
        monkeypatch.setenv("PIPELINE_MAX_RETRIES", "0")
        assert cli.main(["-C", str(tmp_path), "start", "--mode", "import"]) == 1
        assert calls == ["issue_reading"]


# ========================================================================
# MISC
# ========================================================================


class TestMisc:

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 2
        assert "usage" in capsys.readouterr().out

    def test_help_errors(self, capsys):
        assert cli.main(["--help-errors"]) == 0
        out = capsys.readouterr().out
        assert out.splitlines()[0] == "PipelineException"
        assert "    GraphValidationError" in out

    def test_logging_configured_from_settings(self, tmp_path):
        cli.main(["-C", str(tmp_path), "start", "--mode", "import"])
        cli.configure_logging.assert_called_once()
