"""CLI tests using click's runner with fake agents wired in."""

from __future__ import annotations

import asyncio
import json
import tomllib
from typing import TYPE_CHECKING

import pytest
from click.testing import CliRunner

from tests.helpers import FakeAgent, failing_run
from treadle.agents.registry import AgentRegistry
from treadle.cli import cli
from treadle.config import TreadleConfig
from treadle.models import FailureStrategy
from treadle.paths import get_project_config_path, get_session_path

if TYPE_CHECKING:
    from pathlib import Path

    from pytest_mock import MockerFixture

pytestmark = pytest.mark.unit


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def project(tmp_path: Path, runner: CliRunner) -> Path:
    root = tmp_path / "proj"
    root.mkdir()
    result = runner.invoke(cli, ["init", "-C", str(root), "--fallback", "codex"])
    assert result.exit_code == 0, result.output
    (root / "tasks.json").write_text(
        json.dumps(
            {
                "tasks": [
                    {"id": "1", "title": "Scaffold"},
                    {"id": "2", "title": "Feature", "dependencies": ["1"]},
                ]
            }
        )
    )
    return root


PRD_MARKDOWN = """# PRD: Accounts

## User Stories

### US-001: Sign up

As a visitor, I want an account.

**Acceptance Criteria:**
- [ ] Form validates email

### US-002: Log in

**Description:** As a member, I want to log in.

**Depends on:** US-001
"""


@pytest.fixture
def prd_file(tmp_path: Path) -> Path:
    path = tmp_path / "prd.md"
    path.write_text(PRD_MARKDOWN, encoding="utf-8")
    return path


def _patch_agents(mocker: MockerFixture, *agents: FakeAgent) -> None:
    registry = AgentRegistry()
    for agent in agents:
        registry.register(agent)
    mocker.patch("treadle.bootstrap.create_default_registry", return_value=registry)


class TestInit:
    def test_writes_config_and_task_file(self, tmp_path: Path, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["init", "-C", str(tmp_path), "--agent", "gemini", "--fallback", "kimi", "-n", "4"]
        )

        assert result.exit_code == 0, result.output
        data = tomllib.loads(get_project_config_path(tmp_path).read_text())
        assert data["agent"] == {"primary": "gemini", "fallback_agents": ["kimi"]}
        assert data["engine"]["max_iterations"] == 4
        assert json.loads((tmp_path / "tasks.json").read_text()) == {"tasks": []}

    def test_refuses_to_overwrite(self, project: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["init", "-C", str(project)])
        assert result.exit_code == 1
        assert "--overwrite" in result.output

    def test_seeds_tasks_from_prd(self, tmp_path: Path, prd_file: Path, runner: CliRunner) -> None:
        root = tmp_path / "fresh"

        result = runner.invoke(cli, ["init", "-C", str(root), "--from-prd", str(prd_file)])

        assert result.exit_code == 0, result.output
        assert "Imported 2 task(s) from prd.md" in result.output
        tasks = json.loads((root / "tasks.json").read_text())["tasks"]
        assert [(task["id"], task["dependencies"]) for task in tasks] == [
            ("US-001", []),
            ("US-002", ["US-001"]),
        ]
        assert tasks[0]["description"].endswith("- [ ] Form validates email")

    def test_invalid_prd_writes_nothing(self, tmp_path: Path, runner: CliRunner) -> None:
        empty = tmp_path / "empty.md"
        empty.write_text("# PRD: Nothing\n")

        result = runner.invoke(cli, ["init", "-C", str(tmp_path), "--from-prd", str(empty)])

        assert result.exit_code == 1
        assert "No user stories found" in result.output
        assert not get_project_config_path(tmp_path).exists()

    def test_from_prd_needs_json_tracker(
        self, tmp_path: Path, prd_file: Path, runner: CliRunner
    ) -> None:
        result = runner.invoke(
            cli,
            ["init", "-C", str(tmp_path), "--tracker", "beads-rust", "--from-prd", str(prd_file)],
        )
        assert result.exit_code == 2
        assert "json tracker" in result.output


class TestPrd:
    def test_import_appends_to_existing_tasks(
        self, project: Path, prd_file: Path, runner: CliRunner
    ) -> None:
        first = runner.invoke(cli, ["prd", "import", "-C", str(project), str(prd_file)])
        again = runner.invoke(cli, ["prd", "import", "-C", str(project), str(prd_file)])

        assert first.exit_code == 0, first.output
        tasks = json.loads((project / "tasks.json").read_text())["tasks"]
        assert [task["id"] for task in tasks] == ["1", "2", "US-001", "US-002"]
        assert again.exit_code == 0, again.output
        assert "Imported 0 task(s)" in again.output
        assert "Skipped 2 task(s)" in again.output

    def test_imported_stories_run_in_dependency_order(
        self, tmp_path: Path, prd_file: Path, runner: CliRunner, mocker: MockerFixture
    ) -> None:
        root = tmp_path / "stories"
        init = runner.invoke(cli, ["init", "-C", str(root), "--from-prd", str(prd_file)])
        assert init.exit_code == 0, init.output
        claude = FakeAgent("claude")
        _patch_agents(mocker, claude)

        result = runner.invoke(cli, ["run", "-C", str(root)])

        assert result.exit_code == 0, result.output
        assert "Task US-001: Sign up" in claude.prompts[0]
        assert "As a member, I want to log in." in claude.prompts[1]

    def test_prompt_includes_skill(self, tmp_path: Path, runner: CliRunner) -> None:
        skill = tmp_path / "skill.md"
        skill.write_text("---\nname: prd\n---\nKeep stories tiny.\n")

        result = runner.invoke(cli, ["prd", "prompt", "--skill", str(skill)])

        assert result.exit_code == 0, result.output
        assert "Keep stories tiny." in result.output
        assert "### US-001: Title" in result.output


class TestUse:
    def test_changes_agents(self, project: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["use", "-C", str(project), "codex", "--fallback", "gemini"])

        assert result.exit_code == 0, result.output
        assert "Agents: codex -> gemini" in result.output

    def test_no_fallback(self, project: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["use", "-C", str(project), "--no-fallback"])
        assert "Agents: claude" in result.output
        data = tomllib.loads(get_project_config_path(project).read_text())
        assert data["agent"]["fallback_agents"] == []

    def test_nothing_to_change(self, project: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["use", "-C", str(project)])
        assert result.exit_code == 2


class TestRun:
    def test_runs_queue_to_completion(
        self, project: Path, runner: CliRunner, mocker: MockerFixture
    ) -> None:
        claude = FakeAgent("claude")
        _patch_agents(mocker, claude, FakeAgent("codex"))

        result = runner.invoke(cli, ["run", "-C", str(project)])

        assert result.exit_code == 0, result.output
        assert len(claude.prompts) == 2
        assert "Task 2: Feature" in claude.prompts[1]
        assert "2 task(s) completed" in result.output
        tasks = json.loads((project / "tasks.json").read_text())["tasks"]
        assert [task["status"] for task in tasks] == ["completed", "completed"]

        status = runner.invoke(cli, ["status", "-C", str(project)])
        assert "Status: completed" in status.output

    def test_existing_session_requires_resume_or_restart(
        self, project: Path, runner: CliRunner, mocker: MockerFixture
    ) -> None:
        _patch_agents(mocker, FakeAgent("claude"), FakeAgent("codex"))
        assert runner.invoke(cli, ["run", "-C", str(project), "-n", "1"]).exit_code == 0

        refused = runner.invoke(cli, ["run", "-C", str(project)])
        resumed = runner.invoke(cli, ["run", "-C", str(project), "--resume", "-n", "5"])

        assert refused.exit_code == 1
        assert "resume or restart" in refused.output
        assert resumed.exit_code == 0, resumed.output
        assert "2 task(s) completed" in resumed.output

    def test_abort_exports_logs(
        self, project: Path, runner: CliRunner, mocker: MockerFixture
    ) -> None:
        config_path = get_project_config_path(project)
        config = TreadleConfig.load(config_path)
        config.error_handling.strategy = FailureStrategy.ABORT
        asyncio.run(config.save(config_path))
        _patch_agents(mocker, FakeAgent("claude", [failing_run()]), FakeAgent("codex"))

        result = runner.invoke(cli, ["run", "-C", str(project)])

        assert result.exit_code == 1
        assert "last-error.log" in result.output

    def test_resume_and_restart_are_exclusive(self, project: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["run", "-C", str(project), "--resume", "--restart"])
        assert result.exit_code == 2


class TestStatus:
    def test_without_session(self, tmp_path: Path, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["status", "-C", str(tmp_path)])
        assert result.exit_code == 0
        assert "No saved session." in result.output

    def test_corrupted_session(self, tmp_path: Path, runner: CliRunner) -> None:
        path = get_session_path(tmp_path)
        path.parent.mkdir()
        path.write_text("{}")

        result = runner.invoke(cli, ["status", "-C", str(tmp_path)])

        assert result.exit_code == 1


class TestRemoteToken:
    def test_create_and_rotate(
        self, tmp_path: Path, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TREADLE_CONFIG_DIR", str(tmp_path))

        first = runner.invoke(cli, ["remote", "token"])
        again = runner.invoke(cli, ["remote", "token"])
        rotated = runner.invoke(cli, ["remote", "token", "--rotate"])

        assert first.exit_code == 0
        token = first.stdout.strip()
        assert len(token) == 64
        assert again.stdout.strip() == token
        assert rotated.stdout.strip() != token
        assert "version 2" in rotated.stderr

    def test_commands_need_a_token(
        self, tmp_path: Path, runner: CliRunner, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TREADLE_CONFIG_DIR", str(tmp_path / "empty"))
        result = runner.invoke(cli, ["remote", "pause"])
        assert result.exit_code == 1
        assert "No remote token found" in result.output
