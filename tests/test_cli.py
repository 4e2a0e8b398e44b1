"""
Tests for the command line interface.
"""

import pytest
from click.testing import CliRunner

from dgm.cli import main


@pytest.fixture
def cli():
    return CliRunner()


class TestCli:
    """Tests for the dgm command group."""

    def test_help(self, cli):
        result = cli.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "run" in result.output
        assert "solve" in result.output

    def test_run_help_lists_options(self, cli):
        result = cli.invoke(main, ["run", "--help"])
        assert result.exit_code == 0
        for option in (
            "--max-generation",
            "--selfimprove-size",
            "--selfimprove-workers",
            "--choose-selfimproves-method",
            "--update-archive",
            "--shallow-eval",
            "--eval-noise",
            "--continue-from",
            "--no-full-eval",
            "--num-swe-evals",
            "--run-baseline",
        ):
            assert option in result.output

    def test_run_rejects_unknown_baseline(self, cli):
        result = cli.invoke(main, ["run", "--run-baseline", "no_selection"])
        assert result.exit_code == 2

    def test_run_rejects_unknown_selection_method(self, cli):
        result = cli.invoke(main, ["run", "--choose-selfimproves-method", "tournament"])
        assert result.exit_code == 2

    def test_run_invalid_config(self, cli, tmp_path):
        result = cli.invoke(main, ["run", "--selfimprove-workers", "0", "--agent-repo", str(tmp_path)])
        assert result.exit_code == 1
        assert "Invalid configuration" in result.output

    def test_run_not_a_repository(self, cli, tmp_path):
        result = cli.invoke(main, ["run", "--agent-repo", str(tmp_path), "--output-root", str(tmp_path / "out")])
        assert result.exit_code == 1
        assert "Not a git repository" in result.output

    def test_continue_from_without_archive(self, cli, tmp_path):
        previous = tmp_path / "previous"
        previous.mkdir()
        result = cli.invoke(main, ["run", "--continue-from", str(previous), "--agent-repo", str(tmp_path)])
        assert result.exit_code == 1
        assert "archive.json" in result.output

    def test_solve_requires_arguments(self, cli):
        result = cli.invoke(main, ["solve"])
        assert result.exit_code == 2
        assert "--problem-statement-file" in result.output

    def test_solve_missing_api_key(self, cli, tmp_path, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.chdir(tmp_path)
        problem = tmp_path / "problem.md"
        problem.write_text("Fix it")

        result = cli.invoke(main, [
            "solve",
            "--problem-statement-file", str(problem),
            "--git-dir", str(tmp_path),
            "--base-commit", "HEAD",
            "--chat-history-file", str(tmp_path / "chat.jsonl"),
            "--outdir", str(tmp_path / "out"),
        ])

        assert result.exit_code == 1
        assert "ANTHROPIC_API_KEY" in result.output
