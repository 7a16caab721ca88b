"""Tests for the command-line entry point."""

import pytest

from commitcrawl.cli import build_parser, main


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    # Keep a developer's .env and shell settings out of the tests
    monkeypatch.chdir(tmp_path)
    for name in ("GITHUB_TOKEN", "COMMITCRAWL_DB_PATH", "COMMITCRAWL_KILL_SWITCH_URL",
                 "COMMITCRAWL_ERROR_WEBHOOK", "COMMITCRAWL_MAX_CONCURRENCY"):
        monkeypatch.delenv(name, raising=False)


def test_run_flags_parse():
    args = build_parser().parse_args(
        ["run", "--bootstrap", "--start-repo", "100", "--max-concurrency", "3", "--reset"]
    )
    assert args.bootstrap is True
    assert args.start_repository_id == 100
    assert args.max_concurrency == 3
    assert args.reset_on_bootstrap is True
    assert args.checkpoint_on_failure is None


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage" in capsys.readouterr().out


def test_stats_without_database(tmp_path, capsys):
    assert main(["--db", str(tmp_path / "missing.db"), "stats"]) == 1
    assert "No database" in capsys.readouterr().out


def test_init_db_then_stats(tmp_path, capsys):
    db = str(tmp_path / "crawl.db")

    assert main(["--db", db, "init-db"]) == 0
    assert main(["--db", db, "stats"]) == 0

    out = capsys.readouterr().out
    assert "Repositories:          0" in out
    assert "Active leases:         0 / 1" in out


def test_sweep_leases_on_empty_database(tmp_path, capsys):
    assert main(["--db", str(tmp_path / "crawl.db"), "sweep-leases"]) == 0
    assert "Removed 0 expired lease(s)" in capsys.readouterr().out


def test_invalid_config_exits_nonzero(tmp_path, capsys):
    assert main(["--db", str(tmp_path / "crawl.db"), "run", "--max-concurrency", "0"]) == 1
    assert "Error" in capsys.readouterr().out


def test_detail_flags_parse():
    args = build_parser().parse_args(["run", "--no-commit-details"])
    assert args.fetch_commit_details is False
    # Absent flags defer to the environment
    assert args.fetch_repo_details is None


@pytest.mark.parametrize("command", ["init-db", "sweep-leases", "stats"])
def test_unopenable_database_exits_nonzero(tmp_path, capsys, command):
    unopenable = tmp_path / "dir.db"
    unopenable.mkdir()

    assert main(["--db", str(unopenable), command]) == 1
    assert "Error" in capsys.readouterr().out
