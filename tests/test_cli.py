"""CLI smoke tests: every subcommand is registered and runs against a real repository."""
from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from branchlink.cli import _build_parser, main

pytestmark = pytest.mark.integration


@pytest.fixture
def cli_env(tmp_path: Path) -> dict:
    env = os.environ.copy()
    env["HOME"] = str(tmp_path / "home")
    env["BRANCHLINK_STATE_DIR"] = str(tmp_path / "state")
    env["BRANCHLINK_LOG_DISABLE_FILE"] = "1"
    return env


def _run(env: dict, workspace: Path, *args: str) -> subprocess.CompletedProcess[str]:
    """Run the branchlink CLI in a subprocess and capture output."""
    return subprocess.run(
        [sys.executable, "-m", "branchlink", "-C", str(workspace), *args],
        capture_output=True,
        text=True,
        env=env,
    )


def test_help_exits_zero():
    with pytest.raises(SystemExit) as exc_info:
        main(["--help"])
    assert exc_info.value.code == 0


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 0
    assert "usage:" in capsys.readouterr().out.lower()


def test_parser_has_every_command():
    parser = _build_parser()
    for argv in (
        ["associate", "ENG-1", "main"],
        ["remove", "ENG-1"],
        ["branch", "ENG-1"],
        ["status", "ENG-1"],
        ["checkout", "ENG-1"],
        ["suggest", "ENG-1", "--accept"],
        ["detect", "--apply"],
        ["start", "ENG-1", "--title", "x", "--label", "bug", "--label", "ui"],
        ["list", "--repo", "."],
        ["cleanup", "--apply"],
        ["repos", "--stale"],
        ["repos", "--discover"],
        ["prefix", "FE", "WEB"],
        ["where", "ENG-1"],
        ["history"],
        ["migrate"],
    ):
        args = parser.parse_args(argv)
        assert args.cmd == argv[0]


def test_associate_branch_checkout_flow(cli_env, code_repo: Path):
    cp = _run(cli_env, code_repo, "associate", "ENG-123", "feat/eng-123-auth")
    assert cp.returncode == 0, cp.stderr
    assert "ENG-123 -> feat/eng-123-auth" in cp.stdout

    cp = _run(cli_env, code_repo, "branch", "ENG-123")
    assert cp.stdout.strip() == "feat/eng-123-auth"

    cp = _run(cli_env, code_repo, "--json", "status", "ENG-123")
    payload = json.loads(cp.stdout)
    assert payload["state"] == "verified"
    assert payload["association"]["branchName"] == "feat/eng-123-auth"

    cp = _run(cli_env, code_repo, "checkout", "ENG-123")
    assert cp.returncode == 0, cp.stderr
    assert "On branch feat/eng-123-auth" in cp.stdout


def test_unknown_ticket_exits_nonzero(cli_env, code_repo: Path):
    cp = _run(cli_env, code_repo, "branch", "ENG-404")
    assert cp.returncode == 1
    cp = _run(cli_env, code_repo, "associate", "ENG-404", "feat/missing")
    assert cp.returncode == 1


def test_suggest_and_detect(cli_env, code_repo: Path):
    cp = _run(cli_env, code_repo, "--json", "suggest", "ENG-123")
    assert json.loads(cp.stdout) == [{"branch": "feat/eng-123-auth", "match": "case_insensitive"}]

    cp = _run(cli_env, code_repo, "--json", "detect", "--apply")
    assert json.loads(cp.stdout) == [{"ticket": "ENG-123", "branch": "feat/eng-123-auth"}]

    cp = _run(cli_env, code_repo, "--json", "list")
    rows = json.loads(cp.stdout)
    assert rows[0]["source"] == "auto_detected"


def test_start_cleanup_repos_migrate(cli_env, code_repo: Path):
    cp = _run(cli_env, code_repo, "start", "ENG-456", "--title", "Billing export")
    assert cp.returncode == 0, cp.stderr
    assert "feat/eng-456-billing-export" in cp.stdout

    cp = _run(cli_env, code_repo, "cleanup")
    assert cp.returncode == 0
    assert "Nothing to clean up" in cp.stdout

    cp = _run(cli_env, code_repo, "--json", "repos")
    repos = json.loads(cp.stdout)
    assert len(repos) == 1

    cp = _run(cli_env, code_repo, "migrate")
    assert cp.returncode == 0
    assert "Copied 0" in cp.stdout


def test_outside_repository(cli_env, tmp_path: Path):
    plain = tmp_path / "plain"
    plain.mkdir()
    cp = _run(cli_env, plain, "associate", "ENG-1", "main")
    assert cp.returncode == 1


def test_prefix_routing_discovery_and_history(cli_env, code_repo: Path, make_repo):
    make_repo("frontend", branches=["feat/web-12-login"])

    cp = _run(cli_env, code_repo, "prefix", "eng")
    assert cp.returncode == 0, cp.stderr
    assert "ENG" in cp.stdout

    cp = _run(cli_env, code_repo, "--json", "where", "ENG-999")
    payload = json.loads(cp.stdout)
    assert payload["repository"]["ticketPrefixes"] == ["ENG"]
    assert payload["in_different_repo"] is False

    cp = _run(cli_env, code_repo, "--json", "repos", "--discover")
    assert cp.returncode == 0, cp.stderr
    discovered = {Path(r["path"]).name: r for r in json.loads(cp.stdout)}
    assert sorted(discovered) == ["code-repo", "frontend"]
    assert discovered["frontend"]["ticketPrefixes"] == ["WEB"]
    assert discovered["code-repo"]["ticketPrefixes"] == ["ENG"]

    cp = _run(cli_env, code_repo, "--json", "where", "WEB-12")
    assert json.loads(cp.stdout)["in_different_repo"] is True

    _run(cli_env, code_repo, "associate", "ENG-123", "feat/eng-123-auth")
    cp = _run(cli_env, code_repo, "--json", "history", "ENG-123")
    [history] = json.loads(cp.stdout)
    assert history["branches"][0]["branchName"] == "feat/eng-123-auth"
    assert history["branches"][0]["isActive"] is True
