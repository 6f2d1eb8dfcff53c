from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import pytest

# Keep test runs out of ~/.branchlink/logs
os.environ.setdefault("BRANCHLINK_LOG_DISABLE_FILE", "1")


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    from branchlink.config_loader import clear_config_cache

    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture(scope="session")
def anyio_backend():
    """Run async tests on asyncio only; the inspector relies on asyncio.to_thread."""
    return "asyncio"


def _init_repo(repo_path: Path, *, initial_branch: str = "main"):
    from git import Actor, Repo

    repo_path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(repo_path)
    with repo.config_writer() as config:
        config.set_value("user", "name", "Test")
        config.set_value("user", "email", "test@example.com")
        config.set_value("commit", "gpgsign", "false")

    (repo_path / "README.md").write_text("# Repo\n")
    repo.index.add(["README.md"])
    repo.index.commit("Initial commit", author=Actor("Test", "test@example.com"))

    # Ensure we're on the requested branch whatever init.defaultBranch says
    if repo.active_branch.name != initial_branch:
        repo.git.branch("-M", initial_branch)
    return repo


@pytest.fixture
def make_repo(tmp_path: Path):
    """Factory for real git repositories under tmp_path."""

    def _make(name: str = "code-repo", *, branches=(), remote_url: str | None = None, initial_branch: str = "main"):
        repo = _init_repo(tmp_path / name, initial_branch=initial_branch)
        for branch in branches:
            repo.git.branch(branch)
        if remote_url:
            repo.create_remote("origin", remote_url)
        return Path(repo.working_tree_dir)

    return _make


@pytest.fixture
def code_repo(make_repo) -> Path:
    """A repository on main with one ticket branch."""
    return make_repo("code-repo", branches=["feat/eng-123-auth"])


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Bare remote with main and feat/eng-7-remote; clone it to get remote-only branches."""
    from git import Repo

    remote = tmp_path / "remote.git"
    Repo.init(remote, bare=True).close()
    seed = _init_repo(tmp_path / "seed")
    seed.git.branch("feat/eng-7-remote")
    seed.create_remote("origin", remote.as_posix())
    for branch in ("main", "feat/eng-7-remote"):
        seed.remotes.origin.push(f"{branch}:{branch}")
    seed.close()
    shutil.rmtree(tmp_path / "seed")
    return remote
