"""End-to-end tests for BranchLinkEngine."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from branchlink import BranchLinkEngine
from branchlink.config_schema import BranchLinkConfig
from branchlink.engine import (
    GLOBAL_STORE_FILENAME,
    HISTORY_FILENAME,
    REGISTRY_FILENAME,
    WORKSPACES_DIRNAME,
)
from branchlink.fs import workspace_key
from branchlink.models import AssociationState
from branchlink.observability import LOGGER_NAME
from branchlink.orchestrator import CheckoutStatus
from branchlink.testing import FakeGitBackend, RecordingNotifier, mock_env_vars


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "backend"
    path.mkdir()
    return path


@pytest.fixture
def fake_git(workspace) -> FakeGitBackend:
    git = FakeGitBackend()
    git.add_repo(workspace, branches=["main", "feat/eng-123-auth", "feat/eng-124-tokens"],
                 remote_url="git@github.com:acme/backend.git")
    return git


@pytest.fixture
def config(state_dir: Path) -> BranchLinkConfig:
    return BranchLinkConfig(storage={"state_dir": str(state_dir)})


def open_engine(workspace, fake_git, config, notifier=None):
    return BranchLinkEngine.create(
        workspace, config=config, git_backend=fake_git, notifier=notifier or RecordingNotifier()
    )


class TestStateLayout:
    @pytest.mark.anyio
    async def test_files_under_state_dir(self, workspace, fake_git, config, state_dir):
        engine = open_engine(workspace, fake_git, config)
        assert await engine.associate_branch("ENG-123", "feat/eng-123-auth")

        global_doc = json.loads((state_dir / GLOBAL_STORE_FILENAME).read_text())
        assert global_doc["schemaVersion"] == 1
        assert global_doc["associations"][0]["ticketId"] == "ENG-123"
        local_file = state_dir / WORKSPACES_DIRNAME / f"{workspace_key(engine.workspace_path)}.json"
        assert json.loads(local_file.read_text())["associations"][0]["branchName"] == "feat/eng-123-auth"
        registry_doc = json.loads((state_dir / REGISTRY_FILENAME).read_text())
        assert registry_doc["repositories"][0]["remoteUrl"] == "github.com/acme/backend"
        history_doc = json.loads((state_dir / HISTORY_FILENAME).read_text())
        assert history_doc["tickets"][0]["branches"][0]["isActive"] is True

    @pytest.mark.anyio
    async def test_survives_restart(self, workspace, fake_git, config):
        first = open_engine(workspace, fake_git, config)
        await first.associate_branch("ENG-123", "feat/eng-123-auth")
        second = open_engine(workspace, fake_git, config)
        assert await second.get_branch_for_ticket("ENG-123") == "feat/eng-123-auth"
        assert await second.get_association_status("ENG-123") is AssociationState.VERIFIED


class TestCorruption:
    @pytest.mark.anyio
    async def test_corrupt_global_store_on_restart(self, workspace, fake_git, config, state_dir, caplog):
        caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
        (state_dir / GLOBAL_STORE_FILENAME).write_text('{"schemaVersion": 1, "associations": [{"tick')
        notifier = RecordingNotifier()
        engine = open_engine(workspace, fake_git, config, notifier)

        assert await engine.get_all_associations() == []
        assert any("was reset to empty" in m for m in notifier.of("warn"))
        assert list((state_dir / ".backups").glob("associations.corrupt.*.json"))
        # usable afterwards
        assert await engine.associate_branch("ENG-123", "feat/eng-123-auth")
        assert open_engine(workspace, fake_git, config).store.warnings == []

    @pytest.mark.anyio
    async def test_corrupt_registry(self, workspace, fake_git, config, state_dir):
        (state_dir / REGISTRY_FILENAME).write_text("[{]")
        notifier = RecordingNotifier()
        engine = open_engine(workspace, fake_git, config, notifier)
        assert notifier.of("warn")
        assert (await engine.current_repository()) is not None


class TestBoundary:
    @pytest.mark.anyio
    async def test_unexpected_exception_becomes_default(self, workspace, fake_git, config, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER_NAME)
        notifier = RecordingNotifier()
        engine = open_engine(workspace, fake_git, config, notifier)

        async def boom(ticket_id):
            raise RuntimeError("kaboom")

        engine.resolver.get_branch_for_ticket = boom
        assert await engine.get_branch_for_ticket("ENG-1") is None
        assert any("kaboom" in m for m in notifier.of("error"))
        actions = [json.loads(r.message) for r in caplog.records if r.message.startswith("{")]
        assert any(a["action"] == "engine.get_branch_for_ticket" and a["outcome"] == "error" for a in actions)

    @pytest.mark.anyio
    async def test_git_unavailable_everything_fails_closed(self, workspace, fake_git, config):
        fake_git.unavailable = True
        engine = open_engine(workspace, fake_git, config)
        assert await engine.current_repository() is None
        assert await engine.get_current_branch() == ""
        assert await engine.get_all_local_branches() == []
        assert not await engine.has_uncommitted_changes()
        assert await engine.uncommitted_changes_summary() is None
        assert not await engine.associate_branch("ENG-1", "main")
        outcome = await engine.checkout_ticket_branch("ENG-1")
        assert outcome.status is CheckoutStatus.NOT_ASSOCIATED
        assert await engine.suggest_associations_for_ticket("ENG-1") == []
        assert await engine.cleanup_stale_associations() == 0

    @pytest.mark.anyio
    async def test_timeout_fails_closed(self, workspace, config):
        git = FakeGitBackend(delay=0.5)
        git.add_repo(workspace)
        config.git.timeout = 0.05
        engine = open_engine(workspace, git, config)
        assert await engine.get_current_branch() == ""

    @pytest.mark.anyio
    async def test_negative_outcome_logged(self, workspace, fake_git, config, caplog):
        caplog.set_level(logging.INFO, logger=LOGGER_NAME)
        engine = open_engine(workspace, fake_git, config)
        await engine.get_branch_for_ticket("ENG-404")
        data = json.loads(caplog.records[-1].message)
        assert data["action"] == "engine.get_branch_for_ticket"
        assert data["outcome"] == "negative"
        assert data["ticket"] == "ENG-404"


class TestQueries:
    @pytest.mark.anyio
    async def test_suggest_rank_and_detect(self, workspace, fake_git, config):
        engine = open_engine(workspace, fake_git, config)
        assert await engine.suggest_associations_for_ticket("ENG-123") == ["feat/eng-123-auth"]
        ranked = await engine.rank_suggestions("ENG-123")
        assert ranked[0].branch == "feat/eng-123-auth"
        pairs = await engine.auto_detect_branch_associations()
        assert ("ENG-124", "feat/eng-124-tokens") in pairs
        assert await engine.associate_detected("ENG-124", "feat/eng-124-tokens")
        assert await engine.get_ticket_for_branch("feat/eng-124-tokens") == "ENG-124"

    @pytest.mark.anyio
    async def test_repositories(self, workspace, fake_git, config):
        engine = open_engine(workspace, fake_git, config)
        await engine.current_repository()
        repos = await engine.list_repositories()
        assert len(repos) == 1
        assert await engine.stale_repositories() == []

    @pytest.mark.anyio
    async def test_refresh_after_remote_change(self, workspace, fake_git, config):
        engine = open_engine(workspace, fake_git, config)
        before = await engine.current_repository()
        fake_git.repo(workspace).remote_url = "git@github.com:acme/renamed.git"
        assert (await engine.current_repository()).id == before.id

        after = await engine.refresh_current_repository()
        assert after.remote_url == "github.com/acme/renamed"
        assert after.id != before.id
        assert (await engine.current_repository()).id == after.id
        assert len(await engine.list_repositories()) == 2

    @pytest.mark.anyio
    async def test_prefixes_and_discovery(self, workspace, fake_git, config, tmp_path):
        sibling = tmp_path / "frontend"
        (sibling / ".git").mkdir(parents=True)
        (workspace / ".git").mkdir()
        fake_git.add_repo(sibling, branches=["main", "feat/web-3-nav"])
        engine = open_engine(workspace, fake_git, config)

        repo = await engine.set_ticket_prefixes(["eng"])
        assert repo.ticket_prefixes == ["ENG"]
        found = await engine.discover_repositories()
        assert sorted(Path(d.path).name for d in found) == ["backend", "frontend"]
        assert (await engine.is_ticket_in_different_repo("WEB-3")).is_different
        assert (await engine.get_repository_for_ticket("ENG-1")).id == repo.id
        assert (await engine.get_repository_for_ticket("OPS-1")) is None

    def test_generate_branch_name(self, workspace, fake_git, config):
        engine = open_engine(workspace, fake_git, config)
        assert engine.generate_branch_name("ENG-5", "Add login") == "feat/eng-5-add-login"
        assert engine.generate_branch_name("ENG-5", convention="simple") == "eng-5"
        assert engine.generate_branch_name("bad name", convention="ticket-only") is None


class TestCreateWithoutConfig:
    def test_loads_config_from_env(self, workspace, fake_git, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        with mock_env_vars(BRANCHLINK_STATE_DIR=str(tmp_path / "env-state"), BRANCHLINK_STORAGE_MODE="global"):
            engine = BranchLinkEngine.create(workspace, git_backend=fake_git, notifier=RecordingNotifier())
        assert engine.config.state_dir() == tmp_path / "env-state"
        assert engine.store.mode == "global"

    def test_invalid_project_config_falls_back(self, workspace, fake_git, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path / "home"))
        (workspace / ".branchlink").mkdir()
        (workspace / ".branchlink" / "config.toml").write_text("[storage\n")
        notifier = RecordingNotifier()
        engine = BranchLinkEngine.create(workspace, git_backend=fake_git, notifier=notifier)
        assert engine.config.storage.mode == "both"
        assert any("Invalid branchlink configuration" in m for m in notifier.of("warn"))


@pytest.mark.integration
class TestRealRepository:
    @pytest.mark.anyio
    async def test_associate_and_checkout(self, code_repo: Path, config):
        engine = BranchLinkEngine.create(code_repo, config=config, notifier=RecordingNotifier())
        assert await engine.associate_branch("ENG-123", "feat/eng-123-auth")
        assert await engine.checkout_branch("ENG-123")
        assert await engine.get_current_branch() == "feat/eng-123-auth"
        outcome = await engine.start_branch("ENG-456", "Billing", base_branch="main")
        assert outcome.success
        assert await engine.get_branch_for_ticket("ENG-456") == "feat/eng-456-billing"
