"""Tests for per-ticket branch history."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from branchlink.history import BranchHistory
from branchlink.persistence import JsonFileBackend, MemoryBackend

T0 = datetime(2024, 1, 15, 14, 30, tzinfo=timezone.utc)


@pytest.fixture
def history():
    return BranchHistory(MemoryBackend())


def summary(ticket_history):
    return [(e.branch_name, e.repository_id, e.is_active) for e in ticket_history.branches]


class TestRecord:
    def test_new_branch_replaces_active_in_same_repository(self, history):
        history.record("ENG-123", "feat/eng-123-auth", "r_backend", "/work/backend", when=T0)
        history.record("ENG-123", "feat/eng-123-auth-v2", "r_backend", "/work/backend", when=T0 + timedelta(hours=1))
        assert summary(history.get("ENG-123")) == [
            ("feat/eng-123-auth-v2", "r_backend", True),
            ("feat/eng-123-auth", "r_backend", False),
        ]

    def test_other_repositories_stay_active(self, history):
        history.record("ENG-123", "feat/eng-123-auth", "r_backend", when=T0)
        history.record("ENG-123", "feat/eng-123-ui", "r_frontend", when=T0 + timedelta(hours=1))
        assert [e.branch_name for e in history.get("ENG-123").active] == [
            "feat/eng-123-ui",
            "feat/eng-123-auth",
        ]

    def test_reuse_moves_entry_first_and_keeps_associated_at(self, history):
        history.record("ENG-123", "feat/eng-123-auth", "r_backend", when=T0)
        history.record("ENG-123", "feat/eng-123-retry", "r_backend", when=T0 + timedelta(hours=1))
        history.record("ENG-123", "feat/eng-123-auth", "r_backend", when=T0 + timedelta(hours=2))

        first, second = history.get("ENG-123").branches
        assert (first.branch_name, first.is_active) == ("feat/eng-123-auth", True)
        assert first.associated_at == T0
        assert first.last_used == T0 + timedelta(hours=2)
        assert (second.branch_name, second.is_active) == ("feat/eng-123-retry", False)

    def test_same_second_keeps_newest_first(self, history):
        history.record("ENG-1", "feat/eng-1-a", "r_backend", when=T0)
        history.record("ENG-1", "feat/eng-1-b", "r_backend", when=T0)
        assert [e.branch_name for e in history.get("ENG-1").branches] == ["feat/eng-1-b", "feat/eng-1-a"]

    def test_unknown_ticket(self, history):
        assert history.get("ENG-404") is None
        assert history.all() == []


class TestDeactivate:
    def test_entry_stays_in_history(self, history):
        history.record("ENG-123", "feat/eng-123-auth", "r_backend", when=T0)
        history.record("ENG-123", "feat/eng-123-ui", "r_frontend", when=T0)
        assert history.deactivate("ENG-123", "r_backend")
        assert summary(history.get("ENG-123")) == [
            ("feat/eng-123-auth", "r_backend", False),
            ("feat/eng-123-ui", "r_frontend", True),
        ]

    def test_nothing_to_deactivate(self, history):
        assert not history.deactivate("ENG-404", "r_backend")
        history.record("ENG-1", "feat/eng-1", "r_backend", when=T0)
        assert history.deactivate("ENG-1", "r_backend")
        assert not history.deactivate("ENG-1", "r_backend")


class TestPersistence:
    def test_reopen(self, tmp_path: Path):
        backend = JsonFileBackend(tmp_path / "history.json")
        BranchHistory(backend).record("ENG-123", "feat/eng-123-auth", "r_backend", "/work/backend", when=T0)
        reopened = BranchHistory(backend)
        [entry] = reopened.get("ENG-123").branches
        assert entry.repository_path == "/work/backend"
        assert entry.last_used == T0

    def test_sessions_sharing_a_document_keep_each_others_records(self):
        backend = MemoryBackend()
        first = BranchHistory(backend)
        second = BranchHistory(backend)
        first.record("ENG-1", "feat/eng-1", "r_backend", when=T0)
        second.record("ENG-2", "feat/eng-2", "r_backend", when=T0)
        assert sorted(t["ticketId"] for t in backend.data["tickets"]) == ["ENG-1", "ENG-2"]

    def test_save_failure(self):
        backend = MemoryBackend()
        backend.fail_saves = True
        history = BranchHistory(backend)
        assert not history.record("ENG-1", "feat/eng-1", "r_backend")
        assert history.get("ENG-1") is None

    def test_legacy_list(self):
        legacy = [
            {
                "ticketId": "ENG-1",
                "branches": [
                    {"branchName": "feat/eng-1", "associatedAt": "2024-01-01T00:00:00Z",
                     "lastUsed": "2024-01-02T00:00:00Z", "isActive": True, "repository": "backend"},
                    {"branchName": "feat/eng-1-old", "associatedAt": "yesterday", "isActive": False},
                ],
            },
            {"branches": []},
        ]
        history = BranchHistory(MemoryBackend(legacy))
        assert not history.warnings
        current, old = history.get("ENG-1").branches
        assert current.repository_id == "legacy:backend"
        assert current.last_used == datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert old.repository_id == "legacy:"
        assert not old.is_active

    def test_corrupt_document_warns(self):
        history = BranchHistory(MemoryBackend({"schemaVersion": 1, "tickets": "nope"}))
        assert history.all() == []
        assert history.warnings
