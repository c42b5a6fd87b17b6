"""Tests for core data models, enums and utilities.

This module tests the Pydantic models and helpers used throughout agentctl:
- SessionStatus and the pending-id helpers
- SessionRecord construction and duration
- Serialization aliases (token usage)
- canonicalize_directory and is_process_alive
- Adapter plugin loading and the list()/events() surface
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import psutil
import pytest
from pydantic import ValidationError

from agentctl.core.adapters import load_entry_point_adapters
from agentctl.core.models import (
    AgentSession,
    LifecycleEvent,
    ListOptions,
    SessionRecord,
    SessionStatus,
    TokenUsage,
    is_pending_id,
    pending_id_for,
)
from agentctl.core.utils import canonicalize_directory, is_process_alive

# =============================================================================
# Session Model Tests
# =============================================================================


class TestSessionModels:
    """Tests for session models and status helpers."""

    @pytest.mark.parametrize(
        "status,active",
        [
            (SessionStatus.RUNNING, True),
            (SessionStatus.IDLE, True),
            (SessionStatus.PENDING, True),
            (SessionStatus.STOPPED, False),
            (SessionStatus.COMPLETED, False),
            (SessionStatus.FAILED, False),
            (SessionStatus.ERROR, False),
        ],
    )
    def test_status_activity(self, status, active):
        assert status.is_active() is active

    def test_pending_ids(self):
        assert pending_id_for(4242) == "pending-4242"
        assert is_pending_id("pending-4242")
        assert not is_pending_id("4242-pending")

    def test_record_from_session_keeps_launch_metadata(self):
        session = AgentSession(
            id="abc", adapter="ignored", prompt="do it", spec="s.md", group="g-1", pid=5
        )

        record = SessionRecord.from_session(session, "claude-code")

        assert record.adapter == "claude-code"
        assert (record.prompt, record.spec, record.group, record.pid) == ("do it", "s.md", "g-1", 5)

    def test_duration(self):
        start = datetime(2026, 1, 1, tzinfo=UTC)
        record = SessionRecord(id="a", adapter="x", status=SessionStatus.RUNNING, started_at=start)
        assert record.duration_seconds() is None

        record.stopped_at = start + timedelta(minutes=2)
        assert record.duration_seconds() == 120.0

    def test_token_usage_aliases(self):
        usage = TokenUsage.model_validate({"in": 7, "out": 9})

        assert (usage.input, usage.output) == (7, 9)
        assert usage.model_dump(by_alias=True) == {"in": 7, "out": 9}

    def test_lifecycle_event_type_is_validated(self):
        session = AgentSession(id="a", adapter="x")
        LifecycleEvent(type="session.idle", adapter="x", session_id="a", session=session)

        with pytest.raises(ValidationError):
            LifecycleEvent(type="session.exploded", adapter="x", session_id="a", session=session)


# =============================================================================
# Utility Tests
# =============================================================================


class TestCanonicalizeDirectory:
    """Tests for canonicalize_directory."""

    def test_equivalent_forms(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        expected = str(tmp_path / "repo")

        assert canonicalize_directory("repo") == expected
        assert canonicalize_directory("./repo/") == expected
        assert canonicalize_directory(tmp_path / "x" / ".." / "repo") == expected

    def test_home_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert canonicalize_directory("~/work") == str(tmp_path / "work")


class TestIsProcessAlive:
    """Tests for is_process_alive."""

    def test_current_process(self):
        assert is_process_alive(os.getpid())

    def test_non_positive_pid(self):
        assert not is_process_alive(0)
        assert not is_process_alive(-1)

    def test_missing_process(self):
        with patch("agentctl.core.utils.psutil.Process", side_effect=psutil.NoSuchProcess(99)):
            assert not is_process_alive(99)

    def test_zombie_counts_as_dead(self):
        proc = MagicMock()
        proc.status.return_value = psutil.STATUS_ZOMBIE
        with patch("agentctl.core.utils.psutil.Process", return_value=proc):
            assert not is_process_alive(99)

    def test_access_denied_counts_as_alive(self):
        with patch("agentctl.core.utils.psutil.Process", side_effect=psutil.AccessDenied(1)):
            assert is_process_alive(1)


# =============================================================================
# Adapter Plugin Loading
# =============================================================================


class TestEntryPointAdapters:
    """Tests for load_entry_point_adapters."""

    def test_loads_and_names_adapters(self, make_adapter):
        good = MagicMock()
        good.name = "claude-code"
        good.load.return_value = make_adapter
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing module")

        with patch("agentctl.core.adapters.entry_points", return_value=[good, broken]):
            adapters = load_entry_point_adapters()

        assert list(adapters) == ["claude-code"]
        assert adapters["claude-code"].name == "claude-code"


class TestAdapterList:
    """Tests for the list() convenience layered on discover()."""

    def test_active_only_by_default(self, make_adapter, make_discovered):
        adapter = make_adapter(
            "claude-code",
            [make_discovered("live"), make_discovered("gone", status=SessionStatus.STOPPED)],
        )

        assert [s.id for s in adapter.list()] == ["live"]
        assert [s.id for s in adapter.list(ListOptions(all=True))] == ["live", "gone"]
        assert [s.id for s in adapter.list(ListOptions(status="stopped"))] == ["gone"]

    def test_native_metadata_becomes_meta(self, make_adapter, make_discovered):
        adapter = make_adapter(
            "codex", [make_discovered("x", adapter="codex", native_metadata={"turns": 3})]
        )

        [session] = adapter.list()
        assert session.meta == {"turns": 3}
        assert session.adapter == "codex"

    def test_events_are_lazy(self, make_adapter):
        adapter = make_adapter("claude-code")
        session = AgentSession(id="a", adapter="claude-code")
        adapter.lifecycle = [
            LifecycleEvent(type=f"session.{kind}", adapter="claude-code", session_id="a", session=session)
            for kind in ("started", "stopped")
        ]

        stream = adapter.events()
        assert next(stream).type == "session.started"
