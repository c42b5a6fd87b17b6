"""Tests for concurrent adapter discovery."""

import threading

from agentctl.daemon.discovery import DiscoveryRound, discover_all


class BlockingAdapter:
    """discover() blocks until the test releases it."""

    def __init__(self):
        self.release = threading.Event()

    def discover(self):
        self.release.wait(5)
        return []


class TestDiscoverAll:
    """Tests for discover_all."""

    def test_sessions_stamped_with_registry_name(self, make_adapter, make_discovered):
        adapter = make_adapter("claude-code", [make_discovered("abc", adapter="whatever")])

        result = discover_all({"cc-work": adapter}, timeout=2.0)

        assert [s.adapter for s in result.sessions] == ["cc-work"]
        assert result.succeeded == {"cc-work"}
        assert result.warnings() == []

    def test_results_follow_registration_order(self, make_adapter, make_discovered):
        adapters = {
            "codex": make_adapter("codex", [make_discovered("x1"), make_discovered("x2")]),
            "claude-code": make_adapter("claude-code", [make_discovered("c1")]),
        }

        result = discover_all(adapters, timeout=2.0)

        assert [s.id for s in result.sessions] == ["x1", "x2", "c1"]

    def test_failing_adapter_is_isolated(self, make_adapter, make_discovered):
        """One adapter raising leaves the others' answers intact."""
        broken = make_adapter("codex")
        broken.error = RuntimeError("ps not found")
        healthy = make_adapter("claude-code", [make_discovered("c1")])
        adapters = {"codex": broken, "claude-code": healthy}

        result = discover_all(adapters, timeout=2.0)

        assert result.succeeded == {"claude-code"}
        assert result.failed == {"codex": "ps not found"}
        assert [s.id for s in result.sessions] == ["c1"]
        assert result.warnings() == ["Adapter codex failed: ps not found"]

    def test_hung_adapter_times_out(self, make_adapter, make_discovered):
        """A hung adapter does not hold the round past the timeout."""
        slow = BlockingAdapter()
        healthy = make_adapter("claude-code", [make_discovered("c1")])
        adapters = {"slow": slow, "claude-code": healthy}
        try:
            result = discover_all(adapters, timeout=0.2)
        finally:
            slow.release.set()

        assert result.timed_out == {"slow"}
        assert result.succeeded == {"claude-code"}
        assert [s.id for s in result.sessions] == ["c1"]
        assert result.duration_seconds < 4
        assert "Adapter slow timed out" in result.warnings()

    def test_only_restricts_adapters(self, make_adapter):
        claude = make_adapter("claude-code")
        codex = make_adapter("codex")

        adapters = {"claude-code": claude, "codex": codex}
        result = discover_all(adapters, timeout=2.0, only=iter(["codex"]))

        assert result.succeeded == {"codex"}
        assert claude.discover_calls == 0
        assert codex.discover_calls == 1

    def test_no_adapters(self):
        assert discover_all({}, timeout=1.0) == DiscoveryRound()
