"""
Tests for the backend registry state transitions.
"""
import pytest

from unified_mcp.errors import DuplicateBackend
from unified_mcp.models import BackendState


class FakeHandle:
    pid = 4242


def test_register_starts_in_starting_state(registry):
    backend = registry.register("alpha", "http://x")
    assert backend.state is BackendState.STARTING
    assert registry.get("alpha") is backend
    assert registry.list_running() == []
    assert "alpha" in registry


def test_register_twice_is_rejected(registry):
    registry.register("alpha", "http://x")
    with pytest.raises(DuplicateBackend):
        registry.register("alpha", "http://other")


def test_mark_running_records_handle_and_pid(registry):
    registry.register("alpha", "http://x")
    backend = registry.mark_running("alpha", FakeHandle())
    assert backend.state is BackendState.RUNNING
    assert backend.pid == 4242
    assert backend.started_at is not None
    assert registry.is_running("alpha")


def test_mark_running_unknown_name_raises(registry):
    with pytest.raises(KeyError):
        registry.mark_running("ghost", None)


def test_mark_exited_removes_entry(registry, make_running):
    make_running("alpha")
    backend = registry.mark_exited("alpha", 1)
    assert backend.state is BackendState.EXITED
    assert backend.exit_code == 1
    assert backend.handle is None
    assert registry.get("alpha") is None
    assert len(registry) == 0


def test_mark_exited_unknown_name_is_ignored(registry):
    assert registry.mark_exited("ghost", 0) is None


def test_name_can_be_registered_again_after_exit(registry, make_running):
    make_running("alpha")
    registry.mark_exited("alpha", 0)
    fresh = registry.register("alpha", "http://x")
    assert fresh.state is BackendState.STARTING


def test_discard_drops_starting_entry(registry):
    registry.register("alpha", "http://x")
    registry.discard("alpha")
    assert "alpha" not in registry


def test_listing_keeps_registration_order(registry, make_running):
    make_running("gamma", "alpha", "beta")
    registry.register("delta", "http://d")
    assert [b.name for b in registry.list_running()] == ["gamma", "alpha", "beta"]
    assert [b.name for b in registry.snapshot()] == ["gamma", "alpha", "beta", "delta"]
    assert registry.names() == ["gamma", "alpha", "beta", "delta"]


def test_process_info_shape(registry, make_running):
    make_running("alpha")
    assert registry.get("alpha").to_process_info() == {
        "name": "alpha",
        "status": "running",
        "url": "http://alpha",
    }
