"""Tests for port leases: idempotence, exhaustion, reuse and reconciliation."""

from __future__ import annotations

import pytest

from sitebox.errors import ResourceExhaustionError
from sitebox.sandbox.ports import PortAllocator


def _make_allocator(start: int = 6000, end: int = 6004, reserved=(), bound=None) -> PortAllocator:
    bound = bound if bound is not None else set()
    return PortAllocator(start=start, end=end, reserved=reserved, probe=lambda port: port not in bound)


def test_allocate_is_idempotent_per_sandbox() -> None:
    ports = _make_allocator()
    first = ports.allocate("a")
    assert ports.allocate("a") == first
    assert len(ports.leases()) == 1


def test_allocate_skips_reserved_and_bound_ports() -> None:
    ports = _make_allocator(reserved=(6000,), bound={6001})
    assert ports.allocate("a") == 6002
    assert ports.allocate("b") == 6003


def test_distinct_sandboxes_get_distinct_ports() -> None:
    ports = _make_allocator()
    allocated = {ports.allocate(f"s{i}") for i in range(5)}
    assert len(allocated) == 5


def test_exhaustion_raises_and_records_nothing() -> None:
    ports = _make_allocator(start=6000, end=6001)
    ports.allocate("a")
    ports.allocate("b")

    with pytest.raises(ResourceExhaustionError):
        ports.allocate("c")

    assert ports.port_for("c") is None
    assert {lease.sandbox_id for lease in ports.leases()} == {"a", "b"}


def test_released_port_is_reused_only_once_free_at_os_level() -> None:
    bound = set()
    ports = _make_allocator(start=6000, end=6002, bound=bound)
    assert ports.allocate("a") == 6000

    # Previous owner still bound to the port after releasing the lease
    assert ports.release("a") == 6000
    bound.add(6000)
    assert ports.allocate("b") == 6001

    bound.discard(6000)
    assert ports.allocate("c") == 6000


def test_release_unknown_sandbox_is_noop() -> None:
    ports = _make_allocator()
    assert ports.release("missing") is None


def test_reconcile_reclaims_only_orphaned_leases() -> None:
    bound = set()
    ports = _make_allocator(bound=bound)
    live = ports.allocate("live")
    ports.allocate("dead")
    bound.add(live)

    assert ports.reconcile() == ["dead"]
    assert ports.port_for("live") == live
    assert ports.port_for("dead") is None


def test_reconcile_spares_owners_known_to_be_alive() -> None:
    ports = _make_allocator()
    starting = ports.allocate("starting")
    ports.allocate("dead")

    assert ports.reconcile(keep=["starting"]) == ["dead"]
    assert ports.port_for("starting") == starting


def test_release_all_clears_table() -> None:
    ports = _make_allocator()
    ports.allocate("a")
    ports.allocate("b")
    ports.release_all()
    assert ports.leases() == []
