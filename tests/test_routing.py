"""Tests for path segment derivation and the routing table."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from sitebox.errors import NotFoundError
from sitebox.sandbox import routing
from sitebox.sandbox.routing import RoutingRegistry, source_to_segment, to_base36


SEGMENT_RE = re.compile(r"^[a-z][a-z0-9-]*$")


# ---------------------------------------------------------------------------
# Segment derivation
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "source, expected",
    [
        ("https://www.etf2l.org/teams", "etf2l-org"),
        ("http://Example.COM", "example-com"),
        ("42.example.com", "site-42-example-com"),
        ("my app!!", "my-app"),
        ("---", "site"),
        ("", "site"),
    ],
)
def test_source_to_segment(source: str, expected: str) -> None:
    assert source_to_segment(source) == expected


def test_long_sources_are_truncated_without_trailing_hyphen() -> None:
    segment = source_to_segment("a" * 49 + "-b" + "c" * 30)
    assert len(segment) <= 50
    assert not segment.endswith("-")
    assert SEGMENT_RE.match(segment)


def test_to_base36() -> None:
    assert to_base36(0) == "0"
    assert to_base36(35) == "z"
    assert to_base36(36) == "10"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def test_same_millisecond_registrations_do_not_collide(monkeypatch) -> None:
    monkeypatch.setattr(routing.time, "time", lambda: 1_700_000_000.0)
    routes = RoutingRegistry()

    first = routes.register_route("s1", "https://example.com", Path("/tmp/s1"))
    second = routes.register_route("s2", "https://example.com", Path("/tmp/s2"))
    third = routes.register_route("s3", "example-com", Path("/tmp/s3"))

    segments = {first.path_segment, second.path_segment, third.path_segment}
    assert len(segments) == 3
    assert all(s.startswith("example-com-") for s in segments)
    assert all(SEGMENT_RE.match(s) for s in segments)


def test_url_for_and_lookup_by_segment() -> None:
    routes = RoutingRegistry(public_url="https://preview.example.net/")
    route = routes.register_route("s1", "https://shop.example.com", Path("/data/s1"))

    assert routes.url_for("s1") == f"https://preview.example.net/sandbox/{route.path_segment}"
    assert routes.get_by_segment(route.path_segment).sandbox_id == "s1"
    assert route.build_path == str(Path("/data/s1") / "dist")
    assert routes.url_for("missing") is None


def test_unknown_lookups_raise_not_found() -> None:
    routes = RoutingRegistry()
    with pytest.raises(NotFoundError):
        routes.get_by_id("missing")
    with pytest.raises(NotFoundError):
        routes.get_by_segment("nothing-here")


def test_reregistering_replaces_route() -> None:
    routes = RoutingRegistry()
    routes.register_route("s1", "a.com", Path("/tmp/s1"))
    routes.register_route("s1", "b.com", Path("/tmp/s1"))
    assert len(routes.list()) == 1
    assert routes.get_by_id("s1").source_id == "b.com"


def test_cleanup_older_than_drops_stale_routes() -> None:
    routes = RoutingRegistry()
    stale = routes.register_route("old", "a.com", Path("/tmp/old"))
    routes.register_route("new", "b.com", Path("/tmp/new"))
    stale.last_accessed = datetime.now() - timedelta(minutes=90)

    assert routes.cleanup_older_than(60) == ["old"]
    assert [r.sandbox_id for r in routes.list()] == ["new"]


def test_unregister() -> None:
    routes = RoutingRegistry()
    routes.register_route("s1", "a.com", Path("/tmp/s1"))
    assert routes.unregister("s1").sandbox_id == "s1"
    assert routes.unregister("s1") is None
