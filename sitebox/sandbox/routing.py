"""
Routing Registry - Map sandboxes to unique, URL-safe path segments.

Instead of one port per sandbox, built artifacts are served under
/sandbox/<segment>, where the segment is derived from the sandbox's source
identifier and salted with a timestamp:

- https://www.etf2l.org/teams -> etf2l-org-<stamp>
- 42.example.com -> site-42-example-com-<stamp>
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from sitebox.errors import NotFoundError
from sitebox.sandbox.toolchain import BUILD_DIR


logger = logging.getLogger(__name__)

MAX_SEGMENT_LENGTH = 50

_DIGITS36 = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class Route:
    """A sandbox's externally reachable location."""
    sandbox_id: str
    source_id: str
    path_segment: str
    sandbox_path: str
    build_path: str
    created: datetime
    last_accessed: datetime

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["created"] = self.created.isoformat()
        data["last_accessed"] = self.last_accessed.isoformat()
        return data


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_DIGITS36[rem])
    return "".join(reversed(digits))


def source_to_segment(source_id: str) -> str:
    """
    Convert a source URL or identifier to a safe path segment (without salt).

    Args:
        source_id: URL, domain or free-form identifier

    Returns:
        Lowercase segment of letters, digits and single hyphens, starting
        with a letter and at most 50 characters long
    """
    cleaned = re.sub(r"^[a-z][a-z0-9+.-]*://", "", source_id.strip(), flags=re.IGNORECASE)
    cleaned = re.sub(r"^www\.", "", cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.split("/")[0].lower()
    cleaned = re.sub(r"[^a-z0-9]+", "-", cleaned).strip("-")

    if not re.match(r"^[a-z]", cleaned):
        cleaned = f"site-{cleaned}" if cleaned else "site"

    return cleaned[:MAX_SEGMENT_LENGTH].rstrip("-")


class RoutingRegistry:
    """Thread-safe table of sandbox routes keyed by sandbox ID."""

    def __init__(self, public_url: str = "http://localhost:3004"):
        self.public_url = public_url.rstrip("/")
        self._lock = threading.Lock()
        self._routes: Dict[str, Route] = {}
        self._last_stamp = 0

    def _next_stamp(self) -> int:
        # Strictly increasing, so two registrations in the same millisecond differ
        stamp = max(int(time.time() * 1000), self._last_stamp + 1)
        self._last_stamp = stamp
        return stamp

    def register_route(self, sandbox_id: str, source_id: str, sandbox_path: Path) -> Route:
        """Register (or replace) the route for a sandbox."""
        base = source_to_segment(source_id)
        with self._lock:
            taken = {r.path_segment for sid, r in self._routes.items() if sid != sandbox_id}
            segment = f"{base}-{to_base36(self._next_stamp())}"
            while segment in taken:
                segment = f"{base}-{to_base36(self._next_stamp())}"

            now = datetime.now()
            route = Route(
                sandbox_id=sandbox_id,
                source_id=source_id,
                path_segment=segment,
                sandbox_path=str(sandbox_path),
                build_path=str(Path(sandbox_path) / BUILD_DIR),
                created=now,
                last_accessed=now,
            )
            self._routes[sandbox_id] = route

        logger.info("Registered route: %s -> /sandbox/%s", source_id, segment)
        return route

    def get_by_id(self, sandbox_id: str) -> Route:
        with self._lock:
            route = self._routes.get(sandbox_id)
            if route is None:
                raise NotFoundError("route", sandbox_id)
            route.last_accessed = datetime.now()
            return route

    def get_by_segment(self, segment: str) -> Route:
        with self._lock:
            for route in self._routes.values():
                if route.path_segment == segment:
                    route.last_accessed = datetime.now()
                    return route
        raise NotFoundError("route", segment)

    def url_for(self, sandbox_id: str) -> Optional[str]:
        """Public URL of a sandbox's build output, or None without a route."""
        try:
            route = self.get_by_id(sandbox_id)
        except NotFoundError:
            return None
        return f"{self.public_url}/sandbox/{route.path_segment}"

    def unregister(self, sandbox_id: str) -> Optional[Route]:
        with self._lock:
            route = self._routes.pop(sandbox_id, None)
        if route:
            logger.info("Unregistered route: %s -> /sandbox/%s", route.source_id, route.path_segment)
        return route

    def list(self) -> List[Route]:
        with self._lock:
            return list(self._routes.values())

    def cleanup_older_than(self, max_age_minutes: float) -> List[str]:
        """Drop routes not accessed within max_age_minutes. Returns removed sandbox IDs."""
        cutoff = datetime.now() - timedelta(minutes=max_age_minutes)
        with self._lock:
            stale = [sid for sid, route in self._routes.items() if route.last_accessed < cutoff]
            for sid in stale:
                self._routes.pop(sid, None)
        if stale:
            logger.info("Cleaned up %d old routes", len(stale))
        return stale

    def clear(self) -> None:
        with self._lock:
            self._routes.clear()
