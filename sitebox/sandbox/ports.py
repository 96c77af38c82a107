"""
Port Allocator - Lease one network port per sandbox from a fixed range.

Responsibilities:
- Allocate the first port that is neither locked nor bound at the OS level
- Keep allocation idempotent per sandbox
- Release leases, and reclaim leases whose owning process died
"""

import logging
import socket
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Iterable, List, Optional

from sitebox.errors import ResourceExhaustionError


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# Port range for sandbox preview servers
PORT_RANGE_START = 5173
PORT_RANGE_END = 5273

# Kept for the main dev server
RESERVED_PORTS = frozenset({5173})


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PortLease:
    """An exclusive claim on one port, bound to one sandbox."""
    sandbox_id: str
    port: int
    locked: bool = True

    def to_dict(self) -> Dict:
        return asdict(self)


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a port is free on the system by trying to bind it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


# =============================================================================
# ALLOCATOR
# =============================================================================

class PortAllocator:
    """
    Thread-safe table of port leases.

    Args:
        start: First port of the range (inclusive)
        end: Last port of the range (inclusive)
        reserved: Ports never handed out
        probe: Callable returning True when a port is free at the OS level
    """

    def __init__(
        self,
        start: int = PORT_RANGE_START,
        end: int = PORT_RANGE_END,
        reserved: Iterable[int] = RESERVED_PORTS,
        probe: Callable[[int], bool] = is_port_free,
    ):
        self.start = start
        self.end = end
        self.reserved = frozenset(reserved)
        self._probe = probe
        self._lock = threading.Lock()
        self._leases: Dict[str, PortLease] = {}

    def allocate(self, sandbox_id: str) -> int:
        """
        Lease a port for a sandbox.

        Returns:
            The sandbox's existing locked port, or a newly locked one

        Raises:
            ResourceExhaustionError: No port in the range is available
        """
        with self._lock:
            existing = self._leases.get(sandbox_id)
            if existing and existing.locked:
                logger.debug("Reusing port %s for sandbox %s", existing.port, sandbox_id)
                return existing.port

            locked_ports = {lease.port for lease in self._leases.values() if lease.locked}
            for port in range(self.start, self.end + 1):
                if port in self.reserved or port in locked_ports:
                    continue
                if self._probe(port):
                    self._leases[sandbox_id] = PortLease(sandbox_id=sandbox_id, port=port)
                    logger.info("Allocated port %s for sandbox %s", port, sandbox_id)
                    return port

        raise ResourceExhaustionError(f"No available ports in range {self.start}-{self.end}")

    def release(self, sandbox_id: str) -> Optional[int]:
        """Unlock and forget a sandbox's lease. Returns the freed port, if any."""
        with self._lock:
            lease = self._leases.pop(sandbox_id, None)
        if lease:
            logger.info("Released port %s for sandbox %s", lease.port, sandbox_id)
            return lease.port
        return None

    def port_for(self, sandbox_id: str) -> Optional[int]:
        with self._lock:
            lease = self._leases.get(sandbox_id)
            return lease.port if lease else None

    def leases(self) -> List[PortLease]:
        with self._lock:
            return [PortLease(**lease.to_dict()) for lease in self._leases.values()]

    def reconcile(self, keep: Iterable[str] = ()) -> List[str]:
        """
        Release locks whose port is actually free (owner died without releasing).

        Args:
            keep: Sandboxes whose owner is known to be alive, for example a
                preview that has not bound its port yet

        Returns:
            Sandbox IDs whose lease was reclaimed
        """
        keep = set(keep)
        with self._lock:
            orphaned = [
                sandbox_id
                for sandbox_id, lease in self._leases.items()
                if sandbox_id not in keep and lease.locked and self._probe(lease.port)
            ]
            for sandbox_id in orphaned:
                lease = self._leases.pop(sandbox_id)
                logger.info("Reclaimed orphaned port %s from sandbox %s", lease.port, sandbox_id)
        return orphaned

    def release_all(self) -> None:
        """Drop every lease (process teardown)."""
        with self._lock:
            count = len(self._leases)
            self._leases.clear()
        if count:
            logger.info("Released all %d port leases", count)
