"""
Preview Hosting - Serve a sandbox's build artifact on a leased port.

This module handles:
- Leasing a port for the sandbox
- Replacing any preview process already running for it
- Probing readiness and reporting status
- Stopping previews and releasing their leases
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Literal, Optional

from sitebox.errors import NotFoundError
from sitebox.sandbox.executor import ManagedProcess
from sitebox.sandbox.ports import PortAllocator
from sitebox.sandbox.registry import Sandbox
from sitebox.sandbox.toolchain import Toolchain, has_build_output


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Seconds a replaced preview process gets to exit before it is killed
REPLACE_GRACE = 2.0

# Readiness probing
STARTUP_WAIT = 15
HEALTH_CHECK_INTERVAL = 0.5


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class PreviewResult:
    """Result of starting or inspecting a preview."""
    status: Literal["starting", "running", "error", "stopped"]
    sandbox_id: str
    url: Optional[str] = None
    port: Optional[int] = None
    pid: Optional[int] = None
    message: Optional[str] = None
    ready: bool = False

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "sandbox_id": self.sandbox_id,
            "url": self.url,
            "port": self.port,
            "pid": self.pid,
            "message": self.message,
            "ready": self.ready,
        }


@dataclass
class _RunningPreview:
    process: ManagedProcess
    port: int
    started: datetime


def _check_port_quick(port: int, host: str = "localhost") -> bool:
    """Quick check if a port is responding (non-blocking)."""
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except (socket.timeout, ConnectionRefusedError, OSError):
        return False


# =============================================================================
# PREVIEW SERVER
# =============================================================================

class PreviewServer:
    """
    Long-running preview processes, at most one per sandbox.

    Args:
        toolchain: Builds the preview command line
        ports: Port lease table
        host: Host name used in preview URLs
        startup_wait: Seconds to wait for the port to answer after start
    """

    def __init__(
        self,
        toolchain: Toolchain,
        ports: PortAllocator,
        host: str = "localhost",
        startup_wait: float = STARTUP_WAIT,
    ):
        self.toolchain = toolchain
        self.ports = ports
        self.host = host
        self.startup_wait = startup_wait
        self._lock = threading.Lock()
        self._running: Dict[str, _RunningPreview] = {}

    def _url(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    def _wait_for_port(self, port: int, proc: ManagedProcess) -> bool:
        deadline = time.monotonic() + self.startup_wait
        while time.monotonic() < deadline:
            if not proc.is_running():
                return False
            if _check_port_quick(port):
                return True
            time.sleep(HEALTH_CHECK_INTERVAL)
        return False

    def start(self, sandbox: Sandbox) -> PreviewResult:
        """
        Start (or restart) the preview for a sandbox.

        A preview already running for the sandbox is terminated first; if it
        ignores the signal past the grace period, it is killed and startup
        proceeds regardless.
        """
        if not has_build_output(sandbox.root):
            return PreviewResult(
                status="error",
                sandbox_id=sandbox.sandbox_id,
                message="No build output to preview. Apply code or rebuild first.",
            )

        self._stop_process(sandbox.sandbox_id)
        port = self.ports.allocate(sandbox.sandbox_id)

        proc = ManagedProcess(
            self.toolchain.preview_command(port),
            cwd=sandbox.root,
            capture_output=False,
            grace_period=REPLACE_GRACE,
        )
        try:
            proc.start()
        except OSError as e:
            self.ports.release(sandbox.sandbox_id)
            logger.error("Failed to start preview for %s: %s", sandbox.sandbox_id, e)
            return PreviewResult(
                status="error",
                sandbox_id=sandbox.sandbox_id,
                message=f"Failed to start preview: {e}",
            )

        with self._lock:
            self._running[sandbox.sandbox_id] = _RunningPreview(process=proc, port=port, started=datetime.now())
        logger.info("Started preview for %s on port %s (pid %s)", sandbox.sandbox_id, port, proc.pid)

        ready = self._wait_for_port(port, proc)
        if not proc.is_running():
            self._stop_process(sandbox.sandbox_id)
            self.ports.release(sandbox.sandbox_id)
            return PreviewResult(
                status="error",
                sandbox_id=sandbox.sandbox_id,
                port=port,
                message="Preview process exited during startup.",
            )

        return PreviewResult(
            status="running" if ready else "starting",
            sandbox_id=sandbox.sandbox_id,
            url=self._url(port),
            port=port,
            pid=proc.pid,
            message=None if ready else "Still starting...",
            ready=ready,
        )

    def _stop_process(self, sandbox_id: str) -> bool:
        with self._lock:
            running = self._running.pop(sandbox_id, None)
        if running is None:
            return False
        if not running.process.terminate():
            logger.warning("Preview for %s did not exit; proceeding", sandbox_id)
        return True

    def stop(self, sandbox_id: str) -> PreviewResult:
        """Stop a sandbox's preview and release its port."""
        stopped = self._stop_process(sandbox_id)
        self.ports.release(sandbox_id)
        return PreviewResult(
            status="stopped",
            sandbox_id=sandbox_id,
            message="Preview stopped successfully." if stopped else "No preview was running.",
        )

    def status(self, sandbox_id: str) -> PreviewResult:
        """
        Current state of a sandbox's preview.

        Raises:
            NotFoundError: No preview was started for the sandbox
        """
        with self._lock:
            running = self._running.get(sandbox_id)
        if running is None:
            raise NotFoundError("preview", sandbox_id)

        if not running.process.is_running():
            self._stop_process(sandbox_id)
            self.ports.release(sandbox_id)
            return PreviewResult(
                status="error",
                sandbox_id=sandbox_id,
                port=running.port,
                message="Preview process stopped unexpectedly.",
            )

        ready = _check_port_quick(running.port)
        return PreviewResult(
            status="running" if ready else "starting",
            sandbox_id=sandbox_id,
            url=self._url(running.port),
            port=running.port,
            pid=running.process.pid,
            ready=ready,
        )

    def active(self) -> List[str]:
        with self._lock:
            return list(self._running)

    def alive(self) -> List[str]:
        """Sandboxes whose preview process is still running, bound or not."""
        with self._lock:
            return [sid for sid, running in self._running.items() if running.process.is_running()]

    def stop_all(self) -> None:
        """Terminate every preview process (teardown)."""
        for sandbox_id in self.active():
            self.stop(sandbox_id)
