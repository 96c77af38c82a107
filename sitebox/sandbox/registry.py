"""
Sandbox Registry - Authoritative table of sandbox metadata.

Responsibilities:
- Provision sandboxes (scaffold, install, build) with bounded retries
- Recover sandboxes already on disk at process start
- Provide lookups that refresh last-accessed time
- Serialize operations per sandbox
- Evict idle sandboxes
"""

import logging
import random
import shutil
import string
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Literal, Optional

from sitebox.errors import NotFoundError, ProvisioningError, SandboxIOError
from sitebox.sandbox.executor import CommandResult
from sitebox.sandbox.scaffold import write_scaffold
from sitebox.sandbox.toolchain import BUILD_DIR, MANIFEST_FILE, Toolchain, has_build_output


logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

# Default idle threshold before a sandbox is evicted
DEFAULT_IDLE_HOURS = 24

# Source id given to sandboxes found on disk at startup
RECOVERED_SOURCE = "recovered"

SandboxStatus = Literal["provisioning", "ready", "building", "failed"]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Sandbox:
    """Metadata for one sandbox workspace."""
    sandbox_id: str
    root: Path
    source_id: str
    created: datetime
    last_accessed: datetime
    status: SandboxStatus = "provisioning"
    build_subpath: str = BUILD_DIR
    last_error: Optional[str] = None

    @property
    def build_path(self) -> Path:
        return self.root / self.build_subpath

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["root"] = str(self.root)
        data["build_path"] = str(self.build_path)
        data["created"] = self.created.isoformat()
        data["last_accessed"] = self.last_accessed.isoformat()
        return data

    def is_idle(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """Check if the sandbox has not been accessed within max_age."""
        return self.last_accessed < (now or datetime.now()) - max_age


def generate_sandbox_id() -> str:
    """Unique id of the form sandbox_<epoch ms>_<6 random base36 chars>."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"sandbox_{int(time.time() * 1000)}_{suffix}"


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class SandboxRegistry:
    """
    Manages the registry of sandboxes under a storage root.

    Thread-safe operations for:
    - Provisioning and recovery
    - Lookup and touch
    - Per-sandbox locking
    - Deletion and idle cleanup

    Args:
        storage_root: Directory holding one subdirectory per sandbox
        toolchain: Package manager used for install and build
        install_attempts: Install tries during provisioning
        build_attempts: Build tries during provisioning
        install_retry_delay: Seconds between install tries
        build_retry_delay: Seconds between build tries
        on_delete: Called with the sandbox id after a sandbox is removed,
            so the owner can release ports, routes and processes
    """

    def __init__(
        self,
        storage_root: Path,
        toolchain: Toolchain,
        install_attempts: int = 3,
        build_attempts: int = 2,
        install_retry_delay: float = 2.0,
        build_retry_delay: float = 1.0,
        on_delete: Optional[Callable[[str], None]] = None,
    ):
        self.storage_root = Path(storage_root)
        self.toolchain = toolchain
        self.install_attempts = install_attempts
        self.build_attempts = build_attempts
        self.install_retry_delay = install_retry_delay
        self.build_retry_delay = build_retry_delay
        self.on_delete = on_delete

        self._lock = threading.RLock()
        self._sandboxes: Dict[str, Sandbox] = {}
        self._sandbox_locks: Dict[str, threading.RLock] = {}

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def _lock_for(self, sandbox_id: str) -> threading.RLock:
        with self._lock:
            lock = self._sandbox_locks.get(sandbox_id)
            if lock is None:
                lock = threading.RLock()
                self._sandbox_locks[sandbox_id] = lock
            return lock

    @contextmanager
    def lock(self, sandbox_id: str) -> Iterator[Sandbox]:
        """
        Hold the sandbox's exclusive lock for the duration of the block.

        Re-entrant for the holding thread. A second thread for the same id
        waits; callers for other ids proceed.

        Raises:
            NotFoundError: Unknown id, checked again once the lock is held
        """
        self.get(sandbox_id)
        with self._lock_for(sandbox_id):
            yield self.get(sandbox_id)

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    def create(self, source_id: str = "sandbox-app", sandbox_id: Optional[str] = None) -> Sandbox:
        """
        Provision a new sandbox: scaffold, install, build.

        Args:
            source_id: Originating source identifier (a URL or app name)
            sandbox_id: Explicit id; generated when omitted

        Returns:
            The registered sandbox with status "ready"

        Raises:
            ProvisioningError: Scaffold, install or build failed; the
                directory has been removed
        """
        sandbox_id = sandbox_id or generate_sandbox_id()
        root = self.storage_root / sandbox_id
        now = datetime.now()
        sandbox = Sandbox(
            sandbox_id=sandbox_id,
            root=root,
            source_id=source_id,
            created=now,
            last_accessed=now,
            status="provisioning",
        )

        with self._lock:
            if sandbox_id in self._sandboxes or root.exists():
                raise ProvisioningError(f"Sandbox {sandbox_id} already exists", stage="scaffold")
            self._sandboxes[sandbox_id] = sandbox

        logger.info("Creating sandbox %s for %s", sandbox_id, source_id)
        try:
            with self._lock_for(sandbox_id):
                try:
                    write_scaffold(root)
                except OSError as e:
                    raise ProvisioningError(f"Could not scaffold {sandbox_id}: {e}", stage="scaffold") from e

                self._run_stage(sandbox_id, "install", self.toolchain.install,
                                self.install_attempts, self.install_retry_delay)
                self._run_stage(sandbox_id, "build", self.toolchain.build,
                                self.build_attempts, self.build_retry_delay)
        except ProvisioningError:
            self._discard(sandbox_id, root)
            raise
        except Exception as e:
            self._discard(sandbox_id, root)
            raise ProvisioningError(f"Unexpected failure creating {sandbox_id}: {e}", stage="scaffold") from e

        sandbox.status = "ready"
        sandbox.last_accessed = datetime.now()
        logger.info("Sandbox %s created successfully", sandbox_id)
        return sandbox

    def _run_stage(
        self,
        sandbox_id: str,
        stage: str,
        step: Callable[..., CommandResult],
        attempts: int,
        delay: float,
    ) -> CommandResult:
        """Run an install or build step with a fixed retry budget."""
        root = self.storage_root / sandbox_id
        result = None
        for attempt in range(1, attempts + 1):
            logger.info("%s attempt %d/%d for %s", stage.capitalize(), attempt, attempts, sandbox_id)
            result = step(root, attempt=attempt)
            if result.success:
                return result
            logger.warning(
                "%s attempt %d failed for %s: %s",
                stage.capitalize(), attempt, sandbox_id, result.stderr.strip()[:300],
            )
            if attempt < attempts:
                time.sleep(delay)

        raise ProvisioningError(
            f"{stage.capitalize()} failed after {attempts} attempts for {sandbox_id}",
            stage=stage,
            stderr=result.stderr if result else "",
            stdout=result.stdout if result else "",
        )

    def _discard(self, sandbox_id: str, root: Path) -> None:
        logger.error("Cleaning up failed sandbox %s", sandbox_id)
        with self._lock:
            self._sandboxes.pop(sandbox_id, None)
            self._sandbox_locks.pop(sandbox_id, None)
        shutil.rmtree(root, ignore_errors=True)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def recover(self) -> List[str]:
        """
        Register sandboxes already present under the storage root.

        Directories need both a manifest and a built artifact; anything else
        is skipped with a warning.

        Returns:
            IDs of recovered sandboxes
        """
        if not self.storage_root.exists():
            logger.info("No sandbox storage at %s, creating it", self.storage_root)
            self.storage_root.mkdir(parents=True, exist_ok=True)
            return []

        recovered = []
        for entry in sorted(self.storage_root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            if not (entry / MANIFEST_FILE).is_file() or not has_build_output(entry):
                logger.warning("Skipping %s: missing %s or built artifact", entry.name, MANIFEST_FILE)
                continue

            stat = entry.stat()
            sandbox = Sandbox(
                sandbox_id=entry.name,
                root=entry,
                source_id=RECOVERED_SOURCE,
                created=datetime.fromtimestamp(stat.st_ctime),
                last_accessed=datetime.now(),
                status="ready",
            )
            with self._lock:
                if entry.name in self._sandboxes:
                    continue
                self._sandboxes[entry.name] = sandbox
            recovered.append(entry.name)
            logger.info("Recovered sandbox %s", entry.name)

        logger.info("Recovered %d existing sandboxes", len(recovered))
        return recovered

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def get(self, sandbox_id: str) -> Sandbox:
        with self._lock:
            sandbox = self._sandboxes.get(sandbox_id)
        if sandbox is None:
            raise NotFoundError("sandbox", sandbox_id)
        return sandbox

    def touch(self, sandbox_id: str) -> Sandbox:
        """Look up a sandbox and refresh its last-accessed time."""
        sandbox = self.get(sandbox_id)
        sandbox.last_accessed = datetime.now()
        return sandbox

    def set_status(self, sandbox_id: str, status: SandboxStatus, error: Optional[str] = None) -> None:
        sandbox = self.get(sandbox_id)
        sandbox.status = status
        sandbox.last_error = error
        sandbox.last_accessed = datetime.now()

    def list(self) -> List[Sandbox]:
        with self._lock:
            return list(self._sandboxes.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sandboxes)

    def __contains__(self, sandbox_id: str) -> bool:
        with self._lock:
            return sandbox_id in self._sandboxes

    # -------------------------------------------------------------------------
    # Removal
    # -------------------------------------------------------------------------

    def delete(self, sandbox_id: str) -> None:
        """
        Remove a sandbox's directory and deregister it.

        Waits for any in-flight operation on the same sandbox.

        Raises:
            NotFoundError: Unknown id
            SandboxIOError: The directory could not be removed
        """
        self._delete(sandbox_id)

    def delete_if_idle(self, sandbox_id: str, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        """
        Delete a sandbox only if it is still idle once its lock is held.

        An operation that touched the sandbox while the caller waited for
        the lock keeps it alive.

        Returns:
            True if the sandbox was deleted
        """
        return self._delete(sandbox_id, lambda sandbox: sandbox.is_idle(max_age, now))

    def _delete(self, sandbox_id: str, condition: Optional[Callable[[Sandbox], bool]] = None) -> bool:
        with self.lock(sandbox_id) as sandbox:
            if condition is not None and not condition(sandbox):
                logger.info("Sandbox %s was used during the sweep, keeping it", sandbox_id)
                return False
            try:
                if sandbox.root.exists():
                    shutil.rmtree(sandbox.root)
            except OSError as e:
                raise SandboxIOError(f"Could not remove {sandbox.root}: {e}") from e

            with self._lock:
                self._sandboxes.pop(sandbox_id, None)

        with self._lock:
            self._sandbox_locks.pop(sandbox_id, None)

        logger.info("Deleted sandbox %s", sandbox_id)
        if self.on_delete:
            self.on_delete(sandbox_id)
        return True

    def cleanup_idle(self, max_age: timedelta = timedelta(hours=DEFAULT_IDLE_HOURS)) -> List[str]:
        """
        Delete every sandbox not accessed within max_age.

        Idleness is checked again under each sandbox's lock, so a sandbox
        touched after the sweep began survives. Failures on one sandbox are
        logged and the sweep continues.

        Returns:
            IDs of deleted sandboxes
        """
        now = datetime.now()
        idle = [s.sandbox_id for s in self.list() if s.is_idle(max_age, now)]
        if not idle:
            return []

        logger.info("Starting cleanup of %d idle sandboxes", len(idle))
        removed = []
        for sandbox_id in idle:
            try:
                if self.delete_if_idle(sandbox_id, max_age, now):
                    removed.append(sandbox_id)
            except NotFoundError:
                logger.info("Sandbox %s already deleted", sandbox_id)
            except Exception as e:
                logger.error("Error cleaning up sandbox %s: %s", sandbox_id, e)

        logger.info("Cleanup completed: %d of %d idle sandboxes removed", len(removed), len(idle))
        return removed
