"""
Sandbox Executor - Run toolchain commands as scoped child processes.

Guarantees:
- Every child is bounded by an explicit timeout; a timeout is a failure,
  never an indefinite wait
- Termination is signalled on every exit path, including errors
- A child that ignores the termination signal gets a short grace period,
  then a kill, and the caller moves on regardless
- stdout/stderr are always captured and carried upward
"""

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Seconds to wait after SIGTERM before escalating to SIGKILL
TERMINATION_GRACE = 3.0

# Seconds to wait after SIGKILL before giving up on the child
KILL_GRACE = 1.0

# Exit code reported for timed-out commands
TIMEOUT_EXIT_CODE = 124


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class CommandResult:
    """Result of one command invocation (one build or install attempt)."""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    duration_ms: int = 0
    attempt: int = 1

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["success"] = self.success
        return data


# =============================================================================
# PROCESS HANDLE
# =============================================================================

class ManagedProcess:
    """
    Scoped handle around a child process.

    Use as a context manager; leaving the block terminates the child if it
    is still running, whatever the reason for leaving.

        with ManagedProcess(["pnpm", "run", "build"], cwd=root) as proc:
            stdout, stderr = proc.communicate(timeout=180)
    """

    def __init__(
        self,
        command: Sequence[str],
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]] = None,
        capture_output: bool = True,
        grace_period: float = TERMINATION_GRACE,
    ):
        self.command = list(command)
        self.cwd = Path(cwd)
        self.env = env
        self.capture_output = capture_output
        self.grace_period = grace_period
        self.process: Optional[subprocess.Popen] = None

    def __enter__(self) -> "ManagedProcess":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.terminate()

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def start(self) -> None:
        merged_env = os.environ.copy()
        if self.env:
            merged_env.update(self.env)
        pipe = subprocess.PIPE if self.capture_output else subprocess.DEVNULL
        self.process = subprocess.Popen(
            self.command,
            cwd=str(self.cwd),
            env=merged_env,
            stdout=pipe,
            stderr=pipe,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            start_new_session=True,
        )

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def communicate(self, timeout: float):
        """Wait for the child and return (stdout, stderr). Raises subprocess.TimeoutExpired."""
        if self.process is None:
            raise RuntimeError("process not started")
        return self.process.communicate(timeout=timeout)

    def drain(self, timeout: float = KILL_GRACE) -> Tuple[str, str]:
        """
        Collect whatever the child wrote before it stopped and close its pipes.

        Call after terminate(); output still buffered when the timeout hits
        is returned as far as it was read.
        """
        if self.process is None:
            return "", ""
        try:
            stdout, stderr = self.process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            stdout, stderr = _as_text(e.stdout), _as_text(e.stderr)
            for pipe in (self.process.stdout, self.process.stderr):
                if pipe is not None:
                    pipe.close()
        except ValueError:
            # Pipes already closed by an earlier drain
            return "", ""
        return stdout or "", stderr or ""

    def terminate(self) -> bool:
        """
        Send SIGTERM to the child's process group and wait for it to exit.

        Returns:
            True if the child is known to be dead, False if it was still
            alive after the kill grace period (the caller proceeds anyway)
        """
        if not self.is_running():
            return True

        self._signal(signal.SIGTERM)
        try:
            self.process.wait(timeout=self.grace_period)
            return True
        except subprocess.TimeoutExpired:
            pass

        logger.warning("Process %s ignored SIGTERM, killing", self.pid)
        self._signal(signal.SIGKILL)
        try:
            self.process.wait(timeout=KILL_GRACE)
            return True
        except subprocess.TimeoutExpired:
            logger.error("Process %s still alive after SIGKILL, abandoning it", self.pid)
            return False

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(os.getpgid(self.process.pid), sig)
        except (ProcessLookupError, PermissionError):
            pass
        except OSError:
            # Not a group leader; fall back to the single process
            try:
                self.process.send_signal(sig)
            except ProcessLookupError:
                pass


# =============================================================================
# ONE-SHOT COMMANDS
# =============================================================================

def _as_text(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def format_command(command: Sequence[str]) -> str:
    """Render an argv list for logs and error reports."""
    return " ".join(command)


def run_command(
    command: Sequence[str],
    cwd: Union[str, Path],
    timeout: float,
    env: Optional[Dict[str, str]] = None,
    attempt: int = 1,
) -> CommandResult:
    """
    Run a command to completion with a hard timeout.

    Args:
        command: argv list
        cwd: Working directory
        timeout: Seconds before the child is cancelled
        env: Extra environment variables
        attempt: Attempt index recorded on the result

    Returns:
        CommandResult; a missing executable or a timeout are reported as
        failed results rather than raised
    """
    rendered = format_command(command)
    start = time.monotonic()
    logger.debug("Running %s in %s", rendered, cwd)

    try:
        with ManagedProcess(command, cwd=cwd, env=env) as proc:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                stdout, stderr = proc.drain()
                duration_ms = int((time.monotonic() - start) * 1000)
                logger.warning("Command timed out after %ss: %s", timeout, rendered)
                note = f"Command timed out after {timeout} seconds"
                return CommandResult(
                    command=rendered,
                    exit_code=TIMEOUT_EXIT_CODE,
                    stdout=stdout,
                    stderr=f"{stderr.rstrip()}\n{note}" if stderr.strip() else note,
                    timed_out=True,
                    duration_ms=duration_ms,
                    attempt=attempt,
                )
            exit_code = proc.process.returncode
    except FileNotFoundError as e:
        return CommandResult(
            command=rendered,
            exit_code=127,
            stderr=f"Executable not found: {e.filename or command[0]}",
            duration_ms=int((time.monotonic() - start) * 1000),
            attempt=attempt,
        )

    return CommandResult(
        command=rendered,
        exit_code=exit_code,
        stdout=stdout or "",
        stderr=stderr or "",
        duration_ms=int((time.monotonic() - start) * 1000),
        attempt=attempt,
    )
