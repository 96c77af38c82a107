"""
Exception taxonomy for sandbox orchestration.

Every error raised by the service derives from SiteboxError so callers
(the operator console, the progress stream, the sweeper) can contain a
failing operation without taking down the process.
"""

from typing import Optional


class SiteboxError(Exception):
    """Base class for all sandbox orchestration errors."""
    pass


class ConfigError(SiteboxError):
    """Raised when configuration is invalid or missing."""
    pass


class NotFoundError(SiteboxError):
    """Unknown sandbox, route or port lease."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ProvisioningError(SiteboxError):
    """
    Scaffold, install or build failed during sandbox creation.

    Fatal for the create call; the partially created directory is removed
    before this is raised.
    """

    def __init__(self, message: str, stage: str, stderr: str = "", stdout: str = ""):
        self.stage = stage
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(message)


class BuildError(SiteboxError):
    """A build invocation failed. Carries the captured output."""

    def __init__(self, command: str, stdout: str = "", stderr: str = "", exit_code: Optional[int] = None):
        self.command = command
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(f"Build failed ({command}): {stderr.strip()[:500] or 'no output'}")


class InstallError(SiteboxError):
    """A single package failed to install. Never fatal to a batch."""

    def __init__(self, package: str, reason: str, stderr: str = ""):
        self.package = package
        self.reason = reason
        self.stderr = stderr
        super().__init__(f"Failed to install {package}: {reason}")


class ClassificationUnknownError(SiteboxError):
    """No deterministic repair applies; escalate to generative repair."""
    pass


class ResourceExhaustionError(SiteboxError):
    """No port left in the configured range."""
    pass


class SandboxIOError(SiteboxError, OSError):
    """File system failure inside a sandbox. Fatal to the operation only."""
    pass


class AutoFixError(SiteboxError):
    """
    The auto-fix loop could not make the build succeed.

    Keeps both the initiating failure and the secondary one (a failed
    repair or a failing retried build) so the cause chain is not lost.
    """

    def __init__(self, message: str, original: str, secondary: str):
        self.original = original
        self.secondary = secondary
        super().__init__(f"{message}\n\nOriginal failure:\n{original}\n\nAfter auto-fix:\n{secondary}")
