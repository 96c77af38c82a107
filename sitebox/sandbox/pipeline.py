"""
Code Application Pipeline - Write generated files into a sandbox and rebuild.

Each apply call, under the sandbox's lock:
1. Scans import statements of the incoming source files for external packages
2. Installs detected and explicitly requested packages, one at a time
3. Writes the files (parents created, identical content left untouched)
4. Rebuilds exactly once

A failing build is returned as a structured failure, never raised, so the
caller can hand it to the auto-fixer.
"""

import logging
import re
import shlex
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Union

from sitebox.errors import InstallError, SandboxIOError
from sitebox.schemas import ApplyResult, BuildFailure, FileSpec, InstallReport, ProgressEvent
from sitebox.sandbox.executor import CommandResult, run_command
from sitebox.sandbox.registry import SandboxRegistry
from sitebox.sandbox.toolchain import Toolchain, is_declared


logger = logging.getLogger(__name__)


# =============================================================================
# DEPENDENCY DETECTION
# =============================================================================

# import X from 'pkg' / import { a, b } from "pkg" / import * as x from 'pkg' / import 'pkg'
IMPORT_REGEX = re.compile(
    r"""import\s+(?:(?:\{[^}]*\}|\*\s+as\s+\w+|\w+)(?:\s*,\s*(?:\{[^}]*\}|\*\s+as\s+\w+|\w+))*\s+from\s+)?['"]([^'"]+)['"]"""
)

SOURCE_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs")

# Shipped with the scaffold
BUILTIN_PACKAGES = frozenset({"react", "react-dom"})

Emitter = Callable[[ProgressEvent], None]
FileInput = Union[FileSpec, Dict[str, str]]


def package_name(specifier: str) -> str:
    """Package that provides an import specifier: @scope/name for scoped ones, else the first segment."""
    parts = specifier.split("/")
    if specifier.startswith("@"):
        return "/".join(parts[:2])
    return parts[0]


def is_external_specifier(specifier: str) -> bool:
    if specifier.startswith((".", "/", "@/", "node:")):
        return False
    return package_name(specifier) not in BUILTIN_PACKAGES


def detect_dependencies(files: Iterable[FileSpec]) -> List[str]:
    """
    Collect external package names imported by source files.

    Args:
        files: Files about to be written

    Returns:
        Unique package names in first-seen order
    """
    packages: List[str] = []
    for spec in files:
        if not spec.path.endswith(SOURCE_EXTENSIONS):
            continue
        for match in IMPORT_REGEX.finditer(spec.content):
            specifier = match.group(1)
            if not is_external_specifier(specifier):
                continue
            name = package_name(specifier)
            if name not in packages:
                packages.append(name)
    return packages


def normalize_packages(packages: Iterable[str]) -> List[str]:
    """Strip blanks and duplicates, keeping order."""
    result: List[str] = []
    for pkg in packages:
        pkg = (pkg or "").strip()
        if pkg and pkg not in result:
            result.append(pkg)
    return result


# =============================================================================
# PATH CONTAINMENT
# =============================================================================

def validate_relative_path(path: str) -> str:
    """Normalize a sandbox-relative path; reject empty, NUL and parent segments."""
    raw = (path or "").strip()
    if not raw:
        raise SandboxIOError("File path must not be empty")
    if "\x00" in raw:
        raise SandboxIOError(f"File path contains NUL: {path!r}")

    # Generated paths often come as /src/App.jsx; treat them as root-relative
    pure = PurePosixPath(raw.replace("\\", "/").lstrip("/"))
    if any(part in {"", ".", ".."} for part in pure.parts) or not pure.parts:
        raise SandboxIOError(f"Invalid path segment in {path!r}")
    return pure.as_posix()


def safe_join(root: Path, rel_path: str) -> Path:
    """Resolve a relative path under root, refusing anything that escapes it."""
    rel = validate_relative_path(rel_path)
    base = Path(root).resolve()
    candidate = (base / rel).resolve(strict=False)
    try:
        candidate.relative_to(base)
    except ValueError:
        raise SandboxIOError(f"Path escapes sandbox root: {rel_path}")
    return candidate


def _as_file_spec(item: FileInput) -> FileSpec:
    if isinstance(item, FileSpec):
        return item
    return FileSpec.model_validate(item)


# =============================================================================
# PIPELINE
# =============================================================================

class CodeApplicationPipeline:
    """
    Applies file batches to sandboxes.

    Args:
        registry: Sandbox table, also the source of per-sandbox locks
        toolchain: Package manager used for installs and builds
        command_timeout: Seconds allowed for ad-hoc commands
    """

    def __init__(self, registry: SandboxRegistry, toolchain: Toolchain, command_timeout: int = 30):
        self.registry = registry
        self.toolchain = toolchain
        self.command_timeout = command_timeout

    # -------------------------------------------------------------------------
    # Apply
    # -------------------------------------------------------------------------

    def apply_code(
        self,
        sandbox_id: str,
        files: Sequence[FileInput],
        packages: Sequence[str] = (),
        emit: Optional[Emitter] = None,
    ) -> ApplyResult:
        """
        Install dependencies, write files and rebuild once.

        Args:
            sandbox_id: Target sandbox
            files: Files to write
            packages: Extra packages requested by the caller
            emit: Receives progress events as the call advances

        Returns:
            ApplyResult; a failing build is reported in build_error

        Raises:
            NotFoundError: Unknown sandbox
            SandboxIOError: A file could not be written
        """
        emit = emit or _discard_event
        specs = [_as_file_spec(f) for f in files]

        with self.registry.lock(sandbox_id):
            self.registry.touch(sandbox_id)

            detected = detect_dependencies(specs)
            wanted = normalize_packages(list(detected) + list(packages))
            if detected:
                emit(ProgressEvent(
                    type="status",
                    message=f"Detected {len(detected)} package(s) from imports: {', '.join(detected)}",
                    data={"packages": detected},
                ))

            report = InstallReport()
            if wanted:
                emit(ProgressEvent(type="status", message=f"Installing {len(wanted)} package(s)..."))
                report = self.install_packages(sandbox_id, wanted, emit=emit)

            emit(ProgressEvent(type="status", message=f"Writing {len(specs)} file(s)..."))
            applied = self.write_files(sandbox_id, specs, emit=emit)

            emit(ProgressEvent(type="status", message="Rebuilding..."))
            build = self.rebuild(sandbox_id)

        if build.success:
            message = f"Applied {len(applied)} file(s) and rebuilt successfully"
            emit(ProgressEvent(type="status", message=message))
            return ApplyResult(
                success=True,
                sandbox_id=sandbox_id,
                applied_files=applied,
                packages=report,
                message=message,
            )

        failure = build_failure(build)
        emit(ProgressEvent(
            type="warning",
            message=f"Build failed with exit code {build.exit_code}",
            data={"stderr": build.stderr[-2000:]},
        ))
        return ApplyResult(
            success=False,
            sandbox_id=sandbox_id,
            applied_files=applied,
            packages=report,
            build_error=failure,
            message="Build failed",
        )

    # -------------------------------------------------------------------------
    # Packages
    # -------------------------------------------------------------------------

    def install_packages(
        self,
        sandbox_id: str,
        packages: Sequence[str],
        emit: Optional[Emitter] = None,
    ) -> InstallReport:
        """
        Install each package independently.

        A package counts as installed only when the manifest lists it
        afterwards. Failures are collected per package, never raised.
        """
        emit = emit or _discard_event
        report = InstallReport()

        with self.registry.lock(sandbox_id) as sandbox:
            for pkg in normalize_packages(packages):
                if is_declared(sandbox.root, pkg):
                    report.already_present.append(pkg)
                    emit(ProgressEvent(
                        type="package_installed",
                        message=f"{pkg} already installed",
                        data={"package": pkg, "already_present": True},
                    ))
                    continue

                result = self.toolchain.add_packages(sandbox.root, [pkg])
                if result.success and is_declared(sandbox.root, pkg):
                    report.installed.append(pkg)
                    logger.info("Installed %s in %s", pkg, sandbox_id)
                    emit(ProgressEvent(
                        type="package_installed",
                        message=f"Installed {pkg}",
                        data={"package": pkg},
                    ))
                    continue

                if result.success:
                    reason = "install exited cleanly but the manifest does not list the package"
                elif result.timed_out:
                    reason = result.stderr
                else:
                    reason = f"exit code {result.exit_code}"
                error = InstallError(pkg, reason, stderr=result.stderr)
                report.failed[pkg] = error.reason
                logger.warning("%s in %s: %s", error, sandbox_id, result.stderr.strip()[:300])
                emit(ProgressEvent(
                    type="package_error",
                    message=str(error),
                    data={"package": pkg, "reason": error.reason, "stderr": result.stderr[-1000:]},
                ))

        return report

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def write_files(
        self,
        sandbox_id: str,
        files: Sequence[FileInput],
        emit: Optional[Emitter] = None,
    ) -> List[str]:
        """
        Write files under the sandbox root.

        The single write path for applied code and for repairs. Identical
        content is not rewritten. Stops at the first failure.

        Returns:
            Normalized relative paths of all files in the batch

        Raises:
            SandboxIOError: Invalid path, or the write failed
        """
        emit = emit or _discard_event
        applied: List[str] = []

        with self.registry.lock(sandbox_id) as sandbox:
            for item in files:
                spec = _as_file_spec(item)
                rel = validate_relative_path(spec.path)
                target = safe_join(sandbox.root, rel)
                try:
                    if target.is_file() and target.read_text(encoding="utf-8", errors="replace") == spec.content:
                        logger.debug("Unchanged %s in %s", rel, sandbox_id)
                    else:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        target.write_text(spec.content, encoding="utf-8")
                        logger.info("Wrote %s in %s", rel, sandbox_id)
                except OSError as e:
                    raise SandboxIOError(f"Could not write {rel} in {sandbox_id}: {e}") from e

                applied.append(rel)
                emit(ProgressEvent(type="file_applied", message=f"Applied {rel}", data={"path": rel}))

            self.registry.touch(sandbox_id)
        return applied

    def read_file(self, sandbox_id: str, rel_path: str) -> Optional[str]:
        """Current content of a sandbox file, or None when it does not exist."""
        sandbox = self.registry.get(sandbox_id)
        target = safe_join(sandbox.root, rel_path)
        if not target.is_file():
            return None
        try:
            return target.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise SandboxIOError(f"{rel_path} in {sandbox_id} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise SandboxIOError(f"Could not read {rel_path} in {sandbox_id}: {e}") from e

    # -------------------------------------------------------------------------
    # Build and commands
    # -------------------------------------------------------------------------

    def rebuild(self, sandbox_id: str) -> CommandResult:
        """Run one build and record the resulting status."""
        with self.registry.lock(sandbox_id) as sandbox:
            self.registry.set_status(sandbox_id, "building")
            result = self.toolchain.build(sandbox.root)
            if result.success:
                self.registry.set_status(sandbox_id, "ready")
                logger.info("Rebuilt %s in %dms", sandbox_id, result.duration_ms)
            else:
                self.registry.set_status(sandbox_id, "failed", error=_failure_text(result))
                logger.warning("Build failed for %s: %s", sandbox_id, result.stderr.strip()[:300])
        return result

    def run_command(self, sandbox_id: str, command: Union[str, Sequence[str]]) -> CommandResult:
        """Run an ad-hoc command in the sandbox root with the short timeout."""
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise ValueError("Command must not be empty")
        with self.registry.lock(sandbox_id) as sandbox:
            logger.info("Running command in %s: %s", sandbox_id, " ".join(argv))
            result = run_command(argv, cwd=sandbox.root, timeout=self.command_timeout)
            self.registry.touch(sandbox_id)
        return result


def build_failure(result: CommandResult) -> BuildFailure:
    return BuildFailure(
        command=result.command,
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.exit_code,
        timed_out=result.timed_out,
    )


def _failure_text(result: CommandResult) -> str:
    return (result.stderr.strip() or result.stdout.strip() or f"{result.command} failed")[-2000:]


def _discard_event(event: ProgressEvent) -> None:
    pass
