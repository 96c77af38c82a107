"""
Sandbox service - composition root for sandbox orchestration.

Owns the sandbox, route and port tables, the pipeline, the auto-fix graph
and the preview processes, and exposes every sandbox operation as a method.
Construct it explicitly, call start() once, and shutdown() at teardown.
"""

import logging
import mimetypes
import queue
import threading
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from sitebox.config import Config, get_config
from sitebox.errors import AutoFixError, NotFoundError, SiteboxError
from sitebox.graph import get_compiled_graph, run_autofix
from sitebox.llm.azure_openai_client import create_repairer
from sitebox.schemas import (
    ApplyResult,
    AutoFixReport,
    ErrorRecord,
    ExportResult,
    FileSpec,
    InstallReport,
    ProgressEvent,
)
from sitebox.sandbox.autofix import AutoFixer, GenerativeRepairer
from sitebox.sandbox.exporter import export_zip
from sitebox.sandbox.files import build_manifest, read_tree
from sitebox.sandbox.pipeline import CodeApplicationPipeline, Emitter, FileInput, safe_join
from sitebox.sandbox.ports import PortAllocator, is_port_free
from sitebox.sandbox.preview import PreviewResult, PreviewServer
from sitebox.sandbox.registry import RECOVERED_SOURCE, Sandbox, SandboxRegistry
from sitebox.sandbox.routing import RoutingRegistry
from sitebox.sandbox.toolchain import BUILD_ENTRY, Toolchain


logger = logging.getLogger(__name__)

_STREAM_DONE = object()


class SandboxService:
    """
    Sandbox orchestration service.

    Args:
        config: Settings; the global config when omitted
        toolchain: Package manager runner; built from config when omitted
        repairer: Generative fallback for errors no rule can fix
        port_probe: OS-level port check used by the port allocator
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        toolchain: Optional[Toolchain] = None,
        repairer: Optional[GenerativeRepairer] = None,
        port_probe=is_port_free,
    ):
        self.config = config or get_config()
        self.toolchain = toolchain or Toolchain(
            package_manager=self.config.package_manager,
            install_timeout=self.config.install_timeout,
            build_timeout=self.config.build_timeout,
        )

        self.ports = PortAllocator(
            start=self.config.port_range_start,
            end=self.config.port_range_end,
            reserved=self.config.reserved_ports,
            probe=port_probe,
        )
        self.routes = RoutingRegistry(public_url=self.config.public_url)
        self.registry = SandboxRegistry(
            storage_root=self.config.storage_root,
            toolchain=self.toolchain,
            install_attempts=self.config.install_attempts,
            build_attempts=self.config.build_attempts,
            install_retry_delay=self.config.install_retry_delay,
            build_retry_delay=self.config.build_retry_delay,
            on_delete=self._release_resources,
        )
        self.pipeline = CodeApplicationPipeline(
            self.registry, self.toolchain, command_timeout=self.config.command_timeout,
        )
        self.previews = PreviewServer(self.toolchain, self.ports)
        self.fixer = AutoFixer(self.pipeline, repairer)
        self.autofix_graph = get_compiled_graph(self.fixer)

        self.started_at: Optional[float] = None
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self, run_sweeper: bool = True) -> List[str]:
        """
        Recover sandboxes from disk and start the periodic sweeper.

        Returns:
            IDs of recovered sandboxes
        """
        recovered = self.registry.recover()
        for sandbox_id in recovered:
            sandbox = self.registry.get(sandbox_id)
            self.routes.register_route(sandbox_id, sandbox.source_id, sandbox.root)

        self.started_at = time.time()
        if run_sweeper and self.config.sweep_interval_seconds > 0:
            self._stop.clear()
            self._sweeper = threading.Thread(target=self._sweep_loop, name="sitebox-sweeper", daemon=True)
            self._sweeper.start()

        logger.info("Sandbox service started with %d recovered sandboxes", len(recovered))
        return recovered

    def shutdown(self) -> None:
        """Stop the sweeper and previews and release every port lease."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        self.previews.stop_all()
        self.ports.release_all()
        self.routes.clear()
        logger.info("Sandbox service shut down")

    def __enter__(self) -> "SandboxService":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Periodic sweep failed")

    def sweep(self) -> Dict[str, List[str]]:
        """Evict idle sandboxes and stale routes, and reclaim orphaned ports."""
        removed = self.registry.cleanup_idle(timedelta(hours=self.config.idle_hours))
        stale_routes = self.routes.cleanup_older_than(self.config.route_max_age_minutes)
        reclaimed = self.ports.reconcile(keep=self.previews.alive())
        for sandbox_id in reclaimed:
            if sandbox_id in self.previews.active():
                # Clears the record when the preview process has exited
                self.previews.status(sandbox_id)
        return {"sandboxes": removed, "routes": stale_routes, "ports": reclaimed}

    def _release_resources(self, sandbox_id: str) -> None:
        self.previews.stop(sandbox_id)
        self.ports.release(sandbox_id)
        self.routes.unregister(sandbox_id)

    # =========================================================================
    # SANDBOXES
    # =========================================================================

    def _url(self, sandbox: Sandbox) -> str:
        url = self.routes.url_for(sandbox.sandbox_id)
        if url is None:
            self.routes.register_route(sandbox.sandbox_id, sandbox.source_id, sandbox.root)
            url = self.routes.url_for(sandbox.sandbox_id)
        return url

    def create(self, source_id: str = "sandbox-app", existing_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Provision a sandbox, or reattach to an existing one.

        Args:
            source_id: Originating URL or app name
            existing_id: Reuse this sandbox instead of creating one; it is
                recovered from disk if not yet registered

        Raises:
            ProvisioningError: Scaffold, install or build failed
            NotFoundError: existing_id is neither registered nor on disk
        """
        if existing_id:
            if existing_id not in self.registry:
                self.registry.recover()
            sandbox = self.registry.touch(existing_id)
            logger.info("Reusing sandbox %s", existing_id)
            return {
                "sandbox_id": sandbox.sandbox_id,
                "url": self._url(sandbox),
                "status": sandbox.status,
                "recovered": sandbox.source_id == RECOVERED_SOURCE,
            }

        sandbox = self.registry.create(source_id)
        route = self.routes.register_route(sandbox.sandbox_id, source_id, sandbox.root)
        return {
            "sandbox_id": sandbox.sandbox_id,
            "url": self._url(sandbox),
            "path_segment": route.path_segment,
            "status": sandbox.status,
            "recovered": False,
        }

    def info(self, sandbox_id: str) -> Dict[str, Any]:
        sandbox = self.registry.touch(sandbox_id)
        data = sandbox.to_dict()
        data["url"] = self._url(sandbox)
        data["port"] = self.ports.port_for(sandbox_id)
        return data

    def list(self) -> List[Dict[str, Any]]:
        result = []
        for sandbox in self.registry.list():
            data = sandbox.to_dict()
            data["url"] = self.routes.url_for(sandbox.sandbox_id)
            data["port"] = self.ports.port_for(sandbox.sandbox_id)
            result.append(data)
        return result

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "active_sandboxes": len(self.registry),
            "previews": len(self.previews.active()),
            "port_leases": len(self.ports.leases()),
            "uptime_seconds": int(time.time() - self.started_at) if self.started_at else 0,
        }

    def delete(self, sandbox_id: str) -> Dict[str, Any]:
        """Delete a sandbox. An unknown id is reported, not raised."""
        try:
            self.previews.stop(sandbox_id)
            self.registry.delete(sandbox_id)
        except NotFoundError:
            logger.info("Delete requested for unknown sandbox %s", sandbox_id)
            return {"success": False, "sandbox_id": sandbox_id, "error": "not_found",
                    "message": f"Sandbox {sandbox_id} not found"}
        return {"success": True, "sandbox_id": sandbox_id, "message": f"Sandbox {sandbox_id} deleted"}

    # =========================================================================
    # CODE APPLICATION
    # =========================================================================

    def apply(
        self,
        sandbox_id: str,
        files: Sequence[FileInput],
        packages: Sequence[str] = (),
        auto_fix: bool = True,
        emit: Optional[Emitter] = None,
    ) -> ApplyResult:
        """
        Apply files and rebuild; on build failure run one auto-fix pass and
        one retried build.

        The sandbox stays locked for the whole sequence.
        """
        emit = emit or (lambda event: None)
        with self.registry.lock(sandbox_id):
            result = self.pipeline.apply_code(sandbox_id, files, packages, emit=emit)
            if result.success or not auto_fix or result.build_error is None:
                return result

            report = self._auto_fix_locked(sandbox_id, result.build_error.to_error_record(), emit)

        result.auto_fix = report
        if report.phase == "FIXED":
            result.success = True
            result.build_error = None
            result.message = f"Build fixed automatically: {report.message}"
        else:
            result.message = report.message
        return result

    def apply_stream(
        self,
        sandbox_id: str,
        files: Sequence[FileInput],
        packages: Sequence[str] = (),
        auto_fix: bool = True,
    ) -> Iterator[ProgressEvent]:
        """
        Apply files, yielding progress events as they happen.

        The work runs on a worker thread once iteration begins. The stream
        always ends with exactly one complete or error event.
        """
        events: "queue.Queue[Any]" = queue.Queue()

        def worker() -> None:
            try:
                result = self.apply(sandbox_id, files, packages, auto_fix=auto_fix, emit=events.put)
                if result.success:
                    events.put(ProgressEvent(type="complete", message=result.message, data=result.model_dump()))
                else:
                    events.put(ProgressEvent(type="error", message=result.message, data=result.model_dump()))
            except Exception as e:
                logger.exception("Apply failed for %s", sandbox_id)
                events.put(ProgressEvent(
                    type="error",
                    message=str(e),
                    data={"sandbox_id": sandbox_id, "error_type": type(e).__name__},
                ))
            finally:
                events.put(_STREAM_DONE)

        yield ProgressEvent(
            type="status",
            message=f"Applying {len(files)} file(s) to {sandbox_id}",
            data={"sandbox_id": sandbox_id},
        )

        thread = threading.Thread(target=worker, name=f"apply-{sandbox_id}", daemon=True)
        thread.start()

        terminal_sent = False
        while True:
            event = events.get()
            if event is _STREAM_DONE:
                break
            if event.is_terminal:
                if terminal_sent:
                    continue
                terminal_sent = True
            yield event

        if not terminal_sent:
            yield ProgressEvent(type="error", message="Apply ended without a result", data={"sandbox_id": sandbox_id})

    def install_packages(self, sandbox_id: str, packages: Sequence[str]) -> InstallReport:
        return self.pipeline.install_packages(sandbox_id, packages)

    def run_command(self, sandbox_id: str, command: Union[str, Sequence[str]]) -> Dict[str, Any]:
        return self.pipeline.run_command(sandbox_id, command).to_dict()

    # =========================================================================
    # AUTO-FIX
    # =========================================================================

    def auto_fix(
        self,
        sandbox_id: str,
        error: Union[ErrorRecord, Dict[str, Any]],
        emit: Optional[Emitter] = None,
    ) -> AutoFixReport:
        """Classify and repair a reported error, then rebuild once."""
        record = error if isinstance(error, ErrorRecord) else ErrorRecord.model_validate(error)
        with self.registry.lock(sandbox_id):
            return self._auto_fix_locked(sandbox_id, record, emit or (lambda event: None))

    def _auto_fix_locked(self, sandbox_id: str, error: ErrorRecord, emit: Emitter) -> AutoFixReport:
        original = error.message
        emit(ProgressEvent(type="status", message="Build failed; attempting auto-fix..."))

        try:
            state = run_autofix(self.autofix_graph, sandbox_id, error)
        except SiteboxError as e:
            failure = AutoFixError("Auto-fix could not apply its repair", original, str(e))
            logger.error("%s", failure)
            raise failure from e

        classification = state["classification"]
        outcome = state.get("outcome")
        notes = "; ".join(state.get("notes", []))
        report = AutoFixReport(
            kind=classification.kind.value,
            phase=state["phase"],
            action=outcome.action if outcome else None,
            paths=list(outcome.paths) if outcome else [],
            escalated=state.get("escalated", False),
            original_error=original,
        )

        if state["phase"] != "FIXED":
            failure = AutoFixError(f"Auto-fix failed for {classification.kind.value}", original, notes)
            logger.warning("Auto-fix failed for %s: %s", sandbox_id, notes)
            report.secondary_error = notes
            report.message = str(failure)
            emit(ProgressEvent(type="warning", message=f"Auto-fix failed: {notes}", data=report.model_dump()))
            return report

        emit(ProgressEvent(
            type="status",
            message=f"{outcome.message}; rebuilding...",
            data={"kind": report.kind, "action": report.action, "paths": report.paths},
        ))
        for path in report.paths:
            emit(ProgressEvent(type="file_applied", message=f"Auto-fix wrote {path}", data={"path": path}))

        build = self.pipeline.rebuild(sandbox_id)
        report.retried_build = True
        if build.success:
            report.message = outcome.message
            logger.info("Auto-fix for %s succeeded: %s", sandbox_id, outcome.message)
            return report

        secondary = (build.stderr.strip() or build.stdout.strip() or f"{build.command} failed")
        failure = AutoFixError("Build still failing after auto-fix", original, secondary)
        logger.warning("Retried build failed for %s", sandbox_id)
        report.phase = "FIX_FAILED"
        report.secondary_error = secondary
        report.message = str(failure)
        return report

    # =========================================================================
    # FILES, EXPORT, PREVIEW
    # =========================================================================

    def get_files(self, sandbox_id: str) -> Dict[str, Any]:
        with self.registry.lock(sandbox_id) as sandbox:
            files = read_tree(sandbox.root)
            manifest = build_manifest(sandbox.root, files)
            self.registry.touch(sandbox_id)
        return {"sandbox_id": sandbox_id, "files": files, "manifest": manifest}

    def write_files(self, sandbox_id: str, files: Sequence[Union[FileSpec, Dict[str, str]]]) -> List[str]:
        return self.pipeline.write_files(sandbox_id, files)

    def create_zip(self, sandbox_id: str) -> ExportResult:
        with self.registry.lock(sandbox_id) as sandbox:
            result = export_zip(sandbox.root, sandbox_id)
            self.registry.touch(sandbox_id)
        return result

    def resolve_static(self, segment: str, rel_path: str = "") -> Tuple[Path, str]:
        """
        Map a public path segment and a file path to a built file.

        An empty path or a directory resolves to its index.html.

        Returns:
            (absolute file path, content type)

        Raises:
            NotFoundError: Unknown segment, or no such file in the build output
            SandboxIOError: rel_path escapes the build directory
        """
        route = self.routes.get_by_segment(segment)
        build_root = Path(route.build_path)
        rel = rel_path.strip("/") or BUILD_ENTRY

        target = safe_join(build_root, rel)
        if target.is_dir():
            target = target / BUILD_ENTRY
        if not target.is_file():
            raise NotFoundError("file", f"{segment}/{rel}")

        self.registry.touch(route.sandbox_id)
        content_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
        return target, content_type

    def start_preview(self, sandbox_id: str) -> PreviewResult:
        with self.registry.lock(sandbox_id) as sandbox:
            self.registry.touch(sandbox_id)
            return self.previews.start(sandbox)

    def stop_preview(self, sandbox_id: str) -> PreviewResult:
        self.registry.touch(sandbox_id)
        return self.previews.stop(sandbox_id)

    def preview_status(self, sandbox_id: str) -> Optional[PreviewResult]:
        """Preview state, or None when the sandbox or its preview is unknown."""
        try:
            self.registry.touch(sandbox_id)
            return self.previews.status(sandbox_id)
        except NotFoundError:
            return None


def create_service(config: Optional[Config] = None) -> SandboxService:
    """Service wired with the configured toolchain and, when available, Azure OpenAI repair."""
    config = config or get_config()
    return SandboxService(config=config, repairer=create_repairer(config))
