"""Shared fixtures: a fake toolchain that mimics install/build without Node."""

import json
import posixpath
import re
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from sitebox.config import Config
from sitebox.orchestrator import SandboxService
from sitebox.schemas import FixDirective
from sitebox.sandbox.executor import CommandResult
from sitebox.sandbox.pipeline import CodeApplicationPipeline
from sitebox.sandbox.registry import SandboxRegistry
from sitebox.sandbox.toolchain import BUILD_DIR, BUILD_ENTRY, MANIFEST_FILE, Toolchain


RELATIVE_IMPORT = re.compile(r"""import\s+(?:[^'"]*?\s+from\s+)?['"](\.{1,2}/[^'"]+)['"]""")
RESOLVE_EXTENSIONS = ("", ".jsx", ".js", ".tsx", ".ts", "/index.jsx", "/index.js")


def unresolved_imports(root: Path) -> Optional[str]:
    """Bundler-style check: first relative import in src/ that points nowhere."""
    src = Path(root) / "src"
    for path in sorted(src.rglob("*")):
        if path.suffix not in (".js", ".jsx", ".ts", ".tsx") or not path.is_file():
            continue
        rel = path.relative_to(root).as_posix()
        for specifier in RELATIVE_IMPORT.findall(path.read_text(encoding="utf-8")):
            base = posixpath.normpath(posixpath.join(posixpath.dirname(rel), specifier))
            if not any((Path(root) / f"{base}{ext}").is_file() for ext in RESOLVE_EXTENSIONS):
                return f'[vite]: Rollup failed to resolve import "{specifier}" from "{rel}".'
    return None


class FakeToolchain(Toolchain):
    """
    Toolchain double.

    install writes node_modules/, add_packages edits package.json, build
    writes dist/index.html unless a configured failure or an unresolved
    relative import makes it fail.
    """

    def __init__(self):
        super().__init__(package_manager="pnpm", install_timeout=5, build_timeout=5)
        self.calls: List[str] = []
        self.install_failures = 0
        self.build_failures = 0
        self.build_error: Optional[str] = None
        self.build_delay = 0.0
        self.failing_packages: Dict[str, str] = {}
        self.phantom_packages = set()
        self.check_imports = True
        self._lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call == name)

    def install(self, root: Path, attempt: int = 1) -> CommandResult:
        self._record("install")
        if self.install_failures > 0:
            self.install_failures -= 1
            return CommandResult(command="pnpm install", exit_code=1, stderr="ERR_PNPM_FETCH_503", attempt=attempt)
        (Path(root) / "node_modules").mkdir(exist_ok=True)
        return CommandResult(command="pnpm install", exit_code=0, stdout="Done", attempt=attempt)

    def add_packages(self, root: Path, packages: Sequence[str]) -> CommandResult:
        self._record("add")
        command = "pnpm add " + " ".join(packages)
        for pkg in packages:
            if pkg in self.failing_packages:
                return CommandResult(command=command, exit_code=1, stderr=self.failing_packages[pkg])
        manifest_path = Path(root) / MANIFEST_FILE
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        for pkg in packages:
            if pkg not in self.phantom_packages:
                manifest.setdefault("dependencies", {})[pkg] = "^1.0.0"
        manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return CommandResult(command=command, exit_code=0, stdout="added")

    def build(self, root: Path, attempt: int = 1) -> CommandResult:
        self._record("build")
        if self.build_delay:
            time.sleep(self.build_delay)
        if self.build_failures > 0:
            self.build_failures -= 1
            return CommandResult(command="pnpm run build", exit_code=1, stderr="vite build crashed", attempt=attempt)
        if self.build_error:
            return CommandResult(command="pnpm run build", exit_code=1, stderr=self.build_error, attempt=attempt)
        if self.check_imports:
            missing = unresolved_imports(root)
            if missing:
                return CommandResult(command="pnpm run build", exit_code=1, stderr=missing, attempt=attempt)
        out = Path(root) / BUILD_DIR
        out.mkdir(exist_ok=True)
        (out / BUILD_ENTRY).write_text("<html></html>", encoding="utf-8")
        return CommandResult(command="pnpm run build", exit_code=0, stdout="built", attempt=attempt)

    def preview_command(self, port: int) -> List[str]:
        return [sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"]


class FakeRepairer:
    """Generative repairer double returning canned directives."""

    def __init__(self, directives=None, error: Optional[Exception] = None):
        self.directives = directives or []
        self.error = error
        self.requests = []

    def propose_fixes(self, error_text, file_path, content):
        self.requests.append((error_text, file_path, content))
        if self.error:
            raise self.error
        return [FixDirective(**d) if isinstance(d, dict) else d for d in self.directives]


@pytest.fixture
def config(tmp_path):
    return Config(
        storage_root=tmp_path / "sandboxes",
        public_url="http://localhost:3004",
        install_retry_delay=0,
        build_retry_delay=0,
        sweep_interval_seconds=0,
        azure_openai_api_key=None,
        azure_openai_endpoint=None,
        azure_openai_deployment_name=None,
    )


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def registry(config, toolchain):
    return SandboxRegistry(
        storage_root=config.storage_root,
        toolchain=toolchain,
        install_retry_delay=0,
        build_retry_delay=0,
    )


@pytest.fixture
def pipeline(registry, toolchain):
    return CodeApplicationPipeline(registry, toolchain, command_timeout=10)


@pytest.fixture
def sandbox(registry):
    return registry.create("sandbox-app")


@pytest.fixture
def service(config, toolchain):
    svc = SandboxService(config=config, toolchain=toolchain, port_probe=lambda port: True)
    svc.start(run_sweeper=False)
    yield svc
    svc.shutdown()
