"""
Tests for the auto-fix graph: deterministic strategies, escalation to the
generative repairer, and the single retried build.
"""

from __future__ import annotations

import pytest

from sitebox.errors import AutoFixError, SandboxIOError
from sitebox.graph import after_fix_route, route_by_kind
from sitebox.orchestrator import SandboxService
from sitebox.sandbox.autofix import Classification, ErrorKind, FixOutcome
from sitebox.sandbox.scaffold import STYLESHEET_STUB
from sitebox.sandbox.toolchain import manifest_dependencies
from tests.conftest import FakeRepairer


APP_WITH_SIDEBAR = """import Sidebar from './components/Sidebar'

export default function App() {
  return <Sidebar />
}
"""


def _make_service(config, toolchain, repairer=None) -> SandboxService:
    service = SandboxService(config=config, toolchain=toolchain, repairer=repairer, port_probe=lambda port: True)
    service.start(run_sweeper=False)
    return service


# ---------------------------------------------------------------------------
# Routing functions
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "kind, node",
    [
        (ErrorKind.MISSING_LOCAL_IMPORT, "fix_local_import"),
        (ErrorKind.MISSING_DEPENDENCY, "fix_dependency"),
        (ErrorKind.SYNTAX_ERROR, "fix_syntax"),
        (ErrorKind.MISSING_ASSET, "fix_asset"),
        (ErrorKind.UNKNOWN, "generative_fix"),
    ],
)
def test_route_by_kind(kind: ErrorKind, node: str) -> None:
    assert route_by_kind({"classification": Classification(kind=kind)}) == node


def test_after_fix_route() -> None:
    assert after_fix_route({"outcome": FixOutcome(fixed=True, action="x")}) == "finalize"
    assert after_fix_route({"outcome": FixOutcome(fixed=False, action="x")}) == "generative_fix"
    assert after_fix_route({}) == "generative_fix"


# ---------------------------------------------------------------------------
# Deterministic repairs
# ---------------------------------------------------------------------------

def test_apply_creates_placeholder_for_missing_component(service, toolchain) -> None:
    sandbox_id = service.create("sidebar-app")["sandbox_id"]
    root = service.registry.get(sandbox_id).root

    result = service.apply(sandbox_id, [{"path": "src/App.jsx", "content": APP_WITH_SIDEBAR}])

    assert result.success
    assert result.build_error is None
    report = result.auto_fix
    assert report.kind == "MISSING_LOCAL_IMPORT"
    assert report.phase == "FIXED"
    assert report.retried_build
    assert report.paths == ["src/components/Sidebar.jsx"]
    placeholder = (root / "src/components/Sidebar.jsx").read_text()
    assert "const Sidebar = () =>" in placeholder
    assert "export default Sidebar;" in placeholder
    # provisioning, apply, retried build
    assert toolchain.count("build") == 3
    assert service.registry.get(sandbox_id).status == "ready"


def test_apply_without_auto_fix_reports_build_error(service) -> None:
    sandbox_id = service.create()["sandbox_id"]

    result = service.apply(sandbox_id, [{"path": "src/App.jsx", "content": APP_WITH_SIDEBAR}], auto_fix=False)

    assert not result.success
    assert result.auto_fix is None
    assert "./components/Sidebar" in result.build_error.stderr


def test_missing_dependency_is_installed(service) -> None:
    sandbox_id = service.create()["sandbox_id"]
    root = service.registry.get(sandbox_id).root

    report = service.auto_fix(sandbox_id, {"message": 'Failed to resolve import "react-icons/fa" from "src/App.jsx"'})

    assert report.phase == "FIXED"
    assert report.action == "installed_package"
    assert "react-icons" in manifest_dependencies(root)


def test_declared_dependency_triggers_reinstall(service, toolchain) -> None:
    sandbox_id = service.create()["sandbox_id"]
    installs = toolchain.count("install")

    report = service.auto_fix(sandbox_id, {"message": "x", "kind": "missing-dependency", "import_path": "react"})

    assert report.phase == "FIXED"
    assert report.action == "reinstalled_packages"
    assert toolchain.count("install") == installs + 1


def test_syntax_error_rewrites_offending_file(service) -> None:
    sandbox_id = service.create()["sandbox_id"]
    root = service.registry.get(sandbox_id).root
    service.write_files(sandbox_id, [{
        "path": "src/App.jsx",
        "content": "import React from 'react'\nexport default () => <div class=\"p-4\">Hi</div>\n",
    }])

    report = service.auto_fix(sandbox_id, {"message": "SyntaxError: Unexpected token", "file": "src/App.jsx"})

    assert report.phase == "FIXED"
    assert report.kind == "SYNTAX_ERROR"
    content = (root / "src/App.jsx").read_text()
    assert 'className="p-4"' in content
    assert "import React from 'react';" in content


def test_missing_stylesheet_gets_stub(service) -> None:
    sandbox_id = service.create()["sandbox_id"]
    root = service.registry.get(sandbox_id).root

    report = service.auto_fix(sandbox_id, {"message": "Cannot resolve module './styles/theme.css'"})

    assert report.phase == "FIXED"
    assert report.kind == "MISSING_ASSET"
    assert (root / "src/styles/theme.css").read_text() == STYLESHEET_STUB


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def test_unknown_error_without_repairer_fails(service, toolchain) -> None:
    sandbox_id = service.create()["sandbox_id"]
    builds = toolchain.count("build")

    report = service.auto_fix(sandbox_id, {"message": "Segmentation fault in esbuild"})

    assert report.kind == "UNKNOWN"
    assert report.phase == "FIX_FAILED"
    assert report.escalated
    assert not report.retried_build
    assert "Segmentation fault in esbuild" in report.message
    assert toolchain.count("build") == builds


def test_unfixable_syntax_error_escalates(service) -> None:
    sandbox_id = service.create()["sandbox_id"]

    report = service.auto_fix(sandbox_id, {"message": "SyntaxError: Unexpected token", "file": "src/App.jsx"})

    assert report.kind == "SYNTAX_ERROR"
    assert report.phase == "FIX_FAILED"
    assert report.escalated
    assert "No known rewrite" in report.secondary_error


def test_undecodable_file_escalates_instead_of_raising(service) -> None:
    sandbox_id = service.create()["sandbox_id"]
    (service.registry.get(sandbox_id).root / "src/App.jsx").write_bytes(b"const x = '\xff\xfe';\n")

    report = service.auto_fix(sandbox_id, {"message": "SyntaxError: Unexpected token", "file": "src/App.jsx"})

    assert report.kind == "SYNTAX_ERROR"
    assert report.phase == "FIX_FAILED"
    assert report.escalated
    assert "not valid UTF-8" in report.secondary_error
    assert report.original_error == "SyntaxError: Unexpected token"


def test_undecodable_file_still_reaches_repairer(config, toolchain) -> None:
    repairer = FakeRepairer(directives=[{
        "action": "modify",
        "file": "src/App.jsx",
        "content": "export default function App() { return null }\n",
    }])
    service = _make_service(config, toolchain, repairer)
    try:
        sandbox_id = service.create()["sandbox_id"]
        root = service.registry.get(sandbox_id).root
        (root / "src/App.jsx").write_bytes(b"const x = '\xff\xfe';\n")

        report = service.auto_fix(sandbox_id, {"message": "SyntaxError: Unexpected token", "file": "src/App.jsx"})

        assert report.phase == "FIXED"
        assert report.action == "generative"
        assert repairer.requests[0][2] == ""
        assert "return null" in (root / "src/App.jsx").read_text()
    finally:
        service.shutdown()


def test_generative_repair_applies_directives(config, toolchain) -> None:
    repairer = FakeRepairer(directives=[{
        "action": "modify",
        "file": "src/App.jsx",
        "content": "export default function App() { return <main>fixed</main> }\n",
    }])
    service = _make_service(config, toolchain, repairer)
    try:
        sandbox_id = service.create()["sandbox_id"]
        root = service.registry.get(sandbox_id).root

        report = service.auto_fix(sandbox_id, {"message": "Transform failed", "file": "src/App.jsx"})

        assert report.phase == "FIXED"
        assert report.action == "generative"
        assert report.paths == ["src/App.jsx"]
        assert "fixed" in (root / "src/App.jsx").read_text()
        error_text, file_path, content = repairer.requests[0]
        assert error_text == "Transform failed"
        assert file_path == "src/App.jsx"
        assert "Sandbox Ready" in content
    finally:
        service.shutdown()


def test_generative_directives_outside_sandbox_are_skipped(config, toolchain) -> None:
    repairer = FakeRepairer(directives=[{"action": "create", "file": "../../evil.js", "content": "x"}])
    service = _make_service(config, toolchain, repairer)
    try:
        sandbox_id = service.create()["sandbox_id"]
        report = service.auto_fix(sandbox_id, {"message": "Transform failed"})
        assert report.phase == "FIX_FAILED"
        assert "no usable fixes" in report.secondary_error
    finally:
        service.shutdown()


def test_repairer_failure_is_contained(config, toolchain) -> None:
    service = _make_service(config, toolchain, FakeRepairer(error=ValueError("model unavailable")))
    try:
        sandbox_id = service.create()["sandbox_id"]
        report = service.auto_fix(sandbox_id, {"message": "Transform failed"})
        assert report.phase == "FIX_FAILED"
        assert "model unavailable" in report.secondary_error
        assert service.health()["active_sandboxes"] == 1
    finally:
        service.shutdown()


# ---------------------------------------------------------------------------
# Retried build
# ---------------------------------------------------------------------------

def test_failing_retry_keeps_both_errors(service, toolchain) -> None:
    sandbox_id = service.create()["sandbox_id"]
    toolchain.build_error = "Error: postcss plugin crashed"

    report = service.auto_fix(sandbox_id, {
        "message": 'Failed to resolve import "./components/Nav" from "src/App.jsx"',
    })

    assert report.kind == "MISSING_LOCAL_IMPORT"
    assert report.phase == "FIX_FAILED"
    assert report.retried_build
    assert "./components/Nav" in report.original_error
    assert "postcss plugin crashed" in report.secondary_error
    assert "./components/Nav" in report.message and "postcss plugin crashed" in report.message
    assert service.registry.get(sandbox_id).status == "failed"


def test_write_failure_during_repair_raises_auto_fix_error(service, monkeypatch) -> None:
    sandbox_id = service.create()["sandbox_id"]

    def broken_write(*args, **kwargs):
        raise SandboxIOError("disk full")

    monkeypatch.setattr(service.pipeline, "write_files", broken_write)

    with pytest.raises(AutoFixError) as excinfo:
        service.auto_fix(sandbox_id, {"message": 'Failed to resolve import "./Nav" from "src/App.jsx"'})

    assert "./Nav" in excinfo.value.original
    assert "disk full" in excinfo.value.secondary
    assert isinstance(excinfo.value.__cause__, SandboxIOError)
