"""
Tests for the code application pipeline.

Covers:
- import scanning for external packages
- path containment
- per-package install outcomes
- apply: write, rebuild, structured build failures
- idempotent re-apply and per-sandbox serialization
"""

from __future__ import annotations

import sys
import threading

import pytest

from sitebox.errors import NotFoundError, SandboxIOError
from sitebox.schemas import FileSpec
from sitebox.sandbox.pipeline import detect_dependencies, normalize_packages, package_name, safe_join
from sitebox.sandbox.toolchain import manifest_dependencies


def _spec(path: str, content: str) -> FileSpec:
    return FileSpec(path=path, content=content)


# ---------------------------------------------------------------------------
# Dependency detection
# ---------------------------------------------------------------------------

def test_detect_dependencies_finds_external_packages_only() -> None:
    content = "\n".join([
        "import React, { useState } from 'react'",
        "import ReactDOM from 'react-dom/client'",
        "import { motion } from 'framer-motion'",
        "import * as Icons from '@heroicons/react/24/solid'",
        "import debounce from 'lodash/debounce'",
        "import 'swiper/css'",
        "import Header from './components/Header'",
        "import Card from '../Card'",
        "import theme from '@/theme'",
        "import fs from 'node:fs'",
        "import { motion as m } from 'framer-motion'",
    ])
    assert detect_dependencies([_spec("src/App.jsx", content)]) == [
        "framer-motion",
        "@heroicons/react",
        "lodash",
        "swiper",
    ]


def test_detect_dependencies_ignores_non_source_files() -> None:
    files = [
        _spec("src/index.css", "@import 'tailwindcss/base';"),
        _spec("README.md", "import x from 'not-a-package'"),
    ]
    assert detect_dependencies(files) == []


def test_package_name_and_normalize() -> None:
    assert package_name("@radix-ui/react-dialog/dist/index") == "@radix-ui/react-dialog"
    assert package_name("axios") == "axios"
    assert normalize_packages([" axios ", "", "axios", "zod"]) == ["axios", "zod"]


# ---------------------------------------------------------------------------
# Path containment
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("path", ["../outside.js", "src/../../outside.js", "", "   ", "a\x00b"])
def test_safe_join_rejects_escaping_paths(tmp_path, path: str) -> None:
    with pytest.raises(SandboxIOError):
        safe_join(tmp_path, path)


def test_safe_join_treats_leading_slash_as_root_relative(tmp_path) -> None:
    assert safe_join(tmp_path, "/src/App.jsx") == (tmp_path / "src" / "App.jsx").resolve()


def test_safe_join_rejects_symlink_escape(tmp_path) -> None:
    outside = tmp_path / "outside"
    outside.mkdir()
    root = tmp_path / "root"
    root.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(SandboxIOError):
        safe_join(root, "link/file.js")


# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------

def test_install_failure_is_isolated_per_package(pipeline, sandbox, toolchain) -> None:
    toolchain.failing_packages["left-pad"] = "ERR_PNPM_NO_MATCHING_VERSION left-pad@latest"

    report = pipeline.install_packages(sandbox.sandbox_id, ["left-pad", "lodash"])

    assert report.installed == ["lodash"]
    assert list(report.failed) == ["left-pad"]
    assert not report.success
    assert "lodash" in manifest_dependencies(sandbox.root)


def test_clean_exit_without_manifest_entry_is_a_failure(pipeline, sandbox, toolchain) -> None:
    toolchain.phantom_packages.add("ghost")

    report = pipeline.install_packages(sandbox.sandbox_id, ["ghost"])

    assert report.installed == []
    assert "manifest" in report.failed["ghost"]


def test_declared_packages_are_not_reinstalled(pipeline, sandbox, toolchain) -> None:
    events = []
    report = pipeline.install_packages(sandbox.sandbox_id, ["react", "vite"], emit=events.append)

    assert report.already_present == ["react", "vite"]
    assert toolchain.count("add") == 0
    assert [e.type for e in events] == ["package_installed", "package_installed"]


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

def test_apply_installs_detected_packages_and_rebuilds(pipeline, sandbox, toolchain) -> None:
    events = []
    content = "import { motion } from 'framer-motion'\nexport default function Hero() { return null }\n"

    result = pipeline.apply_code(
        sandbox.sandbox_id, [_spec("src/components/Hero.jsx", content)], packages=["clsx"], emit=events.append,
    )

    assert result.success
    assert result.applied_files == ["src/components/Hero.jsx"]
    assert result.packages.installed == ["framer-motion", "clsx"]
    assert (sandbox.root / "src/components/Hero.jsx").read_text() == content
    assert toolchain.count("build") == 2
    assert sandbox.status == "ready"

    types = [e.type for e in events]
    assert types.count("package_installed") == 2
    assert "file_applied" in types
    assert types.index("package_installed") < types.index("file_applied")
    assert not any(e.is_terminal for e in events)


def test_apply_resolves_import_written_in_same_sandbox(pipeline, sandbox) -> None:
    (sandbox.root / "src/App.jsx").write_text(
        "import Footer from './components/Footer'\nexport default function App() { return <Footer /> }\n"
    )

    result = pipeline.apply_code(
        sandbox.sandbox_id,
        [{"path": "src/components/Footer.jsx", "content": "export default function Footer() { return null }\n"}],
    )

    assert result.success
    assert result.build_error is None


def test_build_failure_is_returned_not_raised(pipeline, sandbox) -> None:
    events = []
    app = "import Missing from './Missing'\nexport default function App() { return <Missing /> }\n"

    result = pipeline.apply_code(sandbox.sandbox_id, [_spec("src/App.jsx", app)], emit=events.append)

    assert not result.success
    assert result.build_error.kind == "BUILD_ERROR"
    assert "./Missing" in result.build_error.stderr
    assert result.build_error.exit_code == 1
    assert sandbox.status == "failed"
    assert "./Missing" in sandbox.last_error
    assert events[-1].type == "warning"


def test_reapplying_identical_files_leaves_tree_untouched(pipeline, sandbox, toolchain) -> None:
    files = [_spec("src/components/Nav.jsx", "export default function Nav() { return null }\n")]
    pipeline.apply_code(sandbox.sandbox_id, files)
    target = sandbox.root / "src/components/Nav.jsx"
    before = target.stat().st_mtime_ns
    builds = toolchain.count("build")

    result = pipeline.apply_code(sandbox.sandbox_id, files)

    assert result.success
    assert target.stat().st_mtime_ns == before
    assert toolchain.count("build") == builds + 1


def test_escaping_path_aborts_the_write(pipeline, sandbox) -> None:
    with pytest.raises(SandboxIOError):
        pipeline.write_files(sandbox.sandbox_id, [_spec("../../escaped.js", "x")])
    assert not (sandbox.root.parent.parent / "escaped.js").exists()


def test_apply_to_unknown_sandbox_raises(pipeline) -> None:
    with pytest.raises(NotFoundError):
        pipeline.apply_code("sandbox_missing", [_spec("src/App.jsx", "")])


def test_concurrent_applies_to_one_sandbox_are_serialized(pipeline, sandbox, toolchain, monkeypatch) -> None:
    toolchain.build_delay = 0.2
    timeline = []
    original_write = pipeline.write_files
    original_build = toolchain.build

    def recording_write(sandbox_id, files, emit=None):
        timeline.append(threading.current_thread().name)
        return original_write(sandbox_id, files, emit=emit)

    def recording_build(root, attempt=1):
        timeline.append(threading.current_thread().name)
        return original_build(root, attempt=attempt)

    monkeypatch.setattr(pipeline, "write_files", recording_write)
    monkeypatch.setattr(toolchain, "build", recording_build)

    def apply(label: str) -> None:
        pipeline.apply_code(sandbox.sandbox_id, [_spec("src/Label.jsx", f"export const label = '{label}'\n")])

    threads = [threading.Thread(target=apply, args=(n,), name=n) for n in ("first", "second")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # write then build for one caller, then write then build for the other
    assert len(timeline) == 4
    assert timeline[0] == timeline[1]
    assert timeline[2] == timeline[3]
    assert timeline[0] != timeline[2]
    assert (sandbox.root / "src/Label.jsx").read_text() == f"export const label = '{timeline[2]}'\n"


# ---------------------------------------------------------------------------
# Files and commands
# ---------------------------------------------------------------------------

def test_read_file(pipeline, sandbox) -> None:
    assert "Sandbox Ready" in pipeline.read_file(sandbox.sandbox_id, "src/App.jsx")
    assert pipeline.read_file(sandbox.sandbox_id, "src/Nope.jsx") is None


def test_read_file_rejects_undecodable_content(pipeline, sandbox) -> None:
    (sandbox.root / "src/App.jsx").write_bytes(b"const x = '\xff\xfe';\n")

    with pytest.raises(SandboxIOError) as excinfo:
        pipeline.read_file(sandbox.sandbox_id, "src/App.jsx")

    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)


def test_run_command_captures_output(pipeline, sandbox) -> None:
    result = pipeline.run_command(sandbox.sandbox_id, [sys.executable, "-c", "import os; print(os.listdir('src'))"])
    assert result.success
    assert "App.jsx" in result.stdout


def test_run_command_rejects_empty(pipeline, sandbox) -> None:
    with pytest.raises(ValueError):
        pipeline.run_command(sandbox.sandbox_id, "   ")
