"""
Sandbox module for provisioning, building and repairing generated web apps.

Components:
- registry: Sandbox metadata table, provisioning, recovery and idle eviction
- pipeline: Apply generated files, install dependencies, rebuild
- autofix: Classify build errors and repair them
- routing / ports: Public path segments and preview port leases
- exporter / files: Zip export and file tree listing
- preview: Long-running preview processes
"""

from sitebox.sandbox.autofix import AutoFixer, Classification, ErrorKind, FixOutcome, classify
from sitebox.sandbox.executor import CommandResult, ManagedProcess, run_command
from sitebox.sandbox.exporter import export_zip
from sitebox.sandbox.files import build_manifest, read_tree
from sitebox.sandbox.pipeline import CodeApplicationPipeline, detect_dependencies
from sitebox.sandbox.ports import PortAllocator, PortLease
from sitebox.sandbox.preview import PreviewResult, PreviewServer
from sitebox.sandbox.registry import Sandbox, SandboxRegistry
from sitebox.sandbox.routing import Route, RoutingRegistry
from sitebox.sandbox.toolchain import Toolchain

__all__ = [
    # Registry
    "Sandbox",
    "SandboxRegistry",
    # Pipeline
    "CodeApplicationPipeline",
    "detect_dependencies",
    # Auto-fix
    "AutoFixer",
    "Classification",
    "ErrorKind",
    "FixOutcome",
    "classify",
    # Processes
    "CommandResult",
    "ManagedProcess",
    "run_command",
    "Toolchain",
    # Routing and ports
    "Route",
    "RoutingRegistry",
    "PortAllocator",
    "PortLease",
    # Export and files
    "export_zip",
    "read_tree",
    "build_manifest",
    # Preview
    "PreviewResult",
    "PreviewServer",
]
