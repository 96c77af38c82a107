"""
Toolchain - Package manager and bundler invocations for a sandbox.

Builds the command lines for installing, adding packages, building and
previewing, and reads the dependency manifest to verify installs.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Sequence

from sitebox.sandbox.executor import CommandResult, run_command


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

MANIFEST_FILE = "package.json"
BUILD_DIR = "dist"
BUILD_ENTRY = "index.html"

# Environment for non-interactive installs and builds
TOOLCHAIN_ENV = {
    "CI": "true",
    "BROWSER": "none",
}

# Package manager command templates
COMMANDS = {
    "pnpm": {
        "install": ["pnpm", "install", "--reporter=default"],
        "add": ["pnpm", "add"],
        "build": ["pnpm", "run", "build"],
        "preview": ["pnpm", "exec", "vite", "preview", "--host", "0.0.0.0", "--strictPort", "--port"],
    },
    "npm": {
        "install": ["npm", "install", "--no-audit", "--no-fund"],
        "add": ["npm", "install", "--no-audit", "--no-fund"],
        "build": ["npm", "run", "build"],
        "preview": ["npx", "vite", "preview", "--host", "0.0.0.0", "--strictPort", "--port"],
    },
}


# =============================================================================
# MANIFEST HELPERS
# =============================================================================

def read_manifest(root: Path) -> Dict:
    """Load package.json from a sandbox root; an unreadable manifest reads as empty."""
    path = Path(root) / MANIFEST_FILE
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read manifest %s: %s", path, e)
        return {}


def manifest_dependencies(root: Path) -> Dict[str, str]:
    """All dependencies and devDependencies declared in the manifest."""
    manifest = read_manifest(root)
    deps = dict(manifest.get("devDependencies") or {})
    deps.update(manifest.get("dependencies") or {})
    return deps


def is_declared(root: Path, package: str) -> bool:
    """Whether the manifest lists the package."""
    return package in manifest_dependencies(root)


def has_build_output(root: Path) -> bool:
    """Whether the sandbox has a built artifact."""
    return (Path(root) / BUILD_DIR / BUILD_ENTRY).is_file()


# =============================================================================
# TOOLCHAIN
# =============================================================================

class Toolchain:
    """
    Runs package manager commands inside a sandbox root.

    Args:
        package_manager: "pnpm" or "npm"
        install_timeout: Seconds allowed for installs
        build_timeout: Seconds allowed for builds
    """

    def __init__(self, package_manager: str = "pnpm", install_timeout: int = 300, build_timeout: int = 180):
        if package_manager not in COMMANDS:
            raise ValueError(f"Unsupported package manager: {package_manager}")
        self.package_manager = package_manager
        self.install_timeout = install_timeout
        self.build_timeout = build_timeout
        self._commands = COMMANDS[package_manager]

    def install(self, root: Path, attempt: int = 1) -> CommandResult:
        """Install everything the manifest declares."""
        return run_command(
            self._commands["install"], cwd=root, timeout=self.install_timeout,
            env=TOOLCHAIN_ENV, attempt=attempt,
        )

    def add_packages(self, root: Path, packages: Sequence[str]) -> CommandResult:
        """Add packages to the manifest and install them."""
        return run_command(
            self._commands["add"] + list(packages), cwd=root, timeout=self.install_timeout,
            env=TOOLCHAIN_ENV,
        )

    def build(self, root: Path, attempt: int = 1) -> CommandResult:
        """Produce the build artifact under dist/."""
        return run_command(
            self._commands["build"], cwd=root, timeout=self.build_timeout,
            env={**TOOLCHAIN_ENV, "NODE_ENV": "production"}, attempt=attempt,
        )

    def preview_command(self, port: int) -> List[str]:
        """Command line for a long-running preview server of the build artifact."""
        return self._commands["preview"] + [str(port)]
