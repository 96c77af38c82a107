"""
Artifact Exporter - Package a sandbox tree into a downloadable zip.
"""

import base64
import fnmatch
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import Iterator, Optional

from sitebox.errors import SandboxIOError
from sitebox.schemas import ExportResult


logger = logging.getLogger(__name__)


# Dependency, build output and version control directories
EXCLUDED_DIRS = frozenset({"node_modules", "dist", ".git", ".next", ".cache"})
EXCLUDED_PATTERNS = ("*.log",)


def iter_export_files(root: Path) -> Iterator[Path]:
    """Files under root that belong in an export, in a stable order."""
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        for name in sorted(filenames):
            if any(fnmatch.fnmatch(name, pattern) for pattern in EXCLUDED_PATTERNS):
                continue
            yield Path(dirpath) / name


def _read_archive(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def export_zip(root: Path, archive_name: str, temp_dir: Optional[str] = None) -> ExportResult:
    """
    Zip a sandbox tree and return it base64 encoded.

    The archive is written to a temporary file and read back; the temporary
    file is removed whether or not the read succeeds.

    Args:
        root: Sandbox root directory
        archive_name: Name without extension; becomes <archive_name>.zip
        temp_dir: Directory for the temporary archive (system default if None)

    Raises:
        SandboxIOError: The tree could not be archived or read back
    """
    root = Path(root)
    fd, tmp_path = tempfile.mkstemp(suffix=".zip", prefix=f"{archive_name}-", dir=temp_dir)
    os.close(fd)

    try:
        count = 0
        with zipfile.ZipFile(tmp_path, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in iter_export_files(root):
                zf.write(path, path.relative_to(root).as_posix())
                count += 1

        data = _read_archive(tmp_path)
    except OSError as e:
        raise SandboxIOError(f"Could not export {root}: {e}") from e
    finally:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass

    logger.info("Created zip for %s: %d files, %d bytes", archive_name, count, len(data))
    return ExportResult(
        filename=f"{archive_name}.zip",
        content=base64.b64encode(data).decode("ascii"),
        size=len(data),
    )
