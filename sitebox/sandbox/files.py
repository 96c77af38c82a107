"""
File tree listing and manifest for a sandbox.
"""

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from sitebox.utils import guess_language_from_filename, infer_component_name


logger = logging.getLogger(__name__)


TEXT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".json", ".css", ".html", ".md", ".txt")
SKIPPED_DIRS = frozenset({"node_modules", "dist", "build"})
COMPONENT_EXTENSIONS = (".jsx", ".tsx")


def read_tree(root: Path) -> Dict[str, str]:
    """Relative path to content for every text source file under root."""
    root = Path(root)
    files: Dict[str, str] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS and not d.startswith("."))
        for name in sorted(filenames):
            if name.startswith(".") or not name.lower().endswith(TEXT_EXTENSIONS):
                continue
            path = Path(dirpath) / name
            rel = path.relative_to(root).as_posix()
            try:
                files[rel] = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning("Could not read file %s: %s", rel, e)
    return files


def build_manifest(root: Path, files: Dict[str, str]) -> Dict[str, Any]:
    """Per-file metadata for a tree returned by read_tree."""
    manifest: Dict[str, Any] = {}
    for rel, content in files.items():
        path = Path(root) / rel
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime).isoformat()
        except OSError:
            modified = None

        entry = {
            "size": len(content.encode("utf-8")),
            "type": path.suffix or "file",
            "language": guess_language_from_filename(rel),
            "last_modified": modified,
        }
        if rel.endswith(COMPONENT_EXTENSIONS):
            entry["component_info"] = {"name": infer_component_name(rel), "is_component": True}
        manifest[rel] = entry

    return {"files": manifest, "last_sync": datetime.now().isoformat()}
