"""
Utility functions for sandbox file handling.
"""

import re
from pathlib import Path


# Mapping of file extensions to language names for syntax highlighting
EXTENSION_LANGUAGE_MAP = {
    # JavaScript/TypeScript
    ".js": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".mjs": "javascript",
    ".cjs": "javascript",
    # Web
    ".html": "html",
    ".htm": "html",
    ".css": "css",
    ".scss": "scss",
    ".sass": "sass",
    ".less": "less",
    ".svg": "xml",
    # Data/Config
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    # Docs/Text
    ".md": "markdown",
    ".markdown": "markdown",
    ".txt": "text",
}

# Special filename mappings (no extension)
FILENAME_LANGUAGE_MAP = {
    ".gitignore": "text",
    ".npmrc": "ini",
    ".env": "text",
    ".env.example": "text",
    ".env.local": "text",
}


def guess_language_from_filename(path: str) -> str:
    """
    Guess the language from a filename for syntax highlighting.

    Args:
        path: File path or filename

    Returns:
        Language name for syntax highlighting, defaults to "text"
    """
    filename = Path(path).name

    # Check special filenames first
    if filename in FILENAME_LANGUAGE_MAP:
        return FILENAME_LANGUAGE_MAP[filename]

    # Check by extension
    suffix = Path(path).suffix.lower()
    if suffix in EXTENSION_LANGUAGE_MAP:
        return EXTENSION_LANGUAGE_MAP[suffix]

    return "text"


def infer_component_name(path: str) -> str:
    """
    Infer a component identifier from a file path.

    src/components/Sidebar.jsx -> Sidebar
    src/components/nav-bar.jsx -> NavBar
    """
    stem = Path(path).name.split(".")[0]
    if re.match(r"^[A-Za-z_$][\w$]*$", stem):
        return stem

    parts = [p for p in re.split(r"[^A-Za-z0-9]+", stem) if p]
    name = "".join(p[:1].upper() + p[1:] for p in parts)
    if not name or name[0].isdigit():
        name = f"Component{name}"
    return name
