"""Markdown and binary file detection, repository path validation."""

from __future__ import annotations

import posixpath

from ReBrowse.errors import FileNotFoundInRepoError

# Extensions that are definitely binary; never decoded as text
BINARY_EXTENSIONS: frozenset[str] = frozenset({
    # Images
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff",
    # Compiled / executables
    ".exe", ".dll", ".so", ".dylib", ".o", ".obj", ".class", ".pyc", ".pyo",
    # Archives
    ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".rar", ".jar", ".war",
    # Media
    ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac", ".ogg", ".mkv", ".webm",
    # Fonts
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    # Documents (binary)
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    # Databases
    ".db", ".sqlite", ".sqlite3",
    # Other
    ".bin", ".dat",
})

MARKDOWN_EXTENSIONS: frozenset[str] = frozenset({".md", ".markdown", ".mdown"})


def _extension(path: str) -> str:
    filename = path.rsplit("/", maxsplit=1)[-1]
    dot_pos = filename.rfind(".")
    if dot_pos <= 0:
        return ""
    return filename[dot_pos:].lower()


def is_markdown(path: str) -> bool:
    """Return True for ``.md``, ``.markdown`` and ``.mdown`` files."""
    return _extension(path) in MARKDOWN_EXTENSIONS


def is_binary_by_extension(path: str) -> bool:
    """Check if a file is likely binary based on its extension."""
    return _extension(path) in BINARY_EXTENSIONS


def is_binary_by_content(data: bytes) -> bool:
    """Check if content is binary by looking for null bytes in the first 8KB."""
    return b"\x00" in data[:8192]


def decode_content(path: str, data: bytes) -> str:
    """Decode fetched bytes for display.

    Text is decoded as UTF-8 (a leading BOM is dropped); binary content is
    returned as an empty string since the reader cannot display it.
    """
    if is_binary_by_extension(path) or is_binary_by_content(data):
        return ""
    return data.decode("utf-8-sig", errors="replace")


def validate_repo_path(path: str) -> str:
    """Return *path* normalized relative to the repository root.

    Raises:
        FileNotFoundInRepoError: for empty, absolute or traversing paths.
    """
    cleaned = path.strip().replace("\\", "/").lstrip("/")
    if not cleaned:
        raise FileNotFoundInRepoError("File path is empty.")
    if any(part == ".." for part in cleaned.split("/")):
        raise FileNotFoundInRepoError(f"Invalid file path: {path}")
    normalized = posixpath.normpath(cleaned)
    if normalized in (".", ""):
        raise FileNotFoundInRepoError(f"Invalid file path: {path}")
    return normalized
