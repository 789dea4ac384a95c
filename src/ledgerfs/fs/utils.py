"""Virtual path utilities: normalization, validation, naming helpers."""

from __future__ import annotations

import mimetypes
import re

from .exceptions import InvalidPathError

# Characters replaced by sanitize_filename (Windows-unsafe plus control chars)
_UNSAFE_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


# =============================================================================
# Path Utilities
# =============================================================================


def normalize_path(path: str) -> str:
    """Normalize a virtual file system path.

    Purely lexical; the filesystem is never consulted.

    - Converts backslashes to /
    - Collapses repeated separators
    - Resolves . and .. (.. at the root stays at the root)
    - Ensures a leading / and no trailing /

    Examples:
        normalize_path("foo.txt") -> "/foo.txt"
        normalize_path("\\\\foo//bar.txt") -> "/foo/bar.txt"
        normalize_path("/foo/../bar.txt") -> "/bar.txt"
        normalize_path("/../../x") -> "/x"
        normalize_path("") -> "/"
    """
    if not path:
        return "/"

    segments: list[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if segments:
                segments.pop()
            continue
        segments.append(part)

    return "/" + "/".join(segments)


def join_path(*parts: str) -> str:
    """Join path fragments and normalize the result."""
    return normalize_path("/".join(p for p in parts if p))


def split_path(path: str) -> tuple[str, str]:
    """Split path into (parent_dir, name).

    Examples:
        split_path("/foo/bar.txt") -> ("/foo", "bar.txt")
        split_path("/foo.txt") -> ("/", "foo.txt")
        split_path("/") -> ("/", "")
    """
    path = normalize_path(path)
    if path == "/":
        return "/", ""
    parent, _, name = path.rpartition("/")
    return parent or "/", name


def get_parent_path(path: str) -> str:
    return split_path(path)[0]


def get_basename(path: str) -> str:
    return split_path(path)[1]


def get_path_segments(path: str) -> list[str]:
    """Return the non-empty segments of the normalized path."""
    return [s for s in normalize_path(path).split("/") if s]


def is_child_path(parent: str, child: str) -> bool:
    """True if *child* lies strictly below *parent*."""
    parent = normalize_path(parent)
    child = normalize_path(child)
    if parent == child:
        return False
    if parent == "/":
        return True
    return child.startswith(parent + "/")


def get_relative_path(base: str, path: str) -> str:
    """Return *path* relative to *base* (no leading /).

    Returns the normalized *path* unchanged if it is not under *base*.
    """
    base = normalize_path(base)
    path = normalize_path(path)
    if base == path:
        return ""
    if not is_child_path(base, path):
        return path
    return path[len(base):].lstrip("/")


def get_breadcrumbs(path: str) -> list[tuple[str, str]]:
    """Return ``(name, path)`` pairs from the root down to *path*."""
    crumbs = [("Root", "/")]
    current = ""
    for segment in get_path_segments(path):
        current = f"{current}/{segment}"
        crumbs.append((segment, current))
    return crumbs


def validate_path(path: str, base: str | None = None) -> tuple[bool, str]:
    """Validate a path for security issues.

    With *base*, the joined and normalized path must stay at or below the
    normalized base; anything else is reported as path traversal.

    Returns:
        (is_valid, error_message) - error_message is empty if valid
    """
    if "\x00" in path:
        return False, "Path contains null bytes"

    if len(path) > 4096:
        return False, "Path too long (max 4096 characters)"

    if base is not None:
        root = normalize_path(base)
        # Join the raw strings so .. segments in *path* can climb out of base
        joined = normalize_path(f"{root}/{path}")
        if joined != root and not joined.startswith(root.rstrip("/") + "/"):
            return False, "Path traversal detected"

    return True, ""


def ensure_valid_path(path: str, base: str | None = None) -> str:
    """Validate *path* and return it normalized, or raise ``InvalidPathError``."""
    valid, error = validate_path(path, base)
    if not valid:
        raise InvalidPathError(path, error)
    return normalize_path(path)


# =============================================================================
# Name Utilities
# =============================================================================


def get_extension(name: str) -> str:
    """Return the lowercase extension without the dot.

    A leading dot is not an extension separator: ``.env`` has none.
    """
    name = name.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot <= 0:
        return ""
    return name[dot + 1:].lower()


def get_name_without_extension(name: str) -> str:
    name = name.rsplit("/", 1)[-1]
    dot = name.rfind(".")
    if dot <= 0:
        return name
    return name[:dot]


def has_extension(name: str, extensions: list[str] | set[str]) -> bool:
    """Case-insensitive check; entries may be given with or without a dot."""
    ext = get_extension(name)
    return ext in {e.lower().lstrip(".") for e in extensions}


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in file names with ``_``."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip().strip(".")
    cleaned = re.sub(r"_+", "_", cleaned)
    return cleaned or "unnamed"


def is_hidden(name: str) -> bool:
    return name.startswith(".")


def guess_mime_type(filename: str) -> str:
    """Guess MIME type from filename."""
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "application/octet-stream"
