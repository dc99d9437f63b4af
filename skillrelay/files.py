"""
skillrelay.files

Data-access boundary for files inside a skill folder.

Every read goes through resolve_skill_file(), which rejects:
- paths that escape the skill folder (`../`, absolute paths, symlinked parents)
- symlinks
- directories and missing files
- files larger than MAX_FILE_SIZE

A rejection raises ResourceAccessError and affects only the request that triggered it.
"""

from __future__ import annotations

import base64
import logging
import os
from mimetypes import guess_type
from pathlib import Path
from typing import Any

from skillrelay import SERVER_NAME
from skillrelay.discovery import SKILL_FILENAMES

logger = logging.getLogger(f"{SERVER_NAME}.files")

MAX_FILE_SIZE = 10 * 1024 * 1024

_MIME_TYPES = {
    ".md": "text/markdown",
    ".ts": "text/typescript",
    ".js": "text/javascript",
    ".json": "application/json",
    ".yaml": "text/yaml",
    ".yml": "text/yaml",
    ".txt": "text/plain",
    ".sh": "text/x-shellscript",
    ".py": "text/x-python",
    ".css": "text/css",
    ".html": "text/html",
    ".xml": "application/xml",
}
_IGNORED_DIRS = {".git", "__pycache__"}


class ResourceAccessError(ValueError):
    """A file request was rejected at the skill folder boundary."""


def mime_type_for(path: str | Path) -> str:
    suffix = Path(path).suffix.lower()
    if suffix in _MIME_TYPES:
        return _MIME_TYPES[suffix]
    mime, _ = guess_type(Path(path).name)
    return mime or "text/plain"


def is_path_within_base(path: str | Path, base: str | Path) -> bool:
    """
    function_purpose: Check that path, after resolving symlinks and '..', lies inside base.
    """
    resolved = Path(os.path.realpath(path))
    base_resolved = Path(os.path.realpath(base))
    return resolved == base_resolved or base_resolved in resolved.parents


def list_skill_files(skill_dir: Path, subpath: str = "") -> list[str]:
    """
    function_purpose: Enumerate readable files under a skill folder, relative POSIX paths, sorted.

    The top-level definition file, symlinks, and VCS/cache folders are left out.
    """
    skill_dir = Path(skill_dir)
    root = skill_dir / subpath if subpath else skill_dir
    if not root.is_dir() or not is_path_within_base(root, skill_dir):
        return []

    files: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _IGNORED_DIRS)
        current = Path(dirpath)
        for filename in filenames:
            f = current / filename
            if f.is_symlink() or not f.is_file():
                continue
            rel = f.relative_to(skill_dir).as_posix()
            if rel in SKILL_FILENAMES:
                continue
            files.append(rel)
    files.sort()
    return files


def resolve_skill_file(skill_dir: Path, rel_path: str) -> Path:
    """
    function_purpose: Map a request path to a concrete file inside skill_dir, enforcing the
    containment, symlink, type and size rules. Raises ResourceAccessError on any violation.
    """
    skill_dir = Path(skill_dir)
    if not rel_path or not rel_path.strip():
        raise ResourceAccessError("path must be a non-empty string")

    candidate = Path(os.path.normpath(skill_dir / rel_path))
    lexical_base = Path(os.path.normpath(skill_dir))
    if candidate != lexical_base and lexical_base not in candidate.parents:
        raise ResourceAccessError(f'Path "{rel_path}" is outside the skill directory')

    if candidate.is_symlink():
        raise ResourceAccessError(f'Cannot read symlink "{rel_path}"')

    if not is_path_within_base(candidate, skill_dir):
        raise ResourceAccessError(f'Path "{rel_path}" is outside the skill directory')

    if not candidate.exists():
        available = list_skill_files(skill_dir)[:10]
        more = "..." if len(available) >= 10 else ""
        raise ResourceAccessError(
            f'File "{rel_path}" not found. Available: {", ".join(available) or "none"}{more}'
        )

    if candidate.is_dir():
        inner = list_skill_files(skill_dir, rel_path)
        raise ResourceAccessError(f'"{rel_path}" is a directory. Files within: {", ".join(inner) or "none"}')

    size = candidate.stat().st_size
    if size > MAX_FILE_SIZE:
        raise ResourceAccessError(
            f"File too large ({size / 1024 / 1024:.2f}MB). Maximum: {MAX_FILE_SIZE // (1024 * 1024)}MB"
        )
    return candidate


def _is_text_data(data: bytes, mime_type: str | None) -> bool:
    """
    function_purpose: Determine if byte content should be treated as text.

    Considers MIME type and UTF-8 decodability.
    """
    if mime_type and (
        mime_type.startswith("text/")
        or mime_type in {"application/json", "application/xml", "application/yaml", "application/toml"}
    ):
        return True
    try:
        data.decode("utf-8")
        return True
    except UnicodeDecodeError:
        return False


def read_skill_file(skill_dir: Path, rel_path: str) -> dict[str, Any]:
    """
    function_purpose: Read one file inside a skill folder through the access checks.

    Returns: {
      "path": str,
      "encoding": "text" | "base64",
      "data": str,
      "mime_type": str,
      "size": int
    }
    """
    file_path = resolve_skill_file(skill_dir, rel_path)
    raw = file_path.read_bytes()
    mime = mime_type_for(file_path)
    if _is_text_data(raw, mime):
        encoding, data = "text", raw.decode("utf-8", errors="replace")
    else:
        encoding, data = "base64", base64.b64encode(raw).decode("ascii")
    logger.debug("Read %s (%d bytes, %s)", file_path, len(raw), encoding)
    return {
        "path": Path(rel_path).as_posix(),
        "encoding": encoding,
        "data": data,
        "mime_type": mime,
        "size": len(raw),
    }
