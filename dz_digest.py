#!/usr/bin/env python3
"""
Archive digests and source-tree enumeration for reproducible packaging.

Two halves:

1. Enumerating a build output directory the way the packaging task needs it:
   regular files only, build-noise excluded, paths normalized to ``/``
   separators and Unicode NFC, and validated so nothing can escape the
   archive root.
2. Hashing finished archives. A reproducible build is one where two runs
   give the same ``sha256:<hex>``; :func:`compare_archives` reports whether
   a set of archives agree.

This module is dependency-free (stdlib only).
"""

from __future__ import annotations

import hashlib
import json
import os
import sys
import unicodedata
from pathlib import Path
from typing import Iterator, List, NamedTuple, Optional, Sequence, Set

# =============================================================================
# Constants
# =============================================================================

# Never packaged: VCS metadata, editor and OS droppings, build caches.
DEFAULT_EXCLUDES: Set[str] = {
    ".git",
    ".gradle",
    ".idea",
    ".DS_Store",
    "Thumbs.db",
    "__pycache__",
}

# Maximum path component length
MAX_PATH_COMPONENT_LENGTH = 255

# Maximum total path length (ZIP stores names with a 16-bit length)
MAX_PATH_LENGTH = 0xFFFF


# =============================================================================
# Data Types
# =============================================================================


class ArchiveDigest(NamedTuple):
    """Digest of one archive file."""

    path: Path
    digest: str  # SHA-256 hex digest of the archive bytes
    size: int  # Archive size in bytes


class PathValidationError(Exception):
    """Raised when a path cannot be stored in an archive."""

    pass


# =============================================================================
# Path Validation
# =============================================================================


def validate_path(path: str) -> None:
    """
    Validate an archive-relative path.

    Rejects:
    - Empty paths and empty components
    - Paths containing ".." or "." components
    - Paths containing NUL bytes or backslashes
    - Absolute paths
    - Paths exceeding length limits

    Raises:
        PathValidationError: If path fails validation
    """
    if not path:
        raise PathValidationError("Empty path")

    if len(path.encode("utf-8")) > MAX_PATH_LENGTH:
        raise PathValidationError(f"Path exceeds {MAX_PATH_LENGTH} bytes: {path[:50]}...")

    if "\x00" in path:
        raise PathValidationError(f"Path contains NUL byte: {repr(path)}")

    if "\\" in path:
        raise PathValidationError(f"Path contains backslash (use / separator): {path}")

    if path.startswith("/"):
        raise PathValidationError(f"Absolute path not allowed: {path}")

    for component in path.split("/"):
        if not component:
            raise PathValidationError(f"Empty path component in: {path}")

        if component == "..":
            raise PathValidationError(f"Path traversal (..) not allowed: {path}")

        if component == ".":
            raise PathValidationError(f"Current directory (.) not allowed in path: {path}")

        if len(component) > MAX_PATH_COMPONENT_LENGTH:
            raise PathValidationError(
                "Path component exceeds "
                f"{MAX_PATH_COMPONENT_LENGTH} characters: {component[:50]}..."
            )


def normalize_path(path: str) -> str:
    """
    Normalize a path to canonical form.

    - Converts to forward slashes
    - Applies Unicode NFC normalization
    - Strips leading ./
    """
    normalized = path.replace("\\", "/")
    normalized = unicodedata.normalize("NFC", normalized)
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def should_exclude(relative_path: str, excludes: Optional[Set[str]] = None) -> bool:
    """True if any component of ``relative_path`` is excluded."""
    if excludes is None:
        excludes = DEFAULT_EXCLUDES
    return any(component in excludes for component in relative_path.split("/"))


# =============================================================================
# Tree Enumeration
# =============================================================================


def enumerate_files(root: Path, excludes: Optional[Set[str]] = None) -> Iterator[tuple[str, Path]]:
    """
    Enumerate all regular files under ``root`` that belong in an archive.

    Yields:
        Tuples of (relative_path, absolute_path), in no particular order
    """
    root = root.resolve()

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        if rel_dir == ".":
            rel_dir = ""

        # Filter out excluded directories (modifies dirnames in-place)
        dirnames[:] = [
            d for d in dirnames if not should_exclude(f"{rel_dir}/{d}" if rel_dir else d, excludes)
        ]

        for filename in filenames:
            rel_path = normalize_path(f"{rel_dir}/{filename}" if rel_dir else filename)
            if should_exclude(rel_path, excludes):
                continue

            abs_path = Path(dirpath) / filename

            # Skip non-regular files (symlinks, sockets, ...)
            if not abs_path.is_file() or abs_path.is_symlink():
                continue

            yield rel_path, abs_path


def check_case_collisions(paths: List[str]) -> Optional[str]:
    """Return an error message if two paths differ only by case."""
    seen: dict[str, str] = {}  # lowercase -> original

    for path in paths:
        lower = path.lower()
        if lower in seen:
            return f"Case-insensitive collision detected: '{seen[lower]}' and '{path}'"
        seen[lower] = path

    return None


# =============================================================================
# Archive Digests
# =============================================================================


def hash_file(filepath: Path, chunk_size: int = 65536) -> tuple[str, int]:
    """
    Compute SHA-256 hash of a file.

    Returns:
        Tuple of (hex digest, file size in bytes)
    """
    hasher = hashlib.sha256()
    size = 0

    with open(filepath, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            size += len(chunk)

    return hasher.hexdigest(), size


def compute_archive_digest(archive_path: Path) -> ArchiveDigest:
    """Compute the SHA-256 digest of an archive file."""
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise FileNotFoundError(f"Archive not found: {archive_path}")
    digest, size = hash_file(archive_path)
    return ArchiveDigest(path=archive_path, digest=digest, size=size)


def compare_archives(paths: Sequence[Path]) -> tuple[bool, List[ArchiveDigest]]:
    """Digest every archive; the flag is True when all digests are equal."""
    digests = [compute_archive_digest(Path(p)) for p in paths]
    identical = len({d.digest for d in digests}) <= 1
    return identical, digests


# =============================================================================
# Output Formatting
# =============================================================================


def format_digests_json(identical: bool, digests: List[ArchiveDigest]) -> str:
    return json.dumps(
        {
            "identical": identical,
            "archives": [
                {"path": str(d.path), "digest": f"sha256:{d.digest}", "size": d.size}
                for d in digests
            ],
        },
        indent=2,
    )


def format_digests_human(digests: List[ArchiveDigest]) -> str:
    if len(digests) == 1:
        return f"sha256:{digests[0].digest}"
    return "\n".join(f"sha256:{d.digest}  {d.path}" for d in digests)


# =============================================================================
# CLI Interface
# =============================================================================


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        prog=prog,
        description="Compute archive digests and check that builds are reproducible",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s build/libs/app.jar              # Print the archive digest
  %(prog)s run1/app.jar run2/app.jar       # Exit 1 unless both are identical
  %(prog)s run1/app.jar run2/app.jar --json
        """,
    )
    parser.add_argument("archives", nargs="+", type=Path, help="Archive files to digest")
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    args = parser.parse_args(argv)

    try:
        identical, digests = compare_archives(args.archives)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(format_digests_json(identical, digests))
    else:
        print(format_digests_human(digests))

    if not identical:
        print("Archives differ", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
