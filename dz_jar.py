#!/usr/bin/env python3
"""Package a build output directory as a reproducible JAR/ZIP archive.

This is the packaging side of the dz tools: the build decides what goes in
the directory, this module turns it into an archive through
:func:`dz_writer.create_writer`, so every entry gets normalized timestamps.

Determinism settings:
  - Every entry carries the DOS epoch (1980-01-01 00:00:00).
  - ``META-INF/`` and ``META-INF/MANIFEST.MF`` come first, then all other
    entries in bytewise order of their normalized POSIX paths.
  - Parent directory entries precede their contents (``--no-directories``
    leaves them out).
  - Permissions are fixed to 0644 for files and 0755 for directories.

Compression defaults to ``$DZ_COMPRESSION`` (else ``deflate``) and ZIP64
addressing to ``$DZ_ZIP64`` (else ``as-needed``).
"""

from __future__ import annotations

import argparse
import logging
import os
import pathlib
import sys
from typing import Dict, List, Optional, Set, Tuple, Union

from dz_digest import (
    PathValidationError,
    check_case_collisions,
    enumerate_files,
    validate_path,
)
from dz_rewrite import MANIFEST_NAME
from dz_writer import (
    AddressingPolicy,
    ArchiveError,
    CompressionPolicy,
    ConfigurationError,
    cli_logger,
    create_writer,
    resolve_addressing,
    resolve_compression,
    translate_errors,
)

META_INF_DIR = "META-INF/"


def default_compression() -> CompressionPolicy:
    raw = os.environ.get("DZ_COMPRESSION", "").strip()
    if not raw:
        return CompressionPolicy.DEFLATE
    return resolve_compression(raw)


def default_addressing() -> AddressingPolicy:
    raw = os.environ.get("DZ_ZIP64", "").strip()
    if not raw:
        return AddressingPolicy.AS_NEEDED
    return resolve_addressing(raw)


def _sort_key(name: str) -> Tuple[int, bytes]:
    if name == META_INF_DIR:
        return (0, b"")
    if name.upper() == MANIFEST_NAME:
        return (1, b"")
    return (2, name.encode("utf-8"))


def collect_entries(
    source_dir: pathlib.Path,
    include_directories: bool = True,
    excludes: Optional[Set[str]] = None,
) -> List[Tuple[str, Optional[pathlib.Path]]]:
    """List archive entries for ``source_dir`` in archive order.

    Directory entries map to ``None``.

    Raises:
        PathValidationError: If a file name cannot be stored
        ValueError: If two paths differ only by case
    """
    entries: Dict[str, Optional[pathlib.Path]] = {}
    for rel, fpath in enumerate_files(source_dir, excludes):
        validate_path(rel)
        entries[rel] = fpath

    collision = check_case_collisions(list(entries))
    if collision:
        raise ValueError(collision)

    if include_directories:
        for rel in list(entries):
            parts = rel.split("/")[:-1]
            for depth in range(1, len(parts) + 1):
                entries.setdefault("/".join(parts[:depth]) + "/", None)

    return sorted(entries.items(), key=lambda item: _sort_key(item[0]))


def build_jar(
    source_dir: pathlib.Path,
    out_path: pathlib.Path,
    compression: Union[CompressionPolicy, str, None] = None,
    addressing: Union[AddressingPolicy, str, None] = None,
    include_directories: bool = True,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Write ``source_dir`` to ``out_path``; return the number of entries.

    Policies are resolved before anything is written, so a bad value leaves
    no output behind.
    """
    compression = default_compression() if compression is None else resolve_compression(compression)
    addressing = default_addressing() if addressing is None else resolve_addressing(addressing)

    source_dir = pathlib.Path(source_dir)
    if not source_dir.is_dir():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")

    entries = collect_entries(source_dir, include_directories)

    out_path = pathlib.Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    with create_writer(out_path, compression, addressing, logger=logger) as sink:
        for rel, fpath in entries:
            info = sink.new_entry(rel)
            if fpath is None:
                sink.writestr(info, b"")
                continue
            with translate_errors(f"Unable to read {fpath}"):
                size = fpath.stat().st_size
                with open(fpath, "rb") as f:
                    sink.write_entry(info, f, size=size)

    return len(entries)


# pragma: no mutate
def main(argv: Optional[List[str]] = None, prog: Optional[str] = None) -> int:
    ap = argparse.ArgumentParser(prog=prog, description="Package a directory as a reproducible JAR/ZIP")
    ap.add_argument("source", type=pathlib.Path, help="Directory to package")
    ap.add_argument("out_jar", type=pathlib.Path, help="Output archive path")
    ap.add_argument(
        "--compression",
        metavar="{deflate,store}",
        default=None,
        help="Entry compression (default: $DZ_COMPRESSION or deflate)",
    )
    ap.add_argument(
        "--zip64",
        metavar="{as-needed,never}",
        default=None,
        help="ZIP64 addressing (default: $DZ_ZIP64 or as-needed)",
    )
    ap.add_argument(
        "--no-directories",
        action="store_true",
        help="Do not add directory entries",
    )
    ap.add_argument("--verbose", "-v", action="store_true", help="Log each entry written")
    args = ap.parse_args(argv)

    try:
        count = build_jar(
            args.source,
            args.out_jar,
            compression=args.compression,
            addressing=args.zip64,
            include_directories=not args.no_directories,
            logger=cli_logger(args.verbose),
        )
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except (ArchiveError, PathValidationError, ValueError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Entries: {count}", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
