#!/usr/bin/env python3
"""Unified CLI wrapper for the dz reproducible-archive tools."""

from __future__ import annotations

import importlib
import sys
from typing import List, Optional, Tuple

_COMMANDS: dict[str, Tuple[str, str]] = {
    "fix": ("dz_rewrite", "Rewrite an archive with all timestamps set to the epoch"),
    "jar": ("dz_jar", "Package a directory as a reproducible JAR/ZIP"),
    "digest": ("dz_digest", "Digest archives and check they are identical"),
}

_BANNER = r"""
     __
 ___/ /___
/ _  /_  /
\_,_/ /__/  dateless zip
""".strip("\n")


def _render_help() -> str:
    lines = [
        _BANNER,
        "",
        "Usage:",
        "  dz <command> [options]",
        "",
        "Commands:",
    ]
    for name, (_, description) in _COMMANDS.items():
        lines.append(f"  {name:<8} {description}")
    lines.extend(
        [
            "",
            "Run: dz <command> --help for command-specific options.",
        ]
    )
    return "\n".join(lines)


def _dispatch(command: str, argv: List[str]) -> int:
    module_name, _ = _COMMANDS[command]
    module = importlib.import_module(module_name)
    entry = getattr(module, "main", None)
    if entry is None:
        print(f"Error: {module_name} has no main()", file=sys.stderr)
        return 2

    try:
        result = entry(argv, prog=f"dz {command}")
    except SystemExit as exc:
        # argparse exits on --help and on usage errors
        code = exc.code
        if code is None:
            return 0
        return code if isinstance(code, int) else 1
    return int(result) if result is not None else 0


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in {"-h", "--help"}:
        print(_render_help())
        return 0

    command, *rest = argv
    if command not in _COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(_render_help())
        return 2

    return _dispatch(command, rest)


if __name__ == "__main__":
    sys.exit(main())
