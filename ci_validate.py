#!/usr/bin/env python3
"""CI validation script for the dz reproducible-archive tools.

This script validates, end to end through the command line tools:
1. All Python tools compile successfully
2. Packaging the same directory twice gives byte-identical archives
3. Rewriting two archives that differ only in timestamps gives identical output
4. Rewritten archives carry the manifest first and epoch timestamps only
5. Rewriting an already rewritten archive changes nothing

Usage:
    python ci_validate.py                    # Run all validations
    python ci_validate.py --verbose          # Show detailed output
    python ci_validate.py --compile-only     # Only check the tools compile

Exit codes:
    0 = All validations passed
    1 = One or more validations failed
    2 = Script error
"""

from __future__ import annotations

import argparse
import os
import pathlib
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from typing import List, Optional, Tuple

# =============================================================================
# Configuration
# =============================================================================

SCRIPT_DIR = pathlib.Path(__file__).parent.resolve()

PYTHON_TOOLS = [
    "dz.py",
    "dz_times.py",
    "dz_writer.py",
    "dz_rewrite.py",
    "dz_jar.py",
    "dz_digest.py",
]

MANIFEST_NAME = "META-INF/MANIFEST.MF"
DOS_EPOCH = (1980, 1, 1, 0, 0, 0)

# Sample build output: (path, content)
SAMPLE_TREE = [
    ("META-INF/MANIFEST.MF", b"Manifest-Version: 1.0\r\n\r\n"),
    ("A/Foo.class", b"\xca\xfe\xba\xbe" + bytes(range(256)) * 16),
    ("A/B/Bar.class", b"\xca\xfe\xba\xbe" + b"bar" * 500),
    ("resources/app.properties", b"name=app\nversion=1.0\n"),
]


# =============================================================================
# Validation result tracking
# =============================================================================


@dataclass
class ValidationResult:
    name: str
    passed: bool
    message: str
    details: Optional[str] = None


class ValidationReport:
    def __init__(self):
        self.results: List[ValidationResult] = []

    def add(self, name: str, passed: bool, message: str, details: Optional[str] = None):
        self.results.append(ValidationResult(name, passed, message, details))

    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 70)
        print("DZ CI VALIDATION REPORT")
        print("=" * 70)

        passed = [r for r in self.results if r.passed]
        failed = [r for r in self.results if not r.passed]

        if failed:
            print(f"\n❌ FAILED ({len(failed)}):\n")
            for r in failed:
                print(f"  • {r.name}: {r.message}")
                if r.details:
                    for line in r.details.split("\n"):
                        print(f"      {line}")

        if verbose and passed:
            print(f"\n✅ PASSED ({len(passed)}):\n")
            for r in passed:
                print(f"  • {r.name}: {r.message}")

        print("\n" + "-" * 70)
        if self.passed():
            print(f"RESULT: ✅ ALL {len(self.results)} VALIDATIONS PASSED")
        else:
            print(f"RESULT: ❌ {len(failed)}/{len(self.results)} VALIDATIONS FAILED")
        print("-" * 70 + "\n")


# =============================================================================
# Helpers
# =============================================================================


def run_tool(tool: str, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(SCRIPT_DIR / tool), *args],
        capture_output=True,
        text=True,
    )


def write_sample_tree(root: pathlib.Path, mtime: int) -> None:
    for rel, data in SAMPLE_TREE:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        os.utime(path, (mtime, mtime))


def write_noisy_jar(path: pathlib.Path, date_time: Tuple[int, int, int, int, int, int]) -> None:
    """Write the sample tree as a JAR stamped with ``date_time``, manifest last."""
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(zipfile.ZipInfo("A/", date_time=date_time), b"")
        for rel, data in sorted(SAMPLE_TREE, key=lambda item: item[0] == MANIFEST_NAME):
            info = zipfile.ZipInfo(rel, date_time=date_time)
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, data)


def digests_match(report: ValidationReport, name: str, first: pathlib.Path, second: pathlib.Path):
    result = run_tool("dz_digest.py", str(first), str(second))
    if result.returncode == 0:
        digest = result.stdout.split()[0] if result.stdout else ""
        report.add(name, True, f"Archives identical: {digest[:20]}...")
    else:
        report.add(name, False, "Archives differ", (result.stdout + result.stderr).strip())


# =============================================================================
# Validation functions
# =============================================================================


def validate_python_compilation(report: ValidationReport):
    """Validate all Python tools compile without syntax errors."""
    for tool in PYTHON_TOOLS:
        tool_path = SCRIPT_DIR / tool
        if not tool_path.exists():
            report.add(f"compile:{tool}", False, f"File not found: {tool}")
            continue

        result = subprocess.run(
            [sys.executable, "-m", "py_compile", str(tool_path)],
            capture_output=True,
            text=True,
        )

        if result.returncode == 0:
            report.add(f"compile:{tool}", True, "Compiles successfully")
        else:
            report.add(
                f"compile:{tool}",
                False,
                "Compilation failed",
                result.stderr.strip(),
            )


def validate_packaging(report: ValidationReport, work: pathlib.Path):
    """Package the sample tree twice with different file times."""
    outputs = []
    for run, mtime in enumerate((1_000_000_000, 1_500_000_000)):
        source = work / f"pkg-src-{run}"
        write_sample_tree(source, mtime)
        out = work / f"pkg-{run}.jar"
        result = run_tool("dz_jar.py", str(source), str(out))
        if result.returncode != 0:
            report.add(f"jar:run{run}", False, "Packaging failed", result.stderr.strip())
            return
        outputs.append(out)

    digests_match(report, "jar:deterministic", *outputs)


def validate_rewrite(report: ValidationReport, work: pathlib.Path):
    """Rewrite two differently stamped JARs and inspect the results."""
    fixed = []
    for run, stamp in enumerate(((2016, 6, 27, 14, 3, 22), (2024, 2, 29, 9, 41, 8))):
        noisy = work / f"noisy-{run}.jar"
        write_noisy_jar(noisy, stamp)
        out = work / f"fixed-{run}.jar"
        result = run_tool("dz_rewrite.py", str(noisy), str(out))
        if result.returncode != 0:
            report.add(f"rewrite:run{run}", False, "Rewrite failed", result.stderr.strip())
            return
        fixed.append(out)

    digests_match(report, "rewrite:deterministic", *fixed)

    with zipfile.ZipFile(fixed[0]) as zf:
        infos = zf.infolist()
    if infos and infos[0].filename == MANIFEST_NAME:
        report.add("rewrite:manifest-first", True, "Manifest is the first entry")
    else:
        report.add(
            "rewrite:manifest-first",
            False,
            "Manifest is not the first entry",
            ", ".join(i.filename for i in infos),
        )

    stale = [i.filename for i in infos if i.date_time != DOS_EPOCH]
    if stale:
        report.add("rewrite:timestamps", False, "Entries keep build times", "\n".join(stale))
    else:
        report.add("rewrite:timestamps", True, f"All {len(infos)} entries at the epoch")

    again = work / "fixed-again.jar"
    result = run_tool("dz_rewrite.py", str(fixed[0]), str(again))
    if result.returncode != 0:
        report.add("rewrite:idempotent", False, "Second rewrite failed", result.stderr.strip())
        return
    digests_match(report, "rewrite:idempotent", fixed[0], again)


# =============================================================================
# Main
# =============================================================================


def main() -> int:
    parser = argparse.ArgumentParser(description="dz CI validation")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--compile-only", action="store_true", help="Only check the tools compile")
    args = parser.parse_args()

    report = ValidationReport()

    print("Running dz CI validations...")

    validate_python_compilation(report)

    if not args.compile_only:
        with tempfile.TemporaryDirectory() as tmp:
            work = pathlib.Path(tmp)
            validate_packaging(report, work)
            validate_rewrite(report, work)

    report.print_report(verbose=args.verbose)

    return 0 if report.passed() else 1


if __name__ == "__main__":
    sys.exit(main())
