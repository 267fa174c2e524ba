from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable

import pytest

from jar_factory import BUILD_SECONDS, BUILD_TIME, sample_entries, write_archive

if os.environ.get("DZ_MUTMUT") == "1":
    _main_module = sys.modules.get("__main__")
    _main_spec = getattr(_main_module, "__spec__", None)
    if (
        _main_module is not None
        and _main_spec
        and getattr(_main_spec, "name", None) == "mutmut.__main__"
    ):
        sys.modules.setdefault("mutmut.__main__", _main_module)


@pytest.fixture(scope="session")
def repo_root() -> Path:
    root = Path(__file__).resolve().parents[1]
    if root.name == "mutants":
        return root.parent
    return root


@pytest.fixture
def make_sample_jar(tmp_path: Path) -> Callable[..., Path]:
    """Factory for the three-entry sample JAR stamped with a given build time."""

    def _make(name: str = "app.jar", date_time=BUILD_TIME, seconds: int = BUILD_SECONDS) -> Path:
        return write_archive(tmp_path / name, sample_entries(date_time, seconds))

    return _make


@pytest.fixture
def sample_jar(make_sample_jar: Callable[..., Path]) -> Path:
    return make_sample_jar()
