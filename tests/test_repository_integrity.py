"""Repository-level sanity checks."""

from __future__ import annotations

import re
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
CONFLICT_PATTERN = re.compile(r"^(<<<<<<<|=======|>>>>>>>)( |$)", re.MULTILINE)
SOURCE_DIRS = ("app", "zeestream", "tests")


def _python_sources() -> list[Path]:
    return sorted(
        path
        for directory in SOURCE_DIRS
        for path in (REPO_ROOT / directory).rglob("*.py")
        if "__pycache__" not in path.parts
    )


@pytest.mark.parametrize(
    "path", _python_sources(), ids=lambda path: str(path.relative_to(REPO_ROOT))
)
def test_sources_compile_without_conflict_markers(path: Path) -> None:
    source = path.read_text(encoding="utf-8")

    assert not CONFLICT_PATTERN.search(source), f"conflict marker left in {path.name}"
    compile(source, str(path), "exec")


def test_every_service_module_uses_a_module_logger() -> None:
    """Service modules that log do so through ``logging.getLogger(__name__)``."""

    offenders = [
        path.name
        for path in (REPO_ROOT / "app" / "services").glob("*.py")
        if "logger." in path.read_text(encoding="utf-8")
        and "logging.getLogger(__name__)" not in path.read_text(encoding="utf-8")
    ]

    assert offenders == []
