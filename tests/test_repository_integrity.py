"""Repository-level integrity checks."""

from __future__ import annotations

import re
from pathlib import Path

CONFLICT_PATTERN = re.compile(r"^(<<<<<<<|=======|>>>>>>>)", re.MULTILINE)
DEBUG_PATTERN = re.compile(r"^\s*(breakpoint\(\)|import pdb)", re.MULTILINE)
IGNORED_PARTS = {".git", "__pycache__", ".mypy_cache", ".pytest_cache", ".venv"}
IGNORED_SUFFIXES = {".db", ".db-wal", ".db-shm", ".pyc"}

REPO_ROOT = Path(__file__).resolve().parents[1]


def _repository_files():
    for path in REPO_ROOT.rglob("*"):
        if not path.is_file() or path.suffix in IGNORED_SUFFIXES:
            continue
        if any(part in IGNORED_PARTS for part in path.parts):
            continue
        yield path


def test_repository_has_no_merge_conflict_markers() -> None:
    """Ensure no files in the repo still contain git conflict markers."""

    offending_files: list[Path] = []
    for path in _repository_files():
        contents = path.read_text(encoding="utf-8", errors="ignore")
        if CONFLICT_PATTERN.search(contents):
            offending_files.append(path.relative_to(REPO_ROOT))

    assert not offending_files, (
        "The following files still contain git conflict markers: "
        + ", ".join(str(path) for path in offending_files)
    )


def test_package_has_no_leftover_debugger_calls() -> None:
    package = REPO_ROOT / "catalogsync"
    offending = [
        path.relative_to(REPO_ROOT)
        for path in package.rglob("*.py")
        if DEBUG_PATTERN.search(path.read_text(encoding="utf-8"))
    ]

    assert not offending, f"Debugger calls left in: {offending}"
