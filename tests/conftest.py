"""Shared pytest fixtures for the chapter-build test suite.

Provides reusable fixtures for:
- A temporary lab workspace with chaptered user-program sources
- Configs pointing at that workspace
- Mock subprocess helpers
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from chapter_build.config import Config, SelectionConfig
from chapter_build.selector import SelectionTier, SourceEntry, list_sources

# Filenames mirror a real lab tree: ``chN_`` baseline tests, ``chNb_``
# alternates, plus programs with no chapter tag at all.
SAMPLE_SOURCES: dict[str, str] = {
    "ch1_hello.rs": "fn main() { println!(\"hello\"); }\n",
    "ch1b_hello.rs": "fn main() { println!(\"hello b\"); }\n",
    "ch2_write.rs": "fn main() { /* write */ }\n",
    "ch2b_bad_address.rs": "fn main() { /* bad address */ }\n",
    "ch3_sleep.rs": "fn main() { /* sleep */ }\n",
    "ch3_yield.rs": "fn main() { /* yield */ }\n",
    "ch3b_sleep.rs": "fn main() { /* sleep b */ }\n",
    "ch4_mmap.rs": "fn main() { /* mmap */ }\n",
    "ch4b_unmap.rs": "fn main() { /* unmap */ }\n",
    "initproc.rs": "fn main() { /* init */ }\n",
    "user_shell.rs": "fn main() { /* shell */ }\n",
}


# ---------------------------------------------------------------------------
# Workspace
# ---------------------------------------------------------------------------

@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Temporary project root laid out like the lab repository.

    ``user/src/bin`` holds SAMPLE_SOURCES; ``os/`` and ``bootloader/`` exist
    but are empty since every external tool is mocked or replaced.
    """
    root = tmp_path / "lab"
    source_dir = root / "user" / "src" / "bin"
    source_dir.mkdir(parents=True)
    for name, content in SAMPLE_SOURCES.items():
        (source_dir / name).write_text(content, encoding="utf-8")
    (root / "os").mkdir()
    (root / "bootloader").mkdir()
    yield root


@pytest.fixture
def source_dir(workspace: Path) -> Path:
    return workspace / "user" / "src" / "bin"


@pytest.fixture
def source_entries(source_dir: Path) -> list[SourceEntry]:
    """Every sample source, in listing order."""
    return list_sources(source_dir)


@pytest.fixture
def make_config(workspace: Path) -> Callable[..., Config]:
    """Factory for a Config rooted at the temporary workspace.

    Usage:
        config = make_config(context="ch3", base=1, tier=SelectionTier.BASELINE)
    """
    def factory(
        context: str | None = "ch3",
        base: int = 1,
        tier: SelectionTier | None = SelectionTier.BASELINE,
        **overrides: Any,
    ) -> Config:
        return Config(
            project_root=workspace,
            context=context,
            selection=SelectionConfig(base=base, tier=tier),
            **overrides,
        )

    return factory


# ---------------------------------------------------------------------------
# Mock Subprocess (generic)
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.

    Usage:
        def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int = 0,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.returncode = returncode
        mock_proc.pid = 99999
        mock_proc.kill = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory
