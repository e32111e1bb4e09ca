"""Chapter resolution from the development context.

Each chapter of the lab lives on its own branch (``ch3``, ``ch4-fix``, ...),
so the checked-out branch name tells the build which chapter it is building.
"""

from __future__ import annotations

import re
from pathlib import Path

from chapter_build.config import Config
from chapter_build.tools import run_tool

_CONTEXT_PATTERN = re.compile(r"^ch([0-9]+)([^0-9].*)?$", re.DOTALL)


class ContextParseError(Exception):
    """Raised when the development context does not name a chapter."""

    def __init__(self, context: str, reason: str = ""):
        self.context = context
        message = f"Cannot derive a chapter from development context {context!r}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


def resolve_chapter(context: str) -> int:
    """Extract the chapter number from a context string such as ``ch3-extra``.

    The context must be ``ch`` followed by digits, optionally followed by
    text that does not start with a digit.

    Raises:
        ContextParseError: If the shape does not match, the number cannot be
            parsed, or the chapter is 0.
    """
    text = context.strip()
    match = _CONTEXT_PATTERN.match(text)
    if match is None:
        raise ContextParseError(context, "expected 'ch<number>[suffix]'")

    try:
        chapter = int(match.group(1))
    except ValueError as exc:
        raise ContextParseError(context, "chapter number is not a valid integer") from exc
    if chapter < 1:
        raise ContextParseError(context, "chapter numbers start at 1")
    return chapter


async def _run_git(*args: str, cwd: str | Path | None = None) -> str:
    """Run a git command and return its stdout.

    Raises ExternalToolError if git is missing or exits non-zero.
    """
    result = await run_tool(["git", *args], cwd=cwd, timeout=60)
    return result.stdout


async def get_development_context(config: Config) -> str:
    """Return the string naming the current unit of work.

    ``config.context`` wins when set; otherwise the current git branch of
    the project is used.
    """
    if config.context:
        return config.context
    return await _run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=config.project_root)
