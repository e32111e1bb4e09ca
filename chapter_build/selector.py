"""Chapter-scoped selection of user-program sources.

User programs are tagged by filename: ``ch3_sleep.rs`` belongs to chapter 3,
``ch3b_sleep.rs`` is the alternate ("b") version of the same chapter's test.
A selection tier decides which of those naming conventions a build follows.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional


class SourceDirectoryError(Exception):
    """Raised when the user-program source directory cannot be listed."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


class SelectionTier(str, Enum):
    """Naming convention used to match a chapter's programs."""

    BASELINE = "baseline"
    VARIANT_B = "variant_b"
    GENERIC = "generic"

    @classmethod
    def for_base(cls, base: int) -> "SelectionTier":
        """Tier implied by the ``base`` chapter when none is configured."""
        if base == 0:
            return cls.BASELINE
        if base == 1:
            return cls.VARIANT_B
        return cls.GENERIC

    def token(self, chapter: int) -> str:
        """Filename prefix that marks a program as part of *chapter*."""
        return _TIER_FORMATS[self].format(id=chapter)


# GENERIC has no separator, so "ch1" also matches "ch1_", "ch1b_" and "ch12_".
_TIER_FORMATS: dict[SelectionTier, str] = {
    SelectionTier.BASELINE: "ch{id}_",
    SelectionTier.VARIANT_B: "ch{id}b_",
    SelectionTier.GENERIC: "ch{id}",
}

_CHAPTER_TAG = re.compile(r"^ch([0-9]+)")


@dataclass(frozen=True)
class SourceEntry:
    """One user-program source file in the project tree."""

    path: Path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def chapter(self) -> Optional[int]:
        """Chapter implied by the filename prefix, if it has one."""
        match = _CHAPTER_TAG.match(self.name)
        return int(match.group(1)) if match else None


def list_sources(source_dir: str | Path) -> list[SourceEntry]:
    """List the regular files in *source_dir*, sorted by filename.

    Raises:
        SourceDirectoryError: If the directory is missing or unreadable.
    """
    directory = Path(source_dir)
    if not directory.is_dir():
        raise SourceDirectoryError(
            f"Source directory not found: {directory}", path=directory
        )
    try:
        files = [p for p in directory.iterdir() if p.is_file()]
    except OSError as exc:
        raise SourceDirectoryError(
            f"Cannot list source directory {directory}: {exc}", path=directory
        ) from exc
    return [SourceEntry(path=p) for p in sorted(files, key=lambda p: p.name)]


def select_sources(
    chapter: int,
    base: int,
    tier: SelectionTier,
    entries: Iterable[SourceEntry],
) -> list[SourceEntry]:
    """Pick the entries that belong in the build for *chapter*.

    Chapter 1 takes every entry. Later chapters take, for each id from
    *base* to *chapter* inclusive, the entries whose filename starts with
    ``tier.token(id)``. The result is cumulative across the range, grouped by
    id and otherwise in listing order. An entry matched by more than one id
    (only possible under ``GENERIC``) appears once per match.
    """
    entries = list(entries)
    if chapter == 1:
        return entries

    selected: list[SourceEntry] = []
    for chapter_id in _candidate_ids(entries, base, chapter):
        token = tier.token(chapter_id)
        selected.extend(e for e in entries if e.name.startswith(token))
    return selected


def _candidate_ids(entries: list[SourceEntry], low: int, high: int) -> list[int]:
    """Ids in ``[low, high]`` whose token could prefix one of *entries*.

    A token ``ch<id>...`` only matches a name whose digit run starts with
    ``str(id)``, so every prefix of each digit run (no longer than *high*)
    is a candidate. Ids outside that set would select nothing.
    """
    width = len(str(high))
    ids: set[int] = set()
    for entry in entries:
        match = _CHAPTER_TAG.match(entry.name)
        if match is None:
            continue
        digits = match.group(1)[:width]
        ids.update(int(digits[:n]) for n in range(1, len(digits) + 1))
    return sorted(i for i in ids if low <= i <= high)


def duplicate_names(entries: Iterable[SourceEntry]) -> list[str]:
    """Filenames that occur more than once in *entries*."""
    counts = Counter(e.name for e in entries)
    return sorted(name for name, count in counts.items() if count > 1)
