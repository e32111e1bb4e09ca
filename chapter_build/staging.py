"""Staging area management.

The staging area (``user/build``) holds the inputs and intermediates of one
build and nothing else. Every invocation throws the previous tree away and
starts from empty directories, so a build can never pick up a program that
a different chapter staged earlier.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable

from chapter_build.selector import SourceEntry

STAGING_SUBDIRS: tuple[str, ...] = ("bin", "elf", "app", "asm")


class StagingSetupError(Exception):
    """Raised when the staging tree cannot be removed or recreated."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


class StagingCopyError(Exception):
    """Raised when a selected source cannot be copied into the staging area."""

    def __init__(self, entry: SourceEntry, reason: str = ""):
        self.entry = entry
        message = f"Failed to stage {entry.name} ({entry.path})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class StagingArea:
    """The four staging directories under a single disposable root.

    ``bin`` receives binaries, ``elf`` linked executables, ``app`` the
    selected program sources and ``asm`` assembly listings. Only ``app`` is
    written here; the others are filled by the toolchain.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    @property
    def bin_dir(self) -> Path:
        return self.root / "bin"

    @property
    def elf_dir(self) -> Path:
        return self.root / "elf"

    @property
    def app_dir(self) -> Path:
        return self.root / "app"

    @property
    def asm_dir(self) -> Path:
        return self.root / "asm"

    def subdirs(self) -> list[Path]:
        return [self.root / name for name in STAGING_SUBDIRS]

    def reset(self) -> None:
        """Delete the staging tree if present and recreate it empty.

        Raises:
            StagingSetupError: If removal or creation fails.
        """
        try:
            if self.root.is_dir() and not self.root.is_symlink():
                shutil.rmtree(self.root)
            elif self.root.exists() or self.root.is_symlink():
                self.root.unlink()
        except OSError as exc:
            raise StagingSetupError(
                f"Cannot remove staging area {self.root}: {exc}", path=self.root
            ) from exc

        for directory in self.subdirs():
            try:
                directory.mkdir(parents=True)
            except OSError as exc:
                raise StagingSetupError(
                    f"Cannot create staging directory {directory}: {exc}",
                    path=directory,
                ) from exc

    def copy_entries(self, entries: Iterable[SourceEntry]) -> list[Path]:
        """Copy *entries* into ``app/`` in order, keeping their filenames.

        Copies made before a failure stay on disk; the next ``reset()``
        discards them.

        Raises:
            StagingCopyError: Naming the first entry that could not be copied.
        """
        copied: list[Path] = []
        for entry in entries:
            destination = self.app_dir / entry.name
            try:
                shutil.copyfile(entry.path, destination)
            except OSError as exc:
                raise StagingCopyError(entry, exc.strerror or str(exc)) from exc
            copied.append(destination)
        return copied

    def materialize(self, entries: Iterable[SourceEntry]) -> list[Path]:
        """Reset the staging area, then stage *entries* into it."""
        self.reset()
        return self.copy_entries(entries)

    def staged_apps(self) -> list[Path]:
        """Files currently staged in ``app/``, sorted by name."""
        if not self.app_dir.is_dir():
            return []
        return sorted(p for p in self.app_dir.iterdir() if p.is_file())

    def is_empty(self) -> bool:
        """True when every staging directory exists and holds nothing."""
        return all(d.is_dir() and not any(d.iterdir()) for d in self.subdirs())
