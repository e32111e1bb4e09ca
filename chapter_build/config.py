"""chapter-build configuration.

Centralised, typed configuration for the staged build. All settings use
Pydantic v2 models so they can be validated at construction time and serialised
to/from JSON or environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from chapter_build.selector import SelectionTier
from chapter_build.utils import load_json


class SelectionConfig(BaseModel):
    """Which user programs take part in a chapter build.

    ``base`` is the first chapter whose programs are pulled into every later
    chapter's build. When ``tier`` is left unset it follows from ``base``
    (see ``SelectionTier.for_base``).
    """

    base: int = Field(default=1, ge=0, description="Lowest chapter included in the range")
    tier: Optional[SelectionTier] = Field(default=None)

    @property
    def effective_tier(self) -> SelectionTier:
        """The tier actually used for prefix matching."""
        if self.tier is not None:
            return self.tier
        return SelectionTier.for_base(self.base)


class ToolchainConfig(BaseModel):
    """Kernel compilation and image conversion."""

    kernel_command: list[str] = Field(default=["cargo", "build", "--release"], min_length=1)
    target_triple: str = Field(default="riscv64gc-unknown-none-elf")
    profile: str = Field(default="release")
    kernel_name: str = Field(default="os")
    objcopy: str = Field(default="rust-objcopy")
    binary_architecture: str = Field(default="riscv64")
    log_level: str = Field(default="", description="Exported to the kernel build as LOG")
    timeout: Optional[int] = Field(
        default=None, ge=1, description="Per-tool timeout in seconds (None waits forever)"
    )


class EmulatorConfig(BaseModel):
    """Emulator invocation for the Run stage."""

    binary: str = Field(default="qemu-system-riscv64")
    machine: str = Field(default="virt")
    bios: str = Field(default="bootloader/rustsbi-qemu.bin")
    load_address: str = Field(default="0x80200000")
    nographic: bool = Field(default=True)
    extra_args: list[str] = Field(default_factory=list)


class Config(BaseModel):
    """Global chapter-build configuration.

    Holds every tuneable parameter and derived path used by the pipeline.
    Instances are typically created once by the CLI entry point and then
    passed to ``Pipeline``.
    """

    project_root: Path = Field(default=Path("."))
    user_dir: str = Field(default="user")
    source_subdir: str = Field(default="src/bin")
    staging_subdir: str = Field(default="build")
    kernel_dir: str = Field(default="os")
    meta_dir: str = Field(default=".chapter-build")

    # Overrides the git branch as the development context when set.
    context: Optional[str] = Field(default=None)

    selection: SelectionConfig = Field(default_factory=SelectionConfig)
    toolchain: ToolchainConfig = Field(default_factory=ToolchainConfig)
    emulator: EmulatorConfig = Field(default_factory=EmulatorConfig)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def source_dir(self) -> Path:
        """Directory listing every user-program source."""
        return self.project_root / self.user_dir / self.source_subdir

    @property
    def staging_dir(self) -> Path:
        """Root of the ephemeral staging area (rebuilt on every run)."""
        return self.project_root / self.user_dir / self.staging_subdir

    @property
    def kernel_path(self) -> Path:
        """Working directory for the kernel build."""
        return self.project_root / self.kernel_dir

    @property
    def kernel_elf_path(self) -> Path:
        """Linked kernel executable produced by the toolchain."""
        return (
            self.kernel_path
            / "target"
            / self.toolchain.target_triple
            / self.toolchain.profile
            / self.toolchain.kernel_name
        )

    @property
    def image_path(self) -> Path:
        """Raw loadable image written by the Build stage."""
        return self.kernel_elf_path.with_name(f"{self.toolchain.kernel_name}.bin")

    @property
    def bios_path(self) -> Path:
        """Firmware handed to the emulator."""
        return self.project_root / self.emulator.bios

    @property
    def meta_path(self) -> Path:
        """Directory for chapter-build's own records."""
        return self.project_root / self.meta_dir

    @property
    def state_path(self) -> Path:
        """Record of the most recent invocation."""
        return self.meta_path / "last-build.json"

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<meta_path>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.meta_path / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        return cls.model_validate(load_json(path))

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            CHB_PROJECT_ROOT, CHB_CONTEXT, CHB_BASE, CHB_TIER,
            CHB_TOOL_TIMEOUT, LOG.
        """
        selection_kwargs: dict[str, Any] = {}
        if os.environ.get("CHB_BASE"):
            selection_kwargs["base"] = int(os.environ["CHB_BASE"])
        if os.environ.get("CHB_TIER"):
            selection_kwargs["tier"] = SelectionTier(os.environ["CHB_TIER"])

        toolchain_kwargs: dict[str, Any] = {}
        if os.environ.get("LOG"):
            toolchain_kwargs["log_level"] = os.environ["LOG"]
        if os.environ.get("CHB_TOOL_TIMEOUT"):
            toolchain_kwargs["timeout"] = int(os.environ["CHB_TOOL_TIMEOUT"])

        return cls(
            project_root=Path(os.environ.get("CHB_PROJECT_ROOT", ".")),
            context=os.environ.get("CHB_CONTEXT") or None,
            selection=SelectionConfig(**selection_kwargs),
            toolchain=ToolchainConfig(**toolchain_kwargs),
        )

    def ensure_directories(self) -> None:
        """Create the directories chapter-build writes outside the staging area."""
        self.meta_path.mkdir(parents=True, exist_ok=True)
