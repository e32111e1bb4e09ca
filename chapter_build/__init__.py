"""chapter-build: staged build orchestrator for a chaptered teaching OS.

Selects the user programs that belong to the checked-out chapter, stages
them into a fresh ``user/build`` tree, then drives the kernel build, image
conversion and emulator run as one fail-fast chain.

Key classes:
    Pipeline       - User -> Kernel -> Build -> Run orchestration
    StagingArea    - Reset-then-copy staging directories
    Toolchain      - cargo / rust-objcopy / qemu invocation
    SelectionTier  - Filename convention used to match a chapter's programs
"""

from .chapter import ContextParseError, get_development_context, resolve_chapter
from .config import Config, EmulatorConfig, SelectionConfig, ToolchainConfig
from .pipeline import BuildTarget, Pipeline, PipelineError
from .selector import (
    SelectionTier,
    SourceDirectoryError,
    SourceEntry,
    list_sources,
    select_sources,
)
from .staging import StagingArea, StagingCopyError, StagingSetupError
from .tools import ExternalToolError, Toolchain, ToolResult, run_tool

__all__ = [
    # Configuration
    "Config",
    "SelectionConfig",
    "ToolchainConfig",
    "EmulatorConfig",
    # Chapter resolution
    "resolve_chapter",
    "get_development_context",
    "ContextParseError",
    # Source selection
    "SelectionTier",
    "SourceEntry",
    "list_sources",
    "select_sources",
    "SourceDirectoryError",
    # Staging
    "StagingArea",
    "StagingSetupError",
    "StagingCopyError",
    # External tools
    "Toolchain",
    "ToolResult",
    "run_tool",
    "ExternalToolError",
    # Orchestration
    "Pipeline",
    "PipelineError",
    "BuildTarget",
]
