"""chapter-build pipeline orchestrator.

Implements the four-stage build chain:

Stage 1: USER   -- Resolve the chapter, select its user programs, stage them.
Stage 2: KERNEL -- Compile the kernel with the cross toolchain.
Stage 3: BUILD  -- Convert the linked kernel into a raw loadable image.
Stage 4: RUN    -- Boot the image in the emulator.

Every target requires all of its predecessors, and the chain stops at the
first stage that fails.

Usage::

    chapter-build run
    chapter-build user --context ch3 --tier baseline --dry-run
    python -m chapter_build kernel --log INFO
"""

from __future__ import annotations

import asyncio
import sys
import time
import traceback
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from chapter_build.chapter import (
    ContextParseError,
    get_development_context,
    resolve_chapter,
)
from chapter_build.config import Config
from chapter_build.selector import (
    SelectionTier,
    SourceDirectoryError,
    SourceEntry,
    duplicate_names,
    list_sources,
    select_sources,
)
from chapter_build.staging import StagingArea, StagingCopyError, StagingSetupError
from chapter_build.tools import ExternalToolError, Toolchain, ToolResult
from chapter_build.utils import (
    console,
    format_duration,
    print_error,
    print_stage_header,
    print_success,
    print_summary_table,
    print_tool_output,
    print_warning,
    save_json,
)


class BuildTarget(str, Enum):
    """Build stages, declared in dependency order."""

    USER = "user"
    KERNEL = "kernel"
    BUILD = "build"
    RUN = "run"

    @property
    def position(self) -> int:
        """1-based position in the chain."""
        return list(BuildTarget).index(self) + 1

    @classmethod
    def chain(cls, target: "BuildTarget") -> list["BuildTarget"]:
        """The stages needed to reach *target*, ending with *target* itself."""
        return list(cls)[: target.position]


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Raised when a build stage fails irrecoverably."""

    def __init__(self, target: BuildTarget, message: str) -> None:
        self.target = target
        super().__init__(f"Stage {target.position} ({target.value.upper()}): {message}")


# ---------------------------------------------------------------------------
# Pipeline Orchestrator
# ---------------------------------------------------------------------------


class Pipeline:
    """Drives the User -> Kernel -> Build -> Run chain.

    Attributes:
        config: Global build configuration.
        state: Dictionary that accumulates results from each stage and is
            written to ``.chapter-build/last-build.json``.
        toolchain: Command builder/runner for the external tools.
        staging: The staging area under ``user/build``.
        dry_run: When set, nothing is staged and no tool is started.
    """

    _STAGE_METHODS: dict[BuildTarget, str] = {
        BuildTarget.USER: "stage_user",
        BuildTarget.KERNEL: "stage_kernel",
        BuildTarget.BUILD: "stage_build",
        BuildTarget.RUN: "stage_run",
    }

    def __init__(self, config: Config, dry_run: bool = False) -> None:
        # Tools run with other working directories, so paths must be absolute.
        config = config.model_copy(
            update={"project_root": config.project_root.resolve()}
        )
        self.config = config
        self.dry_run = dry_run
        self.toolchain = Toolchain(config)
        self.staging = StagingArea(config.staging_dir)
        self.state: dict[str, Any] = {
            "started_at": datetime.now(timezone.utc).isoformat(),
            "dry_run": dry_run,
            "stages_completed": [],
            "stages_failed": [],
            "failed_stage": None,
            "success": False,
        }

    # ------------------------------------------------------------------
    # State record
    # ------------------------------------------------------------------

    async def _save_state(self) -> None:
        """Write the record of this invocation (never read back to skip work)."""
        if self.dry_run:
            return
        self.state["updated_at"] = datetime.now(timezone.utc).isoformat()
        await save_json(self.state, self.config.state_path)

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    def _preflight(self, chain: list[BuildTarget]) -> None:
        """Show where the build reads and writes, and warn about missing tools."""
        if not self.dry_run:
            self.config.ensure_directories()
            saved = self.config.save()
            console.print(f"  [green]+[/green] Configuration saved to {escape(str(saved))}")

        missing = self.toolchain.missing_tools(t.value for t in chain)
        if missing:
            print_warning(f"  Not found on PATH: {', '.join(missing)}")
        elif len(chain) > 1:
            console.print("  [green]+[/green] All required tools found")

    # ------------------------------------------------------------------
    # Chain execution
    # ------------------------------------------------------------------

    async def run(self, target: BuildTarget = BuildTarget.RUN) -> dict[str, Any]:
        """Execute every stage up to and including *target*.

        Returns:
            The final state dictionary, including a top-level ``success``
            boolean and ``failed_stage`` (``None`` on success).
        """
        pipeline_start = time.monotonic()
        chain = BuildTarget.chain(target)
        self.state["target"] = target.value

        console.print(
            Panel(
                f"[bold bright_cyan]chapter-build[/bold bright_cyan]"
                f"{' (dry run)' if self.dry_run else ''}\n"
                f"Project : {self.config.project_root}\n"
                f"Sources : {self.config.source_dir}\n"
                f"Staging : {self.config.staging_dir}\n"
                f"Stages  : {' -> '.join(t.value for t in chain)}",
                title="[bold]Build Start[/bold]",
                border_style="bright_cyan",
            )
        )
        self._preflight(chain)

        all_success = True

        for stage in chain:
            print_stage_header(stage.position, stage.value)
            method = getattr(self, self._STAGE_METHODS[stage])

            stage_start = time.monotonic()
            try:
                result = await method()

                elapsed = time.monotonic() - stage_start
                self.state[stage.value] = result
                self.state["stages_completed"].append(stage.value)
                print_success(
                    f"Stage {stage.position} ({stage.value.upper()}) completed "
                    f"in {format_duration(elapsed)}"
                )

            except PipelineError as exc:
                all_success = False
                self._record_failure(stage, str(exc))
                cause = exc.__cause__
                if isinstance(cause, ExternalToolError) and cause.diagnostics:
                    self.state[f"{stage.value}_diagnostics"] = cause.diagnostics
                    print_tool_output(cause.command or stage.value, cause.diagnostics)
                print_error(
                    f"Stage {stage.position} ({stage.value.upper()}) FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                # Later stages depend on this one.
                break

            except asyncio.CancelledError:
                all_success = False
                self._record_failure(stage, "cancelled")
                print_error(f"Stage {stage.position} ({stage.value.upper()}) cancelled")
                raise

            except Exception as exc:
                all_success = False
                tb = traceback.format_exc()
                self._record_failure(stage, tb)
                print_error(
                    f"Stage {stage.position} ({stage.value.upper()}) FAILED after "
                    f"{format_duration(time.monotonic() - stage_start)}: {exc}"
                )
                console.print(tb, style="dim", markup=False, highlight=False)
                break

            finally:
                await self._save_state()

        total_elapsed = time.monotonic() - pipeline_start
        self.state["success"] = all_success
        self.state["total_duration"] = format_duration(total_elapsed)
        self.state["finished_at"] = datetime.now(timezone.utc).isoformat()
        await self._save_state()

        self._print_final_summary(chain, total_elapsed)
        return self.state

    def _record_failure(self, stage: BuildTarget, error: str) -> None:
        self.state["stages_failed"].append(stage.value)
        self.state["failed_stage"] = stage.value
        self.state[f"{stage.value}_error"] = error

    # ------------------------------------------------------------------
    # Stage 1: USER
    # ------------------------------------------------------------------

    async def stage_user(self) -> dict[str, Any]:
        """Resolve the chapter, select its programs and stage them.

        Nothing in the staging area is touched until the chapter and the
        selection are known, so a bad context leaves the previous staging
        tree as it was.
        """
        target = BuildTarget.USER
        selection = self.config.selection
        tier = selection.effective_tier

        try:
            context = await get_development_context(self.config)
            chapter = resolve_chapter(context)
            entries = list_sources(self.config.source_dir)
        except (ContextParseError, SourceDirectoryError, ExternalToolError) as exc:
            raise PipelineError(target, str(exc)) from exc

        selected = select_sources(chapter, selection.base, tier, entries)
        self._print_selection(context.strip(), chapter, tier, selected, len(entries))

        if not selected:
            print_warning(
                f"  No sources matched chapter {chapter} ({tier.value} tier, "
                f"base {selection.base}) in {self.config.source_dir}; "
                "check the file naming convention."
            )
        duplicates = duplicate_names(selected)
        if duplicates:
            print_warning(
                f"  Matched more than once (staged once): {', '.join(duplicates)}"
            )

        result: dict[str, Any] = {
            "context": context.strip(),
            "chapter": chapter,
            "base": selection.base,
            "tier": tier.value,
            "selected": [e.name for e in selected],
            "staging_dir": str(self.staging.root),
        }
        if self.dry_run:
            console.print("  [dim]Dry run: staging area left untouched.[/dim]")
            return result

        try:
            staged = self.staging.materialize(selected)
        except (StagingSetupError, StagingCopyError) as exc:
            raise PipelineError(target, str(exc)) from exc

        result["staged"] = sorted({p.name for p in staged})
        return result

    def _print_selection(
        self,
        context: str,
        chapter: int,
        tier: SelectionTier,
        selected: list[SourceEntry],
        available: int,
    ) -> None:
        print_summary_table(
            {
                "Context": context,
                "Chapter": str(chapter),
                "Tier": tier.value if chapter != 1 else f"{tier.value} (ignored for chapter 1)",
                "Base": str(self.config.selection.base),
                "Selected": f"{len(selected)} of {available}",
            },
            title="Source Selection",
        )
        if not selected:
            return
        table = Table(show_header=True, header_style="bold cyan", box=None)
        table.add_column("Chapter", justify="right", style="dim")
        table.add_column("Source")
        for entry in selected:
            tag = entry.chapter
            table.add_row("-" if tag is None else str(tag), entry.name)
        console.print(table)
        console.print()

    # ------------------------------------------------------------------
    # Stages 2-4: external tools
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        target: BuildTarget,
        command: list[str],
        invocation: Callable[[], Awaitable[ToolResult]],
    ) -> dict[str, Any]:
        """Run one tool-driven stage and describe its outcome."""
        if self.dry_run:
            console.print(f"  [dim]Dry run: would run[/dim] {escape(' '.join(command))}")
            return {"command": " ".join(command), "dry_run": True}

        try:
            result: ToolResult = await invocation()
        except ExternalToolError as exc:
            raise PipelineError(target, str(exc)) from exc

        return {
            "command": result.command,
            "exit_code": result.exit_code,
            "duration": format_duration(result.duration_seconds),
        }

    async def stage_kernel(self) -> dict[str, Any]:
        """Compile the kernel (``cargo build --release``)."""
        return await self._invoke(
            BuildTarget.KERNEL,
            self.toolchain.kernel_command(),
            self.toolchain.build_kernel,
        )

    async def stage_build(self) -> dict[str, Any]:
        """Convert the kernel executable into a raw image."""
        result = await self._invoke(
            BuildTarget.BUILD,
            self.toolchain.image_command(),
            self.toolchain.convert_image,
        )
        result["image"] = str(self.config.image_path)
        return result

    async def stage_run(self) -> dict[str, Any]:
        """Boot the image in the emulator; earlier outputs are left as they are."""
        return await self._invoke(
            BuildTarget.RUN,
            self.toolchain.emulator_command(),
            self.toolchain.launch_emulator,
        )

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _print_final_summary(self, chain: list[BuildTarget], total_elapsed: float) -> None:
        table = Table(title="Build Summary", show_header=True, header_style="bold cyan")
        table.add_column("Stage", no_wrap=True)
        table.add_column("Status")

        completed = set(self.state["stages_completed"])
        failed = set(self.state["stages_failed"])
        for stage in chain:
            if stage.value in completed:
                status = "[green]done[/green]"
            elif stage.value in failed:
                status = "[red]failed[/red]"
            else:
                status = "[dim]not attempted[/dim]"
            table.add_row(f"{stage.position}. {stage.value}", status)

        console.print()
        console.print(table)
        console.print(f"Total time: {format_duration(total_elapsed)}")
        console.print()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def exit_code_for(state: dict[str, Any]) -> int:
    """0 on success, else the position of the stage that failed."""
    failed = state.get("failed_stage")
    if state.get("success") or failed is None:
        return 0
    return BuildTarget(failed).position


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for ``chapter-build`` / ``python -m chapter_build``."""
    import argparse

    parser = argparse.ArgumentParser(
        prog="chapter-build",
        description="Chapter-scoped staged build: user -> kernel -> build -> run",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  chapter-build run\n"
            "  chapter-build user --context ch3 --tier baseline --dry-run\n"
            "  chapter-build kernel --log INFO\n"
            "\n"
            "Exit status is 0 on success, otherwise the failing stage's\n"
            "position (user=1, kernel=2, build=3, run=4).\n"
        ),
    )
    parser.add_argument(
        "target",
        nargs="?",
        default=BuildTarget.RUN.value,
        choices=[t.value for t in BuildTarget],
        help="Stage to reach; its prerequisites run first (default: run)",
    )
    parser.add_argument(
        "--project-root", "-C",
        default=None,
        help="Project root containing user/ and os/ (default: current directory)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Saved configuration to use instead of the CHB_* environment "
        "(e.g. .chapter-build/config.json from an earlier run)",
    )
    parser.add_argument(
        "--context",
        default=None,
        help="Development context to use instead of the current git branch (e.g. ch3)",
    )
    parser.add_argument(
        "--base",
        type=int,
        default=None,
        help="Lowest chapter whose programs are included (default: 1)",
    )
    parser.add_argument(
        "--tier",
        default=None,
        choices=[t.value for t in SelectionTier],
        help="Filename convention to match (default: derived from --base)",
    )
    parser.add_argument(
        "--log",
        default=None,
        help="Kernel log level, exported to the kernel build as LOG",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Seconds before kernel/image tools are killed (default: no limit)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the selection and commands without staging or running anything",
    )

    args = parser.parse_args(argv)

    if args.base is not None and args.base < 0:
        parser.error(f"--base must be >= 0 (got {args.base})")
    if args.timeout is not None and args.timeout < 1:
        parser.error(f"--timeout must be >= 1 (got {args.timeout})")

    try:
        config = Config.load(args.config) if args.config else Config.from_env()
    except (OSError, ValueError, ValidationError) as exc:
        parser.error(f"invalid configuration: {exc}")
    if args.project_root:
        config.project_root = Path(args.project_root)
    if args.context:
        config.context = args.context
    if args.base is not None:
        config.selection.base = args.base
    if args.tier:
        config.selection.tier = SelectionTier(args.tier)
    if args.log is not None:
        config.toolchain.log_level = args.log
    if args.timeout is not None:
        config.toolchain.timeout = args.timeout

    pipeline = Pipeline(config, dry_run=args.dry_run)
    try:
        result = asyncio.run(pipeline.run(BuildTarget(args.target)))
    except KeyboardInterrupt:
        console.print("[bold red]Build interrupted.[/bold red]")
        sys.exit(130)

    code = exit_code_for(result)
    if code == 0:
        console.print("[bold green]Build completed successfully![/bold green]")
    else:
        console.print(f"[bold red]Build failed at stage {result['failed_stage']}.[/bold red]")
    sys.exit(code)


if __name__ == "__main__":
    main()
