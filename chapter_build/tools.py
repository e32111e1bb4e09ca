"""External tool invocation for the Kernel, Build and Run stages.

chapter-build never compiles, links or emulates anything itself. It hands
the work to the cross toolchain (cargo), the image converter (rust-objcopy)
and the emulator (qemu), and treats each as an opaque blocking call that
either succeeds or fails with diagnostics that are passed through verbatim.
"""

from __future__ import annotations

import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from rich.markup import escape

from chapter_build.config import Config
from chapter_build.utils import console, format_command, run_command


class ExternalToolError(Exception):
    """Raised when an external tool fails, is missing, or times out."""

    def __init__(
        self,
        message: str,
        command: str = "",
        exit_code: int = -1,
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)

    @property
    def diagnostics(self) -> str:
        """Everything the tool printed, unmodified."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class ToolResult:
    """Outcome of a successful tool invocation."""

    command: str
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0


async def run_tool(
    cmd: list[str],
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: Optional[float] = None,
    capture: bool = True,
) -> ToolResult:
    """Run one external tool to completion.

    Raises:
        ExternalToolError: If the executable is missing, the tool exits
            non-zero, or *timeout* expires.
    """
    cmd_str = format_command(cmd)
    start = time.monotonic()
    try:
        exit_code, stdout, stderr = await run_command(
            cmd, cwd=cwd, timeout=timeout, capture=capture, env=env
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(
            f"Tool not found: {cmd[0]} ({exc})", command=cmd_str
        ) from exc

    if exit_code != 0:
        raise ExternalToolError(
            f"Command failed (exit {exit_code}): {cmd_str}",
            command=cmd_str,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )

    return ToolResult(
        command=cmd_str,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=time.monotonic() - start,
    )


def _echo(cmd: list[str]) -> None:
    console.print(f"  [cyan]$[/cyan] {escape(format_command(cmd))}", highlight=False)


class Toolchain:
    """Builds the command lines for the kernel, image and emulator tools.

    Paths and program names come from ``Config``, so tests (and unusual
    setups) can point any stage at a different executable.
    """

    def __init__(self, config: Config):
        self.config = config

    # ------------------------------------------------------------------
    # Command lines
    # ------------------------------------------------------------------

    def kernel_command(self) -> list[str]:
        return list(self.config.toolchain.kernel_command)

    def image_command(self) -> list[str]:
        tc = self.config.toolchain
        return [
            tc.objcopy,
            f"--binary-architecture={tc.binary_architecture}",
            str(self.config.kernel_elf_path),
            "--strip-all",
            "-O",
            "binary",
            str(self.config.image_path),
        ]

    def emulator_command(self) -> list[str]:
        emu = self.config.emulator
        cmd = [emu.binary, "-machine", emu.machine]
        if emu.nographic:
            cmd.append("-nographic")
        cmd.extend([
            "-bios",
            str(self.config.bios_path),
            "-device",
            f"loader,file={self.config.image_path},addr={emu.load_address}",
        ])
        cmd.extend(emu.extra_args)
        return cmd

    def required_programs(self) -> dict[str, str]:
        """Executable needed by each tool-driven stage, keyed by stage name."""
        return {
            "kernel": self.kernel_command()[0],
            "build": self.config.toolchain.objcopy,
            "run": self.config.emulator.binary,
        }

    def missing_tools(self, stages: Iterable[str] | None = None) -> list[str]:
        """Executables for *stages* (default: all) not found on ``PATH``."""
        required = self.required_programs()
        wanted = list(required) if stages is None else [s for s in stages if s in required]
        return [required[s] for s in wanted if shutil.which(required[s]) is None]

    # ------------------------------------------------------------------
    # Invocations
    # ------------------------------------------------------------------

    async def build_kernel(self) -> ToolResult:
        """Compile the kernel against the freshly staged user programs."""
        cmd = self.kernel_command()
        _echo(cmd)
        return await run_tool(
            cmd,
            cwd=self.config.kernel_path,
            env={"LOG": self.config.toolchain.log_level},
            timeout=self.config.toolchain.timeout,
        )

    async def convert_image(self) -> ToolResult:
        """Strip the linked kernel into a raw image the loader can place."""
        elf = self.config.kernel_elf_path
        if not elf.exists():
            raise ExternalToolError(
                f"Kernel executable not found: {elf}",
                command=format_command(self.image_command()),
            )
        cmd = self.image_command()
        _echo(cmd)
        return await run_tool(
            cmd,
            cwd=self.config.project_root,
            timeout=self.config.toolchain.timeout,
        )

    async def launch_emulator(self) -> ToolResult:
        """Boot the image; blocks until the emulator exits.

        The emulator is interactive, so its output goes straight to the
        terminal and no timeout applies.
        """
        cmd = self.emulator_command()
        _echo(cmd)
        return await run_tool(cmd, cwd=self.config.project_root, capture=False)
