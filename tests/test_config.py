"""Unit tests for configuration (chapter_build.config).

Tests cover:
- SelectionConfig defaults, validation and tier derivation
- ToolchainConfig / EmulatorConfig defaults and validation
- Config derived paths (properties)
- save/load round trip
- from_env
- ensure_directories
"""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from chapter_build.config import (
    Config,
    EmulatorConfig,
    SelectionConfig,
    ToolchainConfig,
)
from chapter_build.selector import SelectionTier


# ---------------------------------------------------------------------------
# SelectionConfig
# ---------------------------------------------------------------------------


class TestSelectionConfig:
    @pytest.mark.unit
    def test_defaults(self):
        selection = SelectionConfig()
        assert selection.base == 1
        assert selection.tier is None

    @pytest.mark.unit
    def test_negative_base_rejected(self):
        with pytest.raises(ValidationError):
            SelectionConfig(base=-1)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "base, expected",
        [
            (0, SelectionTier.BASELINE),
            (1, SelectionTier.VARIANT_B),
            (3, SelectionTier.GENERIC),
        ],
    )
    def test_effective_tier_follows_base(self, base: int, expected: SelectionTier):
        assert SelectionConfig(base=base).effective_tier is expected

    @pytest.mark.unit
    def test_explicit_tier_wins(self):
        selection = SelectionConfig(base=1, tier=SelectionTier.BASELINE)
        assert selection.effective_tier is SelectionTier.BASELINE

    @pytest.mark.unit
    def test_tier_from_string(self):
        assert SelectionConfig(tier="generic").tier is SelectionTier.GENERIC

    @pytest.mark.unit
    def test_unknown_tier_rejected(self):
        with pytest.raises(ValidationError):
            SelectionConfig(tier="variant_c")


# ---------------------------------------------------------------------------
# ToolchainConfig / EmulatorConfig
# ---------------------------------------------------------------------------


class TestToolchainConfig:
    @pytest.mark.unit
    def test_defaults(self):
        tc = ToolchainConfig()
        assert tc.kernel_command == ["cargo", "build", "--release"]
        assert tc.target_triple == "riscv64gc-unknown-none-elf"
        assert tc.objcopy == "rust-objcopy"
        assert tc.log_level == ""
        assert tc.timeout is None

    @pytest.mark.unit
    def test_timeout_minimum(self):
        with pytest.raises(ValidationError):
            ToolchainConfig(timeout=0)

    @pytest.mark.unit
    def test_empty_kernel_command_rejected(self):
        with pytest.raises(ValidationError):
            ToolchainConfig(kernel_command=[])


class TestEmulatorConfig:
    @pytest.mark.unit
    def test_defaults(self):
        emu = EmulatorConfig()
        assert emu.binary == "qemu-system-riscv64"
        assert emu.machine == "virt"
        assert emu.bios == "bootloader/rustsbi-qemu.bin"
        assert emu.load_address == "0x80200000"
        assert emu.nographic is True
        assert emu.extra_args == []


# ---------------------------------------------------------------------------
# Config - Defaults and derived paths
# ---------------------------------------------------------------------------


class TestConfigDefaults:
    @pytest.mark.unit
    def test_default_values(self):
        config = Config()
        assert config.project_root == Path(".")
        assert config.context is None
        assert isinstance(config.selection, SelectionConfig)
        assert isinstance(config.toolchain, ToolchainConfig)
        assert isinstance(config.emulator, EmulatorConfig)


class TestConfigDerivedPaths:
    @pytest.mark.unit
    def test_source_dir(self, tmp_path: Path):
        assert Config(project_root=tmp_path).source_dir == tmp_path / "user" / "src" / "bin"

    @pytest.mark.unit
    def test_staging_dir(self, tmp_path: Path):
        assert Config(project_root=tmp_path).staging_dir == tmp_path / "user" / "build"

    @pytest.mark.unit
    def test_kernel_elf_path(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        assert config.kernel_elf_path == (
            tmp_path / "os" / "target" / "riscv64gc-unknown-none-elf" / "release" / "os"
        )

    @pytest.mark.unit
    def test_image_path_next_to_elf(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        assert config.image_path == config.kernel_elf_path.parent / "os.bin"

    @pytest.mark.unit
    def test_custom_profile_and_name(self, tmp_path: Path):
        config = Config(
            project_root=tmp_path,
            toolchain=ToolchainConfig(profile="debug", kernel_name="kernel"),
        )
        assert config.kernel_elf_path.parts[-2:] == ("debug", "kernel")
        assert config.image_path.name == "kernel.bin"

    @pytest.mark.unit
    def test_bios_path(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        assert config.bios_path == tmp_path / "bootloader" / "rustsbi-qemu.bin"

    @pytest.mark.unit
    def test_state_path(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        assert config.state_path == tmp_path / ".chapter-build" / "last-build.json"


# ---------------------------------------------------------------------------
# save / load
# ---------------------------------------------------------------------------


class TestConfigSaveLoad:
    @pytest.mark.unit
    def test_round_trip(self, tmp_path: Path):
        config = Config(
            project_root=tmp_path,
            context="ch5",
            selection=SelectionConfig(base=2, tier=SelectionTier.GENERIC),
            toolchain=ToolchainConfig(log_level="DEBUG"),
        )
        path = config.save()
        assert path == tmp_path / ".chapter-build" / "config.json"

        loaded = Config.load(path)
        assert loaded == config
        assert loaded.selection.tier is SelectionTier.GENERIC

    @pytest.mark.unit
    def test_save_custom_path(self, tmp_path: Path):
        target = tmp_path / "deep" / "nested" / "cfg.json"
        assert Config(project_root=tmp_path).save(target) == target
        assert target.exists()


# ---------------------------------------------------------------------------
# Config.from_env
# ---------------------------------------------------------------------------


class TestConfigFromEnv:
    @pytest.mark.unit
    def test_defaults_when_no_env(self):
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()
        assert config.project_root == Path(".")
        assert config.context is None
        assert config.selection.base == 1
        assert config.selection.tier is None
        assert config.toolchain.log_level == ""

    @pytest.mark.unit
    def test_all_variables(self):
        env = {
            "CHB_PROJECT_ROOT": "/srv/lab",
            "CHB_CONTEXT": "ch4",
            "CHB_BASE": "0",
            "CHB_TIER": "variant_b",
            "CHB_TOOL_TIMEOUT": "900",
            "LOG": "INFO",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()
        assert config.project_root == Path("/srv/lab")
        assert config.context == "ch4"
        assert config.selection.base == 0
        assert config.selection.tier is SelectionTier.VARIANT_B
        assert config.toolchain.timeout == 900
        assert config.toolchain.log_level == "INFO"

    @pytest.mark.unit
    def test_empty_context_is_unset(self):
        with patch.dict(os.environ, {"CHB_CONTEXT": ""}, clear=True):
            assert Config.from_env().context is None

    @pytest.mark.unit
    def test_invalid_tier_raises(self):
        with patch.dict(os.environ, {"CHB_TIER": "nope"}, clear=True):
            with pytest.raises(ValueError):
                Config.from_env()


# ---------------------------------------------------------------------------
# ensure_directories
# ---------------------------------------------------------------------------


class TestEnsureDirectories:
    @pytest.mark.unit
    def test_creates_meta_dir_only(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        config.ensure_directories()
        assert config.meta_path.is_dir()
        assert not config.staging_dir.exists()
