"""Unit tests for launch configurations."""

import pytest
from pydantic import ValidationError

from asmforge_mcp.launch_configs import (
    DEFAULT_LAUNCH_CONFIGS,
    GDB_DEBUG_TYPE,
    LaunchConfig,
    generate_launch_json,
    get_available_configs,
    resolve_launch_config,
)
from asmforge_mcp.toolchain_types import Architecture


class TestLaunchConfig:
    """Test cases for the LaunchConfig model."""

    def test_defaults(self):
        config = LaunchConfig()
        assert config.type == GDB_DEBUG_TYPE
        assert config.request == "launch"
        assert config.gdb_path == "gdb"
        assert config.args == []
        assert config.remote is None
        assert config.qemu is None

    def test_invalid_request(self):
        with pytest.raises(ValidationError):
            LaunchConfig(request="detach")

    def test_remote_requires_port(self):
        with pytest.raises(ValidationError):
            LaunchConfig(remote={"host": "board"})


class TestPresets:
    """Test cases for the built-in presets."""

    def test_available_configs_match_presets(self):
        names = [entry["name"] for entry in get_available_configs()]
        assert names == list(DEFAULT_LAUNCH_CONFIGS)
        assert all(entry["label"] and entry["description"] for entry in get_available_configs())

    def test_generate_launch_json(self):
        content = generate_launch_json(["qemuArm", "remoteDebug"])
        assert content["version"] == "0.2.0"
        assert [c["name"] for c in content["configurations"]] == [
            "Debug ARM Bare Metal (QEMU)",
            "Remote Debug",
        ]

    def test_generate_launch_json_unknown_name(self):
        """Unknown preset names fall back to the Linux userspace preset."""
        content = generate_launch_json(["nope"])
        assert content["configurations"][0] == DEFAULT_LAUNCH_CONFIGS["linuxUserspace"]

    def test_resolve_substitutes_variables(self):
        config = resolve_launch_config(
            "linuxUserspace",
            {"workspaceFolder": "/work", "fileBasenameNoExtension": "hello"},
        )
        assert config.program == "/work/hello"
        assert config.cwd == "/work"
        assert config.architecture == Architecture.X86_64
        assert config.setup_commands == ["set disassembly-flavor intel"]

    def test_resolve_keeps_unknown_placeholders(self):
        config = resolve_launch_config("linuxUserspace", {"workspaceFolder": "/work"})
        assert config.program == "/work/${fileBasenameNoExtension}"

    def test_resolve_does_not_mutate_presets(self):
        resolve_launch_config("linuxUserspace", {"workspaceFolder": "/work"}, program="/bin/true")
        assert DEFAULT_LAUNCH_CONFIGS["linuxUserspace"]["program"].startswith("${workspaceFolder}")

    def test_resolve_overrides(self):
        config = resolve_launch_config("remoteDebug", {}, gdb_path="gdb-multiarch", program=None)
        assert config.gdb_path == "gdb-multiarch"
        assert config.remote.port == 3333
        assert config.program == "${workspaceFolder}/${fileBasenameNoExtension}"

    def test_resolve_qemu_preset(self):
        config = resolve_launch_config(
            "qemuBareMetal", {"workspaceFolder": "/w", "fileBasenameNoExtension": "boot"}
        )
        assert config.qemu.machine == "pc"
        assert config.qemu.kernel == "/w/boot.bin"
        assert config.qemu.gdb_port == 1234
        assert config.post_load_commands == ["break *0x7c00"]

    def test_attach_needs_process_id(self):
        """The pickProcess placeholder must be resolved to a number."""
        with pytest.raises(ValidationError):
            resolve_launch_config("attachProcess")

        config = resolve_launch_config("attachProcess", {"command:pickProcess": "4242"})
        assert config.request == "attach"
        assert config.process_id == 4242

    def test_attach_process_id_override(self):
        config = resolve_launch_config("attachProcess", process_id=77)
        assert config.process_id == 77

    def test_unknown_preset(self):
        with pytest.raises(KeyError):
            resolve_launch_config("doesNotExist")
