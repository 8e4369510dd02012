"""Debug launch configurations and the built-in presets."""

import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .toolchain_types import Architecture

GDB_DEBUG_TYPE = "asmforge-gdb"


class RemoteTarget(BaseModel):
    host: str = Field("localhost", description="gdbserver / stub host")
    port: int = Field(..., description="gdbserver / stub port")


class QemuTarget(BaseModel):
    machine: str = Field(..., description="QEMU machine type (e.g. 'pc', 'virt')")
    kernel: str = Field(..., description="Image QEMU boots")
    cpu: Optional[str] = Field(None, description="QEMU CPU model")
    additional_args: List[str] = Field(default_factory=list)
    gdb_port: int = Field(1234, description="Port of QEMU's gdb stub (-s uses 1234)")


class LaunchConfig(BaseModel):
    """
    Everything needed to start one debug session.

    request="launch" runs ``program`` locally (or loads it for a remote
    target); request="attach" attaches to ``process_id``. ``remote`` and
    ``qemu`` select a remote target instead of a local run.
    """

    type: str = GDB_DEBUG_TYPE
    request: Literal["launch", "attach"] = "launch"
    name: str = "Debug"
    program: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    process_id: Optional[int] = None
    remote: Optional[RemoteTarget] = None
    qemu: Optional[QemuTarget] = None
    gdb_path: str = "gdb"
    gdb_args: List[str] = Field(default_factory=list)
    architecture: Optional[Architecture] = None
    setup_commands: List[str] = Field(default_factory=list)
    post_load_commands: List[str] = Field(default_factory=list)


DEFAULT_LAUNCH_CONFIGS: Dict[str, Dict[str, Any]] = {
    "linuxUserspace": {
        "type": GDB_DEBUG_TYPE,
        "request": "launch",
        "name": "Debug Assembly (Linux)",
        "program": "${workspaceFolder}/${fileBasenameNoExtension}",
        "cwd": "${workspaceFolder}",
        "architecture": "x86_64",
        "setup_commands": ["set disassembly-flavor intel"],
    },
    "qemuBareMetal": {
        "type": GDB_DEBUG_TYPE,
        "request": "launch",
        "name": "Debug Bare Metal (QEMU)",
        "qemu": {
            "machine": "pc",
            "kernel": "${workspaceFolder}/${fileBasenameNoExtension}.bin",
        },
        "remote": {"host": "localhost", "port": 1234},
        "architecture": "x86_64",
        "setup_commands": ["set disassembly-flavor intel", "set architecture i386:x86-64"],
        "post_load_commands": ["break *0x7c00"],
    },
    "attachProcess": {
        "type": GDB_DEBUG_TYPE,
        "request": "attach",
        "name": "Attach to Process",
        "process_id": "${command:pickProcess}",
        "architecture": "x86_64",
    },
    "remoteDebug": {
        "type": GDB_DEBUG_TYPE,
        "request": "launch",
        "name": "Remote Debug",
        "program": "${workspaceFolder}/${fileBasenameNoExtension}",
        "remote": {"host": "localhost", "port": 3333},
        "architecture": "arm64",
        "setup_commands": ["monitor reset halt"],
    },
    "qemuArm": {
        "type": GDB_DEBUG_TYPE,
        "request": "launch",
        "name": "Debug ARM Bare Metal (QEMU)",
        "qemu": {
            "machine": "virt",
            "cpu": "cortex-a53",
            "kernel": "${workspaceFolder}/${fileBasenameNoExtension}.bin",
        },
        "remote": {"host": "localhost", "port": 1234},
        "architecture": "arm64",
        "gdb_path": "aarch64-linux-gnu-gdb",
    },
    "qemuRiscv": {
        "type": GDB_DEBUG_TYPE,
        "request": "launch",
        "name": "Debug RISC-V (QEMU)",
        "qemu": {
            "machine": "virt",
            "kernel": "${workspaceFolder}/${fileBasenameNoExtension}.bin",
        },
        "remote": {"host": "localhost", "port": 1234},
        "architecture": "riscv64",
        "gdb_path": "riscv64-linux-gnu-gdb",
    },
}

PRESET_DESCRIPTIONS = {
    "linuxUserspace": ("Linux Userspace", "Debug a native Linux assembly program"),
    "qemuBareMetal": ("QEMU Bare Metal (x86)", "Debug bare metal x86 code with QEMU"),
    "attachProcess": ("Attach to Process", "Attach debugger to a running process"),
    "remoteDebug": ("Remote Debug", "Connect to a remote GDB server"),
    "qemuArm": ("QEMU ARM64", "Debug ARM64 code with QEMU"),
    "qemuRiscv": ("QEMU RISC-V", "Debug RISC-V code with QEMU"),
}

_VARIABLE_RE = re.compile(r"\$\{([^}]+)\}")


def get_available_configs() -> List[Dict[str, str]]:
    return [
        {"name": name, "label": label, "description": description}
        for name, (label, description) in PRESET_DESCRIPTIONS.items()
    ]


def generate_launch_json(names: List[str]) -> Dict[str, Any]:
    """Build launch.json content from preset names; unknown names fall back to linuxUserspace."""
    configurations = [
        DEFAULT_LAUNCH_CONFIGS.get(name, DEFAULT_LAUNCH_CONFIGS["linuxUserspace"]) for name in names
    ]
    return {"version": "0.2.0", "configurations": configurations}


def _substitute(value: Any, variables: Dict[str, str]) -> Any:
    if isinstance(value, str):
        return _VARIABLE_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), value)
    if isinstance(value, list):
        return [_substitute(item, variables) for item in value]
    if isinstance(value, dict):
        return {key: _substitute(item, variables) for key, item in value.items()}
    return value


def resolve_launch_config(
    name: str, variables: Optional[Dict[str, str]] = None, **overrides: Any
) -> LaunchConfig:
    """
    Turn a preset into a validated LaunchConfig.

    Args:
        name: Preset name (see DEFAULT_LAUNCH_CONFIGS)
        variables: Values for ${...} placeholders, e.g. {"workspaceFolder": "/src"}
        **overrides: Fields replacing the preset's values

    Raises:
        KeyError: Unknown preset name
        pydantic.ValidationError: A placeholder was left unresolved in a typed field
    """
    preset = _substitute(DEFAULT_LAUNCH_CONFIGS[name], variables or {})
    preset.update({key: value for key, value in overrides.items() if value is not None})
    return LaunchConfig(**preset)
