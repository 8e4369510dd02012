"""Assembler dialects, build configuration and build result types."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Dialect(str, Enum):
    """Supported assembler syntaxes."""

    NASM = "nasm"
    GAS = "gas"
    LLVM = "llvm"
    ARMASM = "armasm"


class Architecture(str, Enum):
    X86 = "x86"
    X86_64 = "x86_64"
    ARM = "arm"
    ARM64 = "arm64"
    RISCV32 = "riscv32"
    RISCV64 = "riscv64"


class OutputFormat(str, Enum):
    ELF32 = "elf32"
    ELF64 = "elf64"
    MACHO32 = "macho32"
    MACHO64 = "macho64"
    WIN32 = "win32"
    WIN64 = "win64"
    BIN = "bin"
    COFF = "coff"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    HINT = "hint"


# Object-format flags per dialect. An empty list means the assembler picks its default.
ASSEMBLER_FORMAT_FLAGS: Dict[Dialect, Dict[OutputFormat, List[str]]] = {
    Dialect.NASM: {
        OutputFormat.ELF32: ["-f", "elf32"],
        OutputFormat.ELF64: ["-f", "elf64"],
        OutputFormat.MACHO32: ["-f", "macho32"],
        OutputFormat.MACHO64: ["-f", "macho64"],
        OutputFormat.WIN32: ["-f", "win32"],
        OutputFormat.WIN64: ["-f", "win64"],
        OutputFormat.BIN: ["-f", "bin"],
        OutputFormat.COFF: ["-f", "coff"],
    },
    Dialect.GAS: {
        OutputFormat.ELF32: ["--32"],
        OutputFormat.ELF64: ["--64"],
        OutputFormat.MACHO32: [],
        OutputFormat.MACHO64: [],
        OutputFormat.WIN32: [],
        OutputFormat.WIN64: [],
        OutputFormat.BIN: [],
        OutputFormat.COFF: [],
    },
    Dialect.LLVM: {
        OutputFormat.ELF32: ["--filetype=obj", "-arch=x86"],
        OutputFormat.ELF64: ["--filetype=obj", "-arch=x86-64"],
        OutputFormat.MACHO32: ["--filetype=obj", "-arch=x86"],
        OutputFormat.MACHO64: ["--filetype=obj", "-arch=x86-64"],
        OutputFormat.WIN32: ["--filetype=obj"],
        OutputFormat.WIN64: ["--filetype=obj"],
        OutputFormat.BIN: [],
        OutputFormat.COFF: [],
    },
    Dialect.ARMASM: {
        OutputFormat.ELF32: ["--target=arm-linux-gnueabihf"],
        OutputFormat.ELF64: ["--target=aarch64-linux-gnu"],
        OutputFormat.MACHO32: [],
        OutputFormat.MACHO64: ["--target=arm64-apple-darwin"],
        OutputFormat.WIN32: [],
        OutputFormat.WIN64: ["--target=aarch64-windows-msvc"],
        OutputFormat.BIN: [],
        OutputFormat.COFF: [],
    },
}

DEFAULT_ASSEMBLER_CONFIGS: Dict[Dialect, Dict[str, Any]] = {
    Dialect.NASM: {
        "executable": "nasm",
        "architecture": Architecture.X86_64,
        "output_format": OutputFormat.ELF64,
        "additional_flags": ["-g", "-F", "dwarf"],
    },
    Dialect.GAS: {
        "executable": "as",
        "architecture": Architecture.X86_64,
        "output_format": OutputFormat.ELF64,
        "additional_flags": ["--gdwarf-5"],
    },
    Dialect.LLVM: {
        "executable": "llvm-mc",
        "architecture": Architecture.X86_64,
        "output_format": OutputFormat.ELF64,
        "additional_flags": ["-g"],
    },
    Dialect.ARMASM: {
        "executable": "armasm",
        "architecture": Architecture.ARM64,
        "output_format": OutputFormat.ELF64,
        "additional_flags": ["-g"],
    },
}

VERSION_FLAGS: Dict[Dialect, List[str]] = {
    Dialect.NASM: ["-v"],
    Dialect.GAS: ["--version"],
    Dialect.LLVM: ["--version"],
    Dialect.ARMASM: ["--vsn"],
}


class AssemblerConfig(BaseModel):
    """How to invoke one assembler."""

    model_config = ConfigDict(frozen=True)

    dialect: Dialect = Field(..., description="Assembler syntax / tool family")
    executable: str = Field(..., description="Path or name of the assembler executable")
    architecture: Architecture = Field(Architecture.X86_64, description="Target architecture")
    output_format: OutputFormat = Field(OutputFormat.ELF64, description="Object file format")
    additional_flags: List[str] = Field(default_factory=list, description="Extra assembler flags")
    include_paths: List[str] = Field(default_factory=list, description="Include directories")
    defines: Dict[str, str] = Field(
        default_factory=dict, description="Preprocessor symbols (empty value means 1)"
    )

    @classmethod
    def for_dialect(cls, dialect: Dialect, **overrides: Any) -> "AssemblerConfig":
        """Build a config from the dialect defaults, overriding any field given."""
        values = dict(DEFAULT_ASSEMBLER_CONFIGS[Dialect(dialect)])
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(dialect=dialect, **values)


class BuildConfig(BaseModel):
    """One build of one source file."""

    model_config = ConfigDict(frozen=True)

    name: str = "Build"
    source_file: str
    output_file: Optional[str] = None
    assembler: AssemblerConfig
    link_after_assemble: bool = False
    linker_flags: List[str] = Field(default_factory=lambda: ["-nostdlib"])
    generate_listing: bool = False


@dataclass(frozen=True)
class Diagnostic:
    """A single message produced by an assembler or linker."""

    file: str
    line: int
    message: str
    severity: Severity
    dialect: Dialect
    raw_text: str
    column: Optional[int] = None
    code: Optional[str] = None


@dataclass
class BuildResult:
    success: bool
    exit_code: int
    diagnostics: List[Diagnostic] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    output_file: Optional[str] = None
    listing_file: Optional[str] = None

    @classmethod
    def from_run(
        cls,
        exit_code: int,
        diagnostics: List[Diagnostic],
        stdout: str,
        stderr: str,
        duration_ms: int,
        output_file: Optional[str] = None,
        listing_file: Optional[str] = None,
    ) -> "BuildResult":
        # A tool may exit 0 and still print errors, and a non-zero exit fails regardless.
        has_errors = any(d.severity == Severity.ERROR for d in diagnostics)
        return cls(
            success=exit_code == 0 and not has_errors,
            exit_code=exit_code,
            diagnostics=diagnostics,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            output_file=output_file if exit_code == 0 else None,
            listing_file=listing_file,
        )

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
