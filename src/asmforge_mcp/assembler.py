"""Assembler and linker invocation with structured build results."""

import logging
import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .diagnostics import detect_dialect, parse_output
from .process import ProcessRunner
from .toolchain_types import (
    ASSEMBLER_FORMAT_FLAGS,
    DEFAULT_ASSEMBLER_CONFIGS,
    VERSION_FLAGS,
    BuildConfig,
    BuildResult,
    Diagnostic,
    Dialect,
    Severity,
)

logger = logging.getLogger(__name__)

VERSION_PATTERNS = [
    re.compile(r"version\s+(\d+\.\d+(?:\.\d+)?)", re.I),
    re.compile(r"(\d+\.\d+(?:\.\d+)?)"),
    re.compile(r"v(\d+\.\d+(?:\.\d+)?)", re.I),
]

LISTING_ARGS: Dict[Dialect, Callable[[str], List[str]]] = {
    Dialect.NASM: lambda path: ["-l", path],
    Dialect.GAS: lambda path: [f"-al={path}"],
}


@dataclass
class AssemblerCheck:
    available: bool
    version: Optional[str] = None
    path: Optional[str] = None


def extract_version(output: str) -> str:
    """Pull a version number out of a tool's version banner."""
    for pattern in VERSION_PATTERNS:
        match = pattern.search(output)
        if match:
            return match.group(1)
    lines = output.strip().splitlines()
    return lines[0].strip()[:50] if lines else ""


def choose_dialect(source: str, default: Dialect, threshold: float = 0.5) -> Dialect:
    """Use the detected dialect when detection is confident enough, else the default."""
    detection = detect_dialect(source)
    if detection.confidence > threshold:
        logger.debug(
            f"Detected {detection.dialect.value} ({detection.confidence:.0%}): "
            f"{', '.join(detection.indicators)}"
        )
        return detection.dialect
    return Dialect(default)


def _stem_path(source_file: str, suffix: str) -> str:
    base, _ = os.path.splitext(source_file)
    return base + suffix


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _failure_result(source: str, dialect: Dialect, message: str, start: float) -> BuildResult:
    diagnostic = Diagnostic(
        file=source,
        line=1,
        message=message,
        severity=Severity.ERROR,
        dialect=dialect,
        raw_text=message,
    )
    return BuildResult(
        success=False,
        exit_code=-1,
        diagnostics=[diagnostic],
        stderr=message,
        duration_ms=_elapsed_ms(start),
    )


class AssemblerService:
    """
    Runs assemblers and the linker and turns their output into BuildResults.

    The service holds no per-build state, so independent builds may run
    concurrently; serializing builds of one file is up to the caller.
    """

    def __init__(self, runner: Optional[ProcessRunner] = None, linker: str = "gcc"):
        self.runner = runner or ProcessRunner()
        self.linker = linker

    def check_assembler(self, dialect: Dialect, executable: Optional[str] = None) -> AssemblerCheck:
        """
        Check whether an assembler can be run and report its version.

        Args:
            dialect: Assembler family
            executable: Override for the default executable name

        Returns:
            AssemblerCheck; available is False when the tool cannot be spawned
        """
        dialect = Dialect(dialect)
        executable = executable or DEFAULT_ASSEMBLER_CONFIGS[dialect]["executable"]
        try:
            result = self.runner.run(executable, VERSION_FLAGS[dialect], timeout_sec=10)
        except (OSError, subprocess.SubprocessError) as e:
            logger.info(f"{dialect.value} assembler '{executable}' not available: {e}")
            return AssemblerCheck(available=False)

        version = extract_version(result.stdout or result.stderr)
        return AssemblerCheck(available=True, version=version, path=executable)

    def check_toolchain(self) -> Dict[Dialect, AssemblerCheck]:
        """Check every supported assembler."""
        return {dialect: self.check_assembler(dialect) for dialect in Dialect}

    def get_version(self, dialect: Dialect) -> str:
        check = self.check_assembler(dialect)
        return check.version or "unknown"

    def build_assembler_args(self, config: BuildConfig, output_file: str) -> List[str]:
        """
        Assemble the command line for one build.

        Order: format flags, include paths, defines, extra flags, listing
        flag, output path, and the source file last.
        """
        assembler = config.assembler
        dialect = assembler.dialect
        args: List[str] = list(ASSEMBLER_FORMAT_FLAGS[dialect][assembler.output_format])

        for include_path in assembler.include_paths:
            args.extend(["-I", include_path])

        for key, value in assembler.defines.items():
            if dialect == Dialect.NASM:
                args.extend(["-D", f"{key}={value}" if value else key])
            else:
                args.append(f"--defsym={key}={value or '1'}")

        args.extend(assembler.additional_flags)

        listing_file = self.listing_path(config)
        if listing_file:
            args.extend(LISTING_ARGS[dialect](listing_file))

        args.extend(["-o", output_file])
        args.append(config.source_file)
        return args

    def listing_path(self, config: BuildConfig) -> Optional[str]:
        if not config.generate_listing or config.assembler.dialect not in LISTING_ARGS:
            return None
        return _stem_path(config.source_file, ".lst")

    def assemble(self, config: BuildConfig) -> BuildResult:
        """
        Assemble one source file.

        Tool failures (non-zero exit, error diagnostics) are reported in the
        returned BuildResult; a tool that cannot be started yields exit code
        -1 and a single synthetic error diagnostic.
        """
        start = time.monotonic()
        assembler = config.assembler
        output_file = config.output_file or _stem_path(config.source_file, ".o")
        args = self.build_assembler_args(config, output_file)

        logger.info(f"Assembling {config.source_file} with {assembler.dialect.value}")
        try:
            result = self.runner.run(assembler.executable, args)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to run assembler '{assembler.executable}': {e}")
            return _failure_result(
                config.source_file, assembler.dialect, f"Failed to run assembler: {e}", start
            )

        # Most assemblers report on stderr, so it goes first.
        diagnostics = parse_output(
            result.stderr + "\n" + result.stdout, assembler.dialect, config.source_file
        )
        build_result = BuildResult.from_run(
            exit_code=result.exit_code,
            diagnostics=diagnostics,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=_elapsed_ms(start),
            output_file=output_file,
            listing_file=self.listing_path(config),
        )
        logger.info(
            f"Assembly of {config.source_file} {'succeeded' if build_result.success else 'failed'} "
            f"(exit {result.exit_code}, {len(build_result.errors)} error(s), "
            f"{len(build_result.warnings)} warning(s))"
        )
        return build_result

    def link(self, object_files: List[str], output_file: str, flags: List[str]) -> BuildResult:
        """
        Link object files with the C compiler driver (used purely as a linker).

        Linker messages are parsed with the GAS pattern table.
        """
        start = time.monotonic()
        first_object = object_files[0] if object_files else ""
        args = ["-o", output_file, *flags, *object_files]

        logger.info(f"Linking {', '.join(object_files)} -> {output_file}")
        try:
            result = self.runner.run(self.linker, args)
        except (OSError, subprocess.SubprocessError) as e:
            logger.error(f"Failed to run linker '{self.linker}': {e}")
            return _failure_result(first_object, Dialect.GAS, f"Linker failed: {e}", start)

        diagnostics = parse_output(result.stderr, Dialect.GAS, first_object)
        return BuildResult.from_run(
            exit_code=result.exit_code,
            diagnostics=diagnostics,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=_elapsed_ms(start),
            output_file=output_file,
        )

    def build(self, config: BuildConfig) -> Tuple[BuildResult, Optional[BuildResult]]:
        """
        Assemble and, if configured and assembly succeeded, link.

        Returns:
            (assemble result, link result or None when linking did not run)
        """
        assembled = self.assemble(config)
        if not (config.link_after_assemble and assembled.success and assembled.output_file):
            return assembled, None

        executable = re.sub(r"\.o$", "", assembled.output_file)
        if executable == assembled.output_file:
            executable = assembled.output_file + ".out"
        linked = self.link([assembled.output_file], executable, list(config.linker_flags))
        return assembled, linked
