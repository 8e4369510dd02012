"""Unit tests for the assembler service."""

import subprocess

import pytest
from unittest.mock import Mock
from pydantic import ValidationError

from asmforge_mcp.assembler import AssemblerService, choose_dialect, extract_version
from asmforge_mcp.process import ProcessResult
from asmforge_mcp.toolchain_types import (
    ASSEMBLER_FORMAT_FLAGS,
    AssemblerConfig,
    BuildConfig,
    Dialect,
    OutputFormat,
    Severity,
)


def make_service(stdout="", stderr="", exit_code=0):
    runner = Mock()
    runner.run.return_value = ProcessResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
    return AssemblerService(runner=runner), runner


def nasm_build(**overrides):
    assembler = AssemblerConfig.for_dialect(Dialect.NASM, additional_flags=[])
    values = {"source_file": "/src/hello.asm", "assembler": assembler}
    values.update(overrides)
    return BuildConfig(**values)


class TestBuildAssemblerArgs:
    """Test cases for assembler command-line construction."""

    def test_argument_order(self):
        """Format flags, includes, defines, extra flags, output, then source."""
        service, _ = make_service()
        assembler = AssemblerConfig.for_dialect(
            Dialect.NASM,
            include_paths=["inc"],
            defines={"DEBUG": "", "LEVEL": "2"},
            additional_flags=["-g"],
        )
        config = BuildConfig(source_file="hello.asm", assembler=assembler)

        args = service.build_assembler_args(config, "hello.o")

        assert args == [
            "-f", "elf64",
            "-I", "inc",
            "-D", "DEBUG",
            "-D", "LEVEL=2",
            "-g",
            "-o", "hello.o",
            "hello.asm",
        ]

    def test_gas_defines_use_defsym(self):
        service, _ = make_service()
        assembler = AssemblerConfig.for_dialect(
            Dialect.GAS, defines={"DEBUG": "", "LEVEL": "2"}, additional_flags=[]
        )
        config = BuildConfig(source_file="hello.s", assembler=assembler)

        args = service.build_assembler_args(config, "hello.o")

        assert "--defsym=DEBUG=1" in args
        assert "--defsym=LEVEL=2" in args
        assert args[0] == "--64"

    @pytest.mark.parametrize("dialect", list(Dialect))
    @pytest.mark.parametrize("output_format", list(OutputFormat))
    def test_every_format_has_flags(self, dialect, output_format):
        """Every dialect/format pair builds a command line starting with its format flags."""
        service, _ = make_service()
        assembler = AssemblerConfig.for_dialect(dialect, output_format=output_format, additional_flags=[])
        config = BuildConfig(source_file="a.s", assembler=assembler)

        args = service.build_assembler_args(config, "a.o")

        flags = ASSEMBLER_FORMAT_FLAGS[dialect][output_format]
        assert args[: len(flags)] == flags
        assert args[-3:] == ["-o", "a.o", "a.s"]

    def test_nasm_listing(self):
        service, _ = make_service()
        config = nasm_build(generate_listing=True)

        args = service.build_assembler_args(config, "/src/hello.o")

        assert args[-5:-3] == ["-l", "/src/hello.lst"]

    def test_gas_listing(self):
        service, _ = make_service()
        assembler = AssemblerConfig.for_dialect(Dialect.GAS, additional_flags=[])
        config = BuildConfig(source_file="/src/hello.s", assembler=assembler, generate_listing=True)

        args = service.build_assembler_args(config, "/src/hello.o")

        assert "-al=/src/hello.lst" in args

    def test_listing_unsupported_dialect(self):
        service, _ = make_service()
        assembler = AssemblerConfig.for_dialect(Dialect.LLVM)
        config = BuildConfig(source_file="a.s", assembler=assembler, generate_listing=True)
        assert service.listing_path(config) is None


class TestAssemble:
    """Test cases for AssemblerService.assemble."""

    def test_success(self):
        service, runner = make_service()
        result = service.assemble(nasm_build())

        assert result.success is True
        assert result.exit_code == 0
        assert result.diagnostics == []
        assert result.output_file == "/src/hello.o"
        runner.run.assert_called_once()
        executable, args = runner.run.call_args[0]
        assert executable == "nasm"
        assert args[-1] == "/src/hello.asm"

    def test_explicit_output_file(self):
        service, _ = make_service()
        result = service.assemble(nasm_build(output_file="/build/out.o"))
        assert result.output_file == "/build/out.o"

    def test_failure_with_diagnostics(self):
        service, _ = make_service(
            stderr="/src/hello.asm:7: error: symbol `foo' not defined\n", exit_code=1
        )
        result = service.assemble(nasm_build())

        assert result.success is False
        assert result.exit_code == 1
        assert result.output_file is None
        assert len(result.errors) == 1
        assert result.errors[0].line == 7

    def test_error_with_zero_exit_is_failure(self):
        """An error diagnostic fails the build even if the tool exited 0."""
        service, _ = make_service(stdout="/src/hello.asm:3: error: parser: instruction expected")
        result = service.assemble(nasm_build())

        assert result.exit_code == 0
        assert result.success is False

    def test_warnings_do_not_fail(self):
        service, _ = make_service(stderr="/src/hello.asm:3: warning: label alone on a line")
        result = service.assemble(nasm_build())

        assert result.success is True
        assert len(result.warnings) == 1

    def test_assembler_not_found(self):
        """A tool that cannot be started gives exit code -1 and one synthetic error."""
        service, runner = make_service()
        runner.run.side_effect = FileNotFoundError("nasm")

        result = service.assemble(nasm_build())

        assert result.success is False
        assert result.exit_code == -1
        assert len(result.diagnostics) == 1
        d = result.diagnostics[0]
        assert d.severity == Severity.ERROR
        assert d.line == 1
        assert d.file == "/src/hello.asm"
        assert "Failed to run assembler" in d.message

    def test_listing_reported(self):
        service, _ = make_service()
        result = service.assemble(nasm_build(generate_listing=True))
        assert result.listing_file == "/src/hello.lst"

    def test_to_dict_serializable(self):
        service, _ = make_service(stderr="/src/hello.asm:7: error: bad")
        data = service.assemble(nasm_build()).to_dict()
        assert data["diagnostics"][0]["severity"] == "error"
        assert data["success"] is False


class TestLink:
    """Test cases for AssemblerService.link."""

    def test_link_success(self):
        service, runner = make_service()
        result = service.link(["a.o", "b.o"], "prog", ["-nostdlib", "-static"])

        assert result.success is True
        assert result.output_file == "prog"
        runner.run.assert_called_once_with("gcc", ["-o", "prog", "-nostdlib", "-static", "a.o", "b.o"])

    def test_link_failure_parsed(self):
        service, _ = make_service(
            stderr="a.o:12: undefined reference to `printf'\ncollect2: error: ld returned 1 exit status\n",
            exit_code=1,
        )
        result = service.link(["a.o"], "prog", [])

        assert result.success is False
        assert result.output_file is None
        assert result.diagnostics[0].file == "a.o"
        assert result.diagnostics[0].line == 12

    def test_linker_not_found(self):
        service, runner = make_service()
        runner.run.side_effect = FileNotFoundError("gcc")

        result = service.link(["a.o"], "prog", [])

        assert result.exit_code == -1
        assert "Linker failed" in result.diagnostics[0].message


class TestBuild:
    """Test cases for assemble-then-link."""

    def test_build_without_link(self):
        service, runner = make_service()
        assembled, linked = service.build(nasm_build())
        assert assembled.success
        assert linked is None
        assert runner.run.call_count == 1

    def test_build_links_after_success(self):
        service, runner = make_service()
        assembled, linked = service.build(nasm_build(link_after_assemble=True))

        assert linked is not None
        assert runner.run.call_count == 2
        executable, args = runner.run.call_args[0]
        assert executable == "gcc"
        assert args == ["-o", "/src/hello", "-nostdlib", "/src/hello.o"]

    def test_build_skips_link_after_failure(self):
        service, runner = make_service(stderr="/src/hello.asm:1: error: bad", exit_code=1)
        assembled, linked = service.build(nasm_build(link_after_assemble=True))

        assert assembled.success is False
        assert linked is None
        assert runner.run.call_count == 1


class TestToolchainChecks:
    """Test cases for assembler availability checks."""

    def test_check_available(self):
        service, runner = make_service(stdout="NASM version 2.16.01 compiled on Jan  1 2024")
        check = service.check_assembler(Dialect.NASM)

        assert check.available is True
        assert check.version == "2.16.01"
        assert check.path == "nasm"
        runner.run.assert_called_once_with("nasm", ["-v"], timeout_sec=10)

    def test_check_uses_stderr_when_stdout_empty(self):
        service, _ = make_service(stderr="Product: ARM Compiler 6.18\n")
        assert service.check_assembler(Dialect.ARMASM).version == "6.18"

    def test_check_missing_tool(self):
        service, runner = make_service()
        runner.run.side_effect = FileNotFoundError("llvm-mc")

        check = service.check_assembler(Dialect.LLVM)

        assert check.available is False
        assert check.version is None

    def test_check_timeout(self):
        service, runner = make_service()
        runner.run.side_effect = subprocess.TimeoutExpired("as", 10)
        assert service.check_assembler(Dialect.GAS).available is False

    def test_check_toolchain_covers_all_dialects(self):
        service, _ = make_service(stdout="GNU assembler (GNU Binutils) 2.42")
        checks = service.check_toolchain()
        assert set(checks) == set(Dialect)

    def test_get_version_unknown(self):
        service, runner = make_service()
        runner.run.side_effect = FileNotFoundError("nasm")
        assert service.get_version(Dialect.NASM) == "unknown"


class TestHelpers:
    """Test cases for module-level helpers."""

    def test_extract_version(self):
        assert extract_version("GNU assembler (GNU Binutils) 2.42") == "2.42"
        assert extract_version("LLVM version 17.0.6\n  Optimized build.") == "17.0.6"

    def test_extract_version_fallback(self):
        assert extract_version("no digits here\nsecond line") == "no digits here"
        assert extract_version("") == ""

    def test_choose_dialect(self):
        assert choose_dialect("section .text\nmsg db 1\n", Dialect.GAS) == Dialect.NASM
        assert choose_dialect("nop\n", Dialect.GAS) == Dialect.GAS


class TestConfigModels:
    """Test cases for the configuration models."""

    def test_for_dialect_defaults(self):
        config = AssemblerConfig.for_dialect(Dialect.GAS)
        assert config.executable == "as"
        assert config.output_format == OutputFormat.ELF64

    def test_for_dialect_override(self):
        config = AssemblerConfig.for_dialect("nasm", executable="/opt/nasm", output_format="bin")
        assert config.executable == "/opt/nasm"
        assert config.output_format == OutputFormat.BIN

    def test_invalid_format_rejected(self):
        with pytest.raises(ValidationError):
            AssemblerConfig.for_dialect(Dialect.NASM, output_format="a.out")

    def test_build_config_defaults(self):
        config = nasm_build()
        assert config.link_after_assemble is False
        assert config.linker_flags == ["-nostdlib"]
        assert config.generate_listing is False
