"""Unit tests for MCP server."""

import asyncio
import json

import pytest
from unittest.mock import patch
from pydantic import ValidationError

from asmforge_mcp import server
from asmforge_mcp.assembler import AssemblerCheck
from asmforge_mcp.gdb_interface import Breakpoint, Evaluation, MemoryRead, SessionError, StopEvent
from asmforge_mcp.mi_codec import MiRecord
from asmforge_mcp.server import (
    AssembleArgs,
    ExecuteCommandArgs,
    ReadMemoryArgs,
    SetBreakpointArgs,
    StartSessionArgs,
    StopSessionArgs,
    call_tool,
    list_tools,
)
from asmforge_mcp.toolchain_types import BuildResult, Dialect


def run_tool(name, arguments=None):
    contents = asyncio.run(call_tool(name, arguments or {}))
    assert len(contents) == 1
    return json.loads(contents[0].text)


class TestStartSessionArgs:
    """Test cases for StartSessionArgs model."""

    def test_minimal_args(self):
        """Test creating StartSessionArgs with minimal arguments."""
        args = StartSessionArgs()
        assert args.preset is None
        assert args.variables == {}
        assert args.program is None

        config = args.to_launch_config()
        assert config.request == "launch"
        assert config.gdb_path == "gdb"

    def test_explicit_program(self):
        args = StartSessionArgs(program="/src/hello", args=["x"], gdb_path="gdb-multiarch")
        config = args.to_launch_config()
        assert config.program == "/src/hello"
        assert config.args == ["x"]
        assert config.gdb_path == "gdb-multiarch"

    def test_remote_port_builds_target(self):
        config = StartSessionArgs(remote_port=1234).to_launch_config()
        assert config.remote.host == "localhost"
        assert config.remote.port == 1234

    def test_preset_with_overrides(self):
        args = StartSessionArgs(
            preset="linuxUserspace",
            variables={"workspaceFolder": "/w", "fileBasenameNoExtension": "hello"},
            cwd="/tmp",
        )
        config = args.to_launch_config()
        assert config.program == "/w/hello"
        assert config.cwd == "/tmp"

    def test_invalid_request(self):
        with pytest.raises(ValidationError):
            StartSessionArgs(request="detach").to_launch_config()


class TestOtherArgs:
    """Test cases for the remaining argument models."""

    def test_stop_default_timeout(self):
        assert StopSessionArgs().timeout_sec == 5.0

    def test_execute_command_required(self):
        with pytest.raises(ValidationError):
            ExecuteCommandArgs()

    def test_read_memory_length_positive(self):
        assert ReadMemoryArgs(address="$rsp").length == 64
        with pytest.raises(ValidationError):
            ReadMemoryArgs(address="$rsp", length=0)

    def test_set_breakpoint_all_optional(self):
        args = SetBreakpointArgs()
        assert args.file is None
        assert args.address is None

    def test_assemble_args(self):
        args = AssembleArgs(source_file="a.asm", dialect="nasm")
        assert args.dialect == Dialect.NASM
        assert args.linker_flags == ["-nostdlib"]
        with pytest.raises(ValidationError):
            AssembleArgs(source_file="a.asm", dialect="masm")


class TestListTools:
    """Test cases for tool listing."""

    def test_tool_names(self):
        tools = asyncio.run(list_tools())
        names = {tool.name for tool in tools}
        assert {
            "asm_check_toolchain",
            "asm_detect_dialect",
            "asm_parse_diagnostics",
            "asm_assemble",
            "asm_link",
            "gdb_start_session",
            "gdb_stop_session",
            "gdb_step_in",
            "gdb_step_over",
            "gdb_step_out",
            "gdb_read_memory",
            "gdb_get_events",
        } <= names
        assert all(tool.inputSchema["type"] == "object" for tool in tools)


class TestBuildTools:
    """Test cases for the build tools."""

    def test_detect_dialect(self):
        result = run_tool("asm_detect_dialect", {"source": "section .text\nmsg db 1\n"})
        assert result["status"] == "success"
        assert result["dialect"] == "nasm"
        assert result["confidence"] == 1.0

    def test_parse_diagnostics(self):
        result = run_tool(
            "asm_parse_diagnostics",
            {"output": "a.s:3: Error: bad register", "dialect": "gas", "default_file": "a.s"},
        )
        assert result["diagnostics"][0]["line"] == 3
        assert result["diagnostics"][0]["severity"] == "error"

    @patch("asmforge_mcp.server.assembler_service")
    def test_check_toolchain(self, mock_service):
        mock_service.check_toolchain.return_value = {
            Dialect.NASM: AssemblerCheck(available=True, version="2.16", path="nasm"),
            Dialect.GAS: AssemblerCheck(available=False),
        }
        result = run_tool("asm_check_toolchain")
        assert result["assemblers"]["nasm"]["version"] == "2.16"
        assert result["assemblers"]["gas"]["available"] is False

    @patch("asmforge_mcp.server.assembler_service")
    def test_assemble_detects_dialect(self, mock_service, tmp_path):
        source = tmp_path / "hello.s"
        source.write_text(".globl _start\n.text\n_start:\n    movq $60, %rax\n")
        mock_service.build.return_value = (BuildResult(success=True, exit_code=0), None)

        result = run_tool("asm_assemble", {"source_file": str(source)})

        assert result["status"] == "success"
        assert result["dialect"] == "gas"
        config = mock_service.build.call_args[0][0]
        assert config.assembler.dialect == Dialect.GAS
        assert config.assembler.executable == "as"

    @patch("asmforge_mcp.server.assembler_service")
    def test_assemble_failure(self, mock_service):
        mock_service.build.return_value = (BuildResult(success=False, exit_code=1), None)
        result = run_tool("asm_assemble", {"source_file": "a.asm", "dialect": "nasm"})
        assert result["status"] == "failed"
        assert result["link"] is None

    def test_assemble_missing_source(self):
        result = run_tool("asm_assemble", {"source_file": "/nonexistent/file.asm"})
        assert result["status"] == "error"
        assert result["tool"] == "asm_assemble"


class TestDebugTools:
    """Test cases for the debug tools."""

    @patch("asmforge_mcp.server.gdb_session")
    def test_start_session(self, mock_session):
        mock_session.start.return_value = MiRecord(kind="result", record_class="running", token=1)
        mock_session.get_status.return_value = {"state": "ready"}

        result = run_tool("gdb_start_session", {"program": "/src/hello"})

        assert result["status"] == "success"
        assert result["class"] == "running"
        assert result["config"]["program"] == "/src/hello"
        config = mock_session.start.call_args[0][0]
        assert config.program == "/src/hello"

    @patch("asmforge_mcp.server.gdb_session")
    def test_start_session_error(self, mock_session):
        mock_session.start.side_effect = SessionError("Session already running. Stop it first.")
        result = run_tool("gdb_start_session", {})
        assert result["status"] == "error"
        assert "already running" in result["message"]

    @patch("asmforge_mcp.server.gdb_session")
    def test_continue_error_record(self, mock_session):
        mock_session.continue_execution.return_value = MiRecord(
            kind="result", record_class="error", token=3, data={"msg": "The program is not being run."}
        )
        result = run_tool("gdb_continue")
        assert result["status"] == "error"
        assert result["message"] == "The program is not being run."

    @patch("asmforge_mcp.server.gdb_session")
    def test_set_breakpoint_line(self, mock_session):
        mock_session.set_breakpoint.return_value = Breakpoint(id="1", kind="line", file="a.asm", line=4)
        result = run_tool("gdb_set_breakpoint", {"file": "a.asm", "line": 4})

        assert result["breakpoint"]["id"] == "1"
        mock_session.set_breakpoint.assert_called_once_with("a.asm", 4, condition=None)

    @patch("asmforge_mcp.server.gdb_session")
    def test_set_breakpoint_address(self, mock_session):
        mock_session.set_address_breakpoint.return_value = Breakpoint(
            id="2", kind="address", address="0x401000"
        )
        result = run_tool("gdb_set_breakpoint", {"address": "0x401000"})
        assert result["breakpoint"]["kind"] == "address"

    def test_set_breakpoint_needs_location(self):
        result = run_tool("gdb_set_breakpoint", {"file": "a.asm"})
        assert result["status"] == "error"

    @patch("asmforge_mcp.server.gdb_session")
    def test_set_breakpoint_rejected(self, mock_session):
        mock_session.set_breakpoint.return_value = None
        result = run_tool("gdb_set_breakpoint", {"file": "a.asm", "line": 4})
        assert result["status"] == "error"

    @patch("asmforge_mcp.server.gdb_session")
    def test_read_memory(self, mock_session):
        mock_session.read_memory.return_value = MemoryRead(address="0x1000", contents="c3")
        result = run_tool("gdb_read_memory", {"address": "0x1000", "length": 1})
        assert result["status"] == "success"
        assert result["contents"] == "c3"

    @patch("asmforge_mcp.server.gdb_session")
    def test_evaluate_expression_error(self, mock_session):
        mock_session.evaluate_expression.return_value = Evaluation(expression="foo", error="No symbol")
        result = run_tool("gdb_evaluate_expression", {"expression": "foo"})
        assert result["status"] == "error"
        assert result["error"] == "No symbol"

    @patch("asmforge_mcp.server.gdb_session")
    def test_execute_command_strips_dash(self, mock_session):
        mock_session.execute_command.return_value = MiRecord(
            kind="result", record_class="done", data={"threads": []}
        )
        result = run_tool("gdb_execute_command", {"command": "-thread-info"})

        assert result["result"] == {"threads": []}
        mock_session.execute_command.assert_called_once_with("thread-info", timeout_sec=None)

    @patch("asmforge_mcp.server.gdb_session")
    def test_registers_named(self, mock_session):
        mock_session.get_named_registers.return_value = {"rax": "0x1"}
        result = run_tool("gdb_get_registers", {})
        assert result["registers"] == {"rax": "0x1"}

    def test_get_events_drains_buffer(self):
        server.drain_events()
        server._buffer_event("stopped", StopEvent(reason="breakpoint-hit", thread_id=1))
        server._buffer_event("output", "Hello\n")

        result = run_tool("gdb_get_events")

        assert [e["event"] for e in result["events"]] == ["stopped", "output"]
        assert result["events"][0]["data"]["reason"] == "breakpoint-hit"
        assert run_tool("gdb_get_events")["events"] == []

    def test_session_events_are_buffered(self):
        """Events emitted on the global session's channels end up in the buffer."""
        server.drain_events()
        server.gdb_session.on_output.emit("program output")
        assert server.drain_events() == [{"event": "output", "data": "program output"}]

    def test_operation_without_session(self):
        result = run_tool("gdb_step_over")
        assert result["status"] == "error"
        assert "No active GDB session" in result["message"]

    def test_unknown_tool(self):
        result = run_tool("gdb_nope")
        assert result["status"] == "error"
        assert "Unknown tool" in result["message"]
