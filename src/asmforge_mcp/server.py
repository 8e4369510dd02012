"""MCP Server for the assembly toolchain and GDB debugging interface."""

import asyncio
import json
import logging
import threading
from collections import deque
from dataclasses import asdict, is_dataclass
from typing import Any, Deque, Dict, List, Optional

from mcp.server import Server
from mcp.types import TextContent, Tool
from pydantic import BaseModel, Field

from .assembler import AssemblerService, choose_dialect
from .diagnostics import detect_dialect, parse_output
from .gdb_interface import GDBSession
from .launch_configs import (
    DEFAULT_LAUNCH_CONFIGS,
    LaunchConfig,
    RemoteTarget,
    get_available_configs,
    resolve_launch_config,
)
from .mi_codec import MiRecord
from .toolchain_types import AssemblerConfig, BuildConfig, Dialect, OutputFormat

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MAX_BUFFERED_EVENTS = 1000

# Global service instances
assembler_service = AssemblerService()
gdb_session = GDBSession()

# Events from the session channels, drained by gdb_get_events
_events: Deque[Dict[str, Any]] = deque(maxlen=MAX_BUFFERED_EVENTS)
_events_lock = threading.Lock()

# Create MCP server instance
app = Server("asmforge-mcp")


def _to_jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    return value


def _buffer_event(kind: str, payload: Any) -> None:
    with _events_lock:
        _events.append({"event": kind, "data": _to_jsonable(payload)})


def drain_events() -> List[Dict[str, Any]]:
    with _events_lock:
        events = list(_events)
        _events.clear()
    return events


gdb_session.on_stopped.subscribe(lambda event: _buffer_event("stopped", event))
gdb_session.on_running.subscribe(lambda event: _buffer_event("running", event))
gdb_session.on_exited.subscribe(lambda event: _buffer_event("exited", event))
gdb_session.on_output.subscribe(lambda text: _buffer_event("output", text))


# Tool argument models
class DetectDialectArgs(BaseModel):
    source: str = Field(..., description="Assembly source text")


class ParseDiagnosticsArgs(BaseModel):
    output: str = Field(..., description="Assembler or linker output to parse")
    dialect: Dialect = Field(..., description="Which dialect's message formats to use")
    default_file: str = Field("", description="File to report for messages without a file name")


class AssembleArgs(BaseModel):
    source_file: str = Field(..., description="Path to the assembly source file")
    dialect: Optional[Dialect] = Field(
        None, description="Assembler dialect (default: detect from the source, falling back to nasm)"
    )
    executable: Optional[str] = Field(None, description="Assembler executable override")
    output_format: Optional[OutputFormat] = Field(None, description="Object format (default: elf64)")
    output_file: Optional[str] = Field(None, description="Object file path (default: <source>.o)")
    include_paths: List[str] = Field(default_factory=list, description="Include directories")
    defines: Dict[str, str] = Field(default_factory=dict, description="Symbols to define")
    additional_flags: Optional[List[str]] = Field(
        None, description="Extra assembler flags (replaces the dialect defaults)"
    )
    generate_listing: bool = Field(False, description="Write a listing file (nasm and gas only)")
    link: bool = Field(False, description="Link the object file into an executable on success")
    linker_flags: List[str] = Field(
        default_factory=lambda: ["-nostdlib"], description="Flags passed to the linker"
    )


class LinkArgs(BaseModel):
    object_files: List[str] = Field(..., description="Object files to link")
    output_file: str = Field(..., description="Executable to produce")
    flags: List[str] = Field(default_factory=lambda: ["-nostdlib"], description="Linker flags")


class StartSessionArgs(BaseModel):
    preset: Optional[str] = Field(
        None, description=f"Launch preset: {', '.join(DEFAULT_LAUNCH_CONFIGS)}"
    )
    variables: Dict[str, str] = Field(
        default_factory=dict,
        description="Values for ${...} placeholders in the preset (e.g. {'workspaceFolder': '/src'})",
    )
    request: Optional[str] = Field(None, description="'launch' or 'attach'")
    program: Optional[str] = Field(None, description="Path to executable to debug")
    args: Optional[List[str]] = Field(None, description="Command-line arguments for the program")
    cwd: Optional[str] = Field(None, description="Working directory for GDB")
    process_id: Optional[int] = Field(None, description="Process to attach to")
    remote_host: Optional[str] = Field(None, description="gdbserver / stub host")
    remote_port: Optional[int] = Field(None, description="gdbserver / stub port")
    gdb_path: Optional[str] = Field(None, description="Path to GDB executable (default: 'gdb')")
    setup_commands: Optional[List[str]] = Field(
        None, description="GDB commands to run before the program is started"
    )
    post_load_commands: Optional[List[str]] = Field(
        None, description="GDB commands to run after the program is started"
    )

    def to_launch_config(self) -> LaunchConfig:
        overrides: Dict[str, Any] = {
            "request": self.request,
            "program": self.program,
            "args": self.args,
            "cwd": self.cwd,
            "process_id": self.process_id,
            "gdb_path": self.gdb_path,
            "setup_commands": self.setup_commands,
            "post_load_commands": self.post_load_commands,
        }
        if self.remote_port is not None:
            overrides["remote"] = RemoteTarget(
                host=self.remote_host or "localhost", port=self.remote_port
            )
        if self.preset:
            return resolve_launch_config(self.preset, self.variables, **overrides)
        return LaunchConfig(**{key: value for key, value in overrides.items() if value is not None})


class StopSessionArgs(BaseModel):
    timeout_sec: float = Field(
        5.0,
        description="Timeout for graceful GDB exit in seconds (GDB is force-killed after it)",
    )


class SetBreakpointArgs(BaseModel):
    file: Optional[str] = Field(None, description="Source file of a line breakpoint")
    line: Optional[int] = Field(None, description="Line of a line breakpoint")
    address: Optional[str] = Field(None, description="Address of an instruction breakpoint (e.g. 0x401000)")
    condition: Optional[str] = Field(None, description="Conditional expression")


class RemoveBreakpointArgs(BaseModel):
    breakpoint_id: str = Field(..., description="Breakpoint number as reported by GDB")


class GetStackFramesArgs(BaseModel):
    thread_id: Optional[int] = Field(None, description="Thread ID (None for current thread)")


class GetRegistersArgs(BaseModel):
    named: bool = Field(True, description="Key registers by name instead of number")


class ReadMemoryArgs(BaseModel):
    address: str = Field(..., description="Start address or expression (e.g. '$rsp', '0x401000')")
    length: int = Field(64, gt=0, description="Number of bytes to read")


class EvaluateExpressionArgs(BaseModel):
    expression: str = Field(..., description="Expression to evaluate (e.g. '$rax', '*(int*)$rsp')")


class ExecuteCommandArgs(BaseModel):
    command: str = Field(..., description="MI command without the leading '-' (e.g. 'thread-info')")
    timeout_sec: Optional[float] = Field(None, description="Response timeout in seconds (default 10s)")


_NO_ARGS = {"type": "object", "properties": {}}


# List available tools
@app.list_tools()
async def list_tools() -> list[Tool]:
    """List all available build and debugging tools."""
    return [
        Tool(
            name="asm_check_toolchain",
            description=(
                "Check which assemblers (nasm, GNU as, llvm-mc, armasm) are installed "
                "and report their versions."
            ),
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="asm_detect_dialect",
            description=(
                "Guess the assembler dialect of a source text. Returns the dialect, a "
                "confidence between 0 and 1, and the syntax indicators that matched."
            ),
            inputSchema=DetectDialectArgs.model_json_schema(),
        ),
        Tool(
            name="asm_parse_diagnostics",
            description="Parse assembler or linker output into structured diagnostics.",
            inputSchema=ParseDiagnosticsArgs.model_json_schema(),
        ),
        Tool(
            name="asm_assemble",
            description=(
                "Assemble a source file and return a structured build result with "
                "diagnostics (file, line, column, severity, message). "
                "When 'dialect' is omitted it is detected from the source. "
                "Set 'link' to also link the object into an executable."
            ),
            inputSchema=AssembleArgs.model_json_schema(),
        ),
        Tool(
            name="asm_link",
            description="Link object files into an executable using gcc as the linker driver.",
            inputSchema=LinkArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_list_launch_presets",
            description=(
                "List the built-in launch presets (Linux userspace, QEMU bare metal, "
                "attach, remote gdbserver, QEMU ARM64, QEMU RISC-V)."
            ),
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_start_session",
            description=(
                "Start a new GDB debugging session. Either give a 'preset' (with "
                "'variables' for its ${...} placeholders) or describe the target directly: "
                "'program' to launch, 'process_id' with request='attach', or "
                "'remote_host'/'remote_port' for a gdbserver or QEMU stub. "
                "Fields given next to a preset override the preset's values."
            ),
            inputSchema=StartSessionArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_stop_session",
            description=(
                "Stop the current GDB session and clean up resources. "
                "If GDB doesn't exit gracefully within the timeout, it will be force-killed."
            ),
            inputSchema=StopSessionArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_continue",
            description=(
                "Continue execution until the next breakpoint or exit. Returns immediately; "
                "the stop is reported by gdb_get_events."
            ),
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_step_in",
            description="Step one source line, entering calls. The stop is reported by gdb_get_events.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_step_over",
            description="Step one source line over calls. The stop is reported by gdb_get_events.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_step_out",
            description="Run until the current function returns. The stop is reported by gdb_get_events.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_interrupt",
            description="Interrupt (pause) a running program.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_set_breakpoint",
            description=(
                "Set a breakpoint at file:line or at an instruction address, optionally "
                "conditional. Returns the breakpoint details, or an error if GDB refused it."
            ),
            inputSchema=SetBreakpointArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_remove_breakpoint",
            description="Delete a breakpoint by number.",
            inputSchema=RemoveBreakpointArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_list_breakpoints",
            description="List the breakpoints set in this session, including hit counts.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_get_stack_frames",
            description="Get the stack frames of a thread (innermost first).",
            inputSchema=GetStackFramesArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_get_registers",
            description="Get CPU register values (hex) for the current frame.",
            inputSchema=GetRegistersArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_read_memory",
            description="Read raw memory as a hex string.",
            inputSchema=ReadMemoryArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_evaluate_expression",
            description="Evaluate an expression (registers, memory, symbols) in the current frame.",
            inputSchema=EvaluateExpressionArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_execute_command",
            description=(
                "Execute a GDB/MI command directly and return the parsed result record. "
                "Use for operations not covered by the other tools, e.g. 'thread-info' "
                "or 'data-disassemble -s $pc -e \"$pc+32\" -- 0'."
            ),
            inputSchema=ExecuteCommandArgs.model_json_schema(),
        ),
        Tool(
            name="gdb_get_status",
            description="Get the current status of the GDB session.",
            inputSchema=_NO_ARGS,
        ),
        Tool(
            name="gdb_get_events",
            description=(
                "Return and clear the events received since the last call: "
                "stopped (reason, thread, frame, breakpoint), running, exited (code) "
                "and program/GDB output."
            ),
            inputSchema=_NO_ARGS,
        ),
    ]


def _assemble(args: AssembleArgs) -> Dict[str, Any]:
    dialect = args.dialect
    if dialect is None:
        with open(args.source_file, encoding="utf-8", errors="replace") as f:
            dialect = choose_dialect(f.read(), Dialect.NASM)

    assembler = AssemblerConfig.for_dialect(
        dialect,
        executable=args.executable,
        output_format=args.output_format,
        include_paths=args.include_paths,
        defines=args.defines,
        additional_flags=args.additional_flags,
    )
    config = BuildConfig(
        source_file=args.source_file,
        output_file=args.output_file,
        assembler=assembler,
        link_after_assemble=args.link,
        linker_flags=args.linker_flags,
        generate_listing=args.generate_listing,
    )
    assembled, linked = assembler_service.build(config)
    return {
        "status": "success" if assembled.success and (linked is None or linked.success) else "failed",
        "dialect": dialect.value,
        "assemble": assembled.to_dict(),
        "link": linked.to_dict() if linked else None,
    }


def _record_result(record: Optional[MiRecord]) -> Dict[str, Any]:
    if record is None:
        return {"status": "success", "result": None}
    status = "error" if record.record_class == "error" else "success"
    result = {"status": status, "class": record.record_class, "result": record.data}
    if status == "error":
        result["message"] = record.get_string("msg")
    return result


def _set_breakpoint(args: SetBreakpointArgs) -> Dict[str, Any]:
    if args.address:
        breakpoint = gdb_session.set_address_breakpoint(args.address, condition=args.condition)
    elif args.file and args.line is not None:
        breakpoint = gdb_session.set_breakpoint(args.file, args.line, condition=args.condition)
    else:
        return {"status": "error", "message": "Give either 'address' or both 'file' and 'line'"}

    if breakpoint is None:
        return {"status": "error", "message": "GDB did not set the breakpoint"}
    return {"status": "success", "breakpoint": asdict(breakpoint)}


# Tool implementations
@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Handle tool calls from the MCP client."""
    arguments = arguments or {}

    try:
        if name == "asm_check_toolchain":
            checks = assembler_service.check_toolchain()
            result = {
                "status": "success",
                "assemblers": {dialect.value: asdict(check) for dialect, check in checks.items()},
            }

        elif name == "asm_detect_dialect":
            args = DetectDialectArgs(**arguments)
            result = {"status": "success", **asdict(detect_dialect(args.source))}

        elif name == "asm_parse_diagnostics":
            args = ParseDiagnosticsArgs(**arguments)
            diagnostics = parse_output(args.output, args.dialect, args.default_file)
            result = {"status": "success", "diagnostics": [asdict(d) for d in diagnostics]}

        elif name == "asm_assemble":
            args = AssembleArgs(**arguments)
            result = _assemble(args)

        elif name == "asm_link":
            args = LinkArgs(**arguments)
            linked = assembler_service.link(args.object_files, args.output_file, args.flags)
            result = {"status": "success" if linked.success else "failed", "link": linked.to_dict()}

        elif name == "gdb_list_launch_presets":
            result = {"status": "success", "presets": get_available_configs()}

        elif name == "gdb_start_session":
            args = StartSessionArgs(**arguments)
            config = args.to_launch_config()
            startup = gdb_session.start(config)
            result = {
                **_record_result(startup),
                "config": config.model_dump(mode="json", exclude_none=True),
                "session": gdb_session.get_status(),
            }

        elif name == "gdb_stop_session":
            args = StopSessionArgs(**arguments)
            gdb_session.stop(timeout_sec=args.timeout_sec)
            result = {"status": "success", "message": "GDB session stopped"}

        elif name == "gdb_continue":
            result = _record_result(gdb_session.continue_execution())

        elif name == "gdb_step_in":
            result = _record_result(gdb_session.step_in())

        elif name == "gdb_step_over":
            result = _record_result(gdb_session.step_over())

        elif name == "gdb_step_out":
            result = _record_result(gdb_session.step_out())

        elif name == "gdb_interrupt":
            gdb_session.interrupt()
            result = {"status": "success", "message": "Interrupt sent"}

        elif name == "gdb_set_breakpoint":
            args = SetBreakpointArgs(**arguments)
            result = _set_breakpoint(args)

        elif name == "gdb_remove_breakpoint":
            args = RemoveBreakpointArgs(**arguments)
            gdb_session.remove_breakpoint(args.breakpoint_id)
            result = {"status": "success", "breakpoint_id": args.breakpoint_id}

        elif name == "gdb_list_breakpoints":
            breakpoints = gdb_session.list_breakpoints()
            result = {"status": "success", "breakpoints": [asdict(b) for b in breakpoints]}

        elif name == "gdb_get_stack_frames":
            args = GetStackFramesArgs(**arguments)
            frames = gdb_session.get_stack_frames(thread_id=args.thread_id)
            result = {"status": "success", "frames": [asdict(f) for f in frames]}

        elif name == "gdb_get_registers":
            args = GetRegistersArgs(**arguments)
            if args.named:
                registers = gdb_session.get_named_registers()
            else:
                registers = {r.number: r.value for r in gdb_session.get_registers()}
            result = {"status": "success", "registers": registers}

        elif name == "gdb_read_memory":
            args = ReadMemoryArgs(**arguments)
            memory = gdb_session.read_memory(args.address, args.length)
            result = {"status": "error" if memory.error else "success", **asdict(memory)}

        elif name == "gdb_evaluate_expression":
            args = EvaluateExpressionArgs(**arguments)
            evaluation = gdb_session.evaluate_expression(args.expression)
            result = {"status": "error" if evaluation.error else "success", **asdict(evaluation)}

        elif name == "gdb_execute_command":
            args = ExecuteCommandArgs(**arguments)
            command = args.command[1:] if args.command.startswith("-") else args.command
            result = _record_result(gdb_session.execute_command(command, timeout_sec=args.timeout_sec))

        elif name == "gdb_get_status":
            result = gdb_session.get_status()

        elif name == "gdb_get_events":
            result = {"status": "success", "events": drain_events()}

        else:
            result = {"status": "error", "message": f"Unknown tool: {name}"}

        return [TextContent(type="text", text=json.dumps(result, indent=2))]

    except Exception as e:
        logger.error(f"Error executing tool {name}: {e}", exc_info=True)
        error_result = {"status": "error", "message": str(e), "tool": name}
        return [TextContent(type="text", text=json.dumps(error_result, indent=2))]


async def main():
    """Main async entry point for the MCP server."""
    from mcp.server.stdio import stdio_server

    async with stdio_server() as (read_stream, write_stream):
        logger.info("asmforge MCP Server starting...")
        await app.run(read_stream, write_stream, app.create_initialization_options())


def run_server():
    """Synchronous entry point for the MCP server (for script entry point)."""
    asyncio.run(main())


if __name__ == "__main__":
    run_server()
