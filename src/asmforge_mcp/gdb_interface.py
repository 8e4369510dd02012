"""GDB/MI session controller for assembly debugging."""

import logging
import queue
import signal
import subprocess
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .launch_configs import LaunchConfig
from .mi_codec import MiRecord, MiValue, format_command, parse_line, quote_argument
from .process import ProcessRunner

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SEC = 10.0
STARTUP_DELAY_SEC = 0.5
COMMAND_DELAY_SEC = 0.1

T = TypeVar("T")


class SessionError(RuntimeError):
    """Raised when the session cannot perform an operation (not started, exited, I/O failure)."""


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    TERMINATED = "terminated"


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        if value is None:
            return default
        return int(value)
    except (TypeError, ValueError):
        return default


def _text(values: Dict[str, MiValue], key: str) -> Optional[str]:
    value = values.get(key)
    return value if isinstance(value, str) else None


@dataclass
class StackFrame:
    level: int
    address: str
    func: Optional[str] = None
    file: Optional[str] = None
    line: Optional[int] = None
    fullname: Optional[str] = None

    @classmethod
    def from_mi(cls, frame: Dict[str, MiValue], level: Optional[int] = None) -> "StackFrame":
        return cls(
            level=level if level is not None else _to_int(_text(frame, "level"), 0),
            address=_text(frame, "addr") or "",
            func=_text(frame, "func"),
            file=_text(frame, "file"),
            line=_to_int(_text(frame, "line")),
            fullname=_text(frame, "fullname"),
        )


@dataclass
class RegisterValue:
    number: str
    value: str


@dataclass
class MemoryRead:
    address: str
    contents: str
    error: Optional[str] = None

    def to_bytes(self) -> bytes:
        """Decode the hex ``contents`` GDB returns (e.g. '4889e5')."""
        return bytes.fromhex(self.contents)


@dataclass
class Evaluation:
    expression: str
    value: Optional[str] = None
    error: Optional[str] = None


@dataclass
class Breakpoint:
    id: str
    kind: str
    enabled: bool = True
    hit_count: int = 0
    file: Optional[str] = None
    line: Optional[int] = None
    address: Optional[str] = None
    condition: Optional[str] = None

    @classmethod
    def from_mi(
        cls,
        bkpt: Dict[str, MiValue],
        kind: str,
        file: Optional[str] = None,
        line: Optional[int] = None,
        condition: Optional[str] = None,
    ) -> "Breakpoint":
        return cls(
            id=_text(bkpt, "number") or "",
            kind=kind,
            enabled=(_text(bkpt, "enabled") or "y") == "y",
            hit_count=_to_int(_text(bkpt, "times"), 0),
            file=_text(bkpt, "file") or file,
            line=_to_int(_text(bkpt, "line"), line),
            address=_text(bkpt, "addr"),
            condition=_text(bkpt, "cond") or condition,
        )


@dataclass
class StopEvent:
    reason: str
    thread_id: int
    frame: Optional[StackFrame] = None
    breakpoint_id: Optional[str] = None


@dataclass
class RunningEvent:
    thread_id: str = "all"


@dataclass
class ExitEvent:
    code: int


class EventChannel(Generic[T]):
    """
    Ordered, synchronous fan-out of one kind of session event.

    Handlers run on the thread that emits, in subscription order. A failing
    handler is logged and skipped.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[T], None]) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def emit(self, event: T) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Handler for '{self.name}' event failed")


@dataclass
class _PendingCommand:
    command: str
    future: "Future[MiRecord]"
    timer: threading.Timer = field(repr=False)


def _error_record(token: Optional[int], message: str) -> MiRecord:
    return MiRecord(kind="result", record_class="error", token=token, data={"msg": message})


class GDBSession:
    """
    Manages a GDB debugging session using the GDB/MI (Machine Interface) protocol.

    One instance owns one GDB subprocess. Tracked commands carry a token and
    are answered through a Future; the stdout reader thread resolves them by
    token and queues unsolicited records as events for ``on_stopped``,
    ``on_running``, ``on_exited`` and ``on_output``. A single dispatcher
    thread delivers the queued events in arrival order, so handlers may
    issue commands of their own without blocking the reader.
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        command_timeout_sec: float = DEFAULT_COMMAND_TIMEOUT_SEC,
        startup_delay_sec: float = STARTUP_DELAY_SEC,
        command_delay_sec: float = COMMAND_DELAY_SEC,
    ):
        self.runner = runner or ProcessRunner()
        self.command_timeout_sec = command_timeout_sec
        self.startup_delay_sec = startup_delay_sec
        self.command_delay_sec = command_delay_sec

        self.process: Optional[subprocess.Popen] = None
        self._state = SessionState.IDLE
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._next_token = 1
        self._pending: Dict[int, _PendingCommand] = {}
        self._buffer = b""
        self._readers: List[threading.Thread] = []
        self._dispatcher: Optional[threading.Thread] = None
        self._exit_reported = False
        self._breakpoints: Dict[str, Breakpoint] = {}

        self.on_stopped: EventChannel[StopEvent] = EventChannel("stopped")
        self.on_running: EventChannel[RunningEvent] = EventChannel("running")
        self.on_exited: EventChannel[ExitEvent] = EventChannel("exited")
        self.on_output: EventChannel[str] = EventChannel("output")

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def is_active(self) -> bool:
        return self.state not in (SessionState.IDLE, SessionState.TERMINATED)

    def _set_state(self, new_state: SessionState) -> None:
        with self._lock:
            # Only process exit or stop() may leave TERMINATED behind.
            if self._state != SessionState.TERMINATED:
                self._state = new_state

    def _require_active(self) -> subprocess.Popen:
        with self._lock:
            process = self.process
            if process is None or self._state in (SessionState.IDLE, SessionState.TERMINATED):
                raise SessionError("No active GDB session")
            return process

    #
    # Lifecycle
    #
    def start(self, config: LaunchConfig) -> Optional[MiRecord]:
        """
        Start GDB and bring the target up according to the launch config.

        Args:
            config: Launch configuration (program, attach pid, remote target, commands)

        Returns:
            Response to the startup command (exec-run, target-attach or
            target-select), or None when the config has nothing to start

        Raises:
            SessionError: A session is already running, or GDB could not be spawned
        """
        with self._lock:
            if self._state not in (SessionState.IDLE, SessionState.TERMINATED):
                raise SessionError("Session already running. Stop it first.")
            self._state = SessionState.STARTING
            self._next_token = 1
            self._pending = {}
            self._buffer = b""
            self._exit_reported = False
            self._breakpoints = {}

        gdb_args = ["--quiet", "--interpreter=mi", *config.gdb_args]
        try:
            process = self.runner.spawn(config.gdb_path, gdb_args, cwd=config.cwd)
        except OSError as e:
            with self._lock:
                self._state = SessionState.IDLE
            logger.error(f"Failed to start GDB session: {e}")
            raise SessionError(f"Failed to start GDB: {e}") from e

        self.process = process
        events: "queue.Queue" = queue.Queue()
        self._dispatcher = threading.Thread(
            target=self._dispatch_events, args=(events,), daemon=True
        )
        self._dispatcher.start()
        stderr_reader = threading.Thread(
            target=self._read_stderr, args=(process, events), daemon=True
        )
        self._readers = [
            threading.Thread(
                target=self._read_stdout, args=(process, events, stderr_reader), daemon=True
            ),
            stderr_reader,
        ]
        for reader in self._readers:
            reader.start()

        # Clock-based wait for GDB's first prompt; there is no readiness record to wait on.
        time.sleep(self.startup_delay_sec)
        with self._lock:
            if self._state == SessionState.TERMINATED:
                raise SessionError("GDB exited during startup")
            self._state = SessionState.READY
        logger.info(f"GDB session started (pid {process.pid}) for '{config.name}'")

        for command in config.setup_commands:
            self.send_console(command)

        startup = self._run_startup_command(config)
        if startup is not None and startup.record_class == "error":
            logger.warning(f"Startup command failed: {startup.get_string('msg')}")

        for command in config.post_load_commands:
            self.send_console(command)

        return startup

    def _run_startup_command(self, config: LaunchConfig) -> Optional[MiRecord]:
        if config.remote or config.qemu:
            if config.program:
                self.send_console(f'file "{_escape_cli(config.program)}"')
            if config.remote:
                host, port = config.remote.host, config.remote.port
            else:
                host, port = "localhost", config.qemu.gdb_port
            return self.execute_command(f"target-select remote {host}:{port}")

        if config.request == "attach":
            if config.process_id is None:
                logger.warning("Attach requested without a process id")
                return None
            return self.execute_command(f"target-attach {config.process_id}")

        if config.program:
            self.send_console(f'file "{_escape_cli(config.program)}"')
            if config.args:
                self.send_console("set args " + " ".join(quote_argument(a) for a in config.args))
            return self.execute_command("exec-run")

        return None

    def stop(self, timeout_sec: float = 5.0) -> None:
        """
        Stop the GDB session.

        Asks GDB to exit, force-kills it if it does not exit within the
        timeout, and resolves every outstanding command with an error record.

        Raises:
            SessionError: No session was ever started
        """
        with self._lock:
            process = self.process
            state = self._state
        if process is None or state == SessionState.IDLE:
            raise SessionError("No active session")

        if state != SessionState.TERMINATED:
            try:
                self.send_command("gdb-exit", timeout_sec=timeout_sec).result()
            except SessionError as e:
                logger.warning(f"Error during GDB exit: {e}")

        try:
            process.wait(timeout=timeout_sec)
        except subprocess.TimeoutExpired:
            logger.warning(f"GDB did not exit within {timeout_sec}s timeout, force killing process")
            process.kill()
            try:
                process.wait(timeout=2)
            except subprocess.TimeoutExpired:
                logger.error("Failed to kill GDB process")

        for reader in self._readers:
            reader.join(timeout=1.0)
        dispatcher = self._dispatcher
        if dispatcher is not None and dispatcher is not threading.current_thread():
            dispatcher.join(timeout=1.0)

        self._fail_pending("GDB session stopped")
        with self._lock:
            self._state = SessionState.TERMINATED
        logger.info("GDB session stopped")

    #
    # Command channel
    #
    def _write(self, process: subprocess.Popen, text: str) -> None:
        if process.stdin is None:
            raise SessionError("GDB stdin is not available")
        with self._write_lock:
            try:
                process.stdin.write(text.encode("utf-8"))
                process.stdin.flush()
            except (OSError, ValueError) as e:
                raise SessionError(f"Failed to write to GDB: {e}") from e

    def send_console(self, command: str) -> None:
        """Send an untracked (CLI) command and give GDB a moment to process it."""
        process = self._require_active()
        logger.debug(f"-> {command}")
        self._write(process, command + "\n")
        time.sleep(self.command_delay_sec)

    def send_command(
        self,
        command: str,
        args: Optional[Dict[str, str]] = None,
        timeout_sec: Optional[float] = None,
    ) -> "Future[MiRecord]":
        """
        Send a tracked MI command without waiting for its response.

        Args:
            command: MI command without token or leading '-' (e.g. "exec-next")
            args: Options formatted as "--key value"
            timeout_sec: Response bound (default: command_timeout_sec)

        Returns:
            Future resolving to the response record, or to a synthetic
            error record on timeout or session end. A failed write sets a
            SessionError on the future.
        """
        process = self._require_active()
        future: "Future[MiRecord]" = Future()
        with self._lock:
            token = self._next_token
            self._next_token += 1
            timer = threading.Timer(
                timeout_sec if timeout_sec is not None else self.command_timeout_sec,
                self._expire,
                args=(token,),
            )
            timer.daemon = True
            self._pending[token] = _PendingCommand(command, future, timer)
        timer.start()

        line = format_command(token, command, args)
        logger.debug(f"-> {line}")
        try:
            self._write(process, line + "\n")
        except SessionError as e:
            pending = self._take_pending(token)
            if pending:
                pending.future.set_exception(e)
        return future

    def execute_command(
        self,
        command: str,
        args: Optional[Dict[str, str]] = None,
        timeout_sec: Optional[float] = None,
    ) -> MiRecord:
        """Send a tracked MI command and wait for its response (bounded by the timeout)."""
        return self.send_command(command, args, timeout_sec).result()

    def _take_pending(self, token: int) -> Optional[_PendingCommand]:
        with self._lock:
            pending = self._pending.pop(token, None)
        if pending:
            pending.timer.cancel()
        return pending

    def _expire(self, token: int) -> None:
        pending = self._take_pending(token)
        if pending is None:
            return
        logger.warning(f"Timeout waiting for response to '{pending.command}' (token {token})")
        pending.future.set_result(
            _error_record(token, f"Timeout waiting for response to '{pending.command}'")
        )

    def _fail_pending(self, reason: str) -> None:
        with self._lock:
            pending = list(self._pending.items())
            self._pending.clear()
        for token, command in pending:
            command.timer.cancel()
            command.future.set_result(_error_record(token, reason))

    #
    # Output handling (reader and dispatcher threads)
    #
    def _dispatch_events(self, events: "queue.Queue") -> None:
        while True:
            item = events.get()
            if item is None:
                break
            channel, event = item
            channel.emit(event)

    def _read_stdout(
        self,
        process: subprocess.Popen,
        events: "queue.Queue",
        stderr_reader: threading.Thread,
    ) -> None:
        stream = process.stdout
        while stream is not None:
            try:
                chunk = stream.read(4096)
            except (OSError, ValueError) as e:
                logger.debug(f"GDB stdout closed: {e}")
                break
            if not chunk:
                break
            self._feed(chunk, events)
        # Queue the exit event after any trailing stderr output.
        stderr_reader.join(timeout=1.0)
        self._handle_exit(process, events)
        events.put(None)

    def _read_stderr(self, process: subprocess.Popen, events: "queue.Queue") -> None:
        stream = process.stderr
        while stream is not None:
            try:
                chunk = stream.read(4096)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            events.put((self.on_output, f"[GDB Error] {chunk.decode('utf-8', errors='replace')}"))

    def _feed(self, data: bytes, events: "queue.Queue") -> None:
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        for raw in lines:
            self._handle_line(raw.decode("utf-8", errors="replace").rstrip("\r"), events)

    def _handle_line(self, line: str, events: "queue.Queue") -> None:
        record = parse_line(line)
        if record is None:
            return
        logger.debug(f"<- {line}")

        if record.kind == "result" and record.token is not None:
            pending = self._take_pending(record.token)
            if pending:
                pending.future.set_result(record)
                return

        if record.kind == "console":
            events.put((self.on_output, record.text))
        elif record.kind == "exec" and record.record_class == "stopped":
            events.put((self.on_stopped, self._handle_stopped(record)))
        elif record.kind == "exec" and record.record_class == "running":
            self._set_state(SessionState.RUNNING)
            running = RunningEvent(thread_id=record.get_string("thread-id") or "all")
            events.put((self.on_running, running))
        else:
            events.put((self.on_output, f"[GDB] {line}"))

    def _handle_stopped(self, record: MiRecord) -> StopEvent:
        frame = record.get_tuple("frame")
        breakpoint_id = record.get_string("bkptno")
        event = StopEvent(
            reason=record.get_string("reason") or "",
            thread_id=_to_int(record.get_string("thread-id"), 1),
            frame=StackFrame.from_mi(frame, level=0) if frame is not None else None,
            breakpoint_id=breakpoint_id,
        )
        with self._lock:
            if breakpoint_id in self._breakpoints:
                self._breakpoints[breakpoint_id].hit_count += 1
        self._set_state(SessionState.STOPPED)
        return event

    def _handle_exit(self, process: subprocess.Popen, events: "queue.Queue") -> None:
        try:
            code = process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            code = None
        with self._lock:
            if self._exit_reported or self.process is not process:
                return
            self._exit_reported = True
            self._state = SessionState.TERMINATED
        self._fail_pending("GDB session terminated")
        logger.info(f"GDB exited with code {code}")
        events.put((self.on_exited, ExitEvent(code=code if code is not None else -1)))

    #
    # Execution control
    #
    def continue_execution(self) -> MiRecord:
        """Continue execution; the next stop arrives on ``on_stopped``."""
        return self.execute_command("exec-continue")

    def step_in(self) -> MiRecord:
        return self.execute_command("exec-step")

    def step_over(self) -> MiRecord:
        return self.execute_command("exec-next")

    def step_out(self) -> MiRecord:
        return self.execute_command("exec-finish")

    def interrupt(self) -> None:
        """
        Interrupt (pause) a running program.

        Sends SIGINT to the GDB process, which pauses the debugged program;
        the resulting stop is reported on ``on_stopped``.
        """
        process = self._require_active()
        process.send_signal(signal.SIGINT)

    #
    # Breakpoints
    #
    def set_breakpoint(
        self, file: str, line: int, condition: Optional[str] = None
    ) -> Optional[Breakpoint]:
        """
        Set a breakpoint at file:line.

        Returns:
            The breakpoint, or None if GDB did not confirm one
        """
        location = quote_argument(f"{file}:{line}")
        return self._insert_breakpoint(location, "line", condition, file=file, line=line)

    def set_address_breakpoint(
        self, address: str, condition: Optional[str] = None
    ) -> Optional[Breakpoint]:
        return self._insert_breakpoint(f"*{address}", "address", condition)

    def _insert_breakpoint(
        self,
        location: str,
        kind: str,
        condition: Optional[str],
        file: Optional[str] = None,
        line: Optional[int] = None,
    ) -> Optional[Breakpoint]:
        command = "break-insert"
        if condition:
            command += f" -c {quote_argument(condition)}"
        result = self.execute_command(f"{command} {location}")

        bkpt = result.get_tuple("bkpt") if result.record_class == "done" else None
        if not bkpt or not _text(bkpt, "number"):
            logger.warning(
                f"Could not set breakpoint at {location}: "
                f"{result.get_string('msg') or result.record_class}"
            )
            return None

        breakpoint = Breakpoint.from_mi(bkpt, kind, file=file, line=line, condition=condition)
        with self._lock:
            self._breakpoints[breakpoint.id] = breakpoint
        return breakpoint

    def remove_breakpoint(self, breakpoint_id: str) -> None:
        self.execute_command(f"break-delete {breakpoint_id}")
        with self._lock:
            self._breakpoints.pop(breakpoint_id, None)

    def list_breakpoints(self) -> List[Breakpoint]:
        with self._lock:
            return list(self._breakpoints.values())

    #
    # Inspection
    #
    def get_stack_frames(self, thread_id: Optional[int] = None) -> List[StackFrame]:
        """
        Get the stack frames of the current (or given) thread, innermost first.

        Returns an empty list if GDB has no stack to report.
        """
        args = {"thread": str(thread_id)} if thread_id is not None else None
        result = self.execute_command("stack-list-frames", args)
        stack = result.get_list("stack") if result.record_class == "done" else None

        frames = []
        for item in stack or []:
            # GDB names the elements: stack=[frame={...},frame={...}]
            frame = item.get("frame", item) if isinstance(item, dict) else None
            if isinstance(frame, dict):
                frames.append(StackFrame.from_mi(frame))
        return frames

    def get_registers(self) -> List[RegisterValue]:
        """Get register values (hex) for the current frame."""
        result = self.execute_command("data-list-register-values x")
        values = result.get_list("register-values") if result.record_class == "done" else None

        registers = []
        for item in values or []:
            if not isinstance(item, dict):
                continue
            number, value = _text(item, "number"), _text(item, "value")
            if number is not None and value is not None:
                registers.append(RegisterValue(number=number, value=value))
        return registers

    def get_register_names(self) -> List[str]:
        """Register names indexed by register number (unused numbers are empty strings)."""
        result = self.execute_command("data-list-register-names")
        names = result.get_list("register-names") if result.record_class == "done" else None
        return [name if isinstance(name, str) else "" for name in names or []]

    def get_named_registers(self) -> Dict[str, str]:
        names = self.get_register_names()
        named = {}
        for register in self.get_registers():
            index = _to_int(register.number)
            if index is not None and 0 <= index < len(names) and names[index]:
                named[names[index]] = register.value
        return named

    def read_memory(self, address: str, length: int) -> MemoryRead:
        """
        Read ``length`` bytes starting at ``address`` (an address or expression).

        Failures come back as a MemoryRead with ``error`` set.
        """
        result = self.execute_command(f"data-read-memory-bytes {quote_argument(address)} {length}")
        memory = result.get_list("memory") if result.record_class == "done" else None

        if memory and isinstance(memory[0], dict):
            block = memory[0]
            return MemoryRead(
                address=_text(block, "begin") or address,
                contents=_text(block, "contents") or "",
            )
        return MemoryRead(
            address=address,
            contents="",
            error=result.get_string("msg") or "Failed to read memory",
        )

    def evaluate_expression(self, expression: str) -> Evaluation:
        result = self.execute_command(f"data-evaluate-expression {quote_argument(expression)}")
        if result.record_class == "done":
            return Evaluation(expression=expression, value=result.get_string("value"))
        return Evaluation(expression=expression, error=result.get_string("msg") or "Evaluation failed")

    def get_status(self) -> Dict[str, Any]:
        """Get the current status of the GDB session."""
        with self._lock:
            return {
                "state": self._state.value,
                "is_active": self._state not in (SessionState.IDLE, SessionState.TERMINATED),
                "pid": self.process.pid if self.process else None,
                "pending_commands": len(self._pending),
                "breakpoints": len(self._breakpoints),
            }


def _escape_cli(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')
