"""
Debugger session driver.

Owns the external debugger subprocess (GDB-compatible console) and turns
its line-oriented text console into a strict request/response channel:

1. Write the command line
2. Write ``echo <sentinel>\\n`` carrying a per-command sequence number
3. Collect output lines until that sentinel is echoed back

Only one command is in flight at a time; concurrent callers queue on a
lock. Output left over from a command that timed out is recognised by its
older sentinel and discarded.

Example:
    async with await DebuggerSession.start("arm-none-eabi-gdb", "fw.elf", "localhost:61234") as gdb:
        start, end = await gdb.restore("chunk.bin", 0x20010000)
        result = await gdb.call("copy_to_flash", 0x0, 4096)
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from gdb_flash_loader.errors import (
    DebuggerCommandError,
    DebuggerError,
    DebuggerExitedError,
    DebuggerStartupError,
    DebuggerTimeoutError,
)
from gdb_flash_loader.debugger.grammar import (
    GDB_CONSOLE_V1,
    ResponseGrammar,
    find_errors,
    is_connected,
    parse_address_range,
    parse_numeric_result,
)

logger = logging.getLogger(__name__)

SENTINEL_PREFIX = "__GDB_FLASH_LOADER_DONE_"
SENTINEL_RE = re.compile(re.escape(SENTINEL_PREFIX) + r"(\d+)__")

DEFAULT_RESPONSE_TIMEOUT = 5.0
DEFAULT_CONNECT_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 2.0

# Sent before "target remote"; keeps the console non-interactive
INIT_COMMANDS = (
    "set confirm off",
    "set pagination off",
    "set width 0",
)


@dataclass
class DebuggerResponse:
    """
    Accumulated output of one command turn.

    Attributes:
        command: Command line that was sent
        lines: Output lines (prompts stripped, blank lines dropped)
        elapsed: Seconds between sending and completion
        errors: Lines the grammar recognises as error reports
    """
    command: str
    lines: List[str] = field(default_factory=list)
    elapsed: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def ok(self) -> bool:
        return not self.errors


def _format_arg(value: Union[int, str]) -> str:
    if isinstance(value, int):
        return f"{value:#x}" if value >= 0 else str(value)
    return str(value)


class DebuggerSession:
    """
    Turn-based command channel to a debugger subprocess.

    Use ``DebuggerSession.start()`` to spawn and connect; always release
    with ``shutdown()`` (or ``async with``) so no debugger is orphaned.
    """

    def __init__(
        self,
        process: Optional[asyncio.subprocess.Process],
        grammar: ResponseGrammar = GDB_CONSOLE_V1,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
    ):
        self._process = process
        self.grammar = grammar
        self.response_timeout = response_timeout
        self._lock = asyncio.Lock()
        self._seq = 0
        self._closed = False

    @classmethod
    async def start(
        cls,
        gdb_path: Union[str, Path],
        executable_path: Union[str, Path],
        endpoint: str,
        *,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        grammar: ResponseGrammar = GDB_CONSOLE_V1,
        extra_init_commands: Sequence[str] = (),
    ) -> "DebuggerSession":
        """
        Spawn the debugger, load the symbol file and connect to the target.

        Args:
            gdb_path: Debugger executable (e.g. "arm-none-eabi-gdb")
            executable_path: Target ELF with symbols
            endpoint: Remote target "host:port"
            response_timeout: Default per-command deadline (seconds)
            connect_timeout: Deadline for "target remote"
            grammar: Response grammar for this debugger
            extra_init_commands: Commands sent after connecting

        Returns:
            Connected DebuggerSession

        Raises:
            DebuggerStartupError: If spawn or connection fails
        """
        args = [str(gdb_path), "-q", str(executable_path)]
        logger.info(f"Starting debugger: {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise DebuggerStartupError(f"Cannot start debugger {gdb_path}: {e}")

        session = cls(process, grammar=grammar, response_timeout=response_timeout)
        try:
            await session._handshake(endpoint, connect_timeout, extra_init_commands)
        except (Exception, asyncio.CancelledError):
            await asyncio.shield(session.shutdown())
            raise
        return session

    async def _handshake(
        self,
        endpoint: str,
        connect_timeout: float,
        extra_init_commands: Sequence[str],
    ) -> None:
        try:
            # First turn also drains the banner and symbol loading output
            for command in INIT_COMMANDS:
                response = await self.send(command)
                if response.errors:
                    raise DebuggerStartupError(
                        f"Debugger reported errors during startup: {'; '.join(response.errors)}"
                    )

            response = await self.send(f"target remote {endpoint}", timeout=connect_timeout)
            if response.errors or not is_connected(response, self.grammar):
                detail = "; ".join(response.errors) or response.text or "no output"
                raise DebuggerStartupError(f"Could not connect to {endpoint}: {detail}")
            logger.info(f"Connected to remote target {endpoint}")

            for command in extra_init_commands:
                await self.checked(command)
        except DebuggerStartupError:
            raise
        except DebuggerError as e:
            raise DebuggerStartupError(f"Debugger handshake failed: {e}") from e

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None and not self._closed

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    async def _write(self, text: str) -> None:
        if self._process is None or self._process.stdin is None:
            raise DebuggerExitedError("Debugger process is not running")
        try:
            self._process.stdin.write(text.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise DebuggerExitedError(f"Debugger input closed: {e}")

    async def _collect(self, seq: int, lines: List[str]) -> None:
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                logger.warning("Debugger process closed its output")
                raise DebuggerExitedError("Debugger exited unexpectedly")
            line = self.grammar.strip_prompt(raw.decode("utf-8", errors="replace"))
            match = SENTINEL_RE.search(line)
            if match is None:
                if line:
                    logger.debug(f"<<< {line}")
                    lines.append(line)
                continue

            before = line[:match.start()].strip()
            if int(match.group(1)) == seq:
                if before:
                    lines.append(before)
                return
            # Sentinel of an earlier, timed-out command: its output is stale
            logger.debug(f"Discarding {len(lines)} stale line(s) before sentinel {match.group(1)}")
            lines.clear()

    async def send(self, command: str, timeout: Optional[float] = None) -> DebuggerResponse:
        """
        Send one command and wait for its complete response.

        Args:
            command: Debugger command line (without newline)
            timeout: Deadline in seconds (default: response_timeout)

        Returns:
            DebuggerResponse with the collected output

        Raises:
            DebuggerTimeoutError: If no complete response arrives in time
            DebuggerExitedError: If the debugger process has gone away
        """
        deadline = self.response_timeout if timeout is None else timeout
        async with self._lock:
            if not self.is_running:
                raise DebuggerExitedError("Debugger process is not running")

            self._seq += 1
            seq = self._seq
            lines: List[str] = []
            started = time.monotonic()

            logger.debug(f">>> {command}")
            await self._write(f"{command}\necho {SENTINEL_PREFIX}{seq}__\\n\n")

            try:
                await asyncio.wait_for(self._collect(seq, lines), timeout=deadline)
            except asyncio.TimeoutError:
                raise DebuggerTimeoutError(
                    f"No response to '{command}' within {deadline:.1f}s",
                    command=command,
                    partial_output=lines,
                )

            response = DebuggerResponse(
                command=command,
                lines=lines,
                elapsed=time.monotonic() - started,
                errors=find_errors(lines, self.grammar),
            )
            if response.errors:
                logger.debug(f"'{command}' reported: {response.errors}")
            return response

    async def checked(self, command: str, timeout: Optional[float] = None) -> DebuggerResponse:
        """Send a command and raise DebuggerCommandError if it reports errors."""
        response = await self.send(command, timeout=timeout)
        if response.errors:
            raise DebuggerCommandError(command, response.errors)
        return response

    async def restore(
        self,
        binary_path: Union[str, Path],
        address: int,
        timeout: Optional[float] = None,
    ) -> Tuple[int, int]:
        """
        Load a raw binary file into target memory at ``address``.

        Returns:
            (start_address, end_address) reported by the debugger

        Raises:
            DebuggerCommandError: If the debugger reports an error
            ResponseParseError: If the confirmation line is missing
        """
        path = Path(binary_path).as_posix()
        response = await self.checked(f'restore "{path}" binary {address:#x}', timeout=timeout)
        return parse_address_range(response, self.grammar)

    async def call(self, function: str, *args: Union[int, str], timeout: Optional[float] = None) -> int:
        """
        Call a target function and return its numeric result.

        The call blocks until the target function returns.

        Raises:
            DebuggerCommandError: If the debugger reports an error
            ResponseParseError: If no ``$N = value`` line is printed
        """
        arg_list = ", ".join(_format_arg(a) for a in args)
        response = await self.checked(f"call {function}({arg_list})", timeout=timeout)
        return parse_numeric_result(response, self.grammar)

    async def dump_memory(
        self,
        output_path: Union[str, Path],
        start_address: int,
        end_address: int,
        timeout: Optional[float] = None,
    ) -> Path:
        """Dump target memory [start, end) to a host file (created by the debugger)."""
        path = Path(output_path)
        await self.checked(
            f'dump binary memory "{path.as_posix()}" {start_address:#x} {end_address:#x}',
            timeout=timeout,
        )
        return path

    async def monitor(self, command: str, timeout: Optional[float] = None) -> DebuggerResponse:
        """Pass a command through to the remote stub."""
        return await self.checked(f"monitor {command}", timeout=timeout)

    async def monitor_reset(self) -> DebuggerResponse:
        return await self.monitor("reset")

    async def monitor_halt(self) -> DebuggerResponse:
        return await self.monitor("halt")

    async def break_at(self, symbol: str) -> DebuggerResponse:
        return await self.checked(f"break {symbol}")

    async def continue_execution(self, timeout: Optional[float] = None) -> DebuggerResponse:
        """Resume the target; returns once it stops again (e.g. at a breakpoint)."""
        return await self.checked("continue", timeout=timeout)

    async def help(self) -> DebuggerResponse:
        return await self.send("help")

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """
        Disconnect from the target and stop the debugger.

        Safe to call more than once and on every exit path. Escalates to
        terminate/kill when the debugger does not quit in time.
        """
        if self._closed:
            return
        self._closed = True
        process = self._process
        if process is None:
            return

        if process.returncode is None:
            try:
                for command in ("disconnect", "quit"):
                    logger.debug(f">>> {command}")
                    process.stdin.write(f"{command}\n".encode())
                await process.stdin.drain()
                process.stdin.close()
            except (BrokenPipeError, ConnectionResetError, OSError) as e:
                logger.debug(f"Debugger input already closed: {e}")

            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Debugger did not quit, terminating")
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    logger.warning("Debugger did not terminate, killing")
                    process.kill()
                    await process.wait()
                except ProcessLookupError:
                    pass

        logger.info(f"Debugger session closed (exit code {process.returncode})")

    async def __aenter__(self) -> "DebuggerSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await asyncio.shield(self.shutdown())
