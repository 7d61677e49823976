"""Shared fixtures: an in-process debugger double and target parameters."""

import asyncio
import re
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from gdb_flash_loader.config import TargetParameters
from gdb_flash_loader.debugger.grammar import find_errors
from gdb_flash_loader.debugger.session import DebuggerResponse, DebuggerSession
from gdb_flash_loader.errors import DebuggerExitedError, DebuggerTimeoutError

FAKE_GDB = Path(__file__).parent / "fake_gdb.py"

RAM_ADDRESS = 0x20010000

_RESTORE_RE = re.compile(r'restore "([^"]+)" binary (0x[0-9a-fA-F]+)')
_CALL_RE = re.compile(r"call (\w+)\((0x[0-9a-fA-F]+|0), (0x[0-9a-fA-F]+|0)\)")
_DUMP_RE = re.compile(r'dump binary memory "([^"]+)" (0x[0-9a-fA-F]+) (0x[0-9a-fA-F]+)')


class FakeDebugger(DebuggerSession):
    """
    Debugger double answering with GDB console text, without a subprocess.

    Restores read the staged file into a simulated RAM buffer; calls to the
    copy routine write RAM into a simulated flash and return the byte sum.

    Args:
        params: Target parameters the transfer will use
        bad_checksums: chunk index -> number of first calls returning a wrong checksum
        call_timeouts: chunk index -> number of first calls that time out
        restore_shift: Offset added to the start address reported by restore
        hang_on_chunk: Chunk index whose copy call never returns
        exit_on_chunk: Chunk index whose copy call finds the debugger gone
        hang_on_command: Console command that never returns
    """

    def __init__(
        self,
        params: TargetParameters,
        bad_checksums: Optional[Dict[int, int]] = None,
        call_timeouts: Optional[Dict[int, int]] = None,
        restore_shift: int = 0,
        hang_on_chunk: Optional[int] = None,
        exit_on_chunk: Optional[int] = None,
        hang_on_command: Optional[str] = None,
    ):
        super().__init__(process=None)
        self.params = params
        self.bad_checksums = dict(bad_checksums or {})
        self.call_timeouts = dict(call_timeouts or {})
        self.restore_shift = restore_shift
        self.hang_on_chunk = hang_on_chunk
        self.exit_on_chunk = exit_on_chunk
        self.hang_on_command = hang_on_command
        self.hanging = asyncio.Event()
        self.ram = b""
        self.flash: Dict[int, bytes] = {}
        self.commands: List[str] = []
        self.restored_files: List[Path] = []
        self.calls: List[tuple] = []
        self.call_attempts: Dict[int, int] = {}
        self.shutdown_calls = 0
        self.history = 0

    @property
    def is_running(self) -> bool:
        return not self._closed

    def flash_image(self) -> bytes:
        """Concatenate flash writes in offset order."""
        return b"".join(self.flash[offset] for offset in sorted(self.flash))

    def chunk_index(self, flash_offset: int) -> int:
        return (flash_offset - self.params.flash_base) // self.params.chunk_size

    async def send(self, command: str, timeout: Optional[float] = None) -> DebuggerResponse:
        self.commands.append(command)
        await asyncio.sleep(0)
        if command == self.hang_on_command:
            self.hanging.set()
            await asyncio.Event().wait()
        lines = await self._respond(command)
        return DebuggerResponse(command=command, lines=lines, errors=find_errors(lines, self.grammar))

    async def _respond(self, command: str) -> List[str]:
        match = _RESTORE_RE.match(command)
        if match:
            path, address = Path(match.group(1)), int(match.group(2), 16)
            self.restored_files.append(path)
            self.ram = path.read_bytes()
            start = address + self.restore_shift
            return [
                f"Restoring binary file {path} into memory (0x{start:x} to 0x{start + len(self.ram):x})"
            ]

        match = _CALL_RE.match(command)
        if match:
            offset, length = int(match.group(2), 16), int(match.group(3), 16)
            index = self.chunk_index(offset)
            attempt = self.call_attempts.get(index, 0) + 1
            self.call_attempts[index] = attempt
            self.calls.append((match.group(1), offset, length))

            if index == self.hang_on_chunk:
                self.hanging.set()
                await asyncio.Event().wait()
            if index == self.exit_on_chunk:
                raise DebuggerExitedError("Debugger exited unexpectedly")
            if attempt <= self.call_timeouts.get(index, 0):
                raise DebuggerTimeoutError(f"No response to '{command}'", command=command)

            self.flash[offset] = self.ram[:length]
            value = sum(self.ram[:length]) & 0xFFFFFFFF
            if attempt <= self.bad_checksums.get(index, 0):
                value = (value + 1) & 0xFFFFFFFF
            self.history += 1
            return [f"${self.history} = {value}"]

        match = _DUMP_RE.match(command)
        if match:
            start, end = int(match.group(2), 16), int(match.group(3), 16)
            Path(match.group(1)).write_bytes(self.ram[:end - start])
            return []

        return []

    async def shutdown(self, timeout: float = 0.0) -> None:
        self.shutdown_calls += 1
        self._closed = True


@pytest.fixture
def params() -> TargetParameters:
    """Small RAM buffer so a few hundred bytes span several chunks."""
    return TargetParameters(
        ram_buffer_address=RAM_ADDRESS,
        ram_buffer_size=64,
        flash_base=0,
        copy_function="copy_to_flash",
        chunk_size=64,
    )


@pytest.fixture
def image() -> bytes:
    """10 chunks of 64 bytes, the last one short."""
    return bytes((i * 7 + 3) & 0xFF for i in range(64 * 9 + 17))


@pytest.fixture
def fake_gdb_args():
    """(gdb_path, executable_path) that launch the scripted console."""
    return sys.executable, str(FAKE_GDB)
