"""
Chunked transfer of a binary image into target flash via the debugger.

Per chunk the orchestrator walks a fixed state sequence:

    STAGED -> RESTORED -> COPY_INVOKED -> VERIFIED -> ADVANCED

1. Stage the chunk to a temp file, compute the host checksum
2. ``restore <file> binary <ram_buffer_address>``; the reported address
   range must span exactly the chunk length
3. ``call <copy_function>(<flash_base + offset>, <length>)``
4. Compare the returned checksum with the host checksum
5. Unstage, update progress, emit a ProgressEvent

A failed attempt (timeout, parse error, debugger error, checksum mismatch,
staging error) is retried with the same chunk, fully restaged and
re-restored, up to ``max_attempts``. When attempts run out the session
fails and no later chunk is touched. The debugger is shut down on every
exit path, including cancellation.

Chunks are strictly sequential. The only overlap is staging chunk N+1 to
disk while chunk N waits on the debugger.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from gdb_flash_loader.checksum import DEFAULT_ALGORITHM, get_checksum_algorithm
from gdb_flash_loader.chunks import Chunk, ChunkSequence, ChunkStore, StagedFile, read_image, split
from gdb_flash_loader.config import TargetParameters, TransferConfig
from gdb_flash_loader.core.messages import failure_code_for
from gdb_flash_loader.core.results import OperationResult
from gdb_flash_loader.debugger.grammar import get_grammar
from gdb_flash_loader.debugger.session import DebuggerSession
from gdb_flash_loader.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    FlashLoaderError,
    ResponseParseError,
    TransferCancelled,
)

logger = logging.getLogger(__name__)


class TransferStatus(Enum):
    """Terminal or current status of a transfer session."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkState(Enum):
    """Per-chunk state machine steps."""
    STAGED = "staged"
    RESTORED = "restored"
    COPY_INVOKED = "copy_invoked"
    VERIFIED = "verified"
    ADVANCED = "advanced"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressEvent:
    """
    Emitted after every chunk that advanced.

    Attributes:
        chunk_index: Index of the chunk that was verified
        chunks_total: Number of chunks in the image
        bytes_remaining: Image bytes not yet verified
        attempts: Attempts this chunk needed (1 = no retry)
        offset: Image offset of the chunk
        length: Chunk length in bytes
    """
    chunk_index: int
    chunks_total: int
    bytes_remaining: int
    attempts: int = 1
    offset: int = 0
    length: int = 0


ProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class TransferSession:
    """
    Progress and outcome of one transfer, mutated only by FlashTransfer.

    Attributes:
        params: Target parameters used for the transfer
        chunks_total / chunks_done: Chunk progress
        bytes_total / bytes_remaining: Byte progress
        status: PENDING, RUNNING, COMPLETED or FAILED
        reason: Failure reason (empty unless FAILED)
        failed_chunk: Index of the chunk being processed when the session failed
        current_chunk: Index of the chunk in progress
        retries: Retries per chunk index (only chunks that needed one)
        events: Progress events in emission order
        image_checksum: Host checksum of the whole image
        error: Exception that ended the session, if any
    """
    params: TargetParameters
    debugger: Optional[DebuggerSession] = None
    chunks_total: int = 0
    chunks_done: int = 0
    bytes_total: int = 0
    bytes_remaining: int = 0
    status: TransferStatus = TransferStatus.PENDING
    reason: str = ""
    failed_chunk: Optional[int] = None
    current_chunk: Optional[int] = None
    retries: Dict[int, int] = field(default_factory=dict)
    events: List[ProgressEvent] = field(default_factory=list)
    image_checksum: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == TransferStatus.COMPLETED

    @property
    def progress(self) -> float:
        """Fraction of chunks verified (1.0 for an empty image)."""
        if self.chunks_total == 0:
            return 1.0 if self.ok else 0.0
        return self.chunks_done / self.chunks_total

    def to_result(self) -> OperationResult:
        """Convert to an OperationResult for display."""
        start = self.params.flash_base
        region = f"0x{start:08X}-0x{start + self.bytes_total:08X}"
        if self.ok:
            result = OperationResult.success("upload", region=region, bytes_len=self.bytes_total)
        else:
            result = OperationResult.failure(
                "upload",
                self.reason or "Transfer did not complete",
                region=region,
                bytes_len=self.bytes_total,
            )
            if self.error is not None:
                result.metadata["failure_code"] = failure_code_for(self.error).value
        result.checksums["image"] = self.image_checksum
        for index, count in sorted(self.retries.items()):
            result.add_warning(f"Chunk {index} needed {count} retr{'y' if count == 1 else 'ies'}")
        result.metadata.update({
            "status": self.status.value,
            "chunks_total": self.chunks_total,
            "chunks_done": self.chunks_done,
            "bytes_remaining": self.bytes_remaining,
            "failed_chunk": self.failed_chunk,
            "retries": dict(self.retries),
        })
        return result


class FlashTransfer:
    """
    Transfer orchestrator driving a DebuggerSession chunk by chunk.

    Example:
        transfer = FlashTransfer(gdb, params, max_attempts=3)
        session = await transfer.run(image)
        print(session.status)
    """

    def __init__(
        self,
        debugger: DebuggerSession,
        params: TargetParameters,
        *,
        max_attempts: int = 3,
        response_timeout: Optional[float] = None,
        call_timeout: Optional[float] = None,
        session_timeout: Optional[float] = None,
        checksum_algorithm: str = DEFAULT_ALGORITHM,
        work_dir: Optional[Union[str, Path]] = None,
        verify_readback: bool = False,
        prepare_breakpoint: Optional[str] = None,
        progress_cb: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        """
        Args:
            debugger: Connected debugger session (shut down when run() ends)
            params: Target parameters
            max_attempts: Attempts per chunk before the session fails
            response_timeout: Deadline for restore/dump commands
            call_timeout: Deadline for the copy routine call
            session_timeout: Deadline for the whole transfer
            checksum_algorithm: Host checksum algorithm name
            work_dir: Directory for staged files (default: fresh temp dir)
            verify_readback: Dump RAM after restore and compare bytes
            prepare_breakpoint: Reset the target and run to this symbol first
            progress_cb: Called with a ProgressEvent after each chunk
            cancel_event: Set to request cancellation
        """
        self.debugger = debugger
        self.params = params
        self.max_attempts = max_attempts
        self.response_timeout = response_timeout
        self.call_timeout = call_timeout
        self.session_timeout = session_timeout
        self.checksum_algorithm = checksum_algorithm
        self.work_dir = work_dir
        self.verify_readback = verify_readback
        self.prepare_breakpoint = prepare_breakpoint
        self.progress_cb = progress_cb
        self.cancel_event = cancel_event
        self.chunk_states: Dict[int, ChunkState] = {}

    @classmethod
    def from_config(
        cls,
        debugger: DebuggerSession,
        config: TransferConfig,
        progress_cb: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> "FlashTransfer":
        return cls(
            debugger,
            config.target,
            max_attempts=config.max_attempts,
            response_timeout=config.response_timeout,
            call_timeout=config.call_timeout,
            session_timeout=config.session_timeout,
            checksum_algorithm=config.checksum_algorithm,
            work_dir=config.work_dir,
            verify_readback=config.verify_readback,
            prepare_breakpoint=config.prepare_breakpoint,
            progress_cb=progress_cb,
            cancel_event=cancel_event,
        )

    def _set_state(self, chunk: Chunk, state: ChunkState) -> None:
        self.chunk_states[chunk.index] = state
        logger.debug(f"Chunk {chunk.index}: {state.value}")

    def _check_cancelled(self, where: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise TransferCancelled(f"Transfer cancelled {where}")

    async def _cancellable(self, coro):
        """Await ``coro``; abandon it as soon as the cancel event is set."""
        if self.cancel_event is None:
            return await coro

        task = asyncio.ensure_future(coro)
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if task.cancelled():
            raise TransferCancelled("Transfer cancelled during a debugger command")
        return task.result()

    def _fail(self, session: TransferSession, error: BaseException) -> None:
        session.status = TransferStatus.FAILED
        session.error = error
        session.failed_chunk = session.current_chunk
        if session.current_chunk is not None:
            session.reason = f"Chunk {session.current_chunk}: {error}"
        else:
            session.reason = str(error)
        logger.error(f"Transfer failed: {session.reason}")

    async def run(self, image: bytes) -> TransferSession:
        """
        Transfer ``image`` to flash.

        Never raises for transfer errors: the returned session carries the
        terminal status and reason. Task cancellation is recorded and then
        re-raised. The debugger is shut down before returning.

        Returns:
            TransferSession with status COMPLETED or FAILED
        """
        session = TransferSession(params=self.params, debugger=self.debugger)
        try:
            self.params.validate()
            if self.max_attempts < 1:
                raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
            chunks = split(image, self.params.chunk_size)
            checksum = get_checksum_algorithm(self.checksum_algorithm)
            session.chunks_total = len(chunks)
            session.bytes_total = len(image)
            session.bytes_remaining = len(image)
            session.image_checksum = checksum(chunks.image)
            session.status = TransferStatus.RUNNING
            logger.info(
                f"Transferring {len(image):,} bytes in {len(chunks)} chunk(s) of up to "
                f"{self.params.chunk_size} bytes to flash 0x{self.params.flash_base:08X}"
            )

            with ChunkStore(self.work_dir) as store:
                if self.session_timeout is not None:
                    try:
                        await asyncio.wait_for(
                            self._prepare_and_transfer(chunks, store, session),
                            timeout=self.session_timeout,
                        )
                    except asyncio.TimeoutError:
                        raise TransferCancelled(
                            f"Session timed out after {self.session_timeout:.1f}s"
                        )
                else:
                    await self._prepare_and_transfer(chunks, store, session)

            session.status = TransferStatus.COMPLETED
            session.current_chunk = None
            logger.info(f"Transfer complete: {session.chunks_done}/{session.chunks_total} chunks verified")
        except FlashLoaderError as e:
            self._fail(session, e)
        except asyncio.CancelledError:
            self._fail(session, TransferCancelled("Transfer cancelled"))
            raise
        finally:
            await asyncio.shield(self.debugger.shutdown())
        return session

    async def _prepare_and_transfer(
        self, chunks: ChunkSequence, store: ChunkStore, session: TransferSession
    ) -> None:
        if self.prepare_breakpoint:
            await self._cancellable(self._prepare_target())
        await self._transfer(chunks, store, session)

    async def _stage(self, store: ChunkStore, chunk: Chunk) -> StagedFile:
        """Stage in a worker thread; a cancelled wait still removes the file."""
        future = asyncio.ensure_future(asyncio.to_thread(store.stage, chunk))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            (staged,) = await asyncio.gather(future, return_exceptions=True)
            if isinstance(staged, StagedFile):
                store.unstage(staged)
            raise

    async def _prepare_target(self) -> None:
        """Reset the target and let it run to the breakpoint symbol."""
        symbol = self.prepare_breakpoint
        logger.info(f"Preparing target: reset and run to {symbol}")
        await self.debugger.monitor_reset()
        await self.debugger.break_at(symbol)
        await self.debugger.continue_execution(timeout=self.call_timeout)
        await self.debugger.monitor_halt()
        await self.debugger.checked("delete")

    async def _transfer(self, chunks: ChunkSequence, store: ChunkStore, session: TransferSession) -> None:
        checksum = get_checksum_algorithm(self.checksum_algorithm)
        prefetch: Optional[asyncio.Future] = None
        try:
            for chunk in chunks:
                session.current_chunk = chunk.index
                self._check_cancelled(f"before chunk {chunk.index}")

                staged = None
                if prefetch is not None:
                    # Shielded: on cancellation the finally below collects and removes the file
                    try:
                        staged = await asyncio.shield(prefetch)
                    except FlashLoaderError as e:
                        logger.warning(f"Prefetch staging of chunk {chunk.index} failed: {e}")
                    prefetch = None

                if not chunk.is_last:
                    prefetch = asyncio.ensure_future(
                        asyncio.to_thread(store.stage, chunks[chunk.index + 1])
                    )

                attempts = await self._process_chunk(chunk, staged, store, session, checksum(chunk.data))

                session.chunks_done += 1
                session.bytes_remaining -= chunk.length
                self._set_state(chunk, ChunkState.ADVANCED)
                event = ProgressEvent(
                    chunk_index=chunk.index,
                    chunks_total=session.chunks_total,
                    bytes_remaining=session.bytes_remaining,
                    attempts=attempts,
                    offset=chunk.offset,
                    length=chunk.length,
                )
                session.events.append(event)
                logger.info(
                    f"Chunk {chunk.index + 1}/{session.chunks_total} verified "
                    f"({session.bytes_remaining:,} bytes remaining)"
                )
                if self.progress_cb:
                    self.progress_cb(event)
        finally:
            if prefetch is not None:
                (leftover,) = await asyncio.gather(prefetch, return_exceptions=True)
                if isinstance(leftover, StagedFile):
                    store.unstage(leftover)

    async def _process_chunk(
        self,
        chunk: Chunk,
        staged: Optional[StagedFile],
        store: ChunkStore,
        session: TransferSession,
        host_checksum: int,
    ) -> int:
        """Run attempts for one chunk; returns the number of attempts used."""
        try:
            for attempt in range(1, self.max_attempts + 1):
                self._check_cancelled(f"at chunk {chunk.index}")
                try:
                    if staged is None or not staged.exists():
                        staged = await self._stage(store, chunk)
                    self._set_state(chunk, ChunkState.STAGED)
                    await self._cancellable(self._attempt(chunk, staged, host_checksum))
                    return attempt
                except FlashLoaderError as e:
                    if not e.retryable:
                        raise
                    if attempt == self.max_attempts:
                        self._set_state(chunk, ChunkState.FAILED)
                        raise
                    logger.warning(
                        f"Chunk {chunk.index} attempt {attempt}/{self.max_attempts} failed: {e}; retrying"
                    )
                    self._set_state(chunk, ChunkState.RETRYING)
                    session.retries[chunk.index] = session.retries.get(chunk.index, 0) + 1
                    # Each retry restages and re-restores the full chunk
                    if staged is not None:
                        store.unstage(staged)
                        staged = None
        finally:
            if staged is not None:
                store.unstage(staged)
        raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")

    async def _attempt(self, chunk: Chunk, staged: StagedFile, host_checksum: int) -> None:
        params = self.params
        start, end = await self.debugger.restore(
            staged.path, params.ram_buffer_address, timeout=self.response_timeout
        )
        if start != params.ram_buffer_address or end - start != chunk.length:
            raise ResponseParseError(
                f"Restore reported 0x{start:08X}-0x{end:08X} ({end - start} bytes), "
                f"expected {chunk.length} bytes at 0x{params.ram_buffer_address:08X}",
                pattern="address_range",
            )
        self._set_state(chunk, ChunkState.RESTORED)

        if self.verify_readback:
            await self._verify_readback(chunk, staged, host_checksum)

        flash_offset = params.flash_address(chunk.offset)
        self._set_state(chunk, ChunkState.COPY_INVOKED)
        target_checksum = await self.debugger.call(
            params.copy_function, flash_offset, chunk.length, timeout=self.call_timeout
        )
        logger.debug(
            f"Chunk {chunk.index}: host=0x{host_checksum:08X} target=0x{target_checksum:08X}"
        )
        if target_checksum != host_checksum:
            raise ChecksumMismatchError(chunk.index, host_checksum, target_checksum)
        self._set_state(chunk, ChunkState.VERIFIED)

    async def _verify_readback(self, chunk: Chunk, staged: StagedFile, host_checksum: int) -> None:
        """Read the RAM buffer back and compare it with the chunk bytes."""
        readback_path = staged.path.with_suffix(".readback")
        start = self.params.ram_buffer_address
        try:
            await self.debugger.dump_memory(
                readback_path, start, start + chunk.length, timeout=self.response_timeout
            )
            data = await asyncio.to_thread(readback_path.read_bytes)
        except OSError as e:
            raise ResponseParseError(f"Readback of chunk {chunk.index} not available: {e}", pattern="dump")
        finally:
            try:
                readback_path.unlink()
            except OSError:
                pass
        if data != chunk.data:
            checksum = get_checksum_algorithm(self.checksum_algorithm)
            raise ChecksumMismatchError(chunk.index, host_checksum, checksum(data))


async def upload_file(
    config: TransferConfig,
    *,
    progress_cb: Optional[ProgressCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
    debugger: Optional[DebuggerSession] = None,
) -> TransferSession:
    """
    Complete upload workflow: validate -> read image -> start debugger -> transfer.

    Args:
        config: Transfer configuration
        progress_cb: Optional callback receiving ProgressEvents
        cancel_event: Optional event requesting cancellation
        debugger: Already connected session (started from config when omitted)

    Returns:
        TransferSession with the terminal status

    Raises:
        ConfigurationError: If the config or image is invalid (before any debugger is started)
        DebuggerStartupError: If the debugger cannot be started or connected
    """
    config.validate()
    image = read_image(config.binary_path)

    if debugger is None:
        debugger = await DebuggerSession.start(
            config.gdb_path,
            config.executable_path,
            config.endpoint,
            response_timeout=config.response_timeout,
            connect_timeout=config.connect_timeout,
            grammar=get_grammar(config.grammar),
        )

    transfer = FlashTransfer.from_config(
        debugger, config, progress_cb=progress_cb, cancel_event=cancel_event
    )
    return await transfer.run(image)
