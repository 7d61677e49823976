"""
Exception hierarchy for the flash loader.

Every error carries a ``retryable`` flag that the transfer orchestrator
uses to decide between retrying the current chunk and failing the session.
"""

from typing import List, Optional


class FlashLoaderError(Exception):
    """Base exception for all flash loader errors"""
    retryable = False


class ConfigurationError(FlashLoaderError):
    """Invalid target parameters or transfer settings (detected before transfer)"""
    pass


class DebuggerError(FlashLoaderError):
    """Base exception for debugger session errors"""
    pass


class DebuggerStartupError(DebuggerError):
    """Debugger could not be spawned or did not connect to the target"""
    pass


class DebuggerExitedError(DebuggerError):
    """Debugger process closed its output stream unexpectedly"""
    pass


class DebuggerTimeoutError(DebuggerError):
    """
    No complete response arrived before the deadline.

    Attributes:
        command: Command that timed out
        partial_output: Lines collected before the deadline
    """
    retryable = True

    def __init__(self, message: str, command: str = "", partial_output: Optional[List[str]] = None):
        self.command = command
        self.partial_output = list(partial_output or [])
        super().__init__(message)


class DebuggerCommandError(DebuggerError):
    """
    Debugger reported an error while executing a command.

    Attributes:
        command: Command that failed
        errors: Error lines reported by the debugger
    """
    retryable = True

    def __init__(self, command: str, errors: List[str]):
        self.command = command
        self.errors = list(errors)
        detail = "; ".join(self.errors) if self.errors else "unknown error"
        super().__init__(f"'{command}' failed: {detail}")


class ResponseParseError(FlashLoaderError):
    """
    Response did not match the expected grammar.

    Kept distinct from DebuggerCommandError: the command may have run fine
    while the debugger printed its result in an unexpected format.

    Attributes:
        pattern: Name of the pattern that was expected
        response: Raw response text
    """
    retryable = True

    def __init__(self, message: str, pattern: str = "", response: str = ""):
        self.pattern = pattern
        self.response = response
        super().__init__(message)


class TransferIoError(FlashLoaderError):
    """Host filesystem error while handling chunk files"""
    pass


class StagingError(TransferIoError):
    """Chunk could not be written to its staging file"""
    retryable = True


class ChecksumMismatchError(FlashLoaderError):
    """
    Target checksum differs from the host checksum of a chunk.

    Attributes:
        chunk_index: Index of the chunk that failed verification
        expected: Host-computed checksum
        actual: Checksum returned by the target
    """
    retryable = True

    def __init__(self, chunk_index: int, expected: int, actual: int):
        self.chunk_index = chunk_index
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch on chunk {chunk_index}: "
            f"host=0x{expected:08X} target=0x{actual:08X}"
        )


class TransferCancelled(FlashLoaderError):
    """Transfer was cancelled by the user or a session deadline"""
    pass
