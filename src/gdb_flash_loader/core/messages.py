"""
Standardized failure messages for the flash loader.

Maps every error kind to a stable code and a remediation hint so the CLI
can tell the user what to check next.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List

from gdb_flash_loader.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    DebuggerCommandError,
    DebuggerExitedError,
    DebuggerStartupError,
    DebuggerTimeoutError,
    ResponseParseError,
    TransferCancelled,
    TransferIoError,
)


class MessageLevel(Enum):
    """Severity level for messages."""
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FailureCode(Enum):
    """Stable codes for known failure conditions."""
    E_CONFIG = "E_CONFIG"
    E_STARTUP = "E_STARTUP"
    E_DEBUGGER_EXITED = "E_DEBUGGER_EXITED"
    E_TIMEOUT = "E_TIMEOUT"
    E_COMMAND = "E_COMMAND"
    E_PARSE = "E_PARSE"
    E_IO = "E_IO"
    E_CHECKSUM = "E_CHECKSUM"
    E_CANCELLED = "E_CANCELLED"
    E_UNKNOWN = "E_UNKNOWN"
    W_RETRY = "W_RETRY"


FAILURE_REMEDIATIONS: Dict[FailureCode, str] = {
    FailureCode.E_CONFIG:
        "Check RAM buffer address/size, chunk size and paths in the config.",
    FailureCode.E_STARTUP:
        "Check the debugger path, the ELF path and that the GDB server is listening on the endpoint.",
    FailureCode.E_DEBUGGER_EXITED:
        "The debugger quit unexpectedly. Run it by hand to see its output.",
    FailureCode.E_TIMEOUT:
        "Target did not answer in time. Increase --timeout/--call-timeout or check the debug adapter.",
    FailureCode.E_COMMAND:
        "The debugger rejected a command. Check the copy function symbol and buffer address.",
    FailureCode.E_PARSE:
        "Debugger output did not match the expected format. The debugger version may differ.",
    FailureCode.E_IO:
        "Check free space and permissions of the work directory.",
    FailureCode.E_CHECKSUM:
        "Data in flash differs from the image. Check the copy routine and its checksum algorithm.",
    FailureCode.E_CANCELLED:
        "Transfer was interrupted; flash contents are incomplete. Re-run the upload.",
    FailureCode.E_UNKNOWN:
        "Check logs for more details (--verbose).",
    FailureCode.W_RETRY:
        "Chunks recovered after retrying. Frequent retries point at an unstable debug adapter connection.",
}

# Most specific first
_EXCEPTION_CODES = (
    (ConfigurationError, FailureCode.E_CONFIG),
    (DebuggerStartupError, FailureCode.E_STARTUP),
    (DebuggerExitedError, FailureCode.E_DEBUGGER_EXITED),
    (DebuggerTimeoutError, FailureCode.E_TIMEOUT),
    (DebuggerCommandError, FailureCode.E_COMMAND),
    (ResponseParseError, FailureCode.E_PARSE),
    (TransferIoError, FailureCode.E_IO),
    (ChecksumMismatchError, FailureCode.E_CHECKSUM),
    (TransferCancelled, FailureCode.E_CANCELLED),
)


@dataclass
class MessageItem:
    """
    Structured message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable failure code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: FailureCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in FAILURE_REMEDIATIONS:
            self.remediation = FAILURE_REMEDIATIONS[self.code]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def failure_code_for(exc: BaseException) -> FailureCode:
    """Stable failure code for an exception."""
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return FailureCode.E_UNKNOWN


def failure_from_exception(exc: BaseException) -> MessageItem:
    """Build an ERROR message for an exception."""
    detail = ""
    if isinstance(exc, DebuggerTimeoutError) and exc.partial_output:
        detail = "Partial output: " + " | ".join(exc.partial_output[-5:])
    elif isinstance(exc, ResponseParseError) and exc.response:
        detail = f"Expected {exc.pattern}; got: {exc.response[-200:]}"
    return MessageItem(MessageLevel.ERROR, failure_code_for(exc), str(exc), detail)


def result_to_messages(result: "OperationResult") -> List[MessageItem]:  # noqa: F821
    """
    Convert an OperationResult's warnings and errors to MessageItems.

    Errors recorded by the transfer carry their failure code in
    ``metadata["failure_code"]``.
    """
    items = [
        MessageItem(MessageLevel.WARN, FailureCode.W_RETRY, warning)
        for warning in result.warnings
    ]
    code_value = result.metadata.get("failure_code", FailureCode.E_UNKNOWN.value)
    try:
        code = FailureCode(code_value)
    except ValueError:
        code = FailureCode.E_UNKNOWN
    items.extend(MessageItem(MessageLevel.ERROR, code, error) for error in result.errors)
    return items
