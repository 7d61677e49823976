"""Debugger layer - subprocess session and console response grammars."""

from .grammar import (
    ResponseGrammar,
    GDB_CONSOLE_V1,
    GRAMMARS,
    DEFAULT_GRAMMAR,
    get_grammar,
    parse_address_range,
    parse_numeric_result,
    find_errors,
    is_connected,
)
from .session import DebuggerSession, DebuggerResponse

__all__ = [
    # Session
    "DebuggerSession",
    "DebuggerResponse",
    # Grammar
    "ResponseGrammar",
    "GDB_CONSOLE_V1",
    "GRAMMARS",
    "DEFAULT_GRAMMAR",
    "get_grammar",
    "parse_address_range",
    "parse_numeric_result",
    "find_errors",
    "is_connected",
]
