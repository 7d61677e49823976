"""
Core helpers shared by the CLI and the transfer workflow.

This module provides the single source of truth for:
- Address, size and endpoint parsing (parsing.py)
- Result objects (results.py)
- Standardized failure messages (messages.py)
"""

from .parsing import parse_int, parse_size, parse_endpoint
from .results import OperationResult
from .messages import (
    MessageLevel,
    FailureCode,
    MessageItem,
    failure_code_for,
    failure_from_exception,
    result_to_messages,
)

__all__ = [
    # Parsing
    "parse_int",
    "parse_size",
    "parse_endpoint",
    # Results
    "OperationResult",
    # Messages
    "MessageLevel",
    "FailureCode",
    "MessageItem",
    "failure_code_for",
    "failure_from_exception",
    "result_to_messages",
]
