"""
Centralized parsing helpers for addresses, sizes and endpoints.

Both the CLI and the JSON config loader use these helpers rather than
re-implement them.
"""

import re
from typing import Optional, Tuple, Union

_SIZE_SUFFIXES = {
    "k": 1024,
    "kb": 1024,
    "kib": 1024,
    "m": 1024 * 1024,
    "mb": 1024 * 1024,
    "mib": 1024 * 1024,
}

_SIZE_RE = re.compile(r"^(\d+)\s*([a-zA-Z]+)$")


def parse_int(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse an integer (address or offset) supporting multiple formats.

    This is the single source of truth for address parsing.

    Accepts:
        - int: returned unchanged
        - Decimal: "4096"
        - Hex with 0x prefix: "0x20010000" or "0X20010000"
        - Hex with h suffix: "1000h" or "1000H"
        - None or empty string: None

    Raises:
        ValueError: If value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Invalid number {value!r}")
    if isinstance(value, int):
        return value

    text = value.strip().replace("_", "")
    if not text:
        return None

    try:
        if text.lower().startswith("0x"):
            return int(text, 16)
        if text.lower().endswith("h"):
            return int(text[:-1], 16)
        return int(text)
    except ValueError:
        raise ValueError(
            f"Invalid number '{value}'. Use decimal (4096), hex (0x1000), or suffix (1000h)."
        )


def parse_size(value: Union[str, int, None]) -> Optional[int]:
    """
    Parse a byte size.

    Accepts everything parse_int accepts plus K/M suffixes:
    "64K", "64KiB", "1M", "4 MB" (binary multiples).

    Raises:
        ValueError: If value cannot be parsed.
    """
    if isinstance(value, str):
        match = _SIZE_RE.match(value.strip())
        if match and match.group(2).lower() in _SIZE_SUFFIXES:
            return int(match.group(1)) * _SIZE_SUFFIXES[match.group(2).lower()]
    return parse_int(value)


def parse_endpoint(value: str) -> Tuple[str, int]:
    """
    Parse a remote debugger endpoint in "host:port" form.

    Returns:
        Tuple of (host, port)

    Raises:
        ValueError: If host or port is missing or port is out of range
    """
    host, sep, port_text = (value or "").strip().rpartition(":")
    if not sep or not host or not port_text:
        raise ValueError(f"Invalid endpoint '{value}'. Use host:port, e.g. 'localhost:61234'.")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in endpoint '{value}'")
    if not 1 <= port <= 65535:
        raise ValueError(f"Port out of range in endpoint '{value}'")
    return host, port
