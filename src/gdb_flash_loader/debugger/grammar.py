"""
Response grammars for the debugger's console output.

The debugger prints free-form text. Everything the loader needs from it
(address ranges, call results, connection status, error lines) is
extracted here, so a change in the debugger's output format only touches
this module.

Grammars are versioned by name; a config can select one explicitly.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Pattern, Tuple, Union

from gdb_flash_loader.errors import ConfigurationError, ResponseParseError

U32_MASK = 0xFFFFFFFF

DEFAULT_GRAMMAR = "gdb-console-v1"


@dataclass(frozen=True)
class ResponseGrammar:
    """
    Set of patterns describing one debugger's console output.

    Attributes:
        name: Versioned grammar name
        address_range: Restore confirmation with start/end addresses
        numeric_result: Value-history assignment printed by ``call``/``print``
        connected: Line printed after a successful ``target remote``
        prompt: Prompt prefix stripped from every output line
        errors: Patterns of lines reporting a failed command
    """
    name: str
    address_range: Pattern
    numeric_result: Pattern
    connected: Pattern
    prompt: Pattern
    errors: Tuple[Pattern, ...] = field(default_factory=tuple)

    def strip_prompt(self, line: str) -> str:
        """Remove leading prompt(s) and surrounding whitespace."""
        return self.prompt.sub("", line).strip()

    def is_error(self, line: str) -> bool:
        return any(p.search(line) for p in self.errors)


GDB_CONSOLE_V1 = ResponseGrammar(
    name="gdb-console-v1",
    # "Restoring binary file chunk.bin into memory (0x200b76a8 to 0x200c76a8)"
    address_range=re.compile(r"\(0x([0-9a-fA-F]+) to 0x([0-9a-fA-F]+)\)"),
    # "$103 = 8199517", "$4 = -12", "$5 = 0x7d1c5d"
    numeric_result=re.compile(r"\$(\d+) = (-?(?:0x[0-9a-fA-F]+|\d+))\b"),
    # "Remote debugging using localhost:61234"
    connected=re.compile(r"Remote debugging using\s+(\S+)"),
    prompt=re.compile(r"^(?:\s*\(gdb\)\s*)+"),
    errors=(
        re.compile(r"^No symbol\b"),
        re.compile(r"Cannot access memory at address"),
        re.compile(r"Connection refused"),
        re.compile(r"Connection timed out"),
        re.compile(r"Remote connection closed"),
        re.compile(r"Remote communication error"),
        re.compile(r"The program being debugged (?:was signaled|stopped)"),
        re.compile(r"^The program is not being run\."),
        re.compile(r"You can't do that when your target is"),
        re.compile(r"^Undefined command"),
        re.compile(r"No such file or directory\."),
        re.compile(r"^Could not\b"),
        re.compile(r"^Invalid number\b"),
        re.compile(r"^Too few arguments in function call\."),
    ),
)

GRAMMARS: Dict[str, ResponseGrammar] = {
    GDB_CONSOLE_V1.name: GDB_CONSOLE_V1,
}


def get_grammar(name: str = DEFAULT_GRAMMAR) -> ResponseGrammar:
    """
    Look up a response grammar by name.

    Raises:
        ConfigurationError: If the grammar is not registered
    """
    try:
        return GRAMMARS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown response grammar '{name}'. Valid: {', '.join(sorted(GRAMMARS))}"
        )


# DebuggerResponse, raw text, or a list of lines
ResponseLike = Union[str, Iterable[str], Any]


def _lines_of(response: ResponseLike) -> List[str]:
    lines = getattr(response, "lines", response)
    if isinstance(lines, str):
        return lines.splitlines()
    return list(lines)


def parse_address_range(
    response: ResponseLike,
    grammar: ResponseGrammar = GDB_CONSOLE_V1,
) -> Tuple[int, int]:
    """
    Extract the (start, end) addresses from a restore confirmation.

    Args:
        response: DebuggerResponse, text, or list of lines

    Returns:
        Tuple of (start_address, end_address)

    Raises:
        ResponseParseError: If no line contains an address range
    """
    lines = _lines_of(response)
    for line in lines:
        match = grammar.address_range.search(line)
        if match:
            return int(match.group(1), 16), int(match.group(2), 16)
    raise ResponseParseError(
        "No address range found in debugger response",
        pattern="address_range",
        response="\n".join(lines),
    )


def parse_numeric_result(
    response: ResponseLike,
    grammar: ResponseGrammar = GDB_CONSOLE_V1,
) -> int:
    """
    Extract the value of the last ``$N = <value>`` line as an unsigned 32-bit int.

    Negative values (function declared as returning a signed int) are
    reinterpreted as their two's complement u32.

    Raises:
        ResponseParseError: If no result line is present
    """
    lines = _lines_of(response)
    value = None
    for line in lines:
        for match in grammar.numeric_result.finditer(line):
            value = match.group(2)
    if value is None:
        raise ResponseParseError(
            "No numeric result found in debugger response",
            pattern="numeric_result",
            response="\n".join(lines),
        )
    negative = value.startswith("-")
    digits = value.lstrip("-")
    if digits.lower().startswith("0x"):
        number = int(digits, 16)
    else:
        number = int(digits, 10)
    return (-number if negative else number) & U32_MASK


def find_errors(
    response: ResponseLike,
    grammar: ResponseGrammar = GDB_CONSOLE_V1,
) -> List[str]:
    """Lines of a response that report a command failure."""
    return [line for line in _lines_of(response) if grammar.is_error(line)]


def is_connected(
    response: ResponseLike,
    grammar: ResponseGrammar = GDB_CONSOLE_V1,
) -> bool:
    """Whether a ``target remote`` response confirms the connection."""
    return any(grammar.connected.search(line) for line in _lines_of(response))
