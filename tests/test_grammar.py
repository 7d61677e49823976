"""Tests for debugger response parsing."""

import pytest

from gdb_flash_loader.debugger.grammar import (
    GDB_CONSOLE_V1,
    find_errors,
    get_grammar,
    is_connected,
    parse_address_range,
    parse_numeric_result,
)
from gdb_flash_loader.debugger.session import DebuggerResponse
from gdb_flash_loader.errors import ConfigurationError, ResponseParseError


class TestAddressRange:
    """Restore confirmation parsing."""

    def test_restore_line(self):
        """Start and end addresses parsed as hex."""
        line = "Restoring binary file chunk.bin into memory (0x200b76a8 to 0x200c76a8)"
        assert parse_address_range(line) == (0x200B76A8, 0x200C76A8)

    def test_from_response_object(self):
        """Accepts a DebuggerResponse and skips unrelated lines."""
        response = DebuggerResponse(
            command="restore x binary 0x20000000",
            lines=["warning: something", "Restoring binary file x into memory (0x20000000 to 0x20000010)"],
        )
        assert parse_address_range(response) == (0x20000000, 0x20000010)

    def test_uppercase_hex(self):
        assert parse_address_range("(0x2000ABCD to 0x2000ABCF)") == (0x2000ABCD, 0x2000ABCF)

    def test_missing_range(self):
        """No range raises ResponseParseError naming the pattern."""
        with pytest.raises(ResponseParseError) as excinfo:
            parse_address_range(["Restoring binary file x into memory"])
        assert excinfo.value.pattern == "address_range"
        assert excinfo.value.retryable


class TestNumericResult:
    """Value-history lines printed by call."""

    def test_decimal(self):
        assert parse_numeric_result("$103 = 8199517") == 8199517

    def test_hex(self):
        assert parse_numeric_result("$5 = 0x7d1c5d") == 0x7D1C5D

    def test_negative_wraps_to_u32(self):
        """Signed return values are reinterpreted as unsigned 32-bit."""
        assert parse_numeric_result("$4 = -1") == 0xFFFFFFFF
        assert parse_numeric_result("$4 = -12") == 0xFFFFFFF4

    def test_last_match_wins(self):
        """With several results, the last one is the call's."""
        assert parse_numeric_result(["$1 = 5", "$2 = 7"]) == 7

    def test_missing_result(self):
        with pytest.raises(ResponseParseError) as excinfo:
            parse_numeric_result("Continuing.")
        assert excinfo.value.pattern == "numeric_result"

    def test_void_function_has_no_result(self):
        """A void call prints nothing parseable."""
        with pytest.raises(ResponseParseError):
            parse_numeric_result([])


class TestErrorsAndStatus:
    """Error-line detection and connection status."""

    def test_known_error_lines(self):
        lines = [
            'No symbol "copy_to_flash" in current context.',
            "Cannot access memory at address 0x20010000",
            "localhost:61234: Connection refused.",
            'Undefined command: "frob".  Try "help".',
        ]
        assert find_errors(lines) == lines

    def test_normal_output_not_error(self):
        lines = [
            "Restoring binary file x into memory (0x0 to 0x10)",
            "$1 = 42",
            "Remote debugging using localhost:61234",
        ]
        assert find_errors(lines) == []

    def test_connected(self):
        assert is_connected("Remote debugging using localhost:61234")
        assert not is_connected("localhost:61234: Connection timed out.")

    def test_strip_prompt(self):
        """Repeated prompts are stripped from the start of a line."""
        assert GDB_CONSOLE_V1.strip_prompt("(gdb) (gdb) $1 = 3\n") == "$1 = 3"

    def test_get_grammar(self):
        assert get_grammar("gdb-console-v1") is GDB_CONSOLE_V1
        with pytest.raises(ConfigurationError):
            get_grammar("lldb")
