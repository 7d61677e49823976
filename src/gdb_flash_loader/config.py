"""
Transfer configuration.

Provides a single source of truth for:
- Target parameters (RAM staging buffer, flash base, copy routine, chunk size)
- Debugger invocation (executable, symbol file, remote endpoint)
- Retry and timeout policy

Usage:
    from gdb_flash_loader.config import TransferConfig

    config = TransferConfig.from_json_file("target.json")
    config.validate()

JSON keys mirror the dataclass field names. Numeric fields accept integers
or strings in any format understood by core.parsing ("0x20010000",
"64K", "1000h").
"""

import json
import re
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

from gdb_flash_loader.checksum import DEFAULT_ALGORITHM, get_checksum_algorithm
from gdb_flash_loader.core.parsing import parse_endpoint, parse_int, parse_size
from gdb_flash_loader.debugger.grammar import DEFAULT_GRAMMAR, get_grammar
from gdb_flash_loader.errors import ConfigurationError

_SYMBOL_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_:.]*$")

DEFAULT_GDB = "arm-none-eabi-gdb"
DEFAULT_ENDPOINT = "localhost:61234"


@dataclass(frozen=True)
class TargetParameters:
    """
    Target-specific constants, read-only for the whole session.

    Attributes:
        ram_buffer_address: Address of the RAM staging buffer
        ram_buffer_size: Size of the RAM staging buffer in bytes
        flash_base: Flash offset where the image starts
        copy_function: Target routine copying the RAM buffer to flash,
            called as ``copy_function(flash_offset, length)`` and returning
            the checksum of the copied bytes
        chunk_size: Bytes transferred per chunk (<= ram_buffer_size)
    """
    ram_buffer_address: int
    ram_buffer_size: int
    flash_base: int
    copy_function: str
    chunk_size: int

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If any parameter is out of range
        """
        if self.ram_buffer_address < 0:
            raise ConfigurationError(f"RAM buffer address must be >= 0, got {self.ram_buffer_address}")
        if self.ram_buffer_size <= 0:
            raise ConfigurationError(f"RAM buffer size must be positive, got {self.ram_buffer_size}")
        if self.flash_base < 0:
            raise ConfigurationError(f"Flash base must be >= 0, got {self.flash_base}")
        if self.chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {self.chunk_size}")
        if self.chunk_size > self.ram_buffer_size:
            raise ConfigurationError(
                f"Chunk size {self.chunk_size} exceeds RAM buffer size {self.ram_buffer_size}"
            )
        if not self.copy_function or not _SYMBOL_RE.match(self.copy_function):
            raise ConfigurationError(f"Invalid copy function symbol '{self.copy_function}'")

    def flash_address(self, offset: int) -> int:
        """Flash offset for a byte offset into the image."""
        return self.flash_base + offset

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ram_buffer_address": f"0x{self.ram_buffer_address:08X}",
            "ram_buffer_size": self.ram_buffer_size,
            "flash_base": f"0x{self.flash_base:08X}",
            "copy_function": self.copy_function,
            "chunk_size": self.chunk_size,
        }


@dataclass(frozen=True)
class TransferConfig:
    """
    Complete invocation parameters for one transfer session.

    Attributes:
        binary_path: Image to transfer
        executable_path: Target ELF providing symbols (copy routine, buffer)
        target: Target parameters
        gdb_path: Debugger executable
        endpoint: Remote debugger endpoint "host:port"
        max_attempts: Attempts per chunk before the session fails
        response_timeout: Default deadline for a debugger command (seconds)
        call_timeout: Deadline for the copy routine call (seconds)
        connect_timeout: Deadline for "target remote" (seconds)
        session_timeout: Optional deadline for the whole transfer (seconds)
        checksum_algorithm: Host checksum algorithm name
        grammar: Debugger response grammar name
        work_dir: Directory for staged chunk files (default: fresh temp dir)
        prepare_breakpoint: When set, reset the target and run to this
            symbol before transferring
        verify_readback: Dump each chunk back from RAM and compare it
            before invoking the copy routine
    """
    binary_path: Path
    executable_path: Path
    target: TargetParameters
    gdb_path: str = DEFAULT_GDB
    endpoint: str = DEFAULT_ENDPOINT
    max_attempts: int = 3
    response_timeout: float = 5.0
    call_timeout: float = 30.0
    connect_timeout: float = 10.0
    session_timeout: Optional[float] = None
    checksum_algorithm: str = DEFAULT_ALGORITHM
    grammar: str = DEFAULT_GRAMMAR
    work_dir: Optional[Path] = None
    prepare_breakpoint: Optional[str] = None
    verify_readback: bool = False

    def validate(self) -> None:
        """
        Validate everything that can be checked before the debugger starts.

        Raises:
            ConfigurationError: On the first invalid setting
        """
        self.target.validate()
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        for name in ("response_timeout", "call_timeout", "connect_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")
        if self.session_timeout is not None and self.session_timeout <= 0:
            raise ConfigurationError(f"session_timeout must be positive, got {self.session_timeout}")
        try:
            parse_endpoint(self.endpoint)
        except ValueError as e:
            raise ConfigurationError(str(e))
        get_checksum_algorithm(self.checksum_algorithm)
        get_grammar(self.grammar)
        if self.prepare_breakpoint is not None and not _SYMBOL_RE.match(self.prepare_breakpoint):
            raise ConfigurationError(f"Invalid breakpoint symbol '{self.prepare_breakpoint}'")

    def with_overrides(self, **overrides: Any) -> "TransferConfig":
        """Copy with non-None overrides applied (target fields accepted too)."""
        target_names = {f.name for f in fields(TargetParameters)}
        target_updates = {k: v for k, v in overrides.items() if k in target_names and v is not None}
        updates = {k: v for k, v in overrides.items() if k not in target_names and v is not None}
        if target_updates:
            updates["target"] = replace(self.target, **target_updates)
        return replace(self, **updates)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base_dir: Optional[Path] = None) -> "TransferConfig":
        """
        Build a config from a plain dict (e.g. parsed JSON).

        Target parameters may be given flat or nested under "target".
        Relative paths are resolved against ``base_dir`` when given.

        Raises:
            ConfigurationError: If required keys are missing or malformed
        """
        data = dict(data)
        target_data = dict(data.pop("target", {}) or {})
        for f in fields(TargetParameters):
            if f.name in data:
                target_data[f.name] = data.pop(f.name)

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {', '.join(unknown)}")

        try:
            target = TargetParameters(
                ram_buffer_address=_require(parse_int, target_data, "ram_buffer_address"),
                ram_buffer_size=_require(parse_size, target_data, "ram_buffer_size"),
                flash_base=parse_int(target_data.get("flash_base", 0)) or 0,
                copy_function=str(_require(str, target_data, "copy_function")).strip(),
                chunk_size=_require(
                    parse_size,
                    target_data,
                    "chunk_size" if "chunk_size" in target_data else "ram_buffer_size",
                ),
            )

            kwargs: Dict[str, Any] = {
                "binary_path": _resolve(_require(str, data, "binary_path"), base_dir),
                "executable_path": _resolve(_require(str, data, "executable_path"), base_dir),
                "target": target,
            }
            for name in ("gdb_path", "endpoint", "checksum_algorithm", "grammar", "prepare_breakpoint"):
                if data.get(name) is not None:
                    kwargs[name] = str(data[name])
            for name in ("response_timeout", "call_timeout", "connect_timeout", "session_timeout"):
                if data.get(name) is not None:
                    kwargs[name] = float(data[name])
            if data.get("max_attempts") is not None:
                kwargs["max_attempts"] = int(data["max_attempts"])
            if data.get("work_dir") is not None:
                kwargs["work_dir"] = _resolve(str(data["work_dir"]), base_dir)
            if data.get("verify_readback") is not None:
                kwargs["verify_readback"] = bool(data["verify_readback"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid config value: {e}")

        return cls(**kwargs)

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "TransferConfig":
        """
        Load a config from a JSON file; relative paths resolve next to it.

        Raises:
            ConfigurationError: If the file is missing or not valid JSON
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {path}")
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config {path} must contain a JSON object")
        return cls.from_dict(data, base_dir=path.parent)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serializable dict (round-trips through from_dict)."""
        data = asdict(self)
        data["target"] = self.target.to_dict()
        for name in ("binary_path", "executable_path", "work_dir"):
            if data[name] is not None:
                data[name] = str(data[name])
        return data


def _require(parser, data: Dict[str, Any], key: str) -> Any:
    if data.get(key) in (None, ""):
        raise ConfigurationError(f"Missing required config key '{key}'")
    value = parser(data[key])
    if value is None:
        raise ConfigurationError(f"Missing required config key '{key}'")
    return value


def _resolve(value: str, base_dir: Optional[Path]) -> Path:
    path = Path(value).expanduser()
    if base_dir is not None and not path.is_absolute():
        path = base_dir / path
    return path
