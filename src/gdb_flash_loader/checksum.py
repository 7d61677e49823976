"""
Host-side checksum engine.

The copy-to-flash routine on the target returns a checksum of the bytes it
copied. The host computes the same value over each chunk so the two can be
compared directly.

Default algorithm ("sum32") mirrors the reference firmware:

    uint32_t sum = 0;
    for (i = 0; i < len; i++) sum += buf[i];

i.e. the unsigned byte values accumulated in a 32-bit register that wraps
on overflow.
"""

import zlib
from typing import Callable, Dict, List

from gdb_flash_loader.errors import ConfigurationError

U32_MASK = 0xFFFFFFFF

DEFAULT_ALGORITHM = "sum32"


def sum32(data: bytes) -> int:
    """
    Additive byte sum modulo 2**32.

    Args:
        data: Bytes to accumulate

    Returns:
        32-bit checksum (0 for empty input)
    """
    return sum(data) & U32_MASK


def crc32(data: bytes) -> int:
    """IEEE CRC-32 (zlib polynomial), for firmware that verifies with CRC."""
    return zlib.crc32(data) & U32_MASK


CHECKSUM_ALGORITHMS: Dict[str, Callable[[bytes], int]] = {
    "sum32": sum32,
    "crc32": crc32,
}


def get_checksum_algorithm(name: str) -> Callable[[bytes], int]:
    """
    Look up a checksum function by name.

    Raises:
        ConfigurationError: If the algorithm is not known
    """
    try:
        return CHECKSUM_ALGORITHMS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unknown checksum algorithm '{name}'. "
            f"Valid: {', '.join(list_checksum_algorithms())}"
        )


def list_checksum_algorithms() -> List[str]:
    """Names of the available checksum algorithms."""
    return sorted(CHECKSUM_ALGORITHMS)


def checksum(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> int:
    """
    Compute the checksum the target reports for ``data``.

    Args:
        data: Chunk bytes
        algorithm: Algorithm name (default "sum32")

    Returns:
        Unsigned 32-bit checksum
    """
    return get_checksum_algorithm(algorithm)(data)
