"""
GDB Flash Loader - transfer binary images to external flash through a debugger

Stages each chunk in target RAM with the debugger, invokes the target's
copy-to-flash routine and verifies the returned checksum.
"""

__version__ = "0.1.0"

from gdb_flash_loader.checksum import checksum
from gdb_flash_loader.chunks import Chunk, ChunkStore, split
from gdb_flash_loader.config import TargetParameters, TransferConfig
from gdb_flash_loader.debugger import DebuggerSession
from gdb_flash_loader.transfer import (
    FlashTransfer,
    ProgressEvent,
    TransferSession,
    TransferStatus,
    upload_file,
)

__all__ = [
    "checksum",
    "Chunk",
    "ChunkStore",
    "split",
    "TargetParameters",
    "TransferConfig",
    "DebuggerSession",
    "FlashTransfer",
    "ProgressEvent",
    "TransferSession",
    "TransferStatus",
    "upload_file",
    "__version__",
]
