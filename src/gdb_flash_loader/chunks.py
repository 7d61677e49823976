"""
Chunk store: splitting the image and staging chunks on the host.

The debugger can only load target memory from a file, so every chunk is
written to its own temporary file right before the ``restore`` command and
deleted once the target has verified it.

Staged files live in a working directory dedicated to one run, so
concurrent sessions never collide.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from gdb_flash_loader.errors import ConfigurationError, StagingError

logger = logging.getLogger(__name__)

WORK_DIR_PREFIX = "gdb_flash_"


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of the binary image sized for the RAM buffer."""
    index: int
    offset: int
    data: bytes
    is_last: bool

    @property
    def length(self) -> int:
        """Number of bytes in the chunk."""
        return len(self.data)

    @property
    def end(self) -> int:
        """Image offset one past the last byte (exclusive)."""
        return self.offset + len(self.data)


class ChunkSequence:
    """
    Lazy, restartable sequence of chunks over an immutable image.

    Iterating twice yields the same chunks; each chunk is sliced from the
    image only when it is reached.
    """

    def __init__(self, image: bytes, chunk_size: int):
        if chunk_size <= 0:
            raise ConfigurationError(f"Chunk size must be positive, got {chunk_size}")
        self.image = bytes(image)
        self.chunk_size = chunk_size

    def __len__(self) -> int:
        return -(-len(self.image) // self.chunk_size)

    def __iter__(self) -> Iterator[Chunk]:
        count = len(self)
        for index in range(count):
            yield self[index]

    def __getitem__(self, index: int) -> Chunk:
        count = len(self)
        if index < 0:
            index += count
        if not 0 <= index < count:
            raise IndexError(f"Chunk index {index} out of range (0..{count - 1})")
        offset = index * self.chunk_size
        return Chunk(
            index=index,
            offset=offset,
            data=self.image[offset:offset + self.chunk_size],
            is_last=index == count - 1,
        )


def split(image: bytes, chunk_size: int) -> ChunkSequence:
    """
    Split an image into fixed-size chunks (last one may be shorter).

    Args:
        image: Binary image bytes
        chunk_size: Bytes per chunk, must be > 0

    Returns:
        ChunkSequence in increasing offset order

    Raises:
        ConfigurationError: If chunk_size is not positive
    """
    return ChunkSequence(image, chunk_size)


def read_image(path: Union[str, Path]) -> bytes:
    """
    Read the binary image once from disk.

    Raises:
        ConfigurationError: If the file does not exist or is not readable
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Binary file not found: {path}")
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"Cannot read binary file {path}: {e}")
    logger.info(f"Loaded {path} ({len(data):,} bytes)")
    return data


@dataclass(frozen=True)
class StagedFile:
    """Temporary host file holding one chunk's bytes."""
    path: Path
    chunk_index: int
    size: int

    def exists(self) -> bool:
        return self.path.exists()


class ChunkStore:
    """
    Stages chunks to temporary files under a run-dedicated directory.

    Example:
        with ChunkStore() as store:
            staged = store.stage(chunk)
            ...
            store.unstage(staged)
    """

    def __init__(self, work_dir: Optional[Union[str, Path]] = None):
        """
        Args:
            work_dir: Directory for staged files. When omitted a fresh
                temporary directory is created and removed on close().
        """
        if work_dir is None:
            self.work_dir = Path(tempfile.mkdtemp(prefix=WORK_DIR_PREFIX))
            self._owns_dir = True
        else:
            self.work_dir = Path(work_dir)
            try:
                self.work_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(f"Cannot create work directory {self.work_dir}: {e}")
            self._owns_dir = False
        logger.debug(f"Chunk work directory: {self.work_dir}")

    def __enter__(self) -> "ChunkStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _new_path(self, chunk_index: int) -> Path:
        path = self.work_dir / f"chunk_{chunk_index:05d}.bin"
        suffix = 1
        while path.exists():
            path = self.work_dir / f"chunk_{chunk_index:05d}_{suffix}.bin"
            suffix += 1
        return path

    def stage(self, chunk: Chunk) -> StagedFile:
        """
        Write a chunk to a new temporary file.

        Args:
            chunk: Chunk to stage

        Returns:
            StagedFile describing the written file

        Raises:
            StagingError: If the file cannot be written
        """
        path = self._new_path(chunk.index)
        try:
            with open(path, "xb") as f:
                f.write(chunk.data)
                f.flush()
        except OSError as e:
            raise StagingError(f"Cannot stage chunk {chunk.index} to {path}: {e}")
        logger.debug(f"Staged chunk {chunk.index} ({chunk.length} bytes) at {path}")
        return StagedFile(path=path, chunk_index=chunk.index, size=chunk.length)

    def unstage(self, staged: StagedFile) -> None:
        """Delete a staged file. Failures are logged, never raised."""
        try:
            staged.path.unlink()
            logger.debug(f"Removed staged chunk {staged.chunk_index}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staged file {staged.path}: {e}")

    def close(self) -> None:
        """Remove the working directory if this store created it."""
        if self._owns_dir and self.work_dir.exists():
            shutil.rmtree(self.work_dir, ignore_errors=True)
            logger.debug(f"Removed work directory {self.work_dir}")
