"""
File handle models for the upload queue.
A file source exposes its name, size and byte-range reads.
"""
import asyncio
from abc import ABC, abstractmethod
from pathlib import Path


class FileSource(ABC):
    """Abstract readable file handed to the upload manager."""

    name: str
    size: int

    @abstractmethod
    async def read(self, start: int, end: int) -> bytes:
        """Read bytes in the half-open range [start, end)."""
        pass


class LocalFileSource(FileSource):
    """File on the local filesystem, read in ranges off the event loop."""

    def __init__(self, path: Path):
        self.path = path
        self.name = path.name
        self.size = path.stat().st_size

    async def read(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read_range, start, end)

    def _read_range(self, start: int, end: int) -> bytes:
        with open(self.path, 'rb') as f:
            f.seek(start)
            return f.read(end - start)

    def __repr__(self):
        return f"LocalFileSource(path={self.path}, size={self.size})"


class BytesFileSource(FileSource):
    """In-memory file contents."""

    def __init__(self, name: str, data: bytes):
        self.name = name
        self.data = data
        self.size = len(data)

    async def read(self, start: int, end: int) -> bytes:
        return self.data[start:end]

    def __repr__(self):
        return f"BytesFileSource(name={self.name}, size={self.size})"
