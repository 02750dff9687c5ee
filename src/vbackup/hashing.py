"""
Chunked content hashing.

Reads files in large buffers and feeds them to a hashlib (or xxhash) object.
Both a blocking generator and an aiofiles-based async generator are provided;
each yields ``(bytes_hashed, "")`` while reading and ``(total, hexdigest)``
once the file is exhausted.
"""

import hashlib
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import aiofiles
import xxhash

# Constants
BUFFER_SIZE = 8 * 1024 * 1024  # 8MB
SUPPORTED_ALGORITHMS = ("sha256", "sha1", "md5", "xxh64be")
DEFAULT_ALGORITHM = "sha256"


class HashCalculator:
    """
    Hash calculator supporting multiple algorithms.

    Parameters
    ----------
    algorithm : str, default="sha256"
        Hash algorithm to use. Supported: sha256, sha1, md5, xxh64be
    """

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM):
        self.algorithm = algorithm.lower()
        if self.algorithm == "xxh64be":
            self._hasher = xxhash.xxh64()
        elif self.algorithm in ("md5", "sha1", "sha256"):
            self._hasher = hashlib.new(self.algorithm)
        else:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

    def update(self, data: bytes) -> None:
        """
        Update hash with new data.

        Parameters
        ----------
        data : bytes
            Data chunk to add to the hash
        """
        self._hasher.update(data)

    def hexdigest(self) -> str:
        """
        Get final hex digest.

        Returns
        -------
        str
            Hexadecimal string representation of the hash
        """
        return self._hasher.hexdigest()

    @staticmethod
    def hash_file(
        path: Path,
        algorithm: str = DEFAULT_ALGORITHM,
        buffer_size: int = BUFFER_SIZE,
    ) -> Iterator[tuple[int, str]]:
        """
        Hash a file and yield progress.

        Parameters
        ----------
        path : Path
            Path to file to hash
        algorithm : str, default="sha256"
            Hash algorithm to use
        buffer_size : int, default=BUFFER_SIZE
            Read size per chunk

        Yields
        ------
        tuple[int, str]
            (bytes_hashed, final_hash_or_empty_string)
        """
        hasher = HashCalculator(algorithm)
        total_bytes = 0

        with open(path, "rb") as f:
            while chunk := f.read(buffer_size):
                hasher.update(chunk)
                total_bytes += len(chunk)
                yield (total_bytes, "")

        yield (total_bytes, hasher.hexdigest())

    @staticmethod
    async def hash_file_async(
        path: Path,
        algorithm: str = DEFAULT_ALGORITHM,
        buffer_size: int = BUFFER_SIZE,
    ) -> AsyncIterator[tuple[int, str]]:
        """
        Hash a file asynchronously and yield progress.

        Same protocol as :meth:`hash_file`.
        """
        hasher = HashCalculator(algorithm)
        total_bytes = 0

        async with aiofiles.open(path, "rb") as f:
            while chunk := await f.read(buffer_size):
                hasher.update(chunk)
                total_bytes += len(chunk)
                yield (total_bytes, "")

        yield (total_bytes, hasher.hexdigest())

    @staticmethod
    def digest_file(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> tuple[int, str]:
        """Hash a file to completion, returning ``(size, hexdigest)``."""
        result = (0, "")
        for result in HashCalculator.hash_file(path, algorithm):
            pass
        return result

    @staticmethod
    async def digest_file_async(
        path: Path, algorithm: str = DEFAULT_ALGORITHM
    ) -> tuple[int, str]:
        result = (0, "")
        async for result in HashCalculator.hash_file_async(path, algorithm):
            pass
        return result
