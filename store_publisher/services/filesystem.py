"""File system operations used by artifact validation and credential handling."""

import asyncio
import hashlib
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from store_publisher.models.deployment import ArtifactDescriptor
from store_publisher.utils.logging import get_logger

CHECKSUM_CHUNK_SIZE = 1024 * 1024


class FileSystemService:
    """File primitives with logging; checksum work runs off the event loop."""

    def __init__(self, logger: structlog.stdlib.BoundLogger | None = None):
        self.logger = logger or get_logger("filesystem")

    def exists(self, path: str | os.PathLike[str]) -> bool:
        return Path(path).is_file()

    def get_file_size(self, path: str | os.PathLike[str]) -> int:
        return Path(path).stat().st_size

    def _checksum(self, path: Path, algorithm: str) -> str:
        digest = hashlib.new(algorithm)
        with path.open("rb") as f:
            while chunk := f.read(CHECKSUM_CHUNK_SIZE):
                digest.update(chunk)
        return digest.hexdigest()

    async def get_file_checksum(
        self, path: str | os.PathLike[str], algorithm: str = "sha256"
    ) -> str:
        return await asyncio.to_thread(self._checksum, Path(path), algorithm)

    async def get_file_info(self, path: str | os.PathLike[str]) -> ArtifactDescriptor:
        """Describe the file at ``path`` (size, checksum, name parts)."""
        file_path = Path(path)
        size = self.get_file_size(file_path)
        checksum = await self.get_file_checksum(file_path)
        return ArtifactDescriptor(
            path=str(file_path),
            size=size,
            checksum=checksum,
            extension=file_path.suffix,
            basename=file_path.name,
            directory=str(file_path.parent),
        )

    @contextmanager
    def private_temp_file(self, filename: str, content: str | bytes) -> Iterator[Path]:
        """Write ``content`` to ``filename`` inside a fresh owner-only directory.

        The directory and file are removed when the block exits, whatever
        the outcome. Removal failures are logged, never raised.
        """
        directory = Path(tempfile.mkdtemp(prefix="store-publisher-"))
        os.chmod(directory, 0o700)
        file_path = directory / filename
        try:
            data = content.encode("utf-8") if isinstance(content, str) else content
            fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            self.logger.debug("filesystem.temp_file_created", filename=filename)
            yield file_path
        finally:
            self.cleanup_temp_dir(directory)

    def cleanup_temp_dir(self, directory: Path) -> None:
        try:
            shutil.rmtree(directory)
            self.logger.debug("filesystem.temp_dir_removed", directory=str(directory))
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(
                "filesystem.temp_dir_cleanup_failed", directory=str(directory), error=str(e)
            )
