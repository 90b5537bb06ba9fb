"""Storage of finished audio and transcript files."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

from .errors import PersistenceError

logger = logging.getLogger(__name__)

# Give up finding a free name after this many collisions
MAX_NAME_ATTEMPTS = 1000


@dataclass(frozen=True)
class PrivateDestination:
    """The daemon's own working directory; files are written in place."""

    directory: Path


@dataclass(frozen=True)
class ExternalScopedDestination:
    """A user-selected directory the daemon does not own.

    An entry is reserved first, and content is written into it afterwards.
    Existing files are never overwritten; a numbered name is used instead.
    """

    directory: Path


Destination = Union[PrivateDestination, ExternalScopedDestination]


def _create_placeholder(directory: Path, filename: str) -> Path:
    """Reserve a new, empty entry named after ``filename`` in ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    stem, suffix = Path(filename).stem, Path(filename).suffix
    for attempt in range(MAX_NAME_ATTEMPTS):
        candidate = directory / (_numbered_name(stem, attempt) + suffix)
        try:
            with open(candidate, "xb"):
                pass
            return candidate
        except FileExistsError:
            continue
    raise PersistenceError(f"No free file name for {filename} in {directory}")


def _numbered_name(stem: str, attempt: int) -> str:
    return stem if attempt == 0 else f"{stem} ({attempt})"


def _find_free_base_name(
    directory: Path, base_name: str, extensions: Sequence[str]
) -> str:
    for attempt in range(MAX_NAME_ATTEMPTS):
        candidate = _numbered_name(base_name, attempt)
        if not any((directory / (candidate + ext)).exists() for ext in extensions):
            return candidate
    raise PersistenceError(f"No free file name for {base_name} in {directory}")


def _write_bytes(data: bytes, destination: Destination, filename: str) -> Path:
    if isinstance(destination, ExternalScopedDestination):
        path = _create_placeholder(destination.directory, filename)
        logger.debug(f"Created placeholder {path}")
    else:
        destination.directory.mkdir(parents=True, exist_ok=True)
        path = destination.directory / filename

    with open(path, "wb") as f:
        f.write(data)
    return path


class ArtifactStore:
    """Writes and deletes session artifacts."""

    async def _write(self, data: bytes, destination: Destination, filename: str) -> Path:
        try:
            path = await asyncio.to_thread(_write_bytes, data, destination, filename)
        except PersistenceError:
            raise
        except OSError as e:
            raise PersistenceError(f"Failed to write {filename}: {e}") from e

        logger.info(f"Saved {path} ({len(data)} bytes)")
        return path

    async def free_base_name(
        self, destination: Destination, base_name: str, extensions: Sequence[str]
    ) -> str:
        """Find a stem that is free for every extension in ``destination``.

        Returns ``base_name`` itself, or ``"base_name (n)"`` when a file
        with any of the extensions already uses it.

        Raises:
            PersistenceError: If no free name was found.
        """
        try:
            return await asyncio.to_thread(
                _find_free_base_name, destination.directory, base_name, extensions
            )
        except OSError as e:
            raise PersistenceError(f"Failed to inspect {destination.directory}: {e}") from e

    async def write_audio(
        self, data: bytes, destination: Destination, filename: str
    ) -> Path:
        """Write audio bytes; returns the path actually written.

        Raises:
            PersistenceError: If the file could not be written.
        """
        return await self._write(data, destination, filename)

    async def write_text(
        self, text: str, destination: Destination, filename: str
    ) -> Path:
        """Write a UTF-8 text file; returns the path actually written.

        Raises:
            PersistenceError: If the file could not be written.
        """
        return await self._write(text.encode("utf-8"), destination, filename)

    async def read_bytes(self, path: Path) -> bytes:
        """Read back an intermediate file.

        Raises:
            PersistenceError: If the file could not be read.
        """
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise PersistenceError(f"Failed to read {path}: {e}") from e

    async def delete(self, path: Path) -> None:
        """Delete ``path``. A missing file is not an error.

        Raises:
            PersistenceError: If the file exists but could not be removed.
        """
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Failed to delete {path}: {e}") from e
        logger.debug(f"Deleted {path}")
