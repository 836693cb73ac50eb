"""File collaborators for the download core.

Reads torrent files from disk and writes verified pieces into the output
file at ``piece_index * piece_length``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from btcore.exceptions import DiskError, TorrentError

logger = logging.getLogger(__name__)


def read_torrent_file(path: str | Path) -> bytes:
    """Read raw torrent file bytes.

    Raises:
        TorrentError: If the file does not exist or cannot be read
    """
    path = Path(path)
    if not path.exists():
        msg = f"Torrent file not found: {path}"
        raise TorrentError(msg)
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        msg = f"Failed to read torrent file {path}: {e}"
        raise TorrentError(msg) from e


class PieceWriter:
    """Writes verified pieces of a single-file torrent."""

    def __init__(self, path: str | Path, piece_length: int, total_length: int | None = None):
        """Initialize the writer.

        Args:
            path: Output file path
            piece_length: Nominal piece length used to compute offsets
            total_length: If given, the file is sparsely preallocated to this size
        """
        self.path = Path(path)
        self.piece_length = piece_length
        self.total_length = total_length
        self._prepared = False

    def _prepare(self) -> None:
        if self._prepared:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # r+b needs an existing file; never truncate previous progress
            with open(self.path, "ab"):
                pass
            if self.total_length is not None:
                os.truncate(self.path, max(self.total_length, self.path.stat().st_size))
        except OSError as e:
            msg = f"Failed to prepare output file {self.path}: {e}"
            raise DiskError(msg) from e
        self._prepared = True

    def write_piece_sync(self, piece_index: int, data: bytes) -> None:
        """Write a piece at its offset, blocking the caller."""
        self._prepare()
        offset = piece_index * self.piece_length
        try:
            with open(self.path, "r+b") as f:
                f.seek(offset)
                f.write(data)
        except OSError as e:
            msg = f"Failed to write piece {piece_index} to {self.path}: {e}"
            raise DiskError(msg) from e
        logger.debug("Wrote piece %d (%d bytes) at offset %d", piece_index, len(data), offset)

    async def write_piece(self, piece_index: int, data: bytes) -> None:
        """Write a piece at its offset without blocking the event loop."""
        await asyncio.get_running_loop().run_in_executor(
            None,
            self.write_piece_sync,
            piece_index,
            data,
        )
