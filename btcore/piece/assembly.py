"""Piece assembly and verification.

A piece is split into fixed-size blocks; blocks are requested, stored into
a buffer by offset in whatever order they arrive, and the finished buffer
is checked against the piece's SHA-1 digest from the metainfo.
"""

from __future__ import annotations

import hashlib
import logging
from collections import deque
from dataclasses import dataclass

from btcore.exceptions import PieceHashMismatch
from btcore.models import BLOCK_SIZE, HASH_LENGTH

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlockRequest:
    """A block within a piece."""

    piece_index: int
    begin: int
    length: int


def iter_blocks(piece_index: int, piece_length: int, block_size: int = BLOCK_SIZE) -> list[BlockRequest]:
    """Partition ``[0, piece_length)`` into blocks; the last may be short."""
    if piece_length <= 0:
        msg = f"Piece length must be positive, got {piece_length}"
        raise ValueError(msg)
    return [
        BlockRequest(piece_index, begin, min(block_size, piece_length - begin))
        for begin in range(0, piece_length, block_size)
    ]


def verify_piece(data: bytes, expected_hash: bytes) -> bool:
    """Check piece bytes against their expected SHA-1 digest."""
    return hashlib.sha1(data).digest() == expected_hash  # noqa: S324


class PieceAssembly:
    """Buffer and block bookkeeping for one piece being downloaded."""

    def __init__(self, piece_index: int, length: int, expected_hash: bytes, block_size: int = BLOCK_SIZE):
        """Initialize an empty assembly.

        Args:
            piece_index: Index of the piece
            length: Exact byte length of this piece
            expected_hash: 20-byte SHA-1 digest from the metainfo
            block_size: Request size; the final block may be shorter
        """
        if len(expected_hash) != HASH_LENGTH:
            msg = f"Expected hash must be 20 bytes, got {len(expected_hash)}"
            raise ValueError(msg)
        self.piece_index = piece_index
        self.length = length
        self.expected_hash = expected_hash
        self.buffer = bytearray(length)
        self.blocks = {block.begin: block for block in iter_blocks(piece_index, length, block_size)}
        self._pending: deque[int] = deque(self.blocks)
        self.requested: set[int] = set()
        self.received: set[int] = set()

    @property
    def is_complete(self) -> bool:
        """Whether every block has been received."""
        return len(self.received) == len(self.blocks)

    @property
    def outstanding(self) -> int:
        """Number of requested blocks still awaiting data."""
        return len(self.requested)

    def next_requests(self, limit: int) -> list[BlockRequest]:
        """Take up to ``limit`` unrequested blocks and mark them requested."""
        batch = []
        while self._pending and len(batch) < limit:
            begin = self._pending.popleft()
            self.requested.add(begin)
            batch.append(self.blocks[begin])
        return batch

    def requeue_outstanding(self) -> int:
        """Return requested-but-unanswered blocks to the front of the queue.

        Used when the peer chokes us, which discards our pending requests.
        """
        lost = sorted(self.requested)
        self._pending.extendleft(reversed(lost))
        self.requested.clear()
        return len(lost)

    def add_block(self, begin: int, data: bytes) -> bool:
        """Store a received block at its offset.

        Returns:
            True if the block was new and stored; False if it was unknown,
            had the wrong length, or was a duplicate
        """
        block = self.blocks.get(begin)
        if block is None:
            logger.debug("Piece %d: ignoring block at unknown offset %d", self.piece_index, begin)
            return False
        if len(data) != block.length:
            logger.warning(
                "Piece %d: block at %d has %d bytes, expected %d",
                self.piece_index,
                begin,
                len(data),
                block.length,
            )
            if begin in self.requested:
                # Free the pipeline slot and ask for the block again
                self.requested.discard(begin)
                self._pending.appendleft(begin)
            return False
        if begin in self.received:
            return False

        self.buffer[begin : begin + block.length] = data
        self.received.add(begin)
        self.requested.discard(begin)
        if begin in self._pending:
            # Arrived after a requeue; no need to ask again
            self._pending.remove(begin)
        return True

    def verify(self) -> bytes:
        """Return the piece bytes if their SHA-1 matches.

        Raises:
            PieceHashMismatch: If the digest differs
            ValueError: If blocks are still missing
        """
        if not self.is_complete:
            msg = f"Piece {self.piece_index} has {len(self.blocks) - len(self.received)} missing blocks"
            raise ValueError(msg)
        data = bytes(self.buffer)
        actual = hashlib.sha1(data).digest()  # noqa: S324
        if actual != self.expected_hash:
            raise PieceHashMismatch(self.piece_index, self.expected_hash, actual)
        return data
