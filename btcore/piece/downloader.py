"""Block-level piece download over a peer connection.

:class:`PieceDownloader` fetches one piece at a time over an active
:class:`~btcore.peer.connection.AsyncPeerConnection`, keeping up to
``pipeline_depth`` block requests in flight and matching responses by
(index, offset). :func:`download_torrent` runs one such downloader per
peer, with the peers claiming pieces from a shared :class:`PieceWorkQueue`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from btcore.config import get_config
from btcore.exceptions import (
    HandshakeFailed,
    MessageError,
    PeerConnectionError,
    PieceHashMismatch,
)
from btcore.models import NetworkConfig, PeerInfo, TorrentInfo
from btcore.peer.connection import AsyncPeerConnection
from btcore.peer.messages import PieceMessage, RequestMessage
from btcore.piece.assembly import PieceAssembly

PieceSink = Callable[[int, bytes], Awaitable[None]]

logger = logging.getLogger(__name__)


class PieceDownloader:
    """Downloads and verifies single pieces over one connection."""

    def __init__(
        self,
        connection: AsyncPeerConnection,
        torrent: TorrentInfo,
        pipeline_depth: int | None = None,
    ):
        """Initialize the downloader.

        Args:
            connection: An active peer connection
            torrent: Metadata of the torrent being downloaded
            pipeline_depth: Maximum outstanding block requests (defaults to config)
        """
        depth = pipeline_depth if pipeline_depth is not None else connection.config.pipeline_depth
        if depth < 1:
            msg = f"Pipeline depth must be at least 1, got {depth}"
            raise ValueError(msg)
        self.connection = connection
        self.torrent = torrent
        self.pipeline_depth = depth
        self.logger = logging.getLogger(__name__)

    async def download_piece(self, piece_index: int) -> bytes:
        """Download, reassemble and verify one piece.

        Raises:
            PieceHashMismatch: If the assembled piece fails its hash check
            PeerTimeout: If the peer stops answering
            PeerConnectionError: If the connection fails
        """
        assembly = PieceAssembly(
            piece_index,
            self.torrent.piece_size(piece_index),
            self.torrent.piece_hash(piece_index),
        )
        connection = self.connection
        self.logger.debug(
            "Downloading piece %d (%d bytes, %d blocks) from %s",
            piece_index,
            assembly.length,
            len(assembly.blocks),
            connection.peer,
        )

        while not assembly.is_complete:
            if connection.peer_state.peer_choking:
                lost = assembly.requeue_outstanding()
                self.logger.debug("Choked by %s, requeued %d requests", connection.peer, lost)
                await connection.wait_for_unchoke()

            free_slots = self.pipeline_depth - assembly.outstanding
            for block in assembly.next_requests(free_slots):
                await connection.send_message(
                    RequestMessage(block.piece_index, block.begin, block.length),
                )

            message = await connection.receive_message()
            if not isinstance(message, PieceMessage):
                continue
            if message.piece_index != piece_index:
                self.logger.debug(
                    "Ignoring block for piece %d while downloading %d",
                    message.piece_index,
                    piece_index,
                )
                continue
            assembly.add_block(message.begin, message.block)

        data = assembly.verify()
        self.logger.info("Piece %d verified (%d bytes) from %s", piece_index, len(data), connection.peer)
        return data


class PieceWorkQueue:
    """Pieces still needed, shared by concurrent peer workers.

    Claiming is atomic: a piece index is handed to at most one worker at a
    time. A failed piece is put back until it exceeds ``max_retries``, and
    is held back from the worker that failed it while another registered
    worker could take it.
    """

    def __init__(self, piece_indices: Iterable[int], max_retries: int = 3):
        """Initialize with the pieces to download, in preferred order."""
        self._pending: deque[int] = deque(dict.fromkeys(piece_indices))
        self._claimed: set[int] = set()
        self._workers: dict[object, Callable[[int], bool] | None] = {}
        self._failed_by: dict[int, set[object]] = {}
        self.completed: set[int] = set()
        self.abandoned: set[int] = set()
        self.failures: dict[int, int] = {}
        self.max_retries = max_retries
        self._condition = asyncio.Condition()

    @property
    def pending(self) -> list[int]:
        """Pieces not yet claimed."""
        return list(self._pending)

    @property
    def finished(self) -> bool:
        """True once nothing is pending or claimed."""
        return not self._pending and not self._claimed

    async def add_worker(self, worker: object, accept: Callable[[int], bool] | None = None) -> None:
        """Register a worker and the pieces it can serve."""
        async with self._condition:
            self._workers[worker] = accept

    async def remove_worker(self, worker: object) -> None:
        async with self._condition:
            self._workers.pop(worker, None)
            self._condition.notify_all()

    def _held_back(self, piece_index: int, worker: object) -> bool:
        failed = self._failed_by.get(piece_index)
        if not failed or worker not in failed:
            return False
        return any(
            other not in failed and (accept is None or accept(piece_index))
            for other, accept in self._workers.items()
        )

    async def claim(
        self,
        accept: Callable[[int], bool] | None = None,
        worker: object | None = None,
    ) -> int | None:
        """Claim the next acceptable piece.

        Waits while other workers hold the only remaining pieces, or while
        a piece this worker failed is left for another worker, since the
        situation may change. Returns None when there is nothing this
        caller can take.
        """
        async with self._condition:
            while True:
                held_back = False
                for index in self._pending:
                    if accept is not None and not accept(index):
                        continue
                    if worker is not None and self._held_back(index, worker):
                        held_back = True
                        continue
                    self._pending.remove(index)
                    self._claimed.add(index)
                    return index
                if not held_back and (self._pending or not self._claimed):
                    return None
                await self._condition.wait()

    async def complete(self, piece_index: int) -> None:
        """Mark a claimed piece as done."""
        async with self._condition:
            self._claimed.discard(piece_index)
            self.completed.add(piece_index)
            self._condition.notify_all()

    async def release(self, piece_index: int, failed: bool = False, worker: object | None = None) -> bool:
        """Give a claimed piece back.

        Args:
            piece_index: The claimed piece
            failed: Count this as a failed attempt (e.g. hash mismatch)
            worker: The worker that failed, to prefer others for the retry

        Returns:
            True if the piece is pending again, False if it was abandoned
        """
        async with self._condition:
            self._claimed.discard(piece_index)
            requeued = True
            if failed:
                self.failures[piece_index] = self.failures.get(piece_index, 0) + 1
                if worker is not None:
                    self._failed_by.setdefault(piece_index, set()).add(worker)
                if self.failures[piece_index] > self.max_retries:
                    self.abandoned.add(piece_index)
                    requeued = False
            if requeued:
                self._pending.appendleft(piece_index)
            self._condition.notify_all()
            return requeued


@dataclass
class DownloadResult:
    """Outcome of a multi-peer download."""

    completed: set[int] = field(default_factory=set)
    abandoned: set[int] = field(default_factory=set)
    missing: set[int] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        """Whether every requested piece was downloaded."""
        return not self.abandoned and not self.missing


async def download_torrent(
    torrent: TorrentInfo,
    peers: Iterable[PeerInfo],
    sink: PieceSink,
    peer_id: bytes,
    piece_indices: Iterable[int] | None = None,
    config: NetworkConfig | None = None,
) -> DownloadResult:
    """Download pieces from several peers concurrently.

    Each peer gets its own connection and task; verified pieces are handed
    to ``sink(piece_index, data)``. A failing peer is dropped and its
    claimed piece returned to the queue. Failures of ``sink`` abort the
    whole download.
    """
    config = config or get_config().network
    indices = range(torrent.num_pieces) if piece_indices is None else piece_indices
    queue = PieceWorkQueue(indices, max_retries=config.piece_max_retries)
    wanted = set(queue.pending)

    async def worker(peer: PeerInfo) -> None:
        try:
            async with AsyncPeerConnection(peer, torrent.info_hash, peer_id, config) as connection:
                downloader = PieceDownloader(connection, torrent, config.pipeline_depth)

                def peer_has(index: int) -> bool:
                    return connection.peer_state.has_piece(index) is not False

                await queue.add_worker(connection, peer_has)
                try:
                    while True:
                        index = await queue.claim(peer_has, worker=connection)
                        if index is None:
                            return
                        try:
                            data = await downloader.download_piece(index)
                            await sink(index, data)
                        except PieceHashMismatch as e:
                            requeued = await queue.release(index, failed=True, worker=connection)
                            logger.warning(
                                "%s from %s (%s)",
                                e,
                                peer,
                                "will retry" if requeued else "giving up",
                            )
                        except BaseException:
                            await queue.release(index)
                            raise
                        else:
                            await queue.complete(index)
                finally:
                    await queue.remove_worker(connection)
        except (HandshakeFailed, PeerConnectionError, MessageError) as e:
            logger.warning("Dropping peer %s: %s", peer, e)

    tasks = [asyncio.create_task(worker(peer)) for peer in peers]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    result = DownloadResult(
        completed=queue.completed & wanted,
        abandoned=set(queue.abandoned),
    )
    result.missing = wanted - result.completed - result.abandoned
    logger.info(
        "Download finished: %d/%d pieces, %d abandoned, %d missing",
        len(result.completed),
        len(wanted),
        len(result.abandoned),
        len(result.missing),
    )
    return result
