"""Tests for pipelined piece download and the multi-peer work queue."""

from __future__ import annotations

import asyncio

import pytest

from btcore.core.torrent import TorrentParser
from btcore.exceptions import DiskError, PeerTimeout, PieceHashMismatch
from btcore.peer.connection import AsyncPeerConnection
from btcore.piece.downloader import (
    DownloadResult,
    PieceDownloader,
    PieceWorkQueue,
    download_torrent,
)
from btcore.storage import PieceWriter

pytestmark = [pytest.mark.unit, pytest.mark.piece]

PEER_ID = b"-BC0100-000000000000"
PIECE_LENGTH = 32768


@pytest.fixture
def torrent(torrent_factory, sample_content):
    return TorrentParser().parse_bytes(torrent_factory(sample_content, PIECE_LENGTH))


def piece_of(content: bytes, index: int) -> bytes:
    return content[index * PIECE_LENGTH : (index + 1) * PIECE_LENGTH]


class TestPieceDownloader:
    """Test single-piece download over one connection."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("index", [0, 2])
    async def test_download_out_of_order(self, fake_peer_factory, fast_network, torrent, sample_content, index):
        """Test that blocks answered in reverse order still assemble correctly."""
        _, address = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH, batch=2)
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, fast_network) as connection:
            data = await PieceDownloader(connection, torrent).download_piece(index)
        assert data == piece_of(sample_content, index)

    @pytest.mark.asyncio
    async def test_pipeline_depth_one(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test strictly sequential requests."""
        fake, address = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH)
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, fast_network) as connection:
            data = await PieceDownloader(connection, torrent, pipeline_depth=1).download_piece(1)
        assert data == piece_of(sample_content, 1)
        assert [(r.piece_index, r.begin, r.length) for r in fake.requests] == [
            (1, 0, 16384),
            (1, 16384, 16384),
        ]

    @pytest.mark.asyncio
    async def test_choke_requeues_requests(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that requests discarded by a choke are sent again after unchoke."""
        fake, address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, choke_on_first_request=True
        )
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, fast_network) as connection:
            data = await PieceDownloader(connection, torrent).download_piece(0)
        assert data == piece_of(sample_content, 0)
        assert [r.begin for r in fake.requests].count(0) == 2

    @pytest.mark.asyncio
    async def test_short_block_requested_again(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that a truncated block is re-requested instead of stalling the pipeline."""
        fake, address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, truncate_blocks=((0, 0),)
        )
        config = fast_network.model_copy(update={"message_timeout": 1.0})
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, config) as connection:
            data = await PieceDownloader(connection, torrent, pipeline_depth=1).download_piece(0)
        assert data == piece_of(sample_content, 0)
        assert [r.begin for r in fake.requests] == [0, 0, 16384]

    @pytest.mark.asyncio
    async def test_hash_mismatch(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that corrupted data is reported and never returned."""
        _, address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, corrupt_pieces=(1,)
        )
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, fast_network) as connection:
            with pytest.raises(PieceHashMismatch) as exc_info:
                await PieceDownloader(connection, torrent).download_piece(1)
        assert exc_info.value.piece_index == 1

    @pytest.mark.asyncio
    async def test_stalled_peer_times_out(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that unanswered requests end in PeerTimeout."""
        _, address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, stall_requests=True
        )
        config = fast_network.model_copy(update={"message_timeout": 0.3})
        async with AsyncPeerConnection(address, torrent.info_hash, PEER_ID, config) as connection:
            with pytest.raises(PeerTimeout):
                await PieceDownloader(connection, torrent).download_piece(0)
            assert connection.is_closed

    def test_invalid_pipeline_depth(self, fast_network, torrent):
        """Test that at least one request must be allowed in flight."""
        connection = AsyncPeerConnection.__new__(AsyncPeerConnection)
        connection.config = fast_network
        with pytest.raises(ValueError):
            PieceDownloader(connection, torrent, pipeline_depth=0)


class TestPieceWorkQueue:
    """Test the shared work set."""

    @pytest.mark.asyncio
    async def test_claim_in_order_once(self):
        """Test that each piece is handed out once."""
        queue = PieceWorkQueue([2, 0, 1, 0])
        assert queue.pending == [2, 0, 1]
        claimed = [await queue.claim() for _ in range(3)]
        assert claimed == [2, 0, 1]
        assert not queue.finished

    @pytest.mark.asyncio
    async def test_claim_with_filter(self):
        """Test that a caller only gets pieces it accepts."""
        queue = PieceWorkQueue([0, 1, 2])
        assert await queue.claim(lambda i: i == 2) == 2
        assert await queue.claim(lambda i: i > 5) is None
        assert queue.pending == [0, 1]

    @pytest.mark.asyncio
    async def test_release_and_abandon(self):
        """Test retry accounting for failed pieces."""
        queue = PieceWorkQueue([0], max_retries=1)
        assert await queue.claim() == 0
        assert await queue.release(0, failed=True)
        assert await queue.claim() == 0
        assert not await queue.release(0, failed=True)
        assert queue.abandoned == {0}
        assert queue.failures == {0: 2}
        assert queue.finished
        assert await queue.claim() is None

    @pytest.mark.asyncio
    async def test_release_without_failure_does_not_count(self):
        """Test that handing back a piece from a dropped peer is free."""
        queue = PieceWorkQueue([0], max_retries=0)
        await queue.claim()
        assert await queue.release(0)
        assert queue.failures == {}
        assert queue.pending == [0]

    @pytest.mark.asyncio
    async def test_claim_waits_for_other_worker(self):
        """Test that an idle worker waits while another holds the last piece."""
        queue = PieceWorkQueue([0])
        assert await queue.claim() == 0
        waiter = asyncio.create_task(queue.claim())
        await asyncio.sleep(0.01)
        assert not waiter.done()
        await queue.release(0, failed=True)
        assert await asyncio.wait_for(waiter, timeout=1.0) == 0

    @pytest.mark.asyncio
    async def test_waiter_finishes_when_work_completes(self):
        """Test that a waiting worker gets None once the last piece is done."""
        queue = PieceWorkQueue([0])
        await queue.claim()
        waiter = asyncio.create_task(queue.claim())
        await asyncio.sleep(0.01)
        await queue.complete(0)
        assert await asyncio.wait_for(waiter, timeout=1.0) is None
        assert queue.completed == {0}

    @pytest.mark.asyncio
    async def test_failed_piece_left_for_other_worker(self):
        """Test that a worker does not retry its own failure while another can."""
        queue = PieceWorkQueue([0, 1], max_retries=3)
        await queue.add_worker("a")
        await queue.add_worker("b")
        assert await queue.claim(worker="a") == 0
        assert await queue.release(0, failed=True, worker="a")
        assert await queue.claim(worker="a") == 1
        assert await queue.claim(worker="b") == 0

    @pytest.mark.asyncio
    async def test_failed_piece_retried_when_alone(self):
        """Test that the failing worker retries once no other worker can serve the piece."""
        queue = PieceWorkQueue([0], max_retries=3)
        await queue.add_worker("a")
        await queue.add_worker("b", lambda i: i != 0)
        assert await queue.claim(worker="a") == 0
        await queue.release(0, failed=True, worker="a")
        assert await queue.claim(worker="a") == 0

    @pytest.mark.asyncio
    async def test_failed_piece_waits_for_other_worker(self):
        """Test that the failing worker takes its piece back after the other leaves."""
        queue = PieceWorkQueue([0], max_retries=3)
        await queue.add_worker("a")
        await queue.add_worker("b")
        await queue.claim(worker="a")
        await queue.release(0, failed=True, worker="a")
        waiter = asyncio.create_task(queue.claim(worker="a"))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        await queue.remove_worker("b")
        assert await asyncio.wait_for(waiter, timeout=1.0) == 0


class TestDownloadTorrent:
    """Test concurrent download from several peers."""

    @pytest.mark.asyncio
    async def test_two_peers(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that every piece arrives exactly once across peers."""
        _, first = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH, batch=2)
        _, second = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH)
        received: dict[int, bytes] = {}

        async def sink(index: int, data: bytes) -> None:
            assert index not in received
            received[index] = data

        result = await download_torrent(torrent, [first, second], sink, PEER_ID, config=fast_network)
        assert result.ok
        assert result.completed == {0, 1, 2}
        assert b"".join(received[i] for i in range(3)) == sample_content

    @pytest.mark.asyncio
    async def test_bad_peer_is_dropped(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that a peer failing its handshake does not stop the download."""
        _, bad = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, reply_info_hash=b"\x00" * 20
        )
        _, good = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH)
        received: dict[int, bytes] = {}

        async def sink(index: int, data: bytes) -> None:
            received[index] = data

        result = await download_torrent(torrent, [bad, good], sink, PEER_ID, config=fast_network)
        assert result.ok
        assert sorted(received) == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_corrupt_piece_abandoned(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that a piece failing every retry is abandoned, not written."""
        _, address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, corrupt_pieces=(0,)
        )
        received: dict[int, bytes] = {}

        async def sink(index: int, data: bytes) -> None:
            received[index] = data

        result = await download_torrent(torrent, [address], sink, PEER_ID, config=fast_network)
        assert not result.ok
        assert result.abandoned == {0}
        assert result.completed == {1, 2}
        assert 0 not in received

    @pytest.mark.asyncio
    async def test_corrupt_piece_retried_from_other_peer(
        self, fake_peer_factory, fast_network, torrent, sample_content
    ):
        """Test that a piece failing its hash check is fetched again from a different peer."""
        bad, bad_address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, corrupt_pieces=(0,), block_delay=0.2
        )
        good, good_address = await fake_peer_factory(
            torrent.info_hash, sample_content, PIECE_LENGTH, handshake_delay=0.1
        )
        received: dict[int, bytes] = {}

        async def sink(index: int, data: bytes) -> None:
            received[index] = data

        result = await download_torrent(
            torrent, [bad_address, good_address], sink, PEER_ID, piece_indices=[0, 1, 2], config=fast_network
        )
        assert result.ok
        assert received[0] == piece_of(sample_content, 0)
        # One attempt at piece 0 from the corrupting peer, two blocks
        assert [r.begin for r in bad.requests if r.piece_index == 0] == [0, 16384]
        assert any(r.piece_index == 0 for r in good.requests)

    @pytest.mark.asyncio
    async def test_no_peers_leaves_pieces_missing(self, fast_network, torrent):
        """Test the result when nobody could serve anything."""

        async def sink(index: int, data: bytes) -> None:
            raise AssertionError("unexpected piece")

        result = await download_torrent(torrent, [], sink, PEER_ID, piece_indices=[1], config=fast_network)
        assert result == DownloadResult(missing={1})
        assert not result.ok

    @pytest.mark.asyncio
    async def test_sink_failure_aborts(self, fake_peer_factory, fast_network, torrent, sample_content):
        """Test that a storage error stops the whole download."""
        _, address = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH)

        async def sink(index: int, data: bytes) -> None:
            raise DiskError("disk full")

        with pytest.raises(DiskError, match="disk full"):
            await download_torrent(torrent, [address], sink, PEER_ID, config=fast_network)

    @pytest.mark.asyncio
    async def test_download_to_file(self, fake_peer_factory, fast_network, torrent, sample_content, tmp_path):
        """Test writing verified pieces to their file offsets."""
        _, address = await fake_peer_factory(torrent.info_hash, sample_content, PIECE_LENGTH, batch=3)
        output = tmp_path / "out" / "sample.txt"
        writer = PieceWriter(output, torrent.piece_length, torrent.total_length)

        result = await download_torrent(
            torrent, [address], writer.write_piece, PEER_ID, piece_indices=[2, 0, 1], config=fast_network
        )
        assert result.ok
        assert output.read_bytes() == sample_content
