"""Piece assembly, verification and block-level download."""

from __future__ import annotations

from btcore.piece.assembly import BlockRequest, PieceAssembly, iter_blocks, verify_piece
from btcore.piece.downloader import (
    DownloadResult,
    PieceDownloader,
    PieceWorkQueue,
    download_torrent,
)

__all__ = [
    "BlockRequest",
    "DownloadResult",
    "PieceAssembly",
    "PieceDownloader",
    "PieceWorkQueue",
    "download_torrent",
    "iter_blocks",
    "verify_piece",
]
