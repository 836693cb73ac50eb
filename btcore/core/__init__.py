"""Core BitTorrent protocol implementation.

This module contains the fundamental BitTorrent protocol components:
- Bencoding (encoding/decoding)
- Torrent file parsing
"""

from __future__ import annotations

from btcore.core.bencode import (
    BencodeDecoder,
    BencodeEncoder,
    decode,
    decode_value,
    encode,
    to_json_compatible,
)
from btcore.core.torrent import (
    TorrentParser,
    compute_info_hash,
    find_info_bytes,
    split_piece_hashes,
)

__all__ = [
    # Bencoding
    "BencodeDecoder",
    "BencodeEncoder",
    # Torrent
    "TorrentParser",
    "compute_info_hash",
    "decode",
    "decode_value",
    "encode",
    "find_info_bytes",
    "split_piece_hashes",
    "to_json_compatible",
]
