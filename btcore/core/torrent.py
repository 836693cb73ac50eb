"""Torrent file parsing for BitTorrent client.

This module handles parsing torrent files, extracting metadata,
and calculating info hashes as required by the BitTorrent protocol.
"""

from __future__ import annotations

import hashlib
import logging
import math
from pathlib import Path
from typing import Any

from btcore.core.bencode import decode, decode_value, encode
from btcore.exceptions import InvalidPieceTable, MissingField, TorrentError
from btcore.models import HASH_LENGTH, TorrentInfo
from btcore.storage import read_torrent_file

logger = logging.getLogger(__name__)


def split_piece_hashes(pieces: bytes) -> list[bytes]:
    """Split the concatenated ``pieces`` string into 20-byte digests.

    Raises:
        InvalidPieceTable: If the length is not a multiple of 20
    """
    if len(pieces) % HASH_LENGTH != 0:
        msg = f"Invalid pieces data length: {len(pieces)} bytes (should be multiple of {HASH_LENGTH})"
        raise InvalidPieceTable(msg)
    return [pieces[i : i + HASH_LENGTH] for i in range(0, len(pieces), HASH_LENGTH)]


def compute_info_hash(info: dict[bytes, Any]) -> bytes:
    """SHA-1 of the canonical bencoding of an info dictionary."""
    return hashlib.sha1(encode(info)).digest()  # noqa: S324


def find_info_bytes(data: bytes) -> bytes | None:
    """Return the exact bytes of the top-level ``info`` value, if present.

    Keys are kept in file order, which need not be sorted.
    """
    if not data.startswith(b"d"):
        return None
    pos = 1
    while pos < len(data) and data[pos : pos + 1] != b"e":
        key, consumed = decode_value(data, pos)
        pos += consumed
        _, consumed = decode_value(data, pos)
        if key == b"info":
            return data[pos : pos + consumed]
        pos += consumed
    return None


class TorrentParser:
    """Parser for single-file BitTorrent torrent files."""

    def parse(self, torrent_path: str | Path) -> TorrentInfo:
        """Parse a torrent file from a local path.

        Raises:
            TorrentError: If the file cannot be read or is not a valid torrent
        """
        return self.parse_bytes(read_torrent_file(torrent_path))

    def parse_bytes(self, data: bytes) -> TorrentInfo:
        """Parse raw torrent file contents.

        Raises:
            MalformedEncoding: If the data is not valid bencode
            TorrentError: If required fields are missing or inconsistent
        """
        decoded = decode(data)
        return self.parse_dict(decoded, info_bytes=find_info_bytes(data))

    def parse_dict(self, data: Any, info_bytes: bytes | None = None) -> TorrentInfo:
        """Build :class:`TorrentInfo` from a decoded torrent dictionary.

        Args:
            data: Decoded metainfo
            info_bytes: Raw encoding of the info dictionary as found in the
                file; without it the info hash is taken over the canonical
                re-encoding
        """
        if not isinstance(data, dict):
            msg = "Torrent root must be a dictionary"
            raise TorrentError(msg)

        announce = self._require(data, b"announce", bytes)
        info = self._require(data, b"info", dict)

        name = self._require(info, b"name", bytes, prefix="info.")
        length = self._require(info, b"length", int, prefix="info.")
        piece_length = self._require(info, b"piece length", int, prefix="info.")
        pieces = self._require(info, b"pieces", bytes, prefix="info.")

        if piece_length <= 0:
            msg = f"Invalid piece length: {piece_length}"
            raise InvalidPieceTable(msg)
        if length < 0:
            msg = f"Invalid total length: {length}"
            raise TorrentError(msg)

        piece_hashes = split_piece_hashes(pieces)
        expected_pieces = math.ceil(length / piece_length)
        if len(piece_hashes) != expected_pieces:
            msg = (
                f"Torrent has {len(piece_hashes)} piece hashes but "
                f"{length} bytes at {piece_length} bytes per piece need {expected_pieces}"
            )
            raise InvalidPieceTable(msg)

        if info_bytes is not None:
            info_hash = hashlib.sha1(info_bytes).digest()  # noqa: S324
        else:
            info_hash = compute_info_hash(info)
        logger.debug(
            "Parsed torrent %s: %d pieces, info hash %s",
            name,
            len(piece_hashes),
            info_hash.hex(),
        )

        return TorrentInfo(
            name=self._text(name),
            info_hash=info_hash,
            announce=self._text(announce),
            total_length=length,
            piece_length=piece_length,
            pieces=piece_hashes,
            comment=self._optional_text(data, b"comment"),
            created_by=self._optional_text(data, b"created by"),
            creation_date=self._optional_int(data, b"creation date"),
        )

    def _require(
        self,
        data: dict[bytes, Any],
        key: bytes,
        expected_type: type,
        prefix: str = "",
    ) -> Any:
        field = prefix + key.decode("ascii")
        if key not in data:
            raise MissingField(field)
        value = data[key]
        # bool never appears in decoded data, but guard int fields anyway
        if not isinstance(value, expected_type) or isinstance(value, bool):
            msg = f"Field {field} has type {type(value).__name__}, expected {expected_type.__name__}"
            raise TorrentError(msg)
        return value

    def _text(self, value: bytes) -> str:
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            msg = f"Field is not valid UTF-8: {value!r}"
            raise TorrentError(msg) from e

    def _optional_text(self, data: dict[bytes, Any], key: bytes) -> str | None:
        value = data.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return None

    def _optional_int(self, data: dict[bytes, Any], key: bytes) -> int | None:
        value = data.get(key)
        return value if isinstance(value, int) else None
