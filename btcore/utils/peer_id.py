"""Peer id generation."""

from __future__ import annotations

import secrets

PEER_ID_LENGTH = 20


def generate_peer_id(prefix: str = "-BC0100-") -> bytes:
    """Generate a 20-byte Azureus-style peer id.

    The id should be generated once per process and passed to both the
    tracker client and every peer connection.
    """
    raw_prefix = prefix.encode("ascii")
    if len(raw_prefix) > PEER_ID_LENGTH:
        msg = f"Peer id prefix longer than {PEER_ID_LENGTH} bytes: {prefix!r}"
        raise ValueError(msg)
    return raw_prefix + secrets.token_bytes(PEER_ID_LENGTH - len(raw_prefix))
