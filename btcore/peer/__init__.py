"""Peer wire protocol: message codec and connection state machine."""

from __future__ import annotations

from btcore.peer.connection import AsyncPeerConnection, PeerState
from btcore.peer.messages import (
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    decode_frame,
    decode_message,
)

__all__ = [
    "AsyncPeerConnection",
    "BitfieldMessage",
    "CancelMessage",
    "ChokeMessage",
    "Handshake",
    "HaveMessage",
    "InterestedMessage",
    "KeepAliveMessage",
    "NotInterestedMessage",
    "PeerMessage",
    "PeerState",
    "PieceMessage",
    "RequestMessage",
    "UnchokeMessage",
    "decode_frame",
    "decode_message",
]
