"""Shared helpers: timeouts, retries, backoff and peer ids."""

from __future__ import annotations

from btcore.utils.backoff import ExponentialBackoff
from btcore.utils.peer_id import generate_peer_id
from btcore.utils.resilience import bounded, call_with_retry

__all__ = [
    "ExponentialBackoff",
    "bounded",
    "call_with_retry",
    "generate_peer_id",
]
