"""Timeout and retry helpers.

:func:`bounded` is the single place where a blocking network operation is
raced against a deadline; peer connections route connect, handshake and
every framed read/write through it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from btcore.exceptions import BtCoreError, PeerTimeout
from btcore.utils.backoff import ExponentialBackoff

T = TypeVar("T")

logger = logging.getLogger(__name__)


async def bounded(
    operation: Awaitable[T],
    timeout: float,
    description: str,
    error_cls: type[BtCoreError] = PeerTimeout,
) -> T:
    """Await ``operation`` for at most ``timeout`` seconds.

    On expiry the operation is cancelled and ``error_cls`` is raised; the
    caller decides what else to tear down.
    """
    try:
        return await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError:
        msg = f"{description} timed out after {timeout:g}s"
        raise error_cls(msg, {"timeout": timeout}) from None


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    retries: int,
    retry_on: tuple[type[Exception], ...],
    backoff: ExponentialBackoff | None = None,
    description: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or ``retries`` extra attempts are used.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised.
    """
    backoff = backoff or ExponentialBackoff()
    attempt = 0
    while True:
        try:
            return await func()
        except retry_on as e:
            if attempt >= retries:
                raise
            delay = backoff.next_delay(attempt)
            attempt += 1
            logger.warning(
                "%s failed (%s); retry %d/%d in %.2fs",
                description,
                e,
                attempt,
                retries,
                delay,
            )
            await asyncio.sleep(delay)
