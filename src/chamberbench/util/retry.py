# -*- coding: utf-8 -*-
"""Retry-with-backoff for tagged hardware results."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from loguru import logger

from chamberbench.types.results import ChannelResult

if TYPE_CHECKING:
    from chamberbench.meas.control import RunControl

R = TypeVar("R")


async def with_retry(
    op: Callable[[], Awaitable[R]],
    attempts: int,
    backoff: float,
    run_control: Optional[RunControl] = None,
    label: str = "operation",
) -> R | ChannelResult:
    """Await `op` until it reports success, at most `attempts` times.

    Parameters
    ----------
    op : Callable[[], Awaitable[R]]
        Zero-argument coroutine function returning a result with a `success`
        attribute (`ChannelResult`, `ChamberReading`).
    attempts : int
        Maximum number of calls.
    backoff : float
        Seconds to wait between failed attempts.
    run_control : RunControl, optional
        Polled before every attempt; a stop request ends the loop with
        `ChannelResult.stop()`. Backoff waits wake early on stop.
    label : str
        Name used in log lines.

    Returns
    -------
    R | ChannelResult
        The first successful result, the last failed one, or a stopped result.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    result = None
    for attempt in range(1, attempts + 1):
        if run_control is not None and run_control.stop_requested:
            logger.info("{}: stop requested before attempt {}/{}", label, attempt, attempts)
            return ChannelResult.stop()
        result = await op()
        if result.success:
            if attempt > 1:
                logger.info("{} succeeded on attempt {}/{}", label, attempt, attempts)
            return result
        logger.warning(
            "{} failed (attempt {}/{}): {}", label, attempt, attempts, result.error
        )
        if attempt < attempts:
            if run_control is not None:
                await run_control.sleep(backoff)
            else:
                await asyncio.sleep(backoff)
    logger.error("{} failed after {} attempts.", label, attempts)
    return result
