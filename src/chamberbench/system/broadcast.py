"""Publish/subscribe topic for run events, and the live-table debouncer.

Every observer (the control server's PUB socket, the CLI `run` printer, tests)
holds a `Subscription` on the one `BroadcastHub` of the process. Producers never
know who is listening.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from chamberbench.types import (
    Notification,
    PowerSwitch,
    ProcessLog,
    TestProgress,
)
from chamberbench.util.defaults import TABLE_DEBOUNCE


class Subscription:
    def __init__(self, hub: BroadcastHub, maxsize: int = 0):
        self._hub = hub
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize)
        self.dropped = 0

    async def get(self) -> Notification:
        return await self.queue.get()

    def get_nowait(self) -> Notification:
        return self.queue.get_nowait()

    def drain(self) -> list[Notification]:
        """Everything queued so far, without waiting."""
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out

    def close(self):
        self._hub.unsubscribe(self)


class BroadcastHub:
    def __init__(self):
        self._subscriptions: list[Subscription] = []

    def subscribe(self, maxsize: int = 0) -> Subscription:
        sub = Subscription(self, maxsize)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    @property
    def n_subscribers(self) -> int:
        return len(self._subscriptions)

    def publish(self, notif: Notification):
        logger.trace("Broadcast: {}", notif.to_text()[:200])
        for sub in list(self._subscriptions):
            try:
                sub.queue.put_nowait(notif)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.warning(
                    "Subscriber queue full, dropped {} ({} dropped so far)",
                    notif.type,
                    sub.dropped,
                )

    # ------------------------------------------------------------------
    # helpers for the common events

    def log(self, message: str):
        logger.info(message)
        self.publish(ProcessLog(message=message))

    def progress(self, message: str, phase: str = "", cycle_index: int = 0, test_index: int = 0):
        logger.info(message)
        self.publish(
            TestProgress(
                message=message,
                phase=phase,
                cycle_index=cycle_index,
                test_index=test_index,
            )
        )

    def transition(self, notif: Notification, running: bool, reason: str = ""):
        """Publish a terminal/phase-transition event followed by its running-status echo."""
        self.publish(notif)
        self.publish(PowerSwitch(running=running, reason=reason))


class TableDebouncer:
    """Rate-limits live-table snapshots to one per `interval` seconds.

    The first update after a quiet period goes out at once. Later ones are
    coalesced (latest wins) into a single flush scheduled with
    `loop.call_later` at the end of the interval. `force=True` skips the
    wait and drops whatever was pending.
    """

    def __init__(
        self,
        hub: BroadcastHub,
        interval: float = TABLE_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.hub = hub
        self.interval = interval
        self._clock = clock
        self._pending: Optional[Notification] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._last_sent: Optional[float] = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _send(self, notif: Notification):
        self._last_sent = self._clock()
        self.hub.publish(notif)

    def _fire(self):
        self._timer = None
        if self._pending is not None:
            notif, self._pending = self._pending, None
            self._send(notif)

    def publish(self, notif: Notification, force: bool = False):
        now = self._clock()
        if force or self._last_sent is None or now - self._last_sent >= self.interval:
            self._cancel_timer()
            self._pending = None
            self._send(notif)
            return
        self._pending = notif
        if self._timer is None:
            delay = max(0.0, self.interval - (now - self._last_sent))
            self._timer = asyncio.get_running_loop().call_later(delay, self._fire)

    def flush(self):
        self._cancel_timer()
        self._fire()

    def cancel(self):
        self._cancel_timer()
        self._pending = None
