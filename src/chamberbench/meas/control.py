"""Run control: the machine-running flag and the cooperative stop token.

One `RunControl` is shared (by reference) between the control input, the cycle
state machine, the sweep engine and every retry loop underneath. Nothing reads
ambient globals: tests build an independent `RunControl` per run.

`running` is only changed by the ON/OFF control input and by the safety
shutdown. `stop_requested` latches: once set it stays set until `begin_run()`
is called for a new run, so after a run ends abnormally the flag still says so.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from chamberbench.types import STOP_REASON


class RunControl:
    def __init__(self):
        self.running = False
        self.stop_requested = False
        self.stop_reason = ""
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # control input

    def power_on(self):
        self.running = True

    def power_off(self, reason: str = STOP_REASON.POWER_SWITCH_OFF):
        self.running = False
        self.request_stop(reason)

    def request_stop(self, reason: str = STOP_REASON.USER_STOP):
        if not self.stop_requested:
            logger.info("Stop requested: {}", reason)
            self.stop_reason = reason
            self.stop_requested = True
        self._stop_event.set()

    # ------------------------------------------------------------------
    # run lifecycle

    def begin_run(self):
        """Clear the stop latch for a fresh run."""
        self.stop_requested = False
        self.stop_reason = ""
        self._stop_event.clear()

    def force_stopped(self):
        """Safety shutdown: the machine is no longer running."""
        self.running = False

    # ------------------------------------------------------------------

    async def sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`, waking early on a stop request.

        Returns True if the full wait elapsed, False if a stop was requested
        (before or during the wait).
        """
        if self.stop_requested:
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self.stop_requested
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return not self.stop_requested
        return False

    def snapshot(self) -> dict:
        return {
            "running": self.running,
            "stopRequested": self.stop_requested,
            "stopReason": self.stop_reason,
        }
