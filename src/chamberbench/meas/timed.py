"""Timed test run: fixed deadlines instead of chamber temperature polling.

The chamber runs its own programme. Measured from the start of the run, the
bench sweeps at four cumulative deadlines (high, low, high, low plateaus) and
then waits out `T_end`. Deadlines come from the `T1..T8` interval settings, or
`DEFAULT_TIME_SCHEDULE` when none are configured.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from chamberbench.meas.control import RunControl
from chamberbench.meas.cycle import CYCLE_STATE, HIGH_PLATEAU, LOW_PLATEAU, TestCycle
from chamberbench.meas.judgment import FixedRange, JudgmentPolicy
from chamberbench.report import ReportWriter
from chamberbench.system.broadcast import BroadcastHub
from chamberbench.types import (
    DEFAULT_TIME_SCHEDULE,
    PHASE,
    BenchTimings,
    TestConfiguration,
    TestProgress,
    TimeProgress,
    TimeSchedule,
    time_waiting_phase,
)
from chamberbench.util.defaults import DATA_DIR

if TYPE_CHECKING:
    from chamberbench.system.bench import Bench

TIME_MODE_LABEL = "TimeMode"


class TimedCycle(TestCycle):
    test_type = "Time Mode"

    def __init__(
        self,
        bench: Bench,
        config: TestConfiguration,
        run_control: RunControl,
        hub: BroadcastHub,
        timings: Optional[BenchTimings] = None,
        data_root: str = DATA_DIR,
        policy: Optional[JudgmentPolicy] = None,
        reports: Optional[ReportWriter] = None,
    ):
        super().__init__(
            bench,
            config,
            run_control,
            hub,
            timings=timings,
            data_root=data_root,
            policy=policy or FixedRange(),
            reports=reports,
        )
        if config.time_mode is not None:
            self.schedule: TimeSchedule = config.time_mode.schedule()
        else:
            self.schedule = DEFAULT_TIME_SCHEDULE
        self._t0: Optional[float] = None

    @property
    def n_cycles(self) -> int:
        return len(self.schedule.deadlines_min)

    def status(self) -> dict:
        status = super().status()
        status["elapsedMinutes"] = self.elapsed_seconds() / self.timings.seconds_per_minute
        status["totalMinutes"] = self.schedule.end_min
        return status

    def elapsed_seconds(self) -> float:
        if self._t0 is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._t0

    async def _router(self, state: str) -> str:
        match state:
            case CYCLE_STATE.INITIALIZING:
                return await self._state_initializing()
            case CYCLE_STATE.TIME_WAITING:
                return await self._state_time_waiting()
            case CYCLE_STATE.TIME_TESTING:
                return await self._state_time_testing()
            case CYCLE_STATE.T_END_WAITING:
                return await self._state_t_end_waiting()
            case _:
                raise RuntimeError(f"No route for state {state}")

    def _preflight(self) -> Optional[str]:
        return None  # plateaus run on the clock, whatever the enabled flags say

    def _begin(self) -> str:
        self._t0 = asyncio.get_running_loop().time()
        self.cycle_index = 1
        self.hub.log(
            "Time mode: deadlines "
            + ", ".join(f"{t:g}" for t in self.schedule.deadlines_min)
            + f" min, end {self.schedule.end_min:g} min"
        )
        return CYCLE_STATE.TIME_WAITING

    def _plateau(self):
        # steps alternate high, low, high, low
        return HIGH_PLATEAU if (self.cycle_index - 1) % 2 == 0 else LOW_PLATEAU

    async def _wait_until(self, deadline_min: float) -> bool:
        """Poll until `deadline_min` minutes after the run start; False on stop."""
        spm = self.timings.seconds_per_minute
        deadline = deadline_min * spm
        while True:
            elapsed = self.elapsed_seconds()
            self.hub.publish(
                TimeProgress(
                    elapsed_minutes=elapsed / spm,
                    remaining_minutes=max(0.0, self.schedule.end_min - elapsed / spm),
                    total_minutes=self.schedule.end_min,
                    phase=self.phase,
                )
            )
            if elapsed >= deadline:
                return not self.run_control.stop_requested
            if not await self.run_control.sleep(
                min(self.timings.timed_poll_interval, deadline - elapsed)
            ):
                return False

    async def _state_time_waiting(self) -> str:
        step = self.cycle_index
        self.phase = time_waiting_phase(step)
        self.test_index = 0
        deadline = self.schedule.deadlines_min[step - 1]
        self.hub.transition(
            TestProgress(
                message=f"Time mode step {step}/{self.n_cycles}: {self._plateau().label} "
                + f"sweeps at {deadline:g} min",
                phase=self.phase,
                cycle_index=step,
            ),
            running=True,
        )
        if not await self._wait_until(deadline):
            return self._stop()
        return CYCLE_STATE.TIME_TESTING

    async def _state_time_testing(self) -> str:
        plateau = self._plateau()
        self.phase = plateau.test_phase
        settings = self.config.high_temp if plateau.high else self.config.low_temp
        ended = await self._run_sweeps(TIME_MODE_LABEL, settings.read_count)
        if ended is not None:
            return ended
        if self.cycle_index < self.n_cycles:
            self.cycle_index += 1
            return CYCLE_STATE.TIME_WAITING
        return CYCLE_STATE.T_END_WAITING

    async def _state_t_end_waiting(self) -> str:
        self.phase = PHASE.T_END_WAITING
        self.hub.log(f"Last sweeps done, waiting for T_end ({self.schedule.end_min:g} min)")
        if not await self._wait_until(self.schedule.end_min):
            return self._stop()
        return CYCLE_STATE.COMPLETED
