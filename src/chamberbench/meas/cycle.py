"""Temperature-cycle test run as an async state machine.

Per cycle the run waits for the chamber to reach the high plateau, lets it
stabilize, runs `read_count` sweeps, then does the same for the low plateau.
Either plateau can be disabled. Every sweep is written to CSV, averaged into a
per-plateau report and folded into the run aggregate behind the final report.

Only the `_router` moves between states. Any unexpected exception ends the run
in ERROR (`system_failure`) after a relay all-off safety shutdown.
"""

from __future__ import annotations

import types
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from loguru import logger

from chamberbench.meas.control import RunControl
from chamberbench.meas.judgment import JudgmentPolicy, PercentTolerance
from chamberbench.meas.matrix import CycleAccumulator, MeasurementMatrix, RunAggregate
from chamberbench.meas.sweep import SweepEngine
from chamberbench.report import ReportWriter
from chamberbench.system.broadcast import BroadcastHub
from chamberbench.types import (
    CHAMBER_STATUS,
    PHASE,
    RUN_STATUS,
    STOP_REASON,
    BenchTimings,
    ChamberTemperature,
    DirectoryCreated,
    RunResult,
    StopPoint,
    TemperatureSettings,
    TestCompleted,
    TestConfiguration,
    TestError,
    TestProgress,
    TestStopped,
)
from chamberbench.util.defaults import DATA_DIR

if TYPE_CHECKING:
    from chamberbench.system.bench import Bench

CYCLE_STATE = types.SimpleNamespace()
CYCLE_STATE.IDLE = "IDLE"
CYCLE_STATE.INITIALIZING = "INITIALIZING"
CYCLE_STATE.WAITING_HIGH = "WAITING_HIGH"
CYCLE_STATE.TESTING_HIGH = "TESTING_HIGH"
CYCLE_STATE.WAITING_LOW = "WAITING_LOW"
CYCLE_STATE.TESTING_LOW = "TESTING_LOW"
CYCLE_STATE.NEXT_CYCLE = "NEXT_CYCLE"
CYCLE_STATE.TIME_WAITING = "TIME_WAITING"
CYCLE_STATE.TIME_TESTING = "TIME_TESTING"
CYCLE_STATE.T_END_WAITING = "T_END_WAITING"
CYCLE_STATE.COMPLETED = "COMPLETED"
CYCLE_STATE.STOPPED = "STOPPED"
CYCLE_STATE.ERROR = "ERROR"

TERMINAL_STATES = (CYCLE_STATE.COMPLETED, CYCLE_STATE.STOPPED, CYCLE_STATE.ERROR)


@dataclass(frozen=True)
class Plateau:
    label: str
    high: bool
    wait_phase: str
    test_phase: str

    def reached(self, temperature: float, target: float) -> bool:
        return temperature >= target if self.high else temperature <= target


HIGH_PLATEAU = Plateau("HighTemp", True, PHASE.HIGH_TEMP_WAITING, PHASE.HIGH_TEMP_TEST)
LOW_PLATEAU = Plateau("LowTemp", False, PHASE.LOW_TEMP_WAITING, PHASE.LOW_TEMP_TEST)


class TestCycle:
    """One bench run over `config.delay.cycle_count` temperature cycles.

    Parameters
    ----------
    bench : Bench
    config : TestConfiguration
        Validated before the run starts; `ConfigurationError` otherwise.
    run_control : RunControl
        Must be running (power switch ON) for the run to start.
    hub : BroadcastHub
    timings : BenchTimings, optional
    data_root : str
        Parent directory of the per-run report directory.
    policy : JudgmentPolicy, optional
        Defaults to `PercentTolerance(config.tolerance)`.
    reports : ReportWriter, optional
    """

    __test__ = False
    test_type = "Temperature Cycle"

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
        self.bench = bench
        self.config = config
        self.run_control = run_control
        self.hub = hub
        self.timings = timings or BenchTimings()
        self.policy = policy or PercentTolerance(config.tolerance)
        self.reports = reports or ReportWriter(config, data_root)
        self.sweeper = SweepEngine(bench, config, run_control, hub, self.timings)
        self.aggregate = RunAggregate(len(config.output_voltages), config.device_selection)

        self.state = CYCLE_STATE.IDLE
        self.phase = PHASE.INITIALIZATION
        self.cycle_index = 0
        self.test_index = 0
        self.last_temperature: Optional[float] = None
        self.result: Optional[RunResult] = None
        self._reason = ""
        self._error = ""
        self._stop_point: Optional[StopPoint] = None
        self._last_matrix: Optional[MeasurementMatrix] = None

    @property
    def n_cycles(self) -> int:
        return self.config.delay.cycle_count

    def status(self) -> dict:
        return {
            "state": self.state,
            "phase": self.phase,
            "cycle": self.cycle_index,
            "cycles": self.n_cycles,
            "test": self.test_index,
            "temperature": self.last_temperature,
            "directory": str(self.reports.directory or ""),
        }

    # ------------------------------------------------------------------

    async def run(self) -> RunResult:
        self.config.validate_or_raise()
        self.state = CYCLE_STATE.INITIALIZING
        while self.state not in TERMINAL_STATES:
            try:
                next_state = await self._router(self.state)
            except Exception as e:
                logger.exception("Error in test cycle state machine.")
                next_state = self._fail(STOP_REASON.SYSTEM_FAILURE, f"{type(e).__name__}: {e}")
            if next_state != self.state:
                logger.info("Test cycle state: {} -> {}", self.state, next_state)
            self.state = next_state
        return await self._finish()

    async def _router(self, state: str) -> str:
        match state:
            case CYCLE_STATE.INITIALIZING:
                return await self._state_initializing()
            case CYCLE_STATE.WAITING_HIGH:
                return await self._state_waiting(HIGH_PLATEAU, self.config.high_temp)
            case CYCLE_STATE.TESTING_HIGH:
                return await self._state_testing(HIGH_PLATEAU, self.config.high_temp)
            case CYCLE_STATE.WAITING_LOW:
                return await self._state_waiting(LOW_PLATEAU, self.config.low_temp)
            case CYCLE_STATE.TESTING_LOW:
                return await self._state_testing(LOW_PLATEAU, self.config.low_temp)
            case CYCLE_STATE.NEXT_CYCLE:
                return await self._state_next_cycle()
            case _:
                raise RuntimeError(f"No route for state {state}")

    # ----------------------------------------------------------------------------------
    # ============================= STATE MACHINE - STATES =============================
    # ----------------------------------------------------------------------------------

    async def _state_initializing(self) -> str:
        self.phase = PHASE.INITIALIZATION
        if not self.run_control.running:
            return self._stop(STOP_REASON.POWER_SWITCH_OFF)
        refused = self._preflight()
        if refused is not None:
            return refused

        self.hub.log("Safety reset: switching all relays off.")
        reset = await self.bench.relays.all_off()
        if not reset.success:
            logger.warning("Relay all-off at start incomplete: {}", reset.error)

        self.phase = PHASE.DIRECTORY_CREATION
        directory = self.reports.create_run_directory()
        self.hub.publish(DirectoryCreated(directory=str(directory)))
        return self._begin()

    def _preflight(self) -> Optional[str]:
        if not (self.config.high_temp.enabled or self.config.low_temp.enabled):
            return self._fail(
                STOP_REASON.NO_TESTS_ENABLED, "Neither high nor low temperature test is enabled."
            )
        return None

    def _begin(self) -> str:
        self.cycle_index = 1
        return self._start_cycle()

    def _start_cycle(self) -> str:
        self.hub.transition(
            TestProgress(
                message=f"Cycle {self.cycle_index}/{self.n_cycles} started",
                phase=self.phase,
                cycle_index=self.cycle_index,
            ),
            running=True,
        )
        if self.config.high_temp.enabled:
            return CYCLE_STATE.WAITING_HIGH
        return CYCLE_STATE.WAITING_LOW

    async def _state_waiting(self, plateau: Plateau, settings: TemperatureSettings) -> str:
        self.phase = plateau.wait_phase
        self.test_index = 0
        if self.run_control.stop_requested:
            return self._stop()
        self.hub.transition(
            TestProgress(
                message=f"Cycle {self.cycle_index}/{self.n_cycles}: waiting for "
                + f"{plateau.label} {settings.target_temp:g}C",
                phase=self.phase,
                cycle_index=self.cycle_index,
            ),
            running=True,
        )
        while True:
            if self.run_control.stop_requested:
                return self._stop()
            reading = await self.bench.chamber.read_temperature()
            self.hub.publish(
                ChamberTemperature(status=reading.status, temperature=reading.temperature)
            )
            if reading.status == CHAMBER_STATUS.FAILED:
                return self._fail(
                    STOP_REASON.CHAMBER_READ_FAILED,
                    f"Chamber read {reading.status}: {reading.error or reading.raw}",
                )
            if reading.success:
                self.last_temperature = reading.temperature
                if plateau.reached(reading.temperature, settings.target_temp):
                    break
                logger.info(
                    "Chamber at {:.2f}C, waiting for {} {:g}C",
                    reading.temperature,
                    plateau.label,
                    settings.target_temp,
                )
            else:
                # no usable sample, counts as target not reached
                logger.warning(
                    "Chamber read {} ({}), polling again", reading.status, reading.error
                )
            if not await self.run_control.sleep(self.timings.chamber_poll_interval):
                return self._stop()

        self.hub.log(
            f"{plateau.label} {settings.target_temp:g}C reached "
            + f"({self.last_temperature:.2f}C), stabilizing for "
            + f"{settings.wait_time_minutes:g} min"
        )
        if not await self._wait(self.timings.minutes(settings.wait_time_minutes)):
            return self._stop()
        return CYCLE_STATE.TESTING_HIGH if plateau.high else CYCLE_STATE.TESTING_LOW

    async def _state_testing(self, plateau: Plateau, settings: TemperatureSettings) -> str:
        self.phase = plateau.test_phase
        ended = await self._run_sweeps(plateau.label, settings.read_count)
        if ended is not None:
            return ended
        if plateau.high and self.config.low_temp.enabled:
            return CYCLE_STATE.WAITING_LOW
        return CYCLE_STATE.NEXT_CYCLE

    async def _state_next_cycle(self) -> str:
        if self.cycle_index >= self.n_cycles:
            return CYCLE_STATE.COMPLETED
        if not await self.run_control.sleep(self.timings.cycle_gap):
            return self._stop()
        self.cycle_index += 1
        return self._start_cycle()

    # ------------------------------------------------------------------
    # shared steps

    async def _wait(self, seconds: float) -> bool:
        """Interruptible wait, logging the remaining time at each check."""
        remaining = seconds
        while remaining > 0:
            chunk = min(self.timings.wait_check_interval, remaining)
            if not await self.run_control.sleep(chunk):
                return False
            remaining -= chunk
            logger.debug("{}: {:.0f}s remaining", self.phase, remaining)
        return not self.run_control.stop_requested

    async def _run_sweeps(self, label: str, read_count: int) -> Optional[str]:
        """Run `read_count` single-read sweeps; returns a terminal state if the run must end."""
        shape = (
            len(self.config.output_voltages),
            self.config.n_devices,
            1,
            self.config.n_channels,
        )
        accumulator = CycleAccumulator(shape)
        self.hub.transition(
            TestProgress(
                message=f"Cycle {self.cycle_index}/{self.n_cycles}: {label} testing, "
                + f"{read_count} sweep(s)",
                phase=self.phase,
                cycle_index=self.cycle_index,
            ),
            running=True,
        )
        for k in range(1, read_count + 1):
            if self.run_control.stop_requested:
                return self._stop()
            self.test_index = k
            self.hub.progress(
                f"Cycle {self.cycle_index}/{self.n_cycles} {label} test {k}/{read_count}",
                phase=self.phase,
                cycle_index=self.cycle_index,
                test_index=k,
            )
            result = await self.sweeper.sweep(
                1, self.policy, cycle_index=self.cycle_index, test_index=k
            )
            self._last_matrix = result.matrix
            if result.status == RUN_STATUS.STOPPED:
                return self._stop(result.reason, result.stopped_at, result.error)
            if result.status == RUN_STATUS.ERROR:
                return self._fail(result.reason, result.error, result.stopped_at)

            self.reports.write_sweep_report(
                result.matrix, self.policy, self.cycle_index, label, k, self.last_temperature
            )
            accumulator.add(result.matrix)
            self.aggregate.add(result.matrix)
        self.reports.write_cycle_report(accumulator, self.cycle_index, label)
        return None

    def _point(self) -> StopPoint:
        return StopPoint(
            phase=self.phase, cycle_index=self.cycle_index, test_index=self.test_index
        )

    def _stop(
        self, reason: str = "", point: Optional[StopPoint] = None, error: str = ""
    ) -> str:
        self._reason = reason or self.run_control.stop_reason or STOP_REASON.USER_STOP
        self._stop_point = point or self._point()
        self._error = error
        return CYCLE_STATE.STOPPED

    def _fail(self, reason: str, error: str, point: Optional[StopPoint] = None) -> str:
        logger.error("Run failed ({}): {}", reason, error)
        self._reason = reason or STOP_REASON.ERROR
        self._stop_point = point or self._point()
        self._error = error
        return CYCLE_STATE.ERROR

    # ------------------------------------------------------------------
    # termination

    async def _safety_shutdown(self):
        try:
            result = await self.bench.relays.all_off()
            if not result.success:
                logger.error("Safety shutdown: relay all-off incomplete: {}", result.error)
        except Exception:
            logger.exception("Safety shutdown: relay all-off raised.")

    def _reports(self) -> list[str]:
        return [str(p) for p in self.reports.written]

    async def _finish(self) -> RunResult:
        self.run_control.force_stopped()
        directory = str(self.reports.directory or "")

        if self.state == CYCLE_STATE.COMPLETED:
            final = self.reports.write_final_report(
                self.aggregate, self.test_type, self.cycle_index
            )
            self.result = RunResult(
                status=RUN_STATUS.COMPLETED, directory=directory, reports=self._reports()
            )
            self.hub.transition(
                TestCompleted(
                    message=f"All {self.n_cycles} cycle(s) completed",
                    directory=directory,
                    report=str(final or ""),
                ),
                running=False,
            )
            return self.result

        if self.state == CYCLE_STATE.ERROR:
            await self._safety_shutdown()
        self.reports.write_interrupted_report(
            self._reason, self._stop_point, self._error, self._last_matrix
        )
        if self.aggregate.n_sweeps:
            self.reports.write_final_report(self.aggregate, self.test_type, self.cycle_index)

        stopped_at = self._stop_point.to_dict() if self._stop_point else {}
        if self.state == CYCLE_STATE.STOPPED:
            status = RUN_STATUS.STOPPED
            notif = TestStopped(
                reason=self._reason,
                stopped_at=stopped_at,
                message=f"Test stopped at cycle {self.cycle_index}, {self.phase}",
            )
        else:
            status = RUN_STATUS.ERROR
            notif = TestError(reason=self._reason, message=self._error, stopped_at=stopped_at)
        self.result = RunResult(
            status=status,
            reason=self._reason,
            stopped_at=self._stop_point,
            error=self._error,
            directory=directory,
            reports=self._reports(),
        )
        self.hub.transition(notif, running=False, reason=self._reason)
        return self.result
