"""One measurement sweep: every output voltage x read x device x channel.

Loop order is voltage (outer), then read index, then device slot, then
channel. For each selected device the engine switches its relays on, waits the
on-delay, reads the load analyzer, judges and writes the cell, publishes the
live table, then switches the relays off and waits the off-delay.

Stop requests are honoured before device selection, inside every retry loop
and before deselection. Once a device has been switched on, its relays are
always switched off again before the sweep returns, whatever happened.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from loguru import logger

from chamberbench.meas.control import RunControl
from chamberbench.meas.judgment import JudgmentPolicy, PercentTolerance
from chamberbench.meas.matrix import MeasurementCell, MeasurementMatrix
from chamberbench.system.broadcast import BroadcastHub, TableDebouncer
from chamberbench.types import (
    CELL_ERROR,
    PHASE,
    RUN_STATUS,
    STOP_REASON,
    BenchTimings,
    PowerTableComplete,
    PowerTableReset,
    PowerTableUpdate,
    StopPoint,
    SweepResult,
    TestConfiguration,
)
from chamberbench.util.retry import with_retry

if TYPE_CHECKING:
    from chamberbench.system.bench import Bench


class SweepEngine:
    """Runs sweeps against a `Bench` and owns the matrix of the current sweep.

    Parameters
    ----------
    bench : Bench
        Relays, power source and load analyzer used for the sweep.
    config : TestConfiguration
        Device selection, output/expected voltages and on/off delays.
    run_control : RunControl
        Running flag and stop token, shared with the cycle state machine.
    hub : BroadcastHub
        Receives table reset/update/complete events.
    timings : BenchTimings, optional
        Retry counts and backoffs; defaults are the production values.
    """

    def __init__(
        self,
        bench: Bench,
        config: TestConfiguration,
        run_control: RunControl,
        hub: BroadcastHub,
        timings: Optional[BenchTimings] = None,
    ):
        self.bench = bench
        self.config = config
        self.run_control = run_control
        self.hub = hub
        self.timings = timings or BenchTimings()
        self.debouncer = TableDebouncer(hub, self.timings.table_debounce)
        self.matrix: Optional[MeasurementMatrix] = None
        self._cycle_index = 0
        self._test_index = 0

    # ------------------------------------------------------------------
    # table publishing

    def reset(self, read_count: int) -> MeasurementMatrix:
        """Swap in an empty matrix and publish it straight away."""
        self.matrix = MeasurementMatrix(
            len(self.config.output_voltages),
            self.config.n_devices,
            read_count,
            self.config.n_channels,
            voltages=self.config.output_voltages,
        )
        self.debouncer.publish(PowerTableReset(table=self.matrix.table_payload(0)), force=True)
        return self.matrix

    def _publish_update(self, voltage_index: int):
        self.debouncer.publish(
            PowerTableUpdate(table=self.matrix.table_payload(voltage_index))
        )

    def _publish_complete(self, voltage_index: int):
        self.debouncer.publish(
            PowerTableComplete(table=self.matrix.table_payload(voltage_index)), force=True
        )

    # ------------------------------------------------------------------
    # results

    def _point(self, phase: str, **indices) -> StopPoint:
        return StopPoint(
            phase=phase,
            cycle_index=self._cycle_index,
            test_index=self._test_index,
            **indices,
        )

    def _stopped(self, point: StopPoint) -> SweepResult:
        reason = self.run_control.stop_reason or STOP_REASON.USER_STOP
        logger.info("Sweep stopped ({}) at {}", reason, point.to_dict())
        self.debouncer.flush()
        return SweepResult(
            status=RUN_STATUS.STOPPED,
            matrix=self.matrix,
            stopped_at=point,
            reason=reason,
        )

    def _failed(self, point: StopPoint, error: str, stopped: bool = False) -> SweepResult:
        """A sub-operation ran out of retries."""
        logger.error("Sweep aborted at {}: {}", point.to_dict(), error)
        self.debouncer.flush()
        return SweepResult(
            status=RUN_STATUS.STOPPED if stopped else RUN_STATUS.ERROR,
            matrix=self.matrix,
            stopped_at=point,
            reason=STOP_REASON.ERROR,
            error=error,
        )

    # ------------------------------------------------------------------

    async def sweep(
        self,
        read_count: int = 1,
        policy: Optional[JudgmentPolicy] = None,
        cycle_index: int = 0,
        test_index: int = 0,
    ) -> SweepResult:
        """Measure every selected device at every output voltage.

        Returns
        -------
        SweepResult
            `completed` with the full matrix, or `stopped`/`error` with the
            partial matrix and the point where it ended.
        """
        policy = policy or PercentTolerance(self.config.tolerance)
        self._cycle_index = cycle_index
        self._test_index = test_index
        self.reset(read_count)

        if not self.run_control.running:
            logger.warning("Sweep refused: machine is not running.")
            return SweepResult(
                status=RUN_STATUS.STOPPED,
                matrix=self.matrix,
                stopped_at=self._point(PHASE.BEFORE_VOLTAGE_SETTING, voltage_index=0),
                reason=STOP_REASON.POWER_SWITCH_OFF,
            )

        for v_idx, volts in enumerate(self.config.output_voltages):
            point = self._point(PHASE.BEFORE_VOLTAGE_SETTING, voltage_index=v_idx)
            if self.run_control.stop_requested:
                return self._stopped(point)

            result = await with_retry(
                lambda volts=volts: self.bench.power.set_voltage(volts),
                self.timings.voltage_attempts,
                self.timings.voltage_backoff,
                self.run_control,
                label=f"Set source to {volts}V",
            )
            if result.stopped:
                return self._stopped(point)
            if not result.success:
                # out of retries: the run ends as stopped at this point
                return self._failed(point, f"voltage setting failed: {result.error}", stopped=True)
            self.hub.progress(
                f"Output voltage {v_idx + 1}/{len(self.config.output_voltages)}: {volts}V",
                phase=PHASE.VOLTAGE_SETTING,
                cycle_index=cycle_index,
                test_index=test_index,
            )

            for r_idx in range(read_count):
                for d_idx, selected in enumerate(self.config.device_selection):
                    if not selected:
                        self.matrix.mark_skipped(v_idx, d_idx, r_idx)
                        continue
                    outcome = await self._measure_device(v_idx, d_idx, r_idx, policy)
                    if outcome is not None:
                        return outcome
            self._publish_complete(v_idx)

        good, bad = self.matrix.count_judgments()
        logger.info("Sweep complete: {} G / {} N", good, bad)
        return SweepResult(status=RUN_STATUS.COMPLETED, matrix=self.matrix)

    async def _measure_device(
        self, v_idx: int, d_idx: int, r_idx: int, policy: JudgmentPolicy
    ) -> Optional[SweepResult]:
        """Measure one device slot; returns a result only when the sweep must end."""
        rc = self.run_control
        point = self._point(
            PHASE.DEVICE_SELECTION, voltage_index=v_idx, device_index=d_idx, read_index=r_idx
        )
        if rc.stop_requested:
            return self._stopped(point)

        outcome: Optional[SweepResult] = None
        try:
            on = await with_retry(
                lambda: self.bench.relays.device_on(d_idx),
                self.timings.relay_attempts,
                self.timings.relay_backoff,
                rc,
                label=f"Device {d_idx + 1} on",
            )
            if on.stopped:
                return self._stopped(point)
            if not on.success:
                return self._failed(point, f"device selection failed: {on.error}")

            point.phase = PHASE.BEFORE_RELAY_OPERATION
            if not await rc.sleep(self.config.delay.on_delay_ms / 1000):
                return self._stopped(point)

            point.phase = PHASE.VOLTAGE_READING
            for ch in range(self.config.n_channels):
                point.channel_index = ch
                reading = await with_retry(
                    lambda ch=ch: self.bench.load.read_channel(ch + 1),
                    self.timings.read_attempts,
                    self.timings.read_backoff,
                    rc,
                    label=f"Read device {d_idx + 1} CH{ch + 1}",
                )
                if reading.stopped:
                    return self._stopped(point)
                value = reading.value if reading.success else CELL_ERROR
                judgment = policy.judge(value, self.config.expected_voltage(ch))
                self.matrix.write(
                    v_idx, d_idx, r_idx, MeasurementCell(value, judgment), channel_index=ch
                )
                self._publish_update(v_idx)

            point.phase = PHASE.DEVICE_RELEASE
            if rc.stop_requested:
                outcome = self._stopped(point)
        finally:
            off = await self.bench.relays.device_off(d_idx)
            if not off.success:
                logger.error("Device {} release failed: {}", d_idx + 1, off.error)

        if outcome is not None:
            return outcome
        if not off.success:
            return self._failed(point, f"device release failed: {off.error}")
        if not await rc.sleep(self.config.delay.off_delay_ms / 1000):
            return self._stopped(point)
        return None
