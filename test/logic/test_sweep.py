import pytest
import pytest_asyncio
from loguru import logger

from chamberbench.meas import PercentTolerance, RunControl, SweepEngine
from chamberbench.system import Bench, BroadcastHub
from chamberbench.types import (
    CELL_SKIPPED,
    PHASE,
    RUN_STATUS,
    STOP_REASON,
    BenchTimings,
    PowerTableComplete,
    PowerTableReset,
    PowerTableUpdate,
    TestConfiguration,
)

FAST = BenchTimings(
    voltage_attempts=2,
    voltage_backoff=0,
    read_attempts=2,
    read_backoff=0,
    relay_attempts=2,
    relay_backoff=0,
    table_debounce=0,
)


def _config(selected=(0, 2), **kwargs) -> TestConfiguration:
    selection = [i in selected for i in range(10)]
    return TestConfiguration(device_selection=selection, **kwargs)


def _engine(bench, config, rc=None, hub=None):
    rc = rc or RunControl()
    rc.power_on()
    hub = hub or BroadcastHub()
    return SweepEngine(bench, config, rc, hub, FAST), rc, hub


class TestSweepEngine:
    @pytest_asyncio.fixture(autouse=True, scope="function")
    async def log(self, request):
        logger.warning("STARTED Test '{}'".format(request.node.originalname))
        yield
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    @pytest.mark.asyncio
    async def test_complete_sweep(self):
        bench = Bench.mock()
        engine, _, _ = _engine(bench, _config())
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.COMPLETED
        m = result.matrix
        assert m.completed_cells == m.total_cells
        for v in range(3):
            assert m.display(v, 0, 0) == "220.00V|G"
            assert m.display(v, 1, 0) == CELL_SKIPPED
            assert m.display(v, 2, 0) == "220.00V|G"
        assert bench.power.calls == [18.0, 24.0, 30.0]
        # each reading is taken with exactly one device switched in
        assert [d for d, _ in bench.load.calls] == [0, 2, 0, 2, 0, 2]
        assert bench.relays.calls == [
            ("on", 0), ("off", 0), ("on", 2), ("off", 2)
        ] * 3
        assert bench.relays.energized == set()

    @pytest.mark.asyncio
    async def test_multiple_reads(self):
        bench = Bench.mock()
        engine, _, _ = _engine(bench, _config(selected=(4,)))
        result = await engine.sweep(2)
        assert result.status == RUN_STATUS.COMPLETED
        assert result.matrix.read_count == 2
        assert result.matrix.display(2, 4, 1) == "220.00V|G"
        assert len(bench.load.calls) == 6

    @pytest.mark.asyncio
    async def test_reset_is_idempotent(self):
        engine, _, hub = _engine(Bench.mock(), _config())
        sub = hub.subscribe()
        first = engine.reset(1)
        second = engine.reset(1)
        assert first is not second
        assert second.completed_cells == 0
        assert engine.matrix is second
        notifs = sub.drain()
        assert len(notifs) == 2
        assert all(isinstance(n, PowerTableReset) for n in notifs)
        for notif in notifs:
            assert notif.table["completed_cells"] == 0
            assert notif.table["total_cells"] == 30

    @pytest.mark.asyncio
    async def test_table_events(self):
        engine, _, hub = _engine(Bench.mock(), _config(selected=(1,)))
        sub = hub.subscribe()
        await engine.sweep(1)
        notifs = sub.drain()
        assert isinstance(notifs[0], PowerTableReset)
        completes = [n for n in notifs if isinstance(n, PowerTableComplete)]
        assert [n.table["voltage_index"] for n in completes] == [0, 1, 2]
        updates = [n for n in notifs if isinstance(n, PowerTableUpdate)]
        assert updates
        assert updates[0].table["table_data"][1] == [["220.00V"]]

    @pytest.mark.asyncio
    async def test_failed_read_is_error_cell(self):
        def reading(source_v, device, channel):
            return None if device == 2 else 221.0

        bench = Bench.mock(reading=reading)
        engine, _, _ = _engine(bench, _config())
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.COMPLETED
        assert result.matrix.display(0, 0, 0) == "221.00V|G"
        assert result.matrix.display(0, 2, 0) == "error|N"
        assert result.matrix.device_judgment(0, 2) == "N"

    @pytest.mark.asyncio
    async def test_out_of_tolerance(self):
        bench = Bench.mock(reading=lambda v, d, ch: 200.0)
        engine, _, _ = _engine(bench, _config(selected=(0,)))
        result = await engine.sweep(1, policy=PercentTolerance(0.05))
        assert result.matrix.count_judgments() == (0, 3)

    @pytest.mark.asyncio
    async def test_voltage_setting_exhausted(self):
        bench = Bench.mock(source_fail_times=10)
        engine, _, _ = _engine(bench, _config())
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.STOPPED
        assert result.reason == STOP_REASON.ERROR
        assert "voltage setting failed" in result.error
        assert result.stopped_at.phase == PHASE.BEFORE_VOLTAGE_SETTING
        assert result.stopped_at.voltage_index == 0
        assert len(bench.power.calls) == FAST.voltage_attempts
        assert bench.relays.calls == []

    @pytest.mark.asyncio
    async def test_voltage_retry_recovers(self):
        bench = Bench.mock(source_fail_times=1)
        engine, _, _ = _engine(bench, _config())
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.COMPLETED
        assert bench.power.calls == [18.0, 18.0, 24.0, 30.0]

    @pytest.mark.asyncio
    async def test_relay_failure_releases_device(self):
        bench = Bench.mock(relay_fail_on=(2,))
        engine, _, _ = _engine(bench, _config())
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.ERROR
        assert result.reason == STOP_REASON.ERROR
        assert result.stopped_at.phase == PHASE.DEVICE_SELECTION
        assert result.stopped_at.device_index == 2
        assert bench.relays.calls[-1] == ("off", 2)
        assert bench.relays.energized == set()
        # device 0 was measured before the failure
        assert result.matrix.display(0, 0, 0) == "220.00V|G"

    @pytest.mark.asyncio
    async def test_stop_at_checkpoint(self):
        bench = Bench.mock()
        engine, rc, _ = _engine(bench, _config(selected=(0, 1, 2)))

        def on_device_on(device_index):
            if device_index == 1 and bench.power.get_voltage() == 24.0:
                rc.request_stop()

        bench.relays.on_device_on = on_device_on
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.STOPPED
        assert result.reason == STOP_REASON.USER_STOP
        point = result.stopped_at
        assert point.phase == PHASE.BEFORE_RELAY_OPERATION
        assert (point.voltage_index, point.device_index, point.read_index) == (1, 1, 0)
        # the device that was switched on is switched off again
        assert bench.relays.calls[-2:] == [("on", 1), ("off", 1)]
        assert bench.relays.energized == set()
        m = result.matrix
        assert m.display(1, 0, 0) == "220.00V|G"
        assert m.is_unset(1, 1, 0)
        assert m.is_unset(2, 0, 0)
        assert bench.power.calls == [18.0, 24.0]

    @pytest.mark.asyncio
    async def test_stop_before_sweep(self):
        bench = Bench.mock()
        engine, rc, _ = _engine(bench, _config())
        rc.power_off()
        result = await engine.sweep(1)
        assert result.status == RUN_STATUS.STOPPED
        assert result.reason == STOP_REASON.POWER_SWITCH_OFF
        assert bench.power.calls == []
        assert bench.relays.calls == []

    @pytest.mark.asyncio
    async def test_two_channels(self):
        def reading(source_v, device, channel):
            return {1: 220.0, 2: 24.2}[channel]

        bench = Bench.mock(reading=reading)
        config = _config(selected=(3,), channel_voltages=[220.0, 24.0], n_channels=2)
        engine, _, _ = _engine(bench, config)
        result = await engine.sweep(1)
        m = result.matrix
        assert m.n_channels == 2
        assert m.display(0, 3, 0, 0) == "220.00V|G"
        assert m.display(0, 3, 0, 1) == "24.20V|G"
        assert [ch for _, ch in bench.load.calls] == [1, 2, 1, 2, 1, 2]
