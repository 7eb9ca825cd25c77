import asyncio
import datetime

import pytest
import pytest_asyncio
from loguru import logger

from chamberbench.meas import CYCLE_STATE, FixedRange, RunControl, TimedCycle
from chamberbench.report import ReportWriter
from chamberbench.system import Bench, BroadcastHub
from chamberbench.types import (
    DEFAULT_TIME_SCHEDULE,
    PHASE,
    RUN_STATUS,
    STOP_REASON,
    BenchTimings,
    PowerSwitch,
    TemperatureSettings,
    TestCompleted,
    TestConfiguration,
    TestProgress,
    TimeModeSettings,
    TimeProgress,
    time_waiting_phase,
)

FAST = BenchTimings(
    voltage_backoff=0,
    read_backoff=0,
    relay_backoff=0,
    timed_poll_interval=0.01,
    table_debounce=0,
    seconds_per_minute=0.1,
)
STAMP = datetime.datetime(2024, 5, 1, 12, 30)
TS = "240501_1230"


def _config(time_mode=None) -> TestConfiguration:
    return TestConfiguration(
        device_selection=[True] + [False] * 9,
        # flags are off: timed runs sweep regardless
        high_temp=TemperatureSettings(enabled=False, read_count=1),
        low_temp=TemperatureSettings(enabled=False, read_count=2),
        time_mode=time_mode,
    )


class TestTimeSchedule:
    def test_cumulative_deadlines(self):
        settings = TimeModeSettings(t1=1, t2=2, t3=3, t4=4, t5=5, t6=6, t7=7, t8=8)
        schedule = settings.schedule()
        assert schedule.deadlines_min == [3, 10, 21, 28]
        assert schedule.end_min == 48

    def test_default_schedule(self):
        assert DEFAULT_TIME_SCHEDULE.deadlines_min == [10.0, 20.0, 30.0, 40.0]
        assert DEFAULT_TIME_SCHEDULE.end_min == 50.0

    def test_negative_interval_rejected(self):
        ok, msg = TimeModeSettings(t3=-1).validate()
        assert not ok
        assert "T3" in msg


class TestTimedCycle:
    @pytest_asyncio.fixture(autouse=True, scope="function")
    async def log(self, request):
        logger.warning("STARTED Test '{}'".format(request.node.originalname))
        yield
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    @pytest.fixture
    def make_timed(self, tmp_path):
        def make(config):
            bench = Bench.mock()
            rc = RunControl()
            rc.power_on()
            hub = BroadcastHub()
            sub = hub.subscribe()
            reports = ReportWriter(config, tmp_path, clock=lambda: STAMP)
            timed = TimedCycle(bench, config, rc, hub, timings=FAST, reports=reports)
            return timed, bench, rc, sub

        return make

    @pytest.mark.asyncio
    async def test_full_schedule(self, make_timed, tmp_path):
        settings = TimeModeSettings(t1=0.1, t2=0.1, t3=0.1, t4=0.1, t5=0.1, t6=0.1, t7=0.1, t8=0.1)
        timed, bench, rc, sub = make_timed(_config(settings))
        assert timed.n_cycles == 4
        assert isinstance(timed.policy, FixedRange)
        loop = asyncio.get_running_loop()
        t0 = loop.time()
        result = await timed.run()
        elapsed = loop.time() - t0
        assert result.status == RUN_STATUS.COMPLETED
        assert timed.state == CYCLE_STATE.COMPLETED
        # T_end = 1.1 min at 0.1 s per minute
        assert elapsed >= 0.1
        assert not rc.running
        assert bench.chamber.reads == 0
        # high, low, high, low with 1 and 2 sweeps each, 3 voltages per sweep
        assert len(bench.power.calls) == 3 * (1 + 2 + 1 + 2)
        names = sorted(p.name for p in (tmp_path / "20240501_1230").iterdir())
        assert f"{TS}_Cycle1_TimeMode_Test1.csv" in names
        assert f"{TS}_Cycle2_TimeMode_Test2.csv" in names
        assert f"{TS}_Cycle4_TimeMode_Average.csv" in names
        assert f"{TS}_Final_Device_Report.csv" in names
        assert len(names) == 6 + 4 + 1

        notifs = sub.drain()
        assert any(isinstance(n, TimeProgress) for n in notifs)
        phases = {n.phase for n in notifs if isinstance(n, TimeProgress)}
        assert time_waiting_phase(1) in phases
        completed = [n for n in notifs if isinstance(n, TestCompleted)]
        assert len(completed) == 1
        testing_entries = [
            n
            for n, nxt in zip(notifs, notifs[1:])
            if isinstance(n, TestProgress)
            and n.phase in (PHASE.HIGH_TEMP_TEST, PHASE.LOW_TEMP_TEST)
            and isinstance(nxt, PowerSwitch)
            and nxt.running
        ]
        assert len(testing_entries) == 4

    @pytest.mark.asyncio
    async def test_stop_while_waiting(self, make_timed):
        timed, bench, rc, _ = make_timed(_config())
        assert timed.schedule is DEFAULT_TIME_SCHEDULE
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, rc.request_stop)
        t0 = loop.time()
        result = await timed.run()
        assert loop.time() - t0 < 0.9  # first deadline is 10 min = 1 s
        assert result.status == RUN_STATUS.STOPPED
        assert result.reason == STOP_REASON.USER_STOP
        assert result.stopped_at.phase == time_waiting_phase(1)
        assert bench.power.calls == []

    @pytest.mark.asyncio
    async def test_status(self, make_timed):
        timed, _, _, _ = make_timed(_config())
        status = timed.status()
        assert status["elapsedMinutes"] == 0.0
        assert status["totalMinutes"] == 50.0
