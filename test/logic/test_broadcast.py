import asyncio

import pytest

from chamberbench.system import BroadcastHub, TableDebouncer
from chamberbench.types import (
    NOTIF_PREFIXES,
    ChamberTemperature,
    Notification,
    PowerSwitch,
    PowerTableUpdate,
    ProcessLog,
    TestProgress,
    TestStopped,
    TimeProgress,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestBroadcastHub:
    def test_every_subscriber_gets_every_event(self):
        hub = BroadcastHub()
        a = hub.subscribe()
        b = hub.subscribe()
        hub.log("hello")
        hub.progress("cycle 1", phase="high_temp_test", cycle_index=1)
        assert [n.to_text() for n in a.drain()] == [n.to_text() for n in b.drain()]
        assert hub.n_subscribers == 2

    def test_unsubscribe(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        sub.close()
        hub.log("nobody listening")
        assert sub.drain() == []
        assert hub.n_subscribers == 0

    def test_full_queue_drops(self):
        hub = BroadcastHub()
        sub = hub.subscribe(maxsize=1)
        hub.log("one")
        hub.log("two")
        assert sub.dropped == 1
        assert sub.get_nowait().message == "one"

    def test_transition_echoes_running_status(self):
        hub = BroadcastHub()
        sub = hub.subscribe()
        hub.transition(TestStopped(reason="user_stop"), running=False, reason="user_stop")
        stopped, switch = sub.drain()
        assert isinstance(stopped, TestStopped)
        assert isinstance(switch, PowerSwitch)
        assert not switch.running


class TestNotificationText:
    def test_prefixes(self):
        assert ProcessLog(message="x").to_text() == "[PROCESS_LOG] x"
        assert TestProgress(message="Cycle 1/3").to_text() == "[TEST_PROGRESS] Cycle 1/3"
        assert (
            ChamberTemperature(status="ok", temperature=-10.0).to_text()
            == "[CHAMBER_TEMPERATURE] -10.00"
        )

    def test_power_switch(self):
        assert (
            PowerSwitch(running=True).to_text()
            == "[POWER_SWITCH] ON - Machine running: true"
        )
        assert PowerSwitch(running=False, reason="user_stop").to_text().endswith(
            "OFF - Machine running: false - user_stop"
        )

    def test_time_progress(self):
        notif = TimeProgress(elapsed_minutes=25, remaining_minutes=25, total_minutes=50)
        assert notif.progress_percentage == 50.0
        assert '"progressPercentage": 50.0' in notif.to_text()

    def test_prefix_map(self):
        assert NOTIF_PREFIXES["POWER_TABLE_UPDATE"] is PowerTableUpdate
        assert NOTIF_PREFIXES["TEST_STOPPED"] is TestStopped

    def test_msgpack_round_trip_keeps_type(self):
        notif = TestStopped(reason="power_switch_off", stopped_at={"phase": "voltage_reading"})
        back = Notification.from_msgpack(notif.to_msgpack())
        assert isinstance(back, TestStopped)
        assert back.stopped_at == {"phase": "voltage_reading"}


class TestTableDebouncer:
    def _setup(self, interval=1.0):
        hub = BroadcastHub()
        sub = hub.subscribe()
        clock = FakeClock()
        return TableDebouncer(hub, interval=interval, clock=clock), sub, clock

    @pytest.mark.asyncio
    async def test_first_update_immediate(self):
        deb, sub, _ = self._setup()
        deb.publish(PowerTableUpdate(table={"n": 1}))
        assert [n.table["n"] for n in sub.drain()] == [1]
        assert not deb.has_pending

    @pytest.mark.asyncio
    async def test_burst_coalesced_latest_wins(self):
        deb, sub, clock = self._setup(interval=0.05)
        deb.publish(PowerTableUpdate(table={"n": 1}))
        clock.now = 0.01
        deb.publish(PowerTableUpdate(table={"n": 2}))
        deb.publish(PowerTableUpdate(table={"n": 3}))
        assert [n.table["n"] for n in sub.drain()] == [1]
        assert deb.has_pending
        clock.now = 0.06
        await asyncio.sleep(0.1)
        assert [n.table["n"] for n in sub.drain()] == [3]
        assert not deb.has_pending

    @pytest.mark.asyncio
    async def test_quiet_period_sends_immediately(self):
        deb, sub, clock = self._setup()
        deb.publish(PowerTableUpdate(table={"n": 1}))
        clock.now = 2.0
        deb.publish(PowerTableUpdate(table={"n": 2}))
        assert [n.table["n"] for n in sub.drain()] == [1, 2]

    @pytest.mark.asyncio
    async def test_force_bypasses_and_drops_pending(self):
        deb, sub, clock = self._setup()
        deb.publish(PowerTableUpdate(table={"n": 1}))
        clock.now = 0.1
        deb.publish(PowerTableUpdate(table={"n": 2}))
        deb.publish(PowerTableUpdate(table={"n": 3}), force=True)
        assert [n.table["n"] for n in sub.drain()] == [1, 3]
        assert not deb.has_pending

    @pytest.mark.asyncio
    async def test_flush_and_cancel(self):
        deb, sub, clock = self._setup()
        deb.publish(PowerTableUpdate(table={"n": 1}))
        clock.now = 0.1
        deb.publish(PowerTableUpdate(table={"n": 2}))
        deb.flush()
        assert [n.table["n"] for n in sub.drain()] == [1, 2]
        clock.now = 0.2
        deb.publish(PowerTableUpdate(table={"n": 3}))
        deb.cancel()
        assert not deb.has_pending
        assert sub.drain() == []
