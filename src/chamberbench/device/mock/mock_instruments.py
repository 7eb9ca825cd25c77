"""Scriptable instruments with the same async API as the serial drivers.

Used by the logic tests and by `--mock` runs of the CLI/server. Each records a
call log so tests can assert on the exact hardware traffic.
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable, Iterable, Optional, Union

from chamberbench.device.device import Device
from chamberbench.device.relay import RelayQueue
from chamberbench.types import CHAMBER_STATUS, ChamberReading, ChannelResult


class MockRelayBank(Device):
    """Relay bank; `energized` holds the slots currently switched on."""

    def __init__(self, fail_on: Iterable[int] = (), **config):
        super().__init__(**config)
        self.fail_on = set(fail_on)
        self.calls: list[tuple[str, Optional[int]]] = []
        self.energized: set[int] = set()
        self.on_device_on: Optional[Callable[[int], None]] = None
        self.queue = RelayQueue()
        self._connected = False

    def open(self) -> tuple[bool, str]:
        self._connected = True
        return True, "MockRelayBank opened"

    def close(self):
        self.queue.close()
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def _switch(self, action: str, device_index: Optional[int]) -> ChannelResult:
        await asyncio.sleep(0)
        self.calls.append((action, device_index))
        if action == "on":
            if device_index in self.fail_on:
                return ChannelResult.fail(f"relay fault on device {device_index + 1}")
            self.energized.add(device_index)
            if self.on_device_on is not None:
                self.on_device_on(device_index)
        elif action == "off":
            self.energized.discard(device_index)
        elif action == "all_off":
            self.energized.clear()
        return ChannelResult.ok(device_index)

    async def ping(self) -> ChannelResult:
        return await self.queue.submit(lambda: self._switch("ping", None))

    async def device_on(self, device_index: int) -> ChannelResult:
        return await self.queue.submit(lambda: self._switch("on", device_index))

    async def device_off(self, device_index: int) -> ChannelResult:
        return await self.queue.submit(lambda: self._switch("off", device_index))

    async def all_off(self) -> ChannelResult:
        return await self.queue.submit(lambda: self._switch("all_off", None))


class MockPowerSource(Device):
    def __init__(self, fail_times: int = 0, **config):
        super().__init__(**config)
        self.fail_times = fail_times
        self.calls: list[float] = []
        self._voltage: Optional[float] = None
        self._connected = False

    def open(self) -> tuple[bool, str]:
        self._connected = True
        return True, "MockPowerSource opened"

    def close(self):
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def identify(self) -> ChannelResult:
        return ChannelResult.ok("KIKUSUI,PWR401L,MOCK,1.00")

    async def set_voltage(self, voltage: float) -> ChannelResult:
        await asyncio.sleep(0)
        self.calls.append(voltage)
        if self.fail_times > 0:
            self.fail_times -= 1
            return ChannelResult.fail("mock source timeout")
        self._voltage = voltage
        return ChannelResult.ok(voltage)

    def get_voltage(self) -> Optional[float]:
        return self._voltage


ReadingFn = Callable[[Optional[float], Optional[int], int], Optional[float]]


class MockLoadAnalyzer(Device):
    """Load analyzer whose reading depends on the source voltage and active slot.

    `reading(source_voltage, device_index, channel)` returns volts, or None to
    simulate a failed read.
    """

    def __init__(
        self,
        source: Optional[MockPowerSource] = None,
        relays: Optional[MockRelayBank] = None,
        reading: Optional[ReadingFn] = None,
        **config,
    ):
        super().__init__(**config)
        self.source = source
        self.relays = relays
        self.reading = reading or (lambda v, d, ch: 220.0)
        self.calls: list[tuple[Optional[int], int]] = []
        self._connected = False

    def open(self) -> tuple[bool, str]:
        self._connected = True
        return True, "MockLoadAnalyzer opened"

    def close(self):
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def _active_device(self) -> Optional[int]:
        if self.relays is None or len(self.relays.energized) != 1:
            return None
        return next(iter(self.relays.energized))

    async def read_channel(self, channel: int) -> ChannelResult:
        await asyncio.sleep(0)
        device = self._active_device()
        self.calls.append((device, channel))
        source_v = self.source.get_voltage() if self.source is not None else None
        value = self.reading(source_v, device, channel)
        if value is None:
            return ChannelResult.fail("mock load read timeout")
        return ChannelResult.ok(value)


class MockChamber(Device):
    """Chamber replaying a temperature profile (the last entry repeats, or the
    whole profile with `loop=True`).

    Profile entries are temperatures or ready-made `ChamberReading`s (to inject
    timeouts and failures).
    """

    def __init__(
        self,
        profile: Iterable[Union[float, ChamberReading]] = (25.0,),
        loop: bool = False,
        **config,
    ):
        super().__init__(**config)
        self.profile = list(profile)
        if not self.profile:
            raise ValueError("MockChamber needs at least one profile entry")
        if loop:
            self._iter = itertools.cycle(self.profile)
        else:
            self._iter = itertools.chain(self.profile, itertools.repeat(self.profile[-1]))
        self.reads = 0
        self._connected = False

    def open(self) -> tuple[bool, str]:
        self._connected = True
        return True, "MockChamber opened"

    def close(self):
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    async def read_temperature(self) -> ChamberReading:
        await asyncio.sleep(0)
        self.reads += 1
        entry = next(self._iter)
        if isinstance(entry, ChamberReading):
            return entry
        return ChamberReading(status=CHAMBER_STATUS.OK, temperature=float(entry))
