# -*- coding: utf-8 -*-
"""
The four bench instruments, grouped.

A `Bench` is what the sweep engine and the cycle state machine talk to:
`relays`, `power`, `load` and `chamber`. Build one from the port settings for
real hardware, or with `Bench.mock()` for dry runs and tests.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from loguru import logger

from chamberbench.device import (
    Chamber,
    Device,
    LoadAnalyzer,
    MockChamber,
    MockLoadAnalyzer,
    MockPowerSource,
    MockRelayBank,
    PowerSource,
    RelayBank,
)
from chamberbench.types import PortMapping
from chamberbench.util.check_hw import resolve_port

# mock chamber swinging between plateaus, for dry runs of the default settings
DRY_RUN_PROFILE = (80.0, -40.0)


class Bench(object):
    def __init__(self, relays: Device, power: Device, load: Device, chamber: Device):
        self.relays = relays
        self.power = power
        self.load = load
        self.chamber = chamber
        self.device_status: dict[str, dict[str, bool | str]] = dict()
        self.hardware_started_up = False

    @property
    def devices(self) -> dict[str, Device]:
        return {
            "relay": self.relays,
            "power": self.power,
            "load": self.load,
            "chamber": self.chamber,
        }

    @classmethod
    def from_port_mapping(
        cls,
        ports: PortMapping,
        serial_factory: Optional[Callable[..., Any]] = None,
    ) -> Bench:
        ok, msg = ports.validate()
        if not ok:
            raise ValueError(msg)
        return cls(
            relays=RelayBank(resolve_port(ports.relay), serial_factory=serial_factory),
            power=PowerSource(resolve_port(ports.power), serial_factory=serial_factory),
            load=LoadAnalyzer(resolve_port(ports.load), serial_factory=serial_factory),
            chamber=Chamber(resolve_port(ports.chamber), serial_factory=serial_factory),
        )

    @classmethod
    def mock(
        cls,
        reading: Optional[Callable[[Optional[float], Optional[int], int], Optional[float]]] = None,
        chamber_profile=(25.0,),
        chamber_loop: bool = False,
        relay_fail_on=(),
        source_fail_times: int = 0,
    ) -> Bench:
        """Bench of mock instruments (see `chamberbench.device.mock`)."""
        relays = MockRelayBank(fail_on=relay_fail_on)
        power = MockPowerSource(fail_times=source_fail_times)
        load = MockLoadAnalyzer(source=power, relays=relays, reading=reading)
        chamber = MockChamber(profile=chamber_profile, loop=chamber_loop)
        return cls(relays, power, load, chamber)

    def open(self) -> dict[str, dict[str, bool | str]]:
        dev_status: dict[str, dict[str, bool | str]] = dict()
        for name, device in self.devices.items():
            ok, msg = device.open()
            dev_status[name] = {"status": ok, "message": msg}
        self.device_status = dev_status
        self.hardware_started_up = True
        return dev_status

    def close(self):
        for name, device in self.devices.items():
            try:
                device.close()
            except Exception:
                logger.exception("Error closing {}. Continuing", name)
        self.hardware_started_up = False

    async def check(self) -> dict[str, dict[str, bool | str]]:
        """One round trip to every instrument."""
        status: dict[str, dict[str, bool | str]] = dict()

        relay = await self.relays.ping()
        status["relay"] = {"status": relay.success, "message": relay.error or "ok"}

        idn = await self.power.identify()
        status["power"] = {"status": idn.success, "message": idn.error or str(idn.value)}

        volts = await self.load.read_channel(1)
        status["load"] = {
            "status": volts.success,
            "message": volts.error or f"CH1 {volts.value:.3f}V",
        }

        temp = await self.chamber.read_temperature()
        status["chamber"] = {
            "status": temp.success,
            "message": f"{temp.temperature:.2f}C" if temp.success else temp.status,
        }
        for name, st in status.items():
            logger.info("Check {}: {} ({})", name, st["status"], st["message"])
        return status
