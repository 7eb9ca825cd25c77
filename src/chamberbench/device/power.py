# Kikusui PWR401L programmable DC source
import re
from typing import Any, Callable, Optional

import serial  # pyserial package
from loguru import logger

from chamberbench.device.device import Device
from chamberbench.device.serial_channel import PortLock, SerialTransport
from chamberbench.types import ChannelResult
from chamberbench.types.config import MAX_SOURCE_VOLTAGE
from chamberbench.util.defaults import POWER_BAUD, POWER_TIMEOUT

_IDN_PATTERN = re.compile(r"^[^,]+,[^,]+")


class PowerSource(Device):
    required_config = {"port": str}

    def __init__(
        self,
        port: str,
        baudrate: int = POWER_BAUD,
        timeout: float = POWER_TIMEOUT,
        lock: Optional[PortLock] = None,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(port=port)
        self.transport = SerialTransport(
            port, baudrate, timeout, lock=lock, serial_factory=serial_factory
        )
        self._voltage = None

    def open(self) -> tuple[bool, str]:
        return True, f"Power source on {self.port} (opened per transaction)"

    def close(self):
        pass

    def is_connected(self) -> bool:
        return self.transport.last_ok

    async def identify(self) -> ChannelResult:
        try:
            async with self.transport.session() as link:
                await link.write(b"*IDN?\r\n")
                line = (await link.read_line()).decode("ascii", errors="replace").strip()
        except (serial.SerialException, OSError, TimeoutError) as e:
            return ChannelResult.fail(str(e))
        if not _IDN_PATTERN.match(line):
            return ChannelResult.fail(f"Unexpected *IDN? reply: {line!r}")
        return ChannelResult.ok(line)

    async def set_voltage(self, voltage: float) -> ChannelResult:
        """Program the output voltage (V)."""
        if abs(voltage) > MAX_SOURCE_VOLTAGE:
            return ChannelResult.fail(
                f"Voltage {voltage} outside +/-{MAX_SOURCE_VOLTAGE}V source range"
            )
        cmd = f"SOUR:VOLT:LEV:IMM:AMPL {voltage}\r\n"
        try:
            async with self.transport.session() as link:
                await link.write(cmd.encode("ascii"))
        except (serial.SerialException, OSError, TimeoutError) as e:
            logger.error("Setting source to {}V failed: {}", voltage, e)
            return ChannelResult.fail(str(e))
        self._voltage = voltage
        logger.debug("Source set to {}V", voltage)
        return ChannelResult.ok(voltage)

    def get_voltage(self) -> Optional[float]:
        """Last voltage successfully commanded."""
        return self._voltage
