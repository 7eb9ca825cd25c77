# Multi-channel electronic load / voltage analyzer (SCPI over serial)
import asyncio
import re
from typing import Any, Callable, Optional

import serial  # pyserial package
from loguru import logger

from chamberbench.device.device import Device
from chamberbench.device.serial_channel import PortLock, SerialTransport
from chamberbench.types import ChannelResult
from chamberbench.types.config import MAX_READ_VOLTAGE
from chamberbench.util.defaults import LOAD_BAUD, LOAD_TIMEOUT

N_LOAD_CHANNELS = 5
CHANNEL_SELECT_DELAY = 0.2
BUFFER_CLEAR_DELAY = 0.1

_NUMBER = r"-?\d+\.\d+(?:[eE][-+]?\d+)?"
READ_PATTERNS = (
    re.compile(rf"({_NUMBER})\r?\n"),
    re.compile(rf"({_NUMBER})"),
    re.compile(r"(-?\d+)\r?\n"),
)


def parse_voltage(text: str) -> Optional[float]:
    """First number in a `MEAS:VOLT?` reply, trying stricter patterns first."""
    for pattern in READ_PATTERNS:
        match = pattern.search(text)
        if match:
            try:
                return float(match.group(1))
            except ValueError:
                continue
    return None


class LoadAnalyzer(Device):
    required_config = {"port": str}

    def __init__(
        self,
        port: str,
        baudrate: int = LOAD_BAUD,
        timeout: float = LOAD_TIMEOUT,
        select_delay: float = CHANNEL_SELECT_DELAY,
        clear_delay: float = BUFFER_CLEAR_DELAY,
        lock: Optional[PortLock] = None,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(port=port)
        self.select_delay = select_delay
        self.clear_delay = clear_delay
        self.transport = SerialTransport(
            port, baudrate, timeout, lock=lock, serial_factory=serial_factory
        )

    def open(self) -> tuple[bool, str]:
        return True, f"Load analyzer on {self.port} (opened per transaction)"

    def close(self):
        pass

    def is_connected(self) -> bool:
        return self.transport.last_ok

    async def read_channel(self, channel: int) -> ChannelResult:
        """Measure the voltage on `channel` (1-based)."""
        if not 1 <= channel <= N_LOAD_CHANNELS:
            return ChannelResult.fail(f"Channel {channel} outside 1..{N_LOAD_CHANNELS}")
        try:
            async with self.transport.session() as link:
                await link.write(f"INST:SEL CH{channel}\r\n".encode("ascii"))
                await asyncio.sleep(self.select_delay)
                await link.clear_input()
                await asyncio.sleep(self.clear_delay)
                await link.write(b"MEAS:VOLT?\r\n")
                raw = (await link.read_line()).decode("ascii", errors="replace")
        except (serial.SerialException, OSError, TimeoutError) as e:
            logger.error("Reading load channel {} failed: {}", channel, e)
            return ChannelResult.fail(str(e))
        voltage = parse_voltage(raw)
        if voltage is None:
            return ChannelResult.fail(f"Unparseable reading {raw!r}")
        if abs(voltage) > MAX_READ_VOLTAGE:
            return ChannelResult.fail(f"Reading {voltage}V outside +/-{MAX_READ_VOLTAGE}V")
        logger.trace("Load CH{} = {}V", channel, voltage)
        return ChannelResult.ok(voltage)
