# Temperature chamber controller (ASCII "RSD" status query)
from typing import Any, Callable, Optional

import serial  # pyserial package
from loguru import logger

from chamberbench.device.device import Device
from chamberbench.device.serial_channel import PortLock, SerialTransport
from chamberbench.types import CHAMBER_STATUS, ChamberReading
from chamberbench.util.defaults import CHAMBER_BAUD, CHAMBER_TIMEOUT

QUERY_FRAME = b"\x0201RSD,06,0001C9\r\n"


def decode_temperature(code: str) -> float:
    """4 hex digits, 16-bit two's complement, in hundredths of a degree."""
    if len(code) != 4:
        raise ValueError(f"Temperature code must be 4 hex digits, got {code!r}")
    value = int(code, 16)
    if value > 32767:
        value -= 65536
    return value / 100


def parse_chamber_response(raw: str) -> ChamberReading:
    fields = raw.strip().split(",")
    if len(fields) < 3 or fields[1].strip() != "OK":
        return ChamberReading(
            status=CHAMBER_STATUS.BAD_RESPONSE, raw=raw, error="Response not OK"
        )
    try:
        temperature = decode_temperature(fields[2].strip())
    except ValueError as e:
        return ChamberReading(status=CHAMBER_STATUS.BAD_RESPONSE, raw=raw, error=str(e))
    return ChamberReading(status=CHAMBER_STATUS.OK, temperature=temperature, raw=raw)


class Chamber(Device):
    required_config = {"port": str}

    def __init__(
        self,
        port: str,
        baudrate: int = CHAMBER_BAUD,
        timeout: float = CHAMBER_TIMEOUT,
        lock: Optional[PortLock] = None,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(port=port)
        self.transport = SerialTransport(
            port, baudrate, timeout, lock=lock, serial_factory=serial_factory
        )

    def open(self) -> tuple[bool, str]:
        return True, f"Chamber on {self.port} (opened per transaction)"

    def close(self):
        pass

    def is_connected(self) -> bool:
        return self.transport.last_ok

    async def read_temperature(self) -> ChamberReading:
        try:
            async with self.transport.session() as link:
                await link.write(QUERY_FRAME)
                raw = (await link.read_line(b"\r\n")).decode("ascii", errors="replace")
        except TimeoutError as e:
            logger.warning("Chamber read timed out: {}", e)
            return ChamberReading(status=CHAMBER_STATUS.TIMEOUT, error=str(e))
        except (serial.SerialException, OSError) as e:
            logger.error("Chamber read failed: {}", e)
            return ChamberReading(status=CHAMBER_STATUS.FAILED, error=str(e))
        reading = parse_chamber_response(raw)
        if not reading.success:
            logger.warning("Unexpected chamber response: {!r}", raw)
        return reading
