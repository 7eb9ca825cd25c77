"""MODBUS-RTU framing for the relay bank.

Only "write single register" (function 0x06) is used. A healthy reply echoes
the request (8 bytes); a device-side failure answers with function 0x86 and an
exception code (5 bytes). Every frame carries a CRC16 (init 0xFFFF, reflected
polynomial 0xA001) appended low byte first.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chamberbench.types import ProtocolError

FUNC_WRITE_SINGLE = 0x06
FUNC_WRITE_SINGLE_ERROR = 0x86

ECHO_LENGTH = 8
ERROR_LENGTH = 5

EXCEPTION_CODES = {
    0x01: "illegal function",
    0x02: "illegal data address",
    0x03: "illegal data value",
    0x04: "slave device failure",
    0x05: "acknowledge",
    0x06: "slave device busy",
}


def crc16(data: bytes) -> int:
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 0x0001:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


def append_crc(body: bytes) -> bytes:
    crc = crc16(body)
    return body + bytes((crc & 0xFF, crc >> 8))


def check_crc(frame: bytes) -> bool:
    if len(frame) < 3:
        return False
    expected = crc16(frame[:-2])
    return frame[-2] == (expected & 0xFF) and frame[-1] == (expected >> 8)


def build_write_register(slave: int, register: int, value: int) -> bytes:
    if not 0 < slave < 248:
        raise ValueError(f"Invalid slave address {slave}")
    body = bytes(
        (
            slave,
            FUNC_WRITE_SINGLE,
            (register >> 8) & 0xFF,
            register & 0xFF,
            (value >> 8) & 0xFF,
            value & 0xFF,
        )
    )
    return append_crc(body)


@dataclass(frozen=True)
class ModbusReply:
    slave: int
    function: int
    register: Optional[int] = None
    value: Optional[int] = None
    exception_code: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.function == FUNC_WRITE_SINGLE_ERROR

    def describe_error(self) -> str:
        name = EXCEPTION_CODES.get(self.exception_code, "unknown")
        return f"slave {self.slave} exception 0x{self.exception_code:02X} ({name})"


def expected_length(function: int) -> int:
    """Frame length implied by the function code (raises on unknown codes)."""
    if function == FUNC_WRITE_SINGLE:
        return ECHO_LENGTH
    if function == FUNC_WRITE_SINGLE_ERROR:
        return ERROR_LENGTH
    raise ProtocolError(f"Unsupported function code 0x{function:02X}")


def parse_reply(frame: bytes) -> ModbusReply:
    """Validate and decode a relay reply, raising `ProtocolError` if untrustworthy."""
    if len(frame) < ERROR_LENGTH:
        raise ProtocolError(f"Reply too short ({len(frame)} bytes): {frame.hex()}")
    length = expected_length(frame[1])
    if len(frame) != length:
        raise ProtocolError(
            f"Reply length {len(frame)} != {length} for function 0x{frame[1]:02X}"
        )
    if not check_crc(frame):
        raise ProtocolError(f"CRC mismatch in reply {frame.hex()}")
    if frame[1] == FUNC_WRITE_SINGLE_ERROR:
        return ModbusReply(slave=frame[0], function=frame[1], exception_code=frame[2])
    return ModbusReply(
        slave=frame[0],
        function=frame[1],
        register=(frame[2] << 8) | frame[3],
        value=(frame[4] << 8) | frame[5],
    )
