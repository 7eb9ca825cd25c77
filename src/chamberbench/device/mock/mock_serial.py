"""In-memory stand-in for `serial.Serial`.

A responder callable turns every written frame into the bytes the "device"
answers with; reads drain that buffer and return short (like a pyserial read
timeout) when it runs dry.
"""

from __future__ import annotations

from typing import Callable, Optional

import serial

Responder = Callable[[bytes], Optional[bytes]]


class MockSerial:
    def __init__(
        self,
        port: Optional[str] = None,
        baudrate: int = 9600,
        timeout: Optional[float] = None,
        write_timeout: Optional[float] = None,
        responder: Optional[Responder] = None,
        fail_open: bool = False,
    ):
        if fail_open:
            raise serial.SerialException(f"could not open port {port}")
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.write_timeout = write_timeout
        self.is_open = True
        self.written: list[bytes] = []
        self._rx = bytearray()
        self._responder = responder

    def _check_open(self):
        if not self.is_open:
            raise serial.PortNotOpenError()

    def write(self, data: bytes) -> int:
        self._check_open()
        data = bytes(data)
        self.written.append(data)
        if self._responder is not None:
            reply = self._responder(data)
            if reply:
                self._rx += reply
        return len(data)

    def flush(self):
        self._check_open()

    def read(self, size: int = 1) -> bytes:
        self._check_open()
        out = bytes(self._rx[:size])
        del self._rx[:size]
        return out

    def read_until(self, expected: bytes = b"\n", size: Optional[int] = None) -> bytes:
        self._check_open()
        idx = self._rx.find(expected)
        end = len(self._rx) if idx < 0 else idx + len(expected)
        if size is not None:
            end = min(end, size)
        out = bytes(self._rx[:end])
        del self._rx[:end]
        return out

    def reset_input_buffer(self):
        self._rx.clear()

    def close(self):
        self.is_open = False


class MockSerialFactory:
    """`serial_factory` for a transport; remembers every port it opened."""

    def __init__(self, responder: Optional[Responder] = None, fail_open: bool = False):
        self.responder = responder
        self.fail_open = fail_open
        self.instances: list[MockSerial] = []

    def __call__(self, **kwargs) -> MockSerial:
        ser = MockSerial(responder=self.responder, fail_open=self.fail_open, **kwargs)
        self.instances.append(ser)
        return ser

    @property
    def written(self) -> list[bytes]:
        return [frame for ser in self.instances for frame in ser.written]


def relay_echo_responder(frame: bytes) -> bytes:
    """A healthy relay board echoes write-single-register frames."""
    return frame


def chamber_responder(code: str, status: str = "OK") -> Responder:
    def respond(frame: bytes) -> bytes:
        return f"\x0201RSD,{status},{code},0000\r\n".encode("ascii")

    return respond


def load_responder(volts: float) -> Responder:
    def respond(frame: bytes) -> Optional[bytes]:
        if frame.startswith(b"MEAS:VOLT?"):
            return f"{volts:.4f}\r\n".encode("ascii")
        return None

    return respond
