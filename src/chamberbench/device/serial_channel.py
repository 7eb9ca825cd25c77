"""Serialized access to one physical serial port.

`SerialTransport.session()` is the only way instruments talk to hardware:

1. wait for the port's `PortLock` (polling an in-use marker, force-releasing a
   stuck holder after `PORT_WAIT_MAX`),
2. force-close any handle left over from a previous transaction and open a
   fresh one,
3. hand a `SerialSession` to the caller for blocking I/O run in worker threads,
4. close the port and release the lock.

A lock is held for one transaction only, never across a multi-step logical
command, and expires by itself after `hold_timeout` in case a close is lost.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import serial  # pyserial package
from loguru import logger

from chamberbench.util.defaults import PORT_LOCK_TIMEOUT, PORT_WAIT_MAX, PORT_WAIT_POLL


class PortLock:
    """Mutual-exclusion token for one physical port."""

    def __init__(
        self,
        port: str,
        hold_timeout: float = PORT_LOCK_TIMEOUT,
        wait_max: float = PORT_WAIT_MAX,
        wait_poll: float = PORT_WAIT_POLL,
    ):
        self.port = port
        self.hold_timeout = hold_timeout
        self.wait_max = wait_max
        self.wait_poll = wait_poll
        self.in_use = False
        self._lock = asyncio.Lock()
        self._generation = 0

    async def wait_available(self):
        waited = 0.0
        while self.in_use and waited < self.wait_max:
            await asyncio.sleep(self.wait_poll)
            waited += self.wait_poll
        if self.in_use:
            logger.warning(
                "Port {} still in use after {}s, forcing release.", self.port, waited
            )
            self.force_release()

    def force_release(self):
        self._generation += 1
        self.in_use = False
        if self._lock.locked():
            self._lock.release()

    def _expire(self, generation: int):
        if generation == self._generation and self.in_use:
            logger.warning(
                "Lock on port {} held longer than {}s, auto-releasing.",
                self.port,
                self.hold_timeout,
            )
            self.force_release()

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[None]:
        await self.wait_available()
        await self._lock.acquire()
        self._generation += 1
        generation = self._generation
        self.in_use = True
        expiry = asyncio.get_running_loop().call_later(
            self.hold_timeout, self._expire, generation
        )
        try:
            yield
        finally:
            expiry.cancel()
            # an expired (force released) hold must not release its successor
            if generation == self._generation and self.in_use:
                self.in_use = False
                self._lock.release()


class SerialSession:
    """Blocking pyserial calls, each run off the event loop."""

    def __init__(self, ser: Any, port: str):
        self._ser = ser
        self.port = port

    async def write(self, data: bytes):
        await asyncio.to_thread(self._ser.write, data)
        await asyncio.to_thread(self._ser.flush)

    async def read_exact(self, size: int) -> bytes:
        data = await asyncio.to_thread(self._ser.read, size)
        if len(data) < size:
            raise TimeoutError(
                f"Timeout on {self.port}: got {len(data)}/{size} bytes ({data.hex()})"
            )
        return bytes(data)

    async def read_line(self, terminator: bytes = b"\n") -> bytes:
        data = await asyncio.to_thread(self._ser.read_until, terminator)
        if not data.endswith(terminator):
            raise TimeoutError(f"Timeout on {self.port} waiting for line, got {data!r}")
        return bytes(data)

    async def clear_input(self):
        await asyncio.to_thread(self._ser.reset_input_buffer)


class SerialTransport:
    """Fresh-connection-per-transaction access to one serial port.

    Parameters
    ----------
    port : str
        Device path, e.g. "/dev/ttyUSB0".
    baudrate : int
    timeout : float
        Read/write timeout (s) for each call within a transaction.
    lock : PortLock, optional
        Share one lock between transports on the same physical port.
    serial_factory : Callable, optional
        Builds the pyserial object; defaults to `serial.Serial`. Tests pass
        `MockSerial`.
    """

    def __init__(
        self,
        port: str,
        baudrate: int,
        timeout: float,
        lock: Optional[PortLock] = None,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        self.port = port
        self.baudrate = baudrate
        self.timeout = timeout
        self.lock = lock if lock is not None else PortLock(port)
        self._serial_factory = serial_factory or serial.Serial
        self._handle: Any = None
        self.last_ok = False

    def _force_close(self):
        if self._handle is not None:
            try:
                if self._handle.is_open:
                    logger.debug("Force closing stale handle on {}", self.port)
                    self._handle.close()
            except (serial.SerialException, OSError):
                logger.exception("Error force closing {}, continuing.", self.port)
            self._handle = None

    def _open(self):
        self._force_close()
        self._handle = self._serial_factory(
            port=self.port,
            baudrate=self.baudrate,
            timeout=self.timeout,
            write_timeout=self.timeout,
        )
        return self._handle

    def _close(self, ser):
        try:
            ser.close()
        finally:
            if self._handle is ser:
                self._handle = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[SerialSession]:
        async with self.lock.hold():
            ser = await asyncio.to_thread(self._open)
            self.last_ok = False
            try:
                yield SerialSession(ser, self.port)
                self.last_ok = True
            finally:
                await asyncio.to_thread(self._close, ser)
