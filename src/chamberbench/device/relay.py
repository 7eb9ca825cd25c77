"""MODBUS relay bank switching the device-under-test slots.

The board exposes two slave banks (addresses 1 and 2) with eight coil registers
each: the 16 (bank, register) pairs in `RELAY_PAIRS`. Writing 0x0100 closes a
relay, 0x0200 opens it.

A device slot uses three relays: the primary register on both banks plus a group
register on bank 1 (6 for slots 1-5, 7 for slots 6-10). Device-on closes them in
that order, device-off opens them in reverse.

All relay transactions, from every caller, go through the bank's single
`RelayQueue`: one transaction in flight, strict submission order, and a failed
job never blocks the ones behind it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import serial
from loguru import logger

from chamberbench.device.device import Device
from chamberbench.device.modbus import (
    ERROR_LENGTH,
    FUNC_WRITE_SINGLE,
    build_write_register,
    expected_length,
    parse_reply,
)
from chamberbench.device.serial_channel import PortLock, SerialTransport
from chamberbench.types import ChannelResult, ProtocolError
from chamberbench.util.defaults import (
    N_DEVICE_SLOTS,
    RELAY_ALL_OFF_GAP,
    RELAY_BAUD,
    RELAY_SETTLE,
    RELAY_TIMEOUT,
)

T = TypeVar("T")

RELAY_ON = 0x0100
RELAY_OFF = 0x0200

N_BANKS = 2
N_REGISTERS = 8
RELAY_PAIRS = tuple(
    (bank, register)
    for bank in range(1, N_BANKS + 1)
    for register in range(1, N_REGISTERS + 1)
)
GROUP_SIZE = 5
GROUP_REGISTER_BASE = 6


def device_relays(device_index: int) -> tuple[tuple[int, int], ...]:
    """(bank, register) pairs closed for a device slot, in switch-on order."""
    if not 0 <= device_index < N_DEVICE_SLOTS:
        raise ValueError(f"Device index {device_index} outside 0..{N_DEVICE_SLOTS - 1}")
    primary = device_index % GROUP_SIZE + 1
    group = GROUP_REGISTER_BASE + device_index // GROUP_SIZE
    return ((1, primary), (2, primary), (1, group))


def relay_frame(bank: int, register: int, on: bool) -> bytes:
    if (bank, register) not in RELAY_PAIRS:
        raise ValueError(f"No relay at bank {bank}, register {register}")
    return build_write_register(bank, register, RELAY_ON if on else RELAY_OFF)


class RelayQueue:
    """Bounded (capacity 1) FIFO of relay jobs with a single worker."""

    def __init__(self):
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_worker(self):
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done() or self._loop is not loop:
            self._loop = loop
            self._queue = asyncio.Queue(maxsize=1)
            self._worker = loop.create_task(self._run())

    async def _run(self):
        while True:
            job, fut = await self._queue.get()
            try:
                result = await job()
            except Exception as e:
                logger.exception("Relay job raised, moving on to next job.")
                if not fut.done():
                    fut.set_exception(e)
            else:
                if not fut.done():
                    fut.set_result(result)
            finally:
                self._queue.task_done()

    async def submit(self, job: Callable[[], Awaitable[T]]) -> T:
        """Queue `job` behind earlier submissions and await its result."""
        self._ensure_worker()
        fut = self._loop.create_future()
        await self._queue.put((job, fut))
        return await fut

    def close(self):
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
        self._worker = None


class RelayBank(Device):
    required_config = {"port": str}

    def __init__(
        self,
        port: str,
        baudrate: int = RELAY_BAUD,
        timeout: float = RELAY_TIMEOUT,
        settle: float = RELAY_SETTLE,
        all_off_gap: float = RELAY_ALL_OFF_GAP,
        lock: Optional[PortLock] = None,
        serial_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(port=port)
        self.settle = settle
        self.all_off_gap = all_off_gap
        self.transport = SerialTransport(
            port, baudrate, timeout, lock=lock, serial_factory=serial_factory
        )
        self.queue = RelayQueue()

    def open(self) -> tuple[bool, str]:
        return True, f"Relay bank on {self.port} (opened per transaction)"

    def close(self):
        self.queue.close()

    def is_connected(self) -> bool:
        return self.transport.last_ok

    async def _transaction(self, frame: bytes) -> ChannelResult:
        try:
            async with self.transport.session() as link:
                await link.write(frame)
                head = await link.read_exact(ERROR_LENGTH)
                rest = expected_length(head[1]) - ERROR_LENGTH
                reply_bytes = head + (await link.read_exact(rest) if rest else b"")
            reply = parse_reply(reply_bytes)
        except (serial.SerialException, OSError, TimeoutError, ProtocolError) as e:
            logger.error("Relay frame {} failed: {}", frame.hex().upper(), e)
            return ChannelResult.fail(str(e))
        if reply.is_error:
            logger.error("Relay frame {} rejected: {}", frame.hex().upper(), reply.describe_error())
            return ChannelResult.fail(reply.describe_error())
        if reply.function != FUNC_WRITE_SINGLE or reply_bytes != frame:
            return ChannelResult.fail(f"Echo mismatch: sent {frame.hex()}, got {reply_bytes.hex()}")
        logger.trace("Relay frame {} acknowledged", frame.hex().upper())
        return ChannelResult.ok(reply)

    async def send_frame(self, frame: bytes) -> ChannelResult:
        return await self.queue.submit(lambda: self._transaction(frame))

    async def relay(self, bank: int, register: int, on: bool) -> ChannelResult:
        return await self.send_frame(relay_frame(bank, register, on))

    async def ping(self) -> ChannelResult:
        """Round trip to the board: re-send OFF to the first relay."""
        bank, register = RELAY_PAIRS[0]
        return await self.relay(bank, register, False)

    async def device_on(self, device_index: int) -> ChannelResult:
        """Close the three relays of a slot; stops at the first failure."""
        for bank, register in device_relays(device_index):
            result = await self.relay(bank, register, True)
            if not result.success:
                return ChannelResult.fail(
                    f"device {device_index + 1} on: bank {bank} reg {register}: "
                    + result.error
                )
        await asyncio.sleep(self.settle)
        return ChannelResult.ok(device_index)

    async def device_off(self, device_index: int) -> ChannelResult:
        """Open the three relays of a slot in reverse order.

        Every relay is attempted even if an earlier one fails.
        """
        errors = []
        for bank, register in reversed(device_relays(device_index)):
            result = await self.relay(bank, register, False)
            if not result.success:
                errors.append(f"bank {bank} reg {register}: {result.error}")
        await asyncio.sleep(self.settle)
        if errors:
            return ChannelResult.fail(f"device {device_index + 1} off: " + "; ".join(errors))
        return ChannelResult.ok(device_index)

    async def all_off(self) -> ChannelResult:
        """Open every relay on the board (safety reset)."""
        failed = []
        for i, (bank, register) in enumerate(RELAY_PAIRS):
            result = await self.relay(bank, register, False)
            if not result.success:
                failed.append((bank, register))
            if i < len(RELAY_PAIRS) - 1:
                await asyncio.sleep(self.all_off_gap)
        if failed:
            logger.error("Relay all-off: {} relays did not acknowledge: {}", len(failed), failed)
            return ChannelResult.fail(f"{len(failed)} relays did not acknowledge")
        logger.info("All relays off.")
        return ChannelResult.ok()
