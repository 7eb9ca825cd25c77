import asyncio

import pytest
from loguru import logger

from chamberbench.device import Chamber, LoadAnalyzer, PortLock, PowerSource, SerialTransport
from chamberbench.device.chamber import decode_temperature, parse_chamber_response
from chamberbench.device.load import parse_voltage
from chamberbench.device.mock import (
    MockSerial,
    MockSerialFactory,
    chamber_responder,
    load_responder,
)
from chamberbench.types import CHAMBER_STATUS


@pytest.fixture(autouse=True, scope="function")
def log(request):
    logger.warning("STARTED Test '{}'".format(request.node.originalname))

    def fin():
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    request.addfinalizer(fin)


class TestChamber:
    @pytest.mark.parametrize(
        "code, temperature",
        [("0000", 0.0), ("1D4C", 75.0), ("FC18", -10.0), ("F380", -32.0), ("7FFF", 327.67)],
    )
    def test_decode_temperature(self, code, temperature):
        assert decode_temperature(code) == pytest.approx(temperature)

    def test_decode_temperature_bad_code(self):
        with pytest.raises(ValueError):
            decode_temperature("FC1")
        with pytest.raises(ValueError):
            decode_temperature("ZZZZ")

    def test_parse_response(self):
        reading = parse_chamber_response("\x0201RSD,OK,FC18,0000\r\n")
        assert reading.success
        assert reading.temperature == pytest.approx(-10.0)

    def test_parse_response_not_ok(self):
        reading = parse_chamber_response("\x0201RSD,NG,FC18,0000\r\n")
        assert reading.status == CHAMBER_STATUS.BAD_RESPONSE
        assert reading.temperature is None

    def test_parse_response_bad_code(self):
        reading = parse_chamber_response("\x0201RSD,OK,XYZW,0000\r\n")
        assert reading.status == CHAMBER_STATUS.BAD_RESPONSE

    @pytest.mark.asyncio
    async def test_read_temperature(self):
        factory = MockSerialFactory(chamber_responder("FC18"))
        chamber = Chamber("/dev/ttyUSB0", serial_factory=factory)
        reading = await chamber.read_temperature()
        assert reading.success
        assert reading.temperature == pytest.approx(-10.0)
        assert factory.written == [b"\x0201RSD,06,0001C9\r\n"]
        assert chamber.is_connected()
        # port closed again after the transaction
        assert not factory.instances[0].is_open

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        chamber = Chamber("/dev/ttyUSB0", serial_factory=MockSerialFactory(lambda f: None))
        reading = await chamber.read_temperature()
        assert reading.status == CHAMBER_STATUS.TIMEOUT
        assert not chamber.is_connected()

    @pytest.mark.asyncio
    async def test_read_port_missing(self):
        chamber = Chamber("/dev/ttyUSB0", serial_factory=MockSerialFactory(fail_open=True))
        reading = await chamber.read_temperature()
        assert reading.status == CHAMBER_STATUS.FAILED
        assert not reading.success

    @pytest.mark.asyncio
    async def test_read_bad_response(self):
        factory = MockSerialFactory(chamber_responder("FC18", status="NG"))
        reading = await Chamber("/dev/ttyUSB0", serial_factory=factory).read_temperature()
        assert reading.status == CHAMBER_STATUS.BAD_RESPONSE


class TestLoadAnalyzer:
    @pytest.mark.parametrize(
        "text, value",
        [
            ("220.5000\r\n", 220.5),
            ("-15.20\n", -15.2),
            ("+2.2050E+02\r\n", 220.5),
            ("221\n", 221.0),
            ("garbage", None),
        ],
    )
    def test_parse_voltage(self, text, value):
        assert parse_voltage(text) == (pytest.approx(value) if value is not None else None)

    def _load(self, responder):
        factory = MockSerialFactory(responder)
        load = LoadAnalyzer(
            "/dev/ttyUSB2", select_delay=0, clear_delay=0, serial_factory=factory
        )
        return load, factory

    @pytest.mark.asyncio
    async def test_read_channel(self):
        load, factory = self._load(load_responder(220.5))
        result = await load.read_channel(2)
        assert result.success
        assert result.value == pytest.approx(220.5)
        assert factory.written == [b"INST:SEL CH2\r\n", b"MEAS:VOLT?\r\n"]

    @pytest.mark.asyncio
    async def test_channel_out_of_range(self):
        load, factory = self._load(load_responder(220.5))
        result = await load.read_channel(6)
        assert not result.success
        assert factory.instances == []

    @pytest.mark.asyncio
    async def test_reading_out_of_range(self):
        load, _ = self._load(load_responder(400.0))
        result = await load.read_channel(1)
        assert not result.success
        assert "outside" in result.error

    @pytest.mark.asyncio
    async def test_read_timeout(self):
        load, _ = self._load(lambda frame: None)
        result = await load.read_channel(1)
        assert not result.success


class TestPowerSource:
    @staticmethod
    def _responder(frame: bytes):
        if frame.startswith(b"*IDN?"):
            return b"KIKUSUI,PWR401L,AB123456,1.10\r\n"
        return None

    @pytest.mark.asyncio
    async def test_identify(self):
        source = PowerSource("/dev/ttyUSB1", serial_factory=MockSerialFactory(self._responder))
        result = await source.identify()
        assert result.success
        assert result.value.startswith("KIKUSUI,PWR401L")

    @pytest.mark.asyncio
    async def test_identify_garbage(self):
        factory = MockSerialFactory(lambda frame: b"???\r\n")
        result = await PowerSource("/dev/ttyUSB1", serial_factory=factory).identify()
        assert not result.success

    @pytest.mark.asyncio
    async def test_set_voltage(self):
        factory = MockSerialFactory(self._responder)
        source = PowerSource("/dev/ttyUSB1", serial_factory=factory)
        assert source.get_voltage() is None
        result = await source.set_voltage(24.0)
        assert result.success
        assert source.get_voltage() == 24.0
        assert factory.written == [b"SOUR:VOLT:LEV:IMM:AMPL 24.0\r\n"]

    @pytest.mark.asyncio
    async def test_set_voltage_out_of_range(self):
        factory = MockSerialFactory(self._responder)
        source = PowerSource("/dev/ttyUSB1", serial_factory=factory)
        result = await source.set_voltage(150.0)
        assert not result.success
        assert factory.instances == []
        assert source.get_voltage() is None

    @pytest.mark.asyncio
    async def test_set_voltage_port_missing(self):
        source = PowerSource("/dev/ttyUSB1", serial_factory=MockSerialFactory(fail_open=True))
        result = await source.set_voltage(24.0)
        assert not result.success
        assert source.get_voltage() is None


class TestSerialChannel:
    @pytest.mark.asyncio
    async def test_lock_expires(self):
        lock = PortLock("/dev/ttyUSB0", hold_timeout=0.05)
        async with lock.hold():
            assert lock.in_use
            await asyncio.sleep(0.1)
            # auto-released while still inside the block
            assert not lock.in_use
        assert not lock.in_use
        async with lock.hold():
            assert lock.in_use
        assert not lock.in_use

    @pytest.mark.asyncio
    async def test_stuck_marker_force_released(self):
        lock = PortLock("/dev/ttyUSB0", wait_max=0.05, wait_poll=0.01)
        lock.in_use = True
        await lock.wait_available()
        assert not lock.in_use

    @pytest.mark.asyncio
    async def test_transactions_serialized(self):
        lock = PortLock("/dev/ttyUSB0")
        active = []
        overlaps = []

        async def transaction(tag):
            async with lock.hold():
                if active:
                    overlaps.append(tag)
                active.append(tag)
                await asyncio.sleep(0.01)
                active.remove(tag)

        await asyncio.gather(*(transaction(i) for i in range(5)))
        assert overlaps == []

    @pytest.mark.asyncio
    async def test_stale_handle_closed(self):
        factory = MockSerialFactory()
        transport = SerialTransport("/dev/ttyUSB0", 9600, 1.0, serial_factory=factory)
        stale = MockSerial(port="/dev/ttyUSB0")
        transport._handle = stale
        async with transport.session() as link:
            await link.write(b"x")
        assert not stale.is_open
        assert transport.last_ok
        assert transport._handle is None

    @pytest.mark.asyncio
    async def test_shared_lock_between_transports(self):
        lock = PortLock("/dev/ttyUSB0")
        a = SerialTransport("/dev/ttyUSB0", 9600, 1.0, lock=lock, serial_factory=MockSerialFactory())
        b = SerialTransport("/dev/ttyUSB0", 9600, 1.0, lock=lock, serial_factory=MockSerialFactory())
        assert a.lock is b.lock
        async with a.session():
            assert lock.in_use
        async with b.session():
            assert lock.in_use
        assert not lock.in_use
