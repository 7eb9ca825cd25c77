import asyncio

import pytest
from loguru import logger

from chamberbench.device import RelayBank, RelayQueue
from chamberbench.device.mock import MockSerialFactory, relay_echo_responder
from chamberbench.device.modbus import FUNC_WRITE_SINGLE_ERROR, append_crc
from chamberbench.device.relay import RELAY_OFF, RELAY_ON, RELAY_PAIRS, relay_frame


@pytest.fixture(autouse=True, scope="function")
def log(request):
    logger.warning("STARTED Test '{}'".format(request.node.originalname))

    def fin():
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    request.addfinalizer(fin)


def _bank(responder=relay_echo_responder):
    factory = MockSerialFactory(responder)
    bank = RelayBank("/dev/ttyUSB3", settle=0, all_off_gap=0, serial_factory=factory)
    return bank, factory


class TestRelayQueue:
    @pytest.mark.asyncio
    async def test_fifo_order(self):
        queue = RelayQueue()
        order = []

        def job(tag, delay):
            async def run():
                await asyncio.sleep(delay)
                order.append(tag)
                return tag

            return run

        # earlier jobs are slower: completion order still follows submission
        results = await asyncio.gather(
            queue.submit(job("a", 0.03)),
            queue.submit(job("b", 0.02)),
            queue.submit(job("c", 0.0)),
        )
        assert results == ["a", "b", "c"]
        assert order == ["a", "b", "c"]
        queue.close()

    @pytest.mark.asyncio
    async def test_one_in_flight(self):
        queue = RelayQueue()
        running = 0
        peak = 0

        async def job():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.005)
            running -= 1

        await asyncio.gather(*(queue.submit(job) for _ in range(6)))
        assert peak == 1
        queue.close()

    @pytest.mark.asyncio
    async def test_failure_does_not_block(self):
        queue = RelayQueue()

        async def boom():
            raise RuntimeError("relay board on fire")

        async def fine():
            return "ok"

        first = asyncio.ensure_future(queue.submit(boom))
        second = asyncio.ensure_future(queue.submit(fine))
        with pytest.raises(RuntimeError):
            await first
        assert await second == "ok"
        queue.close()


class TestRelayBank:
    @pytest.mark.asyncio
    async def test_device_on_frame_order(self):
        bank, factory = _bank()
        result = await bank.device_on(0)
        assert result.success
        assert factory.written == [
            relay_frame(1, 1, True),
            relay_frame(2, 1, True),
            relay_frame(1, 6, True),
        ]
        # one fresh port per transaction
        assert len(factory.instances) == 3
        bank.close()

    @pytest.mark.asyncio
    async def test_device_off_reverse_order(self):
        bank, factory = _bank()
        result = await bank.device_off(7)
        assert result.success
        assert factory.written == [
            relay_frame(1, 7, False),
            relay_frame(2, 3, False),
            relay_frame(1, 3, False),
        ]
        bank.close()

    @pytest.mark.asyncio
    async def test_frame_values(self):
        bank, factory = _bank()
        await bank.relay(2, 4, True)
        await bank.relay(2, 4, False)
        on, off = factory.written
        assert on[4:6] == RELAY_ON.to_bytes(2, "big")
        assert off[4:6] == RELAY_OFF.to_bytes(2, "big")
        bank.close()

    @pytest.mark.asyncio
    async def test_all_off(self):
        bank, factory = _bank()
        result = await bank.all_off()
        assert result.success
        assert factory.written == [relay_frame(b, r, False) for b, r in RELAY_PAIRS]
        bank.close()

    @pytest.mark.asyncio
    async def test_ping(self):
        bank, factory = _bank()
        assert (await bank.ping()).success
        assert factory.written == [relay_frame(1, 1, False)]
        bank.close()

    @pytest.mark.asyncio
    async def test_device_on_stops_at_first_failure(self):
        def responder(frame):
            if frame[0] == 2:
                return append_crc(bytes([2, FUNC_WRITE_SINGLE_ERROR, 0x04]))
            return frame

        bank, factory = _bank(responder)
        result = await bank.device_on(2)
        assert not result.success
        assert "slave device failure" in result.error
        assert factory.written == [relay_frame(1, 3, True), relay_frame(2, 3, True)]
        bank.close()

    @pytest.mark.asyncio
    async def test_device_off_attempts_every_relay(self):
        def responder(frame):
            return None if frame[0] == 2 else frame

        bank, factory = _bank(responder)
        result = await bank.device_off(0)
        assert not result.success
        assert len(factory.written) == 3
        bank.close()

    @pytest.mark.asyncio
    async def test_echo_mismatch(self):
        def responder(frame):
            # valid CRC, wrong register
            return relay_frame(1, 2, True) if frame == relay_frame(1, 1, True) else frame

        bank, _ = _bank(responder)
        result = await bank.relay(1, 1, True)
        assert not result.success
        assert "Echo mismatch" in result.error
        bank.close()

    @pytest.mark.asyncio
    async def test_corrupted_reply(self):
        def responder(frame):
            return frame[:-1] + bytes([frame[-1] ^ 0xFF])

        bank, _ = _bank(responder)
        result = await bank.relay(1, 1, True)
        assert not result.success
        assert "CRC" in result.error
        bank.close()

    @pytest.mark.asyncio
    async def test_concurrent_callers_serialized(self):
        bank, factory = _bank()
        await asyncio.gather(bank.device_on(0), bank.device_on(6))
        frames = factory.written
        assert len(frames) == 6
        # each transaction is a complete request/echo on its own port
        for ser in factory.instances:
            assert len(ser.written) == 1
            assert not ser.is_open
        bank.close()
