# test that we can open and talk to the real bench, without server comms.

import pytest
import pytest_asyncio
from loguru import logger

import chamberbench.util
from chamberbench.system import Bench
from chamberbench.util import TEST_LOGLEVEL


@pytest.mark.hardware
class TestLocalBench:
    @pytest.fixture(autouse=True, scope="class")
    def client_log(self):
        chamberbench.util.start_client_log(log_to_file=True, log_level=TEST_LOGLEVEL)
        yield
        chamberbench.util.shutdown_client_log()

    @pytest_asyncio.fixture(autouse=True, scope="function")
    async def log(self, request):
        logger.warning("STARTED Test '{}'".format(request.node.originalname))
        yield
        logger.warning("COMPLETED Test '{}' \n".format(request.node.originalname))

    @pytest.fixture
    def bench(self, port_mapping):
        bench = Bench.from_port_mapping(port_mapping)
        dev_status = bench.open()
        assert all(dev["status"] for dev in dev_status.values()), dev_status
        yield bench
        bench.close()

    @pytest.mark.asyncio
    async def test_check(self, bench):
        status = await bench.check()
        assert all(dev["status"] for dev in status.values()), status

    @pytest.mark.asyncio
    async def test_chamber_reading(self, bench):
        reading = await bench.chamber.read_temperature()
        assert reading.success, reading.error
        assert -100.0 < reading.temperature < 200.0

    @pytest.mark.slow
    @pytest.mark.asyncio
    async def test_relay_all_off(self, bench):
        result = await bench.relays.all_off()
        assert result.success, result.error

    @pytest.mark.asyncio
    async def test_device_on_off(self, bench):
        try:
            on = await bench.relays.device_on(0)
            assert on.success, on.error
        finally:
            off = await bench.relays.device_off(0)
        assert off.success, off.error
