import asyncio
import tempfile

import chamberbench.util
from chamberbench.meas import RunControl, TestCycle
from chamberbench.system import (
    DRY_RUN_PROFILE,
    SETTINGS_FILE,
    Bench,
    BroadcastHub,
    load_test_configuration,
    save_settings,
)
from chamberbench.types import BenchTimings

# one second of wall clock per settings minute
SECONDS_PER_MINUTE = 1.0

chamberbench.util.start_client_log(log_to_stdout=True, log_level="INFO")

settings_dir = tempfile.mkdtemp(prefix="chamberbench_settings_")
save_settings(settings_dir, SETTINGS_FILE.DEVICE_STATES, [True, True, True] + [False] * 7)
save_settings(
    settings_dir,
    SETTINGS_FILE.HIGH_TEMP,
    {"highTemp": True, "targetTemp": 75, "waitTime": 2, "readCount": 2},
)
save_settings(
    settings_dir,
    SETTINGS_FILE.LOW_TEMP,
    {"lowTemp": True, "targetTemp": -32, "waitTime": 2, "readCount": 1},
)


async def main():
    bench = Bench.mock(chamber_profile=DRY_RUN_PROFILE, chamber_loop=True)
    bench.open()
    hub = BroadcastHub()
    sub = hub.subscribe()
    rc = RunControl()
    rc.power_on()  # the ON switch

    cycle = TestCycle(
        bench,
        load_test_configuration(settings_dir),
        rc,
        hub,
        timings=BenchTimings(seconds_per_minute=SECONDS_PER_MINUTE),
        data_root=tempfile.mkdtemp(prefix="chamberbench_data_"),
    )

    async def printer():
        while True:
            print((await sub.get()).to_text())

    task = asyncio.create_task(printer())
    # rc.power_off() from anywhere stops the run at the next checkpoint
    result = await cycle.run()
    await asyncio.sleep(0.1)
    task.cancel()
    bench.close()
    return result


result = asyncio.run(main())
print(result.status, result.reason)
for path in result.reports:
    print(path)
