"""
Test runs for the environmental chamber bench.

- `control`: `RunControl`, the machine-running flag and cooperative stop token.
- `judgment`: pass/fail policies (`PercentTolerance`, `FixedRange`).
- `matrix`: the write-once sweep grid and the plateau/run accumulators.
- `sweep`: `SweepEngine`, one pass over voltages x reads x devices.
- `cycle`: `TestCycle`, the temperature-cycle state machine.
- `timed`: `TimedCycle`, the deadline-driven variant.

Examples
--------
Running a mock bench in-process:
```python
from chamberbench.meas import RunControl, TestCycle
from chamberbench.system import Bench, BroadcastHub, load_test_configuration

rc = RunControl()
rc.power_on()
cycle = TestCycle(Bench.mock(), load_test_configuration(), rc, BroadcastHub())
result = await cycle.run()
```

See Also
--------
chamberbench.device : Instrument drivers
chamberbench.report : CSV reports
"""

from .control import RunControl
from .cycle import CYCLE_STATE, HIGH_PLATEAU, LOW_PLATEAU, Plateau, TestCycle
from .judgment import FixedRange, JudgmentPolicy, PercentTolerance, get_policy, is_numeric
from .matrix import (
    CELL_STATE,
    CycleAccumulator,
    MeasurementCell,
    MeasurementMatrix,
    RunAggregate,
)
from .sweep import SweepEngine
from .timed import TimedCycle

__all__ = [
    "CELL_STATE",
    "CYCLE_STATE",
    "HIGH_PLATEAU",
    "LOW_PLATEAU",
    "CycleAccumulator",
    "FixedRange",
    "JudgmentPolicy",
    "MeasurementCell",
    "MeasurementMatrix",
    "PercentTolerance",
    "Plateau",
    "RunAggregate",
    "RunControl",
    "SweepEngine",
    "TestCycle",
    "TimedCycle",
    "get_policy",
    "is_numeric",
]
