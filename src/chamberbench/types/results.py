"""Result values and state vocabularies shared by the device, sweep and cycle layers.

Hardware calls never raise past the device layer: they return a `ChannelResult`
(or a `ChamberReading` for chamber queries) that callers inspect. Run-level
outcomes are `SweepResult` and `RunResult`, tagged with the `RUN_STATUS`,
`STOP_REASON` and `PHASE` vocabularies below (these strings also appear in the
broadcast events and in report file names, so keep them stable).
"""

from __future__ import annotations

import types
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from chamberbench.meas.matrix import MeasurementMatrix

JUDGE = types.SimpleNamespace()
JUDGE.GOOD = "G"
JUDGE.NOT_GOOD = "N"

CELL_SKIPPED = "-.-"  # unselected device, or not yet visited
CELL_ERROR = "error"  # read retries exhausted

RUN_STATUS = types.SimpleNamespace()
RUN_STATUS.COMPLETED = "completed"
RUN_STATUS.STOPPED = "stopped"
RUN_STATUS.ERROR = "error"

STOP_REASON = types.SimpleNamespace()
STOP_REASON.USER_STOP = "user_stop"
STOP_REASON.POWER_SWITCH_OFF = "power_switch_off"
STOP_REASON.SYSTEM_FAILURE = "system_failure"
STOP_REASON.ERROR = "error"
STOP_REASON.CHAMBER_READ_FAILED = "chamber_read_failed"
STOP_REASON.NO_TESTS_ENABLED = "no_tests_enabled"

PHASE = types.SimpleNamespace()
PHASE.INITIALIZATION = "initialization"
PHASE.DIRECTORY_CREATION = "directory_creation"
PHASE.HIGH_TEMP_WAITING = "high_temp_waiting"
PHASE.HIGH_TEMP_TEST = "high_temp_test"
PHASE.LOW_TEMP_WAITING = "low_temp_waiting"
PHASE.LOW_TEMP_TEST = "low_temp_test"
PHASE.BEFORE_VOLTAGE_SETTING = "before_voltage_setting"
PHASE.VOLTAGE_SETTING = "voltage_setting"
PHASE.DEVICE_SELECTION = "device_selection"
PHASE.BEFORE_RELAY_OPERATION = "before_relay_operation"
PHASE.VOLTAGE_READING = "voltage_reading"
PHASE.DEVICE_RELEASE = "device_release"
PHASE.T_END_WAITING = "t_end_waiting"


def time_waiting_phase(step: int) -> str:
    return f"time_waiting_{step}"


CHAMBER_STATUS = types.SimpleNamespace()
CHAMBER_STATUS.OK = "ok"
CHAMBER_STATUS.TIMEOUT = "timeout"
CHAMBER_STATUS.BAD_RESPONSE = "bad_response"
CHAMBER_STATUS.FAILED = "failed"


@dataclass
class ChannelResult:
    """Outcome of one hardware call (or of a retried sequence of them)."""

    success: bool
    value: Any = None
    error: str = ""
    stopped: bool = False  # retry loop gave up because a stop was requested

    @classmethod
    def ok(cls, value: Any = None) -> ChannelResult:
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: str) -> ChannelResult:
        return cls(success=False, error=error)

    @classmethod
    def stop(cls) -> ChannelResult:
        return cls(success=False, error="stop requested", stopped=True)


@dataclass(frozen=True)
class ChamberReading:
    """A chamber temperature query.

    `temperature` is only meaningful when `status == CHAMBER_STATUS.OK`; a
    negative temperature is a perfectly valid reading.
    """

    status: str
    temperature: Optional[float] = None
    raw: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status == CHAMBER_STATUS.OK


@dataclass
class StopPoint:
    """Where a run (or sweep) ended abnormally."""

    phase: str
    cycle_index: int = 0
    test_index: int = 0
    voltage_index: Optional[int] = None
    device_index: Optional[int] = None
    read_index: Optional[int] = None
    channel_index: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SweepResult:
    status: str
    matrix: Optional[MeasurementMatrix] = None
    stopped_at: Optional[StopPoint] = None
    reason: str = ""
    error: str = ""


@dataclass
class RunResult:
    status: str
    reason: str = ""
    stopped_at: Optional[StopPoint] = None
    error: str = ""
    directory: str = ""
    reports: list[str] = field(default_factory=list)
