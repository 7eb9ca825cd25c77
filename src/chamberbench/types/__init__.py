"""
Shared types: configuration, result values, messages and exceptions.

- `config`: mashumaro dataclasses for the settings snapshot (`TestConfiguration`).
- `results`: tagged hardware results (`ChannelResult`, `ChamberReading`) and the
  run/sweep outcomes with their status, stop-reason and phase vocabularies.
- `messages`: msgpack requests/responses and the broadcast `Notification` family.
- `commands`: request command strings.

Exceptions are defined here.
"""

from __future__ import annotations

from .commands import CONSTS
from .config import (
    BenchTimings,
    DEFAULT_TIME_SCHEDULE,
    DelaySettings,
    PortMapping,
    ProductInfo,
    TemperatureSettings,
    TestConfiguration,
    TimeModeSettings,
    TimeSchedule,
)
from .messages import (
    NOTIF_PREFIXES,
    TERMINAL_NOTIFICATIONS,
    ChamberTemperature,
    DictResponse,
    DirectoryCreated,
    ErrorResponse,
    Message,
    MsgResponse,
    Notification,
    PowerSwitch,
    PowerTableComplete,
    PowerTableReset,
    PowerTableUpdate,
    ProcessLog,
    Request,
    Response,
    TestCompleted,
    TestError,
    TestProgress,
    TestStopped,
    TimeProgress,
    ValueResponse,
    get_all_subclasses_map,
)
from .protocol import (
    HANDLER_REGISTRY,
    PENDING_COMMAND_VALIDATIONS,
    ClientConnection,
    HandlerInfo,
    ServerConnection,
    ValidationError,
    assert_valid_handler_client_correspondence,
    validate_handler_client_correspondence,
)
from .results import (
    CELL_ERROR,
    CELL_SKIPPED,
    CHAMBER_STATUS,
    JUDGE,
    PHASE,
    RUN_STATUS,
    STOP_REASON,
    ChamberReading,
    ChannelResult,
    RunResult,
    StopPoint,
    SweepResult,
    time_waiting_phase,
)


class ConfigurationError(ValueError):
    """Malformed or out-of-range settings; the run must not start."""


class CommsError(Exception):
    pass


class ProtocolError(Exception):
    """A framed reply failed validation (bad CRC, length or function code)."""


class CellAlreadyWrittenError(RuntimeError):
    pass


__all__ = [
    "BenchTimings",
    "CONSTS",
    "CELL_ERROR",
    "CELL_SKIPPED",
    "CHAMBER_STATUS",
    "DEFAULT_TIME_SCHEDULE",
    "HANDLER_REGISTRY",
    "JUDGE",
    "NOTIF_PREFIXES",
    "PENDING_COMMAND_VALIDATIONS",
    "PHASE",
    "RUN_STATUS",
    "STOP_REASON",
    "TERMINAL_NOTIFICATIONS",
    "CellAlreadyWrittenError",
    "ChamberReading",
    "ChamberTemperature",
    "ChannelResult",
    "ClientConnection",
    "CommsError",
    "ConfigurationError",
    "DelaySettings",
    "DictResponse",
    "DirectoryCreated",
    "ErrorResponse",
    "Message",
    "MsgResponse",
    "Notification",
    "PortMapping",
    "PowerSwitch",
    "PowerTableComplete",
    "PowerTableReset",
    "PowerTableUpdate",
    "HandlerInfo",
    "ProcessLog",
    "ProductInfo",
    "ProtocolError",
    "Request",
    "Response",
    "ServerConnection",
    "RunResult",
    "StopPoint",
    "SweepResult",
    "TemperatureSettings",
    "TestCompleted",
    "TestConfiguration",
    "TestError",
    "TestProgress",
    "TestStopped",
    "TimeModeSettings",
    "TimeProgress",
    "TimeSchedule",
    "ValidationError",
    "ValueResponse",
    "assert_valid_handler_client_correspondence",
    "get_all_subclasses_map",
    "time_waiting_phase",
    "validate_handler_client_correspondence",
]
