"""Message types for client-server communication and the broadcast topic."""

from __future__ import annotations

import types
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

import simplejson as json
from mashumaro.mixins.msgpack import DataClassMessagePackMixin
from mashumaro.types import Discriminator


def get_all_subclasses_map(cls: type) -> dict[str, type]:
    """Get all subclasses of a class recursively."""

    def _get_all(clas: type, subclasses: dict[str, type]):
        if not clas.__subclasses__():
            return subclasses
        for subcls in clas.__subclasses__():
            subclasses[subcls.__name__] = subcls
            subclasses |= _get_all(subcls, subclasses)
        return subclasses

    return _get_all(cls, dict())


@dataclass
class Message(DataClassMessagePackMixin):
    """Base class for all messages."""

    def __repr__(self):
        msg = self.__class__.__name__ + "("
        for i, (fld, val) in enumerate(self.__dict__.items()):
            if i not in (0, len(self.__dict__)):
                msg += ", "
            if isinstance(val, dict) and len(val) > 6:
                msg += f"{fld}=<dict>"
            else:
                msg += f"{fld}={val}"
        return msg + ")"


@dataclass(repr=False)
class Request(Message):
    """A request from client to server."""

    command: str
    params: dict[str, bool | str | float | int | None] = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class Response(Message):
    """A response from server to client's request."""

    type: str  # subclass to define
    value: Any  # subclass to define

    class Config:
        discriminator = Discriminator(field="type", include_subtypes=True)


@dataclass(kw_only=True, repr=False)
class MsgResponse(Response):
    type: str = "msg"
    value: str = ""


@dataclass(kw_only=True, repr=False)
class DictResponse(Response):
    type: str = "dict"
    value: dict = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class ValueResponse(Response):
    type: str = "value"
    value: int | float | str | bool = False


@dataclass(kw_only=True, repr=False)
class ErrorResponse(Response):
    type: str = "error"
    value: str = ""


# ============================================================================
# Notifications (server -> all observers)
# ============================================================================


@dataclass(kw_only=True, repr=False)
class Notification(Message):
    """Broadcast event. `to_text` renders the tagged line `[PREFIX] payload`."""

    type: str
    prefix: ClassVar[str] = ""

    class Config:
        discriminator = Discriminator(field="type", include_subtypes=True)

    def payload(self) -> str:
        return ""

    def to_text(self) -> str:
        payload = self.payload()
        return f"[{self.prefix}] {payload}" if payload else f"[{self.prefix}]"


@dataclass(kw_only=True, repr=False)
class ProcessLog(Notification):
    type: str = "process_log"
    prefix: ClassVar[str] = "PROCESS_LOG"
    message: str

    def payload(self) -> str:
        return self.message


@dataclass(kw_only=True, repr=False)
class TestProgress(Notification):
    __test__ = False

    type: str = "test_progress"
    prefix: ClassVar[str] = "TEST_PROGRESS"
    message: str
    phase: str = ""
    cycle_index: int = 0
    test_index: int = 0

    def payload(self) -> str:
        return self.message


class _TablePayload:
    table: dict

    def payload(self) -> str:
        return json.dumps(self.table)


@dataclass(kw_only=True, repr=False)
class PowerTableReset(_TablePayload, Notification):
    type: str = "power_table_reset"
    prefix: ClassVar[str] = "POWER_TABLE_RESET"
    table: dict = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class PowerTableUpdate(_TablePayload, Notification):
    type: str = "power_table_update"
    prefix: ClassVar[str] = "POWER_TABLE_UPDATE"
    table: dict = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class PowerTableComplete(_TablePayload, Notification):
    type: str = "power_table_complete"
    prefix: ClassVar[str] = "POWER_TABLE_COMPLETE"
    table: dict = field(default_factory=dict)


@dataclass(kw_only=True, repr=False)
class ChamberTemperature(Notification):
    type: str = "chamber_temperature"
    prefix: ClassVar[str] = "CHAMBER_TEMPERATURE"
    status: str
    temperature: Optional[float] = None

    def payload(self) -> str:
        if self.temperature is None:
            return self.status
        return f"{self.temperature:.2f}"


@dataclass(kw_only=True, repr=False)
class DirectoryCreated(Notification):
    type: str = "directory_created"
    prefix: ClassVar[str] = "DIRECTORY_CREATED"
    directory: str

    def payload(self) -> str:
        return self.directory


@dataclass(kw_only=True, repr=False)
class TestCompleted(Notification):
    __test__ = False

    type: str = "test_completed"
    prefix: ClassVar[str] = "TEST_COMPLETED"
    message: str = ""
    directory: str = ""
    report: str = ""

    def payload(self) -> str:
        return self.message


@dataclass(kw_only=True, repr=False)
class TestStopped(Notification):
    __test__ = False

    type: str = "test_stopped"
    prefix: ClassVar[str] = "TEST_STOPPED"
    reason: str
    stopped_at: dict = field(default_factory=dict)
    message: str = ""

    def payload(self) -> str:
        return json.dumps(
            {"reason": self.reason, "stoppedAt": self.stopped_at, "message": self.message}
        )


@dataclass(kw_only=True, repr=False)
class TestError(Notification):
    __test__ = False

    type: str = "test_error"
    prefix: ClassVar[str] = "TEST_ERROR"
    reason: str
    message: str = ""
    stopped_at: dict = field(default_factory=dict)

    def payload(self) -> str:
        return json.dumps(
            {"reason": self.reason, "message": self.message, "stoppedAt": self.stopped_at}
        )


@dataclass(kw_only=True, repr=False)
class TimeProgress(Notification):
    type: str = "time_progress"
    prefix: ClassVar[str] = "TIME_PROGRESS"
    elapsed_minutes: float
    remaining_minutes: float
    total_minutes: float
    phase: str = ""

    @property
    def progress_percentage(self) -> float:
        if self.total_minutes <= 0:
            return 100.0
        return min(100.0, 100.0 * self.elapsed_minutes / self.total_minutes)

    def payload(self) -> str:
        return json.dumps(
            {
                "elapsedMinutes": round(self.elapsed_minutes, 2),
                "remainingMinutes": round(self.remaining_minutes, 2),
                "totalMinutes": round(self.total_minutes, 2),
                "progressPercentage": round(self.progress_percentage, 1),
                "phase": self.phase,
            }
        )


@dataclass(kw_only=True, repr=False)
class PowerSwitch(Notification):
    """Machine-running status echo."""

    type: str = "power_switch"
    prefix: ClassVar[str] = "POWER_SWITCH"
    running: bool
    reason: str = ""

    def payload(self) -> str:
        state = "ON" if self.running else "OFF"
        msg = f"{state} - Machine running: {str(self.running).lower()}"
        if self.reason:
            msg += f" - {self.reason}"
        return msg


TERMINAL_NOTIFICATIONS = (TestCompleted, TestStopped, TestError)

NOTIF_PREFIXES = types.MappingProxyType(
    {
        cls.prefix: cls
        for cls in get_all_subclasses_map(Notification).values()
        if cls.prefix
    }
)
