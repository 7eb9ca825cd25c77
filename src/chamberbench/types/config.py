"""Configuration types for a bench run.

Each settings document on disk maps onto one of these dataclasses (keys use the
camelCase aliases of the settings files). `TestConfiguration` is the immutable
snapshot a run works from, assembled by `chamberbench.system.settings`.
"""

from dataclasses import dataclass, field
from typing import Optional

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from chamberbench.util.defaults import (
    CHAMBER_POLL_INTERVAL,
    CYCLE_GAP,
    DEFAULT_TOLERANCE,
    MAX_CHANNELS,
    N_DEVICE_SLOTS,
    N_OUTPUT_VOLTAGES,
    READ_ATTEMPTS,
    READ_BACKOFF,
    RELAY_ATTEMPTS,
    RELAY_BACKOFF,
    TABLE_DEBOUNCE,
    TIMED_POLL_INTERVAL,
    VOLTAGE_SET_ATTEMPTS,
    VOLTAGE_SET_BACKOFF,
    WAIT_CHECK_INTERVAL,
)

MAX_SOURCE_VOLTAGE = 100.0  # +/- V, programmable source range
MAX_READ_VOLTAGE = 300.0  # +/- V, load analyzer range
READ_COUNT_RANGE = (1, 999)
CYCLE_COUNT_RANGE = (1, 3)


class _AliasConfig(BaseConfig):
    serialize_by_alias = True


@dataclass(kw_only=True)
class TemperatureSettings(DataClassDictMixin):
    """One temperature plateau (high or low)."""

    enabled: bool = False
    target_temp: float = field(default=75.0, metadata={"alias": "targetTemp"})
    wait_time_minutes: float = field(default=200.0, metadata={"alias": "waitTime"})
    read_count: int = field(default=10, metadata={"alias": "readCount"})

    class Config(_AliasConfig):
        pass

    def validate(self) -> tuple[bool, str]:
        lo, hi = READ_COUNT_RANGE
        if not lo <= self.read_count <= hi:
            return False, f"readCount must be in [{lo}, {hi}], got {self.read_count}"
        if self.wait_time_minutes < 0:
            return False, f"waitTime must be >= 0, got {self.wait_time_minutes}"
        return True, ""


@dataclass(kw_only=True)
class DelaySettings(DataClassDictMixin):
    on_delay_ms: int = field(default=0, metadata={"alias": "onDelay"})
    off_delay_ms: int = field(default=0, metadata={"alias": "offDelay"})
    cycle_count: int = field(default=1, metadata={"alias": "cycleNumber"})

    class Config(_AliasConfig):
        pass

    def validate(self) -> tuple[bool, str]:
        lo, hi = CYCLE_COUNT_RANGE
        if not lo <= self.cycle_count <= hi:
            return False, f"cycleNumber must be in [{lo}, {hi}], got {self.cycle_count}"
        if self.on_delay_ms < 0 or self.off_delay_ms < 0:
            return False, "onDelay/offDelay must be >= 0"
        return True, ""


@dataclass(kw_only=True)
class ProductInfo(DataClassDictMixin):
    model_name: str = field(default="", metadata={"alias": "modelName"})
    product_names: list[str] = field(
        default_factory=lambda: [""] * N_DEVICE_SLOTS,
        metadata={"alias": "productNames"},
    )

    class Config(_AliasConfig):
        pass

    def product_name(self, device_index: int) -> str:
        if device_index < len(self.product_names) and self.product_names[device_index]:
            return self.product_names[device_index]
        return f"Device {device_index + 1}"


@dataclass(kw_only=True)
class PortMapping(DataClassDictMixin):
    """Serial port per logical instrument (`ttyUSB0`, `/dev/ttyACM1`, `COM3`...)."""

    chamber: str = "ttyUSB0"
    power: str = "ttyUSB1"
    load: str = "ttyUSB2"
    relay: str = "ttyUSB3"

    def validate(self) -> tuple[bool, str]:
        ports = [self.chamber, self.power, self.load, self.relay]
        if any(not p for p in ports):
            return False, "All of chamber/power/load/relay ports must be set."
        if len(set(ports)) != len(ports):
            return False, f"Instruments must use distinct ports, got {ports}"
        return True, ""


@dataclass(kw_only=True)
class TimeSchedule:
    """Cumulative phase deadlines (minutes from run start) for timed mode."""

    deadlines_min: list[float]
    end_min: float


DEFAULT_TIME_SCHEDULE = TimeSchedule(deadlines_min=[10.0, 20.0, 30.0, 40.0], end_min=50.0)


@dataclass(kw_only=True)
class TimeModeSettings(DataClassDictMixin):
    """Eight interval lengths T1..T8 (minutes)."""

    t1: float = field(default=5.0, metadata={"alias": "T1"})
    t2: float = field(default=5.0, metadata={"alias": "T2"})
    t3: float = field(default=5.0, metadata={"alias": "T3"})
    t4: float = field(default=5.0, metadata={"alias": "T4"})
    t5: float = field(default=5.0, metadata={"alias": "T5"})
    t6: float = field(default=5.0, metadata={"alias": "T6"})
    t7: float = field(default=5.0, metadata={"alias": "T7"})
    t8: float = field(default=5.0, metadata={"alias": "T8"})

    class Config(_AliasConfig):
        pass

    def validate(self) -> tuple[bool, str]:
        for name in ("t1", "t2", "t3", "t4", "t5", "t6", "t7", "t8"):
            if getattr(self, name) < 0:
                return False, f"{name.upper()} must be >= 0"
        return True, ""

    def schedule(self) -> TimeSchedule:
        # high, low, high, low; the second low plateau re-uses T3/T4
        t_high1 = self.t1 + self.t2
        t_low1 = t_high1 + self.t3 + self.t4
        t_high2 = t_low1 + self.t5 + self.t6
        t_low2 = t_high2 + self.t3 + self.t4
        t_end = t_low2 + self.t5 + self.t7 + self.t8
        return TimeSchedule(deadlines_min=[t_high1, t_low1, t_high2, t_low2], end_min=t_end)


@dataclass(kw_only=True)
class TestConfiguration(DataClassDictMixin):
    """Read-only snapshot of everything a run needs."""

    __test__ = False  # not a pytest class

    device_selection: list[bool] = field(
        default_factory=lambda: [False] * N_DEVICE_SLOTS
    )
    channel_voltages: list[float] = field(default_factory=lambda: [220.0])
    output_voltages: list[float] = field(default_factory=lambda: [18.0, 24.0, 30.0])
    high_temp: TemperatureSettings = field(default_factory=TemperatureSettings)
    low_temp: TemperatureSettings = field(
        default_factory=lambda: TemperatureSettings(target_temp=-32.0)
    )
    delay: DelaySettings = field(default_factory=DelaySettings)
    product_info: ProductInfo = field(default_factory=ProductInfo)
    ports: PortMapping = field(default_factory=PortMapping)
    time_mode: Optional[TimeModeSettings] = None
    tolerance: float = DEFAULT_TOLERANCE
    n_channels: int = 1  # channels in active use

    @property
    def n_devices(self) -> int:
        return len(self.device_selection)

    @property
    def selected_devices(self) -> list[int]:
        return [i for i, sel in enumerate(self.device_selection) if sel]

    def expected_voltage(self, channel_index: int = 0) -> float:
        return self.channel_voltages[channel_index]

    def validate(self) -> tuple[bool, str]:
        if len(self.device_selection) != N_DEVICE_SLOTS:
            return (
                False,
                f"device selection must have {N_DEVICE_SLOTS} entries, "
                + f"got {len(self.device_selection)}",
            )
        if not all(isinstance(s, bool) for s in self.device_selection):
            return False, "device selection entries must be booleans"
        if len(self.output_voltages) != N_OUTPUT_VOLTAGES:
            return (
                False,
                f"need exactly {N_OUTPUT_VOLTAGES} output voltages, "
                + f"got {len(self.output_voltages)}",
            )
        for v in self.output_voltages:
            if abs(v) > MAX_SOURCE_VOLTAGE:
                return False, f"output voltage {v} outside +/-{MAX_SOURCE_VOLTAGE}V"
        if not 1 <= len(self.channel_voltages) <= MAX_CHANNELS:
            return False, f"need 1..{MAX_CHANNELS} channel voltages"
        for v in self.channel_voltages:
            if abs(v) > MAX_READ_VOLTAGE:
                return False, f"channel voltage {v} outside +/-{MAX_READ_VOLTAGE}V"
        if not 1 <= self.n_channels <= len(self.channel_voltages):
            return False, f"n_channels {self.n_channels} exceeds configured channels"
        if not 0 < self.tolerance < 1:
            return False, f"tolerance must be in (0, 1), got {self.tolerance}"
        for name, sub in (
            ("highTemp", self.high_temp),
            ("lowTemp", self.low_temp),
            ("delay", self.delay),
            ("ports", self.ports),
        ):
            ok, msg = sub.validate()
            if not ok:
                return False, f"{name}: {msg}"
        if self.time_mode is not None:
            ok, msg = self.time_mode.validate()
            if not ok:
                return False, f"timeMode: {msg}"
        return True, ""

    def validate_or_raise(self):
        from chamberbench.types import ConfigurationError

        ok, msg = self.validate()
        if not ok:
            raise ConfigurationError(msg)

    def settings_summary(self) -> dict[str, str]:
        """Flat key/value view, for report headers."""
        return {
            "deviceSelection": ";".join("1" if s else "0" for s in self.device_selection),
            "channelVoltages": ";".join(str(v) for v in self.channel_voltages),
            "outputVoltages": ";".join(str(v) for v in self.output_voltages),
            "tolerance": f"{self.tolerance * 100:g}%",
            "highTemp": str(self.high_temp.enabled),
            "highTargetTemp": str(self.high_temp.target_temp),
            "highWaitTime": str(self.high_temp.wait_time_minutes),
            "highReadCount": str(self.high_temp.read_count),
            "lowTemp": str(self.low_temp.enabled),
            "lowTargetTemp": str(self.low_temp.target_temp),
            "lowWaitTime": str(self.low_temp.wait_time_minutes),
            "lowReadCount": str(self.low_temp.read_count),
            "onDelay": str(self.delay.on_delay_ms),
            "offDelay": str(self.delay.off_delay_ms),
            "cycleNumber": str(self.delay.cycle_count),
            "modelName": self.product_info.model_name,
        }


@dataclass(kw_only=True)
class BenchTimings(DataClassDictMixin):
    """Retry counts, backoffs and poll intervals (seconds) used during a run."""

    voltage_attempts: int = VOLTAGE_SET_ATTEMPTS
    voltage_backoff: float = VOLTAGE_SET_BACKOFF
    read_attempts: int = READ_ATTEMPTS
    read_backoff: float = READ_BACKOFF
    relay_attempts: int = RELAY_ATTEMPTS
    relay_backoff: float = RELAY_BACKOFF
    chamber_poll_interval: float = CHAMBER_POLL_INTERVAL
    wait_check_interval: float = WAIT_CHECK_INTERVAL
    timed_poll_interval: float = TIMED_POLL_INTERVAL
    cycle_gap: float = CYCLE_GAP
    table_debounce: float = TABLE_DEBOUNCE
    seconds_per_minute: float = 60.0

    def minutes(self, minutes: float) -> float:
        """Settings minutes -> wall-clock seconds."""
        return minutes * self.seconds_per_minute
