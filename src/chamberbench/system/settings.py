# -*- coding: utf-8 -*-
"""Settings documents on disk, one JSON file per concern.

`load_test_configuration` reads them all into one immutable
`TestConfiguration` snapshot at run start. A missing file falls back to its
default; a file that exists but is malformed raises `ConfigurationError`, so a
run never starts from half-understood settings.
"""

from __future__ import annotations

import pathlib
import types
from typing import Any, Callable, Optional

import simplejson as json
from loguru import logger
from mashumaro.exceptions import InvalidFieldValue, MissingField

from chamberbench.types import (
    ConfigurationError,
    DelaySettings,
    PortMapping,
    ProductInfo,
    TemperatureSettings,
    TestConfiguration,
    TimeModeSettings,
)
from chamberbench.util.defaults import (
    DEFAULT_TOLERANCE,
    MAX_CHANNELS,
    N_DEVICE_SLOTS,
    N_OUTPUT_VOLTAGES,
    SETTINGS_DIR,
)

SETTINGS_FILE = types.SimpleNamespace()
SETTINGS_FILE.DEVICE_STATES = "device_states.json"
SETTINGS_FILE.CHANNEL_VOLTAGES = "channel_voltages.json"
SETTINGS_FILE.OUT_VOLT = "out_volt_settings.json"
SETTINGS_FILE.HIGH_TEMP = "high_temp_settings.json"
SETTINGS_FILE.LOW_TEMP = "low_temp_settings.json"
SETTINGS_FILE.DELAY = "delay_settings.json"
SETTINGS_FILE.PRODUCT = "product_input.json"
SETTINGS_FILE.USB_PORTS = "usb_port_settings.json"
SETTINGS_FILE.TIME_MODE = "time_mode_settings.json"

DEFAULT_DEVICE_STATES = [True] + [False] * (N_DEVICE_SLOTS - 1)
DEFAULT_CHANNEL_VOLTAGES = [5.0, 15.0, -15.0, 24.0]
DEFAULT_OUT_VOLTAGES = [18.0, 24.0, 30.0, 0.0]
DEVICE_STATE_KEYS = [f"#{i + 1} Device" for i in range(N_DEVICE_SLOTS)]

_MASHUMARO_ERRORS = (InvalidFieldValue, MissingField, ValueError, TypeError)


def _settings_path(settings_dir: str | pathlib.Path, filename: str) -> pathlib.Path:
    return pathlib.Path(settings_dir).expanduser() / filename


def _read_json(settings_dir: str | pathlib.Path, filename: str) -> Optional[Any]:
    """Parsed file contents, or None when the file does not exist."""
    path = _settings_path(settings_dir, filename)
    if not path.is_file():
        logger.debug("Settings file {} missing, using defaults.", path)
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{filename}: invalid JSON ({e})") from e


def _is_number(x: Any) -> bool:
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def _number_list(data: Any, filename: str, min_len: int, max_len: int) -> list[float]:
    if not isinstance(data, list) or not min_len <= len(data) <= max_len:
        raise ConfigurationError(
            f"{filename}: expected a list of {min_len}..{max_len} numbers, got {data!r}"
        )
    if not all(_is_number(x) for x in data):
        raise ConfigurationError(f"{filename}: all entries must be numbers, got {data!r}")
    return [float(x) for x in data]


# ============================================================================
# parsers: JSON document -> typed value
# ============================================================================


def parse_device_states(data: Any) -> list[bool]:
    """Either a list of 10 bools or `{"#1 Device": bool, ...}`."""
    if isinstance(data, dict):
        return [data.get(key) is True for key in DEVICE_STATE_KEYS]
    if (
        not isinstance(data, list)
        or len(data) != N_DEVICE_SLOTS
        or not all(isinstance(s, bool) for s in data)
    ):
        raise ConfigurationError(
            f"{SETTINGS_FILE.DEVICE_STATES}: expected {N_DEVICE_SLOTS} booleans, got {data!r}"
        )
    return list(data)


def parse_channel_voltages(data: Any) -> list[float]:
    return _number_list(data, SETTINGS_FILE.CHANNEL_VOLTAGES, 1, MAX_CHANNELS)


def parse_out_voltages(data: Any) -> list[float]:
    # the file carries a spare 4th entry, only the first three are test points
    values = _number_list(data, SETTINGS_FILE.OUT_VOLT, N_OUTPUT_VOLTAGES, N_OUTPUT_VOLTAGES + 1)
    return values[:N_OUTPUT_VOLTAGES]


def _parse_temp(data: Any, flag_key: str, filename: str) -> TemperatureSettings:
    if not isinstance(data, dict):
        raise ConfigurationError(f"{filename}: expected an object, got {data!r}")
    doc = dict(data)
    enabled = doc.pop(flag_key, False)
    if not isinstance(enabled, bool):
        raise ConfigurationError(f"{filename}: {flag_key} must be a boolean")
    for key in ("targetTemp", "waitTime", "readCount"):
        if key in doc and not _is_number(doc[key]):
            raise ConfigurationError(f"{filename}: {key} must be a number, got {doc[key]!r}")
    try:
        settings = TemperatureSettings.from_dict(doc)
    except _MASHUMARO_ERRORS as e:
        raise ConfigurationError(f"{filename}: {e}") from e
    settings.enabled = enabled
    return settings


def parse_high_temp(data: Any) -> TemperatureSettings:
    return _parse_temp(data, "highTemp", SETTINGS_FILE.HIGH_TEMP)


def parse_low_temp(data: Any) -> TemperatureSettings:
    return _parse_temp(data, "lowTemp", SETTINGS_FILE.LOW_TEMP)


def _parse_doc(cls, data: Any, filename: str):
    if not isinstance(data, dict):
        raise ConfigurationError(f"{filename}: expected an object, got {data!r}")
    try:
        return cls.from_dict(data)
    except _MASHUMARO_ERRORS as e:
        raise ConfigurationError(f"{filename}: {e}") from e


def parse_delay(data: Any) -> DelaySettings:
    return _parse_doc(DelaySettings, data, SETTINGS_FILE.DELAY)


def parse_product(data: Any) -> ProductInfo:
    return _parse_doc(ProductInfo, data, SETTINGS_FILE.PRODUCT)


def parse_ports(data: Any) -> PortMapping:
    return _parse_doc(PortMapping, data, SETTINGS_FILE.USB_PORTS)


def parse_time_mode(data: Any) -> TimeModeSettings:
    return _parse_doc(TimeModeSettings, data, SETTINGS_FILE.TIME_MODE)


def _to_doc(value: Any) -> Any:
    return value.to_dict() if hasattr(value, "to_dict") else value


def _temp_doc(flag_key: str) -> Callable[[TemperatureSettings], dict]:
    def to_doc(settings: TemperatureSettings) -> dict:
        doc = settings.to_dict()
        doc.pop("enabled", None)
        return {flag_key: settings.enabled, **doc}

    return to_doc


# filename -> (parser, serializer)
SETTINGS_SCHEMA: dict[str, tuple[Callable[[Any], Any], Callable[[Any], Any]]] = {
    SETTINGS_FILE.DEVICE_STATES: (parse_device_states, list),
    SETTINGS_FILE.CHANNEL_VOLTAGES: (parse_channel_voltages, list),
    SETTINGS_FILE.OUT_VOLT: (parse_out_voltages, list),
    SETTINGS_FILE.HIGH_TEMP: (parse_high_temp, _temp_doc("highTemp")),
    SETTINGS_FILE.LOW_TEMP: (parse_low_temp, _temp_doc("lowTemp")),
    SETTINGS_FILE.DELAY: (parse_delay, _to_doc),
    SETTINGS_FILE.PRODUCT: (parse_product, _to_doc),
    SETTINGS_FILE.USB_PORTS: (parse_ports, _to_doc),
    SETTINGS_FILE.TIME_MODE: (parse_time_mode, _to_doc),
}


# ============================================================================
# loaders
# ============================================================================


def _load(settings_dir, filename: str, default: Callable[[], Any]) -> Any:
    data = _read_json(settings_dir, filename)
    if data is None:
        return default()
    parser, _ = SETTINGS_SCHEMA[filename]
    return parser(data)


def load_port_mapping(settings_dir: str | pathlib.Path = SETTINGS_DIR) -> PortMapping:
    return _load(settings_dir, SETTINGS_FILE.USB_PORTS, PortMapping)


def load_time_mode_settings(
    settings_dir: str | pathlib.Path = SETTINGS_DIR,
) -> Optional[TimeModeSettings]:
    """T1..T8, or None when not configured (timed runs then use the default schedule)."""
    return _load(settings_dir, SETTINGS_FILE.TIME_MODE, lambda: None)


def load_test_configuration(
    settings_dir: str | pathlib.Path = SETTINGS_DIR,
    tolerance: float = DEFAULT_TOLERANCE,
) -> TestConfiguration:
    """Snapshot every settings file into a validated `TestConfiguration`.

    Raises
    ------
    ConfigurationError
        A settings file is malformed, or the combined settings are out of range.
    """
    config = TestConfiguration(
        device_selection=_load(
            settings_dir, SETTINGS_FILE.DEVICE_STATES, lambda: list(DEFAULT_DEVICE_STATES)
        ),
        channel_voltages=_load(
            settings_dir, SETTINGS_FILE.CHANNEL_VOLTAGES, lambda: list(DEFAULT_CHANNEL_VOLTAGES)
        ),
        output_voltages=_load(
            settings_dir,
            SETTINGS_FILE.OUT_VOLT,
            lambda: DEFAULT_OUT_VOLTAGES[:N_OUTPUT_VOLTAGES],
        ),
        high_temp=_load(settings_dir, SETTINGS_FILE.HIGH_TEMP, TemperatureSettings),
        low_temp=_load(
            settings_dir,
            SETTINGS_FILE.LOW_TEMP,
            lambda: TemperatureSettings(target_temp=-32.0),
        ),
        delay=_load(settings_dir, SETTINGS_FILE.DELAY, DelaySettings),
        product_info=_load(settings_dir, SETTINGS_FILE.PRODUCT, ProductInfo),
        ports=load_port_mapping(settings_dir),
        time_mode=load_time_mode_settings(settings_dir),
        tolerance=tolerance,
    )
    config.validate_or_raise()
    logger.info(
        "Loaded settings from {}: devices {}, voltages {}",
        settings_dir,
        config.selected_devices,
        config.output_voltages,
    )
    return config


def save_settings(settings_dir: str | pathlib.Path, filename: str, value: Any) -> pathlib.Path:
    """Validate `value` (typed object or raw JSON document) and write it.

    Raises
    ------
    ConfigurationError
        Unknown settings file, or `value` does not parse.
    """
    if filename not in SETTINGS_SCHEMA:
        raise ConfigurationError(f"Unknown settings file {filename}")
    parser, serializer = SETTINGS_SCHEMA[filename]
    doc = value if isinstance(value, (list, dict)) else serializer(value)
    parsed = parser(doc)  # raises on malformed input
    validate = getattr(parsed, "validate", None)
    if validate is not None:
        ok, msg = validate()
        if not ok:
            raise ConfigurationError(f"{filename}: {msg}")

    path = _settings_path(settings_dir, filename)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(serializer(parsed), f, indent=2)
    logger.info("Saved {}", path)
    return path
