"""Device base class.

All bench instruments inherit from `Device`. A device declares the configuration
it needs in `required_config` (checked on construction), and implements
`open`, `close` and `is_connected`.

The serial instruments here do not hold a connection between transactions
(every command re-opens its port), so for them `open()` is a reachability probe
and `is_connected()` reports the outcome of the last transaction.
"""

from __future__ import annotations

from typing import Type

from loguru import logger


class Device:
    """Base class for all bench devices.

    Attributes
    ----------
    required_config : dict[str, Type]
        Required configuration parameters and their types

    Examples
    --------
    ```python
    class MyInstrument(Device):
        required_config = {"port": str}

        def open(self) -> tuple[bool, str]:
            return True, "ok"

        def close(self):
            pass

        def is_connected(self) -> bool:
            return True
    ```
    """

    required_config: dict[str, Type] = {}  # Required configuration keys

    def __init__(self, **config_kwargs):
        for key, value in config_kwargs.items():
            setattr(self, key, value)
        for key, value in self.required_config.items():
            if not hasattr(self, key):
                logger.error(
                    f"Device {self.__class__.__name__} missing required config key: "
                    + f"{key}"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} missing required config "
                    + f"key: {key}"
                )
            if not isinstance(getattr(self, key), value):
                logger.error(
                    f"Device {self.__class__.__name__} config key {key} "
                    + f"has wrong type: {type(getattr(self, key))} (expected {value})"
                )
                raise ValueError(
                    f"Device {self.__class__.__name__} config key {key} has "
                    + f"wrong type: {type(getattr(self, key))} (expected {value})"
                )

    def open(self) -> tuple[bool, str]:
        raise NotImplementedError()

    def close(self):
        raise NotImplementedError()

    def is_connected(self) -> bool:
        raise NotImplementedError()
