# -*- coding: utf-8 -*-
"""
Bench instruments.

- `RelayBank`: MODBUS-RTU relay board switching device-under-test slots, with
  its single-lane `RelayQueue`
- `PowerSource`: programmable DC source (Kikusui PWR401L)
- `LoadAnalyzer`: multi-channel voltage measurement
- `Chamber`: temperature chamber controller

Every instrument owns a `SerialTransport` that re-opens its port for each
transaction under a `PortLock`. Calls return `ChannelResult` /
`ChamberReading` values instead of raising.

Examples
--------
```python
from chamberbench.device import RelayBank
relays = RelayBank(port="/dev/ttyUSB3")
await relays.device_on(0)
await relays.device_off(0)
```

See Also
--------
chamberbench.device.mock : In-memory instruments for tests and dry runs
chamberbench.system.bench : Grouping of the four instruments
"""

from .chamber import Chamber
from .device import Device
from .load import LoadAnalyzer
from .mock import MockChamber, MockLoadAnalyzer, MockPowerSource, MockRelayBank
from .power import PowerSource
from .relay import RelayBank, RelayQueue
from .serial_channel import PortLock, SerialTransport

__all__ = [
    "Chamber",
    "Device",
    "LoadAnalyzer",
    "MockChamber",
    "MockLoadAnalyzer",
    "MockPowerSource",
    "MockRelayBank",
    "PortLock",
    "PowerSource",
    "RelayBank",
    "RelayQueue",
    "SerialTransport",
]
