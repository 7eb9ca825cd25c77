# -*- coding: utf-8 -*-
"""
Bench-level plumbing shared by the run logic, the server and the CLI.

- `Bench`: the four instruments (relay bank, power source, load analyzer,
  chamber), real or mock
- `BroadcastHub` / `TableDebouncer`: the run event topic and live-table rate
  limiting
- settings files: loading the `TestConfiguration` snapshot, saving edits

Examples
--------
```python
from chamberbench.system import Bench, load_port_mapping
bench = Bench.from_port_mapping(load_port_mapping())
bench.open()
status = await bench.check()
```

See Also
--------
chamberbench.device : Instrument drivers
chamberbench.meas : Test runs
"""

from .bench import DRY_RUN_PROFILE, Bench
from .broadcast import BroadcastHub, Subscription, TableDebouncer
from .settings import (
    SETTINGS_FILE,
    load_port_mapping,
    load_test_configuration,
    load_time_mode_settings,
    save_settings,
)

__all__ = [
    "DRY_RUN_PROFILE",
    "Bench",
    "BroadcastHub",
    "SETTINGS_FILE",
    "Subscription",
    "TableDebouncer",
    "load_port_mapping",
    "load_test_configuration",
    "load_time_mode_settings",
    "save_settings",
]
