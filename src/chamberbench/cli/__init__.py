"""
Command-line interface for chamberbench.

- Running tests in-process (`run`) or behind the control server (`server`,
  then `on` / `off` / `status` from any shell)
- Managing server instances (`list`, `kill`)
- Instrument diagnostics (`ports`, `check`, `chamber`, `all-off`)

Examples
--------
Dry run of the temperature cycle on mock instruments, one second per minute:
```bash
$ chamberbench run --mock --seconds-per-minute 1
```

Starting a server on the real bench and switching it on:
```bash
$ chamberbench server -s ~/.chamberbench/settings &
$ chamberbench on
$ chamberbench status
```

CLI Tree
--------

```
$ chamberbench --tree
cli
└── all-off
└── chamber
└── check
└── kill
└── list
└── off
└── on
└── ports
└── run
└── server
└── shutdown
└── status
```
"""

from .base import cli

__all__ = ["cli"]
