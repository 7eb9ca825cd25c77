# -*- coding: utf-8 -*-
"""
Server-client communication for the bench.

The server process owns the instruments and runs tests; clients (scripts, the
CLI, a front end) switch the machine on and off, query status and listen to
the notification stream. Communication uses ZeroMQ sockets carrying msgpack
messages.

Examples
--------
```python
from chamberbench.server import open_connection, power_on, start_bg_notif_listener
conn = open_connection()
task, queue = start_bg_notif_listener(conn)
power_on(conn)
```

See Also
--------
chamberbench.server.client : Client-side request functions
chamberbench.server.server : Server implementation
"""

from .bg_killer import cleanup_stale_servers, kill_bench_servers, list_running_servers
from .client import (
    clean_queue,
    close_connection,
    echo,
    get_server_log_path,
    get_status,
    open_connection,
    ping,
    power_off,
    power_on,
    read_chamber,
    relay_all_off,
    shutdown_server,
    start_bg_notif_listener,
    wait_for_notif,
)
from .server import BenchState, start_run, start_server, stop_run

__all__ = [
    "BenchState",
    "clean_queue",
    "cleanup_stale_servers",
    "close_connection",
    "echo",
    "get_server_log_path",
    "get_status",
    "kill_bench_servers",
    "list_running_servers",
    "open_connection",
    "ping",
    "power_off",
    "power_on",
    "read_chamber",
    "relay_all_off",
    "shutdown_server",
    "start_bg_notif_listener",
    "start_run",
    "start_server",
    "stop_run",
    "wait_for_notif",
]
