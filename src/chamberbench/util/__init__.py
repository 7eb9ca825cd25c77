# -*- coding: utf-8 -*-
"""
Utility functions and constants for chamberbench.

- Logging configuration and management (loguru sinks)
- Default constants: ports, timeouts, retry counts, pacing intervals
- Serial port discovery
- The `with_retry` combinator used by every hardware caller

Examples
--------
Retrying a power-source command:
```python
from chamberbench.util import with_retry
result = await with_retry(lambda: source.set_voltage(24.0), attempts=5, backoff=3.0)
```

See Also
--------
chamberbench.util.logging : Logging configuration
chamberbench.util.retry : Retry combinator
"""

from .check_hw import get_hw_ports, resolve_port
from .defaults import (
    DATA_DIR,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    DEFAULT_PORT,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    SETTINGS_DIR,
    SINGLE_LINE_ERR_LOG,
    TEST_LOGLEVEL,
)
from .logging import (
    clear_log,
    format_error_response,
    get_log_filename,
    log_default_dir,
    log_default_path_client,
    log_default_path_server,
    shutdown_client_log,
    start_client_log,
    start_server_log,
)
from .retry import with_retry

__all__ = [
    "DATA_DIR",
    "DEFAULT_HOST_ADDR",
    "DEFAULT_LOGLEVEL",
    "DEFAULT_PORT",
    "DEFAULT_RETRIES",
    "DEFAULT_TIMEOUT",
    "SETTINGS_DIR",
    "SINGLE_LINE_ERR_LOG",
    "TEST_LOGLEVEL",
    "clear_log",
    "format_error_response",
    "get_hw_ports",
    "get_log_filename",
    "log_default_dir",
    "log_default_path_client",
    "log_default_path_server",
    "resolve_port",
    "shutdown_client_log",
    "start_client_log",
    "start_server_log",
    "with_retry",
]
