# -*- coding: utf-8 -*-

import pathlib
import tempfile

DEFAULT_HOST_ADDR = "127.0.0.1"
DEFAULT_PORT = 8850
DEFAULT_RETRIES = 3  # Number of times to retry a failed req operation
DEFAULT_TIMEOUT = 5  # seconds
DEFAULT_LOGLEVEL = "INFO"
TEST_LOGLEVEL = "TRACE"
TEMP_DIR = tempfile.gettempdir()
SINGLE_LINE_ERR_LOG = False  # reformat tracebacks into a single line for err comms

HOME_DIR = pathlib.Path.home().joinpath(".chamberbench")
SETTINGS_DIR = str(HOME_DIR.joinpath("settings"))
DATA_DIR = "Data"

# -- serial links
RELAY_BAUD = 9600
RELAY_TIMEOUT = 1.0  # seconds, response timeout for a relay frame
CHAMBER_BAUD = 115200
CHAMBER_TIMEOUT = 2.0
POWER_BAUD = 19200
POWER_TIMEOUT = 2.0
LOAD_BAUD = 19200
LOAD_TIMEOUT = 5.0
PORT_LOCK_TIMEOUT = 5.0  # auto-expiry of a per-transaction port lock
PORT_WAIT_MAX = 15.0  # max wait for an in-use port before force release
PORT_WAIT_POLL = 1.0

# -- retry policy
VOLTAGE_SET_ATTEMPTS = 5
VOLTAGE_SET_BACKOFF = 3.0
READ_ATTEMPTS = 5
READ_BACKOFF = 1.5
RELAY_ATTEMPTS = 3
RELAY_BACKOFF = 1.0

# -- pacing
CHAMBER_POLL_INTERVAL = 60.0
WAIT_CHECK_INTERVAL = 5.0
TIMED_POLL_INTERVAL = 1.0
RELAY_ALL_OFF_GAP = 1.0
RELAY_SETTLE = 2.0  # after each device on/off switch
CYCLE_GAP = 2.0
TABLE_DEBOUNCE = 1.0

# -- judgment
DEFAULT_TOLERANCE = 0.05
FIXED_RANGE_LOW = 200.0
FIXED_RANGE_HIGH = 242.0

N_DEVICE_SLOTS = 10
N_OUTPUT_VOLTAGES = 3
MAX_CHANNELS = 4
