"""Command strings for client -> server requests."""

import types

CONSTS = types.SimpleNamespace()

CONSTS.COMMS = types.SimpleNamespace()
CONSTS.COMMS.PING = "CONSTS.COMMS.PING"
CONSTS.COMMS.PONG = "CONSTS.COMMS.PONG"
CONSTS.COMMS.ECHO = "CONSTS.COMMS.ECHO"
CONSTS.COMMS.SHUTDOWN = "CONSTS.COMMS.SHUTDOWN"
CONSTS.COMMS.GET_SERVER_LOG_PATH = "CONSTS.COMMS.GET_SERVER_LOG_PATH"

CONSTS.BENCH = types.SimpleNamespace()
CONSTS.BENCH.POWER_SWITCH = "CONSTS.BENCH.POWER_SWITCH"
CONSTS.BENCH.GET_STATUS = "CONSTS.BENCH.GET_STATUS"
CONSTS.BENCH.READ_CHAMBER = "CONSTS.BENCH.READ_CHAMBER"
CONSTS.BENCH.RELAY_ALL_OFF = "CONSTS.BENCH.RELAY_ALL_OFF"
