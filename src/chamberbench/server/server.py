# -*- coding: utf-8 -*-
"""
Control server for the bench.

The server owns the instruments and at most one test run. Requests arrive on a
zmq ROUTER socket and are routed to handlers; every broadcast notification of
the run (progress, live power table, chamber temperature, terminal events) is
forwarded on a PUB socket.

Handlers are registered with the `@handler` decorator, which records which
client methods (in `client.py`) send the command. The correspondence can be
checked with `chamberbench.types.assert_valid_handler_client_correspondence()`.
"""
# ============================================================================

import asyncio
import dataclasses
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Optional

import simplejson as json
import zmq
import zmq.asyncio
from loguru import logger
from setproctitle import setproctitle

# ============================================================================
import chamberbench.util
from chamberbench.meas import RunControl, TestCycle, TimedCycle
from chamberbench.server.bg_killer import get_servers_dir, kill_bench_servers
from chamberbench.system import (
    DRY_RUN_PROFILE,
    Bench,
    BroadcastHub,
    Subscription,
    load_port_mapping,
    load_test_configuration,
)
from chamberbench.types import (
    CONSTS,
    HANDLER_REGISTRY,
    STOP_REASON,
    BenchTimings,
    ChamberTemperature,
    ConfigurationError,
    DictResponse,
    ErrorResponse,
    HandlerInfo,
    MsgResponse,
    PowerSwitch,
    Request,
    Response,
    RunResult,
    ServerConnection,
    ValueResponse,
)
from chamberbench.util import (
    DATA_DIR,
    DEFAULT_HOST_ADDR,
    DEFAULT_LOGLEVEL,
    DEFAULT_PORT,
    SETTINGS_DIR,
    format_error_response,
)

# ============================================================================


@dataclass
class BenchState:
    """Everything the handlers act on."""

    bench: Bench
    hub: BroadcastHub
    run_control: RunControl
    settings_dir: str = SETTINGS_DIR
    data_root: str = DATA_DIR
    timings: Optional[BenchTimings] = None
    run: Optional[TestCycle] = None
    run_task: Optional[asyncio.Task] = None
    last_result: Optional[RunResult] = None

    @property
    def test_running(self) -> bool:
        return self.run_task is not None and not self.run_task.done()


Handler = Callable[[ServerConnection, bytes, BenchState, Request], Awaitable[None]]

# ============================================================================


def register_server(host: str, ports: tuple[int, int]) -> Path:
    """Register a running server in the PID directory."""
    pid = os.getpid()
    timestamp = datetime.now().strftime("%Y-%m-%d_%H:%M:%S")

    server_info = {
        "pid": pid,
        "timestamp": timestamp,
        "host": host,
        "ports": {"msg": ports[0], "notif": ports[1]},
    }

    pid_file = get_servers_dir() / f"server_{pid}.json"
    with pid_file.open("w") as f:
        json.dump(server_info, f, indent=2)

    return pid_file


# ============================================================================


async def _send_response(
    server_connection: ServerConnection, req_identity: bytes, response: Response
):
    logger.debug("*RESPONSE* (server->): {}", response)
    await server_connection.msg_socket.send_multipart(
        [req_identity, b"", response.to_msgpack()]
    )


async def _forward_notifications(server_connection: ServerConnection, sub: Subscription):
    while True:
        notif = await sub.get()
        try:
            # below is rather loquacious
            logger.trace("*NOTIF* (server->): {}", notif)
            await server_connection.notif_socket.send(notif.to_msgpack())
        except Exception:
            logger.exception("ERROR SENDING NOTIF {}.", notif)


# ============================================================================


async def client_handler(server_connection: ServerConnection, state: BenchState):
    sub = state.hub.subscribe()
    server_connection.forward_task = asyncio.create_task(
        _forward_notifications(server_connection, sub)
    )
    try:
        while not server_connection.shutdown_requested:
            if not await server_connection.msg_socket.poll(100, zmq.POLLIN):
                continue
            req_identity, _, req = await server_connection.msg_socket.recv_multipart()
            try:
                request = Request.from_msgpack(req)
            except Exception:
                logger.exception("Request unpacking error:")
                await _send_response(
                    server_connection,
                    req_identity,
                    ErrorResponse(value=format_error_response()),
                )
                continue

            try:
                await request_router(server_connection, req_identity, state, request)
            except Exception:
                logger.exception("Uncaught error in request_router.")
                await _send_response(
                    server_connection,
                    req_identity,
                    ErrorResponse(value=format_error_response()),
                )
    finally:
        server_connection.forward_task.cancel()
        sub.close()

    logger.info("Client handler exiting due to shutdown request")


async def request_router(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    logger.debug("*REQUEST* (server<-): {}", request)
    info = HANDLER_REGISTRY.get(request.command)
    if info is None:
        logger.error("Unknown request: {}", request.command)
        await _send_response(
            server_connection,
            req_identity,
            ErrorResponse(value=f"Unknown request: {request.command}"),
        )
        return
    await info.handler_func(server_connection, req_identity, state, request)


def handler(command: str, *client_methods: str) -> Callable[[Handler], Handler]:
    """Register a server handler and the client methods that call it.

    Example:
        @handler(CONSTS.BENCH.READ_CHAMBER, "read_chamber")
        async def handle_read_chamber(...):
            ...
    """

    def decorator(func: Handler) -> Handler:
        if command in HANDLER_REGISTRY:
            raise ValueError(
                f"Command {command} already handled by "
                + HANDLER_REGISTRY[command].handler_func.__name__
            )
        HANDLER_REGISTRY[command] = HandlerInfo(
            handler_func=func,
            client_methods=list(client_methods),
            command=command,
        )
        return func

    return decorator


# ============================================================================
# run lifecycle
# ============================================================================


def _result_dict(result: Optional[RunResult]) -> dict:
    if result is None:
        return {}
    return {
        "status": result.status,
        "reason": result.reason,
        "error": result.error,
        "directory": result.directory,
        "reports": list(result.reports),
        "stoppedAt": (
            dataclasses.asdict(result.stopped_at) if result.stopped_at is not None else {}
        ),
    }


async def _run_test(state: BenchState):
    try:
        state.last_result = await state.run.run()
        logger.info("Run finished: {}", _result_dict(state.last_result))
    except Exception:
        logger.exception("Test run raised.")
        state.run_control.force_stopped()
        state.hub.publish(PowerSwitch(running=False, reason=STOP_REASON.SYSTEM_FAILURE))


def start_run(state: BenchState, timed: bool = False) -> tuple[bool, str]:
    """Power on and start a run from a fresh settings snapshot.

    Returns (started, message). Nothing is started when a run is already in
    progress or the settings are malformed.
    """
    if state.test_running:
        return False, "A test is already running"
    rc = state.run_control
    rc.power_on()
    rc.begin_run()
    try:
        config = load_test_configuration(state.settings_dir)
    except ConfigurationError as e:
        logger.error("Settings rejected: {}", e)
        rc.force_stopped()
        state.hub.publish(PowerSwitch(running=False, reason=f"configuration error: {e}"))
        return False, f"Configuration error: {e}"

    run_cls = TimedCycle if timed else TestCycle
    state.run = run_cls(
        state.bench,
        config,
        rc,
        state.hub,
        timings=state.timings,
        data_root=state.data_root,
    )
    state.run_task = asyncio.create_task(_run_test(state))
    return True, f"{run_cls.test_type} started"


def stop_run(state: BenchState, reason: str = STOP_REASON.POWER_SWITCH_OFF) -> str:
    state.run_control.power_off(reason)
    if state.test_running:
        return "Stop requested"
    state.hub.publish(PowerSwitch(running=False, reason=reason))
    return "Machine off"


# ============================================================================
# handlers
# ============================================================================


@handler(CONSTS.COMMS.PING, "ping")
async def handle_ping(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    """Handle ping request from client."""
    await _send_response(
        server_connection, req_identity, MsgResponse(value=CONSTS.COMMS.PONG)
    )


@handler(CONSTS.COMMS.ECHO, "echo")
async def handle_echo(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    await _send_response(
        server_connection, req_identity, MsgResponse(value=str(request.params["msg"]))
    )


@handler(CONSTS.COMMS.GET_SERVER_LOG_PATH, "get_server_log_path")
async def handle_get_server_log_path(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    log_path = chamberbench.util.get_log_filename()
    logger.info("Server log path: {}", log_path)
    await _send_response(server_connection, req_identity, ValueResponse(value=log_path))


@handler(CONSTS.COMMS.SHUTDOWN, "shutdown_server")
async def handle_shutdown(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    if state.test_running:
        logger.info("Stopping the running test before shutdown.")
        stop_run(state, STOP_REASON.USER_STOP)
        try:
            await asyncio.wait_for(asyncio.shield(state.run_task), timeout=30)
        except asyncio.TimeoutError:
            logger.error("Test did not stop within 30 s, cancelling.")
            state.run_task.cancel()
    state.bench.close()

    server_connection.shutdown_requested = True
    await _send_response(
        server_connection, req_identity, MsgResponse(value="Shutting down")
    )
    logger.info("Shutting down server.")
    # give the client time to receive the reply before the sockets close
    await asyncio.sleep(1)


@handler(CONSTS.BENCH.POWER_SWITCH, "power_on", "power_off")
async def handle_power_switch(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    if request.params.get("on", False):
        ok, msg = start_run(state, timed=bool(request.params.get("timed", False)))
        response = MsgResponse(value=msg) if ok else ErrorResponse(value=msg)
    else:
        response = MsgResponse(value=stop_run(state))
    await _send_response(server_connection, req_identity, response)


@handler(CONSTS.BENCH.GET_STATUS, "get_status")
async def handle_get_status(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    status = {
        "control": state.run_control.snapshot(),
        "testRunning": state.test_running,
        "run": state.run.status() if state.run is not None else {},
        "lastResult": _result_dict(state.last_result),
        "devices": state.bench.device_status,
    }
    await _send_response(server_connection, req_identity, DictResponse(value=status))


@handler(CONSTS.BENCH.READ_CHAMBER, "read_chamber")
async def handle_read_chamber(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    reading = await state.bench.chamber.read_temperature()
    state.hub.publish(
        ChamberTemperature(status=reading.status, temperature=reading.temperature)
    )
    await _send_response(
        server_connection,
        req_identity,
        DictResponse(
            value={
                "status": reading.status,
                "temperature": reading.temperature,
                "error": reading.error,
            }
        ),
    )


@handler(CONSTS.BENCH.RELAY_ALL_OFF, "relay_all_off")
async def handle_relay_all_off(
    server_connection: ServerConnection,
    req_identity: bytes,
    state: BenchState,
    request: Request,
):
    if state.test_running:
        await _send_response(
            server_connection,
            req_identity,
            ErrorResponse(value="Cannot reset relays while a test is running"),
        )
        return
    result = await state.bench.relays.all_off()
    state.hub.log(f"Relay all-off: {'ok' if result.success else result.error}")
    response = (
        MsgResponse(value="All relays off")
        if result.success
        else ErrorResponse(value=f"Relay all-off failed: {result.error}")
    )
    await _send_response(server_connection, req_identity, response)


# ============================================================================


async def start_server(
    host: str = DEFAULT_HOST_ADDR,
    msg_port: int = DEFAULT_PORT,
    notif_port: int = DEFAULT_PORT + 1,
    log_to_file: bool = True,
    log_to_stdout: bool = False,
    log_path: str = "",
    clear_prev_log: bool = True,
    log_level: str = DEFAULT_LOGLEVEL,
    settings_dir: str = SETTINGS_DIR,
    data_root: str = DATA_DIR,
    mock: bool = False,
):
    kill_bench_servers()  # only one server per machine at a time!

    timestamp = datetime.now().strftime("%Y-%m-%d_%H:%M:%S")
    setproctitle(f"chamberbench-server_{timestamp}")

    pid_file = register_server(host, (msg_port, notif_port))

    chamberbench.util.start_server_log(
        log_to_file=log_to_file,
        log_to_stdout=log_to_stdout,
        log_path=log_path,
        clear_prev=clear_prev_log,
        log_level=log_level,
    )

    if mock:
        logger.info("Opening a mock bench")
        bench = Bench.mock(chamber_profile=DRY_RUN_PROFILE, chamber_loop=True)
    else:
        bench = Bench.from_port_mapping(load_port_mapping(settings_dir))
    for name, status in bench.open().items():
        logger.info("Device {}: {} ({})", name, status["status"], status["message"])

    state = BenchState(
        bench=bench,
        hub=BroadcastHub(),
        run_control=RunControl(),
        settings_dir=settings_dir,
        data_root=data_root,
    )

    logger.info("Starting msg server on {}:{}", host, msg_port)
    try:
        context = zmq.asyncio.Context()
        msg_socket = context.socket(zmq.ROUTER)
        msg_socket.bind(f"tcp://{host}:{msg_port}")  # bind on server side
        notif_socket = context.socket(zmq.PUB)
        notif_socket.bind(f"tcp://{host}:{notif_port}")
        server_connection = ServerConnection(
            context=context,
            msg_socket=msg_socket,
            notif_socket=notif_socket,
            host=host,
            msg_port=msg_port,
            notif_port=notif_port,
        )
    except Exception as e:
        logger.exception("Error opening server-side connection.")
        raise e
    try:
        await client_handler(server_connection, state)
    finally:
        bench.close()
        for socket in (msg_socket, notif_socket):
            socket.setsockopt(zmq.LINGER, 0)
            socket.close()
        context.term()
        pid_file.unlink(missing_ok=True)
        logger.info("Closing down server logger.")
        logger.remove()
