# -*- coding: utf-8 -*-
"""
Client side of the bench control protocol.

Each request function is decorated with `@command`, naming the command it
sends; the server registers the matching handler with `@handler`. Requests use
the lazy-pirate pattern on a REQ socket: poll for the reply, and on timeout
rebuild the socket and resend, up to `request_retries` times.

Notifications are received on a SUB socket; `start_bg_notif_listener` moves them
into an `asyncio.Queue`.
"""

# ============================================================================

from __future__ import annotations

import asyncio
import time
from functools import wraps
from typing import Any, Callable, Type, TypeVar, cast

import zmq
from loguru import logger

from chamberbench.types import (
    CONSTS,
    PENDING_COMMAND_VALIDATIONS,
    ClientConnection,
    CommsError,
    DictResponse,
    ErrorResponse,
    MsgResponse,
    Notification,
    Request,
    Response,
    ValueResponse,
)
from chamberbench.util import (
    DEFAULT_HOST_ADDR,
    DEFAULT_PORT,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    format_error_response,
)

T = TypeVar("T", bound=Response)

# ============================================================================


def _new_req_socket(client_connection: ClientConnection) -> zmq.Socket:
    sock = client_connection.context.socket(zmq.REQ)
    sock.connect(f"tcp://{client_connection.host}:{client_connection.msg_port}")
    return sock


def _get_response(
    client_connection: ClientConnection,
    request: Request,
    request_retries: int = DEFAULT_RETRIES,
) -> Response:
    """Send `request` and wait for the reply (ZMQ lazy pirate).

    Returns an `ErrorResponse` if the server appears to be offline after
    `request_retries` resends.
    """
    retries_left = request_retries + 1  # (+1 to account for the first attempt)
    is_shutdown_request = request.command == CONSTS.COMMS.SHUTDOWN

    logger.debug("*REQUEST* (client->): {}", request)
    client_connection.msg_socket.send(request.to_msgpack())
    while True:
        try:
            if client_connection.msg_socket.poll(1000 * DEFAULT_TIMEOUT, zmq.POLLIN):
                resp = Response.from_msgpack(client_connection.msg_socket.recv())
                logger.debug("*RESPONSE* (client<-): {}", resp)
                return resp
        except zmq.ZMQError as e:
            if is_shutdown_request:
                logger.info("Expected ZMQ error after shutdown command")
                return MsgResponse(value="Server shutting down")
            logger.warning("ZMQ error: {}", e)

        retries_left -= 1
        logger.warning("No response from server...")
        # Socket is confused. Close and remove it.
        client_connection.msg_socket.setsockopt(zmq.LINGER, 0)
        client_connection.msg_socket.close()
        if retries_left <= 0:
            logger.error("Server seems to be offline, abandoning.")
            return ErrorResponse(value="Server seems to be offline.")
        logger.info("Reconnecting to server...")
        client_connection.msg_socket = _new_req_socket(client_connection)
        logger.debug("*REQUEST* (client->): {}", request)
        client_connection.msg_socket.send(request.to_msgpack())


def _send_request(
    client_connection: ClientConnection,
    request: Request,
    request_retries: int = DEFAULT_RETRIES,
) -> T:
    """Send a request and get a response.

    Raises
    ------
    CommsError
        If the server returns an error
    """
    resp = _get_response(client_connection, request, request_retries)
    if isinstance(resp, ErrorResponse):
        logger.error("Error during {}: '{}'", request.command, resp.value)
        raise CommsError(f"Error returned from {request.command}: {resp.value}")
    return cast(T, resp)


def command(
    command_str: str, response_type: Type[T] | Any = Response
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Mark a client function as the sender of `command_str`."""

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        # validated against the handler registry later
        PENDING_COMMAND_VALIDATIONS.append((command_str, func.__name__))

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return func(*args, **kwargs)

        wrapper._command = command_str
        wrapper._response_type = response_type
        wrapper._is_client_method = True
        return wrapper

    return decorator


# ============================================================================
# connection
# ============================================================================


def open_connection(
    host: str = DEFAULT_HOST_ADDR,
    msg_port: int = DEFAULT_PORT,
    notif_port: int = DEFAULT_PORT + 1,
    request_retries: int = DEFAULT_RETRIES,
) -> ClientConnection:
    """Connect to a server and confirm it answers a ping.

    Raises
    ------
    CommsError
        If the sockets cannot be opened or the server does not answer.
    """
    logger.info("Attempting connection to server on {}:{}.", host, msg_port)
    try:
        context = zmq.Context()
        msg_socket = context.socket(zmq.REQ)
        msg_socket.connect(f"tcp://{host}:{msg_port}")
        notif_socket = context.socket(zmq.SUB)
        notif_socket.setsockopt(zmq.SUBSCRIBE, b"")  # subscribe to all
        notif_socket.connect(f"tcp://{host}:{notif_port}")
    except zmq.ZMQError:
        logger.exception("Error during connection.")
        raise CommsError(f"Error during connection: {format_error_response()}")
    client_connection = ClientConnection(
        context, msg_socket, notif_socket, host, msg_port, notif_port
    )
    if ping(client_connection, request_retries) != CONSTS.COMMS.PONG:
        close_connection(client_connection)
        raise CommsError("Bad connection - no response from server.")
    logger.info("Connection established on {}", host)
    return client_connection


def close_connection(client_connection: ClientConnection):
    logger.info("Closing connection.")
    for socket in (client_connection.msg_socket, client_connection.notif_socket):
        try:
            socket.setsockopt(zmq.LINGER, 0)
            socket.close()
        except zmq.ZMQError as e:
            logger.debug("Error closing socket: {}", e)
    client_connection.context.term()


# ============================================================================
# requests
# ============================================================================


@command(CONSTS.COMMS.PING, response_type=MsgResponse | ErrorResponse)
def ping(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> str:
    """PONG, or "" when the server did not answer."""
    try:
        resp = _send_request(
            client_connection, Request(CONSTS.COMMS.PING), request_retries
        )
    except CommsError:
        logger.exception("Ping failed.")
        return ""
    return resp.value


@command(CONSTS.COMMS.ECHO, response_type=MsgResponse | ErrorResponse)
def echo(
    client_connection: ClientConnection, msg: str, request_retries: int = DEFAULT_RETRIES
) -> str:
    resp = _send_request(
        client_connection, Request(CONSTS.COMMS.ECHO, {"msg": msg}), request_retries
    )
    return resp.value


@command(CONSTS.COMMS.GET_SERVER_LOG_PATH, response_type=ValueResponse | ErrorResponse)
def get_server_log_path(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> str:
    resp = _send_request(
        client_connection, Request(CONSTS.COMMS.GET_SERVER_LOG_PATH), request_retries
    )
    logger.info("Server log path: {}", resp.value)
    return resp.value


@command(CONSTS.COMMS.SHUTDOWN, response_type=MsgResponse | ErrorResponse)
def shutdown_server(client_connection: ClientConnection) -> str:
    """Ask the server to stop any run, release the bench and exit."""
    # one try only, the server drops the connection afterwards
    resp = _send_request(client_connection, Request(CONSTS.COMMS.SHUTDOWN), 1)
    logger.info("Server shutdown initiated: {}", resp.value)
    return resp.value


@command(CONSTS.BENCH.POWER_SWITCH, response_type=MsgResponse | ErrorResponse)
def power_on(
    client_connection: ClientConnection,
    timed: bool = False,
    request_retries: int = DEFAULT_RETRIES,
) -> str:
    """Switch the machine on and start a run (timed mode if `timed`).

    Raises
    ------
    CommsError
        A run is already in progress, or the settings were rejected.
    """
    resp = _send_request(
        client_connection,
        Request(CONSTS.BENCH.POWER_SWITCH, {"on": True, "timed": timed}),
        request_retries,
    )
    return resp.value


@command(CONSTS.BENCH.POWER_SWITCH, response_type=MsgResponse | ErrorResponse)
def power_off(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> str:
    resp = _send_request(
        client_connection,
        Request(CONSTS.BENCH.POWER_SWITCH, {"on": False}),
        request_retries,
    )
    return resp.value


@command(CONSTS.BENCH.GET_STATUS, response_type=DictResponse | ErrorResponse)
def get_status(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> dict:
    resp = _send_request(
        client_connection, Request(CONSTS.BENCH.GET_STATUS), request_retries
    )
    return resp.value


@command(CONSTS.BENCH.READ_CHAMBER, response_type=DictResponse | ErrorResponse)
def read_chamber(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> dict:
    resp = _send_request(
        client_connection, Request(CONSTS.BENCH.READ_CHAMBER), request_retries
    )
    return resp.value


@command(CONSTS.BENCH.RELAY_ALL_OFF, response_type=MsgResponse | ErrorResponse)
def relay_all_off(
    client_connection: ClientConnection, request_retries: int = DEFAULT_RETRIES
) -> str:
    resp = _send_request(
        client_connection, Request(CONSTS.BENCH.RELAY_ALL_OFF), request_retries
    )
    return resp.value


# ============================================================================
# notifications
# ============================================================================


def start_bg_notif_listener(
    client_connection: ClientConnection,
) -> tuple[asyncio.Task, asyncio.Queue]:
    qu = asyncio.Queue()

    async def listen(queue):
        logger.info("Starting notification listener")
        while True:
            try:
                msg = client_connection.notif_socket.recv(flags=zmq.NOBLOCK)
            except zmq.Again:
                await asyncio.sleep(0.01)
                continue
            except zmq.ZMQError:
                logger.exception("Error in notif listener.")
                break
            notif = Notification.from_msgpack(msg)
            # below is rather loquacious
            logger.trace("*NOTIF* (client<-): {}", notif)
            queue.put_nowait(notif)

    task = asyncio.create_task(listen(qu))
    return task, qu


def clean_queue(qu: asyncio.Queue):
    while not qu.empty():
        try:
            qu.get_nowait()
        except asyncio.QueueEmpty:
            break


async def wait_for_notif(
    qu: asyncio.Queue, notif_type: Type[Notification], timeout=DEFAULT_TIMEOUT
) -> Notification:
    start = time.time()
    while time.time() - start < timeout:
        try:
            notif = qu.get_nowait()
            if isinstance(notif, notif_type):
                return notif
        except asyncio.QueueEmpty:
            pass
        await asyncio.sleep(0.01)
    raise TimeoutError(f"Timeout waiting for {notif_type} notification.")
