"""Socket bundles and the handler <-> client method registry.

`HANDLER_REGISTRY` is filled by the server's `@handler` decorator,
`PENDING_COMMAND_VALIDATIONS` by the client's `@command` decorator. The two are
checked against each other with `validate_handler_client_correspondence`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

import zmq
import zmq.asyncio


@dataclass
class HandlerInfo:
    """Maps a server handler to the client methods that call it."""

    handler_func: Callable
    client_methods: list[str]
    command: str


HANDLER_REGISTRY: dict[str, HandlerInfo] = {}
PENDING_COMMAND_VALIDATIONS: list[tuple[str, str]] = []


class ValidationError(Exception):
    pass


def validate_handler_client_correspondence() -> list[str]:
    """All mismatches between registered handlers and decorated client methods."""
    import chamberbench.server.client as client
    import chamberbench.server.server  # noqa: F401 (fills HANDLER_REGISTRY)

    errors = []
    for command, func_name in PENDING_COMMAND_VALIDATIONS:
        if command not in HANDLER_REGISTRY:
            errors.append(
                f"Command {command} used by {func_name} not found in handler registry"
            )

    for command, info in HANDLER_REGISTRY.items():
        if not info.client_methods:
            errors.append(
                f"Handler {info.handler_func.__name__} for command {command}"
                + " has no registered client methods"
            )
        for client_method in info.client_methods:
            func = getattr(client, client_method, None)
            if func is None:
                errors.append(
                    f"Client method {client_method} for command {command}"
                    + " not found in client module"
                )
            elif not getattr(func, "_is_client_method", False):
                errors.append(
                    f"Client method {client_method} is not decorated with @command"
                )
            elif func._command != command:
                errors.append(
                    f"Client method {client_method} sends {func._command},"
                    + f" handler expects {command}"
                )
    return errors


def assert_valid_handler_client_correspondence():
    errors = validate_handler_client_correspondence()
    if errors:
        raise ValidationError("\n".join(errors))


@dataclass
class ClientConnection:
    """Client-side connection information."""

    context: zmq.Context
    msg_socket: zmq.Socket  # REQ socket
    notif_socket: zmq.Socket  # SUB socket
    host: str
    msg_port: int
    notif_port: int


@dataclass
class ServerConnection:
    """Server-side connection information."""

    context: zmq.asyncio.Context
    msg_socket: zmq.asyncio.Socket  # ROUTER socket
    notif_socket: zmq.asyncio.Socket  # PUB socket for notifications
    host: str
    msg_port: int
    notif_port: int
    shutdown_requested: bool = False
    forward_task: Optional[asyncio.Task] = None
