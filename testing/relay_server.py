"""Tools for running a local relay server for unit tests."""
from __future__ import annotations

import contextlib
import ssl
from typing import AsyncGenerator
from typing import NamedTuple

import pytest_asyncio
from websockets.asyncio.server import serve
from websockets.asyncio.server import Server

from signalrelay.registry import AdmissionMode
from signalrelay.router import RoutingMode
from signalrelay.server import RelayServer
from testing.utils import open_port


class RelayServerInfo(NamedTuple):
    """NamedTuple returned by the relay server fixtures."""

    relay_server: RelayServer
    websocket_server: Server
    host: str
    port: int
    address: str


@contextlib.asynccontextmanager
async def run_relay_server(
    admission: AdmissionMode = 'anonymous',
    routing: RoutingMode = 'broadcast',
    *,
    ssl_context: ssl.SSLContext | None = None,
    **kwargs,
) -> AsyncGenerator[RelayServerInfo, None]:
    """Serve a relay server on an open localhost port.

    Extra keyword arguments are passed to
    [`RelayServer`][signalrelay.server.RelayServer]. The server uses
    `wss://` when `ssl_context` is given.
    """
    host = 'localhost'
    port = open_port()
    scheme = 'ws' if ssl_context is None else 'wss'
    address = f'{scheme}://{host}:{port}'

    relay_server = RelayServer(admission, routing, **kwargs)
    async with serve(
        relay_server.handler,
        host,
        port,
        ssl=ssl_context,
    ) as websocket_server:
        yield RelayServerInfo(
            relay_server=relay_server,
            websocket_server=websocket_server,
            host=host,
            port=port,
            address=address,
        )


@pytest_asyncio.fixture()
async def relay_server() -> AsyncGenerator[RelayServerInfo, None]:
    """Relay server with anonymous admission and broadcast routing."""
    async with run_relay_server() as server_info:
        yield server_info


@pytest_asyncio.fixture()
async def identified_relay_server() -> AsyncGenerator[RelayServerInfo, None]:
    """Relay server with identified admission and broadcast routing."""
    async with run_relay_server('identified') as server_info:
        yield server_info


@pytest_asyncio.fixture()
async def addressed_relay_server() -> AsyncGenerator[RelayServerInfo, None]:
    """Relay server with identified admission and addressed routing."""
    async with run_relay_server('identified', 'addressed') as server_info:
        yield server_info
