"""Client interface to a relay server."""
from __future__ import annotations

import asyncio
import logging
import ssl
import sys
import urllib.parse
from types import TracebackType

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

import websockets.exceptions
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect
from websockets.frames import CloseCode
from websockets.protocol import State

from signalrelay.exceptions import AdmissionRefusedError
from signalrelay.messages import decode_inbound
from signalrelay.messages import encode_message
from signalrelay.messages import Envelope
from signalrelay.messages import SignalingMessage

logger = logging.getLogger(__name__)


def _raise_if_refused(error: websockets.exceptions.ConnectionClosed) -> None:
    if (
        error.rcvd is not None
        and error.rcvd.code == CloseCode.POLICY_VIOLATION
    ):
        raise AdmissionRefusedError(error.rcvd.reason) from error


class SignalingClient:
    """Client interface to a relay server.

    Tip:
        This class can be used as an async context manager!
        ```python
        from signalrelay.client import SignalingClient

        async with SignalingClient('ws://localhost:8080', 'viewer') as client:
            await client.send(RequestMessage())
            envelope = await client.recv()
        ```

    Note:
        WebSocket connections are not opened until a message is sent,
        a message is received, or
        [`connect()`][signalrelay.client.SignalingClient.connect]
        is called.

    Args:
        address: Address of the relay server. Should start with `ws://` or
            `wss://`.
        identifier: Optional identifier to connect with. Required when the
            relay uses identified admission. It is appended to the address
            as the last path segment.
        ssl_context: Custom SSL context to pass to
            [`websockets.connect()`][websockets.asyncio.client.connect].
            A TLS context is created with
            [`ssl.create_default_context()`][ssl.create_default_context]
            when connecting to a `wss://` URI and `ssl_context` is not
            provided.
        timeout: Time to wait in seconds on opening the connection.
        verify_certificate: Verify the relay server's SSL certificate. Only
            used if `ssl_context` is `None` and connecting to a `wss://` URI.

    Raises:
        ValueError: If address does not start with `ws://` or `wss://`.
    """

    def __init__(
        self,
        address: str,
        identifier: str | None = None,
        *,
        ssl_context: ssl.SSLContext | None = None,
        timeout: float = 10,
        verify_certificate: bool = True,
    ) -> None:
        if not (address.startswith('ws://') or address.startswith('wss://')):
            raise ValueError(
                'Relay server address must start with ws:// or wss://. '
                f'Got {address}.',
            )

        self._address = address
        self._identifier = identifier
        self._timeout = timeout

        if self._address.startswith('wss://') and ssl_context is None:
            ssl_context = ssl.create_default_context()
            if not verify_certificate:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        self._ssl_context = ssl_context
        self._initial_backoff_seconds = 1.0

        self._connect_lock = asyncio.Lock()
        self._websocket: ClientConnection | None = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def identifier(self) -> str | None:
        """Identifier the client connects with."""
        return self._identifier

    @property
    def uri(self) -> str:
        """URI the client connects to."""
        if self._identifier is None:
            return self._address
        segment = urllib.parse.quote(self._identifier, safe='')
        return f'{self._address.rstrip("/")}/{segment}'

    @property
    def websocket(self) -> ClientConnection:
        """Current websocket connection.

        Raises:
            RuntimeError: If the client has never connected.
        """
        if self._websocket is None:
            raise RuntimeError('Client is not connected to a relay server.')
        return self._websocket

    async def connect(self, retry: bool = True) -> ClientConnection:
        """Connect to the relay server.

        Note:
            Typically this does not need to be called because the
            send and receive methods will automatically call this.

        Note:
            If an existing and open connection exists, that will be returned.
            Otherwise, a new connection will be attempted with
            exponential backoff (starting at 1 second and increasing to a max
            of 60 seconds) for connection failures.

        Args:
            retry: Retry failed connection attempts. If `False`, the
                first failure is raised.

        Returns:
            WebSocket connection to the relay server.
        """
        async with self._connect_lock:
            if (
                self._websocket is not None
                and self._websocket.state is State.OPEN
            ):
                return self._websocket

            backoff_seconds = self._initial_backoff_seconds
            while True:
                try:
                    self._websocket = await connect(
                        self.uri,
                        open_timeout=self._timeout,
                        ssl=self._ssl_context,
                    )
                except (OSError, asyncio.TimeoutError) as e:
                    if not retry:
                        raise
                    logger.warning(
                        f'Connection to relay server at {self._address} '
                        f'failed because of {e!r}. Retrying connection in '
                        f'{backoff_seconds} seconds',
                    )
                    await asyncio.sleep(backoff_seconds)
                    backoff_seconds = min(backoff_seconds * 2, 60)
                else:
                    break

        logger.info(
            f'Established client connection to relay server at '
            f'{self._address} with identifier={self._identifier}',
        )
        return self._websocket

    async def close(self) -> None:
        """Close the connection to the relay server."""
        if self._websocket is not None:
            await self._websocket.close()

    async def recv(self) -> Envelope:
        """Receive the next message.

        Returns:
            The message received from the relay server and its sender, if
            the relay provided one.

        Raises:
            AdmissionRefusedError: If the relay refused the connection.
            websockets.exceptions.ConnectionClosed: If the connection closed.
            MessageDecodeError: If the message received cannot be decoded.
        """
        websocket = await self.connect()
        try:
            raw = await websocket.recv()
        except websockets.exceptions.ConnectionClosed as e:
            _raise_if_refused(e)
            raise
        return decode_inbound(raw)

    async def send(self, message: SignalingMessage) -> None:
        """Send a message.

        Args:
            message: The message to send to the relay server.

        Raises:
            AdmissionRefusedError: If the relay refused the connection.
            websockets.exceptions.ConnectionClosed: If the connection closed.
        """
        message_str = encode_message(message)
        websocket = await self.connect()
        try:
            await websocket.send(message_str)
        except websockets.exceptions.ConnectionClosed as e:
            _raise_if_refused(e)
            raise
