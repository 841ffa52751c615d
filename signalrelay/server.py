"""Relay server implementation for exchanging WebRTC signaling messages.

The relay server (or signaling server) is a lightweight server accessible by
all peers (e.g., has a public IP address) that forwards the offer, answer,
and ICE candidate messages two peers need to establish a direct WebRTC
session. The relay never interprets the session itself; it only decides who
receives each message.
"""
from __future__ import annotations

import asyncio
import logging
import urllib.parse

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.frames import CloseCode

from signalrelay.exceptions import AdmissionError
from signalrelay.messages import decode_message
from signalrelay.messages import MessageDecodeError
from signalrelay.messages import UnknownMessage
from signalrelay.registry import AdmissionMode
from signalrelay.registry import Participant
from signalrelay.registry import Payload
from signalrelay.registry import Registry
from signalrelay.router import Router
from signalrelay.router import RoutingMode
from signalrelay.utils.tasks import cancel_and_wait

logger = logging.getLogger(__name__)

MESSAGE_TOO_BIG_CODE = 4003


def identifier_from_path(path: str) -> str | None:
    """Extract the client identifier from a connection request path.

    The identifier is the URL-decoded trailing path segment, ignoring any
    query string or trailing slash.

    Example:
        ```python
        >>> identifier_from_path('/room/viewer-1?token=abc')
        'viewer-1'
        >>> identifier_from_path('/') is None
        True
        ```
    """
    path = urllib.parse.urlsplit(path).path
    segment = path.rstrip('/').rsplit('/', 1)[-1]
    return urllib.parse.unquote(segment) or None


def payload_size(raw: Payload) -> int:
    """Size of a payload in bytes, counting text frames as UTF-8."""
    if isinstance(raw, str):
        return len(raw.encode('utf-8'))
    return len(raw)


class RelayServer:
    """WebRTC signaling relay server.

    The relay server acts as a public third-party that helps two peers
    establish a peer-to-peer connection. Every message a participant sends
    is forwarded to every other connected participant, either unchanged
    (broadcast routing) or wrapped with the sender's identifier (addressed
    routing).

    The relay server is built on websockets and designed to be
    served using [`serve()`][signalrelay.run.serve].

    Args:
        admission: Admission mode of the participant registry.
        routing: Routing mode of the router.
        max_message_bytes: Optional maximum size of client messages in bytes.
            Clients that send oversized messages will have their connections
            closed.
        max_pending_messages: Maximum number of messages queued for a single
            participant.
    """

    def __init__(
        self,
        admission: AdmissionMode = 'anonymous',
        routing: RoutingMode = 'broadcast',
        *,
        max_message_bytes: int | None = None,
        max_pending_messages: int = 256,
    ) -> None:
        if routing == 'addressed' and admission != 'identified':
            raise ValueError(
                'Addressed routing requires identified admission.',
            )
        self._registry = Registry(admission, max_pending_messages)
        self._router = Router(self._registry, routing)
        self._max_message_bytes = max_message_bytes

    @property
    def registry(self) -> Registry:
        """Registry of connected participants."""
        return self._registry

    @property
    def router(self) -> Router:
        """Message router."""
        return self._router

    async def admit(self, websocket: ServerConnection) -> Participant | None:
        """Admit a new connection into the registry.

        Connections that cannot be admitted are closed with a policy
        violation close code (1008) and a reason.

        Args:
            websocket: Newly opened connection.

        Returns:
            The admitted participant or `None` if the connection was refused.
        """
        identifier = identifier_from_path(websocket.request.path)
        try:
            return await self.registry.admit(identifier, websocket)
        except AdmissionError as e:
            logger.warning(
                f'Refusing connection from {websocket.remote_address}. '
                f'{e.__class__.__name__}: {e}',
            )
            await websocket.close(CloseCode.POLICY_VIOLATION, reason=str(e))
            return None

    def _log_message(self, participant: Participant, raw: Payload) -> None:
        try:
            message = decode_message(raw)
        except MessageDecodeError as e:
            logger.debug(
                f'Received opaque message from {participant.name} ({e})',
            )
            return

        if isinstance(message, UnknownMessage):
            logger.info(
                f'Received message of unknown type {message.type!r} from '
                f'{participant.name}, forwarding as is',
            )
        else:
            logger.debug(
                f'Received {message.type} message from {participant.name}',
            )

    def _oversized(self, size: int) -> bool:
        return (
            self._max_message_bytes is not None
            and size > self._max_message_bytes
        )

    async def _receive(self, participant: Participant) -> None:
        websocket = participant.websocket
        while True:
            try:
                raw = await websocket.recv()
            except websockets.exceptions.ConnectionClosedOK:
                logger.info(f'Connection to {participant.name} closed')
                return
            except websockets.exceptions.ConnectionClosedError as e:
                logger.warning(
                    f'Connection to {participant.name} closed with error: '
                    f'{e}',
                )
                return

            size = payload_size(raw)
            if self._oversized(size):
                logger.warning(
                    f'Participant {participant.name} sent message with size '
                    f'{size} bytes which exceeds the max configured size '
                    f'of {self._max_message_bytes} bytes. Connection closed '
                    f'with error code {MESSAGE_TOO_BIG_CODE}',
                )
                await websocket.close(
                    MESSAGE_TOO_BIG_CODE,
                    reason='Message length exceeds limit.',
                )
                return

            self._log_message(participant, raw)
            await self.router.route(participant, raw)

    async def handler(self, websocket: ServerConnection) -> None:
        """Websocket server connection handler.

        Admits the connection, forwards every message it sends, and removes
        the participant once the connection closes.

        The handler will close the connection for the following reasons.

        - The client did not supply an identifier when one is required, or
          the identifier is already connected (code 1008).
        - The client sends a message larger than the allowed size
          (code 4003).

        Args:
            websocket: Websocket connection to handle.
        """
        participant = await self.admit(websocket)
        if participant is None:
            return

        writer = asyncio.create_task(
            participant.pump(),
            name=f'relay-writer-{participant.name}',
        )
        try:
            await self._receive(participant)
        finally:
            await self.registry.remove(participant)
            await cancel_and_wait(writer)
