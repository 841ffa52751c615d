"""Drive a negotiation session over a relay connection."""
from __future__ import annotations

import logging

import websockets.exceptions

from signalrelay.client import SignalingClient
from signalrelay.messages import MessageDecodeError
from signalrelay.negotiation import NegotiationSession

logger = logging.getLogger(__name__)


class Endpoint:
    """One side of a peer-to-peer session negotiated through a relay.

    Starts the negotiation, feeds every message received from the relay into
    the session, and closes the session when a bye is received or the relay
    connection closes.

    Example:
        ```python
        from signalrelay.client import SignalingClient
        from signalrelay.endpoint import Endpoint
        from signalrelay.negotiation import NegotiationSession, Role
        from signalrelay.peer import AiortcPeerSession, QueueMediaSink

        sink = QueueMediaSink()
        peer = AiortcPeerSession(Role.offerer, media_sink=sink)
        async with SignalingClient('ws://localhost:8080', 'viewer') as client:
            session = NegotiationSession(
                Role.offerer, peer, client.send, media_sink=sink,
            )
            peer.on_state_change(session.on_connection_state_change)
            await Endpoint(client, session).run()
        ```

    Args:
        client: Connection to the relay server.
        session: Negotiation session to drive.
        peer_id: Only accept messages from this sender. Requires the relay
            to use addressed routing. If `None`, messages from any sender
            are accepted.
    """

    def __init__(
        self,
        client: SignalingClient,
        session: NegotiationSession,
        *,
        peer_id: str | None = None,
    ) -> None:
        self.client = client
        self.session = session
        self.peer_id = peer_id

    async def run(self) -> None:
        """Run until the session or the relay connection closes."""
        try:
            await self.session.start()
            while not self.session.closed:
                try:
                    envelope = await self.client.recv()
                except MessageDecodeError as e:
                    logger.warning(f'Dropping undecodable message: {e}')
                    continue
                except websockets.exceptions.ConnectionClosed:
                    logger.info('Relay connection closed, ending session')
                    break

                if (
                    self.peer_id is not None
                    and envelope.sender_id != self.peer_id
                ):
                    logger.debug(
                        f'Ignoring message from {envelope.sender_id}, '
                        f'expected {self.peer_id}',
                    )
                    continue

                await self.session.handle(envelope.message)
        finally:
            await self.session.close()
