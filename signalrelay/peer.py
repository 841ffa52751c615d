"""Peer sessions backed by [aiortc](https://aiortc.readthedocs.io/en/latest/).

The relay only carries the parameters of a session. The session itself
(ICE connectivity checks, DTLS, and the data channel carrying media) is
established directly between the peers by an
[`AiortcPeerSession`][signalrelay.peer.AiortcPeerSession].
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable
from typing import Callable
from typing import Sequence

from aiortc import RTCConfiguration
from aiortc import RTCDataChannel
from aiortc import RTCIceServer
from aiortc import RTCPeerConnection
from aiortc import RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from signalrelay.exceptions import NegotiationError
from signalrelay.messages import IceCandidate
from signalrelay.negotiation import MediaSink
from signalrelay.negotiation import Role
from signalrelay.negotiation import SessionDescription

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_LABEL = 'screenStream'
DEFAULT_STUN_SERVER = 'stun:stun.l.google.com:19302'

StateListener = Callable[[str], Awaitable[None]]


class QueueMediaSink:
    """Media sink that queues received messages for a consumer.

    Example:
        ```python
        sink = QueueMediaSink()
        peer = AiortcPeerSession(Role.offerer, media_sink=sink)
        ...
        frame = await sink.get()
        ```
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | str] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        """If the sink has been closed."""
        return self._closed

    def write(self, data: bytes | str) -> None:
        """Queue a message. Messages written after close are dropped."""
        if not self._closed:
            self._queue.put_nowait(data)

    def close(self) -> None:
        """Stop accepting messages."""
        self._closed = True

    async def get(self) -> bytes | str:
        """Get the next received message."""
        return await self._queue.get()


class AiortcPeerSession:
    """WebRTC peer session implemented with aiortc.

    The offerer creates the data channel before creating its offer and the
    answerer adopts the channel opened by the remote peer. Messages received
    on the channel are written to the media sink.

    Note:
        aiortc gathers all local ICE candidates while setting the local
        description and includes them in the SDP, so this session never
        produces trickled candidates. Remote candidates are still applied.

    Args:
        role: Role of the local endpoint.
        media_sink: Optional consumer of messages received from the peer.
        channel_label: Label of the data channel created by the offerer.
        ice_servers: STUN/TURN server URLs. Defaults to a public STUN server.
    """

    def __init__(
        self,
        role: Role,
        *,
        media_sink: MediaSink | None = None,
        channel_label: str = DEFAULT_CHANNEL_LABEL,
        ice_servers: Sequence[str] | None = None,
    ) -> None:
        self._role = role
        self._media_sink = media_sink
        self._channel_label = channel_label

        ice_servers = (
            [DEFAULT_STUN_SERVER] if ice_servers is None else ice_servers
        )
        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers],
        )
        self._pc = RTCPeerConnection(configuration=configuration)
        self._channel: RTCDataChannel | None = None
        self._listener: StateListener | None = None
        self._channel_open = asyncio.Event()
        self._closed = False

        self._pc.on('connectionstatechange', self._on_connection_state)
        if role is Role.answerer:
            self._pc.on('datachannel', self._attach_channel)

    @property
    def connection_state(self) -> str:
        """Get the current connection state.

        Returns:
            One of 'connected', 'connecting', 'closed', 'failed', or 'new'.
        """
        return self._pc.connectionState

    @property
    def channel(self) -> RTCDataChannel | None:
        """Data channel with the peer, once created or received."""
        return self._channel

    def on_state_change(self, listener: StateListener) -> None:
        """Register a coroutine called with each new connection state.

        Typically this is
        [`NegotiationSession.on_connection_state_change()`][signalrelay.negotiation.NegotiationSession.on_connection_state_change].
        """
        self._listener = listener

    async def _on_connection_state(self) -> None:
        state = self._pc.connectionState
        logger.info(f'Peer connection state changed to {state}')
        if self._listener is not None:
            await self._listener(state)

    def _attach_channel(self, channel: RTCDataChannel) -> None:
        logger.info(f'Data channel {channel.label!r} attached')
        self._channel = channel
        channel.on('open', self._channel_open.set)
        channel.on('message', self._on_message)
        if channel.readyState == 'open':
            self._channel_open.set()

    def _on_message(self, data: bytes | str) -> None:
        if self._media_sink is not None:
            self._media_sink.write(data)

    async def create_offer(self) -> SessionDescription:
        """Create an offer and set it as the local description."""
        if self._role is not Role.offerer:
            raise NegotiationError('Only the offerer creates offers.')
        if self._channel is None:
            self._attach_channel(
                self._pc.createDataChannel(self._channel_label),
            )
        await self._pc.setLocalDescription(await self._pc.createOffer())
        return SessionDescription(self._pc.localDescription.sdp, 'offer')

    async def create_answer(self) -> SessionDescription:
        """Create an answer and set it as the local description."""
        await self._pc.setLocalDescription(await self._pc.createAnswer())
        return SessionDescription(self._pc.localDescription.sdp, 'answer')

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Set the description received from the remote peer."""
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type),
        )

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote ICE candidate.

        An empty candidate string marks the end of candidates and is
        ignored.

        Raises:
            NegotiationError: If the candidate cannot be parsed or does not
                match a media line of the session.
        """
        sdp = candidate.candidate
        if sdp.startswith('candidate:'):
            sdp = sdp[len('candidate:') :]
        if not sdp:
            logger.debug('Received end of candidates')
            return

        # foundation, component, protocol, priority, ip, port, "typ", type
        if len(sdp.split()) < 8:
            raise NegotiationError(
                f'Malformed candidate {candidate.candidate!r}.',
            )
        try:
            rtc_candidate = candidate_from_sdp(sdp)
        except (IndexError, ValueError) as e:
            raise NegotiationError(
                f'Malformed candidate {candidate.candidate!r}.',
            ) from e
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index

        try:
            await self._pc.addIceCandidate(rtc_candidate)
        except ValueError as e:
            raise NegotiationError(str(e)) from e

    async def wait_channel_open(self, timeout: float | None = None) -> None:
        """Wait for the data channel with the peer to open.

        Raises:
            asyncio.TimeoutError: If the channel does not open in time.
        """
        await asyncio.wait_for(self._channel_open.wait(), timeout)

    def send(self, data: bytes | str) -> None:
        """Send a message to the peer over the data channel.

        Raises:
            NegotiationError: If the data channel is not open.
        """
        if self._channel is None or self._channel.readyState != 'open':
            raise NegotiationError('Data channel is not open.')
        self._channel.send(data)

    async def close(self) -> None:
        """Close the peer connection. Repeated calls are no-ops."""
        if self._closed:
            return
        self._closed = True
        if self._channel is not None:
            self._channel.close()
        await self._pc.close()
