"""Endpoint-side offer/answer negotiation state machine.

The relay forwards every message it receives, so endpoints are responsible
for deciding which messages are meaningful. A
[`NegotiationSession`][signalrelay.negotiation.NegotiationSession] tracks one
exchange of exactly one offer, one answer, and any number of ICE candidates
between two peers, and drives an external
[`PeerSession`][signalrelay.negotiation.PeerSession] (the transport layer
session) accordingly.

Out of order or duplicate messages are protocol anomalies: they are logged
and ignored rather than raised.
"""
from __future__ import annotations

import asyncio
import collections
import dataclasses
import enum
import logging
from typing import Awaitable
from typing import Callable
from typing import Literal
from typing import Protocol
from typing import runtime_checkable

import websockets.exceptions

from signalrelay.exceptions import NegotiationError
from signalrelay.messages import AnswerMessage
from signalrelay.messages import ByeMessage
from signalrelay.messages import CandidateMessage
from signalrelay.messages import IceCandidate
from signalrelay.messages import OfferMessage
from signalrelay.messages import RequestMessage
from signalrelay.messages import SignalingMessage
from signalrelay.messages import UnknownMessage

logger = logging.getLogger(__name__)


class Role(enum.Enum):
    """Fixed role of an endpoint in a negotiation."""

    offerer = 'offerer'
    """Creates the offer (and the data channel, when one is used)."""
    answerer = 'answerer'
    """Requests an offer and replies with an answer."""


class NegotiationState(enum.Enum):
    """State of a negotiation session."""

    idle = 'idle'
    offering = 'offering'
    offered = 'offered'
    answered = 'answered'
    connected = 'connected'
    failed = 'failed'
    closed = 'closed'


_TERMINAL_STATES = (NegotiationState.failed, NegotiationState.closed)


@dataclasses.dataclass(frozen=True)
class SessionDescription:
    """Session description of a peer session.

    Attributes:
        sdp: Session description protocol text.
        type: If this description is an offer or an answer.
    """

    sdp: str
    type: Literal['offer', 'answer']


@runtime_checkable
class PeerSession(Protocol):
    """Transport layer session (ICE, DTLS, SRTP) between two peers."""

    async def create_offer(self) -> SessionDescription:
        """Create an offer and set it as the local description."""
        ...

    async def create_answer(self) -> SessionDescription:
        """Create an answer and set it as the local description."""
        ...

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        """Set the description received from the remote peer."""
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote ICE candidate.

        Raises:
            NegotiationError: If the candidate cannot be applied.
        """
        ...

    async def close(self) -> None:
        """Close the session and release its resources."""
        ...


@runtime_checkable
class MediaSink(Protocol):
    """Consumer of the media received over a peer session."""

    def write(self, data: bytes | str) -> None:
        """Consume one message received from the peer."""
        ...

    def close(self) -> None:
        """Release resources held by the sink."""
        ...


SendCallable = Callable[[SignalingMessage], Awaitable[None]]


class NegotiationSession:
    """One offer/answer negotiation with a remote peer.

    Example:
        ```python
        from signalrelay.client import SignalingClient
        from signalrelay.negotiation import NegotiationSession, Role
        from signalrelay.peer import AiortcPeerSession

        client = SignalingClient('ws://localhost:8080', 'viewer')
        peer = AiortcPeerSession(Role.answerer)
        session = NegotiationSession(Role.answerer, peer, client.send)
        await session.start()
        ```

    Args:
        role: Role of the local endpoint.
        peer: Transport layer session driven by this negotiation.
        send: Callable used to send signaling messages to the remote peer
            (usually [`SignalingClient.send()`][signalrelay.client.SignalingClient.send]).
        media_sink: Optional media sink released when the session closes.
        max_pending_candidates: Maximum number of remote candidates buffered
            while no remote description is set. When full, the oldest
            candidate is dropped. Zero disables buffering so early candidates
            are always dropped.
    """

    def __init__(
        self,
        role: Role,
        peer: PeerSession,
        send: SendCallable,
        *,
        media_sink: MediaSink | None = None,
        max_pending_candidates: int = 64,
    ) -> None:
        self._role = role
        self._peer = peer
        self._send = send
        self._media_sink = media_sink
        self._max_pending_candidates = max(max_pending_candidates, 0)

        self._state = NegotiationState.idle
        self._lock = asyncio.Lock()
        self._closing = False
        self._local_description: SessionDescription | None = None
        self._remote_description: SessionDescription | None = None
        self._pending_candidates: collections.deque[IceCandidate] = (
            collections.deque()
        )

        self.anomalies = 0
        self.dropped_candidates = 0

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self._role.value}]'

    @property
    def role(self) -> Role:
        """Role of the local endpoint."""
        return self._role

    @property
    def state(self) -> NegotiationState:
        """Current negotiation state."""
        return self._state

    @property
    def closed(self) -> bool:
        """If the session has been torn down."""
        return self._state in _TERMINAL_STATES

    @property
    def pending_candidates(self) -> int:
        """Number of buffered remote candidates."""
        return len(self._pending_candidates)

    def _anomaly(self, message: str) -> None:
        self.anomalies += 1
        logger.warning(f'{self._log_prefix}: {message}, ignoring')

    async def start(self) -> None:
        """Begin the negotiation.

        The offerer creates and sends its offer. The answerer sends a request
        so an offerer that is already waiting (re)sends its offer.
        """
        async with self._lock:
            if self._state is not NegotiationState.idle:
                self._anomaly(f'start() called in state {self._state.value}')
            elif self._role is Role.offerer:
                await self._send_offer()
            else:
                logger.info(f'{self._log_prefix}: requesting offer')
                await self._send(RequestMessage())

    async def _send_offer(self) -> None:
        self._state = NegotiationState.offering
        try:
            description = await self._peer.create_offer()
        except Exception as e:
            await self._teardown(NegotiationState.failed)
            raise NegotiationError('Failed to create offer.') from e
        if self.closed:
            return
        self._local_description = description
        self._state = NegotiationState.offered
        logger.info(f'{self._log_prefix}: sending offer')
        await self._send(OfferMessage(description.sdp))

    async def handle(self, message: SignalingMessage) -> None:
        """Process one message received from the remote peer.

        Messages are processed one at a time per session so description
        and candidate steps never interleave.

        Args:
            message: Message received through the relay.

        Raises:
            NegotiationError: If the peer session fails to create or apply a
                session description. The session is failed and closed first.
        """
        if isinstance(message, ByeMessage):
            logger.info(f'{self._log_prefix}: received {message.type}')
            await self.close()
            return

        async with self._lock:
            if self.closed:
                logger.debug(
                    f'{self._log_prefix}: session closed, dropping '
                    f'{type(message).__name__}',
                )
            elif isinstance(message, RequestMessage):
                await self._on_request()
            elif isinstance(message, OfferMessage):
                await self._on_offer(message)
            elif isinstance(message, AnswerMessage):
                await self._on_answer(message)
            elif isinstance(message, CandidateMessage):
                await self._on_candidate(message.candidate)
            elif isinstance(message, UnknownMessage):
                self._anomaly(
                    f'received unknown message type {message.type!r}',
                )
            else:
                raise AssertionError('Unreachable.')

    async def _on_request(self) -> None:
        if self._role is Role.answerer:
            self._anomaly('received request but local role is answerer')
        elif self._state is NegotiationState.idle:
            await self._send_offer()
        elif (
            self._state is NegotiationState.offered
            and self._local_description is not None
        ):
            logger.info(f'{self._log_prefix}: resending offer on request')
            await self._send(OfferMessage(self._local_description.sdp))
        else:
            self._anomaly(f'received request in state {self._state.value}')

    async def _set_remote(self, description: SessionDescription) -> None:
        try:
            await self._peer.set_remote_description(description)
        except Exception as e:
            await self._teardown(NegotiationState.failed)
            raise NegotiationError(
                f'Failed to set remote {description.type}.',
            ) from e
        self._remote_description = description

    async def _on_offer(self, message: OfferMessage) -> None:
        if self._role is Role.offerer:
            self._anomaly('received offer but local role is offerer')
            return
        if self._state is not NegotiationState.idle:
            self._anomaly(
                f'received duplicate offer in state {self._state.value}',
            )
            return

        logger.info(f'{self._log_prefix}: received offer')
        await self._set_remote(SessionDescription(message.sdp, 'offer'))
        await self._replay_candidates()

        try:
            answer = await self._peer.create_answer()
        except Exception as e:
            await self._teardown(NegotiationState.failed)
            raise NegotiationError('Failed to create answer.') from e
        if self.closed:
            return
        self._local_description = answer
        self._state = NegotiationState.answered
        logger.info(f'{self._log_prefix}: sending answer')
        await self._send(AnswerMessage(answer.sdp))

    async def _on_answer(self, message: AnswerMessage) -> None:
        if (
            self._role is not Role.offerer
            or self._state is not NegotiationState.offered
        ):
            self._anomaly(
                f'received answer in state {self._state.value} as '
                f'{self._role.value}',
            )
            return

        logger.info(f'{self._log_prefix}: received answer')
        await self._set_remote(SessionDescription(message.sdp, 'answer'))
        if self.closed:
            return
        self._state = NegotiationState.answered
        await self._replay_candidates()

    async def _apply_candidate(self, candidate: IceCandidate) -> None:
        # Candidate failures are logged and never end the session
        try:
            await self._peer.add_ice_candidate(candidate)
        except Exception as e:
            logger.error(
                f'{self._log_prefix}: failed to add remote candidate '
                f'{candidate.candidate!r}: {e!r}',
            )

    async def _on_candidate(self, candidate: IceCandidate) -> None:
        if self._remote_description is not None:
            await self._apply_candidate(candidate)
            return

        if len(self._pending_candidates) >= self._max_pending_candidates:
            self.dropped_candidates += 1
            if self._max_pending_candidates == 0:
                logger.warning(
                    f'{self._log_prefix}: dropping candidate received before '
                    'the remote description',
                )
                return
            self._pending_candidates.popleft()
            logger.warning(
                f'{self._log_prefix}: candidate buffer full, dropped oldest '
                'candidate',
            )
        self._pending_candidates.append(candidate)
        logger.debug(
            f'{self._log_prefix}: deferred candidate until the remote '
            f'description is set ({len(self._pending_candidates)} pending)',
        )

    async def _replay_candidates(self) -> None:
        if self._pending_candidates:
            logger.info(
                f'{self._log_prefix}: applying '
                f'{len(self._pending_candidates)} deferred candidate(s)',
            )
        while self._pending_candidates and not self.closed:
            await self._apply_candidate(self._pending_candidates.popleft())

    async def send_candidate(self, candidate: IceCandidate) -> None:
        """Send a local ICE candidate to the remote peer.

        Candidates produced after the session closed are dropped.
        """
        if self.closed:
            return
        await self._send(CandidateMessage(candidate))

    async def on_connection_state_change(self, state: str) -> None:
        """Update the negotiation from the peer session's connection state.

        A failed connection tears the session down like
        [`close()`][signalrelay.negotiation.NegotiationSession.close] but
        leaves it in the `failed` state.

        Args:
            state: One of `new`, `connecting`, `connected`, `failed`, or
                `closed`.
        """
        if self.closed:
            return
        if state == 'connected':
            logger.info(f'{self._log_prefix}: peer connection established')
            self._state = NegotiationState.connected
        elif state == 'failed':
            logger.warning(f'{self._log_prefix}: peer connection failed')
            await self._teardown(NegotiationState.failed)
        elif state == 'closed':
            await self._teardown(NegotiationState.closed)

    async def close(self, notify: bool = False) -> None:
        """Tear down the session.

        Closes the peer session and media sink. Closing an already closed
        session is a no-op.

        Args:
            notify: Send a bye message to the remote peer first.
        """
        if notify and not self._closing:
            try:
                await self._send(ByeMessage())
            except websockets.exceptions.ConnectionClosed:
                logger.debug(
                    f'{self._log_prefix}: relay connection closed before '
                    'bye could be sent',
                )
        await self._teardown(NegotiationState.closed)

    async def _teardown(self, final_state: NegotiationState) -> None:
        if self._closing:
            return
        self._closing = True
        logger.info(f'{self._log_prefix}: closing session')
        self._pending_candidates.clear()
        self._state = final_state
        try:
            await self._peer.close()
        finally:
            if self._media_sink is not None:
                self._media_sink.close()
