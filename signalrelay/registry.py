"""Registry of participants connected to a relay server."""
from __future__ import annotations

import asyncio
import dataclasses
import datetime
import logging
from typing import Hashable
from typing import Literal
from typing import Union

import websockets.exceptions
from websockets.asyncio.server import ServerConnection
from websockets.frames import CloseCode
from websockets.protocol import State

from signalrelay.exceptions import DeliveryError
from signalrelay.exceptions import DuplicateIdentifierError
from signalrelay.exceptions import MissingIdentifierError

logger = logging.getLogger(__name__)

AdmissionMode = Literal['anonymous', 'identified']
Payload = Union[str, bytes]


def _utc_current_time() -> datetime.datetime:
    # dataclasses.field's default_factory requires a zero argument callable
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass(frozen=True, eq=False)
class Participant:
    """One admitted websocket connection.

    Participants compare by identity so a reconnect using the same
    identifier is always a distinct participant.

    Attributes:
        identifier: Identifier supplied by the client or `None` when
            admitted anonymously.
        websocket: WebSocket connection to the client.
        outbox: Messages waiting to be written to the websocket by
            [`pump()`][signalrelay.registry.Participant.pump].
        created: Time the participant was admitted.
    """

    identifier: str | None
    websocket: ServerConnection
    outbox: asyncio.Queue[Payload] = dataclasses.field(
        default_factory=asyncio.Queue,
        repr=False,
    )
    created: datetime.datetime = dataclasses.field(
        default_factory=_utc_current_time,
    )

    @property
    def key(self) -> Hashable:
        """Registry key: the identifier or the connection handle itself."""
        return self.websocket if self.identifier is None else self.identifier

    @property
    def alive(self) -> bool:
        """If the underlying connection is open."""
        return self.websocket.state is State.OPEN

    @property
    def name(self) -> str:
        """Identifier or remote address used in log messages."""
        if self.identifier is not None:
            return self.identifier
        return f'anonymous@{self.websocket.remote_address}'

    def __repr__(self) -> str:
        created = self.created.strftime('%Y-%m-%d %H:%M:%S %Z')
        address = str(self.websocket.remote_address)
        return (
            f'{self.__class__.__name__}(identifier={self.identifier}, '
            f'address={address}, created={created})'
        )

    def deliver(self, payload: Payload) -> None:
        """Queue a payload for sending without waiting on the connection.

        Raises:
            DeliveryError: If the connection is no longer open or the
                outbox is full.
        """
        if not self.alive:
            raise DeliveryError(f'Connection to {self.name} is not open.')
        try:
            self.outbox.put_nowait(payload)
        except asyncio.QueueFull as e:
            raise DeliveryError(
                f'Outbox of {self.name} is full '
                f'({self.outbox.maxsize} pending messages).',
            ) from e

    async def pump(self) -> None:
        """Write queued payloads to the websocket until it closes.

        An unexpected send error closes only this participant's connection
        (code 1011) so the relay keeps serving everyone else.
        """
        while True:
            payload = await self.outbox.get()
            try:
                await self.websocket.send(payload)
            except (websockets.exceptions.ConnectionClosed, OSError) as e:
                logger.error(
                    f'Failed to send message to {self.name}, dropping '
                    f'{self.outbox.qsize() + 1} pending message(s): {e!r}',
                )
                return
            except Exception:
                logger.exception(
                    f'Unexpected error sending message to {self.name}, '
                    'closing its connection',
                )
                await self.websocket.close(
                    CloseCode.INTERNAL_ERROR,
                    reason='Relay failed to send message.',
                )
                return


class Registry:
    """Set of currently connected participants.

    All membership changes go through
    [`admit()`][signalrelay.registry.Registry.admit] and
    [`remove()`][signalrelay.registry.Registry.remove], and both (along with
    [`snapshot()`][signalrelay.registry.Registry.snapshot]) are serialized
    by a single lock.

    Args:
        admission: `#!python 'identified'` requires every connection to
            supply a unique identifier. `#!python 'anonymous'` admits every
            connection keyed by its handle.
        max_pending_messages: Size of each participant's outbox. Zero or
            less means unbounded.
    """

    def __init__(
        self,
        admission: AdmissionMode = 'anonymous',
        max_pending_messages: int = 256,
    ) -> None:
        if admission not in ('anonymous', 'identified'):
            raise ValueError(f'Unknown admission mode "{admission}".')
        self._admission = admission
        self._max_pending_messages = max_pending_messages
        self._participants: dict[Hashable, Participant] = {}
        self._lock = asyncio.Lock()

    @property
    def admission(self) -> AdmissionMode:
        """Admission mode."""
        return self._admission

    def __len__(self) -> int:
        return len(self._participants)

    def get(self, identifier: str) -> Participant | None:
        """Get a participant by identifier."""
        return self._participants.get(identifier, None)

    async def admit(
        self,
        identifier: str | None,
        websocket: ServerConnection,
    ) -> Participant:
        """Admit a new connection.

        Args:
            identifier: Identifier supplied by the client. Ignored in
                anonymous mode.
            websocket: Connection to admit.

        Returns:
            The new participant.

        Raises:
            MissingIdentifierError: If identifiers are required and none
                was supplied.
            DuplicateIdentifierError: If a live participant already holds
                the identifier.
        """
        if self._admission == 'anonymous':
            identifier = None
        elif not identifier:
            raise MissingIdentifierError('Missing client identifier.')

        participant = Participant(
            identifier=identifier,
            websocket=websocket,
            outbox=asyncio.Queue(maxsize=max(self._max_pending_messages, 0)),
        )

        async with self._lock:
            existing = self._participants.get(participant.key)
            if existing is not None:
                if existing.alive:
                    raise DuplicateIdentifierError(
                        f'Identifier "{identifier}" is already connected.',
                    )
                logger.info(
                    f'Replacing closed participant {existing.name} that '
                    'has not been removed yet',
                )
            self._participants[participant.key] = participant
            size = len(self._participants)

        logger.info(
            f'Admitted participant {participant.name}. '
            f'Total participants: {size}',
        )
        return participant

    async def remove(self, target: Participant | str) -> bool:
        """Remove a participant.

        Removing an absent participant is a no-op. When given a
        [`Participant`][signalrelay.registry.Participant], the entry is only
        removed if it is that exact participant so a stale handle never
        evicts a newer connection using the same identifier.

        Args:
            target: Participant or identifier to remove.

        Returns:
            If a participant was removed.
        """
        async with self._lock:
            if isinstance(target, Participant):
                key = target.key
                if self._participants.get(key) is not target:
                    return False
            else:
                key = target
                if key not in self._participants:
                    return False
            participant = self._participants.pop(key)
            size = len(self._participants)

        logger.info(
            f'Removed participant {participant.name}. '
            f'Total participants: {size}',
        )
        return True

    async def snapshot(self) -> list[Participant]:
        """Get the participants currently registered."""
        async with self._lock:
            return list(self._participants.values())
