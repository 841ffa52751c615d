"""Route messages from one participant to the others."""
from __future__ import annotations

import dataclasses
import logging
from typing import Literal

from signalrelay.exceptions import DeliveryError
from signalrelay.messages import MessageEncodeError
from signalrelay.messages import wrap_envelope
from signalrelay.registry import Participant
from signalrelay.registry import Payload
from signalrelay.registry import Registry

logger = logging.getLogger(__name__)

RoutingMode = Literal['broadcast', 'addressed']


@dataclasses.dataclass
class DeliveryReport:
    """Outcome of routing one message.

    Attributes:
        delivered: Names of participants the message was queued for.
        failed: Mapping of participant name to the reason delivery failed.
    """

    delivered: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, str] = dataclasses.field(default_factory=dict)


class Router:
    """Forward messages between participants of a registry.

    Delivery to each recipient is independent: a failure for one recipient
    is logged and recorded in the returned
    [`DeliveryReport`][signalrelay.router.DeliveryReport] but never stops
    delivery to the others or raises back to the sender. Messages are only
    queued here; each participant's writer task performs the send so a slow
    recipient never blocks the sender.

    Args:
        registry: Registry to get recipients from.
        mode: `#!python 'broadcast'` forwards payloads unchanged.
            `#!python 'addressed'` wraps payloads in an envelope carrying
            the sender's identifier.
    """

    def __init__(
        self,
        registry: Registry,
        mode: RoutingMode = 'broadcast',
    ) -> None:
        if mode not in ('broadcast', 'addressed'):
            raise ValueError(f'Unknown routing mode "{mode}".')
        self._registry = registry
        self._mode = mode

    @property
    def mode(self) -> RoutingMode:
        """Routing mode."""
        return self._mode

    def _payload(self, sender: Participant, raw: Payload) -> Payload | None:
        if self._mode == 'broadcast':
            return raw

        if sender.identifier is None:
            logger.error(
                f'Cannot address message from {sender.name} because it '
                'has no identifier',
            )
            return None
        try:
            return wrap_envelope(sender.identifier, raw)
        except MessageEncodeError as e:
            logger.error(f'Failed to wrap message from {sender.name}: {e}')
            return None

    async def route(self, sender: Participant, raw: Payload) -> DeliveryReport:
        """Deliver a message to every other live participant.

        Args:
            sender: Participant the message was received from.
            raw: Message as received from the sender.

        Returns:
            Report of which recipients the message was queued for.
        """
        report = DeliveryReport()
        payload = self._payload(sender, raw)
        if payload is None:
            return report

        for participant in await self._registry.snapshot():
            if participant is sender or not participant.alive:
                continue
            try:
                participant.deliver(payload)
            except DeliveryError as e:
                logger.warning(
                    f'Failed to deliver message from {sender.name} to '
                    f'{participant.name}: {e}',
                )
                report.failed[participant.name] = str(e)
            else:
                report.delivered.append(participant.name)

        logger.debug(
            f'Routed message from {sender.name} to '
            f'{len(report.delivered)} participant(s)',
        )
        return report
