"""Fake peer sessions and media sinks for negotiation tests."""
from __future__ import annotations

from signalrelay.exceptions import NegotiationError
from signalrelay.messages import IceCandidate
from signalrelay.negotiation import SessionDescription


class FakePeerSession:
    """Peer session that records the calls made by a negotiation."""

    def __init__(self, name: str = 'peer') -> None:
        self.name = name
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.candidates: list[IceCandidate] = []
        self.close_calls = 0

    async def create_offer(self) -> SessionDescription:
        self.local_description = SessionDescription(
            f'v=0 offer from {self.name}',
            'offer',
        )
        return self.local_description

    async def create_answer(self) -> SessionDescription:
        if self.remote_description is None:
            raise NegotiationError('Cannot answer without an offer.')
        self.local_description = SessionDescription(
            f'v=0 answer from {self.name}',
            'answer',
        )
        return self.local_description

    async def set_remote_description(
        self,
        description: SessionDescription,
    ) -> None:
        self.remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if self.remote_description is None:
            raise AssertionError('Candidate applied before remote description')
        if candidate.candidate == 'bad':
            raise NegotiationError('Malformed candidate.')
        self.candidates.append(candidate)

    async def close(self) -> None:
        self.close_calls += 1


class FakeMediaSink:
    """Media sink that records writes and closes."""

    def __init__(self) -> None:
        self.data: list[bytes | str] = []
        self.close_calls = 0

    def write(self, data: bytes | str) -> None:
        self.data.append(data)

    def close(self) -> None:
        self.close_calls += 1
