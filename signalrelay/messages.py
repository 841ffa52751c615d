"""Signaling message types exchanged between peers through the relay.

Messages are JSON objects with a `type` discriminant. The relay itself
treats payloads as opaque and only uses this module to classify messages for
logging and to build addressed envelopes; endpoints use it to decode and
validate what they receive.
"""
from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any
from typing import Literal
from typing import Union


class MessageType(enum.Enum):
    """Types of signaling messages supported."""

    request = 'request'
    """Answerer signals readiness to receive an offer."""
    offer = 'offer'
    """Session description from the offerer."""
    answer = 'answer'
    """Session description from the answerer."""
    candidate = 'candidate'
    """One ICE connectivity hint."""
    bye = 'bye'
    """Graceful session termination."""
    disconnect = 'disconnect'
    """Alias of `bye` used by some clients."""


class MessageError(Exception):
    """Base exception type for signaling messages."""

    pass


class MessageDecodeError(MessageError):
    """Exception raised when a message cannot be decoded."""

    pass


class MessageEncodeError(MessageError):
    """Exception raised when a message cannot be encoded."""

    pass


@dataclasses.dataclass(frozen=True)
class SignalingMessage:
    """Base message."""

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON object sent on the wire."""
        raise NotImplementedError


@dataclasses.dataclass(frozen=True)
class RequestMessage(SignalingMessage):
    """Request for the offerer to (re)send its offer."""

    type: Literal['request'] = 'request'

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type}


@dataclasses.dataclass(frozen=True)
class OfferMessage(SignalingMessage):
    """Offerer's local session description.

    Attributes:
        sdp: Session description protocol text.
    """

    sdp: str
    type: Literal['offer'] = 'offer'

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type, 'sdp': self.sdp}


@dataclasses.dataclass(frozen=True)
class AnswerMessage(SignalingMessage):
    """Answerer's local session description.

    Attributes:
        sdp: Session description protocol text.
    """

    sdp: str
    type: Literal['answer'] = 'answer'

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type, 'sdp': self.sdp}


@dataclasses.dataclass(frozen=True)
class IceCandidate:
    """Candidate descriptor carried by a candidate message.

    Attributes:
        candidate: Candidate attribute string (e.g.,
            `#!python 'candidate:1 1 UDP 2122252543 10.0.0.2 49203 typ host'`).
        sdp_mid: Media stream identification tag the candidate belongs to.
        sdp_mline_index: Index of the media line the candidate belongs to.
    """

    candidate: str
    sdp_mid: str | None
    sdp_mline_index: int | None


@dataclasses.dataclass(frozen=True)
class CandidateMessage(SignalingMessage):
    """One connectivity hint."""

    candidate: IceCandidate
    type: Literal['candidate'] = 'candidate'

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'candidate': {
                'candidate': self.candidate.candidate,
                'sdpMid': self.candidate.sdp_mid,
                'sdpMLineIndex': self.candidate.sdp_mline_index,
            },
        }


@dataclasses.dataclass(frozen=True)
class ByeMessage(SignalingMessage):
    """Graceful session termination signal."""

    type: Literal['bye', 'disconnect'] = 'bye'

    def to_dict(self) -> dict[str, Any]:
        return {'type': self.type}


@dataclasses.dataclass(frozen=True)
class UnknownMessage(SignalingMessage):
    """Message with a missing or unrecognized type.

    Attributes:
        data: The decoded JSON object as received.
    """

    data: dict[str, Any] = dataclasses.field(default_factory=dict)

    @property
    def type(self) -> str | None:
        """Raw `type` value of the message, if present."""
        value = self.data.get('type')
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.data)


Message = Union[
    RequestMessage,
    OfferMessage,
    AnswerMessage,
    CandidateMessage,
    ByeMessage,
    UnknownMessage,
]


@dataclasses.dataclass(frozen=True)
class Envelope:
    """Message received from the relay with its optional sender.

    Attributes:
        sender_id: Identifier of the sending participant when the relay
            runs in addressed routing mode, otherwise `None`.
        message: The decoded message.
    """

    sender_id: str | None
    message: SignalingMessage


def _require_str(data: dict[str, Any], key: str, type_: str) -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MessageDecodeError(
            f'Message of type {type_} requires a string {key} field.',
        )
    return value


def _decode_candidate(data: dict[str, Any]) -> CandidateMessage:
    candidate = data.get('candidate')
    if not isinstance(candidate, dict):
        raise MessageDecodeError(
            'Message of type candidate requires a candidate object.',
        )

    missing = {'candidate', 'sdpMid', 'sdpMLineIndex'} - set(candidate)
    if missing:
        raise MessageDecodeError(
            'Candidate descriptor is missing the fields: '
            f'{", ".join(sorted(missing))}.',
        )

    value = candidate['candidate']
    sdp_mid = candidate['sdpMid']
    index = candidate['sdpMLineIndex']
    if (
        not isinstance(value, str)
        or not (sdp_mid is None or isinstance(sdp_mid, str))
        # bool is a subclass of int but is never a valid line index
        or not (index is None or type(index) is int)
    ):
        raise MessageDecodeError('Candidate descriptor has invalid types.')

    return CandidateMessage(IceCandidate(value, sdp_mid, index))


def message_from_dict(data: dict[str, Any]) -> SignalingMessage:
    """Convert a decoded JSON object into the matching message type.

    Objects with a missing or unrecognized `type` become an
    [`UnknownMessage`][signalrelay.messages.UnknownMessage].

    Raises:
        MessageDecodeError: If a recognized message type is missing
            required fields.
    """
    type_ = data.get('type')
    try:
        message_type = MessageType(type_)
    except ValueError:
        return UnknownMessage(data)

    if message_type is MessageType.request:
        return RequestMessage()
    elif message_type is MessageType.offer:
        return OfferMessage(_require_str(data, 'sdp', 'offer'))
    elif message_type is MessageType.answer:
        return AnswerMessage(_require_str(data, 'sdp', 'answer'))
    elif message_type is MessageType.candidate:
        return _decode_candidate(data)
    elif message_type is MessageType.bye:
        return ByeMessage('bye')
    elif message_type is MessageType.disconnect:
        return ByeMessage('disconnect')
    else:
        raise AssertionError('Unreachable.')


def _load_object(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MessageDecodeError('Message is not valid UTF-8.') from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MessageDecodeError('Failed to load string as JSON.') from e

    if not isinstance(data, dict):
        raise MessageDecodeError(
            f'Expected a JSON object but got {type(data).__name__}.',
        )
    return data


def decode_message(raw: str | bytes) -> SignalingMessage:
    """Decode JSON text into the correct message type.

    Args:
        raw: JSON string (or UTF-8 bytes) to decode.

    Returns:
        Parsed message.

    Raises:
        MessageDecodeError: If the message cannot be decoded.
    """
    return message_from_dict(_load_object(raw))


def encode_message(message: SignalingMessage) -> str:
    """Encode message as JSON string.

    Args:
        message: Message to JSON encode.

    Raises:
        MessageEncodeError: If the message cannot be JSON encoded.
    """
    if not isinstance(message, SignalingMessage):
        raise MessageEncodeError(
            f'Message is not an instance of {SignalingMessage.__name__}. '
            f'Got {type(message).__name__}.',
        )

    try:
        return json.dumps(message.to_dict())
    except (TypeError, ValueError) as e:
        raise MessageEncodeError('Error encoding message.') from e


def wrap_envelope(sender_id: str, raw: str | bytes) -> str:
    """Wrap a raw payload with the identifier of its sender.

    The original JSON text is embedded as is so the payload is preserved
    byte for byte. Payloads that are not JSON are embedded as a JSON string.

    Args:
        sender_id: Identifier of the sending participant.
        raw: Payload received from the sender.

    Returns:
        JSON text of the form `{"senderId": ..., "message": ...}`.

    Raises:
        MessageEncodeError: If `raw` is bytes that are not valid UTF-8.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MessageEncodeError(
                'Cannot wrap binary payload that is not valid UTF-8.',
            ) from e

    try:
        json.loads(raw)
    except json.JSONDecodeError:
        body = json.dumps(raw)
    else:
        body = raw

    return f'{{"senderId": {json.dumps(sender_id)}, "message": {body}}}'


def decode_inbound(raw: str | bytes) -> Envelope:
    """Decode a payload received from the relay.

    Payloads wrapped by the relay in addressed routing mode are unwrapped,
    otherwise the sender is unknown.

    Raises:
        MessageDecodeError: If the payload or wrapped message cannot be
            decoded.
    """
    data = _load_object(raw)
    if 'type' not in data and 'senderId' in data and 'message' in data:
        sender_id = data['senderId']
        inner = data['message']
        if isinstance(inner, str):
            inner = _load_object(inner)
        elif not isinstance(inner, dict):
            raise MessageDecodeError(
                'Envelope message must be a JSON object.',
            )
        return Envelope(
            sender_id=None if sender_id is None else str(sender_id),
            message=message_from_dict(inner),
        )

    return Envelope(sender_id=None, message=message_from_dict(data))
