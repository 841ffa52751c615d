from __future__ import annotations

import json

import pytest

from signalrelay.messages import AnswerMessage
from signalrelay.messages import ByeMessage
from signalrelay.messages import CandidateMessage
from signalrelay.messages import decode_inbound
from signalrelay.messages import decode_message
from signalrelay.messages import encode_message
from signalrelay.messages import IceCandidate
from signalrelay.messages import MessageDecodeError
from signalrelay.messages import MessageEncodeError
from signalrelay.messages import OfferMessage
from signalrelay.messages import RequestMessage
from signalrelay.messages import UnknownMessage
from signalrelay.messages import wrap_envelope

CANDIDATE = {
    'candidate': 'candidate:1 1 UDP 2122252543 10.0.0.2 49203 typ host',
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}


@pytest.mark.parametrize(
    ('raw', 'expected'),
    (
        ('{"type": "request"}', RequestMessage()),
        ('{"type": "offer", "sdp": "v=0"}', OfferMessage('v=0')),
        ('{"type": "answer", "sdp": "v=0"}', AnswerMessage('v=0')),
        ('{"type": "bye"}', ByeMessage('bye')),
        ('{"type": "disconnect"}', ByeMessage('disconnect')),
    ),
)
def test_decode_known_types(raw: str, expected: object) -> None:
    assert decode_message(raw) == expected


def test_decode_candidate() -> None:
    raw = json.dumps({'type': 'candidate', 'candidate': CANDIDATE})
    message = decode_message(raw.encode())
    assert isinstance(message, CandidateMessage)
    assert message.candidate == IceCandidate(
        CANDIDATE['candidate'],
        '0',
        0,
    )
    assert json.loads(encode_message(message)) == json.loads(raw)


def test_decode_candidate_allows_null_mid() -> None:
    candidate = dict(CANDIDATE, sdpMid=None)
    message = decode_message(
        json.dumps({'type': 'candidate', 'candidate': candidate}),
    )
    assert isinstance(message, CandidateMessage)
    assert message.candidate.sdp_mid is None


@pytest.mark.parametrize(
    'candidate',
    (
        None,
        'candidate:1',
        {'candidate': 'x', 'sdpMid': '0'},
        {'candidate': 1, 'sdpMid': '0', 'sdpMLineIndex': 0},
        {'candidate': 'x', 'sdpMid': '0', 'sdpMLineIndex': True},
    ),
)
def test_decode_bad_candidate(candidate: object) -> None:
    raw = json.dumps({'type': 'candidate', 'candidate': candidate})
    with pytest.raises(MessageDecodeError):
        decode_message(raw)


def test_decode_unknown_type() -> None:
    message = decode_message('{"type": "ping", "value": 1}')
    assert isinstance(message, UnknownMessage)
    assert message.type == 'ping'
    assert message.to_dict() == {'type': 'ping', 'value': 1}

    message = decode_message('{"value": 1}')
    assert isinstance(message, UnknownMessage)
    assert message.type is None


@pytest.mark.parametrize(
    'raw',
    ('not json', '[1, 2]', b'\xff\xfe', '{"type": "offer"}'),
)
def test_decode_errors(raw: str | bytes) -> None:
    with pytest.raises(MessageDecodeError):
        decode_message(raw)


def test_encode_bad_type() -> None:
    with pytest.raises(MessageEncodeError):
        encode_message(object())  # type: ignore[arg-type]


def test_encode_unserializable_unknown() -> None:
    with pytest.raises(MessageEncodeError):
        encode_message(UnknownMessage({'type': 'x', 'value': object()}))


def test_wrap_envelope_preserves_payload() -> None:
    raw = '{"type":"offer",  "sdp":"v=0\\r\\n"}'
    envelope = wrap_envelope('A', raw)

    assert raw in envelope
    data = json.loads(envelope)
    assert data == {'senderId': 'A', 'message': json.loads(raw)}


def test_wrap_envelope_non_json_payload() -> None:
    envelope = wrap_envelope('A', b'hello')
    assert json.loads(envelope) == {'senderId': 'A', 'message': 'hello'}


def test_wrap_envelope_invalid_utf8() -> None:
    with pytest.raises(MessageEncodeError):
        wrap_envelope('A', b'\xff')


def test_decode_inbound_envelope() -> None:
    envelope = decode_inbound(wrap_envelope('A', '{"type": "request"}'))
    assert envelope.sender_id == 'A'
    assert envelope.message == RequestMessage()


def test_decode_inbound_plain_message() -> None:
    envelope = decode_inbound('{"type": "bye"}')
    assert envelope.sender_id is None
    assert envelope.message == ByeMessage()


def test_decode_inbound_bad_envelope() -> None:
    with pytest.raises(MessageDecodeError):
        decode_inbound('{"senderId": "A", "message": 3}')
    with pytest.raises(MessageDecodeError):
        decode_inbound(wrap_envelope('A', b'not json'))
