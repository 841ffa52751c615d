from __future__ import annotations

import asyncio
import json
import logging
from unittest import mock

import pytest
from websockets.protocol import State

from signalrelay.registry import Registry
from signalrelay.router import Router
from testing.websocket import mock_websocket


def _drain(participant) -> list[object]:
    items = []
    while not participant.outbox.empty():
        items.append(participant.outbox.get_nowait())
    return items


def test_unknown_routing_mode() -> None:
    with pytest.raises(ValueError, match='Unknown routing mode'):
        Router(Registry(), 'multicast')  # type: ignore[arg-type]


@pytest.mark.asyncio()
async def test_broadcast_skips_sender() -> None:
    registry = Registry('anonymous')
    router = Router(registry, 'broadcast')
    participants = [
        await registry.admit(None, mock_websocket()) for _ in range(3)
    ]
    sender = participants[0]

    report = await router.route(sender, '{"type": "offer", "sdp": "x"}')

    assert sender.name not in report.delivered
    assert len(report.delivered) == 2
    assert report.failed == {}
    assert _drain(sender) == []
    for participant in participants[1:]:
        assert _drain(participant) == ['{"type": "offer", "sdp": "x"}']


@pytest.mark.asyncio()
async def test_broadcast_forwards_bytes_verbatim() -> None:
    registry = Registry('identified')
    router = Router(registry)
    a = await registry.admit('A', mock_websocket())
    b = await registry.admit('B', mock_websocket())

    await router.route(a, b'\x00\x01binary')
    assert _drain(b) == [b'\x00\x01binary']


@pytest.mark.asyncio()
async def test_route_skips_dead_participants() -> None:
    registry = Registry('identified')
    router = Router(registry)
    a = await registry.admit('A', mock_websocket())
    b = await registry.admit('B', mock_websocket())
    b.websocket.state = State.CLOSING

    report = await router.route(a, 'message')
    assert report.delivered == []
    assert report.failed == {}
    assert _drain(b) == []


@pytest.mark.asyncio()
async def test_partial_failure_isolation(caplog) -> None:
    caplog.set_level(logging.WARNING)
    registry = Registry('identified')
    router = Router(registry)
    sender = await registry.admit('sender', mock_websocket())
    recipients = [
        await registry.admit(f'r{i}', mock_websocket()) for i in range(5)
    ]
    failing = recipients[2]

    with mock.patch.object(
        failing.outbox,
        'put_nowait',
        side_effect=asyncio.QueueFull,
    ):
        report = await router.route(sender, 'message')

    assert list(report.failed) == ['r2']
    assert sorted(report.delivered) == ['r0', 'r1', 'r3', 'r4']
    for recipient in recipients:
        if recipient is not failing:
            assert _drain(recipient) == ['message']
    assert any(
        'Failed to deliver message from sender to r2' in record.message
        for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_full_outbox_only_affects_that_recipient() -> None:
    registry = Registry('identified', max_pending_messages=1)
    router = Router(registry)
    a = await registry.admit('A', mock_websocket())
    b = await registry.admit('B', mock_websocket())
    c = await registry.admit('C', mock_websocket())
    b.deliver('backlog')

    report = await router.route(a, 'message')
    assert report.delivered == ['C']
    assert 'B' in report.failed
    assert _drain(c) == ['message']


@pytest.mark.asyncio()
async def test_addressed_wraps_with_sender() -> None:
    registry = Registry('identified')
    router = Router(registry, 'addressed')
    a = await registry.admit('A', mock_websocket())
    b = await registry.admit('B', mock_websocket())
    raw = '{"type":"answer","sdp":"v=0\\r\\n"}'

    report = await router.route(a, raw)
    assert report.delivered == ['B']

    (payload,) = _drain(b)
    assert isinstance(payload, str)
    assert raw in payload
    assert json.loads(payload) == {
        'senderId': 'A',
        'message': json.loads(raw),
    }


@pytest.mark.asyncio()
async def test_addressed_without_identifier_is_dropped(caplog) -> None:
    caplog.set_level(logging.ERROR)
    registry = Registry('anonymous')
    router = Router(registry, 'addressed')
    a = await registry.admit(None, mock_websocket())
    b = await registry.admit(None, mock_websocket())

    report = await router.route(a, 'message')
    assert report.delivered == []
    assert _drain(b) == []
    assert any('has no identifier' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_addressed_invalid_utf8_is_dropped(caplog) -> None:
    caplog.set_level(logging.ERROR)
    registry = Registry('identified')
    router = Router(registry, 'addressed')
    a = await registry.admit('A', mock_websocket())
    await registry.admit('B', mock_websocket())

    report = await router.route(a, b'\xff')
    assert report.delivered == []
    assert any('Failed to wrap message' in r.message for r in caplog.records)


@pytest.mark.asyncio()
async def test_route_after_removal_reaches_nobody() -> None:
    registry = Registry('identified')
    router = Router(registry)
    a = await registry.admit('A', mock_websocket())
    b = await registry.admit('B', mock_websocket())
    await registry.remove(b)

    report = await router.route(a, 'message')
    assert report.delivered == []
    assert report.failed == {}
    await asyncio.sleep(0)
    assert _drain(b) == []
