from __future__ import annotations

import asyncio
import logging
import time
from unittest import mock

import pytest
from aiortc.exceptions import InvalidStateError

from colormatch.p2p.connection import candidate_from_dict
from colormatch.p2p.connection import candidate_to_dict
from colormatch.p2p.connection import ConnectionCoordinator
from colormatch.p2p.connection import CoordinatorState
from colormatch.p2p.session import Role
from testing.engine import ANSWER_SDP
from testing.engine import FakeEngineFactory
from testing.engine import make_candidate
from testing.engine import OFFER_SDP
from testing.engine import REMOTE_CANDIDATE

OFFER = {'type': 'offer', 'sdp': OFFER_SDP}
ANSWER = {'type': 'answer', 'sdp': ANSWER_SDP}


def test_candidate_dict_conversion() -> None:
    candidate = make_candidate(50123)
    data = candidate_to_dict(candidate)
    assert data == {
        'candidate': (
            'candidate:50123 1 udp 2130706431 10.0.0.1 50123 typ host'
        ),
        'sdpMLineIndex': 0,
        'sdpMid': '0',
    }

    parsed = candidate_from_dict(data)
    assert parsed.ip == '10.0.0.1'
    assert parsed.port == 50123
    assert parsed.sdpMid == '0'
    assert parsed.sdpMLineIndex == 0


def test_candidate_from_dict_without_prefix() -> None:
    line = REMOTE_CANDIDATE['candidate'][len('candidate:') :]
    parsed = candidate_from_dict({'candidate': line})
    assert parsed.port == 54321
    assert parsed.sdpMid is None


@pytest.mark.parametrize(
    'data',
    (
        {'candidate': 'candidate:garbage'},
        {'candidate': 'candidate:1 1 udp notanumber 10.0.0.1 1 typ host'},
        {'candidate': 5},
    ),
)
def test_candidate_from_dict_malformed(data) -> None:
    with pytest.raises(ValueError):
        candidate_from_dict(data)


@pytest.mark.asyncio()
async def test_initial_state() -> None:
    coordinator = ConnectionCoordinator(FakeEngineFactory())
    assert coordinator.state is CoordinatorState.idle
    assert coordinator.role is None
    assert coordinator.connection_state is None
    assert coordinator.channel_state is None
    assert not coordinator.ready
    assert coordinator.local_description is None
    assert coordinator.remote_description is None
    assert coordinator.pending_candidates == 0
    assert not coordinator.send({'color': '#ffffff'})
    assert 'role=pending' in repr(coordinator)


@pytest.mark.asyncio()
async def test_begin_as_offerer() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(
        factory,
        ice_servers=['stun:stun.example.com:3478'],
        channel_label='test',
    )
    states: list[CoordinatorState] = []
    coordinator.on_state_change(states.append)

    offer = await coordinator.begin_as_offerer()

    assert offer == OFFER
    assert coordinator.local_description == OFFER
    assert coordinator.role is Role.offerer
    assert coordinator.state is CoordinatorState.offer_ready
    assert states == [
        CoordinatorState.creating_offer,
        CoordinatorState.gathering_ice,
        CoordinatorState.offer_ready,
    ]

    engine = factory.engine
    assert engine.calls == [
        'createDataChannel',
        'createOffer',
        'setLocalDescription',
    ]
    assert engine.channels[0].label == 'test'
    assert engine.channels[0].ordered
    assert engine.configuration is not None
    servers = engine.configuration.iceServers
    assert [server.urls for server in servers] == [
        'stun:stun.example.com:3478',
    ]
    assert coordinator.channel_state == 'connecting'

    await coordinator.close()


@pytest.mark.asyncio()
async def test_begin_twice() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    assert await coordinator.begin_as_offerer() is not None
    assert await coordinator.begin_as_offerer() is None
    assert await coordinator.begin_as_answerer(OFFER) is None
    assert len(factory.engines) == 1
    await coordinator.close()


@pytest.mark.asyncio()
async def test_local_candidates_emitted() -> None:
    factory = FakeEngineFactory(
        local_candidates=[make_candidate(50001), make_candidate(50002)],
    )
    coordinator = ConnectionCoordinator(factory)
    candidates: list[dict] = []
    coordinator.on_ice_candidate(candidates.append)

    await coordinator.begin_as_offerer()

    assert len(candidates) == 2
    assert all(c['candidate'].startswith('candidate:') for c in candidates)
    ports = [candidate_from_dict(c).port for c in candidates]
    assert ports == [50001, 50002]
    await coordinator.close()


@pytest.mark.asyncio()
async def test_gathering_timeout(caplog) -> None:
    caplog.set_level(logging.WARNING)
    factory = FakeEngineFactory(
        local_candidates=[make_candidate()],
        complete_gathering=False,
    )
    coordinator = ConnectionCoordinator(factory, gathering_timeout=0.1)

    start = time.monotonic()
    offer = await coordinator.begin_as_offerer()
    elapsed = time.monotonic() - start

    # The offer is still produced with the candidates gathered so far
    assert offer == OFFER
    assert coordinator.state is CoordinatorState.offer_ready
    assert 0.09 <= elapsed < 2
    assert any(
        'did not complete within' in record.message
        for record in caplog.records
    )
    await coordinator.close()


@pytest.mark.asyncio()
async def test_gathering_completes_while_waiting() -> None:
    factory = FakeEngineFactory(complete_gathering=False)
    coordinator = ConnectionCoordinator(factory, gathering_timeout=10)

    task = asyncio.create_task(coordinator.begin_as_offerer())
    while coordinator.state is not CoordinatorState.gathering_ice:
        await asyncio.sleep(0.01)

    await factory.engine.finish_gathering()
    offer = await asyncio.wait_for(task, 1)

    assert offer == OFFER
    assert coordinator.state is CoordinatorState.offer_ready
    await coordinator.close()


@pytest.mark.asyncio()
async def test_begin_as_offerer_engine_failure(caplog) -> None:
    caplog.set_level(logging.ERROR)
    factory = FakeEngineFactory(fail_on=['createOffer'])
    coordinator = ConnectionCoordinator(factory)

    assert await coordinator.begin_as_offerer() is None
    assert coordinator.state is CoordinatorState.failed
    assert any(
        'failed to create offer' in record.message
        for record in caplog.records
    )
    await coordinator.close()


@pytest.mark.asyncio()
async def test_begin_as_answerer() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    states: list[CoordinatorState] = []
    coordinator.on_state_change(states.append)

    answer = await coordinator.begin_as_answerer(OFFER)

    assert answer == ANSWER
    assert coordinator.role is Role.answerer
    assert coordinator.remote_description == OFFER
    assert coordinator.local_description == ANSWER
    assert states == [
        CoordinatorState.received_offer,
        CoordinatorState.creating_answer,
        CoordinatorState.gathering_ice,
        CoordinatorState.answer_ready,
    ]
    # The answerer never creates a channel
    assert factory.engine.calls == [
        'setRemoteDescription',
        'createAnswer',
        'setLocalDescription',
    ]
    assert coordinator.channel_state is None
    await coordinator.close()


@pytest.mark.parametrize(
    'offer',
    ({'sdp': OFFER_SDP}, {'type': 'bogus', 'sdp': OFFER_SDP}),
)
@pytest.mark.asyncio()
async def test_begin_as_answerer_bad_offer(offer) -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)

    assert await coordinator.begin_as_answerer(offer) is None
    assert coordinator.state is CoordinatorState.failed
    assert len(factory.engines) == 0
    await coordinator.close()


@pytest.mark.asyncio()
async def test_begin_as_answerer_engine_failure() -> None:
    factory = FakeEngineFactory(fail_on=['setRemoteDescription'])
    coordinator = ConnectionCoordinator(factory)

    assert await coordinator.begin_as_answerer(OFFER) is None
    assert coordinator.state is CoordinatorState.failed
    await coordinator.close()


@pytest.mark.asyncio()
async def test_answerer_accepts_channel() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    channel_states: list[str] = []
    coordinator.on_channel_state_change(channel_states.append)

    await coordinator.begin_as_answerer(OFFER)
    channel = await factory.engine.announce_channel()

    assert coordinator.ready
    assert channel_states == ['open']
    assert await coordinator.wait_for_channel(timeout=0.1)

    # Only the first announced channel is used
    other = await factory.engine.announce_channel('other')
    assert coordinator.send({'x': 1})
    assert len(channel.sent) == 1
    assert other.sent == []
    await coordinator.close()


@pytest.mark.asyncio()
async def test_answerer_accepts_channel_before_open() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)

    await coordinator.begin_as_answerer(OFFER)
    channel = await factory.engine.announce_channel(open_=False)
    assert not coordinator.ready

    await channel.open()
    assert coordinator.ready
    await coordinator.close()


@pytest.mark.asyncio()
async def test_complete_with_remote_description() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)

    await coordinator.begin_as_offerer()
    await coordinator.expect_answer()
    assert coordinator.state is CoordinatorState.awaiting_answer

    assert await coordinator.complete_with_remote_description(ANSWER)
    assert coordinator.remote_description == ANSWER
    assert coordinator.state is CoordinatorState.connecting
    await coordinator.close()


@pytest.mark.asyncio()
async def test_complete_without_engine(caplog) -> None:
    caplog.set_level(logging.WARNING)
    coordinator = ConnectionCoordinator(FakeEngineFactory())

    assert not await coordinator.complete_with_remote_description(ANSWER)
    assert coordinator.state is CoordinatorState.idle
    assert any(
        'no peer connection' in record.message for record in caplog.records
    )


@pytest.mark.asyncio()
async def test_complete_engine_rejects() -> None:
    factory = FakeEngineFactory(fail_on=['setRemoteDescription'])
    coordinator = ConnectionCoordinator(factory)

    await coordinator.begin_as_offerer()
    assert not await coordinator.complete_with_remote_description(ANSWER)
    assert coordinator.state is CoordinatorState.offer_ready
    assert not await coordinator.complete_with_remote_description(
        {'type': 'answer'},
    )
    await coordinator.close()


@pytest.mark.asyncio()
async def test_candidate_before_remote_description_is_queued() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_offerer()
    engine = factory.engine

    assert not await coordinator.submit_remote_ice_candidate(REMOTE_CANDIDATE)
    assert coordinator.pending_candidates == 1
    assert engine.added_candidates == []

    assert await coordinator.complete_with_remote_description(ANSWER)
    assert coordinator.pending_candidates == 0
    assert len(engine.added_candidates) == 1
    assert engine.added_candidates[0].port == 54321
    assert engine.calls.index('setRemoteDescription') < engine.calls.index(
        'addIceCandidate',
    )

    # Candidates after the remote description go straight to the engine
    assert await coordinator.submit_remote_ice_candidate(REMOTE_CANDIDATE)
    assert len(engine.added_candidates) == 2
    await coordinator.close()


@pytest.mark.asyncio()
async def test_candidate_before_engine_is_queued() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)

    assert not await coordinator.submit_remote_ice_candidate(REMOTE_CANDIDATE)
    assert coordinator.pending_candidates == 1

    await coordinator.begin_as_answerer(OFFER)
    assert coordinator.pending_candidates == 0
    assert factory.engine.calls == [
        'setRemoteDescription',
        'addIceCandidate',
        'createAnswer',
        'setLocalDescription',
    ]
    await coordinator.close()


@pytest.mark.asyncio()
async def test_candidate_rejected_by_engine() -> None:
    factory = FakeEngineFactory(fail_on=['addIceCandidate'])
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_answerer(OFFER)

    assert not await coordinator.submit_remote_ice_candidate(REMOTE_CANDIDATE)
    assert coordinator.state is CoordinatorState.answer_ready
    await coordinator.close()


@pytest.mark.parametrize(
    'candidate',
    (
        {},
        {'candidate': 5},
        {'candidate': 'candidate:not a candidate'},
    ),
)
@pytest.mark.asyncio()
async def test_malformed_candidate_discarded(candidate) -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_answerer(OFFER)

    assert not await coordinator.submit_remote_ice_candidate(candidate)
    assert coordinator.pending_candidates == 0
    assert factory.engine.added_candidates == []
    await coordinator.close()


@pytest.mark.asyncio()
async def test_candidate_after_close() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_answerer(OFFER)
    await coordinator.close()

    assert not await coordinator.submit_remote_ice_candidate(REMOTE_CANDIDATE)
    assert coordinator.pending_candidates == 0


@pytest.mark.parametrize(
    ('engine_state', 'expected'),
    (
        ('connecting', CoordinatorState.connecting),
        ('connected', CoordinatorState.connected),
        ('failed', CoordinatorState.failed),
        ('closed', CoordinatorState.closed),
    ),
)
@pytest.mark.asyncio()
async def test_connection_state_changes(
    engine_state: str,
    expected: CoordinatorState,
) -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    connection_states: list[str] = []
    coordinator.on_connection_state_change(connection_states.append)

    await coordinator.begin_as_offerer()
    await coordinator.complete_with_remote_description(ANSWER)
    await factory.engine.set_connection_state(engine_state)

    assert coordinator.connection_state == engine_state
    assert coordinator.state is expected
    assert connection_states == [engine_state]
    await coordinator.close()


@pytest.mark.asyncio()
async def test_disconnected_does_not_change_state() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_offerer()
    await factory.engine.set_connection_state('connected')
    await factory.engine.set_connection_state('disconnected')

    assert coordinator.state is CoordinatorState.connected
    await coordinator.close()


@pytest.mark.asyncio()
async def test_send() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_offerer()
    channel = factory.engine.channels[0]

    # Channel is not open yet
    assert not coordinator.send({'color': '#ff8800'})
    assert channel.sent == []

    await channel.open()
    assert coordinator.ready
    assert coordinator.send({'color': '#ff8800'})
    assert channel.sent == ['{"color": "#ff8800"}']

    # Not JSON-serializable
    assert not coordinator.send({'color': object()})
    assert not coordinator.send({'v': float('nan')})
    assert not coordinator.send([float('inf')])
    assert len(channel.sent) == 1
    await coordinator.close()


@pytest.mark.asyncio()
async def test_send_invalid_state() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_offerer()
    channel = factory.engine.channels[0]
    await channel.open()

    with mock.patch.object(channel, 'send', side_effect=InvalidStateError):
        assert not coordinator.send('hello')
    await coordinator.close()


@pytest.mark.asyncio()
async def test_receive_messages(caplog) -> None:
    caplog.set_level(logging.ERROR)
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    first: list = []
    second: list = []
    coordinator.on_message(first.append)
    subscription = coordinator.on_message(second.append)

    await coordinator.begin_as_offerer()
    channel = factory.engine.channels[0]
    await channel.open()

    await channel.emit('message', '{"color": "#ff8800"}')
    await channel.emit('message', b'[1, 2, 3]')
    subscription.unsubscribe()
    await channel.emit('message', '"last"')

    assert first == [{'color': '#ff8800'}, [1, 2, 3], 'last']
    assert second == [{'color': '#ff8800'}, [1, 2, 3]]

    # Malformed messages are discarded
    await channel.emit('message', '{not json')
    await channel.emit('message', b'\xff\xfe')
    assert len(first) == 3
    assert sum('malformed' in r.message for r in caplog.records) == 2
    await coordinator.close()


@pytest.mark.asyncio()
async def test_channel_close_and_error(caplog) -> None:
    caplog.set_level(logging.ERROR)
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    channel_states: list[str] = []
    coordinator.on_channel_state_change(channel_states.append)

    await coordinator.begin_as_offerer()
    channel = factory.engine.channels[0]
    await channel.open()
    # Duplicate open events are ignored
    await channel.emit('open')
    await channel.emit('error', RuntimeError('oops'))
    await channel.remote_close()

    assert channel_states == ['open', 'closed']
    assert not coordinator.ready
    assert not coordinator.send('hello')
    assert any('data channel error' in r.message for r in caplog.records)
    await coordinator.close()


@pytest.mark.asyncio()
async def test_wait_for_channel_timeout() -> None:
    coordinator = ConnectionCoordinator(FakeEngineFactory())
    await coordinator.begin_as_offerer()
    assert not await coordinator.wait_for_channel(timeout=0.05)
    await coordinator.close()


@pytest.mark.asyncio()
async def test_close_is_idempotent() -> None:
    factory = FakeEngineFactory()
    coordinator = ConnectionCoordinator(factory)
    states: list[CoordinatorState] = []
    coordinator.on_state_change(states.append)

    await coordinator.begin_as_offerer()
    engine = factory.engine
    channel = engine.channels[0]
    await channel.open()

    await coordinator.close()
    await coordinator.close()

    assert engine.close_calls == 1
    assert channel.close_calls == 1
    assert coordinator.state is CoordinatorState.closed
    assert states.count(CoordinatorState.closed) == 1
    assert coordinator.connection_state is None
    assert not coordinator.ready
    assert not coordinator.send('hello')

    # Late engine events do not move a closed coordinator
    await engine.set_connection_state('failed')
    assert coordinator.state is CoordinatorState.closed


@pytest.mark.asyncio()
async def test_close_never_started() -> None:
    async with ConnectionCoordinator(FakeEngineFactory()) as coordinator:
        pass
    assert coordinator.state is CoordinatorState.closed
    await coordinator.close()


@pytest.mark.asyncio()
async def test_close_engine_errors_logged(caplog) -> None:
    caplog.set_level(logging.ERROR)
    factory = FakeEngineFactory(fail_on=['close'])
    coordinator = ConnectionCoordinator(factory)
    await coordinator.begin_as_offerer()

    await coordinator.close()
    assert coordinator.state is CoordinatorState.closed
    assert any(
        'error closing peer connection' in r.message for r in caplog.records
    )


@pytest.mark.asyncio()
async def test_aiortc_connection() -> None:
    offerer = ConnectionCoordinator(ice_servers=[])
    answerer = ConnectionCoordinator(ice_servers=[])
    received: asyncio.Queue = asyncio.Queue()
    answerer.on_message(received.put_nowait)

    offer = await offerer.begin_as_offerer()
    assert offer is not None
    answer = await answerer.begin_as_answerer(offer)
    assert answer is not None
    assert await offerer.complete_with_remote_description(answer)

    assert await offerer.wait_for_channel(timeout=20)
    assert await answerer.wait_for_channel(timeout=20)
    assert offerer.send({'color': '#ff8800'})
    message = await asyncio.wait_for(received.get(), 10)
    assert message == {'color': '#ff8800'}

    await offerer.close()
    await answerer.close()
    assert offerer.state is CoordinatorState.closed
    assert answerer.state is CoordinatorState.closed
