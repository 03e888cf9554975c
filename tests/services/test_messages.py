import asyncio

import pytest

from roomsync.models.event import MSGTYPE_BAD_ENCRYPTED
from roomsync.services.decryption import DecryptionOrchestrator
from roomsync.services.messages import FetchFailedError, MessagePipeline
from roomsync.services.sync import SyncCoordinator
from roomsync.services.transport import TransportError, TransportResponse
from tests.conftest import OTHER_ROOM_ID, ROOM_ID, clear_event, make_event


def page(*events):
    """Messages response for ``dir=b``: newest event first."""
    return TransportResponse(
        status=200,
        body={"chunk": [event.to_dict() for event in reversed(events)], "start": "s", "end": "e"},
    )


@pytest.fixture
def orchestrator(mock_transport, throttle, mock_sync, fast_policy, test_settings):
    return DecryptionOrchestrator(
        mock_transport, throttle, mock_sync, policy=fast_policy, config=test_settings
    )


@pytest.fixture
def pipeline(mock_transport, context, cache, orchestrator, mock_sync, test_settings):
    return MessagePipeline(mock_transport, context, cache, orchestrator, mock_sync, test_settings)


@pytest.mark.asyncio
async def test_fetch_page_requests_latest_page(pipeline, mock_transport):
    mock_transport.get.return_value = page(make_event("$1", 1), make_event("$2", 2))

    events = await pipeline.fetch_page(ROOM_ID)

    assert [e.event_id for e in events] == ["$1", "$2"]
    path, params = mock_transport.get.await_args.args
    assert path == "/_matrix/client/v3/rooms/%21room%3Aexample.org/messages"
    assert params == {"limit": "50", "dir": "b"}


@pytest.mark.asyncio
async def test_fetch_page_rejects_error_status(pipeline, mock_transport):
    mock_transport.get.return_value = TransportResponse(status=403, body={"errcode": "M_FORBIDDEN"})

    with pytest.raises(FetchFailedError):
        await pipeline.fetch_page(ROOM_ID)


@pytest.mark.asyncio
async def test_fetch_page_rejects_malformed_body(pipeline, mock_transport):
    mock_transport.get.return_value = TransportResponse(status=200, body={"chunk": [{"type": "x"}]})

    with pytest.raises(FetchFailedError):
        await pipeline.fetch_page(ROOM_ID)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [
        TransportError("connection reset"),
        TransportResponse(status=500),
        TransportResponse(status=200, body=None),
    ],
)
async def test_failed_fetch_serves_cache_unchanged(pipeline, cache, mock_transport, outcome):
    cache.merge(ROOM_ID, [make_event("$1", 1), make_event("$2", 2)])
    if isinstance(outcome, Exception):
        mock_transport.get.side_effect = outcome
    else:
        mock_transport.get.return_value = outcome

    events = await pipeline.get_room_messages(ROOM_ID)

    assert [e.event_id for e in events] == ["$1", "$2"]
    assert cache.count(ROOM_ID) == 2


@pytest.mark.asyncio
async def test_fetched_events_are_merged_into_cache(pipeline, cache, mock_transport):
    cache.merge(ROOM_ID, [make_event("$1", 1), make_event("$2", 2)])
    mock_transport.get.return_value = page(make_event("$2", 2), make_event("$3", 3))

    events = await pipeline.get_room_messages(ROOM_ID)

    assert [e.event_id for e in events] == ["$1", "$2", "$3"]
    assert cache.count(ROOM_ID) == 3


@pytest.mark.asyncio
async def test_skip_decryption_returns_raw_events(pipeline, engine, mock_transport):
    mock_transport.get.return_value = page(make_event("$1", 1, encrypted=True))

    events = await pipeline.get_room_messages(ROOM_ID, skip_decryption=True)

    assert events[0].is_encrypted
    assert engine.decrypt_calls == []


@pytest.mark.asyncio
async def test_no_engine_returns_raw_events(pipeline, context, mock_transport):
    context.engine = None
    mock_transport.get.return_value = page(make_event("$1", 1, encrypted=True))

    events = await pipeline.get_room_messages(ROOM_ID)

    assert events[0].is_encrypted


@pytest.mark.asyncio
async def test_decrypted_events_are_written_back(pipeline, cache, engine, mock_transport):
    engine.decrypt_results = [clear_event("secret"), RuntimeError("ratchet index mismatch")]
    mock_transport.get.return_value = page(
        make_event("$1", 1, encrypted=True),
        make_event("$2", 2),
        make_event("$3", 3, encrypted=True),
    )

    events = await pipeline.get_room_messages(ROOM_ID)

    assert events[0].content["body"] == "secret"
    assert events[2].content["msgtype"] == MSGTYPE_BAD_ENCRYPTED

    cached = cache.get(ROOM_ID)
    assert not cached[0].is_encrypted
    assert cached[0].content["body"] == "secret"
    # placeholders stay out of the cache so a later pass can retry
    assert cached[2].is_encrypted


@pytest.mark.asyncio
async def test_decrypted_copy_is_not_decrypted_again(pipeline, engine, mock_transport):
    encrypted = make_event("$1", 1, encrypted=True)
    mock_transport.get.return_value = page(encrypted)

    await pipeline.get_room_messages(ROOM_ID)
    await pipeline.get_room_messages(ROOM_ID)

    assert len(engine.decrypt_calls) == 1


@pytest.mark.asyncio
async def test_pre_decrypt_sync_runs_for_encrypted_pages(
    pipeline, mock_sync, mock_transport, test_settings, monkeypatch
):
    monkeypatch.setattr(test_settings, "pre_decrypt_sync_enabled", True)
    mock_transport.get.return_value = page(make_event("$1", 1, encrypted=True))

    await pipeline.get_room_messages(ROOM_ID)

    mock_sync.sync_once.assert_awaited_once_with(test_settings.pre_decrypt_sync_timeout_seconds)


@pytest.mark.asyncio
async def test_pre_decrypt_sync_skipped_for_plain_pages(
    pipeline, mock_sync, mock_transport, test_settings, monkeypatch
):
    monkeypatch.setattr(test_settings, "pre_decrypt_sync_enabled", True)
    mock_transport.get.return_value = page(make_event("$1", 1))

    await pipeline.get_room_messages(ROOM_ID)

    mock_sync.sync_once.assert_not_awaited()


@pytest.mark.asyncio
async def test_page_fetched_after_sync_is_chronological(
    mock_transport, context, cache, orchestrator, fast_policy, test_settings
):
    sync = SyncCoordinator(mock_transport, context, cache, policy=fast_policy, config=test_settings)
    pipeline = MessagePipeline(mock_transport, context, cache, orchestrator, sync, test_settings)
    newest = [make_event(f"${i}", i) for i in (9, 10)]

    async def get(path, params=None, *, timeout=None):
        if path.endswith("/sync"):
            timeline = {"events": [event.to_dict() for event in newest]}
            return TransportResponse(
                status=200,
                body={"next_batch": "s1", "rooms": {"join": {ROOM_ID: {"timeline": timeline}}}},
            )
        return page(*[make_event(f"${i}", i) for i in range(1, 11)])

    mock_transport.get.side_effect = get

    assert await sync.sync_once() is True
    events = await pipeline.get_room_messages(ROOM_ID, skip_decryption=True)

    assert [e.origin_server_ts for e in events] == list(range(1, 11))
    assert [e.origin_server_ts for e in cache.get(ROOM_ID)] == list(range(1, 11))


@pytest.mark.asyncio
async def test_same_room_reads_are_serialized_other_rooms_proceed(
    pipeline, cache, mock_transport
):
    release = asyncio.Event()
    log = []

    async def get(path, params=None, *, timeout=None):
        room = OTHER_ROOM_ID if "%21other" in path else ROOM_ID
        log.append(("fetch", room))
        if room == ROOM_ID:
            await release.wait()
        log.append(("fetched", room))
        return page(make_event(f"$ev{len(log)}", len(log)))

    mock_transport.get.side_effect = get

    first = asyncio.create_task(pipeline.get_room_messages(ROOM_ID, skip_decryption=True))
    second = asyncio.create_task(pipeline.get_room_messages(ROOM_ID, skip_decryption=True))
    for _ in range(3):
        await asyncio.sleep(0)

    assert cache.room_lock(ROOM_ID).locked()
    other = await asyncio.wait_for(
        pipeline.get_room_messages(OTHER_ROOM_ID, skip_decryption=True), 1
    )
    assert len(other) == 1
    assert [entry for entry in log if entry[1] == ROOM_ID] == [("fetch", ROOM_ID)]

    release.set()
    results = await asyncio.gather(first, second)

    assert [entry[0] for entry in log if entry[1] == ROOM_ID] == [
        "fetch",
        "fetched",
        "fetch",
        "fetched",
    ]
    assert len(results[0]) == 1
    assert len(results[1]) == 2
    assert cache.count(ROOM_ID) == 2
