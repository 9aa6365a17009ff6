import asyncio
from typing import List

import pytest

from etcdmux import EtcdClient, HostPortPair, WatchEvent, WatchEventType
from etcdmux.errors import Closed, EtcdCancelledError, EtcdCompactedError
from etcdmux.watch import WatchMultiplexer, WatchState

from fakes import (
    FakeCluster,
    delete_event,
    next_item,
    put_event,
    watch_canceled,
    watch_created,
    watch_events,
)


@pytest.mark.asyncio
async def test_watch(etcd: EtcdClient):
    events: List[WatchEvent] = []

    async def _put_task():
        await asyncio.sleep(1)
        async with etcd.connect() as communicator:
            await communicator.put('/test/tmp/asd', 'fgh')
            await asyncio.sleep(0.5)
            await communicator.put('/test/tmp/qwe', 'rty')
            await asyncio.sleep(0.5)
            await communicator.delete('/test/tmp/qwe')

    async def _watch_task():
        async with etcd.connect() as communicator:
            async for event in communicator.watch_prefix('/test/tmp'):
                events.append(event)
        return events

    put_task = asyncio.create_task(_put_task())
    watch_task = asyncio.create_task(_watch_task())

    await asyncio.sleep(3)
    put_task.cancel()
    watch_task.cancel()

    assert events[0] == WatchEvent(
        key='/test/tmp/asd', value='fgh', prev_value=None, event=WatchEventType.PUT)
    assert events[1] == WatchEvent(
        key='/test/tmp/qwe', value='rty', prev_value=None, event=WatchEventType.PUT)
    assert events[2] == WatchEvent(
        key='/test/tmp/qwe', value='', prev_value=None, event=WatchEventType.DELETE)
    assert len(events) == 3
    assert events[0].mod_revision < events[1].mod_revision < events[2].mod_revision


async def _create(multiplexer: WatchMultiplexer, cluster: FakeCluster, key: bytes, server_id: int,
                  revision: int = 10, **kwargs):
    handle = multiplexer.create_watch(key, **kwargs)
    stream = await cluster.next_stream()
    request = await stream.next_write()
    assert request.WhichOneof('request_union') == 'create_request'
    assert request.create_request.key == key
    stream.push(watch_created(server_id, revision))
    await asyncio.wait_for(handle.created.wait(), 1)
    return handle, stream


@pytest.mark.asyncio
async def test_events_are_delivered_in_revision_order(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    assert multiplexer.get(handle.watch_id).state is WatchState.ACTIVE

    stream.push(watch_events(7, put_event('/foo', 'a', 11), put_event('/foo', 'b', 12)))
    stream.push(watch_events(7, delete_event('/foo', 13)))

    events = [await next_item(handle) for _ in range(3)]
    assert [e.mod_revision for e in events] == [11, 12, 13]
    assert [e.value for e in events] == ['a', 'b', '']
    assert events[2].event is WatchEventType.DELETE
    assert handle.revision == 13


@pytest.mark.asyncio
async def test_watches_share_one_stream_and_creates_are_serialized(multiplexer, cluster):
    first = multiplexer.create_watch(b'/a')
    second = multiplexer.create_watch(b'/b')
    stream = await cluster.next_stream()

    request = await stream.next_write()
    assert request.create_request.key == b'/a'
    await asyncio.sleep(0.02)
    assert stream.written.empty()

    stream.push(watch_created(1, 10))
    request = await stream.next_write()
    assert request.create_request.key == b'/b'
    stream.push(watch_created(2, 10))
    await asyncio.wait_for(second.created.wait(), 1)
    assert first.created.is_set()

    stream.push(watch_events(2, put_event('/b', 'x', 11)))
    stream.push(watch_events(1, put_event('/a', 'y', 12)))
    assert (await next_item(second)).key == '/b'
    assert (await next_item(first)).key == '/a'
    assert cluster.streams.empty()


@pytest.mark.asyncio
async def test_reconnect_resumes_without_duplicates_or_gaps(multiplexer, cluster, endpoints):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    stream.push(watch_events(7, put_event('/foo', 'a', 11), put_event('/foo', 'b', 12)))
    assert [(await next_item(handle)).mod_revision for _ in range(2)] == [11, 12]

    stream.fail()
    resumed = await cluster.next_stream()
    assert stream.closed
    assert resumed.endpoint == endpoints[1]
    request = await resumed.next_write()
    assert request.create_request.key == b'/foo'
    assert request.create_request.start_revision == 13

    resumed.push(watch_created(3, 14))
    resumed.push(watch_events(3, put_event('/foo', 'b', 12), put_event('/foo', 'c', 13)))
    resumed.push(watch_events(3, put_event('/foo', 'd', 14)))
    events = [await next_item(handle) for _ in range(2)]
    assert [(e.value, e.mod_revision) for e in events] == [('c', 13), ('d', 14)]


@pytest.mark.asyncio
async def test_explicit_start_revision_is_requested(multiplexer, cluster):
    multiplexer.create_watch(b'/foo', start_revision=5)
    stream = await cluster.next_stream()
    request = await stream.next_write()
    assert request.create_request.start_revision == 5


@pytest.mark.asyncio
async def test_compacted_resume_is_reported_once(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    stream.push(watch_events(7, put_event('/foo', 'a', 11)))
    await next_item(handle)

    stream.fail()
    resumed = await cluster.next_stream()
    await resumed.next_write()
    resumed.push(watch_created(3, 40))
    resumed.push(watch_canceled(3, revision=40, compact_revision=30))

    with pytest.raises(EtcdCompactedError) as e:
        await next_item(handle)
    assert e.value.compact_revision == 30
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert len(multiplexer) == 0


@pytest.mark.asyncio
async def test_cancel_stops_delivery_even_for_in_flight_events(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)

    cancel_task = asyncio.create_task(handle.cancel())
    request = await stream.next_write()
    assert request.WhichOneof('request_union') == 'cancel_request'
    assert request.cancel_request.watch_id == 7

    stream.push(watch_events(7, put_event('/foo', 'late', 11)))
    stream.push(watch_canceled(7, revision=11))
    await asyncio.wait_for(cancel_task, 1)

    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert len(multiplexer) == 0
    # no watch left, so the idle stream is released
    assert stream.closed


@pytest.mark.asyncio
async def test_cancel_pending_watch_never_sends_create(multiplexer, cluster):
    first = multiplexer.create_watch(b'/a')
    second = multiplexer.create_watch(b'/b')
    stream = await cluster.next_stream()
    await stream.next_write()

    await asyncio.wait_for(second.cancel(), 1)
    stream.push(watch_created(1, 10))
    await asyncio.wait_for(first.created.wait(), 1)
    await asyncio.sleep(0.02)

    assert stream.written.empty()
    with pytest.raises(StopAsyncIteration):
        await next_item(second)


@pytest.mark.asyncio
async def test_cancel_during_disconnect_completes_on_teardown(multiplexer, cluster, endpoints):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    cluster.down.update(endpoints)

    cancel_task = asyncio.create_task(handle.cancel())
    await stream.next_write()
    stream.fail()
    await asyncio.wait_for(cancel_task, 1)

    with pytest.raises(StopAsyncIteration):
        await next_item(handle)


@pytest.mark.asyncio
async def test_fragments_are_reassembled(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7, fragment=True)
    stream.push(watch_events(
        7, put_event('/foo/1', 'a', 11), put_event('/foo/2', 'b', 11), fragment=True))
    await asyncio.sleep(0.02)
    assert handle._queue.empty()

    stream.push(watch_events(7, put_event('/foo/3', 'c', 11)))
    events = [await next_item(handle) for _ in range(3)]
    assert [e.key for e in events] == ['/foo/1', '/foo/2', '/foo/3']


@pytest.mark.asyncio
async def test_progress_notification_moves_resume_point(multiplexer, cluster):
    handle, stream = await _create(
        multiplexer, cluster, b'/foo', server_id=7, progress_notify=True)
    stream.push(watch_events(7, revision=50))
    await asyncio.sleep(0.02)
    assert multiplexer.get(handle.watch_id).next_revision == 51

    stream.fail()
    resumed = await cluster.next_stream()
    request = await resumed.next_write()
    assert request.create_request.start_revision == 51
    assert request.create_request.progress_notify


@pytest.mark.asyncio
async def test_requested_progress_applies_to_every_watch(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    await multiplexer.request_progress()
    request = await stream.next_write()
    assert request.WhichOneof('request_union') == 'progress_request'

    stream.push(watch_events(-1, revision=80))
    await asyncio.sleep(0.02)
    assert multiplexer.get(handle.watch_id).next_revision == 81


@pytest.mark.asyncio
async def test_rejected_create_closes_handle(multiplexer, cluster):
    handle = multiplexer.create_watch(b'/forbidden')
    stream = await cluster.next_stream()
    await stream.next_write()
    rejection = watch_canceled(1, reason='permission denied')
    rejection.created = True
    stream.push(rejection)
    with pytest.raises(EtcdCancelledError):
        await next_item(handle)
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)


@pytest.mark.asyncio
async def test_close_ends_every_handle(multiplexer, cluster):
    handle, _ = await _create(multiplexer, cluster, b'/foo', server_id=7)
    await multiplexer.close()
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    with pytest.raises(Closed):
        multiplexer.create_watch(b'/bar')


@pytest.mark.asyncio
async def test_events_sharing_a_revision_are_all_delivered(multiplexer, cluster):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    # a transaction touching two keys produces two events at revision 11
    stream.push(watch_events(7, put_event('/foo/1', 'a', 11), delete_event('/foo/2', 11)))
    stream.push(watch_events(7, put_event('/foo/1', 'b', 12)))

    events = [await next_item(handle) for _ in range(3)]
    assert [(e.key, e.mod_revision) for e in events] == [('/foo/1', 11), ('/foo/2', 11), ('/foo/1', 12)]
    assert multiplexer.get(handle.watch_id).next_revision == 13


@pytest.mark.asyncio
async def test_cancel_while_create_is_in_flight(multiplexer, cluster):
    handle = multiplexer.create_watch(b'/foo')
    stream = await cluster.next_stream()
    request = await stream.next_write()
    assert request.WhichOneof('request_union') == 'create_request'

    cancel_task = asyncio.create_task(handle.cancel())
    await asyncio.sleep(0.02)
    # the server watch id is unknown until the create is acknowledged
    assert stream.written.empty()
    assert not cancel_task.done()

    stream.push(watch_created(9, 10))
    request = await stream.next_write()
    assert request.WhichOneof('request_union') == 'cancel_request'
    assert request.cancel_request.watch_id == 9
    assert not handle.created.is_set()

    stream.push(watch_events(9, put_event('/foo', 'late', 11)))
    stream.push(watch_canceled(9, revision=11))
    await asyncio.wait_for(cancel_task, 1)

    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert len(multiplexer) == 0
    assert stream.closed


@pytest.mark.asyncio
async def test_endpoint_update_leaves_open_stream_alone(multiplexer, cluster, pool, endpoints):
    handle, stream = await _create(multiplexer, cluster, b'/foo', server_id=7)
    assert stream.endpoint == endpoints[0]

    replacement = HostPortPair('etcd4', 2379)
    pool.update([replacement])
    stream.push(watch_events(7, put_event('/foo', 'a', 11)))
    assert (await next_item(handle)).value == 'a'
    assert not stream.closed
    assert cluster.streams.empty()
    assert multiplexer.endpoint == endpoints[0]

    # only a reconnect picks up the new endpoint set
    stream.fail()
    resumed = await cluster.next_stream()
    assert resumed.endpoint == replacement
    request = await resumed.next_write()
    assert request.create_request.start_revision == 12
