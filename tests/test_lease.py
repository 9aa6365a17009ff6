import asyncio

import pytest

from etcdmux import EtcdClient, HostPortPair, LeaseKeepAliveResponse, grpc_api
from etcdmux.errors import Closed, EtcdNotFoundError, LeaseExpired, LeaseNotFound
from etcdmux.lease import LeaseState

from fakes import keepalive_ack, next_item


@pytest.fixture(autouse=True)
def lease_handlers(cluster):
    cluster.on(
        grpc_api.LEASE_GRANT,
        lambda endpoint, request: grpc_api.LeaseGrantResponse(ID=request.ID or 0x1234, TTL=request.TTL),
    )
    cluster.on(grpc_api.LEASE_REVOKE, lambda endpoint, request: grpc_api.LeaseRevokeResponse())


@pytest.mark.asyncio
async def test_grant_schedules_renewal_at_a_third_of_ttl(keeper, clock):
    lease_id = await keeper.grant(9)
    assert lease_id == 0x1234
    entry = keeper.get(lease_id)
    assert entry.state is LeaseState.ACTIVE
    assert entry.deadline == clock.now + 3
    assert entry.expires_at == clock.now + 9


@pytest.mark.asyncio
async def test_grant_without_keep_alive(keeper, cluster):
    lease_id = await keeper.grant(9, keep_alive=False)
    assert keeper.get(lease_id) is None
    assert cluster.streams.empty()


@pytest.mark.asyncio
async def test_renewal_cycle(keeper, cluster, clock):
    lease_id = await keeper.grant(9)
    handle = await keeper.keep_alive(lease_id)
    stream = await cluster.next_stream()
    await asyncio.sleep(0.03)
    assert stream.written.empty()

    clock.advance(3)
    request = await stream.next_write()
    assert request.ID == lease_id
    assert keeper.get(lease_id).state is LeaseState.PENDING_RENEWAL

    # never a second renewal while the first one is unacknowledged
    await asyncio.sleep(0.05)
    assert stream.written.empty()

    clock.advance(1)
    stream.push(keepalive_ack(lease_id, 9, revision=42))
    assert await next_item(handle) == LeaseKeepAliveResponse(lease_id, 9, 42)
    entry = keeper.get(lease_id)
    assert entry.state is LeaseState.ACTIVE
    assert entry.deadline == clock.now + 3
    # expiry counts from when the acknowledged renewal was sent
    assert entry.expires_at == clock.now - 1 + 9


@pytest.mark.asyncio
async def test_partition_longer_than_ttl_expires_exactly_once(keeper, cluster, clock, endpoints):
    lease_id = await keeper.grant(9)
    handle = await keeper.keep_alive(lease_id)
    stream = await cluster.next_stream()

    clock.advance(3)
    await stream.next_write()
    cluster.down.update(endpoints)
    stream.fail()

    clock.advance(7)
    with pytest.raises(LeaseExpired) as e:
        await next_item(handle)
    assert e.value.lease_id == lease_id
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert keeper.get(lease_id) is None


@pytest.mark.asyncio
async def test_pending_renewal_is_resent_after_reconnect(keeper, cluster, clock, endpoints):
    lease_id = await keeper.grant(9)
    stream = await cluster.next_stream()
    clock.advance(3)
    await stream.next_write()

    stream.fail()
    resumed = await cluster.next_stream()
    assert resumed.endpoint == endpoints[1]
    request = await resumed.next_write()
    assert request.ID == lease_id


@pytest.mark.asyncio
async def test_unknown_lease_is_reported_as_not_found(keeper, cluster):
    handle = await keeper.keep_alive(0xdead)
    stream = await cluster.next_stream()
    request = await stream.next_write()
    assert request.ID == 0xdead

    stream.push(keepalive_ack(0xdead, 0))
    with pytest.raises(LeaseNotFound):
        await next_item(handle)
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert keeper.get(0xdead) is None


@pytest.mark.asyncio
async def test_zero_ttl_for_confirmed_lease_means_expired(keeper, cluster, clock):
    lease_id = await keeper.grant(9)
    handle = await keeper.keep_alive(lease_id)
    stream = await cluster.next_stream()
    clock.advance(3)
    await stream.next_write()

    stream.push(keepalive_ack(lease_id, 0))
    with pytest.raises(LeaseExpired):
        await next_item(handle)


@pytest.mark.asyncio
async def test_refresh_renews_immediately(keeper, cluster, clock):
    lease_id = await keeper.grant(9)
    stream = await cluster.next_stream()

    refresh = asyncio.create_task(keeper.refresh(lease_id))
    request = await stream.next_write()
    assert request.ID == lease_id

    clock.advance(1)
    stream.push(keepalive_ack(lease_id, 9, revision=5))
    ack = await asyncio.wait_for(refresh, 1)
    assert ack.revision == 5
    assert keeper.get(lease_id).deadline == clock.now + 3

    with pytest.raises(LeaseNotFound):
        await keeper.refresh(0xbeef)


@pytest.mark.asyncio
async def test_revoke_ends_handle_without_error(keeper, cluster, endpoints):
    lease_id = await keeper.grant(9)
    handle = await keeper.keep_alive(lease_id)
    stream = await cluster.next_stream()

    await keeper.revoke(lease_id)
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    assert cluster.called_endpoints(grpc_api.LEASE_REVOKE) == [endpoints[0]]
    assert stream.closed


@pytest.mark.asyncio
async def test_revoke_unknown_lease(keeper, cluster):
    def _not_found(endpoint, request):
        raise EtcdNotFoundError('etcdserver: requested lease not found')

    cluster.on(grpc_api.LEASE_REVOKE, _not_found)
    with pytest.raises(LeaseNotFound):
        await keeper.revoke(0xdead)


@pytest.mark.asyncio
async def test_close_ends_handles_without_error(keeper, cluster):
    lease_id = await keeper.grant(9)
    handle = await keeper.keep_alive(lease_id)
    await keeper.close()
    with pytest.raises(StopAsyncIteration):
        await next_item(handle)
    with pytest.raises(Closed):
        await keeper.grant(9)


@pytest.mark.asyncio
async def test_lease(etcd: EtcdClient):
    async with etcd.connect() as communicator:
        lease_id = await communicator.grant_lease(10)
        await communicator.put('/test/leased', 'value', lease=lease_id)

        info = await communicator.get_lease_info(lease_id, keys=True)
        assert info.granted_ttl == 10
        assert 0 < info.ttl <= 10
        assert info.keys == ('/test/leased',)

        await communicator.revoke_lease(lease_id)
        assert (await communicator.get('/test/leased')) is None
        with pytest.raises(LeaseNotFound):
            await communicator.get_lease_info(lease_id)


@pytest.mark.asyncio
async def test_endpoint_update_keeps_renewing_on_open_stream(keeper, cluster, clock, pool, endpoints):
    lease_id = await keeper.grant(9)
    stream = await cluster.next_stream()
    assert stream.endpoint == endpoints[0]

    pool.update([HostPortPair('etcd4', 2379)])
    clock.advance(3)
    request = await stream.next_write()
    assert request.ID == lease_id
    stream.push(keepalive_ack(lease_id, 9))
    await asyncio.sleep(0.02)

    assert keeper.get(lease_id).state is LeaseState.ACTIVE
    assert not stream.closed
    assert cluster.streams.empty()
    assert keeper.endpoint == endpoints[0]
