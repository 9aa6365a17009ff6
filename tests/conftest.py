import asyncio
import os

import pytest

from etcdmux import EtcdClient, HostPortPair
from etcdmux.channel import ChannelPool
from etcdmux.endpoints import EndpointPool
from etcdmux.lease import LeaseKeeper
from etcdmux.retry import RetryInterceptor
from etcdmux.types import SessionOptions
from etcdmux.watch import WatchMultiplexer

from fakes import FakeClock, FakeCluster


@pytest.fixture
def etcd_addr():
    env_addr = os.environ.get('BACKEND_ETCD_ADDR')
    if env_addr is not None:
        return HostPortPair.parse(env_addr)
    return HostPortPair.parse('localhost:2379')


@pytest.fixture
async def etcd(etcd_addr):
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(etcd_addr.host, etcd_addr.port), timeout=1)
    except (OSError, asyncio.TimeoutError):
        pytest.skip(f'no etcd server reachable at {etcd_addr}')
    writer.close()
    await writer.wait_closed()

    etcd = EtcdClient(etcd_addr)
    try:
        yield etcd
    finally:
        async with etcd.connect() as communicator:
            await communicator.delete_prefix('/test')
        del etcd


@pytest.fixture
def endpoints():
    return [HostPortPair(f'etcd{i}', 2379) for i in (1, 2, 3)]


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def pool(endpoints):
    return EndpointPool(endpoints)


@pytest.fixture
def channels(cluster):
    return ChannelPool(cluster.factory)


@pytest.fixture
def session_options():
    return SessionOptions(keepalive_tick=0.01, reconnect_delay=0.01, max_reconnect_delay=0.05)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def multiplexer(pool, channels, session_options):
    multiplexer = WatchMultiplexer(pool, channels, session_options)
    try:
        yield multiplexer
    finally:
        await multiplexer.close()


@pytest.fixture
async def keeper(pool, channels, session_options, clock):
    keeper = LeaseKeeper(
        pool, channels, session_options,
        retry=RetryInterceptor(pool, channels), clock=clock)
    try:
        yield keeper
    finally:
        await keeper.close()
