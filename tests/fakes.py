"""
In-memory stand-ins for the per-endpoint channels, plus response builders.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from etcdmux import grpc_api
from etcdmux.errors import EtcdStreamResetError, EtcdUnavailableError
from etcdmux.types import HostPortPair

TIMEOUT = 1.0


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStream:
    def __init__(self, method: grpc_api.RpcMethod, endpoint: HostPortPair) -> None:
        self.method = method
        self.endpoint = endpoint
        self.requests: List = []
        self.written: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def write(self, request) -> None:
        if self.closed:
            raise EtcdStreamResetError('stream already closed')
        copy = type(request)()
        copy.CopyFrom(request)
        self.requests.append(copy)
        self.written.put_nowait(copy)

    async def read(self):
        item = await self._inbound.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def done_writing(self) -> None:
        pass

    def cancel(self) -> None:
        self.closed = True

    def push(self, response) -> None:
        self._inbound.put_nowait(response)

    def fail(self, error: Optional[BaseException] = None) -> None:
        self._inbound.put_nowait(error or EtcdStreamResetError('stream reset by peer'))

    async def next_write(self):
        return await asyncio.wait_for(self.written.get(), TIMEOUT)


UnaryHandler = Callable[[HostPortPair, object], Union[object, Awaitable[object]]]


class FakeChannel:
    def __init__(self, endpoint: HostPortPair, cluster: FakeCluster) -> None:
        self.endpoint = endpoint
        self.cluster = cluster
        self.closed = False

    async def unary(self, method: grpc_api.RpcMethod, request, timeout: Optional[float] = None):
        self.cluster.calls.append((self.endpoint, method.path))
        if self.endpoint in self.cluster.down:
            raise EtcdUnavailableError(f'{self.endpoint} is unreachable')
        handler = self.cluster.handlers[method.path]
        response = handler(self.endpoint, request)
        if inspect.isawaitable(response):
            response = await response
        return response

    async def open_stream(self, method: grpc_api.RpcMethod) -> FakeStream:
        if self.endpoint in self.cluster.down:
            raise EtcdUnavailableError(f'{self.endpoint} is unreachable')
        stream = FakeStream(method, self.endpoint)
        self.cluster.streams.put_nowait(stream)
        return stream

    async def close(self) -> None:
        self.closed = True


class FakeCluster:
    """
    Plays the etcd cluster behind every channel created through `factory`.
    """
    def __init__(self) -> None:
        self.handlers: Dict[str, UnaryHandler] = {}
        self.down: Set[HostPortPair] = set()
        self.calls: List[Tuple[HostPortPair, str]] = []
        self.streams: asyncio.Queue = asyncio.Queue()
        self.channels: Dict[HostPortPair, FakeChannel] = {}

    def factory(self, endpoint: HostPortPair) -> FakeChannel:
        channel = self.channels[endpoint] = FakeChannel(endpoint, self)
        return channel

    def on(self, method: grpc_api.RpcMethod, handler: UnaryHandler) -> None:
        self.handlers[method.path] = handler

    def called_endpoints(self, method: Optional[grpc_api.RpcMethod] = None) -> List[HostPortPair]:
        return [e for e, path in self.calls if method is None or path == method.path]

    async def next_stream(self) -> FakeStream:
        return await asyncio.wait_for(self.streams.get(), TIMEOUT)


async def next_item(iterator):
    return await asyncio.wait_for(iterator.__anext__(), TIMEOUT)


def header(revision: int = 0):
    return grpc_api.ResponseHeader(revision=revision)


def watch_created(server_id: int, revision: int):
    return grpc_api.WatchResponse(header=header(revision), watch_id=server_id, created=True)


def watch_canceled(server_id: int, revision: int = 0, compact_revision: int = 0, reason: str = ''):
    return grpc_api.WatchResponse(
        header=header(revision), watch_id=server_id, canceled=True,
        compact_revision=compact_revision, cancel_reason=reason,
    )


def put_event(key: str, value: str, mod_revision: int):
    return grpc_api.Event(
        type=0,
        kv=grpc_api.KeyValue(key=key.encode(), value=value.encode(), mod_revision=mod_revision),
    )


def delete_event(key: str, mod_revision: int):
    return grpc_api.Event(
        type=1,
        kv=grpc_api.KeyValue(key=key.encode(), mod_revision=mod_revision),
    )


def watch_events(server_id: int, *events, revision: Optional[int] = None, fragment: bool = False):
    if revision is None:
        revision = max((e.kv.mod_revision for e in events), default=0)
    return grpc_api.WatchResponse(
        header=header(revision), watch_id=server_id, events=list(events), fragment=fragment)


def keepalive_ack(lease_id: int, ttl: int, revision: int = 1):
    return grpc_api.LeaseKeepAliveResponse(header=header(revision), ID=lease_id, TTL=ttl)
