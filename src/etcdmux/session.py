"""
Single-owner management of one long-lived bidirectional stream.

A `StreamSession` runs one background task that exclusively owns the physical
stream and all session state. Callers never touch either directly: they post
commands to the task's inbox, and a reader task feeds inbound frames into the
same inbox, so every state transition happens sequentially inside the owner.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Tuple

from google.protobuf.message import Message

from . import grpc_api
from .channel import ChannelPool, EtcdStream
from .endpoints import EndpointPool
from .errors import Closed, EtcdmuxError, NoEndpointsAvailable
from .types import HostPortPair, SessionOptions

__all__ = (
    'SessionState',
    'StreamSession',
)

log = logging.getLogger(__name__)


class SessionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    STREAMING = 'streaming'
    CLOSED = 'closed'


@dataclass
class _Command:
    func: Callable[..., Awaitable[Any]]
    args: Tuple[Any, ...]
    future: Optional[asyncio.Future] = None


@dataclass
class _Inbound:
    generation: int
    response: Message


@dataclass
class _StreamFailed:
    generation: int
    error: BaseException


@dataclass
class _Signal:
    name: str
    payload: Any = field(default=None)


_STOP = _Signal('stop')
_RECONNECT = _Signal('reconnect')


class StreamSession:
    """
    Base class for the watch multiplexer and the lease keeper.

    Subclasses implement `_on_connected()`, `_on_frame()`, `_on_disconnected()`,
    `_on_closed()` and `_wants_stream()`; they only ever run inside the owner task.
    """
    method: grpc_api.RpcMethod
    name: str = 'stream'

    state: SessionState
    options: SessionOptions

    _pool: EndpointPool
    _channels: ChannelPool
    _inbox: asyncio.Queue
    _task: Optional[asyncio.Task]
    _reader: Optional[asyncio.Task]
    _stream: Optional[EtcdStream]
    _endpoint: Optional[HostPortPair]
    _generation: int
    _delay: float
    _reconnect_handle: Optional[asyncio.TimerHandle]
    _closed: bool

    def __init__(
        self,
        pool: EndpointPool,
        channels: ChannelPool,
        options: Optional[SessionOptions] = None,
    ) -> None:
        self.state = SessionState.DISCONNECTED
        self.options = options or SessionOptions()
        self._pool = pool
        self._channels = channels
        self._inbox = asyncio.Queue()
        self._task = None
        self._reader = None
        self._stream = None
        self._endpoint = None
        self._generation = 0
        self._delay = self.options.reconnect_delay
        self._reconnect_handle = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def endpoint(self) -> Optional[HostPortPair]:
        return self._endpoint

    def _ensure_started(self) -> None:
        if self._closed:
            raise Closed(f'{self.name} session is closed')
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f'etcdmux-{self.name}')

    def _post(self, func: Callable[..., Awaitable[Any]], *args: Any) -> None:
        """
        Schedules `func(*args)` to run inside the owner task without waiting for it.
        """
        self._ensure_started()
        self._inbox.put_nowait(_Command(func, args))

    async def _submit(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """
        Runs `func(*args)` inside the owner task and returns its result.
        """
        self._ensure_started()
        future = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(_Command(func, args, future))
        return await future

    async def close(self) -> None:
        """
        Shuts the session down permanently.
        """
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            self.state = SessionState.CLOSED
            await self._on_closed()
            return
        self._inbox.put_nowait(_STOP)
        await asyncio.shield(self._task)

    async def _run(self) -> None:
        try:
            while True:
                item = await self._inbox.get()
                if item is _STOP:
                    break
                await self._dispatch(item)
        finally:
            await self._teardown()

    async def _dispatch(self, item: Any) -> None:
        match item:
            case _Command(func=func, args=args, future=future):
                try:
                    result = await func(*args)
                except Exception as e:
                    if future is None:
                        log.exception('%s: %s failed', self.name, getattr(func, '__name__', func))
                    elif not future.done():
                        future.set_exception(e)
                else:
                    if future is not None and not future.done():
                        future.set_result(result)
            case _Inbound(generation=generation, response=response):
                if generation != self._generation:
                    return
                self._delay = self.options.reconnect_delay
                await self._on_frame(response)
            case _StreamFailed(generation=generation, error=error):
                if generation != self._generation:
                    return
                await self._fail_stream(error)
            case _Signal(name='reconnect'):
                self._reconnect_handle = None
                if self.state is SessionState.DISCONNECTED and self._wants_stream():
                    await self._connect()
            case _Signal():
                await self._on_signal(item)

    async def _on_signal(self, signal: _Signal) -> None:
        raise NotImplementedError(signal.name)

    async def _teardown(self) -> None:
        self._closed = True
        self.state = SessionState.CLOSED
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        await self._drop_stream()
        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, _Command) and item.future is not None and not item.future.done():
                item.future.set_exception(Closed(f'{self.name} session is closed'))
        await self._on_closed()
        log.debug('%s session closed', self.name)

    async def _ensure_stream(self) -> None:
        """
        Opens the physical stream now unless one is open or a reconnect is already scheduled.
        """
        if self.state is SessionState.DISCONNECTED and self._reconnect_handle is None:
            await self._connect()

    async def _connect(self) -> None:
        self.state = SessionState.CONNECTING
        try:
            endpoint = self._pool.select()
        except NoEndpointsAvailable as e:
            log.warning('%s: cannot connect: %s', self.name, e)
            self.state = SessionState.DISCONNECTED
            self._schedule_reconnect()
            return
        try:
            stream = await self._channels.get(endpoint).open_stream(self.method)
        except Closed:
            raise
        except EtcdmuxError as e:
            log.info('%s: cannot open stream to %s: %r', self.name, endpoint, e)
            self._pool.mark_failed(endpoint)
            self.state = SessionState.DISCONNECTED
            self._schedule_reconnect()
            return
        self._generation += 1
        self._stream = stream
        self._endpoint = endpoint
        self._reader = asyncio.create_task(
            self._read_loop(stream, self._generation), name=f'etcdmux-{self.name}-reader')
        self.state = SessionState.STREAMING
        log.debug('%s: stream %d opened to %s', self.name, self._generation, endpoint)
        await self._on_connected()

    async def _read_loop(self, stream: EtcdStream, generation: int) -> None:
        try:
            while True:
                response = await stream.read()
                self._inbox.put_nowait(_Inbound(generation, response))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._inbox.put_nowait(_StreamFailed(generation, e))

    async def _write(self, request: Message) -> bool:
        """
        Writes one frame to the physical stream.
        Returns `False` if there is no stream or the write broke it.
        """
        if self.state is not SessionState.STREAMING or self._stream is None:
            return False
        try:
            await self._stream.write(request)
        except EtcdmuxError as e:
            await self._fail_stream(e)
            return False
        return True

    async def _drop_stream(self) -> None:
        self._generation += 1
        reader, self._reader = self._reader, None
        stream, self._stream = self._stream, None
        if reader is not None:
            reader.cancel()
        if stream is not None:
            await stream.done_writing()
            stream.cancel()
        if self.state is not SessionState.CLOSED:
            self.state = SessionState.DISCONNECTED

    async def _release_stream(self) -> None:
        """
        Closes an idle physical stream; it is reopened on demand.
        """
        if self._stream is None:
            return
        log.debug('%s: closing idle stream to %s', self.name, self._endpoint)
        await self._drop_stream()
        self._endpoint = None

    async def _fail_stream(self, error: BaseException) -> None:
        endpoint = self._endpoint
        log.info('%s: stream to %s failed: %r', self.name, endpoint, error)
        await self._drop_stream()
        self._endpoint = None
        if endpoint is not None:
            self._pool.mark_failed(endpoint)
        await self._on_disconnected(error)
        if self._wants_stream():
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._closed or self._reconnect_handle is not None:
            return
        delay = self._delay
        self._delay = min(delay * 2, self.options.max_reconnect_delay)
        log.debug('%s: reconnecting in %.2fs', self.name, delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay, self._inbox.put_nowait, _RECONNECT)

    def _wants_stream(self) -> bool:
        raise NotImplementedError

    async def _on_connected(self) -> None:
        raise NotImplementedError

    async def _on_frame(self, response: Message) -> None:
        raise NotImplementedError

    async def _on_disconnected(self, error: BaseException) -> None:
        raise NotImplementedError

    async def _on_closed(self) -> None:
        raise NotImplementedError
