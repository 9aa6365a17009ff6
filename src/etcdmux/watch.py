"""
Watch multiplexing over a single physical `Watch` stream.

Every logical watch is identified by a client-assigned id that outlives the
physical stream. The server-assigned watch id is only a routing key for the
current stream; when the stream breaks, the routing table is discarded and every
surviving watch is re-created from the revision following the last event it
delivered.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Deque,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Union,
)

from . import grpc_api
from .errors import Closed, EtcdCancelledError, EtcdCompactedError, EtcdmuxError
from .session import SessionState, StreamSession
from .types import WatchCreateRequestFilterType, WatchEvent, WatchEventType

__all__ = (
    'WatchState',
    'LogicalWatch',
    'WatchHandle',
    'WatchMultiplexer',
)

log = logging.getLogger(__name__)

_ALL_WATCHES = -1


class WatchState(enum.Enum):
    PENDING_CREATE = 'pending-create'
    ACTIVE = 'active'
    CANCELLED = 'cancelled'


@dataclass
class _Terminal:
    error: Optional[BaseException]


class WatchHandle:
    """
    Client side of one logical watch.

    Iterating yields `WatchEvent` values in revision order. Iteration ends after
    `cancel()` or session shutdown; an unrecoverable per-watch failure (such as
    compaction) is raised exactly once, after which iteration stops.
    """
    watch_id: int
    created: asyncio.Event

    _multiplexer: WatchMultiplexer
    _queue: asyncio.Queue[Union[WatchEvent, _Terminal]]
    _ready_event: Optional[asyncio.Event]
    _revision: int
    _finished: bool

    def __init__(
        self,
        multiplexer: WatchMultiplexer,
        watch_id: int,
        ready_event: Optional[asyncio.Event] = None,
    ) -> None:
        self.watch_id = watch_id
        self.created = asyncio.Event()
        self._multiplexer = multiplexer
        self._queue = asyncio.Queue()
        self._ready_event = ready_event
        self._revision = 0
        self._finished = False

    def __repr__(self) -> str:
        return f'<WatchHandle id={self.watch_id} revision={self._revision}>'

    @property
    def revision(self) -> int:
        """
        Revision of the last event handed to this handle.
        """
        return self._revision

    def __aiter__(self) -> WatchHandle:
        return self

    async def __anext__(self) -> WatchEvent:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if isinstance(item, _Terminal):
            self._finished = True
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item

    async def cancel(self) -> None:
        """
        Cancels the watch and waits until the server acknowledged it
        or the physical stream was torn down.
        """
        await self._multiplexer.cancel_watch(self.watch_id)

    async def __aenter__(self) -> WatchHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        if not self._multiplexer.closed:
            await self.cancel()
        return False

    def _mark_created(self) -> None:
        self.created.set()
        if self._ready_event is not None:
            self._ready_event.set()

    def _deliver(self, event: WatchEvent) -> None:
        self._revision = event.mod_revision
        self._queue.put_nowait(event)

    def _close(self, error: Optional[BaseException]) -> None:
        self._queue.put_nowait(_Terminal(error))


@dataclass(eq=False)
class LogicalWatch:
    id: int
    key: bytes
    handle: WatchHandle
    range_end: Optional[bytes] = None
    start_revision: Optional[int] = None
    filters: Sequence[WatchCreateRequestFilterType] = ()
    prev_kv: bool = False
    progress_notify: bool = False
    fragment: bool = False
    encoding: str = 'utf-8'

    state: WatchState = WatchState.PENDING_CREATE
    next_revision: Optional[int] = None
    last_revision: int = 0
    server_id: Optional[int] = None
    cancel_requested: bool = False
    cancel_waiters: List[asyncio.Future] = field(default_factory=list)
    fragments: List = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.start_revision:
            self.next_revision = self.start_revision

    def build_create_request(self) -> grpc_api.WatchRequest:
        request = grpc_api.WatchRequest()
        create = request.create_request
        create.key = self.key
        if self.range_end is not None:
            create.range_end = self.range_end
        if self.next_revision is not None:
            create.start_revision = self.next_revision
        create.filters.extend([f.value for f in self.filters])
        create.prev_kv = self.prev_kv
        create.progress_notify = self.progress_notify
        create.fragment = self.fragment
        return request

    def convert_event(self, event) -> WatchEvent:
        encoding = self.encoding
        if event.type == 0:
            event_type = WatchEventType.PUT
        else:
            event_type = WatchEventType.DELETE
        if self.prev_kv and event.HasField('prev_kv'):
            prev_value = event.prev_kv.value.decode(encoding)
        else:
            prev_value = None
        return WatchEvent(
            event.kv.key.decode(encoding),
            event.kv.value.decode(encoding),
            prev_value,
            event_type,
            mod_revision=event.kv.mod_revision,
        )


def _cancel_request(server_id: int) -> grpc_api.WatchRequest:
    request = grpc_api.WatchRequest()
    request.cancel_request.watch_id = server_id
    return request


class WatchMultiplexer(StreamSession):
    """
    Maps many logical watches onto one physical bidirectional `Watch` stream.

    Only one create request is outstanding at a time; the server acknowledges
    creates in the order it receives them, which is how an acknowledgement is
    matched to its logical watch.
    """
    method = grpc_api.WATCH_WATCH
    name = 'watch'

    _ids: Iterator[int]
    _watches: Dict[int, LogicalWatch]
    _routes: Dict[int, int]
    _pending: Deque[int]
    _in_flight: Optional[int]

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._ids = itertools.count(1)
        self._watches = {}
        self._routes = {}
        self._pending = deque()
        self._in_flight = None

    def __len__(self) -> int:
        return len(self._watches)

    def get(self, watch_id: int) -> Optional[LogicalWatch]:
        return self._watches.get(watch_id)

    def create_watch(
        self,
        key: bytes,
        range_end: Optional[bytes] = None,
        start_revision: Optional[int] = None,
        filters: Optional[Sequence[WatchCreateRequestFilterType]] = None,
        prev_kv: bool = False,
        progress_notify: bool = False,
        fragment: bool = False,
        encoding: str = 'utf-8',
        ready_event: Optional[asyncio.Event] = None,
    ) -> WatchHandle:
        """
        Registers a new logical watch and returns its handle.
        The create request is sent by the session task; events start flowing once
        the server acknowledges it.

        Raises
        ------
        Closed
            When the multiplexer has been shut down.
        """
        self._ensure_started()
        watch_id = next(self._ids)
        handle = WatchHandle(self, watch_id, ready_event=ready_event)
        watch = LogicalWatch(
            watch_id, key, handle,
            range_end=range_end,
            start_revision=start_revision,
            filters=tuple(filters or ()),
            prev_kv=prev_kv,
            progress_notify=progress_notify,
            fragment=fragment,
            encoding=encoding,
        )
        self._post(self._register, watch)
        return handle

    async def cancel_watch(self, watch_id: int) -> None:
        if self.closed:
            return
        try:
            done = await self._submit(self._request_cancel, watch_id)
        except Closed:
            return
        await done

    async def request_progress(self) -> None:
        """
        Asks the server to send a progress notification to every watch on the stream.
        """
        request = grpc_api.WatchRequest()
        request.progress_request.SetInParent()
        await self._submit(self._write, request)

    async def _register(self, watch: LogicalWatch) -> None:
        self._watches[watch.id] = watch
        self._pending.append(watch.id)
        log.debug('watch %d registered for key %r', watch.id, watch.key)
        await self._pump_creates()

    async def _pump_creates(self) -> None:
        while self._in_flight is None and self._pending:
            if self.state is not SessionState.STREAMING:
                await self._ensure_stream()
                return
            watch_id = self._pending.popleft()
            watch = self._watches.get(watch_id)
            if watch is None:
                continue
            self._in_flight = watch_id
            if not await self._write(watch.build_create_request()):
                return

    async def _request_cancel(self, watch_id: int) -> asyncio.Future:
        done = asyncio.get_running_loop().create_future()
        watch = self._watches.get(watch_id)
        if watch is None:
            done.set_result(None)
            return done
        watch.cancel_waiters.append(done)
        if watch.cancel_requested:
            return done
        watch.cancel_requested = True
        log.debug('watch %d: cancel requested (%s)', watch_id, watch.state.value)
        if watch.state is WatchState.PENDING_CREATE:
            if self._in_flight != watch_id:
                # Never reached the server; nothing to acknowledge.
                self._finish(watch, None)
                await self._maybe_release()
            return done
        assert watch.server_id is not None
        await self._write(_cancel_request(watch.server_id))
        return done

    def _finish(self, watch: LogicalWatch, error: Optional[BaseException]) -> None:
        self._watches.pop(watch.id, None)
        if watch.server_id is not None and self._routes.get(watch.server_id) == watch.id:
            del self._routes[watch.server_id]
        try:
            self._pending.remove(watch.id)
        except ValueError:
            pass
        watch.state = WatchState.CANCELLED
        watch.server_id = None
        watch.handle._close(error)
        for waiter in watch.cancel_waiters:
            if not waiter.done():
                waiter.set_result(None)
        watch.cancel_waiters.clear()
        if error is not None:
            log.warning('watch %d closed: %r', watch.id, error)
        else:
            log.debug('watch %d removed', watch.id)

    async def _maybe_release(self) -> None:
        if not self._watches and self._in_flight is None:
            await self._release_stream()

    def _wants_stream(self) -> bool:
        return bool(self._pending) or self._in_flight is not None

    async def _on_connected(self) -> None:
        await self._pump_creates()

    async def _on_frame(self, response) -> None:
        if response.created:
            await self._on_created(response)
            return
        if response.watch_id == _ALL_WATCHES and not response.events:
            # answer to a progress request, valid for every synced watch on the stream
            for watch in self._watches.values():
                if watch.state is WatchState.ACTIVE and not watch.fragments:
                    watch.next_revision = max(watch.next_revision or 0, response.header.revision + 1)
            return
        watch_id = self._routes.get(response.watch_id)
        watch = self._watches.get(watch_id) if watch_id is not None else None
        if watch is None:
            log.debug('dropping response for unknown server watch %d', response.watch_id)
            return
        if response.canceled or response.compact_revision:
            del self._routes[response.watch_id]
            error: Optional[EtcdmuxError]
            if response.compact_revision:
                error = EtcdCompactedError(response.compact_revision)
            elif watch.cancel_requested:
                error = None
            else:
                error = EtcdCancelledError(response.cancel_reason or 'watch canceled by server')
            self._finish(watch, error)
            await self._maybe_release()
            return
        if watch.cancel_requested:
            return
        if response.fragment:
            watch.fragments.extend(response.events)
            return
        events = [*watch.fragments, *response.events]
        watch.fragments.clear()
        if not events:
            # progress notification: everything up to header.revision has been sent
            watch.next_revision = max(watch.next_revision or 0, response.header.revision + 1)
            return
        # one transaction yields several events at the same revision
        floor = watch.last_revision
        for event in events:
            if event.kv.mod_revision <= floor:
                continue
            watch.handle._deliver(watch.convert_event(event))
            watch.last_revision = max(watch.last_revision, event.kv.mod_revision)
        watch.next_revision = watch.last_revision + 1

    async def _on_created(self, response) -> None:
        watch_id, self._in_flight = self._in_flight, None
        watch = self._watches.get(watch_id) if watch_id is not None else None
        if watch is None:
            log.debug('unexpected create acknowledgement for server watch %d', response.watch_id)
            if not response.canceled:
                await self._write(_cancel_request(response.watch_id))
        elif response.canceled or response.compact_revision:
            if response.compact_revision:
                error: EtcdmuxError = EtcdCompactedError(response.compact_revision)
            else:
                error = EtcdCancelledError(response.cancel_reason or 'watch create rejected')
            self._finish(watch, error)
        else:
            watch.server_id = response.watch_id
            self._routes[response.watch_id] = watch.id
            if watch.cancel_requested:
                await self._write(_cancel_request(response.watch_id))
            else:
                watch.state = WatchState.ACTIVE
                if watch.next_revision is None:
                    watch.next_revision = response.header.revision + 1
                log.debug('watch %d created as server watch %d from revision %d',
                          watch.id, response.watch_id, watch.next_revision)
                watch.handle._mark_created()
        await self._pump_creates()
        await self._maybe_release()

    async def _on_disconnected(self, error: BaseException) -> None:
        self._routes.clear()
        self._in_flight = None
        for watch in list(self._watches.values()):
            if watch.cancel_requested:
                self._finish(watch, None)
                continue
            watch.state = WatchState.PENDING_CREATE
            watch.server_id = None
            watch.fragments.clear()
        self._pending = deque(sorted(self._watches))
        if self._pending:
            log.info('%d watch(es) will resume after reconnect', len(self._pending))

    async def _on_closed(self) -> None:
        self._in_flight = None
        for watch in list(self._watches.values()):
            self._finish(watch, None)
        self._pending.clear()
