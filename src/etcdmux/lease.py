"""
Lease keep-alive multiplexing over a single physical `LeaseKeepAlive` stream.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional

from . import grpc_api
from .errors import Closed, EtcdBadRequestError, EtcdNotFoundError, LeaseExpired, LeaseNotFound
from .retry import RetryInterceptor
from .session import SessionState, StreamSession, _Signal
from .types import LeaseKeepAliveResponse

__all__ = (
    'LeaseState',
    'LeaseEntry',
    'LeaseKeepAliveHandle',
    'LeaseKeeper',
)

log = logging.getLogger(__name__)

_TICK = _Signal('tick')


class LeaseState(enum.Enum):
    ACTIVE = 'active'
    PENDING_RENEWAL = 'pending-renewal'
    EXPIRED = 'expired'


@dataclass
class _Terminal:
    error: Optional[BaseException]


class LeaseKeepAliveHandle:
    """
    Notification channel of one kept-alive lease.

    Iterating yields a `LeaseKeepAliveResponse` for every acknowledged renewal
    (only the most recent ones are retained if nobody reads them). When the lease
    is lost, `LeaseExpired` or `LeaseNotFound` is raised exactly once and the
    iteration stops. Revoking the lease or closing the keeper ends it silently.
    """
    lease_id: int

    _keeper: LeaseKeeper
    _acks: Deque[LeaseKeepAliveResponse]
    _terminal: Optional[_Terminal]
    _wakeup: asyncio.Event
    _finished: bool

    def __init__(self, keeper: LeaseKeeper, lease_id: int, backlog: int = 16) -> None:
        self.lease_id = lease_id
        self._keeper = keeper
        self._acks = deque(maxlen=backlog)
        self._terminal = None
        self._wakeup = asyncio.Event()
        self._finished = False

    def __repr__(self) -> str:
        return f'<LeaseKeepAliveHandle id={self.lease_id:x}>'

    @property
    def done(self) -> bool:
        return self._terminal is not None

    def __aiter__(self) -> LeaseKeepAliveHandle:
        return self

    async def __anext__(self) -> LeaseKeepAliveResponse:
        while True:
            if self._finished:
                raise StopAsyncIteration
            if self._acks:
                return self._acks.popleft()
            if self._terminal is not None:
                self._finished = True
                if self._terminal.error is not None:
                    raise self._terminal.error
                raise StopAsyncIteration
            self._wakeup.clear()
            await self._wakeup.wait()

    async def cancel(self) -> None:
        """
        Stops renewing the lease without revoking it.
        """
        await self._keeper.forget(self.lease_id)

    async def __aenter__(self) -> LeaseKeepAliveHandle:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        await self.cancel()
        return False

    def _deliver(self, response: LeaseKeepAliveResponse) -> None:
        self._acks.append(response)
        self._wakeup.set()

    def _close(self, error: Optional[BaseException]) -> None:
        if self._terminal is None:
            self._terminal = _Terminal(error)
            self._wakeup.set()


@dataclass(eq=False)
class LeaseEntry:
    """
    `deadline` is when the next renewal is due; `expires_at` is the local estimate
    of when the server will drop the lease if no renewal gets through.
    Both are `clock()` timestamps.
    """
    lease_id: int
    handle: LeaseKeepAliveHandle
    ttl: Optional[int] = None
    deadline: float = 0.0
    expires_at: Optional[float] = None
    state: LeaseState = LeaseState.ACTIVE
    confirmed: bool = False
    sent_at: Optional[float] = None
    waiters: List[asyncio.Future] = field(default_factory=list)

    def settle(self, result: Optional[LeaseKeepAliveResponse], error: Optional[BaseException] = None) -> None:
        for waiter in self.waiters:
            if waiter.done():
                continue
            if error is not None:
                waiter.set_exception(error)
            else:
                waiter.set_result(result)
        self.waiters.clear()


class LeaseKeeper(StreamSession):
    """
    Keeps many leases alive over one physical bidirectional `LeaseKeepAlive` stream.

    A background tick sends a renewal for every lease whose deadline has elapsed,
    never more than one unacknowledged renewal per lease. Responses are matched
    to leases by id. A lease whose last acknowledged TTL runs out is reported as
    expired and dropped, whether or not the stream is connected.
    """
    method = grpc_api.LEASE_KEEPALIVE
    name = 'lease-keepalive'

    _retry: RetryInterceptor
    _clock: Callable[[], float]
    _entries: Dict[int, LeaseEntry]
    _ticker: Optional[asyncio.Task]

    def __init__(
        self,
        *args,
        retry: RetryInterceptor,
        clock: Callable[[], float] = time.monotonic,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._retry = retry
        self._clock = clock
        self._entries = {}
        self._ticker = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, lease_id: int) -> Optional[LeaseEntry]:
        return self._entries.get(lease_id)

    async def grant(self, ttl: int, lease_id: Optional[int] = None, keep_alive: bool = True) -> int:
        """
        Grants a new lease and, unless `keep_alive` is `False`, starts renewing it.

        Returns
        -------
        id: int
            Lease ID for the granted lease.
        """
        self._ensure_started()
        started = self._clock()
        response = await self._retry.unary(
            grpc_api.LEASE_GRANT,
            grpc_api.LeaseGrantRequest(TTL=ttl, ID=lease_id or 0),
            idempotent=False,
            timeout=self.options.call_timeout,
        )
        if response.error:
            raise EtcdBadRequestError(response.error)
        if keep_alive:
            entry = LeaseEntry(
                response.ID,
                LeaseKeepAliveHandle(self, response.ID),
                ttl=response.TTL,
                deadline=self._clock() + response.TTL / 3,
                expires_at=started + response.TTL,
                confirmed=True,
            )
            await self._submit(self._add, entry)
        log.debug('granted lease %x with ttl %d', response.ID, response.TTL)
        return response.ID

    async def keep_alive(self, lease_id: int) -> LeaseKeepAliveHandle:
        """
        Starts renewing `lease_id`, or returns the existing handle if it is already renewed.
        If the server does not know the lease, the handle raises `LeaseNotFound`.
        """
        entry = LeaseEntry(
            lease_id,
            LeaseKeepAliveHandle(self, lease_id),
            deadline=self._clock(),
        )
        return await self._submit(self._add, entry)

    async def refresh(self, lease_id: int) -> LeaseKeepAliveResponse:
        """
        Renews a kept-alive lease right away instead of waiting for its deadline
        and returns the server's acknowledgement.

        Raises
        ------
        LeaseNotFound
            If `lease_id` is not kept alive by this keeper, or the server does not know it.
        LeaseExpired
            If the lease ran out before the renewal was acknowledged.
        """
        waiter = await self._submit(self._force_renewal, lease_id)
        return await waiter

    async def forget(self, lease_id: int) -> None:
        """
        Stops renewing `lease_id`. The lease itself is left to expire on the server.
        """
        if self.closed:
            return
        try:
            await self._submit(self._remove, lease_id)
        except Closed:
            pass

    async def revoke(self, lease_id: int) -> None:
        """
        Stops renewing `lease_id` and revokes it on the server.

        Raises
        ------
        LeaseNotFound
            If the server does not know the lease.
        """
        await self.forget(lease_id)
        try:
            await self._retry.unary(
                grpc_api.LEASE_REVOKE,
                grpc_api.LeaseRevokeRequest(ID=lease_id),
                idempotent=False,
                timeout=self.options.call_timeout,
            )
        except EtcdNotFoundError as e:
            raise LeaseNotFound(lease_id) from e

    async def _add(self, entry: LeaseEntry) -> LeaseKeepAliveHandle:
        if (existing := self._entries.get(entry.lease_id)) is not None:
            return existing.handle
        self._entries[entry.lease_id] = entry
        if self._ticker is None:
            self._ticker = asyncio.create_task(self._tick_loop(), name=f'etcdmux-{self.name}-ticker')
        log.debug('lease %x registered for keep-alive', entry.lease_id)
        await self._ensure_stream()
        return entry.handle

    async def _force_renewal(self, lease_id: int) -> asyncio.Future:
        entry = self._entries.get(lease_id)
        if entry is None:
            raise LeaseNotFound(lease_id)
        waiter = asyncio.get_running_loop().create_future()
        entry.waiters.append(waiter)
        now = self._clock()
        entry.deadline = min(entry.deadline, now)
        if self.state is SessionState.STREAMING:
            await self._renew_due(now)
        else:
            await self._ensure_stream()
        return waiter

    async def _remove(self, lease_id: int) -> None:
        if (entry := self._entries.pop(lease_id, None)) is None:
            return
        entry.settle(None, Closed(f'lease {lease_id:x} is no longer kept alive'))
        entry.handle._close(None)
        log.debug('lease %x no longer kept alive', lease_id)
        if not self._entries:
            await self._release_stream()

    def _expire(self, entry: LeaseEntry, error: BaseException) -> None:
        self._entries.pop(entry.lease_id, None)
        entry.state = LeaseState.EXPIRED
        entry.settle(None, error)
        entry.handle._close(error)
        log.warning('lease %x lost: %s', entry.lease_id, error)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.options.keepalive_tick)
            self._inbox.put_nowait(_TICK)

    async def _on_signal(self, signal: _Signal) -> None:
        if signal is _TICK:
            await self._on_tick()
            return
        await super()._on_signal(signal)

    async def _on_tick(self) -> None:
        now = self._clock()
        for entry in list(self._entries.values()):
            if entry.expires_at is not None and now >= entry.expires_at:
                self._expire(entry, LeaseExpired(entry.lease_id))
        if not self._entries:
            await self._release_stream()
            return
        if self.state is SessionState.DISCONNECTED:
            await self._ensure_stream()
            return
        await self._renew_due(now)

    async def _renew_due(self, now: float) -> None:
        for entry in list(self._entries.values()):
            if self.state is not SessionState.STREAMING:
                return
            if entry.state is not LeaseState.ACTIVE or now < entry.deadline:
                continue
            entry.state = LeaseState.PENDING_RENEWAL
            entry.sent_at = now
            await self._write(grpc_api.LeaseKeepAliveRequest(ID=entry.lease_id))

    def _wants_stream(self) -> bool:
        return bool(self._entries)

    async def _on_connected(self) -> None:
        await self._renew_due(self._clock())

    async def _on_frame(self, response) -> None:
        entry = self._entries.get(response.ID)
        if entry is None:
            return
        now = self._clock()
        if response.TTL <= 0:
            error = LeaseExpired(entry.lease_id) if entry.confirmed else LeaseNotFound(entry.lease_id)
            self._expire(entry, error)
            if not self._entries:
                await self._release_stream()
            return
        sent_at = entry.sent_at if entry.sent_at is not None else now
        entry.ttl = response.TTL
        entry.deadline = now + response.TTL / 3
        entry.expires_at = sent_at + response.TTL
        entry.state = LeaseState.ACTIVE
        entry.confirmed = True
        entry.sent_at = None
        ack = LeaseKeepAliveResponse(entry.lease_id, response.TTL, response.header.revision)
        entry.settle(ack)
        entry.handle._deliver(ack)

    async def _on_disconnected(self, error: BaseException) -> None:
        for entry in self._entries.values():
            if entry.state is LeaseState.PENDING_RENEWAL:
                entry.state = LeaseState.ACTIVE
                entry.sent_at = None

    async def _on_closed(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        entries, self._entries = self._entries, {}
        for entry in entries.values():
            entry.settle(None, Closed(f'{self.name} session is closed'))
            entry.handle._close(None)
