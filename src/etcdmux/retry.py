"""
Endpoint failover for unary calls.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Set, TypeVar

from google.protobuf.message import Message

from . import grpc_api
from .channel import ChannelPool, EtcdChannel
from .endpoints import EndpointPool
from .errors import EtcdmuxError, Exhausted, NoEndpointsAvailable, TransportError
from .types import HostPortPair, RetryPolicy

__all__ = (
    'CallDescriptor',
    'Outcome',
    'RetryContext',
    'RetryInterceptor',
    'classify',
)

log = logging.getLogger(__name__)

T = TypeVar('T')


class Outcome(enum.Enum):
    SUCCESS = 'success'
    RETRYABLE = 'retryable'
    NON_RETRYABLE = 'non-retryable'


def classify(error: BaseException) -> Outcome:
    if isinstance(error, TransportError):
        return Outcome.RETRYABLE
    return Outcome.NON_RETRYABLE


@dataclass(frozen=True)
class CallDescriptor:
    name: str
    idempotent: bool


@dataclass
class RetryContext:
    """
    Book-keeping for one logical call, from the first attempt to success or final failure.
    """
    descriptor: CallDescriptor
    attempts: int = 0
    tried: Set[HostPortPair] = field(default_factory=set)
    last_error: Optional[BaseException] = None
    outcome: Optional[Outcome] = None


class RetryInterceptor:
    """
    Runs one call against the selected endpoint and resubmits it to the next
    endpoint after a retryable failure.

    Whether a call may be resubmitted is decided from its descriptor and the
    configured `RetryPolicy`, never from the failure itself: idempotent calls are
    always eligible, mutating calls only with `RetryPolicy.retry_mutations` or an
    explicit per-call `retry=True`.
    """
    pool: EndpointPool
    channels: ChannelPool
    policy: RetryPolicy

    def __init__(
        self,
        pool: EndpointPool,
        channels: ChannelPool,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.pool = pool
        self.channels = channels
        self.policy = policy or RetryPolicy()

    @property
    def max_attempts(self) -> int:
        limit = max(1, len(self.pool))
        if self.policy.max_attempts is not None:
            return max(1, min(self.policy.max_attempts, limit))
        return limit

    def is_retry_allowed(self, descriptor: CallDescriptor, retry: Optional[bool] = None) -> bool:
        if retry is not None:
            return retry
        return descriptor.idempotent or self.policy.retry_mutations

    async def call(
        self,
        descriptor: CallDescriptor,
        attempt: Callable[[EtcdChannel], Awaitable[T]],
        retry: Optional[bool] = None,
    ) -> T:
        """
        Performs `attempt` against successive endpoints until it succeeds,
        fails with a non-retryable error, or the attempt budget runs out.

        Raises
        ------
        Exhausted
            When every allowed attempt failed with a retryable error.
        NoEndpointsAvailable
            When the endpoint pool is empty.
        """
        allowed = self.is_retry_allowed(descriptor, retry)
        max_attempts = self.max_attempts
        ctx = RetryContext(descriptor)
        while True:
            try:
                endpoint = self.pool.select(exclude=ctx.tried)
            except NoEndpointsAvailable:
                if ctx.last_error is None:
                    raise
                raise Exhausted(ctx.attempts, ctx.last_error) from ctx.last_error
            ctx.attempts += 1
            ctx.tried.add(endpoint)
            try:
                result = await attempt(self.channels.get(endpoint))
            except EtcdmuxError as e:
                ctx.last_error = e
                ctx.outcome = classify(e)
                if ctx.outcome is Outcome.NON_RETRYABLE:
                    raise
                self.pool.mark_failed(endpoint)
                if not allowed:
                    raise
                if ctx.attempts >= max_attempts:
                    log.warning(
                        '%s: giving up after %d attempt(s), last error: %r',
                        descriptor.name, ctx.attempts, e)
                    raise Exhausted(ctx.attempts, e) from e
                log.info('%s: attempt %d against %s failed (%r), retrying',
                         descriptor.name, ctx.attempts, endpoint, e)
                continue
            ctx.outcome = Outcome.SUCCESS
            return result

    async def unary(
        self,
        method: grpc_api.RpcMethod,
        request: Message,
        idempotent: bool,
        retry: Optional[bool] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        descriptor = CallDescriptor(method.path, idempotent)

        async def _attempt(channel: EtcdChannel) -> Message:
            return await channel.unary(method, request, timeout=timeout)

        return await self.call(descriptor, _attempt, retry=retry)
