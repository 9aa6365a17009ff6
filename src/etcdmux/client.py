"""
Pure python asyncio Etcd client with multiplexed watch and lease keep-alive streams.
"""

from __future__ import annotations
import asyncio
import logging
import time

from typing import (
    Callable,
    List,
    Mapping,
    MutableMapping,
    Optional,
    OrderedDict,
    Sequence,
    Union,
)

from google.protobuf.message import Message

from . import grpc_api
from .channel import ChannelPool, EtcdChannel
from .endpoints import EndpointPool
from .errors import LeaseNotFound, grpc_exception_handler
from .lease import LeaseKeepAliveHandle, LeaseKeeper
from .retry import RetryInterceptor
from .types import (
    DeleteRangeRequestType, EtcdCredential, EtcdLockOption, HostPortPair, LeaseInfo,
    PutRequestType, RangeRequestSortOrder, RangeRequestSortTarget, RangeRequestType,
    RetryPolicy, SessionOptions, TransactionRequest, TxnReturnType, TxnReturnValues,
    WatchCreateRequestFilterType,
)
from .watch import WatchHandle, WatchMultiplexer


__all__ = (
    'EtcdClient',
    'EtcdCommunicator',
    'EtcdConnectionManager',
    'EtcdLockManager',
    'EtcdRequestGenerator',
    'EtcdTransaction',
    'EtcdTransactionAction',
    'prefix_range_end',
)

log = logging.getLogger(__name__)


def prefix_range_end(prefix: bytes) -> bytes:
    """
    Returns the exclusive end of the key range covering every key starting with `prefix`.
    A prefix made only of `0xff` bytes (or an empty one) yields `b'\\0'`, meaning "up to the last key".
    """
    end = bytearray(prefix)
    for i in reversed(range(len(end))):
        if end[i] < 0xff:
            end[i] += 1
            return bytes(end[:i + 1])
    return b'\0'


class EtcdClient:
    """
    Etcd client entry point.
    Holds the endpoint set shared by every connection made through it.
    """
    pool: EndpointPool
    secure: bool
    encoding: str
    retry_policy: RetryPolicy
    session_options: SessionOptions

    _creds: Optional[EtcdCredential]

    def __init__(
        self,
        endpoints: Union[HostPortPair, Sequence[HostPortPair]],
        credentials: Optional[EtcdCredential] = None,
        secure: bool = False,
        encoding: str = 'utf-8',
        retry_policy: Optional[RetryPolicy] = None,
        session_options: Optional[SessionOptions] = None,
    ) -> None:
        """
        Creates `EtcdClient` instance.

        Parameters
        ---------
        endpoints
            Connection information of target Etcd cluster members.
            Either a single `HostPortPair` or a sequence of them.
        credentials
            Authentication information of target Etcd cluster.
            When this value is `None`, `etcdmux` will skip all Etcd authentication procedures.
        secure
            If this value is `True`, `etcdmux` will try to communicate to Etcd cluster
            with secure gRPC channel.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
            Defaults to `utf-8`.
        retry_policy
            Bounds for resubmitting failed calls to other endpoints.
            Defaults to one attempt per endpoint, reads only.
        session_options
            Timing of the background watch and keep-alive streams.
        """
        if isinstance(endpoints, HostPortPair):
            endpoints = [endpoints]
        self.pool = EndpointPool(endpoints)
        self._creds = credentials
        self.secure = secure
        self.encoding = encoding
        self.retry_policy = retry_policy or RetryPolicy()
        self.session_options = session_options or SessionOptions()

    @property
    def addr(self) -> Optional[HostPortPair]:
        """
        Currently selected endpoint, or the first known one if none was selected yet.
        """
        if (active := self.pool.active) is not None:
            return active
        endpoints = self.pool.endpoints
        return endpoints[0] if endpoints else None

    def update_endpoints(self, endpoints: Sequence[HostPortPair]) -> None:
        """
        Replaces the known endpoint set.
        Open watch and keep-alive streams are left alone and pick the new set up when they reconnect.
        """
        self.pool.update(endpoints)
        log.info('endpoints updated: %s', ', '.join(map(str, self.pool.endpoints)))

    def _build_channel(self, endpoint: HostPortPair) -> EtcdChannel:
        return EtcdChannel(endpoint, credentials=self._creds, secure=self.secure)

    def _build_communicator(self) -> EtcdCommunicator:
        return EtcdCommunicator(
            self.pool,
            ChannelPool(self._build_channel),
            encoding=self.encoding,
            retry_policy=self.retry_policy,
            session_options=self.session_options,
        )

    def connect(self) -> EtcdConnectionManager:
        """
        Async context manager which establishes connection to Etcd cluster.

        Returns
        -------
        communicator: EtcdCommunicator
            An `EtcdCommunicator` instance.
        """
        return EtcdConnectionManager(self._build_communicator, encoding=self.encoding)

    def with_lock(
        self,
        lock_name: str,
        timeout: Optional[float] = None,
        ttl: Optional[int] = None,
    ) -> EtcdConnectionManager:
        """
        Async context manager which establishes connection and then
        immediately tries to acquire lock with given lock name.
        Acquired lock will automatically released when user exits `with` context.

        Parameters
        ---------
        lock_name
            Name of Etcd lock to acquire.
        timeout
            Number of seconds to wait until lock is acquired. Defaults to `None`.
            If value is `None`, `with_lock` will wait forever until lock is acquired.
        ttl
            If not None, sets a TTL to granted Lock.
            The lock will be automatically released after this amount of seconds elapses.
            Defaults to `None`.
        Returns
        -------
        communicator: EtcdCommunicator
            An `EtcdCommunicator` instance.

        Raises
        -------
        asyncio.TimeoutError
            When timeout expires.
        """
        lock_opt = EtcdLockOption(lock_name, timeout=timeout, ttl=ttl)
        return EtcdConnectionManager(
            self._build_communicator, encoding=self.encoding, lock_option=lock_opt)


class EtcdConnectionManager:
    communicator_builder: Callable[[], EtcdCommunicator]
    encoding: str

    _lock_option: Optional[EtcdLockOption]
    _lock: Optional[EtcdLockManager]
    _communicator: Optional[EtcdCommunicator]

    def __init__(
        self,
        communicator_builder: Callable[[], EtcdCommunicator],
        encoding: str = 'utf-8',
        lock_option: Optional[EtcdLockOption] = None,
    ) -> None:
        self.communicator_builder = communicator_builder
        self.encoding = encoding
        self._lock_option = lock_option
        self._lock = None
        self._communicator = None

    async def __aenter__(self) -> EtcdCommunicator:
        self._communicator = self.communicator_builder()
        if lock_opt := self._lock_option:
            self._lock = EtcdLockManager(
                lock_opt.lock_name, self._communicator, encoding=self.encoding,
                ttl=lock_opt.ttl, timeout_seconds=lock_opt.timeout)
            try:
                await self._lock.__aenter__()
            except BaseException:
                self._lock = None
                await self._communicator.close()
                raise
        return self._communicator

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        assert self._communicator is not None
        try:
            if self._lock is not None:
                await self._lock.__aexit__(exc_type, exc, tb)
        finally:
            await self._communicator.close()
        return False


class EtcdRequestGenerator:
    @classmethod
    def put(
        cls, key: str, value: Optional[str],
        lease: Optional[int] = None,
        prev_kv: bool = False,
        ignore_value: bool = False,
        ignore_lease: bool = False,
        encoding='utf-8',
    ):
        return grpc_api.PutRequest(
            key=key.encode(encoding),
            value=value.encode(encoding) if value else None,
            lease=lease, prev_kv=prev_kv,
            ignore_lease=ignore_lease, ignore_value=ignore_value,
        )

    @classmethod
    def get(
        cls, key: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding='utf-8',
    ):
        return cls._range(
            key.encode(encoding), None,
            limit=limit,
            max_create_revision=max_create_revision,
            max_mod_revision=max_mod_revision,
            min_create_revision=min_create_revision,
            min_mod_revision=min_mod_revision,
            revision=revision,
            serializable=serializable,
            sort_order=sort_order,
            sort_target=sort_target,
        )

    @classmethod
    def get_range(
        cls, key: str, range_end: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        keys_only: bool = False,
        encoding='utf-8',
    ):
        return cls._range(
            key.encode(encoding), range_end.encode(encoding),
            limit=limit,
            max_create_revision=max_create_revision,
            max_mod_revision=max_mod_revision,
            min_create_revision=min_create_revision,
            min_mod_revision=min_mod_revision,
            revision=revision,
            serializable=serializable,
            sort_order=sort_order,
            sort_target=sort_target,
            keys_only=keys_only,
        )

    @classmethod
    def get_prefix(
        cls, key: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        keys_only: bool = False,
        encoding='utf-8',
    ):
        encoded_key = key.encode(encoding)
        return cls._range(
            encoded_key, prefix_range_end(encoded_key),
            limit=limit,
            max_create_revision=max_create_revision,
            max_mod_revision=max_mod_revision,
            min_create_revision=min_create_revision,
            min_mod_revision=min_mod_revision,
            revision=revision,
            serializable=serializable,
            sort_order=sort_order,
            sort_target=sort_target,
            keys_only=keys_only,
        )

    @classmethod
    def _range(
        cls, key: bytes, range_end: Optional[bytes],
        sort_order: RangeRequestSortOrder,
        sort_target: RangeRequestSortTarget,
        keys_only: bool = False,
        **kwargs,
    ):
        return grpc_api.RangeRequest(
            key=key,
            range_end=range_end,
            keys_only=keys_only,
            sort_order=sort_order.value,
            sort_target=sort_target.value,
            **kwargs,
        )

    @classmethod
    def delete(
        cls, key: str,
        prev_kv: bool = False,
        encoding='utf-8',
    ):
        return grpc_api.DeleteRangeRequest(
            key=key.encode(encoding),
            prev_kv=prev_kv,
        )

    @classmethod
    def delete_range(
        cls, key: str, range_end: str,
        prev_kv: bool = False,
        encoding='utf-8',
    ):
        return grpc_api.DeleteRangeRequest(
            key=key.encode(encoding),
            range_end=range_end.encode(encoding),
            prev_kv=prev_kv,
        )

    @classmethod
    def delete_prefix(
        cls, key: str,
        prev_kv: bool = False,
        encoding='utf-8',
    ):
        encoded_key = key.encode(encoding)
        return grpc_api.DeleteRangeRequest(
            key=encoded_key,
            range_end=prefix_range_end(encoded_key),
            prev_kv=prev_kv,
        )


class EtcdCommunicator:
    """
    Performs actual API calls to Etcd cluster and returns result.

    Unary calls go through the retry interceptor; watches and lease renewals
    are multiplexed over one long-lived stream each.
    """
    encoding: str
    pool: EndpointPool
    channels: ChannelPool
    retry: RetryInterceptor
    watches: WatchMultiplexer
    leases: LeaseKeeper
    options: SessionOptions

    def __init__(
        self,
        pool: EndpointPool,
        channels: ChannelPool,
        encoding: str = 'utf-8',
        retry_policy: Optional[RetryPolicy] = None,
        session_options: Optional[SessionOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Creates `EtcdCommunicator` instance.
        In most cases, users won't have to directly create `EtcdCommunicator` class;
        It can be automatically done by `EtcdClient.connect()` or `EtcdClient.with_lock()`.

        Parameters
        ---------
        pool
            Endpoints to talk to.
        channels
            Per-endpoint channel cache. Closed together with this communicator.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
            Defaults to `utf-8`.
        """
        self.encoding = encoding
        self.pool = pool
        self.channels = channels
        self.options = session_options or SessionOptions()
        self.retry = RetryInterceptor(pool, channels, retry_policy)
        self.watches = WatchMultiplexer(pool, channels, self.options)
        self.leases = LeaseKeeper(pool, channels, self.options, retry=self.retry, clock=clock)

    async def close(self) -> None:
        """
        Ends every watch and keep-alive, then closes all channels.
        """
        await asyncio.gather(self.watches.close(), self.leases.close())
        await self.channels.close()

    async def _unary(
        self,
        method: grpc_api.RpcMethod,
        request: Message,
        idempotent: bool,
        retry: Optional[bool] = None,
    ):
        return await self.retry.unary(
            method, request, idempotent, retry=retry, timeout=self.options.call_timeout)

    @grpc_exception_handler
    async def put(
        self, key: str, value: Optional[str],
        lease: Optional[int] = None,
        prev_kv: bool = False,
        encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> Optional[str]:
        """
        Puts given key into the key-value store.

        Parameters
        ---------
        key
            The key to put into the key-value store
        value
            The value to associate with the key in the key-value store.
        lease
            The lease ID to associate with the key in the key-value store. Defaults to `None`.
            `None` lease indicates no lease.
        prev_kv
            If this value is `True`, gets the previous value before changing it and returns it.
            Defaults to `False`.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
            If this value is `None`, this method will use default encoding which is set when creating
            this instance.
            Defaults to `utf-8`.
        retry
            Overrides `RetryPolicy.retry_mutations` for this call.

        Returns
        -------
        value: Optional[str]
            If `prev_kv` is set to `True` and previous value exists, returns previous value.
            Otherwise it will just return `None`.
        """
        if encoding is None:
            encoding = self.encoding
        ignore_value = value is None
        if ignore_value:
            value = ''
        response = await self._unary(
            grpc_api.KV_PUT,
            EtcdRequestGenerator.put(
                key, value,
                lease=lease, prev_kv=prev_kv, ignore_value=ignore_value,
                encoding=encoding,
            ),
            idempotent=False, retry=retry,
        )
        if prev_kv and response.HasField('prev_kv'):
            return response.prev_kv.value.decode(encoding)
        return None

    @grpc_exception_handler
    async def get(
        self, key: str,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        encoding: Optional[str] = None,
    ) -> Optional[str]:
        """
        Gets value associated with given key from the key-value store.

        Parameters
        ---------
        key
            The key to look up.
        max_create_revision
            The upper bound for returned key create revisions;
            all keys with greater create revisions will be filtered away.
        max_mod_revision
            The upper bound for returned key mod revisions;
            all keys with greater mod revisions will be filtered away.
        min_create_revision
            The lower bound for returned key create revisions;
            all keys with lesser create revisions will be filtered away.
        min_mod_revision
            The lower bound for returned key mod revisions;
            all keys with lesser mod revisions will be filtered away.
        revision
            The point-in-time of the key-value store to use for the range.
            If revision is less or equal to zero, the range is over the newest key-value store.
            If the revision has been compacted, `EtcdCompactedError` is raised.
        serializable
            If `False`, the read is linearized through the cluster leader.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
            If this value is `None`, this method will use default encoding which is set when creating
            this instance.
            Defaults to `utf-8`.

        Returns
        -------
        value: Optional[str]
            Returns value if given key exists. Otherwise it will return `None`.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_RANGE,
            EtcdRequestGenerator.get(
                key,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                serializable=serializable,
                encoding=encoding,
            ),
            idempotent=True,
        )
        if len(response.kvs) > 0:
            return response.kvs[0].value.decode(encoding)
        else:
            return None

    @grpc_exception_handler
    async def get_prefix(
        self, key: str,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding: Optional[str] = None,
    ) -> Mapping[str, str]:
        """
        Gets the key-value in dictionary from the key-value store with given key prefix.
        i.e. `get_prefix('/sorna/local')` call looks up all keys which has `/sorna/local` prefix.

        Parameters
        ---------
        key
            The key prefix to look up.
        revision
            The point-in-time of the key-value store to use for the range.
        sort_order
            Sort order. Defaults to `RangeRequestSortOrder.NONE`.
        sort_target
            Sort target. Defaults to `RangeRequestSortTarget.KEY`.
        encoding
            Character encoding type to encode/decode all types of byte based strings.

        Returns
        -------
        value: Mapping[str, str]
            Returns dictionary with all key-values which matches given key prefix.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_RANGE,
            EtcdRequestGenerator.get_prefix(
                key,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                sort_order=sort_order,
                sort_target=sort_target,
                encoding=encoding,
            ),
            idempotent=True,
        )
        ret: MutableMapping[str, str] = OrderedDict()
        for x in response.kvs:
            ret[x.key.decode(encoding)] = x.value.decode(encoding)
        return ret

    @grpc_exception_handler
    async def get_range(
        self, key: str, range_end: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding: Optional[str] = None,
    ) -> Mapping[str, str]:
        """
        Gets the key-value in dictionary from the key-value store with keys in [key, range_end) range.

        Parameters
        ---------
        key
            Start of key range.
        range_end
            End of key range.
        limit
            Maximum number of keys returned. `None` means no limit.

        Returns
        -------
        value: Mapping[str, str]
            Returns dictionary with all key-values in the range.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_RANGE,
            EtcdRequestGenerator.get_range(
                key, range_end,
                limit=limit,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                sort_order=sort_order,
                sort_target=sort_target,
                encoding=encoding,
            ),
            idempotent=True,
        )
        ret: MutableMapping[str, str] = OrderedDict()
        for x in response.kvs:
            ret[x.key.decode(encoding)] = x.value.decode(encoding)
        return ret

    @grpc_exception_handler
    async def delete(
        self, key: str,
        prev_kv: bool = False, encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> Optional[str]:
        """
        Deletes the given key the key-value store.
        A delete request increments the revision of the key-value store
        and generates a delete event in the event history for every deleted key.

        Parameters
        ---------
        key
            The key to delete.
        prev_kv
            If this value set to `True` and previous value with associated target key exists,
            this method will return previous value.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
        retry
            Overrides `RetryPolicy.retry_mutations` for this call.

        Returns
        ------
        value: Optional[str]
            If `prev_kv` is set to `True` and previous value exists, returns previous value.
            Otherwise it will just return `None`.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_DELETE_RANGE,
            EtcdRequestGenerator.delete(key, prev_kv=prev_kv, encoding=encoding),
            idempotent=False, retry=retry,
        )
        if prev_kv and len(response.prev_kvs) > 0:
            return response.prev_kvs[0].value.decode(encoding)
        else:
            return None

    @grpc_exception_handler
    async def delete_prefix(
        self, key: str,
        prev_kv: bool = False, encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> Optional[List[Optional[str]]]:
        """
        Deletes keys with given prefix and its associated values from the key-value store.

        Returns
        ------
        values: Optional[List[Optional[str]]]
            If `prev_kv` is set to `True`, returns the deleted values.
            Otherwise it will just return `None`.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_DELETE_RANGE,
            EtcdRequestGenerator.delete_prefix(key, prev_kv=prev_kv, encoding=encoding),
            idempotent=False, retry=retry,
        )
        if prev_kv:
            return [x.value.decode(encoding) for x in response.prev_kvs]
        else:
            return None

    @grpc_exception_handler
    async def delete_range(
        self, key: str, range_end: str,
        prev_kv: bool = False, encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> Optional[List[Optional[str]]]:
        """
        Deletes the given range from the key-value store.

        Parameters
        ---------
        key
            Start of key range.
        range_end
            End of key range.
        prev_kv
            If this value set to `True`, this method will return the deleted values.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_DELETE_RANGE,
            EtcdRequestGenerator.delete_range(key, range_end, prev_kv=prev_kv, encoding=encoding),
            idempotent=False, retry=retry,
        )
        if prev_kv:
            return [x.value.decode(encoding) for x in response.prev_kvs]
        else:
            return None

    @grpc_exception_handler
    async def keys_prefix(
        self, key: str,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding: Optional[str] = None,
    ) -> List[str]:
        """
        Gets the keys which has given prefix from the key-value store.

        Returns
        -------
        keys: List[str]
            Returns list of found keys.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_RANGE,
            EtcdRequestGenerator.get_prefix(
                key,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                sort_order=sort_order,
                sort_target=sort_target,
                keys_only=True,
                encoding=encoding,
            ),
            idempotent=True,
        )
        return [x.key.decode(encoding) for x in response.kvs]

    @grpc_exception_handler
    async def keys_range(
        self, key: str, range_end: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding: Optional[str] = None,
    ) -> List[str]:
        """
        Gets the keys in the range from the key-value store.
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.KV_RANGE,
            EtcdRequestGenerator.get_range(
                key, range_end,
                limit=limit,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                serializable=serializable,
                sort_order=sort_order,
                sort_target=sort_target,
                keys_only=True,
                encoding=encoding,
            ),
            idempotent=True,
        )
        return [x.key.decode(encoding) for x in response.kvs]

    @grpc_exception_handler
    async def grant_lease(self, ttl: int, id: Optional[int] = None, keep_alive: bool = True) -> int:
        """
        Creates a lease which expires if the server does not receive a keepAlive
        within a given time to live period. All keys attached to the lease
        will be expired and deleted if the lease expires.
        Each expired key generates a delete event in the event history.

        Parameters
        ---------
        ttl
            Advisory time-to-live in seconds.
        id
            Requested ID for the lease. If ID is set to None, the lessor chooses an ID.
        keep_alive
            If `True` (default), the lease is renewed in the background until it is
            revoked or this communicator is closed. Use `keep_alive_lease()` to observe renewals.

        Returns
        -------
        id: int
            Lease ID for the granted lease.
        """
        return await self.leases.grant(ttl, id, keep_alive=keep_alive)

    @grpc_exception_handler
    async def revoke_lease(self, id: int) -> None:
        """
        Revokes a lease. All keys attached to the lease will expire and be deleted.

        Parameters
        ---------
        id
            Lease ID to revoke. When the ID is revoked, all associated keys will be deleted.

        Raises
        ------
        LeaseNotFound
            If the lease does not exist (anymore).
        """
        await self.leases.revoke(id)

    async def keep_alive_lease(self, id: int) -> LeaseKeepAliveHandle:
        """
        Keeps the given lease alive in the background.
        Calling this for a lease granted with `keep_alive=True` returns its existing handle.

        Returns
        -------
        handle: LeaseKeepAliveHandle
            Async iterator of `LeaseKeepAliveResponse`, ending with `LeaseExpired`
            or `LeaseNotFound` if the lease is lost.
        """
        return await self.leases.keep_alive(id)

    @grpc_exception_handler
    async def get_lease_info(self, id: int, keys: bool = False, encoding: Optional[str] = None) -> LeaseInfo:
        """
        Queries remaining and granted TTL of a lease, and optionally the keys attached to it.

        Raises
        ------
        LeaseNotFound
            If the lease does not exist (anymore).
        """
        if encoding is None:
            encoding = self.encoding
        response = await self._unary(
            grpc_api.LEASE_TIME_TO_LIVE,
            grpc_api.LeaseTimeToLiveRequest(ID=id, keys=keys),
            idempotent=True,
        )
        if response.TTL == -1:
            raise LeaseNotFound(id)
        return LeaseInfo(
            response.ID, response.TTL, response.grantedTTL,
            tuple(k.decode(encoding) for k in response.keys),
        )

    def watch(
        self, key: str,
        ready_event: Optional[asyncio.Event] = None,
        filters: Optional[List[WatchCreateRequestFilterType]] = None,
        prev_kv: bool = False,
        progress_notify: bool = False,
        start_revision: Optional[int] = None,
        fragment: bool = False,
        encoding: Optional[str] = None,
    ) -> WatchHandle:
        """
        Async iterator which watches for events happening or that have happened.
        All watches of a communicator share one physical watch stream, which is
        transparently re-established (resuming every watch right after its last
        delivered revision) when the connection breaks.

        Parameters
        ---------
        key
            The key to watch events.
        ready_event
            If this value is set, `Event.set()` will be called
            when watch is ready to accept events.
        filters
            Events to filter. Defaults to `None`.
            If this list is `None`, `watch` will yield all types of event.
        prev_kv
            If this value is set to `True`, event will be yielded with previous value supplied.
        progress_notify
            progress_notify is set so that the etcd server will periodically send a WatchResponse
            with no events to the new watcher if there are no recent events.
            Progress notifications move the resume point forward without yielding anything.
        start_revision
            An optional revision to watch from (inclusive). No start_revision is "now".
        fragment
            Allows the server to split large revisions into several responses.
            They are reassembled before being yielded.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
            If this value is `None`, this method will use default encoding which is set when creating
            this instance.
            Defaults to `utf-8`.

        Returns
        -------
        handle: WatchHandle
            Async iterator of `WatchEvent`. Raises `EtcdCompactedError` once
            if `start_revision` (or the resume revision) has been compacted.
        """
        if encoding is None:
            encoding = self.encoding
        return self.watches.create_watch(
            key.encode(encoding),
            start_revision=start_revision, filters=filters, prev_kv=prev_kv,
            progress_notify=progress_notify, fragment=fragment,
            encoding=encoding, ready_event=ready_event,
        )

    def watch_prefix(
        self, key: str,
        ready_event: Optional[asyncio.Event] = None,
        filters: Optional[List[WatchCreateRequestFilterType]] = None,
        prev_kv: bool = False,
        progress_notify: bool = True,
        start_revision: Optional[int] = None,
        fragment: bool = False,
        encoding: Optional[str] = None,
    ) -> WatchHandle:
        """
        Watches for events happening or that have happened along keys with given prefix.
        Takes the same parameters as `watch()`.
        """
        if encoding is None:
            encoding = self.encoding
        encoded_key = key.encode(encoding)
        return self.watches.create_watch(
            encoded_key, range_end=prefix_range_end(encoded_key),
            start_revision=start_revision, filters=filters, prev_kv=prev_kv,
            progress_notify=progress_notify, fragment=fragment,
            encoding=encoding, ready_event=ready_event,
        )

    async def request_watch_progress(self) -> None:
        """
        Asks the server to send a progress notification to every open watch.
        """
        await self.watches.request_progress()

    @grpc_exception_handler
    async def txn(
        self,
        txn_builder: Callable[[EtcdTransactionAction], None],
        encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> TxnReturnValues:
        """
        A shorthand helper for `Txn`, with no `compare` arguments.
        This can be helpful when user just wants to execute transaction without
        any conditions.

        .. code-block:: python

            >>> await communicator.put('/tmp/successkey', '1111')
            >>> def _txn_builder(action):
            ...     action.get('/tmp/successkey')
            ...
            >>> values = await communicator.txn(_txn_builder)
            >>> print(values)  # [{'/tmp/successkey': '1111'}]

        Parameters
        ---------
        txn_builder
            Function which accepts `EtcdTransactionAction` as argument and performs
            all KV calls.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
        retry
            Overrides the retry decision for this call. Transactions made of reads only
            are retried by default; all others follow `RetryPolicy.retry_mutations`.

        Returns
        -------
        values: List[TxnReturnType]
            Values returned in each calls inside transaction.
            If the call is `delete`, `None` will take that place.
        """
        results, _ = await self.txn_compare(
            [],
            lambda success, _: txn_builder(success),
            encoding=encoding,
            retry=retry,
        )
        return results

    @grpc_exception_handler
    async def txn_compare(
        self,
        compares: List[grpc_api.Compare],  # type: ignore
        txn_builder: Callable[[EtcdTransactionAction, EtcdTransactionAction], None],
        encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> TxnReturnType:
        """
        Processes multiple requests in a single transaction.
        A txn request increments the revision of the key-value store
        and generates events with the same revision for every completed request.
        It is not allowed to modify the same key several times within one txn.

        .. code-block:: python

            >>> from etcdmux import CompareKey
            >>> await communicator.put('/tmp/successkey', '1111')
            >>> await communicator.put('/tmp/comparekey', 'asd')
            >>> def _txn_builder(success, failure):
            ...     success.get('/tmp/successkey')
            ...
            >>> values, succeeded = await communicator.txn_compare(
                    [CompareKey('/tmp/comparekey').value == 'asd'],
                    _txn_builder,
                )

        Parameters
        ---------
        compares
            List of predicates representing a conjunction of terms.
            If the comparisons succeed, then the success requests will be processed in order,
            and the response will contain their respective responses in order.
            If the comparisons fail, then the failure requests will be processed in order,
            and the response will contain their respective responses in order.
        txn_builder
            Function which accepts `EtcdTransactionAction` as argument and performs
            all KV calls.
        encoding
            Character encoding type to encode/decode all types of byte based strings.
        retry
            Overrides the retry decision for this call.

        Returns
        -------
        values: TxnReturnType
            Values returned in each calls inside the executed branch,
            and whether the comparisons succeeded.
        """
        if encoding is None:
            encoding = self.encoding
        txn = EtcdTransaction(self.retry, encoding=encoding, timeout=self.options.call_timeout)
        txn_builder(txn.success, txn.failure)
        return await txn.execute(compares, retry=retry)


class EtcdTransaction:

    retry: RetryInterceptor
    encoding: str
    timeout: Optional[float]

    success: EtcdTransactionAction
    failure: EtcdTransactionAction

    def __init__(
        self,
        retry: RetryInterceptor,
        encoding: str = 'utf-8',
        timeout: Optional[float] = None,
    ) -> None:
        self.encoding = encoding
        self.retry = retry
        self.timeout = timeout

        self.success = EtcdTransactionAction(encoding=encoding)
        self.failure = EtcdTransactionAction(encoding=encoding)

    @property
    def read_only(self) -> bool:
        return all(
            isinstance(request, RangeRequestType)
            for request in (*self.success.requests, *self.failure.requests)
        )

    def build_request(self, compares: List[grpc_api.Compare]):  # type: ignore
        txn_request = grpc_api.TxnRequest()
        txn_request.compare.extend(compares)
        for key in ('success', 'failure'):
            requests: List[TransactionRequest] = getattr(self, key).requests
            for request in requests:
                rop = grpc_api.RequestOp()
                if isinstance(request, PutRequestType):
                    rop.request_put.CopyFrom(request)
                elif isinstance(request, RangeRequestType):
                    rop.request_range.CopyFrom(request)
                elif isinstance(request, DeleteRangeRequestType):
                    rop.request_delete_range.CopyFrom(request)
                getattr(txn_request, key).extend([rop])
        return txn_request

    async def execute(
        self,
        compares: List[grpc_api.Compare],  # type: ignore
        encoding: Optional[str] = None,
        retry: Optional[bool] = None,
    ) -> TxnReturnType:
        """
        Executes Txn and returns results.
        """
        if encoding is None:
            encoding = self.encoding
        result = await self.retry.unary(
            grpc_api.KV_TXN,
            self.build_request(compares),
            idempotent=self.read_only,
            retry=retry,
            timeout=self.timeout,
        )

        ret: TxnReturnValues = []
        for response in result.responses:
            response_type = response.WhichOneof('response')
            if response_type == 'response_put':
                ret.append({
                    "revision": response.response_put.header.revision,
                })
            elif response_type == 'response_range':
                ret.append({
                    x.key.decode(encoding): x.value.decode(encoding)
                    for x in response.response_range.kvs
                })
            else:
                ret.append(None)
        return TxnReturnType(ret, result.succeeded)


class EtcdTransactionAction:
    """
    Manages calls inside single transaction. `put`, `get` and `delete` calls are supported.
    """
    requests: List[TransactionRequest]
    encoding: str

    def __init__(self, encoding: str = 'utf-8') -> None:
        self.requests = []
        self.encoding = encoding

    def put(
        self, key: str, value: Optional[str],
        lease: Optional[int] = None,
        ignore_value: bool = False,
        ignore_lease: bool = False,
        encoding: Optional[str] = None,
    ) -> None:
        """
        Puts given key into the key-value store.
        """
        if encoding is None:
            encoding = self.encoding
        self.requests.append(
            EtcdRequestGenerator.put(
                key, value,
                lease=lease, ignore_lease=ignore_lease,
                ignore_value=ignore_value, encoding=encoding,
            ),
        )

    def get(
        self, key: str,
        limit: Optional[int] = None,
        max_create_revision: Optional[int] = None,
        max_mod_revision: Optional[int] = None,
        min_create_revision: Optional[int] = None,
        min_mod_revision: Optional[int] = None,
        revision: Optional[int] = None,
        serializable: bool = True,
        sort_order: RangeRequestSortOrder = RangeRequestSortOrder.NONE,
        sort_target: RangeRequestSortTarget = RangeRequestSortTarget.KEY,
        encoding: Optional[str] = None,
    ) -> None:
        """
        Gets the keys in the range from the key-value store.
        """
        if encoding is None:
            encoding = self.encoding
        self.requests.append(
            EtcdRequestGenerator.get(
                key,
                limit=limit,
                max_create_revision=max_create_revision,
                max_mod_revision=max_mod_revision,
                min_create_revision=min_create_revision,
                min_mod_revision=min_mod_revision,
                revision=revision,
                serializable=serializable,
                sort_order=sort_order,
                sort_target=sort_target,
                encoding=encoding,
            ),
        )

    def delete(self, key: str, encoding: Optional[str] = None) -> None:
        """
        Deletes the given range from the key-value store.
        A delete request increments the revision of the key-value store
        and generates a delete event in the event history for every deleted key.
        """
        if encoding is None:
            encoding = self.encoding
        self.requests.append(EtcdRequestGenerator.delete(key, encoding=encoding))


class EtcdLockManager:
    name: str
    communicator: EtcdCommunicator
    encoding: str
    ttl: Optional[int]
    timeout_seconds: Optional[float]

    _lease_id: Optional[int]
    _lock_id: Optional[str]

    def __init__(
        self,
        name: str,
        communicator: EtcdCommunicator,
        encoding: str = 'utf-8',
        ttl: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.name = name
        self.communicator = communicator
        self.encoding = encoding
        self.ttl = ttl
        self.timeout_seconds = timeout_seconds

        self._lease_id = None
        self._lock_id = None

    @property
    def lock_id(self) -> Optional[str]:
        return self._lock_id

    async def _revoke_lease(self) -> None:
        assert self._lease_id is not None
        try:
            await self.communicator.revoke_lease(self._lease_id)
        except LeaseNotFound:
            pass

    async def __aenter__(self) -> None:
        """
        Acquires a distributed shared lock on a given named lock.
        On success, it will return a unique key that exists so long as the lock is held by the caller.
        This key can be used in conjunction with transactions to safely ensure updates to etcd
        only occur while holding lock ownership.
        The lock is held until Unlock is called on the key or the lease associate with the owner expires.
        While waiting for the lock its lease is kept alive; once acquired, the lease is renewed
        one last time and then left to run out, so the lock is released `ttl` seconds after
        acquisition at the latest.
        In normal cases `EtcdClient.with_lock()` will automatically handle lock/unlock process.
        """
        if self.ttl is not None:
            self._lease_id = await self.communicator.grant_lease(self.ttl)
        else:
            self._lease_id = None
        try:
            async with asyncio.timeout(self.timeout_seconds):
                response = await self.communicator.retry.unary(
                    grpc_api.LOCK_LOCK,
                    grpc_api.LockRequest(
                        name=self.name.encode(self.encoding),
                        lease=self._lease_id,
                    ),
                    idempotent=False,
                )
            self._lock_id = response.key.decode(self.encoding)
            log.debug('acquired lock %r as %r', self.name, self._lock_id)
            if self._lease_id is not None:
                # ttl counts from acquisition, not from the lock request
                await self.communicator.leases.refresh(self._lease_id)
        except asyncio.TimeoutError:
            if self._lease_id is not None:
                await self._revoke_lease()
            raise
        finally:
            if self._lease_id is not None:
                await self.communicator.leases.forget(self._lease_id)

    async def __aexit__(self, exc_type, exc, tb) -> Optional[bool]:
        """
        Releases the hold on lock.
        The next Lock caller waiting for the lock will then be woken up and given ownership of the lock.
        In normal cases `EtcdClient.with_lock()` will automatically handle lock/unlock process.
        """
        assert self._lock_id is not None

        if self._lease_id is not None:
            await self._revoke_lease()
        else:
            await self.communicator.retry.unary(
                grpc_api.LOCK_UNLOCK,
                grpc_api.UnlockRequest(
                    key=self._lock_id.encode(self.encoding),
                ),
                idempotent=False,
            )
        log.debug('released lock %r', self.name)
        self._lock_id = None
        self._lease_id = None
        return False
