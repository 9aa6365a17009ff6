from __future__ import annotations
from collections import namedtuple

from dataclasses import dataclass, field
import enum
from typing import Any, List, Mapping, Optional, Tuple, Union, TYPE_CHECKING
if TYPE_CHECKING:
    from typing_extensions import TypeAlias

from etcdmux import grpc_api

__all__ = (
    'RangeRequestSortOrder',
    'RangeRequestSortTarget',
    'WatchCreateRequestFilterType',
    'CompareCompareResult',
    'CompareCompareTarget',
    'WatchEventType',
    'CompareKey',
    'CompareBuilder',
    'EtcdCredential',
    'EtcdLockOption',
    'HostPortPair',
    'WatchEvent',
    'LeaseKeepAliveResponse',
    'LeaseInfo',
    'RetryPolicy',
    'SessionOptions',
    'PutRequestType',
    'RangeRequestType',
    'DeleteRangeRequestType',
    'TransactionRequest',
    'NoneType',
    'TxnReturnValues',
    'TxnReturnType',
)


class RangeRequestSortOrder(enum.Enum):
    NONE = 0
    ASCEND = 1
    DESCEND = 2


class RangeRequestSortTarget(enum.Enum):
    KEY = 0
    VERSION = 1
    CREATE = 2
    MOD = 3
    VALUE = 4


class WatchCreateRequestFilterType(enum.Enum):
    NOPUT = 0
    NODELETE = 1


class CompareCompareResult(enum.Enum):
    EQUAL = 0
    GREATER = 1
    LESS = 2
    NOT_EQUAL = 3


class CompareCompareTarget(enum.Enum):
    VERSION = 0
    CREATE = 1
    MOD = 2
    VALUE = 3
    LEASE = 4


class WatchEventType(enum.Enum):
    PUT = 0
    DELETE = 1


PutRequestType = grpc_api.PutRequest
RangeRequestType = grpc_api.RangeRequest
DeleteRangeRequestType = grpc_api.DeleteRangeRequest
TransactionRequest = Union[PutRequestType, RangeRequestType, DeleteRangeRequestType]  # type: ignore
NoneType = type(None)
TxnReturnValues: TypeAlias = List[Union[Mapping[str, Any], NoneType]]
TxnReturnType = namedtuple('TxnReturnType', ['values', 'success'])

_COMPARE_TARGET_FIELDS = {
    CompareCompareTarget.VERSION: 'version',
    CompareCompareTarget.CREATE: 'create_revision',
    CompareCompareTarget.MOD: 'mod_revision',
    CompareCompareTarget.VALUE: 'value',
    CompareCompareTarget.LEASE: 'lease',
}


@dataclass
class CompareKey:
    key: str

    range_end: Optional[str] = field(default=None)
    encoding: str = field(default='utf-8')

    @property
    def version(self):
        return CompareBuilder(self, CompareCompareTarget.VERSION)

    @property
    def create(self):
        return CompareBuilder(self, CompareCompareTarget.CREATE)

    @property
    def mod(self):
        return CompareBuilder(self, CompareCompareTarget.MOD)

    @property
    def value(self):
        return CompareBuilder(self, CompareCompareTarget.VALUE)

    @property
    def lease(self):
        return CompareBuilder(self, CompareCompareTarget.LEASE)


@dataclass
class CompareBuilder:
    key: CompareKey
    target: CompareCompareTarget

    def build_request(self, other: Any, result: CompareCompareResult):
        value: bytes | int
        if isinstance(other, str):
            value = other.encode(self.key.encoding)
        elif isinstance(other, int):
            value = other
        else:
            raise ValueError('rhs is not a str or int')
        if (self.target == CompareCompareTarget.VALUE) != isinstance(value, bytes):
            raise ValueError(f'{self.target.name} compare does not accept {type(other).__name__}')
        range_end = self.key.range_end

        request = grpc_api.Compare(
            key=self.key.key.encode(self.key.encoding),
            result=result.value, target=self.target.value,
        )
        setattr(request, _COMPARE_TARGET_FIELDS[self.target], value)
        if range_end is not None:
            request.range_end = range_end.encode(self.key.encoding)
        return request

    def __eq__(self, other: object):  # type: ignore[override]
        return self.build_request(other, CompareCompareResult.EQUAL)

    def __ne__(self, other: object):  # type: ignore[override]
        return self.build_request(other, CompareCompareResult.NOT_EQUAL)

    def __gt__(self, other: object):
        return self.build_request(other, CompareCompareResult.GREATER)

    def __lt__(self, other: object):
        return self.build_request(other, CompareCompareResult.LESS)


@dataclass
class EtcdCredential:
    username: str
    password: str


@dataclass(frozen=True)
class HostPortPair:
    host: str
    port: int

    def __str__(self):
        return f'{self.host}:{self.port}'

    @classmethod
    def parse(cls, s: str) -> HostPortPair:
        if ':' in s:
            host, port_str = s.rsplit(':', 1)
            port = int(port_str)
        else:
            host = s
            port = 2379
        return cls(host, port)

    @classmethod
    def parse_list(cls, s: str) -> Tuple[HostPortPair, ...]:
        """
        Parses a comma separated list of `host[:port]` addresses.
        """
        return tuple(cls.parse(x.strip()) for x in s.split(',') if x.strip())


@dataclass(unsafe_hash=True)
class WatchEvent:
    key: str
    value: Optional[str]
    prev_value: Optional[str]
    event: WatchEventType
    mod_revision: int = field(default=0, compare=False)


@dataclass(frozen=True)
class LeaseKeepAliveResponse:
    """
    Acknowledged renewal of a lease, as observed by the lease keeper.
    """
    lease_id: int
    ttl: int
    revision: int


@dataclass(frozen=True)
class LeaseInfo:
    lease_id: int
    ttl: int
    granted_ttl: int
    keys: Tuple[str, ...]


@dataclass
class RetryPolicy:
    """
    Bounds for the retry interceptor.

    `max_attempts` of `None` means one attempt per known endpoint. Any value is
    capped at `max(1, endpoint_count)` so a single call never visits the same
    endpoint twice.
    `retry_mutations` allows automatic resubmission of non-idempotent calls
    (put, delete, writing txn, lease grant/revoke).
    """
    max_attempts: Optional[int] = None
    retry_mutations: bool = False


@dataclass
class SessionOptions:
    keepalive_tick: float = 0.5
    reconnect_delay: float = 0.1
    max_reconnect_delay: float = 5.0
    call_timeout: Optional[float] = None


@dataclass
class EtcdLockOption:
    lock_name: str
    timeout: Optional[float]
    ttl: Optional[int]
