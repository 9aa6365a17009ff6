import functools
from typing import Any, Callable, ClassVar, Mapping, Optional

import grpc
import grpc.aio

__all__ = (
    'EtcdmuxError',
    'TransportError',
    'EtcdUnavailableError',
    'EtcdNotLeaderError',
    'EtcdStreamResetError',
    'ServerRejected',
    'EtcdUnknownError',
    'EtcdInvalidArgumentError',
    'EtcdDeadlineExceededError',
    'EtcdNotFoundError',
    'EtcdAlreadyExistsError',
    'EtcdPermissionDeniedError',
    'EtcdUnauthenticatedError',
    'EtcdTooManyRequestError',
    'EtcdBadRequestError',
    'EtcdAbortedError',
    'EtcdOutOfRangeError',
    'EtcdUnimplementedError',
    'EtcdInternalError',
    'EtcdDataLossError',
    'EtcdCancelledError',
    'EtcdCompactedError',
    'Exhausted',
    'NoEndpointsAvailable',
    'LeaseError',
    'LeaseExpired',
    'LeaseNotFound',
    'Closed',
    'classify_rpc_error',
    'grpc_exception_handler',
)


class EtcdmuxError(Exception):
    code: ClassVar[Optional[grpc.StatusCode]] = None
    debug_map: Optional[Mapping[str, Any]]

    def __init__(self, message=None, debug_map=None):
        super().__init__(message)
        self.debug_map = debug_map

    def __int__(self):
        if self.code is None:
            return -1
        return self.code.value[0]


class TransportError(EtcdmuxError):
    """
    Connection-level failure. The same call may succeed against another endpoint.
    """


class EtcdUnavailableError(TransportError):
    code = grpc.StatusCode.UNAVAILABLE


class EtcdNotLeaderError(TransportError):
    code = grpc.StatusCode.FAILED_PRECONDITION


class EtcdStreamResetError(TransportError):
    code = grpc.StatusCode.CANCELLED


class ServerRejected(EtcdmuxError):
    """
    Semantic rejection by the server. Retrying the same call will not help.
    """


class EtcdUnknownError(ServerRejected):
    code = grpc.StatusCode.UNKNOWN


class EtcdInvalidArgumentError(ServerRejected):
    code = grpc.StatusCode.INVALID_ARGUMENT


class EtcdDeadlineExceededError(ServerRejected):
    code = grpc.StatusCode.DEADLINE_EXCEEDED


class EtcdNotFoundError(ServerRejected):
    code = grpc.StatusCode.NOT_FOUND


class EtcdAlreadyExistsError(ServerRejected):
    code = grpc.StatusCode.ALREADY_EXISTS


class EtcdPermissionDeniedError(ServerRejected):
    code = grpc.StatusCode.PERMISSION_DENIED


class EtcdUnauthenticatedError(ServerRejected):
    code = grpc.StatusCode.UNAUTHENTICATED


class EtcdTooManyRequestError(ServerRejected):
    code = grpc.StatusCode.RESOURCE_EXHAUSTED


class EtcdBadRequestError(ServerRejected):
    code = grpc.StatusCode.FAILED_PRECONDITION


class EtcdAbortedError(ServerRejected):
    code = grpc.StatusCode.ABORTED


class EtcdOutOfRangeError(ServerRejected):
    code = grpc.StatusCode.OUT_OF_RANGE


class EtcdUnimplementedError(ServerRejected):
    code = grpc.StatusCode.UNIMPLEMENTED


class EtcdInternalError(ServerRejected):
    code = grpc.StatusCode.INTERNAL


class EtcdDataLossError(ServerRejected):
    code = grpc.StatusCode.DATA_LOSS


class EtcdCancelledError(ServerRejected):
    """
    The server dropped a watch on its own account, e.g. a rejected create.
    """
    code = grpc.StatusCode.CANCELLED


class EtcdCompactedError(ServerRejected):
    """
    The requested revision is older than the server's compaction point.
    """
    code = grpc.StatusCode.OUT_OF_RANGE
    compact_revision: int

    def __init__(self, compact_revision: int, message=None, debug_map=None):
        if message is None:
            message = f'required revision has been compacted (compact revision: {compact_revision})'
        super().__init__(message, debug_map=debug_map)
        self.compact_revision = compact_revision


class Exhausted(EtcdmuxError):
    """
    Every attempt allowed for a call failed with a retryable error.
    """
    attempts: int
    last_error: Optional[BaseException]

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f'gave up after {attempts} attempt(s): {last_error!r}')
        self.attempts = attempts
        self.last_error = last_error


class NoEndpointsAvailable(EtcdmuxError):
    pass


class LeaseError(EtcdmuxError):
    lease_id: int

    def __init__(self, lease_id: int, message=None):
        super().__init__(message or f'lease {lease_id:x}')
        self.lease_id = lease_id


class LeaseExpired(LeaseError):
    def __init__(self, lease_id: int):
        super().__init__(lease_id, f'lease {lease_id:x} has expired')


class LeaseNotFound(LeaseError):
    code = grpc.StatusCode.NOT_FOUND

    def __init__(self, lease_id: int):
        super().__init__(lease_id, f'lease {lease_id:x} not found')


class Closed(EtcdmuxError):
    def __init__(self, message='operation attempted after shutdown'):
        super().__init__(message)


_LEADER_ERRORS = (
    'etcdserver: not leader',
    'etcdserver: no leader',
    'etcdserver: leader changed',
)
_COMPACTED = 'etcdserver: mvcc: required revision has been compacted'


def _details_error(details: Optional[str], debug_map: Optional[Mapping[str, Any]]) -> Optional[EtcdmuxError]:
    if not details:
        return None
    if details in _LEADER_ERRORS:
        return EtcdNotLeaderError(details, debug_map=debug_map)
    if details == _COMPACTED:
        return EtcdCompactedError(0, details, debug_map=debug_map)
    return None


def classify_rpc_error(e: grpc.aio.AioRpcError) -> EtcdmuxError:
    """
    Converts a gRPC failure into either a retryable `TransportError`
    or a non-retryable `ServerRejected`.
    """
    details = e.details()
    debug_map = e.initial_metadata()
    if (err := _details_error(details, debug_map)) is not None:
        return err
    match e.code():
        case grpc.StatusCode.UNAVAILABLE:
            return EtcdUnavailableError(details, debug_map=debug_map)
        case grpc.StatusCode.INVALID_ARGUMENT:
            return EtcdInvalidArgumentError(details, debug_map=debug_map)
        case grpc.StatusCode.DEADLINE_EXCEEDED:
            return EtcdDeadlineExceededError(details, debug_map=debug_map)
        case grpc.StatusCode.NOT_FOUND:
            return EtcdNotFoundError(details, debug_map=debug_map)
        case grpc.StatusCode.ALREADY_EXISTS:
            return EtcdAlreadyExistsError(details, debug_map=debug_map)
        case grpc.StatusCode.PERMISSION_DENIED:
            return EtcdPermissionDeniedError(details, debug_map=debug_map)
        case grpc.StatusCode.UNAUTHENTICATED:
            return EtcdUnauthenticatedError(details, debug_map=debug_map)
        case grpc.StatusCode.RESOURCE_EXHAUSTED:
            return EtcdTooManyRequestError(details, debug_map=debug_map)
        case grpc.StatusCode.FAILED_PRECONDITION:
            return EtcdBadRequestError(details, debug_map=debug_map)
        case grpc.StatusCode.ABORTED:
            return EtcdAbortedError(details, debug_map=debug_map)
        case grpc.StatusCode.OUT_OF_RANGE:
            return EtcdOutOfRangeError(details, debug_map=debug_map)
        case grpc.StatusCode.UNIMPLEMENTED:
            return EtcdUnimplementedError(details, debug_map=debug_map)
        case grpc.StatusCode.INTERNAL:
            return EtcdInternalError(details, debug_map=debug_map)
        case grpc.StatusCode.DATA_LOSS:
            return EtcdDataLossError(details, debug_map=debug_map)
        case grpc.StatusCode.CANCELLED:
            # torn down mid-call by RST_STREAM or GOAWAY
            return EtcdStreamResetError(details, debug_map=debug_map)
    return EtcdUnknownError(details, debug_map=debug_map)


def grpc_exception_handler(outer: Callable):
    @functools.wraps(outer)
    async def wrapper(*args, **kwargs):
        try:
            return await outer(*args, **kwargs)
        except grpc.aio.AioRpcError as e:
            raise classify_rpc_error(e) from e
    return wrapper
