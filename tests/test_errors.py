import grpc
import grpc.aio
import pytest

from etcdmux import EtcdClient, HostPortPair
from etcdmux.errors import (
    EtcdCancelledError,
    EtcdCompactedError,
    EtcdInvalidArgumentError,
    EtcdNotLeaderError,
    EtcdPermissionDeniedError,
    EtcdStreamResetError,
    EtcdUnavailableError,
    EtcdUnknownError,
    Exhausted,
    ServerRejected,
    TransportError,
    classify_rpc_error,
    grpc_exception_handler,
)


def _rpc_error(code: grpc.StatusCode, details: str = '') -> grpc.aio.AioRpcError:
    return grpc.aio.AioRpcError(code, grpc.aio.Metadata(), grpc.aio.Metadata(), details=details)


@pytest.mark.parametrize('code,details,expected', [
    (grpc.StatusCode.UNAVAILABLE, 'connection refused', EtcdUnavailableError),
    (grpc.StatusCode.UNAVAILABLE, 'etcdserver: leader changed', EtcdNotLeaderError),
    (grpc.StatusCode.UNKNOWN, 'etcdserver: no leader', EtcdNotLeaderError),
    (grpc.StatusCode.INVALID_ARGUMENT, 'etcdserver: key is not provided', EtcdInvalidArgumentError),
    (grpc.StatusCode.PERMISSION_DENIED, 'etcdserver: permission denied', EtcdPermissionDeniedError),
    (grpc.StatusCode.OUT_OF_RANGE, 'etcdserver: mvcc: required revision has been compacted',
     EtcdCompactedError),
    (grpc.StatusCode.CANCELLED, 'Received RST_STREAM with error code 8', EtcdStreamResetError),
    (grpc.StatusCode.UNKNOWN, 'something odd', EtcdUnknownError),
])
def test_classify_rpc_error(code, details, expected):
    err = classify_rpc_error(_rpc_error(code, details))
    assert type(err) is expected
    assert str(err) == details or expected is EtcdCompactedError


def test_taxonomy():
    assert issubclass(EtcdUnavailableError, TransportError)
    assert issubclass(EtcdNotLeaderError, TransportError)
    assert issubclass(EtcdCompactedError, ServerRejected)
    assert issubclass(EtcdStreamResetError, TransportError)
    assert issubclass(EtcdCancelledError, ServerRejected)
    assert not issubclass(Exhausted, TransportError)
    assert int(EtcdUnavailableError()) == grpc.StatusCode.UNAVAILABLE.value[0]


@pytest.mark.asyncio
async def test_grpc_exception_handler():
    @grpc_exception_handler
    async def _call():
        raise _rpc_error(grpc.StatusCode.PERMISSION_DENIED, 'etcdserver: permission denied')

    with pytest.raises(EtcdPermissionDeniedError) as e:
        await _call()
    assert isinstance(e.value.__cause__, grpc.aio.AioRpcError)


@pytest.mark.asyncio
async def test_connect_error():
    etcd = EtcdClient(HostPortPair('127.0.0.1', 1))
    with pytest.raises(Exhausted) as e:
        async with etcd.connect() as communicator:
            await communicator.get('/this/should/raise/error')
    assert e.value.attempts == 1
    assert isinstance(e.value.last_error, EtcdUnavailableError)
