"""
etcd v3 gRPC message types and method descriptors.

The schema lives in the `.proto` files next to this module: copies of etcd's
`mvccpb`, `etcdserverpb` and `v3lockpb` definitions, pruned to the services this
package calls. `scripts/compile_protobuf.py` refreshes them from an etcd checkout.
Unless that script also wrote the `*_pb2.py` modules (`--compile`), `grpcio-tools`
generates them on first import.
"""

from __future__ import annotations

from dataclasses import dataclass
from types import ModuleType
from typing import Type

import grpc
from google.protobuf.message import Message

__all__ = (
    'ETCD_VERSION',
    'RpcMethod',
    'KV_RANGE',
    'KV_PUT',
    'KV_DELETE_RANGE',
    'KV_TXN',
    'WATCH_WATCH',
    'LEASE_GRANT',
    'LEASE_REVOKE',
    'LEASE_KEEPALIVE',
    'LEASE_TIME_TO_LIVE',
    'AUTH_AUTHENTICATE',
    'LOCK_LOCK',
    'LOCK_UNLOCK',
)

ETCD_VERSION = 'v3.5.0'

kv_pb2 = grpc.protos('etcdmux/grpc_api/kv.proto')
rpc_pb2 = grpc.protos('etcdmux/grpc_api/rpc.proto')
v3lock_pb2 = grpc.protos('etcdmux/grpc_api/v3lock.proto')

KeyValue = kv_pb2.KeyValue
Event = kv_pb2.Event

ResponseHeader = rpc_pb2.ResponseHeader
RangeRequest = rpc_pb2.RangeRequest
RangeResponse = rpc_pb2.RangeResponse
PutRequest = rpc_pb2.PutRequest
PutResponse = rpc_pb2.PutResponse
DeleteRangeRequest = rpc_pb2.DeleteRangeRequest
DeleteRangeResponse = rpc_pb2.DeleteRangeResponse
RequestOp = rpc_pb2.RequestOp
ResponseOp = rpc_pb2.ResponseOp
Compare = rpc_pb2.Compare
TxnRequest = rpc_pb2.TxnRequest
TxnResponse = rpc_pb2.TxnResponse
WatchRequest = rpc_pb2.WatchRequest
WatchCreateRequest = rpc_pb2.WatchCreateRequest
WatchCancelRequest = rpc_pb2.WatchCancelRequest
WatchProgressRequest = rpc_pb2.WatchProgressRequest
WatchResponse = rpc_pb2.WatchResponse
LeaseGrantRequest = rpc_pb2.LeaseGrantRequest
LeaseGrantResponse = rpc_pb2.LeaseGrantResponse
LeaseRevokeRequest = rpc_pb2.LeaseRevokeRequest
LeaseRevokeResponse = rpc_pb2.LeaseRevokeResponse
LeaseKeepAliveRequest = rpc_pb2.LeaseKeepAliveRequest
LeaseKeepAliveResponse = rpc_pb2.LeaseKeepAliveResponse
LeaseTimeToLiveRequest = rpc_pb2.LeaseTimeToLiveRequest
LeaseTimeToLiveResponse = rpc_pb2.LeaseTimeToLiveResponse
AuthenticateRequest = rpc_pb2.AuthenticateRequest
AuthenticateResponse = rpc_pb2.AuthenticateResponse

LockRequest = v3lock_pb2.LockRequest
LockResponse = v3lock_pb2.LockResponse
UnlockRequest = v3lock_pb2.UnlockRequest
UnlockResponse = v3lock_pb2.UnlockResponse


@dataclass(frozen=True)
class RpcMethod:
    """
    Fully qualified gRPC method path together with its request/response codecs.
    """
    path: str
    request_type: Type[Message]
    response_type: Type[Message]

    @classmethod
    def lookup(cls, module: ModuleType, service: str, name: str) -> RpcMethod:
        """
        Resolves `service.name` from the file descriptor of a generated `*_pb2` module.
        """
        method = module.DESCRIPTOR.services_by_name[service].methods_by_name[name]
        return cls(
            f'/{method.containing_service.full_name}/{method.name}',
            getattr(module, method.input_type.name),
            getattr(module, method.output_type.name),
        )

    def serialize(self, request: Message) -> bytes:
        return request.SerializeToString()

    def deserialize(self, data: bytes) -> Message:
        return self.response_type.FromString(data)


KV_RANGE = RpcMethod.lookup(rpc_pb2, 'KV', 'Range')
KV_PUT = RpcMethod.lookup(rpc_pb2, 'KV', 'Put')
KV_DELETE_RANGE = RpcMethod.lookup(rpc_pb2, 'KV', 'DeleteRange')
KV_TXN = RpcMethod.lookup(rpc_pb2, 'KV', 'Txn')
WATCH_WATCH = RpcMethod.lookup(rpc_pb2, 'Watch', 'Watch')
LEASE_GRANT = RpcMethod.lookup(rpc_pb2, 'Lease', 'LeaseGrant')
LEASE_REVOKE = RpcMethod.lookup(rpc_pb2, 'Lease', 'LeaseRevoke')
LEASE_KEEPALIVE = RpcMethod.lookup(rpc_pb2, 'Lease', 'LeaseKeepAlive')
LEASE_TIME_TO_LIVE = RpcMethod.lookup(rpc_pb2, 'Lease', 'LeaseTimeToLive')
AUTH_AUTHENTICATE = RpcMethod.lookup(rpc_pb2, 'Auth', 'Authenticate')
LOCK_LOCK = RpcMethod.lookup(v3lock_pb2, 'Lock', 'Lock')
LOCK_UNLOCK = RpcMethod.lookup(v3lock_pb2, 'Lock', 'Unlock')
