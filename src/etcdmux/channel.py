"""
Per-endpoint gRPC channels.

An `EtcdChannel` owns one `grpc.aio` channel to one endpoint, established on
first use, and exposes the two primitives the rest of the package needs:
unary calls and bidirectional streams. Every gRPC failure leaving this module is
already classified into the package's error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional, Tuple, Union

import grpc
import grpc.aio
from google.protobuf.message import Message
from grpc.aio import (
    ClientCallDetails,
    UnaryUnaryCall, UnaryStreamCall,
    StreamUnaryCall, StreamStreamCall,
    UnaryUnaryClientInterceptor, UnaryStreamClientInterceptor,
    StreamUnaryClientInterceptor, StreamStreamClientInterceptor,
    Metadata,
)
from grpc.aio._typing import RequestType, RequestIterableType, ResponseType, ResponseIterableType

from . import grpc_api
from .errors import Closed, EtcdStreamResetError, classify_rpc_error
from .types import EtcdCredential, HostPortPair

__all__ = (
    'EtcdChannel',
    'EtcdStream',
    'ChannelPool',
    'ChannelFactory',
)

log = logging.getLogger(__name__)


class EtcdAuthInterceptor:
    token: str

    def __init__(self, token) -> None:
        self.token = token

    def build_details(self, orig_details: ClientCallDetails) -> ClientCallDetails:
        if _meta := orig_details.metadata:
            _meta.add('token', self.token)
        else:
            _meta = Metadata(('token', self.token))
        return ClientCallDetails(
            orig_details.method,
            orig_details.timeout,
            _meta,
            orig_details.credentials,
            orig_details.wait_for_ready,
        )


class EtcdAuthUnaryUnaryInterceptor(EtcdAuthInterceptor, UnaryUnaryClientInterceptor):
    async def intercept_unary_unary(
        self,
        continuation: Callable[[grpc.ClientCallDetails, RequestType], UnaryUnaryCall],
        client_call_details: ClientCallDetails,
        request: RequestType,
    ) -> Union[UnaryUnaryCall, ResponseType]:
        return await continuation(
            self.build_details(client_call_details), request)


class EtcdAuthUnaryStreamInterceptor(EtcdAuthInterceptor, UnaryStreamClientInterceptor):
    async def intercept_unary_stream(
        self,
        continuation: Callable[[grpc.ClientCallDetails, RequestType], UnaryStreamCall],
        client_call_details: ClientCallDetails,
        request: RequestType,
    ) -> Union[UnaryStreamCall, ResponseIterableType]:
        return await continuation(
            self.build_details(client_call_details), request)


class EtcdAuthStreamUnaryInterceptor(EtcdAuthInterceptor, StreamUnaryClientInterceptor):
    async def intercept_stream_unary(
        self,
        continuation: Callable[[grpc.ClientCallDetails, RequestType], StreamUnaryCall],
        client_call_details: ClientCallDetails,
        request_iterator: RequestIterableType,
    ) -> Union[StreamUnaryCall, ResponseType]:
        return await continuation(
            self.build_details(client_call_details), request_iterator)


class EtcdAuthStreamStreamInterceptor(EtcdAuthInterceptor, StreamStreamClientInterceptor):
    async def intercept_stream_stream(
        self,
        continuation: Callable[[grpc.ClientCallDetails, RequestType], StreamStreamCall],
        client_call_details: ClientCallDetails,
        request_iterator: RequestIterableType,
    ) -> Union[StreamStreamCall, ResponseIterableType]:
        return await continuation(
            self.build_details(client_call_details), request_iterator)


class EtcdStream:
    """
    Duplex queue of typed frames over one bidirectional gRPC call.
    """
    method: grpc_api.RpcMethod
    _call: StreamStreamCall

    def __init__(self, method: grpc_api.RpcMethod, call: StreamStreamCall) -> None:
        self.method = method
        self._call = call

    async def write(self, request: Message) -> None:
        try:
            await self._call.write(request)
        except grpc.aio.AioRpcError as e:
            raise classify_rpc_error(e) from e
        except asyncio.InvalidStateError as e:
            raise EtcdStreamResetError(f'{self.method.path}: stream already finished') from e

    async def read(self) -> Message:
        """
        Returns the next inbound frame.

        Raises
        ------
        EtcdStreamResetError
            When the server half-closes the stream.
        """
        try:
            response = await self._call.read()
        except grpc.aio.AioRpcError as e:
            raise classify_rpc_error(e) from e
        if response is grpc.aio.EOF:
            raise EtcdStreamResetError(f'{self.method.path}: stream closed by server')
        return response

    async def done_writing(self) -> None:
        try:
            await self._call.done_writing()
        except (grpc.aio.AioRpcError, asyncio.InvalidStateError):
            pass

    def cancel(self) -> None:
        self._call.cancel()


class EtcdChannel:
    """
    One logical connection to one etcd endpoint.
    """
    endpoint: HostPortPair
    secure: bool
    _creds: Optional[EtcdCredential]
    _channel: Optional[grpc.aio.Channel]
    _connect_lock: asyncio.Lock
    _closed: bool

    def __init__(
        self,
        endpoint: HostPortPair,
        credentials: Optional[EtcdCredential] = None,
        secure: bool = False,
    ) -> None:
        self.endpoint = endpoint
        self.secure = secure
        self._creds = credentials
        self._channel = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

    def __repr__(self) -> str:
        return f'<EtcdChannel {self.endpoint}>'

    def _build_channel(self, token: Optional[str] = None) -> grpc.aio.Channel:
        chan_cred: Optional[grpc.ChannelCredentials] = None
        if self.secure:
            chan_cred = grpc.ssl_channel_credentials()
        interceptors: Optional[Tuple] = None
        if token is not None:
            interceptors = (
                EtcdAuthUnaryUnaryInterceptor(token),
                EtcdAuthUnaryStreamInterceptor(token),
                EtcdAuthStreamUnaryInterceptor(token),
                EtcdAuthStreamStreamInterceptor(token),
            )

        if chan_cred is not None:
            return grpc.aio.secure_channel(
                str(self.endpoint), chan_cred, interceptors=interceptors)
        else:
            return grpc.aio.insecure_channel(str(self.endpoint), interceptors=interceptors)

    async def _authenticate(self, channel: grpc.aio.Channel, creds: EtcdCredential) -> str:
        method = grpc_api.AUTH_AUTHENTICATE
        call = channel.unary_unary(
            method.path,
            request_serializer=method.serialize,
            response_deserializer=method.deserialize,
        )
        response = await call(
            grpc_api.AuthenticateRequest(name=creds.username, password=creds.password))
        return response.token

    async def connect(self) -> grpc.aio.Channel:
        if self._closed:
            raise Closed(f'channel to {self.endpoint} is closed')
        if self._channel is not None:
            return self._channel
        async with self._connect_lock:
            if self._channel is None:
                channel = self._build_channel()
                if creds := self._creds:
                    try:
                        token = await self._authenticate(channel, creds)
                    except grpc.aio.AioRpcError as e:
                        raise classify_rpc_error(e) from e
                    finally:
                        await channel.close()
                    channel = self._build_channel(token)
                log.debug('opened channel to %s', self.endpoint)
                self._channel = channel
        return self._channel

    async def unary(
        self,
        method: grpc_api.RpcMethod,
        request: Message,
        timeout: Optional[float] = None,
    ) -> Message:
        channel = await self.connect()
        call = channel.unary_unary(
            method.path,
            request_serializer=method.serialize,
            response_deserializer=method.deserialize,
        )
        try:
            return await call(request, timeout=timeout)
        except grpc.aio.AioRpcError as e:
            raise classify_rpc_error(e) from e

    async def open_stream(self, method: grpc_api.RpcMethod) -> EtcdStream:
        channel = await self.connect()
        call = channel.stream_stream(
            method.path,
            request_serializer=method.serialize,
            response_deserializer=method.deserialize,
        )
        return EtcdStream(method, call())

    async def close(self) -> None:
        self._closed = True
        if self._channel is not None:
            channel, self._channel = self._channel, None
            await channel.close()
            log.debug('closed channel to %s', self.endpoint)


ChannelFactory = Callable[[HostPortPair], EtcdChannel]


class ChannelPool:
    """
    Lazily creates and caches one `EtcdChannel` per endpoint.
    """
    _factory: ChannelFactory
    _channels: Dict[HostPortPair, EtcdChannel]
    _closed: bool

    def __init__(self, factory: ChannelFactory) -> None:
        self._factory = factory
        self._channels = {}
        self._closed = False

    def get(self, endpoint: HostPortPair) -> EtcdChannel:
        if self._closed:
            raise Closed('channel pool is closed')
        if (channel := self._channels.get(endpoint)) is None:
            channel = self._channels[endpoint] = self._factory(endpoint)
        return channel

    async def close(self) -> None:
        self._closed = True
        channels, self._channels = self._channels, {}
        await asyncio.gather(*(channel.close() for channel in channels.values()))
