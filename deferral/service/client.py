from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from typing import Any, Iterable, Optional, Union

import structlog

from ..broker.constants import auto_label
from ..broker.errors import (
    BrokerClosedError,
    CapacityExceededError,
    DeferralError,
    InvalidRequestError,
    UnknownTokenError,
)
from ..protocol.messages import (
    AwaitResultMessage,
    CallDescriptor,
    CancelledMessage,
    CancelMessage,
    ErrorMessage,
    FinalResult,
    Message,
    MessageType,
    ResultMessage,
    StartMessage,
    StartRequest,
    TokenMessage,
)
from ..protocol.transport import DEFAULT_MAX_FRAME_SIZE, MessageTransport, ProtocolError

logger = structlog.get_logger()


class RemoteError(DeferralError):
    """Error reported by the server that has no local exception class."""

    def __init__(self, exception_type: str, message: str) -> None:
        self.exception_type = exception_type
        super().__init__(f"{exception_type}: {message}")


def _raise_remote(message: ErrorMessage) -> None:
    text = message.exception_message
    kind = message.exception_type
    if kind == "InvalidRequestError":
        raise InvalidRequestError(text)
    if kind == "UnknownTokenError":
        raise UnknownTokenError("", text)
    if kind == "CapacityExceededError":
        raise CapacityExceededError(text)
    if kind == "BrokerClosedError":
        raise BrokerClosedError(text)
    if kind == "TimeoutError":
        raise asyncio.TimeoutError(text)
    raise RemoteError(kind, text)


def _descriptor(call: Union[CallDescriptor, dict[str, Any]], index: int) -> CallDescriptor:
    if isinstance(call, CallDescriptor):
        return call
    data = dict(call)
    data.setdefault("label", auto_label(index))
    return CallDescriptor(**data)


class DeferralClient:
    """Client for DeferralServer.

    Requests are correlated by message id, so start/result/cancel calls may
    run concurrently over one connection.
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        use_msgpack: bool = True,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    ) -> None:
        self._host = host
        self._port = port
        self._use_msgpack = use_msgpack
        self._max_frame_size = max_frame_size
        self._transport: Optional[MessageTransport] = None
        self._pending: dict[str, asyncio.Future[Message]] = {}
        self._receive_task: Optional[asyncio.Task[None]] = None

    async def connect(self) -> None:
        reader, writer = await asyncio.open_connection(self._host, self._port)
        self._transport = MessageTransport(
            reader, writer, use_msgpack=self._use_msgpack, max_frame_size=self._max_frame_size
        )
        await self._transport.start()
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def close(self) -> None:
        if self._receive_task:
            self._receive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._receive_task
            self._receive_task = None
        if self._transport:
            await self._transport.close()
            self._transport = None
        self._fail_pending(ProtocolError("Client closed"))

    async def __aenter__(self) -> DeferralClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    async def _receive_loop(self) -> None:
        assert self._transport is not None
        while True:
            try:
                message = await self._transport.receive_message()
            except ProtocolError as e:
                if self._transport.closed:
                    self._fail_pending(e)
                    return
                logger.warning("client_invalid_frame", error=str(e))
                continue
            request_id = getattr(message, "request_id", None)
            waiter = self._pending.pop(request_id, None) if request_id else None
            if waiter is None:
                logger.debug("client_unmatched_message", type=message.type, id=message.id)
                continue
            if not waiter.done():
                waiter.set_result(message)

    def _fail_pending(self, error: BaseException) -> None:
        pending, self._pending = self._pending, {}
        for waiter in pending.values():
            if not waiter.done():
                waiter.set_exception(error)

    async def _request(self, message: Message, timeout: Optional[float] = None) -> Message:
        if self._transport is None:
            raise ProtocolError("Client is not connected")
        waiter: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        self._pending[message.id] = waiter
        try:
            await self._transport.send_message(message)
            reply = await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            self._pending.pop(message.id, None)
        if isinstance(reply, ErrorMessage):
            _raise_remote(reply)
        return reply

    async def start(
        self,
        calls: Iterable[Union[CallDescriptor, dict[str, Any]]],
        handler: str,
        state: Any = None,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Start a continuation on the server and return its token."""
        request = StartRequest(
            calls=[_descriptor(c, i) for i, c in enumerate(calls, start=1)],
            handler=handler,
            state=state,
            timeout=timeout,
        )
        reply = await self._request(
            StartMessage(id=str(uuid.uuid4()), timestamp=time.time(), request=request)
        )
        if not isinstance(reply, TokenMessage):
            raise ProtocolError(f"Unexpected reply: {MessageType(reply.type).value}")
        return reply.token

    async def result(self, token: str, timeout: Optional[float] = None) -> FinalResult:
        """Wait for the final result of a token."""
        reply = await self._request(
            AwaitResultMessage(
                id=str(uuid.uuid4()), timestamp=time.time(), token=token, timeout=timeout
            ),
            # Leave the server room to answer with its own timeout error
            timeout=None if timeout is None else timeout + 5.0,
        )
        if not isinstance(reply, ResultMessage):
            raise ProtocolError(f"Unexpected reply: {MessageType(reply.type).value}")
        return reply.result

    async def cancel(self, token: str) -> bool:
        reply = await self._request(
            CancelMessage(id=str(uuid.uuid4()), timestamp=time.time(), token=token)
        )
        if not isinstance(reply, CancelledMessage):
            raise ProtocolError(f"Unexpected reply: {MessageType(reply.type).value}")
        return reply.cancelled
