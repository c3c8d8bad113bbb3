from __future__ import annotations

import asyncio
import time
import uuid
from typing import Optional

import structlog

from ..broker.errors import DeferralError
from ..initiator import RequestInitiator
from ..protocol.messages import (
    AwaitResultMessage,
    CancelledMessage,
    CancelMessage,
    ErrorMessage,
    Message,
    ResultMessage,
    StartMessage,
    TokenMessage,
)
from ..protocol.transport import MessageTransport, ProtocolError
from .config import ServiceConfig

logger = structlog.get_logger()


def _message_id() -> str:
    return str(uuid.uuid4())


class DeferralServer:
    """Serves start / await_result / cancel over length-prefixed frames.

    One connection may carry several requests at once; await_result is
    answered from a background task so a slow continuation never blocks the
    connection's reader.
    """

    def __init__(self, initiator: RequestInitiator, config: Optional[ServiceConfig] = None) -> None:
        self._initiator = initiator
        self._config = config or ServiceConfig()
        self._server: Optional[asyncio.base_events.Server] = None
        self._connections: set[asyncio.Task[None]] = set()

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self._config.port
        return self._server.sockets[0].getsockname()[1]

    @property
    def host(self) -> str:
        return self._config.host

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._on_connect, host=self._config.host, port=self._config.port
        )
        logger.info("deferral_server_started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        tasks = list(self._connections)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None
        logger.info("deferral_server_stopped")

    async def __aenter__(self) -> DeferralServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.create_task(self._serve_connection(reader, writer))
        self._connections.add(task)
        task.add_done_callback(self._connections.discard)

    async def _serve_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        transport = MessageTransport(
            reader,
            writer,
            use_msgpack=self._config.use_msgpack,
            max_frame_size=self._config.max_frame_size,
        )
        await transport.start()
        peer = writer.get_extra_info("peername")
        logger.debug("connection_opened", peer=peer)
        pending: set[asyncio.Task[None]] = set()
        try:
            while True:
                try:
                    message = await transport.receive_message()
                except ProtocolError as e:
                    if transport.closed:
                        break
                    logger.warning("invalid_frame", peer=peer, error=str(e))
                    await self._reply_error(transport, None, e)
                    continue

                if isinstance(message, AwaitResultMessage):
                    task = asyncio.create_task(self._answer_result(transport, message))
                    pending.add(task)
                    task.add_done_callback(pending.discard)
                else:
                    await self._handle(transport, message)
        finally:
            for task in list(pending):
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await transport.close()
            logger.debug("connection_closed", peer=peer)

    async def _handle(self, transport: MessageTransport, message: Message) -> None:
        if isinstance(message, StartMessage):
            try:
                token = self._initiator.start_request(message.request)
            except DeferralError as e:
                await self._reply_error(transport, message.id, e)
                return
            await self._send_reply(
                transport,
                TokenMessage(
                    id=_message_id(), timestamp=time.time(), token=token, request_id=message.id
                ),
            )
        elif isinstance(message, CancelMessage):
            try:
                cancelled = self._initiator.broker.cancel(message.token)
            except DeferralError as e:
                await self._reply_error(transport, message.id, e)
                return
            await self._send_reply(
                transport,
                CancelledMessage(
                    id=_message_id(),
                    timestamp=time.time(),
                    request_id=message.id,
                    token=message.token,
                    cancelled=cancelled,
                ),
            )
        else:
            await self._reply_error(
                transport,
                message.id,
                ProtocolError(f"Unexpected message type: {message.type}"),
            )

    async def _answer_result(self, transport: MessageTransport, message: AwaitResultMessage) -> None:
        timeout = message.timeout
        if timeout is None:
            timeout = self._config.default_result_timeout
        try:
            result = await self._initiator.broker.result(message.token, timeout=timeout)
        except asyncio.TimeoutError:
            await self._reply_error(
                transport,
                message.id,
                TimeoutError(f"No final result for {message.token} within {timeout:g}s"),
            )
            return
        except DeferralError as e:
            await self._reply_error(transport, message.id, e)
            return
        await self._send_reply(
            transport,
            ResultMessage(
                id=_message_id(), timestamp=time.time(), request_id=message.id, result=result
            ),
        )

    async def _reply_error(
        self, transport: MessageTransport, request_id: Optional[str], error: BaseException
    ) -> None:
        await self._send_reply(
            transport,
            ErrorMessage(
                id=_message_id(),
                timestamp=time.time(),
                request_id=request_id,
                exception_type=type(error).__name__,
                exception_message=str(error),
            ),
        )

    async def _send_reply(self, transport: MessageTransport, reply: Message) -> None:
        """Send a reply; a peer that went away is logged, not raised."""
        try:
            await transport.send_message(reply)
        except (ProtocolError, ConnectionError) as e:
            logger.debug("reply_undeliverable", type=reply.type, error=str(e))
