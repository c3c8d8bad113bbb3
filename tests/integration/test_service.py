"""End-to-end tests of the framed service over a real TCP socket."""

import asyncio
import time
from unittest.mock import AsyncMock, Mock

import pytest

from deferral.broker.broker import SuspensionBroker
from deferral.broker.config import BrokerConfig
from deferral.broker.errors import InvalidRequestError, UnknownTokenError
from deferral.broker.handler import Final, HandlerRegistry, Retry
from deferral.initiator import RequestInitiator
from deferral.protocol.messages import (
    CallDescriptor,
    CancelledMessage,
    FinalStatus,
    StartMessage,
    StartRequest,
)
from deferral.protocol.transport import MessageTransport, ProtocolError
from deferral.service.client import DeferralClient
from deferral.service.config import ServiceConfig
from deferral.service.server import DeferralServer
from tests.fixtures.executors import HangingExecutor, ScriptedExecutor, fail, ok


def build_registry() -> HandlerRegistry:
    registry = HandlerRegistry()

    @registry.register("echo")
    def echo(outcomes, state):
        return Final({"bodies": [o.body for o in outcomes], "state": state})

    @registry.register("retry_until_ok")
    def retry_until_ok(outcomes, state):
        if outcomes[0].ok:
            return Final(outcomes[0].body)
        return Retry(calls=[{"label": "lr", "url": "https://svc.test/longRunning"}], state=state)

    return registry


@pytest.fixture(params=[True, False], ids=["msgpack", "json"])
async def service(request):
    executor = ScriptedExecutor({"lr": [fail("lr", 503), ok("lr", "done")]})
    broker = SuspensionBroker(executor, BrokerConfig(default_timeout=5.0, max_timeout=10.0))
    initiator = RequestInitiator(broker, build_registry())
    server = DeferralServer(initiator, ServiceConfig(use_msgpack=request.param))
    await server.start()
    client = DeferralClient(server.host, server.port, use_msgpack=request.param)
    await client.connect()
    try:
        yield broker, client
    finally:
        await client.close()
        await server.stop()
        await broker.close()


@pytest.mark.integration
class TestDeferralService:
    @pytest.mark.asyncio
    async def test_start_then_result(self, service):
        broker, client = service
        token = await client.start(
            [{"url": "https://svc.test/a"}, {"url": "https://svc.test/b"}],
            "echo",
            state={"attempts": 0},
        )
        assert token.startswith("cont:")

        result = await client.result(token, timeout=5)
        assert result.status is FinalStatus.COMPLETED
        assert result.payload == {"bodies": ["OK", "OK"], "state": {"attempts": 0}}
        assert [o.label for o in result.outcomes] == ["Continuation-1", "Continuation-2"]

    @pytest.mark.asyncio
    async def test_retry_chain_over_the_wire(self, service):
        broker, client = service
        token = await client.start(
            [{"label": "lr", "url": "https://svc.test/longRunning"}], "retry_until_ok"
        )
        result = await client.result(token, timeout=5)
        assert result.payload == "done"
        assert result.rounds == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_on_one_connection(self, service):
        broker, client = service
        tokens = await asyncio.gather(
            *(client.start([{"url": f"https://svc.test/{i}"}], "echo", state=i) for i in range(5))
        )
        assert len(set(tokens)) == 5
        results = await asyncio.gather(*(client.result(t, timeout=5) for t in tokens))
        assert [r.payload["state"] for r in results] == list(range(5))

    @pytest.mark.asyncio
    async def test_unknown_handler(self, service):
        broker, client = service
        with pytest.raises(InvalidRequestError, match="nope"):
            await client.start([{"url": "https://svc.test/a"}], "nope")
        assert broker.pending_tokens() == []

    @pytest.mark.asyncio
    async def test_too_many_calls(self, service):
        broker, client = service
        calls = [{"url": f"https://svc.test/{i}"} for i in range(4)]
        with pytest.raises(InvalidRequestError):
            await client.start(calls, "echo")

    @pytest.mark.asyncio
    async def test_unknown_token(self, service):
        broker, client = service
        with pytest.raises(UnknownTokenError):
            await client.result("cont:doesnotexist", timeout=1)
        with pytest.raises(UnknownTokenError):
            await client.cancel("cont:doesnotexist")

    @pytest.mark.asyncio
    async def test_cancel_after_completion_reports_false(self, service):
        broker, client = service
        token = await client.start([{"url": "https://svc.test/a"}], "echo")
        await client.result(token, timeout=5)
        assert await client.cancel(token) is False


@pytest.mark.integration
class TestServiceCancellation:
    @pytest.mark.asyncio
    async def test_cancel_wakes_result_waiter(self):
        broker = SuspensionBroker(HangingExecutor(), BrokerConfig(default_timeout=5.0, max_timeout=10.0))
        registry = HandlerRegistry()
        registry.register("echo", lambda outcomes, state: state)
        async with DeferralServer(RequestInitiator(broker, registry)) as server:
            async with DeferralClient(server.host, server.port) as client:
                token = await client.start([{"url": "https://svc.test/hang"}], "echo")
                waiter = asyncio.create_task(client.result(token, timeout=5))
                await asyncio.sleep(0.05)

                assert await client.cancel(token) is True
                result = await asyncio.wait_for(waiter, timeout=2)
                assert result.status is FinalStatus.CANCELLED
                assert result.display_message() == "Request was cancelled"
        await broker.close()

    @pytest.mark.asyncio
    async def test_result_wait_times_out_without_cancelling(self):
        broker = SuspensionBroker(HangingExecutor(), BrokerConfig(default_timeout=5.0, max_timeout=10.0))
        registry = HandlerRegistry()
        registry.register("echo", lambda outcomes, state: state)
        async with DeferralServer(RequestInitiator(broker, registry)) as server:
            async with DeferralClient(server.host, server.port) as client:
                token = await client.start([{"url": "https://svc.test/hang"}], "echo")
                with pytest.raises(asyncio.TimeoutError):
                    await client.result(token, timeout=0.1)
                assert broker.is_pending(token)
        await broker.close()

    @pytest.mark.asyncio
    async def test_zero_result_timeout_is_not_the_default(self):
        broker = SuspensionBroker(HangingExecutor(), BrokerConfig(default_timeout=5.0, max_timeout=10.0))
        registry = HandlerRegistry()
        registry.register("echo", lambda outcomes, state: state)
        async with DeferralServer(RequestInitiator(broker, registry)) as server:
            async with DeferralClient(server.host, server.port) as client:
                token = await client.start([{"url": "https://svc.test/hang"}], "echo")
                started = time.monotonic()
                with pytest.raises(asyncio.TimeoutError):
                    await client.result(token, timeout=0)
                assert time.monotonic() - started < 2.0
                assert broker.is_pending(token)
        await broker.close()


@pytest.mark.integration
class TestReplyHandling:
    @pytest.mark.asyncio
    async def test_unexpected_reply_type_is_protocol_error(self):
        async def misbehaving(reader, writer):
            transport = MessageTransport(reader, writer)
            await transport.start()
            request = await transport.receive_message(timeout=2)
            await transport.send_message(
                CancelledMessage(
                    id="reply-1",
                    timestamp=time.time(),
                    request_id=request.id,
                    token="cont:x",
                    cancelled=True,
                )
            )
            await asyncio.sleep(0.1)
            await transport.close()

        server = await asyncio.start_server(misbehaving, host="127.0.0.1", port=0)
        port = server.sockets[0].getsockname()[1]
        try:
            async with DeferralClient("127.0.0.1", port) as client:
                with pytest.raises(ProtocolError, match="Unexpected reply: cancelled"):
                    await client.start([{"url": "https://svc.test/a"}], "echo")
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_disconnected_peer_does_not_fail_the_handler(self, executor):
        broker = SuspensionBroker(executor, BrokerConfig(default_timeout=5.0, max_timeout=10.0))
        registry = HandlerRegistry()
        registry.register("echo", lambda outcomes, state: state)
        server = DeferralServer(RequestInitiator(broker, registry))

        transport = Mock()
        transport.send_message = AsyncMock(side_effect=ConnectionResetError("peer gone"))
        start = StartMessage(
            id="m-1",
            timestamp=time.time(),
            request=StartRequest(
                calls=[CallDescriptor(label="a", url="https://svc.test/a")], handler="echo"
            ),
        )
        try:
            await server._handle(transport, start)
            transport.send_message.assert_awaited_once()
            assert broker.metrics.records_registered == 1
        finally:
            await broker.close()
