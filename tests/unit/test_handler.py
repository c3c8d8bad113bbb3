"""Resume handler invocation and registry."""

import pytest

from deferral.broker.handler import Final, HandlerRegistry, Retry, invoke_handler
from deferral.protocol.messages import CallOutcome


@pytest.mark.unit
class TestInvokeHandler:
    @pytest.mark.asyncio
    async def test_sync_handler(self):
        result = await invoke_handler(lambda outcomes, state: Final(len(outcomes)), [CallOutcome(label="a")], None)
        assert result == Final(1)

    @pytest.mark.asyncio
    async def test_async_handler(self):
        async def handler(outcomes, state):
            return Retry(calls=[{"url": "https://svc.test"}], state=state + 1)

        result = await invoke_handler(handler, [], 1)
        assert isinstance(result, Retry)
        assert result.state == 2

    @pytest.mark.asyncio
    async def test_plain_value_becomes_final(self):
        result = await invoke_handler(lambda outcomes, state: {"x": 1}, [], None)
        assert result == Final(payload={"x": 1})

    @pytest.mark.asyncio
    async def test_exception_propagates(self):
        def handler(outcomes, state):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            await invoke_handler(handler, [], None)


@pytest.mark.unit
class TestFinal:
    def test_failure(self):
        final = Final.failure("Not Found", status_code=404)
        assert final.failed
        assert final.message == "Not Found"
        assert final.error_type == "CallFailure"

    def test_success_default(self):
        assert not Final("OK").failed


@pytest.mark.unit
class TestHandlerRegistry:
    def test_register_and_get(self):
        registry = HandlerRegistry()

        def echo(outcomes, state):
            return state

        registry.register("echo", echo)
        assert registry.get("echo") is echo
        assert "echo" in registry
        assert len(registry) == 1

    def test_decorator(self):
        registry = HandlerRegistry()

        @registry.register("b")
        def b(outcomes, state):
            return None

        @registry.register("a")
        def a(outcomes, state):
            return None

        assert registry.names() == ["a", "b"]
        assert registry.get("b") is b

    def test_duplicate_name(self):
        registry = HandlerRegistry()
        registry.register("x", lambda o, s: None)
        with pytest.raises(ValueError, match="already registered"):
            registry.register("x", lambda o, s: None)

    def test_not_callable(self):
        with pytest.raises(TypeError):
            HandlerRegistry().register("x", "nope")

    def test_unknown_name(self):
        with pytest.raises(KeyError):
            HandlerRegistry().get("missing")
