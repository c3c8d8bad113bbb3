#!/usr/bin/env python3
"""Deferral - suspend requests on outbound calls and resume them later."""

from __future__ import annotations

import asyncio
import logging
import sys

import httpx
import structlog

from deferral.broker.broker import SuspensionBroker
from deferral.broker.config import BrokerConfig, ExitPolicy
from deferral.broker.handler import Final, HandlerRegistry, Retry
from deferral.initiator import CallSet, RequestInitiator
from deferral.outbound.config import ExecutorConfig
from deferral.outbound.executor import HttpCallExecutor
from deferral.protocol.messages import CallOutcome
from deferral.service.client import DeferralClient
from deferral.service.server import DeferralServer

logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


class DemoBackend:
    """In-process HTTP backend; /flaky fails until the third attempt."""

    def __init__(self) -> None:
        self.flaky_attempts = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.2)
        if request.url.path == "/flaky":
            self.flaky_attempts += 1
            if self.flaky_attempts < 3:
                return httpx.Response(503, text="try again")
        return httpx.Response(200, text=f"OK from {request.url.path}")


def summarize(outcomes: list[CallOutcome], state: dict) -> Final:
    """Resume handler: join all bodies, fail if any call failed."""
    failed = [o for o in outcomes if not o.ok]
    if failed:
        return Final.failure(failed[0].error_message or "call failed", status_code=failed[0].status_code)
    return Final({"user": state["user"], "bodies": [o.body for o in outcomes]})


def retry_flaky(outcomes: list[CallOutcome], state: dict) -> Final | Retry:
    """Resume handler: retry /flaky while it answers 503."""
    outcome = outcomes[0]
    if outcome.ok:
        return Final(f"{outcome.body} after {state['attempts'] + 1} attempt(s)")
    return Retry(calls=[{"url": "/flaky"}], state={"attempts": state["attempts"] + 1})


def build_executor(backend: DemoBackend) -> HttpCallExecutor:
    return HttpCallExecutor(
        ExecutorConfig(base_url="http://demo.local"), transport=httpx.MockTransport(backend)
    )


async def demo_fan_out() -> None:
    """Three calls in parallel, one resume."""
    print("=== Fan-out Demo ===\n")
    async with build_executor(DemoBackend()) as executor:
        broker = SuspensionBroker(executor, BrokerConfig(default_timeout=5.0))
        initiator = RequestInitiator(broker)

        calls = CallSet()
        for path in ("/profile", "/orders", "/recommendations"):
            calls.add(path)
        token = initiator.start(calls, {"user": "u-42"}, summarize)
        print(f"Suspended as {token}; pending tokens: {broker.pending_tokens()}")

        result = await broker.result(token, timeout=5)
        print(f"Resumed: {result.status.value} -> {result.payload}\n")
        await broker.close()


async def demo_retry_chain() -> None:
    """A handler that chains rounds under one token."""
    print("=== Retry Chain Demo ===\n")
    async with build_executor(DemoBackend()) as executor:
        broker = SuspensionBroker(executor, BrokerConfig(max_chain_depth=3))
        token = RequestInitiator(broker).start(
            [{"url": "/flaky"}], {"attempts": 0}, retry_flaky
        )
        result = await broker.result(token, timeout=10)
        print(f"{result.display_message()} (rounds: {result.rounds})\n")
        await broker.close()


async def demo_any_timeout() -> None:
    """ANY_TIMEOUT resumes as soon as one call misses its deadline."""
    print("=== Any-timeout Demo ===\n")
    async with build_executor(DemoBackend()) as executor:
        broker = SuspensionBroker(executor, exit_policy=ExitPolicy.ANY_TIMEOUT)
        token = RequestInitiator(broker).start(
            [
                {"label": "fast", "url": "/fast", "timeout": 0.05},
                {"label": "slow", "url": "/slow"},
            ],
            {"user": "u-7"},
            summarize,
        )
        result = await broker.result(token, timeout=5)
        for outcome in result.outcomes:
            print(f"  {outcome.label}: {outcome.status.value} ({outcome.error_message})")
        print(f"User sees: {result.display_message()}\n")
        await broker.close()


async def demo_service() -> None:
    """The same broker behind the framed TCP service."""
    print("=== Service Demo ===\n")
    registry = HandlerRegistry()
    registry.register("summarize", summarize)

    async with build_executor(DemoBackend()) as executor:
        broker = SuspensionBroker(executor)
        async with DeferralServer(RequestInitiator(broker, registry)) as server:
            async with DeferralClient(server.host, server.port) as client:
                token = await client.start([{"url": "/profile"}], "summarize", {"user": "u-1"})
                result = await client.result(token, timeout=5)
                print(f"{token}: {result.payload}\n")
        await broker.close()


async def main() -> None:
    """Run all demos."""
    print("Deferral Demo")
    print("=" * 50)
    print()

    try:
        await demo_fan_out()
        await demo_retry_chain()
        await demo_any_timeout()
        await demo_service()
        print("All demos completed successfully!")
    except Exception as e:
        logger.error("Demo failed", error=str(e))
        raise


if __name__ == "__main__":
    asyncio.run(main())
