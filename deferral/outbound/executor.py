from __future__ import annotations

import asyncio
import time
from typing import Optional, Protocol

import httpx
import structlog

from ..protocol.messages import CallDescriptor, CallOutcome
from .config import ExecutorConfig

logger = structlog.get_logger()


class CallExecutor(Protocol):
    """Performs one outbound call and reports how it settled.

    Implementations must not raise for network or status failures; those are
    returned as failed or timed out outcomes.
    """

    async def dispatch(self, descriptor: CallDescriptor) -> CallOutcome: ...


class ResponseTooLarge(Exception):
    """Response body exceeded the configured limit."""

    pass


class HttpCallExecutor:
    """Runs CallDescriptors over HTTP with a shared httpx.AsyncClient.

    - 2xx/3xx responses settle as succeeded.
    - 4xx/5xx responses settle as failed (CallFailure) keeping status and body.
    - httpx timeouts and the per-call deadline settle as timed out.
    - other transport errors settle as failed with the exception detail.
    """

    def __init__(
        self,
        config: Optional[ExecutorConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config or ExecutorConfig()
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._semaphore = asyncio.Semaphore(self._config.max_in_flight)
        self._closed = False
        self.dispatch_count = 0

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    def _get_client(self) -> httpx.AsyncClient:
        if self._closed:
            raise RuntimeError("Executor is closed")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers=self._config.headers,
                timeout=httpx.Timeout(
                    self._config.default_call_timeout, connect=self._config.connect_timeout
                ),
                follow_redirects=self._config.follow_redirects,
                transport=self._transport,
            )
        return self._client

    async def dispatch(self, descriptor: CallDescriptor) -> CallOutcome:
        self.dispatch_count += 1
        deadline = descriptor.timeout or self._config.default_call_timeout
        started = time.monotonic()
        log = logger.bind(label=descriptor.label, method=descriptor.method.value, url=descriptor.url)

        try:
            async with self._semaphore:
                response, body = await asyncio.wait_for(
                    self._send(descriptor, deadline), timeout=deadline
                )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            elapsed = time.monotonic() - started
            log.warning("outbound_call_timed_out", deadline=deadline, elapsed=elapsed)
            return CallOutcome.timed_out(
                descriptor.label,
                str(e) or f"No response within {deadline:g}s",
                elapsed=elapsed,
            )
        except ResponseTooLarge as e:
            return CallOutcome.failed(
                descriptor.label,
                "ResponseTooLarge",
                str(e),
                elapsed=time.monotonic() - started,
            )
        except (httpx.HTTPError, OSError) as e:
            elapsed = time.monotonic() - started
            log.warning("outbound_call_failed", error=str(e), error_type=type(e).__name__)
            return CallOutcome.failed(
                descriptor.label, type(e).__name__, str(e) or type(e).__name__, elapsed=elapsed
            )

        elapsed = time.monotonic() - started
        headers = dict(response.headers)
        if response.status_code >= 400:
            log.info("outbound_call_failed", status_code=response.status_code, elapsed=elapsed)
            return CallOutcome.failed(
                descriptor.label,
                "CallFailure",
                response.reason_phrase or f"HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
                elapsed=elapsed,
            )

        log.debug("outbound_call_succeeded", status_code=response.status_code, elapsed=elapsed)
        return CallOutcome.succeeded(
            descriptor.label, response.status_code, body, headers=headers, elapsed=elapsed
        )

    async def _send(
        self, descriptor: CallDescriptor, deadline: float
    ) -> tuple[httpx.Response, str]:
        client = self._get_client()
        request = client.build_request(
            descriptor.method.value,
            descriptor.url,
            headers=descriptor.headers or None,
            params=descriptor.params or None,
            content=descriptor.body,
            timeout=httpx.Timeout(deadline, connect=min(deadline, self._config.connect_timeout)),
        )
        response = await client.send(request, stream=True)
        try:
            chunks = bytearray()
            async for chunk in response.aiter_bytes():
                chunks.extend(chunk)
                if len(chunks) > self._config.max_response_bytes:
                    raise ResponseTooLarge(
                        f"Response body exceeds {self._config.max_response_bytes} bytes"
                    )
        finally:
            await response.aclose()
        encoding = response.encoding or "utf-8"
        return response, bytes(chunks).decode(encoding, errors="replace")

    async def aclose(self) -> None:
        self._closed = True
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> HttpCallExecutor:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
