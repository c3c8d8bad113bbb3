"""Request initiator: validate a start request and hand it to the broker.

``start`` is a plain (non-async) method. It must be called from code running
on the broker's event loop, and it returns the continuation token before any
outbound call has been sent.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Union

from .broker.broker import SuspensionBroker
from .broker.constants import auto_label, new_token
from .broker.errors import InvalidRequestError
from .broker.handler import HandlerRegistry, ResumeHandler
from .broker.record import ContinuationRecord
from .broker.validation import normalize_calls, resolve_timeout
from .protocol.messages import CallDescriptor, HttpMethod, StartRequest

CallLike = Union[CallDescriptor, dict[str, Any]]


class RequestInitiator:
    def __init__(
        self, broker: SuspensionBroker, registry: Optional[HandlerRegistry] = None
    ) -> None:
        self._broker = broker
        self._registry = registry

    @property
    def broker(self) -> SuspensionBroker:
        return self._broker

    def start(
        self,
        calls: Iterable[CallLike],
        state: Any,
        resume_handler: ResumeHandler,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        """Register a continuation and return its token.

        Args:
            calls: Outbound calls in submission order (descriptors or dicts)
            state: Opaque payload handed back to the resume handler unchanged
            resume_handler: Callable invoked once with (outcomes, state)
            timeout: Record deadline in seconds; defaults to the broker config

        Raises:
            InvalidRequestError: If the request is malformed; nothing is registered
        """
        if not callable(resume_handler):
            raise InvalidRequestError("resume_handler must be callable")
        config = self._broker.config
        descriptors = normalize_calls(calls, config.max_calls_per_record)
        deadline = resolve_timeout(timeout, config)

        record = ContinuationRecord.build(
            token=new_token(),
            descriptors=descriptors,
            state=state,
            handler=resume_handler,
            timeout=deadline,
        )
        return self._broker.register(record)

    def start_request(self, request: StartRequest) -> str:
        """Start from the wire form, resolving the handler by name.

        Raises:
            InvalidRequestError: If no registry is configured or the handler is unknown
        """
        if self._registry is None:
            raise InvalidRequestError("No handler registry configured")
        try:
            handler = self._registry.get(request.handler)
        except KeyError as e:
            raise InvalidRequestError(str(e.args[0])) from e
        return self.start(request.calls, request.state, handler, timeout=request.timeout)


class CallSet:
    """Builder for a call set; unlabeled calls get Continuation-<n> labels.

    Usage:
        calls = CallSet()
        label = calls.add("https://example.com/longRunning")
        token = initiator.start(calls, state, handler)
    """

    def __init__(self) -> None:
        self._calls: list[CallDescriptor] = []

    def add(
        self,
        url: str,
        *,
        method: Union[HttpMethod, str] = HttpMethod.GET,
        label: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, str]] = None,
        body: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """Append a call and return its label."""
        descriptor = CallDescriptor(
            label=label or auto_label(len(self._calls) + 1),
            url=url,
            method=HttpMethod(method.upper() if isinstance(method, str) else method),
            headers=headers or {},
            params=params or {},
            body=body,
            timeout=timeout,
        )
        self._calls.append(descriptor)
        return descriptor.label

    def __iter__(self):
        return iter(list(self._calls))

    def __len__(self) -> int:
        return len(self._calls)

    @property
    def labels(self) -> list[str]:
        return [c.label for c in self._calls]
