"""Resume handler contract.

A resume handler is any callable taking ``(outcomes, state)`` and returning
either :class:`Final` (the request is done) or :class:`Retry` (register
another round of calls under the same token). It may be a plain function or
a coroutine function. Handlers should be pure with respect to their inputs:
the same outcomes and state must produce the same decision.

Handlers are passed by reference to ``RequestInitiator.start``. The framed
service cannot send callables over the wire, so it resolves handler names
through a :class:`HandlerRegistry` instead.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from ..protocol.messages import CallDescriptor, CallOutcome


@dataclass(frozen=True)
class Final:
    """Terminate the record with a payload, or with a failure."""

    payload: Any = None
    failed: bool = False
    message: Optional[str] = None
    status_code: Optional[int] = None
    error_type: str = "CallFailure"

    @classmethod
    def failure(
        cls,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_type: str = "CallFailure",
        payload: Any = None,
    ) -> Final:
        return cls(
            payload=payload,
            failed=True,
            message=message,
            status_code=status_code,
            error_type=error_type,
        )


@dataclass(frozen=True)
class Retry:
    """Chain another suspension round.

    ``calls`` may hold CallDescriptor instances or dicts. ``handler`` defaults
    to the handler that returned this Retry; ``timeout`` defaults to the
    broker's default record timeout.
    """

    calls: Sequence[Union[CallDescriptor, dict[str, Any]]]
    state: Any = None
    timeout: Optional[float] = None
    handler: Optional[ResumeHandler] = field(default=None, compare=False)


ResumeResult = Union[Final, Retry]
ResumeHandler = Callable[
    [list[CallOutcome], Any], Union[ResumeResult, Any, Awaitable[Union[ResumeResult, Any]]]
]


async def invoke_handler(
    handler: ResumeHandler, outcomes: list[CallOutcome], state: Any
) -> ResumeResult:
    """Call a sync or async handler and normalize what it returns.

    Anything that is neither Final nor Retry becomes ``Final(payload=value)``.
    Exceptions raised by the handler propagate to the caller.
    """
    result = handler(outcomes, state)
    if inspect.isawaitable(result):
        result = await result
    if isinstance(result, (Final, Retry)):
        return result
    return Final(payload=result)


class HandlerRegistry:
    """Explicit name -> resume handler mapping."""

    def __init__(self) -> None:
        self._handlers: dict[str, ResumeHandler] = {}

    def register(
        self, name: str, handler: Optional[ResumeHandler] = None
    ) -> Any:
        """Register a handler; usable directly or as a decorator.

        Raises:
            ValueError: If the name is empty or already registered
        """
        if not name:
            raise ValueError("Handler name must not be empty")

        def _register(fn: ResumeHandler) -> ResumeHandler:
            if not callable(fn):
                raise TypeError(f"Handler {name!r} is not callable")
            if name in self._handlers:
                raise ValueError(f"Handler {name!r} is already registered")
            self._handlers[name] = fn
            return fn

        if handler is None:
            return _register
        return _register(handler)

    def get(self, name: str) -> ResumeHandler:
        """Look up a handler.

        Raises:
            KeyError: If no handler is registered under the name
        """
        try:
            return self._handlers[name]
        except KeyError:
            raise KeyError(f"No resume handler registered as {name!r}") from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
