"""Registration checks shared by the initiator and retry rounds."""

from __future__ import annotations

from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from ..protocol.messages import CallDescriptor
from .config import BrokerConfig
from .constants import auto_label
from .errors import InvalidRequestError


def normalize_calls(
    calls: Iterable[Union[CallDescriptor, dict[str, Any]]], max_calls: int
) -> list[CallDescriptor]:
    """Validate a call set and return it as descriptors in submission order.

    Dicts are parsed as CallDescriptor; a dict without a label gets
    ``Continuation-<n>`` where n is its 1-based position.

    Raises:
        InvalidRequestError: If the set is empty, too large, has blank or
            duplicate labels, or contains something that is not a descriptor
    """
    if calls is None or isinstance(calls, (str, bytes, dict, CallDescriptor)):
        raise InvalidRequestError("calls must be a sequence of call descriptors")

    descriptors: list[CallDescriptor] = []
    for index, call in enumerate(calls, start=1):
        if isinstance(call, CallDescriptor):
            descriptors.append(call)
        elif isinstance(call, dict):
            data = dict(call)
            data.setdefault("label", auto_label(index))
            try:
                descriptors.append(CallDescriptor(**data))
            except ValidationError as e:
                raise InvalidRequestError(f"Invalid call descriptor #{index}: {e}") from e
        else:
            raise InvalidRequestError(
                f"Call #{index} must be a CallDescriptor or dict, got {type(call).__name__}"
            )

    if not descriptors:
        raise InvalidRequestError("At least one outbound call is required")
    if len(descriptors) > max_calls:
        raise InvalidRequestError(
            f"Too many outbound calls: {len(descriptors)} (maximum {max_calls})"
        )

    seen: set[str] = set()
    for descriptor in descriptors:
        if not descriptor.label.strip():
            raise InvalidRequestError("Call labels must not be blank")
        if descriptor.label in seen:
            raise InvalidRequestError(f"Duplicate call label: {descriptor.label!r}")
        seen.add(descriptor.label)
    return descriptors


def resolve_timeout(timeout: Optional[float], config: BrokerConfig) -> float:
    """Return the record deadline in seconds.

    Raises:
        InvalidRequestError: If the timeout is not in (0, max_timeout]
    """
    if timeout is None:
        return config.default_timeout
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise InvalidRequestError(f"timeout must be a number, got {timeout!r}")
    if timeout <= 0 or timeout > config.max_timeout:
        raise InvalidRequestError(
            f"timeout must be in (0, {config.max_timeout}] seconds, got {timeout}"
        )
    return float(timeout)
