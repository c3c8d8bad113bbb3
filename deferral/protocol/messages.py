from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"


class OutcomeStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class FinalStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageType(str, Enum):
    START = "start"
    TOKEN = "token"
    AWAIT_RESULT = "await_result"
    RESULT = "result"
    CANCEL = "cancel"
    CANCELLED = "cancelled"
    ERROR = "error"


class CallDescriptor(BaseModel):
    """One outbound HTTP call. Immutable once submitted."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(description="Label unique within the record's call set")
    url: str = Field(description="Target endpoint")
    method: HttpMethod = Field(default=HttpMethod.GET, description="HTTP method")
    headers: dict[str, str] = Field(default_factory=dict, description="Request headers")
    params: dict[str, str] = Field(default_factory=dict, description="Query parameters")
    body: Optional[str] = Field(default=None, description="Request body")
    timeout: Optional[float] = Field(
        default=None, gt=0, description="Per-call deadline in seconds"
    )


class CallOutcome(BaseModel):
    """Settled (or pending) result of one outbound call."""

    label: str = Field(description="Label of the call this outcome belongs to")
    status: OutcomeStatus = Field(default=OutcomeStatus.PENDING)
    status_code: Optional[int] = Field(default=None, description="HTTP status, if any")
    body: Optional[str] = Field(default=None, description="Response body text")
    headers: dict[str, str] = Field(default_factory=dict)
    error_type: Optional[str] = Field(default=None, description="Failure classification")
    error_message: Optional[str] = Field(default=None)
    elapsed: float = Field(default=0.0, description="Seconds between dispatch and settlement")

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.SUCCEEDED

    @property
    def settled(self) -> bool:
        return self.status is not OutcomeStatus.PENDING

    @classmethod
    def succeeded(
        cls,
        label: str,
        status_code: int,
        body: str | None = None,
        headers: dict[str, str] | None = None,
        elapsed: float = 0.0,
    ) -> CallOutcome:
        return cls(
            label=label,
            status=OutcomeStatus.SUCCEEDED,
            status_code=status_code,
            body=body,
            headers=headers or {},
            elapsed=elapsed,
        )

    @classmethod
    def failed(
        cls,
        label: str,
        error_type: str,
        error_message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        elapsed: float = 0.0,
    ) -> CallOutcome:
        return cls(
            label=label,
            status=OutcomeStatus.FAILED,
            status_code=status_code,
            body=body,
            error_type=error_type,
            error_message=error_message,
            elapsed=elapsed,
        )

    @classmethod
    def timed_out(cls, label: str, message: str = "Call timed out", elapsed: float = 0.0) -> CallOutcome:
        return cls(
            label=label,
            status=OutcomeStatus.TIMED_OUT,
            error_type="TimeoutError",
            error_message=message,
            elapsed=elapsed,
        )


class ErrorDetail(BaseModel):
    error_type: str = Field(description="Error class name, e.g. CallFailure")
    message: str = Field(description="Human readable message")
    status_code: Optional[int] = Field(default=None, description="HTTP status, if relevant")


class FinalResult(BaseModel):
    """Terminal result delivered to whoever consumes a continuation token."""

    token: str
    status: FinalStatus
    payload: Any = Field(default=None, description="Handler payload on completion")
    error: Optional[ErrorDetail] = None
    rounds: int = Field(default=1, description="Number of suspension rounds used")
    outcomes: list[CallOutcome] = Field(
        default_factory=list, description="Outcomes of the last round, in submission order"
    )

    @property
    def ok(self) -> bool:
        return self.status is FinalStatus.COMPLETED

    def display_message(self) -> str:
        """Render a message suitable for showing to an end user."""
        if self.status is FinalStatus.COMPLETED:
            return "" if self.payload is None else str(self.payload)
        if self.status is FinalStatus.CANCELLED:
            return "Request was cancelled"
        if self.error is None:
            return "Request failed"
        if self.error.status_code is not None:
            return f"Request failed ({self.error.status_code}): {self.error.message}"
        return f"Request failed: {self.error.message}"


class StartRequest(BaseModel):
    """Wire form of a start request; the handler is referenced by registry name."""

    calls: list[CallDescriptor] = Field(description="Outbound calls, in submission order")
    handler: str = Field(description="Registered resume handler name")
    state: Any = Field(default=None, description="Opaque caller state")
    timeout: Optional[float] = Field(default=None, description="Record deadline in seconds")


class BaseMessage(BaseModel):
    id: str = Field(description="Unique message identifier")
    timestamp: float = Field(description="Unix timestamp of message creation")


class StartMessage(BaseMessage):
    type: Literal[MessageType.START] = Field(default=MessageType.START)
    request: StartRequest


class TokenMessage(BaseMessage):
    type: Literal[MessageType.TOKEN] = Field(default=MessageType.TOKEN)
    token: str = Field(description="Continuation token for the started request")
    request_id: str = Field(description="ID of the start message being answered")


class AwaitResultMessage(BaseMessage):
    type: Literal[MessageType.AWAIT_RESULT] = Field(default=MessageType.AWAIT_RESULT)
    token: str
    timeout: Optional[float] = Field(
        default=None, description="Seconds to wait for the final result"
    )


class ResultMessage(BaseMessage):
    type: Literal[MessageType.RESULT] = Field(default=MessageType.RESULT)
    request_id: str
    result: FinalResult


class CancelMessage(BaseMessage):
    type: Literal[MessageType.CANCEL] = Field(default=MessageType.CANCEL)
    token: str


class CancelledMessage(BaseMessage):
    type: Literal[MessageType.CANCELLED] = Field(default=MessageType.CANCELLED)
    request_id: str
    token: str
    cancelled: bool = Field(description="False when the token had already finished")


class ErrorMessage(BaseMessage):
    type: Literal[MessageType.ERROR] = Field(default=MessageType.ERROR)
    request_id: Optional[str] = Field(default=None)
    exception_type: str = Field(description="Exception class name")
    exception_message: str = Field(description="Exception message")


Message = Union[
    StartMessage,
    TokenMessage,
    AwaitResultMessage,
    ResultMessage,
    CancelMessage,
    CancelledMessage,
    ErrorMessage,
]


def parse_message(data: dict[str, Any]) -> Message:
    """Parse a message from a dictionary.

    Args:
        data: Dictionary containing message data

    Returns:
        Parsed message object

    Raises:
        ValueError: If message type is unknown or data is invalid
    """
    message_type = data.get("type")
    if message_type is None:
        raise ValueError("Message type is missing")

    message_classes: dict[str, type[Message]] = {
        MessageType.START.value: StartMessage,
        MessageType.TOKEN.value: TokenMessage,
        MessageType.AWAIT_RESULT.value: AwaitResultMessage,
        MessageType.RESULT.value: ResultMessage,
        MessageType.CANCEL.value: CancelMessage,
        MessageType.CANCELLED.value: CancelledMessage,
        MessageType.ERROR.value: ErrorMessage,
    }

    message_class = message_classes.get(message_type)
    if not message_class:
        raise ValueError(f"Unknown message type: {message_type}")

    return message_class(**data)
