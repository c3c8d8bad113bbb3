from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from ..protocol.messages import CallDescriptor, CallOutcome, OutcomeStatus
from .handler import ResumeHandler


class RecordState(str, Enum):
    """Continuation record lifecycle states."""

    REGISTERED = "registered"
    PENDING = "pending"
    RESUMING = "resuming"
    RESUMED_FINAL = "resumed_final"
    RESUMED_RETRY = "resumed_retry"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {RecordState.RESUMED_FINAL, RecordState.TIMED_OUT, RecordState.CANCELLED}
)


@dataclass
class PendingCall:
    """One descriptor and its outcome slot. Owned by the broker."""

    descriptor: CallDescriptor
    outcome: CallOutcome
    dispatched_at: Optional[float] = None
    task: Optional[asyncio.Task[None]] = None

    @classmethod
    def for_descriptor(cls, descriptor: CallDescriptor) -> PendingCall:
        return cls(descriptor=descriptor, outcome=CallOutcome(label=descriptor.label))

    @property
    def label(self) -> str:
        return self.descriptor.label

    @property
    def settled(self) -> bool:
        return self.outcome.settled

    def settle(self, outcome: CallOutcome) -> None:
        self.outcome = outcome

    def expire(self, message: str) -> None:
        elapsed = time.monotonic() - self.dispatched_at if self.dispatched_at else 0.0
        self.outcome = CallOutcome.timed_out(self.label, message, elapsed=elapsed)


@dataclass
class ContinuationRecord:
    """Calls grouped under one token for one suspension round.

    ``calls`` keeps submission order; outcomes are always reported in that
    order regardless of completion order.
    """

    token: str
    calls: dict[str, PendingCall]
    state: Any
    handler: ResumeHandler
    timeout: float
    round: int = 1
    record_state: RecordState = RecordState.REGISTERED
    deadline_task: Optional[asyncio.Task[None]] = None

    @classmethod
    def build(
        cls,
        token: str,
        descriptors: list[CallDescriptor],
        state: Any,
        handler: ResumeHandler,
        timeout: float,
        round: int = 1,
    ) -> ContinuationRecord:
        calls = {d.label: PendingCall.for_descriptor(d) for d in descriptors}
        return cls(
            token=token,
            calls=calls,
            state=state,
            handler=handler,
            timeout=timeout,
            round=round,
        )

    @property
    def labels(self) -> list[str]:
        return list(self.calls)

    @property
    def finished(self) -> bool:
        return self.record_state in TERMINAL_STATES or self.record_state in (
            RecordState.RESUMING,
            RecordState.RESUMED_RETRY,
        )

    def outcomes(self) -> list[CallOutcome]:
        return [call.outcome for call in self.calls.values()]

    def outstanding(self) -> list[PendingCall]:
        return [call for call in self.calls.values() if not call.settled]

    def all_settled(self) -> bool:
        return all(call.settled for call in self.calls.values())

    def any_timed_out(self) -> bool:
        return any(
            call.outcome.status is OutcomeStatus.TIMED_OUT for call in self.calls.values()
        )
