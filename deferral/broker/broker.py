from __future__ import annotations

import asyncio
import dataclasses
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

import structlog

from ..protocol.messages import (
    CallOutcome,
    ErrorDetail,
    FinalResult,
    FinalStatus,
    OutcomeStatus,
)
from .config import BrokerConfig, ExitPolicy
from .errors import (
    BrokerClosedError,
    CapacityExceededError,
    InvalidRequestError,
    RetryLimitExceededError,
    UnknownTokenError,
)
from .handler import Final, ResumeResult, Retry, invoke_handler
from .record import ContinuationRecord, PendingCall, RecordState
from .validation import normalize_calls, resolve_timeout

if TYPE_CHECKING:
    from ..outbound.executor import CallExecutor

logger = structlog.get_logger()


@dataclass
class BrokerMetrics:
    """Counters for a suspension broker."""

    records_registered: int = 0
    records_completed: int = 0
    records_failed: int = 0
    records_retried: int = 0
    records_timed_out: int = 0
    records_cancelled: int = 0
    handler_invocations: int = 0
    handler_errors: int = 0
    retry_limit_hits: int = 0
    calls_dispatched: int = 0
    stale_settlements: int = 0
    pending_records: int = 0
    pending_high_water_mark: int = 0


class SuspensionBroker:
    """Owns outstanding continuation records and resumes them exactly once.

    - register(record) -> token: arms the record deadline and dispatches
      every call through the executor as a background task.
    - on_call_settled(token, label, outcome): records one outcome and, when
      the exit condition holds, schedules the resume handler.
    - on_timeout(token): marks outstanding calls timed out and resumes.
    - cancel(token): drops the record without invoking its handler.
    - result(token): awaits the FinalResult of the whole retry chain.

    All record mutation happens under ``_lock``. The lock is never held
    across an await, a network call or a handler invocation, so settlements
    may arrive from executor tasks or from other threads.
    """

    def __init__(
        self,
        executor: CallExecutor,
        config: Optional[BrokerConfig] = None,
        *,
        exit_policy: Optional[ExitPolicy] = None,
        max_chain_depth: Optional[int] = None,
        default_timeout: Optional[float] = None,
    ) -> None:
        self._executor = executor
        base = config or BrokerConfig()
        overrides: dict[str, Any] = {}
        if exit_policy is not None:
            overrides["exit_policy"] = ExitPolicy(exit_policy)
        if max_chain_depth is not None:
            overrides["max_chain_depth"] = max_chain_depth
        if default_timeout is not None:
            overrides["default_timeout"] = default_timeout
            overrides["max_timeout"] = max(base.max_timeout, default_timeout)
        # The caller's config is never mutated; overrides are validated again
        self._config = dataclasses.replace(base, **overrides) if overrides else base

        self._records: dict[str, ContinuationRecord] = {}
        self._waiters: dict[str, asyncio.Future[FinalResult]] = {}
        self._finished: OrderedDict[str, FinalResult] = OrderedDict()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._resume_tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._metrics = BrokerMetrics()

    @property
    def config(self) -> BrokerConfig:
        return self._config

    @property
    def metrics(self) -> BrokerMetrics:
        with self._lock:
            self._metrics.pending_records = len(self._records)
        return self._metrics

    @property
    def closed(self) -> bool:
        return self._closed

    def pending_tokens(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def is_pending(self, token: str) -> bool:
        with self._lock:
            return token in self._records

    def get_state(self, token: str) -> Optional[RecordState]:
        """Lifecycle state of the token's current round, or None once finished."""
        with self._lock:
            record = self._records.get(token)
            return record.record_state if record else None

    def get_round(self, token: str) -> Optional[int]:
        with self._lock:
            record = self._records.get(token)
            return record.round if record else None

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, record: ContinuationRecord) -> str:
        """Register a first-round record and dispatch its calls.

        Must be called with a running event loop; returns without awaiting
        any network I/O.

        Raises:
            BrokerClosedError: If the broker has been closed
            CapacityExceededError: If max_pending_records is reached
            InvalidRequestError: If the token is already in use
        """
        loop = asyncio.get_running_loop()
        if self._closed:
            raise BrokerClosedError("Broker is closed")

        with self._lock:
            if self._loop is None:
                self._loop = loop
            if (
                record.token in self._records
                or record.token in self._waiters
                or record.token in self._finished
            ):
                raise InvalidRequestError(f"Token already registered: {record.token}")
            if len(self._records) >= self._config.max_pending_records:
                raise CapacityExceededError(
                    f"Too many pending continuations (maximum {self._config.max_pending_records})"
                )
            self._records[record.token] = record
            self._waiters[record.token] = loop.create_future()
            self._metrics.records_registered += 1
            if len(self._records) > self._metrics.pending_high_water_mark:
                self._metrics.pending_high_water_mark = len(self._records)

        logger.info(
            "continuation_registered",
            token=record.token,
            labels=record.labels,
            timeout=record.timeout,
        )
        self._arm(record)
        return record.token

    def _arm(self, record: ContinuationRecord) -> None:
        """Start the deadline timer and one dispatch task per call."""
        loop = self._loop or asyncio.get_running_loop()
        now = time.monotonic()
        record.deadline_task = loop.create_task(
            self._expire_after(record), name=f"deadline:{record.token}:{record.round}"
        )
        for call in record.calls.values():
            call.dispatched_at = now
            call.task = loop.create_task(
                self._run_call(record, call), name=f"call:{record.token}:{call.label}"
            )
        with self._lock:
            cancelled = record.record_state is RecordState.CANCELLED
            if record.record_state is RecordState.REGISTERED:
                record.record_state = RecordState.PENDING
            self._metrics.calls_dispatched += len(record.calls)
        if cancelled:
            self._release_tasks(record)

    async def _run_call(self, record: ContinuationRecord, call: PendingCall) -> None:
        started = time.monotonic()
        try:
            outcome = await self._executor.dispatch(call.descriptor)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Executors report failures as outcomes; anything escaping is a bug
            # in the executor, but still must not cross the suspension boundary.
            logger.warning(
                "executor_raised",
                token=record.token,
                label=call.label,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome = CallOutcome.failed(
                call.label, type(e).__name__, str(e), elapsed=time.monotonic() - started
            )
        if outcome.label != call.label:
            outcome = outcome.model_copy(update={"label": call.label})
        self.on_call_settled(record.token, call.label, outcome, round=record.round)

    async def _expire_after(self, record: ContinuationRecord) -> None:
        await asyncio.sleep(record.timeout)
        self.on_timeout(record.token, round=record.round)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    def on_call_settled(
        self,
        token: str,
        label: str,
        outcome: CallOutcome,
        *,
        round: Optional[int] = None,
    ) -> bool:
        """Record the outcome of one call.

        Returns False for stale settlements: unknown or finished tokens, a
        different round, unknown labels, or calls that already settled.

        Raises:
            ValueError: If the outcome is still pending
        """
        if outcome.status is OutcomeStatus.PENDING:
            raise ValueError("Cannot settle a call with a pending outcome")

        with self._lock:
            record = self._records.get(token)
            call = record.calls.get(label) if record else None
            if (
                record is None
                or call is None
                or record.finished
                or (round is not None and record.round != round)
                or call.settled
            ):
                self._metrics.stale_settlements += 1
                stale = True
                ready = False
            else:
                stale = False
                call.settle(outcome)
                ready = self._check_exit(record)

        if stale:
            logger.debug("stale_settlement_ignored", token=token, label=label, round=round)
            return False

        logger.debug(
            "call_settled",
            token=token,
            label=label,
            status=outcome.status.value,
            status_code=outcome.status_code,
        )
        if ready:
            self._schedule_resume(record)
        return True

    def on_timeout(self, token: str, *, round: Optional[int] = None) -> bool:
        """Time out every outstanding call of the token's current round."""
        with self._lock:
            record = self._records.get(token)
            if (
                record is None
                or record.finished
                or (round is not None and record.round != round)
            ):
                return False
            expired = record.outstanding()
            for call in expired:
                call.expire(f"No response within {record.timeout:g}s")
            self._metrics.records_timed_out += 1
            ready = self._check_exit(record)

        logger.warning(
            "continuation_timed_out",
            token=token,
            round=record.round,
            labels=[call.label for call in expired],
        )
        if ready:
            self._schedule_resume(record)
        return True

    def _check_exit(self, record: ContinuationRecord) -> bool:
        """Evaluate the exit condition; caller holds the lock.

        Moves the record to RESUMING exactly once.
        """
        if (
            self._config.exit_policy is ExitPolicy.ANY_TIMEOUT
            and record.any_timed_out()
        ):
            for call in record.outstanding():
                call.expire("Preempted by a timed out call")
        if not record.all_settled():
            return False
        record.record_state = RecordState.RESUMING
        return True

    def _schedule_resume(self, record: ContinuationRecord) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            self._spawn_resume(record)
        else:
            loop.call_soon_threadsafe(self._spawn_resume, record)

    def _spawn_resume(self, record: ContinuationRecord) -> None:
        current = asyncio.current_task()
        self._release_tasks(record, skip=current)
        task = asyncio.get_running_loop().create_task(
            self._resume(record), name=f"resume:{record.token}:{record.round}"
        )
        self._resume_tasks.add(task)
        task.add_done_callback(self._resume_tasks.discard)

    @staticmethod
    def _release_tasks(
        record: ContinuationRecord, skip: Optional[asyncio.Task[Any]] = None
    ) -> None:
        tasks = [call.task for call in record.calls.values()]
        tasks.append(record.deadline_task)
        for task in tasks:
            if task is not None and task is not skip and not task.done():
                task.cancel()

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def _resume(self, record: ContinuationRecord) -> None:
        outcomes = record.outcomes()
        with self._lock:
            if self._records.get(record.token) is not record:
                # Cancelled between the exit check and this task running
                logger.debug("resume_skipped", token=record.token, round=record.round)
                return
            self._metrics.handler_invocations += 1
        logger.debug(
            "continuation_resuming",
            token=record.token,
            round=record.round,
            statuses=[o.status.value for o in outcomes],
        )

        try:
            decision: ResumeResult = await invoke_handler(record.handler, outcomes, record.state)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            with self._lock:
                self._metrics.handler_errors += 1
            logger.exception("resume_handler_failed", token=record.token, round=record.round)
            decision = Final.failure(
                f"{type(e).__name__}: {e}", error_type="ResumeHandlerError"
            )

        if isinstance(decision, Retry):
            next_record = self._next_round(record, decision)
            if isinstance(next_record, ContinuationRecord):
                self._chain(record, next_record)
                return
            decision = next_record

        self._finalize(record, decision)

    def _next_round(
        self, record: ContinuationRecord, decision: Retry
    ) -> ContinuationRecord | Final:
        if record.round >= self._config.max_chain_depth:
            err = RetryLimitExceededError(record.token, self._config.max_chain_depth)
            with self._lock:
                self._metrics.retry_limit_hits += 1
            logger.warning(
                "retry_limit_exceeded",
                token=record.token,
                max_chain_depth=self._config.max_chain_depth,
            )
            last_status = next(
                (o.status_code for o in reversed(record.outcomes()) if o.status_code), None
            )
            return Final.failure(
                str(err), status_code=last_status, error_type=type(err).__name__
            )
        try:
            calls = normalize_calls(decision.calls, self._config.max_calls_per_record)
            timeout = resolve_timeout(decision.timeout, self._config)
        except InvalidRequestError as e:
            logger.warning("retry_rejected", token=record.token, error=str(e))
            return Final.failure(str(e), error_type=type(e).__name__)
        return ContinuationRecord.build(
            token=record.token,
            descriptors=calls,
            state=decision.state,
            handler=decision.handler or record.handler,
            timeout=timeout,
            round=record.round + 1,
        )

    def _chain(self, record: ContinuationRecord, next_record: ContinuationRecord) -> None:
        with self._lock:
            if self._records.get(record.token) is not record or self._closed:
                # Cancelled while the handler ran
                return
            record.record_state = RecordState.RESUMED_RETRY
            self._records[record.token] = next_record
            self._metrics.records_retried += 1
        logger.info(
            "continuation_retry",
            token=record.token,
            round=next_record.round,
            labels=next_record.labels,
        )
        self._arm(next_record)

    def _finalize(self, record: ContinuationRecord, decision: Final) -> None:
        outcomes = record.outcomes()
        if decision.failed:
            result = FinalResult(
                token=record.token,
                status=FinalStatus.FAILED,
                payload=decision.payload,
                error=ErrorDetail(
                    error_type=decision.error_type,
                    message=decision.message or "Request failed",
                    status_code=decision.status_code,
                ),
                rounds=record.round,
                outcomes=outcomes,
            )
        else:
            result = FinalResult(
                token=record.token,
                status=FinalStatus.COMPLETED,
                payload=decision.payload,
                rounds=record.round,
                outcomes=outcomes,
            )

        with self._lock:
            if self._records.get(record.token) is not record:
                return
            del self._records[record.token]
            record.record_state = (
                RecordState.TIMED_OUT if record.any_timed_out() else RecordState.RESUMED_FINAL
            )
            if result.ok:
                self._metrics.records_completed += 1
            else:
                self._metrics.records_failed += 1
            self._settle_waiter(record.token, result)

        logger.info(
            "continuation_finished",
            token=record.token,
            status=result.status.value,
            rounds=result.rounds,
            state=record.record_state.value,
        )

    def _settle_waiter(self, token: str, result: FinalResult) -> None:
        """Publish a final result; caller holds the lock."""
        self._finished[token] = result
        while len(self._finished) > self._config.retain_results:
            evicted, _ = self._finished.popitem(last=False)
            self._waiters.pop(evicted, None)
        waiter = self._waiters.pop(token, None)
        if waiter is not None and not waiter.done():
            loop = waiter.get_loop()
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                waiter.set_result(result)
            else:
                loop.call_soon_threadsafe(_set_if_pending, waiter, result)

    # ------------------------------------------------------------------
    # Caller-facing API
    # ------------------------------------------------------------------

    async def result(self, token: str, timeout: Optional[float] = None) -> FinalResult:
        """Wait for the final result of a token's retry chain.

        Raises:
            UnknownTokenError: If the token is unknown or its result was evicted
            asyncio.TimeoutError: If timeout elapses first (the record keeps running)
        """
        with self._lock:
            finished = self._finished.get(token)
            waiter = self._waiters.get(token)
        if finished is not None:
            return finished
        if waiter is None:
            raise UnknownTokenError(token)
        return await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)

    def cancel(self, token: str, reason: str = "Cancelled by caller") -> bool:
        """Cancel a pending token.

        No resume handler runs for the token afterwards, including the
        result of a handler that is already running. Returns False if the
        token has already finished.

        Raises:
            UnknownTokenError: If the token was never issued by this broker
        """
        with self._lock:
            record = self._records.pop(token, None)
            if record is None:
                if token in self._finished:
                    return False
                raise UnknownTokenError(token)
            record.record_state = RecordState.CANCELLED
            self._metrics.records_cancelled += 1
            self._settle_waiter(
                token,
                FinalResult(
                    token=token,
                    status=FinalStatus.CANCELLED,
                    error=ErrorDetail(error_type="Cancelled", message=reason),
                    rounds=record.round,
                    outcomes=record.outcomes(),
                ),
            )

        self._release_on_loop(record)
        logger.info("continuation_cancelled", token=token, round=record.round, reason=reason)
        return True

    def _release_on_loop(self, record: ContinuationRecord) -> None:
        loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if loop is None or running is loop:
            self._release_tasks(record, skip=asyncio.current_task() if running else None)
        elif not loop.is_closed():
            loop.call_soon_threadsafe(self._release_tasks, record)

    async def close(self) -> None:
        """Cancel every pending token and stop accepting registrations."""
        if self._closed:
            return
        self._closed = True
        for token in self.pending_tokens():
            try:
                self.cancel(token, reason="Broker closed")
            except UnknownTokenError:
                pass

        tasks = list(self._resume_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("broker_closed", metrics=self._metrics.__dict__)


def _set_if_pending(waiter: asyncio.Future[FinalResult], result: FinalResult) -> None:
    if not waiter.done():
        waiter.set_result(result)
