"""Post-call notification dispatch.

A finished call is reported downstream in two independent parts: the
outcome fields go to the customer record store, and an event goes to the
workflow endpoint.  Each part retries transient failures with exponential
backoff and gives up at once on permanent ones.  Both writes are keyed by
call id, so dispatching the same session twice is safe.

Dispatch runs on a small worker pool fed by a bounded queue.  When the
queue is full the oldest waiting job is shed with a warning instead of
blocking the webhook that finished the call.
"""

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable

from salescall.errors import ProviderError
from salescall.post_call import (
    build_outcome_payload,
    build_record_fields,
    event_for,
    log_transcript_dump,
)
from salescall.record_store import RecordStore
from salescall.session import CallSession
from salescall.workflow import WorkflowClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 1.0
    factor: float = 2.0
    max_attempts: int = 5

    def delay(self, attempt: int) -> float:
        """Wait before retry number ``attempt`` (1-based)."""
        return self.base_delay * (self.factor ** (attempt - 1))


async def with_retry(
    label: str,
    fn: Callable[[], Awaitable],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
):
    """Run ``fn`` until it succeeds, a permanent error occurs, or attempts run out.

    The last ProviderError is re-raised.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await fn()
        except ProviderError as e:
            if not e.retryable:
                logger.error("%s failed permanently: %s", label, e)
                raise
            if attempt == policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, e)
                raise
            delay = policy.delay(attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt, policy.max_attempts, delay, e,
            )
            await sleep(delay)


@dataclass
class DispatchResult:
    call_id: str
    outcome: str
    record_ok: bool = False
    record_applied: bool = False
    workflow_ok: bool = False
    record_error: str = ""
    workflow_error: str = ""

    @property
    def ok(self) -> bool:
        return self.record_ok and self.workflow_ok


class NotificationDispatcher:
    def __init__(
        self,
        record_store: RecordStore,
        workflow: WorkflowClient,
        policy: RetryPolicy | None = None,
        workers: int = 4,
        queue_size: int = 100,
        on_complete: Callable[[CallSession, DispatchResult], None] | None = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        self.record_store = record_store
        self.workflow = workflow
        self.policy = policy or RetryPolicy()
        self.workers = workers
        self.queue_size = queue_size
        self.on_complete = on_complete
        self._sleep = sleep

        self._queue: deque[CallSession] = deque()
        self._cond = asyncio.Condition()
        self._in_flight = 0
        self._tasks: list[asyncio.Task] = []
        self.shed_count = 0

    # ── dispatch ──

    async def dispatch(self, session: CallSession) -> DispatchResult:
        payload = build_outcome_payload(session)
        result = DispatchResult(call_id=session.call_id, outcome=payload["outcome"])

        await asyncio.gather(
            self._write_record(session, payload, result),
            self._notify_workflow(session, payload, result),
        )
        log_transcript_dump(session, result.outcome)
        logger.info(
            "Dispatch complete for %s: outcome=%s record=%s workflow=%s",
            session.call_id, result.outcome,
            "ok" if result.record_ok else "failed",
            "ok" if result.workflow_ok else "failed",
        )
        return result

    async def _write_record(self, session: CallSession, payload: dict, result: DispatchResult) -> None:
        ref = payload["customer_ref"]
        fields = build_record_fields(payload)
        try:
            result.record_applied = await with_retry(
                f"Record update {session.call_id}",
                lambda: self.record_store.update_outcome(ref, session.call_id, fields),
                self.policy,
                self._sleep,
            )
            result.record_ok = True
        except ProviderError as e:
            result.record_error = str(e)
            await self._report_record_failure(session, payload, e)

    async def _report_record_failure(self, session: CallSession, payload: dict, error: ProviderError) -> None:
        data = {
            "customer_ref": payload["customer_ref"],
            "phone_number": payload["phone_number"],
            "outcome": payload["outcome"],
            "fields": build_record_fields(payload),
            "error": str(error),
        }
        try:
            await with_retry(
                f"record_update_failed event {session.call_id}",
                lambda: self.workflow.send_event("record_update_failed", session.call_id, data),
                self.policy,
                self._sleep,
            )
        except ProviderError as e:
            self._log_failure(session.call_id, "record_update_failed", e, data)

    async def _notify_workflow(self, session: CallSession, payload: dict, result: DispatchResult) -> None:
        event = event_for(payload["outcome"])
        try:
            await with_retry(
                f"Workflow {event} {session.call_id}",
                lambda: self.workflow.send_event(event, session.call_id, payload),
                self.policy,
                self._sleep,
            )
            result.workflow_ok = True
        except ProviderError as e:
            result.workflow_error = str(e)
            self._log_failure(session.call_id, event, e, payload)

    @staticmethod
    def _log_failure(call_id: str, event: str, error: Exception, data: dict) -> None:
        """One greppable line holding everything needed to replay the event by hand."""
        body = json.dumps({"call_id": call_id, "event": event, "error": str(error), "data": data}, default=str)
        logger.error("DISPATCH_FAILED|%s", body)

    # ── worker pool ──

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def schedule(self, session: CallSession) -> None:
        async with self._cond:
            if len(self._queue) >= self.queue_size:
                dropped = self._queue.popleft()
                self.shed_count += 1
                logger.warning(
                    "Dispatch queue full (%d), shedding oldest job %s", self.queue_size, dropped.call_id
                )
                self._log_failure(dropped.call_id, "shed", RuntimeError("dispatch queue overflow"), {})
            self._queue.append(session)
            # join() waits on this condition too.
            self._cond.notify_all()

    async def _worker(self, n: int) -> None:
        while True:
            async with self._cond:
                while not self._queue:
                    await self._cond.wait()
                session = self._queue.popleft()
                self._in_flight += 1
            try:
                result = await self.dispatch(session)
                if self.on_complete is not None:
                    self.on_complete(session, result)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Dispatch worker %d failed on %s", n, session.call_id)
            finally:
                async with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        logger.info("Dispatcher started with %d workers", self.workers)

    async def join(self) -> None:
        """Wait until every queued job has been dispatched."""
        async with self._cond:
            await self._cond.wait_for(lambda: not self._queue and self._in_flight == 0)

    async def stop(self, timeout: float = 10.0) -> None:
        if not self._tasks:
            return
        try:
            await asyncio.wait_for(self.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Dispatcher stopped with %d job(s) still queued", len(self._queue))
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
