"""
Caller-side helpers around the gate: one-shot delivery and an optional
priority queue for asynchronous delivery of approved messages.

The transport is any coroutine function ``transport(recipient_id, content)``
that raises on failure; its return value is ignored.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pydantic import BaseModel

from sendguard.gate import KeyTuple, SafetyGate
from sendguard.metrics import record_delivery_outcome
from sendguard.recorder import Recorder
from sendguard.schemas import Decision, ReasonCode, RecordResult
from sendguard.storage import get_successful_record, session_scope
from sendguard.utils import content_hash

logger = logging.getLogger(__name__)

Transport = Callable[[str, str], Awaitable[Any]]

PRIORITIES = {"high": 0, "normal": 1}


class DeliveryReport(BaseModel):
    decision: Decision
    sent: bool = False
    attempts: int = 0
    error: Optional[str] = None
    record: Optional[RecordResult] = None


class QueueFullError(RuntimeError):
    pass


async def deliver(
    gate: SafetyGate,
    recorder: Recorder,
    transport: Transport,
    recipient_id: str,
    order_id: str,
    message_type: str,
    content: str,
    order_data: Optional[Mapping[str, Any]] = None,
    source_data: Optional[Mapping[str, Any]] = None,
) -> DeliveryReport:
    """
    Evaluate, send only when approved, then record the attempt.

    The key lock is held across all three steps, so two triggers for the
    same key in this process cannot both reach the transport.
    """
    async with gate.key_lock(recipient_id, order_id, message_type):
        decision = await gate.evaluate(
            recipient_id, order_id, message_type, content, order_data, source_data, serialize=False
        )
        if not decision.allowed:
            return DeliveryReport(decision=decision)

        error = None
        try:
            await transport(recipient_id, content)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Delivery failed for {recipient_id}/{order_id}/{message_type}: {error}")

        record = await asyncio.to_thread(
            recorder.record_outcome,
            recipient_id, order_id, message_type, content, error is None, error,
        )
        return DeliveryReport(decision=decision, sent=error is None, attempts=1, error=error, record=record)


@dataclass(order=True)
class DeliveryJob:
    priority: int
    sequence: int
    recipient_id: str = field(compare=False)
    order_id: str = field(compare=False)
    message_type: str = field(compare=False)
    content: str = field(compare=False)
    decision_id: str = field(compare=False)
    attempts: int = field(default=0, compare=False)
    last_error: Optional[str] = field(default=None, compare=False)


class DeliveryQueue:
    """
    Priority queue for approved messages.

    High priority jobs run before normal ones, FIFO within a priority.
    At most one job per (recipient, order, type) is pending; a second
    enqueue for the key returns the pending job.

    Each job runs under the gate's key lock. Before every transport call,
    retries included, the kill switch and the ledger are read again: an
    active kill switch dead-letters the job without a ledger row, and a
    key already sent is skipped as a duplicate. Failed transport calls are
    retried after a fixed delay; after max_attempts the job is
    dead-lettered. The Recorder is called at most once per job with the
    final state.
    """

    def __init__(
        self,
        gate: SafetyGate,
        recorder: Recorder,
        transport: Transport,
        max_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        max_size: int = 1000,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.gate = gate
        self.recorder = recorder
        self.transport = transport
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self.max_size = max_size
        self._queue: "asyncio.PriorityQueue[DeliveryJob]" = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._pending: Dict[KeyTuple, DeliveryJob] = {}
        self.dead_letters: List[DeliveryJob] = []
        self.stats: Dict[str, int] = {
            "processed": 0,
            "failed": 0,
            "retried": 0,
            "dead_lettered": 0,
            "halted": 0,
            "skipped_duplicate": 0,
            "collapsed": 0,
        }

    def __len__(self) -> int:
        return self._queue.qsize()

    def enqueue(
        self,
        decision: Decision,
        recipient_id: str,
        order_id: str,
        message_type: str,
        content: str,
        priority: str = "normal",
    ) -> DeliveryJob:
        if not decision.allowed:
            raise ValueError(f"Cannot enqueue a rejected decision ({decision.reason_code.value})")
        if priority not in PRIORITIES:
            raise ValueError(f"Unknown priority: {priority}")

        key = (recipient_id, order_id, message_type)
        pending = self._pending.get(key)
        if pending is not None:
            self.stats["collapsed"] += 1
            logger.info(f"{message_type} for {recipient_id}/{order_id} already queued, keeping job {pending.decision_id}")
            return pending

        if self._queue.qsize() >= self.max_size:
            raise QueueFullError(f"Delivery queue is full ({self.max_size} jobs)")

        job = DeliveryJob(
            priority=PRIORITIES[priority],
            sequence=next(self._sequence),
            recipient_id=recipient_id,
            order_id=order_id,
            message_type=message_type,
            content=content,
            decision_id=decision.decision_id,
        )
        self._pending[key] = job
        self._queue.put_nowait(job)
        logger.debug(f"Enqueued {message_type} for {recipient_id}/{order_id} ({priority})")
        return job

    def _preflight(self, job: DeliveryJob) -> Optional[ReasonCode]:
        """Reason the job must not reach the transport now, if any."""
        if self.gate.startup.kill_switch_active():
            return ReasonCode.KILL_SWITCH_ACTIVE
        with session_scope(self.gate.session_factory) as db:
            if get_successful_record(db, job.recipient_id, job.order_id, job.message_type) is not None:
                return ReasonCode.LEDGER_DUPLICATE
        return None

    async def process_next(self) -> Optional[RecordResult]:
        """Deliver one job through its full retry budget. Returns None when empty."""
        try:
            job = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

        key = (job.recipient_id, job.order_id, job.message_type)
        try:
            async with self.gate.key_lock(*key):
                return await self._run_job(job)
        finally:
            self._pending.pop(key, None)
            self._queue.task_done()

    async def _run_job(self, job: DeliveryJob) -> RecordResult:
        succeeded = False
        while job.attempts < self.max_attempts:
            blocked = await asyncio.to_thread(self._preflight, job)
            if blocked == ReasonCode.KILL_SWITCH_ACTIVE:
                transport_error = job.last_error
                job.last_error = blocked.value
                self.dead_letters.append(job)
                self.stats["halted"] += 1
                self.stats["dead_lettered"] += 1
                record_delivery_outcome("dead_lettered")
                logger.warning(f"Kill switch active, dropping {job.recipient_id}/{job.order_id}/{job.message_type}")
                if job.attempts == 0:
                    return RecordResult(recorded=False, reason_code=blocked, content_hash=content_hash(job.content))
                # Earlier failed attempts are still recorded
                self.stats["processed"] += 1
                record = await asyncio.to_thread(
                    self.recorder.record_outcome,
                    job.recipient_id, job.order_id, job.message_type, job.content, False, transport_error,
                )
                return record.model_copy(update={"reason_code": blocked})
            if blocked == ReasonCode.LEDGER_DUPLICATE:
                self.stats["skipped_duplicate"] += 1
                record_delivery_outcome("duplicate")
                logger.warning(f"{job.recipient_id}/{job.order_id}/{job.message_type} already sent, skipping job")
                if job.attempts == 0:
                    return RecordResult(
                        recorded=False, duplicate=True, reason_code=blocked, content_hash=content_hash(job.content)
                    )
                self.stats["processed"] += 1
                record = await asyncio.to_thread(
                    self.recorder.record_outcome,
                    job.recipient_id, job.order_id, job.message_type, job.content, False, job.last_error,
                )
                return record.model_copy(update={"duplicate": True, "reason_code": blocked})

            job.attempts += 1
            try:
                await self.transport(job.recipient_id, job.content)
                succeeded = True
                break
            except Exception as e:
                job.last_error = str(e) or e.__class__.__name__
                self.stats["failed"] += 1
                logger.warning(
                    f"Attempt {job.attempts}/{self.max_attempts} failed for "
                    f"{job.recipient_id}/{job.order_id}/{job.message_type}: {job.last_error}"
                )
                if job.attempts < self.max_attempts:
                    self.stats["retried"] += 1
                    await asyncio.sleep(self.retry_delay_seconds)

        if not succeeded:
            self.dead_letters.append(job)
            self.stats["dead_lettered"] += 1
            record_delivery_outcome("dead_lettered")

        self.stats["processed"] += 1
        return await asyncio.to_thread(
            self.recorder.record_outcome,
            job.recipient_id,
            job.order_id,
            job.message_type,
            job.content,
            succeeded,
            None if succeeded else job.last_error,
        )

    async def drain(self) -> List[RecordResult]:
        results = []
        while True:
            result = await self.process_next()
            if result is None:
                return results
            results.append(result)
