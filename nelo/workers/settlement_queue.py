"""
Settlement Queue & Worker
Durable jobs that monitor ledger operations to a terminal state.

Each job runs in a bounded worker pool. Transient failures are retried with
exponential backoff up to the attempt limit, then dead-lettered. Reverted
transactions and monitoring timeouts are terminal. Terminal transitions go
through a compare-and-set on the store, so exactly one notification is sent
per operation even if a job is processed twice.
"""

import asyncio
import secrets
from datetime import timedelta
from typing import List, Optional, Set
import httpx
from nelo.agents.response_builder import ResponseBuilder
from nelo.schemas.core import (
    PendingOperation, SettlementJob, JobStatus, OperationState, OperationKind,
    NotificationJob, NotificationKind, VirtualCard, TERMINAL_STATES, utcnow,
)
from nelo.services.custody_service import TxStatus
from nelo.utils.config import settings
from nelo.utils.exceptions import ExternalCapabilityError, SettlementTimeout
from nelo.utils.logger import get_logger

logger = get_logger("settlement_queue")


def is_transient(error: Exception) -> bool:
    if isinstance(error, ExternalCapabilityError):
        return error.transient
    return isinstance(error, httpx.TransportError)


class SettlementQueue:
    """Owns PendingOperations after the command engine hands them off."""

    def __init__(self, store, gateway, dispatcher,
                 max_attempts: Optional[int] = None,
                 backoff_seconds: Optional[float] = None,
                 concurrency: Optional[int] = None,
                 monitor_timeout: Optional[float] = None,
                 poll_interval: Optional[float] = None,
                 fee_collector: Optional[str] = None):
        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.max_attempts = max_attempts or settings.settlement_max_attempts
        self.backoff_seconds = settings.settlement_backoff_seconds if backoff_seconds is None else backoff_seconds
        self.concurrency = concurrency or settings.settlement_concurrency
        self.monitor_timeout = monitor_timeout or settings.monitor_timeout_seconds
        self.poll_interval = settings.monitor_poll_seconds if poll_interval is None else poll_interval
        self.fee_collector = settings.fee_collector_address if fee_collector is None else fee_collector
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()

    async def enqueue(self, operation: PendingOperation) -> str:
        """Persist the operation and its job, then schedule it. Returns the operation id."""
        operation.state = OperationState.QUEUED
        await self.store.save_operation(operation)
        await self.store.save_job(SettlementJob(operation_id=operation.operation_id))
        self._schedule(operation.operation_id, 0)
        logger.info(f"📥 Enqueued {operation.kind.value} {operation.operation_id} for {operation.user_id}")
        return operation.operation_id

    def _schedule(self, operation_id: str, delay: float) -> None:
        if delay <= 0:
            self._queue.put_nowait(operation_id)
            return
        task = asyncio.create_task(self._enqueue_later(operation_id, delay))
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    async def _enqueue_later(self, operation_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue.put_nowait(operation_id)

    async def recover(self) -> int:
        """Re-schedule unfinished jobs left over from a previous process."""
        jobs = await self.store.list_pending_jobs()
        now = utcnow()
        for job in jobs:
            delay = max(0.0, (job.next_run_at - now).total_seconds())
            self._schedule(job.operation_id, delay)
        if jobs:
            logger.info(f"♻️  Recovered {len(jobs)} settlement jobs")
        return len(jobs)

    async def start(self) -> None:
        await self.recover()
        for index in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker(index)))
        logger.info(f"✅ Settlement queue started with {self.concurrency} workers")

    async def stop(self) -> None:
        tasks = [*self._workers, *self._timers]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers.clear()
        self._timers.clear()

    async def join(self) -> None:
        """Wait until the queue is empty and no retry is pending."""
        while True:
            await self._queue.join()
            if not self._timers:
                return
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def _worker(self, index: int) -> None:
        while True:
            operation_id = await self._queue.get()
            try:
                await self.process(operation_id)
            except Exception as e:
                logger.bind(operation_id=operation_id, worker=index).exception(f"Settlement worker error: {e}")
            finally:
                self._queue.task_done()

    async def process(self, operation_id: str) -> None:
        """Run one attempt of a job."""
        log = logger.bind(operation_id=operation_id)

        job = await self.store.get_job(operation_id)
        if job is None or job.status != JobStatus.PENDING:
            log.debug("Job already finished, skipping")
            return

        operation = await self.store.get_operation(operation_id)
        if operation is None:
            log.error("Job has no operation, dead-lettering")
            await self.store.update_job(operation_id, {"status": JobStatus.DEAD, "last_error": "missing operation"})
            return

        if operation.state in TERMINAL_STATES:
            await self.store.update_job(operation_id, {"status": JobStatus.DONE})
            return

        attempt = job.attempts + 1
        await self.store.update_job(operation_id, {"attempts": attempt})
        operation = await self.store.transition_operation(
            operation_id,
            {OperationState.QUEUED, OperationState.MONITORING},
            {"state": OperationState.MONITORING, "attempt_count": attempt},
        )
        if operation is None:
            await self.store.update_job(operation_id, {"status": JobStatus.DONE})
            return

        log.info(f"🔍 Monitoring {operation.kind.value} tx {operation.tx_hash} (attempt {attempt}/{self.max_attempts})")

        try:
            status = await asyncio.wait_for(self._monitor(operation), timeout=self.monitor_timeout)
        except asyncio.TimeoutError:
            timeout_error = SettlementTimeout(operation_id, self.monitor_timeout)
            log.warning(str(timeout_error))
            await self._finish(operation, OperationState.FAILED, "timeout")
            await self.store.update_job(operation_id, {"status": JobStatus.DONE, "last_error": str(timeout_error)})
            return
        except Exception as e:
            if is_transient(e) and attempt < self.max_attempts:
                delay = self.backoff_seconds * 2 ** (attempt - 1)
                log.warning(f"Transient settlement error, retrying in {delay}s: {e}")
                await self.store.update_job(operation_id, {
                    "next_run_at": utcnow() + timedelta(seconds=delay),
                    "last_error": str(e),
                })
                self._schedule(operation_id, delay)
                return

            status_after = JobStatus.DEAD if is_transient(e) else JobStatus.DONE
            log.error(f"Settlement failed after {attempt} attempt(s): {e}")
            await self._finish(operation, OperationState.FAILED, "error")
            await self.store.update_job(operation_id, {"status": status_after, "last_error": str(e)})
            return

        if status == TxStatus.CONFIRMED:
            await self._apply_effects(operation)
            await self._finish(operation, OperationState.COMPLETED)
        else:
            log.warning(f"Transaction {operation.tx_hash} reverted")
            await self._finish(operation, OperationState.FAILED, "reverted")
        await self.store.update_job(operation_id, {"status": JobStatus.DONE})

    async def _monitor(self, operation: PendingOperation) -> TxStatus:
        if not operation.tx_hash:
            raise ExternalCapabilityError(f"Operation {operation.operation_id} has no transaction id")
        while True:
            status = await self.gateway.transaction_status(operation.tx_hash)
            if status != TxStatus.PENDING:
                return status
            await asyncio.sleep(self.poll_interval)

    async def _apply_effects(self, operation: PendingOperation) -> None:
        """Kind-specific follow-ups; each is guarded so re-runs are no-ops."""
        if operation.kind == OperationKind.CARD_CREATE:
            card = VirtualCard(
                last4=f"{secrets.randbelow(10_000):04d}",
                balance=operation.amount,
                token=operation.token,
                operation_id=operation.operation_id,
            )
            if await self.store.add_card(operation.user_id, card):
                logger.info(f"💳 Card ****{card.last4} created for {operation.user_id}")

        if operation.kind in (OperationKind.TRANSFER, OperationKind.WITHDRAW):
            await self._collect_fee(operation)

    async def _collect_fee(self, operation: PendingOperation) -> None:
        quote = operation.fee_quote
        signer = operation.metadata.get("signer")
        if not self.fee_collector or quote is None or quote.service_fee <= 0 or not signer:
            return
        if not await self.store.claim_operation_flag(operation.operation_id, "fee_collected"):
            return
        try:
            tx_id = await self.gateway.transfer(
                signer, self.fee_collector, quote.service_fee, quote.token,
                idempotency_key=f"{operation.operation_id}_fee",
            )
            logger.info(f"💼 Collected service fee {quote.service_fee} {quote.token}: {tx_id}")
        except ExternalCapabilityError as e:
            # operation itself succeeded; fee is reconciled out of band
            logger.bind(operation_id=operation.operation_id).error(f"Fee collection failed: {e}")

    async def _finish(self, operation: PendingOperation, state: OperationState, reason: Optional[str] = None) -> bool:
        """Terminal transition; notifies only if this call won the compare-and-set."""
        updated = await self.store.transition_operation(
            operation.operation_id,
            {OperationState.MONITORING},
            {"state": state, "failure_reason": reason},
        )
        if updated is None:
            logger.debug(f"{operation.operation_id} already terminal, no notification")
            return False

        if state == OperationState.COMPLETED:
            message = ResponseBuilder.settlement_success(updated)
            kind = NotificationKind.TRANSACTION_COMPLETE
        else:
            message = ResponseBuilder.settlement_failure(updated, reason or "error")
            kind = NotificationKind.TRANSACTION_FAILED

        self.dispatcher.enqueue(NotificationJob(user_id=updated.user_id, message=message, kind=kind))
        logger.info(f"🏁 {updated.operation_id} -> {state.value}")
        return True
