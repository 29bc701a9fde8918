"""Settlement worker: retries, terminal outcomes and exactly-once notification."""

import pytest

from conftest import USER, WALLET, ALICE
from nelo.schemas.core import (
    PendingOperation, OperationKind, OperationState, JobStatus, NotificationKind, VirtualCard,
)
from nelo.services.custody_service import TxStatus
from nelo.services.fee_service import FeeCalculator
from nelo.utils.exceptions import ExternalCapabilityError
from nelo.workers.settlement_queue import SettlementQueue

CNGN = 10 ** 6
FEE_COLLECTOR = "0x" + "c" * 40


class RecordingDispatcher:
    def __init__(self):
        self.jobs = []

    def enqueue(self, job):
        self.jobs.append(job)


def transient():
    return ExternalCapabilityError("gateway 503", status_code=503, transient=True)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def queue(store, gateway, dispatcher):
    return SettlementQueue(
        store, gateway, dispatcher,
        max_attempts=3, backoff_seconds=0, concurrency=2,
        monitor_timeout=1.0, poll_interval=0, fee_collector=FEE_COLLECTOR,
    )


def transfer_op(fees: FeeCalculator) -> PendingOperation:
    quote = fees.quote(100 * CNGN, OperationKind.TRANSFER)
    return PendingOperation(
        kind=OperationKind.TRANSFER,
        user_id=USER,
        amount=quote.original_amount,
        recipient=ALICE,
        tx_hash="tx_main",
        fee_quote=quote,
        metadata={"signer": WALLET, "recipient_label": "alice.base.eth"},
    )


async def run_to_completion(queue: SettlementQueue, operation: PendingOperation) -> None:
    await queue.start()
    try:
        await queue.enqueue(operation)
        await queue.join()
    finally:
        await queue.stop()


async def test_transient_errors_retry_then_complete_once(queue, store, gateway, dispatcher, fees):
    gateway.statuses = [transient(), transient(), TxStatus.CONFIRMED]
    operation = transfer_op(fees)

    await run_to_completion(queue, operation)

    stored = await store.get_operation(operation.operation_id)
    assert stored.state == OperationState.COMPLETED
    assert stored.attempt_count == 3
    job = await store.get_job(operation.operation_id)
    assert job.status == JobStatus.DONE
    assert [job.kind for job in dispatcher.jobs] == [NotificationKind.TRANSACTION_COMPLETE]
    assert "alice.base.eth" in dispatcher.jobs[0].message
    assert "tx_main" in dispatcher.jobs[0].message


async def test_confirmed_transfer_collects_fee_once(queue, store, gateway, fees):
    gateway.statuses = [TxStatus.CONFIRMED]
    operation = transfer_op(fees)

    await run_to_completion(queue, operation)
    # re-running a finished job is a no-op
    await queue.process(operation.operation_id)

    fee_transfers = gateway.called("transfer")
    assert len(fee_transfers) == 1
    _, signer, recipient, amount, token, key = fee_transfers[0]
    assert (signer, recipient, amount) == (WALLET, FEE_COLLECTOR, operation.fee_quote.service_fee)
    assert key == f"{operation.operation_id}_fee"


async def test_exhausted_retries_dead_letter_and_fail_once(queue, store, gateway, dispatcher, fees):
    gateway.statuses = [transient(), transient(), transient(), TxStatus.CONFIRMED]
    operation = transfer_op(fees)

    await run_to_completion(queue, operation)

    stored = await store.get_operation(operation.operation_id)
    assert stored.state == OperationState.FAILED
    assert stored.failure_reason == "error"
    assert (await store.get_job(operation.operation_id)).status == JobStatus.DEAD
    assert [job.kind for job in dispatcher.jobs] == [NotificationKind.TRANSACTION_FAILED]


async def test_reverted_is_never_retried(queue, store, gateway, dispatcher, fees):
    gateway.statuses = [TxStatus.REVERTED, TxStatus.CONFIRMED]
    operation = transfer_op(fees)

    await run_to_completion(queue, operation)

    stored = await store.get_operation(operation.operation_id)
    assert stored.state == OperationState.FAILED
    assert stored.failure_reason == "reverted"
    assert len(gateway.called("transaction_status")) == 1
    assert len(dispatcher.jobs) == 1
    assert "rejected" in dispatcher.jobs[0].message


async def test_timeout_fails_exactly_once(store, gateway, dispatcher, fees):
    queue = SettlementQueue(
        store, gateway, dispatcher,
        max_attempts=3, backoff_seconds=0, concurrency=1,
        monitor_timeout=0.05, poll_interval=0.01, fee_collector="",
    )
    operation = transfer_op(fees)

    await run_to_completion(queue, operation)
    await queue.process(operation.operation_id)

    stored = await store.get_operation(operation.operation_id)
    assert stored.state == OperationState.FAILED
    assert stored.failure_reason == "timeout"
    assert stored.attempt_count == 1
    assert len(dispatcher.jobs) == 1
    assert "in time" in dispatcher.jobs[0].message
    job = await store.get_job(operation.operation_id)
    assert job.status == JobStatus.DONE
    assert job.last_error == f"Settlement {operation.operation_id} not confirmed within 0.05s"


async def test_card_creation_persists_card_once(queue, store, gateway, dispatcher, fees, ready_user):
    gateway.statuses = [TxStatus.CONFIRMED]
    quote = fees.quote(1000 * CNGN, OperationKind.CARD_CREATE)
    operation = PendingOperation(
        kind=OperationKind.CARD_CREATE, user_id=USER, amount=quote.original_amount,
        tx_hash="tx_card", fee_quote=quote, metadata={"signer": WALLET},
    )

    await run_to_completion(queue, operation)
    # a duplicate effect for the same operation is ignored
    assert await store.add_card(USER, VirtualCard(last4="0000", operation_id=operation.operation_id)) is False

    user = await store.get_user(USER)
    assert len(user.cards) == 1
    assert user.cards[0].balance == 1000 * CNGN
    assert user.cards[0].operation_id == operation.operation_id
    assert dispatcher.jobs[0].kind == NotificationKind.TRANSACTION_COMPLETE


async def test_terminal_transition_is_compare_and_set(queue, store, dispatcher, fees):
    operation = transfer_op(fees)
    operation.state = OperationState.MONITORING
    await store.save_operation(operation)

    first = await queue._finish(operation, OperationState.COMPLETED)
    second = await queue._finish(operation, OperationState.FAILED, "error")

    assert (first, second) == (True, False)
    assert (await store.get_operation(operation.operation_id)).state == OperationState.COMPLETED
    assert len(dispatcher.jobs) == 1


async def test_recover_reschedules_pending_jobs(queue, store, gateway, dispatcher, fees):
    operation = transfer_op(fees)
    await queue.enqueue(operation)
    gateway.statuses = [TxStatus.CONFIRMED]

    # a fresh queue over the same store picks the job up
    restarted = SettlementQueue(
        store, gateway, dispatcher,
        max_attempts=3, backoff_seconds=0, concurrency=1,
        monitor_timeout=1.0, poll_interval=0, fee_collector="",
    )
    await restarted.start()
    try:
        await restarted.join()
    finally:
        await restarted.stop()

    assert (await store.get_operation(operation.operation_id)).state == OperationState.COMPLETED
    assert len(dispatcher.jobs) == 1
