"""
Effective payment status.

The stored Transaction.status never goes past `succeeded`. What clients and
domain records see also reflects refunds, computed on read:

    refunded            sum(succeeded refunds) >= refundable maximum
    partially_refunded  0 < sum(succeeded refunds) < refundable maximum
    refund_pending      no succeeded refunds yet, one in flight
    <stored status>     otherwise
"""

from collections.abc import Iterable
from dataclasses import dataclass

from app.models.refund import Refund, RefundStatus
from app.models.transaction import Transaction, TransactionStatus


@dataclass(frozen=True)
class RefundTotals:
    succeeded_cents: int = 0
    pending_cents: int = 0
    pending_count: int = 0

    @property
    def committed_cents(self) -> int:
        """Refunded or about to be: what a new refund must fit beside."""
        return self.succeeded_cents + self.pending_cents


def refund_totals(refunds: Iterable[Refund]) -> RefundTotals:
    succeeded = pending = pending_count = 0
    for refund in refunds:
        if refund.status == RefundStatus.SUCCEEDED:
            succeeded += refund.amount_cents
        elif refund.status == RefundStatus.PENDING:
            pending += refund.amount_cents
            pending_count += 1
    return RefundTotals(succeeded_cents=succeeded, pending_cents=pending, pending_count=pending_count)


def effective_status(transaction: Transaction, refunds: Iterable[Refund]) -> str:
    if transaction.status != TransactionStatus.SUCCEEDED:
        return transaction.status

    totals = refund_totals(refunds)
    if totals.succeeded_cents > 0:
        if totals.succeeded_cents >= transaction.max_refundable_cents:
            return TransactionStatus.REFUNDED
        return TransactionStatus.PARTIALLY_REFUNDED
    if totals.pending_count:
        return TransactionStatus.REFUND_PENDING
    return transaction.status
