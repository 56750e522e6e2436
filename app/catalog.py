"""
Payable target catalog.

A payment is always made *for* something: a reservation, an invoice, a
membership. The payments core does not know those tables. It only knows the
catalog, a registry mapping a target type name to:

  - the ORM model holding the record
  - the capture mode transactions for it use (immediate or deferred)
  - the columns for the current transaction id and the payment status
  - how transaction statuses map onto the record's payment status values

All record access goes through the model's mapped attributes, so an entry
cannot be used to inject SQL and an unregistered target type is simply
rejected with UnknownTargetError.

Usage:
    catalog = build_default_catalog()
    target = catalog.get("reservation")
    record = await target.load(db, reservation_id, lock=True)
"""

import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import UnknownTargetError
from app.models.invoice import Invoice
from app.models.reservation import Reservation
from app.models.transaction import CaptureMode, TransactionStatus


DEFAULT_STATUS_MAP: Mapping[str, str] = MappingProxyType({
    TransactionStatus.PENDING_INTENT: "pending",
    TransactionStatus.PENDING: "pending",
    TransactionStatus.SUCCEEDED: "paid",
    TransactionStatus.FAILED: "failed",
    TransactionStatus.CANCELED: "canceled",
    TransactionStatus.PARTIALLY_REFUNDED: "partially_refunded",
    TransactionStatus.REFUNDED: "refunded",
    TransactionStatus.REFUND_PENDING: "paid",
})


@dataclass(frozen=True)
class PayableTarget:
    """One catalog entry. Record ids are parsed with parse_id (UUID by default)."""

    name: str
    model: type
    capture_mode: str = CaptureMode.IMMEDIATE
    transaction_column: str = "payment_transaction_id"
    status_column: str = "payment_status"
    status_map: Mapping[str, str] = field(default_factory=lambda: DEFAULT_STATUS_MAP)
    parse_id: Callable[[str], Any] = uuid.UUID

    def __post_init__(self):
        if self.capture_mode not in CaptureMode.ALL:
            raise ValueError(f"Unknown capture mode '{self.capture_mode}' for target {self.name}")
        for column in (self.transaction_column, self.status_column):
            if not hasattr(self.model, column):
                raise ValueError(f"{self.model.__name__} has no column '{column}'")

    @property
    def _pk(self):
        return self.model.id

    @property
    def _transaction_attr(self):
        return getattr(self.model, self.transaction_column)

    @property
    def _status_attr(self):
        return getattr(self.model, self.status_column)

    def domain_status(self, effective_status: str) -> str:
        return self.status_map.get(effective_status, effective_status)

    def coerce_id(self, entity_id: str) -> Any | None:
        try:
            return self.parse_id(str(entity_id))
        except (TypeError, ValueError):
            return None

    async def load(self, db: AsyncSession, entity_id: str, *, lock: bool = False):
        """Fetch the record, optionally with a row lock (FOR UPDATE). None if missing."""
        pk = self.coerce_id(entity_id)
        if pk is None:
            return None
        stmt = select(self.model).where(self._pk == pk)
        if lock:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    def current_transaction_id(self, record) -> uuid.UUID | None:
        return getattr(record, self.transaction_column)

    async def link_transaction(
        self,
        db: AsyncSession,
        entity_id: str,
        expected_transaction_id: uuid.UUID | None,
        new_transaction_id: uuid.UUID,
        payment_status: str,
    ) -> bool:
        """
        Repoint the record at a new transaction.

        Compare-and-swap on the current reference: returns False (and changes
        nothing) when another request repointed the record first.
        """
        current = self._transaction_attr
        guard = current.is_(None) if expected_transaction_id is None else current == expected_transaction_id
        result = await db.execute(
            update(self.model)
            .where(self._pk == self.coerce_id(entity_id), guard)
            .values({self.transaction_column: new_transaction_id, self.status_column: payment_status})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_payment_status(
        self,
        db: AsyncSession,
        entity_id: str,
        transaction_id: uuid.UUID,
        payment_status: str,
    ) -> bool:
        """Write the payment status only if the record still points at transaction_id."""
        result = await db.execute(
            update(self.model)
            .where(self._pk == self.coerce_id(entity_id), self._transaction_attr == transaction_id)
            .values({self.status_column: payment_status})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class TargetCatalog:
    """Registry of payable target types."""

    def __init__(self):
        self._targets: dict[str, PayableTarget] = {}

    def register(self, target: PayableTarget) -> PayableTarget:
        if target.name in self._targets:
            raise ValueError(f"Target type '{target.name}' is already registered")
        self._targets[target.name] = target
        return target

    def get(self, name: str) -> PayableTarget:
        try:
            return self._targets[name]
        except KeyError:
            raise UnknownTargetError(name) from None

    def __contains__(self, name: str) -> bool:
        return name in self._targets

    def names(self) -> list[str]:
        return sorted(self._targets)


def build_default_catalog() -> TargetCatalog:
    """The targets this deployment can take payments for."""
    catalog = TargetCatalog()
    catalog.register(PayableTarget(
        name="reservation",
        model=Reservation,
        capture_mode=CaptureMode.DEFERRED,
    ))
    catalog.register(PayableTarget(
        name="invoice",
        model=Invoice,
        capture_mode=CaptureMode.IMMEDIATE,
    ))
    return catalog
