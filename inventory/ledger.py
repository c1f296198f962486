"""Append-only stock ledger with a per-key materialized snapshot.

``record_movement`` is the single code path allowed to change
``BranchStock.current_quantity``. The read-check-write for one
(branch, raw item) key runs under the process-local key lock and a
``SELECT ... FOR UPDATE`` on the snapshot row, inside one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django.db.models import Sum

from inventory.exceptions import (
    IdempotencyKeyConflict,
    InsufficientStock,
    InvalidMovementType,
    NoStockRecord,
    StorageUnavailable,
)
from inventory.locks import stock_lock
from inventory.models import BranchStock, StockMovement
from inventory.units import quantize, to_quantity

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerEntry:
    stock: BranchStock
    movement: StockMovement
    replayed: bool = False


@dataclass(frozen=True)
class Reconciliation:
    branch_id: str
    raw_item_id: str
    ledger_quantity: Decimal
    snapshot_quantity: Decimal | None
    repaired: bool = False

    @property
    def drift(self) -> Decimal:
        return (self.snapshot_quantity or ZERO) - self.ledger_quantity

    @property
    def consistent(self) -> bool:
        return self.drift == ZERO


def find_by_idempotency_key(branch_id, idempotency_key):
    if not idempotency_key:
        return None
    return StockMovement.objects.filter(branch_id=branch_id, idempotency_key=idempotency_key).first()


def _locked_snapshot(branch_id, raw_item_id, create: bool):
    queryset = BranchStock.objects.select_for_update().filter(branch_id=branch_id, raw_item_id=raw_item_id)
    stock = queryset.first()
    if stock is None and create:
        BranchStock.objects.get_or_create(branch_id=branch_id, raw_item_id=raw_item_id)
        stock = queryset.first()
    return stock


def _replay(existing, branch_id, raw_item_id, idempotency_key):
    if str(existing.raw_item_id) != str(raw_item_id):
        raise IdempotencyKeyConflict(idempotency_key)
    stock = BranchStock.objects.get(branch_id=branch_id, raw_item_id=raw_item_id)
    return LedgerEntry(stock=stock, movement=existing, replayed=True)


def _apply(branch_id, raw_item_id, delta, movement_type, *, reference_type, reference_id, notes, actor, idempotency_key, unit):
    stock = _locked_snapshot(branch_id, raw_item_id, create=False)

    existing = find_by_idempotency_key(branch_id, idempotency_key)
    if existing is not None:
        return _replay(existing, branch_id, raw_item_id, idempotency_key)

    if stock is None and delta > 0:
        stock = _locked_snapshot(branch_id, raw_item_id, create=True)
    if stock is None:
        raise NoStockRecord(branch_id, raw_item_id)

    previous_quantity = stock.current_quantity
    new_quantity = quantize(previous_quantity + delta)
    if new_quantity < 0:
        raise InsufficientStock(previous_quantity, -delta, unit)

    stock.current_quantity = new_quantity
    stock.save(update_fields=["current_quantity", "last_updated"])

    movement = StockMovement.objects.create(
        branch_id=branch_id,
        raw_item_id=raw_item_id,
        movement_type=movement_type,
        quantity_delta=delta,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        idempotency_key=idempotency_key,
        notes=notes or "",
        created_by=actor,
    )
    return LedgerEntry(stock=stock, movement=movement)


def record_movement(
    branch_id,
    raw_item_id,
    delta,
    movement_type,
    *,
    reference_type=None,
    reference_id=None,
    notes="",
    actor=None,
    idempotency_key=None,
    unit="",
    deadline=None,
    on_commit=None,
):
    """Apply one signed movement (in storage units) to a stock key.

    Returns a ``LedgerEntry``. When ``idempotency_key`` was already used on
    this branch, the original movement is returned with ``replayed=True``
    and nothing is written. ``on_commit`` runs after the transaction
    commits, while the key lock is still held.
    """
    if movement_type not in StockMovement.MovementType.values:
        raise InvalidMovementType(movement_type, StockMovement.MovementType.values)

    delta = to_quantity(delta)
    actor = actor if getattr(actor, "is_authenticated", False) else None

    with stock_lock(branch_id, raw_item_id, deadline=deadline) as waited:
        try:
            with transaction.atomic():
                entry = _apply(
                    branch_id,
                    raw_item_id,
                    delta,
                    movement_type,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    notes=notes,
                    actor=actor,
                    idempotency_key=idempotency_key,
                    unit=unit,
                )
        except IntegrityError:
            # Another writer committed the same idempotency key between our lookup and insert.
            existing = find_by_idempotency_key(branch_id, idempotency_key)
            if existing is None:
                raise
            entry = _replay(existing, branch_id, raw_item_id, idempotency_key)
        except (OperationalError, InterfaceError) as exc:
            logger.exception(
                "stock_ledger_storage_error",
                extra={"branch_id": str(branch_id), "raw_item_id": str(raw_item_id)},
            )
            raise StorageUnavailable(str(exc)) from exc

        logger.info(
            "stock_movement_replayed" if entry.replayed else "stock_movement_recorded",
            extra={
                "branch_id": str(branch_id),
                "raw_item_id": str(raw_item_id),
                "movement_type": movement_type,
                "quantity_delta": str(entry.movement.quantity_delta),
                "new_quantity": str(entry.movement.new_quantity),
                "lock_wait_ms": round(waited * 1000, 2),
            },
        )

        if on_commit is not None and not entry.replayed:
            on_commit(entry)

    return entry


def movement_history(branch_id, raw_item_id=None, limit=100):
    queryset = StockMovement.objects.filter(branch_id=branch_id).select_related("raw_item", "created_by")
    if raw_item_id:
        queryset = queryset.filter(raw_item_id=raw_item_id)
    return list(queryset.order_by("-created_at", "-id")[: max(int(limit), 0)])


def replay_quantity(branch_id, raw_item_id) -> Decimal:
    total = StockMovement.objects.filter(branch_id=branch_id, raw_item_id=raw_item_id).aggregate(
        total=Sum("quantity_delta")
    )["total"]
    return quantize(total or ZERO)


def rebuild_snapshot(branch_id, raw_item_id, *, apply=False, deadline=None) -> Reconciliation:
    """Compare the snapshot with the ledger sum and optionally repair it."""
    with stock_lock(branch_id, raw_item_id, deadline=deadline):
        try:
            with transaction.atomic():
                stock = _locked_snapshot(branch_id, raw_item_id, create=False)
                ledger_quantity = replay_quantity(branch_id, raw_item_id)
                snapshot_quantity = stock.current_quantity if stock else None
                result = Reconciliation(str(branch_id), str(raw_item_id), ledger_quantity, snapshot_quantity)
                if apply and stock is not None and not result.consistent:
                    stock.current_quantity = ledger_quantity
                    stock.save(update_fields=["current_quantity", "last_updated"])
                    result = Reconciliation(
                        str(branch_id), str(raw_item_id), ledger_quantity, snapshot_quantity, repaired=True
                    )
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailable(str(exc)) from exc

    if not result.consistent:
        logger.warning(
            "stock_snapshot_drift",
            extra={
                "branch_id": result.branch_id,
                "raw_item_id": result.raw_item_id,
                "ledger_quantity": str(result.ledger_quantity),
                "snapshot_quantity": str(result.snapshot_quantity),
                "repaired": result.repaired,
            },
        )
    return result
