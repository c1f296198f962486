"""Stock engine: movements in caller units, order deductions and stock level reads.

Quantities arrive in any supported unit and are converted to the raw item's
storage unit before they reach the ledger. Alerts are re-derived after each
committed movement.
"""

from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
import logging

from django.core.exceptions import ValidationError as DjangoValidationError

from inventory import alerts, ledger
from inventory.exceptions import IngredientNotFound, InvalidMovementType, InvalidQuantity, NoStockRecord, StockError
from inventory.models import BranchStock, RawItem, StockMovement
from inventory.units import convert_to_storage_unit, parse_quantity, to_quantity

logger = logging.getLogger(__name__)

MovementType = StockMovement.MovementType
ReferenceType = StockMovement.ReferenceType

STOCK_IN_TYPES = (MovementType.PURCHASE, MovementType.ADJUSTMENT, MovementType.RETURN)
STOCK_OUT_TYPES = (MovementType.WASTE, MovementType.ADJUSTMENT, MovementType.RETURN, MovementType.ORDER_DEDUCTION)

STATUS_SUFFICIENT = "sufficient"
STATUS_LOW = "low"
STATUS_OUT_OF_STOCK = "out_of_stock"


@dataclass(frozen=True)
class MovementResult:
    new_quantity: Decimal
    movement: StockMovement
    stock: BranchStock
    replayed: bool = False


@dataclass(frozen=True)
class StockLevel:
    raw_item_id: str
    current_quantity: Decimal
    reserved_quantity: Decimal
    available_quantity: Decimal
    unit: str
    min_threshold: Decimal
    status: str


@dataclass
class DeductionOutcome:
    raw_item_id: str
    quantity: Decimal | None = None
    unit: str = ""
    new_quantity: Decimal | None = None
    replayed: bool = False
    code: str | None = None
    category: str | None = None
    message: str | None = None


@dataclass
class DeductionResult:
    order_id: str
    succeeded: list = field(default_factory=list)
    failed: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def get_ingredient(raw_item_id):
    try:
        return RawItem.objects.get(id=raw_item_id)
    except (RawItem.DoesNotExist, DjangoValidationError, ValueError):
        raise IngredientNotFound(raw_item_id)


def get_ingredient_by_code(code):
    raw_item = RawItem.objects.filter(code=str(code or "").strip()).first()
    if raw_item is None:
        raise IngredientNotFound(code)
    return raw_item


def _positive_quantity(quantity):
    value = parse_quantity(quantity)
    if value <= 0:
        raise InvalidQuantity(quantity)
    return value


def _reevaluate_alerts(entry):
    # Alert state is derived from the snapshot, so a failure here must not undo the movement.
    try:
        alerts.reevaluate(entry.stock.branch_id, entry.stock.raw_item_id)
    except Exception:
        logger.exception(
            "stock_alert_reevaluation_failed",
            extra={"branch_id": str(entry.stock.branch_id), "raw_item_id": str(entry.stock.raw_item_id)},
        )


def _record(branch_id, raw_item, delta, movement_type, **kwargs):
    try:
        entry = ledger.record_movement(
            branch_id,
            raw_item.id,
            delta,
            movement_type,
            unit=raw_item.storage_unit,
            on_commit=_reevaluate_alerts,
            **kwargs,
        )
    except StockError as exc:
        logger.warning(
            "stock_movement_rejected",
            extra={
                "branch_id": str(branch_id),
                "raw_item_id": str(raw_item.id),
                "movement_type": movement_type,
                "quantity_delta": str(delta),
                "error_code": exc.code,
            },
        )
        raise
    return MovementResult(
        new_quantity=entry.movement.new_quantity,
        movement=entry.movement,
        stock=entry.stock,
        replayed=entry.replayed,
    )


def record_stock_in(
    branch_id,
    raw_item_id,
    quantity,
    unit,
    *,
    supplier_ref=None,
    movement_type=MovementType.PURCHASE,
    notes="",
    actor=None,
    idempotency_key=None,
    deadline=None,
):
    """Receive stock (purchase, positive adjustment or customer return)."""
    if movement_type not in STOCK_IN_TYPES:
        raise InvalidMovementType(movement_type, STOCK_IN_TYPES)

    raw_item = get_ingredient(raw_item_id)
    amount = _positive_quantity(quantity)
    converted = convert_to_storage_unit(raw_item, amount, unit)
    if converted.quantity <= 0:
        raise InvalidQuantity(quantity, "Quantity is too small for the storage unit")

    reference_type = None
    reference_id = None
    if movement_type == MovementType.PURCHASE:
        reference_type = ReferenceType.PURCHASE_INVOICE
        reference_id = supplier_ref or None

    return _record(
        branch_id,
        raw_item,
        converted.quantity,
        movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor=actor,
        idempotency_key=idempotency_key,
        deadline=deadline,
    )


def record_stock_out(
    branch_id,
    raw_item_id,
    quantity,
    unit,
    *,
    movement_type,
    notes="",
    actor=None,
    reference_type=None,
    reference_id=None,
    idempotency_key=None,
    deadline=None,
):
    """Take stock out. Never lets the quantity drop below zero."""
    if movement_type not in STOCK_OUT_TYPES:
        raise InvalidMovementType(movement_type, STOCK_OUT_TYPES)

    raw_item = get_ingredient(raw_item_id)
    amount = _positive_quantity(quantity)
    converted = convert_to_storage_unit(raw_item, amount, unit)
    if converted.quantity <= 0:
        raise InvalidQuantity(quantity, "Quantity is too small for the storage unit")

    return _record(
        branch_id,
        raw_item,
        -converted.quantity,
        movement_type,
        reference_type=reference_type,
        reference_id=reference_id,
        notes=notes,
        actor=actor,
        idempotency_key=idempotency_key,
        deadline=deadline,
    )


def order_line_key(order_id, raw_item_id, occurrence):
    return f"order:{order_id}:{raw_item_id}:{occurrence}"


def deduct_from_order(branch_id, order_id, items, *, actor=None, deadline=None):
    """Deduct each order line as its own ledger movement.

    Lines are independent: a line that fails is reported in ``failed`` and
    the lines that succeeded stay committed. Retrying the same order replays
    lines that were already applied instead of deducting them twice.
    """
    order_id = str(order_id)
    result = DeductionResult(order_id=order_id)
    occurrences = Counter()

    for line in items:
        raw_item_id = str(line.get("raw_item_id"))
        occurrence = occurrences[raw_item_id]
        occurrences[raw_item_id] += 1
        outcome = DeductionOutcome(raw_item_id=raw_item_id, unit=str(line.get("unit") or ""))
        try:
            outcome.quantity = to_quantity(line.get("quantity"))
            movement = record_stock_out(
                branch_id,
                raw_item_id,
                line.get("quantity"),
                line.get("unit"),
                movement_type=MovementType.ORDER_DEDUCTION,
                reference_type=ReferenceType.ORDER,
                reference_id=order_id,
                notes=f"Order {order_id}",
                actor=actor,
                idempotency_key=order_line_key(order_id, raw_item_id, occurrence),
                deadline=deadline,
            )
        except StockError as exc:
            outcome.code = exc.code
            outcome.category = exc.category
            outcome.message = exc.message
            result.failed.append(outcome)
            continue

        outcome.new_quantity = movement.new_quantity
        outcome.replayed = movement.replayed
        result.succeeded.append(outcome)

    log = logger.warning if result.failed else logger.info
    log(
        "order_deduction_completed",
        extra={
            "branch_id": str(branch_id),
            "order_id": order_id,
            "succeeded": len(result.succeeded),
            "failed": len(result.failed),
        },
    )
    return result


def stock_status(current_quantity, min_threshold):
    if current_quantity <= 0:
        return STATUS_OUT_OF_STOCK
    if current_quantity <= min_threshold:
        return STATUS_LOW
    return STATUS_SUFFICIENT


def _to_level(stock):
    raw_item = stock.raw_item
    return StockLevel(
        raw_item_id=str(raw_item.id),
        current_quantity=stock.current_quantity,
        reserved_quantity=stock.reserved_quantity,
        available_quantity=stock.available_quantity,
        unit=raw_item.storage_unit,
        min_threshold=raw_item.min_stock_level,
        status=stock_status(stock.current_quantity, raw_item.min_stock_level),
    )


def get_stock_level(branch_id, raw_item_id):
    raw_item = get_ingredient(raw_item_id)
    stock = BranchStock.objects.select_related("raw_item").filter(branch_id=branch_id, raw_item=raw_item).first()
    if stock is None:
        raise NoStockRecord(branch_id, raw_item_id)
    return _to_level(stock)


def list_stock_levels(branch_id):
    stocks = BranchStock.objects.filter(branch_id=branch_id).select_related("raw_item").order_by("raw_item__code")
    return [_to_level(stock) for stock in stocks]


def get_movement_history(branch_id, raw_item_id=None, limit=100):
    if raw_item_id:
        get_ingredient(raw_item_id)
    return ledger.movement_history(branch_id, raw_item_id=raw_item_id, limit=limit)


def get_low_stock_levels(branch_id):
    return [_to_level(stock) for stock in alerts.get_low_stock_items(branch_id)]
