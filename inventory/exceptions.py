from __future__ import annotations

from decimal import Decimal
from typing import Any


class StockError(Exception):
    """Base class for every error raised by the stock engine.

    ``category`` tells callers whether the failure is caller-fixable
    (``validation``), an expected business outcome (``business``) or an
    infrastructure problem worth retrying (``infrastructure``).
    """

    category = "internal"
    code = "stock_error"
    default_message = "Stock operation failed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def as_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
        }


class StockValidationError(StockError):
    category = "validation"
    code = "validation_error"


class StockBusinessError(StockError):
    category = "business"
    code = "business_rule_violation"


class StockInfrastructureError(StockError):
    category = "infrastructure"
    code = "infrastructure_error"


class UnsupportedUnit(StockValidationError):
    code = "unsupported_unit"

    def __init__(self, unit: str):
        super().__init__(f'Unit "{unit}" not supported', {"unit": unit})
        self.unit = unit


class IncompatibleUnits(StockValidationError):
    code = "incompatible_units"

    def __init__(self, from_unit: str, to_unit: str, reason: str | None = None):
        message = reason or f"Cannot convert {from_unit} to {to_unit}"
        super().__init__(message, {"from_unit": from_unit, "to_unit": to_unit})
        self.from_unit = from_unit
        self.to_unit = to_unit


class IngredientNotFound(StockValidationError):
    code = "ingredient_not_found"

    def __init__(self, raw_item_id: Any):
        super().__init__(f"Ingredient {raw_item_id} not found", {"raw_item_id": str(raw_item_id)})
        self.raw_item_id = raw_item_id


class InvalidQuantity(StockValidationError):
    code = "invalid_quantity"

    def __init__(self, value: Any, reason: str = "Quantity must be a positive number"):
        super().__init__(reason, {"quantity": str(value)})


class InvalidMovementType(StockValidationError):
    code = "invalid_movement_type"

    def __init__(self, movement_type: Any, allowed):
        allowed = sorted(str(value) for value in allowed)
        super().__init__(
            f"Movement type '{movement_type}' is not allowed here",
            {"movement_type": str(movement_type), "allowed": allowed},
        )


def _plain(value) -> str:
    if isinstance(value, Decimal):
        text = format(value.normalize(), "f")
        return "0" if text in ("-0", "") else text
    return str(value)


class InsufficientStock(StockBusinessError):
    code = "insufficient_stock"

    def __init__(self, available: Decimal, requested: Decimal, unit: str = ""):
        super().__init__(
            f"Insufficient stock. Available: {_plain(available)}{unit}, Requested: {_plain(requested)}{unit}",
            {"available": str(available), "requested": str(requested), "unit": unit},
        )
        self.available = available
        self.requested = requested


class NoStockRecord(StockBusinessError):
    code = "no_stock_record"

    def __init__(self, branch_id: Any, raw_item_id: Any):
        super().__init__(
            "No stock record for this item",
            {"branch_id": str(branch_id), "raw_item_id": str(raw_item_id)},
        )


class LockTimeout(StockInfrastructureError):
    code = "lock_timeout"

    def __init__(self, key, timeout: float):
        super().__init__(
            f"Timed out after {timeout:.2f}s waiting for stock lock",
            {"key": [str(part) for part in key], "timeout": timeout},
        )


class DeadlineExceeded(StockInfrastructureError):
    code = "deadline_exceeded"
    default_message = "Operation deadline expired before the stock write started."


class StorageUnavailable(StockInfrastructureError):
    code = "storage_unavailable"
    default_message = "Stock storage is unavailable."


class IdempotencyKeyConflict(StockValidationError):
    code = "idempotency_key_conflict"

    def __init__(self, idempotency_key: str):
        super().__init__(
            "Idempotency key was already used for a different stock item",
            {"idempotency_key": idempotency_key},
        )
