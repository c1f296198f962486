"""Unit conversion between g/kg, ml/l and piece units.

Every function here is pure: no database access, no logging. Quantities are
handled as ``Decimal`` and conversions are quantized to four decimal places
so that many small movements cannot accumulate floating point drift.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from inventory.exceptions import IncompatibleUnits, InvalidQuantity, StockError, UnsupportedUnit

QUANTITY_QUANT = Decimal("0.0001")

WEIGHT = "weight"
VOLUME = "volume"
PIECES = "pieces"

SUPPORTED_UNITS = {
    WEIGHT: ("g", "kg"),
    VOLUME: ("ml", "l"),
    PIECES: ("pcs", "piece", "box"),
}

# (from, to) -> multiplier
CONVERSION_FACTORS = {
    ("kg", "g"): Decimal("1000"),
    ("g", "kg"): Decimal("0.001"),
    ("l", "ml"): Decimal("1000"),
    ("ml", "l"): Decimal("0.001"),
}

BASE_UNITS = {WEIGHT: "g", VOLUME: "ml"}


@dataclass(frozen=True)
class ConvertedQuantity:
    quantity: Decimal
    unit: str


@dataclass
class BulkConversion:
    items: list[dict] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


def normalize_unit(unit) -> str:
    return str(unit or "").strip().lower()


def quantize(value: Decimal) -> Decimal:
    return value.quantize(QUANTITY_QUANT, rounding=ROUND_HALF_UP)


def parse_quantity(value) -> Decimal:
    """Coerce user input into a finite ``Decimal`` without rounding it."""
    if isinstance(value, bool):
        raise InvalidQuantity(value, "Quantity must be numeric")
    try:
        quantity = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidQuantity(value, "Quantity must be numeric")
    if not quantity.is_finite():
        raise InvalidQuantity(value, "Quantity must be finite")
    return quantity


def to_quantity(value) -> Decimal:
    return quantize(parse_quantity(value))


def is_valid_unit(unit) -> bool:
    return unit_type(unit) is not None


def unit_type(unit) -> str | None:
    normalized = normalize_unit(unit)
    for kind, units in SUPPORTED_UNITS.items():
        if normalized in units:
            return kind
    return None


def convert(quantity, from_unit, to_unit) -> Decimal:
    source = normalize_unit(from_unit)
    target = normalize_unit(to_unit)
    amount = parse_quantity(quantity)

    if source == target:
        if not is_valid_unit(source):
            raise UnsupportedUnit(source)
        return quantize(amount)

    source_type = unit_type(source)
    if source_type is None:
        raise UnsupportedUnit(source)
    target_type = unit_type(target)
    if target_type is None:
        raise UnsupportedUnit(target)

    if source_type != target_type:
        raise IncompatibleUnits(
            source,
            target,
            f"Cannot convert {source} ({source_type}) to {target} ({target_type})",
        )

    factor = CONVERSION_FACTORS.get((source, target))
    if factor is None:
        # Piece units are nominal: a box is not a known number of pieces.
        raise IncompatibleUnits(source, target, f"No conversion rule for {source} -> {target}")

    return quantize(amount * factor)


def convert_to_storage_unit(raw_item, quantity, from_unit) -> ConvertedQuantity:
    storage_unit = normalize_unit(raw_item.storage_unit)
    return ConvertedQuantity(convert(quantity, from_unit, storage_unit), storage_unit)


def normalize_to_base(quantity, unit) -> ConvertedQuantity:
    """Express a quantity in g, ml, or (unchanged) its piece unit."""
    normalized = normalize_unit(unit)
    kind = unit_type(normalized)
    if kind is None:
        raise UnsupportedUnit(normalized)
    base = BASE_UNITS.get(kind, normalized)
    return ConvertedQuantity(convert(quantity, normalized, base), base)


def convert_bulk_to_storage_units(items, raw_items) -> BulkConversion:
    """Convert many ``{raw_item_id, quantity, unit}`` lines.

    ``raw_items`` maps raw item ids (as strings) to catalog rows. Lines that
    fail are collected in ``errors`` instead of aborting the batch.
    """
    result = BulkConversion()
    for line in items:
        raw_item_id = str(line.get("raw_item_id"))
        raw_item = raw_items.get(raw_item_id)
        if raw_item is None:
            result.errors.append(
                {"raw_item_id": raw_item_id, "code": "ingredient_not_found", "message": f"Ingredient {raw_item_id} not found"}
            )
            continue
        try:
            converted = convert_to_storage_unit(raw_item, line.get("quantity"), line.get("unit"))
        except StockError as exc:
            result.errors.append({"raw_item_id": raw_item_id, "code": exc.code, "message": exc.message})
            continue
        result.items.append(
            {"raw_item_id": raw_item_id, "quantity": converted.quantity, "storage_unit": converted.unit}
        )
    return result
