import threading
import uuid
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.db import connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Branch
from inventory import alerts, ledger, services
from inventory.exceptions import (
    DeadlineExceeded,
    IdempotencyKeyConflict,
    IncompatibleUnits,
    IngredientNotFound,
    InsufficientStock,
    InvalidMovementType,
    InvalidQuantity,
    LockTimeout,
    NoStockRecord,
    UnsupportedUnit,
)
from inventory.locks import KeyedLockRegistry, stock_lock
from inventory.models import BranchStock, RawItem, StockAlert, StockMovement
from inventory.units import (
    convert,
    convert_bulk_to_storage_units,
    convert_to_storage_unit,
    is_valid_unit,
    normalize_to_base,
    to_quantity,
    unit_type,
)
from notifications.models import OutboxMessage


def make_raw_item(code, storage_unit="g", min_stock_level="0", **extra):
    return RawItem.objects.create(
        code=code,
        name_ar=f"{code}-ar",
        name_en=code.title(),
        storage_unit=storage_unit,
        min_stock_level=Decimal(min_stock_level),
        **extra,
    )


class UnitConversionTests(SimpleTestCase):
    def test_weight_and_volume_factors(self):
        self.assertEqual(convert("2.5", "kg", "g"), Decimal("2500.0000"))
        self.assertEqual(convert(1, "g", "kg"), Decimal("0.0010"))
        self.assertEqual(convert("1.5", "l", "ml"), Decimal("1500.0000"))
        self.assertEqual(convert(250, "ml", "l"), Decimal("0.2500"))

    def test_units_are_case_and_whitespace_insensitive(self):
        self.assertTrue(is_valid_unit(" KG "))
        self.assertEqual(unit_type("Ml"), "volume")
        self.assertEqual(convert(1, " KG", "g "), Decimal("1000.0000"))

    def test_identity_conversion_keeps_quantity(self):
        self.assertEqual(convert("3", "box", "box"), Decimal("3.0000"))

    def test_result_is_rounded_half_up_to_four_places(self):
        self.assertEqual(convert("0.00005", "kg", "g"), Decimal("0.0500"))
        self.assertEqual(convert("0.15", "g", "kg"), Decimal("0.0002"))

    def test_unknown_unit_is_rejected(self):
        with self.assertRaises(UnsupportedUnit) as ctx:
            convert(1, "lb", "g")
        self.assertEqual(ctx.exception.message, 'Unit "lb" not supported')
        self.assertFalse(is_valid_unit("lb"))
        self.assertIsNone(unit_type("lb"))

    def test_identity_with_unknown_unit_is_rejected(self):
        with self.assertRaises(UnsupportedUnit):
            convert(1, "cup", "cup")

    def test_cross_type_conversion_is_rejected(self):
        with self.assertRaises(IncompatibleUnits) as ctx:
            convert(1, "kg", "ml")
        self.assertEqual(ctx.exception.category, "validation")
        self.assertIn("weight", ctx.exception.message)

    def test_piece_units_never_cross_convert(self):
        with self.assertRaises(IncompatibleUnits):
            convert(2, "box", "pcs")
        with self.assertRaises(IncompatibleUnits):
            convert(2, "piece", "pcs")

    def test_convert_to_storage_unit_uses_item_unit(self):
        raw_item = RawItem(code="FLOUR", name_ar="flour", storage_unit="g")

        converted = convert_to_storage_unit(raw_item, "1.25", "kg")

        self.assertEqual(converted.quantity, Decimal("1250.0000"))
        self.assertEqual(converted.unit, "g")

    def test_normalize_to_base(self):
        self.assertEqual(normalize_to_base(2, "l").quantity, Decimal("2000.0000"))
        self.assertEqual(normalize_to_base(2, "l").unit, "ml")
        self.assertEqual(normalize_to_base(3, "box").unit, "box")
        with self.assertRaises(UnsupportedUnit):
            normalize_to_base(1, "oz")

    def test_bulk_conversion_collects_errors_per_line(self):
        flour = RawItem(id=uuid.uuid4(), code="FLOUR", name_ar="flour", storage_unit="g")
        missing_id = str(uuid.uuid4())

        result = convert_bulk_to_storage_units(
            [
                {"raw_item_id": str(flour.id), "quantity": "2", "unit": "kg"},
                {"raw_item_id": missing_id, "quantity": "1", "unit": "kg"},
                {"raw_item_id": str(flour.id), "quantity": "1", "unit": "ml"},
            ],
            {str(flour.id): flour},
        )

        self.assertFalse(result.success)
        self.assertEqual(len(result.items), 1)
        self.assertEqual(result.items[0]["quantity"], Decimal("2000.0000"))
        self.assertEqual([error["code"] for error in result.errors], ["ingredient_not_found", "incompatible_units"])

    def test_round_trip_returns_original_quantity(self):
        for large, small in (("kg", "g"), ("l", "ml")):
            for value in ("0.0001", "0.5", "1.2345", "7", "1000", "98765.4321"):
                with self.subTest(unit=large, value=value):
                    there = convert(value, large, small)
                    self.assertEqual(convert(there, small, large), Decimal(value))

    def test_round_trip_stays_within_rounding_tolerance(self):
        for large, small in (("kg", "g"), ("l", "ml")):
            for value in ("0.00005", "1.23456", "3.14159265", "0.99999"):
                with self.subTest(unit=large, value=value):
                    back = convert(convert(value, large, small), small, large)
                    self.assertLessEqual(abs(back - Decimal(value)), Decimal("0.0001"))

    def test_to_quantity_rejects_non_numeric_input(self):
        for value in ("abc", True, "NaN", "Infinity", None):
            with self.subTest(value=value):
                with self.assertRaises(InvalidQuantity):
                    to_quantity(value)
        self.assertEqual(to_quantity(" 1.23456 "), Decimal("1.2346"))


class KeyedLockTests(SimpleTestCase):
    def test_same_key_times_out_while_held(self):
        registry = KeyedLockRegistry()
        key = ("branch", "item")
        held = threading.Event()
        release = threading.Event()

        def holder():
            with registry.hold(key, timeout=1):
                held.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            held.wait(2)
            with self.assertRaises(LockTimeout):
                with registry.hold(key, timeout=0.05):
                    pass
            with registry.hold(("branch", "other-item"), timeout=0.05):
                pass
        finally:
            release.set()
            thread.join()

        self.assertEqual(registry.active_keys(), [])

    def test_expired_deadline_fails_before_waiting(self):
        with self.assertRaises(DeadlineExceeded):
            with stock_lock("b", "i", deadline=timezone.now() - timedelta(seconds=1)):
                pass

    def test_lock_reports_wait_time(self):
        with stock_lock("b", "i", deadline=timezone.now() + timedelta(seconds=5)) as waited:
            self.assertGreaterEqual(waited, 0)


class StockEngineTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="MAIN", name="Main")
        self.other_branch = Branch.objects.create(code="SIDE", name="Side")
        self.supervisor = self.user_model.objects.create_user(
            username="engine-supervisor",
            password="pass1234",
            branch=self.branch,
            role="supervisor",
        )
        self.flour = make_raw_item("FLOUR", "g", "10")
        self.milk = make_raw_item("MILK", "ml")
        self.cups = make_raw_item("CUPS", "piece")

    def stock(self, raw_item, branch=None):
        return BranchStock.objects.get(branch=branch or self.branch, raw_item=raw_item)

    def test_stock_in_converts_to_storage_unit(self):
        result = services.record_stock_in(
            self.branch.id,
            self.flour.id,
            "2",
            "kg",
            supplier_ref="INV-42",
            actor=self.supervisor,
        )

        self.assertEqual(result.new_quantity, Decimal("2000.0000"))
        self.assertFalse(result.replayed)
        movement = result.movement
        self.assertEqual(movement.movement_type, StockMovement.MovementType.PURCHASE)
        self.assertEqual(movement.quantity_delta, Decimal("2000.0000"))
        self.assertEqual(movement.previous_quantity, Decimal("0"))
        self.assertEqual(movement.reference_type, StockMovement.ReferenceType.PURCHASE_INVOICE)
        self.assertEqual(movement.reference_id, "INV-42")
        self.assertEqual(movement.created_by, self.supervisor)
        self.assertEqual(self.stock(self.flour).current_quantity, Decimal("2000.0000"))

    def test_adjustment_in_has_no_purchase_reference(self):
        result = services.record_stock_in(
            self.branch.id, self.cups.id, 5, "piece", movement_type=StockMovement.MovementType.ADJUSTMENT
        )

        self.assertIsNone(result.movement.reference_type)
        self.assertEqual(result.new_quantity, Decimal("5.0000"))

    def test_stock_in_rejects_outgoing_movement_types(self):
        with self.assertRaises(InvalidMovementType):
            services.record_stock_in(self.branch.id, self.flour.id, 1, "kg", movement_type="waste")

    def test_stock_out_rejects_purchase_type(self):
        with self.assertRaises(InvalidMovementType):
            services.record_stock_out(self.branch.id, self.flour.id, 1, "kg", movement_type="purchase")

    def test_quantity_must_be_positive(self):
        for value in (0, "-1", "abc"):
            with self.subTest(value=value):
                with self.assertRaises(InvalidQuantity):
                    services.record_stock_in(self.branch.id, self.flour.id, value, "g")
        self.assertFalse(StockMovement.objects.exists())

    def test_unknown_ingredient(self):
        with self.assertRaises(IngredientNotFound):
            services.record_stock_in(self.branch.id, uuid.uuid4(), 1, "g")
        with self.assertRaises(IngredientNotFound):
            services.get_ingredient("not-a-uuid")

    def test_lookup_by_code(self):
        self.assertEqual(services.get_ingredient_by_code(" FLOUR "), self.flour)
        with self.assertRaises(IngredientNotFound):
            services.get_ingredient_by_code("SUGAR")

    def test_incompatible_unit_writes_nothing(self):
        with self.assertRaises(IncompatibleUnits):
            services.record_stock_in(self.branch.id, self.flour.id, 1, "l")
        self.assertFalse(BranchStock.objects.exists())
        self.assertFalse(StockMovement.objects.exists())

    def test_stock_out_without_stock_record(self):
        with self.assertRaises(NoStockRecord) as ctx:
            services.record_stock_out(self.branch.id, self.milk.id, 1, "ml", movement_type="waste")
        self.assertEqual(ctx.exception.category, "business")
        self.assertFalse(BranchStock.objects.exists())

    def test_insufficient_stock_leaves_state_untouched(self):
        services.record_stock_in(self.branch.id, self.flour.id, 5, "g")

        with self.assertRaises(InsufficientStock) as ctx:
            services.record_stock_out(self.branch.id, self.flour.id, 6, "g", movement_type="waste")

        self.assertEqual(ctx.exception.available, Decimal("5.0000"))
        self.assertEqual(ctx.exception.requested, Decimal("6.0000"))
        self.assertEqual(ctx.exception.message, "Insufficient stock. Available: 5g, Requested: 6g")
        self.assertEqual(self.stock(self.flour).current_quantity, Decimal("5.0000"))
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_stock_can_reach_exactly_zero(self):
        services.record_stock_in(self.branch.id, self.milk.id, "1", "l")

        result = services.record_stock_out(self.branch.id, self.milk.id, 1000, "ml", movement_type="waste")

        self.assertEqual(result.new_quantity, Decimal("0"))
        self.assertEqual(result.movement.quantity_delta, Decimal("-1000.0000"))

    def test_snapshot_matches_ledger_sum(self):
        services.record_stock_in(self.branch.id, self.flour.id, "1.5", "kg")
        services.record_stock_out(self.branch.id, self.flour.id, "250", "g", movement_type="waste")
        services.record_stock_in(self.branch.id, self.flour.id, "0.125", "kg", movement_type="return")
        services.record_stock_out(self.branch.id, self.flour.id, "0.3755", "kg", movement_type="adjustment")

        stock = self.stock(self.flour)
        self.assertEqual(stock.current_quantity, Decimal("999.5000"))
        self.assertEqual(ledger.replay_quantity(self.branch.id, self.flour.id), stock.current_quantity)
        movements = list(StockMovement.objects.filter(raw_item=self.flour).order_by("created_at"))
        for earlier, later in zip(movements, movements[1:]):
            self.assertEqual(earlier.new_quantity, later.previous_quantity)

    def test_branches_are_isolated(self):
        services.record_stock_in(self.branch.id, self.flour.id, 100, "g")
        services.record_stock_in(self.other_branch.id, self.flour.id, 7, "g")

        self.assertEqual(self.stock(self.flour).current_quantity, Decimal("100.0000"))
        self.assertEqual(self.stock(self.flour, self.other_branch).current_quantity, Decimal("7.0000"))

    def test_idempotency_key_replays_without_writing(self):
        first = services.record_stock_in(self.branch.id, self.flour.id, 1, "kg", idempotency_key="evt-1")
        second = services.record_stock_in(self.branch.id, self.flour.id, 1, "kg", idempotency_key="evt-1")

        self.assertFalse(first.replayed)
        self.assertTrue(second.replayed)
        self.assertEqual(second.movement.id, first.movement.id)
        self.assertEqual(self.stock(self.flour).current_quantity, Decimal("1000.0000"))
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_idempotency_key_is_scoped_per_branch(self):
        services.record_stock_in(self.branch.id, self.flour.id, 1, "g", idempotency_key="evt-2")
        result = services.record_stock_in(self.other_branch.id, self.flour.id, 1, "g", idempotency_key="evt-2")

        self.assertFalse(result.replayed)

    def test_idempotency_key_reused_for_other_item(self):
        services.record_stock_in(self.branch.id, self.flour.id, 1, "g", idempotency_key="evt-3")

        with self.assertRaises(IdempotencyKeyConflict):
            services.record_stock_in(self.branch.id, self.milk.id, 1, "ml", idempotency_key="evt-3")

    def test_key_committed_by_another_writer_is_replayed(self):
        services.record_stock_in(self.branch.id, self.flour.id, 10, "g")
        first = services.record_stock_out(self.branch.id, self.flour.id, 3, "g", movement_type="waste", idempotency_key="evt-4")

        # The lookup misses because the other writer had not committed yet; the insert then collides.
        with patch("inventory.ledger.find_by_idempotency_key", side_effect=[None, first.movement]):
            second = services.record_stock_out(
                self.branch.id, self.flour.id, 3, "g", movement_type="waste", idempotency_key="evt-4"
            )

        self.assertTrue(second.replayed)
        self.assertEqual(second.movement.id, first.movement.id)
        self.assertEqual(self.stock(self.flour).current_quantity, Decimal("7.0000"))
        self.assertEqual(StockMovement.objects.filter(idempotency_key="evt-4").count(), 1)

    def test_key_committed_for_other_item_by_another_writer_conflicts(self):
        first = services.record_stock_in(self.branch.id, self.flour.id, 1, "g", idempotency_key="evt-5")

        with patch("inventory.ledger.find_by_idempotency_key", side_effect=[None, first.movement]):
            with self.assertRaises(IdempotencyKeyConflict):
                services.record_stock_in(self.branch.id, self.milk.id, 1, "ml", idempotency_key="evt-5")

        self.assertFalse(BranchStock.objects.filter(raw_item=self.milk).exists())

    def test_expired_deadline_writes_nothing(self):
        with self.assertRaises(DeadlineExceeded):
            services.record_stock_in(
                self.branch.id,
                self.flour.id,
                1,
                "g",
                deadline=timezone.now() - timedelta(milliseconds=1),
            )
        self.assertFalse(StockMovement.objects.exists())

    def test_movements_are_immutable(self):
        movement = services.record_stock_in(self.branch.id, self.flour.id, 1, "g").movement

        movement.notes = "edited"
        with self.assertRaises(ValidationError):
            movement.save()
        with self.assertRaises(ValidationError):
            movement.delete()
        self.assertEqual(StockMovement.objects.get(id=movement.id).notes, "")

    def test_stock_level_status(self):
        services.record_stock_in(self.branch.id, self.flour.id, 50, "g")
        level = services.get_stock_level(self.branch.id, self.flour.id)
        self.assertEqual(level.status, services.STATUS_SUFFICIENT)
        self.assertEqual(level.unit, "g")
        self.assertEqual(level.min_threshold, Decimal("10.0000"))
        self.assertEqual(level.available_quantity, Decimal("50.0000"))

        services.record_stock_out(self.branch.id, self.flour.id, 40, "g", movement_type="waste")
        self.assertEqual(services.get_stock_level(self.branch.id, self.flour.id).status, services.STATUS_LOW)

        services.record_stock_out(self.branch.id, self.flour.id, 10, "g", movement_type="waste")
        self.assertEqual(services.get_stock_level(self.branch.id, self.flour.id).status, services.STATUS_OUT_OF_STOCK)

    def test_stock_level_for_never_stocked_item(self):
        with self.assertRaises(NoStockRecord):
            services.get_stock_level(self.branch.id, self.milk.id)

    def test_list_stock_levels_is_branch_scoped(self):
        services.record_stock_in(self.branch.id, self.flour.id, 50, "g")
        services.record_stock_in(self.branch.id, self.cups.id, 5, "piece")
        services.record_stock_in(self.other_branch.id, self.milk.id, 5, "ml")

        item_ids = [level.raw_item_id for level in services.list_stock_levels(self.branch.id)]

        self.assertEqual(item_ids, [str(self.cups.id), str(self.flour.id)])

    def test_movement_history_is_newest_first_and_limited(self):
        for quantity in (1, 2, 3):
            services.record_stock_in(self.branch.id, self.flour.id, quantity, "g")
        services.record_stock_in(self.branch.id, self.milk.id, 4, "ml")

        history = services.get_movement_history(self.branch.id, raw_item_id=self.flour.id, limit=2)

        self.assertEqual([movement.quantity_delta for movement in history], [Decimal("3.0000"), Decimal("2.0000")])
        self.assertEqual(len(services.get_movement_history(self.branch.id)), 4)


class OrderDeductionTests(TestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="ORD", name="Orders")
        self.flour = make_raw_item("FLOUR", "g")
        self.milk = make_raw_item("MILK", "ml")
        services.record_stock_in(self.branch.id, self.flour.id, 100, "g")

    def test_partial_deduction_keeps_successful_lines(self):
        items = [
            {"raw_item_id": self.flour.id, "quantity": "30", "unit": "g"},
            {"raw_item_id": self.milk.id, "quantity": "10", "unit": "ml"},
            {"raw_item_id": self.flour.id, "quantity": "0.08", "unit": "kg"},
        ]

        result = services.deduct_from_order(self.branch.id, "ORD-1", items)

        self.assertFalse(result.ok)
        self.assertEqual(len(result.succeeded), 1)
        self.assertEqual(result.succeeded[0].new_quantity, Decimal("70.0000"))
        self.assertEqual([outcome.code for outcome in result.failed], ["no_stock_record", "insufficient_stock"])
        self.assertEqual({outcome.category for outcome in result.failed}, {"business"})
        self.assertEqual(BranchStock.objects.get(raw_item=self.flour).current_quantity, Decimal("70.0000"))

        movement = StockMovement.objects.get(movement_type=StockMovement.MovementType.ORDER_DEDUCTION)
        self.assertEqual(movement.reference_type, StockMovement.ReferenceType.ORDER)
        self.assertEqual(movement.reference_id, "ORD-1")

    def test_retrying_an_order_does_not_deduct_twice(self):
        items = [
            {"raw_item_id": self.flour.id, "quantity": "20", "unit": "g"},
            {"raw_item_id": self.flour.id, "quantity": "20", "unit": "g"},
        ]

        first = services.deduct_from_order(self.branch.id, "ORD-2", items)
        second = services.deduct_from_order(self.branch.id, "ORD-2", items)

        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertEqual([outcome.replayed for outcome in second.succeeded], [True, True])
        self.assertEqual(BranchStock.objects.get(raw_item=self.flour).current_quantity, Decimal("60.0000"))

    def test_invalid_lines_are_reported_as_validation_failures(self):
        items = [
            {"raw_item_id": self.flour.id, "quantity": "1", "unit": "ml"},
            {"raw_item_id": uuid.uuid4(), "quantity": "1", "unit": "g"},
            {"raw_item_id": self.flour.id, "quantity": "-1", "unit": "g"},
        ]

        result = services.deduct_from_order(self.branch.id, "ORD-3", items)

        self.assertEqual(
            [outcome.code for outcome in result.failed],
            ["incompatible_units", "ingredient_not_found", "invalid_quantity"],
        )
        self.assertEqual({outcome.category for outcome in result.failed}, {"validation"})


class StockAlertTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="ALR", name="Alerts")
        self.other_branch = Branch.objects.create(code="ALO", name="Other")
        self.supervisor = self.user_model.objects.create_user(
            username="alert-supervisor",
            password="pass1234",
            branch=self.branch,
            role="supervisor",
        )
        self.flour = make_raw_item("FLOUR", "g", "10")

    def open_alerts(self):
        return list(StockAlert.objects.filter(branch=self.branch, raw_item=self.flour, is_resolved=False))

    def test_alert_lifecycle(self):
        services.record_stock_in(self.branch.id, self.flour.id, 20, "g")
        self.assertEqual(self.open_alerts(), [])

        services.record_stock_out(self.branch.id, self.flour.id, 15, "g", movement_type="waste")
        open_alerts = self.open_alerts()
        self.assertEqual([alert.alert_type for alert in open_alerts], [StockAlert.AlertType.LOW_STOCK])
        self.assertEqual(open_alerts[0].current_quantity, Decimal("5.0000"))
        self.assertEqual(open_alerts[0].threshold_quantity, Decimal("10.0000"))

        services.record_stock_out(self.branch.id, self.flour.id, 5, "g", movement_type="waste")
        self.assertEqual([alert.alert_type for alert in self.open_alerts()], [StockAlert.AlertType.OUT_OF_STOCK])

        services.record_stock_in(self.branch.id, self.flour.id, 20, "g")
        self.assertEqual(self.open_alerts(), [])

        resolved = StockAlert.objects.filter(is_resolved=True)
        self.assertEqual(resolved.count(), 2)
        self.assertFalse(resolved.exclude(resolved_by=None).exists())

        messages = list(OutboxMessage.objects.order_by("id"))
        self.assertEqual(
            [(message.payload["previous_alert_type"], message.payload["alert_type"]) for message in messages],
            [(None, "low_stock"), ("low_stock", "out_of_stock"), ("out_of_stock", None)],
        )
        self.assertEqual(messages[0].payload["branch_id"], str(self.branch.id))

    def test_threshold_is_inclusive(self):
        services.record_stock_in(self.branch.id, self.flour.id, 10, "g")

        self.assertEqual([alert.alert_type for alert in self.open_alerts()], [StockAlert.AlertType.LOW_STOCK])

    def test_same_alert_type_does_not_notify_again(self):
        services.record_stock_in(self.branch.id, self.flour.id, 8, "g")
        services.record_stock_out(self.branch.id, self.flour.id, 1, "g", movement_type="waste")

        open_alerts = self.open_alerts()
        self.assertEqual(len(open_alerts), 1)
        self.assertEqual(open_alerts[0].current_quantity, Decimal("7.0000"))
        self.assertEqual(OutboxMessage.objects.count(), 1)

    def test_manual_resolution_does_not_suppress_future_alerts(self):
        services.record_stock_in(self.branch.id, self.flour.id, 5, "g")
        alert = self.open_alerts()[0]

        self.assertTrue(alerts.resolve_alert(alert.id, self.supervisor))
        self.assertFalse(alerts.resolve_alert(alert.id, self.supervisor))
        alert.refresh_from_db()
        self.assertEqual(alert.resolved_by, self.supervisor)
        self.assertIsNotNone(alert.resolved_at)

        services.record_stock_out(self.branch.id, self.flour.id, 1, "g", movement_type="waste")
        self.assertEqual(len(self.open_alerts()), 1)

    def test_mark_read_is_branch_scoped(self):
        services.record_stock_in(self.branch.id, self.flour.id, 5, "g")
        services.record_stock_in(self.other_branch.id, self.flour.id, 5, "g")
        own = StockAlert.objects.get(branch=self.branch)
        foreign = StockAlert.objects.get(branch=self.other_branch)

        updated = alerts.mark_read([own.id, foreign.id], self.branch.id)

        self.assertEqual(updated, [own.id])
        foreign.refresh_from_db()
        self.assertFalse(foreign.is_read)

    def test_active_alerts_and_low_stock_items(self):
        sugar = make_raw_item("SUGAR", "g", "100")
        services.record_stock_in(self.branch.id, self.flour.id, 50, "g")
        services.record_stock_in(self.branch.id, sugar.id, 40, "g")

        self.assertEqual([alert.raw_item_id for alert in alerts.get_active_alerts(self.branch.id)], [sugar.id])
        self.assertEqual([stock.raw_item_id for stock in alerts.get_low_stock_items(self.branch.id)], [sugar.id])
        self.assertEqual(alerts.get_active_alerts(self.other_branch.id), [])

    def test_alert_failure_does_not_fail_the_movement(self):
        with patch("inventory.services.alerts.reevaluate", side_effect=RuntimeError("boom")):
            with self.assertLogs("inventory.services", level="ERROR") as logs:
                result = services.record_stock_in(self.branch.id, self.flour.id, 5, "g")

        self.assertEqual(result.new_quantity, Decimal("5.0000"))
        self.assertTrue(any("stock_alert_reevaluation_failed" in entry for entry in logs.output))
        self.assertEqual(self.open_alerts(), [])

        alerts.reevaluate(self.branch.id, self.flour.id)
        self.assertEqual(len(self.open_alerts()), 1)


class ReconciliationTests(TestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="REC", name="Reconcile")
        self.flour = make_raw_item("FLOUR", "g")
        services.record_stock_in(self.branch.id, self.flour.id, 100, "g")
        services.record_stock_out(self.branch.id, self.flour.id, 30, "g", movement_type="waste")

    def test_consistent_snapshot(self):
        result = ledger.rebuild_snapshot(self.branch.id, self.flour.id)

        self.assertTrue(result.consistent)
        self.assertEqual(result.ledger_quantity, Decimal("70.0000"))

    def test_drift_is_reported_then_repaired(self):
        BranchStock.objects.filter(branch=self.branch, raw_item=self.flour).update(current_quantity=Decimal("75"))

        with self.assertLogs("inventory.ledger", level="WARNING"):
            report = ledger.rebuild_snapshot(self.branch.id, self.flour.id)
        self.assertFalse(report.consistent)
        self.assertEqual(report.drift, Decimal("5.0000"))
        self.assertFalse(report.repaired)

        out = StringIO()
        call_command("reconcile_stock", "--fix", stdout=out)

        self.assertIn("repaired", out.getvalue())
        self.assertEqual(
            BranchStock.objects.get(branch=self.branch, raw_item=self.flour).current_quantity,
            Decimal("70.0000"),
        )
        self.assertTrue(ledger.rebuild_snapshot(self.branch.id, self.flour.id).consistent)


class ConcurrentStockOutTests(TransactionTestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="CON", name="Concurrent")
        self.flour = make_raw_item("FLOUR", "g")
        services.record_stock_in(self.branch.id, self.flour.id, 5, "g")

    def test_only_one_of_two_competing_deductions_succeeds(self):
        barrier = threading.Barrier(2)
        outcomes = []
        guard = threading.Lock()

        def take_three():
            try:
                barrier.wait(5)
                try:
                    services.record_stock_out(self.branch.id, self.flour.id, 3, "g", movement_type="waste")
                    outcome = "ok"
                except InsufficientStock:
                    outcome = "insufficient"
                with guard:
                    outcomes.append(outcome)
            finally:
                connection.close()

        threads = [threading.Thread(target=take_three) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(30)

        self.assertEqual(sorted(outcomes), ["insufficient", "ok"])
        stock = BranchStock.objects.get(branch=self.branch, raw_item=self.flour)
        self.assertEqual(stock.current_quantity, Decimal("2.0000"))
        self.assertEqual(ledger.replay_quantity(self.branch.id, self.flour.id), stock.current_quantity)


class StockApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="API", name="Api")
        self.other_branch = Branch.objects.create(code="APO", name="Other")
        self.supervisor = self.user_model.objects.create_user(
            username="api-supervisor",
            password="pass1234",
            branch=self.branch,
            role="supervisor",
        )
        self.cashier = self.user_model.objects.create_user(
            username="api-cashier",
            password="pass1234",
            branch=self.branch,
            role="cashier",
        )
        self.superuser = self.user_model.objects.create_superuser(
            username="api-root",
            password="pass1234",
        )
        self.flour = make_raw_item("FLOUR", "g", "10")
        self.milk = make_raw_item("MILK", "ml")

    def stock_in(self, **overrides):
        payload = {"raw_item_id": str(self.flour.id), "quantity": "2", "unit": "kg"}
        payload.update(overrides)
        return self.client.post("/api/v1/stock/in/", payload, format="json")

    def test_stock_in_and_replay(self):
        self.client.force_authenticate(user=self.supervisor)

        first = self.stock_in(event_id="evt-api-1", supplier_ref="INV-1")
        second = self.stock_in(event_id="evt-api-1", supplier_ref="INV-1")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["new_quantity"], "2000.0000")
        self.assertEqual(first.json()["movement"]["reference_id"], "INV-1")
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["replayed"])
        self.assertEqual(StockMovement.objects.count(), 1)
        log = AuditLog.objects.get(action="stock.in")
        self.assertEqual(log.event_id, "evt-api-1")
        self.assertEqual(log.actor, self.supervisor)
        self.assertEqual(log.branch, self.branch)

    def test_injected_branch_is_ignored_for_branch_users(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.stock_in(branch_id=str(self.other_branch.id))

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["movement"]["branch"], str(self.branch.id))

    def test_superuser_must_name_a_branch(self):
        self.client.force_authenticate(user=self.superuser)

        missing = self.stock_in()
        named = self.stock_in(branch_id=str(self.other_branch.id))

        self.assertEqual(missing.status_code, 400)
        self.assertEqual(named.status_code, 201)
        self.assertEqual(named.json()["movement"]["branch"], str(self.other_branch.id))

    def test_cashier_cannot_receive_stock(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.stock_in()

        self.assertEqual(response.status_code, 403)
        self.assertFalse(StockMovement.objects.exists())

    def test_insufficient_stock_maps_to_conflict(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="5", unit="g")

        response = self.client.post(
            "/api/v1/stock/out/",
            {"raw_item_id": str(self.flour.id), "quantity": "6", "unit": "g", "movement_type": "waste"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["status"], 409)
        self.assertEqual(payload["message"], "Insufficient stock. Available: 5g, Requested: 6g")
        self.assertEqual(payload["errors"]["available"], "5.0000")

    def test_unsupported_unit_maps_to_bad_request(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.stock_in(unit="lb")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "unsupported_unit")

    def test_serializer_errors_use_validation_envelope(self):
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/stock/out/",
            {"raw_item_id": str(self.flour.id), "quantity": "1", "unit": "g", "movement_type": "purchase"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("movement_type", response.json()["errors"])

    def test_infrastructure_errors_map_to_service_unavailable(self):
        self.client.force_authenticate(user=self.supervisor)

        with patch("inventory.services.record_stock_in", side_effect=LockTimeout(("a", "b"), 0.5)):
            response = self.stock_in()

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "lock_timeout")

    def test_stock_levels(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="8", unit="g")

        listing = self.client.get("/api/v1/stock/levels/")
        detail = self.client.get(f"/api/v1/stock/levels/{self.flour.id}/")
        missing = self.client.get(f"/api/v1/stock/levels/{self.milk.id}/")

        self.assertEqual(listing.status_code, 200)
        self.assertEqual([row["raw_item_id"] for row in listing.json()], [str(self.flour.id)])
        self.assertEqual(detail.json()["status"], "low")
        self.assertEqual(detail.json()["current_quantity"], "8.0000")
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["code"], "no_stock_record")

    def test_movement_history_endpoint(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="1", unit="g")
        self.stock_in(quantity="2", unit="g")

        response = self.client.get("/api/v1/stock/movements/", {"raw_item_id": str(self.flour.id), "limit": 1})
        bad_limit = self.client.get("/api/v1/stock/movements/", {"limit": "many"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["quantity_delta"] for row in response.json()], ["2.0000"])
        self.assertEqual(bad_limit.status_code, 400)

    def test_order_deduction_endpoint(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="100", unit="g")
        self.client.force_authenticate(user=self.cashier)

        complete = self.client.post(
            "/api/v1/stock/order-deductions/",
            {"order_id": "ORD-9", "items": [{"raw_item_id": str(self.flour.id), "quantity": "10", "unit": "g"}]},
            format="json",
        )
        partial = self.client.post(
            "/api/v1/stock/order-deductions/",
            {
                "order_id": "ORD-10",
                "items": [
                    {"raw_item_id": str(self.flour.id), "quantity": "10", "unit": "g"},
                    {"raw_item_id": str(self.milk.id), "quantity": "10", "unit": "ml"},
                ],
            },
            format="json",
        )

        self.assertEqual(complete.status_code, 200)
        self.assertTrue(complete.json()["ok"])
        self.assertEqual(partial.status_code, 207)
        self.assertEqual(partial.json()["failed"][0]["code"], "no_stock_record")
        self.assertEqual(partial.json()["succeeded"][0]["new_quantity"], "80.0000")
        self.assertEqual(AuditLog.objects.filter(action="stock.order_deduction").count(), 2)

    def test_raw_items_catalog(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/raw-items/", {"code": "MILK"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.json()["results"]], [str(self.milk.id)])

    def test_alert_endpoints(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="5", unit="g")
        alert = StockAlert.objects.get(branch=self.branch, is_resolved=False)

        listing = self.client.get("/api/v1/alerts/")
        low_stock = self.client.get("/api/v1/alerts/low-stock/")
        mark_read = self.client.post("/api/v1/alerts/mark-read/", {"alert_ids": [str(alert.id)]}, format="json")
        resolved = self.client.post(f"/api/v1/alerts/{alert.id}/resolve/")
        again = self.client.post(f"/api/v1/alerts/{alert.id}/resolve/")

        self.assertEqual([row["id"] for row in listing.json()["results"]], [str(alert.id)])
        self.assertEqual([row["status"] for row in low_stock.json()], ["low"])
        self.assertEqual(mark_read.json()["updated"], [str(alert.id)])
        self.assertEqual(resolved.status_code, 200)
        self.assertTrue(resolved.json()["is_resolved"])
        self.assertEqual(resolved.json()["resolved_by"], str(self.supervisor.id))
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["code"], "alert_already_resolved")
        self.assertTrue(AuditLog.objects.filter(action="stock_alert.resolve", entity_id=alert.id).exists())

    def test_cashier_cannot_resolve_alerts(self):
        self.client.force_authenticate(user=self.supervisor)
        self.stock_in(quantity="5", unit="g")
        alert = StockAlert.objects.get(branch=self.branch, is_resolved=False)
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/alerts/{alert.id}/resolve/")

        self.assertEqual(response.status_code, 403)

    def test_alerts_of_other_branches_are_hidden(self):
        services.record_stock_in(self.other_branch.id, self.flour.id, 5, "g")
        foreign = StockAlert.objects.get(branch=self.other_branch)
        self.client.force_authenticate(user=self.supervisor)

        listing = self.client.get("/api/v1/alerts/")
        resolve = self.client.post(f"/api/v1/alerts/{foreign.id}/resolve/")

        self.assertEqual(listing.json()["results"], [])
        self.assertEqual(resolve.status_code, 404)
