import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="RawItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("code", models.CharField(max_length=64, unique=True)),
                ("name_ar", models.CharField(max_length=255)),
                ("name_en", models.CharField(blank=True, default="", max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "category",
                    models.CharField(
                        choices=[
                            ("ingredient", "Ingredient"),
                            ("packaging", "Packaging"),
                            ("equipment", "Equipment"),
                            ("consumable", "Consumable"),
                            ("other", "Other"),
                        ],
                        default="ingredient",
                        max_length=16,
                    ),
                ),
                (
                    "storage_unit",
                    models.CharField(choices=[("g", "Gram"), ("ml", "Millilitre"), ("piece", "Piece")], max_length=8),
                ),
                ("unit_cost", models.DecimalField(decimal_places=4, default=0, max_digits=12)),
                ("min_stock_level", models.DecimalField(decimal_places=4, default=0, max_digits=18)),
                ("max_stock_level", models.DecimalField(blank=True, decimal_places=4, max_digits=18, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "indexes": [
                    models.Index(fields=["category", "is_active"], name="rawitem_category_active_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="BranchStock",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("current_quantity", models.DecimalField(decimal_places=4, default=0, max_digits=18)),
                ("reserved_quantity", models.DecimalField(decimal_places=4, default=0, max_digits=18)),
                ("last_updated", models.DateTimeField(auto_now=True)),
                ("last_count_date", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "branch",
                    models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="stocks", to="core.branch"),
                ),
                (
                    "raw_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="branch_stocks",
                        to="inventory.rawitem",
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "current_quantity"], name="branchstock_branch_qty_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["branch", "raw_item"], name="uniq_branchstock_branch_item"),
                    models.CheckConstraint(
                        condition=models.Q(current_quantity__gte=0), name="branchstock_current_non_negative"
                    ),
                    models.CheckConstraint(
                        condition=models.Q(reserved_quantity__gte=0), name="branchstock_reserved_non_negative"
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockMovement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "movement_type",
                    models.CharField(
                        choices=[
                            ("purchase", "Purchase"),
                            ("waste", "Waste"),
                            ("adjustment", "Adjustment"),
                            ("return", "Return"),
                            ("order_deduction", "Order deduction"),
                        ],
                        max_length=32,
                    ),
                ),
                ("quantity_delta", models.DecimalField(decimal_places=4, max_digits=18)),
                ("previous_quantity", models.DecimalField(decimal_places=4, max_digits=18)),
                ("new_quantity", models.DecimalField(decimal_places=4, max_digits=18)),
                (
                    "reference_type",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("purchase_invoice", "Purchase invoice"),
                            ("order", "Order"),
                            ("transfer", "Transfer"),
                            ("manual", "Manual"),
                        ],
                        max_length=32,
                        null=True,
                    ),
                ),
                ("reference_id", models.CharField(blank=True, max_length=128, null=True)),
                ("idempotency_key", models.CharField(blank=True, max_length=255, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("branch", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to="core.branch")),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "raw_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="inventory.rawitem",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at"],
                "indexes": [
                    models.Index(fields=["branch", "raw_item", "created_at"], name="stockmove_branch_item_idx"),
                    models.Index(fields=["branch", "created_at"], name="stockmove_branch_created_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="stockmove_reference_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(idempotency_key__isnull=False),
                        fields=["branch", "idempotency_key"],
                        name="uniq_stockmovement_branch_idempotency_key",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="StockAlert",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "alert_type",
                    models.CharField(
                        choices=[("low_stock", "Low stock"), ("out_of_stock", "Out of stock")],
                        max_length=16,
                    ),
                ),
                ("current_quantity", models.DecimalField(decimal_places=4, max_digits=18)),
                ("threshold_quantity", models.DecimalField(decimal_places=4, max_digits=18)),
                ("is_read", models.BooleanField(default=False)),
                ("is_resolved", models.BooleanField(default=False)),
                ("resolved_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("branch", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, to="core.branch")),
                (
                    "raw_item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="alerts",
                        to="inventory.rawitem",
                    ),
                ),
                (
                    "resolved_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="resolved_stock_alerts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["branch", "is_resolved"], name="stockalert_branch_open_idx"),
                    models.Index(fields=["branch", "alert_type", "is_resolved"], name="stockalert_branch_type_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(is_resolved=False),
                        fields=["branch", "raw_item"],
                        name="uniq_open_stock_alert_per_item",
                    ),
                ],
            },
        ),
    ]
