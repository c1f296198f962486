import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from core.models import Branch


class RawItem(models.Model):
    class Category(models.TextChoices):
        INGREDIENT = "ingredient", "Ingredient"
        PACKAGING = "packaging", "Packaging"
        EQUIPMENT = "equipment", "Equipment"
        CONSUMABLE = "consumable", "Consumable"
        OTHER = "other", "Other"

    class StorageUnit(models.TextChoices):
        GRAM = "g", "Gram"
        MILLILITRE = "ml", "Millilitre"
        PIECE = "piece", "Piece"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    code = models.CharField(max_length=64, unique=True)
    name_ar = models.CharField(max_length=255)
    name_en = models.CharField(max_length=255, blank=True, default="")
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=16, choices=Category.choices, default=Category.INGREDIENT)
    storage_unit = models.CharField(max_length=8, choices=StorageUnit.choices)
    unit_cost = models.DecimalField(max_digits=12, decimal_places=4, default=0)
    min_stock_level = models.DecimalField(max_digits=18, decimal_places=4, default=0)
    max_stock_level = models.DecimalField(max_digits=18, decimal_places=4, null=True, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["category", "is_active"], name="rawitem_category_active_idx"),
        ]

    def __str__(self):
        return f"{self.code} ({self.storage_unit})"


class BranchStock(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT, related_name="stocks")
    raw_item = models.ForeignKey(RawItem, on_delete=models.PROTECT, related_name="branch_stocks")
    current_quantity = models.DecimalField(max_digits=18, decimal_places=4, default=0)
    reserved_quantity = models.DecimalField(max_digits=18, decimal_places=4, default=0)
    last_updated = models.DateTimeField(auto_now=True)
    last_count_date = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["branch", "raw_item"], name="uniq_branchstock_branch_item"),
            models.CheckConstraint(condition=models.Q(current_quantity__gte=0), name="branchstock_current_non_negative"),
            models.CheckConstraint(condition=models.Q(reserved_quantity__gte=0), name="branchstock_reserved_non_negative"),
        ]
        indexes = [
            models.Index(fields=["branch", "current_quantity"], name="branchstock_branch_qty_idx"),
        ]

    @property
    def available_quantity(self):
        return self.current_quantity - self.reserved_quantity


class StockMovement(models.Model):
    class MovementType(models.TextChoices):
        PURCHASE = "purchase", "Purchase"
        WASTE = "waste", "Waste"
        ADJUSTMENT = "adjustment", "Adjustment"
        RETURN = "return", "Return"
        ORDER_DEDUCTION = "order_deduction", "Order deduction"

    class ReferenceType(models.TextChoices):
        PURCHASE_INVOICE = "purchase_invoice", "Purchase invoice"
        ORDER = "order", "Order"
        TRANSFER = "transfer", "Transfer"
        MANUAL = "manual", "Manual"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    raw_item = models.ForeignKey(RawItem, on_delete=models.PROTECT, related_name="movements")
    movement_type = models.CharField(max_length=32, choices=MovementType.choices)
    quantity_delta = models.DecimalField(max_digits=18, decimal_places=4)
    previous_quantity = models.DecimalField(max_digits=18, decimal_places=4)
    new_quantity = models.DecimalField(max_digits=18, decimal_places=4)
    reference_type = models.CharField(max_length=32, choices=ReferenceType.choices, null=True, blank=True)
    reference_id = models.CharField(max_length=128, null=True, blank=True)
    idempotency_key = models.CharField(max_length=255, null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [
            models.Index(fields=["branch", "raw_item", "created_at"], name="stockmove_branch_item_idx"),
            models.Index(fields=["branch", "created_at"], name="stockmove_branch_created_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="stockmove_reference_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["branch", "idempotency_key"],
                name="uniq_stockmovement_branch_idempotency_key",
                condition=models.Q(idempotency_key__isnull=False),
            ),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("StockMovement records are immutable")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("StockMovement records are immutable and cannot be deleted")


class StockAlert(models.Model):
    class AlertType(models.TextChoices):
        LOW_STOCK = "low_stock", "Low stock"
        OUT_OF_STOCK = "out_of_stock", "Out of stock"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.PROTECT)
    raw_item = models.ForeignKey(RawItem, on_delete=models.PROTECT, related_name="alerts")
    alert_type = models.CharField(max_length=16, choices=AlertType.choices)
    current_quantity = models.DecimalField(max_digits=18, decimal_places=4)
    threshold_quantity = models.DecimalField(max_digits=18, decimal_places=4)
    is_read = models.BooleanField(default=False)
    is_resolved = models.BooleanField(default=False)
    resolved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="resolved_stock_alerts",
    )
    resolved_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=["branch", "is_resolved"], name="stockalert_branch_open_idx"),
            models.Index(fields=["branch", "alert_type", "is_resolved"], name="stockalert_branch_type_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["branch", "raw_item"],
                name="uniq_open_stock_alert_per_item",
                condition=models.Q(is_resolved=False),
            ),
        ]
