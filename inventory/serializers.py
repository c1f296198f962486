from rest_framework import serializers

from inventory.models import RawItem, StockAlert, StockMovement
from inventory.services import STOCK_IN_TYPES, STOCK_OUT_TYPES


class RawItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = RawItem
        fields = [
            "id",
            "code",
            "name_ar",
            "name_en",
            "description",
            "category",
            "storage_unit",
            "unit_cost",
            "min_stock_level",
            "max_stock_level",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class StockMovementSerializer(serializers.ModelSerializer):
    raw_item_code = serializers.CharField(source="raw_item.code", read_only=True)
    storage_unit = serializers.CharField(source="raw_item.storage_unit", read_only=True)
    created_by_username = serializers.CharField(source="created_by.username", read_only=True)

    class Meta:
        model = StockMovement
        fields = [
            "id",
            "branch",
            "raw_item",
            "raw_item_code",
            "storage_unit",
            "movement_type",
            "quantity_delta",
            "previous_quantity",
            "new_quantity",
            "reference_type",
            "reference_id",
            "idempotency_key",
            "notes",
            "created_by",
            "created_by_username",
            "created_at",
        ]
        read_only_fields = fields


class StockAlertSerializer(serializers.ModelSerializer):
    raw_item_code = serializers.CharField(source="raw_item.code", read_only=True)
    raw_item_name = serializers.CharField(source="raw_item.name_ar", read_only=True)
    storage_unit = serializers.CharField(source="raw_item.storage_unit", read_only=True)

    class Meta:
        model = StockAlert
        fields = [
            "id",
            "branch",
            "raw_item",
            "raw_item_code",
            "raw_item_name",
            "storage_unit",
            "alert_type",
            "current_quantity",
            "threshold_quantity",
            "is_read",
            "is_resolved",
            "resolved_by",
            "resolved_at",
            "created_at",
        ]
        read_only_fields = fields


class StockLevelSerializer(serializers.Serializer):
    raw_item_id = serializers.CharField()
    current_quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    reserved_quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    available_quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    unit = serializers.CharField()
    min_threshold = serializers.DecimalField(max_digits=18, decimal_places=4)
    status = serializers.CharField()


class MovementResultSerializer(serializers.Serializer):
    new_quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    replayed = serializers.BooleanField()
    movement = StockMovementSerializer()


class BranchScopedInputSerializer(serializers.Serializer):
    branch_id = serializers.UUIDField(required=False)
    deadline = serializers.DateTimeField(required=False)


class StockInSerializer(BranchScopedInputSerializer):
    raw_item_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    unit = serializers.CharField(max_length=16)
    movement_type = serializers.ChoiceField(choices=[str(value) for value in STOCK_IN_TYPES], default=StockMovement.MovementType.PURCHASE)
    supplier_ref = serializers.CharField(max_length=128, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    event_id = serializers.CharField(max_length=255, required=False, allow_blank=False)


class StockOutSerializer(BranchScopedInputSerializer):
    raw_item_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    unit = serializers.CharField(max_length=16)
    movement_type = serializers.ChoiceField(choices=[str(value) for value in STOCK_OUT_TYPES])
    reference_type = serializers.ChoiceField(choices=StockMovement.ReferenceType.choices, required=False)
    reference_id = serializers.CharField(max_length=128, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    event_id = serializers.CharField(max_length=255, required=False, allow_blank=False)


class OrderLineSerializer(serializers.Serializer):
    raw_item_id = serializers.UUIDField()
    quantity = serializers.DecimalField(max_digits=18, decimal_places=4)
    unit = serializers.CharField(max_length=16)


class OrderDeductionSerializer(BranchScopedInputSerializer):
    order_id = serializers.CharField(max_length=64)
    items = OrderLineSerializer(many=True, allow_empty=False)


class DeductionOutcomeSerializer(serializers.Serializer):
    raw_item_id = serializers.CharField()
    quantity = serializers.DecimalField(max_digits=18, decimal_places=4, allow_null=True)
    unit = serializers.CharField()
    new_quantity = serializers.DecimalField(max_digits=18, decimal_places=4, allow_null=True)
    replayed = serializers.BooleanField()
    code = serializers.CharField(allow_null=True)
    category = serializers.CharField(allow_null=True)
    message = serializers.CharField(allow_null=True)


class DeductionResultSerializer(serializers.Serializer):
    order_id = serializers.CharField()
    ok = serializers.BooleanField()
    succeeded = DeductionOutcomeSerializer(many=True)
    failed = DeductionOutcomeSerializer(many=True)


class AlertMarkReadSerializer(serializers.Serializer):
    branch_id = serializers.UUIDField(required=False)
    alert_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)
