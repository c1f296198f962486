import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from common.utils import emit_outbox
from inventory.models import BranchStock, StockAlert

logger = logging.getLogger(__name__)


def classify(quantity, min_stock_level):
    """Return the alert type a quantity deserves, or ``None`` when healthy."""
    quantity = Decimal(quantity or 0)
    if quantity <= 0:
        return StockAlert.AlertType.OUT_OF_STOCK
    if quantity <= Decimal(min_stock_level or 0):
        return StockAlert.AlertType.LOW_STOCK
    return None


def reevaluate(branch_id, raw_item_id):
    """Re-derive the open alert for one stock key from its current quantity.

    Every open alert is resolved first and at most one new alert is created,
    so the key never holds two unresolved alerts. Callers hold the key lock.
    """
    with transaction.atomic():
        stock = BranchStock.objects.select_related("raw_item").filter(branch_id=branch_id, raw_item_id=raw_item_id).first()
        if stock is None:
            return None

        threshold = stock.raw_item.min_stock_level
        new_type = classify(stock.current_quantity, threshold)

        open_alerts = StockAlert.objects.filter(branch_id=branch_id, raw_item_id=raw_item_id, is_resolved=False)
        previous = open_alerts.order_by("-created_at").first()
        previous_type = previous.alert_type if previous else None
        open_alerts.update(is_resolved=True, resolved_at=timezone.now(), resolved_by=None)

        alert = None
        if new_type is not None:
            alert = StockAlert.objects.create(
                branch_id=branch_id,
                raw_item_id=raw_item_id,
                alert_type=new_type,
                current_quantity=stock.current_quantity,
                threshold_quantity=threshold,
            )

        if new_type != previous_type:
            logger.info(
                "stock_alert_transition",
                extra={
                    "branch_id": str(branch_id),
                    "raw_item_id": str(raw_item_id),
                    "previous_alert_type": previous_type,
                    "alert_type": new_type,
                    "new_quantity": str(stock.current_quantity),
                },
            )
            emit_outbox(
                branch_id=branch_id,
                entity="stock_alert",
                entity_id=alert.id if alert else raw_item_id,
                op="upsert" if alert else "resolve",
                payload={
                    "alert_id": alert.id if alert else None,
                    "raw_item_id": raw_item_id,
                    "raw_item_code": stock.raw_item.code,
                    "raw_item_name": stock.raw_item.name_ar,
                    "previous_alert_type": previous_type,
                    "alert_type": new_type,
                    "current_quantity": stock.current_quantity,
                    "threshold_quantity": threshold,
                    "unit": stock.raw_item.storage_unit,
                },
            )
        return alert


def resolve_alert(alert_id, resolved_by=None) -> bool:
    """Manually resolve an alert. Returns ``False`` if it was already resolved."""
    actor = resolved_by if getattr(resolved_by, "is_authenticated", False) else None
    updated = StockAlert.objects.filter(id=alert_id, is_resolved=False).update(
        is_resolved=True,
        resolved_at=timezone.now(),
        resolved_by=actor,
    )
    if updated:
        logger.info("stock_alert_resolved", extra={"alert_id": str(alert_id), "user_id": getattr(actor, "id", None)})
    return bool(updated)


def mark_read(alert_ids, branch_id):
    alerts = StockAlert.objects.filter(branch_id=branch_id, id__in=list(alert_ids), is_read=False)
    ids = list(alerts.values_list("id", flat=True))
    StockAlert.objects.filter(id__in=ids).update(is_read=True)
    return ids


def get_active_alerts(branch_id):
    return list(
        StockAlert.objects.filter(branch_id=branch_id, is_resolved=False)
        .select_related("raw_item")
        .order_by("-created_at")
    )


def get_low_stock_items(branch_id):
    """Stock rows at or below their item's minimum level, lowest first."""
    return list(
        BranchStock.objects.filter(
            branch_id=branch_id,
            raw_item__is_active=True,
            current_quantity__lte=F("raw_item__min_stock_level"),
        )
        .select_related("raw_item")
        .order_by("current_quantity", "raw_item__code")
    )
