import logging
from dataclasses import dataclass

from django.conf import settings
from django.core.mail import send_mail
from django.db import transaction
from django.utils import timezone

from notifications.models import OutboxMessage

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_ATTEMPTS = 5

ALERT_SUBJECTS = {
    "low_stock": "Low stock: {raw_item_code}",
    "out_of_stock": "Out of stock: {raw_item_code}",
    None: "Stock recovered: {raw_item_code}",
}


@dataclass
class DispatchReport:
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0


def pending_queryset(*, claim=False):
    max_attempts = int(getattr(settings, "NOTIFICATION_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS))
    queryset = OutboxMessage.objects.filter(dispatched_at__isnull=True, attempts__lt=max_attempts).order_by("id")
    if claim:
        # Rows claimed by a concurrent dispatcher are skipped, not waited on.
        queryset = queryset.select_for_update(skip_locked=True)
    return queryset


def _batch_size(limit):
    return limit or int(getattr(settings, "NOTIFICATION_BATCH_SIZE", DEFAULT_BATCH_SIZE))


def pending_messages(limit=None):
    return list(pending_queryset()[: _batch_size(limit)])


def render_message(message):
    payload = message.payload or {}
    subject_template = ALERT_SUBJECTS.get(payload.get("alert_type"), ALERT_SUBJECTS[None])
    subject = subject_template.format(raw_item_code=payload.get("raw_item_code", message.entity_id))
    body = (
        f"Item: {payload.get('raw_item_name', '')} ({payload.get('raw_item_code', '')})\n"
        f"Branch: {payload.get('branch_id', message.branch_id)}\n"
        f"Current quantity: {payload.get('current_quantity')}{payload.get('unit', '')}\n"
        f"Minimum level: {payload.get('threshold_quantity')}{payload.get('unit', '')}\n"
        f"Previous state: {payload.get('previous_alert_type') or 'ok'}\n"
        f"Current state: {payload.get('alert_type') or 'ok'}\n"
    )
    return subject, body


def deliver(message, recipients):
    subject, body = render_message(message)
    send_mail(
        subject=subject,
        message=body,
        from_email=getattr(settings, "DEFAULT_FROM_EMAIL", None),
        recipient_list=recipients,
        fail_silently=False,
    )


def dispatch_pending(limit=None):
    """Deliver queued notifications and record the outcome on each row.

    Failed deliveries keep the row pending with ``attempts`` incremented so a
    later run retries them, up to ``NOTIFICATION_MAX_ATTEMPTS``. The batch
    stays row-locked until its outcomes are written, so concurrent
    dispatchers never send the same message twice.
    """
    recipients = list(getattr(settings, "STOCK_ALERT_RECIPIENTS", []) or [])
    report = DispatchReport()

    with transaction.atomic():
        for message in pending_queryset(claim=True)[: _batch_size(limit)]:
            if not recipients:
                report.skipped += 1
            else:
                try:
                    deliver(message, recipients)
                except Exception as exc:
                    logger.exception(
                        "notification_dispatch_failed",
                        extra={"outbox_id": message.id, "branch_id": str(message.branch_id), "attempts": message.attempts + 1},
                    )
                    OutboxMessage.objects.filter(id=message.id).update(
                        attempts=message.attempts + 1,
                        last_error=str(exc)[:2000],
                    )
                    report.failed += 1
                    continue
                report.dispatched += 1

            OutboxMessage.objects.filter(id=message.id).update(
                attempts=message.attempts + 1,
                dispatched_at=timezone.now(),
                last_error="",
            )

    logger.info(
        "notification_dispatch_completed",
        extra={"succeeded": report.dispatched, "failed": report.failed},
    )
    return report
