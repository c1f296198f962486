import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core import mail
from django.core.management import call_command
from django.test import TestCase, override_settings

from common.utils import emit_outbox
from core.models import Branch
from inventory import services
from inventory.models import RawItem
from notifications.models import OutboxMessage
from notifications.services import dispatch_pending, pending_messages, pending_queryset, render_message


class OutboxTests(TestCase):
    def setUp(self):
        self.branch = Branch.objects.create(code="NTF", name="Notify")
        self.sugar = RawItem.objects.create(
            code="SUGAR",
            name_ar="sugar-ar",
            name_en="Sugar",
            storage_unit="g",
            min_stock_level=Decimal("100"),
        )

    def test_emit_outbox_serializes_payload(self):
        entity_id = uuid.uuid4()

        message = emit_outbox(
            branch_id=self.branch.id,
            entity="stock_alert",
            entity_id=entity_id,
            op="upsert",
            payload={"current_quantity": Decimal("1.5000"), "raw_item_id": entity_id},
        )

        message.refresh_from_db()
        self.assertEqual(message.entity_id, str(entity_id))
        self.assertEqual(message.payload["current_quantity"], "1.5000")
        self.assertEqual(message.payload["raw_item_id"], str(entity_id))
        self.assertEqual(message.payload["branch_id"], str(self.branch.id))
        self.assertTrue(message.is_pending)

    def test_alert_transition_is_rendered_for_email(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")
        message = OutboxMessage.objects.get()

        subject, body = render_message(message)

        self.assertEqual(subject, "Low stock: SUGAR")
        self.assertIn("Current quantity: 40.0000g", body)
        self.assertIn("Previous state: ok", body)

    def test_dispatch_sends_mail_and_marks_rows(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")

        report = dispatch_pending()

        self.assertEqual(report.dispatched, 1)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ["stock-alerts@example.com"])
        message = OutboxMessage.objects.get()
        self.assertFalse(message.is_pending)
        self.assertEqual(message.attempts, 1)
        self.assertEqual(pending_messages(), [])

    def test_failed_delivery_stays_pending(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")

        with patch("notifications.services.send_mail", side_effect=OSError("smtp down")):
            with self.assertLogs("notifications.services", level="ERROR"):
                report = dispatch_pending()

        self.assertEqual(report.failed, 1)
        message = OutboxMessage.objects.get()
        self.assertTrue(message.is_pending)
        self.assertEqual(message.attempts, 1)
        self.assertEqual(message.last_error, "smtp down")

    def test_dispatch_claims_rows_with_skip_locked(self):
        claimed = pending_queryset(claim=True)

        self.assertTrue(claimed.query.select_for_update)
        self.assertTrue(claimed.query.select_for_update_skip_locked)
        self.assertFalse(pending_queryset().query.select_for_update)

    @override_settings(NOTIFICATION_MAX_ATTEMPTS=1)
    def test_exhausted_messages_are_not_retried(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")
        OutboxMessage.objects.update(attempts=1)

        self.assertEqual(dispatch_pending().dispatched, 0)
        self.assertEqual(len(mail.outbox), 0)

    @override_settings(STOCK_ALERT_RECIPIENTS=[])
    def test_no_recipients_skips_delivery(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")

        report = dispatch_pending()

        self.assertEqual(report.skipped, 1)
        self.assertEqual(len(mail.outbox), 0)
        self.assertFalse(OutboxMessage.objects.get().is_pending)

    def test_dispatch_command_reports_counts(self):
        services.record_stock_in(self.branch.id, self.sugar.id, 40, "g")
        services.record_stock_out(self.branch.id, self.sugar.id, 40, "g", movement_type="waste")
        out = StringIO()

        call_command("dispatch_notifications", "--limit", "1", stdout=out)

        self.assertIn("Dispatched 1 notifications, 0 failed, 0 skipped.", out.getvalue())
        self.assertEqual(len(pending_messages()), 1)
