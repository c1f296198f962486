from django.core.management.base import BaseCommand

from notifications.services import dispatch_pending


class Command(BaseCommand):
    help = "Deliver pending stock alert notifications from the outbox."

    def add_arguments(self, parser):
        parser.add_argument("--limit", type=int, default=None, help="Maximum messages to process (default: NOTIFICATION_BATCH_SIZE).")

    def handle(self, *args, **options):
        report = dispatch_pending(limit=options.get("limit"))
        self.stdout.write(
            self.style.SUCCESS(
                f"Dispatched {report.dispatched} notifications, {report.failed} failed, {report.skipped} skipped."
            )
        )
