from django.core.management.base import BaseCommand

from core.models import Branch
from inventory.ledger import rebuild_snapshot
from inventory.models import BranchStock


class Command(BaseCommand):
    help = "Replay the stock ledger and report (or repair) snapshots that drifted from it."

    def add_arguments(self, parser):
        parser.add_argument("--branch-id", dest="branch_id", help="Optional branch UUID.")
        parser.add_argument("--fix", action="store_true", help="Overwrite drifted snapshots with the ledger total.")

    def handle(self, *args, **options):
        branch_id = options.get("branch_id")
        fix = options.get("fix", False)

        branches = Branch.objects.filter(is_active=True)
        if branch_id:
            branches = branches.filter(id=branch_id)

        checked = 0
        drifted = 0
        for branch in branches:
            raw_item_ids = BranchStock.objects.filter(branch=branch).values_list("raw_item_id", flat=True)
            for raw_item_id in raw_item_ids:
                result = rebuild_snapshot(branch.id, raw_item_id, apply=fix)
                checked += 1
                if result.consistent:
                    continue
                drifted += 1
                verb = "repaired" if result.repaired else "drift"
                self.stdout.write(
                    self.style.WARNING(
                        f"Branch {branch.code} item {raw_item_id}: {verb} "
                        f"snapshot={result.snapshot_quantity} ledger={result.ledger_quantity}"
                    )
                )

        self.stdout.write(self.style.SUCCESS(f"Reconciliation complete. Checked {checked} stock rows, {drifted} drifted."))
