from django.core.management.base import BaseCommand, CommandError

from assignments.ledger import check_invariants


class Command(BaseCommand):
    help = "Verify stock conservation across the catalog and every assignment tree."

    def handle(self, *args, **options):
        problems = check_invariants()
        if not problems:
            self.stdout.write(self.style.SUCCESS("Ledger is consistent."))
            return

        for problem in problems:
            self.stdout.write(self.style.WARNING(f"  - {problem}"))
        raise CommandError(f"{len(problems)} ledger inconsistency(ies) found.")
