from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import Branch
from stock.models import current_year
from stock.services import upsert_item

DEFAULT_ITEMS = [
    ("Blenze Pro PDB", 500),
    ("Impact PDB", 600),
    ("Horizon PDB", 400),
    ("Evo PDB", 350),
    ("Orna PDB", 500),
]

# (emp_code, username, first, last, role, branch code, reports_to)
DEMO_PEOPLE = [
    ("ADM001", "admin", "Asha", "Admin", "admin", "HO", None),
    ("RM001", "rm.north", "Ravi", "Menon", "regional_manager", "NORTH-1", "ADM001"),
    ("BM001", "bm.north", "Bina", "Shah", "branch_manager", "NORTH-1", "RM001"),
    ("AM001", "am.north", "Arun", "Pillai", "area_manager", "NORTH-1", "BM001"),
    ("EMP001", "emp.one", "Esha", "Rao", "employee", "NORTH-1", "AM001"),
    ("EMP002", "emp.two", "Ishan", "Das", "employee", "NORTH-1", "AM001"),
    ("BM002", "bm.south", "Kavya", "Iyer", "branch_manager", "SOUTH-1", "ADM001"),
]


class Command(BaseCommand):
    help = "Seed a demo directory and stock catalog for local development."

    def add_arguments(self, parser):
        parser.add_argument("--year", type=int, default=None, help="Catalog year (default: current year).")
        parser.add_argument("--lot", default="Lot 1")
        parser.add_argument("--password", default="demo1234")

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        branches = {}
        for code, name, region in [("HO", "Head Office", ""), ("NORTH-1", "North Branch", "North"), ("SOUTH-1", "South Branch", "South")]:
            branches[code], _ = Branch.objects.get_or_create(code=code, defaults={"name": name, "region": region})

        users = {}
        for emp_code, username, first, last, role, branch_code, manager in DEMO_PEOPLE:
            branch = branches[branch_code]
            user, created = User.objects.get_or_create(
                username=username,
                defaults={
                    "email": f"{username}@example.com",
                    "first_name": first,
                    "last_name": last,
                    "emp_code": emp_code,
                    "role": role,
                    "region": branch.region,
                    "branch": branch,
                    "is_staff": role == User.Role.ADMIN,
                    "reports_to": users.get(manager),
                },
            )
            if created:
                user.set_password(options["password"])
                user.save(update_fields=["password"])
            users[emp_code] = user

        year = options["year"] or current_year()
        for name, opening in DEFAULT_ITEMS:
            item, created = upsert_item(name, year, options["lot"], opening, updated_by="seed_demo_data")
            self.stdout.write(f"{'Created' if created else 'Updated'} {item}: opening {item.opening}, balance {item.balance}")

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(f"Users: {', '.join(sorted(users))} | password: {options['password']}")
