"""Read-only view of the organisational directory.

The ledger never writes to the directory; it resolves employee codes to
frozen snapshots so node rows keep the name and role that applied when the
stock moved.
"""
from __future__ import annotations

from dataclasses import dataclass

from common.exceptions import UnknownEmployee
from core.models import User


@dataclass(frozen=True)
class DirectoryEntry:
    emp_code: str
    name: str
    role: str
    region: str
    branch: str
    reports_to: str | None

    @property
    def is_admin(self) -> bool:
        return self.role == User.Role.ADMIN


def normalize_code(emp_code) -> str:
    return str(emp_code or "").strip().upper()


def _entry(user: User) -> DirectoryEntry:
    reports_to = user.reports_to.emp_code if user.reports_to_id and user.reports_to else None
    role = User.Role.ADMIN if user.is_superuser else user.role
    return DirectoryEntry(
        emp_code=user.emp_code,
        name=user.display_name,
        role=role,
        region=user.region or (user.branch.region if user.branch_id else ""),
        branch=user.branch.code if user.branch_id else "",
        reports_to=reports_to,
    )


def _active_users():
    return User.objects.filter(is_active=True, emp_code__isnull=False).select_related("branch", "reports_to")


def get_employee(emp_code) -> DirectoryEntry:
    code = normalize_code(emp_code)
    user = _active_users().filter(emp_code=code).first() if code else None
    if user is None:
        raise UnknownEmployee(f"Employee {code or '<blank>'} is not in the directory.", emp_code=code)
    return _entry(user)


def get_employees(emp_codes) -> dict[str, DirectoryEntry]:
    codes = [normalize_code(code) for code in emp_codes]
    found = {user.emp_code: _entry(user) for user in _active_users().filter(emp_code__in=codes)}
    missing = [code for code in codes if code not in found]
    if missing:
        raise UnknownEmployee(
            f"Unknown employee code(s): {', '.join(missing)}.",
            emp_codes=missing,
        )
    return found


def entry_for_user(user) -> DirectoryEntry:
    if not getattr(user, "emp_code", None):
        raise UnknownEmployee("Authenticated user has no employee code in the directory.")
    return get_employee(user.emp_code)
