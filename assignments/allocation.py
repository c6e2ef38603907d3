"""Creation of new assignment nodes against the stock catalog.

Two request shapes are accepted. `ItemToEmployees` issues one item to many
people and produces one node per recipient, each with its own assignment id
so every recipient's shipment can be tracked on its own. `EmployeeToItems`
issues many items to one person and produces one node per item, all sharing
a single assignment id so the recipient can later record one LR number for
the whole batch.

Administrator issues are roots and draw down the catalog. Everyone else
delegates out of a node where they are a recipient, limited by what they
still hold on that node.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import dataclass, field

from django.conf import settings
from django.db import transaction
from rest_framework.exceptions import ValidationError

from assignments.ledger import line_available
from assignments.models import AllocationLine, AssignmentNode
from common.exceptions import InsufficientStock, InvalidQuantity, LineNotFound
from core.directory import DirectoryEntry, get_employee, get_employees, normalize_code
from core.models import User
from stock import services as stock_services
from stock.models import StockItem

logger = logging.getLogger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase


@dataclass(frozen=True)
class ItemKey:
    name: str
    year: int
    lot: str = StockItem.DEFAULT_LOT


@dataclass(frozen=True)
class EmployeeQty:
    employee_code: str
    qty: int


@dataclass(frozen=True)
class ItemQty:
    item: object
    qty: int
    parent_id: object = None


@dataclass(frozen=True)
class ItemToEmployees:
    item: object
    lines: list[EmployeeQty] = field(default_factory=list)
    parent_id: object = None

    mode = AssignmentNode.Mode.ITEM_TO_EMPLOYEES


@dataclass(frozen=True)
class EmployeeToItems:
    employee_code: str
    lines: list[ItemQty] = field(default_factory=list)

    mode = AssignmentNode.Mode.EMPLOYEE_TO_ITEMS


@dataclass
class PlannedNode:
    assignment_id: str
    item: StockItem
    recipient: DirectoryEntry
    qty: int
    parent_id: object = None


def _base36(number):
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits)) or "0"


def generate_assignment_id(prefix=None):
    prefix = prefix or getattr(settings, "ASSIGNMENT_ID_PREFIX", "ASM")
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(6))
    return f"{prefix}-{_base36(time.time_ns() // 1_000_000)}-{suffix}"


def suggest_purpose(assigner, recipients):
    """Admin issues that go only to branch managers are team splits; everything else is project work."""
    roles = {recipient.role for recipient in recipients}
    if assigner.is_admin and roles == {User.Role.BRANCH_MANAGER}:
        return AssignmentNode.Purpose.TEAM_BIFURCATION
    return AssignmentNode.Purpose.PROJECT_MARKETING


def _positive_qty(qty):
    if isinstance(qty, bool):
        raise InvalidQuantity()
    try:
        value = int(qty)
    except (TypeError, ValueError):
        raise InvalidQuantity(f"Quantity {qty!r} is not a whole number.")
    if value != qty and str(value) != str(qty).strip():
        raise InvalidQuantity(f"Quantity {qty!r} is not a whole number.")
    if value <= 0:
        raise InvalidQuantity(f"Quantity must be greater than zero, got {value}.", requested=value)
    return value


def _resolve_item(ref):
    if isinstance(ref, StockItem):
        return ref
    if isinstance(ref, ItemKey):
        return stock_services.get_item(ref.name, ref.year, ref.lot)
    if isinstance(ref, dict):
        if ref.get("id") or ref.get("item_id"):
            return stock_services.get_item_by_id(ref.get("id") or ref.get("item_id"))
        return stock_services.get_item(ref.get("name"), ref.get("year"), ref.get("lot"))
    return stock_services.get_item_by_id(ref)


def _plan_item_to_employees(request, assigner):
    if not request.lines:
        raise InvalidQuantity("At least one employee line is required.")
    item = _resolve_item(request.item)

    codes = [normalize_code(line.employee_code) for line in request.lines]
    duplicates = sorted({code for code in codes if codes.count(code) > 1})
    if duplicates:
        raise InvalidQuantity("Each employee may appear only once per allocation.", emp_codes=duplicates)
    quantities = [_positive_qty(line.qty) for line in request.lines]
    recipients = get_employees(codes)

    return [
        PlannedNode(
            assignment_id=generate_assignment_id(),
            item=item,
            recipient=recipients[code],
            qty=qty,
            parent_id=request.parent_id,
        )
        for code, qty in zip(codes, quantities)
    ]


def _plan_employee_to_items(request, assigner):
    if not request.lines:
        raise InvalidQuantity("At least one item line is required.")
    recipient = get_employee(request.employee_code)

    items = [_resolve_item(line.item) for line in request.lines]
    if len({item.pk for item in items}) != len(items):
        raise InvalidQuantity("Each item may appear only once per allocation.")
    quantities = [_positive_qty(line.qty) for line in request.lines]

    batch_id = generate_assignment_id()
    return [
        PlannedNode(assignment_id=batch_id, item=item, recipient=recipient, qty=qty, parent_id=line.parent_id)
        for item, qty, line in zip(items, quantities, request.lines)
    ]


def _source_node(plan, assigner):
    """Lock and return the node the assigner delegates out of."""
    candidates = (
        AssignmentNode.objects.select_for_update()
        .filter(item=plan.item, lines__employee_code=assigner.emp_code)
        .order_by("created_at", "id")
    )

    if plan.parent_id:
        parent = candidates.filter(pk=plan.parent_id).first()
        if parent is None:
            raise LineNotFound(
                f"{assigner.emp_code} holds no {plan.item} on assignment {plan.parent_id}.",
                emp_code=assigner.emp_code,
                node_id=str(plan.parent_id),
            )
        available = line_available(parent, assigner.emp_code)
        if plan.qty > available:
            raise InsufficientStock(
                f"{assigner.emp_code} has only {available} of {plan.item} left on {parent.assignment_id}.",
                item=str(plan.item),
                balance=available,
                requested=plan.qty,
            )
        return parent

    total_available = 0
    for node in candidates:
        available = line_available(node, assigner.emp_code)
        if plan.qty <= available:
            return node
        total_available += max(available, 0)

    raise InsufficientStock(
        f"{assigner.emp_code} has only {total_available} of {plan.item} available to delegate.",
        item=str(plan.item),
        balance=total_available,
        requested=plan.qty,
    )


def _issue(plan, mode, purpose, assigner):
    parent = None
    if assigner.is_admin:
        stock_services.reserve(plan.item, plan.qty)
    else:
        parent = _source_node(plan, assigner)

    node = AssignmentNode.objects.create(
        assignment_id=plan.assignment_id,
        parent=parent,
        item=plan.item,
        mode=mode,
        purpose=purpose,
        assigned_by_code=assigner.emp_code,
        assigned_by_name=assigner.name,
        assigned_by_role=assigner.role,
        region=assigner.region,
        branch=assigner.branch,
    )
    AllocationLine.objects.create(
        node=node,
        employee_code=plan.recipient.emp_code,
        employee_name=plan.recipient.name,
        qty_received=plan.qty,
    )
    logger.info(
        "allocation_created",
        extra={
            "node_id": node.id,
            "assignment_id": node.assignment_id,
            "item": str(plan.item),
            "qty": plan.qty,
            "emp_code": plan.recipient.emp_code,
        },
    )
    return node


def create_allocation(request, assigned_by, purpose=None):
    """Validate, reserve and persist the nodes for one allocation request.

    Runs as a single transaction: if any reservation or delegation check
    fails, nothing from this call is kept. Returns the created nodes in
    request order.
    """
    assigner = assigned_by if isinstance(assigned_by, DirectoryEntry) else get_employee(assigned_by)

    if isinstance(request, ItemToEmployees):
        plans = _plan_item_to_employees(request, assigner)
    elif isinstance(request, EmployeeToItems):
        plans = _plan_employee_to_items(request, assigner)
    else:
        raise TypeError(f"Unsupported allocation request {type(request).__name__}")

    if not assigner.is_admin and any(plan.recipient.emp_code == assigner.emp_code for plan in plans):
        raise ValidationError({"lines": "Stock cannot be delegated back to the assigner."})

    purpose = purpose or suggest_purpose(assigner, [plan.recipient for plan in plans])
    if purpose not in AssignmentNode.Purpose.values:
        raise ValidationError({"purpose": f"Unknown purpose {purpose!r}."})

    with transaction.atomic():
        nodes = [_issue(plan, request.mode, purpose, assigner) for plan in plans]

    return nodes
