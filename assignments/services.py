import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from rest_framework.exceptions import NotFound

from assignments.ledger import line_available
from assignments.models import AllocationLine, AssignmentNode, UsageEvent
from common.exceptions import (
    InvalidLRNumber,
    InvalidQuantity,
    LineNotFound,
    LRAlreadyAssigned,
    LRMissing,
    PurposeNotDispatchable,
    UsageExceedsAvailable,
)

logger = logging.getLogger(__name__)

State = AssignmentNode.DispatchState


def _locked_node(node_id):
    try:
        node = AssignmentNode.objects.select_for_update().select_related("item").filter(pk=node_id).first()
    except (DjangoValidationError, TypeError, ValueError):
        node = None
    if node is None:
        raise NotFound(f"Assignment {node_id} not found.")
    return node


@transaction.atomic
def dispatch(node_id):
    """Send a project/marketing node to the vendor. Replays are no-ops."""
    node = _locked_node(node_id)
    if node.purpose != AssignmentNode.Purpose.PROJECT_MARKETING:
        raise PurposeNotDispatchable(node_id=str(node.id), purpose=node.purpose)

    if node.state_rank() >= node.state_rank(State.DISPATCHED):
        return node

    node.dispatch_state = State.DISPATCHED
    node.dispatched_at = timezone.now()
    node.save(update_fields=["dispatch_state", "dispatched_at", "updated_at"])
    logger.info("node_dispatched", extra={"node_id": node.id, "assignment_id": node.assignment_id})
    return node


def _clean_lr(lr_no):
    lr_no = lr_no.strip() if isinstance(lr_no, str) else ""
    if not lr_no:
        raise InvalidLRNumber()
    return lr_no


def _apply_lr(node, lr_no, updated_by):
    if node.lr_no:
        if node.lr_no == lr_no:
            return node
        raise LRAlreadyAssigned(node_id=str(node.id), lr_no=node.lr_no)

    node.lr_no = lr_no
    node.lr_updated_by = updated_by or ""
    node.lr_updated_at = timezone.now()
    if node.state_rank() < node.state_rank(State.LR_ASSIGNED):
        node.dispatch_state = State.LR_ASSIGNED
    node.save(update_fields=["lr_no", "lr_updated_by", "lr_updated_at", "dispatch_state", "updated_at"])
    logger.info("lr_assigned", extra={"node_id": node.id, "assignment_id": node.assignment_id, "lr_no": lr_no, "emp_code": updated_by})
    return node


@transaction.atomic
def set_lr(node_id, lr_no, updated_by=""):
    """Record the goods-receipt number on one node.

    Setting the same number again is accepted; a different number once one
    is recorded is rejected because corrections are not part of this flow.
    """
    lr_no = _clean_lr(lr_no)
    return _apply_lr(_locked_node(node_id), lr_no, updated_by)


@transaction.atomic
def set_lr_for_assignment(assignment_id, lr_no, updated_by=""):
    """Apply one LR number to every node of a batch sharing `assignment_id`."""
    lr_no = _clean_lr(lr_no)
    nodes = list(AssignmentNode.objects.select_for_update().filter(assignment_id=assignment_id).order_by("created_at", "id"))
    if not nodes:
        raise NotFound(f"Assignment {assignment_id} not found.")

    conflicting = [node for node in nodes if node.lr_no and node.lr_no != lr_no]
    if conflicting:
        raise LRAlreadyAssigned(node_id=str(conflicting[0].id), lr_no=conflicting[0].lr_no)
    return [_apply_lr(node, lr_no, updated_by) for node in nodes]


@transaction.atomic
def send_pod(node_id):
    """Mark delivery proven and make the node visible to its recipients."""
    node = _locked_node(node_id)
    if not node.lr_no:
        raise LRMissing(node_id=str(node.id))
    if node.dispatch_state == State.POD_SENT:
        return node

    node.dispatch_state = State.POD_SENT
    node.pod_visible = True
    node.pod_sent_at = timezone.now()
    node.save(update_fields=["dispatch_state", "pod_visible", "pod_sent_at", "updated_at"])
    logger.info("pod_sent", extra={"node_id": node.id, "assignment_id": node.assignment_id})
    return node


def vendor_queue():
    return (
        AssignmentNode.objects.filter(
            purpose=AssignmentNode.Purpose.PROJECT_MARKETING,
            dispatch_state__in=[State.DISPATCHED, State.LR_ASSIGNED],
        )
        .select_related("item")
        .prefetch_related("lines")
        .order_by("dispatched_at", "created_at")
    )


@transaction.atomic
def record_usage(node_id, employee_code, reference_id, qty, used_by=""):
    """Consume part of an employee's holding on a node against a customer or project.

    The limit is what the employee still holds on this node, so boards they
    delegated away cannot also be used by them.
    """
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise InvalidQuantity(requested=qty if isinstance(qty, int) else None)
    reference_id = str(reference_id or "").strip()
    if not reference_id:
        raise InvalidQuantity("A customer or project reference is required.")

    node = _locked_node(node_id)
    employee_code = (employee_code or "").strip().upper()
    line = AllocationLine.objects.filter(node=node, employee_code=employee_code).first()
    if line is None:
        raise LineNotFound(node_id=str(node.id), emp_code=employee_code)

    available = line_available(node, employee_code)
    if qty > available:
        raise UsageExceedsAvailable(
            f"Not enough stock. Available: {available}, requested: {qty}.",
            available=available,
            requested=qty,
        )

    UsageEvent.objects.create(line=line, reference_id=reference_id, qty=qty, used_by=used_by or employee_code)
    AllocationLine.objects.filter(pk=line.pk).update(used_qty=F("used_qty") + qty)
    line.refresh_from_db()
    logger.info(
        "usage_recorded",
        extra={"node_id": node.id, "emp_code": employee_code, "reference_id": reference_id, "qty": qty},
    )
    return line
