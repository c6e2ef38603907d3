import uuid

from django.db import models
from django.db.models import F, Q

from stock.models import StockItem


class AssignmentNode(models.Model):
    """One issuance event in the delegation tree.

    Roots (no parent) are administrator issues that drew down the stock
    catalog; every other node is a delegation out of its parent.
    """

    class Mode(models.TextChoices):
        ITEM_TO_EMPLOYEES = "item_to_employees", "Item to employees"
        EMPLOYEE_TO_ITEMS = "employee_to_items", "Employee to items"

    class Purpose(models.TextChoices):
        TEAM_BIFURCATION = "team_bifurcation", "Team Bifurcation"
        PROJECT_MARKETING = "project_marketing", "Project/Marketing"

    class DispatchState(models.TextChoices):
        CREATED = "created", "Created"
        DISPATCHED = "dispatched", "Dispatched"
        LR_ASSIGNED = "lr_assigned", "LR Assigned"
        POD_SENT = "pod_sent", "POD Sent"

    STATE_ORDER = [
        DispatchState.CREATED,
        DispatchState.DISPATCHED,
        DispatchState.LR_ASSIGNED,
        DispatchState.POD_SENT,
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    assignment_id = models.CharField(max_length=64, db_index=True)
    parent = models.ForeignKey("self", on_delete=models.PROTECT, null=True, blank=True, related_name="children")
    item = models.ForeignKey(StockItem, on_delete=models.PROTECT, related_name="assignments")
    mode = models.CharField(max_length=32, choices=Mode.choices)
    purpose = models.CharField(max_length=32, choices=Purpose.choices)
    assigned_by_code = models.CharField(max_length=32)
    assigned_by_name = models.CharField(max_length=255, blank=True, default="")
    assigned_by_role = models.CharField(max_length=32, blank=True, default="")
    region = models.CharField(max_length=64, blank=True, default="")
    branch = models.CharField(max_length=32, blank=True, default="")
    dispatch_state = models.CharField(max_length=16, choices=DispatchState.choices, default=DispatchState.CREATED)
    dispatched_at = models.DateTimeField(null=True, blank=True)
    lr_no = models.CharField(max_length=64, blank=True, default="")
    lr_updated_by = models.CharField(max_length=150, blank=True, default="")
    lr_updated_at = models.DateTimeField(null=True, blank=True)
    pod_visible = models.BooleanField(default=False)
    pod_sent_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["parent", "assigned_by_code"], name="node_parent_assigner_idx"),
            models.Index(fields=["assigned_by_code", "created_at"], name="node_assigner_created_idx"),
            models.Index(fields=["item", "created_at"], name="node_item_created_idx"),
            models.Index(fields=["purpose", "dispatch_state"], name="node_purpose_state_idx"),
        ]

    def __str__(self):
        return f"{self.assignment_id} ({self.item})"

    @property
    def is_root(self):
        return self.parent_id is None

    def state_rank(self, state=None):
        return self.STATE_ORDER.index(state or self.dispatch_state)


class AllocationLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    node = models.ForeignKey(AssignmentNode, on_delete=models.PROTECT, related_name="lines")
    employee_code = models.CharField(max_length=32)
    employee_name = models.CharField(max_length=255, blank=True, default="")
    qty_received = models.PositiveIntegerField()
    used_qty = models.PositiveIntegerField(default=0)

    class Meta:
        indexes = [
            models.Index(fields=["employee_code"], name="line_employee_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["node", "employee_code"], name="uniq_line_node_employee"),
            models.CheckConstraint(condition=Q(used_qty__lte=F("qty_received")), name="line_used_lte_received"),
        ]

    def __str__(self):
        return f"{self.employee_code} x{self.qty_received}"


class UsageEvent(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    line = models.ForeignKey(AllocationLine, on_delete=models.PROTECT, related_name="usage_events")
    reference_id = models.CharField(max_length=128)
    qty = models.PositiveIntegerField()
    used_by = models.CharField(max_length=150, blank=True, default="")
    used_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["used_at"]
        indexes = [
            models.Index(fields=["reference_id"], name="usage_reference_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(qty__gt=0), name="usage_qty_positive"),
        ]
