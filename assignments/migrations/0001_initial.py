import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("stock", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="AssignmentNode",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("assignment_id", models.CharField(db_index=True, max_length=64)),
                (
                    "mode",
                    models.CharField(
                        choices=[("item_to_employees", "Item to employees"), ("employee_to_items", "Employee to items")],
                        max_length=32,
                    ),
                ),
                (
                    "purpose",
                    models.CharField(
                        choices=[("team_bifurcation", "Team Bifurcation"), ("project_marketing", "Project/Marketing")],
                        max_length=32,
                    ),
                ),
                ("assigned_by_code", models.CharField(max_length=32)),
                ("assigned_by_name", models.CharField(blank=True, default="", max_length=255)),
                ("assigned_by_role", models.CharField(blank=True, default="", max_length=32)),
                ("region", models.CharField(blank=True, default="", max_length=64)),
                ("branch", models.CharField(blank=True, default="", max_length=32)),
                (
                    "dispatch_state",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("dispatched", "Dispatched"),
                            ("lr_assigned", "LR Assigned"),
                            ("pod_sent", "POD Sent"),
                        ],
                        default="created",
                        max_length=16,
                    ),
                ),
                ("dispatched_at", models.DateTimeField(blank=True, null=True)),
                ("lr_no", models.CharField(blank=True, default="", max_length=64)),
                ("lr_updated_by", models.CharField(blank=True, default="", max_length=150)),
                ("lr_updated_at", models.DateTimeField(blank=True, null=True)),
                ("pod_visible", models.BooleanField(default=False)),
                ("pod_sent_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "item",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="assignments", to="stock.stockitem"
                    ),
                ),
                (
                    "parent",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="children",
                        to="assignments.assignmentnode",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["parent", "assigned_by_code"], name="node_parent_assigner_idx"),
                    models.Index(fields=["assigned_by_code", "created_at"], name="node_assigner_created_idx"),
                    models.Index(fields=["item", "created_at"], name="node_item_created_idx"),
                    models.Index(fields=["purpose", "dispatch_state"], name="node_purpose_state_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="AllocationLine",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("employee_code", models.CharField(max_length=32)),
                ("employee_name", models.CharField(blank=True, default="", max_length=255)),
                ("qty_received", models.PositiveIntegerField()),
                ("used_qty", models.PositiveIntegerField(default=0)),
                (
                    "node",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT, related_name="lines", to="assignments.assignmentnode"
                    ),
                ),
            ],
            options={
                "indexes": [
                    models.Index(fields=["employee_code"], name="line_employee_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=("node", "employee_code"), name="uniq_line_node_employee"),
                    models.CheckConstraint(
                        condition=models.Q(("used_qty__lte", models.F("qty_received"))),
                        name="line_used_lte_received",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="UsageEvent",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("reference_id", models.CharField(max_length=128)),
                ("qty", models.PositiveIntegerField()),
                ("used_by", models.CharField(blank=True, default="", max_length=150)),
                ("used_at", models.DateTimeField(auto_now_add=True)),
                (
                    "line",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="usage_events",
                        to="assignments.allocationline",
                    ),
                ),
            ],
            options={
                "ordering": ["used_at"],
                "indexes": [
                    models.Index(fields=["reference_id"], name="usage_reference_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("qty__gt", 0)), name="usage_qty_positive"),
                ],
            },
        ),
    ]
