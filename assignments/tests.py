import threading
import unittest
from datetime import timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import ValidationError
from rest_framework.test import APIClient

from assignments import services
from assignments.allocation import (
    EmployeeQty,
    EmployeeToItems,
    ItemKey,
    ItemQty,
    ItemToEmployees,
    create_allocation,
    generate_assignment_id,
)
from assignments.ledger import LedgerFilters, build_tree, check_invariants, employee_stock, line_available, org_summary
from assignments.models import AllocationLine, AssignmentNode, UsageEvent
from common.exceptions import (
    InsufficientStock,
    InvalidLRNumber,
    InvalidQuantity,
    LineNotFound,
    LRAlreadyAssigned,
    LRMissing,
    PurposeNotDispatchable,
    UnknownEmployee,
    UnknownItem,
    UsageExceedsAvailable,
)
from core.models import AuditLog, Branch
from stock.models import StockItem
from stock.services import reserve, upsert_item


class LedgerFixtureMixin:
    """Directory of one region's hierarchy plus a second branch manager in another region."""

    def create_directory(self):
        user_model = get_user_model()
        self.north = Branch.objects.create(code="N1", name="North One", region="North")
        self.south = Branch.objects.create(code="S1", name="South One", region="South")

        def make(username, emp_code, role, branch=None, reports_to=None):
            return user_model.objects.create_user(
                username=username,
                password="pass1234",
                first_name=username.title(),
                emp_code=emp_code,
                role=role,
                region=branch.region if branch else "",
                branch=branch,
                reports_to=reports_to,
            )

        self.admin = make("admin", "ADM1", "admin")
        self.rm = make("rm", "RM1", "regional_manager", self.north, self.admin)
        self.bm1 = make("bm-one", "BM1", "branch_manager", self.north, self.rm)
        self.bm2 = make("bm-two", "BM2", "branch_manager", self.south, self.admin)
        self.am = make("am", "AM1", "area_manager", self.north, self.bm1)
        self.emp1 = make("emp-one", "EMP1", "employee", self.north, self.am)
        self.emp2 = make("emp-two", "EMP2", "employee", self.north, self.am)

    def issue(self, item, lines, assigned_by="ADM1", parent_id=None, purpose=None):
        request = ItemToEmployees(
            item=item,
            lines=[EmployeeQty(employee_code=code, qty=qty) for code, qty in lines],
            parent_id=parent_id,
        )
        return create_allocation(request, assigned_by, purpose=purpose)


class AllocationEngineTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)

    def test_admin_issue_reserves_catalog_and_second_issue_fails_without_side_effects(self):
        [node] = self.issue(self.board_x, [("BM1", 60)])

        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.balance, 40)
        self.assertIsNone(node.parent_id)
        self.assertEqual(node.purpose, AssignmentNode.Purpose.TEAM_BIFURCATION)

        with self.assertRaises(InsufficientStock) as ctx:
            self.issue(self.board_x, [("BM2", 50)])

        self.assertEqual(ctx.exception.balance, 40)
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.balance, 40)
        self.assertEqual(AssignmentNode.objects.count(), 1)

    def test_item_to_employees_gives_each_recipient_its_own_assignment_id(self):
        nodes = self.issue(self.board_x, [("EMP1", 5), ("EMP2", 3)])

        self.assertEqual(len(nodes), 2)
        self.assertNotEqual(nodes[0].assignment_id, nodes[1].assignment_id)
        self.assertEqual([node.lines.get().employee_code for node in nodes], ["EMP1", "EMP2"])
        self.assertTrue(all(node.mode == AssignmentNode.Mode.ITEM_TO_EMPLOYEES for node in nodes))
        self.assertTrue(all(node.purpose == AssignmentNode.Purpose.PROJECT_MARKETING for node in nodes))
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 8)

    def test_employee_to_items_batch_is_all_or_nothing(self):
        item_a, _ = upsert_item("Board-A", 2025, "Lot 1", 50)
        item_b, _ = upsert_item("Board-B", 2025, "Lot 1", 2)
        request = EmployeeToItems(employee_code="EMP1", lines=[ItemQty(item=item_a, qty=5), ItemQty(item=item_b, qty=3)])

        with self.assertRaises(InsufficientStock):
            create_allocation(request, "ADM1")

        item_a.refresh_from_db()
        item_b.refresh_from_db()
        self.assertEqual(item_a.issued, 0)
        self.assertEqual(item_b.issued, 0)
        self.assertFalse(AssignmentNode.objects.exists())
        self.assertFalse(AllocationLine.objects.exists())

    def test_employee_to_items_batch_shares_one_assignment_id(self):
        item_a, _ = upsert_item("Board-A", 2025, "Lot 1", 50)
        request = EmployeeToItems(
            employee_code="emp1",
            lines=[ItemQty(item=ItemKey("Board-A", 2025), qty=5), ItemQty(item={"id": str(self.board_x.id)}, qty=2)],
        )

        nodes = create_allocation(request, "ADM1")

        self.assertEqual(len(nodes), 2)
        self.assertEqual(len({node.assignment_id for node in nodes}), 1)
        self.assertEqual({node.item_id for node in nodes}, {item_a.id, self.board_x.id})
        self.assertTrue(all(node.mode == AssignmentNode.Mode.EMPLOYEE_TO_ITEMS for node in nodes))

    def test_unknown_employee_or_item_rejects_whole_request(self):
        with self.assertRaises(UnknownEmployee) as ctx:
            self.issue(self.board_x, [("EMP1", 5), ("GHOST", 1)])
        self.assertEqual(ctx.exception.emp_codes, ["GHOST"])

        with self.assertRaises(UnknownItem):
            self.issue(ItemKey("Board-Z", 2025), [("EMP1", 5)])

        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 0)

    def test_invalid_quantities_are_rejected_before_any_reservation(self):
        for qty in (0, -3, "x", 1.5):
            with self.assertRaises(InvalidQuantity):
                self.issue(self.board_x, [("EMP1", 5), ("EMP2", qty)])

        with self.assertRaises(InvalidQuantity):
            self.issue(self.board_x, [])

        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 0)

    def test_duplicate_recipients_are_rejected(self):
        with self.assertRaises(InvalidQuantity):
            self.issue(self.board_x, [("EMP1", 5), ("emp1", 1)])

    def test_delegation_draws_from_delegators_holding_not_catalog(self):
        [root] = self.issue(self.board_x, [("EMP1", 10)])

        [child] = self.issue(self.board_x, [("EMP2", 4)], assigned_by="EMP1")

        self.assertEqual(child.parent_id, root.id)
        self.assertEqual(child.assigned_by_code, "EMP1")
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 10)
        self.assertEqual(line_available(root, "EMP1"), 6)

        stock = employee_stock("EMP1")
        self.assertEqual(stock["items"][0]["assigned"], 10)
        self.assertEqual(stock["items"][0]["used"], 0)
        self.assertEqual(stock["items"][0]["delegated_out"], 4)
        self.assertEqual(stock["items"][0]["available"], 6)
        self.assertEqual(employee_stock("EMP2")["totals"]["available"], 4)

    def test_delegation_beyond_holding_fails(self):
        self.issue(self.board_x, [("EMP1", 10)])
        self.issue(self.board_x, [("EMP2", 4)], assigned_by="EMP1")

        with self.assertRaises(InsufficientStock) as ctx:
            self.issue(self.board_x, [("EMP2", 7)], assigned_by="EMP1")

        self.assertEqual(ctx.exception.balance, 6)
        self.assertEqual(AssignmentNode.objects.filter(assigned_by_code="EMP1").count(), 1)

    def test_delegation_without_any_holding_fails(self):
        with self.assertRaises(InsufficientStock) as ctx:
            self.issue(self.board_x, [("EMP2", 1)], assigned_by="AM1")

        self.assertEqual(ctx.exception.balance, 0)

    def test_delegation_from_explicit_parent(self):
        [first] = self.issue(self.board_x, [("AM1", 3)])
        [second] = self.issue(self.board_x, [("AM1", 8)])

        [child] = self.issue(self.board_x, [("EMP1", 5)], assigned_by="AM1", parent_id=second.id)
        self.assertEqual(child.parent_id, second.id)

        with self.assertRaises(InsufficientStock):
            self.issue(self.board_x, [("EMP1", 4)], assigned_by="AM1", parent_id=first.id)
        with self.assertRaises(LineNotFound):
            self.issue(self.board_x, [("EMP2", 1)], assigned_by="EMP1", parent_id=second.id)

    def test_delegation_picks_oldest_node_with_enough_left(self):
        [first] = self.issue(self.board_x, [("AM1", 3)])
        [second] = self.issue(self.board_x, [("AM1", 8)])

        [small] = self.issue(self.board_x, [("EMP1", 2)], assigned_by="AM1")
        [large] = self.issue(self.board_x, [("EMP2", 6)], assigned_by="AM1")

        self.assertEqual(small.parent_id, first.id)
        self.assertEqual(large.parent_id, second.id)

    def test_non_admin_cannot_delegate_to_self(self):
        self.issue(self.board_x, [("AM1", 5)])

        with self.assertRaises(ValidationError):
            self.issue(self.board_x, [("AM1", 1)], assigned_by="AM1")

    def test_node_snapshots_assigner_details(self):
        [node] = self.issue(self.board_x, [("BM1", 10)])
        [child] = self.issue(self.board_x, [("AM1", 4)], assigned_by="BM1")

        self.assertEqual(node.assigned_by_role, "admin")
        self.assertEqual(child.assigned_by_role, "branch_manager")
        self.assertEqual(child.region, "North")
        self.assertEqual(child.branch, "N1")
        self.assertEqual(child.lines.get().employee_name, "Am")

    @override_settings(ASSIGNMENT_ID_PREFIX="TST")
    def test_generated_assignment_ids_use_prefix_and_are_unique(self):
        ids = {generate_assignment_id() for _ in range(50)}

        self.assertEqual(len(ids), 50)
        self.assertTrue(all(value.startswith("TST-") for value in ids))
        self.assertTrue(generate_assignment_id("ASG").startswith("ASG-"))


class UsageLedgerTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)
        [self.root] = self.issue(self.board_x, [("EMP1", 10)])
        self.issue(self.board_x, [("EMP2", 4)], assigned_by="EMP1")

    def test_usage_is_limited_by_what_is_left_after_delegation(self):
        with self.assertRaises(UsageExceedsAvailable) as ctx:
            services.record_usage(self.root.id, "EMP1", "CUST-001", 7)

        self.assertEqual(ctx.exception.available, 6)
        self.assertFalse(UsageEvent.objects.exists())

    def test_usage_over_received_quantity_fails(self):
        [node] = self.issue(self.board_x, [("AM1", 6)])

        with self.assertRaises(UsageExceedsAvailable):
            services.record_usage(node.id, "AM1", "CUST-001", 7)

    def test_usage_is_recorded_with_event(self):
        line = services.record_usage(self.root.id, "emp1", "CUST-001", 4)
        line = services.record_usage(self.root.id, "EMP1", "PRJ-9", 2)

        self.assertEqual(line.used_qty, 6)
        self.assertCountEqual(
            list(line.usage_events.values_list("reference_id", "qty")),
            [("CUST-001", 4), ("PRJ-9", 2)],
        )
        self.assertEqual(line_available(self.root, "EMP1"), 0)
        with self.assertRaises(UsageExceedsAvailable):
            services.record_usage(self.root.id, "EMP1", "CUST-002", 1)

    def test_usage_rejects_bad_input(self):
        with self.assertRaises(InvalidQuantity):
            services.record_usage(self.root.id, "EMP1", "CUST-001", 0)
        with self.assertRaises(InvalidQuantity):
            services.record_usage(self.root.id, "EMP1", "   ", 1)
        with self.assertRaises(LineNotFound):
            services.record_usage(self.root.id, "EMP2", "CUST-001", 1)

    def test_invariants_hold_after_mixed_operations(self):
        child = AssignmentNode.objects.get(parent=self.root)
        services.record_usage(self.root.id, "EMP1", "CUST-001", 5)
        services.record_usage(child.id, "EMP2", "CUST-002", 4)
        self.issue(self.board_x, [("BM1", 30)])

        self.assertEqual(check_invariants(), [])
        stock = employee_stock("EMP1")["totals"]
        self.assertEqual(stock["available"], stock["assigned"] - stock["used"] - stock["delegated_out"])
        self.assertEqual(stock["available"], 1)

    def test_check_invariants_reports_drift(self):
        AllocationLine.objects.filter(node=self.root).update(used_qty=3)

        problems = check_invariants()

        self.assertEqual(len(problems), 1)
        self.assertIn("usage events 0", problems[0])

    def test_ledger_check_command(self):
        call_command("ledger_check")

        AllocationLine.objects.filter(node=self.root).update(used_qty=3)
        with self.assertRaises(CommandError):
            call_command("ledger_check")


class DispatchWorkflowTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)
        [self.team_node] = self.issue(self.board_x, [("BM1", 20)])
        [self.project_node] = self.issue(self.board_x, [("EMP1", 5)])

    def test_team_bifurcation_node_cannot_be_dispatched(self):
        with self.assertRaises(PurposeNotDispatchable):
            services.dispatch(self.team_node.id)

        self.team_node.refresh_from_db()
        self.assertEqual(self.team_node.dispatch_state, AssignmentNode.DispatchState.CREATED)

    def test_pod_requires_lr(self):
        services.dispatch(self.project_node.id)

        with self.assertRaises(LRMissing):
            services.send_pod(self.project_node.id)

        node = services.set_lr(self.project_node.id, " LR123 ", updated_by="vendor")
        self.assertEqual(node.lr_no, "LR123")
        self.assertEqual(node.dispatch_state, AssignmentNode.DispatchState.LR_ASSIGNED)

        node = services.send_pod(self.project_node.id)
        self.assertEqual(node.dispatch_state, AssignmentNode.DispatchState.POD_SENT)
        self.assertTrue(node.pod_visible)

    def test_states_never_move_backwards(self):
        first = services.dispatch(self.project_node.id)
        replay = services.dispatch(self.project_node.id)
        self.assertEqual(replay.dispatched_at, first.dispatched_at)

        services.set_lr(self.project_node.id, "LR123")
        services.send_pod(self.project_node.id)

        self.assertEqual(services.dispatch(self.project_node.id).dispatch_state, AssignmentNode.DispatchState.POD_SENT)
        self.assertEqual(services.set_lr(self.project_node.id, "LR123").dispatch_state, AssignmentNode.DispatchState.POD_SENT)
        self.assertEqual(services.send_pod(self.project_node.id).dispatch_state, AssignmentNode.DispatchState.POD_SENT)

    def test_lr_cannot_be_replaced_or_blank(self):
        services.set_lr(self.project_node.id, "LR123")

        with self.assertRaises(LRAlreadyAssigned):
            services.set_lr(self.project_node.id, "LR999")
        with self.assertRaises(InvalidLRNumber):
            services.set_lr(self.project_node.id, "  ")

        self.project_node.refresh_from_db()
        self.assertEqual(self.project_node.lr_no, "LR123")

    def test_batch_lr_applies_to_every_node_of_the_assignment(self):
        item_b, _ = upsert_item("Board-B", 2025, "Lot 1", 10)
        nodes = create_allocation(
            EmployeeToItems(employee_code="EMP2", lines=[ItemQty(item=self.board_x, qty=2), ItemQty(item=item_b, qty=1)]),
            "ADM1",
        )

        updated = services.set_lr_for_assignment(nodes[0].assignment_id, "LR-BATCH")

        self.assertEqual(len(updated), 2)
        self.assertEqual(
            set(AssignmentNode.objects.filter(assignment_id=nodes[0].assignment_id).values_list("lr_no", flat=True)),
            {"LR-BATCH"},
        )

    def test_vendor_queue_lists_dispatched_until_pod(self):
        self.assertEqual(list(services.vendor_queue()), [])

        services.dispatch(self.project_node.id)
        self.assertEqual([node.id for node in services.vendor_queue()], [self.project_node.id])

        services.set_lr(self.project_node.id, "LR1")
        self.assertEqual(len(services.vendor_queue()), 1)

        services.send_pod(self.project_node.id)
        self.assertEqual(list(services.vendor_queue()), [])

    def test_workflow_leaves_quantities_untouched(self):
        services.dispatch(self.project_node.id)
        services.set_lr(self.project_node.id, "LR1")
        services.send_pod(self.project_node.id)

        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 25)
        self.assertEqual(employee_stock("EMP1")["totals"]["available"], 5)


class LedgerQueryTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)
        self.board_y, _ = upsert_item("Board-Y", 2025, "Lot 2", 50)

    def build_chain(self):
        [root] = self.issue(self.board_x, [("RM1", 50)])
        [bm] = self.issue(self.board_x, [("BM1", 30)], assigned_by="RM1")
        [am] = self.issue(self.board_x, [("AM1", 20)], assigned_by="BM1")
        [emp] = self.issue(self.board_x, [("EMP1", 10)], assigned_by="AM1")
        return root, bm, am, emp

    def test_empty_forest(self):
        self.assertEqual(build_tree(), [])
        self.assertEqual(employee_stock("EMP1")["items"], [])

    def test_tree_reconstructs_any_depth(self):
        root, bm, am, emp = self.build_chain()
        services.record_usage(emp.id, "EMP1", "CUST-1", 3)

        [tree] = build_tree()

        self.assertEqual(tree["id"], str(root.id))
        level = tree
        for node in (bm, am, emp):
            [level] = level["children"]
            self.assertEqual(level["id"], str(node.id))
        self.assertEqual(level["children"], [])
        self.assertEqual(level["lines"][0]["used_qty"], 3)
        self.assertEqual(level["lines"][0]["usage_events"][0]["reference_id"], "CUST-1")
        self.assertEqual(tree["lines"][0]["delegated_out"], 30)
        self.assertEqual(tree["lines"][0]["available"], 20)

    def test_tree_lists_newest_root_first(self):
        [older] = self.issue(self.board_x, [("BM1", 5)])
        [newer] = self.issue(self.board_y, [("BM2", 5)])

        self.assertEqual([root["id"] for root in build_tree()], [str(newer.id), str(older.id)])

    def test_tree_filters_keep_whole_matching_subtree(self):
        root, *_ = self.build_chain()
        self.issue(self.board_y, [("BM2", 5)])

        by_employee = build_tree(LedgerFilters(employee="emp1"))
        by_item = build_tree(LedgerFilters(item="board-y"))
        by_lot = build_tree(LedgerFilters.from_params({"lot": "Lot 1"}))
        by_root = build_tree(LedgerFilters(root_id=root.assignment_id))
        by_role = build_tree(LedgerFilters(role="area_manager"))

        self.assertEqual([tree["id"] for tree in by_employee], [str(root.id)])
        self.assertEqual(len(by_employee[0]["children"]), 1)
        self.assertEqual([tree["item"]["name"] for tree in by_item], ["Board-Y"])
        self.assertEqual([tree["id"] for tree in by_lot], [str(root.id)])
        self.assertEqual([tree["id"] for tree in by_root], [str(root.id)])
        self.assertEqual([tree["id"] for tree in by_role], [str(root.id)])
        self.assertEqual(build_tree(LedgerFilters(root_id="nothing-like-this")), [])

    def test_filter_params_are_validated(self):
        with self.assertRaises(ValidationError):
            LedgerFilters.from_params({"date_from": "yesterday"})
        with self.assertRaises(ValidationError):
            LedgerFilters.from_params({"date_from": "2025-02-01", "date_to": "2025-01-01"})
        with self.assertRaises(ValidationError):
            LedgerFilters.from_params({"purpose": "gifts"})
        self.assertIsNone(LedgerFilters.from_params({"lot": "all"}).lot)

    def test_employee_stock_per_item(self):
        self.build_chain()
        self.issue(self.board_y, [("AM1", 4)])

        stock = employee_stock("AM1")
        rows = {row["item"]["name"]: row for row in stock["items"]}

        self.assertEqual(rows["Board-X"]["assigned"], 20)
        self.assertEqual(rows["Board-X"]["delegated_out"], 10)
        self.assertEqual(rows["Board-X"]["available"], 10)
        self.assertEqual(rows["Board-Y"]["available"], 4)
        self.assertEqual(stock["totals"]["available"], 14)

        only_y = employee_stock("AM1", LedgerFilters(item="Board-Y"))
        self.assertEqual([row["item"]["name"] for row in only_y["items"]], ["Board-Y"])

    def test_employee_stock_date_window_follows_the_source_node(self):
        [root] = self.issue(self.board_x, [("BM1", 10)])
        AssignmentNode.objects.filter(pk=root.pk).update(created_at=timezone.now() - timedelta(days=30))
        self.issue(self.board_x, [("AM1", 4)], assigned_by="BM1")
        today = timezone.localdate()

        recent = employee_stock("BM1", LedgerFilters(date_from=today))
        earlier = employee_stock("BM1", LedgerFilters(date_to=today - timedelta(days=1)))

        self.assertEqual(recent["items"], [])
        self.assertEqual(recent["totals"]["available"], 0)
        [row] = earlier["items"]
        self.assertEqual((row["assigned"], row["delegated_out"], row["available"]), (10, 4, 6))

    def test_org_summary_rollup(self):
        root, bm, am, emp = self.build_chain()
        services.record_usage(emp.id, "EMP1", "CUST-1", 3)
        services.record_usage(bm.id, "BM1", "CUST-2", 2)
        self.issue(self.board_y, [("BM2", 5)])

        summary = org_summary(2025)

        self.assertEqual(summary["production"], 150)
        self.assertEqual(summary["issued"], 55)
        self.assertEqual(summary["balance"], 95)
        self.assertEqual(summary["assigned"], 55)
        self.assertEqual(summary["used"], 5)
        self.assertEqual(summary["stock"], 50)
        self.assertEqual(summary["lot"], "all")
        self.assertEqual(summary["lot_breakdown"]["Lot 1"]["assigned"], 50)
        self.assertEqual(summary["lot_breakdown"]["Lot 2"]["production"], 50)
        people = {row["employee_code"]: row for row in summary["person_stock"]}
        self.assertEqual(people["BM1"]["available"], 30 - 2 - 20)
        self.assertEqual(people["EMP1"]["available"], 7)

    def test_org_summary_filters_by_lot_and_region(self):
        self.build_chain()
        self.issue(self.board_x, [("BM2", 5)])
        self.issue(self.board_y, [("BM2", 5)])

        lot_one = org_summary(2025, lot="Lot 1")
        north = org_summary(2025, region="north")
        south = org_summary(2025, region="South")

        self.assertEqual(lot_one["production"], 100)
        self.assertEqual(lot_one["assigned"], 55)
        self.assertEqual(north["assigned"], 50)
        self.assertEqual(south["assigned"], 10)
        self.assertEqual(north["production"], 150)
        self.assertEqual(org_summary(2030)["assigned"], 0)


class AssignmentApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)

    def post_allocation(self, user, payload, **extra):
        self.client.force_authenticate(user=user)
        return self.client.post("/api/v1/assignments/", payload, format="json", **extra)

    def item_payload(self, lines, item=None):
        return {
            "mode": "item_to_employees",
            "item": {"item_id": str((item or self.board_x).id)},
            "lines": [{"employee_code": code, "qty": qty} for code, qty in lines],
        }

    def test_admin_allocation_then_insufficient_stock_envelope(self):
        created = self.post_allocation(self.admin, self.item_payload([("BM1", 60)]), HTTP_X_REQUEST_ID="req-alloc")

        self.assertEqual(created.status_code, 201)
        body = created.json()
        self.assertEqual(len(body["assignment_ids"]), 1)
        self.assertEqual(body["nodes"][0]["purpose"], "team_bifurcation")
        self.assertEqual(body["nodes"][0]["lines"][0]["qty_received"], 60)
        self.assertTrue(AuditLog.objects.filter(action="assignment.create", request_id="req-alloc").exists())

        rejected = self.post_allocation(self.admin, self.item_payload([("BM2", 50)]))

        self.assertEqual(rejected.status_code, 409)
        envelope = rejected.json()
        self.assertEqual(envelope["code"], "insufficient_stock")
        self.assertEqual(envelope["status"], 409)
        self.assertEqual(envelope["errors"]["balance"], 40)
        self.assertEqual(envelope["errors"]["requested"], 50)
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.balance, 40)

    def test_allocation_by_item_key_and_explicit_purpose(self):
        payload = {
            "mode": "item_to_employees",
            "purpose": "project_marketing",
            "item": {"name": "Board-X", "year": 2025},
            "lines": [{"employee_code": "BM1", "qty": 5}],
        }

        response = self.post_allocation(self.admin, payload)

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["nodes"][0]["purpose"], "project_marketing")

    def test_employee_to_items_batch_over_api(self):
        item_b, _ = upsert_item("Board-B", 2025, "Lot 1", 2)
        payload = {
            "mode": "employee_to_items",
            "employee_code": "EMP1",
            "lines": [{"item_id": str(self.board_x.id), "qty": 5}, {"item_id": str(item_b.id), "qty": 3}],
        }

        rejected = self.post_allocation(self.admin, payload)
        self.assertEqual(rejected.status_code, 409)
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 0)

        payload["lines"][1]["qty"] = 2
        created = self.post_allocation(self.admin, payload)
        self.assertEqual(created.status_code, 201)
        self.assertEqual(len(created.json()["assignment_ids"]), 1)
        self.assertEqual(len(created.json()["nodes"]), 2)

    def test_request_errors_map_to_stable_codes(self):
        zero = self.post_allocation(self.admin, self.item_payload([("EMP1", 0)]))
        ghost = self.post_allocation(self.admin, self.item_payload([("GHOST", 1)]))
        missing_item = self.post_allocation(self.admin, {"mode": "item_to_employees", "lines": []})

        self.assertEqual((zero.status_code, zero.json()["code"]), (400, "invalid_quantity"))
        self.assertEqual((ghost.status_code, ghost.json()["code"]), (404, "unknown_employee"))
        self.assertEqual(ghost.json()["errors"]["emp_codes"], ["GHOST"])
        self.assertEqual((missing_item.status_code, missing_item.json()["code"]), (400, "validation_error"))

    def test_manager_delegates_and_employee_cannot_allocate(self):
        self.post_allocation(self.admin, self.item_payload([("BM1", 60)]))

        delegated = self.post_allocation(self.bm1, self.item_payload([("AM1", 20)]))
        self.assertEqual(delegated.status_code, 201)
        self.assertIsNotNone(delegated.json()["nodes"][0]["parent"])

        too_much = self.post_allocation(self.bm1, self.item_payload([("AM1", 41)]))
        self.assertEqual(too_much.status_code, 409)
        self.assertEqual(too_much.json()["errors"]["balance"], 40)

        forbidden = self.post_allocation(self.emp1, self.item_payload([("EMP2", 1)]))
        self.assertEqual(forbidden.status_code, 403)

    def test_dispatch_lr_pod_flow(self):
        node_id = self.post_allocation(self.admin, self.item_payload([("EMP1", 5)])).json()["nodes"][0]["id"]

        self.client.force_authenticate(user=self.emp1)
        self.assertEqual(self.client.get("/api/v1/assignments/mine/").json(), [])
        self.assertEqual(self.client.post(f"/api/v1/assignments/{node_id}/dispatch/").status_code, 403)

        self.client.force_authenticate(user=self.admin)
        dispatched = self.client.post(f"/api/v1/assignments/{node_id}/dispatch/")
        early_pod = self.client.post(f"/api/v1/assignments/{node_id}/pod/")
        queue = self.client.get("/api/v1/assignments/vendor-queue/")

        self.assertEqual(dispatched.json()["dispatch_state"], "dispatched")
        self.assertEqual((early_pod.status_code, early_pod.json()["code"]), (409, "lr_missing"))
        self.assertEqual([row["id"] for row in queue.json()], [node_id])

        self.client.force_authenticate(user=self.emp1)
        lr = self.client.post(f"/api/v1/assignments/{node_id}/lr/", {"lr_no": "LR123"}, format="json")
        conflicting = self.client.post(f"/api/v1/assignments/{node_id}/lr/", {"lr_no": "LR999"}, format="json")
        self.assertEqual(lr.json()["lr_no"], "LR123")
        self.assertEqual(lr.json()["lr_updated_by"], "emp-one")
        self.assertEqual((conflicting.status_code, conflicting.json()["code"]), (409, "lr_already_assigned"))

        self.client.force_authenticate(user=self.admin)
        pod = self.client.post(f"/api/v1/assignments/{node_id}/pod/")
        self.assertEqual(pod.json()["dispatch_state"], "pod_sent")
        self.assertTrue(pod.json()["pod_visible"])
        log = AuditLog.objects.get(action="assignment.pod")
        self.assertEqual(log.before_snapshot["dispatch_state"], "lr_assigned")

        self.client.force_authenticate(user=self.emp1)
        self.assertEqual([row["id"] for row in self.client.get("/api/v1/assignments/mine/").json()], [node_id])

    def test_team_split_is_not_dispatchable_but_visible_to_recipient(self):
        node_id = self.post_allocation(self.admin, self.item_payload([("BM1", 5)])).json()["nodes"][0]["id"]

        self.client.force_authenticate(user=self.admin)
        response = self.client.post(f"/api/v1/assignments/{node_id}/dispatch/")
        self.assertEqual((response.status_code, response.json()["code"]), (409, "purpose_not_dispatchable"))

        self.client.force_authenticate(user=self.bm1)
        self.assertEqual([row["id"] for row in self.client.get("/api/v1/assignments/mine/").json()], [node_id])

    def test_batch_lr_endpoint(self):
        item_b, _ = upsert_item("Board-B", 2025, "Lot 1", 10)
        payload = {
            "mode": "employee_to_items",
            "employee_code": "EMP1",
            "lines": [{"item_id": str(self.board_x.id), "qty": 1}, {"item_id": str(item_b.id), "qty": 1}],
        }
        assignment_id = self.post_allocation(self.admin, payload).json()["assignment_ids"][0]

        self.client.force_authenticate(user=self.emp1)
        response = self.client.post(f"/api/v1/assignments/batches/{assignment_id}/lr/", {"lr_no": "LR-77"}, format="json")
        missing = self.client.post("/api/v1/assignments/batches/NOPE/lr/", {"lr_no": "LR-77"}, format="json")
        blank = self.client.post(f"/api/v1/assignments/batches/{assignment_id}/lr/", {"lr_no": ""}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual({node["lr_no"] for node in response.json()["nodes"]}, {"LR-77"})
        self.assertEqual(missing.status_code, 404)
        self.assertEqual((blank.status_code, blank.json()["code"]), (400, "invalid_lr_number"))

    def test_batch_lr_is_hidden_from_people_outside_the_batch(self):
        item_b, _ = upsert_item("Board-B", 2025, "Lot 1", 10)
        payload = {
            "mode": "employee_to_items",
            "employee_code": "EMP1",
            "lines": [{"item_id": str(self.board_x.id), "qty": 1}, {"item_id": str(item_b.id), "qty": 1}],
        }
        assignment_id = self.post_allocation(self.admin, payload).json()["assignment_ids"][0]
        url = f"/api/v1/assignments/batches/{assignment_id}/lr/"

        self.client.force_authenticate(user=self.bm2)
        outsider = self.client.post(url, {"lr_no": "BOGUS"}, format="json")
        self.client.force_authenticate(user=self.emp2)
        colleague = self.client.post(url, {"lr_no": "BOGUS"}, format="json")

        self.assertEqual(outsider.status_code, 404)
        self.assertEqual(colleague.status_code, 404)
        self.assertEqual(set(AssignmentNode.objects.filter(assignment_id=assignment_id).values_list("lr_no", flat=True)), {""})

        self.client.force_authenticate(user=self.emp1)
        owner = self.client.post(url, {"lr_no": "LR-88"}, format="json")
        self.assertEqual(owner.status_code, 200)
        self.assertEqual({node["lr_no"] for node in owner.json()["nodes"]}, {"LR-88"})

    def test_failed_audit_write_rolls_back_the_mutation(self):
        node_id = self.post_allocation(self.admin, self.item_payload([("EMP1", 6)])).json()["nodes"][0]["id"]

        with patch("assignments.views.create_audit_log_from_request", side_effect=RuntimeError("audit store down")):
            dispatched = self.client.post(f"/api/v1/assignments/{node_id}/dispatch/")
            created = self.post_allocation(self.admin, self.item_payload([("EMP2", 5)]))

        self.assertEqual(dispatched.status_code, 500)
        self.assertEqual(created.status_code, 500)
        self.assertEqual(AssignmentNode.objects.get(pk=node_id).dispatch_state, AssignmentNode.DispatchState.CREATED)
        self.assertEqual(AssignmentNode.objects.count(), 1)
        self.board_x.refresh_from_db()
        self.assertEqual(self.board_x.issued, 6)

    def test_usage_endpoint(self):
        node_id = self.post_allocation(self.admin, self.item_payload([("EMP1", 6)])).json()["nodes"][0]["id"]
        url = f"/api/v1/assignments/{node_id}/usage/"

        self.client.force_authenticate(user=self.emp1)
        used = self.client.post(url, {"reference_id": "CUST-001", "qty": 4}, format="json")
        over = self.client.post(url, {"reference_id": "CUST-001", "qty": 3}, format="json")

        self.assertEqual(used.status_code, 201)
        self.assertEqual(used.json()["used_qty"], 4)
        self.assertEqual(used.json()["usage_events"][0]["used_by"], "emp-one")
        self.assertEqual((over.status_code, over.json()["code"]), (409, "usage_exceeds_available"))
        self.assertEqual(over.json()["errors"]["available"], 2)

        self.client.force_authenticate(user=self.emp2)
        hidden = self.client.post(url, {"reference_id": "CUST-9", "qty": 1}, format="json")
        self.assertEqual(hidden.status_code, 404)

        self.client.force_authenticate(user=self.admin)
        on_behalf = self.client.post(url, {"employee_code": "EMP1", "reference_id": "CUST-2", "qty": 2}, format="json")
        self.assertEqual(on_behalf.json()["used_qty"], 6)

    def test_history_is_scoped_to_people_involved(self):
        self.post_allocation(self.admin, self.item_payload([("EMP1", 5)]))
        self.post_allocation(self.admin, self.item_payload([("BM2", 5)]))

        self.client.force_authenticate(user=self.emp1)
        mine = self.client.get("/api/v1/assignments/")
        self.client.force_authenticate(user=self.rm)
        everything = self.client.get("/api/v1/assignments/")

        self.assertEqual(mine.json()["count"], 1)
        self.assertEqual(everything.json()["count"], 2)


class LedgerApiTests(LedgerFixtureMixin, TestCase):
    def setUp(self):
        self.client = APIClient()
        self.create_directory()
        self.board_x, _ = upsert_item("Board-X", 2025, "Lot 1", 100)
        self.issue(self.board_x, [("EMP1", 10)])
        self.issue(self.board_x, [("EMP2", 4)], assigned_by="EMP1")

    def test_tree_requires_ledger_capability(self):
        self.client.force_authenticate(user=self.bm1)
        allowed = self.client.get("/api/v1/ledger/tree/", {"employee": "EMP2"})
        self.client.force_authenticate(user=self.emp1)
        denied = self.client.get("/api/v1/ledger/tree/")

        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(len(allowed.json()), 1)
        self.assertEqual(len(allowed.json()[0]["children"]), 1)
        self.assertEqual(denied.status_code, 403)

    def test_tree_rejects_bad_filters(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/ledger/tree/", {"date_from": "not-a-date"})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_employee_stock_own_or_with_capability(self):
        self.client.force_authenticate(user=self.emp1)
        own = self.client.get("/api/v1/ledger/employees/emp1/stock/")
        other = self.client.get("/api/v1/ledger/employees/EMP2/stock/")
        self.client.force_authenticate(user=self.bm1)
        manager = self.client.get("/api/v1/ledger/employees/EMP2/stock/")

        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json()["totals"]["available"], 6)
        self.assertEqual(other.status_code, 403)
        self.assertEqual(manager.json()["totals"]["available"], 4)

    def test_summary_for_regional_manager_only(self):
        self.client.force_authenticate(user=self.rm)
        summary = self.client.get("/api/v1/ledger/summary/", {"year": 2025, "lot": "all"})
        missing_year = self.client.get("/api/v1/ledger/summary/")
        self.client.force_authenticate(user=self.bm1)
        denied = self.client.get("/api/v1/ledger/summary/", {"year": 2025})

        self.assertEqual(summary.status_code, 200)
        self.assertEqual(summary.json()["assigned"], 10)
        self.assertEqual(summary.json()["stock"], 10)
        self.assertEqual(missing_year.status_code, 400)
        self.assertEqual(denied.status_code, 403)


class InterleavedReservationTests(LedgerFixtureMixin, TestCase):
    """Two callers holding the same catalog snapshot, one after the other."""

    def setUp(self):
        self.create_directory()
        self.item, _ = upsert_item("Board-X", 2025, "Lot 1", 100)

    def test_only_one_of_two_overdrawing_reservations_succeeds(self):
        first = StockItem.objects.get(pk=self.item.pk)
        second = StockItem.objects.get(pk=self.item.pk)
        outcomes = []

        for instance, qty in ((first, 60), (second, 50)):
            try:
                reserve(instance, qty)
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("insufficient")

        self.assertEqual(outcomes, ["ok", "insufficient"])
        self.item.refresh_from_db()
        self.assertEqual((self.item.issued, self.item.balance), (60, 40))

    def test_only_one_of_two_overdrawing_allocations_succeeds(self):
        first = StockItem.objects.get(pk=self.item.pk)
        second = StockItem.objects.get(pk=self.item.pk)

        self.issue(first, [("BM1", 60)])
        with self.assertRaises(InsufficientStock) as ctx:
            self.issue(second, [("BM2", 50)])

        self.assertEqual(ctx.exception.balance, 40)
        self.assertEqual(AssignmentNode.objects.count(), 1)
        self.item.refresh_from_db()
        self.assertEqual(self.item.issued, 60)


@unittest.skipUnless(connection.vendor == "postgresql", "row locking needs PostgreSQL")
class ConcurrentReservationTests(TransactionTestCase):
    def test_only_one_of_two_overdrawing_reservations_succeeds(self):
        item, _ = upsert_item("Board-X", 2025, "Lot 1", 100)
        barrier = threading.Barrier(2)
        outcomes = []

        def worker(qty):
            try:
                barrier.wait()
                reserve(item, qty)
                outcomes.append("ok")
            except InsufficientStock:
                outcomes.append("insufficient")
            finally:
                connection.close()

        threads = [threading.Thread(target=worker, args=(qty,)) for qty in (60, 50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["insufficient", "ok"])
        item.refresh_from_db()
        self.assertIn(item.issued, {50, 60})
        self.assertGreaterEqual(item.balance, 0)
        self.assertEqual(StockItem.objects.count(), 1)
