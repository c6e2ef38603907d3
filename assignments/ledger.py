"""Read-side projections of the assignment forest.

Nothing in this module writes. Trees are rebuilt from one query over the
nodes with their lines prefetched; children are attached through a
parent-id index so any depth costs the same.
"""
from __future__ import annotations

from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from datetime import date

from django.db.models import Sum
from django.utils import timezone
from django.utils.dateparse import parse_date
from rest_framework.exceptions import ValidationError

from assignments.models import AllocationLine, AssignmentNode, UsageEvent
from core.models import User
from stock.models import StockItem


@dataclass(frozen=True)
class LedgerFilters:
    root_id: str | None = None
    employee: str | None = None
    purpose: str | None = None
    role: str | None = None
    item: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    year: int | None = None
    lot: str | None = None

    @classmethod
    def from_params(cls, params):
        def _text(name):
            value = (params.get(name) or "").strip()
            return value or None

        def _date(name):
            raw = _text(name)
            if raw is None:
                return None
            parsed = parse_date(raw)
            if parsed is None:
                raise ValidationError({name: "Use YYYY-MM-DD."})
            return parsed

        year = _text("year")
        if year is not None:
            try:
                year = int(year)
            except ValueError:
                raise ValidationError({"year": "Year must be an integer."})

        purpose = _text("purpose")
        if purpose is not None and purpose not in AssignmentNode.Purpose.values:
            raise ValidationError({"purpose": f"Purpose must be one of {', '.join(AssignmentNode.Purpose.values)}."})

        lot = _text("lot")
        filters = cls(
            root_id=_text("root_id"),
            employee=_text("employee"),
            purpose=purpose,
            role=_text("role"),
            item=_text("item"),
            date_from=_date("date_from"),
            date_to=_date("date_to"),
            year=year,
            lot=None if lot and lot.lower() == "all" else lot,
        )
        if filters.date_from and filters.date_to and filters.date_from > filters.date_to:
            raise ValidationError({"date_range": "date_from must be before or equal to date_to."})
        return filters

    def matches_item(self, item):
        if self.item and self.item.lower() not in item.name.lower():
            return False
        if self.year is not None and item.year != self.year:
            return False
        if self.lot and item.lot.lower() != self.lot.lower():
            return False
        return True

    def matches_date(self, moment):
        day = timezone.localdate(moment) if timezone.is_aware(moment) else moment.date()
        if self.date_from and day < self.date_from:
            return False
        if self.date_to and day > self.date_to:
            return False
        return True


NO_FILTERS = LedgerFilters()


def line_available(node, employee_code):
    """Boards `employee_code` still holds on `node`.

    Received minus used minus everything they have delegated into direct
    children of this node.
    """
    line = AllocationLine.objects.filter(node=node, employee_code=employee_code).values("qty_received", "used_qty").first()
    if line is None:
        return 0
    delegated = (
        AllocationLine.objects.filter(node__parent=node, node__assigned_by_code=employee_code).aggregate(total=Sum("qty_received"))["total"]
        or 0
    )
    return line["qty_received"] - line["used_qty"] - delegated


def _load_nodes():
    return list(
        AssignmentNode.objects.select_related("item")
        .prefetch_related("lines__usage_events")
        .order_by("created_at", "id")
    )


def _delegation_index(nodes):
    delegated = defaultdict(int)
    for node in nodes:
        if node.parent_id is None:
            continue
        for line in node.lines.all():
            delegated[(node.parent_id, node.assigned_by_code)] += line.qty_received
    return delegated


def _item_payload(item):
    return {"id": str(item.id), "name": item.name, "year": item.year, "lot": item.lot}


def _line_payload(node, line, delegated):
    delegated_out = delegated.get((node.id, line.employee_code), 0)
    return {
        "id": str(line.id),
        "employee_code": line.employee_code,
        "employee_name": line.employee_name,
        "qty_received": line.qty_received,
        "used_qty": line.used_qty,
        "delegated_out": delegated_out,
        "available": line.qty_received - line.used_qty - delegated_out,
        "usage_events": [
            {"reference_id": event.reference_id, "qty": event.qty, "used_by": event.used_by, "used_at": event.used_at}
            for event in line.usage_events.all()
        ],
    }


def node_payload(node, delegated):
    return {
        "id": str(node.id),
        "assignment_id": node.assignment_id,
        "parent_id": str(node.parent_id) if node.parent_id else None,
        "item": _item_payload(node.item),
        "mode": node.mode,
        "purpose": node.purpose,
        "assigned_by_code": node.assigned_by_code,
        "assigned_by_name": node.assigned_by_name,
        "assigned_by_role": node.assigned_by_role,
        "region": node.region,
        "branch": node.branch,
        "created_at": node.created_at,
        "dispatch_state": node.dispatch_state,
        "lr_no": node.lr_no,
        "pod_visible": node.pod_visible,
        "lines": [_line_payload(node, line, delegated) for line in node.lines.all()],
        "children": [],
    }


def _node_matches(node, filters):
    if not filters.matches_item(node.item):
        return False
    if (filters.date_from or filters.date_to) and not filters.matches_date(node.created_at):
        return False
    if filters.purpose and node.purpose != filters.purpose:
        return False
    if filters.role and node.assigned_by_role != filters.role:
        return False
    if filters.employee:
        needle = filters.employee.lower()
        people = [(node.assigned_by_code, node.assigned_by_name)] + [
            (line.employee_code, line.employee_name) for line in node.lines.all()
        ]
        if not any(needle == (code or "").lower() or needle in (name or "").lower() for code, name in people):
            return False
    return True


def build_tree(filters=NO_FILTERS):
    """Return the forest of root payloads whose subtree matches `filters`.

    A root is kept when it or any descendant matches; kept roots carry
    their whole subtree. `root_id` is matched against the root's
    assignment id only.
    """
    nodes = _load_nodes()
    if not nodes:
        return []

    by_id = {node.id: node for node in nodes}
    delegated = _delegation_index(nodes)

    def _root_of(node):
        seen = set()
        while node.parent_id is not None and node.parent_id in by_id and node.id not in seen:
            seen.add(node.id)
            node = by_id[node.parent_id]
        return node

    matched_roots = set()
    for node in nodes:
        if _node_matches(node, filters):
            matched_roots.add(_root_of(node).id)

    if filters.root_id:
        needle = filters.root_id.lower()
        matched_roots = {root_id for root_id in matched_roots if needle in by_id[root_id].assignment_id.lower()}

    kept = [node for node in nodes if _root_of(node).id in matched_roots]
    payloads = {node.id: node_payload(node, delegated) for node in kept}
    forest = []
    for node in kept:
        payload = payloads[node.id]
        if node.parent_id is None or node.parent_id not in payloads:
            forest.append(payload)
        else:
            payloads[node.parent_id]["children"].append(payload)

    forest.reverse()
    return forest


def _empty_stock_row(item):
    return {
        "item": _item_payload(item),
        "assigned": 0,
        "used": 0,
        "delegated_out": 0,
        "available": 0,
    }


def employee_stock(employee_code, filters=NO_FILTERS):
    """Per-item holdings of one employee.

    assigned and used come from every line where the employee is the
    recipient; delegated_out is what they passed on through child nodes to
    someone else. Delegations are filtered by their source node so both
    sides of `available` cover the same holdings.
    """
    employee_code = (employee_code or "").strip().upper()
    rows = OrderedDict()

    received = (
        AllocationLine.objects.filter(employee_code=employee_code)
        .select_related("node__item")
        .order_by("node__created_at")
    )
    for line in received:
        node = line.node
        if not _stock_filter_matches(node, filters):
            continue
        row = rows.setdefault(node.item_id, _empty_stock_row(node.item))
        row["assigned"] += line.qty_received
        row["used"] += line.used_qty

    delegated = (
        AllocationLine.objects.filter(node__assigned_by_code=employee_code, node__parent__isnull=False)
        .exclude(employee_code=employee_code)
        .select_related("node__item", "node__parent__item")
        .order_by("node__created_at")
    )
    for line in delegated:
        node = line.node
        if not _stock_filter_matches(node.parent, filters):
            continue
        row = rows.setdefault(node.item_id, _empty_stock_row(node.item))
        row["delegated_out"] += line.qty_received

    totals = {"assigned": 0, "used": 0, "delegated_out": 0, "available": 0}
    for row in rows.values():
        row["available"] = row["assigned"] - row["used"] - row["delegated_out"]
        for key in totals:
            totals[key] += row[key]

    return {"employee_code": employee_code, "items": list(rows.values()), "totals": totals}


def _stock_filter_matches(node, filters):
    if not filters.matches_item(node.item):
        return False
    if (filters.date_from or filters.date_to) and not filters.matches_date(node.created_at):
        return False
    if filters.purpose and node.purpose != filters.purpose:
        return False
    return True


def _zero_bucket():
    return {"production": 0, "issued": 0, "balance": 0, "assigned": 0, "used": 0, "stock": 0}


def _region_roots(region, nodes):
    codes = set(User.objects.filter(region__iexact=region).exclude(emp_code__isnull=True).values_list("emp_code", flat=True))
    return {
        node.id
        for node in nodes
        if node.parent_id is None and any(line.employee_code in codes for line in node.lines.all())
    }


def org_summary(year, lot=None, region=None):
    """Catalog and tree rollup for one year, optionally narrowed to a lot or region.

    production/issued/balance come from the catalog. assigned is what left
    the catalog (root lines), used is consumption anywhere below, and
    stock = assigned - used is what is still out in the field.
    """
    lot = None if not lot or str(lot).lower() == "all" else lot
    items = StockItem.objects.filter(year=year)
    if lot:
        items = items.filter(lot__iexact=lot)
    items = list(items.order_by("name", "lot"))

    summary = _zero_bucket()
    lot_breakdown = OrderedDict()
    item_summary = OrderedDict()
    for item in items:
        for bucket in (summary, lot_breakdown.setdefault(item.lot, _zero_bucket()), item_summary.setdefault(item.id, {**_item_payload(item), **_zero_bucket()})):
            bucket["production"] += item.opening
            bucket["issued"] += item.issued
            bucket["balance"] += item.balance

    nodes = list(
        AssignmentNode.objects.filter(item__in=items).select_related("item").prefetch_related("lines").order_by("created_at", "id")
    )
    if region:
        by_id = {node.id: node for node in nodes}
        kept_roots = _region_roots(region, nodes)

        def _root_id(node):
            while node.parent_id is not None and node.parent_id in by_id:
                node = by_id[node.parent_id]
            return node.id

        nodes = [node for node in nodes if _root_id(node) in kept_roots]

    delegated = _delegation_index(nodes)
    people = OrderedDict()
    for node in nodes:
        buckets = (summary, lot_breakdown[node.item.lot], item_summary[node.item_id])
        for line in node.lines.all():
            for bucket in buckets:
                if node.parent_id is None:
                    bucket["assigned"] += line.qty_received
                bucket["used"] += line.used_qty

            person = people.setdefault(
                line.employee_code,
                {"employee_code": line.employee_code, "name": line.employee_name, "assigned": 0, "used": 0, "delegated_out": 0, "available": 0},
            )
            person["assigned"] += line.qty_received
            person["used"] += line.used_qty
            person["delegated_out"] += delegated.get((node.id, line.employee_code), 0)

    for bucket in [summary, *lot_breakdown.values(), *item_summary.values()]:
        bucket["stock"] = bucket["assigned"] - bucket["used"]
    for person in people.values():
        person["available"] = person["assigned"] - person["used"] - person["delegated_out"]

    return {
        "year": year,
        "lot": lot or "all",
        "region": region or None,
        **summary,
        "lot_breakdown": lot_breakdown,
        "item_summary": list(item_summary.values()),
        "person_stock": sorted(people.values(), key=lambda row: (-row["assigned"], row["employee_code"])),
    }


def check_invariants():
    """Scan catalog and tree and describe every conservation violation found."""
    problems = []

    root_totals = defaultdict(int)
    for row in AllocationLine.objects.filter(node__parent__isnull=True).values("node__item_id").annotate(total=Sum("qty_received")):
        root_totals[row["node__item_id"]] = row["total"] or 0

    for item in StockItem.objects.all():
        if item.balance < 0:
            problems.append(f"stock {item}: balance {item.balance} is negative")
        if root_totals.get(item.id, 0) > item.issued:
            problems.append(f"stock {item}: root allocations {root_totals[item.id]} exceed issued {item.issued}")

    event_totals = {
        row["line_id"]: row["total"] or 0
        for row in UsageEvent.objects.values("line_id").annotate(total=Sum("qty"))
    }
    nodes = _load_nodes()
    delegated = _delegation_index(nodes)
    for node in nodes:
        for line in node.lines.all():
            if line.used_qty > line.qty_received:
                problems.append(f"node {node.id} line {line.employee_code}: used {line.used_qty} exceeds received {line.qty_received}")
            if line.used_qty != event_totals.get(line.id, 0):
                problems.append(
                    f"node {node.id} line {line.employee_code}: used {line.used_qty} != usage events {event_totals.get(line.id, 0)}"
                )
            available = line.qty_received - line.used_qty - delegated.get((node.id, line.employee_code), 0)
            if available < 0:
                problems.append(f"node {node.id} line {line.employee_code}: available {available} is negative")

    return problems
