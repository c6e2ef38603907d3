from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock, InvalidQuantity, UnknownItem
from core.models import AuditLog
from stock.models import StockItem
from stock.services import balance, get_item, reserve, upsert_item


class StockServiceTests(TestCase):
    def setUp(self):
        self.item, _ = upsert_item("Blenze Pro PDB", 2025, "Lot 1", 100)

    def test_reserve_moves_quantity_from_balance_to_issued(self):
        self.assertEqual(reserve(self.item, 40), 60)

        self.item.refresh_from_db()
        self.assertEqual(self.item.issued, 40)
        self.assertEqual(self.item.balance, 60)

    def test_reserve_beyond_balance_fails_and_changes_nothing(self):
        reserve(self.item, 40)

        with self.assertRaises(InsufficientStock) as ctx:
            reserve(self.item, 70)

        self.assertEqual(ctx.exception.balance, 60)
        self.assertEqual(ctx.exception.requested, 70)
        self.assertEqual(balance(self.item), 60)

    def test_reserve_can_drain_to_exactly_zero(self):
        self.assertEqual(reserve(self.item, 100), 0)
        with self.assertRaises(InsufficientStock):
            reserve(self.item, 1)

    def test_reserve_rejects_non_positive_quantities(self):
        for qty in (0, -5, "abc", 2.5, True):
            with self.assertRaises(InvalidQuantity):
                reserve(self.item, qty)
        self.assertEqual(balance(self.item), 100)

    def test_reserve_uses_database_state_not_stale_instance(self):
        stale = StockItem.objects.get(pk=self.item.pk)
        reserve(self.item, 90)

        with self.assertRaises(InsufficientStock):
            reserve(stale, 20)

    def test_upsert_overwrites_opening_and_keeps_issued(self):
        reserve(self.item, 30)

        item, created = upsert_item("Blenze Pro PDB", 2025, "Lot 1", 150, updated_by="ops")

        self.assertFalse(created)
        self.assertEqual(item.pk, self.item.pk)
        self.assertEqual(item.opening, 150)
        self.assertEqual(item.issued, 30)
        self.assertEqual(item.balance, 120)
        self.assertEqual(item.updated_by, "ops")

    def test_upsert_rejects_opening_below_issued(self):
        reserve(self.item, 30)

        with self.assertRaises(InvalidQuantity):
            upsert_item("Blenze Pro PDB", 2025, "Lot 1", 20)

        self.item.refresh_from_db()
        self.assertEqual(self.item.opening, 100)

    def test_upsert_allows_zero_opening_and_rejects_negative(self):
        item, created = upsert_item("Evo PDB", 2025, None, 0)
        self.assertTrue(created)
        self.assertEqual(item.lot, StockItem.DEFAULT_LOT)

        with self.assertRaises(InvalidQuantity):
            upsert_item("Evo PDB", 2025, None, -1)

    def test_lots_and_years_are_separate_items(self):
        other_lot, created_lot = upsert_item("Blenze Pro PDB", 2025, "Lot 2", 10)
        other_year, created_year = upsert_item("Blenze Pro PDB", 2026, "Lot 1", 10)

        self.assertTrue(created_lot)
        self.assertTrue(created_year)
        self.assertEqual(len({self.item.pk, other_lot.pk, other_year.pk}), 3)

    def test_get_item_unknown_key(self):
        self.assertEqual(get_item("Blenze Pro PDB", "2025").pk, self.item.pk)
        with self.assertRaises(UnknownItem):
            get_item("Missing PDB", 2025)


class StockItemApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="stock-admin", password="pass1234", emp_code="ADM1", role="admin")
        self.employee = user_model.objects.create_user(username="stock-emp", password="pass1234", emp_code="EMP1", role="employee")
        upsert_item("Impact PDB", 2025, "Lot 1", 600)
        upsert_item("Horizon PDB", 2024, "Lot 1", 400)

    def test_list_filters_by_year_and_includes_balance(self):
        self.client.force_authenticate(user=self.employee)

        response = self.client.get("/api/v1/stock-items/", {"year": 2025})

        self.assertEqual(response.status_code, 200)
        rows = response.json()["results"]
        self.assertEqual([row["name"] for row in rows], ["Impact PDB"])
        self.assertEqual(rows[0]["balance"], 600)

    def test_admin_upsert_creates_then_updates(self):
        self.client.force_authenticate(user=self.admin)
        payload = {"name": "Orna PDB", "year": 2025, "lot": "Lot 1", "opening": 500}

        created = self.client.post("/api/v1/stock-items/", payload, format="json", HTTP_X_REQUEST_ID="req-stock")
        updated = self.client.post("/api/v1/stock-items/", {**payload, "opening": 550}, format="json")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["id"], created.json()["id"])
        self.assertEqual(updated.json()["opening"], 550)
        self.assertEqual(updated.json()["updated_by"], "stock-admin")
        self.assertTrue(AuditLog.objects.filter(action="stock_item.create", request_id="req-stock").exists())
        update_log = AuditLog.objects.get(action="stock_item.update")
        self.assertEqual(update_log.before_snapshot["opening"], 500)
        self.assertEqual(update_log.after_snapshot["opening"], 550)

    def test_patch_opening_below_issued_returns_invalid_quantity(self):
        item = StockItem.objects.get(name="Impact PDB")
        reserve(item, 100)
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/stock-items/{item.id}/", {"opening": 50}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_quantity")

    def test_employee_cannot_manage_catalog(self):
        self.client.force_authenticate(user=self.employee)

        response = self.client.post(
            "/api/v1/stock-items/",
            {"name": "Orna PDB", "year": 2025, "opening": 10},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(StockItem.objects.filter(name="Orna PDB").exists())
