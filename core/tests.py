from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import OperationalError
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import UnknownEmployee
from core.directory import get_employee, get_employees
from core.models import AuditLog, Branch


class DirectoryTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="N1", name="North One", region="North")
        self.manager = self.user_model.objects.create_user(
            username="bm-dir",
            password="pass1234",
            first_name="Bina",
            last_name="Shah",
            emp_code="bm100",
            role="branch_manager",
            branch=self.branch,
        )
        self.employee = self.user_model.objects.create_user(
            username="emp-dir",
            password="pass1234",
            emp_code="EMP100",
            role="employee",
            branch=self.branch,
            reports_to=self.manager,
        )

    def test_emp_code_is_normalized_on_save(self):
        self.manager.refresh_from_db()
        self.assertEqual(self.manager.emp_code, "BM100")

    def test_get_employee_returns_snapshot(self):
        entry = get_employee(" emp100 ")

        self.assertEqual(entry.emp_code, "EMP100")
        self.assertEqual(entry.role, "employee")
        self.assertEqual(entry.region, "North")
        self.assertEqual(entry.branch, "N1")
        self.assertEqual(entry.reports_to, "BM100")
        self.assertFalse(entry.is_admin)

    def test_get_employee_rejects_unknown_and_inactive_codes(self):
        self.employee.is_active = False
        self.employee.save(update_fields=["is_active"])

        with self.assertRaises(UnknownEmployee):
            get_employee("EMP100")
        with self.assertRaises(UnknownEmployee):
            get_employee("NOPE")

    def test_get_employees_reports_every_missing_code(self):
        with self.assertRaises(UnknownEmployee) as ctx:
            get_employees(["BM100", "X1", "X2"])

        self.assertEqual(ctx.exception.emp_codes, ["X1", "X2"])


class EmployeeApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.north = Branch.objects.create(code="NB", name="North Branch", region="North")
        self.south = Branch.objects.create(code="SB", name="South Branch", region="South")
        self.rm = self.user_model.objects.create_user(
            username="rm-api",
            password="pass1234",
            emp_code="RM200",
            role="regional_manager",
            region="North",
            branch=self.north,
        )
        self.employee = self.user_model.objects.create_user(
            username="emp-api",
            password="pass1234",
            emp_code="EMP200",
            role="employee",
            region="South",
            branch=self.south,
            reports_to=self.rm,
        )
        self.user_model.objects.create_user(username="no-code", password="pass1234")

    def test_list_only_contains_people_with_employee_codes(self):
        self.client.force_authenticate(user=self.employee)

        response = self.client.get("/api/v1/employees/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual([row["emp_code"] for row in payload["results"]], ["EMP200", "RM200"])

    def test_list_filters_by_region_and_reports_to(self):
        self.client.force_authenticate(user=self.rm)

        by_region = self.client.get("/api/v1/employees/", {"region": "north"})
        by_manager = self.client.get("/api/v1/employees/", {"reports_to": "rm200"})

        self.assertEqual([row["emp_code"] for row in by_region.json()["results"]], ["RM200"])
        self.assertEqual([row["emp_code"] for row in by_manager.json()["results"]], ["EMP200"])

    def test_retrieve_by_emp_code_is_case_insensitive(self):
        self.client.force_authenticate(user=self.rm)

        response = self.client.get("/api/v1/employees/emp200/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["reports_to"], "RM200")
        self.assertEqual(response.json()["branch"]["code"], "SB")

    def test_directory_is_read_only(self):
        self.client.force_authenticate(user=self.rm)

        response = self.client.post("/api/v1/employees/", {"emp_code": "NEW"}, format="json")

        self.assertEqual(response.status_code, 405)

    def test_anonymous_request_gets_error_envelope(self):
        response = self.client.get("/api/v1/employees/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")
        self.assertEqual(response.json()["status"], 401)

    def test_database_outage_is_reported_as_storage_unavailable(self):
        self.client.force_authenticate(user=self.rm)

        with patch("core.views.EmployeeViewSet.get_queryset", side_effect=OperationalError("connection lost")):
            response = self.client.get("/api/v1/employees/")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "storage_unavailable")


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@example.com",
            password="pass1234",
            emp_code="TK1",
            role="area_manager",
        )

    def test_token_can_be_obtained_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token.user@EXAMPLE.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_rejects_bad_password(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-user", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class HealthTests(TestCase):
    def test_healthz_and_readyz(self):
        client = APIClient()

        health = client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")
        ready = client.get("/api/v1/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["request_id"], "req-health")
        self.assertEqual(health["X-Request-ID"], "req-health")
        self.assertEqual(ready.status_code, 200)
        self.assertEqual(ready.json()["status"], "ready")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit")
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            branch=self.branch,
            emp_code="ADM300",
            role="admin",
        )
        self.employee = self.user_model.objects.create_user(
            username="audit-emp",
            password="pass1234",
            branch=self.branch,
            emp_code="EMP300",
            role="employee",
        )

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="stock_item.create", entity="stock_item", entity_id="a")
        AuditLog.objects.create(action="assignment.create", entity="assignment_node", entity_id="b")

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity": "stock_item"})

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["entity_id"] for row in response.json()["results"]], ["a"])

    def test_employee_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.employee)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))
