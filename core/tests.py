from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.audit import create_audit_log
from core.models import AuditLog, Branch


class BranchAccessRoleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.branch_a = Branch.objects.create(code="BA", name="Branch A")
        self.branch_b = Branch.objects.create(code="BB", name="Branch B")

        self.admin = self.user_model.objects.create_user(
            username="branch-admin",
            password="pass1234",
            branch=self.branch_a,
            role="admin",
        )
        self.cashier = self.user_model.objects.create_user(
            username="branch-cashier",
            password="pass1234",
            branch=self.branch_a,
            role="cashier",
        )

    def test_admin_can_list_multiple_branches(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        ids = {item["id"] for item in payload["results"]}
        self.assertIn(str(self.branch_a.id), ids)
        self.assertIn(str(self.branch_b.id), ids)

    def test_non_admin_branch_scope_is_preserved(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        ids = {item["id"] for item in response.json()["results"]}
        self.assertEqual(ids, {str(self.branch_a.id)})

    def test_cashier_cannot_create_branch_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/branches/", {"code": "BC", "name": "Branch C"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_branch_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/v1/branches/",
            {"code": "BC", "name": "Branch C"},
            format="json",
            HTTP_X_REQUEST_ID="req-branch-1",
        )

        self.assertEqual(response.status_code, 201)
        log = AuditLog.objects.get(action="branch.create")
        self.assertEqual(log.request_id, "req-branch-1")
        self.assertEqual(log.after_snapshot["code"], "BC")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="AL", name="Audit")
        self.other_branch = Branch.objects.create(code="AO", name="Other")
        self.supervisor = self.user_model.objects.create_user(
            username="audit-supervisor",
            password="pass1234",
            branch=self.branch,
            role="supervisor",
        )
        self.cashier = self.user_model.objects.create_user(
            username="audit-cashier",
            password="pass1234",
            branch=self.branch,
            role="cashier",
        )

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.supervisor)
        log = AuditLog.objects.create(action="test.action", entity="test", branch=self.branch, actor=self.supervisor)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_are_branch_scoped(self):
        own = create_audit_log(action="stock.in", entity="stock_movement", branch=self.branch)
        create_audit_log(action="stock.in", entity="stock_movement", branch=self.other_branch)
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 200)
        ids = [item["id"] for item in response.json()["results"]]
        self.assertEqual(ids, [str(own.id)])

    def test_cashier_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)

    def test_audit_export_returns_csv(self):
        create_audit_log(action="stock.out", entity="stock_movement", branch=self.branch, event_id="evt-1")
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode()
        self.assertIn("stock.out", body)
        self.assertIn("evt-1", body)

    def test_non_uuid_entity_id_is_dropped(self):
        log = create_audit_log(action="stock.order_deduction", entity="order", entity_id="ORD-1", branch=self.branch)

        self.assertIsNone(log.entity_id)


class HealthAndAuthTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.branch = Branch.objects.create(code="HA", name="Health")
        self.user = self.user_model.objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            branch=self.branch,
            role="supervisor",
        )

    def test_healthz_is_public_and_echoes_request_id(self):
        response = self.client.get("/api/v1/healthz", HTTP_X_REQUEST_ID="req-health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertEqual(response["X-Request-ID"], "req-health")

    def test_readyz_checks_database(self):
        response = self.client.get("/api/v1/readyz")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")

    def test_email_is_normalized_on_save(self):
        self.assertEqual(self.user.email, "token.user@example.com")

    def test_token_obtain_accepts_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN.USER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())

    def test_unauthenticated_requests_use_error_envelope(self):
        response = self.client.get("/api/v1/stock/levels/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)
