import os
import tempfile
import unittest

from fastapi.testclient import TestClient

from config import CONFIG
from core.database import init_db
from core.escrow import EscrowStore, PENDING, COMPLETED, FAILED, EXHAUSTED, ERROR
from server import build_services, create_app
from fakes import FakeGateway, FakeTransferClient, seed_record


class ServerTestCase(unittest.TestCase):
    environment = "development"

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "server.db")
        init_db(self.db_path)
        cfg = dict(CONFIG, db_path=self.db_path, environment=self.environment,
                   jwt_secret="test-secret", platform_wallet_address="0xplatform")
        self.gateway  = FakeGateway()
        self.transfer = FakeTransferClient()
        self.services = build_services(cfg, gateway=self.gateway, transfer_client=self.transfer)
        self.store    = EscrowStore(self.db_path)
        self.user     = self.services.users.create("0712345678", wallet_address="0xuser",
                                                   private_key_ref="sealed")
        self.client   = TestClient(create_app(self.services))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.tmp.cleanup()

    def auth(self, user_id=None, role="user"):
        token = self.services.tokens.create_token(user_id or self.user.user_id, role=role)
        return {"Authorization": f"Bearer {token}"}


class TestOperationalRoutes(ServerTestCase):

    def test_health_reports_scheduler(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["data"]["scheduler_running"])

    def test_internal_retry_trigger(self):
        record = seed_record(self.store, self.user.user_id)
        resp = self.client.post("/api/internal/retry-transactions")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"], {"ran": True})
        self.assertEqual(self.store.find_by_transaction_id(record.transaction_id).status, PENDING)


class TestProductionGuard(ServerTestCase):
    environment = "production"

    def test_internal_retry_trigger_is_dev_only(self):
        resp = self.client.post("/api/internal/retry-transactions")
        self.assertEqual(resp.status_code, 403)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["code"], "DEV_ONLY")
        self.assertEqual(self.gateway.deposit_calls, [])


class TestWebhooks(ServerTestCase):

    def test_stk_callback_settles_deposit(self):
        record = seed_record(self.store, self.user.user_id, status=PENDING, gateway_reference="ws_CO_9")
        body = {"Body": {"stkCallback": {
            "CheckoutRequestID": "ws_CO_9", "ResultCode": 0, "ResultDesc": "Success",
            "CallbackMetadata": {"Item": [{"Name": "MpesaReceiptNumber", "Value": "QK1"}]},
        }}}
        resp = self.client.post("/api/v1/mpesa/callback", json=body)
        self.assertEqual(resp.json(), {"ResultCode": 0, "ResultDesc": "Accepted"})
        self.assertEqual(self.store.find_by_transaction_id(record.transaction_id).status, COMPLETED)
        self.assertEqual(self.transfer.calls[0][1], "0xuser")

    def test_b2c_result_failure(self):
        record = seed_record(self.store, self.user.user_id, direction="crypto_to_fiat",
                             status=PENDING, gateway_reference="AG_7", transfer_hash="0x1")
        body = {"Result": {"ResultCode": 2001, "ResultDesc": "Invalid initiator", "ConversationID": "AG_7"}}
        resp = self.client.post("/api/v1/mpesa/b2c/result", json=body)
        self.assertEqual(resp.json()["ResultCode"], 0)
        self.assertEqual(self.store.find_by_transaction_id(record.transaction_id).status, FAILED)

    def test_garbage_is_still_acknowledged(self):
        for path in ("/api/v1/mpesa/callback", "/api/v1/mpesa/b2c/result", "/api/v1/mpesa/queue"):
            with self.subTest(path=path):
                resp = self.client.post(path, content=b"not json",
                                        headers={"Content-Type": "application/json"})
                self.assertEqual(resp.json(), {"ResultCode": 0, "ResultDesc": "Accepted"})


class TestEscrowRoutes(ServerTestCase):

    def test_owner_can_read_record(self):
        record = seed_record(self.store, self.user.user_id)
        resp = self.client.get(f"/api/v1/escrow/{record.transaction_id}", headers=self.auth())
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], FAILED)
        self.assertEqual(resp.json()["crypto_amount"], "7.5")

    def test_other_users_get_404(self):
        record = seed_record(self.store, self.user.user_id)
        resp = self.client.get(f"/api/v1/escrow/{record.transaction_id}", headers=self.auth("someone"))
        self.assertEqual(resp.status_code, 404)

    def test_token_required(self):
        resp = self.client.get("/api/v1/escrow")
        self.assertIn(resp.status_code, (401, 403))
        resp = self.client.get("/api/v1/escrow", headers={"Authorization": "Bearer nope"})
        self.assertEqual(resp.status_code, 401)

    def test_history(self):
        seed_record(self.store, self.user.user_id)
        seed_record(self.store, "someone-else")
        resp = self.client.get("/api/v1/escrow", headers=self.auth())
        self.assertEqual(len(resp.json()["transactions"]), 1)


class TestAdminRoutes(ServerTestCase):

    def test_admin_only(self):
        resp = self.client.get("/api/v1/admin/escrow", headers=self.auth())
        self.assertEqual(resp.status_code, 403)

    def test_list_and_events(self):
        record = seed_record(self.store, self.user.user_id, status=EXHAUSTED, retry_count=3)
        admin = self.auth("ops", role="admin")

        resp = self.client.get("/api/v1/admin/escrow?status=exhausted", headers=admin)
        self.assertEqual(resp.json()["count"], 1)
        self.assertEqual(self.client.get("/api/v1/admin/escrow?status=bogus", headers=admin).status_code, 400)

        resp = self.client.get(f"/api/v1/admin/escrow/{record.transaction_id}/events", headers=admin)
        self.assertEqual(resp.json()["events"][0]["to_status"], EXHAUSTED)

    def test_requeue(self):
        exhausted = seed_record(self.store, self.user.user_id, status=EXHAUSTED, retry_count=3)
        failed    = seed_record(self.store, self.user.user_id)
        admin = self.auth("ops", role="admin")

        resp = self.client.post(f"/api/v1/admin/escrow/{exhausted.transaction_id}/requeue", headers=admin)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["accepted"])
        self.assertEqual(resp.json()["transaction"]["status"], PENDING)

        resp = self.client.post(f"/api/v1/admin/escrow/{failed.transaction_id}/requeue", headers=admin)
        self.assertEqual(resp.status_code, 409)
        resp = self.client.post("/api/v1/admin/escrow/missing/requeue", headers=admin)
        self.assertEqual(resp.status_code, 404)

    def test_resolve(self):
        record = seed_record(self.store, self.user.user_id, status=ERROR)
        admin = self.auth("ops", role="admin")
        resp = self.client.post(f"/api/v1/admin/escrow/{record.transaction_id}/resolve",
                                json={"transfer_hash": "0xmanual", "note": "sent from treasury"},
                                headers=admin)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["transaction"]["status"], COMPLETED)
        self.assertEqual(resp.json()["transaction"]["transfer_hash"], "0xmanual")

        resp = self.client.post(f"/api/v1/admin/escrow/{record.transaction_id}/resolve",
                                json={}, headers=admin)
        self.assertEqual(resp.status_code, 409)


if __name__ == "__main__":
    unittest.main()
