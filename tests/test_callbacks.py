import os
import tempfile
import unittest

from core.callbacks import CallbackProcessor
from core.database import init_db
from core.escrow import (
    EscrowStore, CRYPTO_TO_FIAT, PENDING, COMPLETED, FAILED, ERROR, EXHAUSTED,
)
from core.interfaces import PLATFORM_SOURCE, GatewayResult, TransferError
from core.reconciliation import RetryEngine
from core.users import UserDirectory
from fakes import FakeGateway, FakeTransferClient, seed_record


def stk(reference, code=0, desc="The service request is processed successfully."):
    return {"success": code == 0, "result_code": code, "result_desc": desc,
            "reference": reference, "receipt_number": "NLJ7RT61SV" if code == 0 else None}


class TestCallbackProcessor(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmp.name, "callbacks.db")
        init_db(self.db_path)
        self.store    = EscrowStore(self.db_path)
        self.users    = UserDirectory(self.db_path)
        self.transfer = FakeTransferClient()
        self.user = self.users.create("0712345678", wallet_address="0xuser")
        self.alerts = []
        self.processor = CallbackProcessor(
            self.store, self.users, self.transfer,
            on_exhausted=lambda record, reason: self.alerts.append((record.transaction_id, reason)),
        )

    def tearDown(self):
        self.tmp.cleanup()

    def pending_deposit(self, reference="ws_CO_1", **kwargs):
        return seed_record(self.store, self.user.user_id, status=PENDING,
                           gateway_reference=reference, **kwargs)

    async def test_paid_deposit_releases_tokens(self):
        record = self.pending_deposit()
        result = await self.processor.handle_stk_result(stk("ws_CO_1"))

        self.assertEqual(len(self.transfer.calls), 1)
        source, to, amount, chain, token = self.transfer.calls[0]
        self.assertEqual((source, to, chain, token), (PLATFORM_SOURCE, "0xuser", "celo", "USDC"))
        self.assertEqual(str(amount), "7.5")
        self.assertEqual(result.status, COMPLETED)

        stored = self.store.find_by_transaction_id(record.transaction_id)
        self.assertEqual(stored.status, COMPLETED)
        self.assertIsNotNone(stored.transfer_hash)
        self.assertIsNotNone(stored.completed_at)

    async def test_duplicate_callback_is_ignored(self):
        self.pending_deposit()
        await self.processor.handle_stk_result(stk("ws_CO_1"))
        await self.processor.handle_stk_result(stk("ws_CO_1"))
        self.assertEqual(len(self.transfer.calls), 1)

    async def test_failed_payment_marks_record_failed(self):
        record = self.pending_deposit()
        await self.processor.handle_stk_result(stk("ws_CO_1", code=1032, desc="Request cancelled by user"))
        self.assertEqual(self.store.find_by_transaction_id(record.transaction_id).status, FAILED)
        self.assertEqual(self.transfer.calls, [])

    async def test_release_failure_needs_manual_reconciliation(self):
        record = self.pending_deposit()
        self.transfer.results.append(TransferError("insufficient platform balance"))
        await self.processor.handle_stk_result(stk("ws_CO_1"))
        stored = self.store.find_by_transaction_id(record.transaction_id)
        self.assertEqual(stored.status, ERROR)
        self.assertIsNone(stored.transfer_hash)

    async def test_already_released_deposit_just_completes(self):
        self.pending_deposit(transfer_hash="0xearlier")
        result = await self.processor.handle_stk_result(stk("ws_CO_1"))
        self.assertEqual(result.status, COMPLETED)
        self.assertEqual(self.transfer.calls, [])

    async def test_concurrent_write_does_not_repeat_release(self):
        record = self.pending_deposit()

        def touch():
            other = self.store.find_by_transaction_id(record.transaction_id)
            other.metadata["note"] = "touched"
            self.store.save(other)
        self.transfer.on_transfer = touch

        await self.processor.handle_stk_result(stk("ws_CO_1"))
        self.assertEqual(len(self.transfer.calls), 1)
        stored = self.store.find_by_transaction_id(record.transaction_id)
        self.assertEqual(stored.status, COMPLETED)
        self.assertIsNotNone(stored.transfer_hash)
        self.assertEqual(stored.metadata, {"note": "touched"})

    async def test_unknown_reference(self):
        self.assertIsNone(await self.processor.handle_stk_result(stk("ws_CO_missing")))
        self.assertIsNone(await self.processor.handle_stk_result(stk("")))

    async def test_b2c_results(self):
        ok  = seed_record(self.store, self.user.user_id, direction=CRYPTO_TO_FIAT,
                          status=PENDING, gateway_reference="AG_ok", transfer_hash="0x1")
        bad = seed_record(self.store, self.user.user_id, direction=CRYPTO_TO_FIAT,
                          status=PENDING, gateway_reference="AG_bad", transfer_hash="0x2")
        await self.processor.handle_b2c_result(stk("AG_ok"))
        await self.processor.handle_b2c_result(stk("AG_bad", code=2001, desc="Invalid initiator"))
        self.assertEqual(self.store.find_by_transaction_id(ok.transaction_id).status, COMPLETED)
        self.assertEqual(self.store.find_by_transaction_id(bad.transaction_id).status, FAILED)
        self.assertEqual(self.transfer.calls, [])
        self.assertEqual(self.alerts, [])

    async def test_cancelled_last_retry_exhausts_deposit(self):
        record = seed_record(self.store, self.user.user_id, retry_count=2)
        gateway = FakeGateway()
        gateway.deposit_results.append(GatewayResult(True, "ws_CO_last"))
        engine = RetryEngine(self.store, self.users, gateway, self.transfer, shortcode="174379")
        self.assertEqual(await engine.retry_failed_deposits(), 1)

        await self.processor.handle_stk_result(stk("ws_CO_last", code=1032, desc="Request cancelled by user"))

        stored = self.store.find_by_transaction_id(record.transaction_id)
        self.assertEqual(stored.status, EXHAUSTED)
        self.assertEqual(stored.retry_count, 3)
        self.assertEqual(self.alerts, [(record.transaction_id, "Request cancelled by user")])
        self.assertEqual([r.transaction_id for r in self.store.list_by_status(EXHAUSTED)],
                         [record.transaction_id])
        self.assertEqual(self.store.events_for(record.transaction_id)[-1]["to_status"], EXHAUSTED)

    async def test_failed_disbursement_on_spent_budget_exhausts(self):
        record = seed_record(self.store, self.user.user_id, direction=CRYPTO_TO_FIAT,
                             status=PENDING, gateway_reference="AG_last", transfer_hash="0x3",
                             retry_count=3)
        await self.processor.handle_b2c_result(stk("AG_last", code=2001, desc="Invalid initiator"))
        self.assertEqual(self.store.find_by_transaction_id(record.transaction_id).status, EXHAUSTED)
        self.assertEqual(self.alerts, [(record.transaction_id, "Invalid initiator")])


if __name__ == "__main__":
    unittest.main()
