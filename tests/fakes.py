"""In-memory gateway / transfer doubles and seeding helpers shared by the tests."""

import time
import uuid

from core.escrow import EscrowRecord, FIAT_TO_CRYPTO, FAILED
from core.interfaces import GatewayClient, GatewayResult, TransferClient, TransferReceipt


class FakeGateway(GatewayClient):
    """Accepts every request unless results are queued; queued exceptions are raised."""

    def __init__(self):
        self.deposit_results    = []
        self.withdrawal_results = []
        self.deposit_calls      = []
        self.withdrawal_calls   = []

    @staticmethod
    def _next(queue, prefix):
        item = queue.pop(0) if queue else GatewayResult(True, f"{prefix}_{uuid.uuid4().hex[:10]}")
        if isinstance(item, Exception):
            raise item
        return item

    async def initiate_deposit(self, phone, shortcode, amount, narrative, user_id):
        self.deposit_calls.append((phone, shortcode, amount, narrative, user_id))
        return self._next(self.deposit_results, "ws_CO")

    async def initiate_withdrawal(self, amount, phone_numeric, narrative):
        self.withdrawal_calls.append((amount, phone_numeric, narrative))
        return self._next(self.withdrawal_results, "AG")


class FakeTransferClient(TransferClient):

    def __init__(self):
        self.calls       = []
        self.results     = []
        self.on_transfer = None

    async def transfer(self, from_or_platform, to_address, amount, chain, token):
        self.calls.append((from_or_platform, to_address, amount, chain, token))
        if self.on_transfer:
            self.on_transfer()
        item = self.results.pop(0) if self.results else TransferReceipt("0x" + uuid.uuid4().hex)
        if isinstance(item, Exception):
            raise item
        return item


def seed_record(store, user_id, direction=FIAT_TO_CRYPTO, status=FAILED,
                age_minutes=10, retry_count=0, transfer_hash=None,
                gateway_reference=None, fiat="1000", crypto="7.5") -> EscrowRecord:
    return store.create(EscrowRecord(
        user_id=user_id,
        direction=direction,
        fiat_amount=fiat,
        crypto_amount=crypto,
        status=status,
        retry_count=retry_count,
        transfer_hash=transfer_hash,
        gateway_reference=gateway_reference,
        created_at=time.time() - age_minutes * 60,
    ))
