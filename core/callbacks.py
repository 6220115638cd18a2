"""
Gateway callback processing.

Safaricom calls back once per STK push / B2C request. Only records still
`pending` are acted on, so duplicate or late callbacks are no-ops. Writes
go through the versioned save; if a retry cycle touched the record in
between, the record is re-read and the callback re-applied.

A failed payment on a record whose retry budget is already spent goes
straight to `exhausted` and fires the same alert hook as the retry engine.
"""

import logging
from typing import Callable, Optional

from core.escrow import (
    EscrowRecord, EscrowStore, StaleRecordError,
    FIAT_TO_CRYPTO, PENDING, COMPLETED, FAILED, ERROR, EXHAUSTED,
)
from core.interfaces import PLATFORM_SOURCE, TransferClient
from core.reconciliation import log_exhausted
from core.users import UserDirectory, UserNotFoundError

logger = logging.getLogger("nexuspay.callbacks")

MAX_APPLY_ATTEMPTS = 3


class CallbackProcessor:

    def __init__(self, store: EscrowStore, users: UserDirectory,
                 transfer_client: TransferClient,
                 default_chain: str = "celo", default_token: str = "USDC",
                 max_retry_count: int = 3,
                 on_exhausted: Callable[[EscrowRecord, str], None] = log_exhausted):
        self.store           = store
        self.users           = users
        self.transfer_client = transfer_client
        self.default_chain   = default_chain
        self.default_token   = default_token
        self.max_retry_count = max_retry_count
        self.on_exhausted    = on_exhausted

    async def handle_stk_result(self, parsed: dict) -> Optional[EscrowRecord]:
        """Apply a parsed STK callback (see mpesa.process_stk_callback)."""
        return await self._apply(parsed, self._settle_deposit)

    async def handle_b2c_result(self, parsed: dict) -> Optional[EscrowRecord]:
        """Apply a parsed B2C result (see mpesa.process_b2c_result)."""
        return await self._apply(parsed, self._settle_disbursement)

    async def _apply(self, parsed: dict, settle) -> Optional[EscrowRecord]:
        reference = parsed.get("reference")
        if not reference:
            logger.error(f"Callback without a reference: {parsed.get('result_desc')}")
            return None

        for _ in range(MAX_APPLY_ATTEMPTS):
            record = self.store.find_by_gateway_reference(reference)
            if record is None:
                logger.error(f"No escrow found for gateway reference {reference}")
                return None
            if record.status != PENDING:
                logger.warning(
                    f"Ignoring callback for {record.transaction_id}: status is {record.status}"
                )
                return record
            try:
                return await settle(record, parsed)
            except StaleRecordError:
                logger.warning(f"Escrow {record.transaction_id} changed under callback; re-reading")

        logger.error(f"Gave up applying callback for reference {reference}")
        return None

    async def _settle_deposit(self, record: EscrowRecord, parsed: dict) -> EscrowRecord:
        detail = {"result_code": parsed["result_code"], "result_desc": parsed["result_desc"],
                  "receipt": parsed.get("receipt_number")}
        if not parsed["success"]:
            logger.info(f"Deposit {record.transaction_id} failed: {parsed['result_desc']}")
            return self._record_payment_failure(record, parsed, detail)

        if record.direction != FIAT_TO_CRYPTO or record.transfer_done:
            record.transition(COMPLETED)
            return self.store.save(record, detail=detail)

        # Fiat leg confirmed; release stablecoin to the user.
        try:
            user = self.users.find_by_id(record.user_id)
            if not user.wallet_address:
                raise UserNotFoundError(f"User {record.user_id} has no wallet address")
            receipt = await self.transfer_client.transfer(
                PLATFORM_SOURCE, user.wallet_address, record.crypto_amount,
                record.metadata.get("chain") or self.default_chain,
                record.metadata.get("token") or self.default_token,
            )
        except Exception as e:
            logger.error(f"Token release failed for {record.transaction_id}, needs manual reconciliation: {e}")
            record.transition(ERROR)
            detail["error"] = str(e)
            return self.store.save(record, detail=detail)

        detail["transfer_hash"] = receipt.transfer_hash
        logger.info(f"Deposit {record.transaction_id} completed: {receipt.transfer_hash}")
        return self._record_release(record, receipt.transfer_hash, detail)

    def _record_release(self, record: EscrowRecord, transfer_hash: str, detail: dict) -> EscrowRecord:
        # Tokens have moved: never let a lost write send us back through the
        # transfer, re-read and record the hash instead.
        for _ in range(MAX_APPLY_ATTEMPTS):
            record.set_transfer_hash(transfer_hash)
            if record.status != COMPLETED:
                record.transition(COMPLETED)
            try:
                return self.store.save(record, detail=detail)
            except StaleRecordError:
                record = self.store.find_by_transaction_id(record.transaction_id)
        raise RuntimeError(
            f"Could not record transfer {transfer_hash} for {record.transaction_id}"
        )

    async def _settle_disbursement(self, record: EscrowRecord, parsed: dict) -> EscrowRecord:
        detail = {"result_code": parsed["result_code"], "result_desc": parsed["result_desc"],
                  "receipt": parsed.get("receipt_number")}
        if not parsed["success"]:
            logger.info(f"Withdrawal {record.transaction_id} failed: {parsed['result_desc']}")
            return self._record_payment_failure(record, parsed, detail)
        record.transition(COMPLETED)
        logger.info(f"Withdrawal {record.transaction_id} completed: {parsed['result_desc']}")
        return self.store.save(record, detail=detail)

    def _record_payment_failure(self, record: EscrowRecord, parsed: dict, detail: dict) -> EscrowRecord:
        record.transition(FAILED)
        exhausted = record.retry_count >= self.max_retry_count
        if exhausted:
            record.transition(EXHAUSTED)
        saved = self.store.save(record, detail=detail)
        if exhausted:
            try:
                self.on_exhausted(saved, parsed["result_desc"])
            except Exception:
                logger.exception(f"Exhaustion alert hook failed for {saved.transaction_id}")
        return saved
