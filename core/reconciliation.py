"""
NexusPay Retry Engine
======================
Re-attempts failed fiat<->crypto escrow transactions.

Per cycle and direction:
  1. Scan for status=failed, created within the age window, retry budget left.
  2. For each candidate, independently (one failure never aborts the batch):
       a. resolve the user; missing user/phone/key -> skip, budget untouched
       b. claim the record (retry_count + 1 and a lease, persisted first)
       c. withdrawals only: finish the crypto leg if it never completed;
          on failure stop here for this cycle
       d. one gateway call, wrapped in retry_with_backoff for transient errors
       e. accepted -> status pending with the new gateway reference
       f. rejected / error -> stays failed, or exhausted once the budget is spent
  3. Return how many re-initiations the gateway accepted.

retry_all_failed_transactions() never raises: the scheduler must survive
anything that goes wrong in here.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from core.escrow import (
    EscrowRecord, EscrowStore, StaleRecordError, InvalidTransitionError,
    FIAT_TO_CRYPTO, CRYPTO_TO_FIAT, PENDING, FAILED, EXHAUSTED, ERROR, COMPLETED,
)
from core.interfaces import GatewayClient, GatewayResult, GatewayUnavailable, TransferClient
from core.retry import retry_with_backoff
from core.users import User, UserDirectory, UserNotFoundError
from mpesa import normalize_phone, phone_to_numeric

logger = logging.getLogger("nexuspay.reconciliation")
alert_logger = logging.getLogger("nexuspay.alerts")

MAX_SAVE_ATTEMPTS = 3


def log_exhausted(record: EscrowRecord, reason: str):
    """Default alert hook: records that ran out of retries need a human."""
    alert_logger.error(
        f"Escrow {record.transaction_id} ({record.direction}) exhausted "
        f"{record.retry_count} retries; last failure: {reason}"
    )


class RetryEngine:

    def __init__(self, store: EscrowStore, users: UserDirectory,
                 gateway: GatewayClient, transfer_client: TransferClient,
                 shortcode: str = "",
                 platform_wallet_address: str = "",
                 default_chain: str = "celo",
                 default_token: str = "USDC",
                 max_retry_count: int = 3,
                 age_window_minutes: float = 60,
                 lease_seconds: float = 600,
                 backoff_attempts: int = 3,
                 backoff_base_delay: float = 1.0,
                 on_exhausted: Callable[[EscrowRecord, str], None] = log_exhausted,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        self.store                   = store
        self.users                   = users
        self.gateway                 = gateway
        self.transfer_client         = transfer_client
        self.shortcode               = shortcode
        self.platform_wallet_address = platform_wallet_address
        self.default_chain           = default_chain
        self.default_token           = default_token
        self.max_retry_count         = max_retry_count
        self.age_window_minutes      = age_window_minutes
        self.lease_seconds           = lease_seconds
        self.backoff_attempts        = backoff_attempts
        self.backoff_base_delay      = backoff_base_delay
        self.on_exhausted            = on_exhausted
        self.sleep                   = sleep
        self.clock                   = clock

    # ── Public operations ────────────────────────────────────────────────────

    async def retry_failed_deposits(self, minutes: Optional[float] = None) -> int:
        return await self._run_batch(FIAT_TO_CRYPTO, "deposits", self._retry_deposit, minutes)

    async def retry_failed_withdrawals(self, minutes: Optional[float] = None) -> int:
        return await self._run_batch(CRYPTO_TO_FIAT, "withdrawals", self._retry_withdrawal, minutes)

    async def retry_all_failed_transactions(self):
        try:
            logger.info("Starting retry of failed transactions")
            deposits    = await self.retry_failed_deposits()
            withdrawals = await self.retry_failed_withdrawals()
            logger.info(
                f"Retry cycle complete: {deposits} deposits and "
                f"{withdrawals} withdrawals re-initiated"
            )
        except Exception:
            logger.exception("Error during retry of failed transactions")

    async def requeue(self, transaction_id: str) -> bool:
        """
        Admin action: grant an exhausted record one more attempt and make it
        right away, regardless of the age window. If that attempt (or the
        payment it starts) fails, the record is exhausted again.
        """
        record = self.store.find_by_transaction_id(transaction_id)
        if record.status != EXHAUSTED:
            raise InvalidTransitionError(
                f"Only exhausted records can be re-queued ({transaction_id} is {record.status})"
            )
        handler = self._handler_for(record.direction)
        record.transition(FAILED)
        record.retry_count      = max(self.max_retry_count - 1, 0)
        record.lease_expires_at = None
        self.store.save(record, detail={"action": "requeued"})
        logger.info(f"Escrow {transaction_id} re-queued by admin")
        return await handler(record)

    # ── Batch loop ───────────────────────────────────────────────────────────

    def _handler_for(self, direction: str):
        if direction == FIAT_TO_CRYPTO:
            return self._retry_deposit
        if direction == CRYPTO_TO_FIAT:
            return self._retry_withdrawal
        raise ValueError(f"No retry path for direction {direction}")

    async def _run_batch(self, direction: str, label: str, handler, minutes) -> int:
        window = self.age_window_minutes if minutes is None else minutes
        logger.info(f"Checking for failed {label} to retry...")
        try:
            candidates = self.store.find_retry_candidates(
                direction, FAILED, window, self.max_retry_count, now=self.clock()
            )
        except Exception:
            logger.exception(f"Could not load failed {label}")
            return 0

        logger.info(f"Found {len(candidates)} failed {label} to retry")
        success_count = 0
        for record in candidates:
            try:
                if await handler(record):
                    success_count += 1
            except StaleRecordError as e:
                logger.warning(f"Escrow {record.transaction_id} changed during retry, leaving it: {e}")
            except Exception:
                logger.exception(f"Error retrying {record.transaction_id}")
        return success_count

    # ── Per-candidate steps ──────────────────────────────────────────────────

    def _resolve_user(self, record: EscrowRecord) -> Optional[User]:
        try:
            return self.users.find_by_id(record.user_id)
        except UserNotFoundError:
            logger.error(f"User not found for transaction {record.transaction_id}")
            return None

    def _claim(self, record: EscrowRecord) -> bool:
        claimed = self.store.claim_for_retry(
            record, self.max_retry_count, self.lease_seconds, now=self.clock()
        )
        if not claimed:
            logger.info(f"Escrow {record.transaction_id} already claimed or modified; skipping")
        return claimed

    async def _call_gateway(self, operation) -> GatewayResult:
        return await retry_with_backoff(
            operation,
            max_attempts=self.backoff_attempts,
            base_delay=self.backoff_base_delay,
            retry_on=(GatewayUnavailable,),
            sleep=self.sleep,
        )

    async def _retry_deposit(self, record: EscrowRecord) -> bool:
        user = self._resolve_user(record)
        if user is None:
            return False
        try:
            phone = normalize_phone(user.phone)
        except ValueError as e:
            logger.error(f"Phone number unusable for transaction {record.transaction_id}: {e}")
            return False

        if not self._claim(record):
            return False

        narrative = f"NexusPay Retry {record.retry_count}"
        try:
            result = await self._call_gateway(
                lambda: self.gateway.initiate_deposit(
                    phone, self.shortcode, record.fiat_amount, narrative, user.user_id
                )
            )
        except Exception as e:
            logger.error(f"STK push retry errored for {record.transaction_id}: {e}")
            return self._record_failure(record, str(e))
        return self._record_outcome(record, result)

    async def _retry_withdrawal(self, record: EscrowRecord) -> bool:
        user = self._resolve_user(record)
        if user is None:
            return False
        try:
            phone_numeric = phone_to_numeric(user.phone)
        except ValueError as e:
            logger.error(f"Phone number unusable for transaction {record.transaction_id}: {e}")
            return False
        needs_transfer = not record.transfer_done
        if needs_transfer and not user.private_key_ref:
            logger.error(f"No signing key on file for transaction {record.transaction_id}")
            return False

        if not self._claim(record):
            return False

        if needs_transfer:
            chain = record.metadata.get("chain") or self.default_chain
            token = record.metadata.get("token") or self.default_token
            try:
                receipt = await self.transfer_client.transfer(
                    user.private_key_ref, self.platform_wallet_address,
                    record.crypto_amount, chain, token
                )
            except Exception as e:
                logger.error(f"Failed to transfer tokens for transaction {record.transaction_id}: {e}")
                self._record_failure(record, f"transfer failed: {e}")
                return False
            record = self._record_transfer(record, receipt.transfer_hash)
            if record.status != FAILED:
                logger.warning(
                    f"Escrow {record.transaction_id} moved to {record.status} during transfer; "
                    f"leaving the disbursement to the next cycle"
                )
                return False

        narrative = f"NexusPay Retry {record.retry_count} - {record.transaction_id[:8]}"
        try:
            result = await self._call_gateway(
                lambda: self.gateway.initiate_withdrawal(record.fiat_amount, phone_numeric, narrative)
            )
        except Exception as e:
            logger.error(f"B2C retry errored for {record.transaction_id}: {e}")
            return self._record_failure(record, str(e))
        return self._record_outcome(record, result)

    # ── Outcomes ─────────────────────────────────────────────────────────────

    def _record_transfer(self, record: EscrowRecord, transfer_hash: str) -> EscrowRecord:
        # Tokens have moved: a lost write re-reads and records the hash, never re-transfers.
        for _ in range(MAX_SAVE_ATTEMPTS):
            record.set_transfer_hash(transfer_hash)
            try:
                return self.store.save(record, detail={"action": "transfer_completed",
                                                       "transfer_hash": transfer_hash})
            except StaleRecordError:
                logger.warning(f"Escrow {record.transaction_id} changed during transfer; re-reading")
                record = self.store.find_by_transaction_id(record.transaction_id)
        raise RuntimeError(
            f"Could not record transfer {transfer_hash} for {record.transaction_id}"
        )

    def _record_outcome(self, record: EscrowRecord, result: GatewayResult) -> bool:
        if not result.accepted:
            logger.error(
                f"Failed to retry transaction {record.transaction_id}: "
                f"{result.error_message or 'Unknown error'}"
            )
            return self._record_failure(record, result.error_message or "rejected by gateway")

        record.transition(PENDING)
        record.gateway_reference = result.provider_reference
        record.last_retry_at     = self.clock()
        record.lease_expires_at  = None
        self.store.save(record, detail={"action": "retry_accepted",
                                        "retry": record.retry_count,
                                        "gateway_reference": result.provider_reference})
        logger.info(f"Successfully retried transaction {record.transaction_id}")
        return True

    def _record_failure(self, record: EscrowRecord, reason: str) -> bool:
        record.last_retry_at    = self.clock()
        record.lease_expires_at = None
        exhausted = record.retry_count >= self.max_retry_count
        if exhausted:
            record.transition(EXHAUSTED)
        self.store.save(record, detail={"action": "retry_failed",
                                        "retry": record.retry_count,
                                        "reason": reason})
        if exhausted:
            try:
                self.on_exhausted(record, reason)
            except Exception:
                logger.exception(f"Exhaustion alert hook failed for {record.transaction_id}")
        return False


def resolve_error_record(store: EscrowStore, transaction_id: str,
                         transfer_hash: Optional[str] = None, note: str = "") -> EscrowRecord:
    """Manual reconciliation: an operator confirms an `error` record is settled."""
    record = store.find_by_transaction_id(transaction_id)
    if record.status != ERROR:
        raise InvalidTransitionError(
            f"Only records in error can be resolved ({transaction_id} is {record.status})"
        )
    if transfer_hash and not record.transfer_done:
        record.set_transfer_hash(transfer_hash)
    record.transition(COMPLETED)
    return store.save(record, detail={"action": "manually_resolved", "note": note})
