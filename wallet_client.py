"""
NexusPay Wallet API Client
===========================
Value Transfer Client adapter over the custodial wallet REST service.

    POST {wallet_api_url}/v1/transfers
      {"chain", "token", "to", "amount", "source": "platform" | "user",
       "privateKey"?}
    -> {"transactionHash": "0x..."}

User-signed transfers unseal the stored key reference just for the call.
Any failure (HTTP error, network error, missing hash) raises TransferError:
a transfer is never retried blindly because it is not idempotent.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional
import urllib.request
import urllib.error

from config import CONFIG
from core.interfaces import PLATFORM_SOURCE, TransferClient, TransferError, TransferReceipt
from core.security import KeyVault, KeyReferenceError

logger = logging.getLogger("nexuspay.wallet")

TRANSFER_PATH = "/v1/transfers"


class WalletApiClient(TransferClient):

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 vault: Optional[KeyVault] = None, timeout: float = 60):
        self.base_url = (base_url or CONFIG["wallet_api_url"]).rstrip("/")
        self.api_key  = api_key if api_key is not None else CONFIG["wallet_api_key"]
        self.vault    = vault
        self.timeout  = timeout

    def _build_body(self, from_or_platform: str, to_address: str, amount: Decimal,
                    chain: str, token: str) -> dict:
        body = {
            "chain":  chain,
            "token":  token,
            "to":     to_address,
            "amount": str(amount),
        }
        if from_or_platform == PLATFORM_SOURCE:
            body["source"] = "platform"
            return body
        if self.vault is None:
            raise TransferError("No key vault configured for user-signed transfers")
        try:
            body["source"]     = "user"
            body["privateKey"] = self.vault.unseal(from_or_platform)
        except KeyReferenceError as e:
            raise TransferError(str(e))
        return body

    def _request(self, body: dict) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        req = urllib.request.Request(
            self.base_url + TRANSFER_PATH,
            data=json.dumps(body).encode("utf-8"),
            headers=headers,
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8") or "{}")
        except urllib.error.HTTPError as e:
            try:
                detail = json.loads(e.read().decode("utf-8")).get("error", str(e))
            except ValueError:
                detail = str(e)
            raise TransferError(f"Wallet API HTTP {e.code}: {detail}")
        except (urllib.error.URLError, TimeoutError, ConnectionError, ValueError) as e:
            raise TransferError(f"Wallet API request failed: {e}")

    async def transfer(self, from_or_platform, to_address, amount, chain, token) -> TransferReceipt:
        if not to_address:
            raise TransferError("Destination address is required")
        body = self._build_body(from_or_platform, to_address, Decimal(str(amount)), chain, token)
        data = await asyncio.to_thread(self._request, body)
        tx_hash = data.get("transactionHash")
        if not tx_hash:
            raise TransferError(f"Wallet API returned no transaction hash: {data}")
        logger.info(f"Transfer confirmed: {amount} {token} on {chain} -> {to_address} ({tx_hash})")
        return TransferReceipt(transfer_hash=tx_hash)
