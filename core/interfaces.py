"""
Collaborator contracts consumed by the reconciliation core.

Concrete vendors (Daraja in mpesa.py, the wallet API in wallet_client.py)
subclass these; the retry engine and callback processor never see
vendor-specific payloads.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

# Sentinel `from_or_platform` value: send from the platform wallet.
PLATFORM_SOURCE = "platform"


class GatewayUnavailable(Exception):
    """Transient gateway failure (timeout, connection error, 5xx). Safe to retry."""


class TransferError(Exception):
    """On-chain or signing failure in the value-transfer leg."""


@dataclass
class GatewayResult:
    accepted: bool
    provider_reference: Optional[str] = None
    error_message: Optional[str] = None
    raw: dict = field(default_factory=dict, repr=False)


@dataclass
class TransferReceipt:
    transfer_hash: str


class GatewayClient:
    """Mobile-money push (deposit) and disbursement (withdrawal)."""

    async def initiate_deposit(self, phone: str, shortcode: str, amount: Decimal,
                               narrative: str, user_id: str) -> GatewayResult:
        raise NotImplementedError

    async def initiate_withdrawal(self, amount: Decimal, phone_numeric: int,
                                  narrative: str) -> GatewayResult:
        raise NotImplementedError


class TransferClient:
    """Stablecoin movement between platform and user wallets."""

    async def transfer(self, from_or_platform: str, to_address: str, amount: Decimal,
                       chain: str, token: str) -> TransferReceipt:
        raise NotImplementedError
