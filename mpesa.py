"""
NexusPay M-Pesa Integration — Daraja API
==========================================
Gateway Client adapter for Safaricom Daraja:
  - OAuth token management (cached, 60s safety buffer)
  - STK Push (Lipa Na M-Pesa Online) for deposits
  - B2C BusinessPayment for withdrawals
  - Phone normalization to 254XXXXXXXXX
  - STK / B2C callback parsing

ERROR CONTRACT:
  - Network failure, timeout, HTTP 5xx  -> MpesaUnavailable (transient, retried)
  - HTTP 4xx with a JSON body           -> returned as a rejection result
  - Missing credentials                 -> RuntimeError (not retried)

DARAJA API REFERENCE:
  https://developer.safaricom.co.ke/APIs
"""

import asyncio
import base64
import json
import logging
import os
import re
import time
import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
import urllib.request
import urllib.error

from core.interfaces import GatewayClient, GatewayResult, GatewayUnavailable

logger = logging.getLogger("nexuspay.mpesa")

# ── Constants ──────────────────────────────────────────────────────────────────

SANDBOX_BASE_URL    = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

OAUTH_PATH    = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PATH      = "/mpesa/b2c/v3/paymentrequest"

COUNTRY_CODE = "254"


class MpesaUnavailable(GatewayUnavailable):
    pass


# ── Configuration loader ───────────────────────────────────────────────────────

def _load_mpesa_config() -> dict:
    """
    Load M-Pesa credentials from environment variables (recommended)
    or from mpesa_config.json (fallback for local dev).

    NEVER commit real credentials to source control.
    """
    webhook_base = os.environ.get("MPESA_WEBHOOK_URL", "https://your-domain.example")
    cfg = {
        "consumer_key":        os.environ.get("MPESA_CONSUMER_KEY", ""),
        "consumer_secret":     os.environ.get("MPESA_CONSUMER_SECRET", ""),
        "shortcode":           os.environ.get("MPESA_SHORTCODE", "174379"),     # Sandbox default
        "passkey":             os.environ.get("MPESA_PASSKEY", ""),
        "b2c_shortcode":       os.environ.get("MPESA_B2C_SHORTCODE", "600000"),
        "initiator_name":      os.environ.get("MPESA_INITIATOR_NAME", "testapi"),
        "security_credential": os.environ.get("MPESA_SECURITY_CREDENTIAL", ""),
        "callback_url":        os.environ.get("MPESA_CALLBACK_URL",
                                              webhook_base + "/api/v1/mpesa/callback"),
        "result_url":          os.environ.get("MPESA_RESULT_URL",
                                              webhook_base + "/api/v1/mpesa/b2c/result"),
        "queue_timeout_url":   os.environ.get("MPESA_QUEUE_TIMEOUT_URL",
                                              webhook_base + "/api/v1/mpesa/queue"),
        "environment":         os.environ.get("MPESA_ENV", "sandbox"),  # "sandbox" or "production"
        "account_ref":         os.environ.get("MPESA_ACCOUNT_REF", "NexusPay"),
        "request_timeout":     float(os.environ.get("MPESA_REQUEST_TIMEOUT", "30")),
    }

    config_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), "mpesa_config.json")
    if os.path.exists(config_path) and not cfg["consumer_key"]:
        try:
            with open(config_path) as f:
                file_cfg = json.load(f)
                cfg.update({k: v for k, v in file_cfg.items() if v})
        except (OSError, ValueError) as e:
            logger.warning(f"Could not load mpesa_config.json: {e}")

    return cfg


MPESA_CONFIG = _load_mpesa_config()


def get_base_url() -> str:
    return PRODUCTION_BASE_URL if MPESA_CONFIG["environment"] == "production" else SANDBOX_BASE_URL


# ── Phone normalization ───────────────────────────────────────────────────────

def normalize_phone(phone: str) -> str:
    """
    Normalize a Kenyan phone to the 254XXXXXXXXX form Daraja expects.
    Accepts: 07..., +2547..., 2547..., 7... (spaces/dashes ignored).
    Raises ValueError for anything that doesn't reduce to 12 digits.
    """
    if not phone:
        raise ValueError("Phone number is empty")
    cleaned = re.sub(r"[\s\-()]", "", str(phone))
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not cleaned.isdigit():
        raise ValueError(f"Invalid phone number format: {phone}")
    if cleaned.startswith("0"):
        cleaned = COUNTRY_CODE + cleaned[1:]
    elif not cleaned.startswith(COUNTRY_CODE):
        cleaned = COUNTRY_CODE + cleaned
    if len(cleaned) != 12:
        raise ValueError(f"Invalid phone length: {phone}")
    return cleaned


def phone_to_numeric(phone: str) -> int:
    """B2C PartyB is sent as a number."""
    return int(normalize_phone(phone))


# ── HTTP helpers ──────────────────────────────────────────────────────────────

def _read_json(raw: bytes) -> dict:
    try:
        return json.loads(raw or b"{}")
    except ValueError:
        return {"errorMessage": raw.decode(errors="replace")[:200]}


def _send(req: urllib.request.Request, timeout: float) -> dict:
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return _read_json(resp.read())
    except urllib.error.HTTPError as e:
        body = e.read()
        if e.code >= 500:
            raise MpesaUnavailable(f"Daraja HTTP {e.code}: {body[:200]!r}")
        # 4xx: Daraja explains the rejection in the body
        data = _read_json(body)
        data.setdefault("httpStatus", e.code)
        return data
    except (urllib.error.URLError, TimeoutError, ConnectionError) as e:
        raise MpesaUnavailable(f"Daraja request error: {e}")


# ── OAuth Token Manager ────────────────────────────────────────────────────────

class _TokenCache:
    _token: Optional[str] = None
    _expires_at: float = 0.0

    @classmethod
    def get(cls) -> Optional[str]:
        if cls._token and time.time() < cls._expires_at - 60:  # 60s safety buffer
            return cls._token
        return None

    @classmethod
    def set(cls, token: str, expires_in: int = 3600):
        cls._token = token
        cls._expires_at = time.time() + expires_in

    @classmethod
    def clear(cls):
        cls._token = None
        cls._expires_at = 0.0


def get_oauth_token() -> str:
    """
    Fetch (or return cached) Daraja OAuth bearer token.
    Raises RuntimeError if credentials are missing.
    """
    cached = _TokenCache.get()
    if cached:
        return cached

    key    = MPESA_CONFIG.get("consumer_key", "")
    secret = MPESA_CONFIG.get("consumer_secret", "")
    if not key or not secret:
        raise RuntimeError(
            "M-Pesa credentials not configured. "
            "Set MPESA_CONSUMER_KEY and MPESA_CONSUMER_SECRET environment variables."
        )

    credentials = base64.b64encode(f"{key}:{secret}".encode()).decode()
    req = urllib.request.Request(
        get_base_url() + OAUTH_PATH,
        headers={"Authorization": f"Basic {credentials}"},
        method="GET"
    )
    data = _send(req, timeout=10)
    token = data.get("access_token")
    if not token:
        raise RuntimeError(f"OAuth token fetch failed: {data}")
    _TokenCache.set(token, int(data.get("expires_in", 3600)))
    logger.info("M-Pesa OAuth token refreshed.")
    return token


def _post(path: str, payload: dict) -> dict:
    token = get_oauth_token()
    req   = urllib.request.Request(
        get_base_url() + path,
        data=json.dumps(payload).encode(),
        headers={
            "Authorization": f"Bearer {token}",
            "Content-Type":  "application/json",
        },
        method="POST"
    )
    return _send(req, timeout=MPESA_CONFIG["request_timeout"])


# ── STK Push ──────────────────────────────────────────────────────────────────

def _generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK Push password = Base64(Shortcode + Passkey + Timestamp)."""
    return base64.b64encode((shortcode + passkey + timestamp).encode()).decode()


def _whole_shillings(amount) -> int:
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def initiate_stk_push(phone_number: str, amount, description: str,
                      shortcode: Optional[str] = None) -> dict:
    """
    Initiate Lipa Na M-Pesa Online (STK Push) to the customer's phone.
    Returns the raw Daraja response (ResponseCode "0" = accepted).
    """
    shortcode = shortcode or MPESA_CONFIG["shortcode"]
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    phone     = normalize_phone(phone_number)

    payload = {
        "BusinessShortCode": shortcode,
        "Password":          _generate_password(shortcode, MPESA_CONFIG["passkey"], timestamp),
        "Timestamp":         timestamp,
        "TransactionType":   "CustomerPayBillOnline",
        "Amount":            _whole_shillings(amount),
        "PartyA":            phone,
        "PartyB":            shortcode,
        "PhoneNumber":       phone,
        "CallBackURL":       MPESA_CONFIG["callback_url"],
        "AccountReference":  MPESA_CONFIG["account_ref"][:12],
        "TransactionDesc":   description[:13],
    }
    result = _post(STK_PUSH_PATH, payload)
    logger.info(f"STK Push response: {result.get('CheckoutRequestID')} code={result.get('ResponseCode')}")
    return result


# ── B2C ───────────────────────────────────────────────────────────────────────

def initiate_b2c(amount, receiver: int, remarks: str) -> dict:
    """
    Business-to-customer disbursement. Returns the raw Daraja response
    (ResponseCode "0" = accepted; ConversationID identifies the callback).
    """
    payload = {
        "OriginatorConversationID": str(uuid.uuid4()),
        "InitiatorName":            MPESA_CONFIG["initiator_name"],
        "SecurityCredential":       MPESA_CONFIG["security_credential"],
        "CommandID":                "BusinessPayment",
        "Amount":                   _whole_shillings(amount),
        "PartyA":                   MPESA_CONFIG["b2c_shortcode"],
        "PartyB":                   receiver,
        "Remarks":                  remarks[:100],
        "QueueTimeOutURL":          MPESA_CONFIG["queue_timeout_url"],
        "ResultURL":                MPESA_CONFIG["result_url"],
        "Occasion":                 "Payment",
    }
    result = _post(B2C_PATH, payload)
    logger.info(f"B2C response: {result.get('ConversationID')} code={result.get('ResponseCode')}")
    return result


# ── Gateway Client adapter ────────────────────────────────────────────────────

def _to_result(response: dict, reference_key: str) -> GatewayResult:
    accepted = str(response.get("ResponseCode", "")) == "0"
    return GatewayResult(
        accepted=accepted,
        provider_reference=response.get(reference_key) if accepted else None,
        error_message=None if accepted else (
            response.get("errorMessage") or response.get("ResponseDescription") or "Unknown error"
        ),
        raw=response,
    )


class DarajaGateway(GatewayClient):
    """Runs the blocking Daraja calls on a worker thread."""

    async def initiate_deposit(self, phone, shortcode, amount, narrative, user_id) -> GatewayResult:
        response = await asyncio.to_thread(initiate_stk_push, phone, amount, narrative, shortcode)
        return _to_result(response, "CheckoutRequestID")

    async def initiate_withdrawal(self, amount, phone_numeric, narrative) -> GatewayResult:
        response = await asyncio.to_thread(initiate_b2c, amount, phone_numeric, narrative)
        return _to_result(response, "ConversationID")


# ── Callback processors ───────────────────────────────────────────────────────

def process_stk_callback(callback_body: dict) -> dict:
    """
    Parse a Safaricom STK Push callback.

    Returns: success, result_code, result_desc, reference (CheckoutRequestID),
    amount, receipt_number, phone.
    """
    try:
        stk         = callback_body["Body"]["stkCallback"]
        result_code = int(stk.get("ResultCode", -1))
        result = {
            "success":        result_code == 0,
            "result_code":    result_code,
            "result_desc":    stk.get("ResultDesc", "Unknown"),
            "reference":      stk.get("CheckoutRequestID", ""),
            "amount":         None,
            "receipt_number": None,
            "phone":          None,
        }
        if result_code == 0:
            items = stk.get("CallbackMetadata", {}).get("Item", [])
            meta  = {item["Name"]: item.get("Value") for item in items}
            result["amount"]         = meta.get("Amount")
            result["receipt_number"] = str(meta.get("MpesaReceiptNumber", ""))
            result["phone"]          = str(meta.get("PhoneNumber", ""))
        return result
    except (KeyError, TypeError, ValueError) as e:
        logger.error(f"Malformed STK callback: {e}")
        return {"success": False, "result_code": -99, "result_desc": f"Malformed callback: {e}",
                "reference": "", "amount": None, "receipt_number": None, "phone": None}


def process_b2c_result(callback_body: dict) -> dict:
    """Parse a B2C ResultURL body. `reference` is the ConversationID."""
    try:
        res         = callback_body["Result"]
        result_code = int(res.get("ResultCode", -1))
        params      = res.get("ResultParameters", {}).get("ResultParameter", [])
        if isinstance(params, dict):
            params = [params]
        meta = {p.get("Key"): p.get("Value") for p in params}
        return {
            "success":        result_code == 0,
            "result_code":    result_code,
            "result_desc":    res.get("ResultDesc", "Unknown"),
            "reference":      res.get("ConversationID", ""),
            "receipt_number": meta.get("TransactionReceipt"),
        }
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        logger.error(f"Malformed B2C result: {e}")
        return {"success": False, "result_code": -99, "result_desc": f"Malformed result: {e}",
                "reference": "", "receipt_number": None}


RESULT_CODE_MESSAGES = {
    0:    "Payment received successfully.",
    1:    "Insufficient funds in your M-Pesa account.",
    17:   "M-Pesa system temporarily unavailable. Please try again.",
    1032: "Request cancelled by user.",
    1037: "STK Push timeout — user did not enter PIN in time.",
    2001: "Wrong PIN entered. Please try again.",
    -1:   "System internal error.",
}


def friendly_result_message(result_code: int) -> str:
    return RESULT_CODE_MESSAGES.get(result_code, f"Payment failed (code {result_code}).")
