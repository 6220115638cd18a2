"""
NexusPay Reconciliation Server
===============================
FastAPI application hosting the escrow retry/reconciliation core:

  GET  /api/health                               liveness + scheduler state
  POST /api/internal/retry-transactions          run a retry cycle now (development only)
  POST /api/v1/mpesa/callback                    Safaricom STK Push result (no auth)
  POST /api/v1/mpesa/b2c/result                  Safaricom B2C result (no auth)
  POST /api/v1/mpesa/queue                       Safaricom B2C queue timeout (no auth)
  GET  /api/v1/escrow                            caller's escrow history
  GET  /api/v1/escrow/{transaction_id}           single record (owner or admin)
  GET  /api/v1/admin/escrow?status=              records by status
  GET  /api/v1/admin/escrow/{id}/events          audit trail
  POST /api/v1/admin/escrow/{id}/requeue         exhausted -> fresh budget + immediate attempt
  POST /api/v1/admin/escrow/{id}/resolve         error -> completed after manual reconciliation

Usage:
    python server.py                  # http://0.0.0.0:8000
    NEXUSPAY_ENV=development python server.py

The retry scheduler starts once the database is initialised and is
stopped on shutdown (uvicorn turns SIGINT/SIGTERM into lifespan shutdown).
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import uvicorn

import mpesa
from config import CONFIG, is_development
from core.callbacks import CallbackProcessor
from core.database import init_db
from core.escrow import EscrowStore, RecordNotFoundError, InvalidTransitionError, STATUSES
from core.reconciliation import RetryEngine, resolve_error_record
from core.scheduler import SchedulerHandle
from core.security import KeyVault, TokenVerifier
from core.users import UserDirectory
from wallet_client import WalletApiClient

# ── Logging ───────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, str(CONFIG["log_level"]).upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s"
)
logger = logging.getLogger("nexuspay")

STARTED_AT = time.time()


# =============================================================================
# SERVICE WIRING
# =============================================================================

@dataclass
class Services:
    db_path: Optional[str]
    store: EscrowStore
    users: UserDirectory
    engine: RetryEngine
    callbacks: CallbackProcessor
    scheduler: SchedulerHandle
    tokens: TokenVerifier
    cfg: dict


def build_services(cfg: dict = None, gateway=None, transfer_client=None) -> Services:
    """Wire store, collaborators, engine and scheduler from config."""
    cfg     = cfg or CONFIG
    db_path = cfg["db_path"]
    store   = EscrowStore(db_path)
    users   = UserDirectory(db_path)

    if transfer_client is None:
        vault = KeyVault.from_key_b64(cfg["key_encryption_key"]) if cfg["key_encryption_key"] else None
        if vault is None:
            logger.warning("NEXUSPAY_KEY_ENCRYPTION_KEY not set: user-signed transfers will fail")
        transfer_client = WalletApiClient(cfg["wallet_api_url"], cfg["wallet_api_key"], vault)
    gateway = gateway or mpesa.DarajaGateway()

    engine = RetryEngine(
        store, users, gateway, transfer_client,
        shortcode=mpesa.MPESA_CONFIG["shortcode"],
        platform_wallet_address=cfg["platform_wallet_address"],
        default_chain=cfg["default_chain"],
        default_token=cfg["default_token"],
        max_retry_count=cfg["max_retry_count"],
        age_window_minutes=cfg["retry_age_window_minutes"],
        lease_seconds=cfg["retry_lease_seconds"],
        backoff_attempts=cfg["backoff_max_attempts"],
        backoff_base_delay=cfg["backoff_base_delay"],
    )
    callbacks = CallbackProcessor(store, users, transfer_client,
                                  default_chain=cfg["default_chain"],
                                  default_token=cfg["default_token"],
                                  max_retry_count=cfg["max_retry_count"])
    scheduler = SchedulerHandle(engine.retry_all_failed_transactions,
                                interval_seconds=cfg["retry_interval_minutes"] * 60)

    if not cfg["jwt_secret"]:
        logger.warning("NEXUSPAY_JWT_SECRET not set: using an ephemeral signing key")
    tokens = TokenVerifier(cfg["jwt_secret"] or None)

    return Services(db_path, store, users, engine, callbacks, scheduler, tokens, cfg)


def start_schedulers(app: FastAPI):
    app.state.scheduler.start()


async def stop_schedulers(app: FastAPI):
    await app.state.scheduler.stop()


# =============================================================================
# HELPERS & AUTH
# =============================================================================

def standard_response(success: bool, message: str, data=None, error=None) -> dict:
    return {
        "success":   success,
        "message":   message,
        "data":      data,
        "error":     error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def get_services(request: Request) -> Services:
    return request.app.state.services


bearer = HTTPBearer(auto_error=True)


def require_auth(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    services: Services = Depends(get_services),
) -> dict:
    payload = services.tokens.verify_token(creds.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return payload


def require_admin(payload: dict = Depends(require_auth)) -> dict:
    if payload.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return payload


def _load_record(services: Services, transaction_id: str):
    try:
        return services.store.find_by_transaction_id(transaction_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")


class ResolveRequest(BaseModel):
    transfer_hash: Optional[str] = Field(default=None, min_length=1, max_length=128)
    note: str = Field(default="", max_length=500)


# =============================================================================
# ROUTES
# =============================================================================

router = APIRouter()


@router.get("/api/health")
def health(services: Services = Depends(get_services)):
    return standard_response(True, "Service is healthy", {
        "uptime":            round(time.time() - STARTED_AT, 1),
        "scheduler_running": services.scheduler.running,
    })


@router.post("/api/internal/retry-transactions")
async def trigger_retry(services: Services = Depends(get_services)):
    """Manual retry trigger; development environments only."""
    if not is_development(services.cfg):
        return JSONResponse(status_code=403, content=standard_response(
            False,
            "This endpoint is only available in development mode",
            error={"code": "DEV_ONLY",
                   "message": "This endpoint is restricted to development environment only"},
        ))
    ran = await services.scheduler.run_immediate_retry()
    message = ("Manual retry operation triggered successfully" if ran
               else "A retry run is already in progress")
    return standard_response(True, message, {"ran": ran})


# ── M-Pesa webhooks ───────────────────────────────────────────────────────────

_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post("/api/v1/mpesa/callback")
async def mpesa_stk_callback(request: Request, services: Services = Depends(get_services)):
    try:
        body   = await request.json()
        parsed = mpesa.process_stk_callback(body)
        logger.info(
            f"STK callback {parsed['reference']}: {parsed['result_code']} "
            f"({mpesa.friendly_result_message(parsed['result_code'])})"
        )
        await services.callbacks.handle_stk_result(parsed)
    except Exception:
        logger.exception("STK callback processing error")
    return _ACK


@router.post("/api/v1/mpesa/b2c/result")
async def mpesa_b2c_result(request: Request, services: Services = Depends(get_services)):
    try:
        body   = await request.json()
        parsed = mpesa.process_b2c_result(body)
        logger.info(f"B2C result {parsed['reference']}: {parsed['result_code']}")
        await services.callbacks.handle_b2c_result(parsed)
    except Exception:
        logger.exception("B2C result processing error")
    return _ACK


@router.post("/api/v1/mpesa/queue")
async def mpesa_queue_timeout(request: Request):
    try:
        body = await request.json()
    except ValueError:
        body = {}
    logger.warning(f"B2C queue timeout received: {str(body)[:200]}")
    return _ACK


# ── Escrow status ─────────────────────────────────────────────────────────────

@router.get("/api/v1/escrow")
def escrow_history(
    limit: int = Query(default=50, ge=1, le=200),
    payload: dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    records = services.store.list_for_user(payload["sub"], limit)
    return {"transactions": [r.to_dict() for r in records]}


@router.get("/api/v1/escrow/{transaction_id}")
def escrow_status(
    transaction_id: str,
    payload: dict = Depends(require_auth),
    services: Services = Depends(get_services),
):
    record = _load_record(services, transaction_id)
    if record.user_id != payload["sub"] and payload.get("role") != "admin":
        raise HTTPException(status_code=404, detail="Transaction not found")
    return record.to_dict()


# ── Admin ─────────────────────────────────────────────────────────────────────

@router.get("/api/v1/admin/escrow")
def admin_list_escrow(
    status: str = Query(default="exhausted"),
    limit: int = Query(default=200, ge=1, le=1000),
    payload: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    if status not in STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    records = services.store.list_by_status(status, limit)
    return {"status": status, "count": len(records), "transactions": [r.to_dict() for r in records]}


@router.get("/api/v1/admin/escrow/{transaction_id}/events")
def admin_escrow_events(
    transaction_id: str,
    payload: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    _load_record(services, transaction_id)
    return {"transaction_id": transaction_id, "events": services.store.events_for(transaction_id)}


@router.post("/api/v1/admin/escrow/{transaction_id}/requeue")
async def admin_requeue(
    transaction_id: str,
    payload: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        accepted = await services.engine.requeue(transaction_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    logger.info(f"Admin {payload['sub']} re-queued {transaction_id} (accepted={accepted})")
    record = services.store.find_by_transaction_id(transaction_id)
    return {"accepted": accepted, "transaction": record.to_dict()}


@router.post("/api/v1/admin/escrow/{transaction_id}/resolve")
def admin_resolve(
    transaction_id: str,
    req: ResolveRequest,
    payload: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    try:
        record = resolve_error_record(services.store, transaction_id,
                                      req.transfer_hash, req.note)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    logger.info(f"Admin {payload['sub']} resolved {transaction_id}")
    return {"transaction": record.to_dict()}


# =============================================================================
# FASTAPI APP
# =============================================================================

def create_app(services: Services = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        init_db(services.db_path)
        start_schedulers(application)
        logger.info("NexusPay server started. Retry scheduler running.")
        yield
        await stop_schedulers(application)

    application = FastAPI(
        title="NexusPay Reconciliation API",
        version=CONFIG["app_version"],
        description="Escrow retry and reconciliation for M-Pesa <-> stablecoin transfers",
        lifespan=lifespan,
    )
    application.state.services  = services
    application.state.scheduler = services.scheduler
    application.include_router(router)

    @application.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all: never leak stack traces to clients."""
        logger.exception(f"Unhandled exception on {request.url}: {exc}")
        return JSONResponse(
            status_code=500,
            content=standard_response(False, "Internal server error", error={"code": "SERVER_ERROR"}),
        )

    return application


app = create_app()


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    HOST = os.environ.get("NEXUSPAY_HOST", "0.0.0.0")
    PORT = int(os.environ.get("NEXUSPAY_PORT", "8000"))

    print("\n" + "=" * 60)
    print(f"  {CONFIG['app_name']} Reconciliation Server v{CONFIG['app_version']}")
    print("=" * 60)
    print(f"  Environment        : {CONFIG['environment'].upper()}")
    print(f"  M-Pesa Environment : {mpesa.MPESA_CONFIG['environment'].upper()}")
    print(f"  Retry interval     : {CONFIG['retry_interval_minutes']} min")
    print(f"  Database           : {CONFIG['db_path']}")
    print("=" * 60)

    uvicorn.run("server:app", host=HOST, port=PORT, reload=False, workers=1, log_level="info")
