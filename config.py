"""
NexusPay Service Configuration
===============================
Central config for the escrow reconciliation service.

Resolution order (later wins):
    1. Built-in defaults below
    2. nexuspay_config.json next to this file (or NEXUSPAY_CONFIG_FILE)
    3. Environment variables

For local development:  NEXUSPAY_ENV=development
For production:         leave NEXUSPAY_ENV unset and provide secrets via env vars.
"""

import os
import json
import logging

logger = logging.getLogger("nexuspay.config")

# ── Default configuration ──────────────────────────────────────────────────────

_BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULTS = {
    "app_name":                 "NexusPay",
    "app_version":              "1.0.0",
    "environment":              "production",
    "db_path":                  os.path.join(_BASE_DIR, "nexuspay.db"),
    "log_level":                "INFO",
    # Retry cycle
    "retry_interval_minutes":   15,
    "retry_age_window_minutes": 60,
    "max_retry_count":          3,
    "retry_lease_seconds":      600,
    # Intra-call backoff (transient network errors only)
    "backoff_max_attempts":     3,
    "backoff_base_delay":       1.0,
    # Value transfer
    "platform_wallet_address":  "",
    "default_chain":            "celo",
    "default_token":            "USDC",
    "wallet_api_url":           "http://127.0.0.1:3005",
    "wallet_api_key":           "",
    # Secrets
    "jwt_secret":               "",
    "key_encryption_key":       "",
}

# config key -> (env var, type)
_ENV_VARS = {
    "environment":              ("NEXUSPAY_ENV", str),
    "db_path":                  ("NEXUSPAY_DB_PATH", str),
    "log_level":                ("LOG_LEVEL", str),
    "retry_interval_minutes":   ("RETRY_INTERVAL_MINUTES", float),
    "retry_age_window_minutes": ("RETRY_AGE_WINDOW_MINUTES", float),
    "max_retry_count":          ("MAX_RETRY_COUNT", int),
    "retry_lease_seconds":      ("RETRY_LEASE_SECONDS", float),
    "backoff_max_attempts":     ("BACKOFF_MAX_ATTEMPTS", int),
    "backoff_base_delay":       ("BACKOFF_BASE_DELAY", float),
    "platform_wallet_address":  ("PLATFORM_WALLET_ADDRESS", str),
    "default_chain":            ("DEFAULT_CHAIN", str),
    "default_token":            ("DEFAULT_TOKEN", str),
    "wallet_api_url":           ("WALLET_API_URL", str),
    "wallet_api_key":           ("WALLET_API_KEY", str),
    "jwt_secret":               ("NEXUSPAY_JWT_SECRET", str),
    "key_encryption_key":       ("NEXUSPAY_KEY_ENCRYPTION_KEY", str),
}


def _config_file_path() -> str:
    return os.environ.get("NEXUSPAY_CONFIG_FILE",
                          os.path.join(_BASE_DIR, "nexuspay_config.json"))


def _load_file(path: str) -> dict:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            loaded = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not load {path}: {e}")
        return {}
    return {k: v for k, v in loaded.items() if k in DEFAULTS}


def _load_env(environ) -> dict:
    overrides = {}
    for key, (var, cast) in _ENV_VARS.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            overrides[key] = cast(raw)
        except ValueError:
            raise ValueError(f"Invalid value for {var}: {raw!r} (expected {cast.__name__})")
    return overrides


def load_config(environ=None) -> dict:
    """Build the effective config: defaults, then JSON file, then environment."""
    environ = os.environ if environ is None else environ
    cfg = dict(DEFAULTS)
    cfg.update(_load_file(_config_file_path()))
    cfg.update(_load_env(environ))
    cfg["environment"] = str(cfg["environment"]).lower()
    return cfg


def is_development(cfg: dict = None) -> bool:
    return (cfg or CONFIG).get("environment") == "development"


# Global config object, imported everywhere
CONFIG = load_config()
