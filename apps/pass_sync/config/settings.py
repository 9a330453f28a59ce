# apps/pass_sync/config/settings.py

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

DEFAULT_PASS_TYPE_IDENTIFIERS = {
    "gold": "pass.com.wavex.gold",
    "platinum": "pass.com.wavex.platinum",
    "black": "pass.com.wavex.black",
    "eventbrite": "pass.com.wavex.eventbrite",
}


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _flag_env(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw == "true"


def _str_env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or default


def _pass_types_env(name: str) -> Dict[str, str]:
    """
    "gold=pass.com.wavex.gold,black=pass.com.wavex.black" -> {tier: identifier}
    """
    raw = _str_env(name)
    if not raw:
        return dict(DEFAULT_PASS_TYPE_IDENTIFIERS)
    out: Dict[str, str] = {}
    for chunk in raw.split(","):
        if "=" not in chunk:
            continue
        tier, identifier = chunk.split("=", 1)
        if tier.strip() and identifier.strip():
            out[tier.strip()] = identifier.strip()
    return out or dict(DEFAULT_PASS_TYPE_IDENTIFIERS)


@dataclass(frozen=True)
class Settings:
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Store
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    # Ledger
    ledger_rpc_url: Optional[str] = None
    ledger_contract_address: Optional[str] = None
    ledger_chain_id: Optional[int] = None
    ledger_signer_key: Optional[str] = None
    token_decimals: int = 6
    transaction_history_limit: int = 100
    ledger_confirmations: int = 2
    ledger_poll_interval_seconds: float = 5.0
    ledger_max_block_range: int = 2000
    ledger_max_retries: int = 3
    ledger_retry_backoff_seconds: float = 1.5

    # Push
    apns_url: str = "https://api.push.apple.com"
    push_timeout_seconds: float = 10.0

    # Pass signing
    apple_team_identifier: Optional[str] = None
    pass_signer_cert_path: Optional[str] = None
    pass_signer_key_path: Optional[str] = None
    pass_signer_key_passphrase: Optional[str] = None
    wwdr_certificate_path: Optional[str] = None
    pass_template_dir: str = "certificates"
    pass_webservice_url: Optional[str] = None
    pass_auth_secret: Optional[str] = None
    pass_organization_name: str = "WaveX"
    pass_type_identifiers: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_PASS_TYPE_IDENTIFIERS)
    )

    # Reconciliation
    subscription_retention_days: int = 30
    cleanup_interval_seconds: int = 86400
    resync_interval_seconds: int = 3600

    # Fan-out
    fanout_queue_size: int = 1000
    fanout_workers: int = 4

    # Access
    internal_token: Optional[str] = None

    # Feature flags
    ledger_consumer_enabled: bool = True
    reconciliation_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        chain_id = _str_env("LEDGER_CHAIN_ID")
        return cls(
            version=_str_env("PASS_SYNC_VERSION", "0.1.0"),
            log_level=(_str_env("LOG_LEVEL", "INFO") or "INFO").upper(),
            supabase_url=_str_env("SUPABASE_URL"),
            supabase_service_role_key=_str_env("SUPABASE_SERVICE_ROLE_KEY"),
            ledger_rpc_url=_str_env("LEDGER_RPC_URL"),
            ledger_contract_address=_str_env("LEDGER_CONTRACT_ADDRESS"),
            ledger_chain_id=int(chain_id) if chain_id else None,
            ledger_signer_key=_str_env("LEDGER_SIGNER_KEY"),
            token_decimals=_int_env("TOKEN_DECIMALS", 6),
            transaction_history_limit=_int_env("TRANSACTION_HISTORY_LIMIT", 100),
            ledger_confirmations=_int_env("LEDGER_CONFIRMATIONS", 2),
            ledger_poll_interval_seconds=_float_env("LEDGER_POLL_INTERVAL_SECONDS", 5.0),
            ledger_max_block_range=_int_env("LEDGER_MAX_BLOCK_RANGE", 2000),
            ledger_max_retries=_int_env("LEDGER_MAX_RETRIES", 3),
            ledger_retry_backoff_seconds=_float_env("LEDGER_RETRY_BACKOFF_SECONDS", 1.5),
            apns_url=_str_env("APNS_URL", "https://api.push.apple.com"),
            push_timeout_seconds=_float_env("PUSH_TIMEOUT_SECONDS", 10.0),
            apple_team_identifier=_str_env("APPLE_TEAM_IDENTIFIER"),
            pass_signer_cert_path=_str_env("PASS_SIGNER_CERT_PATH"),
            pass_signer_key_path=_str_env("PASS_SIGNER_KEY_PATH"),
            pass_signer_key_passphrase=_str_env("PASS_SIGNER_KEY_PASSPHRASE"),
            wwdr_certificate_path=_str_env("WWDR_CERTIFICATE_PATH"),
            pass_template_dir=_str_env("PASS_TEMPLATE_DIR", "certificates"),
            pass_webservice_url=_str_env("PASS_WEBSERVICE_URL"),
            pass_auth_secret=_str_env("PASS_AUTH_SECRET"),
            pass_organization_name=_str_env("PASS_ORGANIZATION_NAME", "WaveX"),
            pass_type_identifiers=_pass_types_env("PASS_TYPE_IDENTIFIERS"),
            subscription_retention_days=_int_env("SUBSCRIPTION_RETENTION_DAYS", 30),
            cleanup_interval_seconds=_int_env("CLEANUP_INTERVAL_SECONDS", 86400),
            resync_interval_seconds=_int_env("RESYNC_INTERVAL_SECONDS", 3600),
            fanout_queue_size=_int_env("FANOUT_QUEUE_SIZE", 1000),
            fanout_workers=_int_env("FANOUT_WORKERS", 4),
            internal_token=_str_env("INTERNAL_TOKEN"),
            ledger_consumer_enabled=_flag_env("LEDGER_CONSUMER_ENABLED", True),
            reconciliation_enabled=_flag_env("RECONCILIATION_ENABLED", True),
        )

    @property
    def supported_pass_types(self) -> frozenset:
        return frozenset(self.pass_type_identifiers.values())
