"""
Claimgate - Configuration

Every tunable comes from the environment (a local .env file is honoured).
Values are read once into an immutable Settings object; tests build their
own Settings instead of touching os.environ.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


# =============================================================================
# CONSTANTS (HARD-LOCKED)
# =============================================================================

MAX_SUPPLY = 100
BITMAP_WIDTH = 256
MAX_OBSERVATION_LENGTH = 250


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the claim service."""

    # Persistence
    database_url: str = "sqlite:///./claimgate.db"

    # Keys (hex). Missing keys are replaced by ephemeral ones at startup.
    owner_private_key: Optional[str] = None
    authority_private_key: Optional[str] = None
    admin_api_key: str = "claimgate-admin-key-change-in-production"

    # Local ledger
    genesis_deposit: bool = True
    relayer_balance_wei: int = 10 ** 18
    gas_price_wei: int = 20 * 10 ** 9
    explorer_tx_url: str = "https://etherscan.io/tx/"

    # Relay executor
    relay_mode: str = "confirmed"
    relay_max_attempts: int = 3
    relay_backoff_base: float = 2.0
    gas_margin_percent: int = 20
    confirm_timeout: float = 120.0

    # Evaluator
    evaluator_url: str = "https://generativelanguage.googleapis.com/v1beta"
    evaluator_api_key: Optional[str] = None
    evaluator_model: str = "gemini-2.0-flash"
    evaluator_fallback_model: str = "gemini-2.0-flash"
    evaluator_timeout: float = 15.0
    approve_threshold: int = 5
    hard_reject_below: int = 3

    # Trust gate
    trust_failure_threshold: int = 3
    trust_block_seconds: int = 60 * 60
    trust_window_seconds: int = 60 * 60

    # Observation ledger
    observation_cache_ttl: float = 30.0

    # HTTP
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    trust_proxy: bool = False
    trusted_proxy_hops: int = 1
    rate_limit_default: str = "100/15minutes"
    rate_limit_submit: str = "5/hour"

    @property
    def optimistic_relay(self) -> bool:
        return self.relay_mode == "optimistic"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            owner_private_key=os.getenv("OWNER_PRIVATE_KEY") or None,
            authority_private_key=os.getenv("AUTHORITY_PRIVATE_KEY") or None,
            admin_api_key=os.getenv("ADMIN_API_KEY", cls.admin_api_key),
            genesis_deposit=_env_bool("GENESIS_DEPOSIT", cls.genesis_deposit),
            relayer_balance_wei=_env_int("RELAYER_BALANCE_WEI", cls.relayer_balance_wei),
            gas_price_wei=_env_int("GAS_PRICE_WEI", cls.gas_price_wei),
            explorer_tx_url=os.getenv("EXPLORER_TX_URL", cls.explorer_tx_url),
            relay_mode=os.getenv("RELAY_MODE", cls.relay_mode).lower(),
            relay_max_attempts=_env_int("RELAY_MAX_ATTEMPTS", cls.relay_max_attempts),
            relay_backoff_base=_env_float("RELAY_BACKOFF_BASE", cls.relay_backoff_base),
            gas_margin_percent=_env_int("GAS_MARGIN_PERCENT", cls.gas_margin_percent),
            confirm_timeout=_env_float("CONFIRM_TIMEOUT", cls.confirm_timeout),
            evaluator_url=os.getenv("EVALUATOR_URL", cls.evaluator_url),
            evaluator_api_key=os.getenv("EVALUATOR_API_KEY") or None,
            evaluator_model=os.getenv("EVALUATOR_MODEL", cls.evaluator_model),
            evaluator_fallback_model=os.getenv("EVALUATOR_FALLBACK_MODEL", cls.evaluator_fallback_model),
            evaluator_timeout=_env_float("EVALUATOR_TIMEOUT", cls.evaluator_timeout),
            approve_threshold=_env_int("APPROVE_THRESHOLD", cls.approve_threshold),
            hard_reject_below=_env_int("HARD_REJECT_BELOW", cls.hard_reject_below),
            trust_failure_threshold=_env_int("TRUST_FAILURE_THRESHOLD", cls.trust_failure_threshold),
            trust_block_seconds=_env_int("TRUST_BLOCK_SECONDS", cls.trust_block_seconds),
            trust_window_seconds=_env_int("TRUST_WINDOW_SECONDS", cls.trust_window_seconds),
            observation_cache_ttl=_env_float("OBSERVATION_CACHE_TTL", cls.observation_cache_ttl),
            allowed_origins=_env_list("ALLOWED_ORIGINS", "*"),
            trust_proxy=_env_bool("TRUST_PROXY", cls.trust_proxy),
            trusted_proxy_hops=_env_int("TRUSTED_PROXY_HOPS", cls.trusted_proxy_hops),
            rate_limit_default=os.getenv("RATE_LIMIT_DEFAULT", cls.rate_limit_default),
            rate_limit_submit=os.getenv("RATE_LIMIT_SUBMIT", cls.rate_limit_submit),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings.from_env()
