"""
Mirror Bot Configuration.
Defines the configuration of the mirror orchestrator and loads it from the
environment.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from mirroring.engine import ExecutionConfig, SizingConfig
from mirroring.market_filter import normalize_category_token
from mirroring.market_guard import MarketFilterConfig
from risk_management.allowance import AllowanceConfig, UNLIMITED_APPROVALS
from trader_identification.selection import FollowMode, SelectionConfig
from utils.validation import (
    is_address,
    same_address,
    to_finite_float,
    validate_eth_address,
    validate_http_url,
    validate_percentage,
    validate_positive_number,
    validate_private_key,
)


logger = logging.getLogger(__name__)

DEFAULT_CLOB_HOST = "https://clob.polymarket.com"

_TRUE_VALUES = ("true", "1", "yes")
_FALSE_VALUES = ("false", "0", "no")


class ConfigError(ValueError):
    """Invalid or incomplete configuration; fatal at startup."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("Invalid configuration:\n  - " + "\n  - ".join(self.errors))


@dataclass
class PollingConfig:
    """Signal polling cadence, pagination and cursor handling."""
    poll_ms: int = 4000
    poll_concurrency: int = 4
    trade_page_size: int = 500
    trade_max_pages: int = 5
    no_order_liveness_ms: int = 900_000
    status_log_ms: int = 60_000
    cursor_file: str = ".pm_mirror_cursor.json"
    bootstrap_lookback_ms: int = 60_000
    start_from_now: bool = False


@dataclass
class MirrorConfig:
    """Complete mirror bot configuration."""

    target_wallets: List[str] = field(default_factory=list)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    sizing: SizingConfig = field(default_factory=SizingConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    allowance: AllowanceConfig = field(default_factory=AllowanceConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    filters: MarketFilterConfig = field(default_factory=MarketFilterConfig)

    chain_id: int = 137
    clob_host: str = DEFAULT_CLOB_HOST
    private_key: Optional[str] = field(default=None, repr=False)
    rpc_url: Optional[str] = None
    state_db_path: str = "mirror_state.db"
    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def dry_run(self) -> bool:
        return self.execution.dry_run

    @property
    def my_address(self) -> Optional[str]:
        return self.execution.my_address

    @property
    def signature_type(self) -> int:
        return self.execution.signature_type

    @property
    def funder_address(self) -> Optional[str]:
        return self.execution.funder_address

    # =============================================================================
    # LOADING
    # =============================================================================

    @classmethod
    def from_environment(cls, env: Optional[Mapping[str, str]] = None) -> "MirrorConfig":
        """
        Create configuration from environment variables.

        Values are stripped of whitespace and surrounding quotes. Every parse
        problem is collected and raised together as a ConfigError.
        """
        source = os.environ if env is None else env
        reader = _EnvReader(source)
        config = cls()

        config.target_wallets = reader.wallets("TARGET_WALLETS")

        mode = (reader.text("FOLLOW_MODE") or "LEADER").upper()
        try:
            follow_mode = FollowMode(mode)
        except ValueError:
            reader.errors.append(f"Invalid FOLLOW_MODE: {mode}")
            follow_mode = FollowMode.LEADER

        config.selection = SelectionConfig(
            follow_mode=follow_mode,
            topk=reader.integer("TOPK", 2),
            lookback_days=reader.integer("LOOKBACK_DAYS", 30),
            min_closed_sample=reader.integer("MIN_CLOSED_SAMPLE", 5),
            eval_interval_ms=reader.integer("EVAL_INTERVAL_MS", 600_000),
            min_hold_ms=reader.integer("MIN_HOLD_MS", 1_800_000),
            switch_margin_pct=reader.number("SWITCH_MARGIN_PCT", 0.1),
            stop_score=reader.number("STOP_SCORE", -0.01),
            stop_realized_pnl=reader.number("STOP_REALIZED_PNL", -10.0),
            cooldown_ms=reader.integer("COOLDOWN_MS", 3_600_000),
            open_pnl_penalty_factor=reader.number("OPEN_PNL_PENALTY_FACTOR", 0.25),
        )

        config.sizing = SizingConfig(
            copy_ratio=reader.number("COPY_RATIO", 0.02),
            max_usdc_per_trade=reader.number("MAX_USDC_PER_TRADE", 50.0),
            max_shares_per_trade=reader.number("MAX_SHARES_PER_TRADE", 200.0),
            max_daily_usdc=reader.number("MAX_DAILY_USDC", None),
            slippage_pct=reader.number("SLIPPAGE_PCT", 0.02),
        )

        dry_run = reader.boolean("DRY_RUN", True)
        my_address = reader.hex("MY_USER_ADDRESS")
        signature_type = reader.integer("SIGNATURE_TYPE", 1)
        funder = reader.hex("FUNDER_ADDRESS")

        config.execution = ExecutionConfig(
            dry_run=dry_run,
            order_ttl_s=reader.integer("ORDER_TTL_SECONDS", 60),
            expiration_safety_s=reader.integer("EXPIRATION_SAFETY_SECONDS", 60),
            market_end_safety_s=reader.integer("MARKET_END_SAFETY_SECONDS", 300),
            balance_error_cooldown_ms=reader.integer("BALANCE_ERROR_COOLDOWN_MS", 900_000),
            auth_backoff_ms=reader.integer("AUTH_BACKOFF_MS", 300_000),
            my_address=my_address,
            signature_type=signature_type,
            funder_address=funder,
        )

        min_allowance = reader.number("MIN_ALLOWANCE_USDC", None)
        if min_allowance is None:
            min_allowance = reader.number("ALLOWANCE_THRESHOLD_USDC", 50.0)
        config.allowance = AllowanceConfig(
            auto_approve=reader.boolean("AUTO_APPROVE", False),
            approve_amount_usdc=reader.approve_amount("APPROVE_AMOUNT_USDC", "1000"),
            min_allowance_usdc=min_allowance,
            signature_type=signature_type,
            my_address=my_address,
            funder_address=funder,
            dry_run=dry_run,
        )

        config.polling = PollingConfig(
            poll_ms=reader.integer("POLL_MS", 4000),
            poll_concurrency=reader.integer("POLL_CONCURRENCY", 4),
            trade_page_size=reader.integer("TRADE_PAGE_SIZE", 500),
            trade_max_pages=reader.integer("TRADE_MAX_PAGES", 5),
            no_order_liveness_ms=reader.integer("NO_ORDER_LIVENESS_MS", 900_000),
            status_log_ms=reader.integer("STATUS_LOG_MS", 60_000),
            cursor_file=reader.text("MIRROR_CURSOR_FILE") or ".pm_mirror_cursor.json",
            bootstrap_lookback_ms=reader.integer("MIRROR_BOOTSTRAP_LOOKBACK_MS", 60_000),
            start_from_now=reader.boolean("START_FROM_NOW", False),
        )

        config.filters = MarketFilterConfig(
            allowed_categories=reader.categories(
                "ALLOWED_CATEGORIES", ["crypto", "finance", "politics", "tech", "other"]
            ),
            disallowed_categories=reader.categories("DISALLOWED_CATEGORIES", ["sports"]),
        )

        config.chain_id = reader.integer("CHAIN_ID", 137)
        config.clob_host = reader.text("CLOB_HOST") or DEFAULT_CLOB_HOST
        config.private_key = reader.hex("PRIVATE_KEY")
        config.rpc_url = reader.text("RPC_URL") or None
        config.state_db_path = reader.text("STATE_DB_PATH") or "mirror_state.db"
        config.log_level = (reader.text("LOG_LEVEL") or "INFO").upper()
        config.log_dir = reader.text("LOG_DIR") or "logs"

        if reader.errors:
            raise ConfigError(reader.errors)
        return config

    # =============================================================================
    # VALIDATION
    # =============================================================================

    def collect_errors(self) -> List[str]:
        """Every configuration problem, in a stable order."""
        errors: List[str] = []

        def check(result: Tuple[bool, str]):
            ok, message = result
            if not ok:
                errors.append(message)

        if not self.target_wallets:
            errors.append("TARGET_WALLETS is required")
        for wallet in self.target_wallets:
            check(validate_eth_address(wallet, f"TARGET_WALLETS entry {wallet}"))

        if self.chain_id <= 0:
            errors.append(f"Invalid CHAIN_ID: {self.chain_id}")
        check(validate_http_url(self.clob_host, "CLOB_HOST"))
        if self.rpc_url:
            check(validate_http_url(self.rpc_url, "RPC_URL"))

        check(validate_eth_address(self.my_address, "MY_USER_ADDRESS"))
        if self.funder_address:
            check(validate_eth_address(self.funder_address, "FUNDER_ADDRESS"))
        if self.signature_type not in (0, 1, 2):
            errors.append(f"SIGNATURE_TYPE must be 0, 1, or 2. Got {self.signature_type}")

        if self.private_key:
            check(validate_private_key(self.private_key))
        elif not self.dry_run:
            errors.append("PRIVATE_KEY is required when DRY_RUN=false")
        if not self.dry_run and self.signature_type in (1, 2) and not self.funder_address:
            errors.append("FUNDER_ADDRESS is required for SIGNATURE_TYPE=1 or 2 when DRY_RUN=false")

        errors.extend(self._identity_errors())

        for value, name in (
            (self.sizing.copy_ratio, "COPY_RATIO"),
            (self.sizing.slippage_pct, "SLIPPAGE_PCT"),
            (self.selection.switch_margin_pct, "SWITCH_MARGIN_PCT"),
        ):
            check(validate_percentage(value, name))

        for value, name in (
            (self.sizing.max_usdc_per_trade, "MAX_USDC_PER_TRADE"),
            (self.sizing.max_shares_per_trade, "MAX_SHARES_PER_TRADE"),
            (self.selection.eval_interval_ms, "EVAL_INTERVAL_MS"),
            (self.selection.lookback_days, "LOOKBACK_DAYS"),
            (self.selection.topk, "TOPK"),
            (self.polling.poll_ms, "POLL_MS"),
            (self.polling.poll_concurrency, "POLL_CONCURRENCY"),
            (self.polling.trade_page_size, "TRADE_PAGE_SIZE"),
            (self.polling.trade_max_pages, "TRADE_MAX_PAGES"),
            (self.execution.order_ttl_s, "ORDER_TTL_SECONDS"),
        ):
            check(validate_positive_number(value, name))

        for value, name in (
            (self.selection.min_closed_sample, "MIN_CLOSED_SAMPLE"),
            (self.selection.min_hold_ms, "MIN_HOLD_MS"),
            (self.selection.cooldown_ms, "COOLDOWN_MS"),
            (self.selection.open_pnl_penalty_factor, "OPEN_PNL_PENALTY_FACTOR"),
            (self.execution.expiration_safety_s, "EXPIRATION_SAFETY_SECONDS"),
            (self.execution.market_end_safety_s, "MARKET_END_SAFETY_SECONDS"),
            (self.execution.balance_error_cooldown_ms, "BALANCE_ERROR_COOLDOWN_MS"),
            (self.execution.auth_backoff_ms, "AUTH_BACKOFF_MS"),
            (self.polling.no_order_liveness_ms, "NO_ORDER_LIVENESS_MS"),
            (self.polling.bootstrap_lookback_ms, "MIRROR_BOOTSTRAP_LOOKBACK_MS"),
            (self.allowance.min_allowance_usdc, "MIN_ALLOWANCE_USDC"),
        ):
            check(validate_positive_number(value, name, allow_zero=True))

        if self.sizing.max_daily_usdc is not None:
            check(validate_positive_number(self.sizing.max_daily_usdc, "MAX_DAILY_USDC", allow_zero=True))

        return errors

    def _identity_errors(self) -> List[str]:
        """Signer / funder consistency for the signature type."""
        if not self.private_key or not validate_private_key(self.private_key)[0]:
            if self.signature_type == 0 and self.funder_address and not same_address(self.funder_address, self.my_address):
                return ["FUNDER_ADDRESS must match MY_USER_ADDRESS for SIGNATURE_TYPE=0"]
            return []

        try:
            signer = derive_signer_address(self.private_key)
        except Exception as e:
            return [f"Could not derive signer address from PRIVATE_KEY: {e}"]

        errors = []
        if not same_address(self.my_address, signer):
            errors.append(
                f"MY_USER_ADDRESS ({self.my_address}) must match the signer derived from PRIVATE_KEY ({signer}). "
                "Set FUNDER_ADDRESS to your Polymarket proxy wallet for SIGNATURE_TYPE=1 or 2."
            )
        if self.signature_type == 0:
            if self.funder_address and not same_address(self.funder_address, signer):
                errors.append(f"FUNDER_ADDRESS ({self.funder_address}) must match signer ({signer}) for SIGNATURE_TYPE=0")
        elif self.funder_address and same_address(self.funder_address, signer):
            errors.append(f"FUNDER_ADDRESS ({self.funder_address}) must differ from signer ({signer}) for proxy wallets")
        return errors

    def validate(self) -> "MirrorConfig":
        """Raise ConfigError listing every problem; returns self when valid."""
        errors = self.collect_errors()
        if errors:
            raise ConfigError(errors)
        if not self.private_key:
            logger.warning("PRIVATE_KEY is missing; signer validation skipped")
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration to dictionary (secrets omitted)."""
        return {
            "target_wallets": list(self.target_wallets),
            "follow_mode": self.selection.follow_mode.value,
            "topk": self.selection.topk,
            "dry_run": self.dry_run,
            "chain_id": self.chain_id,
            "clob_host": self.clob_host,
            "my_address": self.my_address,
            "funder_address": self.funder_address,
            "signature_type": self.signature_type,
            "rpc_url_set": bool(self.rpc_url),
            "private_key_set": bool(self.private_key),
            "sizing": {
                "copy_ratio": self.sizing.copy_ratio,
                "max_usdc_per_trade": self.sizing.max_usdc_per_trade,
                "max_shares_per_trade": self.sizing.max_shares_per_trade,
                "max_daily_usdc": self.sizing.max_daily_usdc,
                "slippage_pct": self.sizing.slippage_pct,
            },
            "allowance": {
                "auto_approve": self.allowance.auto_approve,
                "approve_amount_usdc": self.allowance.approve_amount_usdc,
                "min_allowance_usdc": self.allowance.min_allowance_usdc,
            },
            "categories": {
                "allowed": list(self.filters.allowed_categories),
                "disallowed": list(self.filters.disallowed_categories),
            },
            "state_db_path": self.state_db_path,
        }


def derive_signer_address(private_key: str) -> str:
    """Address of the EOA controlled by ``private_key`` (needs the live extra)."""
    from eth_account import Account

    return Account.from_key(private_key).address


# =============================================================================
# ENVIRONMENT PARSING
# =============================================================================


def normalize_env_value(raw: Optional[str]) -> Optional[str]:
    """Strip whitespace and one pair of surrounding quotes."""
    if raw is None:
        return None
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1].strip()
    return value


class _EnvReader:
    """Typed access to environment values; problems accumulate in ``errors``."""

    def __init__(self, env: Mapping[str, str]):
        self.env = env
        self.errors: List[str] = []

    def text(self, name: str) -> Optional[str]:
        return normalize_env_value(self.env.get(name))

    def _parse(self, name: str, default: Any, parser: Callable[[str], Any], kind: str) -> Any:
        raw = self.text(name)
        if raw is None or raw == "":
            return default
        try:
            return parser(raw)
        except (TypeError, ValueError):
            self.errors.append(f"Invalid {kind} for {name}: {raw}")
            return default

    def number(self, name: str, default: Optional[float]) -> Optional[float]:
        def parse(raw: str) -> float:
            value = to_finite_float(raw)
            if value is None:
                raise ValueError(raw)
            return value

        return self._parse(name, default, parse, "number")

    def integer(self, name: str, default: int) -> int:
        def parse(raw: str) -> int:
            value = to_finite_float(raw)
            if value is None or value != int(value):
                raise ValueError(raw)
            return int(value)

        return self._parse(name, default, parse, "integer")

    def boolean(self, name: str, default: bool) -> bool:
        def parse(raw: str) -> bool:
            lowered = raw.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(raw)

        return self._parse(name, default, parse, "boolean")

    def hex(self, name: str) -> Optional[str]:
        """Hex values (addresses, keys) gain a 0x prefix when it is missing."""
        value = self.text(name)
        if not value:
            return None
        if value[:2].lower() == "0x":
            return "0x" + value[2:]
        return "0x" + value

    def wallets(self, name: str) -> List[str]:
        raw = self.text(name)
        if not raw:
            return []
        wallets = []
        for entry in raw.split(","):
            value = normalize_env_value(entry)
            if not value:
                continue
            value = value if value[:2].lower() == "0x" else "0x" + value
            value = value.lower()
            if not is_address(value):
                self.errors.append(f"{name} entries must be 0x addresses: {entry.strip()}")
                continue
            if value not in wallets:
                wallets.append(value)
        return wallets

    def categories(self, name: str, default: List[str]) -> List[str]:
        raw = self.text(name)
        if raw is None or raw == "":
            return list(default)
        return [t for t in (normalize_category_token(e) for e in raw.split(",")) if t]

    def approve_amount(self, name: str, default: str) -> str:
        raw = self.text(name)
        if raw is None or raw == "":
            return default
        if raw.lower() in UNLIMITED_APPROVALS:
            return "unlimited"
        value = to_finite_float(raw)
        if value is None or value <= 0:
            self.errors.append(f"{name} must be > 0 or 'unlimited'. Got: {raw}")
            return default
        return raw
