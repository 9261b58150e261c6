"""
Configuration Validation Module

Validates app.yaml, treasury.yaml and the configured feed list against
Pydantic schemas. Ensures config files are correct before the operations
loop starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.actions import ActionKind
from core.exceptions import ConfigError
from core.price_monitor import load_feed_records

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"


# ===== app.yaml Schema =====
class AppSection(BaseModel):
    """Mode and loop cadence"""
    mode: str = Field(pattern="^(SANDBOX|LIVE)$", description="Environment mode")
    network: str = Field(min_length=1, description="Network name, selects feeds/<network>.json by default")
    interval_seconds: float = Field(default=60.0, gt=0, description="Seconds between cycles")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: Optional[str] = Field(default=None, description="Log file path; stderr only when unset")


class AuditConfig(BaseModel):
    file: str = Field(default="logs/audit.jsonl", min_length=1)


class ExecutionConfig(BaseModel):
    """Recipe submission parameters"""
    gas_ceiling: int = Field(gt=0, description="Gas ceiling per recipe")
    max_attempts: int = Field(default=3, ge=1, description="Submission attempts on transport failure")
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    gas_estimates: Dict[str, int] = Field(default_factory=dict, description="Per-kind gas overrides")

    @field_validator('gas_estimates')
    @classmethod
    def validate_gas_estimates(cls, v: Dict[str, int]) -> Dict[str, int]:
        """Keys must be known action kinds, values positive"""
        known = {kind.value for kind in ActionKind}
        for kind, gas in v.items():
            if kind not in known:
                raise ValueError(f"Unknown action kind '{kind}' (known: {sorted(known)})")
            if gas <= 0:
                raise ValueError(f"Gas estimate for {kind} must be positive, got {gas}")
        return v


class RpcConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="JSON-RPC endpoint, ${VAR} expanded")
    timeout_seconds: float = Field(default=20.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    sender: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    registry_address: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)
    feed_registry_address: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)


class MonitorConfig(BaseModel):
    """Price consistency monitor"""
    enabled: bool = True
    feeds_file: Optional[str] = Field(default=None, description="Relative to the config dir")
    max_age_hours: float = Field(default=24.0, gt=0)
    tolerance_bps: int = Field(default=0, ge=0, le=10000)
    max_workers: int = Field(default=8, ge=1)


class AlertsConfig(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical|INFO|WARNING|CRITICAL)$")
    dry_run: bool = False
    timeout_seconds: float = Field(default=5.0, gt=0)
    dedupe_seconds: float = Field(default=300.0, ge=0)


class MetricsConfig(BaseModel):
    enabled: bool = True
    port: Optional[int] = Field(default=None, ge=1, le=65535)


class BalanceEntry(BaseModel):
    asset: str = Field(pattern=ADDRESS_PATTERN)
    holder: str = Field(pattern=ADDRESS_PATTERN)
    amount: int = Field(ge=0)


class AllowanceEntry(BaseModel):
    asset: str = Field(pattern=ADDRESS_PATTERN)
    owner: str = Field(pattern=ADDRESS_PATTERN)
    spender: str = Field(pattern=ADDRESS_PATTERN)
    amount: int = Field(ge=0)


class RateEntry(BaseModel):
    src: str = Field(pattern=ADDRESS_PATTERN)
    dest: str = Field(pattern=ADDRESS_PATTERN)
    num: int = Field(gt=0)
    den: int = Field(default=1, gt=0)


class IlkEntry(BaseModel):
    join: str = Field(pattern=ADDRESS_PATTERN)
    collateral: str = Field(pattern=ADDRESS_PATTERN)
    debt: str = Field(pattern=ADDRESS_PATTERN)
    price: int = Field(gt=0)
    price_decimals: int = Field(default=18, ge=0, le=36)
    liquidation_ratio_bps: int = Field(default=15000, ge=10000)
    dust: int = Field(default=0, ge=0)


class FlashLenderEntry(BaseModel):
    address: str = Field(pattern=ADDRESS_PATTERN)
    fee_bps: int = Field(default=0, ge=0, le=10000)


class SandboxFeedEntry(BaseModel):
    base: str = Field(pattern=ADDRESS_PATTERN)
    quote: str = Field(pattern=ADDRESS_PATTERN)
    address: str = Field(pattern=ADDRESS_PATTERN)
    answer: int
    age_seconds: int = Field(default=0, ge=0)


class SandboxConfig(BaseModel):
    """In-memory ledger seed state"""
    addresses: Dict[str, str] = Field(default_factory=dict)
    tokens: Dict[str, int] = Field(default_factory=dict)
    balances: List[BalanceEntry] = Field(default_factory=list)
    allowances: List[AllowanceEntry] = Field(default_factory=list)
    rates: List[RateEntry] = Field(default_factory=list)
    ilks: List[IlkEntry] = Field(default_factory=list)
    flash_lenders: List[FlashLenderEntry] = Field(default_factory=list)
    exchange_wrappers: List[str] = Field(default_factory=list)
    feeds: List[SandboxFeedEntry] = Field(default_factory=list)

    @field_validator('addresses')
    @classmethod
    def validate_addresses(cls, v: Dict[str, str]) -> Dict[str, str]:
        for name, address in v.items():
            if not re.match(ADDRESS_PATTERN, str(address)):
                raise ValueError(f"Address for {name} is not a 0x-prefixed 20-byte hex string: {address}")
        return v


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    execution: ExecutionConfig
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    sandbox: Optional[SandboxConfig] = None


# ===== treasury.yaml Schema =====
class TreasuryConfig(BaseModel):
    """Gas refill treasury policy"""
    owner: str = Field(pattern=ADDRESS_PATTERN)
    holder: str = Field(pattern=ADDRESS_PATTERN)
    address: str = Field(pattern=ADDRESS_PATTERN)
    authorized_caller: str = Field(pattern=ADDRESS_PATTERN)
    operator_address: str = Field(pattern=ADDRESS_PATTERN)
    additional_bots: List[str] = Field(default_factory=list)
    per_call_cap: int = Field(gt=0, description="Max native amount per refill")
    threshold_balance: int = Field(ge=0, description="Refill when an operator drops below this")
    target_balance: Optional[int] = Field(default=None, description="Refill up to this; defaults to threshold")
    reserve_asset: str = Field(pattern=ADDRESS_PATTERN)
    wrapped_native: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)

    @field_validator('target_balance')
    @classmethod
    def validate_target(cls, v: Optional[int], info) -> Optional[int]:
        """Ensure target_balance >= threshold_balance"""
        threshold = info.data.get('threshold_balance', 0)
        if v is not None and v < threshold:
            raise ValueError(f"target_balance ({v}) must be >= threshold_balance ({threshold})")
        return v

    @field_validator('additional_bots')
    @classmethod
    def validate_bots(cls, v: List[str]) -> List[str]:
        for bot in v:
            if not re.match(ADDRESS_PATTERN, str(bot)):
                raise ValueError(f"Bot address is not a 0x-prefixed 20-byte hex string: {bot}")
        return v


class TreasurySchema(BaseModel):
    treasury: TreasuryConfig


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return (
            f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: "
            f"{getattr(error, 'problem', str(error))}"
        )

    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}" for idx in range(start, end)
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_treasury(config_dir: Path) -> List[str]:
    """Validate treasury.yaml against schema."""
    return _validate_file(config_dir, "treasury.yaml", TreasurySchema)


def feeds_path(config_dir: Path, app_config: Dict[str, Any]) -> Path:
    """Feed list location: monitor.feeds_file, else feeds/<network>.json."""
    monitor = app_config.get("monitor") or {}
    feeds_file = monitor.get("feeds_file")
    if not feeds_file:
        network = (app_config.get("app") or {}).get("network", "mainnet")
        feeds_file = f"feeds/{network}.json"
    return config_dir / feeds_file


def _unresolved(value: Optional[str]) -> bool:
    if not value:
        return True
    return "${" in os.path.expandvars(value)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Logical consistency checks across app.yaml, treasury.yaml and the feed list.

    Detects:
    - LIVE mode without a resolvable RPC url or feed registry
    - SANDBOX mode without a sandbox section or executor address
    - Missing or malformed feed list when the monitor is enabled
    - Treasury recipients that overlap with treasury-controlled accounts
    """
    errors: List[str] = []
    app_config = load_yaml_file(config_dir / "app.yaml")
    treasury_config = (load_yaml_file(config_dir / "treasury.yaml").get("treasury") or {})

    mode = app_config["app"]["mode"]
    rpc = app_config.get("rpc") or {}
    if mode == "LIVE":
        if _unresolved(rpc.get("url")):
            errors.append("app.yaml: LIVE mode requires rpc.url (set RPC_URL or a literal url)")
        if not rpc.get("feed_registry_address"):
            errors.append("app.yaml: LIVE mode requires rpc.feed_registry_address")
    else:
        sandbox = app_config.get("sandbox") or {}
        if not sandbox:
            errors.append("app.yaml: SANDBOX mode requires a sandbox section")
        elif "RecipeExecutor" not in (sandbox.get("addresses") or {}):
            errors.append("app.yaml: sandbox.addresses must include RecipeExecutor")

    monitor = app_config.get("monitor") or {}
    if monitor.get("enabled", True):
        path = feeds_path(config_dir, app_config)
        try:
            load_feed_records(path)
        except ConfigError as e:
            errors.append(f"feeds: {e}")

    controlled = {
        str(treasury_config.get(k, "")).lower() for k in ("owner", "holder", "address")
    }
    recipients = [treasury_config.get("operator_address")] + list(treasury_config.get("additional_bots") or [])
    for recipient in recipients:
        if recipient and str(recipient).lower() in controlled:
            errors.append(f"treasury.yaml: refill recipient {recipient} is a treasury-controlled account")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency), only when schemas pass

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_treasury(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
