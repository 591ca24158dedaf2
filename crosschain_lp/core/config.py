import json
import os
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from crosschain_lp.core.errors import ConfigMissingError

_CONFIG_ENV_KEYS = ("CROSSCHAIN_LP_CONFIG_PATH", "CROSSCHAIN_LP_CONFIG")
_DEFAULT_CONFIG_FILENAME = "config.json"
_WALLET_MNEMONIC_KEY = "wallet_mnemonic"
_MNEMONIC_ENV_KEY = "CROSSCHAIN_LP_MNEMONIC"
_CEX_ENV_KEYS = {"apiKey": "CEX_API_KEY", "secret": "CEX_API_SECRET"}
_LIFI_API_KEY_ENV = "LIFI_API_KEY"


def _find_project_root(start: Path) -> Path | None:
    cur = start.resolve()
    for parent in [cur, *cur.parents]:
        if (parent / "pyproject.toml").exists():
            return parent
    return None


def _project_root() -> Path | None:
    return _find_project_root(Path.cwd()) or _find_project_root(Path(__file__).parent)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path is not None:
        return Path(path).expanduser()

    env_path = next(
        (os.getenv(k, "").strip() for k in _CONFIG_ENV_KEYS if os.getenv(k)), ""
    )
    if env_path:
        p = Path(env_path).expanduser()
        if p.is_absolute():
            return p
        root = _project_root()
        return (root / p) if root else p

    root = _project_root()
    return (root / _DEFAULT_CONFIG_FILENAME) if root else Path(_DEFAULT_CONFIG_FILENAME)


def load_config_json(
    path: str | Path | None = None, *, require_exists: bool = False
) -> dict[str, Any]:
    cfg_path = resolve_config_path(path)
    if not cfg_path.exists():
        if require_exists:
            raise ConfigMissingError(f"Config file not found: {cfg_path}")
        return {}
    try:
        parsed = json.loads(cfg_path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigMissingError(f"Config file is not valid JSON: {cfg_path}") from exc
    return parsed if isinstance(parsed, dict) else {}


CONFIG: dict[str, Any] = {}


def set_config(config: dict[str, Any]) -> None:
    """Replace the global CONFIG dict in-place.

    This allows code that imported CONFIG at module import time to see updates.
    """
    CONFIG.clear()
    CONFIG.update(config)


def load_config(
    path: str | Path | None = None, *, require_exists: bool = False
) -> None:
    """Load config from disk into the global CONFIG dict."""
    set_config(load_config_json(path, require_exists=require_exists))


def get_rpc_urls() -> dict[str, Any]:
    return CONFIG.get("rpc_urls", {})


class FundingSource(StrEnum):
    NONE = "none"
    CEX = "cex"
    FUNDER = "funder"


class FundingSettings(BaseModel):
    source: FundingSource = FundingSource.NONE
    exchange_id: str = "bybit"
    exchange_options: dict[str, Any] = Field(default_factory=dict)
    asset: str = "ETH"
    network: str = "BASE"
    # Human units for the exchange, raw units on chain via ``decimals``.
    amount: Decimal = Decimal("0")
    decimals: int = 18
    token_address: str | None = None
    funder_private_key: str | None = None
    withdrawal_timeout_s: float = 30 * 60
    poll_interval_s: float = 15.0


class BridgeSettings(BaseModel):
    base_url: str = "https://li.quest/v1"
    integrator: str | None = None
    api_key: str | None = None
    from_chain_id: int = 8453
    to_chain_id: int = 2741
    from_token: str = "0x0000000000000000000000000000000000000000"
    to_token: str = "0x0000000000000000000000000000000000000000"
    # Raw units; zero skips the bridge step.
    amount: int = 0
    min_amount: int = 0
    slippage: float = 0.005
    timeout_s: float = 10 * 60
    poll_interval_s: float = 3.0


class SwapSettings(BaseModel):
    token_in: str | None = None
    token_out: str | None = None
    fee: int = 3000
    swap_percent: float = 50.0
    slippage_bps: int = 50
    arrival_timeout_s: float = 10 * 60
    poll_interval_s: float = 5.0

    @field_validator("swap_percent")
    @classmethod
    def _check_percent(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("swap_percent must be within [0, 100]")
        return value


class LiquiditySettings(BaseModel):
    token0: str | None = None
    token1: str | None = None
    fee: int = 3000
    range_percent: float = 5.0
    utilization_percent: float = 80.0
    collect_after_s: float = 0.0
    reinvest_percent: float = 60.0
    price_threshold_percent: float = 10.0
    fee_gas_multiplier: float = 2.0
    harvest_gas_units: int = 350_000
    # Which pool token the chain's gas is paid in ("token0" / "token1").
    gas_token: str = "token0"
    settlement_token: str | None = None
    slippage_bps: int = 50
    rebalance_timeout_s: float = 10 * 60

    @field_validator("reinvest_percent", "utilization_percent")
    @classmethod
    def _check_percent(cls, value: float) -> float:
        if not 0 <= value <= 100:
            raise ValueError("percent must be within [0, 100]")
        return value

    @field_validator("range_percent")
    @classmethod
    def _check_range(cls, value: float) -> float:
        if not 0 < value <= 100:
            raise ValueError("range_percent must be within (0, 100]")
        return value

    @field_validator("price_threshold_percent")
    @classmethod
    def _check_threshold(cls, value: float) -> float:
        if not 0 < value <= 50:
            raise ValueError("price_threshold_percent must be within (0, 50]")
        return value

    @field_validator("fee_gas_multiplier")
    @classmethod
    def _check_multiplier(cls, value: float) -> float:
        if not 1 <= value <= 10:
            raise ValueError("fee_gas_multiplier must be within [1, 10]")
        return value


class DistributionSettings(BaseModel):
    hub_private_key: str | None = None
    per_wallet_amount: int = 0
    min_amount: int = 0
    randomize: bool = False
    variance_percent: float = 15.0
    batch_size: int = 10
    inter_batch_delay_s: float = 2.0
    gas_reserve_per_transfer: int = 0


class DexSettings(BaseModel):
    # Chain the position lives on; defaults to the bridge destination.
    chain_id: int | None = None
    factory: str | None = None
    position_manager: str | None = None
    swap_router: str | None = None
    quoter: str | None = None
    deadline_s: int = 300


class RetrySettings(BaseModel):
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_delay_s: float = 30.0
    jitter_ratio: float = 0.2
    min_interval_s: dict[str, float] = Field(
        default_factory=lambda: {"rpc": 0.05, "bridge": 0.5, "cex": 0.2}
    )


class PipelineSettings(BaseModel):
    wallet_mnemonic: str | None = None
    wallet_count: int = 1
    state_dir: Path = Path(".crosschain_lp/state")
    dry_run: bool = False
    max_concurrent_wallets: int = 3
    receipt_timeout_s: float = 180.0
    rpc_urls: dict[int, list[str]] = Field(default_factory=dict)
    funding: FundingSettings = Field(default_factory=FundingSettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    swap: SwapSettings = Field(default_factory=SwapSettings)
    liquidity: LiquiditySettings = Field(default_factory=LiquiditySettings)
    distribution: DistributionSettings = Field(default_factory=DistributionSettings)
    dex: DexSettings = Field(default_factory=DexSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)

    @field_validator("rpc_urls", mode="before")
    @classmethod
    def _coerce_rpc_urls(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {k: [v] if isinstance(v, str) else v for k, v in value.items()}

    def require_mnemonic(self) -> str:
        if not self.wallet_mnemonic:
            raise ConfigMissingError(
                f"{_WALLET_MNEMONIC_KEY} is not configured (set it in config.json "
                f"or {_MNEMONIC_ENV_KEY})"
            )
        return self.wallet_mnemonic

    @property
    def dex_chain_id(self) -> int:
        return int(self.dex.chain_id or self.bridge.to_chain_id)

    def require_rpc(self, chain_id: int) -> list[str]:
        urls = self.rpc_urls.get(int(chain_id)) or []
        if not urls:
            raise ConfigMissingError(f"No RPC configured for chain {chain_id}")
        return urls


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    data = dict(raw)
    if not data.get(_WALLET_MNEMONIC_KEY) and os.environ.get(_MNEMONIC_ENV_KEY):
        data[_WALLET_MNEMONIC_KEY] = os.environ[_MNEMONIC_ENV_KEY].strip()

    funding = dict(data.get("funding") or {})
    options = dict(funding.get("exchange_options") or {})
    for option, env_key in _CEX_ENV_KEYS.items():
        if not options.get(option) and os.environ.get(env_key):
            options[option] = os.environ[env_key]
    if options:
        funding["exchange_options"] = options
        data["funding"] = funding

    bridge = dict(data.get("bridge") or {})
    if not bridge.get("api_key") and os.environ.get(_LIFI_API_KEY_ENV):
        bridge["api_key"] = os.environ[_LIFI_API_KEY_ENV]
        data["bridge"] = bridge
    return data


def load_settings(
    path: str | Path | None = None, *, overrides: dict[str, Any] | None = None
) -> PipelineSettings:
    raw = load_config_json(path) if path is not None else dict(CONFIG)
    if overrides:
        raw = {**raw, **overrides}
    try:
        return PipelineSettings.model_validate(_apply_env_overrides(raw))
    except ValidationError as exc:
        raise ConfigMissingError(f"Invalid configuration: {exc}") from exc
