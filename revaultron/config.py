from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import find_dotenv, load_dotenv

from revaultron.errors import InvalidConfiguration

MAX_STALENESS_CEILING_SECONDS = 3600
MAX_DRIFT_CEILING_BPS = 2000

HBAR_USD_FEED = "0x3728e591097635310e6341af53db8b7ee42da9b3a8d918f9463ce9cca886dfbd"


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_optional_path(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return str(Path(value.strip()).expanduser())


@dataclass(frozen=True)
class VaultSettings:
    # Tracked balances older than this are re-synced before deposits/withdrawals.
    auto_sync_threshold_seconds: int = 300
    creation_fee: int = 0


@dataclass(frozen=True)
class VolatilitySettings:
    max_price_staleness_seconds: int = 300
    oracle_fee_per_update: int = 1


@dataclass(frozen=True)
class ExecutorSettings:
    """Rebalance executor parameters.

    Parameters
    ----------
    max_drift_bps:
        Drift at or above which a vault is rebalanced. Default 500 (5%).
    slippage_bps:
        Tolerated shortfall between quoted and executed swap output.
        Default 100 (1%).
    swap_deadline_seconds:
        Deadline handed to the swap venue, relative to the call time.
    value_decimals:
        Decimals of the common value basis the native asset is priced into
        (the quote token's decimals). Default 6.
    require_fresh_volatility:
        Abort with ``StalePrice`` when the volatility record is older than
        the index's staleness window. Default True.
    """

    max_drift_bps: int = 500
    slippage_bps: int = 100
    swap_deadline_seconds: int = 300
    value_decimals: int = 6
    require_fresh_volatility: bool = True


@dataclass(frozen=True)
class HermesSettings:
    base_url: str = "https://hermes.pyth.network"
    timeout_seconds: float = 10.0
    max_attempts: int = 5
    retry_base_delay_seconds: float = 0.25
    default_feed: str = HBAR_USD_FEED


@dataclass(frozen=True)
class SimulationSettings:
    """Seed balances, prices and targets for the in-memory local deployment."""

    hbar_deposit_tinybars: int = 10 * 100_000_000
    usdc_deposit: int = 0
    price_mantissa: int = 5_000_000   # 0.05 USD per HBAR at expo -8
    price_expo: int = -8
    volatility_bps: int = 4000
    volatility_threshold_bps: int = 3000
    target_hbar_bps: int = 5000
    swapper_usdc_liquidity: int = 10_000 * 10 ** 6
    swapper_hbar_liquidity: int = 1_000 * 100_000_000
    history_db_path: str | None = None


@dataclass(frozen=True)
class AppSettings:
    log_level: str = "INFO"
    vault: VaultSettings = field(default_factory=VaultSettings)
    volatility: VolatilitySettings = field(default_factory=VolatilitySettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    hermes: HermesSettings = field(default_factory=HermesSettings)
    simulation: SimulationSettings = field(default_factory=SimulationSettings)
    agents: List[str] = field(default_factory=list)
    updaters: List[str] = field(default_factory=list)


def validate_settings(settings: AppSettings) -> AppSettings:
    staleness = settings.volatility.max_price_staleness_seconds
    if not 0 < staleness <= MAX_STALENESS_CEILING_SECONDS:
        raise InvalidConfiguration(
            f"max price staleness must be in 1..{MAX_STALENESS_CEILING_SECONDS}, got {staleness}"
        )
    drift = settings.executor.max_drift_bps
    if not 0 < drift <= MAX_DRIFT_CEILING_BPS:
        raise InvalidConfiguration(f"max drift must be in 1..{MAX_DRIFT_CEILING_BPS} bps, got {drift}")
    slippage = settings.executor.slippage_bps
    if not 0 <= slippage <= 10_000:
        raise InvalidConfiguration(f"slippage must be in 0..10000 bps, got {slippage}")
    if settings.vault.auto_sync_threshold_seconds < 0:
        raise InvalidConfiguration("auto-sync threshold cannot be negative")
    if settings.executor.value_decimals < 0:
        raise InvalidConfiguration("value decimals cannot be negative")
    return settings


def load_settings() -> AppSettings:
    env_path = find_dotenv(usecwd=True)
    if env_path:
        load_dotenv(dotenv_path=env_path, override=False)

    vault = VaultSettings(
        auto_sync_threshold_seconds=_as_int(os.getenv("REVAULT_AUTO_SYNC_THRESHOLD_SECONDS"), 300),
        creation_fee=_as_int(os.getenv("REVAULT_VAULT_CREATION_FEE"), 0),
    )
    volatility = VolatilitySettings(
        max_price_staleness_seconds=_as_int(os.getenv("REVAULT_MAX_PRICE_STALENESS_SECONDS"), 300),
        oracle_fee_per_update=_as_int(os.getenv("REVAULT_ORACLE_FEE_PER_UPDATE"), 1),
    )
    executor = ExecutorSettings(
        max_drift_bps=_as_int(os.getenv("REVAULT_MAX_DRIFT_BPS"), 500),
        slippage_bps=_as_int(os.getenv("REVAULT_SLIPPAGE_BPS"), 100),
        swap_deadline_seconds=_as_int(os.getenv("REVAULT_SWAP_DEADLINE_SECONDS"), 300),
        value_decimals=_as_int(os.getenv("REVAULT_VALUE_DECIMALS"), 6),
        require_fresh_volatility=_as_bool(os.getenv("REVAULT_REQUIRE_FRESH_VOLATILITY"), True),
    )
    hermes = HermesSettings(
        base_url=os.getenv("REVAULT_HERMES_URL", "https://hermes.pyth.network"),
        timeout_seconds=_as_float(os.getenv("REVAULT_HERMES_TIMEOUT_SECONDS"), 10.0),
        max_attempts=_as_int(os.getenv("REVAULT_HERMES_MAX_ATTEMPTS"), 5),
        retry_base_delay_seconds=_as_float(os.getenv("REVAULT_HERMES_RETRY_DELAY_SECONDS"), 0.25),
        default_feed=os.getenv("REVAULT_PRICE_FEED_ID", HBAR_USD_FEED),
    )
    simulation = SimulationSettings(
        hbar_deposit_tinybars=_as_int(os.getenv("REVAULT_SIM_HBAR_DEPOSIT_TINYBARS"), 10 * 100_000_000),
        usdc_deposit=_as_int(os.getenv("REVAULT_SIM_USDC_DEPOSIT"), 0),
        price_mantissa=_as_int(os.getenv("REVAULT_SIM_PRICE_MANTISSA"), 5_000_000),
        price_expo=_as_int(os.getenv("REVAULT_SIM_PRICE_EXPO"), -8),
        volatility_bps=_as_int(os.getenv("REVAULT_SIM_VOLATILITY_BPS"), 4000),
        volatility_threshold_bps=_as_int(os.getenv("REVAULT_SIM_VOLATILITY_THRESHOLD_BPS"), 3000),
        target_hbar_bps=_as_int(os.getenv("REVAULT_SIM_TARGET_HBAR_BPS"), 5000),
        swapper_usdc_liquidity=_as_int(os.getenv("REVAULT_SIM_SWAPPER_USDC_LIQUIDITY"), 10_000 * 10 ** 6),
        swapper_hbar_liquidity=_as_int(os.getenv("REVAULT_SIM_SWAPPER_HBAR_LIQUIDITY"), 1_000 * 100_000_000),
        history_db_path=_as_optional_path(os.getenv("REVAULT_HISTORY_DB_PATH")),
    )

    settings = AppSettings(
        log_level=os.getenv("REVAULT_LOG_LEVEL", "INFO"),
        vault=vault,
        volatility=volatility,
        executor=executor,
        hermes=hermes,
        simulation=simulation,
        agents=_as_csv(os.getenv("REVAULT_AGENTS")),
        updaters=_as_csv(os.getenv("REVAULT_UPDATERS")),
    )
    return validate_settings(settings)
