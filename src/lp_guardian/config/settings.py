"""
Settings management using Pydantic.

Loads configuration from YAML files and environment variables.
Environment variables (LPG_ prefix, "__" for nesting) override YAML values.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from lp_guardian.domain.amortization import DecayConfig
from lp_guardian.domain.models import EntityClass, StrictnessMode

logger = logging.getLogger(__name__)


class LedgerSettings(BaseModel):
    """Canonical PnL ledger settings."""

    min_entry_notional_usd: Decimal = Decimal("0.01")
    # Relative tolerance for the PnL cross-check (0.001 = 0.1%)
    invariant_tolerance: Decimal = Decimal("0.001")
    max_quarantined: int = 100

    # Sanity warnings (never block)
    reasonable_pct_discrepancy: Decimal = Decimal("0.10")
    reasonable_max_gain_pct: Decimal = Decimal("1.0")
    reasonable_max_fee_to_gross: Decimal = Decimal("2")


class CooldownSettings(BaseModel):
    """Exit suppression cooldown windows."""

    enabled: bool = True
    default_seconds: int = 60
    extended_seconds: int = 900  # cost not amortized / min hold not met
    score_seconds: int = 600  # score / MHI / health buckets
    velocity_seconds: int = 300
    # Force a log line every N suppressions while on cooldown
    log_every_n_suppressions: int = 10


class HoldPolicySettings(BaseModel):
    """Emergency and minimum-hold policy."""

    min_hold_minutes_class_a: int = 90
    min_hold_minutes_class_b: int = 60
    min_hold_minutes_default: int = 60
    target_payback_hours: Decimal = Decimal("4")
    fee_velocity_decay_windows: int = 3
    min_tvl_usd: Decimal = Decimal("10000")
    tvl_collapse_threshold_pct: Decimal = Decimal("0.50")

    def min_hold_table(self) -> dict[EntityClass, int]:
        return {
            EntityClass.CLASS_A: self.min_hold_minutes_class_a,
            EntityClass.CLASS_B: self.min_hold_minutes_class_b,
            EntityClass.UNCLASSIFIED: self.min_hold_minutes_default,
        }


class AmortizationSettings(BaseModel):
    """Cost amortization decay gate."""

    enabled: bool = True  # master kill switch
    min_decay_age_minutes: int = 60
    halflife_strong_minutes: int = 120
    halflife_weak_minutes: int = 240
    floor_usd_min: Decimal = Decimal("0.15")
    floor_notional_bps: Decimal = Decimal("0.5")
    min_base_target_pct: Decimal = Decimal("0.15")
    weakness_health_threshold: Decimal = Decimal("0.50")
    weakness_velocity_threshold: Decimal = Decimal("0.20")
    weakness_entropy_threshold: Decimal = Decimal("0.35")
    weakness_mtm_pnl_pct_threshold: Decimal = Decimal("-0.0020")

    def to_decay_config(self) -> DecayConfig:
        return DecayConfig(**self.model_dump())


class ExitGateSettings(BaseModel):
    """Exit gate pipeline thresholds."""

    volume_collapse_threshold_pct: Decimal = Decimal("0.70")

    # Emergency override (bypasses min hold, all conditions required)
    override_min_hold_minutes: int = 10
    override_fee_velocity_floor_ratio: Decimal = Decimal("0.25")
    override_zero_activity_minutes: int = 10
    override_health_floor: Decimal = Decimal("0.42")

    # Rotation
    rotation_enabled: bool = True
    rotation_min_hold_minutes: int = 30
    rotation_fee_yield_floor: Decimal = Decimal("0.0005")
    rotation_rank_delta_threshold: int = 2

    # Bootstrap probe window
    bootstrap_enabled: bool = True
    bootstrap_minutes: int = 360

    # Rolling cost model (fractions of notional)
    entry_fee_rate: Decimal = Decimal("0.003")
    exit_fee_rate: Decimal = Decimal("0.003")
    slippage_rate: Decimal = Decimal("0.002")
    rebalance_cost_share: Decimal = Decimal("0.5")
    cost_safety_multiplier: Decimal = Decimal("1.25")


class PortfolioSettings(BaseModel):
    """Portfolio consistency tolerances."""

    max_mismatch_usd: Decimal = Decimal("1.0")
    # 0.01%: a $2 gap on $10k is a violation
    max_mismatch_pct: Decimal = Decimal("0.0001")
    history_size: int = 100


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    log_dir: str = "logs"
    file_enabled: bool = True
    json_enabled: bool = False
    json_file: str = "logs/lp_guardian_json.jsonl"
    # Set to 0 to disable rotation.
    json_max_bytes: int = 50_000_000
    json_backup_count: int = 3


class Settings(BaseSettings):
    """
    Main settings container.

    Loads from YAML file based on environment, then applies env var overrides.
    """

    env: str = "development"

    # None: derived from env (development -> strict)
    strictness: StrictnessMode | None = None

    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    cooldown: CooldownSettings = Field(default_factory=CooldownSettings)
    hold_policy: HoldPolicySettings = Field(default_factory=HoldPolicySettings)
    amortization: AmortizationSettings = Field(default_factory=AmortizationSettings)
    exit_gate: ExitGateSettings = Field(default_factory=ExitGateSettings)
    portfolio: PortfolioSettings = Field(default_factory=PortfolioSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    model_config = {
        "env_prefix": "LPG_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment beats YAML (passed as init kwargs)
        return env_settings, init_settings, file_secret_settings

    @property
    def strictness_mode(self) -> StrictnessMode:
        if self.strictness is not None:
            return self.strictness
        if self.env.lower() in ("development", "dev", "test"):
            return StrictnessMode.STRICT
        return StrictnessMode.PERMISSIVE

    def validate_config(self) -> list[str]:
        """
        Check cross-field constraints that pydantic types cannot express.

        Returns:
            List of validation error messages. Empty list means all validations passed.
        """
        errors = []

        if self.ledger.min_entry_notional_usd <= 0:
            errors.append("ledger.min_entry_notional_usd must be positive")
        if self.ledger.invariant_tolerance < 0:
            errors.append("ledger.invariant_tolerance must not be negative")
        if self.ledger.max_quarantined < 1:
            errors.append("ledger.max_quarantined must be at least 1")

        if self.cooldown.log_every_n_suppressions < 1:
            errors.append("cooldown.log_every_n_suppressions must be at least 1")
        for name in ("default_seconds", "extended_seconds", "score_seconds", "velocity_seconds"):
            if getattr(self.cooldown, name) < 0:
                errors.append(f"cooldown.{name} must not be negative")

        if self.hold_policy.target_payback_hours <= 0:
            errors.append("hold_policy.target_payback_hours must be positive")
        if not (0 < self.hold_policy.tvl_collapse_threshold_pct <= 1):
            errors.append("hold_policy.tvl_collapse_threshold_pct must be in (0, 1]")

        amort = self.amortization
        if amort.halflife_strong_minutes <= 0 or amort.halflife_weak_minutes <= 0:
            errors.append("amortization half-life must be positive")
        if amort.halflife_weak_minutes < amort.halflife_strong_minutes:
            # Missing telemetry must never decay faster
            errors.append("amortization.halflife_weak_minutes must be >= halflife_strong_minutes")
        if not (0 < amort.min_base_target_pct <= 1):
            errors.append("amortization.min_base_target_pct must be in (0, 1]")
        if amort.floor_usd_min < 0:
            errors.append("amortization.floor_usd_min must not be negative")

        if not (0 < self.exit_gate.volume_collapse_threshold_pct <= 1):
            errors.append("exit_gate.volume_collapse_threshold_pct must be in (0, 1]")
        if self.exit_gate.cost_safety_multiplier < 1:
            errors.append("exit_gate.cost_safety_multiplier must be >= 1")

        if self.portfolio.max_mismatch_usd < 0 or self.portfolio.max_mismatch_pct < 0:
            errors.append("portfolio mismatch tolerances must not be negative")
        if self.portfolio.history_size < 1:
            errors.append("portfolio.history_size must be at least 1")

        return errors

    @classmethod
    def from_yaml(cls, env: str = "development") -> Settings:
        """
        Load settings from config.yaml, deep-merged with an optional <env>.yaml.
        """
        config_dir = Path(__file__).parent
        data: dict = {}

        base_file = config_dir / "config.yaml"
        if base_file.exists():
            with open(base_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

        env_file = config_dir / f"{env}.yaml"
        if env_file.exists():
            with open(env_file, encoding="utf-8") as f:
                env_data = yaml.safe_load(f) or {}
            data = _deep_merge(data, env_data)

        data["env"] = env

        # Warn about unknown keys before creating model (helps catch typos in config.yaml)
        _warn_unknown_keys(data, cls)

        return cls(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _collect_all_keys(data: dict, prefix: str = "") -> set[str]:
    """
    Recursively collect all keys from a nested dict.

    Returns keys in dot-notation format (e.g., "exit_gate.bootstrap_minutes").
    """
    keys = set()
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        keys.add(full_key)
        if isinstance(value, dict):
            keys.update(_collect_all_keys(value, full_key))
    return keys


def _collect_model_fields(model_class: type[BaseModel], prefix: str = "") -> set[str]:
    """Recursively collect all field names from a Pydantic model, dot-notated."""
    fields = set()
    for field_name, field_info in model_class.model_fields.items():
        full_key = f"{prefix}.{field_name}" if prefix else field_name
        fields.add(full_key)

        annotation = field_info.annotation
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            fields.update(_collect_model_fields(annotation, full_key))

    return fields


def _warn_unknown_keys(data: dict, model_class: type[BaseModel]) -> None:
    """
    Warn about unknown keys in YAML config that don't match model fields.

    This prevents silent config bugs where typos in key names are ignored.
    """
    unknown_keys = _collect_all_keys(data) - _collect_model_fields(model_class)

    if unknown_keys:
        logger.warning(
            f"Unknown configuration keys found (will be ignored due to extra='ignore'): {sorted(unknown_keys)}. "
            f"This may indicate typos in config.yaml or outdated config keys."
        )


@lru_cache(maxsize=4)
def get_settings(env: str | None = None) -> Settings:
    """Get cached settings instance."""
    resolved_env = env or os.getenv("LPG_ENV", "development")
    return Settings.from_yaml(env=resolved_env)
