"""
Configuration management and loading.

Handles credit-core settings: store location, ledger and job policy,
remote-call bounds, checkout details and the plan catalog.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from studio_credits.storage.models import Plan


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger policy."""
    welcome_grant: int = 100
    max_conflict_retries: int = 5

    def __post_init__(self):
        if self.welcome_grant < 0:
            raise ValueError("welcome_grant cannot be negative")
        if self.max_conflict_retries < 0:
            raise ValueError("max_conflict_retries cannot be negative")


@dataclass(frozen=True)
class JobsConfig:
    """Stale-job policy. Both values are seconds."""
    stale_after_seconds: int = 900
    sweep_interval_seconds: int = 300

    def __post_init__(self):
        if self.stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be > 0")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be > 0")

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self.stale_after_seconds)

    @property
    def sweep_interval(self) -> timedelta:
        return timedelta(seconds=self.sweep_interval_seconds)


@dataclass(frozen=True)
class RemoteConfig:
    """Bounds on calls to the shared store and auth service."""
    timeout_seconds: float = 15.0
    read_retries: int = 3
    retry_backoff_seconds: float = 0.2

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.read_retries < 1:
            raise ValueError("read_retries must be >= 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds cannot be negative")


@dataclass(frozen=True)
class AuthConfig:
    session_ttl_seconds: int = 3600

    def __post_init__(self):
        if self.session_ttl_seconds <= 0:
            raise ValueError("session_ttl_seconds must be > 0")

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(seconds=self.session_ttl_seconds)


@dataclass(frozen=True)
class CheckoutConfig:
    """Bank transfer details shown to buyers."""
    bank_name: str = "MB Bank"
    account_name: str = "NGUYEN VAN A"
    account_number: str = "0123456789"


DEFAULT_PLANS = {
    "plan_starter": Plan(
        plan_id="plan_starter",
        name="Starter",
        price=299000,
        currency="VND",
        credits=3000,
        duration_months=1,
        description="Starter bundle for new users.",
    ),
    "plan_pro": Plan(
        plan_id="plan_pro",
        name="Pro",
        price=599000,
        currency="VND",
        credits=7000,
        duration_months=2,
        description="6,000 credits plus 1,000 bonus.",
    ),
    "plan_ultra": Plan(
        plan_id="plan_ultra",
        name="Ultra",
        price=1999000,
        currency="VND",
        credits=25000,
        duration_months=3,
        description="20,000 credits plus 5,000 bonus, priority support.",
    ),
}


@dataclass(frozen=True)
class Settings:
    """Complete credit-core configuration."""
    database: str = "studio_credits.db"
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig)
    plans: Dict[str, Plan] = field(default_factory=lambda: dict(DEFAULT_PLANS))


def default_settings(database: Optional[str] = None) -> Settings:
    """Built-in settings, optionally pointing at another database file."""
    if database is None:
        return Settings()
    return Settings(database=database)


_SECTIONS = {
    "ledger": (LedgerConfig, {"welcome_grant": int, "max_conflict_retries": int}),
    "jobs": (JobsConfig, {"stale_after_seconds": int, "sweep_interval_seconds": int}),
    "remote": (RemoteConfig, {"timeout_seconds": float, "read_retries": int, "retry_backoff_seconds": float}),
    "auth": (AuthConfig, {"session_ttl_seconds": int}),
    "checkout": (CheckoutConfig, {"bank_name": str, "account_name": str, "account_number": str}),
}

_PLAN_KEYS = {"name", "price", "currency", "credits", "duration_months", "description"}
_REQUIRED_PLAN_KEYS = {"name", "price", "currency", "credits", "duration_months"}


def load_settings(path: str) -> Settings:
    """Load and validate settings from a YAML file.

    Every section is optional and falls back to its defaults, but unknown
    keys and wrongly typed values are rejected so that a typo cannot
    silently change credit policy.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in settings file {path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Settings file must contain a mapping")

    allowed_top_keys = {"database", "plans"} | set(_SECTIONS)
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if "database" in raw_config:
        database = raw_config["database"]
        if not isinstance(database, str) or not database.strip():
            raise ValueError("'database' must be a non-empty string")
        kwargs["database"] = database

    for section, (config_cls, schema) in _SECTIONS.items():
        if section in raw_config:
            kwargs[section] = _parse_section(raw_config[section], section, config_cls, schema)

    if "plans" in raw_config:
        kwargs["plans"] = _parse_plans(raw_config["plans"])

    return Settings(**kwargs)


def _parse_section(data: Any, name: str, config_cls, schema: Dict[str, type]):
    """Validate one flat section against its key/type schema."""
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - set(schema)
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        expected = schema[key]
        values[key] = _coerce(value, expected, f"{name}.{key}")
    return config_cls(**values)


def _coerce(value: Any, expected: type, path: str):
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a {expected.__name__}")
    if expected is int:
        if not isinstance(value, int):
            raise ValueError(f"'{path}' must be an integer")
        return value
    if expected is float:
        if not isinstance(value, (int, float)):
            raise ValueError(f"'{path}' must be a number")
        return float(value)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"'{path}' must be a non-empty string")
    return value


def _parse_plans(data: Any) -> Dict[str, Plan]:
    """Parse and validate the plan catalog.

    Raises:
        ValueError: If the catalog is empty or a plan is invalid
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'plans' must be a non-empty dictionary")

    plans = {}
    for plan_id, plan_data in data.items():
        path = f"plans.{plan_id}"
        if not isinstance(plan_data, dict):
            raise ValueError(f"Plan '{plan_id}' must be a dictionary")

        unknown_keys = set(plan_data.keys()) - _PLAN_KEYS
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        missing = _REQUIRED_PLAN_KEYS - set(plan_data.keys())
        if missing:
            raise ValueError(f"Missing required keys in {path}: {sorted(missing)}")

        plans[plan_id] = Plan(
            plan_id=str(plan_id),
            name=_coerce(plan_data["name"], str, f"{path}.name"),
            price=_coerce(plan_data["price"], int, f"{path}.price"),
            currency=_coerce(plan_data["currency"], str, f"{path}.currency").upper(),
            credits=_coerce(plan_data["credits"], int, f"{path}.credits"),
            duration_months=_coerce(plan_data["duration_months"], int, f"{path}.duration_months"),
            description=str(plan_data.get("description", "")),
        )
    return plans
