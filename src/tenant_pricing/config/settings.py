"""
Centralized settings for the pricing and billing service.

Values come from ``TENANT_PRICING_*`` environment variables with sensible
defaults for local development.
"""
import os
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

ENV_PREFIX = "TENANT_PRICING_"


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 3 levels up from this file
    return Path(__file__).resolve().parent.parent.parent.parent


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(ENV_PREFIX + name)
    if value is None or value.strip() == '':
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.lower() in ('true', '1', 'yes', 'on')


@dataclass
class Settings:
    """Application settings with sensible defaults."""

    # Persistence
    database_url: str = "sqlite:///./tenant_pricing.db"
    pool_size: int = 10
    pool_timeout: float = 5.0
    # Per-statement deadline; 0 disables it
    statement_timeout_ms: int = 5000
    echo_sql: bool = False

    # Pricing
    default_currency: str = "NGN"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Seed catalog (pricing_models.csv, pricing_scopes.csv, pricing_rules.csv)
    seed_dir: Optional[Path] = None

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the environment."""
        root = project_root or get_project_root()
        seed_dir = _env("SEED_DIR")

        return cls(
            database_url=_env("DATABASE_URL", cls.database_url),
            pool_size=int(_env("POOL_SIZE", str(cls.pool_size))),
            pool_timeout=float(_env("POOL_TIMEOUT", str(cls.pool_timeout))),
            statement_timeout_ms=int(_env("STATEMENT_TIMEOUT_MS", str(cls.statement_timeout_ms))),
            echo_sql=_env_bool("ECHO_SQL", cls.echo_sql),
            default_currency=_env("DEFAULT_CURRENCY", cls.default_currency),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            log_json=_env_bool("LOG_JSON", cls.log_json),
            seed_dir=Path(seed_dir) if seed_dir else root / 'seed',
        )


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
