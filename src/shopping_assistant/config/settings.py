"""
Centralized settings and path configuration for the shopping assistant.
"""
import os
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional


ENV_PREFIX = "SHOPPING_ASSISTANT_"


def get_package_root() -> Path:
    """Get the package directory (where the seed data lives)."""
    return Path(__file__).resolve().parent.parent


def get_project_root() -> Path:
    """Get the project root directory (where pyproject.toml lives)."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / 'pyproject.toml').exists():
            return parent
    # Fallback to 3 levels up from this file
    return current.parent.parent.parent.parent


def _coerce(raw: str, current):
    """Convert an environment string to the type of the current default."""
    if isinstance(current, bool):
        return raw.strip().lower() in ('true', '1', 'yes', 'on')
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    if isinstance(current, Path) or current is None:
        return Path(raw) if raw else None
    return raw


@dataclass
class Settings:
    """Application settings with sensible defaults."""

    # Project paths
    project_root: Path

    # Input files
    products_csv: Path
    rules_csv: Path

    # Completed orders (kept in memory when unset)
    orders_csv: Optional[Path] = None

    # Session lifecycle
    session_timeout_minutes: int = 30
    sweep_interval_seconds: int = 60
    # Completed and abandoned sessions are dropped this long after their last activity
    session_retention_minutes: int = 60
    max_event_log: int = 10000

    # Inference engine
    max_iterations: int = 100
    max_depth: int = 10
    conflict_resolution: str = "PRIORITY"

    # Price calculation
    free_shipping_threshold: float = 50.0
    shipping_cost: float = 9.99
    tax_rate: float = 0.08

    log_level: str = "INFO"

    @classmethod
    def load(cls, project_root: Optional[Path] = None) -> 'Settings':
        """Load settings from the project structure, then apply env overrides."""
        root = project_root or get_project_root()
        package_root = get_package_root()

        settings = cls(
            project_root=root,
            products_csv=package_root / 'data' / 'products.csv',
            rules_csv=package_root / 'rules' / 'rules.csv',
        )
        settings.apply_env(os.environ)
        return settings

    def apply_env(self, environ) -> None:
        """Override fields from SHOPPING_ASSISTANT_* variables."""
        for f in fields(self):
            key = ENV_PREFIX + f.name.upper()
            if key in environ:
                setattr(self, f.name, _coerce(environ[key], getattr(self, f.name)))


# Default settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings
