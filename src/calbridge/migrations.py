"""Programmatic Alembic migration runner.

Lets ``calbridge migrate`` upgrade the schema without shelling out to the
Alembic CLI or shipping an ``alembic.ini``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import quote

from alembic.config import Config

from alembic import command
from calbridge.config import DatabaseConfig

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"


def database_url(config: DatabaseConfig) -> str:
    """Build a SQLAlchemy-compatible URL from *config*."""
    credentials = f"{quote(config.user, safe='')}:{quote(config.password, safe='')}"
    url = f"postgresql://{credentials}@{config.host}:{config.port}/{config.name}"
    if config.ssl:
        url = f"{url}?sslmode={config.ssl}"
    return url


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the bundled version directory."""
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions"))
    # Alembic Config uses configparser interpolation; '%' must be escaped.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    return config


def run_migrations(db_url: str, revision: str = "head") -> None:
    """Upgrade the database at *db_url* to *revision*."""
    logger.info("Running migrations to %s", revision)
    command.upgrade(build_alembic_config(db_url), revision)
