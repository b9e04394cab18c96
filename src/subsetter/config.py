import logging
import re
from enum import Enum
from functools import lru_cache
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(RuntimeError):
    """Configuration-related error."""
    pass


# ─────────────────────────────────────────────────────────────
# Section configs
# ─────────────────────────────────────────────────────────────


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    format: str = (
        "%(asctime)-20s %(threadName)-24s %(name)-40s "
        "%(levelname)-8s: %(message)s"
    )


class DatabaseSettings(BaseModel):
    """
    Source database as a SQLAlchemy URL.

    In production, override via:
    - env var:     SUBSETTER_DATABASE__URL
    - dotenv:      .env / .env.local
    - secret file: /run/secrets/subsetter/database__url
    """
    url: str = Field(
        "sqlite:///subsetter.db",
        description="SQLAlchemy-style database URL.",
    )
    pool_size: int = 10
    max_overflow: int = 20

    transactional: bool = Field(
        False,
        description=(
            "Run all statements of a worker thread in one transaction that is "
            "committed at the end of the run (otherwise every statement commits)."
        ),
    )
    limit_transaction_size: int = Field(
        0,
        ge=0,
        description="Maximum number of rows inserted by one statement (0 = unlimited).",
    )
    avoid_left_join: Optional[bool] = Field(
        default=None,
        description=(
            "Use NOT EXISTS instead of LEFT JOIN for duplicate detection "
            "(None = decide by dialect)."
        ),
    )


class WorkingTableScope(str, Enum):
    GLOBAL = "global"
    SESSION = "session"
    LOCAL = "local"


_PREFIX_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class WorkingTableSettings(BaseModel):
    scope: WorkingTableScope = Field(
        WorkingTableScope.GLOBAL,
        description=(
            "'global': tables are provisioned once and shared by all runs; "
            "'session': tables are created for one run and dropped afterwards; "
            "'local': tables live in a separate database for one run and the "
            "source database is only read."
        ),
    )
    table_schema: Optional[str] = Field(
        default=None,
        description="Schema holding the working tables (None = default schema).",
    )
    prefix: str = Field(
        "subsetter_",
        description="Name prefix of the working tables.",
    )
    local_url: Optional[str] = Field(
        default=None,
        description=(
            "SQLAlchemy URL of the database holding the working tables with the "
            "'local' scope (None = temporary SQLite file)."
        ),
    )
    local_batch_size: int = Field(
        100,
        ge=1,
        le=500,
        description="Keys moved between the source and the local database per statement.",
    )

    def validate_prefix(self) -> None:
        if not _PREFIX_RE.match(self.prefix):
            raise ConfigError(
                f"Invalid working table prefix {self.prefix!r}; "
                "use letters, digits and underscores only."
            )


class SubsettingSettings(BaseModel):
    threads: int = Field(
        1, ge=1, description="Number of worker threads for independent jobs."
    )
    max_total_rowcount: int = Field(
        0,
        ge=0,
        description="Abort collection once more rows were collected (0 = no limit).",
    )
    order_by_pk: bool = Field(
        False,
        description="Write rows of each table ordered by primary key.",
    )
    no_sorting: bool = Field(
        False,
        description="Skip topological sorting of rows of cyclic tables.",
    )
    abort_on_inconsistency: bool = Field(
        False,
        description=(
            "Raise ConsistencyError if the number of exported rows differs "
            "from the number of collected rows (otherwise log a warning)."
        ),
    )
    cycle_search_timeout_s: float = Field(
        10.0,
        gt=0,
        description="Time budget of the cycle analysis done for error messages.",
    )


class ModelCacheSettings(BaseModel):
    size: int = Field(
        0,
        ge=0,
        description="Number of parsed extraction models kept in memory (0 = no caching).",
    )


# ─────────────────────────────────────────────────────────────
# Top-level settings
# ─────────────────────────────────────────────────────────────


class AppSettings(BaseSettings):
    """
    Canonical application configuration of a subsetting process.

    Precedence (highest → lowest):

    1. Init kwargs (tests/overrides)
    2. Environment variables
    3. .env and .env.local
    4. Secret files in /run/secrets/subsetter
    5. Defaults in this class
    """

    model_config = SettingsConfigDict(
        env_prefix="SUBSETTER_",  # SUBSETTER_LOGGING__LEVEL, SUBSETTER_DATABASE__URL, ...
        env_file=(".env", ".env.local"),  # .env.local overrides .env
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/subsetter",
        extra="ignore",
        validate_default=True,
    )

    app_name: str = "subsetter"
    debug: bool = False

    logging: LoggingSettings = LoggingSettings()
    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]
    working_tables: WorkingTableSettings = WorkingTableSettings()  # type: ignore[call-arg]
    subsetting: SubsettingSettings = SubsettingSettings()  # type: ignore[call-arg]
    model_cache: ModelCacheSettings = ModelCacheSettings()  # type: ignore[call-arg]


@lru_cache(maxsize=1)
def get_settings(**overrides: Any) -> AppSettings:
    """
    Cached accessor for process-wide settings.

    `overrides` are init kwargs → highest precedence (handy in tests).
    """
    settings = AppSettings(**overrides)
    settings.working_tables.validate_prefix()
    return settings


def configure_logging(settings: LoggingSettings) -> None:
    """Attach a stream handler to the ``subsetter`` logger hierarchy."""
    root = logging.getLogger("subsetter")
    root.setLevel(settings.level)
    if not any(getattr(h, "_subsetter", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler._subsetter = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    for handler in root.handlers:
        if getattr(handler, "_subsetter", False):
            handler.setFormatter(logging.Formatter(settings.format))
