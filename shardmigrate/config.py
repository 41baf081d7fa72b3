"""Migration settings read from the environment and an optional .env file."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

log = logging.getLogger(__name__)

_INT_PATTERN = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class ConfigError(ValueError):
    """Raised when the configuration lacks a required setting."""


@dataclass(frozen=True)
class Config:
    """Settings that drive a migration run."""

    source_db: str = "/clients.db"
    table_name: str = "clients"
    shard_dir: str = "/shards"
    log_dir: str = "/"
    num_shards: int = 10
    reserved_shard: int = 10
    batch_size: int = 6000
    readers: int = 6
    total_rows: int = 1217065012
    garb_col_ticker: timedelta = timedelta(minutes=5)


def _env(key: str, default: str) -> str:
    return os.environ.get(key, "") or default


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key, "")
    if _INT_PATTERN.fullmatch(raw):
        value = int(raw)
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return default


def load_config(env_file: str = ".env") -> Config:
    """Build a Config from the environment, first loading ``env_file`` if present.

    Variables already set in the environment take precedence over the file.
    """
    if os.path.isfile(env_file):
        load_dotenv(env_file, override=False)
    else:
        log.info("The .env file was not found, default values are used")

    defaults = Config()
    ticker_minutes = _env_int("GARB_COL_TICKER_MINUTES", 5)
    conf = Config(
        source_db=_env("SOURCE_DB", defaults.source_db),
        table_name=_env("TABLE_NAME", defaults.table_name),
        shard_dir=_env("SHARD_DIR", defaults.shard_dir),
        log_dir=_env("LOG_DIR", defaults.log_dir),
        num_shards=_env_int("NUM_SHARDS", defaults.num_shards),
        reserved_shard=_env_int("RESERVED_SHARD", defaults.reserved_shard),
        batch_size=_env_int("BATCH_SIZE", defaults.batch_size),
        readers=_env_int("READERS", defaults.readers),
        total_rows=_env_int("TOTAL_ROWS", defaults.total_rows),
        garb_col_ticker=timedelta(minutes=ticker_minutes),
    )

    if not (conf.source_db and conf.table_name and conf.shard_dir):
        raise ConfigError("incorrect configuration: required parameters are not specified")
    return conf