"""Choosing a shard for a value and naming shard files."""

from __future__ import annotations

import hashlib
import os

from .config import Config


def get_shard_index(conf: Config, value: object) -> int:
    """Return the shard for ``value``; missing, non-text or blank values go to the reserved shard."""
    if not isinstance(value, str) or not value.strip():
        return conf.reserved_shard
    digest = int.from_bytes(hashlib.sha256(value.encode("utf-8")).digest(), "big")
    return digest % abs(conf.num_shards)


def get_shard_path(index: int, shard_dir: str) -> str:
    """Return the path of the database file for shard ``index``."""
    return os.path.normpath(os.path.join(shard_dir, f"clients_shard_{pad(index)}.db"))


def pad(n: int) -> str:
    """Prefix numbers below ten with a zero."""
    return f"0{n}" if n < 10 else str(n)