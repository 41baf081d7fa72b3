"""Persisting how far a migration has come."""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import Config

log = logging.getLogger(__name__)

_PROGRESS_FILE = "progress.json"
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


@dataclass
class Progress:
    """Position to resume reading from and when it was last recorded (Unix seconds)."""

    resume_from: int = 0
    last_update: int = field(default_factory=lambda: int(time.time()))


def _progress_path(conf: Config) -> Path:
    return Path(conf.shard_dir) / _PROGRESS_FILE


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"progress field {key!r} must be an integer, got {value!r}")
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"progress field {key!r} is out of range: {value}")
    return value


def _decode(text: str) -> Progress:
    data = json.loads(text)
    progress = Progress(resume_from=0, last_update=0)
    if data is None:
        return progress
    if not isinstance(data, dict):
        raise ValueError("progress file must hold a JSON object")
    for key, value in data.items():
        if value is None:
            continue
        name = key.lower()
        if name == "resumefrom":
            progress.resume_from = _as_int(key, value)
        elif name == "lastupdate":
            progress.last_update = _as_int(key, value)
    return progress


def load_progress(conf: Config) -> Progress:
    """Read saved progress from the shard directory, or start from zero if there is none."""
    path = _progress_path(conf)
    if not os.path.exists(path):
        return Progress(resume_from=0)
    progress = _decode(path.read_text(encoding="utf-8"))
    log.info("Progress loaded", extra={"position": progress.resume_from})
    return progress


def save_progress(conf: Config, progress: Progress, position: int) -> None:
    """Record ``position`` in ``progress`` and write it to the shard directory."""
    progress.resume_from = position
    progress.last_update = int(time.time())
    payload = json.dumps(
        {"resumeFrom": progress.resume_from, "lastUpdate": progress.last_update},
        separators=(",", ":"),
    )
    _progress_path(conf).write_text(payload, encoding="utf-8")