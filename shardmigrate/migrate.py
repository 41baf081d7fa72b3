"""Running a migration: reading the source table and spreading its rows over shard databases."""

from __future__ import annotations

import argparse
import gc
import json
import logging
import math
import queue
import sqlite3
import sys
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import closing
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

from .config import Config, ConfigError, load_config
from .database import ensure_table, get_column_names, open_shard_db, open_source_db
from .progress import load_progress, save_progress
from .shard import get_shard_index, get_shard_path

log = logging.getLogger(__name__)

# A queue item of None marks the end of the input.
RowQueue = "queue.Queue[Optional[dict[str, str]]]"

_SHARD_QUEUE_SIZE = 1000
_INPUT_QUEUE_SIZE = 5000
_POLL_SECONDS = 0.1
_RATE_INTERVAL_SECONDS = 5.0
_MEMORY_INTERVAL_SECONDS = 30.0
_QUERY_RETRY_SECONDS = 1.0
_GC_EVERY_ROWS = 100_000
_MAX_RUNTIME = timedelta(hours=48)

_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "ERROR"}
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}


def _quoted_columns(columns: Sequence[str]) -> str:
    return ", ".join(f'"{col}"' for col in columns)


def _insert_sql(table_name: str, columns: Sequence[str]) -> str:
    placeholders = ",".join("?" for _ in columns)
    return f"INSERT INTO {table_name} ({_quoted_columns(columns)}) VALUES ({placeholders})"


def _put(target: queue.Queue, item: Any, stop_event: threading.Event) -> bool:
    """Put ``item`` on ``target``, giving up once ``stop_event`` is set."""
    while True:
        try:
            target.put(item, timeout=_POLL_SECONDS)
            return True
        except queue.Full:
            if stop_event.is_set():
                return False


def _rate(count: float, elapsed: float) -> float:
    return count / elapsed if elapsed > 0 else math.inf


def _format_float(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    dec = Decimal(repr(value)).normalize()
    sign, digits, exponent = dec.as_tuple()
    if not any(digits):
        return "-0" if sign else "0"
    sci_exponent = len(digits) + int(exponent) - 1
    if sci_exponent < -4 or sci_exponent >= 21:
        mantissa = str(digits[0])
        if len(digits) > 1:
            mantissa += "." + "".join(str(d) for d in digits[1:])
        exp_sign = "-" if sci_exponent < 0 else "+"
        return f"{'-' if sign else ''}{mantissa}e{exp_sign}{abs(sci_exponent):02d}"
    return format(dec, "f")


def _format_value(value: Any) -> str:
    """Render a source value as text; NULL becomes an empty string."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "[" + " ".join(str(b) for b in bytes(value)) + "]"
    if isinstance(value, float):
        return _format_float(value)
    return str(value)


def _decode_text(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def commit_batch(db: sqlite3.Connection, insert_sql: str, batch: Sequence[Sequence[Any]]) -> int:
    """Insert ``batch`` in one transaction; failing rows are logged and skipped.

    Returns the number of rows inserted.
    """
    try:
        db.execute("BEGIN")
    except sqlite3.Error as exc:
        log.error("Begin transaction failed: %s", exc)
        return 0

    inserted = 0
    for args in batch:
        try:
            db.execute(insert_sql, tuple(args))
        except sqlite3.Error as exc:
            log.error("Insert failed: %s", exc)
        else:
            inserted += 1

    try:
        db.execute("COMMIT")
    except sqlite3.Error as exc:
        log.info("Commit failed: %s", exc)
        if db.in_transaction:
            try:
                db.execute("ROLLBACK")
            except sqlite3.Error:
                pass
    return inserted


def worker(
    shard_index: int,
    table_name: str,
    batch_size: int,
    shard_dir: str,
    columns: Sequence[str],
    input_queue: queue.Queue,
    stop_event: threading.Event,
) -> None:
    """Write rows taken from ``input_queue`` into one shard until it yields None or stop is set."""
    shard_path = get_shard_path(shard_index, shard_dir)
    log.info("Worker starting", extra={"shard_index": shard_index, "path": shard_path})

    try:
        db = open_shard_db(shard_path)
    except sqlite3.Error as exc:
        log.error("Failed to open shard database %d: %s", shard_index, exc)
        return

    with closing(db):
        ensure_table(db, table_name, list(columns))
        insert_sql = _insert_sql(table_name, columns)
        batch: list[tuple[str, ...]] = []
        last_commit = time.monotonic()
        rows_inserted = 0

        while True:
            if stop_event.is_set():
                if batch:
                    commit_batch(db, insert_sql, batch)
                log.info("Worker stopped by signal", extra={"shard_index": shard_index})
                return
            try:
                row = input_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if row is None:
                if batch:
                    commit_batch(db, insert_sql, batch)
                log.info("Worker finished", extra={"shard_index": shard_index})
                return

            batch.append(tuple(row.get(col, "") for col in columns))
            if len(batch) < batch_size:
                continue

            commit_batch(db, insert_sql, batch)
            batch = []
            now = time.monotonic()
            elapsed = now - last_commit
            rows_inserted += batch_size
            if elapsed > _RATE_INTERVAL_SECONDS:
                log.info(
                    "Shard",
                    extra={"shard_index": shard_index, "rows_per_sec": _rate(rows_inserted, elapsed)},
                )
                rows_inserted = 0
                last_commit = now
            if rows_inserted % _GC_EVERY_ROWS == 0:
                gc.collect()


def reader(
    reader_id: int,
    start_offset: int,
    columns: Sequence[str],
    output: queue.Queue,
    conf: Config,
    stop_event: threading.Event,
) -> None:
    """Page through the source table and put each row, as text, on ``output``.

    Readers stride over the table: each moves ahead by ``batch_size * readers``
    rows after a page, and stops at the first empty page.
    """
    db = open_source_db(conf)
    db.text_factory = _decode_text
    with closing(db):
        log.info("Reader starting", extra={"reader_id": reader_id, "offset": start_offset})
        cols = _quoted_columns(columns)
        offset = start_offset
        last_report = time.monotonic()
        rows_read = 0

        while not stop_event.is_set():
            query = (
                f"SELECT {cols} FROM {conf.table_name} "
                f"LIMIT {conf.batch_size} OFFSET {offset}"
            )
            try:
                cursor = db.execute(query)
            except sqlite3.Error as exc:
                log.info("Reader %d query error: %s", reader_id, exc)
                stop_event.wait(_QUERY_RETRY_SECONDS)
                continue

            count = 0
            with closing(cursor):
                for values in cursor:
                    if stop_event.is_set():
                        log.info("Reader stopped while scanning rows", extra={"reader_id": reader_id})
                        return
                    row = {col: _format_value(val) for col, val in zip(columns, values)}
                    if not _put(output, row, stop_event):
                        log.info("Reader stopped while scanning rows", extra={"reader_id": reader_id})
                        return
                    count += 1
                    rows_read += 1

            now = time.monotonic()
            elapsed = now - last_report
            if elapsed > _RATE_INTERVAL_SECONDS:
                log.info(
                    "Reader",
                    extra={
                        "reader_id": reader_id,
                        "rows_per_sec": _rate(rows_read, elapsed),
                        "offset": offset,
                    },
                )
                rows_read = 0
                last_report = now

            if count == 0:
                log.info(
                    "Reader finished - no more rows",
                    extra={"reader_id": reader_id, "offset": offset},
                )
                return
            offset += conf.batch_size * conf.readers

        log.info("Reader stopped by signal", extra={"reader_id": reader_id})


class _JsonFormatter(logging.Formatter):
    """One JSON object per record, with any extra fields alongside the message."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = (
            datetime.fromtimestamp(record.created)
            .astimezone()
            .isoformat(timespec="seconds")
            .replace("+00:00", "Z")
        )
        entry: dict[str, Any] = {
            "time": stamp,
            "level": _LEVEL_NAMES.get(record.levelname, record.levelname),
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS:
                entry[key] = value
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(conf: Config) -> Path:
    """Send JSON log records to stdout and to a fresh file under ``<log_dir>/logs``.

    Returns the path of the log file.
    """
    logs_dir = Path(conf.log_dir) / "logs"
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise OSError(f"failed to create logs directory: {exc}") from exc

    log_path = logs_dir / f"migration_{datetime.now():%Y-%m-%d_%H-%M-%S}.log"
    try:
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError as exc:
        raise OSError(f"failed to open log file: {exc}") from exc

    formatter = _JsonFormatter()
    console_handler = logging.StreamHandler(sys.stdout)
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in (console_handler, file_handler):
        handler.setFormatter(formatter)
        handler.setLevel(logging.INFO)
        root.addHandler(handler)
    root.setLevel(logging.INFO)

    log.info("Logging initialized", extra={"log_file": str(log_path)})
    return log_path


def _memory_monitor(stop: threading.Event) -> None:
    while not stop.wait(_MEMORY_INTERVAL_SECONDS):
        stats = gc.get_stats()
        log.info(
            "Memory",
            extra={
                "gc_counts": list(gc.get_count()),
                "gc_collections": sum(s["collections"] for s in stats),
            },
        )


def _periodic_gc(stop: threading.Event, interval: float) -> None:
    while not stop.wait(interval):
        log.info("Forcing garbage collection...")
        gc.collect()


def run_migration(conf: Config) -> int:
    """Copy every row of the source table into its shard, resuming from saved progress.

    Returns the source position reached (rows handled in this run plus the resume point).
    """
    started = time.monotonic()
    gc_interval = conf.garb_col_ticker.total_seconds()
    if gc_interval <= 0:
        raise ValueError("garbage collection interval must be positive")

    Path(conf.shard_dir).mkdir(parents=True, exist_ok=True)
    with closing(open_source_db(conf)) as ref_db:
        columns = get_column_names(ref_db, conf.table_name)
    if not columns:
        raise ValueError(f"table {conf.table_name!r} has no columns")

    existing = load_progress(conf)
    log.info(
        "Starting migration",
        extra={"columns": len(columns), "num_shards": conf.num_shards + 1, "readers": conf.readers},
    )
    log.info(
        "Shards will be numbered from 0 to %d (including reserved shard %d)",
        conf.num_shards,
        conf.reserved_shard,
    )

    stop_event = threading.Event()
    background_stop = threading.Event()
    failures: list[BaseException] = []

    def spawn(name: str, target: Callable[..., None], *args: Any) -> threading.Thread:
        def run() -> None:
            try:
                target(*args)
            except Exception as exc:
                log.exception("%s failed", name)
                failures.append(exc)
                stop_event.set()

        thread = threading.Thread(target=run, name=name, daemon=True)
        thread.start()
        return thread

    shard_queues: list[queue.Queue] = [
        queue.Queue(maxsize=_SHARD_QUEUE_SIZE) for _ in range(conf.num_shards + 1)
    ]
    workers = [
        spawn(
            f"worker-{index}",
            worker,
            index,
            conf.table_name,
            conf.batch_size,
            conf.shard_dir,
            columns,
            shard_queue,
            stop_event,
        )
        for index, shard_queue in enumerate(shard_queues)
    ]

    input_queue: queue.Queue = queue.Queue(maxsize=_INPUT_QUEUE_SIZE)
    readers = [
        spawn(
            f"reader-{index}",
            reader,
            index,
            existing.resume_from + index * conf.batch_size,
            columns,
            input_queue,
            conf,
            stop_event,
        )
        for index in range(conf.readers)
    ]

    def close_input() -> None:
        for thread in readers:
            thread.join()
        _put(input_queue, None, stop_event)

    closer = spawn("input-closer", close_input)
    threading.Thread(target=_memory_monitor, args=(background_stop,), daemon=True).start()
    threading.Thread(
        target=_periodic_gc, args=(background_stop, gc_interval), daemon=True
    ).start()

    def on_timeout() -> None:
        log.info("Migration timeout reached, stopping...")
        stop_event.set()

    timer = threading.Timer(_MAX_RUNTIME.total_seconds(), on_timeout)
    timer.daemon = True
    timer.start()

    processed = 0
    start_pos = existing.resume_from
    report_every = conf.batch_size
    last_report = time.monotonic()
    last_processed = 0

    try:
        while True:
            if stop_event.is_set():
                log.info("Received stop signal, closing channels...")
                break
            try:
                row = input_queue.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                continue
            if row is None:
                break

            index = get_shard_index(conf, row.get("MOBILE_NUMBER"))
            if index >= len(shard_queues):
                log.warning(
                    "Invalid shard index %d, using reserved shard (%d) instead",
                    index,
                    conf.reserved_shard,
                )
                index = conf.reserved_shard

            if not _put(shard_queues[index], row, stop_event):
                log.info("Received stop signal, closing channels...")
                break
            processed += 1

            if processed % report_every == 0:
                now = time.monotonic()
                done = processed + start_pos
                progress_pct = done / conf.total_rows * 100 if conf.total_rows else math.inf
                log.info(
                    "Processed",
                    extra={
                        "done": done,
                        "total": conf.total_rows,
                        "remaining": conf.total_rows - done,
                        "speed": _rate(processed - last_processed, now - last_report),
                        "progress": progress_pct,
                    },
                )
                try:
                    save_progress(conf, existing, done)
                except OSError as exc:
                    log.error("Failed to save progress: %s", exc)
                else:
                    log.info("Progress saved", extra={"position": done})
                last_report = now
                last_processed = processed
    finally:
        for shard_queue in shard_queues:
            _put(shard_queue, None, stop_event)
        for thread in (*workers, *readers, closer):
            thread.join()
        background_stop.set()
        timer.cancel()

    if failures:
        raise failures[0]

    total_time = time.monotonic() - started
    log.info(
        "Done migrating",
        extra={
            "total_processed": processed + start_pos,
            "seconds": round(total_time, 3),
            "rows_per_sec": _rate(processed, total_time),
        },
    )
    return processed + start_pos


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Load settings, set up logging and run the migration; return an exit status."""
    parser = argparse.ArgumentParser(
        prog="shardmigrate",
        description="Spread the rows of an SQLite table over shard databases.",
    )
    parser.add_argument("--env-file", default=".env", help="settings file to load first")
    args = parser.parse_args(argv)

    try:
        conf = load_config(args.env_file)
    except ConfigError as exc:
        log.error("Load config: %s", exc)
        return 1

    try:
        setup_logging(conf)
    except OSError as exc:
        print(f"Failed to setup logging: {exc}")
        return 1

    try:
        run_migration(conf)
    except Exception:
        log.exception("Migration failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())