import json
import logging
import queue
import sqlite3
import threading
from contextlib import closing
from datetime import timedelta

import pytest

from shardmigrate.config import Config
from shardmigrate.database import ensure_table, open_shard_db
from shardmigrate.migrate import (
    commit_batch,
    main,
    reader,
    run_migration,
    setup_logging,
    worker,
)
from shardmigrate.progress import Progress, load_progress, save_progress
from shardmigrate.shard import get_shard_index, get_shard_path

MOBILES = ["alpha", "bravo", "charlie", "", None]


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def make_source(path, mobiles=MOBILES):
    with closing(sqlite3.connect(path)) as db:
        db.execute('CREATE TABLE clients ("ID" INTEGER, "MOBILE_NUMBER" TEXT, "NAME" TEXT)')
        db.executemany(
            "INSERT INTO clients VALUES (?, ?, ?)",
            [(i, mobile, f"name{i}") for i, mobile in enumerate(mobiles, start=1)],
        )
        db.commit()


def make_conf(tmp_path, **overrides):
    settings = dict(
        source_db=str(tmp_path / "source.db"),
        table_name="clients",
        shard_dir=str(tmp_path / "shards"),
        log_dir=str(tmp_path),
        num_shards=2,
        reserved_shard=2,
        batch_size=2,
        readers=1,
        total_rows=5,
        garb_col_ticker=timedelta(minutes=5),
    )
    settings.update(overrides)
    return Config(**settings)


def read_shards(conf):
    found = {}
    for index in range(conf.num_shards + 1):
        with closing(sqlite3.connect(get_shard_path(index, conf.shard_dir))) as db:
            found[index] = db.execute('SELECT "ID", "MOBILE_NUMBER" FROM clients').fetchall()
    return found


def test_commit_batch_inserts_all_rows(tmp_path):
    with closing(open_shard_db(str(tmp_path / "s.db"))) as db:
        ensure_table(db, "clients", ["a", "b"])
        sql = 'INSERT INTO clients ("a", "b") VALUES (?,?)'
        assert commit_batch(db, sql, [("1", "2"), ("3", "4")]) == 2
        assert db.execute("SELECT a, b FROM clients").fetchall() == [("1", "2"), ("3", "4")]


def test_commit_batch_skips_failing_rows(tmp_path):
    with closing(open_shard_db(str(tmp_path / "s.db"))) as db:
        ensure_table(db, "clients", ["a", "b"])
        sql = 'INSERT INTO clients ("a", "b") VALUES (?,?)'
        assert commit_batch(db, sql, [("1", "2"), ("x",), ("3", "4")]) == 2
        assert db.execute("SELECT count(*) FROM clients").fetchone() == (2,)
        assert not db.in_transaction


def test_worker_writes_rows_until_end_marker(tmp_path):
    rows = queue.Queue()
    for item in ({"a": "1", "b": "2"}, {"a": "3", "b": "4"}, {"a": "5"}, None):
        rows.put(item)
    worker(0, "clients", 2, str(tmp_path), ["a", "b"], rows, threading.Event())
    with closing(sqlite3.connect(get_shard_path(0, str(tmp_path)))) as db:
        stored = db.execute("SELECT a, b FROM clients ORDER BY a").fetchall()
    assert stored == [("1", "2"), ("3", "4"), ("5", "")]


def test_worker_stops_on_signal(tmp_path):
    rows = queue.Queue()
    rows.put({"a": "1", "b": "2"})
    stop = threading.Event()
    stop.set()
    worker(1, "clients", 10, str(tmp_path), ["a", "b"], rows, stop)
    with closing(sqlite3.connect(get_shard_path(1, str(tmp_path)))) as db:
        assert db.execute("SELECT count(*) FROM clients").fetchone() == (0,)
    assert rows.qsize() == 1


def test_reader_formats_values_as_text(tmp_path):
    source = tmp_path / "source.db"
    with closing(sqlite3.connect(source)) as db:
        db.execute('CREATE TABLE clients ("n" INTEGER, "f" REAL, "s" TEXT, "b" BLOB)')
        db.executemany(
            "INSERT INTO clients VALUES (?, ?, ?, ?)",
            [(7, 3.0, None, b"hi"), (8, 1e21, "x", None)],
        )
        db.commit()
    conf = make_conf(tmp_path, batch_size=1)
    output = queue.Queue()
    reader(0, 0, ["n", "f", "s", "b"], output, conf, threading.Event())
    rows = [output.get_nowait() for _ in range(output.qsize())]
    assert rows == [
        {"n": "7", "f": "3", "s": "", "b": "[104 105]"},
        {"n": "8", "f": "1e+21", "s": "x", "b": ""},
    ]


def test_reader_strides_by_reader_count(tmp_path):
    make_source(tmp_path / "source.db")
    conf = make_conf(tmp_path, batch_size=2, readers=2)
    output = queue.Queue()
    reader(0, 0, ["ID"], output, conf, threading.Event())
    ids = [output.get_nowait()["ID"] for _ in range(output.qsize())]
    assert ids == ["1", "2", "5"]


def test_reader_returns_at_once_when_stopped(tmp_path):
    make_source(tmp_path / "source.db")
    stop = threading.Event()
    stop.set()
    output = queue.Queue()
    reader(0, 0, ["ID"], output, make_conf(tmp_path), stop)
    assert output.empty()


@pytest.mark.parametrize("readers", [1, 2])
def test_run_migration_distributes_rows(tmp_path, readers):
    make_source(tmp_path / "source.db")
    conf = make_conf(tmp_path, readers=readers)
    assert run_migration(conf) == len(MOBILES)

    shards = read_shards(conf)
    all_ids = sorted(row_id for rows in shards.values() for row_id, _ in rows)
    assert all_ids == [str(i) for i in range(1, len(MOBILES) + 1)]
    for index, rows in shards.items():
        for _, mobile in rows:
            assert get_shard_index(conf, mobile) == index
    reserved_mobiles = sorted(mobile for _, mobile in shards[conf.reserved_shard])
    assert reserved_mobiles == ["", ""]
    assert load_progress(conf).resume_from == 4


def test_run_migration_resumes_from_saved_progress(tmp_path):
    make_source(tmp_path / "source.db")
    conf = make_conf(tmp_path)
    (tmp_path / "shards").mkdir()
    save_progress(conf, Progress(), 3)

    assert run_migration(conf) == len(MOBILES)
    all_ids = sorted(row_id for rows in read_shards(conf).values() for row_id, _ in rows)
    assert all_ids == ["4", "5"]


def test_run_migration_rejects_missing_table(tmp_path):
    with closing(sqlite3.connect(tmp_path / "source.db")) as db:
        db.execute("CREATE TABLE other (x TEXT)")
    with pytest.raises(ValueError):
        run_migration(make_conf(tmp_path))


def test_run_migration_rejects_non_positive_gc_interval(tmp_path):
    make_source(tmp_path / "source.db")
    with pytest.raises(ValueError):
        run_migration(make_conf(tmp_path, garb_col_ticker=timedelta(0)))


def test_setup_logging_writes_json_file(tmp_path, restore_logging):
    conf = make_conf(tmp_path)
    path = setup_logging(conf)
    assert path.parent == tmp_path / "logs"
    assert path.name.startswith("migration_")
    lines = path.read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["msg"] == "Logging initialized"
    assert entry["log_file"] == str(path)


def test_setup_logging_fails_when_log_dir_is_a_file(tmp_path, restore_logging):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    with pytest.raises(OSError):
        setup_logging(make_conf(tmp_path, log_dir=str(blocker)))


def set_env(monkeypatch, tmp_path, log_dir):
    values = {
        "SOURCE_DB": str(tmp_path / "source.db"),
        "TABLE_NAME": "clients",
        "SHARD_DIR": str(tmp_path / "shards"),
        "LOG_DIR": log_dir,
        "NUM_SHARDS": "2",
        "RESERVED_SHARD": "2",
        "BATCH_SIZE": "2",
        "READERS": "1",
        "TOTAL_ROWS": "5",
        "GARB_COL_TICKER_MINUTES": "5",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)


def test_main_runs_migration(tmp_path, monkeypatch, restore_logging):
    make_source(tmp_path / "source.db")
    set_env(monkeypatch, tmp_path, str(tmp_path))
    status = main(["--env-file", str(tmp_path / "missing.env")])
    assert status == 0
    conf = make_conf(tmp_path)
    total = sum(len(rows) for rows in read_shards(conf).values())
    assert total == len(MOBILES)


def test_main_reports_logging_failure(tmp_path, monkeypatch, capsys, restore_logging):
    make_source(tmp_path / "source.db")
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    set_env(monkeypatch, tmp_path, str(blocker))
    status = main(["--env-file", str(tmp_path / "missing.env")])
    assert status == 1
    assert "Failed to setup logging" in capsys.readouterr().out