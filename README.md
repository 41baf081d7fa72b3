# shardmigrate

Split one large SQLite table into several smaller SQLite databases ("shards").

Every row is routed by the SHA-256 hash of its `MOBILE_NUMBER` column, taken
modulo the number of shards. Rows whose `MOBILE_NUMBER` is missing or blank go
to a reserved shard. Several reader threads page through the source table in
parallel, one worker thread per shard writes rows in batched transactions, and
the position reached is saved regularly so an interrupted run can be resumed.

## Installation

```
pip install .
```

## Running a migration

```
shardmigrate
shardmigrate --env-file path/to/settings.env
```

`--env-file` names the settings file to load first (default `.env` in the
current directory). Variables already set in the environment take precedence
over the file. Any setting that is missing, empty or not a valid whole number
falls back to its default:

| Variable                  | Default       | Meaning                                           |
|---------------------------|---------------|---------------------------------------------------|
| `SOURCE_DB`               | `/clients.db` | Path of the source SQLite database                |
| `TABLE_NAME`              | `clients`     | Table to split                                    |
| `SHARD_DIR`               | `/shards`     | Directory for shard databases and `progress.json` |
| `LOG_DIR`                 | `/`           | A `logs/` directory is created below this         |
| `NUM_SHARDS`              | `10`          | Number of hashed shards                           |
| `RESERVED_SHARD`          | `10`          | Shard for rows without a usable key               |
| `BATCH_SIZE`              | `6000`        | Rows per read page and per insert transaction     |
| `READERS`                 | `6`           | Number of parallel readers                        |
| `TOTAL_ROWS`              | `1217065012`  | Expected row count, used for progress reports     |
| `GARB_COL_TICKER_MINUTES` | `5`           | Interval of periodic garbage collection           |

Example settings file:

```
SOURCE_DB=./clients.db
TABLE_NAME=clients
SHARD_DIR=./shards
LOG_DIR=.
NUM_SHARDS=10
RESERVED_SHARD=10
```

The command exits with status 0 when the migration completes, and 1 if the
settings are incomplete, logging cannot be set up, or the migration fails.

Shards are written as `clients_shard_00.db`, `clients_shard_01.db`, … in
`SHARD_DIR`, one for each index from 0 to `NUM_SHARDS` inclusive. Each shard
gets a copy of the source table with every column stored as `TEXT` (NULL
becomes an empty string), plus indexes on `ИНН`, `MOBILE_NUMBER` and `СНИЛС`
where those columns exist. A row that fails to insert is logged and skipped.

Logs are written as JSON lines both to standard output and to
`LOG_DIR/logs/migration_<timestamp>.log`. A run is stopped after 48 hours.

## Resuming

Progress is kept in `SHARD_DIR/progress.json` and rewritten every
`BATCH_SIZE` rows:

```json
{"resumeFrom":120000,"lastUpdate":1700000000}
```

On the next start the readers begin at `resumeFrom`. Delete the file to start
from the beginning.

## Using it as a library

```python
from shardmigrate.config import load_config
from shardmigrate.shard import get_shard_index, get_shard_path

conf = load_config(".env")
index = get_shard_index(conf, "some key")
print(get_shard_path(index, conf.shard_dir))
```

- `shardmigrate.config`: `Config` (a frozen dataclass of the settings above),
  `load_config(env_file)` and `ConfigError`.
- `shardmigrate.shard`: `get_shard_index(conf, value)`,
  `get_shard_path(index, shard_dir)` and `pad(n)`.
- `shardmigrate.progress`: `Progress`, `load_progress(conf)` and
  `save_progress(conf, progress, position)`.
- `shardmigrate.database`: `open_source_db(conf)`, `get_column_names(db, table_name)`,
  `ensure_table(db, table_name, columns)` and `open_shard_db(shard_path)`.
- `shardmigrate.migrate`: `run_migration(conf)` runs a whole migration with a
  `Config` you build yourself and returns the source position reached;
  `setup_logging(conf)` installs the JSON logging and returns the log file path.

## What it does not do

The package only copies rows; it does not check that the shards match the
source afterwards, and it does not merge shards back together. The shard key
is always the `MOBILE_NUMBER` column, and shard file names always start with
`clients_shard_`.

## Tests

```
pip install ".[test]"
pytest
```