"""Split a large SQLite table into hash-sharded SQLite databases with resumable progress."""

__version__ = "0.1.0"