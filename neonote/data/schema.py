DB_FILENAME = "notes.sqlite3"

SCHEMA_VERSION = 1

PRAGMAS_SQL = """
PRAGMA journal_mode = WAL;
"""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY,
    record BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS sequence (
    name TEXT PRIMARY KEY,
    value INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

INSERT OR IGNORE INTO sequence(name, value) VALUES ('notes', 0);
"""
