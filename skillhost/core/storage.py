"""SQLite helpers shared by the skill registry and the approval store."""

import sqlite3
import time
from pathlib import Path
from typing import Union


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection with the runtime's standard pragmas.

    Callers own the connection and must close it.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    # WAL for concurrent readers (CLI + running host)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=30000")
    return conn
