"""
SQLite persistence for holdings, yearly data, action history and learned
patterns.

Storage: SQLite at portfolio_agent/data/portfolio.db
  (override path with PORTFOLIO_DB_PATH env var, ":memory:" in tests)

Holdings carry a version column. update_holding() is a compare-and-swap on
that version and raises StaleHoldingError when another writer got there
first. Action history is append-only; an undo is itself a new record whose
metadata points at the record it reverted.
"""

import json
import os
import sqlite3
import uuid
from datetime import datetime
from typing import Optional

from portfolio_agent.errors import StaleHoldingError
from portfolio_agent.models import ActionRecord, Holding, UserPattern, YearlyData

# ---------------------------------------------------------------------------
# SQLite connection helpers
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS holdings (
        id TEXT PRIMARY KEY,
        symbol TEXT NOT NULL,
        name TEXT DEFAULT '',
        category TEXT DEFAULT 'Growth',
        location TEXT DEFAULT '',
        quantity REAL DEFAULT 0,
        unit_price REAL DEFAULT 0,
        current_unit_price REAL,
        cost_basis REAL DEFAULT 0,
        value_sgd REAL DEFAULT 0,
        value_usd REAL DEFAULT 0,
        value_inr REAL DEFAULT 0,
        entry_currency TEXT DEFAULT 'SGD',
        manual_pricing INTEGER DEFAULT 0,
        version INTEGER DEFAULT 1,
        created_at TEXT,
        updated_at TEXT
    );
    CREATE TABLE IF NOT EXISTS yearly_data (
        year INTEGER PRIMARY KEY,
        income REAL,
        expenses REAL,
        savings REAL,
        net_worth REAL,
        market_gains REAL,
        updated_at TEXT
    );
    CREATE TABLE IF NOT EXISTS action_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_input TEXT NOT NULL,
        action_taken TEXT NOT NULL,
        success INTEGER NOT NULL,
        pattern_used TEXT,
        timestamp TEXT NOT NULL,
        metadata TEXT
    );
    CREATE TABLE IF NOT EXISTS user_patterns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        pattern TEXT UNIQUE NOT NULL,
        success_rate REAL NOT NULL,
        usage_count INTEGER NOT NULL,
        last_used TEXT NOT NULL,
        examples TEXT NOT NULL
    );
"""

_TABLES = ("holdings", "yearly_data", "action_history", "user_patterns")

_HOLDING_COLUMNS = (
    "symbol", "name", "category", "location", "quantity", "unit_price",
    "current_unit_price", "cost_basis", "value_sgd", "value_usd", "value_inr",
    "entry_currency", "manual_pricing",
)

_YEARLY_COLUMNS = ("income", "expenses", "savings", "net_worth", "market_gains")

# SQLite :memory: creates a fresh DB per connection, so the one connection is cached.
_MEMORY_CONN: Optional[sqlite3.Connection] = None


def _db_path() -> str:
    """Returns the SQLite database path (configurable via PORTFOLIO_DB_PATH)."""
    env_path = os.getenv("PORTFOLIO_DB_PATH")
    if env_path:
        return env_path
    package_dir = os.path.dirname(os.path.abspath(__file__))
    data_dir = os.path.join(package_dir, "data")
    os.makedirs(data_dir, exist_ok=True)
    return os.path.join(data_dir, "portfolio.db")


def _get_conn() -> sqlite3.Connection:
    global _MEMORY_CONN
    path = _db_path()

    if path == ":memory:":
        if _MEMORY_CONN is None:
            _MEMORY_CONN = sqlite3.connect(":memory:", check_same_thread=False)
            _MEMORY_CONN.row_factory = sqlite3.Row
            _MEMORY_CONN.executescript(_SCHEMA_SQL)
            _MEMORY_CONN.commit()
        return _MEMORY_CONN

    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(_SCHEMA_SQL)
    conn.commit()
    return conn


def _close_conn(conn: sqlite3.Connection) -> None:
    """Closes file-based connections; leaves the :memory: connection open."""
    if _db_path() != ":memory:":
        conn.close()


def _holding_from_row(row: sqlite3.Row) -> Holding:
    d = dict(row)
    d["manual_pricing"] = bool(d.get("manual_pricing"))
    return Holding(**d)


def _action_from_row(row: sqlite3.Row) -> ActionRecord:
    d = dict(row)
    d["success"] = bool(d["success"])
    d["metadata"] = json.loads(d["metadata"]) if d.get("metadata") else {}
    return ActionRecord(**d)


def _pattern_from_row(row: sqlite3.Row) -> UserPattern:
    d = dict(row)
    d["examples"] = json.loads(d["examples"]) if d.get("examples") else []
    return UserPattern(**d)


def _now() -> str:
    return datetime.utcnow().isoformat()


# ---------------------------------------------------------------------------
# Test helpers
# ---------------------------------------------------------------------------

def store_clear() -> None:
    """Wipes every table. Used in tests to reset state between cases."""
    conn = _get_conn()
    for table in _TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    _close_conn(conn)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class PortfolioStore:
    """Async facade over the SQLite tables; one short-lived connection per call."""

    # --- holdings ---

    async def list_holdings(self) -> list[Holding]:
        conn = _get_conn()
        rows = conn.execute("SELECT * FROM holdings ORDER BY created_at, id").fetchall()
        _close_conn(conn)
        return [_holding_from_row(r) for r in rows]

    async def get_holding(self, holding_id: str) -> Optional[Holding]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM holdings WHERE id = ?", (holding_id,)).fetchone()
        _close_conn(conn)
        return _holding_from_row(row) if row else None

    async def find_by_symbol(self, symbol: str) -> list[Holding]:
        conn = _get_conn()
        rows = conn.execute(
            "SELECT * FROM holdings WHERE UPPER(symbol) = ?", (symbol.upper(),)
        ).fetchall()
        _close_conn(conn)
        return [_holding_from_row(r) for r in rows]

    async def create_holding(self, fields: dict, holding_id: Optional[str] = None) -> Holding:
        """Inserts a holding. holding_id is passed when undo recreates a deleted row."""
        holding_id = holding_id or f"hold_{uuid.uuid4().hex[:8]}"
        values = {c: fields.get(c) for c in _HOLDING_COLUMNS if c in fields}
        if "manual_pricing" in values:
            values["manual_pricing"] = int(bool(values["manual_pricing"]))
        now = _now()
        columns = ["id", *values, "version", "created_at", "updated_at"]
        params = [holding_id, *values.values(), 1, now, now]

        conn = _get_conn()
        conn.execute(
            f"INSERT INTO holdings ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            params,
        )
        conn.commit()
        row = conn.execute("SELECT * FROM holdings WHERE id = ?", (holding_id,)).fetchone()
        _close_conn(conn)
        return _holding_from_row(row)

    async def update_holding(
        self, holding_id: str, fields: dict, expected_version: Optional[int] = None
    ) -> Optional[Holding]:
        """
        Applies fields to a holding and bumps its version.
        Returns None when the holding does not exist; raises StaleHoldingError
        when expected_version no longer matches.
        """
        values = {c: fields[c] for c in _HOLDING_COLUMNS if c in fields}
        if "manual_pricing" in values:
            values["manual_pricing"] = int(bool(values["manual_pricing"]))
        assignments = [f"{c} = ?" for c in values] + ["version = version + 1", "updated_at = ?"]
        params = [*values.values(), _now(), holding_id]
        sql = f"UPDATE holdings SET {', '.join(assignments)} WHERE id = ?"
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(expected_version)

        conn = _get_conn()
        cur = conn.execute(sql, params)
        conn.commit()
        row = conn.execute("SELECT * FROM holdings WHERE id = ?", (holding_id,)).fetchone()
        _close_conn(conn)

        if row is None:
            return None
        if cur.rowcount == 0:
            raise StaleHoldingError(holding_id, expected_version, row["version"])
        return _holding_from_row(row)

    async def delete_holding(self, holding_id: str) -> bool:
        conn = _get_conn()
        cur = conn.execute("DELETE FROM holdings WHERE id = ?", (holding_id,))
        conn.commit()
        _close_conn(conn)
        return cur.rowcount > 0

    # --- yearly data ---

    async def list_yearly(self) -> list[YearlyData]:
        conn = _get_conn()
        rows = conn.execute("SELECT * FROM yearly_data ORDER BY year DESC").fetchall()
        _close_conn(conn)
        return [YearlyData(**dict(r)) for r in rows]

    async def get_yearly(self, year: int) -> Optional[YearlyData]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM yearly_data WHERE year = ?", (year,)).fetchone()
        _close_conn(conn)
        return YearlyData(**dict(row)) if row else None

    async def upsert_yearly(self, year: int, fields: dict) -> YearlyData:
        """Inserts the year or updates only the supplied fields of an existing one."""
        values = {c: fields[c] for c in _YEARLY_COLUMNS if c in fields}
        conn = _get_conn()
        exists = conn.execute("SELECT 1 FROM yearly_data WHERE year = ?", (year,)).fetchone()
        if exists:
            if values:
                assignments = ", ".join(f"{c} = ?" for c in values)
                conn.execute(
                    f"UPDATE yearly_data SET {assignments}, updated_at = ? WHERE year = ?",
                    [*values.values(), _now(), year],
                )
        else:
            columns = ["year", *values, "updated_at"]
            conn.execute(
                f"INSERT INTO yearly_data ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                [year, *values.values(), _now()],
            )
        conn.commit()
        row = conn.execute("SELECT * FROM yearly_data WHERE year = ?", (year,)).fetchone()
        _close_conn(conn)
        return YearlyData(**dict(row))

    async def delete_yearly(self, year: int) -> bool:
        conn = _get_conn()
        cur = conn.execute("DELETE FROM yearly_data WHERE year = ?", (year,))
        conn.commit()
        _close_conn(conn)
        return cur.rowcount > 0

    # --- action history ---

    async def add_action(
        self,
        user_input: str,
        action_taken: str,
        success: bool,
        pattern_used: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> int:
        conn = _get_conn()
        cur = conn.execute(
            """INSERT INTO action_history
               (user_input, action_taken, success, pattern_used, timestamp, metadata)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                user_input, action_taken, int(success), pattern_used, _now(),
                json.dumps(metadata or {}, default=str),
            ),
        )
        conn.commit()
        record_id = cur.lastrowid
        _close_conn(conn)
        return record_id

    async def recent_actions(self, limit: int = 10) -> list[ActionRecord]:
        conn = _get_conn()
        rows = conn.execute(
            "SELECT * FROM action_history ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        _close_conn(conn)
        return [_action_from_row(r) for r in rows]

    async def latest_undoable(self) -> Optional[ActionRecord]:
        """Most recent successful mutation that no undo record points at."""
        conn = _get_conn()
        rows = conn.execute(
            "SELECT * FROM action_history WHERE success = 1 ORDER BY id DESC"
        ).fetchall()
        _close_conn(conn)

        undone = set()
        for row in rows:
            record = _action_from_row(row)
            if record.action_taken.startswith("undo_"):
                undone.add(record.metadata.get("undo_of"))
                continue
            if record.id not in undone:
                return record
        return None

    async def is_undone(self, action_id: int) -> bool:
        """True when an undo record already points at action_id."""
        conn = _get_conn()
        rows = conn.execute(
            "SELECT metadata FROM action_history WHERE action_taken LIKE 'undo\\_%' ESCAPE '\\' AND success = 1"
        ).fetchall()
        _close_conn(conn)
        return any(json.loads(r["metadata"] or "{}").get("undo_of") == action_id for r in rows)

    # --- learned patterns ---

    async def get_pattern(self, pattern: str) -> Optional[UserPattern]:
        conn = _get_conn()
        row = conn.execute("SELECT * FROM user_patterns WHERE pattern = ?", (pattern,)).fetchone()
        _close_conn(conn)
        return _pattern_from_row(row) if row else None

    async def save_pattern(self, pattern: UserPattern) -> None:
        conn = _get_conn()
        conn.execute(
            """INSERT INTO user_patterns
               (pattern, success_rate, usage_count, last_used, examples)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(pattern) DO UPDATE SET
                 success_rate = excluded.success_rate,
                 usage_count = excluded.usage_count,
                 last_used = excluded.last_used,
                 examples = excluded.examples""",
            (
                pattern.pattern, pattern.success_rate, pattern.usage_count,
                pattern.last_used.isoformat(), json.dumps(pattern.examples),
            ),
        )
        conn.commit()
        _close_conn(conn)

    async def list_patterns(self, min_success_rate: float, since: datetime, limit: int) -> list[UserPattern]:
        conn = _get_conn()
        rows = conn.execute(
            """SELECT * FROM user_patterns
               WHERE success_rate >= ? AND last_used >= ?
               ORDER BY success_rate DESC, usage_count DESC
               LIMIT ?""",
            (min_success_rate, since.isoformat(), limit),
        ).fetchall()
        _close_conn(conn)
        return [_pattern_from_row(r) for r in rows]
