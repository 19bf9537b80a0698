import json
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from engines.rolling_stats import RollingStat

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = (), con: Optional[sqlite3.Connection] = None) -> list[sqlite3.Row]:
    if con is not None:
        return con.execute(sql, params).fetchall()
    with _pool.get_connection() as pooled:
        cur = pooled.execute(sql, params)
        return cur.fetchall()


def transaction():
    """Return a context manager holding the database write lock until commit.

    Reads issued on the yielded connection see no concurrent writers, so a
    read-modify-write done inside it cannot lose an update.
    """
    return _pool.transaction()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_iso(value: datetime) -> str:
    return as_utc(value).isoformat()


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _loads(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value: %r", raw[:80])
        return default


def init() -> None:
    """Create the tables used by the scoring service if they do not exist."""
    with _conn() as con:
        con.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
              id             TEXT PRIMARY KEY,
              name           TEXT NOT NULL DEFAULT '',
              role           TEXT NOT NULL DEFAULT 'Sales Consultant',
              dealership_ids TEXT NOT NULL DEFAULT '[]',
              xp             INTEGER NOT NULL DEFAULT 0 CHECK (xp >= 0),
              created_at     TEXT NOT NULL,
              updated_at     TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rolling_stats (
              user_id      TEXT NOT NULL,
              trait        TEXT NOT NULL,
              score        REAL NOT NULL CHECK (score >= 0 AND score <= 100),
              last_updated TEXT NOT NULL,
              PRIMARY KEY (user_id, trait),
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS lesson_logs (
              id                     INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id                TEXT NOT NULL,
              lesson_id              TEXT NOT NULL,
              xp_gained              INTEGER NOT NULL,
              is_recommended         INTEGER NOT NULL DEFAULT 0,
              ratings                TEXT NOT NULL,
              severity               TEXT NOT NULL DEFAULT 'normal',
              flags                  TEXT NOT NULL DEFAULT '[]',
              score_delta            TEXT NOT NULL DEFAULT '{}',
              trained_trait          TEXT,
              coach_summary          TEXT,
              recommended_next_focus TEXT,
              created_at             TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_lesson_logs_user ON lesson_logs(user_id, created_at);

            CREATE TABLE IF NOT EXISTS earned_badges (
              user_id    TEXT NOT NULL,
              badge_id   TEXT NOT NULL,
              awarded_at TEXT NOT NULL,
              PRIMARY KEY (user_id, badge_id),
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS lesson_assignments (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id     TEXT NOT NULL,
              lesson_id   TEXT NOT NULL,
              assigner_id TEXT NOT NULL,
              completed   INTEGER NOT NULL DEFAULT 0,
              created_at  TEXT NOT NULL,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );
            """
        )
        con.commit()


# -------------- users --------------
def _user_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "user_id": row["id"],
        "name": row["name"],
        "role": row["role"],
        "dealership_ids": _loads(row["dealership_ids"], []),
        "xp": int(row["xp"]),
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def upsert_user(
    user_id: str,
    name: str = "",
    role: str = "Sales Consultant",
    dealership_ids: Optional[Sequence[str]] = None,
    xp: Optional[int] = None,
) -> Dict[str, Any]:
    """Insert or update a user's profile fields. ``xp`` is only written when given."""
    now = _now_iso()
    dealerships = json.dumps(list(dealership_ids or []))
    with _pool.transaction() as con:
        con.execute(
            """
            INSERT INTO users (id, name, role, dealership_ids, xp, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                role = excluded.role,
                dealership_ids = excluded.dealership_ids,
                updated_at = excluded.updated_at
            """,
            (user_id, name, role, dealerships, max(0, int(xp or 0)), now, now),
        )
        if xp is not None:
            con.execute("UPDATE users SET xp = ? WHERE id = ?", (max(0, int(xp)), user_id))
        row = con.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if row is None:
        raise RuntimeError(f"user {user_id!r} missing after upsert")
    return _user_from_row(row)


def get_user(user_id: str, con: Optional[sqlite3.Connection] = None) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT * FROM users WHERE id = ?", (user_id,), con)
    if not rows:
        return None
    return _user_from_row(rows[0])


def list_users(user_ids: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
    if user_ids is None:
        rows = _query("SELECT * FROM users ORDER BY id")
    else:
        if not user_ids:
            return []
        placeholders = ", ".join("?" for _ in user_ids)
        rows = _query(f"SELECT * FROM users WHERE id IN ({placeholders}) ORDER BY id", list(user_ids))
    return [_user_from_row(row) for row in rows]


def delete_user(user_id: str) -> None:
    """Remove a user; rolling stats, logs and badges cascade."""
    _exec("DELETE FROM users WHERE id = ?", (user_id,))


# -------------- rolling stats --------------
def get_rolling_stats(user_id: str, con: Optional[sqlite3.Connection] = None) -> Dict[str, RollingStat]:
    rows = _query("SELECT trait, score, last_updated FROM rolling_stats WHERE user_id = ?", (user_id,), con)
    stats: Dict[str, RollingStat] = {}
    for row in rows:
        last_updated = _parse_ts(row["last_updated"]) or datetime.now(timezone.utc)
        stats[row["trait"]] = RollingStat(float(row["score"]), last_updated)
    return stats


def _write_rolling_stats(con: sqlite3.Connection, user_id: str, stats: Mapping[str, RollingStat]) -> None:
    con.executemany(
        """
        INSERT INTO rolling_stats (user_id, trait, score, last_updated)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(user_id, trait) DO UPDATE SET
            score = excluded.score,
            last_updated = excluded.last_updated
        """,
        [(user_id, trait, stat.score, _to_iso(stat.last_updated)) for trait, stat in stats.items()],
    )


def set_rolling_stats(user_id: str, stats: Mapping[str, RollingStat]) -> None:
    with _pool.transaction() as con:
        _write_rolling_stats(con, user_id, stats)


# -------------- lesson logs --------------
def _log_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "log_id": int(row["id"]),
        "user_id": row["user_id"],
        "lesson_id": row["lesson_id"],
        "xp_gained": int(row["xp_gained"]),
        "is_recommended": bool(row["is_recommended"]),
        "ratings": _loads(row["ratings"], {}),
        "severity": row["severity"],
        "flags": _loads(row["flags"], []),
        "score_delta": _loads(row["score_delta"], {}),
        "trained_trait": row["trained_trait"],
        "coach_summary": row["coach_summary"],
        "recommended_next_focus": row["recommended_next_focus"],
        "created_at": _parse_ts(row["created_at"]),
    }


def list_lesson_logs(user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return a user's lesson logs, newest first."""
    sql = "SELECT * FROM lesson_logs WHERE user_id = ? ORDER BY created_at DESC, id DESC"
    params: List[Any] = [user_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return [_log_from_row(row) for row in _query(sql, params)]


def count_lesson_logs(user_id: str, con: Optional[sqlite3.Connection] = None) -> int:
    rows = _query("SELECT COUNT(*) AS n FROM lesson_logs WHERE user_id = ?", (user_id,), con)
    return int(rows[0]["n"]) if rows else 0


def list_lesson_logs_between(user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    rows = _query(
        """
        SELECT * FROM lesson_logs
        WHERE user_id = ? AND created_at >= ? AND created_at < ?
        ORDER BY created_at DESC, id DESC
        """,
        (user_id, _to_iso(start), _to_iso(end)),
    )
    return [_log_from_row(row) for row in rows]


# -------------- badges & assignments --------------
def list_earned_badge_ids(user_id: str, con: Optional[sqlite3.Connection] = None) -> List[str]:
    rows = _query(
        "SELECT badge_id FROM earned_badges WHERE user_id = ? ORDER BY awarded_at, badge_id", (user_id,), con
    )
    return [row["badge_id"] for row in rows]


def assign_lesson(user_id: str, lesson_id: str, assigner_id: str) -> Dict[str, Any]:
    now = _now_iso()
    cur = _exec(
        "INSERT INTO lesson_assignments (user_id, lesson_id, assigner_id, completed, created_at) VALUES (?, ?, ?, 0, ?)",
        (user_id, lesson_id, assigner_id, now),
    )
    return {
        "assignment_id": int(cur.lastrowid),
        "user_id": user_id,
        "lesson_id": lesson_id,
        "assigner_id": assigner_id,
        "completed": False,
        "created_at": now,
    }


def get_pending_assignment_id(
    user_id: str, lesson_id: str, con: Optional[sqlite3.Connection] = None
) -> Optional[int]:
    rows = _query(
        """
        SELECT id FROM lesson_assignments
        WHERE user_id = ? AND lesson_id = ? AND completed = 0
        ORDER BY created_at, id LIMIT 1
        """,
        (user_id, lesson_id),
        con,
    )
    return int(rows[0]["id"]) if rows else None


def list_pending_assignments(user_id: str) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT * FROM lesson_assignments WHERE user_id = ? AND completed = 0 ORDER BY created_at, id",
        (user_id,),
    )
    return [
        {
            "assignment_id": int(row["id"]),
            "user_id": row["user_id"],
            "lesson_id": row["lesson_id"],
            "assigner_id": row["assigner_id"],
            "completed": bool(row["completed"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]


# -------------- lesson completion --------------
def _write_lesson_completion(
    con: sqlite3.Connection,
    user_id: str,
    log: Mapping[str, Any],
    new_xp: int,
    stats: Mapping[str, RollingStat],
    badge_ids: Sequence[str],
    assignment_id: Optional[int],
) -> int:
    created_at = log.get("created_at") or datetime.now(timezone.utc)
    created_iso = _to_iso(created_at) if isinstance(created_at, datetime) else str(created_at)
    cur = con.execute(
        """
        INSERT INTO lesson_logs (
            user_id, lesson_id, xp_gained, is_recommended, ratings, severity,
            flags, score_delta, trained_trait, coach_summary,
            recommended_next_focus, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            log["lesson_id"],
            int(log.get("xp_gained", 0)),
            1 if log.get("is_recommended") else 0,
            json.dumps(log.get("ratings") or {}),
            log.get("severity") or "normal",
            json.dumps(list(log.get("flags") or [])),
            json.dumps(log.get("score_delta") or {}),
            log.get("trained_trait"),
            log.get("coach_summary"),
            log.get("recommended_next_focus"),
            created_iso,
        ),
    )
    log_id = int(cur.lastrowid)
    con.execute(
        "UPDATE users SET xp = ?, updated_at = ? WHERE id = ?",
        (max(0, int(new_xp)), created_iso, user_id),
    )
    _write_rolling_stats(con, user_id, stats)
    con.executemany(
        "INSERT OR IGNORE INTO earned_badges (user_id, badge_id, awarded_at) VALUES (?, ?, ?)",
        [(user_id, badge_id, created_iso) for badge_id in badge_ids],
    )
    if assignment_id is not None:
        con.execute("UPDATE lesson_assignments SET completed = 1 WHERE id = ?", (assignment_id,))
    return log_id


def record_lesson_completion(
    user_id: str,
    log: Mapping[str, Any],
    new_xp: int,
    stats: Mapping[str, RollingStat],
    badge_ids: Sequence[str] = (),
    assignment_id: Optional[int] = None,
    con: Optional[sqlite3.Connection] = None,
) -> int:
    """Persist every effect of one lesson completion in a single transaction.

    Pass ``con`` from :func:`transaction` when ``new_xp`` and ``stats`` were
    computed from reads on that same connection; the write then joins that
    transaction instead of opening its own. Returns the id of the new lesson log.
    """
    try:
        if con is not None:
            return _write_lesson_completion(con, user_id, log, new_xp, stats, badge_ids, assignment_id)
        with _pool.transaction() as own:
            return _write_lesson_completion(own, user_id, log, new_xp, stats, badge_ids, assignment_id)
    except sqlite3.Error:
        logger.error("Failed to persist lesson completion for %s", user_id, exc_info=True)
        raise
