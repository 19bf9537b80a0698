import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db
    from db_pool import SQLiteConnectionPool

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    previous_pool = db._pool
    db._pool = SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    try:
        import app

        app._completion_engine.cache_clear()
    except ImportError:
        pass
    yield str(db_path)
    db._pool.close_all()
    db._pool = previous_pool


@pytest.fixture
def make_user(temp_db):
    import db

    def _make(user_id="alice", xp=0, role="Sales Consultant", dealership_ids=None, name=None):
        return db.upsert_user(
            user_id,
            name=name or user_id.title(),
            role=role,
            dealership_ids=dealership_ids or ["store-1"],
            xp=xp,
        )

    return _make
