import json

import pytest

from resforge.db import DB, DBError, MIGRATIONS, add_history, open_db


def test_open_db_migrates_once(tmp_path):
    db = open_db(tmp_path / "nested" / "forge.sqlite3")
    assert db.get_current_version() == max(v for v, _, _ in MIGRATIONS)
    assert db.apply_migrations() == []
    tables = {r["name"] for r in db.fetchall("SELECT name FROM sqlite_master WHERE type = 'table'")}
    assert {"fetch_cache", "results", "build_history"} <= tables
    db.close()


def test_add_history_serializes_error(tmp_path):
    db = open_db(tmp_path / "forge.sqlite3")
    add_history(db, "run1", "app", "failed", "building", {"kind": "build", "message": "exit 2"}, 1.0, 2.5)
    row = db.fetchone("SELECT * FROM build_history WHERE run_id = ?", ("run1",))
    assert row["result"] == "app"
    assert row["finished_at"] == 2.5
    assert json.loads(row["error"]) == {"kind": "build", "message": "exit 2"}
    add_history(None, "run1", "ignored", "packaged")
    db.close()


def test_transaction_rolls_back(tmp_path):
    db = open_db(tmp_path / "forge.sqlite3")
    with pytest.raises(RuntimeError):
        with db.transaction() as cur:
            cur.execute("INSERT INTO build_history (run_id, result, state) VALUES ('r', 'x', 'packaged')")
            raise RuntimeError("boom")
    assert db.fetchall("SELECT * FROM build_history") == []
    db.close()


def test_sql_errors_are_wrapped(tmp_path):
    db = DB(tmp_path / "forge.sqlite3")
    with pytest.raises(DBError, match="no such table"):
        db.execute("SELECT * FROM nowhere")
    db.close()
