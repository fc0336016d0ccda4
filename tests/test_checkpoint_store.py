from __future__ import annotations

import json
import sqlite3
import tempfile
import unittest
from pathlib import Path
from shutil import copy2

from checkpoints.codec import decode_checkpoint
from checkpoints.codec import decode_checkpoint_text
from checkpoints.codec import encode_checkpoint
from checkpoints.store import delete_checkpoint_sync
from checkpoints.store import get_checkpoint_sync
from checkpoints.store import get_checkpoint_version_sync
from checkpoints.store import insert_audit_log_sync
from checkpoints.store import list_audit_log_sync
from checkpoints.store import list_checkpoint_keys_sync
from checkpoints.store import set_checkpoint_sync
from db.migrate import apply_sqlite_migrations
from db.migrate import list_applied_migrations_sync


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _migrations_dir() -> str:
    return str(_repo_root() / "migrations")


def _copy_migrations_before(dst_dir: Path, version_prefix: str) -> None:
    for src in sorted(Path(_migrations_dir()).iterdir()):
        if src.is_file() and src.name < version_prefix:
            copy2(src, dst_dir / src.name)


class CheckpointCodecTests(unittest.TestCase):
    def test_tagged_value(self):
        raw = encode_checkpoint("role_settle", 1, {"desired_role": "elder"})
        self.assertEqual(decode_checkpoint(raw, "role_settle"), (1, {"desired_role": "elder"}))

    def test_wrong_kind_is_rejected(self):
        raw = encode_checkpoint("period_history", 1, [])
        self.assertIsNone(decode_checkpoint(raw, "period_capture"))

    def test_untagged_json_is_version_zero(self):
        self.assertEqual(decode_checkpoint('{"capturedAtIso": "x"}', "period_capture"), (0, {"capturedAtIso": "x"}))
        self.assertEqual(decode_checkpoint("[1, 2]", "period_history"), (0, [1, 2]))

    def test_missing_or_malformed(self):
        self.assertIsNone(decode_checkpoint(None, "x"))
        self.assertIsNone(decode_checkpoint("", "x"))
        self.assertIsNone(decode_checkpoint("{not json", "x"))
        self.assertIsNone(decode_checkpoint('{"kind": "x", "v": "one", "data": 1}', "x"))

    def test_text_values_tagged_or_bare(self):
        raw = encode_checkpoint("period_emitted_key", 1, "warday:3:na@2026-01-01T00:00:00+00:00")
        self.assertEqual(decode_checkpoint_text(raw, "period_emitted_key"), "warday:3:na@2026-01-01T00:00:00+00:00")
        bare = "warDay:20260101T000000.000Z"
        self.assertEqual(decode_checkpoint_text(bare, "period_emitted_key"), bare)
        self.assertIsNone(decode_checkpoint_text(encode_checkpoint("other", 1, "x"), "period_emitted_key"))
        self.assertIsNone(decode_checkpoint_text(None, "period_emitted_key"))


class CheckpointStoreTests(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(":memory:", check_same_thread=False)
        apply_sqlite_migrations(self.conn, _migrations_dir())

    def tearDown(self):
        self.conn.close()

    def test_set_get_overwrite(self):
        self.assertIsNone(get_checkpoint_sync(self.conn, "a"))
        set_checkpoint_sync(self.conn, "a", "one")
        set_checkpoint_sync(self.conn, "a", "two", schema_version=3)
        self.assertEqual(get_checkpoint_sync(self.conn, "a"), "two")
        self.assertEqual(get_checkpoint_version_sync(self.conn, "a"), 3)
        self.assertIsNone(get_checkpoint_version_sync(self.conn, "missing"))

    def test_delete(self):
        set_checkpoint_sync(self.conn, "a", "one")
        self.assertTrue(delete_checkpoint_sync(self.conn, "a"))
        self.assertFalse(delete_checkpoint_sync(self.conn, "a"))
        self.assertIsNone(get_checkpoint_sync(self.conn, "a"))

    def test_prefix_listing_is_literal(self):
        for key in ["role_sync:pending:1", "role_sync:pending:2", "roleXsync:pending:3", "period:history"]:
            set_checkpoint_sync(self.conn, key, "{}")
        self.assertEqual(
            list_checkpoint_keys_sync(self.conn, "role_sync:pending:"),
            ["role_sync:pending:1", "role_sync:pending:2"],
        )

    def test_audit_log(self):
        first = insert_audit_log_sync(self.conn, "Role_Sync_Applied", "account=1 role=elder")
        insert_audit_log_sync(self.conn, "period_closed", "{}")

        rows = list_audit_log_sync(self.conn, "role_sync_applied")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["id"], first)
        self.assertEqual(rows[0]["message"], "account=1 role=elder")
        self.assertEqual([r["type"] for r in list_audit_log_sync(self.conn)], ["period_closed", "role_sync_applied"])


class MigrationTests(unittest.TestCase):
    def test_migrations_are_idempotent(self):
        conn = sqlite3.connect(":memory:")
        try:
            first = apply_sqlite_migrations(conn, _migrations_dir())
            second = apply_sqlite_migrations(conn, _migrations_dir())
            self.assertEqual(first, ["0001", "0002", "0003"])
            self.assertEqual(second, [])
            self.assertEqual(sorted(list_applied_migrations_sync(conn).keys()), ["0001", "0002", "0003"])
        finally:
            conn.close()

    def test_legacy_checkpoint_keys_are_renamed(self):
        with tempfile.TemporaryDirectory() as tmp:
            tmp_dir = Path(tmp)
            _copy_migrations_before(tmp_dir, "0002")

            conn = sqlite3.connect(":memory:")
            try:
                apply_sqlite_migrations(conn, str(tmp_dir))
                conn.execute(
                    "INSERT INTO job_state (key, value, updated_at_utc) VALUES (?, ?, ?)",
                    ("war:day_snapshot:history", json.dumps([{"key": "k"}]), "2025-12-01T00:00:00+00:00"),
                )
                conn.execute(
                    "INSERT INTO job_state (key, value, updated_at_utc) VALUES (?, ?, ?)",
                    ("war:day_snapshot:last_key", "old-key", "2025-12-01T00:00:00+00:00"),
                )
                conn.commit()

                copy2(Path(_migrations_dir()) / "0002_job_state_schema_version.py", tmp_dir)
                self.assertEqual(apply_sqlite_migrations(conn, str(tmp_dir)), ["0002"])

                self.assertIsNone(get_checkpoint_sync(conn, "war:day_snapshot:history"))
                self.assertEqual(get_checkpoint_sync(conn, "period:last_emitted_key"), "old-key")
                self.assertEqual(get_checkpoint_version_sync(conn, "period:history"), 0)
                self.assertEqual(len(list_audit_log_sync(conn, "checkpoint_key_migrated")), 2)
            finally:
                conn.close()

    def test_war_history_table_and_period_type_key(self):
        with tempfile.TemporaryDirectory() as tmp:
            tmp_dir = Path(tmp)
            _copy_migrations_before(tmp_dir, "0003")

            conn = sqlite3.connect(":memory:")
            try:
                apply_sqlite_migrations(conn, str(tmp_dir))
                set_checkpoint_sync(conn, "war:last_period_type", "training")

                copy2(Path(_migrations_dir()) / "0003_war_history.py", tmp_dir)
                self.assertEqual(apply_sqlite_migrations(conn, str(tmp_dir)), ["0003"])

                self.assertIsNone(get_checkpoint_sync(conn, "war:last_period_type"))
                self.assertEqual(get_checkpoint_sync(conn, "period:last_period_type"), "training")
                self.assertEqual(len(list_audit_log_sync(conn, "checkpoint_key_migrated")), 1)
                cols = [r[1] for r in conn.execute("PRAGMA table_info(war_history)").fetchall()]
                self.assertIn("war_key", cols)
                self.assertIn("raw_json", cols)
            finally:
                conn.close()

    def test_changed_migration_content_is_rejected(self):
        with tempfile.TemporaryDirectory() as tmp:
            tmp_dir = Path(tmp)
            _copy_migrations_before(tmp_dir, "9999")
            conn = sqlite3.connect(":memory:")
            try:
                apply_sqlite_migrations(conn, str(tmp_dir))
                sql_path = tmp_dir / "0001_core_tables.sql"
                sql_path.write_text(sql_path.read_text(encoding="utf-8") + "\n-- edited\n", encoding="utf-8")
                with self.assertRaises(RuntimeError):
                    apply_sqlite_migrations(conn, str(tmp_dir))
            finally:
                conn.close()


if __name__ == "__main__":
    unittest.main()
