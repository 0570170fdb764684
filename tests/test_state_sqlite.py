import os
import sys
import tempfile
import unittest
from datetime import timedelta


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from tsb.models import EPOCH, MetricRecord, utc_now  # noqa: E402
from tsb.state.sqlite_store import SqliteRecordStore  # noqa: E402


class TestSqliteRecordStore(unittest.TestCase):
    def test_missing_record_is_fresh(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteRecordStore(os.path.join(td, "state.sqlite3"))
            store.ensure_schema()

            record = store.load("m1")
            self.assertEqual(record, MetricRecord(name="m1"))
            self.assertEqual(record.last_update, EPOCH)

    def test_record_roundtrip_and_overwrite(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteRecordStore(os.path.join(td, "state.sqlite3"))
            store.ensure_schema()

            now = utc_now()
            record = MetricRecord(name="m1", last_attempt=now, last_update=now - timedelta(minutes=1), last_status="OK: 3 new points found")
            store.save(record)
            self.assertEqual(store.load("m1"), record)

            record.last_status = "ERROR: failed to get data: boom"
            store.save(record)
            self.assertEqual(store.load("m1").last_status, "ERROR: failed to get data: boom")

    def test_cleanup_deletes_unconfigured_metrics(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            store = SqliteRecordStore(os.path.join(td, "state.sqlite3"))
            store.ensure_schema()
            for name in ("a", "b", "c"):
                store.save(MetricRecord(name=name, last_status="x"))

            self.assertEqual(store.cleanup(["a", "c"]), 1)
            self.assertEqual(store.load("b").last_status, "")
            self.assertEqual(store.load("a").last_status, "x")
            self.assertEqual(store.cleanup(["a", "c"]), 0)
