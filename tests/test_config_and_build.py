import json
import os
import sys
import tempfile
import unittest
from datetime import timedelta


sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src")))


from tsb.config import load_config, parse_config  # noqa: E402
from tsb.errors import ConfigError  # noqa: E402
from tsb.runner import build_runner  # noqa: E402
from tsb.state.sqlite_store import SqliteRecordStore  # noqa: E402
from tsb.stats import LoggingExporter, StatsCollector  # noqa: E402


def _config_dict(sqlite_path: str) -> dict:
    return {
        "sync_period_seconds": 30,
        "update_timeout_seconds": 120,
        "concurrency": 2,
        "stats": {"prefix": "ts_bridge"},
        "state": {"sqlite_path": sqlite_path},
        "stackdriver": {"token_env": "SD_TOKEN", "lookback_days": 7},
        "destinations": [
            {"name": "default", "project_id": "proj-a"},
            {"name": "other", "project_id": "proj-b"},
        ],
        "datadog_metrics": [
            {"name": "load", "query": "avg:system.load.1{*} by {host}", "api_key_env": "DD_KEY"},
            {"name": "cpu", "query": "avg:system.cpu.user{env:prod,role:db}", "destination": "other"},
        ],
    }


class TestConfigAndBuild(unittest.TestCase):
    def test_load_config_parses_fields_and_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = os.path.join(td, "config.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(_config_dict(os.path.join(td, "s.sqlite3")), f)

            config = load_config(path)

        self.assertEqual(config.sync_period_seconds, 30)
        self.assertEqual(config.update_timeout_seconds, 120)
        self.assertEqual(config.concurrency, 2)
        self.assertEqual(config.stackdriver.token_env, "SD_TOKEN")
        self.assertEqual(config.stackdriver.lookback_days, 7)
        self.assertEqual(config.metric_names(), ("load", "cpu"))
        self.assertEqual(config.datadog_metrics[0].destination, "default")
        self.assertEqual(config.datadog_metrics[0].api_key_env, "DD_KEY")
        self.assertEqual(config.datadog_metrics[1].application_key_env, "DD_APP_KEY")
        self.assertEqual(config.destination("other").project_id, "proj-b")

    def test_empty_config_uses_serial_defaults(self) -> None:
        config = parse_config({})
        self.assertEqual(config.concurrency, 1)
        self.assertEqual(config.stats_prefix, "ts_bridge")
        self.assertEqual(config.datadog_metrics, ())

    def test_duplicate_metric_names_rejected(self) -> None:
        raw = _config_dict(":memory:")
        raw["datadog_metrics"].append({"name": "load", "query": "avg:x{*}"})
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_unknown_destination_rejected(self) -> None:
        raw = _config_dict(":memory:")
        raw["datadog_metrics"][0]["destination"] = "nope"
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_metric_requires_query(self) -> None:
        raw = _config_dict(":memory:")
        raw["datadog_metrics"][0].pop("query")
        with self.assertRaises(ConfigError):
            parse_config(raw)

    def test_build_runner_wires_metrics(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            raw = _config_dict(os.path.join(td, "s.sqlite3"))
            raw["datadog_metrics"].append({"name": "bad", "query": "avg:a{*}, avg:b{*}"})
            config = parse_config(raw)

            os.environ["SD_TOKEN"] = "t"
            os.environ["DD_KEY"] = "k"
            try:
                runner, skipped = build_runner(config, StatsCollector(LoggingExporter()), SqliteRecordStore(config.sqlite_path))
            finally:
                os.environ.pop("SD_TOKEN", None)
                os.environ.pop("DD_KEY", None)

        self.assertEqual([m.name for m in runner.metrics], ["load", "cpu"])
        self.assertEqual([m.namespace for m in runner.metrics], ["proj-a", "proj-b"])
        self.assertEqual(runner.metrics[0].target_name(), "custom.googleapis.com/datadog/load")
        self.assertEqual(runner.metrics[0].source.api_key, "k")
        self.assertEqual(runner.concurrency, 2)
        self.assertEqual(runner.target.token, "t")
        self.assertEqual(runner.target.lookback, timedelta(days=7))
        self.assertEqual(len(skipped), 1)
        self.assertTrue(skipped[0].startswith("bad:"))
