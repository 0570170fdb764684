from __future__ import annotations

import argparse
import logging
import os
import time

from .config import load_config
from .context import RunContext
from .runner import BatchResult, BatchRunner, build_runner
from .state.sqlite_store import SqliteRecordStore
from .stats import LoggingExporter, StatsCollector


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tsb", description="ts-bridge: sync external metrics into Stackdriver")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env TSB_LOG_LEVEL or INFO",
    )
    p.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete stored records of metrics that are no longer configured, then exit",
    )

    mode = p.add_mutually_exclusive_group(required=False)
    mode.add_argument("--once", action="store_true", help="Run one sync batch and exit")
    mode.add_argument("--daemon", action="store_true", help="Run forever with sync_period_seconds")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _metrics_summary(runner: BatchRunner) -> str:
    parts = [f"{m.name}->{m.namespace}" for m in runner.metrics]
    return ", ".join(parts) if parts else "<none>"


def _run_batch(runner: BatchRunner, collector: StatsCollector, timeout_seconds: int) -> BatchResult:
    ctx = RunContext.with_timeout(timeout_seconds)
    with collector.flushing():
        return runner.run_once(ctx)


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("TSB_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logger = logging.getLogger("tsb")

    config = load_config(args.config)
    store = SqliteRecordStore(config.sqlite_path)

    if args.cleanup:
        store.ensure_schema()
        deleted = store.cleanup(config.metric_names())
        logger.info("cleanup done: deleted_records=%d kept_metrics=%d", deleted, len(config.metric_names()))
        return 0

    collector = StatsCollector(LoggingExporter(), prefix=config.stats_prefix)
    runner, skipped = build_runner(config, collector, store)

    mode = "daemon" if args.daemon and not args.once else "once"
    logger.info("tsb start: mode=%s config=%s", mode, args.config)
    logger.info(
        "config: sync_period_seconds=%d update_timeout_seconds=%d concurrency=%d sqlite_path=%s",
        config.sync_period_seconds,
        config.update_timeout_seconds,
        config.concurrency,
        config.sqlite_path,
    )
    logger.info("metrics: %s", _metrics_summary(runner))
    for s in skipped:
        logger.warning("invalid metric config: %s", s)
    if not runner.metrics:
        logger.warning("no metrics configured; nothing will be synced")

    if args.once or not args.daemon:
        result = _run_batch(runner, collector, config.update_timeout_seconds)
        logger.info(
            "once done: duration_ms=%d metrics=%d failed=%d errors=%d",
            result.duration_ms,
            len(result.metrics),
            result.failed_metrics,
            len(result.errors),
        )
        return 0 if result.ok and not skipped else 1

    cycle_id = 0
    try:
        while True:
            cycle_id += 1
            cycle_start = time.monotonic()
            try:
                result = _run_batch(runner, collector, config.update_timeout_seconds)
            except Exception:  # noqa: BLE001
                logger.exception("cycle crashed: id=%d", cycle_id)
            else:
                for e in result.errors:
                    logger.error("cycle error: id=%d error=%s: %s", cycle_id, type(e).__name__, e)
                logger.info(
                    "cycle summary: id=%d duration_ms=%d failed=%d errors=%d",
                    cycle_id,
                    result.duration_ms,
                    result.failed_metrics,
                    len(result.errors),
                )

            elapsed = time.monotonic() - cycle_start
            time.sleep(max(1.0, config.sync_period_seconds - elapsed))
    finally:
        collector.close()


if __name__ == "__main__":
    raise SystemExit(main())
