from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import AppConfig
from .context import RunContext
from .errors import ConfigError
from .http_utils import HttpClient
from .metric import Metric, UpdateOutcome
from .models import utc_now
from .sources.datadog import DatadogMetric
from .state.store import RecordStore
from .stats import StatsCollector
from .target.base import TargetAdapter
from .target.stackdriver import StackdriverAdapter


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MetricRunReport:
    name: str
    status: str
    outcome: UpdateOutcome | None
    error: str | None
    duration_ms: int


@dataclass(slots=True)
class BatchResult:
    """
    一次批次执行的结果。

    errors 只包含“非预期”错误（已知的读 cursor / 拉数据 / 写入失败只体现在各指标的状态里），
    正常情况下应为空，调用方据此做部分失败上报。
    """

    started_at: datetime
    finished_at: datetime
    duration_ms: int
    metrics: tuple[MetricRunReport, ...]
    errors: tuple[Exception, ...]
    oldest_metric_age: timedelta

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def failed_metrics(self) -> int:
        return sum(1 for m in self.metrics if m.outcome is None or not m.outcome.ok)


@dataclass(slots=True)
class BatchRunner:
    """
    批次执行器：对所有配置的指标执行一次 Metric.update，并汇总批次级遥测。

    执行顺序：
    - 逐个（或在 concurrency 上限内并发）更新指标；单个指标失败不影响其它指标
    - 每个指标更新结束后（如配置了 store）持久化其记录
    - 所有指标结束后记录批次总耗时，以及最久未更新指标的数据年龄

    concurrency 默认 1：目标系统的调用配额是共享瓶颈。
    """

    metrics: tuple[Metric, ...]
    target: TargetAdapter
    collector: StatsCollector
    store: RecordStore | None = None
    concurrency: int = 1

    def __post_init__(self) -> None:
        names = [m.name for m in self.metrics]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigError(f"duplicate metric names: {', '.join(duplicates)}")
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be >= 1, got {self.concurrency}")

    def run_once(self, ctx: RunContext | None = None) -> BatchResult:
        ctx = ctx or RunContext()
        started_at = utc_now()
        start_t = time.monotonic()

        if self.concurrency == 1 or len(self.metrics) <= 1:
            results = [self._update_one(ctx, m) for m in self.metrics]
        else:
            with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="tsb-update") as pool:
                results = list(pool.map(lambda m: self._update_one(ctx, m), self.metrics))

        reports = tuple(r for r, _ in results)
        errors = tuple(e for _, errs in results for e in errs)

        duration_ms = (time.monotonic() - start_t) * 1000
        self.collector.record_import_latency(duration_ms)

        finished_at = utc_now()
        oldest = max((m.record.age(finished_at) for m in self.metrics), default=timedelta(0))
        self.collector.record_oldest_metric_age(oldest / timedelta(milliseconds=1))

        result = BatchResult(
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int(duration_ms),
            metrics=reports,
            errors=errors,
            oldest_metric_age=oldest,
        )
        if errors:
            logger.error("batch finished with unexpected errors: metrics=%d errors=%d", len(self.metrics), len(errors))
        logger.info(
            "batch done: metrics=%d failed=%d duration_ms=%d oldest_metric_age_s=%.1f",
            len(self.metrics),
            result.failed_metrics,
            result.duration_ms,
            oldest.total_seconds(),
        )
        return result

    def _update_one(self, ctx: RunContext, metric: Metric) -> tuple[MetricRunReport, list[Exception]]:
        metric_start_t = time.monotonic()
        errors: list[Exception] = []
        outcome: UpdateOutcome | None = None
        error: str | None = None
        try:
            outcome = metric.update(ctx, self.target, self.collector)
        except Exception as e:  # noqa: BLE001
            error = f"{type(e).__name__}: {e}"
            errors.append(e)
            logger.exception("metric update crashed: metric=%s namespace=%s", metric.name, metric.namespace)

        if self.store is not None:
            try:
                self.store.save(metric.record)
            except Exception as e:  # noqa: BLE001
                errors.append(e)
                logger.exception("record save failed: metric=%s", metric.name)

        report = MetricRunReport(
            name=metric.name,
            status=metric.record.last_status,
            outcome=outcome,
            error=error,
            duration_ms=int((time.monotonic() - metric_start_t) * 1000),
        )
        return report, errors


def update_all_metrics(
    ctx: RunContext,
    metrics: tuple[Metric, ...] | list[Metric],
    target: TargetAdapter,
    collector: StatsCollector,
    *,
    concurrency: int = 1,
) -> list[Exception]:
    """对所有指标执行一次更新，返回非预期错误列表（正常为空）。"""
    runner = BatchRunner(metrics=tuple(metrics), target=target, collector=collector, concurrency=concurrency)
    return list(runner.run_once(ctx).errors)


def build_runner(config: AppConfig, collector: StatsCollector, store: RecordStore) -> tuple[BatchRunner, list[str]]:
    """
    根据配置构建可运行的 BatchRunner。

    - 统一在这里做“配置 -> 实例”的装配，BatchRunner 内只关注流程编排
    - secret/token 只通过环境变量读取，避免落盘
    - query 校验失败的指标会被跳过（只影响该指标），错误信息一并返回
    """
    http = HttpClient(timeout_seconds=min(60.0, float(config.update_timeout_seconds or 60)))
    target = StackdriverAdapter(
        http=http,
        token=config.resolve_env(config.stackdriver.token_env),
        lookback=timedelta(days=config.stackdriver.lookback_days),
    )

    store.ensure_schema()
    metrics: list[Metric] = []
    skipped: list[str] = []
    for mc in config.datadog_metrics:
        source = DatadogMetric(
            name=mc.name,
            query_text=mc.query,
            http=http,
            api_key=config.resolve_env(mc.api_key_env),
            application_key=config.resolve_env(mc.application_key_env),
            max_lookback=timedelta(hours=mc.max_lookback_hours),
        )
        try:
            metric = Metric.create(
                mc.name,
                source,
                config.destination(mc.destination).project_id,
                record=store.load(mc.name),
            )
        except ConfigError as e:
            logger.error("metric skipped: metric=%s error=%s", mc.name, e)
            skipped.append(f"{mc.name}: {e}")
            continue
        metrics.append(metric)

    runner = BatchRunner(
        metrics=tuple(metrics),
        target=target,
        collector=collector,
        store=store,
        concurrency=config.concurrency,
    )
    return runner, skipped
