from __future__ import annotations

import bisect
import contextlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Iterator, Protocol


logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "ts_bridge"
METRIC_NAME_TAG = "metric_name"

# 毫秒
LATENCY_BUCKETS_MS: tuple[float, ...] = (
    0,
    10,
    50,
    100,
    250,
    500,
    1_000,
    2_500,
    5_000,
    10_000,
    30_000,
    60_000,
    120_000,
    300_000,
    600_000,
)

AGGREGATION_DISTRIBUTION = "distribution"
AGGREGATION_LAST_VALUE = "last_value"


@dataclass(frozen=True, slots=True)
class View:
    name: str
    description: str
    unit: str
    aggregation: str
    tag_keys: tuple[str, ...] = ()
    bucket_bounds: tuple[float, ...] = ()


@dataclass(slots=True)
class DistributionData:
    bucket_bounds: tuple[float, ...]
    count: int = 0
    sum: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")
    bucket_counts: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            self.bucket_counts = [0] * (len(self.bucket_bounds) + 1)

    @property
    def mean(self) -> float:
        return self.sum / self.count if self.count else 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.bucket_counts[bisect.bisect_right(self.bucket_bounds, value)] += 1

    def copy(self) -> DistributionData:
        return DistributionData(
            bucket_bounds=self.bucket_bounds,
            count=self.count,
            sum=self.sum,
            min=self.min,
            max=self.max,
            bucket_counts=list(self.bucket_counts),
        )


@dataclass(slots=True)
class LastValueData:
    value: float = 0.0

    def add(self, value: float) -> None:
        self.value = value

    def copy(self) -> LastValueData:
        return LastValueData(value=self.value)


@dataclass(frozen=True, slots=True)
class Row:
    tags: tuple[str, ...]
    data: DistributionData | LastValueData


@dataclass(frozen=True, slots=True)
class ViewData:
    view: View
    rows: tuple[Row, ...]


class Exporter(Protocol):
    """
    遥测导出接口：
    - export_view 接收某个 view 当前的聚合快照
    - flush 保证已缓冲的数据全部送达后再返回
    """

    def export_view(self, data: ViewData) -> None: ...

    def flush(self) -> None: ...


@dataclass(slots=True)
class LoggingExporter:
    """默认导出器：每个 row 打一行 INFO 日志。"""

    log: logging.Logger = logger

    def export_view(self, data: ViewData) -> None:
        for row in data.rows:
            tags = ",".join(f"{k}={v}" for k, v in zip(data.view.tag_keys, row.tags)) or "-"
            if isinstance(row.data, DistributionData):
                self.log.info(
                    "stats: view=%s tags=%s count=%d mean=%.1f%s min=%.1f max=%.1f",
                    data.view.name,
                    tags,
                    row.data.count,
                    row.data.mean,
                    data.view.unit,
                    row.data.min,
                    row.data.max,
                )
            else:
                self.log.info("stats: view=%s tags=%s value=%.1f%s", data.view.name, tags, row.data.value, data.view.unit)

    def flush(self) -> None:
        return None


# 进程级 view 注册表：同一前缀的 view 只注册一次，即使 StatsCollector 被重复构造。
_registry_lock = threading.Lock()
_registered_views: dict[str, View] = {}


def _build_views(prefix: str) -> tuple[View, View, View]:
    return (
        View(
            name=f"{prefix}/metric_import_latencies",
            description="Time taken to import a single metric, per metric",
            unit="ms",
            aggregation=AGGREGATION_DISTRIBUTION,
            tag_keys=(METRIC_NAME_TAG,),
            bucket_bounds=LATENCY_BUCKETS_MS,
        ),
        View(
            name=f"{prefix}/import_latencies",
            description="Total time taken to import all metrics",
            unit="ms",
            aggregation=AGGREGATION_DISTRIBUTION,
            bucket_bounds=LATENCY_BUCKETS_MS,
        ),
        View(
            name=f"{prefix}/oldest_metric_age",
            description="Time since the least recently updated metric received new data",
            unit="ms",
            aggregation=AGGREGATION_LAST_VALUE,
        ),
    )


def register_views(prefix: str = DEFAULT_PREFIX) -> tuple[View, View, View]:
    """
    注册（或取回已注册的）固定 view 集合。幂等：重复调用返回同一组 View 对象。
    """
    candidates = _build_views(prefix)
    with _registry_lock:
        result: list[View] = []
        for view in candidates:
            existing = _registered_views.get(view.name)
            if existing is None:
                _registered_views[view.name] = view
                logger.debug("stats view registered: name=%s", view.name)
                existing = view
            result.append(existing)
    return result[0], result[1], result[2]


def registered_views() -> tuple[View, ...]:
    with _registry_lock:
        return tuple(_registered_views.values())


class StatsCollector:
    """
    管道自身的遥测：单指标导入耗时、批次总耗时、最旧指标的数据年龄。

    使用方式：
    - 进程启动时构造一次，并在每次批次执行时传入
    - 记录方法线程安全，可被并发的指标更新共享
    - 用 `with collector.flushing(): ...` 包住一次批次，保证无论成败都 flush
    """

    def __init__(self, exporter: Exporter, *, prefix: str = DEFAULT_PREFIX) -> None:
        self.exporter = exporter
        self.prefix = prefix
        self.metric_import_latencies, self.import_latencies, self.oldest_metric_age = register_views(prefix)
        self._lock = threading.Lock()
        self._rows: dict[str, dict[tuple[str, ...], DistributionData | LastValueData]] = {
            v.name: {} for v in (self.metric_import_latencies, self.import_latencies, self.oldest_metric_age)
        }

    def _record(self, view: View, tags: tuple[str, ...], value: float) -> None:
        with self._lock:
            rows = self._rows[view.name]
            data = rows.get(tags)
            if data is None:
                if view.aggregation == AGGREGATION_DISTRIBUTION:
                    data = DistributionData(bucket_bounds=view.bucket_bounds)
                else:
                    data = LastValueData()
                rows[tags] = data
            data.add(value)

    def record_metric_import_latency(self, metric_name: str, latency_ms: float) -> None:
        self._record(self.metric_import_latencies, (metric_name,), latency_ms)

    def record_import_latency(self, latency_ms: float) -> None:
        self._record(self.import_latencies, (), latency_ms)

    def record_oldest_metric_age(self, age_ms: float) -> None:
        self._record(self.oldest_metric_age, (), age_ms)

    def snapshot(self) -> tuple[ViewData, ...]:
        with self._lock:
            result: list[ViewData] = []
            for view in (self.metric_import_latencies, self.import_latencies, self.oldest_metric_age):
                rows = tuple(Row(tags=tags, data=data.copy()) for tags, data in sorted(self._rows[view.name].items()))
                result.append(ViewData(view=view, rows=rows))
            return tuple(result)

    def flush(self) -> None:
        for data in self.snapshot():
            if data.rows:
                self.exporter.export_view(data)
        self.exporter.flush()

    @contextlib.contextmanager
    def flushing(self) -> Iterator[StatsCollector]:
        try:
            yield self
        finally:
            try:
                self.flush()
            except Exception:  # noqa: BLE001
                logger.exception("stats flush failed: exporter=%s", type(self.exporter).__name__)

    def close(self) -> None:
        self.flush()

    def __enter__(self) -> StatsCollector:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
