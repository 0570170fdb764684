from __future__ import annotations

import http.client
import logging
import time
from dataclasses import dataclass

from .context import RunContext
from .errors import ConfigError, TsbError
from .models import MetricRecord, utc_now
from .sources.base import SourceMetric
from .stats import StatsCollector
from .target.base import TargetAdapter


logger = logging.getLogger(__name__)

# 三次网络调用中可归类为读 cursor / 拉数据 / 写入失败的异常；其它异常（TypeError、KeyError 等）按非预期错误上抛。
CALL_ERRORS: tuple[type[BaseException], ...] = (TsbError, OSError, ValueError, RuntimeError, http.client.HTTPException)


@dataclass(frozen=True, slots=True)
class TimestampError:
    detail: str

    @property
    def ok(self) -> bool:
        return False

    def render(self) -> str:
        return f"ERROR: failed to get latest timestamp: {self.detail}"


@dataclass(frozen=True, slots=True)
class FetchError:
    detail: str

    @property
    def ok(self) -> bool:
        return False

    def render(self) -> str:
        return f"ERROR: failed to get data: {self.detail}"


@dataclass(frozen=True, slots=True)
class NoData:
    @property
    def ok(self) -> bool:
        return True

    def render(self) -> str:
        return "OK: 0 new points found"


@dataclass(frozen=True, slots=True)
class WriteError:
    detail: str
    points: int

    @property
    def ok(self) -> bool:
        return False

    def render(self) -> str:
        return f"ERROR: failed to write to Stackdriver: {self.detail}"


@dataclass(frozen=True, slots=True)
class Success:
    points: int

    @property
    def ok(self) -> bool:
        return True

    def render(self) -> str:
        return f"OK: {self.points} new points found"


UpdateOutcome = TimestampError | FetchError | NoData | WriteError | Success


@dataclass(slots=True)
class Metric:
    """
    一个需要同步的指标：身份（name）+ 数据源 + 目标命名空间（project）+ 同步记录。

    name / source / namespace 创建后不再变化；record 由本对象独占，
    同一个 Metric 不允许被两个并发的更新同时处理。
    """

    name: str
    source: SourceMetric
    namespace: str
    record: MetricRecord

    @classmethod
    def create(
        cls,
        name: str,
        source: SourceMetric,
        namespace: str,
        record: MetricRecord | None = None,
    ) -> Metric:
        try:
            source.query()
        except ConfigError:
            raise
        except Exception as e:  # noqa: BLE001
            raise ConfigError(f"invalid query for metric {name!r}: {e}") from e
        return cls(name=name, source=source, namespace=namespace, record=record or MetricRecord(name=name))

    def target_name(self) -> str:
        return self.source.target_name()

    def update(self, ctx: RunContext, target: TargetAdapter, collector: StatsCollector) -> UpdateOutcome:
        """
        单指标同步（无内部重试）：

        - 从目标系统读取 cursor（最新时间戳）
        - 拉取 cursor 之后的增量点
        - 有新点则写入目标系统
        - 最后记录本次耗时（任何分支都会记录）

        已知的失败（读 cursor / 拉数据 / 写入）只体现在 record.last_status 中，不会抛出；
        其它异常视为非预期错误，向上抛给批次执行器。
        """
        start_t = time.monotonic()
        # last_attempt / last_update 都记为本次尝试开始时的墙钟时间。
        attempted_at = utc_now()
        try:
            outcome = self._sync(ctx, target)
            if isinstance(outcome, Success):
                self.record.mark_update(attempted_at, outcome.render())
            else:
                self.record.mark_attempt(attempted_at, outcome.render())

            if outcome.ok:
                logger.info("metric updated: metric=%s status=%s", self.name, self.record.last_status)
            else:
                logger.warning("metric update failed: metric=%s status=%s", self.name, self.record.last_status)
            return outcome
        finally:
            collector.record_metric_import_latency(self.name, (time.monotonic() - start_t) * 1000)

    def _sync(self, ctx: RunContext, target: TargetAdapter) -> UpdateOutcome:
        target_name = self.target_name()
        try:
            latest = target.latest_timestamp(ctx, self.namespace, target_name)
        except CALL_ERRORS as e:
            return TimestampError(detail=str(e))

        try:
            result = self.source.fetch_delta(ctx, latest)
        except CALL_ERRORS as e:
            return FetchError(detail=str(e))

        points = list(result.points)
        if not points:
            return NoData()

        try:
            target.write_delta(ctx, self.namespace, target_name, result.descriptor, points)
        except CALL_ERRORS as e:
            return WriteError(detail=str(e), points=len(points))
        return Success(points=len(points))
