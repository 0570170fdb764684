from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from ..context import RunContext
from ..models import MetricDescriptor, Point


@dataclass(frozen=True, slots=True)
class DeltaResult:
    descriptor: MetricDescriptor | None
    points: list[Point]


class SourceMetric(Protocol):
    """
    数据源接口：每个外部数据源一个实现，负责拉取“自 since 以来”的增量数据点。

    约定：
    - query() 校验/解析数据源侧配置，失败抛 ConfigError
    - target_name() 是纯函数：同一数据源总是映射到同一个目标指标名
    - fetch_delta() 只返回严格晚于 since 的点；返回 0 个点表示“没有新数据”，不是错误
    """

    def query(self) -> str: ...

    def target_name(self) -> str: ...

    def fetch_delta(self, ctx: RunContext, since: datetime) -> DeltaResult: ...
