from __future__ import annotations

from datetime import datetime
from typing import Protocol, Sequence

from ..context import RunContext
from ..models import MetricDescriptor, Point


class TargetAdapter(Protocol):
    """
    目标监控系统接口：
    - latest_timestamp：目标系统中该指标最新的点（即 cursor）；不存在时返回 EPOCH
    - write_delta：幂等追加写入；失败直接抛异常，错误信息原样上抛

    实现需要可被多个并发的指标更新安全共享。
    """

    def latest_timestamp(self, ctx: RunContext, namespace: str, metric_name: str) -> datetime: ...

    def write_delta(
        self,
        ctx: RunContext,
        namespace: str,
        metric_name: str,
        descriptor: MetricDescriptor | None,
        points: Sequence[Point],
    ) -> None: ...
