from __future__ import annotations

from typing import Iterable, Protocol

from ..models import MetricRecord


class RecordStore(Protocol):
    """
    指标同步记录的持久化接口：
    - load：按指标名读取记录；不存在时返回一条全新的记录（时间为 EPOCH）
    - save：保存批次更新后的记录
    - cleanup：删除已不在配置中的指标记录，返回删除条数
    """

    def ensure_schema(self) -> None: ...

    def load(self, name: str) -> MetricRecord: ...

    def save(self, record: MetricRecord) -> None: ...

    def cleanup(self, keep_names: Iterable[str]) -> int: ...
