from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping


# “时间起点”哨兵：目标系统中没有任何数据点时的 cursor，也是新 MetricRecord 的默认时间。
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123456789Z（纳秒精度会被截断到微秒）
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    if "." in value:
        head, _, tail = value.partition(".")
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        value = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True, slots=True)
class MetricDescriptor:
    """
    目标系统中的指标 schema。

    type:
      - 目标系统的指标类型名（例如 custom.googleapis.com/datadog/foo）
    metric_kind / value_type:
      - 对齐 Cloud Monitoring 的 MetricKind / ValueType 枚举名
    """

    type: str
    metric_kind: str = "GAUGE"
    value_type: str = "DOUBLE"
    description: str = ""
    unit: str = ""
    label_keys: tuple[str, ...] = ()

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "metricKind": self.metric_kind,
            "valueType": self.value_type,
            "description": self.description,
            "unit": self.unit,
            "labels": [{"key": k, "valueType": "STRING"} for k in self.label_keys],
        }


@dataclass(frozen=True, slots=True)
class Point:
    timestamp: datetime
    value: float
    labels: Mapping[str, str] = field(default_factory=dict)

    def series_key(self) -> tuple[tuple[str, str], ...]:
        return tuple(sorted(self.labels.items()))


@dataclass(slots=True)
class MetricRecord:
    """
    单个指标的同步/状态记录（由外部 Storage 持久化，核心只修改内存中的结构）。

    不变量：
    - last_attempt >= last_update
    - 两个时间戳在多次运行之间都不会倒退（即使墙钟回拨）
    """

    name: str
    last_attempt: datetime = EPOCH
    last_update: datetime = EPOCH
    last_status: str = ""

    def mark_attempt(self, now: datetime, status: str) -> None:
        self.last_attempt = max(now, self.last_attempt, self.last_update)
        self.last_status = status

    def mark_update(self, now: datetime, status: str) -> None:
        self.last_update = max(now, self.last_update)
        self.mark_attempt(self.last_update, status)

    def age(self, now: datetime) -> timedelta:
        return now - self.last_update
