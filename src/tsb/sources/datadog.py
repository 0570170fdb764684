from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Mapping

from ..context import RunContext
from ..errors import ConfigError
from ..http_utils import HttpClient, with_query_params
from ..models import MetricDescriptor, Point, utc_now
from .base import DeltaResult


_METRIC_NAME_RE = re.compile(r"^[A-Za-z0-9_./-]+$")


def _split_top_level(query: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    for ch in query:
        if ch in "({":
            depth += 1
        elif ch in ")}":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current)
            current = ""
            continue
        current += ch
    parts.append(current)
    return [p.strip() for p in parts]


def _parse_scope(scope: Any) -> dict[str, str]:
    """
    Datadog series 的 scope 形如 "host:a,env:prod"；"*" 或空表示无分组标签。
    """
    labels: dict[str, str] = {}
    if not isinstance(scope, str):
        return labels
    for part in scope.split(","):
        part = part.strip()
        if not part or part == "*" or ":" not in part:
            continue
        k, v = part.split(":", 1)
        labels[k.strip()] = v.strip()
    return labels


@dataclass(slots=True)
class DatadogMetric:
    """
    基于 Datadog Query API 的数据源。

    数据源：GET /api/v1/query?from=<秒>&to=<秒>&query=<表达式>
    - since 之后的点才会返回（严格大于）
    - Datadog 不接受无界时间范围，因此 from 最早只回溯 max_lookback
    - 每个 series 的 scope 标签转为目标系统中的 label
    """

    name: str
    query_text: str
    http: HttpClient
    api_key: str | None
    application_key: str | None
    max_lookback: timedelta = timedelta(hours=24)
    api_base: str = "https://api.datadoghq.com"

    def query(self) -> str:
        q = (self.query_text or "").strip()
        if not q:
            raise ConfigError(f"datadog metric {self.name!r}: empty query")
        if len([p for p in _split_top_level(q) if p]) != 1:
            raise ConfigError(f"datadog metric {self.name!r}: query must contain exactly one expression: {q!r}")
        if not _METRIC_NAME_RE.match(self.name):
            raise ConfigError(f"datadog metric {self.name!r}: invalid metric name")
        return q

    def target_name(self) -> str:
        return f"custom.googleapis.com/datadog/{self.name}"

    def _headers(self) -> Mapping[str, str]:
        headers: dict[str, str] = {}
        if self.api_key:
            headers["DD-API-KEY"] = self.api_key
        if self.application_key:
            headers["DD-APPLICATION-KEY"] = self.application_key
        return headers

    def fetch_delta(self, ctx: RunContext, since: datetime) -> DeltaResult:
        now = utc_now()
        start = max(since, now - self.max_lookback)
        url = with_query_params(
            f"{self.api_base}/api/v1/query",
            {
                "from": str(int(start.timestamp())),
                "to": str(int(now.timestamp())),
                "query": self.query(),
            },
        )
        resp = self.http.get(ctx, url, headers=self._headers())
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Datadog API expected object, got {type(data)}: {resp.url}")
        if data.get("status") == "error" or data.get("errors"):
            raise RuntimeError(f"Datadog API error: {data.get('error') or data.get('errors')}")

        points: list[Point] = []
        label_keys: set[str] = set()
        for series in data.get("series") or []:
            if not isinstance(series, dict):
                continue
            labels = _parse_scope(series.get("scope"))
            label_keys.update(labels)
            for item in series.get("pointlist") or []:
                if not isinstance(item, list) or len(item) != 2 or item[1] is None:
                    continue
                ts = datetime.fromtimestamp(float(item[0]) / 1000.0, tz=UTC)
                if ts <= since:
                    continue
                points.append(Point(timestamp=ts, value=float(item[1]), labels=labels))

        points.sort(key=lambda p: (p.timestamp, p.series_key()))
        descriptor = MetricDescriptor(
            type=self.target_name(),
            metric_kind="GAUGE",
            value_type="DOUBLE",
            description=f"Datadog query: {self.query_text}",
            label_keys=tuple(sorted(label_keys)),
        )
        return DeltaResult(descriptor=descriptor, points=points)
