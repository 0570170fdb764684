from __future__ import annotations

import itertools
import logging
import urllib.parse
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence

from ..context import RunContext
from ..http_utils import HttpClient, with_query_params
from ..models import EPOCH, MetricDescriptor, Point, format_rfc3339, parse_rfc3339_datetime, utc_now


logger = logging.getLogger(__name__)

# Cloud Monitoring 单次 timeSeries.create 最多 200 条 series。
MAX_SERIES_PER_REQUEST = 200


def _write_batches(points: Sequence[Point], limit: int = MAX_SERIES_PER_REQUEST) -> list[list[Point]]:
    """
    将点切分为多次写入请求：

    - 同一请求中同一个 label 组合（series）最多出现一次（API 约束）
    - 请求按全局时间戳顺序发送：已写入的点都不晚于任何未写入的点

    中途某个请求失败时，目标侧的最新时间戳仍早于所有未写入的点，
    下一次同步从该 cursor 重新拉取即可补齐。同一时间戳的点尽量放在同一个请求中；
    只有单个时间戳下的 series 数超过 limit 时才会被拆开。
    """
    ordered = sorted(points, key=lambda p: (p.timestamp, p.series_key()))
    batches: list[list[Point]] = []
    current: list[Point] = []
    seen: set[tuple[tuple[str, str], ...]] = set()

    def cut() -> None:
        nonlocal current, seen
        if current:
            batches.append(current)
        current = []
        seen = set()

    for _, group_iter in itertools.groupby(ordered, key=lambda p: p.timestamp):
        group = list(group_iter)
        keys = {p.series_key() for p in group}
        if keys & seen or len(current) + len(group) > limit:
            cut()
        for p in group:
            key = p.series_key()
            if key in seen or len(current) >= limit:
                cut()
            current.append(p)
            seen.add(key)
    cut()
    return batches


@dataclass(slots=True)
class StackdriverAdapter:
    """
    基于 Cloud Monitoring v3 REST API 的目标适配器。

    - latest_timestamp：在 lookback 窗口内列出该指标的 time series，取最新点的 endTime
    - write_delta：先创建/更新 metric descriptor，再分批写入 time series

    token 为 OAuth2 access token（Bearer），由调用方通过环境变量注入。
    """

    http: HttpClient
    token: str | None = None
    lookback: timedelta = timedelta(days=30)
    api_base: str = "https://monitoring.googleapis.com/v3"

    def _headers(self) -> Mapping[str, str]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def latest_timestamp(self, ctx: RunContext, namespace: str, metric_name: str) -> datetime:
        now = utc_now()
        base_url = with_query_params(
            f"{self.api_base}/projects/{urllib.parse.quote(namespace)}/timeSeries",
            {
                "filter": f'metric.type="{metric_name}"',
                "interval.startTime": format_rfc3339(now - self.lookback),
                "interval.endTime": format_rfc3339(now),
                "view": "FULL",
            },
        )

        latest = EPOCH
        page_token: str | None = None
        while True:
            url = with_query_params(base_url, {"pageToken": page_token})
            resp = self.http.get(ctx, url, headers=self._headers())
            data = resp.json()
            if not isinstance(data, dict):
                raise ValueError(f"Stackdriver API expected object, got {type(data)}: {resp.url}")
            for series in data.get("timeSeries") or []:
                if not isinstance(series, dict):
                    continue
                for point in series.get("points") or []:
                    end = (point.get("interval") or {}).get("endTime") if isinstance(point, dict) else None
                    if not isinstance(end, str):
                        continue
                    ts = parse_rfc3339_datetime(end)
                    if ts > latest:
                        latest = ts
            page_token = data.get("nextPageToken") or None
            if not page_token:
                break
        return latest

    def write_delta(
        self,
        ctx: RunContext,
        namespace: str,
        metric_name: str,
        descriptor: MetricDescriptor | None,
        points: Sequence[Point],
    ) -> None:
        project = urllib.parse.quote(namespace)
        if descriptor is not None:
            self.http.post_json(
                ctx,
                f"{self.api_base}/projects/{project}/metricDescriptors",
                descriptor.to_json_dict(),
                headers=self._headers(),
            )

        metric_kind = descriptor.metric_kind if descriptor else "GAUGE"
        value_type = descriptor.value_type if descriptor else "DOUBLE"
        batches = _write_batches(points)
        for i, batch in enumerate(batches):
            payload = {"timeSeries": [self._series_json(metric_name, metric_kind, value_type, p) for p in batch]}
            self.http.post_json(ctx, f"{self.api_base}/projects/{project}/timeSeries", payload, headers=self._headers())
            logger.debug(
                "timeseries written: project=%s metric=%s batch=%d/%d series=%d",
                namespace,
                metric_name,
                i + 1,
                len(batches),
                len(batch),
            )

    def _series_json(self, metric_name: str, metric_kind: str, value_type: str, point: Point) -> dict[str, Any]:
        ts = format_rfc3339(point.timestamp)
        return {
            "metric": {"type": metric_name, "labels": dict(point.labels)},
            "resource": {"type": "global", "labels": {}},
            "metricKind": metric_kind,
            "valueType": value_type,
            "points": [
                {
                    "interval": {"endTime": ts},
                    "value": {"doubleValue": point.value},
                }
            ],
        }
