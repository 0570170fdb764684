from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ConfigError


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"Expected object at {where}, got {type(value)}")
    return value


def _require_list(value: Any, *, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise ConfigError(f"Expected list at {where}, got {type(value)}")
    return value


def _require_str(d: Mapping[str, Any], key: str, *, where: str) -> str:
    v = d.get(key)
    if not isinstance(v, str) or not v.strip():
        raise ConfigError(f"Missing string field {where}.{key}")
    return v.strip()


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


@dataclass(frozen=True, slots=True)
class DestinationConfig:
    """
    目标（Stackdriver project）配置。metric 通过 destination 名称引用。
    """

    name: str
    project_id: str


@dataclass(frozen=True, slots=True)
class DatadogMetricConfig:
    """
    Datadog 指标配置。

    name:
      - 指标名（部署内唯一），同时决定目标系统中的指标名
    query:
      - Datadog 查询表达式，例如 avg:system.load.1{env:prod} by {host}
    api_key_env / application_key_env:
      - Datadog API/APP key 的环境变量名（不落盘）
    destination:
      - 引用 destinations[].name，缺省为第一个 destination
    """

    name: str
    query: str
    api_key_env: str
    application_key_env: str
    destination: str
    max_lookback_hours: int = 24


@dataclass(frozen=True, slots=True)
class StackdriverConfig:
    token_env: str
    lookback_days: int = 30


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    sync_period_seconds:
      - daemon 模式下两次批次之间的间隔
    update_timeout_seconds:
      - 单次批次的截止时间（超时后进行中的网络调用会尽快中止）
    concurrency:
      - 批次内并发更新的指标数上限；默认 1（串行），受目标系统配额约束
    stats_prefix:
      - 自身遥测指标名前缀
    """

    sync_period_seconds: int
    update_timeout_seconds: int
    concurrency: int
    stats_prefix: str
    sqlite_path: str
    stackdriver: StackdriverConfig
    destinations: tuple[DestinationConfig, ...]
    datadog_metrics: tuple[DatadogMetricConfig, ...]

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)

    def destination(self, name: str) -> DestinationConfig:
        for d in self.destinations:
            if d.name == name:
                return d
        raise ConfigError(f"unknown destination {name!r}")

    def metric_names(self) -> tuple[str, ...]:
        return tuple(m.name for m in self.datadog_metrics)


def load_config(config_path: str) -> AppConfig:
    """
    配置使用 JSON 落地，避免引入第三方 YAML 解析依赖。

    JSON 顶层结构（示意）：
    {
      "sync_period_seconds": 60,
      "update_timeout_seconds": 300,
      "concurrency": 1,
      "stats": { "prefix": "ts_bridge" },
      "state": { "sqlite_path": "./tsb_state.sqlite3" },
      "stackdriver": { "token_env": "TSB_STACKDRIVER_TOKEN" },
      "destinations": [ { "name": "default", "project_id": "..." } ],
      "datadog_metrics": [ ... ]
    }
    """
    with open(config_path, "rb") as f:
        raw = json.loads(f.read().decode("utf-8"))
    return parse_config(raw)


def parse_config(raw: Any) -> AppConfig:
    root = _require_dict(raw, where="$")

    stats = _require_dict(root.get("stats", {}), where="$.stats")
    state = _require_dict(root.get("state", {}), where="$.state")
    sd = _require_dict(root.get("stackdriver", {}), where="$.stackdriver")
    stackdriver = StackdriverConfig(
        token_env=str(sd.get("token_env") or "TSB_STACKDRIVER_TOKEN"),
        lookback_days=max(1, _get_int(sd, "lookback_days", 30)),
    )

    destinations: list[DestinationConfig] = []
    for i, item in enumerate(_require_list(root.get("destinations", []), where="$.destinations")):
        where = f"$.destinations[{i}]"
        d = _require_dict(item, where=where)
        dest = DestinationConfig(name=_require_str(d, "name", where=where), project_id=_require_str(d, "project_id", where=where))
        if any(x.name == dest.name for x in destinations):
            raise ConfigError(f"duplicate destination name {dest.name!r}")
        destinations.append(dest)

    default_destination = destinations[0].name if destinations else None
    metrics: list[DatadogMetricConfig] = []
    for i, item in enumerate(_require_list(root.get("datadog_metrics", []), where="$.datadog_metrics")):
        where = f"$.datadog_metrics[{i}]"
        m = _require_dict(item, where=where)
        destination = _get_str(m, "destination", default_destination)
        if destination is None or not any(d.name == destination for d in destinations):
            raise ConfigError(f"{where}: unknown destination {destination!r}")
        metric = DatadogMetricConfig(
            name=_require_str(m, "name", where=where),
            query=_require_str(m, "query", where=where),
            api_key_env=str(m.get("api_key_env") or "DD_API_KEY"),
            application_key_env=str(m.get("application_key_env") or "DD_APP_KEY"),
            destination=destination,
            max_lookback_hours=max(1, _get_int(m, "max_lookback_hours", 24)),
        )
        if any(x.name == metric.name for x in metrics):
            raise ConfigError(f"duplicate metric name {metric.name!r}")
        metrics.append(metric)

    return AppConfig(
        sync_period_seconds=max(1, _get_int(root, "sync_period_seconds", 60)),
        update_timeout_seconds=max(0, _get_int(root, "update_timeout_seconds", 300)),
        concurrency=max(1, _get_int(root, "concurrency", 1)),
        stats_prefix=str(stats.get("prefix") or "ts_bridge"),
        sqlite_path=str(state.get("sqlite_path") or "./tsb_state.sqlite3"),
        stackdriver=stackdriver,
        destinations=tuple(destinations),
        datadog_metrics=tuple(metrics),
    )
