"""
ts-bridge (tsb)

将外部数据源（如 Datadog）的时间序列增量同步到 Stackdriver（Cloud Monitoring）。
每个指标的同步进度（cursor）以目标系统中已有的最新数据点为准，
重复执行只会传输新数据；同时记录管道自身的导入耗时与数据新鲜度。
"""

from .metric import Metric
from .models import MetricRecord
from .runner import BatchResult, BatchRunner, update_all_metrics
from .stats import StatsCollector

__all__ = [
    "BatchResult",
    "BatchRunner",
    "Metric",
    "MetricRecord",
    "StatsCollector",
    "update_all_metrics",
]
