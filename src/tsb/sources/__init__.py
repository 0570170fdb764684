from .base import DeltaResult, SourceMetric
from .datadog import DatadogMetric

__all__ = [
    "DatadogMetric",
    "DeltaResult",
    "SourceMetric",
]
