import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import pytest

from tsb.context import RunContext
from tsb.errors import ConfigError, DeadlineExceeded
from tsb.metric import FetchError, Metric, NoData, Success, TimestampError, WriteError
from tsb.models import EPOCH, MetricDescriptor, MetricRecord, Point, utc_now
from tsb.sources.base import DeltaResult
from tsb.stats import DistributionData, StatsCollector, ViewData


@dataclass
class FakeExporter:
    """
    纯内存 Exporter：以 "<view>:<tag...>" 为 key 保存最近一次导出的聚合数据。
    """

    values: dict[str, object] = field(default_factory=dict)
    flushes: int = 0

    def export_view(self, data: ViewData) -> None:
        for row in data.rows:
            key = ":".join((data.view.name, *row.tags))
            self.values[key] = row.data

    def flush(self) -> None:
        self.flushes += 1


@dataclass
class FakeSource:
    points: list[Point] = field(default_factory=list)
    error: Exception | None = None
    calls: list[datetime] = field(default_factory=list)
    query_calls: int = 0

    def query(self) -> str:
        self.query_calls += 1
        return "q"

    def target_name(self) -> str:
        return "sd-metricname"

    def fetch_delta(self, ctx: RunContext, since: datetime) -> DeltaResult:
        ctx.check()
        self.calls.append(since)
        if self.error is not None:
            raise self.error
        return DeltaResult(descriptor=MetricDescriptor(type="sd-metricname", description="foobar"), points=self.points)


@dataclass
class FakeTarget:
    latest: datetime = EPOCH
    latest_error: Exception | None = None
    write_error: Exception | None = None
    delay_seconds: float = 0.0
    latest_calls: list[tuple[str, str]] = field(default_factory=list)
    writes: list[tuple[str, str, MetricDescriptor | None, list[Point]]] = field(default_factory=list)

    def latest_timestamp(self, ctx: RunContext, namespace: str, metric_name: str) -> datetime:
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        ctx.check()
        self.latest_calls.append((namespace, metric_name))
        if self.latest_error is not None:
            raise self.latest_error
        return self.latest

    def write_delta(self, ctx, namespace, metric_name, descriptor, points) -> None:  # noqa: ANN001
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((namespace, metric_name, descriptor, list(points)))


def _point() -> Point:
    return Point(timestamp=utc_now(), value=1.0)


def _metric(source: FakeSource) -> Metric:
    m = Metric.create("metricname", source, "sd-project")
    m.record.last_status = "OK: all good"
    m.record.last_attempt = utc_now() - timedelta(hours=1)
    return m


def _latest() -> datetime:
    return utc_now() - timedelta(minutes=5)


@pytest.mark.parametrize(
    ("source", "target", "want_status", "want_outcome"),
    [
        (
            FakeSource(),
            FakeTarget(latest_error=RuntimeError("some-error")),
            "failed to get latest timestamp: some-error",
            TimestampError,
        ),
        (
            FakeSource(error=RuntimeError("another-error")),
            FakeTarget(latest=_latest()),
            "failed to get data: another-error",
            FetchError,
        ),
        (FakeSource(), FakeTarget(latest=_latest()), "0 new points found", NoData),
        (
            FakeSource(points=[_point()]),
            FakeTarget(latest=_latest(), write_error=RuntimeError("some-error")),
            "failed to write to Stackdriver: some-error",
            WriteError,
        ),
        (FakeSource(points=[_point()]), FakeTarget(latest=_latest()), "1 new points found", Success),
    ],
    ids=["error getting timestamp", "error getting new data", "no new points", "error writing", "success"],
)
def test_metric_update(source, target, want_status, want_outcome) -> None:  # noqa: ANN001
    m = _metric(source)
    exporter = FakeExporter()
    collector = StatsCollector(exporter)

    # 已知失败都记录在 record 中，update 本身不会抛异常。
    outcome = m.update(RunContext(), target, collector)
    collector.close()

    assert isinstance(outcome, want_outcome)
    assert utc_now() - m.record.last_attempt < timedelta(minutes=1)
    assert want_status in m.record.last_status
    assert "ts_bridge/metric_import_latencies:metricname" in exporter.values
    assert m.record.last_attempt >= m.record.last_update


def test_timestamp_error_skips_fetch_and_write() -> None:
    source = FakeSource(points=[_point()])
    target = FakeTarget(latest_error=RuntimeError("some-error"))
    m = _metric(source)

    m.update(RunContext(), target, StatsCollector(FakeExporter()))
    assert source.calls == []
    assert target.writes == []


def test_latest_timestamp_is_propagated_to_source() -> None:
    latest = _latest()
    source = FakeSource()
    target = FakeTarget(latest=latest)
    m = _metric(source)

    m.update(RunContext(), target, StatsCollector(FakeExporter()))
    assert target.latest_calls == [("sd-project", "sd-metricname")]
    assert source.calls == [latest]
    assert target.writes == []


def test_success_writes_points_and_advances_last_update() -> None:
    points = [_point(), _point()]
    source = FakeSource(points=points)
    target = FakeTarget(latest=_latest())
    m = _metric(source)
    before = m.record.last_update

    outcome = m.update(RunContext(), target, StatsCollector(FakeExporter()))
    assert outcome == Success(points=2)
    assert m.record.last_status == "OK: 2 new points found"
    assert m.record.last_update > before
    assert m.record.last_update == m.record.last_attempt
    assert target.writes[0][0] == "sd-project"
    assert target.writes[0][1] == "sd-metricname"
    assert target.writes[0][2].description == "foobar"
    assert target.writes[0][3] == points


@pytest.mark.parametrize(
    ("source", "target"),
    [
        (FakeSource(), FakeTarget(latest=_latest())),
        (FakeSource(points=[_point()]), FakeTarget(latest=_latest(), write_error=RuntimeError("quota"))),
        (FakeSource(error=RuntimeError("boom")), FakeTarget(latest=_latest())),
    ],
)
def test_last_update_unchanged_without_successful_write(source, target) -> None:  # noqa: ANN001
    m = _metric(source)
    m.record.last_update = utc_now() - timedelta(hours=2)
    before = m.record.last_update

    m.update(RunContext(), target, StatsCollector(FakeExporter()))
    assert m.record.last_update == before


def test_timestamps_never_decrease() -> None:
    m = _metric(FakeSource(points=[_point()]))
    future = utc_now() + timedelta(hours=1)
    m.record.last_attempt = future
    m.record.last_update = future

    m.update(RunContext(), FakeTarget(latest=_latest()), StatsCollector(FakeExporter()))
    assert m.record.last_attempt == future
    assert m.record.last_update == future


def test_metric_import_latency_recorded_on_error() -> None:
    m = _metric(FakeSource())
    target = FakeTarget(latest_error=RuntimeError("some error"), delay_seconds=0.1)
    exporter = FakeExporter()
    collector = StatsCollector(exporter)

    m.update(RunContext(), target, collector)
    collector.close()

    val = exporter.values["ts_bridge/metric_import_latencies:metricname"]
    assert isinstance(val, DistributionData)
    assert val.count == 1
    assert abs(val.mean - 100) <= 40


def test_cancelled_context_is_captured_as_status() -> None:
    ctx = RunContext()
    ctx.cancel()
    m = _metric(FakeSource())

    outcome = m.update(ctx, FakeTarget(latest=_latest()), StatsCollector(FakeExporter()))
    assert isinstance(outcome, TimestampError)
    assert "failed to get latest timestamp: context cancelled" in m.record.last_status


def test_unexpected_error_propagates_and_still_records_latency() -> None:
    class _BrokenSource(FakeSource):
        def target_name(self) -> str:
            raise KeyError("boom")

    exporter = FakeExporter()
    collector = StatsCollector(exporter)
    m = _metric(_BrokenSource())

    with pytest.raises(KeyError):
        m.update(RunContext(), FakeTarget(), collector)
    collector.close()
    assert "ts_bridge/metric_import_latencies:metricname" in exporter.values


def test_create_calls_query_once() -> None:
    source = FakeSource()
    m = Metric.create("metricname", source, "sd-project")
    assert source.query_calls == 1
    assert m.record == MetricRecord(name="metricname")


def test_create_wraps_query_failure_as_config_error() -> None:
    class _BadQuery(FakeSource):
        def query(self) -> str:
            raise ValueError("bad query")

    with pytest.raises(ConfigError, match="bad query"):
        Metric.create("metricname", _BadQuery(), "sd-project")


def test_context_deadline_expires() -> None:
    ctx = RunContext.with_timeout(0.001)
    time.sleep(0.01)
    with pytest.raises(DeadlineExceeded):
        ctx.check()


@pytest.mark.parametrize(
    "target",
    [
        FakeTarget(latest_error=TypeError("latest_timestamp() bad argument")),
        FakeTarget(latest=_latest(), write_error=KeyError("series")),
    ],
    ids=["timestamp read", "write"],
)
def test_programming_errors_in_adapters_are_not_status(target) -> None:  # noqa: ANN001
    exporter = FakeExporter()
    collector = StatsCollector(exporter)
    m = _metric(FakeSource(points=[_point()]))

    with pytest.raises((TypeError, KeyError)):
        m.update(RunContext(), target, collector)
    collector.close()
    assert m.record.last_status == "OK: all good"
    assert "ts_bridge/metric_import_latencies:metricname" in exporter.values


def test_network_errors_are_status() -> None:
    m = _metric(FakeSource(error=ConnectionResetError("reset by peer")))
    outcome = m.update(RunContext(), FakeTarget(latest=_latest()), StatsCollector(FakeExporter()))
    assert isinstance(outcome, FetchError)
    assert m.record.last_status == "ERROR: failed to get data: reset by peer"
