from datetime import UTC, datetime, timedelta

from tsb.models import EPOCH, MetricDescriptor, MetricRecord, Point, format_rfc3339, parse_rfc3339_datetime


def test_new_record_starts_at_epoch() -> None:
    r = MetricRecord(name="m")
    assert r.last_attempt == EPOCH
    assert r.last_update == EPOCH
    assert r.last_status == ""


def test_mark_update_keeps_attempt_not_before_update() -> None:
    t = datetime(2026, 2, 10, 0, 0, tzinfo=UTC)
    r = MetricRecord(name="m")
    r.mark_update(t, "OK: 1 new points found")
    assert r.last_update == t
    assert r.last_attempt == t

    # 墙钟回拨：两个时间戳都不倒退
    r.mark_attempt(t - timedelta(minutes=5), "OK: 0 new points found")
    assert r.last_attempt == t
    assert r.last_status == "OK: 0 new points found"
    r.mark_update(t - timedelta(minutes=5), "OK: 2 new points found")
    assert r.last_update == t
    assert r.last_attempt >= r.last_update


def test_parse_rfc3339_nanoseconds() -> None:
    dt = parse_rfc3339_datetime("2026-02-10T12:34:56.123456789Z")
    assert dt == datetime(2026, 2, 10, 12, 34, 56, 123456, tzinfo=UTC)
    assert parse_rfc3339_datetime("2026-02-10T12:34:56Z") == datetime(2026, 2, 10, 12, 34, 56, tzinfo=UTC)
    assert parse_rfc3339_datetime("2026-02-10T12:34:56.5+00:00").microsecond == 500000


def test_format_rfc3339() -> None:
    assert format_rfc3339(datetime(2026, 2, 10, 1, 2, 3, tzinfo=UTC)) == "2026-02-10T01:02:03.000000Z"


def test_point_series_key_is_order_independent() -> None:
    t = datetime(2026, 2, 10, tzinfo=UTC)
    p1 = Point(timestamp=t, value=1, labels={"b": "2", "a": "1"})
    p2 = Point(timestamp=t, value=2, labels={"a": "1", "b": "2"})
    assert p1.series_key() == p2.series_key()


def test_descriptor_json() -> None:
    d = MetricDescriptor(type="custom.googleapis.com/datadog/m", label_keys=("host",))
    body = d.to_json_dict()
    assert body["metricKind"] == "GAUGE"
    assert body["valueType"] == "DOUBLE"
    assert body["labels"] == [{"key": "host", "valueType": "STRING"}]
