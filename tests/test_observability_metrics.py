from datetime import timedelta

from warranty.observability.health import check_batch_runner_health, check_database_health
from warranty.observability.metrics import (
    clear_batch_progress,
    get_counter_value,
    get_gauge_value,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
    record_event,
    reset_metrics,
    set_gauge,
    track_batch_progress,
)
from warranty.observability.warranty_metrics import compute_batch_statistics, compute_claim_statistics


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("barcodes_generated_total")
    increment_counter("barcodes_generated_total", amount=2, labels={"prefix": "WB"})
    set_gauge("batch_runs_active", 3)
    observe_latency("batch_processing_ms", 100, labels={"prefix": "WB"})
    observe_latency("batch_processing_ms", 50, labels={"prefix": "WB"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["barcodes_generated_total"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["batch_runs_active"]
    assert gauges[0]["value"] == 3

    hist = snapshot["histograms"]["batch_processing_ms"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75


def test_counter_value_sums_label_sets():
    increment_counter("barcode_collisions_total", labels={"type": "duplicate_in_batch"})
    increment_counter("barcode_collisions_total", amount=2, labels={"type": "duplicate_in_store"})

    assert get_counter_value("barcode_collisions_total") == 3
    assert get_counter_value("barcode_collisions_total", labels={"type": "duplicate_in_store"}) == 2
    assert get_counter_value("barcode_collisions_total", labels={"type": "missing"}) == 0


def test_event_log_keeps_the_latest_entries():
    for index in range(205):
        record_event("batch_progress", {"index": index})

    events = get_metrics_snapshot()["events"]
    assert len(events) == 200
    assert events[0]["payload"]["index"] == 5


def test_health_checks_report_up(test_db):
    assert check_database_health()["status"] == "UP"
    runner = check_batch_runner_health()
    assert runner["status"] == "UP"
    assert runner["active_runs"] == 0


def test_statistics_on_an_empty_window(db_session, clock):
    batches = compute_batch_statistics(db_session)
    claims = compute_claim_statistics(db_session, date_from=clock.now() + timedelta(days=3650))

    assert batches["success_rate"] >= 0.0
    assert set(batches["by_status"]) >= {"pending", "completed", "cancelled"}
    assert claims["total_claims"] == 0
    assert claims["costs"]["total"] == 0.0
    assert claims["average_satisfaction_rating"] is None


def test_batch_progress_gauges_are_dropped_when_the_run_ends():
    reset_metrics()
    track_batch_progress(7, 40, 12.5)
    track_batch_progress(8, 10, 0.0)

    assert get_gauge_value("barcode_batch_progress_percent", {"batch_id": "7"}) == 40.0
    assert get_gauge_value("barcode_batch_generation_rate", {"batch_id": "7"}) == 12.5

    clear_batch_progress(7)

    assert get_gauge_value("barcode_batch_progress_percent", {"batch_id": "7"}) is None
    remaining = get_metrics_snapshot()["gauges"]["barcode_batch_progress_percent"]
    assert remaining == [{"labels": {"batch_id": "8"}, "value": 10.0}]
