"""Reconciliation statistics and Prometheus export"""

import time
from datetime import datetime

from .metrics import Metrics, ReconciliationStats


def test_reconciliation_stats():
    """Test statistics tracking"""
    print("🧪 Testing ReconciliationStats...")
    stats = ReconciliationStats(start_time=datetime.now())
    stats.roles_created = 1
    stats.databases_created = 1
    stats.drift_detected = 2
    time.sleep(0.01)
    stats.end_time = datetime.now()

    assert stats.mutations() == 2
    assert stats.duration_seconds() > 0, "Duration should be positive"

    data = stats.to_dict()
    assert data["roles_created"] == 1
    assert "duration_seconds" in data
    assert isinstance(data["start_time"], str)
    print("✅ ReconciliationStats tests passed!")


def test_metrics():
    """Test metrics collection"""
    print("\n🧪 Testing Metrics...")
    metrics = Metrics(databases_managed=lambda: 3, queue_depth=lambda: 2)

    stats = ReconciliationStats(drift_detected=1, roles_updated=1, errors=1)
    metrics.record_reconciliation(stats)
    metrics.record_reconciliation(ReconciliationStats(errors=1), permanent_failure=True)

    assert metrics.reconciliation_count == 2
    assert metrics.drift_count == 1
    assert metrics.mutation_count == 1
    assert metrics.error_count == 2
    assert metrics.permanent_failure_count == 1
    assert metrics.last_error_timestamp > 0

    output = metrics.export_prometheus()
    assert "postgres_controller_reconciliations_total 2" in output
    assert "postgres_controller_databases_managed 3" in output
    assert "postgres_controller_queue_depth 2" in output
    assert "# TYPE postgres_controller_errors_total counter" in output
    print("✅ Metrics tests passed!")
