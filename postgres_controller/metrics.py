"""Reconciliation statistics and Prometheus-compatible metrics"""

import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Optional


@dataclass
class ReconciliationStats:
    """Statistics for a single reconcile pass"""
    roles_created: int = 0
    roles_updated: int = 0
    roles_deleted: int = 0
    databases_created: int = 0
    databases_updated: int = 0
    databases_deleted: int = 0
    credentials_rotated: int = 0
    drift_detected: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> float:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return 0.0

    def mutations(self) -> int:
        return (self.roles_created + self.roles_updated + self.roles_deleted + self.databases_created
                + self.databases_updated + self.databases_deleted + self.credentials_rotated)

    def to_dict(self) -> dict:
        return {
            **asdict(self),
            'start_time': self.start_time.isoformat() if self.start_time else None,
            'end_time': self.end_time.isoformat() if self.end_time else None,
            'duration_seconds': self.duration_seconds()
        }


class Metrics:
    """Simple in-memory metrics for Prometheus exposition"""

    def __init__(self, databases_managed: Callable[[], int] = lambda: 0,
                 queue_depth: Callable[[], int] = lambda: 0):
        self._lock = threading.Lock()
        self._databases_managed = databases_managed
        self._queue_depth = queue_depth
        self.reconciliation_count = 0
        self.last_reconciliation_timestamp = 0
        self.drift_count = 0
        self.mutation_count = 0
        self.last_error_timestamp = 0
        self.error_count = 0
        self.permanent_failure_count = 0

    def record_reconciliation(self, stats: ReconciliationStats, permanent_failure: bool = False):
        """Record metrics from a reconcile pass"""
        with self._lock:
            self.reconciliation_count += 1
            self.last_reconciliation_timestamp = time.time()
            self.drift_count += stats.drift_detected
            self.mutation_count += stats.mutations()
            self.error_count += stats.errors
            if permanent_failure:
                self.permanent_failure_count += 1
            if stats.errors > 0:
                self.last_error_timestamp = time.time()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format"""
        with self._lock:
            return f"""# HELP postgres_controller_reconciliations_total Total number of reconcile passes
# TYPE postgres_controller_reconciliations_total counter
postgres_controller_reconciliations_total {self.reconciliation_count}

# HELP postgres_controller_last_reconciliation_timestamp Timestamp of last reconcile pass
# TYPE postgres_controller_last_reconciliation_timestamp gauge
postgres_controller_last_reconciliation_timestamp {self.last_reconciliation_timestamp}

# HELP postgres_controller_drift_total Total drift detections
# TYPE postgres_controller_drift_total counter
postgres_controller_drift_total {self.drift_count}

# HELP postgres_controller_mutations_total Total mutating operations issued against the server
# TYPE postgres_controller_mutations_total counter
postgres_controller_mutations_total {self.mutation_count}

# HELP postgres_controller_databases_managed Current number of managed databases
# TYPE postgres_controller_databases_managed gauge
postgres_controller_databases_managed {self._databases_managed()}

# HELP postgres_controller_queue_depth Keys waiting to be reconciled
# TYPE postgres_controller_queue_depth gauge
postgres_controller_queue_depth {self._queue_depth()}

# HELP postgres_controller_errors_total Total errors encountered
# TYPE postgres_controller_errors_total counter
postgres_controller_errors_total {self.error_count}

# HELP postgres_controller_permanent_failures_total Passes that ended in a permanent failure
# TYPE postgres_controller_permanent_failures_total counter
postgres_controller_permanent_failures_total {self.permanent_failure_count}

# HELP postgres_controller_last_error_timestamp Timestamp of last error
# TYPE postgres_controller_last_error_timestamp gauge
postgres_controller_last_error_timestamp {self.last_error_timestamp}
"""
