"""
Worker Metrics Module.

Prometheus metrics for the message purge worker.

Usage:
    from workers.metrics import MESSAGES_PURGED_TOTAL

    MESSAGES_PURGED_TOTAL.inc(stats['purged'])
"""
from prometheus_client import Counter, Histogram

MESSAGES_PURGED_TOTAL = Counter(
    'messages_purged_total',
    'Total number of expired messages permanently deleted'
)

READ_RECEIPTS_PURGED_TOTAL = Counter(
    'read_receipts_purged_total',
    'Total number of read receipts deleted with their expired messages'
)

PURGE_RUNS_TOTAL = Counter(
    'purge_runs_total',
    'Total number of purge runs',
    ['status']
)

PURGE_DURATION_SECONDS = Histogram(
    'purge_duration_seconds',
    'Time spent in one purge run',
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0]
)
