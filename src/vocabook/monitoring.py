"""Monitoring configuration for vocabook."""
from prometheus_client import Counter, Gauge, Histogram, start_http_server

# Review metrics
reviews_recorded = Counter(
    "vocabook_reviews_recorded_total",
    "Total number of ratings recorded",
    ["rating"],
)

leeches_flagged = Counter(
    "vocabook_leeches_flagged_total",
    "Total number of words flagged as leeches",
)

# Session metrics
sessions_started = Counter(
    "vocabook_sessions_started_total",
    "Total number of quiz sessions started",
    ["mode"],
)

sessions_completed = Counter(
    "vocabook_sessions_completed_total",
    "Total number of quiz sessions finished",
    ["mode"],
)

session_size = Histogram(
    "vocabook_session_size_cards",
    "Number of cards in a built session queue",
    buckets=[0, 5, 10, 20, 50, 100],
)

snapshot_discards = Counter(
    "vocabook_snapshot_discards_total",
    "Session snapshots discarded on read",
    ["reason"],
)

snapshot_write_failures = Counter(
    "vocabook_snapshot_write_failures_total",
    "Session snapshot writes that could not be persisted",
)

# Due-count metrics
due_count_queries = Counter(
    "vocabook_due_count_queries_total",
    "Total number of due-count requests",
    ["source"],
)

due_count_current = Gauge(
    "vocabook_due_count",
    "Most recently computed due count",
)

# Achievement metrics
achievements_unlocked = Counter(
    "vocabook_achievements_unlocked_total",
    "Total number of achievements unlocked",
    ["type"],
)

# Migration metrics
migration_rows = Counter(
    "vocabook_migration_rows_total",
    "Rows processed by the local-to-remote migration",
    ["entity", "outcome"],
)

# Error metrics
error_count = Counter(
    "vocabook_errors_total",
    "Total number of errors encountered",
    ["error_type"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
