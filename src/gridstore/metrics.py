"""Prometheus metrics definitions for gridstore.

All custom metrics use the ``gridstore_`` prefix for namespace isolation.
The references stay ``None`` until ``init_metrics()`` registers them, and
callers skip updates while they are ``None``.
"""

from __future__ import annotations

from prometheus_client import Counter

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Upload counters  (labels: status)
# ---------------------------------------------------------------------------
uploads_total: Counter | None = None
upload_bytes_total: Counter | None = None

# ---------------------------------------------------------------------------
# Connection counters
# ---------------------------------------------------------------------------
connections_total: Counter | None = None
db_errors_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; collectors are registered in the global
    registry only the first time.
    """
    global _initialized
    global uploads_total, upload_bytes_total, connections_total, db_errors_total

    if _initialized:
        return

    uploads_total = Counter(
        "gridstore_uploads_total",
        "Total uploads by outcome",
        ["status"],
    )

    upload_bytes_total = Counter(
        "gridstore_upload_bytes_total",
        "Total bytes stored by successful uploads",
    )

    connections_total = Counter(
        "gridstore_connections_total",
        "Blob store connection attempts by outcome",
        ["outcome"],
    )

    db_errors_total = Counter(
        "gridstore_db_errors_total",
        "Transport notifications received from the blob store",
    )

    _initialized = True
