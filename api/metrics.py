"""
Prometheus metrics for the vstream API.

Metrics are exposed at /metrics endpoint in Prometheus text format.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, Info, generate_latest

# Application info
APP_INFO = Info("vstream", "vstream application information")

# =============================================================================
# Streaming Metrics
# =============================================================================

STREAM_REQUESTS_TOTAL = Counter(
    "vstream_stream_requests_total",
    "Total stream requests by delivery strategy",
    ["strategy", "status"],  # strategy: direct, cached, external, proxy
)

STREAM_BYTES_TOTAL = Counter(
    "vstream_stream_bytes_total",
    "Total video bytes sent to clients",
    ["strategy"],
)

STREAM_ABORTED_TOTAL = Counter(
    "vstream_stream_aborted_total",
    "Streams that ended before the full body was sent",
    ["strategy", "reason"],  # reason: client_disconnect, remote_error
)

# =============================================================================
# Cache Metrics
# =============================================================================

CACHE_HITS_TOTAL = Counter(
    "vstream_cache_hits_total",
    "Cache lookups served from local disk",
)

CACHE_MISSES_TOTAL = Counter(
    "vstream_cache_misses_total",
    "Cache lookups that required a download",
)

CACHE_EVICTIONS_TOTAL = Counter(
    "vstream_cache_evictions_total",
    "Cached files removed by eviction",
    ["reason"],  # size, age
)

CACHE_SIZE_BYTES = Gauge(
    "vstream_cache_size_bytes",
    "Bytes currently held in the local cache",
)

CACHE_DOWNLOAD_DURATION_SECONDS = Histogram(
    "vstream_cache_download_duration_seconds",
    "Time to download a file into the cache",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)

# =============================================================================
# Remote Metrics
# =============================================================================

REMOTE_COMMAND_FAILURES_TOTAL = Counter(
    "vstream_remote_command_failures_total",
    "Remote operations that failed at the transport level",
    ["operation"],  # stat, stream, download, list, media_info, delete, rename
)

RECONCILE_TOTAL = Counter(
    "vstream_reconcile_total",
    "Video records touched by folder reconciliation",
    ["result"],  # created, skipped, orphan_removed, failed
)


def get_metrics() -> bytes:
    """Generate Prometheus metrics in text format."""
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST


def init_app_info(version: str = "0.1.0"):
    """Initialize application info metric."""
    APP_INFO.info({"version": version, "app": "vstream"})
