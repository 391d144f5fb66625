"""Prometheus metrics for the invoicing service.

Exposes key metrics for monitoring:
- Request counts by endpoint and status
- Request duration histograms
- Invoice generation outcomes and duration
- Cache hits and claim contention
- Invoice numbering collisions and fallbacks

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Invoice generation metrics
invoice_generations_total = Counter(
    "invoice_generations_total",
    "Invoice generation runs",
    ["outcome"],  # success, failed, timeout
)

invoice_generation_duration_seconds = Histogram(
    "invoice_generation_duration_seconds",
    "Duration of one assemble/render/upload run in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

invoice_cache_hits_total = Counter(
    "invoice_cache_hits_total",
    "Invoice requests served from an already generated artifact",
)

invoice_claim_contention_total = Counter(
    "invoice_claim_contention_total",
    "Generation claims lost to a concurrent run",
)

invoice_download_fallbacks_total = Counter(
    "invoice_download_fallbacks_total",
    "Invoice requests served by streaming bytes because signing failed",
)

# Numbering metrics
invoice_number_collisions_total = Counter(
    "invoice_number_collisions_total",
    "Candidate invoice numbers rejected because another submission held them",
)

invoice_number_fallbacks_total = Counter(
    "invoice_number_fallbacks_total",
    "Invoice numbers issued from the timestamp fallback",
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
