"""Prometheus metrics for the catalog sync job."""

from prometheus_client import Counter, Histogram, Info

app_info = Info("aliprice_sync", "Catalog price sync application info")
app_info.info({"version": "0.1.0", "name": "aliprice-sync"})

# Gateway metrics
api_requests_total = Counter(
    "api_requests_total",
    "Total number of gateway HTTP attempts",
    ["method", "status"],
)

api_retries_total = Counter(
    "api_retries_total",
    "Total number of retried gateway calls",
    ["reason"],
)

api_request_duration_seconds = Histogram(
    "api_request_duration_seconds",
    "Time spent on a single gateway HTTP attempt",
    ["method"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0],
)

negotiation_attempts_total = Counter(
    "negotiation_attempts_total",
    "Protocol candidates tried, by outcome",
    ["endpoint", "sign_method", "timestamp_format", "outcome"],
)

# Sync metrics
enrichment_results_total = Counter(
    "enrichment_results_total",
    "SKU-detail enrichment results",
    ["status"],
)

sku_merge_operations_total = Counter(
    "sku_merge_operations_total",
    "SKU rows classified by the price-history merge",
    ["kind"],
)
