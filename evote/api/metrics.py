"""Prometheus metrics for the voting API."""
from prometheus_client import Counter, Histogram

votes_cast = Counter(
    "votes_cast_total",
    "Total number of ballots recorded",
    ["candidate_id"]
)
vote_rejections = Counter(
    "vote_rejections_total",
    "Total number of refused vote casts",
    ["reason"]
)
storage_retries = Counter(
    "storage_retries_total",
    "Total number of retried storage transactions",
    ["operation"]
)
election_resets = Counter(
    "election_resets_total",
    "Total number of election resets"
)
counter_repairs = Counter(
    "counter_repairs_total",
    "Denormalized rows repaired by reconciliation",
    ["kind"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)
