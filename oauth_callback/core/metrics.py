"""Prometheus metric inventory.

Every metric the service exports is declared here; the modules that own
the behavior import and update them.

HTTP metrics are fed by middleware/metrics.py for every request.  The
callback metrics answer the two questions that matter when sign-in
breaks: "which step is failing?" (outcome label) and "is the backend
exchange slow?" (duration histogram).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Callback flow metrics
# ---------------------------------------------------------------------------

CALLBACK_OUTCOMES = Counter(
    "oauth_callback_outcomes_total",
    "Terminal outcomes of the OAuth callback flow",
    # "redirecting", or the failure kind (e.g. "state_mismatch")
    ["outcome"],
)

EXCHANGE_DURATION = Histogram(
    "oauth_exchange_duration_seconds",
    "Time spent waiting on the backend code-for-session exchange",
    ["result"],  # "success" or "failure"
    # The backend itself calls the authorization server, so this is
    # two network hops; buckets skew higher than the HTTP ones.
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)
