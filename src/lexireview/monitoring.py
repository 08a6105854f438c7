"""Prometheus metrics of the review engine."""
from prometheus_client import Counter, Histogram, start_http_server

# Generation metrics
generation_attempts = Counter(
    "lexireview_generation_attempts_total",
    "Total number of generation cycles started, retries included",
)

generation_results = Counter(
    "lexireview_generation_results_total",
    "Total number of finished generation calls",
    ["outcome"],
)

generation_errors = Counter(
    "lexireview_generation_errors_total",
    "Total number of classified generation failures",
    ["error_type"],
)

generation_duration = Histogram(
    "lexireview_generation_duration_seconds",
    "Duration of generation calls in seconds, retries included",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

generation_tokens = Counter(
    "lexireview_generation_tokens_total",
    "Total number of tokens reported by the generator",
)

# Review metrics
reviews = Counter(
    "lexireview_reviews_total",
    "Total number of word reviews submitted",
    ["rating"],
)

level_shifts = Counter(
    "lexireview_level_shifts_total",
    "Total number of CEFR level changes made by the difficulty controller",
    ["direction"],
)


def start_monitoring(port: int = 9090) -> None:
    """Start the Prometheus metrics server."""
    start_http_server(port)
