"""
Prometheus metrics definitions for FastAPI and Celery workers.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram, Gauge

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Video job metrics
video_jobs_created_total = Counter(
    'video_jobs_created_total',
    'Video job submissions by outcome',
    ['outcome']  # submitted, insufficient_credits, provider_error, rekey_error
)

video_job_transitions_total = Counter(
    'video_job_transitions_total',
    'Applied job status transitions',
    ['source', 'status']
)

video_polls_active = Gauge(
    'video_polls_active',
    'Number of fallback pollers currently running'
)

# Provider metrics
provider_requests_total = Counter(
    'provider_requests_total',
    'Total video provider requests',
    ['operation']
)

provider_failures_total = Counter(
    'provider_failures_total',
    'Total video provider failures',
    ['operation']
)

# Billing metrics
stripe_events_total = Counter(
    'stripe_events_total',
    'Stripe webhook events by type and outcome',
    ['event_type', 'outcome']
)

credits_granted_total = Counter(
    'credits_granted_total',
    'Credits added to user balances',
    ['reason']
)
