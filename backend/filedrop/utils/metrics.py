"""
Prometheus metrics definitions for the API and Celery workers.
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

# Upload metrics
upload_tokens_issued_total = Counter(
    'upload_tokens_issued_total',
    'Total upload tokens issued'
)

upload_tokens_active = Gauge(
    'upload_tokens_active',
    'Number of upload tokens currently held in memory'
)

uploads_ingested_total = Counter(
    'uploads_ingested_total',
    'Total ingestion attempts by result',
    ['result']  # created, deduplicated, rejected, storage_failed
)

upload_bytes_total = Counter(
    'upload_bytes_total',
    'Total bytes written to storage'
)

# Webhook metrics
webhook_deliveries_total = Counter(
    'webhook_deliveries_total',
    'Total webhook delivery attempts by resulting status',
    ['status']
)

webhook_delivery_duration_seconds = Histogram(
    'webhook_delivery_duration_seconds',
    'Webhook delivery attempt duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# API key metrics
api_key_auth_failures_total = Counter(
    'api_key_auth_failures_total',
    'Total rejected API key authentications',
    ['reason']  # invalid, rate_limited
)

# Celery worker metrics
worker_tasks_in_progress = Gauge(
    'worker_tasks_in_progress',
    'Number of Celery tasks currently running',
    ['task']
)

worker_tasks_total = Counter(
    'worker_tasks_total',
    'Total Celery tasks finished by state',
    ['task', 'state']
)
