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

# Job lifecycle metrics
jobs_submitted_total = Counter(
    'jobs_submitted_total',
    'Total jobs submitted to the provider',
    ['job_type']
)

jobs_completed_total = Counter(
    'jobs_completed_total',
    'Total jobs that reached the completed state',
    ['job_type']
)

jobs_failed_total = Counter(
    'jobs_failed_total',
    'Total jobs that reached the failed state',
    ['job_type', 'reason']
)

jobs_active = Gauge(
    'jobs_active',
    'Non-terminal jobs seen by the last reconciliation sweep'
)

job_duration_seconds = Histogram(
    'job_duration_seconds',
    'Time from submission to terminal state in seconds',
    ['job_type', 'status'],
    buckets=[5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1200.0, 1800.0, 3600.0]
)

reconcile_outcomes_total = Counter(
    'reconcile_outcomes_total',
    'Reconciliation passes by outcome',
    ['outcome']
)

unresolved_output_total = Counter(
    'unresolved_output_total',
    'Completed provider jobs whose artifacts could not be resolved',
    ['job_type']
)

output_anomalies_total = Counter(
    'output_anomalies_total',
    'Trainer references rejected while resolving output',
    ['anomaly']
)

# Credit ledger metrics
credit_operations_total = Counter(
    'credit_operations_total',
    'Ledger entries written by kind',
    ['kind']
)

credit_deductions_refused_total = Counter(
    'credit_deductions_refused_total',
    'Deductions refused for insufficient balance'
)

# Compute provider metrics
provider_requests_total = Counter(
    'provider_requests_total',
    'Total compute provider requests',
    ['provider', 'operation']
)

provider_failures_total = Counter(
    'provider_failures_total',
    'Total compute provider failures',
    ['provider', 'operation']
)

provider_latency_seconds = Histogram(
    'provider_latency_seconds',
    'Compute provider request latency in seconds',
    ['provider', 'operation'],
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0]
)
